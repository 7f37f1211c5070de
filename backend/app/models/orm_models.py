"""ORM Models for BaoGia — SQLAlchemy 2.0"""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db import Base


# JSONB on Postgres, plain JSON elsewhere (SQLite in dev and tests)
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


# ── USER DOCUMENTS ───────────────────────────────────────────────────────────
class UserDocument(Base):
    """
    One JSON document in a per-user collection (quotes, catalog, costing
    sheets, settings, the working draft, ...).
    """
    __tablename__ = "user_documents"
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_user_documents_collection", "user_id", "collection"),
    )
