"""FastAPI dependency injection — caller identity and the document store."""
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from app.services.document_store import DocumentStore


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """
    The signed-in user's id, forwarded by the front end in X-User-Id.
    Every stored document is scoped to it.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user_id


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store
