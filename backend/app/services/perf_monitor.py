"""Performance monitoring for document rendering in the BaoGia service."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict

logger = logging.getLogger("baogia-api.perf")


def timed(func: Callable) -> Callable:
    """
    Decorator that logs the execution time of a synchronous function at DEBUG.

    Usage::

        @timed
        def compose():
            ...
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                "function timed",
                extra={"timed_function": func.__qualname__, "duration_ms": duration_ms},
            )
    return wrapper


class PerformanceTracker:
    """
    Thread-safe in-memory counters for document renders.

    Tracks, per output kind ("html", "doc_definition", "pdf"):
    - renders completed and their cumulative / slowest duration
    - render failures
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._durations: Dict[str, list] = {}   # kind -> [duration_ms, ...]
        self._error_counts: Dict[str, int] = {}  # kind -> count

    def record_render_complete(self, kind: str, duration_ms: float) -> None:
        with self._lock:
            self._durations.setdefault(kind, []).append(duration_ms)

    def record_render_error(self, kind: str) -> None:
        with self._lock:
            self._error_counts[kind] = self._error_counts.get(kind, 0) + 1

    def get_metrics(self) -> Dict[str, Any]:
        """
        Snapshot of collected metrics.

        Returns
        -------
        dict with keys:
            renders_completed        : int
            render_count_by_kind     : dict {kind: count}
            avg_render_ms_by_kind    : dict {kind: avg_ms}
            slowest_render_ms        : float
            error_count              : int
            error_count_by_kind      : dict {kind: count}
        """
        with self._lock:
            counts = {kind: len(d) for kind, d in self._durations.items()}
            avgs = {
                kind: round(sum(d) / len(d), 2) if d else 0.0
                for kind, d in self._durations.items()
            }
            slowest = max((max(d) for d in self._durations.values() if d), default=0.0)
            return {
                "renders_completed": sum(counts.values()),
                "render_count_by_kind": counts,
                "avg_render_ms_by_kind": avgs,
                "slowest_render_ms": round(slowest, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_kind": dict(self._error_counts),
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._durations.clear()
            self._error_counts.clear()


# Module-level singleton; import this instance everywhere else.
tracker = PerformanceTracker()
