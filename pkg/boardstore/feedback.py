"""
Feedback bridge: routes user-facing notices and progress to UI sinks.

The core calls this fire-and-forget. Sinks subscribe per event type;
a failing sink is logged and skipped, and never aborts the operation
that produced the notice.

Event types and their keyword arguments:
  notification     kind, message, duration_ms
  loading_started  operation_id, message
  progress         operation_id, message, percentage
  loading_stopped  operation_id
"""
import inspect
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class FeedbackKind(Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


DEFAULT_DURATIONS_MS = {
    FeedbackKind.SUCCESS: 3000,
    FeedbackKind.ERROR: 5000,
    FeedbackKind.WARNING: 4000,
    FeedbackKind.INFO: 3000,
}

_LOG_LEVELS = {
    FeedbackKind.SUCCESS: logging.INFO,
    FeedbackKind.ERROR: logging.ERROR,
    FeedbackKind.WARNING: logging.WARNING,
    FeedbackKind.INFO: logging.INFO,
}


class FeedbackBridge:
    """Fans notices and progress out to subscribed sinks."""

    def __init__(self):
        self.subscribers: Dict[str, list] = {}  # event_type -> list of callbacks
        self._active: Dict[str, str] = {}       # operation_id -> message

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Register a sync or async callback for an event type."""
        if event_type not in self.subscribers:
            self.subscribers[event_type] = []
        self.subscribers[event_type].append(callback)

    async def _emit(self, event_type: str, **kwargs) -> None:
        for callback in self.subscribers.get(event_type, []):
            try:
                result = callback(**kwargs)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Error in {event_type} feedback callback: {e}")

    @property
    def active_operations(self) -> List[str]:
        return list(self._active.keys())

    # ── Notifications ──

    async def notify(self, kind: FeedbackKind, message: str, duration_ms: Optional[int] = None) -> None:
        duration = duration_ms if duration_ms is not None else DEFAULT_DURATIONS_MS[kind]
        logger.log(_LOG_LEVELS[kind], f"[{kind.value}] {message}")
        await self._emit("notification", kind=kind, message=message, duration_ms=duration)

    async def success(self, message: str, duration_ms: Optional[int] = None) -> None:
        await self.notify(FeedbackKind.SUCCESS, message, duration_ms)

    async def error(self, message: str, duration_ms: Optional[int] = None) -> None:
        await self.notify(FeedbackKind.ERROR, message, duration_ms)

    async def warning(self, message: str, duration_ms: Optional[int] = None) -> None:
        await self.notify(FeedbackKind.WARNING, message, duration_ms)

    async def info(self, message: str, duration_ms: Optional[int] = None) -> None:
        await self.notify(FeedbackKind.INFO, message, duration_ms)

    # ── Loading / progress ──

    async def start_loading(self, message: str, operation_id: str = "default") -> None:
        self._active[operation_id] = message
        await self._emit("loading_started", operation_id=operation_id, message=message)

    async def update_progress(self, message: str, percentage: int, operation_id: str = "default") -> None:
        percentage = max(0, min(100, int(percentage)))
        self._active[operation_id] = message
        await self._emit("progress", operation_id=operation_id, message=message, percentage=percentage)

    async def stop_loading(self, operation_id: str = "default") -> None:
        self._active.pop(operation_id, None)
        await self._emit("loading_stopped", operation_id=operation_id)
