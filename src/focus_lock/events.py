"""Typed events emitted by the focus-lock core.

The core never talks to a UI toolkit. Display, logging and alerting
collaborators subscribe to an `EventBus` either with a handler callable or by
draining a `queue.Queue` obtained from `EventBus.channel()`.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Union

from .interfaces import IntensityProfile

if TYPE_CHECKING:
    from .controller import FocusSample

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProfileReady:
    profile: IntensityProfile
    timestamp_s: float = field(default_factory=time.monotonic)


@dataclass(frozen=True, slots=True)
class ErrorUpdate:
    """Drift of the peak from its reference, scaled to physical units (um)."""

    drift_um: float


@dataclass(frozen=True, slots=True)
class CalibrationDone:
    slope: float
    intercept: float


@dataclass(frozen=True, slots=True)
class CorrectionApplied:
    sample: "FocusSample"


@dataclass(frozen=True, slots=True)
class LogMessage:
    text: str


@dataclass(frozen=True, slots=True)
class ErrorReport:
    text: str


FocusEvent = Union[ProfileReady, ErrorUpdate, CalibrationDone, CorrectionApplied, LogMessage, ErrorReport]
EventHandler = Callable[[Any], None]


class EventBus:
    """Synchronous fan-out of focus-lock events to registered handlers.

    Handlers run on the emitting thread (acquisition worker, focus worker or
    calibration worker). A handler that raises is logged and skipped so one
    broken consumer cannot stall the control loop.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[type | None, EventHandler]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler, event_type: type | None = None) -> Callable[[], None]:
        """Register `handler` for `event_type` (or every event) and return an unsubscribe callable."""
        entry = (event_type, handler)
        with self._lock:
            self._handlers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._handlers:
                    self._handlers.remove(entry)

        return _unsubscribe

    def channel(self, event_type: type | None = None, maxsize: int = 0) -> "queue.Queue[Any]":
        """Return a queue that receives a copy of every matching event."""
        q: queue.Queue[Any] = queue.Queue(maxsize=maxsize)

        def _put(event: Any) -> None:
            try:
                q.put_nowait(event)
            except queue.Full:
                logger.warning("Event channel full; dropped %s", type(event).__name__)

        self.subscribe(_put, event_type)
        return q

    def emit(self, event: FocusEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for event_type, handler in handlers:
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)

    def log(self, text: str) -> None:
        logger.info(text)
        self.emit(LogMessage(text))

    def report_error(self, text: str) -> None:
        logger.error(text)
        self.emit(ErrorReport(text))
