from __future__ import annotations

import logging
import threading

from .errors import Outcome
from .events import ProfileReady
from .interfaces import IntensityProfile
from .session import DeviceSession

logger = logging.getLogger(__name__)


class AcquisitionLoop:
    """Background poller that republishes sensor profiles as `ProfileReady` events.

    Ticks are fixed-delay: the interval is measured from the end of one
    acquisition to the start of the next, so a slow tick (e.g. a core
    recovery) pushes later ticks out instead of overlapping them.
    """

    def __init__(self, session: DeviceSession) -> None:
        self._session = session
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_evt: threading.Event | None = None
        self._last_profile: IntensityProfile | None = None

    @property
    def session(self) -> DeviceSession:
        return self._session

    @property
    def last_profile(self) -> IntensityProfile | None:
        return self._last_profile

    @property
    def running(self) -> bool:
        with self._lock:
            return (
                self._thread is not None
                and self._thread.is_alive()
                and self._stop_evt is not None
                and not self._stop_evt.is_set()
            )

    def start(self, interval_ms: float = 100.0) -> None:
        if interval_ms < 0:
            raise ValueError("interval_ms must be >= 0")
        with self._lock:
            if (
                self._thread is not None
                and self._thread.is_alive()
                and self._stop_evt is not None
                and not self._stop_evt.is_set()
            ):
                return
            # One stop event per worker: a stopped worker still finishing a
            # tick never publishes after a restart.
            stop_evt = threading.Event()
            self._stop_evt = stop_evt
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(stop_evt, interval_ms / 1000.0),
                name="focus-lock-acquisition",
                daemon=True,
            )
            self._thread.start()
        self._session.events.log("Camera polling started")

    def stop(self) -> None:
        """Cancel the worker without waiting; an in-flight result is discarded."""
        with self._lock:
            stop_evt = self._stop_evt
        if stop_evt is not None and not stop_evt.is_set():
            stop_evt.set()
            self._session.events.log("Camera polling stopped")

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the current worker to exit; return True if it has."""
        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def _run_loop(self, stop_evt: threading.Event, interval_s: float) -> None:
        while not stop_evt.is_set():
            outcome = self._session.acquire_or_recover()
            if stop_evt.is_set():
                break
            if outcome.ok:
                profile = outcome.unwrap()
                self._last_profile = profile
                self._session.events.emit(ProfileReady(profile=profile))
            if stop_evt.wait(interval_s):
                break

    def snap_once(self) -> Outcome[IntensityProfile]:
        """Synchronous single acquisition, independent of the periodic worker."""
        return self._session.acquire_once()
