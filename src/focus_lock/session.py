from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any

import numpy as np

from .errors import AcquisitionError, ConfigError, DeviceError, Outcome
from .events import EventBus
from .interfaces import IntensityProfile, SensorCore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionConfig:
    config_path: str
    camera_name: str = "gFocus Light Sensor"
    exposure_ms: float = 1.0
    average: int = 1
    # Snapshot attempts per acquisition call; attempts are back-to-back.
    retry_budget: int = 10
    exposure_property: str = "Time [ms]"
    average_property: str = "Average #"


def decode_profile(raw: Any) -> IntensityProfile:
    """Convert a raw sensor buffer to a read-only uint16 profile.

    Byte-packed buffers (bytes-like objects or numpy arrays with one-byte
    items) are reassembled as little-endian 16-bit words. Word-sized data
    (numpy arrays, sequences of ints) passes through unchanged.
    """

    if isinstance(raw, (bytes, bytearray, memoryview)):
        buf = bytes(raw)
    elif isinstance(raw, np.ndarray) and raw.dtype.itemsize == 1:
        buf = np.ascontiguousarray(raw).tobytes()
    elif isinstance(raw, np.ndarray):
        if raw.dtype.kind not in "iu":
            raise AcquisitionError(f"Unsupported image dtype: {raw.dtype}")
        profile = raw.astype(np.uint16).ravel()
        profile.setflags(write=False)
        return profile
    elif isinstance(raw, (list, tuple)):
        try:
            profile = np.asarray(raw, dtype=np.uint16).ravel()
        except (TypeError, ValueError, OverflowError) as exc:
            raise AcquisitionError(f"Unsupported image payload: {exc}") from exc
        profile.setflags(write=False)
        return profile
    else:
        raise AcquisitionError(f"Unsupported image type: {type(raw).__name__}")

    if len(buf) % 2:
        raise AcquisitionError(f"Byte-packed image has odd length {len(buf)}")
    profile = np.frombuffer(buf, dtype="<u2").astype(np.uint16)
    profile.setflags(write=False)
    return profile


class DeviceSession:
    """Exclusive owner of the line-sensor core handle.

    Every hardware interaction (snapshots, property writes, reset,
    configuration) goes through one re-entrant lock, so the acquisition loop
    and the focus controller never interleave commands on the device.
    """

    def __init__(self, core: SensorCore, config: SessionConfig, events: EventBus | None = None) -> None:
        self._core = core
        self._config = replace(config)
        self._validate_config()
        self._events = events or EventBus()
        self._lock = threading.RLock()
        self._configured = False
        self._recovery_failed = False
        self._exposure_ms = config.exposure_ms
        self._average = config.average

    @classmethod
    def open(cls, core: SensorCore, config: SessionConfig, events: EventBus | None = None) -> "DeviceSession":
        """Build a session and configure it, raising `ConfigError` on failure."""
        session = cls(core, config, events)
        session.configure(config.config_path, config.camera_name)
        return session

    def _validate_config(self) -> None:
        if self._config.exposure_ms <= 0:
            raise ValueError("exposure_ms must be > 0")
        if self._config.average < 1:
            raise ValueError("average must be >= 1")
        if self._config.retry_budget < 1:
            raise ValueError("retry_budget must be >= 1")

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def configured(self) -> bool:
        return self._configured

    @property
    def exposure_ms(self) -> float:
        return self._exposure_ms

    @property
    def average(self) -> int:
        return self._average

    @property
    def retry_budget(self) -> int:
        return self._config.retry_budget

    def configure(self, path: str, camera_name: str) -> None:
        with self._lock:
            self._configured = False
            try:
                self._core.loadSystemConfiguration(path)
                self._core.setCameraDevice(camera_name)
            except Exception as exc:
                self._events.report_error(f"Failed to initialize light sensor core: {exc}")
                raise ConfigError(f"Could not configure sensor {camera_name!r} from {path!r}: {exc}") from exc
            self._config.config_path = path
            self._config.camera_name = camera_name
            self._configured = True
            self._recovery_failed = False
            self._apply_cached_properties()
        self._events.log("Private core for light sensor initialized")

    def _apply_cached_properties(self) -> None:
        self.set_average(self._average)
        self.set_exposure(self._exposure_ms)

    def _set_property(self, key: str, value: Any, label: str) -> Outcome[None]:
        with self._lock:
            try:
                self._core.setProperty(self._config.camera_name, key, value)
            except Exception as exc:
                err = DeviceError(f"Failed to set {label}: {exc}")
                self._events.report_error(str(err))
                return Outcome.failure(err)
        self._events.log(f"Set {label} to: {value}")
        return Outcome.success(None)

    def set_exposure(self, exposure_ms: float) -> Outcome[None]:
        if exposure_ms <= 0:
            raise ValueError("exposure_ms must be > 0")
        with self._lock:
            outcome = self._set_property(self._config.exposure_property, exposure_ms, "exposure")
            if outcome.ok:
                self._exposure_ms = exposure_ms
        return outcome

    def set_average(self, average: int) -> Outcome[None]:
        if average < 1:
            raise ValueError("average must be >= 1")
        with self._lock:
            outcome = self._set_property(self._config.average_property, average, "averaging")
            if outcome.ok:
                self._average = average
        return outcome

    def _snap_with_retries(self) -> tuple[Outcome[IntensityProfile], bool]:
        """Return the acquisition outcome and whether the retry budget was exhausted."""
        if not self._configured:
            return Outcome.failure(ConfigError("Sensor session is not configured")), False

        budget = self._config.retry_budget
        last_exc: Exception | None = None
        for attempt in range(1, budget + 1):
            try:
                self._core.snapImage()
                raw = self._core.getImage()
            except Exception as exc:
                last_exc = exc
                logger.debug("Snapshot attempt %d/%d failed: %s", attempt, budget, exc)
                continue
            try:
                return Outcome.success(decode_profile(raw)), False
            except AcquisitionError as exc:
                return Outcome.failure(exc), False
        err = AcquisitionError(f"Snapshot failed after {budget} attempts: {last_exc}")
        return Outcome.failure(err), True

    def acquire_once(self) -> Outcome[IntensityProfile]:
        with self._lock:
            outcome, _ = self._snap_with_retries()
        if not outcome.ok:
            self._events.report_error(f"Acquisition failed: {outcome.error}")
        return outcome

    def acquire_or_recover(self) -> Outcome[IntensityProfile]:
        """Like `acquire_once`, but reset and reconfigure the core after exhausting retries.

        Recovery prepares the next call; this call still returns the failure.
        A session whose previous recovery failed retries the recovery here.
        """
        with self._lock:
            outcome, exhausted = self._snap_with_retries()
            if exhausted or (not self._configured and self._recovery_failed):
                self._recover()
        if outcome.ok:
            return outcome
        if exhausted:
            # Reported by the recovery step.
            logger.warning("Acquisition failed: %s", outcome.error)
        else:
            self._events.report_error(f"Acquisition failed: {outcome.error}")
        return outcome

    def _recover(self) -> None:
        try:
            self._core.reset()
            self._core.loadSystemConfiguration(self._config.config_path)
            self._core.setCameraDevice(self._config.camera_name)
        except Exception as exc:
            self._configured = False
            self._recovery_failed = True
            self._events.report_error(f"Reset failed: {exc}")
            return
        self._configured = True
        self._recovery_failed = False
        self._apply_cached_properties()
        self._events.log("Max retries reached. Core reset attempted.")
