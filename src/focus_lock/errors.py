from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class FocusLockError(RuntimeError):
    """Base class for every failure kind the focus lock reports."""


class ConfigError(FocusLockError):
    """Sensor configuration could not be loaded or the device not selected."""


class DeviceError(FocusLockError):
    """A device property write or reset failed."""


class AcquisitionError(FocusLockError):
    """Snapshot/read failed after the retry budget, or the buffer is unusable."""


class FitError(FocusLockError):
    """Gaussian peak fit was degenerate or did not converge."""


class StageCommandError(FocusLockError):
    """Stage position could not be read or commanded."""


class CalibrationError(FocusLockError):
    """A calibration run could not produce a usable slope."""


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T]):
    """Tagged result of a fallible operation.

    Exactly one of `value` / `error` is meaningful: `error is None` means
    success. `unwrap()` converts back to exception style for callers that
    prefer it.
    """

    value: T | None = None
    error: FocusLockError | None = None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value, error=None)

    @classmethod
    def failure(cls, error: FocusLockError) -> "Outcome[T]":
        return cls(value=None, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
