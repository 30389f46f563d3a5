"""Discrete PID used by the focus lock.

Plain textbook form on the pixel error: no derivative filtering, no command
deadband and, unless `integral_limit` is set, no anti-windup. Sustained error
accumulates in the integral without bound.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class PidConfig:
    """PID gains and tick timing.

    Corrections are applied as `+(kp*e + ki*I + kd*D) * slope`; with a slope
    measured by calibration (displacement per pixel), negative gains oppose
    the drift.
    """

    kp: float = 0.0
    ki: float = 0.0
    kd: float = 0.0
    # Symmetric clamp on the accumulated integral; None keeps it unbounded.
    integral_limit: float | None = None
    # Blocking wait after each stage move.
    settle_s: float = 1.0
    # Wait between the end of one tick and the start of the next.
    tick_delay_s: float = 1.0
    # dt used on the first tick, when there is no previous timestamp.
    first_dt_s: float = 1.0


@dataclass(frozen=True, slots=True)
class PidTerms:
    error: float
    dt_s: float
    integral: float
    derivative: float
    output: float


class PidController:
    def __init__(self, config: PidConfig) -> None:
        self._config = config
        self._validate_config()
        self.reset()

    def _validate_config(self) -> None:
        if self._config.integral_limit is not None and self._config.integral_limit < 0:
            raise ValueError("integral_limit must be >= 0 when provided")
        if self._config.settle_s < 0:
            raise ValueError("settle_s must be >= 0")
        if self._config.tick_delay_s < 0:
            raise ValueError("tick_delay_s must be >= 0")

    @property
    def config(self) -> PidConfig:
        return self._config

    @property
    def integral(self) -> float:
        return self._integral

    @property
    def previous_error(self) -> float:
        return self._previous_error

    @property
    def previous_timestamp(self) -> float | None:
        return self._previous_timestamp

    def reset(self) -> None:
        self._integral = 0.0
        self._previous_error = 0.0
        self._previous_timestamp: float | None = None

    def update(self, error: float, timestamp_s: float) -> PidTerms:
        c = self._config
        if self._previous_timestamp is None:
            dt_s = c.first_dt_s
        else:
            dt_s = timestamp_s - self._previous_timestamp
        self._previous_timestamp = timestamp_s

        self._integral += error * dt_s
        if c.integral_limit is not None:
            self._integral = max(-c.integral_limit, min(c.integral_limit, self._integral))

        derivative = (error - self._previous_error) / dt_s if dt_s > 0 else 0.0
        self._previous_error = error

        output = c.kp * error + c.ki * self._integral + c.kd * derivative
        return PidTerms(
            error=error,
            dt_s=dt_s,
            integral=self._integral,
            derivative=derivative,
            output=output,
        )
