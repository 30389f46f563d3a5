from __future__ import annotations

import csv
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .errors import CalibrationError, FocusLockError, Outcome
from .events import CalibrationDone, EventBus
from .interfaces import IntensityProfile, StageInterface
from .peak_fit import PeakFitter

logger = logging.getLogger(__name__)

AcquireFn = Callable[[], Outcome[IntensityProfile]]


@dataclass(slots=True)
class CalibrationSample:
    displacement_um: float
    mean_px: float


@dataclass(slots=True)
class CalibrationFitReport:
    slope: float
    intercept: float
    r2: float
    rmse_um: float
    n_samples: int


@dataclass(slots=True)
class CalibrationResult:
    """Linear map `displacement_um = slope * mean_px + intercept`.

    A NaN slope marks a failed run; `error` then holds the reason.
    """

    slope: float
    intercept: float
    samples: list[CalibrationSample] = field(default_factory=list)
    report: CalibrationFitReport | None = None
    error: FocusLockError | None = None

    @property
    def usable(self) -> bool:
        return math.isfinite(self.slope) and self.slope != 0.0

    @property
    def mean_at_origin_px(self) -> float:
        """Peak position the fit predicts at zero displacement."""
        if not self.usable:
            return math.nan
        return -self.intercept / self.slope

    @classmethod
    def failed(cls, error: FocusLockError, samples: list[CalibrationSample] | None = None) -> "CalibrationResult":
        return cls(slope=math.nan, intercept=math.nan, samples=list(samples or []), error=error)


def _linear_fit(samples: list[CalibrationSample]) -> tuple[float, float]:
    if len(samples) < 2:
        raise ValueError("Need at least two calibration samples")

    n = float(len(samples))
    sum_m = sum(s.mean_px for s in samples)
    sum_d = sum(s.displacement_um for s in samples)
    sum_mm = sum(s.mean_px * s.mean_px for s in samples)
    sum_md = sum(s.mean_px * s.displacement_um for s in samples)

    denom = n * sum_mm - sum_m * sum_m
    if denom == 0.0:
        raise ValueError("Calibration samples are degenerate")

    slope = (n * sum_md - sum_m * sum_d) / denom
    intercept = (sum_d - slope * sum_m) / n
    if slope == 0.0:
        raise ValueError("Calibration slope is zero")
    return slope, intercept


def fit_linear_calibration_with_report(samples: list[CalibrationSample]) -> CalibrationFitReport:
    """Fit displacement = slope*mean + intercept and return quality metrics."""

    slope, intercept = _linear_fit(samples)

    d_mean = sum(s.displacement_um for s in samples) / len(samples)
    ss_res = 0.0
    ss_tot = 0.0
    for s in samples:
        pred = slope * s.mean_px + intercept
        ss_res += (s.displacement_um - pred) ** 2
        ss_tot += (s.displacement_um - d_mean) ** 2
    r2 = 1.0 if ss_tot == 0 else 1.0 - (ss_res / ss_tot)
    rmse = (ss_res / len(samples)) ** 0.5

    return CalibrationFitReport(
        slope=slope,
        intercept=intercept,
        r2=r2,
        rmse_um=rmse,
        n_samples=len(samples),
    )


def fit_linear_calibration(samples: list[CalibrationSample]) -> CalibrationResult:
    """Ordinary least squares calibration; degenerate input gives a NaN slope."""

    try:
        report = fit_linear_calibration_with_report(samples)
    except ValueError as exc:
        return CalibrationResult.failed(CalibrationError(str(exc)), samples)
    return CalibrationResult(
        slope=report.slope,
        intercept=report.intercept,
        samples=list(samples),
        report=report,
    )


class CalibrationProcedure:
    """Step the stage by known amounts and regress displacement against peak position.

    Only one run may be active at a time. Completion always emits
    `CalibrationDone`; a NaN slope there means the calibration is unusable and
    focus locking must stay disabled.
    """

    def __init__(
        self,
        fitter: PeakFitter | None = None,
        events: EventBus | None = None,
        *,
        settle_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if settle_s < 0:
            raise ValueError("settle_s must be >= 0")
        self._fitter = fitter or PeakFitter()
        self._events = events or EventBus()
        self._settle_s = settle_s
        self._sleep = sleep
        self._active = threading.Lock()
        self._cancel_evt = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_result: CalibrationResult | None = None

    @property
    def is_running(self) -> bool:
        return self._active.locked()

    @property
    def last_result(self) -> CalibrationResult | None:
        return self._last_result

    def cancel(self) -> None:
        self._cancel_evt.set()

    def _reject(self) -> Outcome[CalibrationResult]:
        err = CalibrationError("A calibration run is already active")
        self._events.report_error(str(err))
        return Outcome.failure(err)

    def run(
        self,
        step_count: int,
        step_size_um: float,
        stage: StageInterface,
        acquire: AcquireFn,
    ) -> Outcome[CalibrationResult]:
        _validate_plan(step_count, step_size_um)
        if not self._active.acquire(blocking=False):
            return self._reject()
        self._cancel_evt.clear()
        try:
            return Outcome.success(self._sweep(step_count, step_size_um, stage, acquire))
        finally:
            self._active.release()

    def start(
        self,
        step_count: int,
        step_size_um: float,
        stage: StageInterface,
        acquire: AcquireFn,
    ) -> Outcome[None]:
        """Run the sweep on a background thread; the result arrives as `CalibrationDone`."""

        _validate_plan(step_count, step_size_um)
        if not self._active.acquire(blocking=False):
            return self._reject()  # type: ignore[return-value]
        self._cancel_evt.clear()

        def _target() -> None:
            try:
                self._sweep(step_count, step_size_um, stage, acquire)
            except Exception as exc:
                logger.exception("Calibration worker crashed")
                self._finish(CalibrationResult.failed(CalibrationError(f"Calibration worker crashed: {exc}")))
            finally:
                self._active.release()

        self._thread = threading.Thread(target=_target, name="focus-lock-calibration", daemon=True)
        self._thread.start()
        return Outcome.success(None)

    def join(self, timeout: float | None = None) -> bool:
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def _sweep(
        self,
        step_count: int,
        step_size_um: float,
        stage: StageInterface,
        acquire: AcquireFn,
    ) -> CalibrationResult:
        samples: list[CalibrationSample] = []
        try:
            start_z = float(stage.get_z_um())
        except Exception as exc:
            return self._finish(CalibrationResult.failed(CalibrationError(f"Could not read stage position: {exc}")))

        self._events.log(
            f"Calibration started: {step_count} steps of {step_size_um:+0.4f} um from z={start_z:+0.4f} um"
        )
        try:
            result = self._collect(step_count, step_size_um, stage, acquire, start_z, samples)
        finally:
            try:
                stage.move_z_um(start_z)
            except Exception as exc:
                self._events.report_error(f"Failed to return stage to z={start_z:+0.4f} um: {exc}")
        return self._finish(result)

    def _collect(
        self,
        step_count: int,
        step_size_um: float,
        stage: StageInterface,
        acquire: AcquireFn,
        start_z: float,
        samples: list[CalibrationSample],
    ) -> CalibrationResult:
        for i in range(1, step_count + 1):
            if self._cancel_evt.is_set():
                return CalibrationResult.failed(CalibrationError("Calibration cancelled by user"), samples)

            displacement = i * step_size_um
            target_z = start_z + displacement
            try:
                stage.move_z_um(target_z)
            except Exception as exc:
                return CalibrationResult.failed(
                    CalibrationError(f"Stage move to z={target_z:+0.4f} um failed at step {i}: {exc}"),
                    samples,
                )
            self._sleep(self._settle_s)

            acquired = acquire()
            if not acquired.ok:
                return CalibrationResult.failed(
                    CalibrationError(f"Acquisition failed at step {i}: {acquired.error}"), samples
                )
            fitted = self._fitter.fit(acquired.unwrap())
            if not fitted.ok:
                return CalibrationResult.failed(CalibrationError(f"Peak fit failed at step {i}: {fitted.error}"), samples)

            mean = fitted.unwrap().mean
            samples.append(CalibrationSample(displacement_um=displacement, mean_px=mean))
            logger.debug("Calibration step %d/%d: displacement=%+0.4f um mean=%0.4f px", i, step_count, displacement, mean)

        return fit_linear_calibration(samples)

    def _finish(self, result: CalibrationResult) -> CalibrationResult:
        self._last_result = result
        if result.usable:
            report = result.report
            self._events.log(
                f"Calibrated: {result.slope:+0.4f} um/pixel, intercept={result.intercept:+0.4f} um"
                + (f", R^2={report.r2:0.4f}" if report is not None else "")
            )
        else:
            self._events.report_error(f"Calibration failed: {result.error}")
        self._events.emit(CalibrationDone(slope=result.slope, intercept=result.intercept))
        return result


def _validate_plan(step_count: int, step_size_um: float) -> None:
    if step_count < 2:
        raise ValueError("step_count must be at least 2")
    if step_size_um == 0 or not math.isfinite(step_size_um):
        raise ValueError("step_size_um must be a non-zero finite number")


def save_calibration_samples_csv(path: str | Path, samples: list[CalibrationSample]) -> None:
    """Write calibration sweep samples for later reuse."""

    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=["displacement_um", "mean_px"])
        writer.writeheader()
        for s in samples:
            writer.writerow({"displacement_um": s.displacement_um, "mean_px": s.mean_px})


def load_calibration_samples_csv(path: str | Path) -> list[CalibrationSample]:
    """Read calibration sweep samples previously written by `save_calibration_samples_csv`."""

    in_path = Path(path)
    with in_path.open("r", newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        out: list[CalibrationSample] = []
        for row in reader:
            out.append(
                CalibrationSample(
                    displacement_um=float(row["displacement_um"]),
                    mean_px=float(row["mean_px"]),
                )
            )
    return out
