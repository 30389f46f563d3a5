from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from .errors import CalibrationError, FocusLockError, Outcome, StageCommandError
from .events import CorrectionApplied, ErrorUpdate, EventBus
from .interfaces import IntensityProfile, StageInterface
from .peak_fit import FitResult, PeakFitter
from .pid import PidConfig, PidController

logger = logging.getLogger(__name__)

AcquireFn = Callable[[], Outcome[IntensityProfile]]


class FocusState(str, Enum):
    IDLE = "idle"
    REFERENCING = "referencing"
    TRACKING = "tracking"


@dataclass(slots=True)
class ControllerState:
    reference_mean: float | None = None
    last_mean: float | None = None
    cal_slope: float = math.nan
    running: bool = False


@dataclass(frozen=True, slots=True)
class FocusSample:
    timestamp_s: float
    mean_px: float
    error_px: float
    drift_um: float
    dt_s: float
    integral: float
    derivative: float
    start_z_um: float
    delta_z_um: float
    new_z_um: float


class FocusController:
    """PID focus lock on the peak position of a line-sensor profile.

    1) `start_focus` captures the reference peak position.
    2) Each tick measures the peak again; the pixel error drives a PID whose
       output, scaled by the calibration slope, is added to the stage Z.
    3) After every move the worker blocks for a settle time, then waits a
       fixed delay before the next tick (self-paced, not fixed-rate).

    Any acquisition, fit or stage failure during tracking halts the loop
    until `start_focus` is called again.
    """

    def __init__(
        self,
        acquire: AcquireFn,
        stage: StageInterface,
        *,
        config: PidConfig | None = None,
        fitter: PeakFitter | None = None,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._acquire = acquire
        self._stage = stage
        self._config = replace(config) if config is not None else PidConfig()
        self._pid = PidController(self._config)
        self._fitter = fitter or PeakFitter()
        self._events = events or EventBus()
        self._clock = clock
        self._sleep = sleep
        self._state = FocusState.IDLE
        self._ctl = ControllerState()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_evt = threading.Event()

    @property
    def state(self) -> FocusState:
        return self._state

    @property
    def running(self) -> bool:
        return self._ctl.running

    @property
    def reference_mean(self) -> float | None:
        return self._ctl.reference_mean

    @property
    def last_mean(self) -> float | None:
        return self._ctl.last_mean

    @property
    def cal_slope(self) -> float:
        return self._ctl.cal_slope

    @property
    def pid(self) -> PidController:
        return self._pid

    @property
    def config(self) -> PidConfig:
        return self._config

    def set_gains(
        self,
        *,
        kp: float | None = None,
        ki: float | None = None,
        kd: float | None = None,
    ) -> None:
        if kp is not None:
            self._config.kp = float(kp)
        if ki is not None:
            self._config.ki = float(ki)
        if kd is not None:
            self._config.kd = float(kd)

    def _measure(self) -> Outcome[FitResult]:
        acquired = self._acquire()
        if not acquired.ok:
            return Outcome.failure(acquired.error)  # type: ignore[arg-type]
        return self._fitter.fit(acquired.unwrap())

    def start_focus(self, cal_slope: float, *, spawn_worker: bool = True) -> Outcome[FitResult]:
        """Capture the reference peak and begin tracking.

        With `spawn_worker=False` the controller enters TRACKING but the caller
        drives ticks with `run_step()`.
        """

        if not math.isfinite(cal_slope) or cal_slope == 0.0:
            err = CalibrationError(f"Calibration slope {cal_slope} is not usable; run calibration first")
            self._events.report_error(str(err))
            return Outcome.failure(err)

        # Let a stopped worker finish its in-flight tick so only one worker
        # ever commands the stage.
        self.stop_focus()
        with self._lock:
            previous = self._thread
        if previous is not None and previous is not threading.current_thread():
            previous.join()

        self._state = FocusState.REFERENCING
        reference = self._measure()
        if not reference.ok:
            self._state = FocusState.IDLE
            self._events.report_error(f"Reference acquisition failed: {reference.error}")
            return reference

        fit = reference.unwrap()
        self._ctl = ControllerState(
            reference_mean=fit.mean,
            last_mean=fit.mean,
            cal_slope=float(cal_slope),
            running=True,
        )
        self._pid.reset()
        self._state = FocusState.TRACKING
        self._events.log(f"Start focus lock: reference mean={fit.mean:.4f} px, slope={cal_slope:+.6f} um/px")

        if spawn_worker:
            with self._lock:
                self._stop_evt = threading.Event()
                self._thread = threading.Thread(
                    target=self._run_loop,
                    args=(self._stop_evt,),
                    name="focus-lock-controller",
                    daemon=True,
                )
                self._thread.start()
        return reference

    def stop_focus(self) -> None:
        """Request a stop; honoured at the start of the next tick only."""
        self._ctl.running = False
        self._stop_evt.set()
        if self._state is FocusState.TRACKING and (self._thread is None or not self._thread.is_alive()):
            self._state = FocusState.IDLE

    def join(self, timeout: float | None = None) -> bool:
        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def _halt(self, error: FocusLockError) -> None:
        self._ctl.running = False
        self._state = FocusState.IDLE
        self._events.report_error(f"Focus lock halted: {error}")

    def run_step(self) -> Outcome[FocusSample]:
        """Execute one correction tick, including the settle wait."""

        if self._ctl.reference_mean is None:
            raise RuntimeError("No reference captured; call start_focus first")

        measured = self._measure()
        if not measured.ok:
            self._halt(measured.error)  # type: ignore[arg-type]
            return Outcome.failure(measured.error)  # type: ignore[arg-type]

        mean = measured.unwrap().mean
        self._ctl.last_mean = mean
        slope = self._ctl.cal_slope
        error = mean - self._ctl.reference_mean
        drift_um = error * slope
        self._events.emit(ErrorUpdate(drift_um=drift_um))

        now = self._clock()
        terms = self._pid.update(error, now)
        delta_z = terms.output * slope

        try:
            start_z = float(self._stage.get_z_um())
        except Exception as exc:
            err = StageCommandError(f"Failed to get stage position: {exc}")
            self._halt(err)
            return Outcome.failure(err)

        new_z = start_z + delta_z
        try:
            self._stage.move_z_um(new_z)
        except Exception as exc:
            err = StageCommandError(f"Stage movement failed: {exc}")
            self._halt(err)
            return Outcome.failure(err)

        c = self._config
        logger.debug(
            "PID | error=%.6f dt=%.4fs integral=%.6f derivative=%.6f kp=%.4f ki=%.4f kd=%.4f "
            "old_z=%.6f delta_z=%.6f new_z=%.6f",
            error,
            terms.dt_s,
            terms.integral,
            terms.derivative,
            c.kp,
            c.ki,
            c.kd,
            start_z,
            delta_z,
            new_z,
        )

        self._sleep(c.settle_s)

        sample = FocusSample(
            timestamp_s=now,
            mean_px=mean,
            error_px=error,
            drift_um=drift_um,
            dt_s=terms.dt_s,
            integral=terms.integral,
            derivative=terms.derivative,
            start_z_um=start_z,
            delta_z_um=delta_z,
            new_z_um=new_z,
        )
        self._events.emit(CorrectionApplied(sample=sample))
        return Outcome.success(sample)

    def _run_loop(self, stop_evt: threading.Event) -> None:
        try:
            while self._ctl.running and not stop_evt.is_set():
                if not self.run_step().ok:
                    return
                if stop_evt.wait(self._config.tick_delay_s):
                    break
        except Exception as exc:
            self._halt(FocusLockError(f"Unexpected error in focus loop: {exc}"))
            logger.exception("Focus loop crashed")
            return
        finally:
            if self._state is FocusState.TRACKING and not self._ctl.running:
                self._state = FocusState.IDLE
        self._events.log("Stop focus lock")
