import math
import threading

import numpy as np
import pytest

from focus_lock.calibration import (
    CalibrationProcedure,
    CalibrationSample,
    fit_linear_calibration,
    fit_linear_calibration_with_report,
    load_calibration_samples_csv,
    save_calibration_samples_csv,
)
from focus_lock.errors import AcquisitionError, CalibrationError, Outcome
from focus_lock.events import CalibrationDone, ErrorReport, EventBus
from focus_lock.hardware import SimulatedSensorCore, SimulatedZStage
from focus_lock.micromanager import MicroManagerStage
from focus_lock.session import DeviceSession, SessionConfig


def _profile(mean_px: float) -> np.ndarray:
    x = np.arange(128, dtype=float)
    return np.rint(3000.0 * np.exp(-((x - mean_px) ** 2) / (2.0 * 5.0**2))).astype(np.uint16)


def test_fit_linear_calibration_recovers_mapping() -> None:
    samples = [
        CalibrationSample(displacement_um=0.1 * m - 6.0, mean_px=m)
        for m in (60.0, 61.0, 62.0, 63.0)
    ]
    cal = fit_linear_calibration(samples)

    assert cal.slope == pytest.approx(0.1)
    assert cal.intercept == pytest.approx(-6.0)
    assert cal.mean_at_origin_px == pytest.approx(60.0)
    assert cal.usable is True


def test_fit_linear_calibration_recovers_pixel_model() -> None:
    # pixel_mean = 50 + displacement / 0.05
    samples = [CalibrationSample(displacement_um=d, mean_px=50.0 + d / 0.05) for d in (0.1, 0.2, 0.3, 0.4, 0.5)]

    cal = fit_linear_calibration(samples)

    assert cal.slope == pytest.approx(0.05)
    assert cal.mean_at_origin_px == pytest.approx(50.0)
    assert cal.report is not None
    assert cal.report.r2 == pytest.approx(1.0)
    assert cal.report.rmse_um == pytest.approx(0.0, abs=1e-12)


def test_fit_linear_calibration_requires_at_least_two_samples() -> None:
    with pytest.raises(ValueError, match="Need at least two calibration samples"):
        fit_linear_calibration_with_report([CalibrationSample(displacement_um=0.0, mean_px=0.0)])


def test_fit_linear_calibration_reports_nan_for_degenerate_samples() -> None:
    samples = [
        CalibrationSample(displacement_um=0.1, mean_px=64.0),
        CalibrationSample(displacement_um=0.2, mean_px=64.0),
        CalibrationSample(displacement_um=0.3, mean_px=64.0),
    ]

    cal = fit_linear_calibration(samples)

    assert math.isnan(cal.slope)
    assert cal.usable is False
    assert isinstance(cal.error, CalibrationError)
    assert "degenerate" in str(cal.error)


def test_calibration_samples_csv_round_trip(tmp_path) -> None:
    samples = [
        CalibrationSample(displacement_um=0.1, mean_px=64.5),
        CalibrationSample(displacement_um=0.2, mean_px=65.5),
        CalibrationSample(displacement_um=0.3, mean_px=66.5),
    ]
    csv_path = tmp_path / "calibration_sweep.csv"

    save_calibration_samples_csv(csv_path, samples)
    loaded = load_calibration_samples_csv(csv_path)

    assert loaded == samples


def test_procedure_calibrates_simulated_sensor() -> None:
    core = SimulatedSensorCore()
    stage = MicroManagerStage(core)
    stage.move_z_um(2.0)
    session = DeviceSession.open(core, SessionConfig(config_path="sim.cfg"))
    events = EventBus()
    done = events.channel(CalibrationDone)

    outcome = CalibrationProcedure(events=events, settle_s=0.0).run(5, 0.2, stage, session.acquire_once)
    result = outcome.unwrap()

    # Scene moves the peak 10 px per um.
    assert result.slope == pytest.approx(0.1, rel=1e-2)
    assert [s.displacement_um for s in result.samples] == pytest.approx([0.2, 0.4, 0.6, 0.8, 1.0])
    assert result.mean_at_origin_px == pytest.approx(63.5 + 10 * 2.0, abs=0.05)
    assert stage.get_z_um() == 2.0
    event = done.get_nowait()
    assert event.slope == result.slope
    assert event.intercept == result.intercept


def test_procedure_settles_after_every_move() -> None:
    stage = SimulatedZStage()
    waits: list[tuple[float, float]] = []
    procedure = CalibrationProcedure(settle_s=0.5, sleep=lambda s: waits.append((s, stage.get_z_um())))

    procedure.run(3, 0.1, stage, lambda: Outcome.success(_profile(60.0 + 10 * stage.get_z_um())))

    assert waits == [(0.5, pytest.approx(0.1)), (0.5, pytest.approx(0.2)), (0.5, pytest.approx(0.3))]


def test_procedure_reports_nan_when_a_step_fails() -> None:
    stage = SimulatedZStage()
    calls = {"n": 0}

    def _acquire() -> Outcome:
        calls["n"] += 1
        if calls["n"] == 3:
            return Outcome.failure(AcquisitionError("Snapshot failed after 10 attempts"))
        return Outcome.success(_profile(60.0 + calls["n"]))

    events = EventBus()
    done = events.channel(CalibrationDone)
    result = CalibrationProcedure(events=events, settle_s=0.0).run(5, 0.1, stage, _acquire).unwrap()

    assert math.isnan(result.slope)
    assert isinstance(result.error, CalibrationError)
    assert "step 3" in str(result.error)
    assert len(result.samples) == 2
    assert calls["n"] == 3
    assert math.isnan(done.get_nowait().slope)
    assert stage.get_z_um() == 0.0


def test_procedure_reports_nan_when_fit_fails() -> None:
    stage = SimulatedZStage()

    result = CalibrationProcedure(settle_s=0.0).run(
        3, 0.1, stage, lambda: Outcome.success(np.zeros(128, dtype=np.uint16))
    ).unwrap()

    assert math.isnan(result.slope)
    assert "Peak fit failed at step 1" in str(result.error)


def test_procedure_reports_nan_when_stage_move_fails() -> None:
    stage = SimulatedZStage()
    stage.fail_moves = True

    result = CalibrationProcedure(settle_s=0.0).run(
        3, 0.1, stage, lambda: Outcome.success(_profile(60.0))
    ).unwrap()

    assert math.isnan(result.slope)
    assert "Stage move" in str(result.error)


def test_procedure_rejects_concurrent_runs() -> None:
    stage = SimulatedZStage()
    entered = threading.Event()
    release = threading.Event()

    def _slow_acquire() -> Outcome:
        entered.set()
        release.wait(timeout=5.0)
        return Outcome.success(_profile(60.0 + 10 * stage.get_z_um()))

    procedure = CalibrationProcedure(settle_s=0.0)
    assert procedure.start(3, 0.1, stage, _slow_acquire).ok
    assert entered.wait(timeout=2.0)
    assert procedure.is_running is True

    rejected = procedure.run(3, 0.1, stage, _slow_acquire)
    assert isinstance(rejected.error, CalibrationError)
    assert "already active" in str(rejected.error)
    assert isinstance(procedure.start(3, 0.1, stage, _slow_acquire).error, CalibrationError)

    release.set()
    assert procedure.join(timeout=2.0)
    assert procedure.is_running is False
    assert procedure.last_result is not None
    assert procedure.last_result.slope == pytest.approx(0.1, rel=1e-2)


def test_procedure_can_be_cancelled() -> None:
    stage = SimulatedZStage()
    procedure = CalibrationProcedure(settle_s=0.0)

    def _acquire() -> Outcome:
        procedure.cancel()
        return Outcome.success(_profile(60.0))

    result = procedure.run(4, 0.1, stage, _acquire).unwrap()

    assert math.isnan(result.slope)
    assert "cancelled" in str(result.error)
    assert len(result.samples) == 1


def test_procedure_validates_plan() -> None:
    procedure = CalibrationProcedure(settle_s=0.0)
    stage = SimulatedZStage()

    with pytest.raises(ValueError, match="step_count"):
        procedure.run(1, 0.1, stage, lambda: Outcome.success(_profile(60.0)))
    with pytest.raises(ValueError, match="step_size_um"):
        procedure.run(3, 0.0, stage, lambda: Outcome.success(_profile(60.0)))


class _GatedStage(SimulatedZStage):
    """Blocks the first position read until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def get_z_um(self) -> float:
        self.release.wait(timeout=5.0)
        return super().get_z_um()


def test_cancel_right_after_start_is_honoured() -> None:
    stage = _GatedStage()
    calls = {"n": 0}

    def _acquire() -> Outcome:
        calls["n"] += 1
        return Outcome.success(_profile(60.0))

    procedure = CalibrationProcedure(settle_s=0.0)
    assert procedure.start(3, 0.1, stage, _acquire).ok
    procedure.cancel()
    stage.release.set()

    assert procedure.join(timeout=2.0)
    assert procedure.last_result is not None
    assert "cancelled" in str(procedure.last_result.error)
    assert calls["n"] == 0


def test_crashed_background_run_still_completes() -> None:
    stage = SimulatedZStage()
    events = EventBus()
    done = events.channel(CalibrationDone)
    reports = events.channel(ErrorReport)

    def _acquire() -> Outcome:
        raise RuntimeError("driver exploded")

    procedure = CalibrationProcedure(events=events, settle_s=0.0)
    assert procedure.start(3, 0.1, stage, _acquire).ok
    assert procedure.join(timeout=2.0)

    assert math.isnan(done.get(timeout=1.0).slope)
    assert any("driver exploded" in r.text for r in list(reports.queue))
    assert procedure.last_result is not None
    assert math.isnan(procedure.last_result.slope)
    assert procedure.is_running is False
    assert stage.get_z_um() == 0.0
