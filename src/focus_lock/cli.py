from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from .acquisition import AcquisitionLoop
from .calibration import (
    CalibrationProcedure,
    CalibrationResult,
    fit_linear_calibration,
    load_calibration_samples_csv,
    save_calibration_samples_csv,
)
from .controller import FocusController
from .errors import ConfigError
from .events import CorrectionApplied, EventBus
from .hardware import SimulatedSensorCore
from .interfaces import SensorCore, StageInterface
from .micromanager import MicroManagerStage
from .pid import PidConfig
from .session import DeviceSession, SessionConfig

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the line-sensor focus lock")
    parser.add_argument(
        "--hardware",
        choices=["simulate", "micromanager"],
        default="simulate",
        help="Sensor/stage backend selection",
    )
    parser.add_argument(
        "--mm-config",
        default="C:/Program Files/Micro-Manager-2.0/gFocus/gFocus.cfg",
        help="Micro-Manager configuration file for the private sensor core",
    )
    parser.add_argument("--sensor-name", default="gFocus Light Sensor", help="Sensor device label")
    parser.add_argument("--mm-host", default="localhost", help="Micro-Manager pycromanager host")
    parser.add_argument("--mm-port", type=int, default=4827, help="Micro-Manager pycromanager port")
    parser.add_argument("--stage-name", default=None, help="Focus stage label (default: core focus device)")
    parser.add_argument("--exposure-ms", type=float, default=1.0, help="Sensor exposure in ms")
    parser.add_argument("--average", type=int, default=1, help="Sensor frame averaging count")
    parser.add_argument("--poll-interval-ms", type=float, default=100.0, help="Live profile polling interval")
    parser.add_argument("--no-poll", action="store_true", help="Do not run the live profile poller")
    parser.add_argument("--kp", type=float, default=-0.5, help="Proportional gain")
    parser.add_argument("--ki", type=float, default=0.0, help="Integral gain")
    parser.add_argument("--kd", type=float, default=0.0, help="Derivative gain")
    parser.add_argument(
        "--integral-limit",
        type=float,
        default=None,
        help="Clamp on the accumulated PID integral (default: unbounded)",
    )
    parser.add_argument("--settle-s", type=float, default=1.0, help="Settle wait after each stage move")
    parser.add_argument("--tick-delay-s", type=float, default=1.0, help="Delay between correction ticks")
    parser.add_argument("--duration", type=float, default=10.0, help="Focus lock runtime in seconds")
    parser.add_argument("--calibration-steps", type=int, default=10, help="Number of calibration steps")
    parser.add_argument(
        "--calibration-step-um", type=float, default=0.1, help="Stage displacement per calibration step"
    )
    parser.add_argument(
        "--calibration-csv",
        default=None,
        help=(
            "Calibration samples CSV path. If it exists it is loaded instead of running a sweep; "
            "otherwise a fresh sweep is written there."
        ),
    )
    parser.add_argument("--sim-drift-um", type=float, default=0.0, help="Simulated sample drift per snapshot")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser


def _build_hardware(args) -> tuple[SensorCore, StageInterface]:
    if args.hardware == "simulate":
        core = SimulatedSensorCore(camera_name=args.sensor_name)
        core.sample_drift_um_per_snap = args.sim_drift_um
        return core, MicroManagerStage(core, z_stage_name=args.stage_name)

    from .micromanager import connect_studio_core, create_sensor_core

    sensor_core = create_sensor_core()
    studio_core = connect_studio_core(host=args.mm_host, port=args.mm_port)
    return sensor_core, MicroManagerStage(studio_core, z_stage_name=args.stage_name)


def _calibrate(args, procedure: CalibrationProcedure, stage: StageInterface, loop: AcquisitionLoop) -> CalibrationResult:
    csv_path = Path(args.calibration_csv) if args.calibration_csv else None
    if csv_path is not None and csv_path.exists():
        samples = load_calibration_samples_csv(csv_path)
        result = fit_linear_calibration(samples)
        logger.info("Loaded calibration from %s (%d samples)", csv_path, len(samples))
        return result

    outcome = procedure.run(args.calibration_steps, args.calibration_step_um, stage, loop.snap_once)
    result = outcome.unwrap()
    if csv_path is not None and result.usable:
        save_calibration_samples_csv(csv_path, result.samples)
    return result


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    events = EventBus()
    core, stage = _build_hardware(args)
    try:
        session = DeviceSession.open(
            core,
            SessionConfig(
                config_path=args.mm_config,
                camera_name=args.sensor_name,
                exposure_ms=args.exposure_ms,
                average=args.average,
            ),
            events,
        )
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    loop = AcquisitionLoop(session)
    if not args.no_poll:
        loop.start(args.poll_interval_ms)

    controller: FocusController | None = None
    try:
        procedure = CalibrationProcedure(events=events, settle_s=args.settle_s)
        calibration = _calibrate(args, procedure, stage, loop)
        if not calibration.usable:
            print(f"Calibration unusable: {calibration.error}", file=sys.stderr)
            return 1

        samples = []
        events.subscribe(lambda e: samples.append(e.sample), CorrectionApplied)
        controller = FocusController(
            loop.snap_once,
            stage,
            config=PidConfig(
                kp=args.kp,
                ki=args.ki,
                kd=args.kd,
                integral_limit=args.integral_limit,
                settle_s=args.settle_s,
                tick_delay_s=args.tick_delay_s,
            ),
            events=events,
        )
        reference = controller.start_focus(calibration.slope)
        if not reference.ok:
            print(f"Could not start focus lock: {reference.error}", file=sys.stderr)
            return 1

        time.sleep(max(0.0, args.duration))
        controller.stop_focus()
        controller.join()

        print(
            f"hardware={args.hardware} slope={calibration.slope:+0.5f} um/px "
            f"reference={reference.unwrap().mean:0.3f} px ticks={len(samples)}"
            + (f" final_drift={samples[-1].drift_um:+0.4f} um z={samples[-1].new_z_um:+0.4f} um" if samples else "")
        )
        return 0
    finally:
        if controller is not None:
            controller.stop_focus()
        loop.stop()


if __name__ == "__main__":
    raise SystemExit(main())
