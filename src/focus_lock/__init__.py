"""Line-sensor focus lock: peak fitting, calibration and PID stage correction."""

from .acquisition import AcquisitionLoop
from .calibration import (
    CalibrationFitReport,
    CalibrationProcedure,
    CalibrationResult,
    CalibrationSample,
    fit_linear_calibration,
    fit_linear_calibration_with_report,
    load_calibration_samples_csv,
    save_calibration_samples_csv,
)
from .controller import ControllerState, FocusController, FocusSample, FocusState
from .errors import (
    AcquisitionError,
    CalibrationError,
    ConfigError,
    DeviceError,
    FitError,
    FocusLockError,
    Outcome,
    StageCommandError,
)
from .events import (
    CalibrationDone,
    CorrectionApplied,
    ErrorReport,
    ErrorUpdate,
    EventBus,
    LogMessage,
    ProfileReady,
)
from .interfaces import IntensityProfile, SensorCore, StageInterface
from .peak_fit import FitResult, PeakFitter, fit_gaussian, moment_estimate
from .pid import PidConfig, PidController, PidTerms
from .session import DeviceSession, SessionConfig, decode_profile

__all__ = [
    "AcquisitionLoop",
    "CalibrationFitReport",
    "CalibrationProcedure",
    "CalibrationResult",
    "CalibrationSample",
    "fit_linear_calibration",
    "fit_linear_calibration_with_report",
    "load_calibration_samples_csv",
    "save_calibration_samples_csv",
    "ControllerState",
    "FocusController",
    "FocusSample",
    "FocusState",
    "AcquisitionError",
    "CalibrationError",
    "ConfigError",
    "DeviceError",
    "FitError",
    "FocusLockError",
    "Outcome",
    "StageCommandError",
    "CalibrationDone",
    "CorrectionApplied",
    "ErrorReport",
    "ErrorUpdate",
    "EventBus",
    "LogMessage",
    "ProfileReady",
    "IntensityProfile",
    "SensorCore",
    "StageInterface",
    "FitResult",
    "PeakFitter",
    "fit_gaussian",
    "moment_estimate",
    "PidConfig",
    "PidController",
    "PidTerms",
    "DeviceSession",
    "SessionConfig",
    "decode_profile",
]
