from __future__ import annotations

from typing import Any, Protocol

import numpy as np
import numpy.typing as npt

# One acquisition's 1-D array of sensor samples (uint16, read-only).
IntensityProfile = npt.NDArray[np.uint16]


class SensorCore(Protocol):
    """Subset of Micro-Manager `CMMCore` used to drive the line sensor.

    A private `pymmcore.CMMCore` satisfies this directly; tests use
    `hardware.SimulatedSensorCore`.
    """

    def loadSystemConfiguration(self, path: str) -> None:
        """Load a Micro-Manager hardware configuration file."""

    def setCameraDevice(self, name: str) -> None:
        """Select the sensor used by `snapImage`."""

    def setProperty(self, device: str, key: str, value: Any) -> None:
        """Write a device property."""

    def snapImage(self) -> None:
        """Trigger one exposure."""

    def getImage(self) -> Any:
        """Return the raw buffer of the last snapped exposure."""

    def reset(self) -> None:
        """Unload all devices and return the core to its initial state."""


class StageInterface(Protocol):
    """Interface for an absolute Z stage controller."""

    def get_z_um(self) -> float:
        """Read current stage Z in microns."""

    def move_z_um(self, target_z_um: float) -> None:
        """Command stage to a new absolute Z position in microns."""
