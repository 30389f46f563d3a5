from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np

from .interfaces import IntensityProfile


class NotConnectedError(RuntimeError):
    pass


@dataclass(slots=True)
class SimulatedLineScene:
    """Reflected-beam line profile whose peak moves with defocus.

    The peak sits at `center_px + px_per_um * (stage_z_um - sample_z_um)`,
    so moving the stage by +1 um shifts it by `px_per_um` pixels and the
    calibration slope is `1 / px_per_um` um per pixel.
    """

    pixels: int = 128
    amplitude: float = 3000.0
    center_px: float = 63.5
    sigma_px: float = 5.0
    px_per_um: float = 10.0
    background: float = 0.0
    bit_depth: int = 12

    def peak_px(self, stage_z_um: float, sample_z_um: float = 0.0) -> float:
        return self.center_px + self.px_per_um * (stage_z_um - sample_z_um)

    def render_profile(self, stage_z_um: float, sample_z_um: float = 0.0) -> IntensityProfile:
        x = np.arange(self.pixels, dtype=float)
        mu = self.peak_px(stage_z_um, sample_z_um)
        values = self.background + self.amplitude * np.exp(-((x - mu) ** 2) / (2.0 * self.sigma_px**2))
        full_scale = float(2**self.bit_depth - 1)
        return np.clip(np.rint(values), 0.0, full_scale).astype(np.uint16)


class SimulatedSensorCore:
    """In-memory stand-in for a Micro-Manager core driving a line sensor and a Z stage.

    Fault injection:
    - `fail_next_snaps`: number of upcoming `snapImage` calls that raise.
    - `fail_config_load`: make `loadSystemConfiguration` raise.
    - `fail_set_property` / `fail_reset`: make those calls raise.
    - `image_format`: "bytes" (little-endian byte-packed, like the
      reference sensor), "words" (uint16 array) or any other object to
      return verbatim.
    `sample_drift_um_per_snap` moves the simulated sample on every snapshot.
    """

    def __init__(
        self,
        scene: SimulatedLineScene | None = None,
        *,
        camera_name: str = "gFocus Light Sensor",
        focus_device: str = "Z",
        image_format: Any = "bytes",
    ) -> None:
        self.scene = scene or SimulatedLineScene()
        self.camera_name = camera_name
        self.focus_device = focus_device
        self.image_format = image_format
        self.sample_z_um = 0.0
        self.sample_drift_um_per_snap = 0.0
        self.positions: dict[str, float] = {focus_device: 0.0}
        self.properties: dict[tuple[str, str], Any] = {}
        self.loaded_config: str | None = None
        self.camera_device: str | None = None

        self.fail_next_snaps = 0
        self.fail_config_load = False
        self.fail_set_property = False
        self.fail_reset = False

        self.snap_calls = 0
        self.reset_calls = 0
        self.property_writes: list[tuple[str, str, Any]] = []
        self._last_image: IntensityProfile | None = None

    def loadSystemConfiguration(self, path: str) -> None:
        if self.fail_config_load:
            raise RuntimeError(f"Failed to load system configuration {path}")
        self.loaded_config = path

    def setCameraDevice(self, name: str) -> None:
        if self.loaded_config is None:
            raise NotConnectedError("No configuration loaded")
        if name != self.camera_name:
            raise RuntimeError(f"No device with label {name!r}")
        self.camera_device = name

    def setProperty(self, device: str, key: str, value: Any) -> None:
        if self.fail_set_property:
            raise RuntimeError(f"Property {key!r} not writable")
        self.properties[(device, key)] = value
        self.property_writes.append((device, key, value))

    def getProperty(self, device: str, key: str) -> Any:
        return self.properties[(device, key)]

    def reset(self) -> None:
        self.reset_calls += 1
        if self.fail_reset:
            raise RuntimeError("Core reset failed")
        self.loaded_config = None
        self.camera_device = None
        self.properties.clear()

    def snapImage(self) -> None:
        self.snap_calls += 1
        if self.camera_device is None:
            raise NotConnectedError("No camera device selected")
        if self.fail_next_snaps > 0:
            self.fail_next_snaps -= 1
            raise RuntimeError("Snap timed out")
        self.sample_z_um += self.sample_drift_um_per_snap
        self._last_image = self.scene.render_profile(self.positions[self.focus_device], self.sample_z_um)

    def getImage(self) -> Any:
        if self._last_image is None:
            raise RuntimeError("No image snapped")
        if self.image_format == "bytes":
            return self._last_image.astype("<u2").tobytes()
        if self.image_format == "words":
            return self._last_image.copy()
        return self.image_format

    def getFocusDevice(self) -> str:
        return self.focus_device

    def getPosition(self, label: str) -> float:
        return self.positions[label]

    def setPosition(self, label: str, z_um: float) -> None:
        if label not in self.positions:
            raise RuntimeError(f"No stage with label {label!r}")
        self.positions[label] = float(z_um)

    def waitForDevice(self, label: str) -> None:
        return None


class SimulatedZStage:
    """In-memory stage with optional injected read/write failures."""

    def __init__(self, z_um: float = 0.0) -> None:
        self._z_um = z_um
        self.fail_reads = False
        self.fail_moves = False
        self.moves: list[float] = []

    def get_z_um(self) -> float:
        if self.fail_reads:
            raise RuntimeError("Stage position unavailable")
        return self._z_um

    def move_z_um(self, target_z_um: float) -> None:
        if self.fail_moves:
            raise RuntimeError(f"Stage rejected move to {target_z_um:+0.4f} um")
        self.moves.append(target_z_um)
        self._z_um = target_z_um
