"""Micro-Manager integration for focus-lock.

The line sensor runs on a private MMCore (`pymmcore.CMMCore`) so its
snapshots never disturb the main acquisition. The focus stage is driven
through the core of the running Micro-Manager GUI, reached via pycromanager,
or through any core exposing `getPosition` / `setPosition`.
"""

from __future__ import annotations

import logging
from typing import Any

from .interfaces import StageInterface

logger = logging.getLogger(__name__)


class MicroManagerStage(StageInterface):
    """Z stage adapter that goes through Micro-Manager's device layer."""

    def __init__(
        self,
        core: Any,
        z_stage_name: str | None = None,
        wait_for_device: bool = True,
    ) -> None:
        self._core = core
        self._wait_for_device = wait_for_device
        self._z_name = z_stage_name or core.getFocusDevice()
        if not self._z_name:
            raise RuntimeError("Could not find focus stage: no focus device configured in Micro-Manager")

    @property
    def name(self) -> str:
        return self._z_name

    def get_z_um(self) -> float:
        return float(self._core.getPosition(self._z_name))

    def move_z_um(self, target_z_um: float) -> None:
        self._core.setPosition(self._z_name, target_z_um)
        if self._wait_for_device:
            self._core.waitForDevice(self._z_name)


def create_sensor_core() -> Any:
    """Create a private MMCore for the line sensor.

    Supports both modern `pymmcore` and legacy `MMCorePy` module names.
    """
    for module_name in ("pymmcore", "MMCorePy"):
        try:
            module = __import__(module_name)
        except ImportError:
            continue

        core_ctor = getattr(module, "CMMCore", None)
        if not callable(core_ctor):
            continue
        try:
            return core_ctor()
        except Exception as exc:
            logger.warning("Could not construct %s.CMMCore: %s", module_name, exc)
            continue
    raise RuntimeError(
        "Could not create a private MMCore. Install pymmcore (pip install pymmcore) "
        "and make sure the Micro-Manager device adapters are on the search path."
    )


def connect_studio_core(host: str = "localhost", port: int = 4827) -> Any:
    """Attach to the core of a running Micro-Manager GUI through pycromanager."""
    try:
        from pycromanager import Core
    except ImportError as exc:
        raise RuntimeError("pycromanager is required to attach to a running Micro-Manager") from exc

    try:
        core = Core(host=host, port=port)
        core.getVersionInfo()
        return core
    except Exception as exc:
        logger.debug("pycromanager Core(host=%s, port=%d) failed: %s", host, port, exc)

    try:
        core = Core()
        core.getVersionInfo()
        return core
    except Exception as exc:
        raise RuntimeError(
            "Could not connect to Micro-Manager. Make sure Micro-Manager is running with the "
            "pycromanager bridge enabled (Tools -> Options -> Run server on port).\n"
            f"  Tried pycromanager at {host}:{port} and default Core()"
        ) from exc
