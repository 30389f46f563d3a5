import sys
from types import ModuleType, SimpleNamespace

import pytest

from focus_lock.micromanager import MicroManagerStage, connect_studio_core, create_sensor_core


class _FakeCore:
    def getVersionInfo(self):
        return "ok"


class _RemoteFailLocalOkCoreFactory:
    def __call__(self, *args, **kwargs):
        if "host" in kwargs or "port" in kwargs:
            raise RuntimeError("remote fail")
        return _FakeCore()


class _AlwaysFailCoreFactory:
    def __call__(self, *args, **kwargs):
        raise RuntimeError("all fail")


class _FakeStageCore:
    def __init__(self, focus_device: str = "ZDrive") -> None:
        self.focus_device = focus_device
        self.positions = {"ZDrive": 1.5, "Piezo": -2.0}
        self.waited: list[str] = []

    def getFocusDevice(self) -> str:
        return self.focus_device

    def getPosition(self, label: str) -> float:
        return self.positions[label]

    def setPosition(self, label: str, z_um: float) -> None:
        self.positions[label] = z_um

    def waitForDevice(self, label: str) -> None:
        self.waited.append(label)


def test_stage_defaults_to_core_focus_device() -> None:
    core = _FakeStageCore()
    stage = MicroManagerStage(core)

    stage.move_z_um(3.25)

    assert stage.name == "ZDrive"
    assert stage.get_z_um() == 3.25
    assert core.waited == ["ZDrive"]


def test_stage_uses_explicit_label_without_waiting() -> None:
    core = _FakeStageCore()
    stage = MicroManagerStage(core, z_stage_name="Piezo", wait_for_device=False)

    stage.move_z_um(0.5)

    assert stage.get_z_um() == 0.5
    assert core.positions["ZDrive"] == 1.5
    assert core.waited == []


def test_stage_requires_focus_device() -> None:
    with pytest.raises(RuntimeError, match="Could not find focus stage"):
        MicroManagerStage(_FakeStageCore(focus_device=""))


def test_create_sensor_core_prefers_pymmcore(monkeypatch):
    fake_pymmcore = ModuleType("pymmcore")
    fake_pymmcore.CMMCore = lambda: SimpleNamespace(source="pymmcore")
    monkeypatch.setitem(sys.modules, "pymmcore", fake_pymmcore)

    assert create_sensor_core().source == "pymmcore"


def test_create_sensor_core_falls_back_to_mmcorepy(monkeypatch):
    # A None entry makes `import pymmcore` raise ImportError.
    monkeypatch.setitem(sys.modules, "pymmcore", None)
    fake_mmcorepy = ModuleType("MMCorePy")
    fake_mmcorepy.CMMCore = lambda: SimpleNamespace(source="mmcorepy")
    monkeypatch.setitem(sys.modules, "MMCorePy", fake_mmcorepy)

    assert create_sensor_core().source == "mmcorepy"


def test_create_sensor_core_raises_when_no_binding(monkeypatch):
    monkeypatch.setitem(sys.modules, "pymmcore", None)
    monkeypatch.setitem(sys.modules, "MMCorePy", None)

    with pytest.raises(RuntimeError, match="Could not create a private MMCore"):
        create_sensor_core()


def test_connect_studio_core_falls_back_to_default_core(monkeypatch):
    fake_module = ModuleType("pycromanager")
    fake_module.Core = _RemoteFailLocalOkCoreFactory()
    monkeypatch.setitem(sys.modules, "pycromanager", fake_module)

    core = connect_studio_core(host="localhost", port=4827)

    assert isinstance(core, _FakeCore)


def test_connect_studio_core_raises_when_all_attempts_fail(monkeypatch):
    fake_module = ModuleType("pycromanager")
    fake_module.Core = _AlwaysFailCoreFactory()
    monkeypatch.setitem(sys.modules, "pycromanager", fake_module)

    with pytest.raises(RuntimeError, match="Could not connect to Micro-Manager"):
        connect_studio_core(host="scope-pc", port=4827)
