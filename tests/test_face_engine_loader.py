import pytest

from face_companion.exceptions import FaceEngineError, ModelLoadError
from face_companion.face_engine import load_face_engine


class FakeEngine:
    def __init__(self, device, weights_source):
        self.device = device
        self.weights_source = weights_source


def test_first_working_source_is_used():
    attempts = []

    def factory(device, weights_source):
        attempts.append(weights_source)
        if weights_source == "missing.pt":
            raise FaceEngineError("Embedder weights not found at missing.pt")
        return FakeEngine(device, weights_source)

    engine = load_face_engine(["missing.pt", "default"], attempts=3, device="cpu", factory=factory, sleep=lambda s: None)
    assert engine.weights_source == "default"
    assert attempts == ["missing.pt", "default"]


def test_later_round_can_succeed():
    calls = {"count": 0}
    sleeps = []

    def factory(device, weights_source):
        calls["count"] += 1
        if calls["count"] < 3:
            raise FaceEngineError("download interrupted")
        return FakeEngine(device, weights_source)

    engine = load_face_engine(["default"], attempts=3, retry_delay=0.5, device="cpu", factory=factory, sleep=sleeps.append)
    assert isinstance(engine, FakeEngine)
    assert sleeps == [0.5, 0.5]


def test_exhausted_sources_raise_session_fatal_error():
    def factory(device, weights_source):
        raise FaceEngineError(f"cannot load {weights_source}")

    with pytest.raises(ModelLoadError) as info:
        load_face_engine(["a.pt", "b.pt"], attempts=2, device="cpu", factory=factory, sleep=lambda s: None)

    message = str(info.value)
    assert "a.pt" in message and "b.pt" in message
    assert info.value.session_fatal is True


def test_no_sources_is_an_error():
    with pytest.raises(ModelLoadError):
        load_face_engine([], factory=FakeEngine, sleep=lambda s: None)
