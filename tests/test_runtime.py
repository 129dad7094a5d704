"""Tests for the lazy model runtime."""
import asyncio
import threading
import time

import pytest

from evidence_guard import runtime as runtime_module
from evidence_guard.errors import InferenceError, ModelLoadError
from evidence_guard.runtime import ModelRuntime, ModelStatus, hf_pipeline_loader, onnx_loader


class SlowLoader:
    def __init__(self, fail_times=0, delay=0.05):
        self.calls = 0
        self.fail_times = fail_times
        self.delay = delay
        self.lock = threading.Lock()

    def __call__(self):
        with self.lock:
            self.calls += 1
            call = self.calls
        time.sleep(self.delay)
        if call <= self.fail_times:
            raise OSError("weights not found")
        return lambda x: x * 2


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_attempt():
    loader = SlowLoader()
    rt = ModelRuntime("m", loader)
    statuses = await asyncio.gather(*(rt.load() for _ in range(5)))
    assert statuses == [ModelStatus.LOADED] * 5
    assert loader.calls == 1
    assert await rt.infer(21) == 42


@pytest.mark.asyncio
async def test_status_while_loading():
    rt = ModelRuntime("m", SlowLoader(delay=0.1))
    assert rt.status() is ModelStatus.UNLOADED
    task = asyncio.ensure_future(rt.load())
    await asyncio.sleep(0.02)
    assert rt.status() is ModelStatus.LOADING
    await task
    assert rt.status() is ModelStatus.LOADED


@pytest.mark.asyncio
async def test_failure_is_sticky_until_explicit_reload():
    loader = SlowLoader(fail_times=1, delay=0)
    rt = ModelRuntime("m", loader)
    assert await rt.ensure_loaded() is False
    assert rt.status() is ModelStatus.FAILED
    assert isinstance(rt.last_error, ModelLoadError)
    assert await rt.ensure_loaded() is False
    assert loader.calls == 1
    assert await rt.load() is ModelStatus.LOADED
    assert loader.calls == 2


@pytest.mark.asyncio
async def test_model_property_requires_loaded():
    rt = ModelRuntime("m", SlowLoader(delay=0))
    with pytest.raises(ModelLoadError):
        rt.model
    with pytest.raises(ModelLoadError):
        await rt.infer(1)


@pytest.mark.asyncio
async def test_infer_wraps_model_errors():
    def explode(x):
        raise RuntimeError("shape mismatch")

    rt = ModelRuntime("m", lambda: explode)
    await rt.load()
    with pytest.raises(InferenceError, match="shape mismatch"):
        await rt.infer(1)


@pytest.mark.asyncio
async def test_unload_releases_model():
    released = []
    rt = ModelRuntime("m", lambda: "model", disposer=released.append)
    await rt.load()
    rt.unload()
    assert released == ["model"]
    assert rt.status() is ModelStatus.UNLOADED
    assert rt.describe()["status"] == "unloaded"


def test_onnx_loader_without_path():
    with pytest.raises(ModelLoadError):
        onnx_loader(None)()


def test_hf_loader_without_transformers(monkeypatch):
    monkeypatch.setattr(runtime_module, "_hf_pipeline", None)
    with pytest.raises(ModelLoadError):
        hf_pipeline_loader("text-classification", "some/model")()
