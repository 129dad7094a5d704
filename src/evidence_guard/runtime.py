"""Lazy model loading shared by the learned pipeline stages.

A ``ModelRuntime`` wraps a zero-argument loader that returns a callable model.
Loading runs in a worker thread; concurrent ``load()`` calls await the same
in-flight load. A failed load settles in ``FAILED`` and stays there until
``load()`` is called explicitly again, so the owning service keeps using its
fallback path in the meantime.

The module also provides default loaders for the optional model libraries.
When a library is missing the loader raises ``ModelLoadError``.
"""

from __future__ import annotations
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import InferenceError, ModelLoadError

# Optional model libraries; the loaders below raise ModelLoadError when absent
try:
    from transformers import pipeline as _hf_pipeline  # optional # type: ignore
except Exception:
    _hf_pipeline = None

try:
    import onnxruntime as _ort  # type: ignore
except Exception:
    _ort = None


class ModelStatus(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class ModelRuntime:
    """Lazily loads and owns one model instance."""

    def __init__(
        self,
        name: str,
        loader: Callable[[], Any],
        disposer: Optional[Callable[[Any], None]] = None,
    ):
        """Initializes the runtime.

        Args:
            name: Human-readable model name used in logs and status reports.
            loader: Returns the model; may block, runs in a worker thread.
            disposer: Releases native resources held by the model.
        """
        self.name = name
        self._loader = loader
        self._disposer = disposer
        self._model: Any = None
        self._status = ModelStatus.UNLOADED
        self._inflight: Optional[asyncio.Future] = None
        self.last_error: Optional[ModelLoadError] = None
        self.logger = logging.getLogger(f"{self.__class__.__name__}[{name}]")

    def status(self) -> ModelStatus:
        return self._status

    @property
    def model(self) -> Any:
        if self._status is not ModelStatus.LOADED:
            raise ModelLoadError(f"Model {self.name} is not loaded ({self._status.value})")
        return self._model

    async def load(self) -> ModelStatus:
        """Loads the model if needed and returns the settled status.

        Safe to call concurrently; callers share one in-flight load. Calling
        this on a ``FAILED`` runtime retries the load.
        """
        if self._status is ModelStatus.LOADED:
            return self._status
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._do_load())
        await asyncio.shield(self._inflight)
        return self._status

    async def _do_load(self) -> None:
        self._status = ModelStatus.LOADING
        self.last_error = None
        self.logger.info(f"Loading model {self.name}...")
        try:
            model = await asyncio.to_thread(self._loader)
        except Exception as e:
            self._model = None
            self._status = ModelStatus.FAILED
            self.last_error = e if isinstance(e, ModelLoadError) else ModelLoadError(str(e))
            self.logger.error(
                f"Failed to load model {self.name}: {e}. Proceeding with fallback."
            )
        else:
            self._model = model
            self._status = ModelStatus.LOADED
            self.logger.info(f"Model loaded: {self.name}")
        finally:
            self._inflight = None

    async def ensure_loaded(self) -> bool:
        """Loads on first use. Never retries a ``FAILED`` runtime."""
        if self._status is ModelStatus.FAILED:
            return False
        if self._status is not ModelStatus.LOADED:
            await self.load()
        return self._status is ModelStatus.LOADED

    async def infer(self, *args: Any, **kwargs: Any) -> Any:
        """Runs the loaded model in a worker thread.

        Raises:
            InferenceError: Wrapping whatever the model raised.
        """
        model = self.model
        try:
            return await asyncio.to_thread(model, *args, **kwargs)
        except Exception as e:
            raise InferenceError(f"{self.name} inference failed: {e}") from e

    def unload(self) -> None:
        """Releases the model; the next ``load()`` starts from scratch."""
        model, self._model = self._model, None
        if model is not None and self._disposer is not None:
            try:
                self._disposer(model)
            except Exception as e:
                self.logger.warning(f"Error releasing model {self.name}: {e}")
        self._status = ModelStatus.UNLOADED
        self.last_error = None

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self._status.value,
            "error": str(self.last_error) if self.last_error else None,
        }


def hf_pipeline_loader(task: str, model_name: str, **kwargs: Any) -> Callable[[], Any]:
    """Returns a loader building a ``transformers`` pipeline."""

    def load():
        if _hf_pipeline is None:
            raise ModelLoadError("transformers not installed")
        return _hf_pipeline(task, model=model_name, **kwargs)

    return load


class OnnxModel:
    """Callable wrapper around an ``onnxruntime`` session with one input."""

    def __init__(self, session):
        self.session = session
        self.input_name = session.get_inputs()[0].name
        input_type = (session.get_inputs()[0].type or "").lower()
        self.half = "float16" in input_type

    def __call__(self, tensor):
        if self.half:
            tensor = tensor.astype("float16")
        outputs: List[Any] = self.session.run(None, {self.input_name: tensor})
        return outputs[0]


def onnx_loader(model_path: Optional[str]) -> Callable[[], Any]:
    """Returns a loader opening an ONNX model on the CPU provider."""

    def load():
        if not model_path:
            raise ModelLoadError("no model path configured")
        if _ort is None:
            raise ModelLoadError("onnxruntime not installed")
        session = _ort.InferenceSession(model_path, providers=["CPUExecutionProvider"])
        return OnnxModel(session)

    return load
