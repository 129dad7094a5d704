"""Optical text extraction on a fixed pool of worker threads.

``OCRWorkerPool`` owns ``size`` long-lived worker tasks, each bound to its own
single-thread executor, and one bounded job queue. Idle workers pull the next
job, so load spreads across the pool; when the queue is full, submitters wait
for room instead of being dropped.

Each job races its own timeout from the moment a worker takes it; time spent
in the queue does not count. A worker whose job timed out takes no new job
until its thread is free again.

``TextExtractor`` puts a content-hash cache in front of the pool. The pool is
created lazily on the first extraction that misses the cache.
"""

from __future__ import annotations
import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
from PIL import Image

from .cache import TieredCache, image_content_hash
from .errors import ExtractionTimeout, InferenceError
from .imaging import to_pil
from .metrics import record_ocr_job
from .results import ExtractedText, OCRWord, clamp01

try:
    import pytesseract  # type: ignore
except Exception:
    pytesseract = None

DEFAULT_TIMEOUT = 30.0
DEFAULT_POOL_SIZE = 2

OCREngine = Callable[[Image.Image], Dict[str, Any]]


def tesseract_engine(language: str = "eng") -> OCREngine:
    """Returns an OCR engine backed by ``pytesseract``.

    The engine returns ``{"text", "confidence", "words"}`` with confidences in
    ``[0, 1]``.
    """

    def run(image: Image.Image) -> Dict[str, Any]:
        if pytesseract is None:
            raise InferenceError("pytesseract not installed")
        data = pytesseract.image_to_data(
            image, lang=language, config="--psm 3", output_type=pytesseract.Output.DICT
        )
        words = []
        for i, raw in enumerate(data["text"]):
            token = (raw or "").strip()
            conf = float(data["conf"][i])
            if not token or conf < 0:
                continue
            words.append(
                {
                    "text": token,
                    "confidence": conf / 100.0,
                    "bounding_box": {
                        "x": float(data["left"][i]),
                        "y": float(data["top"][i]),
                        "width": float(data["width"][i]),
                        "height": float(data["height"][i]),
                    },
                }
            )
        confidence = sum(w["confidence"] for w in words) / len(words) if words else 0.0
        return {
            "text": " ".join(w["text"] for w in words),
            "confidence": confidence,
            "words": words,
        }

    return run


def _normalize_output(raw: Dict[str, Any]) -> ExtractedText:
    """Builds an ``ExtractedText`` from engine output.

    Engines reporting 0-100 confidences (Tesseract style) are rescaled.
    """

    def unit(value: Any) -> float:
        value = float(value or 0.0)
        return clamp01(value / 100.0 if value > 1.0 else value)

    words = [
        OCRWord(
            text=str(w.get("text", "")),
            confidence=unit(w.get("confidence", 0.0)),
            bounding_box=dict(w.get("bounding_box") or {}),
        )
        for w in raw.get("words") or []
    ]
    return ExtractedText(
        text=str(raw.get("text") or ""),
        confidence=unit(raw.get("confidence", 0.0)),
        words=words,
    )


class OCRWorkerPool:
    """Fixed-size pool of OCR workers fed from one bounded queue."""

    def __init__(self, engine: OCREngine, size: int = DEFAULT_POOL_SIZE, queue_size: int = 16):
        if size < 1:
            raise ValueError("worker pool size must be >= 1")
        self.engine = engine
        self.size = size
        self.queue_size = queue_size
        self.jobs_dispatched = 0
        self.jobs_per_worker: List[int] = [0] * size
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._executors: List[ThreadPoolExecutor] = []
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Spawns the worker tasks on the running event loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._executors = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ocr-worker-{i}")
            for i in range(self.size)
        ]
        self._workers = [
            asyncio.create_task(self._work(i), name=f"ocr-worker-{i}")
            for i in range(self.size)
        ]
        self.logger.info(f"Started {self.size} OCR workers")

    async def submit(
        self, image: Image.Image, timeout: Optional[float] = None
    ) -> asyncio.Future:
        """Queues an extraction job and returns the future for its result.

        Waits while the queue is full. The future fails with
        ``ExtractionTimeout`` when the engine runs longer than ``timeout``.
        """
        if not self.running:
            self.start()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((image, timeout, future))
        return future

    async def _work(self, index: int) -> None:
        loop = asyncio.get_running_loop()
        executor = self._executors[index]
        while True:
            image, timeout, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                self.jobs_dispatched += 1
                self.jobs_per_worker[index] += 1
                call = loop.run_in_executor(executor, self.engine, image)
                try:
                    raw = await asyncio.wait_for(asyncio.shield(call), timeout)
                except asyncio.TimeoutError:
                    if not future.done():
                        future.set_exception(
                            ExtractionTimeout(f"OCR timed out after {timeout}s")
                        )
                    await asyncio.gather(call, return_exceptions=True)
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(raw)
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """Stops the workers and shuts their threads down."""
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        for executor in self._executors:
            executor.shutdown(wait=False, cancel_futures=True)
        self._executors = []
        self._queue = None


class TextExtractor:
    """Extracts text from images through the worker pool, with caching."""

    def __init__(
        self,
        engine: Optional[OCREngine] = None,
        pool_size: int = DEFAULT_POOL_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
        cache: Optional[TieredCache] = None,
        queue_size: int = 16,
    ):
        self.engine = engine or tesseract_engine()
        self.pool = OCRWorkerPool(self.engine, size=pool_size, queue_size=queue_size)
        self.timeout = timeout
        self.cache = cache if cache is not None else TieredCache("ocr", maxsize=256)
        self.logger = logging.getLogger(self.__class__.__name__)

    async def extract(self, image: Any) -> ExtractedText:
        """Extracts text from ``image``.

        Raises:
            InputValidationError: For unsupported input.
            ExtractionTimeout: When the job exceeds ``timeout`` seconds.
            InferenceError: When the OCR engine fails.
        """
        start = time.perf_counter()
        img = to_pil(image)
        key = image_content_hash(np.asarray(img, dtype=np.uint8))
        cached = await self.cache.get(key)
        if cached is not None:
            result = ExtractedText.from_dict(cached)
            result.cache_hit = True
            return result

        future = await self.pool.submit(img, self.timeout)
        try:
            raw = await future
        except ExtractionTimeout:
            record_ocr_job("timeout")
            self.logger.warning(f"OCR job timed out after {self.timeout}s")
            raise
        except Exception as e:
            record_ocr_job("error")
            raise InferenceError(f"OCR failed: {e}") from e
        record_ocr_job("ok")

        result = _normalize_output(raw)
        result.processing_time_ms = (time.perf_counter() - start) * 1000
        await self.cache.put(key, result.to_dict())
        return result

    async def extract_many(self, images: Sequence[Any]) -> List[ExtractedText]:
        """Extracts every image concurrently; failures become empty results."""

        async def one(image):
            try:
                return await self.extract(image)
            except (ExtractionTimeout, InferenceError) as e:
                return ExtractedText.failed(str(e))

        return list(await asyncio.gather(*(one(i) for i in images)))

    def describe(self) -> Dict[str, Any]:
        return {
            "pool_size": self.pool.size,
            "running": self.pool.running,
            "jobs_dispatched": self.pool.jobs_dispatched,
            "cached_entries": len(self.cache),
            "tesseract_installed": pytesseract is not None,
        }

    async def close(self) -> None:
        await self.pool.close()
