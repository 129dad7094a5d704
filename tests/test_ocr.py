"""Tests for the OCR worker pool and text extractor."""
import numpy as np
import pytest

from evidence_guard.cache import TieredCache
from evidence_guard.errors import ExtractionTimeout, InferenceError, UnsupportedInputType
from evidence_guard.ocr import OCRWorkerPool, TextExtractor, _normalize_output
from evidence_guard.results import Source

from conftest import FakeOCREngine


def solid(value):
    return np.full((40, 60, 3), value, dtype=np.uint8)


def test_normalize_rescales_percent_confidences():
    result = _normalize_output(
        {
            "text": "hello world",
            "confidence": 87,
            "words": [{"text": "hello", "confidence": 90}, {"text": "world", "confidence": 0.5}],
        }
    )
    assert result.confidence == pytest.approx(0.87)
    assert [w.confidence for w in result.words] == pytest.approx([0.9, 0.5])
    assert result.word_count == 2


def test_pool_rejects_empty_size():
    with pytest.raises(ValueError):
        OCRWorkerPool(FakeOCREngine(), size=0)


class TestTextExtractor:
    """Tests for caching, timeouts and scheduling."""

    @pytest.mark.asyncio
    async def test_extract_returns_words(self):
        extractor = TextExtractor(engine=FakeOCREngine("meet me at noon"))
        try:
            result = await extractor.extract(solid(10))
        finally:
            await extractor.close()
        assert result.text == "meet me at noon"
        assert result.word_count == 4
        assert result.words[1].bounding_box["x"] == 10.0
        assert result.cache_hit is False
        assert 0.0 <= result.confidence <= 1.0

    @pytest.mark.asyncio
    async def test_second_extraction_hits_cache(self):
        engine = FakeOCREngine("happy anniversary")
        extractor = TextExtractor(engine=engine)
        try:
            first = await extractor.extract(solid(50))
            second = await extractor.extract(solid(50))
        finally:
            await extractor.close()
        assert first.cache_hit is False
        assert second.cache_hit is True
        assert second.text == first.text
        assert engine.calls == 1
        assert extractor.pool.jobs_dispatched == 1

    @pytest.mark.asyncio
    async def test_cache_expiry_dispatches_again(self):
        now = [1000.0]
        engine = FakeOCREngine("hi")
        cache = TieredCache("ocr", ttl=60, clock=lambda: now[0])
        extractor = TextExtractor(engine=engine, cache=cache)
        try:
            await extractor.extract(solid(70))
            now[0] += 61
            again = await extractor.extract(solid(70))
        finally:
            await extractor.close()
        assert again.cache_hit is False
        assert engine.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        extractor = TextExtractor(engine=FakeOCREngine("slow", delay=0.3), timeout=0.05)
        try:
            with pytest.raises(ExtractionTimeout):
                await extractor.extract(solid(90))
        finally:
            await extractor.close()

    @pytest.mark.asyncio
    async def test_timeout_is_a_builtin_timeout(self):
        extractor = TextExtractor(engine=FakeOCREngine("slow", delay=0.3), timeout=0.05)
        try:
            with pytest.raises(TimeoutError):
                await extractor.extract(solid(91))
        finally:
            await extractor.close()

    @pytest.mark.asyncio
    async def test_engine_error_raises_inference_error(self):
        extractor = TextExtractor(engine=FakeOCREngine(error=RuntimeError("tesseract missing")))
        try:
            with pytest.raises(InferenceError):
                await extractor.extract(solid(110))
        finally:
            await extractor.close()

    @pytest.mark.asyncio
    async def test_jobs_spread_across_workers(self):
        engine = FakeOCREngine("x", delay=0.05)
        extractor = TextExtractor(engine=engine, pool_size=2)
        try:
            results = await extractor.extract_many([solid(v) for v in (1, 2, 3, 4)])
        finally:
            await extractor.close()
        assert len(results) == 4
        assert extractor.pool.jobs_dispatched == 4
        assert all(count > 0 for count in extractor.pool.jobs_per_worker)

    @pytest.mark.asyncio
    async def test_saturated_queue_does_not_drop_jobs(self):
        engine = FakeOCREngine("queued", delay=0.02)
        extractor = TextExtractor(engine=engine, pool_size=1, queue_size=1)
        try:
            results = await extractor.extract_many([solid(v) for v in range(120, 125)])
        finally:
            await extractor.close()
        assert [r.text for r in results] == ["queued"] * 5
        assert engine.calls == 5

    @pytest.mark.asyncio
    async def test_queue_wait_does_not_count_against_timeout(self):
        engine = FakeOCREngine("hello", delay=0.2)
        extractor = TextExtractor(engine=engine, pool_size=1, timeout=0.3)
        try:
            results = await extractor.extract_many([solid(v) for v in (130, 131, 132)])
        finally:
            await extractor.close()
        assert [r.text for r in results] == ["hello"] * 3
        assert [r.error for r in results] == [None] * 3
        assert engine.calls == 3

    @pytest.mark.asyncio
    async def test_extract_many_turns_failures_into_empty_results(self):
        extractor = TextExtractor(engine=FakeOCREngine(error=RuntimeError("boom")))
        try:
            results = await extractor.extract_many([solid(200)])
        finally:
            await extractor.close()
        assert results[0].text == ""
        assert results[0].confidence == 0.0
        assert results[0].source is Source.ERROR

    @pytest.mark.asyncio
    async def test_rejects_unsupported_input(self):
        extractor = TextExtractor(engine=FakeOCREngine("x"))
        with pytest.raises(UnsupportedInputType):
            await extractor.extract(42)
        assert extractor.pool.running is False

    @pytest.mark.asyncio
    async def test_describe(self):
        extractor = TextExtractor(engine=FakeOCREngine("x"), pool_size=3)
        try:
            await extractor.extract(solid(5))
            info = extractor.describe()
        finally:
            await extractor.close()
        assert info["pool_size"] == 3
        assert info["running"] is True
        assert info["cached_entries"] == 1
