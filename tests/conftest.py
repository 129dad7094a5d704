"""Shared fakes and factories for the evidence guard tests."""
import io
import threading
import time

import numpy as np
import pytest
import pytest_asyncio
from PIL import Image

from evidence_guard.detection import PersonDetector
from evidence_guard.identity import IdentityMatcher
from evidence_guard.nsfw import ExplicitImageClassifier
from evidence_guard.ocr import TextExtractor
from evidence_guard.pipeline import EvidenceFilter
from evidence_guard.runtime import ModelRuntime
from evidence_guard.text import ExplicitTextClassifier


class CountingModel:
    """Callable model returning a fixed output and counting its calls."""

    def __init__(self, output=None, error=None):
        self.output = output
        self.error = error
        self.calls = 0
        self.last_kwargs = {}
        self.lock = threading.Lock()

    def __call__(self, *args, **kwargs):
        with self.lock:
            self.calls += 1
            self.last_kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.output


class FakeOCREngine:
    """OCR engine stand-in returning a fixed text."""

    def __init__(self, text="", confidence=0.9, delay=0.0, error=None):
        self.text = text
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.calls = 0
        self.lock = threading.Lock()

    def __call__(self, image):
        with self.lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        words = [
            {
                "text": w,
                "confidence": self.confidence,
                "bounding_box": {"x": 10.0 * i, "y": 0.0, "width": 8.0, "height": 12.0},
            }
            for i, w in enumerate(self.text.split())
        ]
        return {"text": self.text, "confidence": self.confidence, "words": words}


def runtime_for(model, name="fake"):
    """Wraps an in-memory model in a ``ModelRuntime``."""
    return ModelRuntime(name, lambda: model)


def person_row(cx, cy, w, h, objectness=0.9, class_prob=1.0):
    return [cx, cy, w, h, objectness, class_prob]


def nsfw_output(porn=0.0, explicit=0.0, suggestive=0.0, safe=1.0):
    return [
        {"label": "porn", "score": porn},
        {"label": "hentai", "score": explicit},
        {"label": "sexy", "score": suggestive},
        {"label": "neutral", "score": safe},
    ]


def png_bytes(color=(120, 130, 140), size=(48, 48)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def square_image():
    """A flat grey 640x640 RGB buffer (letterboxed without padding)."""
    return np.full((640, 640, 3), 128, dtype=np.uint8)


@pytest_asyncio.fixture
async def make_filter():
    """Factory for ``EvidenceFilter`` instances wired with fakes.

    Filters built here are closed when the test finishes.
    """
    created = []

    def factory(
        config=None,
        person_model=None,
        nsfw_model=None,
        text_model=None,
        ocr_engine=None,
        ocr_timeout=5.0,
    ):
        detector = PersonDetector(runtime=runtime_for(person_model) if person_model else None)
        image_classifier = ExplicitImageClassifier(
            runtime=runtime_for(nsfw_model) if nsfw_model else None
        )
        extractor = TextExtractor(
            engine=ocr_engine or FakeOCREngine(""), pool_size=2, timeout=ocr_timeout
        )
        text_classifier = ExplicitTextClassifier(
            runtime=runtime_for(text_model) if text_model else None
        )
        evidence_filter = EvidenceFilter(
            config or {},
            detector,
            image_classifier,
            extractor,
            text_classifier,
            identity_matcher=IdentityMatcher(),
        )
        created.append(evidence_filter)
        return evidence_filter

    yield factory
    for evidence_filter in created:
        await evidence_filter.close()
