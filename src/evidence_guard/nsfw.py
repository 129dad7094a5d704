"""Explicit-image classification.

Wraps an image-classification model returning ``[{"label", "score"}, ...]``
(the ``transformers`` pipeline shape). Labels from common NSFW model families
are folded into four categories: ``porn``, ``explicit``, ``suggestive`` and
``safe``. When the model is unavailable the classifier allows the image with a
fixed low confidence rather than blocking content it cannot evaluate.

Folded model scores are cached by image content hash. Thresholds are applied
after the lookup, so a threshold change takes effect on cached images too.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, Optional

import numpy as np

from .cache import TieredCache, image_content_hash
from .imaging import to_pil
from .metrics import record_fallback
from .results import ExplicitImageResult, Source, clamp01
from .runtime import ModelRuntime

CATEGORIES = ("porn", "explicit", "suggestive", "safe")
DEFAULT_THRESHOLDS = {"porn": 0.6, "explicit": 0.5, "suggestive": 0.7}
FALLBACK_CONFIDENCE = 0.3

LABEL_ALIASES = {
    "porn": "porn",
    "nsfw": "porn",
    "explicit": "explicit",
    "hentai": "explicit",
    "suggestive": "suggestive",
    "sexy": "suggestive",
    "safe": "safe",
    "normal": "safe",
    "neutral": "safe",
    "drawing": "safe",
    "drawings": "safe",
    "sfw": "safe",
}

CATEGORY_PHRASES = {
    "porn": "pornographic content",
    "explicit": "explicit nudity",
    "suggestive": "suggestive content",
}


def fold_predictions(predictions: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    """Maps raw model labels onto the four categories, summing duplicates."""
    scores = {c: 0.0 for c in CATEGORIES}
    for pred in predictions:
        label = str(pred.get("label", "")).strip().lower()
        category = LABEL_ALIASES.get(label)
        if category is None:
            continue
        scores[category] = clamp01(scores[category] + float(pred.get("score", 0.0)))
    return scores


class ExplicitImageClassifier:
    """Classifies images as explicit or safe with per-category thresholds."""

    def __init__(
        self,
        runtime: Optional[ModelRuntime] = None,
        thresholds: Optional[Dict[str, float]] = None,
        cache: Optional[TieredCache] = None,
    ):
        self.runtime = runtime
        self.cache = cache if cache is not None else TieredCache("nsfw", maxsize=256)
        self.thresholds = dict(DEFAULT_THRESHOLDS)
        if thresholds:
            self.update_thresholds(thresholds)
        self.logger = logging.getLogger(self.__class__.__name__)

    def update_thresholds(self, thresholds: Dict[str, float]) -> None:
        self.thresholds.update(
            {k: float(v) for k, v in thresholds.items() if k in DEFAULT_THRESHOLDS}
        )

    async def classify(self, image: Any) -> ExplicitImageResult:
        """Classifies ``image``.

        Raises:
            InputValidationError: For unsupported input.
        """
        img = to_pil(image)
        if self.runtime is None or not await self.runtime.ensure_loaded():
            return self.fallback_result("model not available")
        key = image_content_hash(np.asarray(img, dtype=np.uint8))
        scores = await self.cache.get(key)
        if scores is None:
            try:
                predictions = await self.runtime.infer(img)
            except Exception as e:
                self.logger.error(f"Image classification failed: {e}")
                return self.fallback_result(str(e))
            scores = fold_predictions(predictions)
            await self.cache.put(key, scores)
        return self.decide(scores)

    def decide(self, scores: Dict[str, float]) -> ExplicitImageResult:
        """Applies the thresholds to folded category scores."""
        triggered = {
            c: scores[c] for c in DEFAULT_THRESHOLDS if scores[c] > self.thresholds[c]
        }
        is_explicit = bool(triggered)
        confidence = max(triggered.values()) if is_explicit else scores["safe"]
        if is_explicit:
            reasons = [
                f"{CATEGORY_PHRASES[c]} ({round(s * 100)}%)" for c, s in triggered.items()
            ]
            reasoning = f"Blocked due to: {', '.join(reasons)}"
        else:
            reasoning = f"Safe content ({round(scores['safe'] * 100)}% confidence)"
        return ExplicitImageResult(
            is_explicit=is_explicit,
            confidence=round(clamp01(confidence), 2),
            category_scores=scores,
            reasoning=reasoning,
            source=Source.PRIMARY,
        )

    def fallback_result(self, reason: str) -> ExplicitImageResult:
        self.logger.warning(f"Using fallback image classification: {reason}")
        record_fallback("nsfw_detection")
        return ExplicitImageResult(
            is_explicit=False,
            confidence=FALLBACK_CONFIDENCE,
            category_scores={},
            reasoning=f"Model unavailable ({reason}) - content allowed by default",
            source=Source.FALLBACK,
        )

    def top_category(self, result: ExplicitImageResult) -> str:
        """Name of the highest-scoring non-safe category of ``result``."""
        flagged = {
            c: s for c, s in result.category_scores.items() if c in DEFAULT_THRESHOLDS
        }
        if not flagged:
            return "unknown"
        return max(flagged, key=flagged.get)
