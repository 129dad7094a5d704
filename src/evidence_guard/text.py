"""Explicit-text classification for messages and OCR output.

Every message gets a deterministic keyword/pattern score. When a learned
classifier is loaded it runs as well and both signals are fused:

1. keyword path flags explicit: trust it, confidence is the larger of the
   keyword confidence and the model's explicit signal;
2. otherwise the model's explicit signal above the threshold flags explicit;
3. otherwise the message is safe with the model's safe signal.

Without a model (or when it fails) the keyword result is returned as is.
Results are cached per normalized message and keyword set, so a changed
keyword list never reuses a verdict stored under the old one.
"""

from __future__ import annotations
import hashlib
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from .cache import TieredCache, text_hash
from .config import DEFAULT_CONFIG
from .errors import UnsupportedInputType
from .metrics import record_fallback
from .results import ExplicitTextResult, TextMethod, clamp01

EMPTY_TEXT_CONFIDENCE = 0.9
EXPLICIT_RATIO = 0.1
PATTERN_WEIGHT = 2
MODEL_THRESHOLD = 0.7
MODEL_INPUT_CHARS = 4000

EXPLICIT_MODEL_LABELS = {"NSFW", "LABEL_1", "EXPLICIT", "TOXIC", "NEGATIVE"}

WORD_SPLIT_RE = re.compile(r"\s+")
PUNCT_RE = re.compile(r"[^\w']")


def model_signals(predictions: Any) -> Tuple[float, float]:
    """Turns classifier output into ``(explicit_signal, safe_signal)``.

    Accepts the ``transformers`` text-classification shape: a list with one
    ``{"label", "score"}`` dict per input, or a list of such lists when the
    pipeline returns all labels.
    """
    preds = predictions
    if isinstance(preds, list) and preds and isinstance(preds[0], list):
        preds = preds[0]
    if isinstance(preds, dict):
        preds = [preds]
    explicit = None
    safe = None
    for pred in preds or []:
        label = str(pred.get("label", "")).upper()
        score = clamp01(pred.get("score", 0.0))
        if label in EXPLICIT_MODEL_LABELS:
            explicit = max(explicit or 0.0, score)
        else:
            safe = max(safe or 0.0, score)
    if explicit is None and safe is None:
        raise ValueError("classifier returned no labels")
    if explicit is None:
        explicit = 1.0 - safe
    if safe is None:
        safe = 1.0 - explicit
    return explicit, safe


def _word_hits(words: Iterable[str], keywords: Sequence[str]) -> Tuple[int, List[str]]:
    """Counts keyword substring hits in punctuation-stripped words."""
    count = 0
    matched: List[str] = []
    for word in words:
        clean = PUNCT_RE.sub("", word)
        if not clean:
            continue
        for kw in keywords:
            if kw in clean:
                count += 1
                if kw not in matched:
                    matched.append(kw)
    return count, matched


class KeywordMatcher:
    """Deterministic explicit-term and phrase matcher."""

    def __init__(
        self,
        keywords: Iterable[str],
        patterns: Iterable[str],
        positive_keywords: Iterable[str] = (),
    ):
        self.keywords: List[str] = []
        self.positive_keywords: List[str] = []
        self.update_keywords(keywords)
        self.update_positive_keywords(positive_keywords)
        self.patterns: List[Pattern] = [re.compile(p, re.IGNORECASE) for p in patterns]

    @staticmethod
    def _merge(target: List[str], keywords: Iterable[str]) -> None:
        seen = set(target)
        for kw in keywords:
            kw = kw.strip().lower()
            if kw and kw not in seen:
                target.append(kw)
                seen.add(kw)

    def update_keywords(self, keywords: Iterable[str]) -> None:
        self._merge(self.keywords, keywords)

    def update_positive_keywords(self, keywords: Iterable[str]) -> None:
        self._merge(self.positive_keywords, keywords)

    @property
    def signature(self) -> str:
        """Short digest of the rule set; changes whenever a list changes."""
        digest = hashlib.sha256()
        for group in (
            sorted(self.keywords),
            [p.pattern for p in self.patterns],
            sorted(self.positive_keywords),
        ):
            digest.update("\x1f".join(group).encode("utf-8"))
            digest.update(b"\x1e")
        return digest.hexdigest()[:16]

    def score(self, text: str) -> Tuple[int, int, List[str]]:
        """Scores lower-cased ``text``.

        Returns:
            ``(matches, word_count, matched_terms)`` where ``matches`` counts
            keyword substring hits per word plus two per pattern hit.
        """
        words = [w for w in WORD_SPLIT_RE.split(text) if w]
        matches, matched = _word_hits(words, self.keywords)
        for pattern in self.patterns:
            hits = pattern.findall(text)
            if hits:
                matches += PATTERN_WEIGHT * len(hits)
                phrase = pattern.search(text).group(0)
                if phrase not in matched:
                    matched.append(phrase)
        return matches, max(1, len(words)), matched

    def positive(self, text: str) -> Tuple[int, List[str]]:
        """Counts relationship-positive keyword hits per word."""
        return _word_hits(WORD_SPLIT_RE.split(text), self.positive_keywords)

    def classify(self, text: str) -> ExplicitTextResult:
        matches, word_count, matched = self.score(text)
        ratio = matches / word_count
        is_explicit = matches > 0 and (ratio > EXPLICIT_RATIO or matches >= 2)
        confidence = min(1.0, ratio * 2 + matches * 0.3)
        if not is_explicit:
            confidence = max(0.1, 1.0 - confidence)
        positives, positive_terms = self.positive(text)
        reasoning = (
            f"Keyword analysis: {matches} explicit matches, "
            f"{positives} positive terms in {word_count} words"
        )
        if positive_terms:
            reasoning += f" (positive: {', '.join(positive_terms[:3])})"
        return ExplicitTextResult(
            is_explicit=is_explicit,
            confidence=confidence,
            method=TextMethod.KEYWORD_FALLBACK,
            matched_terms=matched,
            reasoning=reasoning,
        )


class ExplicitTextClassifier:
    """Classifies text as explicit, fusing a model with keyword matching."""

    def __init__(
        self,
        runtime=None,
        cache: Optional[TieredCache] = None,
        keywords: Optional[Sequence[str]] = None,
        patterns: Optional[Sequence[str]] = None,
        model_threshold: float = MODEL_THRESHOLD,
        positive_keywords: Optional[Sequence[str]] = None,
    ):
        self.runtime = runtime
        self.cache = cache if cache is not None else TieredCache("text", maxsize=500)
        self.matcher = KeywordMatcher(
            keywords if keywords is not None else DEFAULT_CONFIG["explicit_keywords"],
            patterns if patterns is not None else DEFAULT_CONFIG["explicit_patterns"],
            positive_keywords
            if positive_keywords is not None
            else DEFAULT_CONFIG["positive_keywords"],
        )
        self.model_threshold = model_threshold
        self.logger = logging.getLogger(self.__class__.__name__)

    async def classify(self, text: str) -> ExplicitTextResult:
        """Classifies one message.

        Raises:
            UnsupportedInputType: When ``text`` is not a string.
        """
        if not isinstance(text, str):
            raise UnsupportedInputType(f"Expected text, got {type(text).__name__}")
        normalized = text.strip().lower()
        if not normalized:
            return ExplicitTextResult(
                is_explicit=False,
                confidence=EMPTY_TEXT_CONFIDENCE,
                method=TextMethod.KEYWORD_FALLBACK,
                reasoning="Empty text",
            )
        key = text_hash(normalized, self.matcher.signature)
        cached = await self.cache.get(key)
        if cached is not None:
            return ExplicitTextResult.from_dict(cached)

        keyword = self.matcher.classify(normalized)
        result = await self._fuse(normalized, keyword)
        await self.cache.put(key, result.to_dict())
        return result

    async def _fuse(self, text: str, keyword: ExplicitTextResult) -> ExplicitTextResult:
        if self.runtime is None or not await self.runtime.ensure_loaded():
            record_fallback("text_classification")
            return keyword
        try:
            predictions = await self.runtime.infer(text[:MODEL_INPUT_CHARS], truncation=True)
            explicit, safe = model_signals(predictions)
        except Exception as e:
            self.logger.error(f"Text classification model failed ({e}); keywords only")
            record_fallback("text_classification")
            return keyword

        if keyword.is_explicit:
            return ExplicitTextResult(
                is_explicit=True,
                confidence=max(keyword.confidence, explicit),
                method=TextMethod.FUSED,
                matched_terms=keyword.matched_terms,
                reasoning=f"{keyword.reasoning}; model explicit signal {explicit:.2f}",
            )
        if explicit > self.model_threshold:
            return ExplicitTextResult(
                is_explicit=True,
                confidence=explicit,
                method=TextMethod.MODEL,
                matched_terms=keyword.matched_terms,
                reasoning=f"Model flagged explicit content ({round(explicit * 100)}%)",
            )
        return ExplicitTextResult(
            is_explicit=False,
            confidence=safe,
            method=TextMethod.MODEL,
            matched_terms=keyword.matched_terms,
            reasoning=f"Model rated content safe ({round(safe * 100)}%)",
        )

    async def classify_batch(self, texts: Sequence[str]) -> List[ExplicitTextResult]:
        """Classifies messages in order."""
        return [await self.classify(t) for t in texts]

    async def filter_messages(self, messages: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Returns the messages whose ``text`` is not explicit, annotated."""
        kept = []
        for message in messages:
            result = await self.classify(message.get("text") or "")
            if not result.is_explicit:
                kept.append({**message, "classification": result})
        return kept

    def update_keywords(self, keywords: Iterable[str]) -> None:
        """Adds explicit keywords.

        Later lookups use a new cache namespace, so verdicts stored in any tier
        under the old keyword set are not served again.
        """
        self.matcher.update_keywords(keywords)
        self.cache.clear()

    def update_positive_keywords(self, keywords: Iterable[str]) -> None:
        self.matcher.update_positive_keywords(keywords)
        self.cache.clear()

    def describe(self) -> Dict[str, Any]:
        return {
            "method": "fused" if self.runtime is not None else "keyword",
            "model": self.runtime.describe() if self.runtime is not None else None,
            "explicit_keywords": len(self.matcher.keywords),
            "positive_keywords": len(self.matcher.positive_keywords),
            "patterns": len(self.matcher.patterns),
            "cached_entries": len(self.cache),
        }
