"""Result types produced by the pipeline stages.

Every stage returns one of these dataclasses. Results are plain data: they are
serialized with ``to_dict``/``to_json`` and rebuilt from cached dictionaries
with ``from_dict``. Confidence values are always clamped into ``[0, 1]``.
"""

from __future__ import annotations
import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def clamp01(value: float) -> float:
    """Clamps a score into the closed unit interval."""
    return max(0.0, min(1.0, float(value)))


class Source(str, Enum):
    """Which path produced a stage result."""

    PRIMARY = "primary"
    FALLBACK = "fallback"
    ERROR = "error"


class TextMethod(str, Enum):
    MODEL = "model"
    KEYWORD_FALLBACK = "keyword_fallback"
    FUSED = "fused"


class ScanStatus(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class DetectionBox:
    """A detected region in top-left form, in source image pixels."""

    x: float
    y: float
    width: float
    height: float
    confidence: float
    label: str = "person"

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)


@dataclass
class DetectionResult:
    """Person/face detection outcome.

    Attributes:
        detected: True when at least one box survived.
        count: Number of boxes.
        boxes: The surviving boxes, highest confidence first.
        confidence: Highest box confidence, 0 when nothing was found.
        source: Primary model, heuristic fallback or error.
        processing_time_ms: Wall time spent in the stage.
        error: Error message when ``source`` is ``ERROR``.
    """

    detected: bool
    count: int
    boxes: List[DetectionBox] = field(default_factory=list)
    confidence: float = 0.0
    source: Source = Source.PRIMARY
    processing_time_ms: float = 0.0
    error: Optional[str] = None

    @classmethod
    def from_boxes(
        cls,
        boxes: List[DetectionBox],
        source: Source,
        processing_time_ms: float = 0.0,
    ) -> "DetectionResult":
        """Builds a result whose count and confidence agree with ``boxes``."""
        boxes = sorted(boxes, key=lambda b: b.confidence, reverse=True)
        for box in boxes:
            box.confidence = clamp01(box.confidence)
        return cls(
            detected=bool(boxes),
            count=len(boxes),
            boxes=boxes,
            confidence=boxes[0].confidence if boxes else 0.0,
            source=source,
            processing_time_ms=processing_time_ms,
        )

    @classmethod
    def failed(cls, error: str, processing_time_ms: float = 0.0) -> "DetectionResult":
        return cls(
            detected=False,
            count=0,
            boxes=[],
            confidence=0.0,
            source=Source.ERROR,
            processing_time_ms=processing_time_ms,
            error=error,
        )


@dataclass
class ExplicitImageResult:
    is_explicit: bool
    confidence: float
    category_scores: Dict[str, float] = field(default_factory=dict)
    reasoning: str = ""
    source: Source = Source.PRIMARY


@dataclass
class OCRWord:
    text: str
    confidence: float
    bounding_box: Dict[str, float] = field(default_factory=dict)


@dataclass
class ExtractedText:
    """Text recognized in an image.

    ``cache_hit`` is set on results served from the content-hash cache.
    ``source`` is ``ERROR`` for failed or timed-out extractions, which always
    carry empty text and zero confidence.
    """

    text: str
    confidence: float
    words: List[OCRWord] = field(default_factory=list)
    cache_hit: bool = False
    source: Source = Source.PRIMARY
    processing_time_ms: float = 0.0
    error: Optional[str] = None

    @property
    def word_count(self) -> int:
        return len([w for w in self.text.split() if w])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractedText":
        words = [OCRWord(**w) for w in data.get("words", [])]
        return cls(
            text=data["text"],
            confidence=data["confidence"],
            words=words,
            cache_hit=data.get("cache_hit", False),
            source=Source(data.get("source", Source.PRIMARY)),
            processing_time_ms=data.get("processing_time_ms", 0.0),
            error=data.get("error"),
        )

    @classmethod
    def failed(cls, error: str, processing_time_ms: float = 0.0) -> "ExtractedText":
        return cls(
            text="",
            confidence=0.0,
            source=Source.ERROR,
            processing_time_ms=processing_time_ms,
            error=error,
        )


MAX_MATCHED_TERMS = 5


@dataclass
class ExplicitTextResult:
    """Explicit-text verdict. ``matched_terms`` never exceeds five entries."""

    is_explicit: bool
    confidence: float
    method: TextMethod
    matched_terms: List[str] = field(default_factory=list)
    reasoning: str = ""

    def __post_init__(self):
        self.confidence = clamp01(self.confidence)
        self.matched_terms = list(self.matched_terms)[:MAX_MATCHED_TERMS]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExplicitTextResult":
        return cls(
            is_explicit=data["is_explicit"],
            confidence=data["confidence"],
            method=TextMethod(data["method"]),
            matched_terms=list(data.get("matched_terms", [])),
            reasoning=data.get("reasoning", ""),
        )


def _plain(value: Any) -> Any:
    if hasattr(value, "__dataclass_fields__"):
        return asdict(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass(frozen=True)
class FilterDecision:
    """Final verdict of one filtering call.

    Decisions are frozen. A manual override produces a new decision that keeps
    the original reasoning in ``original_reasoning``.
    """

    approved: bool
    reasoning: str
    kind: str = "image"
    per_stage: Dict[str, Any] = field(default_factory=dict)
    processing_time_ms: float = 0.0
    manual_override: bool = False
    original_reasoning: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "reasoning": self.reasoning,
            "kind": self.kind,
            "per_stage": {k: _plain(v) for k, v in self.per_stage.items()},
            "processing_time_ms": self.processing_time_ms,
            "manual_override": self.manual_override,
            "original_reasoning": self.original_reasoning,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Serializes the decision to a JSON string."""
        return json.dumps(
            self.to_dict(), ensure_ascii=False, separators=(",", ":"), default=str
        )


@dataclass(frozen=True)
class PackageDecision:
    """Verdict for a photo and its messages filtered together."""

    approved: bool
    reasoning: str
    components: Dict[str, FilterDecision] = field(default_factory=dict)


@dataclass
class IdentityEmbedding:
    identity_id: str
    vector: List[float]
    normalized: bool = True


@dataclass(frozen=True)
class IdentityMatch:
    identity_id: str
    similarity: float


@dataclass
class EvidenceFile:
    """A candidate file handed to the scanner by a file source.

    ``kind`` is ``"image"`` or ``"text"``. ``data`` may carry the content
    directly; otherwise it is read from ``path``.
    """

    file_id: str
    path: Optional[str] = None
    kind: str = "image"
    modified: Optional[float] = None
    data: Any = None


@dataclass
class ScanEntry:
    file: EvidenceFile
    decision: FilterDecision


@dataclass
class ScanSession:
    status: ScanStatus = ScanStatus.IDLE
    total_files: int = 0
    processed_files: int = 0
    approved: List[ScanEntry] = field(default_factory=list)
    rejected: List[ScanEntry] = field(default_factory=list)
    progress_percent: float = 0.0
    paused: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def snapshot(self) -> "ScanSession":
        """Returns a shallow copy safe to hand to observers."""
        return ScanSession(
            status=self.status,
            total_files=self.total_files,
            processed_files=self.processed_files,
            approved=list(self.approved),
            rejected=list(self.rejected),
            progress_percent=self.progress_percent,
            paused=self.paused,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error=self.error,
        )

    def summary(self) -> Dict[str, Any]:
        """Returns a JSON-friendly summary of the session."""
        return {
            "status": self.status.value,
            "total_files": self.total_files,
            "processed_files": self.processed_files,
            "approved": len(self.approved),
            "rejected": len(self.rejected),
            "progress_percent": round(self.progress_percent, 2),
            "paused": self.paused,
            "error": self.error,
        }
