"""The evidence filter orchestrator.

``EvidenceFilter`` runs the enabled stages for one image or one batch of
messages and fuses them into a single ``FilterDecision``. Image stages run in a
fixed order and stop at the first stage that forces a rejection:

    face_detection -> nsfw_detection -> ocr_extraction -> text_classification

Stages that were disabled or never reached are absent from ``per_stage``.
Model faults are absorbed by the stage services; anything else unexpected turns
into a rejected decision with an ``Error: ...`` reasoning. Input validation
errors propagate to the caller.
"""

from __future__ import annotations
import asyncio
import copy
import dataclasses
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from .cache import DAY_SECONDS, KeyValueStore, TieredCache
from .config import load_config, models_disabled
from .detection import PersonDetector
from .errors import (
    ExtractionTimeout,
    InferenceError,
    InputValidationError,
    OverrideDisabledError,
    UnsupportedInputType,
)
from .identity import IdentityMatcher
from .imaging import to_pil
from .metrics import record_decision
from .nsfw import ExplicitImageClassifier
from .ocr import TextExtractor, tesseract_engine
from .results import EvidenceFile, ExtractedText, FilterDecision, PackageDecision
from .runtime import ModelRuntime, hf_pipeline_loader, onnx_loader
from .text import ExplicitTextClassifier

STAGE_DETECTION = "face_detection"
STAGE_NSFW = "nsfw_detection"
STAGE_OCR = "ocr_extraction"
STAGE_TEXT = "text_classification"
STAGE_IDENTITY = "identity_match"


@dataclass
class FilterStatistics:
    """Running counters of filtering outcomes."""

    total_images_processed: int = 0
    images_approved: int = 0
    images_rejected: int = 0
    total_texts_processed: int = 0
    texts_approved: int = 0
    texts_rejected: int = 0
    manual_overrides: int = 0

    def record(self, decision: FilterDecision):
        """Records a decision, updating the counters."""
        if decision.kind == "image":
            self.total_images_processed += 1
            if decision.approved:
                self.images_approved += 1
            else:
                self.images_rejected += 1
        elif decision.kind == "text":
            self.total_texts_processed += 1
            if decision.approved:
                self.texts_approved += 1
            else:
                self.texts_rejected += 1
        record_decision(decision.kind, decision.approved)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class EvidenceFilter:
    """Sequences the pipeline stages and produces filter decisions."""

    def __init__(
        self,
        config: Dict[str, Any],
        detector: PersonDetector,
        image_classifier: ExplicitImageClassifier,
        text_extractor: TextExtractor,
        text_classifier: ExplicitTextClassifier,
        identity_matcher: Optional[IdentityMatcher] = None,
    ):
        """Initializes the filter.

        Args:
            config: A configuration dictionary; validated and merged over the
                defaults.
            detector: Person/face detection service.
            image_classifier: Explicit-image classification service.
            text_extractor: OCR service.
            text_classifier: Explicit-text classification service.
            identity_matcher: Optional identity store consulted when a probe
                embedding accompanies an image.
        """
        self.config = load_config(config)
        self.detector = detector
        self.image_classifier = image_classifier
        self.text_extractor = text_extractor
        self.text_classifier = text_classifier
        self.identity_matcher = identity_matcher
        self.statistics = FilterStatistics()
        self.logger = logging.getLogger(self.__class__.__name__)
        self._apply_thresholds()

    def _apply_thresholds(self):
        thresholds = self.config["confidence_thresholds"]
        self.detector.threshold = thresholds["person"]
        self.detector.iou_threshold = thresholds["nms_iou"]
        self.image_classifier.update_thresholds(thresholds)
        self.text_classifier.model_threshold = thresholds["text_model"]
        if self.identity_matcher is not None:
            self.identity_matcher.threshold = thresholds["identity"]

    def _finalize(self, decision: FilterDecision) -> FilterDecision:
        self.statistics.record(decision)
        self.logger.info(
            f"{decision.kind} {'approved' if decision.approved else 'rejected'}: "
            f"{decision.reasoning} ({decision.processing_time_ms:.1f}ms)"
        )
        return decision

    async def filter_image(
        self,
        image: Any,
        metadata: Optional[Dict[str, Any]] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> FilterDecision:
        """Filters one image.

        Args:
            image: Encoded image bytes, a ``PIL.Image`` or a pixel buffer.
            metadata: Opaque caller metadata copied onto the decision.
            embedding: Optional probe embedding matched against the registered
                identities. Matches are informational and never reject.

        Returns:
            The decision for the image.

        Raises:
            InputValidationError: For unsupported or undecodable input.
        """
        start = time.perf_counter()
        img = to_pil(image)
        per_stage: Dict[str, Any] = {}
        try:
            approved, reasoning = await self._image_stages(img, per_stage, embedding)
        except InputValidationError:
            raise
        except Exception as e:
            self.logger.error(f"Image filtering failed: {e}")
            approved, reasoning = False, f"Error: {e}"
        return self._finalize(
            FilterDecision(
                approved=approved,
                reasoning=reasoning,
                kind="image",
                per_stage=per_stage,
                processing_time_ms=(time.perf_counter() - start) * 1000,
                metadata=dict(metadata or {}),
            )
        )

    async def _image_stages(self, img, per_stage: Dict[str, Any], embedding) -> tuple:
        conf = self.config
        if conf["enable_face_detection"]:
            detection = await self.detector.detect(img)
            per_stage[STAGE_DETECTION] = detection
            if conf["require_human_presence"] and detection.count == 0:
                return False, "No human faces detected"
            if embedding is not None and self.identity_matcher is not None:
                per_stage[STAGE_IDENTITY] = self.identity_matcher.match(embedding)

        if conf["enable_nsfw_filter"]:
            nsfw = await self.image_classifier.classify(img)
            per_stage[STAGE_NSFW] = nsfw
            if nsfw.is_explicit:
                category = self.image_classifier.top_category(nsfw)
                return False, (
                    f"Image contains NSFW content ({category}, "
                    f"confidence: {round(nsfw.confidence * 100)}%)"
                )

        if conf["enable_ocr"] and conf["enable_text_filter"]:
            try:
                extracted = await self.text_extractor.extract(img)
            except (ExtractionTimeout, InferenceError) as e:
                self.logger.warning(f"Text extraction failed: {e}")
                extracted = ExtractedText.failed(str(e))
            per_stage[STAGE_OCR] = extracted
            if extracted.text.strip():
                verdict = await self.text_classifier.classify(extracted.text)
                per_stage[STAGE_TEXT] = verdict
                if verdict.is_explicit:
                    return False, f"Image contains explicit text: {verdict.reasoning}"

        return True, "Image passed all filters (visual content and extracted text)"

    async def filter_text(
        self,
        texts: Union[str, Sequence[str]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FilterDecision:
        """Filters one message or a batch of messages as a single item.

        The batch is rejected when any message is explicit.

        Raises:
            UnsupportedInputType: When a message is not a string.
        """
        start = time.perf_counter()
        items = [texts] if isinstance(texts, str) else list(texts)
        for item in items:
            if not isinstance(item, str):
                raise UnsupportedInputType(f"Expected text, got {type(item).__name__}")
        per_stage: Dict[str, Any] = {}
        try:
            approved, reasoning = await self._text_stages(items, per_stage)
        except InputValidationError:
            raise
        except Exception as e:
            self.logger.error(f"Text filtering failed: {e}")
            approved, reasoning = False, f"Error: {e}"
        return self._finalize(
            FilterDecision(
                approved=approved,
                reasoning=reasoning,
                kind="text",
                per_stage=per_stage,
                processing_time_ms=(time.perf_counter() - start) * 1000,
                metadata=dict(metadata or {}),
            )
        )

    async def _text_stages(self, items: List[str], per_stage: Dict[str, Any]) -> tuple:
        if not self.config["enable_text_filter"]:
            return True, "Text filtering disabled"
        valid = [t for t in items if t.strip()]
        if not valid:
            return False, "No valid text content"
        results = await self.text_classifier.classify_batch(valid)
        per_stage[STAGE_TEXT] = results
        explicit = [r for r in results if r.is_explicit]
        if explicit:
            return False, f"{len(explicit)} explicit text(s) detected"
        return True, f"All {len(valid)} text(s) passed filters"

    async def filter_package(
        self,
        photo: Any = None,
        messages: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PackageDecision:
        """Filters a photo and its messages together.

        The package is approved only when every present component is.
        """
        components: Dict[str, FilterDecision] = {}
        if photo is not None:
            components["photo"] = await self.filter_image(photo, metadata)
        if messages:
            components["messages"] = await self.filter_text(messages, metadata)
        reasons = []
        if "photo" in components and not components["photo"].approved:
            reasons.append("Photo rejected")
        if "messages" in components and not components["messages"].approved:
            reasons.append("Messages rejected")
        if reasons:
            return PackageDecision(False, "; ".join(reasons), components)
        return PackageDecision(True, "Evidence package approved", components)

    def apply_manual_override(self, decision: FilterDecision, reason: str) -> FilterDecision:
        """Returns an approved copy of ``decision`` recording the override.

        Raises:
            OverrideDisabledError: When manual overrides are turned off.
        """
        if not self.config["allow_manual_override"]:
            raise OverrideDisabledError("Manual overrides are disabled")
        self.statistics.manual_overrides += 1
        self.logger.info(f"Manual override applied to {decision.kind} decision")
        return dataclasses.replace(
            decision,
            approved=True,
            manual_override=True,
            original_reasoning=decision.reasoning,
            reasoning=f"Manual override: {reason}",
            timestamp=time.time(),
            per_stage=dict(decision.per_stage),
            metadata=dict(decision.metadata),
        )

    async def filter_file(self, file: EvidenceFile) -> FilterDecision:
        """Loads ``file`` and filters it according to its kind.

        Text files are split into one message per non-empty line.

        Raises:
            UnsupportedInputType: For unknown kinds or unreadable content.
        """
        metadata = {"file_id": file.file_id}
        if file.path:
            metadata["path"] = file.path
        data = file.data
        if data is None:
            if not file.path:
                raise UnsupportedInputType(f"File {file.file_id} has neither data nor path")
            data = await asyncio.to_thread(_read_file, file.path, file.kind)
        if file.kind == "image":
            return await self.filter_image(data, metadata)
        if file.kind == "text":
            if isinstance(data, (bytes, bytearray)):
                try:
                    data = bytes(data).decode("utf-8")
                except UnicodeDecodeError as e:
                    raise UnsupportedInputType(f"File {file.file_id} is not UTF-8") from e
            messages = data.splitlines() if isinstance(data, str) else data
            return await self.filter_text(messages, metadata)
        raise UnsupportedInputType(f"Unsupported file kind {file.kind!r}")

    def update_settings(self, settings: Dict[str, Any]):
        """Merges ``settings`` into the configuration and re-applies thresholds."""
        merged = copy.deepcopy(self.config)
        for key, value in settings.items():
            if key == "confidence_thresholds":
                merged[key].update(value)
            else:
                merged[key] = value
        self.config = load_config(merged)
        self._apply_thresholds()
        self.logger.info(f"Settings updated: {sorted(settings)}")

    def get_settings(self) -> Dict[str, Any]:
        return copy.deepcopy(self.config)

    def get_statistics(self) -> Dict[str, int]:
        return self.statistics.to_dict()

    def _runtimes(self) -> Dict[str, ModelRuntime]:
        services = {
            STAGE_DETECTION: self.detector,
            STAGE_NSFW: self.image_classifier,
            STAGE_TEXT: self.text_classifier,
        }
        return {
            stage: service.runtime
            for stage, service in services.items()
            if service.runtime is not None
        }

    async def load_models(self) -> Dict[str, str]:
        """Loads every model runtime, retrying ones that previously failed."""
        runtimes = self._runtimes()
        statuses = await asyncio.gather(*(r.load() for r in runtimes.values()))
        return {stage: status.value for stage, status in zip(runtimes, statuses)}

    def get_status(self) -> Dict[str, Any]:
        """Reports model, OCR and identity state plus settings and statistics."""
        models = {stage: r.describe() for stage, r in self._runtimes().items()}
        return {
            "models": models,
            "ocr": self.text_extractor.describe(),
            "text_classifier": self.text_classifier.describe(),
            "identities": len(self.identity_matcher) if self.identity_matcher else 0,
            "settings": self.get_settings(),
            "statistics": self.get_statistics(),
        }

    async def close(self):
        """Releases model resources and stops the OCR workers."""
        for runtime in self._runtimes().values():
            runtime.unload()
        await self.text_extractor.close()


def _read_file(path: str, kind: str) -> Union[bytes, str]:
    try:
        if kind == "text":
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        with open(path, "rb") as f:
            return f.read()
    except UnicodeDecodeError as e:
        raise UnsupportedInputType(f"{path} is not UTF-8 text") from e
    except OSError as e:
        raise UnsupportedInputType(f"Cannot read {path}: {e}") from e


def build_evidence_filter(
    config: Optional[Dict[str, Any]] = None,
    cache_backend: Optional[KeyValueStore] = None,
) -> EvidenceFilter:
    """Builds an ``EvidenceFilter`` wired to the default model plug-ins.

    With ``DISABLE_MODELS=1`` no learned model is attached and every stage
    runs its heuristic or keyword path. Models load lazily on first use.
    """
    conf = load_config(config)
    use_models = not models_disabled()
    ttl = float(conf["cache_ttl_hours"]) * 3600 if conf["cache_ttl_hours"] else DAY_SECONDS

    person_runtime = None
    nsfw_runtime = None
    text_runtime = None
    if use_models:
        if conf["person_model_path"]:
            person_runtime = ModelRuntime(
                "person-detector", onnx_loader(conf["person_model_path"])
            )
        nsfw_runtime = ModelRuntime(
            conf["nsfw_model_name"],
            hf_pipeline_loader("image-classification", conf["nsfw_model_name"]),
        )
        text_runtime = ModelRuntime(
            conf["text_model_name"],
            hf_pipeline_loader("text-classification", conf["text_model_name"]),
        )

    thresholds = conf["confidence_thresholds"]
    detector = PersonDetector(
        runtime=person_runtime,
        threshold=thresholds["person"],
        input_size=conf["person_input_size"],
        person_class=conf["person_class_index"],
        iou_threshold=thresholds["nms_iou"],
    )
    image_classifier = ExplicitImageClassifier(
        runtime=nsfw_runtime,
        thresholds=thresholds,
        cache=TieredCache(
            "nsfw", ttl=ttl, maxsize=conf["nsfw_cache_size"], backend=cache_backend
        ),
    )
    text_extractor = TextExtractor(
        engine=tesseract_engine(conf["ocr_language"]),
        pool_size=conf["worker_pool_size"],
        timeout=conf["ocr_timeout_s"],
        cache=TieredCache(
            "ocr", ttl=ttl, maxsize=conf["ocr_cache_size"], backend=cache_backend
        ),
        queue_size=conf["ocr_queue_size"],
    )
    text_classifier = ExplicitTextClassifier(
        runtime=text_runtime,
        cache=TieredCache(
            "text", ttl=ttl, maxsize=conf["text_cache_size"], backend=cache_backend
        ),
        keywords=conf["explicit_keywords"],
        patterns=conf["explicit_patterns"],
        model_threshold=thresholds["text_model"],
        positive_keywords=conf["positive_keywords"],
    )
    return EvidenceFilter(
        conf,
        detector,
        image_classifier,
        text_extractor,
        text_classifier,
        identity_matcher=IdentityMatcher(thresholds["identity"]),
    )
