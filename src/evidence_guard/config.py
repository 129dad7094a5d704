"""Configuration defaults and validation for the evidence guard.

The layout follows a single flat dictionary so that it can be dumped to and
loaded from JSON without a schema layer. ``confidence_thresholds`` is the only
nested mapping and is merged key by key.
"""

from __future__ import annotations
import copy
import json
import os
from typing import Any, Dict, Optional

from .errors import InputValidationError

DEFAULT_CONFIG: Dict[str, Any] = {
    "enable_nsfw_filter": True,
    "enable_face_detection": False,
    "enable_text_filter": True,
    "enable_ocr": True,
    "require_human_presence": False,
    "allow_manual_override": True,
    "confidence_thresholds": {
        "person": 0.4,
        "nms_iou": 0.5,
        "porn": 0.6,
        "explicit": 0.5,
        "suggestive": 0.7,
        "text_model": 0.7,
        "identity": 0.6,
    },
    "batch_size": 5,
    "scan_interval_ms": 30_000,
    "background_scanning": False,
    "worker_pool_size": 2,
    "ocr_timeout_s": 30.0,
    "ocr_queue_size": 16,
    "ocr_language": "eng",
    "cache_ttl_hours": 24,
    "text_cache_size": 500,
    "ocr_cache_size": 256,
    "nsfw_cache_size": 256,
    "person_model_path": None,
    "person_input_size": 640,
    "person_class_index": 0,
    "nsfw_model_name": "Falconsai/nsfw_image_detection",
    "text_model_name": "michellejieli/nsfw_text_classifier",
    "explicit_keywords": [
        "sex",
        "porn",
        "nude",
        "naked",
        "erotic",
        "orgasm",
        "masturbat",
        "fuck",
        "shit",
        "bitch",
        "whore",
        "slut",
        "asshole",
        "bastard",
        "cocksucker",
        "cunt",
        "dick",
        "pussy",
        "blowjob",
        "handjob",
        "vagina",
        "penis",
        "horny",
        "kinky",
        "fetish",
        "bondage",
    ],
    "explicit_patterns": [
        r"\bsend\s+(?:me\s+)?(?:a\s+|some\s+|your\s+|more\s+)?(?:nudes?|naked)\b",
        r"\b(?:wanna|want\s+to|let'?s|lets)\s+(?:have\s+)?(?:sex|fuck|hook\s*up)\b",
        r"\b(?:so|really|getting|feel(?:ing)?)\s+(?:horny|wet|hard\s+for\s+you)\b",
        r"\b(?:take|rip)\s+(?:it|them|your\s+clothes)\s+off\b",
        r"\bdick\s+pics?\b",
    ],
    "positive_keywords": [
        "love",
        "heart",
        "kiss",
        "hug",
        "cuddle",
        "romance",
        "date",
        "together",
        "forever",
        "marry",
        "wedding",
        "anniversary",
        "beautiful",
        "gorgeous",
        "handsome",
        "sweet",
        "caring",
        "miss",
        "thinking",
        "dream",
        "future",
        "family",
    ],
    "max_scan_files": 100,
    "scan_max_depth": 3,
    "scan_extensions": [".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp"],
    "text_extensions": [".txt"],
}

REQUIRED_KEYS = (
    "enable_nsfw_filter",
    "enable_face_detection",
    "enable_text_filter",
    "enable_ocr",
    "require_human_presence",
    "allow_manual_override",
    "confidence_thresholds",
    "batch_size",
    "scan_interval_ms",
    "worker_pool_size",
)


def validate_config(config: Dict[str, Any]) -> None:
    """Validates a configuration dictionary.

    Args:
        config: The configuration to check.

    Raises:
        InputValidationError: If keys are missing or values are out of range.
    """
    missing = [k for k in REQUIRED_KEYS if k not in config]
    if missing:
        raise InputValidationError(f"Config missing keys: {missing}")
    for name, value in config["confidence_thresholds"].items():
        if not 0.0 <= float(value) <= 1.0:
            raise InputValidationError(
                f"Threshold {name!r} must lie in [0, 1], got {value}"
            )
    for key in ("batch_size", "worker_pool_size"):
        if int(config[key]) < 1:
            raise InputValidationError(f"{key} must be >= 1, got {config[key]}")
    if int(config["scan_interval_ms"]) < 0:
        raise InputValidationError("scan_interval_ms must be >= 0")


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Returns a validated copy of the defaults with ``overrides`` applied."""
    conf = copy.deepcopy(DEFAULT_CONFIG)
    for key, value in (overrides or {}).items():
        if key == "confidence_thresholds":
            conf[key].update(value)
        else:
            conf[key] = value
    validate_config(conf)
    return conf


def config_from_env() -> Dict[str, Any]:
    """Builds the runtime configuration from ``EVIDENCE_CONFIG_PATH``, if set."""
    path = os.getenv("EVIDENCE_CONFIG_PATH")
    overrides: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise InputValidationError(f"{path} must contain a JSON object")
        overrides = data
    return load_config(overrides)


def models_disabled() -> bool:
    """True when ``DISABLE_MODELS=1``; services then run heuristics only."""
    return os.getenv("DISABLE_MODELS", "0") == "1"
