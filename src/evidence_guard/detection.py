"""Person detection for evidence photos.

The primary path runs a YOLO-style model on a letterboxed tensor, decodes the
raw rows into person boxes and applies non-maximum suppression. When no model
is available, or inference fails, a pixel heuristic (skin ratio, left/right
symmetry, flesh tones and edge density) estimates whether a single person is
present. The heuristic cannot localize people, so it reports at most one box
covering the central half of the image.
"""

from __future__ import annotations
import logging
import time
from typing import Any, List, Optional, Tuple

import numpy as np
from scipy import ndimage

from .errors import InferenceError, InputValidationError
from .imaging import downsample, letterbox, to_rgb_array
from .metrics import record_fallback
from .results import DetectionBox, DetectionResult, Source, clamp01
from .runtime import ModelRuntime

DEFAULT_THRESHOLD = 0.4
NMS_IOU_THRESHOLD = 0.5
# Boxes flatter than this height/width ratio are not upright people.
MIN_HEIGHT_TO_WIDTH = 0.6
FALLBACK_MAX_CONFIDENCE = 0.8
FALLBACK_WEIGHTS = {"skin": 0.3, "symmetry": 0.3, "flesh": 0.2, "complexity": 0.2}
SYMMETRY_SAMPLES = 20
HEURISTIC_MAX_SIDE = 256

# (r_min, r_max, g_min, g_max, b_min, b_max) for light, medium and dark tones
FLESH_TONE_RANGES = (
    (200, 255, 150, 220, 120, 200),
    (140, 220, 90, 170, 60, 140),
    (60, 150, 35, 110, 20, 90),
)


def iou(a: DetectionBox, b: DetectionBox) -> float:
    """Intersection-over-Union of two top-left form boxes; 0 when disjoint."""
    ix1 = max(a.x, b.x)
    iy1 = max(a.y, b.y)
    ix2 = min(a.x + a.width, b.x + b.width)
    iy2 = min(a.y + a.height, b.y + b.height)
    if ix2 <= ix1 or iy2 <= iy1:
        return 0.0
    inter = (ix2 - ix1) * (iy2 - iy1)
    union = a.area + b.area - inter
    if union <= 0:
        return 0.0
    return inter / union


def non_max_suppression(
    boxes: List[DetectionBox], iou_threshold: float = NMS_IOU_THRESHOLD
) -> List[DetectionBox]:
    """Greedy NMS.

    Boxes are visited by descending confidence. Each kept box suppresses every
    later box whose IoU with it reaches ``iou_threshold``.
    """
    ordered = sorted(boxes, key=lambda b: b.confidence, reverse=True)
    suppressed = [False] * len(ordered)
    kept: List[DetectionBox] = []
    for i, box in enumerate(ordered):
        if suppressed[i]:
            continue
        kept.append(box)
        for j in range(i + 1, len(ordered)):
            if not suppressed[j] and iou(box, ordered[j]) >= iou_threshold:
                suppressed[j] = True
    return kept


def _rows(raw: Any) -> np.ndarray:
    """Normalizes model output into an ``(N, D)`` array of candidate rows."""
    out = np.asarray(raw, dtype=np.float32)
    if out.ndim == 3:
        out = out[0]
        # (D, N) exports such as YOLOv8 (84 x 8400)
        if out.shape[0] < out.shape[1] and out.shape[0] in (84, 85):
            out = out.transpose(1, 0)
    if out.ndim != 2:
        raise InferenceError(f"Unexpected detector output shape {out.shape}")
    return out


def decode_output(
    raw: Any,
    threshold: float,
    scale: float,
    pad: Tuple[float, float],
    image_size: Tuple[int, int],
    person_class: int = 0,
) -> List[DetectionBox]:
    """Decodes raw detector rows into person boxes in source image pixels.

    Rows are ``(cx, cy, w, h, objectness, class_0, class_1, ...)`` in
    letterboxed model space. 84-wide rows (no objectness column) are read with
    an objectness of 1.

    Args:
        raw: Model output.
        threshold: Minimum ``objectness * class_prob`` to keep a box.
        scale: Letterbox scale factor.
        pad: Letterbox ``(pad_x, pad_y)``.
        image_size: Source ``(width, height)`` used for clipping.
        person_class: Index of the person class.
    """
    rows = _rows(raw)
    if rows.shape[0] == 0:
        return []
    width, height = image_size
    pad_x, pad_y = pad
    dim = rows.shape[1]
    boxes: List[DetectionBox] = []
    for row in rows:
        if dim == 84:
            objectness = 1.0
            class_prob = float(row[4 + person_class])
        elif dim >= 6 + person_class:
            objectness = float(row[4])
            class_prob = float(row[5 + person_class])
        else:
            raise InferenceError(f"Detector rows too narrow ({dim} columns)")
        total = objectness * class_prob
        if total < threshold:
            continue
        cx, cy, bw, bh = (float(v) for v in row[:4])
        if bh < bw * MIN_HEIGHT_TO_WIDTH:
            continue
        x1 = (cx - bw / 2.0 - pad_x) / scale
        y1 = (cy - bh / 2.0 - pad_y) / scale
        x2 = (cx + bw / 2.0 - pad_x) / scale
        y2 = (cy + bh / 2.0 - pad_y) / scale
        x1 = min(max(x1, 0.0), float(width))
        y1 = min(max(y1, 0.0), float(height))
        x2 = min(max(x2, 0.0), float(width))
        y2 = min(max(y2, 0.0), float(height))
        if x2 <= x1 or y2 <= y1:
            continue
        boxes.append(
            DetectionBox(
                x=x1,
                y=y1,
                width=x2 - x1,
                height=y2 - y1,
                confidence=clamp01(total),
                label="person",
            )
        )
    return boxes


def skin_mask(pixels: np.ndarray) -> np.ndarray:
    """Classic RGB skin rule; returns a boolean mask."""
    rgb = pixels.astype(np.int16)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    spread = rgb.max(axis=-1) - rgb.min(axis=-1)
    return (
        (r > 95)
        & (g > 40)
        & (b > 20)
        & (spread > 15)
        & (np.abs(r - g) > 15)
        & (r > g)
        & (r > b)
    )


def flesh_tone_ratio(pixels: np.ndarray) -> float:
    """Fraction of pixels that fall in any of the flesh tone ranges."""
    r, g, b = pixels[..., 0], pixels[..., 1], pixels[..., 2]
    mask = np.zeros(r.shape, dtype=bool)
    for r0, r1, g0, g1, b0, b1 in FLESH_TONE_RANGES:
        mask |= (r >= r0) & (r <= r1) & (g >= g0) & (g <= g1) & (b >= b0) & (b <= b1)
    return float(mask.mean())


def symmetry_score(pixels: np.ndarray, samples: int = SYMMETRY_SAMPLES) -> float:
    """Share of sampled rows whose mirrored brightness differs by < 30."""
    height, width = pixels.shape[:2]
    center = width // 2
    left_x = int(center * 0.3)
    right_x = int(center * 1.7)
    if right_x >= width:
        return 0.0
    brightness = pixels.astype(np.float32).mean(axis=-1)
    hits = 0
    for i in range(samples):
        y = int(height / samples * i)
        if abs(brightness[y, left_x] - brightness[y, right_x]) < 30:
            hits += 1
    return hits / samples


def edge_density(pixels: np.ndarray, magnitude: float = 40.0) -> float:
    """Fraction of pixels whose Sobel gradient magnitude exceeds ``magnitude``."""
    gray = pixels.astype(np.float32).mean(axis=-1)
    gx = ndimage.sobel(gray, axis=1)
    gy = ndimage.sobel(gray, axis=0)
    return float((np.hypot(gx, gy) > magnitude).mean())


def heuristic_features(pixels: np.ndarray) -> dict:
    small = downsample(pixels, HEURISTIC_MAX_SIDE)
    return {
        "skin": float(skin_mask(small).mean()),
        "symmetry": symmetry_score(small),
        "flesh": flesh_tone_ratio(small),
        "complexity": edge_density(small),
    }


def heuristic_detect(pixels: np.ndarray) -> DetectionResult:
    """Pixel-heuristic person detection; at most one box, confidence <= 0.8."""
    features = heuristic_features(pixels)
    votes = {
        "skin": 0.02 <= features["skin"] <= 0.4,
        "symmetry": features["symmetry"] > 0.6,
        "flesh": 0.05 <= features["flesh"] <= 0.5,
        "complexity": features["complexity"] > 0.3,
    }
    weighted = sum(FALLBACK_WEIGHTS[k] for k, ok in votes.items() if ok)
    confidence = min(FALLBACK_MAX_CONFIDENCE, weighted)
    if weighted <= 0.5:
        return DetectionResult(
            detected=False, count=0, boxes=[], confidence=0.0, source=Source.FALLBACK
        )
    height, width = pixels.shape[:2]
    box = DetectionBox(
        x=width * 0.25,
        y=height * 0.25,
        width=width * 0.5,
        height=height * 0.5,
        confidence=confidence,
        label="person",
    )
    return DetectionResult.from_boxes([box], Source.FALLBACK)


class PersonDetector:
    """Detects people in an image with a model, falling back to heuristics."""

    def __init__(
        self,
        runtime: Optional[ModelRuntime] = None,
        threshold: float = DEFAULT_THRESHOLD,
        input_size: int = 640,
        person_class: int = 0,
        iou_threshold: float = NMS_IOU_THRESHOLD,
    ):
        self.runtime = runtime
        self.threshold = threshold
        self.input_size = input_size
        self.person_class = person_class
        self.iou_threshold = iou_threshold
        self.logger = logging.getLogger(self.__class__.__name__)

    async def detect(self, image: Any, threshold: Optional[float] = None) -> DetectionResult:
        """Detects people in ``image``.

        Never raises for model or heuristic failures; those produce an
        ``ERROR`` sourced result.

        Raises:
            InputValidationError: For unsupported input.
        """
        start = time.perf_counter()
        pixels = to_rgb_array(image)
        threshold = self.threshold if threshold is None else threshold
        if self.runtime is not None and await self.runtime.ensure_loaded():
            try:
                boxes = await self._run_model(pixels, threshold)
                result = DetectionResult.from_boxes(boxes, Source.PRIMARY)
                result.processing_time_ms = (time.perf_counter() - start) * 1000
                return result
            except InputValidationError:
                raise
            except Exception as e:
                self.logger.warning(f"Detection model failed ({e}); using heuristics")
        record_fallback("face_detection")
        try:
            result = heuristic_detect(pixels)
        except Exception as e:
            self.logger.error(f"Fallback detection failed: {e}")
            return DetectionResult.failed(str(e), (time.perf_counter() - start) * 1000)
        result.processing_time_ms = (time.perf_counter() - start) * 1000
        return result

    async def _run_model(self, pixels: np.ndarray, threshold: float) -> List[DetectionBox]:
        tensor, scale, pad_x, pad_y = letterbox(pixels, self.input_size)
        raw = await self.runtime.infer(tensor)
        height, width = pixels.shape[:2]
        candidates = decode_output(
            raw,
            threshold,
            scale,
            (pad_x, pad_y),
            (width, height),
            person_class=self.person_class,
        )
        return non_max_suppression(candidates, self.iou_threshold)
