"""Image quality assessment and normalization for sample photos.

Quality is always scored on what the user captured; normalization only prepares
a cheaper, cleaner copy for the vision provider.
"""

from __future__ import annotations

import base64
import io
import logging
import threading
import warnings
from typing import Any, Dict, Optional, Tuple, TypedDict

import numpy as np
from PIL import Image, ImageFile, ImageFilter, ImageOps, UnidentifiedImageError

from parasitepro.shared.detection_contract import InvalidImageError, QualityReport

LOGGER = logging.getLogger(__name__)

warnings.filterwarnings(
    "ignore",
    message="Palette images with Transparency expressed in bytes should be converted",
    category=UserWarning,
)

# Weights must stay fixed: calibration tables were tuned against them.
RESOLUTION_WEIGHT = 0.4
SHARPNESS_WEIGHT = 0.35
LIGHTING_WEIGHT = 0.25

# Substituted when a metric cannot be computed from the pixel data.
NEUTRAL_METRIC_SCORE = 0.6

SHARPNESS_SAMPLE_SIZE = 200
MAX_NORMALIZED_SIDE = 1600
JPEG_QUALITY = 92

# (minimum, score) pairs, checked top-down.
RESOLUTION_STEPS = ((1000, 1.0), (600, 0.8), (400, 0.6), (200, 0.4))
RESOLUTION_FLOOR = 0.2
SHARPNESS_STEPS = ((2000.0, 1.0), (1000.0, 0.85), (500.0, 0.70), (200.0, 0.55))
SHARPNESS_FLOOR = 0.35
# (low, high, score) brightness bands, narrowest first.
LIGHTING_BANDS = ((80.0, 180.0, 1.0), (50.0, 210.0, 0.8), (30.0, 230.0, 0.6))
LIGHTING_FLOOR = 0.4

QUALITY_LABEL_STEPS = ((0.8, "excellent"), (0.6, "good"), (0.4, "fair"))

# LOAD_TRUNCATED_IMAGES is process-wide; only one tolerant decode at a time.
_TRUNCATED_DECODE_LOCK = threading.Lock()


class NormalizedImage(TypedDict):
    buffer: bytes
    quality: QualityReport
    width: int
    height: int
    originalSize: int
    processedSize: int


def open_image(image_bytes: bytes) -> Image.Image:
    """Parse the image header or raise InvalidImageError.

    Pixel data is not decoded here; a damaged body is handled by the metrics.
    """

    if not image_bytes:
        raise InvalidImageError("Empty image upload")
    try:
        img = Image.open(io.BytesIO(image_bytes))
    except Image.DecompressionBombError as exc:
        raise InvalidImageError(f"Image is too large to decode: {exc}") from exc
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise InvalidImageError(f"Invalid image: {exc}") from exc

    # Pillow only warns between MAX_IMAGE_PIXELS and twice that; reject those too.
    limit = Image.MAX_IMAGE_PIXELS
    if limit and img.size[0] * img.size[1] > limit:
        raise InvalidImageError(
            f"Image is too large to decode: {img.size[0]}x{img.size[1]} pixels exceeds {limit}"
        )
    return img


def decode_pixels(img: Image.Image) -> Optional[Exception]:
    """Decode the pixel data in place; returns the decode error instead of raising."""

    try:
        img.load()
    except (OSError, ValueError) as exc:
        LOGGER.warning("Could not decode pixel data (%s)", exc)
        return exc
    return None


def _decode_tolerant(image_bytes: bytes) -> Image.Image:
    """Decode a damaged body, keeping whatever pixels precede the damage."""

    with _TRUNCATED_DECODE_LOCK:
        previous = ImageFile.LOAD_TRUNCATED_IMAGES
        ImageFile.LOAD_TRUNCATED_IMAGES = True
        try:
            img = Image.open(io.BytesIO(image_bytes))
            img.load()
        except (OSError, ValueError) as exc:
            raise InvalidImageError(f"Invalid image: {exc}") from exc
        finally:
            ImageFile.LOAD_TRUNCATED_IMAGES = previous
    return img


def resolution_score(width: int, height: int) -> float:
    shorter = min(int(width), int(height))
    for minimum, score in RESOLUTION_STEPS:
        if shorter >= minimum:
            return score
    return RESOLUTION_FLOOR


def sharpness_score_from_variance(variance: float) -> float:
    for minimum, score in SHARPNESS_STEPS:
        if variance >= minimum:
            return score
    return SHARPNESS_FLOOR


def lighting_score_from_mean(mean: float) -> float:
    for low, high, score in LIGHTING_BANDS:
        if low <= mean <= high:
            return score
    return LIGHTING_FLOOR


def quality_label(overall: float) -> str:
    for minimum, label in QUALITY_LABEL_STEPS:
        if overall >= minimum:
            return label
    return "poor"


def grayscale_variance(img: Image.Image, size: int = SHARPNESS_SAMPLE_SIZE) -> float:
    """Pixel variance of a greyscale copy fitted inside `size` x `size`."""

    gray = img.convert("L")
    width, height = gray.size
    scale = float(size) / float(max(width, height))
    new_w = max(1, int(round(width * scale)))
    new_h = max(1, int(round(height * scale)))
    gray = gray.resize((new_w, new_h), resample=Image.BILINEAR)
    arr = np.asarray(gray, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("empty greyscale sample")
    return float(arr.var())


def grayscale_mean(img: Image.Image) -> float:
    arr = np.asarray(img.convert("L"), dtype=np.float64)
    if arr.size == 0:
        raise ValueError("empty greyscale image")
    return float(arr.mean())


def _metric_or_default(name: str, fn, *args: Any) -> float:
    try:
        return float(fn(*args))
    except Exception as exc:  # noqa: BLE001 - a partial report beats none
        LOGGER.warning(
            "Could not compute %s (%s); using neutral default %.2f",
            name,
            exc,
            NEUTRAL_METRIC_SCORE,
        )
        return NEUTRAL_METRIC_SCORE


def assess_opened_image(img: Image.Image, decode_error: Optional[Exception] = None) -> QualityReport:
    """Score an opened image; pixel metrics fall back to neutral if decoding failed."""

    width, height = img.size
    res = resolution_score(width, height)

    def _pixels() -> Image.Image:
        if decode_error is not None:
            raise decode_error
        return img

    sharp = _metric_or_default(
        "sharpness",
        lambda: sharpness_score_from_variance(grayscale_variance(_pixels())),
    )
    light = _metric_or_default(
        "lighting",
        lambda: lighting_score_from_mean(grayscale_mean(_pixels())),
    )
    overall = res * RESOLUTION_WEIGHT + sharp * SHARPNESS_WEIGHT + light * LIGHTING_WEIGHT

    return {
        "width": int(width),
        "height": int(height),
        "format": str(img.format or "unknown").lower(),
        "hasAlpha": has_alpha(img),
        "resolutionScore": float(res),
        "sharpnessScore": float(sharp),
        "lightingScore": float(light),
        "overallQuality": float(overall),
        "qualityLabel": quality_label(overall),  # type: ignore[typeddict-item]
    }


def assess_image_quality(image_bytes: bytes) -> QualityReport:
    """Score resolution, sharpness and lighting of the raw upload."""

    img = open_image(image_bytes)
    return assess_opened_image(img, decode_pixels(img))


def has_alpha(img: Image.Image) -> bool:
    if img.mode in ("RGBA", "LA", "PA"):
        return True
    return img.mode == "P" and "transparency" in img.info


def flatten_to_rgb(img: Image.Image, background: Tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    """Composite any transparency onto an opaque background."""

    if has_alpha(img):
        rgba = img.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, background)
        canvas.paste(rgba, mask=rgba.split()[-1])
        return canvas
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def fit_inside(img: Image.Image, max_side: int = MAX_NORMALIZED_SIDE) -> Image.Image:
    """Downscale so the longest side is at most `max_side`; never enlarges."""

    width, height = img.size
    scale = min(1.0, float(max_side) / float(max(width, height)))
    if scale >= 1.0:
        return img
    new_w = max(1, int(round(width * scale)))
    new_h = max(1, int(round(height * scale)))
    return img.resize((new_w, new_h), resample=Image.LANCZOS)


def normalize_image(image_bytes: bytes) -> NormalizedImage:
    """Produce the provider-facing JPEG plus the quality report of the source."""

    source = open_image(image_bytes)
    decode_error = decode_pixels(source)
    quality = assess_opened_image(source, decode_error)
    if decode_error is not None:
        source = _decode_tolerant(image_bytes)

    img = ImageOps.exif_transpose(source)
    img = fit_inside(img)
    img = flatten_to_rgb(img)
    img = ImageOps.autocontrast(img, cutoff=0.5)
    img = img.filter(ImageFilter.UnsharpMask(radius=1.2, percent=50, threshold=3))

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=JPEG_QUALITY, progressive=True, optimize=True)
    processed = buf.getvalue()

    LOGGER.info(
        "Image normalized | quality=%s (%.0f%%) | %dx%d -> %dx%d | %d -> %d bytes",
        quality["qualityLabel"],
        quality["overallQuality"] * 100.0,
        quality["width"],
        quality["height"],
        img.size[0],
        img.size[1],
        len(image_bytes),
        len(processed),
    )

    return {
        "buffer": processed,
        "quality": quality,
        "width": int(img.size[0]),
        "height": int(img.size[1]),
        "originalSize": len(image_bytes),
        "processedSize": len(processed),
    }


def image_to_base64(buffer: bytes) -> str:
    return base64.b64encode(buffer).decode("ascii")


def quality_summary(quality: Dict[str, Any]) -> str:
    return f"{quality.get('qualityLabel', 'unknown')} ({float(quality.get('overallQuality', 0.0)) * 100:.0f}%)"
