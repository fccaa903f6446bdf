import hashlib
from dataclasses import dataclass, field
from io import BytesIO

import numpy as np
from PIL import Image, UnidentifiedImageError

from app.config import MAX_IMAGE_BYTES, MIN_IMAGE_BYTES

SUPPORTED_FORMATS = {"image/jpeg", "image/jpg", "image/png", "image/webp"}

# Reference frame for the resolution component of the quality score
REFERENCE_PIXELS = 640 * 480
# Laplacian variance below this is treated as blurred
SHARPNESS_REFERENCE = 100.0


@dataclass
class ImageInspection:
    format_valid: bool
    image_hash: str
    visual_quality_score: float | None
    issues: list[str] = field(default_factory=list)


def image_hash(image_bytes: bytes) -> str:
    return hashlib.sha256(image_bytes).hexdigest()


def _has_image_signature(image_bytes: bytes) -> bool:
    head = image_bytes[:12]
    return (
        head.startswith(b"\xff\xd8\xff")  # JPEG
        or head.startswith(b"\x89PNG")  # PNG
        or (head.startswith(b"RIFF") and head[8:12] == b"WEBP")
    )


def validate_image_format(image_bytes: bytes, content_type: str | None = None) -> list[str]:
    issues = []
    size = len(image_bytes)
    if size == 0:
        return ["Empty file"]
    if size > MAX_IMAGE_BYTES:
        issues.append(f"File too large: {size / 1024 / 1024:.2f}MB (max 10MB)")
    if size < MIN_IMAGE_BYTES:
        issues.append(f"File too small: {size / 1024:.2f}KB (min 10KB)")
    if content_type and content_type.lower() not in SUPPORTED_FORMATS:
        issues.append(f"Unsupported format: {content_type}. Allowed: JPEG, PNG, WebP")
    if not _has_image_signature(image_bytes):
        issues.append("Invalid file signature - may be corrupted or not a real image")

    # High share of null bytes usually means a truncated/corrupted upload
    null_ratio = image_bytes.count(0) / size
    if null_ratio > 0.5:
        issues.append("High ratio of null bytes - possible corruption")
    return issues


def preprocess_image(image_bytes: bytes) -> np.ndarray:
    img = Image.open(BytesIO(image_bytes)).convert("L")
    return np.asarray(img, dtype=np.float64)


def visual_quality_score(image_bytes: bytes) -> float:
    """
    Cheap quality estimate in [0, 1]: sharpness (variance of the Laplacian),
    resolution relative to 640x480, and exposure (distance of the mean
    brightness from mid-grey).
    """
    gray = preprocess_image(image_bytes)
    h, w = gray.shape

    if h < 3 or w < 3:
        return 0.0

    lap = (
        4 * gray[1:-1, 1:-1]
        - gray[:-2, 1:-1]
        - gray[2:, 1:-1]
        - gray[1:-1, :-2]
        - gray[1:-1, 2:]
    )
    sharpness = min(1.0, float(lap.var()) / SHARPNESS_REFERENCE)
    resolution = min(1.0, (h * w) / REFERENCE_PIXELS)
    exposure = 1.0 - abs(float(gray.mean()) - 127.5) / 127.5

    return round(0.4 * sharpness + 0.3 * resolution + 0.3 * exposure, 3)


def inspect_image(image_bytes: bytes, content_type: str | None = None) -> ImageInspection:
    issues = validate_image_format(image_bytes, content_type)
    quality = None
    if not issues:
        try:
            with Image.open(BytesIO(image_bytes)) as img:
                img.verify()
            quality = visual_quality_score(image_bytes)
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            issues.append(f"Image could not be decoded: {e}")

    return ImageInspection(
        format_valid=not issues,
        image_hash=image_hash(image_bytes),
        visual_quality_score=quality,
        issues=issues,
    )
