import io

import numpy as np
from PIL import Image

from ml.inference import image_hash, inspect_image, validate_image_format, visual_quality_score


def _encode(pixels: np.ndarray, fmt: str) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format=fmt)
    return buf.getvalue()


def noisy(width=640, height=480, seed=1) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


def test_valid_jpeg_passes():
    data = _encode(noisy(), "JPEG")
    inspection = inspect_image(data, "image/jpeg")
    assert inspection.format_valid
    assert inspection.issues == []
    assert 0.0 <= inspection.visual_quality_score <= 1.0
    assert inspection.image_hash == image_hash(data)


def test_empty_file():
    assert validate_image_format(b"") == ["Empty file"]
    assert not inspect_image(b"").format_valid


def test_too_small_and_wrong_signature():
    issues = validate_image_format(b"hello world", "image/jpeg")
    assert any("too small" in i for i in issues)
    assert any("signature" in i for i in issues)


def test_unsupported_content_type():
    data = _encode(noisy(), "JPEG")
    issues = validate_image_format(data, "image/gif")
    assert any("Unsupported format" in i for i in issues)


def test_null_bytes_flagged():
    data = b"\xff\xd8\xff" + b"\x00" * (20 * 1024)
    issues = validate_image_format(data, "image/jpeg")
    assert any("null bytes" in i for i in issues)


def test_truncated_image_fails_decode():
    data = _encode(noisy(), "PNG")
    inspection = inspect_image(data[: len(data) // 2], "image/png")
    assert not inspection.format_valid
    assert inspection.visual_quality_score is None


def test_flat_image_scores_lower_than_detailed():
    flat = np.full((480, 640, 3), 128, dtype=np.uint8)
    assert visual_quality_score(_encode(flat, "PNG")) < visual_quality_score(_encode(noisy(), "PNG"))


def test_dark_image_penalised():
    dark = (noisy() // 16).astype(np.uint8)
    assert visual_quality_score(_encode(dark, "PNG")) < visual_quality_score(_encode(noisy(), "PNG"))
