from __future__ import annotations

import io
import time

import pytest
from PIL import Image

from pure_pixel import transform_engine
from pure_pixel.dimension_planner import CustomResize, ScaleResize
from pure_pixel.errors import DecodeError, EncodeError, SurfaceError
from pure_pixel.format_policy import FallbackReason, ImageFormat
from pure_pixel.transform_engine import transform


def _open(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def test_scale_half_png_to_webp(make_image_bytes) -> None:
    source = make_image_bytes((2000, 1000), "PNG")

    result = transform(source, "image/png", ImageFormat.WEBP, 1.0, ScaleResize(0.5))

    assert result.output_format == ImageFormat.WEBP
    assert (result.width, result.height) == (1000, 500)
    assert result.fallbacks == ()
    assert result.size == len(result.data)
    with _open(result.data) as out:
        assert out.format == "WEBP"
        assert out.size == (1000, 500)


def test_progress_stages_are_reported_in_order(make_image_bytes) -> None:
    seen: list[int] = []
    transform(make_image_bytes(), "image/png", ImageFormat.PNG, 1.0, progress=seen.append)
    assert seen == [30, 50, 70, 90]


def test_custom_resize_is_planned_from_decoded_size(make_image_bytes) -> None:
    source = make_image_bytes((400, 200), "JPEG")
    result = transform(source, "image/jpeg", ImageFormat.PNG, 1.0, CustomResize(width=100))
    assert (result.width, result.height) == (100, 50)


def _rotated_jpeg(make_image_bytes) -> bytes:
    # 保存上は 40x30、Orientation=6（右90度回転）で表示上は 30x40
    exif = Image.Exif()
    exif[0x0112] = 6
    return make_image_bytes((40, 30), "JPEG", exif=exif.tobytes())


def test_exif_orientation_is_applied_before_drawing(make_image_bytes) -> None:
    result = transform(_rotated_jpeg(make_image_bytes), "image/jpeg", ImageFormat.PNG, 1.0)

    assert (result.width, result.height) == (30, 40)
    with _open(result.data) as out:
        assert out.size == (30, 40)


def test_custom_width_applies_to_displayed_width(make_image_bytes) -> None:
    source = _rotated_jpeg(make_image_bytes)
    result = transform(source, "image/jpeg", ImageFormat.PNG, 1.0, CustomResize(width=15))
    assert (result.width, result.height) == (15, 20)


def test_oversized_image_is_clamped(make_image_bytes) -> None:
    source = make_image_bytes((5000, 100), "PNG")
    result = transform(source, "image/png", ImageFormat.PNG, 1.0)
    assert (result.width, result.height) == (4096, 82)


def test_jpeg_output_flattens_transparency_onto_white(make_image_bytes) -> None:
    source = make_image_bytes((16, 16), "PNG", mode="RGBA", color=(0, 0, 0, 0))
    result = transform(source, "image/png", ImageFormat.JPEG, 1.0)
    with _open(result.data) as out:
        assert out.mode == "RGB"
        r, g, b = out.getpixel((8, 8))
        assert min(r, g, b) > 245


def test_gif_output(make_image_bytes) -> None:
    result = transform(make_image_bytes((20, 10), "PNG"), "image/png", ImageFormat.GIF, 1.0)
    with _open(result.data) as out:
        assert out.format == "GIF"


def test_invalid_bytes_raise_decode_error() -> None:
    with pytest.raises(DecodeError):
        transform(b"not an image", "image/png", ImageFormat.PNG, 1.0)
    with pytest.raises(DecodeError):
        transform(b"", "image/png", ImageFormat.PNG, 1.0)


def test_decode_timeout_raises_decode_error(monkeypatch, make_image_bytes) -> None:
    def slow_open(source_bytes: bytes) -> Image.Image:
        time.sleep(0.5)
        return Image.new("RGB", (1, 1))

    monkeypatch.setattr(transform_engine, "_open_and_load", slow_open)

    with pytest.raises(DecodeError, match="タイムアウト"):
        transform(make_image_bytes(), "image/png", ImageFormat.PNG, 1.0, decode_timeout=0.05)


def test_empty_encode_falls_back_to_png(monkeypatch, make_image_bytes) -> None:
    original = transform_engine.encode_image

    def failing_webp(surface, fmt, quality):
        if fmt == ImageFormat.WEBP:
            return b""
        return original(surface, fmt, quality)

    monkeypatch.setattr(transform_engine, "encode_image", failing_webp)

    result = transform(make_image_bytes(), "image/png", ImageFormat.WEBP, 0.92)

    assert result.output_format == ImageFormat.PNG
    assert result.fallbacks == (FallbackReason.ENCODE_FAILED,)
    with _open(result.data) as out:
        assert out.format == "PNG"


def test_encode_error_when_png_fallback_also_fails(monkeypatch, make_image_bytes) -> None:
    monkeypatch.setattr(transform_engine, "encode_image", lambda surface, fmt, quality: b"")
    with pytest.raises(EncodeError):
        transform(make_image_bytes(), "image/png", ImageFormat.WEBP, 1.0)


def test_surface_allocation_failure_raises_surface_error(monkeypatch, make_image_bytes) -> None:
    source = make_image_bytes()

    def no_memory(*args, **kwargs):
        raise MemoryError("no room")

    monkeypatch.setattr(transform_engine.Image, "new", no_memory)
    with pytest.raises(SurfaceError):
        transform(source, "image/png", ImageFormat.PNG, 1.0)


def test_encode_image_returns_empty_bytes_for_unknown_encoder(monkeypatch, make_image_bytes) -> None:
    monkeypatch.setattr(
        transform_engine,
        "build_encoder_save_kwargs",
        lambda fmt, quality: {"format": "NO-SUCH-FORMAT"},
    )
    with Image.new("RGBA", (4, 4)) as surface:
        assert transform_engine.encode_image(surface, ImageFormat.WEBP, 1.0) == b""
