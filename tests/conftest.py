"""
pytest設定ファイル
共通のフィクスチャやテスト設定を定義
"""

from __future__ import annotations

import io
from typing import Callable

import pytest
from PIL import Image

from pure_pixel.file_loader import ImageFile


def encode(img: Image.Image, fmt: str, **kwargs) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format=fmt, **kwargs)
    return buffer.getvalue()


def open_bytes(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


@pytest.fixture
def make_image_bytes() -> Callable[..., bytes]:
    """指定サイズ・形式の画像バイト列を作るフィクスチャ"""

    def _make(size=(64, 48), fmt="PNG", mode="RGB", color=(200, 40, 40), **kwargs) -> bytes:
        if mode == "RGBA" and len(color) == 3:
            color = (*color, 255)
        with Image.new(mode, size, color) as img:
            return encode(img, fmt, **kwargs)

    return _make


@pytest.fixture
def png_file(make_image_bytes) -> ImageFile:
    return ImageFile(name="photo.png", mime="image/png", data=make_image_bytes((64, 48), "PNG"))


@pytest.fixture
def jpeg_file(make_image_bytes) -> ImageFile:
    return ImageFile(name="写真 01.jpg", mime="image/jpeg", data=make_image_bytes((80, 60), "JPEG"))


@pytest.fixture
def sample_images(tmp_path, make_image_bytes):
    """様々なフォーマットのサンプル画像をディスクに作成するフィクスチャ"""
    images = {}
    for key, name, fmt in (
        ("jpeg", "sample.jpg", "JPEG"),
        ("png", "sample.png", "PNG"),
        ("webp", "sample.webp", "WEBP"),
        ("gif", "sample.gif", "GIF"),
    ):
        path = tmp_path / name
        path.write_bytes(make_image_bytes((120, 90), fmt))
        images[key] = path
    return images
