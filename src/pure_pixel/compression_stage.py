"""変換済み画像を準ロスレスで再圧縮する二次パス。

同じ形式のまま高品質で再エンコードし、サイズ上限と最大辺長を守るまで
品質（非可逆形式）または寸法（可逆形式）を段階的に下げる。
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Any, Dict

from loguru import logger
from PIL import Image, UnidentifiedImageError

from pure_pixel.dimension_planner import MAX_SIDE_LENGTH, round_half_up
from pure_pixel.errors import DecodeError, EncodeError
from pure_pixel.format_policy import ImageFormat, build_encoder_save_kwargs

MAX_OUTPUT_BYTES = 10 * 1024 * 1024
_MAX_ATTEMPTS = 10
_QUALITY_STEP = 0.05
_MIN_QUALITY = 0.5
_DOWNSCALE_STEP = 0.9

_LOSSY_FORMATS = {ImageFormat.JPEG, ImageFormat.WEBP, ImageFormat.AVIF}


@dataclass(frozen=True)
class CompressionOptions:
    max_size_bytes: int = MAX_OUTPUT_BYTES
    max_side_length: int = MAX_SIDE_LENGTH
    preserve_metadata: bool = True
    initial_quality: float = 0.95


DEFAULT_COMPRESSION_OPTIONS = CompressionOptions()


def compress(
    data: bytes,
    mime: str,
    options: CompressionOptions = DEFAULT_COMPRESSION_OPTIONS,
) -> bytes:
    """
    画像を同じ形式のまま再圧縮します

    Args:
        data: 変換済み画像のバイト列
        mime: 画像のMIMEタイプ
        options: サイズ上限・最大辺長・メタデータ保持・初期品質

    Returns:
        bytes: 再圧縮後のバイト列（縮小不要で小さくならなかった場合は入力のまま）
    """
    output_format = ImageFormat.from_mime(mime)
    try:
        with Image.open(io.BytesIO(data)) as opened:
            opened.load()
            if output_format is None:
                output_format = ImageFormat.from_mime(Image.MIME.get(opened.format or "", ""))
            if output_format is None:
                raise EncodeError(f"再圧縮に対応していない形式です: {mime}")
            metadata = _collect_metadata(opened) if options.preserve_metadata else {}
            original_size = opened.size
            working = _fit_to_side_length(opened, options.max_side_length)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise DecodeError(f"再圧縮対象の画像を読み込めません: {e}") from e

    resized = working.size != original_size
    try:
        quality = options.initial_quality
        encoded = _encode(working, output_format, quality, metadata)
        attempts = 1
        while len(encoded) > options.max_size_bytes and attempts < _MAX_ATTEMPTS:
            attempts += 1
            if output_format in _LOSSY_FORMATS and quality - _QUALITY_STEP >= _MIN_QUALITY:
                quality = round(quality - _QUALITY_STEP, 2)
            else:
                smaller = _downscale(working, _DOWNSCALE_STEP)
                working.close()
                working = smaller
                resized = True
            encoded = _encode(working, output_format, quality, metadata)
            logger.debug(
                f"再圧縮 {attempts}回目: {output_format.name} q={quality} {working.size} -> {len(encoded)} bytes"
            )
    finally:
        working.close()

    if len(encoded) > options.max_size_bytes:
        logger.warning(f"サイズ上限 {options.max_size_bytes} bytes に収まりませんでした: {len(encoded)} bytes")

    if not resized and len(encoded) >= len(data):
        # 縮小不要で小さくならなければ入力をそのまま返す
        return data
    return encoded


def _collect_metadata(img: Image.Image) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {}
    for key in ("exif", "icc_profile"):
        value = img.info.get(key)
        if value:
            metadata[key] = value
    return metadata


def _fit_to_side_length(img: Image.Image, max_side_length: int) -> Image.Image:
    longest = max(img.size)
    if longest <= max_side_length:
        return img.copy()
    ratio = max_side_length / longest
    size = (
        min(max_side_length, max(1, round_half_up(img.width * ratio))),
        min(max_side_length, max(1, round_half_up(img.height * ratio))),
    )
    return _resample(img).resize(size, Image.Resampling.LANCZOS)


def _downscale(img: Image.Image, step: float) -> Image.Image:
    size = (max(1, round_half_up(img.width * step)), max(1, round_half_up(img.height * step)))
    return _resample(img).resize(size, Image.Resampling.LANCZOS)


def _resample(img: Image.Image) -> Image.Image:
    # パレット画像はLANCZOSで縮小できないためRGBAへ展開する
    if img.mode in ("P", "1", "LA", "PA"):
        return img.convert("RGBA")
    return img


def _encode(
    img: Image.Image,
    output_format: ImageFormat,
    quality: float,
    metadata: Dict[str, Any],
) -> bytes:
    save_img = img
    if output_format == ImageFormat.JPEG and img.mode not in ("RGB", "L"):
        save_img = img.convert("RGB")

    save_kwargs = build_encoder_save_kwargs(output_format, quality)
    if output_format != ImageFormat.GIF:
        save_kwargs.update(metadata)

    buffer = io.BytesIO()
    try:
        save_img.save(buffer, **save_kwargs)
    except (KeyError, OSError, ValueError) as e:
        if not metadata:
            raise EncodeError(f"{output_format.name} の再圧縮に失敗しました: {e}") from e
        # メタデータ付与に失敗した場合はメタデータなし保存へフォールバックする
        logger.debug(f"メタデータ付きの保存に失敗したため除外して再試行します: {e}")
        return _encode(img, output_format, quality, {})
    finally:
        if save_img is not img:
            save_img.close()

    encoded = buffer.getvalue()
    if not encoded:
        raise EncodeError(f"{output_format.name} の再圧縮結果が空です")
    return encoded


def compression_ratio(original_size: int, encoded_size: int) -> float:
    """1 - 出力/元。負の値はサイズ増加を表す。"""
    if original_size <= 0:
        return 0.0
    return 1 - encoded_size / original_size
