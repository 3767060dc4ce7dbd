"""
画像変換エンジン

入力バイト列をデコードし、計画したサイズのサーフェスへ描画してから
指定形式で再エンコードします。共有状態は変更せず、結果のバイト列だけを返します。
"""

from __future__ import annotations

import io
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from loguru import logger
from PIL import Image, ImageOps, UnidentifiedImageError

from pure_pixel.dimension_planner import NO_RESIZE, ResizePolicy, plan_dimensions
from pure_pixel.errors import DecodeError, EncodeError, SurfaceError
from pure_pixel.format_policy import (
    ENCODE_FALLBACK,
    FallbackReason,
    ImageFormat,
    build_encoder_save_kwargs,
)

DEFAULT_DECODE_TIMEOUT = 30.0

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class TransformResult:
    data: bytes
    output_format: ImageFormat
    width: int
    height: int
    fallbacks: Tuple[FallbackReason, ...] = ()

    @property
    def size(self) -> int:
        return len(self.data)


def transform(
    source_bytes: bytes,
    source_mime: str,
    target_format: ImageFormat,
    quality: float,
    resize: ResizePolicy = NO_RESIZE,
    *,
    decode_timeout: float = DEFAULT_DECODE_TIMEOUT,
    progress: Optional[ProgressCallback] = None,
) -> TransformResult:
    """
    デコード → サーフェス描画 → エンコードを行います

    Args:
        source_bytes: 元画像のバイト列
        source_mime: 元画像のMIMEタイプ（ログ用）
        target_format: 出力形式
        quality: エンコード品質（0-1）
        resize: リサイズ方針。デコード後の実サイズから出力サイズを計画する
        decode_timeout: デコードのタイムアウト秒数
        progress: 進捗通知（30/50/70/90）

    Returns:
        TransformResult: エンコード済みバイト列と出力情報

    Raises:
        DecodeError, SurfaceError, EncodeError
    """
    decoded = _decode_with_timeout(source_bytes, source_mime, decode_timeout)
    surface: Optional[Image.Image] = None
    try:
        _notify(progress, 30)
        plan = plan_dimensions(decoded.width, decoded.height, resize)
        surface = _draw_to_surface(decoded, plan.size)
        _notify(progress, 50)
        if plan.clamped:
            logger.debug(f"最大辺長に合わせて縮小しました: {decoded.size} -> {plan.size}")

        _notify(progress, 70)
        data, output_format, fallbacks = _encode_with_fallback(surface, target_format, quality)
        _notify(progress, 90)
        return TransformResult(
            data=data,
            output_format=output_format,
            width=plan.width,
            height=plan.height,
            fallbacks=fallbacks,
        )
    finally:
        if surface is not None:
            surface.close()
        decoded.close()


def _notify(progress: Optional[ProgressCallback], value: int) -> None:
    if progress is not None:
        progress(value)


def _open_and_load(source_bytes: bytes) -> Image.Image:
    """デコードしてEXIFの向き情報を反映する。以降の寸法計画は表示上の向きで行う。"""
    with Image.open(io.BytesIO(source_bytes)) as opened:
        opened.load()
        # 向き補正が不要でも複製が返るため、元画像は with で閉じてよい
        return ImageOps.exif_transpose(opened)


def _close_late_result(future: Future) -> None:
    # タイムアウト後に完了したデコード結果を破棄する
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


def _decode_with_timeout(source_bytes: bytes, source_mime: str, timeout: float) -> Image.Image:
    """タイムアウト付きでデコードする。完了しなかったデコードは中断できないため結果を後で閉じる。"""
    if not source_bytes:
        raise DecodeError("画像データが空です")

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pure-pixel-decode")
    future = executor.submit(_open_and_load, source_bytes)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as e:
        future.add_done_callback(_close_late_result)
        logger.warning(f"デコードが{timeout}秒以内に完了しませんでした ({source_mime})")
        raise DecodeError(f"画像の読み込みがタイムアウトしました（{timeout:g}秒）") from e
    except UnidentifiedImageError as e:
        raise DecodeError(f"画像ファイルとして認識できません ({source_mime})") from e
    except Image.DecompressionBombError as e:
        raise DecodeError(f"画像が大きすぎます: {e}") from e
    except (OSError, ValueError, SyntaxError) as e:
        raise DecodeError(f"画像の読み込みに失敗しました: {e}") from e
    finally:
        executor.shutdown(wait=False)


def _draw_to_surface(decoded: Image.Image, size: Tuple[int, int]) -> Image.Image:
    """RGBAサーフェスを確保し、LANCZOSで縮尺した画像を描画する。"""
    try:
        surface = Image.new("RGBA", size, (0, 0, 0, 0))
    except (MemoryError, ValueError) as e:
        raise SurfaceError(f"描画用サーフェスを作成できません {size}: {e}") from e

    source = decoded if decoded.mode == "RGBA" else decoded.convert("RGBA")
    try:
        if source.size == size:
            surface.alpha_composite(source)
        else:
            with source.resize(size, Image.Resampling.LANCZOS) as scaled:
                surface.alpha_composite(scaled)
    except (MemoryError, ValueError) as e:
        surface.close()
        raise SurfaceError(f"サーフェスへの描画に失敗しました: {e}") from e
    finally:
        if source is not decoded:
            source.close()
    return surface


def _prepare_for_format(surface: Image.Image, output_format: ImageFormat) -> Image.Image:
    if output_format == ImageFormat.JPEG:
        # 透過を持つ画像は白背景へ合成して保存する
        background = Image.new("RGBA", surface.size, (255, 255, 255, 255))
        background.alpha_composite(surface)
        flattened = background.convert("RGB")
        background.close()
        return flattened
    return surface


def encode_image(surface: Image.Image, output_format: ImageFormat, quality: float) -> bytes:
    """サーフェスを指定形式でエンコードする。失敗時は空のバイト列を返す。"""
    prepared = _prepare_for_format(surface, output_format)
    buffer = io.BytesIO()
    try:
        prepared.save(buffer, **build_encoder_save_kwargs(output_format, quality))
    except (KeyError, OSError, ValueError) as e:
        logger.warning(f"{output_format.name} のエンコードに失敗: {e}")
        return b""
    finally:
        if prepared is not surface:
            prepared.close()
    return buffer.getvalue()


def _encode_with_fallback(
    surface: Image.Image,
    target_format: ImageFormat,
    quality: float,
) -> Tuple[bytes, ImageFormat, Tuple[FallbackReason, ...]]:
    data = encode_image(surface, target_format, quality)
    if data:
        return data, target_format, ()

    fallback_format, fallback_quality, reason = ENCODE_FALLBACK
    logger.info(f"{target_format.name} の出力が空のため {fallback_format.name} で再エンコードします")
    data = encode_image(surface, fallback_format, fallback_quality)
    if not data:
        raise EncodeError(f"{target_format.name} と {fallback_format.name} の両方でエンコードに失敗しました")
    return data, fallback_format, (reason,)
