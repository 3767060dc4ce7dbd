"""
1枚分の処理パイプライン

処理モードに応じて 変換（リサイズ＋再エンコード）→ 再圧縮 の順に実行します。
変換はバックグラウンドディスパッチャがあればワーカーで、なければ呼び出し元で実行します。
"""

from __future__ import annotations

import io
from dataclasses import replace
from typing import Callable, Optional, Tuple

from loguru import logger
from PIL import Image

from pure_pixel.compression_stage import compress
from pure_pixel.dispatcher import (
    BackgroundDispatcher,
    FormatProbe,
    ProgressCallback,
    TransformRequest,
    run_request,
)
from pure_pixel.format_policy import ProcessMode
from pure_pixel.models import ImageSource, RecordSettings
from pure_pixel.transform_engine import DEFAULT_DECODE_TIMEOUT, TransformResult

Compressor = Callable[[bytes, str], bytes]


def needs_compression(settings: RecordSettings) -> bool:
    """変換後に再圧縮を行うか。"""
    if settings.mode == ProcessMode.COMPRESS:
        return True
    if settings.mode == ProcessMode.BOTH:
        return settings.compression_enabled
    return False


class ImagePipeline:
    def __init__(
        self,
        dispatcher: Optional[BackgroundDispatcher] = None,
        *,
        compressor: Compressor = compress,
        probe: Optional[FormatProbe] = None,
        decode_timeout: float = DEFAULT_DECODE_TIMEOUT,
    ) -> None:
        self.dispatcher = dispatcher
        self.compressor = compressor
        self.probe = probe
        self.decode_timeout = decode_timeout

    def run(
        self,
        request_id: str,
        source: ImageSource,
        settings: RecordSettings,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TransformResult:
        """
        1枚の画像をレコード設定に従って処理します

        Raises:
            DecodeError, SurfaceError, EncodeError, DispatchError
        """
        request = TransformRequest(
            kind=settings.mode,
            request_id=request_id,
            data=source.data,
            source_mime=source.mime,
            target_format=settings.target_format,
            compression_enabled=settings.compression_enabled,
            resize=settings.resize,
            decode_timeout=self.decode_timeout,
        )
        result = self._transform(request, on_progress)

        if not needs_compression(settings):
            return result

        # 再圧縮は常に変換済みのバイト列に対して行う
        compressed = self.compressor(result.data, result.output_format.value)
        if compressed is result.data or compressed == result.data:
            return result
        width, height = _read_dimensions(compressed, (result.width, result.height))
        logger.debug(f"再圧縮 {request_id}: {result.size} -> {len(compressed)} bytes")
        return replace(result, data=compressed, width=width, height=height)

    def _transform(
        self,
        request: TransformRequest,
        on_progress: Optional[ProgressCallback],
    ) -> TransformResult:
        if self.dispatcher is not None:
            future = self.dispatcher.submit(request, on_progress)
            return future.result()

        report = _guarded_progress(request.request_id, on_progress)
        report(10)
        result = run_request(request, report, self.probe)
        report(100)
        return result


def _guarded_progress(request_id: str, on_progress: Optional[ProgressCallback]) -> ProgressCallback:
    """呼び出し元の進捗コールバックの例外で処理結果を失わないようにする。"""

    def report(value: int) -> None:
        if on_progress is None:
            return
        try:
            on_progress(value)
        except Exception:
            logger.exception(f"進捗コールバックでエラー ({request_id})")

    return report


def _read_dimensions(data: bytes, default: Tuple[int, int]) -> Tuple[int, int]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (OSError, ValueError):
        return default
