"""
バックグラウンド変換ディスパッチャ

変換要求をワーカースレッドへメッセージで渡し、応答を要求IDで対応付けて
Future を解決します。進捗は同じIDのコールバックへ通知します。
"""

from __future__ import annotations

import threading
from concurrent.futures import Future
from dataclasses import dataclass, replace
from enum import Enum
from functools import partial
from queue import Empty, Queue
from typing import Callable, Dict, List, Optional

from loguru import logger

from pure_pixel.dimension_planner import NO_RESIZE, ResizePolicy
from pure_pixel.errors import DispatchError, describe_error, error_from_name
from pure_pixel.format_policy import (
    ImageFormat,
    ProcessMode,
    resolve_capability,
    select_encoding,
)
from pure_pixel.transform_engine import DEFAULT_DECODE_TIMEOUT, TransformResult, transform

ProgressCallback = Callable[[int], None]
FormatProbe = Callable[[ImageFormat], bool]


class ResponseKind(str, Enum):
    """応答メッセージの種別"""

    PROGRESS = "progress"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class TransformRequest:
    """ワーカーへ渡す変換要求"""

    kind: ProcessMode
    request_id: str
    data: bytes
    source_mime: str
    target_format: ImageFormat
    compression_enabled: bool
    resize: ResizePolicy = NO_RESIZE
    decode_timeout: float = DEFAULT_DECODE_TIMEOUT


@dataclass(frozen=True)
class TransformResponse:
    """ワーカーからの応答"""

    kind: ResponseKind
    request_id: str
    progress: Optional[int] = None
    result: Optional[TransformResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


Handler = Callable[[TransformRequest, Callable[[TransformResponse], None]], None]


def run_request(
    request: TransformRequest,
    on_progress: Optional[ProgressCallback] = None,
    probe: Optional[FormatProbe] = None,
) -> TransformResult:
    """形式ポリシーと能力判定を適用して変換を実行する。例外はそのまま送出する。"""
    plan = select_encoding(
        request.kind,
        request.target_format,
        request.compression_enabled,
        ImageFormat.from_mime(request.source_mime),
    )
    plan = resolve_capability(plan, probe)
    result = transform(
        request.data,
        request.source_mime,
        plan.output_format,
        plan.quality,
        request.resize,
        decode_timeout=request.decode_timeout,
        progress=on_progress,
    )
    if plan.fallbacks:
        result = replace(result, fallbacks=plan.fallbacks + result.fallbacks)
    return result


def execute_request(
    request: TransformRequest,
    post: Callable[[TransformResponse], None],
    probe: Optional[FormatProbe] = None,
) -> None:
    """ワーカー側の処理。結果もエラーもすべて応答メッセージで返す。"""

    def post_progress(value: int) -> None:
        post(TransformResponse(kind=ResponseKind.PROGRESS, request_id=request.request_id, progress=value))

    post_progress(10)
    try:
        result = run_request(request, post_progress, probe)
    except Exception as e:
        logger.debug(f"変換失敗 ({request.request_id}): {e}")
        post(
            TransformResponse(
                kind=ResponseKind.ERROR,
                request_id=request.request_id,
                error=describe_error(e),
                error_type=type(e).__name__,
            )
        )
        return
    post_progress(100)
    post(TransformResponse(kind=ResponseKind.SUCCESS, request_id=request.request_id, result=result))


_STOP = object()


@dataclass
class _PendingRequest:
    future: Future
    on_progress: Optional[ProgressCallback]
    last_progress: int = 0


class BackgroundDispatcher:
    """ワーカースレッド群への変換要求の受け渡しと応答の対応付けを行う"""

    def __init__(
        self,
        workers: int = 2,
        *,
        probe: Optional[FormatProbe] = None,
        handler: Optional[Handler] = None,
    ) -> None:
        self._handler: Handler = handler or partial(execute_request, probe=probe)
        self._requests: "Queue[object]" = Queue()
        self._responses: "Queue[object]" = Queue()
        self._pending: Dict[str, _PendingRequest] = {}
        self._lock = threading.Lock()
        self._closed = False

        self._workers: List[threading.Thread] = [
            threading.Thread(target=self._work, name=f"pure-pixel-worker-{index}", daemon=True)
            for index in range(max(1, workers))
        ]
        self._router = threading.Thread(target=self._route, name="pure-pixel-router", daemon=True)
        for thread in self._workers:
            thread.start()
        self._router.start()
        logger.debug(f"バックグラウンドワーカーを起動しました: {len(self._workers)}")

    @property
    def is_available(self) -> bool:
        return not self._closed

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(
        self,
        request: TransformRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Future:
        """変換要求を送信し、結果（TransformResult）を返す Future を返す。"""
        future: Future = Future()
        with self._lock:
            if self._closed:
                future.set_exception(DispatchError("バックグラウンド処理は終了しています"))
                return future
            if request.request_id in self._pending:
                future.set_exception(DispatchError(f"同じIDの要求が処理中です: {request.request_id}"))
                return future
            # close() が先に Future を失敗させないよう、登録前に実行中へ遷移させる
            future.set_running_or_notify_cancel()
            self._pending[request.request_id] = _PendingRequest(future=future, on_progress=on_progress)
        self._requests.put(request)
        return future

    def close(self, timeout: float = 1.0) -> None:
        """未完了の要求をすべて破棄し、ワーカーを停止する。"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            abandoned = list(self._pending.items())
            self._pending.clear()

        # 未着手の要求は処理させない
        while True:
            try:
                self._requests.get_nowait()
            except Empty:
                break

        for request_id, pending in abandoned:
            logger.debug(f"要求を破棄しました: {request_id}")
            pending.future.set_exception(DispatchError("バックグラウンド処理が終了したため中断されました"))

        for _ in self._workers:
            self._requests.put(_STOP)
        self._responses.put(_STOP)
        self._router.join(timeout)

    def __enter__(self) -> "BackgroundDispatcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _work(self) -> None:
        while True:
            item = self._requests.get()
            if item is _STOP:
                return
            request: TransformRequest = item  # type: ignore[assignment]
            try:
                self._handler(request, self._responses.put)
            except Exception as e:
                logger.exception(f"ワーカーで予期しないエラー ({request.request_id})")
                self._responses.put(
                    TransformResponse(
                        kind=ResponseKind.ERROR,
                        request_id=request.request_id,
                        error=describe_error(e),
                        error_type=type(e).__name__,
                    )
                )

    def _route(self) -> None:
        while True:
            item = self._responses.get()
            if item is _STOP:
                return
            self._deliver(item)  # type: ignore[arg-type]

    def _deliver(self, response: TransformResponse) -> None:
        with self._lock:
            pending = self._pending.get(response.request_id)
            if pending is None:
                # 破棄済みの要求への応答は捨てる
                return
            if response.kind != ResponseKind.PROGRESS:
                del self._pending[response.request_id]

        if response.kind == ResponseKind.PROGRESS:
            value = int(response.progress or 0)
            if pending.on_progress is None or value <= pending.last_progress or self._closed:
                return
            pending.last_progress = value
            try:
                pending.on_progress(value)
            except Exception:
                logger.exception(f"進捗コールバックでエラー ({response.request_id})")
            return

        if response.kind == ResponseKind.SUCCESS and response.result is not None:
            pending.future.set_result(response.result)
        else:
            pending.future.set_exception(error_from_name(response.error_type, response.error))
