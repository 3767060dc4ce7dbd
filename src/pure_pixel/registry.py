"""
画像レジストリ

読み込んだ画像のレコード一覧・全体設定・バッチ処理中フラグを管理します。
状態は不変の RegistryState として保持し、変更のたびにロック内で丸ごと置き換えます。
公開操作は例外を送出せず、失敗はレコードの状態（error）として記録します。
"""

from __future__ import annotations

import random
import string
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from loguru import logger

from pure_pixel.config import PipelineConfig
from pure_pixel.dimension_planner import CustomResize, NoResize, ScaleResize
from pure_pixel.dispatcher import BackgroundDispatcher, FormatProbe, ProgressCallback
from pure_pixel.errors import describe_error
from pure_pixel.export_bundler import ExportArtifact, bundle
from pure_pixel.format_policy import ImageFormat, ProcessMode, ResizeMode
from pure_pixel.models import (
    BatchSummary,
    GlobalSettings,
    ImageRecord,
    ImageSource,
    ProcessResult,
    RecordSettings,
    RecordStatus,
    RegistryState,
)
from pure_pixel.pipeline import ImagePipeline
from pure_pixel.preview_refs import PreviewRef, PreviewRefPool

Listener = Callable[[RegistryState], None]

_ID_ALPHABET = string.ascii_lowercase + string.digits


class FileLike(Protocol):
    name: str
    mime: str
    data: bytes


def generate_record_id() -> str:
    """`img_<ミリ秒>_<ランダム7文字>`"""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"img_{int(time.time() * 1000)}_{suffix}"


def _coerce_setting(key: str, value: Any) -> Any:
    if key == "target_format":
        return ImageFormat.parse(value)
    if key == "mode":
        return ProcessMode(value)
    if key == "resize_mode":
        return ResizeMode(value)
    if key == "resize" and not isinstance(value, (NoResize, ScaleResize, CustomResize)):
        raise ValueError(f"リサイズ方針が不正です: {value!r}")
    if key in ("compression_enabled", "keep_aspect_ratio"):
        return bool(value)
    if key == "scale":
        scale = float(value)
        if not scale > 0:
            raise ValueError(f"倍率は0より大きい値が必要です: {value}")
        return scale
    if key in ("width", "height") and value is not None:
        side = int(value)
        if side <= 0:
            raise ValueError(f"{key}は1以上の整数が必要です: {value}")
        return side
    return value


def _merge_settings(current: Any, changes: Dict[str, Any]) -> Any:
    """dataclassへ変更を検証しつつ適用する。未知のキーは ValueError。"""
    allowed = {f.name for f in fields(current)}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"未知の設定項目です: {', '.join(sorted(unknown))}")
    coerced = {key: _coerce_setting(key, value) for key, value in changes.items()}
    return replace(current, **coerced)


class ImageRegistry:
    """画像レコードの状態機械と処理の調整役"""

    def __init__(
        self,
        pipeline: Optional[ImagePipeline] = None,
        *,
        previews: Optional[PreviewRefPool] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self._pipeline = pipeline or ImagePipeline()
        self._previews = previews or PreviewRefPool()
        self._max_workers = max_workers
        self._lock = threading.RLock()
        self._state = RegistryState()
        self._listeners: List[Listener] = []
        self._issued_ids: set[str] = set()
        self._active_batches = 0

    @classmethod
    def from_config(cls, config: PipelineConfig, probe: Optional[FormatProbe] = None) -> "ImageRegistry":
        dispatcher = BackgroundDispatcher(config.workers, probe=probe) if config.use_background else None
        pipeline = ImagePipeline(dispatcher, probe=probe, decode_timeout=config.decode_timeout)
        return cls(pipeline, max_workers=config.workers)

    # ---- 参照系 ----

    @property
    def state(self) -> RegistryState:
        with self._lock:
            return self._state

    @property
    def records(self) -> Tuple[ImageRecord, ...]:
        return self.state.records

    @property
    def global_settings(self) -> GlobalSettings:
        return self.state.global_settings

    @property
    def is_processing(self) -> bool:
        return self.state.is_processing

    @property
    def previews(self) -> PreviewRefPool:
        return self._previews

    def get(self, record_id: str) -> Optional[ImageRecord]:
        return self.state.find(record_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """状態が変わるたびに新しい RegistryState を受け取る。戻り値を呼ぶと購読解除。"""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ---- 内部 ----

    def _commit(self, state: RegistryState) -> None:
        # ロック保持中に呼ぶ
        self._state = state

    def _notify(self, state: RegistryState) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("状態変更の通知でエラーが発生しました")

    def _release(self, refs: Iterable[Optional[PreviewRef]]) -> None:
        for ref in refs:
            if ref is not None:
                self._previews.revoke(ref)

    def _new_id(self) -> str:
        record_id = generate_record_id()
        while record_id in self._issued_ids:
            record_id = generate_record_id()
        self._issued_ids.add(record_id)
        return record_id

    @staticmethod
    def _reset(record: ImageRecord, settings: RecordSettings) -> ImageRecord:
        return replace(
            record,
            settings=settings,
            status=RecordStatus.IDLE,
            result=None,
            error_message=None,
            revision=record.revision + 1,
        )

    # ---- 公開操作 ----

    def add_files(self, files: Iterable[FileLike]) -> List[str]:
        """画像ファイルをレコードとして追加する。image/* 以外は無視する。"""
        added: List[ImageRecord] = []
        with self._lock:
            seed = self._state.global_settings.to_record_settings()
            for file in files:
                mime = (file.mime or "").lower()
                if not mime.startswith("image/"):
                    logger.debug(f"画像ではないためスキップ: {file.name} ({file.mime})")
                    continue
                source = ImageSource(data=file.data, mime=mime, name=file.name)
                added.append(
                    ImageRecord(
                        id=self._new_id(),
                        source=source,
                        preview_ref=self._previews.create(source.data, source.mime),
                        settings=seed,
                    )
                )
            if not added:
                return []
            state = replace(self._state, records=self._state.records + tuple(added))
            self._commit(state)
        logger.info(f"{len(added)}件の画像を追加しました")
        self._notify(state)
        return [record.id for record in added]

    def remove_image(self, record_id: str) -> None:
        with self._lock:
            record = self._state.find(record_id)
            if record is None:
                logger.debug(f"存在しないIDです: {record_id}")
                return
            state = replace(
                self._state,
                records=tuple(r for r in self._state.records if r.id != record_id),
            )
            self._commit(state)
        self._release((record.preview_ref, record.result.preview_ref if record.result else None))
        self._notify(state)

    def update_settings(self, record_id: str, **changes: Any) -> None:
        """レコードの設定を変更し、未処理状態へ戻す。"""
        with self._lock:
            record = self._state.find(record_id)
            if record is None:
                logger.debug(f"存在しないIDです: {record_id}")
                return
            try:
                settings = _merge_settings(record.settings, changes)
            except (TypeError, ValueError) as e:
                logger.warning(f"設定を変更できません ({record_id}): {e}")
                return
            updated = self._reset(record, settings)
            state = replace(
                self._state,
                records=tuple(updated if r.id == record_id else r for r in self._state.records),
            )
            self._commit(state)
        self._release((record.result.preview_ref if record.result else None,))
        self._notify(state)

    def update_global_settings(self, **changes: Any) -> None:
        """全体設定を変更する。既存レコードへは apply_global_settings で反映する。"""
        with self._lock:
            try:
                settings = _merge_settings(self._state.global_settings, changes)
                settings.to_resize_policy()
            except (TypeError, ValueError) as e:
                logger.warning(f"全体設定を変更できません: {e}")
                return
            state = replace(self._state, global_settings=settings)
            self._commit(state)
        self._notify(state)

    def apply_global_settings(self) -> None:
        """全体設定を全レコードへ反映し、未処理状態へ戻す。"""
        released: List[Optional[PreviewRef]] = []
        with self._lock:
            seed = self._state.global_settings.to_record_settings()
            records = []
            for record in self._state.records:
                unchanged = (
                    record.settings == seed
                    and record.status == RecordStatus.IDLE
                    and record.result is None
                    and record.error_message is None
                )
                if unchanged:
                    records.append(record)
                    continue
                if record.result is not None:
                    released.append(record.result.preview_ref)
                records.append(self._reset(record, seed))
            state = replace(self._state, records=tuple(records))
            self._commit(state)
        self._release(released)
        self._notify(state)

    def process_single_image(
        self,
        record_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[ImageRecord]:
        """
        1件を処理します

        Returns:
            ImageRecord: 処理後のレコード（存在しない場合は None）
        """
        with self._lock:
            record = self._state.find(record_id)
            if record is None:
                logger.debug(f"存在しないIDです: {record_id}")
                return None
            if record.status == RecordStatus.PROCESSING:
                logger.debug(f"処理中のため無視します: {record_id}")
                return record
            superseded = record.result.preview_ref if record.result else None
            started = replace(record, status=RecordStatus.PROCESSING, result=None, error_message=None)
            state = replace(
                self._state,
                records=tuple(started if r.id == record_id else r for r in self._state.records),
            )
            self._commit(state)
        self._release((superseded,))
        self._notify(state)

        result: Optional[ProcessResult] = None
        error_message: Optional[str] = None
        try:
            output = self._pipeline.run(
                f"{record.id}#{record.revision}",
                record.source,
                record.settings,
                on_progress,
            )
            result = ProcessResult(
                data=output.data,
                preview_ref=self._previews.create(output.data, output.output_format.value),
                original_size=record.source.size,
                output_format=output.output_format,
                width=output.width,
                height=output.height,
                fallbacks=output.fallbacks,
            )
        except Exception as e:
            # レコード単位で失敗を閉じ込める
            error_message = describe_error(e)
            logger.warning(f"処理に失敗しました {record.name}: {error_message}")

        with self._lock:
            current = self._state.find(record_id)
            if (
                current is None
                or current.revision != record.revision
                or current.status != RecordStatus.PROCESSING
            ):
                stale = True
            else:
                stale = False
                if result is not None:
                    finished = replace(current, status=RecordStatus.DONE, result=result)
                else:
                    finished = replace(current, status=RecordStatus.ERROR, error_message=error_message)
                state = replace(
                    self._state,
                    records=tuple(finished if r.id == record_id else r for r in self._state.records),
                )
                self._commit(state)

        if stale:
            logger.debug(f"処理中に設定変更または削除されたため結果を破棄します: {record_id}")
            self._release((result.preview_ref if result else None,))
            return current

        if result is not None:
            logger.info(
                f"処理完了 {record.name}: {record.source.size} -> {result.size} bytes "
                f"({result.output_format.name}, {result.width}x{result.height})"
            )
        self._notify(state)
        return finished

    def process_images(self) -> BatchSummary:
        """処理済み以外の全レコードを並行して処理し、全件の完了を待つ。"""
        with self._lock:
            targets = [r.id for r in self._state.records if r.status != RecordStatus.DONE]
            self._active_batches += 1
            state = replace(self._state, is_processing=True)
            self._commit(state)
        self._notify(state)

        finished: List[Optional[ImageRecord]] = []
        try:
            if targets:
                with ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="pure-pixel-batch",
                ) as executor:
                    finished = list(executor.map(self.process_single_image, targets))
        finally:
            with self._lock:
                self._active_batches -= 1
                state = replace(self._state, is_processing=self._active_batches > 0)
                self._commit(state)
            self._notify(state)

        done = sum(1 for r in finished if r is not None and r.status == RecordStatus.DONE)
        failed = sum(1 for r in finished if r is not None and r.status == RecordStatus.ERROR)
        summary = BatchSummary(total=len(targets), done=done, failed=failed)
        logger.info(f"一括処理完了: 成功 {summary.done} / 失敗 {summary.failed} / 対象 {summary.total}")
        return summary

    def export_images(self, dest_dir: Optional[Path | str] = None) -> Optional[ExportArtifact]:
        """
        処理済みレコードをまとめます

        Args:
            dest_dir: 指定時はこのディレクトリへ書き出す

        Returns:
            ExportArtifact: 出力物。処理済みがない、または書き出しに失敗した場合は None
        """
        artifact = bundle(self.state.done_records())
        if artifact is None:
            logger.info("エクスポートできる処理済み画像がありません")
            return None
        if dest_dir is None:
            return artifact
        try:
            path = artifact.write(dest_dir)
        except OSError as e:
            logger.error(f"エクスポートの書き出しに失敗しました: {describe_error(e)}")
            return None
        logger.info(f"エクスポートしました: {path}")
        return artifact

    def clear_all(self) -> None:
        with self._lock:
            records = self._state.records
            state = replace(self._state, records=())
            self._commit(state)
        refs: List[Optional[PreviewRef]] = []
        for record in records:
            refs.append(record.preview_ref)
            refs.append(record.result.preview_ref if record.result else None)
        self._release(refs)
        self._notify(state)

    def close(self) -> None:
        """全レコードを破棄し、バックグラウンドワーカーを停止する。"""
        self.clear_all()
        if self._pipeline.dispatcher is not None:
            self._pipeline.dispatcher.close()

    def __enter__(self) -> "ImageRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False
