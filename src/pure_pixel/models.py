"""
画像レコードと設定のデータモデル
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from pure_pixel.compression_stage import compression_ratio
from pure_pixel.dimension_planner import NO_RESIZE, ResizePolicy, policy_from_settings
from pure_pixel.format_policy import FallbackReason, ImageFormat, ProcessMode, ResizeMode
from pure_pixel.preview_refs import PreviewRef


class RecordStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ImageSource:
    """読み込んだ元画像（変更しない）"""

    data: bytes
    mime: str
    name: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class RecordSettings:
    """レコード単位の処理設定"""

    target_format: ImageFormat = ImageFormat.WEBP
    compression_enabled: bool = True
    mode: ProcessMode = ProcessMode.CONVERT
    resize: ResizePolicy = NO_RESIZE


@dataclass(frozen=True)
class ProcessResult:
    """処理結果"""

    data: bytes
    preview_ref: PreviewRef
    original_size: int
    output_format: ImageFormat
    width: int
    height: int
    fallbacks: Tuple[FallbackReason, ...] = ()

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def compression_ratio(self) -> float:
        return compression_ratio(self.original_size, self.size)


@dataclass(frozen=True)
class ImageRecord:
    id: str
    source: ImageSource
    preview_ref: PreviewRef
    settings: RecordSettings
    status: RecordStatus = RecordStatus.IDLE
    result: Optional[ProcessResult] = None
    error_message: Optional[str] = None
    revision: int = 0

    @property
    def name(self) -> str:
        return self.source.name


@dataclass(frozen=True)
class GlobalSettings:
    """全体設定（新規レコードの初期値）"""

    target_format: ImageFormat = ImageFormat.WEBP
    compression_enabled: bool = True
    mode: ProcessMode = ProcessMode.CONVERT
    keep_aspect_ratio: bool = True
    resize_mode: ResizeMode = ResizeMode.NONE
    scale: float = 1.0
    width: Optional[int] = None
    height: Optional[int] = None

    def to_resize_policy(self) -> ResizePolicy:
        return policy_from_settings(
            self.resize_mode,
            scale=self.scale,
            width=self.width,
            height=self.height,
            keep_aspect=self.keep_aspect_ratio,
        )

    def to_record_settings(self) -> RecordSettings:
        return RecordSettings(
            target_format=self.target_format,
            compression_enabled=self.compression_enabled,
            mode=self.mode,
            resize=self.to_resize_policy(),
        )


@dataclass(frozen=True)
class RegistryState:
    """レジストリ全体のスナップショット。変更のたびに丸ごと置き換える。"""

    records: Tuple[ImageRecord, ...] = ()
    global_settings: GlobalSettings = field(default_factory=GlobalSettings)
    is_processing: bool = False

    def find(self, record_id: str) -> Optional[ImageRecord]:
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    def done_records(self) -> Tuple[ImageRecord, ...]:
        return tuple(r for r in self.records if r.status == RecordStatus.DONE)


@dataclass(frozen=True)
class BatchSummary:
    total: int = 0
    done: int = 0
    failed: int = 0

    @property
    def all_succeeded(self) -> bool:
        return self.failed == 0 and self.done == self.total
