"""
処理済み画像のエクスポート

処理済みが1件なら単体ファイル、2件以上ならZIPにまとめます。
"""

from __future__ import annotations

import io
import os
import re
import time
import uuid
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Set

from loguru import logger

from pure_pixel.models import ImageRecord, RecordStatus

ZIP_MIME = "application/zip"
DOWNLOAD_SUFFIX = "_purepixel"
ARCHIVE_PREFIX = "purepixel_images_"

# 英数字・_・-・.・CJK統合漢字以外は _ に置き換える
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_\-\u4e00-\u9fa5.]")
_EXTENSION = re.compile(r"\.[^/.]+$")


@dataclass(frozen=True)
class ExportArtifact:
    filename: str
    data: bytes
    mime: str
    entries: tuple[str, ...] = ()

    @property
    def is_archive(self) -> bool:
        return self.mime == ZIP_MIME

    def write(self, dest_dir: Path | str) -> Path:
        """保存先ディレクトリへ書き出す。一時ファイル→置換で途中状態のファイルを残さない。"""
        directory = Path(dest_dir)
        directory.mkdir(parents=True, exist_ok=True)
        final_path = directory / self.filename
        token = f"{os.getpid()}_{time.time_ns()}_{uuid.uuid4().hex[:10]}"
        tmp_path = final_path.with_name(f".{self.filename}.{token}.tmp")
        try:
            tmp_path.write_bytes(self.data)
            os.replace(str(tmp_path), str(final_path))
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    logger.warning(f"一時保存ファイルの削除に失敗: {tmp_path}")
        return final_path


def sanitize_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def build_download_name(record: ImageRecord) -> str:
    """`<元ファイル名（拡張子なし）>_purepixel.<出力形式の拡張子>`"""
    base_name = _EXTENSION.sub("", record.source.name)
    extension = record.result.output_format.extension if record.result else "png"
    return f"{sanitize_filename(base_name)}{DOWNLOAD_SUFFIX}.{extension}"


def _dedupe_name(name: str, used: Set[str]) -> str:
    if name not in used:
        return name
    stem, dot, extension = name.rpartition(".")
    if not dot:
        stem, extension = name, ""
    counter = 2
    while True:
        candidate = f"{stem}_{counter}.{extension}" if extension else f"{stem}_{counter}"
        if candidate not in used:
            return candidate
        counter += 1


def bundle(records: Iterable[ImageRecord], now: Optional[float] = None) -> Optional[ExportArtifact]:
    """
    処理済みレコードをエクスポート用にまとめます

    Args:
        records: レコード一覧（処理済み以外は無視）
        now: アーカイブ名に使う時刻（UNIX秒）。省略時は現在時刻

    Returns:
        ExportArtifact: 単体ファイルまたはZIP。処理済みがなければ None
    """
    done = [r for r in records if r.status == RecordStatus.DONE and r.result is not None]
    if not done:
        return None

    if len(done) == 1:
        record = done[0]
        filename = build_download_name(record)
        return ExportArtifact(
            filename=filename,
            data=record.result.data,
            mime=record.result.output_format.value,
            entries=(filename,),
        )

    used: Set[str] = set()
    entries: List[str] = []
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for record in done:
            arcname = _dedupe_name(build_download_name(record), used)
            used.add(arcname)
            entries.append(arcname)
            zf.writestr(arcname, record.result.data)

    timestamp_ms = int((time.time() if now is None else now) * 1000)
    archive_name = f"{ARCHIVE_PREFIX}{timestamp_ms}.zip"
    logger.info(f"{len(entries)}件をZIPにまとめました: {archive_name}")
    return ExportArtifact(filename=archive_name, data=buffer.getvalue(), mime=ZIP_MIME, entries=tuple(entries))
