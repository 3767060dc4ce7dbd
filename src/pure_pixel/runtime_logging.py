"""ログ出力の設定と、実行ログ・実行サマリーの保存を扱うユーティリティ。"""

from __future__ import annotations

import json
import os
import sys
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from loguru import logger

from pure_pixel.models import BatchSummary, ImageRecord, RecordStatus

APP_NAME = "PurePixel"
LOG_DIR_ENV = "PUREPIXEL_LOG_DIR"


@dataclass(frozen=True)
class RunLogArtifacts:
    run_id: str
    log_dir: Path
    run_log_path: Path
    summary_path: Path


def setup_logging(
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """ロギングの設定を行います"""
    logger.remove()  # デフォルト設定を削除
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{function}</cyan>: <white>{message}</white>",
        colorize=True,
        level=console_level,
    )
    if log_file is not None:
        logger.add(
            str(log_file),
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {thread.name} | {function}: {message}",
            rotation="1 day",
            level=file_level,
            encoding="utf-8",
        )


def get_default_log_dir(
    app_name: str = APP_NAME,
    *,
    os_name: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """ログディレクトリを返す。環境変数 PUREPIXEL_LOG_DIR があればそれを優先する。"""
    resolved_os_name = os_name or os.name
    resolved_env = os.environ if env is None else env
    resolved_home = home or Path.home()

    override = resolved_env.get(LOG_DIR_ENV)
    if override:
        return Path(override)

    app_dir_name = app_name.strip().replace(" ", "")
    app_dir_name_lc = app_dir_name.lower()

    if resolved_os_name == "nt":
        local_app_data = resolved_env.get("LOCALAPPDATA") or resolved_env.get("APPDATA")
        if local_app_data:
            return Path(local_app_data) / app_dir_name / "logs"
        return resolved_home / f".{app_dir_name_lc}" / "logs"

    state_home = resolved_env.get("XDG_STATE_HOME")
    if state_home:
        return Path(state_home) / app_dir_name_lc / "logs"

    return resolved_home / ".local" / "state" / app_dir_name_lc / "logs"


def create_run_log_artifacts(log_dir: Optional[Path] = None, *, now: Optional[datetime] = None) -> RunLogArtifacts:
    """実行ごとのログ/summaryファイルパスを作成して返す。"""
    run_id = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    resolved_dir = log_dir or get_default_log_dir()
    resolved_dir.mkdir(parents=True, exist_ok=True)
    return RunLogArtifacts(
        run_id=run_id,
        log_dir=resolved_dir,
        run_log_path=resolved_dir / f"run_{run_id}.log",
        summary_path=resolved_dir / f"run_{run_id}_summary.json",
    )


def _record_entry(record: ImageRecord) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "name": record.name,
        "status": record.status.value,
        "source_mime": record.source.mime,
        "source_size": record.source.size,
    }
    result = record.result
    if record.status == RecordStatus.DONE and result is not None:
        entry.update(
            output_format=result.output_format.value,
            size=result.size,
            width=result.width,
            height=result.height,
            compression_ratio=round(result.compression_ratio, 4),
            fallbacks=[reason.value for reason in result.fallbacks],
        )
    elif record.error_message:
        entry["error"] = record.error_message
    return entry


def build_run_summary(
    run_id: str,
    records: Iterable[ImageRecord],
    summary: BatchSummary,
    output: Optional[Path] = None,
) -> dict[str, Any]:
    """
    実行結果をsummary JSON用の辞書にまとめます

    Args:
        run_id: 実行ID
        records: 処理後のレコード一覧
        summary: 一括処理の集計
        output: 書き出したファイル（なければ None）

    Returns:
        dict: 集計・フォールバック件数・レコードごとの結果
    """
    entries = [_record_entry(record) for record in records]
    fallback_counts = Counter(reason for entry in entries for reason in entry.get("fallbacks", ()))
    return {
        "run_id": run_id,
        "total": summary.total,
        "done": summary.done,
        "failed": summary.failed,
        "fallbacks": dict(sorted(fallback_counts.items())),
        "output": str(output) if output is not None else None,
        "records": entries,
    }


def write_run_summary(summary_path: Path, payload: dict[str, Any]) -> None:
    """summary JSON をアトミックに保存する。"""
    summary_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = summary_path.with_suffix(f"{summary_path.suffix}.tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, ensure_ascii=False, indent=2)
    tmp_path.replace(summary_path)
    logger.debug(f"実行サマリーを保存しました: {summary_path}")
