"""実行時設定（環境変数から読み込む）。セッションをまたいだ保存は行わない。"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from loguru import logger

from pure_pixel.transform_engine import DEFAULT_DECODE_TIMEOUT

DECODE_TIMEOUT_ENV = "PUREPIXEL_DECODE_TIMEOUT"
WORKERS_ENV = "PUREPIXEL_WORKERS"
BACKGROUND_ENV = "PUREPIXEL_BACKGROUND"
LOG_DIR_ENV = "PUREPIXEL_LOG_DIR"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def default_worker_count() -> int:
    return max(1, min(4, os.cpu_count() or 1))


@dataclass(frozen=True)
class PipelineConfig:
    decode_timeout: float = DEFAULT_DECODE_TIMEOUT
    workers: int = field(default_factory=default_worker_count)
    use_background: bool = True
    log_dir: Optional[Path] = None


def _parse_positive_float(name: str, raw: str, default: float) -> float:
    try:
        value = float(raw)
    except ValueError:
        value = 0.0
    if value > 0:
        return value
    logger.warning(f"{name} の値が不正なため既定値を使います: {raw!r} -> {default}")
    return default


def _parse_positive_int(name: str, raw: str, default: int) -> int:
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value > 0:
        return value
    logger.warning(f"{name} の値が不正なため既定値を使います: {raw!r} -> {default}")
    return default


def _parse_bool(name: str, raw: str, default: bool) -> bool:
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning(f"{name} の値が不正なため既定値を使います: {raw!r} -> {default}")
    return default


def load_config(env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """環境変数から設定を読み込む。不正な値は警告を出して既定値に戻す。"""
    resolved_env = os.environ if env is None else env
    defaults = PipelineConfig()

    decode_timeout = defaults.decode_timeout
    raw = resolved_env.get(DECODE_TIMEOUT_ENV)
    if raw:
        decode_timeout = _parse_positive_float(DECODE_TIMEOUT_ENV, raw, defaults.decode_timeout)

    workers = defaults.workers
    raw = resolved_env.get(WORKERS_ENV)
    if raw:
        workers = _parse_positive_int(WORKERS_ENV, raw, defaults.workers)

    use_background = defaults.use_background
    raw = resolved_env.get(BACKGROUND_ENV)
    if raw:
        use_background = _parse_bool(BACKGROUND_ENV, raw, defaults.use_background)

    raw = resolved_env.get(LOG_DIR_ENV)
    log_dir = Path(raw) if raw else None

    return PipelineConfig(
        decode_timeout=decode_timeout,
        workers=workers,
        use_background=use_background,
        log_dir=log_dir,
    )
