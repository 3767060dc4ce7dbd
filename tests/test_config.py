from __future__ import annotations

from pathlib import Path

from pure_pixel.config import PipelineConfig, default_worker_count, load_config


def test_defaults_without_environment() -> None:
    config = load_config({})
    assert config == PipelineConfig()
    assert config.decode_timeout == 30.0
    assert config.use_background is True
    assert config.log_dir is None
    assert 1 <= config.workers <= 4
    assert config.workers == default_worker_count()


def test_reads_values_from_environment(tmp_path: Path) -> None:
    config = load_config(
        {
            "PUREPIXEL_DECODE_TIMEOUT": "2.5",
            "PUREPIXEL_WORKERS": "3",
            "PUREPIXEL_BACKGROUND": "off",
            "PUREPIXEL_LOG_DIR": str(tmp_path),
        }
    )
    assert config.decode_timeout == 2.5
    assert config.workers == 3
    assert config.use_background is False
    assert config.log_dir == tmp_path


def test_invalid_values_fall_back_to_defaults() -> None:
    config = load_config(
        {
            "PUREPIXEL_DECODE_TIMEOUT": "-1",
            "PUREPIXEL_WORKERS": "many",
            "PUREPIXEL_BACKGROUND": "maybe",
        }
    )
    defaults = PipelineConfig()
    assert config.decode_timeout == defaults.decode_timeout
    assert config.workers == defaults.workers
    assert config.use_background is True
