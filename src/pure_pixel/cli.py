"""コマンドラインから画像を変換・圧縮してエクスポートする。"""

from __future__ import annotations

import argparse
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from pure_pixel.config import load_config
from pure_pixel.errors import ReadError, describe_error
from pure_pixel.file_loader import ImageFile, discover_image_files, read_image_file
from pure_pixel.format_policy import ImageFormat, ProcessMode, ResizeMode
from pure_pixel.models import RecordStatus
from pure_pixel.registry import ImageRegistry
from pure_pixel.runtime_logging import (
    build_run_summary,
    create_run_log_artifacts,
    setup_logging,
    write_run_summary,
)

_FORMAT_CHOICES = ["jpeg", "png", "webp", "avif", "gif"]


def format_file_size(size_in_bytes: float) -> str:
    """
    ファイルサイズを読みやすい形式に変換します

    Args:
        size_in_bytes: バイト単位のサイズ

    Returns:
        str: 人間が読みやすい形式（例: 1.2 MB）
    """
    for unit in ["B", "KB", "MB", "GB"]:
        if size_in_bytes < 1024.0 or unit == "GB":
            break
        size_in_bytes /= 1024.0
    return f"{size_in_bytes:.1f} {unit}"


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"数値を指定してください: {value}")
    if not number > 0:
        raise argparse.ArgumentTypeError(f"0より大きい値を指定してください: {value}")
    return number


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"整数を指定してください: {value}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"1以上の整数を指定してください: {value}")
    return number


def _build_arg_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI use."""
    p = argparse.ArgumentParser(
        prog="pure-pixel",
        description="画像の形式変換・リサイズ・圧縮を行い、まとめて書き出すコマンドラインツール",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("paths", nargs="+", help="入力ファイルまたはフォルダー")
    p.add_argument("-o", "--output", required=True, help="出力フォルダー")
    p.add_argument("-f", "--format", choices=_FORMAT_CHOICES, default="webp", help="出力形式")
    p.add_argument(
        "-m",
        "--mode",
        choices=[mode.value for mode in ProcessMode],
        default=ProcessMode.CONVERT.value,
        help="処理モード",
    )
    p.add_argument(
        "--compress",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="準ロスレス圧縮を有効にする",
    )
    p.add_argument("--scale", type=_positive_float, help="倍率でリサイズ (例: 0.5)")
    p.add_argument("--width", type=_positive_int, help="リサイズ後の幅(px)")
    p.add_argument("--height", type=_positive_int, help="リサイズ後の高さ(px)")
    p.add_argument("--no-aspect", action="store_true", help="幅・高さ指定時に縦横比を固定しない")
    p.add_argument("-r", "--recursive", action="store_true", help="フォルダーを再帰的に探索する")
    p.add_argument("--foreground", action="store_true", help="バックグラウンドワーカーを使わずに処理する")
    p.add_argument("--log-dir", help="実行ログの保存先 (未指定時は PUREPIXEL_LOG_DIR)")
    p.add_argument("--verbose", "-v", action="count", default=0, help="詳細ログを増やす (重ね掛け可)")
    return p


def _settings_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    settings: Dict[str, Any] = {
        "target_format": ImageFormat.parse(args.format),
        "mode": ProcessMode(args.mode),
        "compression_enabled": args.compress,
        "keep_aspect_ratio": not args.no_aspect,
    }
    if args.scale is not None:
        settings.update(resize_mode=ResizeMode.SCALE, scale=args.scale)
    elif args.width is not None or args.height is not None:
        settings.update(resize_mode=ResizeMode.CUSTOM, width=args.width, height=args.height)
    return settings


def _load_files(paths: Sequence[Path]) -> List[ImageFile]:
    files: List[ImageFile] = []
    for path in paths:
        try:
            files.append(read_image_file(path))
        except ReadError as e:
            logger.warning(f"スキップ: {describe_error(e)}")
    return files


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI のエントリーポイント。全件成功なら 0、それ以外は 1 を返す。"""
    parser = _build_arg_parser()
    args = parser.parse_args(argv)
    if args.scale is not None and (args.width is not None or args.height is not None):
        parser.error("--scale と --width/--height は同時に指定できません")

    console_level = "INFO"
    if args.verbose == 1:
        console_level = "DEBUG"
    elif args.verbose >= 2:
        console_level = "TRACE"

    config = load_config()
    if args.foreground:
        config = replace(config, use_background=False)

    log_dir = Path(args.log_dir) if args.log_dir else config.log_dir
    artifacts = create_run_log_artifacts(log_dir) if log_dir else None
    setup_logging(console_level=console_level, log_file=artifacts.run_log_path if artifacts else None)

    image_paths = discover_image_files(args.paths, recursive=args.recursive)
    if not image_paths:
        logger.warning("画像が見つかりませんでした")
        return 1

    files = _load_files(image_paths)
    output_dir = Path(args.output)

    with ImageRegistry.from_config(config) as registry:
        registry.update_global_settings(**_settings_from_args(args))
        if not registry.add_files(files):
            logger.warning("読み込める画像がありませんでした")
            return 1

        summary = registry.process_images()
        for record in registry.records:
            if record.status == RecordStatus.DONE and record.result is not None:
                result = record.result
                logger.info(
                    f"✔ {record.name}: {format_file_size(record.source.size)} → "
                    f"{format_file_size(result.size)} ({result.output_format.name}, "
                    f"{result.width}x{result.height}, 削減率 {result.compression_ratio:.1%})"
                )
                for reason in result.fallbacks:
                    logger.info(f"  フォールバック: {reason.value}")
            else:
                logger.error(f"❌ {record.name}: {record.error_message}")

        artifact = registry.export_images(output_dir)
        records = registry.records

    if artifacts is not None:
        output = output_dir / artifact.filename if artifact else None
        write_run_summary(
            artifacts.summary_path,
            build_run_summary(artifacts.run_id, records, summary, output),
        )

    if summary.failed:
        logger.warning(f"{summary.failed} 件の画像が失敗しました")
    if artifact is None or not summary.all_succeeded:
        return 1
    logger.success("すべての画像を処理しました！")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
