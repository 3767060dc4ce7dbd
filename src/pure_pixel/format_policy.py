"""出力形式・エンコード品質の決定と、実行環境のエンコーダ能力判定。

形式の決定は純粋関数で、能力判定（AVIFなど）は別段階で適用する。
フォールバックは理由コード付きで返し、どの分岐が発動したかを呼び出し側で確認できる。
"""

from __future__ import annotations

import io
from dataclasses import dataclass, replace
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Tuple, Union

from loguru import logger
from PIL import Image

try:
    import pillow_avif  # noqa: F401
except ImportError:
    pass


class ImageFormat(str, Enum):
    """入出力で扱う画像形式（値はMIMEタイプ）。"""

    JPEG = "image/jpeg"
    PNG = "image/png"
    WEBP = "image/webp"
    AVIF = "image/avif"
    GIF = "image/gif"

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def pillow_name(self) -> str:
        return self.name

    @classmethod
    def from_mime(cls, mime: Optional[str]) -> Optional["ImageFormat"]:
        """MIMEタイプから形式を返す。対応外なら None。"""
        normalized = (mime or "").strip().lower()
        if normalized == "image/jpg":
            normalized = "image/jpeg"
        for member in cls:
            if member.value == normalized:
                return member
        return None

    @classmethod
    def parse(cls, value: Union[str, "ImageFormat"]) -> "ImageFormat":
        """`webp` / `image/webp` / `jpg` などの表記を形式に変換する。"""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        by_mime = cls.from_mime(text)
        if by_mime is not None:
            return by_mime
        if text == "jpg":
            text = "jpeg"
        for member in cls:
            if member.name.lower() == text:
                return member
        raise ValueError(f"サポートされていない画像形式です: {value}")


class ProcessMode(str, Enum):
    CONVERT = "convert"
    COMPRESS = "compress"
    BOTH = "both"


class ResizeMode(str, Enum):
    NONE = "none"
    SCALE = "scale"
    CUSTOM = "custom"


class FallbackReason(str, Enum):
    """発動したフォールバックの理由コード。"""

    AVIF_UNSUPPORTED = "avif-unsupported"
    ENCODE_FAILED = "encode-failed"
    UNSUPPORTED_SOURCE_FORMAT = "unsupported-source-format"


_EXTENSIONS: Dict[ImageFormat, str] = {
    ImageFormat.JPEG: "jpg",
    ImageFormat.PNG: "png",
    ImageFormat.WEBP: "webp",
    ImageFormat.AVIF: "avif",
    ImageFormat.GIF: "gif",
}

COMPRESS_MODE_QUALITY = 0.92
LOSSLESS_QUALITY = 1.0
_COMPRESSED_QUALITY: Dict[ImageFormat, float] = {
    ImageFormat.JPEG: 0.92,
    ImageFormat.WEBP: 0.92,
    ImageFormat.AVIF: 0.90,
}

# 能力判定で使えなかった場合の代替形式（上から順に評価）
CAPABILITY_FALLBACKS: Tuple[Tuple[ImageFormat, ImageFormat, FallbackReason], ...] = (
    (ImageFormat.AVIF, ImageFormat.WEBP, FallbackReason.AVIF_UNSUPPORTED),
)
# エンコード失敗時の最終手段。PNGはどの環境でも出力できる前提。
ENCODE_FALLBACK: Tuple[ImageFormat, float, FallbackReason] = (
    ImageFormat.PNG,
    LOSSLESS_QUALITY,
    FallbackReason.ENCODE_FAILED,
)

_WEBP_METHOD = 6
_AVIF_SPEED = 6
_PNG_COMPRESS_LEVEL = 6


@dataclass(frozen=True)
class EncodingPlan:
    output_format: ImageFormat
    quality: float
    requested_format: ImageFormat
    fallbacks: Tuple[FallbackReason, ...] = ()

    @property
    def fallback(self) -> Optional[FallbackReason]:
        return self.fallbacks[-1] if self.fallbacks else None


def quality_for(output_format: ImageFormat, compression_enabled: bool) -> float:
    """形式と圧縮フラグからエンコード品質（0-1）を返す。"""
    if not compression_enabled:
        return LOSSLESS_QUALITY
    return _COMPRESSED_QUALITY.get(output_format, LOSSLESS_QUALITY)


def select_encoding(
    mode: ProcessMode,
    requested_format: ImageFormat,
    compression_enabled: bool,
    source_format: Optional[ImageFormat],
) -> EncodingPlan:
    """処理モードと設定から出力形式・品質を決定する（副作用なし）。"""
    if mode == ProcessMode.COMPRESS:
        # 圧縮のみ: 形式は変えず、常に準ロスレス品質で再エンコードする
        if source_format is None:
            return EncodingPlan(
                output_format=ImageFormat.PNG,
                quality=COMPRESS_MODE_QUALITY,
                requested_format=requested_format,
                fallbacks=(FallbackReason.UNSUPPORTED_SOURCE_FORMAT,),
            )
        return EncodingPlan(
            output_format=source_format,
            quality=COMPRESS_MODE_QUALITY,
            requested_format=requested_format,
        )

    if mode in (ProcessMode.CONVERT, ProcessMode.BOTH):
        return EncodingPlan(
            output_format=requested_format,
            quality=quality_for(requested_format, compression_enabled),
            requested_format=requested_format,
        )

    raise ValueError(f"未対応の処理モードです: {mode}")


def resolve_capability(
    plan: EncodingPlan,
    probe: Optional[Callable[[ImageFormat], bool]] = None,
) -> EncodingPlan:
    """実行環境で出力できない形式を代替形式へ差し替える。

    差し替えはこの処理限りで、保存済みの設定は変更しない。
    """
    check = probe or probe_encoder
    for unsupported, substitute, reason in CAPABILITY_FALLBACKS:
        if plan.output_format != unsupported:
            continue
        if check(unsupported):
            break
        logger.info(f"{unsupported.name} を出力できないため {substitute.name} で代替します")
        return replace(
            plan,
            output_format=substitute,
            quality=quality_for(substitute, plan.quality < LOSSLESS_QUALITY),
            fallbacks=plan.fallbacks + (reason,),
        )
    return plan


@lru_cache(maxsize=None)
def probe_encoder(output_format: ImageFormat) -> bool:
    """1x1画像を実際にエンコードし、空でない出力が得られるか確認する。"""
    buffer = io.BytesIO()
    try:
        with Image.new("RGB", (1, 1), (0, 0, 0)) as probe_image:
            probe_image.save(buffer, **build_encoder_save_kwargs(output_format, LOSSLESS_QUALITY))
    except (KeyError, OSError, ValueError) as e:
        logger.debug(f"{output_format.name} エンコーダを利用できません: {e}")
        return False
    return buffer.tell() > 0


def supported_output_formats() -> list[ImageFormat]:
    """実行環境で出力可能な形式を返す。"""
    return [fmt for fmt in ImageFormat if probe_encoder(fmt)]


def to_pillow_quality(quality: float) -> int:
    """0-1の品質値をPillowの1-100へ変換する。"""
    return max(1, min(100, int(round(quality * 100))))


def build_encoder_save_kwargs(output_format: ImageFormat, quality: float) -> Dict[str, Any]:
    """出力形式に応じたエンコーダ設定を返す。"""
    pillow_quality = to_pillow_quality(quality)
    if output_format == ImageFormat.JPEG:
        return {
            "format": output_format.pillow_name,
            "quality": pillow_quality,
            "optimize": True,
        }
    if output_format == ImageFormat.PNG:
        # PNGはロスレス。品質は使わず圧縮レベル固定。
        return {
            "format": output_format.pillow_name,
            "compress_level": _PNG_COMPRESS_LEVEL,
        }
    if output_format == ImageFormat.WEBP:
        return {
            "format": output_format.pillow_name,
            "quality": pillow_quality,
            "method": _WEBP_METHOD,
        }
    if output_format == ImageFormat.AVIF:
        return {
            "format": output_format.pillow_name,
            "quality": pillow_quality,
            "speed": _AVIF_SPEED,
        }
    # gif
    return {"format": output_format.pillow_name}
