"""
出力サイズの計算

元画像のサイズとリサイズ方針から出力サイズを求める純粋関数群。
最後に最大辺長（4096px）の上限を必ず適用する。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Union

MAX_SIDE_LENGTH = 4096


@dataclass(frozen=True)
class NoResize:
    """リサイズしない"""


@dataclass(frozen=True)
class ScaleResize:
    """倍率指定（縦横それぞれに掛ける）"""

    factor: float

    def __post_init__(self) -> None:
        if not self.factor > 0:
            raise ValueError(f"倍率は0より大きい値が必要です: {self.factor}")


@dataclass(frozen=True)
class CustomResize:
    """幅・高さ指定（省略した辺は元画像のまま、縦横比固定時は自動計算）"""

    width: Optional[int] = None
    height: Optional[int] = None
    keep_aspect: bool = True

    def __post_init__(self) -> None:
        for label, value in (("幅", self.width), ("高さ", self.height)):
            if value is not None and value <= 0:
                raise ValueError(f"{label}は1以上の整数が必要です: {value}")


ResizePolicy = Union[NoResize, ScaleResize, CustomResize]

NO_RESIZE = NoResize()


@dataclass(frozen=True)
class DimensionPlan:
    width: int
    height: int
    clamped: bool = False

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height


def round_half_up(value: float) -> int:
    """0.5を切り上げる四捨五入（組み込みroundの偶数丸めは使わない）。"""
    return int(math.floor(value + 0.5))


def plan_dimensions(width: int, height: int, policy: ResizePolicy = NO_RESIZE) -> DimensionPlan:
    """
    出力サイズを計算します

    Args:
        width: 元画像の幅（正の整数）
        height: 元画像の高さ（正の整数）
        policy: リサイズ方針

    Returns:
        DimensionPlan: 1px以上、最大辺長以下に収まった出力サイズ
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"元画像のサイズが不正です: {width}x{height}")

    if isinstance(policy, NoResize):
        target_w, target_h = width, height
    elif isinstance(policy, ScaleResize):
        target_w = round_half_up(width * policy.factor)
        target_h = round_half_up(height * policy.factor)
    elif isinstance(policy, CustomResize):
        target_w, target_h = _plan_custom(width, height, policy)
    else:
        raise TypeError(f"未対応のリサイズ方針です: {policy!r}")

    target_w = max(1, target_w)
    target_h = max(1, target_h)
    return _clamp_to_max_side(target_w, target_h)


def _plan_custom(width: int, height: int, policy: CustomResize) -> tuple[int, int]:
    requested_w = policy.width
    requested_h = policy.height

    if not policy.keep_aspect:
        return requested_w or width, requested_h or height

    if requested_w and requested_h:
        # 両方指定: はみ出さない側の比率で縮尺する
        ratio = min(requested_w / width, requested_h / height)
        return round_half_up(width * ratio), round_half_up(height * ratio)
    if requested_w:
        return requested_w, round_half_up(requested_w * height / width)
    if requested_h:
        return round_half_up(requested_h * width / height), requested_h
    return width, height


def _clamp_to_max_side(width: int, height: int) -> DimensionPlan:
    longest = max(width, height)
    if longest <= MAX_SIDE_LENGTH:
        return DimensionPlan(width, height)

    ratio = MAX_SIDE_LENGTH / longest
    clamped_w = min(MAX_SIDE_LENGTH, max(1, round_half_up(width * ratio)))
    clamped_h = min(MAX_SIDE_LENGTH, max(1, round_half_up(height * ratio)))
    return DimensionPlan(clamped_w, clamped_h, clamped=True)


def policy_from_settings(
    resize_mode: str,
    *,
    scale: Optional[float] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    keep_aspect: bool = True,
) -> ResizePolicy:
    """全体設定の値（モード名＋数値）からリサイズ方針を組み立てる。"""
    mode = str(getattr(resize_mode, "value", resize_mode)).lower()
    if mode == "none":
        return NO_RESIZE
    if mode == "scale":
        return ScaleResize(factor=1.0 if scale is None else float(scale))
    if mode == "custom":
        return CustomResize(width=width, height=height, keep_aspect=keep_aspect)
    raise ValueError(f"未対応のリサイズモードです: {resize_mode}")
