from __future__ import annotations

import pytest

from pure_pixel.dimension_planner import (
    MAX_SIDE_LENGTH,
    NO_RESIZE,
    CustomResize,
    NoResize,
    ScaleResize,
    plan_dimensions,
    policy_from_settings,
    round_half_up,
)


def test_round_half_up_rounds_point_five_upward() -> None:
    assert round_half_up(0.5) == 1
    assert round_half_up(1.5) == 2
    assert round_half_up(2.5) == 3
    assert round_half_up(2.4999) == 2


def test_no_resize_keeps_original_size() -> None:
    plan = plan_dimensions(640, 480, NO_RESIZE)
    assert plan.size == (640, 480)
    assert plan.clamped is False


def test_scale_multiplies_each_axis() -> None:
    assert plan_dimensions(2000, 1000, ScaleResize(0.5)).size == (1000, 500)
    assert plan_dimensions(3, 5, ScaleResize(0.5)).size == (2, 3)


def test_scale_never_goes_below_one_pixel() -> None:
    assert plan_dimensions(10, 10, ScaleResize(0.01)).size == (1, 1)


def test_custom_width_only_keeps_aspect_ratio() -> None:
    plan = plan_dimensions(1920, 1080, CustomResize(width=1280))
    assert plan.size == (1280, 720)


def test_custom_height_only_keeps_aspect_ratio() -> None:
    plan = plan_dimensions(1000, 3000, CustomResize(height=300))
    assert plan.size == (100, 300)


def test_custom_both_sides_uses_smaller_ratio() -> None:
    plan = plan_dimensions(2000, 1000, CustomResize(width=500, height=500))
    assert plan.size == (500, 250)


def test_custom_without_aspect_uses_values_verbatim() -> None:
    plan = plan_dimensions(2000, 1000, CustomResize(width=300, height=700, keep_aspect=False))
    assert plan.size == (300, 700)


def test_custom_without_aspect_defaults_missing_side_to_original() -> None:
    plan = plan_dimensions(2000, 1000, CustomResize(width=300, keep_aspect=False))
    assert plan.size == (300, 1000)


def test_custom_with_no_sides_is_identity() -> None:
    assert plan_dimensions(321, 123, CustomResize()).size == (321, 123)


@pytest.mark.parametrize(
    ("width", "height", "policy", "expected"),
    [
        (8000, 4000, NO_RESIZE, (4096, 2048)),
        (3000, 9000, NO_RESIZE, (1365, 4096)),
        (2000, 1000, ScaleResize(4.0), (4096, 2048)),
        (1000, 1000, CustomResize(width=5000, height=10, keep_aspect=False), (4096, 8)),
    ],
)
def test_max_side_clamp_is_applied_last(width, height, policy, expected) -> None:
    plan = plan_dimensions(width, height, policy)
    assert plan.size == expected
    assert plan.clamped is True
    assert max(plan.size) == MAX_SIDE_LENGTH


def test_clamp_keeps_thin_side_at_least_one_pixel() -> None:
    plan = plan_dimensions(100000, 2, NO_RESIZE)
    assert plan.size == (4096, 1)


def test_aspect_ratio_preserved_within_one_pixel() -> None:
    for width, height in ((1920, 1080), (333, 777), (1001, 999), (7, 3)):
        plan = plan_dimensions(width, height, CustomResize(width=640))
        expected_height = 640 * height / width
        assert plan.width == 640
        assert abs(plan.height - expected_height) <= 1


def test_invalid_inputs_raise_value_error() -> None:
    with pytest.raises(ValueError):
        plan_dimensions(0, 10)
    with pytest.raises(ValueError):
        ScaleResize(0)
    with pytest.raises(ValueError):
        ScaleResize(-1.5)
    with pytest.raises(ValueError):
        CustomResize(width=0)


def test_unknown_policy_type_raises_type_error() -> None:
    with pytest.raises(TypeError):
        plan_dimensions(10, 10, "scale")  # type: ignore[arg-type]


def test_policy_from_settings_builds_each_variant() -> None:
    assert isinstance(policy_from_settings("none"), NoResize)
    assert policy_from_settings("scale", scale=0.25) == ScaleResize(0.25)
    assert policy_from_settings("custom", width=100, keep_aspect=False) == CustomResize(
        width=100, height=None, keep_aspect=False
    )
    with pytest.raises(ValueError):
        policy_from_settings("crop")
