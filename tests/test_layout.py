"""Tests for the packed rgb-input layout planner."""

import pytest

from scene.layout import UV_CHANNELS, density_input_alignment, plan_rgb_input


def test_plan_fully_fused():
    layout = plan_rgb_input(dir_padded_width=16, uv_padded_width=16, rgb_alignment=16)
    assert layout.width == 32
    assert layout.dir_offset == 0
    assert layout.uv_offset == 16
    assert layout.padding_offset == 16 + UV_CHANNELS
    assert layout.padding_width == 14


def test_plan_adds_alignment_padding():
    layout = plan_rgb_input(dir_padded_width=16, uv_padded_width=8, rgb_alignment=16)
    assert layout.width == 32
    assert layout.padding_offset == 18
    assert layout.padding_width == 14


def test_uv_too_narrow():
    with pytest.raises(ValueError):
        plan_rgb_input(16, 1, 16)


def test_density_input_alignment():
    assert density_input_alignment({"otype": "FullyFusedMLP"}) == 16
    assert density_input_alignment({"otype": "MegakernelMLP"}) == 16
    assert density_input_alignment({"otype": "CutlassMLP"}) == 8
    assert density_input_alignment({}) == 8
