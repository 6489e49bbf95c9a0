"""
Test Suite: Parameter Block Layouts

The packed size and field order of every kernel parameter block is a hard
contract with the kernel that unpacks it.
"""

import struct
from dataclasses import dataclass
from typing import ClassVar

import pytest

from burst_errors import SetupError
from burst_params import (PARAM_BLOCK_SIZES, AlignParams, CAEstimateParams, ChromaDenoiseParams,
                          GuidedFilterParams, LocalLuminanceParams, LuminanceParams, MergeParams,
                          ParamBlock, PyramidParams, SpatialDenoiseParams, TonemapParams, WarpParams,
                          check_layout, verify_param_layouts)


@dataclass(frozen=True)
class ShortParams(ParamBlock):
    FORMAT: ClassVar[str] = "<3I"
    width: int
    height: int
    channel: int


@dataclass(frozen=True)
class MisorderedParams(ParamBlock):
    # three fields, four value slots
    FORMAT: ClassVar[str] = "<4I"
    width: int
    height: int
    channel: int


class TestParamLayouts:
    @pytest.mark.parametrize("block,size", [
        (LuminanceParams, 16),
        (PyramidParams, 16),
        (AlignParams, 48),
        (WarpParams, 64),
        (CAEstimateParams, 32),
        (MergeParams, 56),
        (SpatialDenoiseParams, 40),
        (ChromaDenoiseParams, 16),
        (GuidedFilterParams, 16),
        (LocalLuminanceParams, 32),
        (TonemapParams, 32),
    ])
    def test_block_sizes(self, block, size):
        assert block.size() == size
        assert PARAM_BLOCK_SIZES[block] == size

    def test_all_layouts_verify(self):
        verify_param_layouts()

    def test_size_mismatch_is_setup_error(self):
        with pytest.raises(SetupError, match="12 bytes"):
            verify_param_layouts({ShortParams: 16})

    def test_field_count_mismatch_is_setup_error(self):
        with pytest.raises(SetupError, match="slots"):
            check_layout(MisorderedParams, 16)


class TestParamPacking:
    def test_merge_params_field_order(self):
        p = MergeParams(width=640, height=480, noise_sd=0.01, robustness=1.0, n_tiles_x=41,
                        n_tiles_y=31, frame_count=8, read_noise=0.002, max_motion_norm=1.0,
                        tile_offset_x=-8, tile_offset_y=-8, tile_row_offset=4, exposure_factor=2.0)
        raw = p.pack()
        assert len(raw) == 56
        # width, height lead; padding trails
        assert raw[:8] == (640).to_bytes(4, 'little') + (480).to_bytes(4, 'little')
        assert raw[-4:] == bytes(4)
        q = MergeParams.unpack(raw)
        assert q.tile_offset_x == -8
        assert q.tile_row_offset == 4
        assert q.exposure_factor == 2.0

    def test_warp_params_padding_in_the_middle(self):
        p = WarpParams(width=10, height=20, n_tiles_x=1, n_tiles_y=2, tile_size=32, tile_step=16,
                       use_bilinear=1, center_x=5.0, center_y=10.0, ca_r_coeff=0.5, ca_b_coeff=-0.5,
                       enable_ca_correction=1)
        raw = p.pack()
        assert raw[28:32] == bytes(4)  # pad after use_bilinear
        assert WarpParams.unpack(raw) == p

    def test_replace_row_offset(self):
        p = AlignParams(64, 48, 16, 8, 2, 7, 5, 1, 0, 0, 0)
        assert p.replace(tile_row_offset=4).tile_row_offset == 4
        assert p.tile_row_offset == 0

    def test_unpack_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            LuminanceParams.unpack(bytes(12))

    def test_luminance_gain_follows_channel(self):
        raw = LuminanceParams(8, 4, 3, 0.5).pack()
        assert len(raw) == 16
        assert raw[12:] == struct.pack("<f", 0.5)
        assert LuminanceParams.unpack(raw).gain == 0.5
        assert LuminanceParams(8, 4, 3).gain == 1.0

    def test_tonemap_params_round_trip(self):
        p = TonemapParams(width=96, height=72, shadow_boost=0.25, local_contrast=0.5,
                          highlight_compress=0.75, block_size=8, lum_width=12, lum_height=9)
        assert TonemapParams.unpack(p.pack()) == p
