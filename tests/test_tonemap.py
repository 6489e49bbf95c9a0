"""
Test Suite: Tone Mapping

- the shadow boost adapts to the measured scene brightness
- dark scenes are lifted, bright scenes are left alone by the shadow term
- local contrast and the highlight knee act on luma only
"""

import asyncio

import pytest
import torch

from burst_align import luma_bt601
from burst_config import MergeConfig
from burst_gpu import GpuContext
from burst_resources import ResourceCache
from burst_tonemap import ToneMapInfo, ToneMapper, adaptive_shadow_boost, tone_curve
from conftest import smooth_image

# not multiples of the block size so the padded edge blocks are used
H, W = 70, 90

NEUTRAL = dict(shadow_boost=0.0, local_contrast=0.0, highlight_compress=0.0)


class TestAdaptiveShadowBoost:
    @pytest.mark.parametrize("brightness,expected", [
        (0.5, 0.0),
        (0.4, 0.0),
        (0.3, 0.4),
        (0.2, 0.8),
        (0.1, 0.8),
    ])
    def test_fades_with_brightness(self, brightness, expected):
        assert adaptive_shadow_boost(0.8, brightness) == pytest.approx(expected)

    def test_neutral_curve_is_identity(self):
        y = torch.linspace(0, 1, 11)
        assert torch.allclose(tone_curve(y, torch.full_like(y, 0.5), 0.0, 0.0, 0.0), y)


class TestToneMapper:
    def build(self, **overrides):
        self.ctx = GpuContext("cpu")
        self.cfg = MergeConfig(**{**NEUTRAL, **overrides})
        cache = ResourceCache(self.ctx, self.cfg.level_configs(), self.cfg.merge_tile_size)
        self.res = cache.get_or_create(W, H)
        self.mapper = ToneMapper(self.ctx, self.cfg)

    def run(self, src):
        dst = torch.zeros_like(src)
        info = asyncio.run(self.mapper.apply(self.res, src, dst))
        return dst, info

    def test_dark_scene_is_lifted(self):
        self.build(shadow_boost=1.0)
        src = torch.full((3, H, W), 0.1)
        dst, info = self.run(src)
        assert info.shadow_boost == pytest.approx(1.0)
        assert float(dst.min()) > 0.2
        assert float(dst.max()) <= 1.0

    def test_bright_scene_ignores_shadow_boost(self):
        self.build(shadow_boost=1.0)
        src = 0.45 + 0.5 * smooth_image(H, W, seed=31)
        dst, info = self.run(src)
        assert info.scene_brightness > 0.4
        assert info.shadow_boost == 0.0
        assert torch.allclose(dst, src, atol=1e-5)

    def test_local_contrast_increases_texture(self):
        self.build(local_contrast=0.5)
        g = torch.Generator().manual_seed(32)
        src = (0.5 + 0.05 * torch.randn(1, H, W, generator=g)).expand(3, H, W).contiguous()
        dst, _ = self.run(src)
        assert float(luma_bt601(dst).std()) > 1.3 * float(luma_bt601(src).std())
        assert float(luma_bt601(dst).mean()) == pytest.approx(0.5, abs=0.01)

    def test_highlights_compressed_monotonically(self):
        self.build(highlight_compress=1.0)
        ramp = torch.linspace(0, 1, W)
        src = ramp.expand(3, H, W).contiguous()
        dst, _ = self.run(src)
        row = dst[1, H // 2]
        assert float(row.max()) < 0.8
        assert torch.all(row[1:] - row[:-1] >= -1e-6)
        # below the knee nothing changes
        assert torch.allclose(row[ramp < 0.5], ramp[ramp < 0.5], atol=1e-5)

    def test_reports_measured_brightness(self):
        self.build(shadow_boost=0.5)
        src = smooth_image(H, W, seed=33)
        _, info = self.run(src)
        assert isinstance(info, ToneMapInfo)
        assert info.scene_brightness == pytest.approx(float(luma_bt601(src).mean()), abs=1e-4)
        assert info.shadow_boost == pytest.approx(adaptive_shadow_boost(0.5, info.scene_brightness))
