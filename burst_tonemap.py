# burst_tonemap.py
# Final tone mapping of the merged, denoised image:
# - block-averaged local luminance map plus the global scene brightness
# - shadow lift as a local gamma, strongest where the neighbourhood is dark
# - local contrast around the block mean, soft highlight knee
# - the new luma is applied as a ratio to RGB so hue is kept
#
# The shadow boost adapts to the scene: full strength below 0.2 mean
# brightness, fading linearly to 0 at 0.4 and above.

from dataclasses import dataclass
from typing import Tuple

import torch
import torch.nn.functional as F

from burst_align import luma_bt601
from burst_config import MergeConfig
from burst_gpu import GpuContext
from burst_log import get_logger
from burst_params import LocalLuminanceParams, TonemapParams
from burst_resources import TONEMAP_BLOCK_SIZE, ResourceSet
from burst_tiles import covered, workgroup_count

Tensor = torch.Tensor

logger = get_logger(__name__)

DARK_SCENE = 0.2
BRIGHT_SCENE = 0.4
DEFAULT_BRIGHTNESS = 0.5  # used when nothing was measured
MIN_LUMA = 1e-4


def adaptive_shadow_boost(shadow_boost: float, avg_brightness: float) -> float:
    if avg_brightness > BRIGHT_SCENE:
        return 0.0
    if avg_brightness > DARK_SCENE:
        return shadow_boost * (BRIGHT_SCENE - avg_brightness) / (BRIGHT_SCENE - DARK_SCENE)
    return shadow_boost


def tone_curve(y: Tensor, local: Tensor, shadow_boost: float, local_contrast: float,
               highlight_compress: float) -> Tensor:
    """New luma for luma `y` given the local mean luminance `local` (same shape)."""
    local = local.clamp(0, 1)
    expo = 1.0 / (1.0 + shadow_boost * (1 - local) ** 2)
    y1 = y.clamp(min=0) ** expo
    local1 = local ** expo
    y2 = (local1 + (1 + local_contrast) * (y1 - local1)).clamp(min=0)
    if highlight_compress <= 0:
        return y2
    knee = 1 - 0.5 * highlight_compress
    over = (y2 - knee).clamp(min=0)
    return torch.where(y2 > knee, knee + over / (1 + over / (1 - knee)), y2)


# ============================================================
# Kernels
# ============================================================

def tonemap_local_luminance(raw: bytes, workgroups: Tuple[int, int], rgb: Tensor, local: Tensor,
                            stats: Tensor) -> None:
    p = LocalLuminanceParams.unpack(raw)
    y = luma_bt601(rgb[:, :p.height, :p.width]).clamp(0, 1)
    pad_x = p.lum_width * p.block_size - p.width
    pad_y = p.lum_height * p.block_size - p.height
    yp = F.pad(y[None, None], (0, pad_x, 0, pad_y), mode='replicate')
    local[:p.lum_height, :p.lum_width] = F.avg_pool2d(yp, p.block_size)[0, 0]
    stats[0] = y.sum()
    stats[1] = y.numel()


def tonemap(raw: bytes, workgroups: Tuple[int, int], rgb: Tensor, local: Tensor, out: Tensor) -> None:
    p = TonemapParams.unpack(raw)
    h = covered(p.height, workgroups[1])
    w = covered(p.width, workgroups[0])
    src = rgb[:, :h, :w]
    y = luma_bt601(src)

    # block means sit at block centres; bilinear between them
    size = (p.lum_height * p.block_size, p.lum_width * p.block_size)
    lum = local[:p.lum_height, :p.lum_width][None, None]
    local_up = F.interpolate(lum, size=size, mode='bilinear', align_corners=False)[0, 0, :h, :w]

    y_new = tone_curve(y, local_up, p.shadow_boost, p.local_contrast, p.highlight_compress)
    ratio = y_new / y.clamp(min=MIN_LUMA)
    mapped = torch.where(y > MIN_LUMA, src * ratio, src + (y_new - y))
    out[:, :h, :w] = mapped.clamp(0, 1)


# ============================================================
# Stage object
# ============================================================

@dataclass
class ToneMapInfo:
    scene_brightness: float
    shadow_boost: float     # after adapting to the scene


class ToneMapper:
    def __init__(self, context: GpuContext, config: MergeConfig):
        self.context = context
        self.config = config
        self.local_pipeline = context.create_pipeline("tonemap_local_luminance", LocalLuminanceParams,
                                                      tonemap_local_luminance, 32)
        self.pipeline = context.create_pipeline("tonemap", TonemapParams, tonemap, 32)

    async def apply(self, res: ResourceSet, src: Tensor, dst: Tensor) -> ToneMapInfo:
        """Tone map `src` into `dst`. Scene brightness is read back between the two passes."""
        cfg = self.config
        ctx = self.context
        _, h, w = src.shape
        lum_h, lum_w = res.tonemap_local.shape
        local_params = LocalLuminanceParams(w, h, TONEMAP_BLOCK_SIZE, lum_w, lum_h)
        ctx.dispatch(self.local_pipeline, local_params, (src, res.tonemap_local, res.tonemap_stats),
                     (workgroup_count(lum_w), workgroup_count(lum_h)))

        staging = res.staging_buffer(ctx, (2,), torch.float32)
        total, count = (await ctx.map_read(res.tonemap_stats, staging)).tolist()
        avg = total / count if count > 0 else DEFAULT_BRIGHTNESS
        boost = adaptive_shadow_boost(cfg.shadow_boost, avg)
        logger.debug(f"Tone mapping: scene brightness {avg:.3f}, shadow boost {boost:.3f}")

        params = TonemapParams(
            width=w, height=h, shadow_boost=boost, local_contrast=cfg.local_contrast,
            highlight_compress=cfg.highlight_compress, block_size=TONEMAP_BLOCK_SIZE,
            lum_width=lum_w, lum_height=lum_h,
        )
        ctx.dispatch(self.pipeline, params, (src, res.tonemap_local, dst), (workgroup_count(w), workgroup_count(h)))
        return ToneMapInfo(avg, boost)
