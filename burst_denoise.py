# burst_denoise.py
# Post-merge refinement:
# - spatial denoise of luma: windowed tile Wiener shrinkage with a radial detail boost
# - chroma denoise: a-trous cross bilateral filter of (B-Y, R-Y) guided by luma
# - guided filter (He et al.) on the colour channels, luma as guide

from typing import Tuple

import torch
import torch.nn.functional as F

from burst_align import BT601, luma_bt601
from burst_config import MergeConfig
from burst_gpu import GpuContext
from burst_params import ChromaDenoiseParams, GuidedFilterParams, SpatialDenoiseParams
from burst_resources import ResourceSet
from burst_tiles import (covered, gather_tiles, merge_tile_counts, raised_cosine_window_2d,
                         scatter_add_tiles, tile_index_grids, wola_pass_offsets, workgroup_count)

Tensor = torch.Tensor

DENOISE_TILE_SIZE = 16
ATROUS_DILATION = 2


# ============================================================
# Colour helpers
# ============================================================

def split_ycc(rgb: Tensor) -> Tuple[Tensor, Tensor, Tensor]:
    """rgb [3,H,W] -> (Y, Cb=B-Y, Cr=R-Y)."""
    y = luma_bt601(rgb)
    return y, rgb[2] - y, rgb[0] - y


def merge_ycc(y: Tensor, cb: Tensor, cr: Tensor) -> Tensor:
    r = y + cr
    b = y + cb
    g = (y - BT601[0] * r - BT601[2] * b) / BT601[1]
    return torch.stack([r, g, b], dim=0)


def radial_frequency(n: int, device) -> Tensor:
    # |ω| / |ω|max on the unshifted DFT grid, 0 at DC, 1 at the corners
    f = torch.fft.fftfreq(n, device=device)
    rho = torch.sqrt(f[:, None] ** 2 + f[None, :] ** 2)
    return rho / rho.max()


def box_filter(x: Tensor, radius: int) -> Tensor:
    """Mean over a (2r+1)^2 window, edges replicated. x [C,H,W]."""
    k = 2 * radius + 1
    xp = F.pad(x[None], (radius, radius, radius, radius), mode='replicate')
    return F.avg_pool2d(xp, k, stride=1)[0]


# ============================================================
# Spatial denoise kernels
# ============================================================

def spatial_denoise_init(raw: bytes, workgroups: Tuple[int, int], rgb: Tensor, luma: Tensor,
                         accum: Tensor, weight: Tensor) -> None:
    p = SpatialDenoiseParams.unpack(raw)
    luma[:p.height, :p.width] = luma_bt601(rgb[:, :p.height, :p.width])
    accum.zero_()
    weight.zero_()


def spatial_denoise(raw: bytes, workgroups: Tuple[int, int], luma: Tensor, accum: Tensor, weight: Tensor) -> None:
    p = SpatialDenoiseParams.unpack(raw)
    ts = DENOISE_TILE_SIZE
    device = luma.device
    ny = min(p.n_tiles_y, workgroups[1])
    nx = min(p.n_tiles_x, workgroups[0])
    oy = torch.arange(ny, device=device) * ts + p.tile_offset_y
    ox = torch.arange(nx, device=device) * ts + p.tile_offset_x
    Y, X = tile_index_grids(oy, ox, ts)
    win = raised_cosine_window_2d(ts, device)

    tiles = gather_tiles(luma[:p.height, :p.width], Y, X) * win  # [ny,nx,T,T]
    T = torch.fft.fft2(tiles)
    mag2 = T.real ** 2 + T.imag ** 2
    sigma2 = p.strength * p.noise_sd ** 2 / max(p.frame_count, 1) * float((win * win).sum())
    shrink = mag2 / (mag2 + sigma2).clamp(min=1e-20)
    gain = 1 + (p.high_freq_boost - 1) * radial_frequency(ts, device) * min(1.0, p.strength)
    out = torch.fft.ifft2(T * shrink * gain).real

    scatter_add_tiles(accum, win * out, Y, X)
    scatter_add_tiles(weight, (win * win).expand_as(out), Y, X)


def spatial_denoise_normalize(raw: bytes, workgroups: Tuple[int, int], rgb: Tensor, accum: Tensor,
                              weight: Tensor, out: Tensor) -> None:
    p = SpatialDenoiseParams.unpack(raw)
    h = covered(p.height, workgroups[1])
    w = covered(p.width, workgroups[0])
    y, cb, cr = split_ycc(rgb[:, :h, :w])
    y_new = accum[0, :h, :w] / weight[0, :h, :w].clamp(min=1e-12)
    out[:, :h, :w] = merge_ycc(y_new, cb, cr)


# ============================================================
# Chroma denoise / guided filter kernels
# ============================================================

def chroma_denoise(raw: bytes, workgroups: Tuple[int, int], rgb: Tensor, out: Tensor) -> None:
    p = ChromaDenoiseParams.unpack(raw)
    h = covered(p.height, workgroups[1])
    w = covered(p.width, workgroups[0])
    y, cb, cr = split_ycc(rgb[:, :h, :w])
    if p.strength == 0.0:
        out[:, :h, :w] = rgb[:, :h, :w]
        return

    d = ATROUS_DILATION
    r = 2 * d
    c = torch.stack([cb, cr], dim=0)
    cp = F.pad(c[None], (r, r, r, r), mode='replicate')[0]
    yp = F.pad(y[None, None], (r, r, r, r), mode='replicate')[0, 0]
    spline = (1 / 16, 4 / 16, 6 / 16, 4 / 16, 1 / 16)

    acc = torch.zeros_like(c)
    wsum = torch.zeros_like(y)
    for i, wy in enumerate(spline):
        for j, wx in enumerate(spline):
            sy, sx = i * d, j * d
            y_n = yp[sy:sy + h, sx:sx + w]
            wgt = wy * wx * torch.exp(-((y_n - y) / p.edge_threshold) ** 2)
            acc += wgt * cp[:, sy:sy + h, sx:sx + w]
            wsum += wgt
    filtered = acc / wsum.clamp(min=1e-12)
    c = c + p.strength * (filtered - c)
    out[:, :h, :w] = merge_ycc(y, c[0], c[1])


def guided_filter(raw: bytes, workgroups: Tuple[int, int], rgb: Tensor, out: Tensor) -> None:
    p = GuidedFilterParams.unpack(raw)
    h = covered(p.height, workgroups[1])
    w = covered(p.width, workgroups[0])
    src = rgb[:, :h, :w]
    guide = luma_bt601(src)[None]  # [1,h,w]

    mean_I = box_filter(guide, p.radius)
    mean_p = box_filter(src, p.radius)
    corr_Ip = box_filter(guide * src, p.radius)
    var_I = box_filter(guide * guide, p.radius) - mean_I * mean_I
    a = (corr_Ip - mean_I * mean_p) / (var_I + p.epsilon)
    b = mean_p - a * mean_I
    out[:, :h, :w] = box_filter(a, p.radius) * guide + box_filter(b, p.radius)


# ============================================================
# Stage objects
# ============================================================

class SpatialDenoiser:
    def __init__(self, context: GpuContext, config: MergeConfig):
        self.context = context
        self.config = config
        self.init_pipeline = context.create_pipeline("spatial_denoise_init", SpatialDenoiseParams,
                                                     spatial_denoise_init, 40)
        self.pipeline = context.create_pipeline("spatial_denoise", SpatialDenoiseParams, spatial_denoise, 40)
        self.norm_pipeline = context.create_pipeline("spatial_denoise_normalize", SpatialDenoiseParams,
                                                     spatial_denoise_normalize, 40)

    def denoise(self, res: ResourceSet, src: Tensor, dst: Tensor, noise_sd: float, frame_count: int) -> None:
        """Denoise the luma of `src` into `dst`; `noise_sd` is the per-frame noise level."""
        _, h, w = src.shape
        nx, ny = merge_tile_counts(w, h, DENOISE_TILE_SIZE)
        base = SpatialDenoiseParams(
            width=w, height=h, noise_sd=noise_sd, strength=self.config.denoise_strength,
            n_tiles_x=nx, n_tiles_y=ny, high_freq_boost=self.config.high_freq_boost,
            tile_offset_x=0, tile_offset_y=0, frame_count=frame_count,
        )
        groups = (workgroup_count(w), workgroup_count(h))
        ctx = self.context
        ctx.dispatch(self.init_pipeline, base, (src, res.luma, res.luma_accum, res.luma_weight), groups)
        for off_x, off_y in wola_pass_offsets(DENOISE_TILE_SIZE):
            ctx.dispatch(self.pipeline, base.replace(tile_offset_x=off_x, tile_offset_y=off_y),
                         (res.luma, res.luma_accum, res.luma_weight), (nx, ny))
        ctx.dispatch(self.norm_pipeline, base, (src, res.luma_accum, res.luma_weight, dst), groups)


class ChromaDenoiser:
    def __init__(self, context: GpuContext, config: MergeConfig):
        self.context = context
        self.config = config
        self.pipeline = context.create_pipeline("chroma_denoise", ChromaDenoiseParams, chroma_denoise, 16)

    def denoise(self, src: Tensor, dst: Tensor) -> None:
        _, h, w = src.shape
        params = ChromaDenoiseParams(w, h, self.config.chroma_strength, self.config.chroma_edge_threshold)
        self.context.dispatch(self.pipeline, params, (src, dst), (workgroup_count(w), workgroup_count(h)))


class GuidedFilter:
    def __init__(self, context: GpuContext, config: MergeConfig):
        self.context = context
        self.config = config
        self.pipeline = context.create_pipeline("guided_filter", GuidedFilterParams, guided_filter, 16)

    def apply(self, src: Tensor, dst: Tensor) -> None:
        _, h, w = src.shape
        params = GuidedFilterParams(w, h, self.config.guided_radius, self.config.guided_epsilon)
        self.context.dispatch(self.pipeline, params, (src, dst), (workgroup_count(w), workgroup_count(h)))
