# burst_merge.py
# Robust temporal merge of the reference and the warped frames.
# - four half-tile shifted passes of raised-cosine windowed tiles, normalised by the window sum
# - noise model  var(s) = read_noise^2 + noise_sd^2 * s  at reference tile level s
# - per tile motion weight from the residual that the noise model does not explain
# - "spatial": inverse-variance weighted average of the tiles
# - "frequency": pairwise Wiener merge towards the reference in the DFT domain (HDR+ Eq. 6-7)

import functools
import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import torch

from burst_config import MergeConfig
from burst_gpu import GpuContext
from burst_log import get_logger
from burst_params import MergeParams
from burst_resources import ResourceSet
from burst_tiles import (covered, gather_tiles, raised_cosine_window_2d, row_range,
                         scatter_add_tiles, tile_index_grids, wola_pass_offsets, workgroup_count)
from burst_warp import WarpedFrame

Tensor = torch.Tensor

logger = get_logger(__name__)

MEAN_ABS_NOISE = math.sqrt(2.0 / math.pi)  # E|x| / sigma for gaussian x
WIENER_C = 8.0


@dataclass
class MergeOutcome:
    image: Tensor            # [3,H,W], view of the pooled output buffer
    frame_count: int         # reference + frames that contributed
    motion_weights: List[float]  # mean motion weight per merged frame


# ============================================================
# Tile helpers
# ============================================================

def _tiles(p: MergeParams, workgroups: Tuple[int, int], tile_size: int, device):
    r0, r1 = row_range(p.n_tiles_y, p.tile_row_offset, workgroups[1])
    nx = min(p.n_tiles_x, workgroups[0])
    oy = torch.arange(r0, r1, device=device) * tile_size + p.tile_offset_y
    ox = torch.arange(nx, device=device) * tile_size + p.tile_offset_x
    return tile_index_grids(oy, ox, tile_size)


def tile_noise(p: MergeParams, ref_t: Tensor) -> Tuple[Tensor, Tensor]:
    """(var_ref, var_frame) per tile from the reference tile level."""
    s = ref_t.mean(dim=(0, -1, -2)).clamp(min=0)  # [R,nx]
    read2 = p.read_noise * p.read_noise
    shot2 = p.noise_sd * p.noise_sd
    e = p.exposure_factor
    var_ref = read2 + shot2 * s
    var_z = (read2 + shot2 * e * s) / (e * e)
    return var_ref, var_z


def motion_weight(p: MergeParams, ref_t: Tensor, frm_t: Tensor, var_ref: Tensor, var_z: Tensor) -> Tensor:
    """1 for tiles whose difference is explained by noise, falling to 0 with misalignment."""
    diff = (ref_t - frm_t).abs().mean(dim=(0, -1, -2))
    mismatch = (diff / torch.sqrt(var_ref + var_z) - MEAN_ABS_NOISE).clamp(min=0)
    return (1 - mismatch / (p.robustness * p.max_motion_norm)).clamp(0, 1)


# ============================================================
# Kernels
# ============================================================

def merge_init(raw: bytes, workgroups: Tuple[int, int], accum: Tensor, weight: Tensor, stats: Tensor) -> None:
    MergeParams.unpack(raw)
    accum.zero_()
    weight.zero_()
    stats.zero_()


@functools.lru_cache(maxsize=None)
def make_add_reference(tile_size: int, frequency: bool):
    def merge_add_reference(raw: bytes, workgroups: Tuple[int, int], ref: Tensor,
                            accum: Tensor, weight: Tensor) -> None:
        p = MergeParams.unpack(raw)
        Y, X = _tiles(p, workgroups, tile_size, ref.device)
        if Y.shape[0] == 0:
            return
        win = raised_cosine_window_2d(tile_size, ref.device)
        ref_t = gather_tiles(ref, Y, X)  # [C,R,nx,T,T]
        if frequency:
            scatter_add_tiles(accum, win * win * ref_t, Y, X)
            scatter_add_tiles(weight, (win * win).expand_as(ref_t[0]), Y, X)
        else:
            var_ref, _ = tile_noise(p, ref_t)
            w = win / var_ref[:, :, None, None]  # [R,nx,T,T]
            scatter_add_tiles(accum, w * ref_t, Y, X)
            scatter_add_tiles(weight, w, Y, X)
    return merge_add_reference


@functools.lru_cache(maxsize=None)
def make_merge_spatial(tile_size: int):
    def merge_spatial(raw: bytes, workgroups: Tuple[int, int], ref: Tensor, frame: Tensor,
                      accum: Tensor, weight: Tensor, stats: Tensor) -> None:
        p = MergeParams.unpack(raw)
        Y, X = _tiles(p, workgroups, tile_size, ref.device)
        if Y.shape[0] == 0:
            return
        win = raised_cosine_window_2d(tile_size, ref.device)
        ref_t = gather_tiles(ref, Y, X)
        frm_t = gather_tiles(frame, Y, X) / p.exposure_factor
        var_ref, var_z = tile_noise(p, ref_t)
        g = motion_weight(p, ref_t, frm_t, var_ref, var_z)  # [R,nx]

        w = win * (g / var_z)[:, :, None, None]
        scatter_add_tiles(accum, w * frm_t, Y, X)
        scatter_add_tiles(weight, w, Y, X)
        stats[0] += g.sum()
        stats[1] += g.numel()
    return merge_spatial


@functools.lru_cache(maxsize=None)
def make_merge_fft(tile_size: int):
    def merge_fft(raw: bytes, workgroups: Tuple[int, int], ref: Tensor, frame: Tensor,
                  accum: Tensor, weight: Tensor, stats: Tensor) -> None:
        p = MergeParams.unpack(raw)
        Y, X = _tiles(p, workgroups, tile_size, ref.device)
        if Y.shape[0] == 0:
            return
        win = raised_cosine_window_2d(tile_size, ref.device)
        ref_t = gather_tiles(ref, Y, X)
        frm_t = gather_tiles(frame, Y, X) / p.exposure_factor
        var_ref, var_z = tile_noise(p, ref_t)
        g = motion_weight(p, ref_t, frm_t, var_ref, var_z)

        T_ref = torch.fft.fft2(ref_t * win)  # [C,R,nx,T,T]
        T_z = torch.fft.fft2(frm_t * win)
        D = T_ref - T_z
        mag2 = D.real ** 2 + D.imag ** 2

        # noise power of one DFT coefficient of the windowed difference
        sigma2_eff = ((var_ref + var_z) * (win * win).sum())[None, :, :, None, None]
        A = mag2 / (mag2 + WIENER_C * p.robustness * sigma2_eff).clamp(min=1e-20)
        # misaligned tiles fall back to the reference
        A = 1 - g[None, :, :, None, None] * (1 - A)

        merged = torch.fft.ifft2(T_z + A * D).real  # windowed tile
        scatter_add_tiles(accum, win * merged, Y, X)
        scatter_add_tiles(weight, (win * win).expand_as(ref_t[0]), Y, X)
        stats[0] += g.sum()
        stats[1] += g.numel()
    return merge_fft


def merge_normalize(raw: bytes, workgroups: Tuple[int, int], accum: Tensor, weight: Tensor, out: Tensor) -> None:
    p = MergeParams.unpack(raw)
    h = covered(p.height, workgroups[1])
    w = covered(p.width, workgroups[0])
    out[:, :h, :w] = accum[:, :h, :w] / weight[:, :h, :w].clamp(min=1e-12)


# ============================================================
# Engine
# ============================================================

class MergeEngine:
    def __init__(self, context: GpuContext, config: MergeConfig):
        self.context = context
        self.config = config
        ts = config.merge_tile_size
        frequency = config.merge_mode == "frequency"
        mode = "fft" if frequency else "spatial"
        self.init_pipeline = context.create_pipeline("merge_init", MergeParams, merge_init, 56)
        self.ref_pipeline = context.create_pipeline(
            f"merge_add_reference_{mode}_{ts}", MergeParams, make_add_reference(ts, frequency), 56)
        if frequency:
            self.frame_pipeline = context.create_pipeline(f"merge_fft_{ts}", MergeParams, make_merge_fft(ts), 56)
        else:
            self.frame_pipeline = context.create_pipeline(f"merge_spatial_{ts}", MergeParams,
                                                          make_merge_spatial(ts), 56)
        self.norm_pipeline = context.create_pipeline("merge_normalize", MergeParams, merge_normalize, 56)

    async def merge(self, res: ResourceSet, reference: Tensor, frames: Sequence[WarpedFrame],
                    noise_sd: float) -> MergeOutcome:
        """Merge `frames` (already warped onto the reference) with `reference`."""
        cfg = self.config
        ctx = self.context
        _, h, w = reference.shape
        nx, ny = res.merge_tiles
        stats = res.frame_stats
        base = MergeParams(
            width=w, height=h, noise_sd=noise_sd, robustness=cfg.robustness,
            n_tiles_x=nx, n_tiles_y=ny, frame_count=len(frames) + 1,
            read_noise=cfg.read_noise, max_motion_norm=cfg.effective_max_motion_norm(),
            tile_offset_x=0, tile_offset_y=0, tile_row_offset=0, exposure_factor=1.0,
        )
        pixel_groups = (workgroup_count(w), workgroup_count(h))

        ctx.dispatch(self.init_pipeline, base, (res.merge_accum, res.merge_weight, stats), pixel_groups)
        for off_x, off_y in wola_pass_offsets(cfg.merge_tile_size):
            pass_params = base.replace(tile_offset_x=off_x, tile_offset_y=off_y)
            await ctx.run_chunked(self.ref_pipeline, pass_params,
                                  (reference, res.merge_accum, res.merge_weight),
                                  nx, ny, cfg.rows_per_chunk, cfg.chunks_per_yield)
            for i, frame in enumerate(frames):
                frame_params = pass_params.replace(exposure_factor=frame.exposure_factor)
                await ctx.run_chunked(self.frame_pipeline, frame_params,
                                      (reference, frame.data, res.merge_accum, res.merge_weight, stats[i]),
                                      nx, ny, cfg.rows_per_chunk, cfg.chunks_per_yield)
        ctx.dispatch(self.norm_pipeline, base, (res.merge_accum, res.merge_weight, res.merged), pixel_groups)

        with ctx.stream_scope():
            totals = stats[:len(frames)].tolist()
        motion = [s / n if n else 0.0 for s, n in totals]
        frame_count = 1 + sum(1 for s, _ in totals if s > 0)
        logger.debug(f"Merged {frame_count}/{len(frames) + 1} frames, motion weights "
                     + ", ".join(f"{m:.2f}" for m in motion))
        return MergeOutcome(res.merged, frame_count, motion)
