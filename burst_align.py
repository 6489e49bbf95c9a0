# burst_align.py
# Luminance extraction, box pyramids and hierarchical tile alignment:
# - coarse-to-fine search, the coarsest level starts from zero motion
# - finer levels are seeded from the coarser field (x2) with 3-candidate selection
# - L2 at coarse levels, L1 at full resolution, integer displacements
#
# Displacement convention: vector d of a tile means ref(p) ~ frame(p - d).

from dataclasses import dataclass
from typing import List, Tuple

import torch
import torch.nn.functional as F

from burst_config import LevelConfig, MergeConfig
from burst_gpu import GpuContext
from burst_params import (AlignParams, CHANNEL_LUMA, LuminanceParams, PyramidParams)
from burst_resources import ResourceSet
from burst_tiles import (TileGrid, covered, gather_tiles, row_range, tile_index_grids,
                         workgroup_count)

Tensor = torch.Tensor

BT601 = (0.299, 0.587, 0.114)


@dataclass(frozen=True)
class PyramidLevel:
    level: int      # 0 = full resolution
    image: Tensor   # [H,W] view of the pooled pyramid buffer

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def width(self) -> int:
        return int(self.image.shape[1])


@dataclass(frozen=True)
class AlignmentField:
    level: int
    grid: TileGrid
    vectors: Tensor  # [ny,nx,2] (dx, dy)
    seeds: Tensor    # [ny,nx,2] starting point of each tile's search


# ============================================================
# Kernels
# ============================================================

def luma_bt601(rgb: Tensor) -> Tensor:
    return BT601[0] * rgb[0] + BT601[1] * rgb[1] + BT601[2] * rgb[2]


def luminance_kernel(raw: bytes, workgroups: Tuple[int, int], src: Tensor, dst: Tensor) -> None:
    p = LuminanceParams.unpack(raw)
    w = covered(p.width, workgroups[0])
    h = covered(p.height, workgroups[1])
    if p.channel == CHANNEL_LUMA:
        y = luma_bt601(src[:, :h, :w])
    elif p.channel < 3:
        y = src[p.channel, :h, :w]
    else:
        raise ValueError(f"invalid luminance channel {p.channel}")
    dst[:h, :w] = y * p.gain


def pyramid_kernel(raw: bytes, workgroups: Tuple[int, int], src: Tensor, dst: Tensor) -> None:
    # 2x2 box average, odd edges replicated
    p = PyramidParams.unpack(raw)
    x = src[:p.src_height, :p.src_width][None, None]
    pad_x = 2 * p.dst_width - p.src_width
    pad_y = 2 * p.dst_height - p.src_height
    if pad_x or pad_y:
        x = F.pad(x, (0, pad_x, 0, pad_y), mode='replicate')
    h = covered(p.dst_height, workgroups[1])
    w = covered(p.dst_width, workgroups[0])
    dst[:h, :w] = F.avg_pool2d(x, 2, 2)[0, 0, :h, :w]


def search_offsets(radius: int, device) -> Tensor:
    """All integer (dx, dy) within `radius`, smallest magnitude first."""
    r = torch.arange(-radius, radius + 1, device=device)
    dy, dx = torch.meshgrid(r, r, indexing='ij')
    offs = torch.stack([dx.flatten(), dy.flatten()], dim=-1)  # [D,2]
    key = (offs * offs).sum(-1) * (2 * radius + 1) ** 2 + (offs[:, 1] + radius) * (2 * radius + 1) + offs[:, 0] + radius
    return offs[key.argsort()]


def tile_cost(ref_tiles: Tensor, frame: Tensor, Y: Tensor, X: Tensor, disp: Tensor, use_l2: bool) -> Tensor:
    # disp [R,nx,2] integer; frame sampled at p - d
    dx = disp[..., 0].round().long()
    dy = disp[..., 1].round().long()
    cand = gather_tiles(frame, Y - dy[:, :, None, None], X - dx[:, :, None, None])
    diff = cand - ref_tiles
    if use_l2:
        return (diff * diff).mean(dim=(-1, -2))
    return diff.abs().mean(dim=(-1, -2))


def seed_candidates(ref_tiles: Tensor, frame: Tensor, Y: Tensor, X: Tensor, prev: Tensor,
                    oy: Tensor, ox: Tensor, tile_size: int, prev_step: int, prev_ny: int) -> Tensor:
    """
    Seed per tile from the coarser field: nearest coarse tile and its +x/+y
    neighbours, each scaled by 2, keeping the one with the lowest L1 cost.
    """
    prev_nx = prev.shape[1]
    # tile centre in coarse pixels, then the coarse tile whose centre is nearest
    cy = (oy.to(torch.float32) + tile_size / 2) / 2
    cx = (ox.to(torch.float32) + tile_size / 2) / 2
    ci = torch.floor(cy / prev_step - 0.5).long().clamp(0, prev_ny - 1)
    cj = torch.floor(cx / prev_step - 0.5).long().clamp(0, prev_nx - 1)
    CI, CJ = torch.meshgrid(ci, cj, indexing='ij')
    CIp = (CI + 1).clamp(max=prev_ny - 1)
    CJp = (CJ + 1).clamp(max=prev_nx - 1)

    cands = torch.stack([
        prev[CI, CJ],   # nearest
        prev[CI, CJp],  # +x neighbour
        prev[CIp, CJ],  # +y neighbour
    ], dim=0) * 2.0  # [3,R,nx,2]

    costs = torch.stack([tile_cost(ref_tiles, frame, Y, X, c, use_l2=False) for c in cands], dim=0)
    best = costs.argmin(dim=0)  # [R,nx], first wins ties
    return cands.gather(0, best[None, :, :, None].expand(1, *best.shape, 2))[0]


def align_kernel(raw: bytes, workgroups: Tuple[int, int], ref: Tensor, frame: Tensor,
                 prev: Tensor, out_field: Tensor, out_seeds: Tensor) -> None:
    p = AlignParams.unpack(raw)
    r0, r1 = row_range(p.n_tiles_y, p.tile_row_offset, workgroups[1])
    nx = min(p.n_tiles_x, workgroups[0])
    if r1 <= r0:
        return
    device = ref.device
    ref = ref[:p.height, :p.width]
    frame = frame[:p.height, :p.width]

    oy = torch.arange(r0, r1, device=device) * p.tile_step
    ox = torch.arange(nx, device=device) * p.tile_step
    Y, X = tile_index_grids(oy, ox, p.tile_size)
    ref_tiles = gather_tiles(ref, Y, X)  # [R,nx,ts,ts]

    if p.prev_tile_step == 0:
        seeds = torch.zeros((r1 - r0, nx, 2), device=device, dtype=out_field.dtype)
    else:
        seeds = seed_candidates(ref_tiles, frame, Y, X, prev, oy, ox,
                                p.tile_size, p.prev_tile_step, p.prev_n_tiles_y)

    best_cost = None
    best = torch.zeros_like(seeds)
    for d in search_offsets(p.search_dist, device).to(seeds.dtype):
        cost = tile_cost(ref_tiles, frame, Y, X, seeds + d, bool(p.use_l2))
        if best_cost is None:
            best_cost = cost
            best[:] = d
            continue
        better = cost < best_cost  # strict: ties keep the smaller offset
        best_cost = torch.where(better, cost, best_cost)
        best[better] = d

    out_field[r0:r1, :nx] = seeds + best
    out_seeds[r0:r1, :nx] = seeds


# ============================================================
# Stage objects
# ============================================================

class PyramidBuilder:
    def __init__(self, context: GpuContext):
        self.context = context
        self.lum_pipeline = context.create_pipeline("luminance", LuminanceParams, luminance_kernel, 16)
        self.pyr_pipeline = context.create_pipeline("pyramid_downsample", PyramidParams, pyramid_kernel, 16)

    def build(self, rgb: Tensor, pyramid: List[Tensor], channel: int = CHANNEL_LUMA,
              gain: float = 1.0) -> List[PyramidLevel]:
        """
        Fill `pyramid` (level 0 first) from a 3xHxW colour buffer.

        `gain` scales the luminance before any level is built; bracketed
        frames pass 1 / relative exposure so they compare against the
        reference at the same brightness.
        """
        h, w = pyramid[0].shape
        self.context.dispatch(self.lum_pipeline, LuminanceParams(w, h, channel, gain), (rgb, pyramid[0]),
                              (workgroup_count(w), workgroup_count(h)))
        for src, dst in zip(pyramid[:-1], pyramid[1:]):
            sh, sw = src.shape
            dh, dw = dst.shape
            self.context.dispatch(self.pyr_pipeline, PyramidParams(sw, sh, dw, dh), (src, dst),
                                  (workgroup_count(dw), workgroup_count(dh)))
        return [PyramidLevel(lev, img) for lev, img in enumerate(pyramid)]


class TileAligner:
    def __init__(self, context: GpuContext, config: MergeConfig):
        self.context = context
        self.config = config
        self.levels: List[LevelConfig] = config.level_configs()
        self.pipeline = context.create_pipeline("align_tiles", AlignParams, align_kernel, 48)

    async def align(self, res: ResourceSet) -> List[AlignmentField]:
        """
        Align res.comp_pyramid to res.ref_pyramid, coarsest level first.
        Returns one field per level, level 0 first.
        """
        n_levels = len(self.levels)
        for lev in reversed(range(n_levels)):
            lc = self.levels[lev]
            grid = res.grids[lev]
            ny, nx = grid.shape
            if lev == n_levels - 1:
                prev, prev_step, prev_ny = res.dummy_prev, 0, 0
            else:
                prev = res.fields[lev + 1]
                prev_step = res.grids[lev + 1].tile_step
                prev_ny = res.grids[lev + 1].n_tiles_y
            params = AlignParams(
                width=grid.width, height=grid.height,
                tile_size=lc.tile_size, tile_step=lc.tile_step, search_dist=lc.search_dist,
                n_tiles_x=nx, n_tiles_y=ny, use_l2=int(lc.use_l2),
                prev_tile_step=prev_step, prev_n_tiles_y=prev_ny, tile_row_offset=0,
            )
            await self.context.run_chunked(
                self.pipeline, params,
                (res.ref_pyramid[lev], res.comp_pyramid[lev], prev, res.fields[lev], res.seeds[lev]),
                nx, ny, self.config.rows_per_chunk, self.config.chunks_per_yield)

        with self.context.stream_scope():
            return [AlignmentField(lev, res.grids[lev], res.fields[lev].clone(), res.seeds[lev].clone())
                    for lev in range(n_levels)]
