"""
Pooled device buffers for one burst resolution.

A ResourceSet is tagged with the (width, height) it was allocated for and is
reused by every merge call at that size; any other size drops it and
allocates a new one.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from burst_config import LevelConfig
from burst_gpu import GpuContext
from burst_log import get_logger
from burst_tiles import TileGrid, level_dims, merge_tile_counts

Tensor = torch.Tensor

logger = get_logger(__name__)

CA_RADIUS_BINS = 16
MAX_FRAME_STATS = 64
TONEMAP_BLOCK_SIZE = 8


@dataclass(frozen=True)
class CachedDimensions:
    width: int
    height: int


@dataclass
class ResourceSet:
    dimensions: CachedDimensions
    grids: List[TileGrid]
    merge_tiles: Tuple[int, int]  # (n_tiles_x, n_tiles_y)

    ref_rgb: Tensor
    comp_rgb: Tensor
    ref_corrected: Tensor
    ref_pyramid: List[Tensor]
    comp_pyramid: List[Tensor]
    fields: List[Tensor]   # per level [ny,nx,2]
    seeds: List[Tensor]    # per level [ny,nx,2]
    dummy_prev: Tensor     # [1,1,2], bound at the coarsest level
    zero_field: Tensor     # level 0 shaped, for CA-only warps

    merge_accum: Tensor
    merge_weight: Tensor
    merged: Tensor
    frame_stats: Tensor    # [MAX_FRAME_STATS, 2] motion weight sum, tile count

    luma: Tensor
    luma_accum: Tensor
    luma_weight: Tensor
    post_a: Tensor
    post_b: Tensor

    ca_bins: Tensor        # [CA_RADIUS_BINS, 4]
    ca_coeffs: Tensor      # [2] (r, b)

    tonemap_local: Tensor  # [ceil(H/8), ceil(W/8)] block mean luminance
    tonemap_stats: Tensor  # [2] luminance sum, pixel count

    warped: List[Tensor] = field(default_factory=list)
    staging: Dict[Tuple, Tensor] = field(default_factory=dict)

    def warped_buffer(self, i: int) -> Tensor:
        """Warped colour buffer i, allocated on first use."""
        while len(self.warped) <= i:
            self.warped.append(torch.empty_like(self.ref_rgb))
        return self.warped[i]

    def staging_buffer(self, context: GpuContext, shape: Tuple[int, ...], dtype: torch.dtype) -> Tensor:
        key = (tuple(shape), dtype)
        buf = self.staging.get(key)
        if buf is None:
            buf = context.new_staging(tuple(shape), dtype)
            self.staging[key] = buf
        return buf


def allocate_resources(device: torch.device, width: int, height: int,
                       levels: Sequence[LevelConfig], merge_tile_size: int) -> ResourceSet:
    f32 = dict(device=device, dtype=torch.float32)
    dims = level_dims(width, height, len(levels))
    grids = [TileGrid(lc.tile_size, lc.tile_step, w, h) for lc, (w, h) in zip(levels, dims)]

    def plane(c=None):
        shape = (height, width) if c is None else (c, height, width)
        return torch.zeros(shape, **f32)

    return ResourceSet(
        dimensions=CachedDimensions(width, height),
        grids=grids,
        merge_tiles=merge_tile_counts(width, height, merge_tile_size),
        ref_rgb=plane(3),
        comp_rgb=plane(3),
        ref_corrected=plane(3),
        ref_pyramid=[torch.zeros((h, w), **f32) for w, h in dims],
        comp_pyramid=[torch.zeros((h, w), **f32) for w, h in dims],
        fields=[torch.zeros((*g.shape, 2), **f32) for g in grids],
        seeds=[torch.zeros((*g.shape, 2), **f32) for g in grids],
        dummy_prev=torch.zeros((1, 1, 2), **f32),
        zero_field=torch.zeros((*grids[0].shape, 2), **f32),
        merge_accum=plane(3),
        merge_weight=plane(1),
        merged=plane(3),
        frame_stats=torch.zeros((MAX_FRAME_STATS, 2), **f32),
        luma=plane(),
        luma_accum=plane(1),
        luma_weight=plane(1),
        post_a=plane(3),
        post_b=plane(3),
        ca_bins=torch.zeros((CA_RADIUS_BINS, 4), **f32),
        ca_coeffs=torch.zeros(2, **f32),
        tonemap_local=torch.zeros((-(-height // TONEMAP_BLOCK_SIZE), -(-width // TONEMAP_BLOCK_SIZE)), **f32),
        tonemap_stats=torch.zeros(2, **f32),
    )


class ResourceCache:
    def __init__(self, context: GpuContext, levels: Sequence[LevelConfig], merge_tile_size: int):
        self.context = context
        self.levels = list(levels)
        self.merge_tile_size = merge_tile_size
        self._resources: Optional[ResourceSet] = None
        self.allocation_count = 0

    @property
    def dimensions(self) -> Optional[CachedDimensions]:
        return None if self._resources is None else self._resources.dimensions

    def get_or_create(self, width: int, height: int) -> ResourceSet:
        wanted = CachedDimensions(width, height)
        if self._resources is not None and self._resources.dimensions == wanted:
            return self._resources
        if self._resources is not None:
            logger.info(f"Resolution changed {self._resources.dimensions} -> {wanted}, reallocating")
        self._resources = None
        self._resources = allocate_resources(self.context.device, width, height,
                                             self.levels, self.merge_tile_size)
        self.allocation_count += 1
        logger.debug(f"Allocated burst resources for {width}x{height}")
        return self._resources

    def clear(self) -> None:
        self._resources = None
