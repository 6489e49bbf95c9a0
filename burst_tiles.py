"""Tile grids, windows and clamped tile gather/scatter shared by the kernels."""

import math
from dataclasses import dataclass
from typing import List, Tuple

import torch

Tensor = torch.Tensor

WORKGROUP_SIZE = 16


def workgroup_count(dimension: int, workgroup_size: int = WORKGROUP_SIZE) -> int:
    """Number of workgroups needed to cover `dimension` items."""
    return (dimension + workgroup_size - 1) // workgroup_size


def covered(extent: int, groups: int, workgroup_size: int = WORKGROUP_SIZE) -> int:
    # pixels actually reached by `groups` workgroups along one axis
    return min(extent, groups * workgroup_size)


def level_dims(width: int, height: int, levels: int) -> List[Tuple[int, int]]:
    """(w, h) of every pyramid level, level 0 first; each level is ceil(prev / 2)."""
    dims = [(width, height)]
    for _ in range(1, levels):
        w, h = dims[-1]
        dims.append(((w + 1) // 2, (h + 1) // 2))
    return dims


@dataclass(frozen=True)
class TileGrid:
    tile_size: int
    tile_step: int
    width: int
    height: int

    @staticmethod
    def _count(dim: int, size: int, step: int) -> int:
        return max(1, math.ceil((dim - size) / step) + 1)

    @property
    def n_tiles_x(self) -> int:
        return self._count(self.width, self.tile_size, self.tile_step)

    @property
    def n_tiles_y(self) -> int:
        return self._count(self.height, self.tile_size, self.tile_step)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.n_tiles_y, self.n_tiles_x


def merge_tile_counts(width: int, height: int, tile_size: int) -> Tuple[int, int]:
    # one extra tile per axis so the half-tile shifted passes reach the far edge
    return math.ceil(width / tile_size) + 1, math.ceil(height / tile_size) + 1


def wola_pass_offsets(tile_size: int) -> List[Tuple[int, int]]:
    """(offset_x, offset_y) of the four overlap-add passes."""
    half = tile_size // 2
    return [(-half, -half), (0, -half), (-half, 0), (0, 0)]


def raised_cosine_window_2d(n: int, device, dtype=torch.float32) -> Tensor:
    # w(x) = 0.5 - 0.5 cos(2π (x+0.5)/n); copies shifted by n/2 sum to 1
    x = torch.arange(n, device=device, dtype=dtype)
    w1 = 0.5 - 0.5 * torch.cos(2 * math.pi * (x + 0.5) / n)
    return (w1[:, None] * w1[None, :]).contiguous()


def tile_index_grids(oy: Tensor, ox: Tensor, size: int,
                     dy: Tensor = None, dx: Tensor = None) -> Tuple[Tensor, Tensor]:
    """
    Absolute pixel rows/cols of every tile, shape [R,nx,size,size] each.

    oy: [R] tile origin rows, ox: [nx] tile origin cols.
    dy, dx: optional per-tile offsets [R,nx] added to the origins.
    """
    a = torch.arange(size, device=oy.device)
    Y = oy[:, None, None, None] + a[None, None, :, None]  # [R,1,s,1]
    X = ox[None, :, None, None] + a[None, None, None, :]  # [1,nx,1,s]
    if dy is not None:
        Y = Y + dy[:, :, None, None]
    if dx is not None:
        X = X + dx[:, :, None, None]
    R, nx = oy.shape[0], ox.shape[0]
    return Y.expand(R, nx, size, size), X.expand(R, nx, size, size)


def gather_tiles(img: Tensor, Y: Tensor, X: Tensor) -> Tensor:
    """Read tiles with edge clamping. img [H,W] or [C,H,W] -> [...,R,nx,s,s]."""
    H, W = img.shape[-2:]
    Yc = Y.clamp(0, H - 1)
    Xc = X.clamp(0, W - 1)
    return img[..., Yc, Xc]


def scatter_add_tiles(dst: Tensor, values: Tensor, Y: Tensor, X: Tensor) -> None:
    """
    Accumulate tile values into dst, dropping pixels outside the image.

    dst: [C,H,W], values: [C,R,nx,s,s] (or [R,nx,s,s] broadcast over C).
    """
    C, H, W = dst.shape
    inside = (Y >= 0) & (Y < H) & (X >= 0) & (X < W)
    flat = (Y * W + X)[inside]
    if values.dim() == 4:
        values = values.unsqueeze(0).expand(C, *values.shape)
    dst.view(C, -1).index_add_(1, flat, values[:, inside].to(dst.dtype))


def row_range(n_rows: int, offset: int, rows: int) -> Tuple[int, int]:
    return offset, min(n_rows, offset + rows)
