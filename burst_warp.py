# burst_warp.py
# Frame warping with the tile motion field, radial chromatic aberration
# correction of R/B, and estimation of the CA model from the reference frame.
#
# CA model: a channel point at radius r is displaced radially by
#     r * k * (r / r_max)^2
# so correction samples the channel at  c + (p - c) * (1 + k * (r / r_max)^2).

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from burst_config import MergeConfig
from burst_gpu import GpuContext
from burst_log import get_logger
from burst_params import CAEstimateParams, WarpParams
from burst_resources import ResourceSet
from burst_tiles import TileGrid, covered, workgroup_count

Tensor = torch.Tensor

logger = get_logger(__name__)

CA_EDGE_THRESHOLD = 0.08
CA_RADIAL_ALIGNMENT = 0.6
CA_SEARCH_RADIUS = 4        # steps per half pixel
CA_MIN_BIN_SAMPLES = 8
CA_MAX_SAMPLES = 20000
CA_MIN_COEFF = 1e-4         # below this correction is skipped
CA_PROFILE = (-2, -1, 0, 1, 2)
CA_BORDER = 6


@dataclass
class WarpedFrame:
    data: Tensor            # [3,H,W], lined up with the reference
    source_index: int       # position in the burst
    exposure_factor: float = 1.0  # relative to the reference


def max_radius(width: int, height: int, cx: float, cy: float) -> float:
    return math.hypot(max(cx, width - cx), max(cy, height - cy))


def sample_bilinear(img: Tensor, sx: Tensor, sy: Tensor) -> Tensor:
    """Sample a [H,W] plane at float positions, clamped to the edge."""
    H, W = img.shape
    sx = sx.clamp(0, W - 1)
    sy = sy.clamp(0, H - 1)
    x0 = sx.floor().long().clamp(max=W - 2) if W > 1 else sx.floor().long()
    y0 = sy.floor().long().clamp(max=H - 2) if H > 1 else sy.floor().long()
    x1 = (x0 + 1).clamp(max=W - 1)
    y1 = (y0 + 1).clamp(max=H - 1)
    fx = sx - x0
    fy = sy - y0
    top = img[y0, x0] * (1 - fx) + img[y0, x1] * fx
    bot = img[y1, x0] * (1 - fx) + img[y1, x1] * fx
    return top * (1 - fy) + bot * fy


def sample_nearest(img: Tensor, sx: Tensor, sy: Tensor) -> Tensor:
    H, W = img.shape
    return img[sy.round().long().clamp(0, H - 1), sx.round().long().clamp(0, W - 1)]


def pixel_motion(field: Tensor, ys: Tensor, xs: Tensor, tile_size: int, tile_step: int) -> Tuple[Tensor, Tensor]:
    """Bilinear interpolation of the tile field between tile centres -> per-pixel (dx, dy)."""
    ny, nx = field.shape[:2]
    half = (tile_size - 1) / 2
    ty = ((ys - half) / tile_step).clamp(0, ny - 1)
    tx = ((xs - half) / tile_step).clamp(0, nx - 1)
    y0 = ty.floor().long()
    x0 = tx.floor().long()
    y1 = (y0 + 1).clamp(max=ny - 1)
    x1 = (x0 + 1).clamp(max=nx - 1)
    fy = (ty - y0)[:, None, None]
    fx = (tx - x0)[None, :, None]
    top = field[y0][:, x0] * (1 - fx) + field[y0][:, x1] * fx
    bot = field[y1][:, x0] * (1 - fx) + field[y1][:, x1] * fx
    d = top * (1 - fy) + bot * fy  # [h,w,2]
    return d[..., 0], d[..., 1]


# ============================================================
# Warp kernel
# ============================================================

def warp_kernel(raw: bytes, workgroups: Tuple[int, int], src: Tensor, field: Tensor, dst: Tensor) -> None:
    p = WarpParams.unpack(raw)
    h = covered(p.height, workgroups[1])
    w = covered(p.width, workgroups[0])
    device = src.device
    ys = torch.arange(h, device=device, dtype=torch.float32)
    xs = torch.arange(w, device=device, dtype=torch.float32)
    dx, dy = pixel_motion(field[:p.n_tiles_y, :p.n_tiles_x], ys, xs, p.tile_size, p.tile_step)
    sx = xs[None, :] - dx
    sy = ys[:, None] - dy
    sample = sample_bilinear if p.use_bilinear else sample_nearest

    rmax = max_radius(p.width, p.height, p.center_x, p.center_y)
    coeffs = (p.ca_r_coeff, 0.0, p.ca_b_coeff)
    for c in range(3):
        k = coeffs[c]
        if p.enable_ca_correction and k != 0.0:
            ox = sx - p.center_x
            oy = sy - p.center_y
            scale = 1 + k * (ox * ox + oy * oy) / (rmax * rmax)
            dst[c, :h, :w] = sample(src[c], p.center_x + ox * scale, p.center_y + oy * scale)
        else:
            dst[c, :h, :w] = sample(src[c], sx, sy)


class FrameWarper:
    def __init__(self, context: GpuContext, config: MergeConfig):
        self.context = context
        self.config = config
        self.pipeline = context.create_pipeline("warp_frame", WarpParams, warp_kernel, 64)

    def warp(self, src: Tensor, field: Tensor, grid: TileGrid, dst: Tensor,
             ca_coeffs: Tuple[float, float] = (0.0, 0.0)) -> None:
        """Resample `src` into `dst` so that it lines up with the reference."""
        _, h, w = src.shape
        ca_r, ca_b = ca_coeffs
        enable_ca = self.config.enable_ca_correction and max(abs(ca_r), abs(ca_b)) > CA_MIN_COEFF
        params = WarpParams(
            width=w, height=h, n_tiles_x=grid.n_tiles_x, n_tiles_y=grid.n_tiles_y,
            tile_size=grid.tile_size, tile_step=grid.tile_step,
            use_bilinear=int(self.config.use_bilinear),
            center_x=w / 2, center_y=h / 2, ca_r_coeff=ca_r, ca_b_coeff=ca_b,
            enable_ca_correction=int(enable_ca),
        )
        self.context.dispatch(self.pipeline, params, (src, field, dst),
                              (workgroup_count(w), workgroup_count(h)))


# ============================================================
# Chromatic aberration estimation
# ============================================================

def ca_init_bins(raw: bytes, workgroups: Tuple[int, int], bins: Tensor, coeffs: Tensor) -> None:
    CAEstimateParams.unpack(raw)
    bins.zero_()
    coeffs.zero_()


def _radial_profile(img: Tensor, px: Tensor, py: Tensor, ux: Tensor, uy: Tensor, t: Tensor) -> Tensor:
    # samples along the radial direction, [N,len(t)], normalised per edge
    sx = px[:, None] + ux[:, None] * t[None, :]
    sy = py[:, None] + uy[:, None] * t[None, :]
    prof = sample_bilinear(img, sx, sy)
    prof = prof - prof.mean(dim=1, keepdim=True)
    return prof / (prof.norm(dim=1, keepdim=True) + 1e-8)


def _radial_shift(channel: Tensor, green: Tensor, px, py, ux, uy, search_radius: int) -> Tensor:
    """Sub-pixel radial displacement of `channel` against `green` at each edge point."""
    device = green.device
    t = torch.tensor(CA_PROFILE, device=device, dtype=torch.float32)
    ref = _radial_profile(green, px, py, ux, uy, t)
    step = 0.5 / search_radius
    shifts = torch.arange(-search_radius, search_radius + 1, device=device, dtype=torch.float32) * step
    cost = torch.stack([((_radial_profile(channel, px, py, ux, uy, t + s) - ref) ** 2).sum(dim=1)
                        for s in shifts], dim=1)  # [N,S]
    k = cost.argmin(dim=1)
    km = (k - 1).clamp(0, len(shifts) - 1)
    kp = (k + 1).clamp(0, len(shifts) - 1)
    c0 = cost.gather(1, k[:, None])[:, 0]
    cm = cost.gather(1, km[:, None])[:, 0]
    cp = cost.gather(1, kp[:, None])[:, 0]
    denom = cm - 2 * c0 + cp
    inner = (k > 0) & (k < len(shifts) - 1) & (denom > 1e-12)
    frac = torch.where(inner, 0.5 * (cm - cp) / denom.clamp(min=1e-12), torch.zeros_like(c0))
    return (shifts[k] + frac.clamp(-0.5, 0.5) * step)


def ca_estimate_offsets(raw: bytes, workgroups: Tuple[int, int], rgb: Tensor, bins: Tensor) -> None:
    p = CAEstimateParams.unpack(raw)
    h, w = p.height, p.width
    G = rgb[1, :h, :w]
    device = G.device

    gx = torch.zeros_like(G)
    gy = torch.zeros_like(G)
    gx[:, 1:-1] = 0.5 * (G[:, 2:] - G[:, :-2])
    gy[1:-1, :] = 0.5 * (G[2:, :] - G[:-2, :])
    mag = torch.sqrt(gx * gx + gy * gy)

    yy, xx = torch.meshgrid(torch.arange(h, device=device, dtype=torch.float32),
                            torch.arange(w, device=device, dtype=torch.float32), indexing='ij')
    rx = xx - p.center_x
    ry = yy - p.center_y
    r = torch.sqrt(rx * rx + ry * ry)
    rmax = max_radius(w, h, p.center_x, p.center_y)
    cos = (gx * rx + gy * ry) / (mag * r + 1e-8)

    edges = (mag > p.edge_threshold) & (cos.abs() >= p.radial_alignment) & (r > 0.1 * rmax)
    edges[:CA_BORDER] = False
    edges[-CA_BORDER:] = False
    edges[:, :CA_BORDER] = False
    edges[:, -CA_BORDER:] = False
    idx = edges.flatten().nonzero()[:, 0]
    if idx.numel() == 0:
        return
    if idx.numel() > CA_MAX_SAMPLES:
        idx = idx[torch.linspace(0, idx.numel() - 1, CA_MAX_SAMPLES, device=device).long()]

    px, py, pr = xx.flatten()[idx], yy.flatten()[idx], r.flatten()[idx]
    ux, uy = rx.flatten()[idx] / pr, ry.flatten()[idx] / pr

    shift_r = _radial_shift(rgb[0, :h, :w], G, px, py, ux, uy, p.search_radius)
    shift_b = _radial_shift(rgb[2, :h, :w], G, px, py, ux, uy, p.search_radius)

    b = (pr / rmax * p.num_radius_bins).long().clamp(0, p.num_radius_bins - 1)
    contrib = torch.stack([torch.ones_like(pr), shift_r, shift_b, pr], dim=1)
    bins.index_add_(0, b, contrib)


def ca_fit_model(raw: bytes, workgroups: Tuple[int, int], bins: Tensor, coeffs: Tensor) -> None:
    # least squares of mean shift = k * x, x = r (r / r_max)^2, weighted by bin count
    p = CAEstimateParams.unpack(raw)
    rmax = max_radius(p.width, p.height, p.center_x, p.center_y)
    n = bins[:, 0]
    use = n >= CA_MIN_BIN_SAMPLES
    if not bool(use.any()):
        coeffs.zero_()
        return
    n = n[use]
    r_mean = bins[use, 3] / n
    x = r_mean * (r_mean / rmax) ** 2
    sxx = (n * x * x).sum().clamp(min=1e-12)
    coeffs[0] = (bins[use, 1] * x).sum() / sxx
    coeffs[1] = (bins[use, 2] * x).sum() / sxx


class CAEstimator:
    def __init__(self, context: GpuContext):
        self.context = context
        self.init_pipeline = context.create_pipeline("ca_init_bins", CAEstimateParams, ca_init_bins, 32)
        self.estimate_pipeline = context.create_pipeline("ca_estimate_offsets", CAEstimateParams,
                                                         ca_estimate_offsets, 32)
        self.fit_pipeline = context.create_pipeline("ca_fit_model", CAEstimateParams, ca_fit_model, 32)

    def estimate(self, rgb: Tensor, res: ResourceSet,
                 center: Optional[Tuple[float, float]] = None) -> Tuple[float, float]:
        """Fit (k_r, k_b) of the radial CA model on the reference frame."""
        _, h, w = rgb.shape
        cx, cy = center if center is not None else (w / 2, h / 2)
        n_bins = res.ca_bins.shape[0]
        params = CAEstimateParams(w, h, cx, cy, CA_EDGE_THRESHOLD, CA_RADIAL_ALIGNMENT,
                                  n_bins, CA_SEARCH_RADIUS)
        groups = (workgroup_count(w), workgroup_count(h))
        self.context.dispatch(self.init_pipeline, params, (res.ca_bins, res.ca_coeffs), (1, 1))
        self.context.dispatch(self.estimate_pipeline, params, (rgb, res.ca_bins), groups)
        self.context.dispatch(self.fit_pipeline, params, (res.ca_bins, res.ca_coeffs), (1, 1))

        with self.context.stream_scope():
            n_samples = int(res.ca_bins[:, 0].sum().item())
            coeffs = res.ca_coeffs.tolist()
        if n_samples < CA_MIN_BIN_SAMPLES:
            logger.warning(f"CA estimation found only {n_samples} usable edges, skipping correction")
            return 0.0, 0.0
        ca_r, ca_b = (float(v) for v in coeffs)
        logger.debug(f"CA model from {n_samples} edges: r={ca_r:.5f} b={ca_b:.5f}")
        return ca_r, ca_b
