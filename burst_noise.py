"""Noise level estimation and frame sharpness, used to fill in the merge noise model."""

import math
from typing import Tuple

import torch
import torch.nn.functional as F

Tensor = torch.Tensor

MAD_SCALE = 1.4826          # MAD -> sigma for gaussian data
LAPLACIAN_GAIN = math.sqrt(20.0)  # std of the 4-neighbour Laplacian of unit white noise
MAX_MEDIAN_SAMPLES = 1 << 20
MIN_SIGNAL = 1e-3


@torch.no_grad()
def mad_sigma(x: Tensor) -> float:
    """Robust sigma of a tensor via the median absolute deviation."""
    flat = x.flatten()
    if flat.numel() > MAX_MEDIAN_SAMPLES:
        flat = flat[::flat.numel() // MAX_MEDIAN_SAMPLES + 1]
    med = flat.median()
    return MAD_SCALE * float((flat - med).abs().median())


@torch.no_grad()
def estimate_noise_sigma(luma: Tensor) -> float:
    """Per-pixel noise std of a [H,W] image from the MAD of its Laplacian."""
    if min(luma.shape) < 3:
        return 0.0
    k = torch.tensor([[0., 1., 0.], [1., -4., 1.], [0., 1., 0.]], dtype=luma.dtype, device=luma.device)
    lap = F.conv2d(luma[None, None], k[None, None])[0, 0]
    return mad_sigma(lap) / LAPLACIAN_GAIN


@torch.no_grad()
def estimate_shot_noise(luma: Tensor, read_noise: float) -> Tuple[float, float]:
    """
    Shot noise coefficient of  var(s) = read_noise^2 + noise_sd^2 * s,
    fitted at the mean signal level. Returns (noise_sd, measured sigma).
    """
    sigma = estimate_noise_sigma(luma)
    mean = max(float(luma.mean()), MIN_SIGNAL)
    shot_var = max(sigma * sigma - read_noise * read_noise, 0.0)
    return math.sqrt(shot_var / mean), sigma


@torch.no_grad()
def green_grad_sharpness(rgb: Tensor) -> float:
    G = rgb[1]
    if min(G.shape) < 2:
        return 0.0
    gx = G[:, 1:] - G[:, :-1]
    gy = G[1:, :] - G[:-1, :]
    return float(gx.abs().mean() + gy.abs().mean())
