import pytest
import torch
import torch.nn.functional as F

from burst_gpu import GpuContext


@pytest.fixture
def cpu_context():
    return GpuContext("cpu")


def smooth_image(height, width, channels=3, cells=8, seed=0):
    """Random smooth CxHxW image in [0.1, 0.9]."""
    g = torch.Generator().manual_seed(seed)
    coarse = torch.rand(1, channels, max(2, height // cells), max(2, width // cells), generator=g)
    img = F.interpolate(coarse, size=(height, width), mode='bilinear', align_corners=False)[0]
    return 0.1 + 0.8 * img


def to_hwc_u8(img):
    return (img.permute(1, 2, 0).clamp(0, 1) * 255).round().to(torch.uint8).contiguous()
