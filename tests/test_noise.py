"""
Test Suite: Noise Estimation and Support Modules
"""

import logging

import pytest
import torch

from burst_errors import BurstError, DispatchError, FrameContractError, SetupError
from burst_log import get_logger, setup_logging
from burst_noise import estimate_noise_sigma, estimate_shot_noise, green_grad_sharpness, mad_sigma
from conftest import smooth_image


class TestNoiseEstimation:
    def setup_method(self):
        self.g = torch.Generator().manual_seed(21)

    def test_mad_sigma_of_gaussian(self):
        x = torch.randn(200, 200, generator=self.g) * 0.1
        assert mad_sigma(x) == pytest.approx(0.1, rel=0.05)

    def test_laplacian_estimate_ignores_smooth_content(self):
        scene = smooth_image(256, 256, channels=1, seed=22)[0]
        noisy = scene + 0.02 * torch.randn(scene.shape, generator=self.g)
        assert estimate_noise_sigma(noisy) == pytest.approx(0.02, rel=0.15)

    def test_shot_noise_coefficient(self):
        level = 0.25
        sigma = 0.03
        img = level + sigma * torch.randn(256, 256, generator=self.g)
        noise_sd, measured = estimate_shot_noise(img, read_noise=0.001)
        assert measured == pytest.approx(sigma, rel=0.15)
        # var = read^2 + noise_sd^2 * level
        assert noise_sd ** 2 * level == pytest.approx(sigma ** 2, rel=0.3)

    def test_tiny_image(self):
        assert estimate_noise_sigma(torch.zeros(2, 5)) == 0.0
        assert green_grad_sharpness(torch.zeros(3, 1, 5)) == 0.0

    def test_sharpness_prefers_detail(self):
        sharp = smooth_image(64, 64, cells=2, seed=23)
        flat = torch.full((3, 64, 64), 0.5)
        assert green_grad_sharpness(sharp) > green_grad_sharpness(flat)


class TestSupport:
    def test_error_hierarchy(self):
        cause = RuntimeError("device lost")
        err = DispatchError("readback failed", original_error=cause)
        assert isinstance(err, BurstError)
        assert err.original_error is cause
        assert issubclass(SetupError, BurstError)
        assert FrameContractError("bad size", frame_index=4).frame_index == 4

    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / "logs" / "burst.log"
        root = setup_logging(logging.DEBUG, log_file=str(log_file))
        try:
            get_logger("burst_test").info("hello burst")
            for handler in root.handlers:
                handler.flush()
            assert "hello burst" in log_file.read_text()
        finally:
            for handler in list(root.handlers):
                handler.close()
            root.handlers.clear()
