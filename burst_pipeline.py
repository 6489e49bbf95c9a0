# burst_pipeline.py
# Burst merge orchestration:
# - validate the burst on the host, then take the context lock for the whole burst
# - reference: upload, luma pyramid, optional CA estimate, noise estimate
# - every other frame: upload, exposure normalised pyramid, chunked alignment, warp into its own buffer
# - one merge over all warped frames, then spatial / chroma denoise and optional guided filter
# - tone mapping with a scene adaptive shadow boost
# - convert back to the input pixel format on device and read back once

import contextlib
import enum
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import torch

from burst_align import AlignmentField, PyramidBuilder, PyramidLevel, TileAligner
from burst_config import MergeConfig
from burst_denoise import ChromaDenoiser, GuidedFilter, SpatialDenoiser
from burst_errors import BurstError, DispatchError, FrameContractError
from burst_gpu import GpuContext
from burst_log import get_logger, setup_logging
from burst_merge import MergeEngine
from burst_noise import estimate_shot_noise, green_grad_sharpness
from burst_resources import ResourceCache, ResourceSet
from burst_tonemap import ToneMapper
from burst_warp import CAEstimator, FrameWarper, WarpedFrame

Tensor = torch.Tensor

logger = get_logger(__name__)

ProgressCallback = Callable[[float], None]

# progress reported at the end of each phase
PROGRESS_INIT = 0.05
PROGRESS_ALIGNED = 0.60
PROGRESS_MERGED = 0.85
PROGRESS_DONE = 1.0


# ============================================================
# Frames and results
# ============================================================

class PixelFormat(enum.Enum):
    RGB8 = "rgb8"
    RGBA8 = "rgba8"
    RGB_F32 = "rgb_f32"
    RGBA_F32 = "rgba_f32"

    @property
    def channels(self) -> int:
        return 4 if self.has_alpha else 3

    @property
    def has_alpha(self) -> bool:
        return self in (PixelFormat.RGBA8, PixelFormat.RGBA_F32)

    @property
    def dtype(self) -> torch.dtype:
        return torch.uint8 if self in (PixelFormat.RGB8, PixelFormat.RGBA8) else torch.float32


@dataclass(frozen=True)
class BurstFrame:
    data: Any                  # HxWxC array or tensor, owned by the caller
    pixel_format: PixelFormat
    timestamp: float = 0.0
    exposure_factor: float = 1.0

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def width(self) -> int:
        return int(self.data.shape[1])


@dataclass
class MergeResult:
    data: Tensor               # HxWxC, same format as the input frames
    pixel_format: PixelFormat
    width: int
    height: int
    frame_count: int           # frames that contributed, reference included
    reference_index: int
    alignment: Dict[int, List[AlignmentField]] = field(default_factory=dict)
    diagnostics: Dict[str, Any] = field(default_factory=dict)


class StageTimer:
    def __init__(self):
        self.timings_ms: Dict[str, float] = {}

    @contextlib.contextmanager
    def stage(self, name: str):
        t0 = time.perf_counter()
        try:
            yield
        finally:
            elapsed = (time.perf_counter() - t0) * 1000.0
            self.timings_ms[name] = self.timings_ms.get(name, 0.0) + elapsed


def validate_burst(frames: Sequence[BurstFrame], reference_index: Optional[int] = None,
                   max_frames: int = 50) -> List[Tensor]:
    """
    Check the burst contract on the host and return the frames as tensors.
    Raises FrameContractError naming the offending frame.
    """
    if not frames:
        raise FrameContractError("empty burst")
    if len(frames) > max_frames:
        raise FrameContractError(f"burst has {len(frames)} frames, at most {max_frames} supported",
                                 frame_index=max_frames)

    host = []
    first = frames[0]
    for i, frame in enumerate(frames):
        if not isinstance(frame.pixel_format, PixelFormat):
            raise FrameContractError(f"unknown pixel format {frame.pixel_format!r}", frame_index=i)
        if frame.pixel_format is not first.pixel_format:
            raise FrameContractError(
                f"pixel format {frame.pixel_format.value} differs from {first.pixel_format.value}", frame_index=i)
        try:
            data = torch.as_tensor(frame.data)
        except (TypeError, ValueError, RuntimeError) as e:
            raise FrameContractError(f"pixel data is not an array: {e}", frame_index=i) from e
        fmt = frame.pixel_format
        if data.dim() != 3 or data.shape[2] != fmt.channels:
            raise FrameContractError(
                f"expected HxWx{fmt.channels} data for {fmt.value}, got shape {tuple(data.shape)}", frame_index=i)
        if data.dtype != fmt.dtype:
            raise FrameContractError(f"expected {fmt.dtype} data for {fmt.value}, got {data.dtype}", frame_index=i)
        if data.shape[0] < 1 or data.shape[1] < 1:
            raise FrameContractError("frame has no pixels", frame_index=i)
        if i > 0 and tuple(data.shape[:2]) != tuple(host[0].shape[:2]):
            raise FrameContractError(
                f"size {data.shape[1]}x{data.shape[0]} differs from {host[0].shape[1]}x{host[0].shape[0]}",
                frame_index=i)
        e = frame.exposure_factor
        if not (isinstance(e, (int, float)) and math.isfinite(e) and e > 0):
            raise FrameContractError(f"exposure factor must be finite and > 0, got {e!r}", frame_index=i)
        host.append(data)

    if reference_index is not None and not 0 <= reference_index < len(frames):
        raise FrameContractError(f"reference index out of range for {len(frames)} frames",
                                 frame_index=reference_index)
    return host


def to_pixel_format(rgb: Tensor, alpha: Optional[Tensor], fmt: PixelFormat) -> Tensor:
    """3xHxW float -> HxWxC in `fmt`, alpha taken unchanged from the reference."""
    hwc = rgb.permute(1, 2, 0)
    if fmt.dtype == torch.uint8:
        hwc = (hwc.clamp(0, 1) * 255.0).round().to(torch.uint8)
    if fmt.has_alpha:
        hwc = torch.cat([hwc, alpha[..., None].to(hwc.dtype)], dim=-1)
    return hwc.contiguous()


# ============================================================
# Processor
# ============================================================

class BurstProcessor:
    """
    Merges bursts on a shared GpuContext. Stage pipelines are created up front,
    so kernel/parameter layout problems surface here as SetupError.
    """

    def __init__(self, context: GpuContext, config: Optional[MergeConfig] = None):
        self.context = context
        self.config = config or MergeConfig()
        cfg = self.config
        self.resources = ResourceCache(context, cfg.level_configs(), cfg.merge_tile_size)
        self.pyramids = PyramidBuilder(context)
        self.aligner = TileAligner(context, cfg)
        self.warper = FrameWarper(context, cfg)
        self.ca_estimator = CAEstimator(context)
        self.merger = MergeEngine(context, cfg)
        self.spatial_denoiser = SpatialDenoiser(context, cfg)
        self.chroma_denoiser = ChromaDenoiser(context, cfg)
        self.guided_filter = GuidedFilter(context, cfg)
        self.tone_mapper = ToneMapper(context, cfg)

    def close(self) -> None:
        self.resources.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    async def merge(self, frames: Sequence[BurstFrame], reference_index: Optional[int] = None,
                    progress: Optional[ProgressCallback] = None) -> MergeResult:
        host = validate_burst(frames, reference_index, self.config.max_frames)
        async with self.context.exclusive():
            try:
                return await self._merge_locked(frames, host, reference_index, progress)
            except BurstError:
                raise
            except RuntimeError as e:
                logger.error(f"Burst merge failed: {e}")
                raise DispatchError(f"Burst merge failed: {e}", original_error=e) from e

    def _select_reference(self, host: List[Tensor], res: ResourceSet) -> int:
        scores = []
        for data in host:
            self.context.upload(data, res.comp_rgb)
            with self.context.stream_scope():
                scores.append(green_grad_sharpness(res.comp_rgb))
        ref_idx = int(torch.tensor(scores).argmax().item())
        logger.info(f"Sharpest frame {ref_idx} selected as reference")
        return ref_idx

    async def _merge_locked(self, frames: Sequence[BurstFrame], host: List[Tensor],
                            reference_index: Optional[int],
                            progress: Optional[ProgressCallback]) -> MergeResult:
        cfg = self.config
        ctx = self.context
        report = progress or (lambda fraction: None)
        timer = StageTimer()
        submissions_before = ctx.submission_count
        fmt = frames[0].pixel_format
        height, width = host[0].shape[:2]

        with timer.stage("init"):
            res = self.resources.get_or_create(width, height)
            ref_idx = reference_index
            if ref_idx is None:
                ref_idx = self._select_reference(host, res) if cfg.select_sharpest_reference else 0
            ref_alpha = ctx.upload(host[ref_idx], res.ref_rgb)
            ref_levels: List[PyramidLevel] = self.pyramids.build(res.ref_rgb, res.ref_pyramid)
        report(PROGRESS_INIT)

        ca_coeffs = (0.0, 0.0)
        reference = res.ref_rgb
        if cfg.enable_ca_correction:
            with timer.stage("ca_estimate"):
                ca_coeffs = self.ca_estimator.estimate(res.ref_rgb, res)
                self.warper.warp(res.ref_rgb, res.zero_field, res.grids[0], res.ref_corrected, ca_coeffs)
                reference = res.ref_corrected

        with timer.stage("noise"), ctx.stream_scope():
            ref_luma = ref_levels[0].image
            noise_sigma = None
            if cfg.noise_sd is None:
                noise_sd, noise_sigma = estimate_shot_noise(ref_luma, cfg.read_noise)
            else:
                noise_sd = cfg.noise_sd
            mean_signal = max(float(ref_luma.mean()), 0.0)

        others = [i for i in range(len(frames)) if i != ref_idx]
        ref_exposure = frames[ref_idx].exposure_factor
        warped: List[WarpedFrame] = []
        alignment: Dict[int, List[AlignmentField]] = {}
        for k, i in enumerate(others):
            relative_exposure = frames[i].exposure_factor / ref_exposure
            with timer.stage("align"):
                ctx.upload(host[i], res.comp_rgb)
                # compare at the reference's brightness
                self.pyramids.build(res.comp_rgb, res.comp_pyramid, gain=1.0 / relative_exposure)
                alignment[i] = await self.aligner.align(res)
            with timer.stage("warp"):
                dst = res.warped_buffer(k)
                self.warper.warp(res.comp_rgb, res.fields[0], res.grids[0], dst, ca_coeffs)
            warped.append(WarpedFrame(dst, i, relative_exposure))
            logger.debug(f"Frame {i} aligned and warped")
            report(PROGRESS_INIT + (PROGRESS_ALIGNED - PROGRESS_INIT) * (k + 1) / len(others))
        report(PROGRESS_ALIGNED)

        with timer.stage("merge"):
            outcome = await self.merger.merge(res, reference, warped, noise_sd)
        report(PROGRESS_MERGED)

        with timer.stage("denoise"):
            frame_sd = math.sqrt(cfg.read_noise ** 2 + noise_sd ** 2 * mean_signal)
            self.spatial_denoiser.denoise(res, outcome.image, res.post_a, frame_sd, outcome.frame_count)
            self.chroma_denoiser.denoise(res.post_a, res.post_b)
            final = res.post_b
            if cfg.enable_guided_filter:
                self.guided_filter.apply(res.post_b, res.post_a)
                final = res.post_a

        tone = None
        if cfg.tonemap_enabled:
            with timer.stage("tonemap"):
                spare = res.post_a if final is res.post_b else res.post_b
                tone = await self.tone_mapper.apply(res, final, spare)
                final = spare

        with timer.stage("readback"):
            with ctx.stream_scope():
                out = to_pixel_format(final, ref_alpha, fmt)
            staging = res.staging_buffer(ctx, tuple(out.shape), out.dtype)
            data = (await ctx.map_read(out, staging)).clone()
        report(PROGRESS_DONE)

        motion = {wf.source_index: m for wf, m in zip(warped, outcome.motion_weights)}
        diagnostics = {
            "timings_ms": timer.timings_ms,
            "noise_sd": noise_sd,
            "noise_sigma": noise_sigma,
            "read_noise": cfg.read_noise,
            "max_motion_norm": cfg.effective_max_motion_norm(),
            "ca_coeffs": ca_coeffs,
            "motion_weights": motion,
            "exposure_factors": {wf.source_index: wf.exposure_factor for wf in warped},
            "scene_brightness": tone.scene_brightness if tone else None,
            "shadow_boost": tone.shadow_boost if tone else None,
            "submissions": ctx.submission_count - submissions_before,
            "low_priority_queue": ctx.low_priority_enabled,
        }
        total = sum(timer.timings_ms.values())
        logger.info(f"Merged {outcome.frame_count}/{len(frames)} frames at {width}x{height} "
                    f"in {total:.1f} ms (ref {ref_idx}, mode {cfg.merge_mode})")
        return MergeResult(
            data=data, pixel_format=fmt, width=width, height=height,
            frame_count=outcome.frame_count, reference_index=ref_idx,
            alignment=alignment, diagnostics=diagnostics,
        )


def create_processor(config: Optional[MergeConfig] = None, low_priority: bool = True) -> BurstProcessor:
    """Build a GpuContext on the configured device and a processor bound to it."""
    config = config or MergeConfig()
    return BurstProcessor(GpuContext(config.device, low_priority=low_priority), config)


# ============================================================
# Example (optional)
# ============================================================

if __name__ == "__main__":
    import asyncio

    setup_logging()
    # Minimal smoke run on a synthetic shaken burst
    H, W = 240, 320
    torch.manual_seed(0)
    scene = torch.rand(H // 8, W // 8, 3)
    scene = torch.nn.functional.interpolate(scene.permute(2, 0, 1)[None], size=(H, W),
                                            mode='bilinear', align_corners=False)[0].permute(1, 2, 0)
    burst = []
    for i in range(4):
        shifted = torch.roll(scene, shifts=(i, -2 * i), dims=(0, 1))
        noisy = (shifted + 0.02 * torch.randn_like(shifted)).clamp(0, 1)
        burst.append(BurstFrame((noisy * 255).round().to(torch.uint8), PixelFormat.RGB8, timestamp=i / 30))

    processor = create_processor(MergeConfig(merge_mode="frequency"))
    result = asyncio.run(processor.merge(burst, progress=lambda f: print(f"progress {f:.2f}")))
    print("merged:", tuple(result.data.shape), "frames used:", result.frame_count)
    print("timings (ms):", {k: round(v, 1) for k, v in result.diagnostics["timings_ms"].items()})
