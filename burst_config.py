"""
Merge configuration: the tunables of alignment, merge and post-processing,
loadable from a YAML file.
"""

import dataclasses
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Union

import yaml

from burst_errors import ConfigError

MERGE_MODES = ("spatial", "frequency")
DEVICES = ("auto", "cpu", "cuda")

# frames accepted in one burst
MIN_FRAMES = 2
MAX_FRAMES = 50


class LevelConfig(NamedTuple):
    tile_size: int
    tile_step: int
    search_dist: int
    use_l2: bool


def derive_max_motion_norm(robustness: float) -> float:
    # 1.3^(11 - (26.5 - r)/2), floored at 1
    return max(1.0, 1.3 ** (11.0 - 0.5 * (26.5 - robustness)))


@dataclass(frozen=True)
class MergeConfig:
    # alignment
    tile_size: int = 32
    tile_step: int = 16
    search_dist: int = 2
    pyramid_levels: int = 4
    use_l2_at_coarse_levels: bool = True

    # merge
    merge_mode: str = "frequency"
    robustness: float = 1.0
    max_motion_norm: Optional[float] = None  # None -> derived from robustness
    noise_sd: Optional[float] = None         # None -> estimated from the reference
    read_noise: float = 0.002
    merge_tile_size: int = 16

    # warp / chromatic aberration
    use_bilinear: bool = True
    enable_ca_correction: bool = False

    # post-processing
    denoise_strength: float = 0.15
    high_freq_boost: float = 1.5
    chroma_strength: float = 0.25
    chroma_edge_threshold: float = 0.15
    enable_guided_filter: bool = False
    guided_radius: int = 4
    guided_epsilon: float = 1e-4

    # tone mapping; all three at 0 skips the stage
    shadow_boost: float = 0.2        # full strength in dark scenes, fades out above mid grey
    local_contrast: float = 0.15
    highlight_compress: float = 0.5

    # reference and scheduling
    select_sharpest_reference: bool = False
    rows_per_chunk: int = 4
    chunks_per_yield: int = 2
    max_frames: int = MAX_FRAMES
    device: str = "auto"

    def __post_init__(self):
        errors = self._collect_errors()
        if errors:
            raise ConfigError("Invalid merge configuration: " + "; ".join(errors))

    def _collect_errors(self) -> List[str]:
        errors = []
        if self.tile_size < 8 or self.tile_size & (self.tile_size - 1):
            errors.append(f"tile_size must be a power of two >= 8, got {self.tile_size}")
        if not 0 < self.tile_step <= self.tile_size:
            errors.append(f"tile_step must be in (0, tile_size], got {self.tile_step}")
        if self.search_dist < 1:
            errors.append(f"search_dist must be >= 1, got {self.search_dist}")
        if not 1 <= self.pyramid_levels <= 8:
            errors.append(f"pyramid_levels must be in [1, 8], got {self.pyramid_levels}")
        if self.merge_mode not in MERGE_MODES:
            errors.append(f"merge_mode must be one of {MERGE_MODES}, got {self.merge_mode!r}")
        if not self.robustness > 0:
            errors.append(f"robustness must be > 0, got {self.robustness}")
        if self.max_motion_norm is not None and not self.max_motion_norm > 0:
            errors.append(f"max_motion_norm must be > 0, got {self.max_motion_norm}")
        if self.noise_sd is not None and not self.noise_sd >= 0:
            errors.append(f"noise_sd must be >= 0, got {self.noise_sd}")
        if not self.read_noise > 0:
            errors.append(f"read_noise must be > 0, got {self.read_noise}")
        if self.merge_tile_size < 4 or self.merge_tile_size % 2:
            errors.append(f"merge_tile_size must be even and >= 4, got {self.merge_tile_size}")
        for name in ("denoise_strength", "chroma_strength"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0")
        if self.high_freq_boost < 1.0:
            errors.append(f"high_freq_boost must be >= 1, got {self.high_freq_boost}")
        if not self.chroma_edge_threshold > 0:
            errors.append("chroma_edge_threshold must be > 0")
        if self.guided_radius < 1:
            errors.append("guided_radius must be >= 1")
        if not self.guided_epsilon > 0:
            errors.append("guided_epsilon must be > 0")
        for name in ("shadow_boost", "local_contrast", "highlight_compress"):
            if not 0.0 <= getattr(self, name) <= 1.0:
                errors.append(f"{name} must be in [0, 1], got {getattr(self, name)}")
        if self.rows_per_chunk < 1 or self.chunks_per_yield < 1:
            errors.append("rows_per_chunk and chunks_per_yield must be >= 1")
        if not MIN_FRAMES <= self.max_frames <= MAX_FRAMES:
            errors.append(f"max_frames must be in [{MIN_FRAMES}, {MAX_FRAMES}]")
        if self.device not in DEVICES and not self.device.startswith("cuda:"):
            errors.append(f"device must be one of {DEVICES} or 'cuda:N', got {self.device!r}")
        return errors

    # ------------------------------------------------------------
    # derived values
    # ------------------------------------------------------------

    def effective_max_motion_norm(self) -> float:
        if self.max_motion_norm is not None:
            return float(self.max_motion_norm)
        return derive_max_motion_norm(self.robustness)

    @property
    def tonemap_enabled(self) -> bool:
        return self.shadow_boost > 0 or self.local_contrast > 0 or self.highlight_compress > 0

    def level_configs(self) -> List[LevelConfig]:
        """
        Per pyramid level alignment settings, index 0 = full resolution.

        The finest level matches with L1 on full-size tiles. Coarser levels
        halve the tile from there on (never below 8 px) and use L2 when
        enabled; the coarsest level searches twice as far.
        """
        out = [LevelConfig(self.tile_size, self.tile_step, self.search_dist, False)]
        for k in range(1, self.pyramid_levels):
            ts = max(8, self.tile_size >> (k - 1))
            search = self.search_dist
            if k == self.pyramid_levels - 1:
                search *= 2
            out.append(LevelConfig(ts, ts // 2, search, self.use_l2_at_coarse_levels))
        return out

    # ------------------------------------------------------------
    # (de)serialisation
    # ------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def replace(self, **changes) -> "MergeConfig":
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]]) -> "MergeConfig":
        values = dict(values or {})
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        for key, value in values.items():
            if isinstance(value, float) and math.isnan(value):
                raise ConfigError(f"{key} must not be NaN")
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}", original_error=e) from e


def load_config(config_path: Union[str, Path]) -> MergeConfig:
    """
    Load a MergeConfig from a YAML file.

    The file holds a flat mapping of MergeConfig fields, optionally nested
    under a top-level ``burst_merge`` key. An empty file gives the defaults.
    """
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read configuration {config_path}: {e}", original_error=e) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {config_path}: {e}", original_error=e) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: expected a mapping at top level")
    if "burst_merge" in data:
        data = data["burst_merge"] or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path}: 'burst_merge' must be a mapping")
    return MergeConfig.from_dict(data)
