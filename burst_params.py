"""
Fixed binary layouts of the kernel parameter blocks.

Every block is packed little-endian with explicit padding, the same bytes a
uniform buffer would hold. Kernels only see the packed bytes and unpack them
with the block they were compiled against, so the byte size and field order
are checked once at start-up (verify_param_layouts) instead of showing up as
garbage values at run time.
"""

import dataclasses
import struct
from dataclasses import dataclass
from typing import ClassVar, Dict, Type

from burst_errors import SetupError


class ParamBlock:
    FORMAT: ClassVar[str] = ""

    @classmethod
    def size(cls) -> int:
        return struct.calcsize(cls.FORMAT)

    @classmethod
    def field_slots(cls) -> int:
        # value slots of the format, pad bytes excluded
        return len(struct.unpack(cls.FORMAT, bytes(cls.size())))

    def pack(self) -> bytes:
        return struct.pack(self.FORMAT, *dataclasses.astuple(self))

    @classmethod
    def unpack(cls, raw: bytes):
        if len(raw) != cls.size():
            raise ValueError(f"{cls.__name__}: expected {cls.size()} bytes, got {len(raw)}")
        return cls(*struct.unpack(cls.FORMAT, raw))

    def replace(self, **changes):
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class LuminanceParams(ParamBlock):
    FORMAT: ClassVar[str] = "<3If"
    width: int
    height: int
    channel: int  # 0=R 1=G 2=B 3=BT.601 luma
    gain: float = 1.0  # exposure normalisation of the output


CHANNEL_R, CHANNEL_G, CHANNEL_B, CHANNEL_LUMA = 0, 1, 2, 3


@dataclass(frozen=True)
class PyramidParams(ParamBlock):
    FORMAT: ClassVar[str] = "<4I"
    src_width: int
    src_height: int
    dst_width: int
    dst_height: int


@dataclass(frozen=True)
class AlignParams(ParamBlock):
    FORMAT: ClassVar[str] = "<11I4x"
    width: int
    height: int
    tile_size: int
    tile_step: int
    search_dist: int
    n_tiles_x: int
    n_tiles_y: int
    use_l2: int
    prev_tile_step: int  # 0 at the coarsest level (no seed field)
    prev_n_tiles_y: int
    tile_row_offset: int


@dataclass(frozen=True)
class WarpParams(ParamBlock):
    FORMAT: ClassVar[str] = "<7I4x4fI12x"
    width: int
    height: int
    n_tiles_x: int
    n_tiles_y: int
    tile_size: int
    tile_step: int
    use_bilinear: int
    center_x: float
    center_y: float
    ca_r_coeff: float
    ca_b_coeff: float
    enable_ca_correction: int


@dataclass(frozen=True)
class CAEstimateParams(ParamBlock):
    FORMAT: ClassVar[str] = "<2I4f2I"
    width: int
    height: int
    center_x: float
    center_y: float
    edge_threshold: float
    radial_alignment: float
    num_radius_bins: int
    search_radius: int  # steps per half pixel


@dataclass(frozen=True)
class MergeParams(ParamBlock):
    FORMAT: ClassVar[str] = "<2I2f3I2f2iIf4x"
    width: int
    height: int
    noise_sd: float
    robustness: float
    n_tiles_x: int
    n_tiles_y: int
    frame_count: int
    read_noise: float
    max_motion_norm: float
    tile_offset_x: int
    tile_offset_y: int
    tile_row_offset: int
    exposure_factor: float


@dataclass(frozen=True)
class SpatialDenoiseParams(ParamBlock):
    FORMAT: ClassVar[str] = "<2I2f2If2iI"
    width: int
    height: int
    noise_sd: float
    strength: float
    n_tiles_x: int
    n_tiles_y: int
    high_freq_boost: float
    tile_offset_x: int
    tile_offset_y: int
    frame_count: int


@dataclass(frozen=True)
class ChromaDenoiseParams(ParamBlock):
    FORMAT: ClassVar[str] = "<2I2f"
    width: int
    height: int
    strength: float
    edge_threshold: float


@dataclass(frozen=True)
class GuidedFilterParams(ParamBlock):
    FORMAT: ClassVar[str] = "<3If"
    width: int
    height: int
    radius: int
    epsilon: float


@dataclass(frozen=True)
class LocalLuminanceParams(ParamBlock):
    FORMAT: ClassVar[str] = "<5I12x"
    width: int
    height: int
    block_size: int
    lum_width: int
    lum_height: int


@dataclass(frozen=True)
class TonemapParams(ParamBlock):
    FORMAT: ClassVar[str] = "<2I3f3I"
    width: int
    height: int
    shadow_boost: float     # already scaled by scene brightness
    local_contrast: float
    highlight_compress: float
    block_size: int
    lum_width: int
    lum_height: int


# byte sizes the kernels are written against
PARAM_BLOCK_SIZES: Dict[Type[ParamBlock], int] = {
    LuminanceParams: 16,
    PyramidParams: 16,
    AlignParams: 48,
    WarpParams: 64,
    CAEstimateParams: 32,
    MergeParams: 56,
    SpatialDenoiseParams: 40,
    ChromaDenoiseParams: 16,
    GuidedFilterParams: 16,
    LocalLuminanceParams: 32,
    TonemapParams: 32,
}


def check_layout(block: Type[ParamBlock], expected_size: int) -> None:
    size = block.size()
    if size != expected_size:
        raise SetupError(f"{block.__name__} packs to {size} bytes, kernel expects {expected_size}")
    n_fields = len(dataclasses.fields(block))
    if block.field_slots() != n_fields:
        raise SetupError(
            f"{block.__name__} declares {n_fields} fields but its layout has {block.field_slots()} slots")


def verify_param_layouts(table: Dict[Type[ParamBlock], int] = PARAM_BLOCK_SIZES) -> None:
    for block, expected in table.items():
        check_layout(block, expected)
