"""
Packed rgb-input buffer layout.

The rgb network reads one buffer per batch, sliced into

    [ dir encoding (dir_width) | uv latent (uv_width) | alignment padding ]

``dir_width`` is the direction encoding's padded output width and
``uv_width`` the uv network's padded output width. Only the first
``uv_channels`` rows of the uv slice carry the latent; everything from
``padding_offset`` to the end of the buffer must be zero before the rgb
network reads it.
"""

from dataclasses import dataclass

from networks.network import minimum_alignment
from utils.general_utils import next_multiple

UV_CHANNELS = 2


@dataclass(frozen=True)
class RgbInputLayout:
    dir_width: int
    uv_width: int
    width: int
    uv_channels: int = UV_CHANNELS

    @property
    def dir_offset(self) -> int:
        return 0

    @property
    def uv_offset(self) -> int:
        return self.dir_width

    @property
    def padding_offset(self) -> int:
        return self.dir_width + self.uv_channels

    @property
    def padding_width(self) -> int:
        return self.width - self.padding_offset


def plan_rgb_input(dir_padded_width: int, uv_padded_width: int, rgb_alignment: int) -> RgbInputLayout:
    if uv_padded_width < UV_CHANNELS:
        raise ValueError(f"uv network must produce at least {UV_CHANNELS} outputs, got padded width {uv_padded_width}")
    width = next_multiple(dir_padded_width + uv_padded_width, rgb_alignment)
    return RgbInputLayout(dir_width=dir_padded_width, uv_width=uv_padded_width, width=width)


def density_input_alignment(density_network_config: dict) -> int:
    """Alignment of the position encoding output, which feeds both density and uv networks."""
    return minimum_alignment(density_network_config)
