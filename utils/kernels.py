"""
Elementwise kernels moving data between packed buffers and the network output.

Every kernel reads and writes through the ``rows()`` / ``samples()`` views of
its ``DeviceMatrix`` arguments, so the element strides always follow each
matrix's declared layout. Callers issue them inside the queue scope of the
operation they belong to.
"""

from typing import Sequence, Union

import torch

from utils.matrix import DeviceMatrix

DENSITY_CHANNEL = 3
UV_OUTPUT_CHANNEL = 4
RGB_CHANNELS = 3


def extract_density(density: DeviceMatrix, rgbd: DeviceMatrix, channel: int = DENSITY_CHANNEL):
    """rgbd[channel, i] = density[0, i]"""
    rgbd.row(channel).copy_(density.row(0))


def extract_uv(uv: DeviceMatrix, output: DeviceMatrix, channel: int = UV_OUTPUT_CHANNEL):
    """output[channel + k, i] = uv[k, i] for the two uv channels"""
    output.rows()[channel:channel + 2].copy_(uv.rows()[:2])


def extract_rgb(rgbd: DeviceMatrix, rgb: DeviceMatrix):
    """rgb[c, i] = rgbd[c, i] for c < 3; other rows of ``rgb`` are untouched."""
    rgb.rows()[:RGB_CHANNELS].copy_(rgbd.rows()[:RGB_CHANNELS])


def add_density_gradient(rgbd: DeviceMatrix, density: DeviceMatrix, channel: int = DENSITY_CHANNEL):
    """density[0, i] += rgbd[channel, i]"""
    density.row(0).add_(rgbd.row(channel).to(density.dtype))


def add_gradient(input: DeviceMatrix, output: DeviceMatrix):
    output.samples().add_(input.samples().to(output.dtype))


def scale_gradient(output: DeviceMatrix, scale: float):
    output.storage.mul_(scale)


def repeat_vec(vec: Union[Sequence[float], torch.Tensor], output: DeviceMatrix):
    """Broadcast ``vec`` into the leading rows of every sample of ``output``."""
    vec = torch.as_tensor(vec, dtype=output.dtype, device=output.device).reshape(-1)
    output.rows()[:vec.numel()].copy_(vec[:, None].expand(-1, output.n))


def generate_uv_grid(output: DeviceMatrix, texture_size: int):
    """
    Sample ``i`` of ``output`` gets ``(x / size, y / size)`` with
    ``i = y * size + x``. Rows 0 and 1 hold u and v.
    """
    index = torch.arange(output.n, device=output.device)
    y = torch.div(index, texture_size, rounding_mode="floor")
    x = index - y * texture_size
    size = torch.tensor(texture_size, dtype=output.dtype, device=output.device)
    output.row(0).copy_(x.to(output.dtype) / size)
    output.row(1).copy_(y.to(output.dtype) / size)


def fill_rows_zero(matrix: DeviceMatrix, offset: int):
    """Zero every row from ``offset`` to the end of ``matrix``."""
    if offset < matrix.m:
        matrix.slice_rows(offset, matrix.m - offset).memset_zero()


def copy_rows(src: DeviceMatrix, dst: DeviceMatrix):
    dst.samples().copy_(src.samples())
