"""
Device matrices with an explicit memory layout, and the execution queue
every operation is enqueued on.

A ``DeviceMatrix`` is an ``m x n`` matrix (``m`` features, ``n`` batch
samples) stored in a torch tensor. The declared layout decides how the
storage is laid out:

    CM (column-major, alias AoS): storage [n, m], each sample contiguous
    RM (row-major,    alias SoA): storage [m, n], each feature contiguous

``slice_rows`` never copies: it returns a matrix that shares storage with
its parent, so several producers can write disjoint row ranges of one
packed buffer and a consumer can read the whole buffer afterwards.
"""

import contextlib
from enum import Enum
from typing import Optional, Union

import torch


class LayoutError(RuntimeError):
    """A buffer's memory ordering does not allow the requested zero-copy slicing."""


class MatrixLayout(Enum):
    CM = "cm"
    RM = "rm"


CM = MatrixLayout.CM
RM = MatrixLayout.RM
AoS = CM
SoA = RM


def parse_layout(value: Union[str, MatrixLayout]) -> MatrixLayout:
    if isinstance(value, MatrixLayout):
        return value
    key = str(value).lower()
    if key in ("cm", "aos", "column_major"):
        return CM
    if key in ("rm", "soa", "row_major"):
        return RM
    raise ValueError(
        f"Unknown matrix layout: {value}. "
        f"Expected one of ['AoS', 'SoA', 'CM', 'RM']"
    )


class ExecutionQueue:
    """
    Ordered execution queue: a torch device plus an optional CUDA stream.

    All work of one operation is issued inside ``scope()``. Work issued on
    the same queue runs in submission order; results must not be read
    before ``synchronize()`` on CUDA devices.
    """

    def __init__(self, device: Union[str, torch.device] = "cpu", stream: Optional["torch.cuda.Stream"] = None):
        self.device = torch.device(device)
        if stream is not None and self.device.type != "cuda":
            raise ValueError(f"A CUDA stream requires a CUDA device, got {self.device}")
        self.stream = stream

    @classmethod
    def for_device(cls, device: Union[str, torch.device], new_stream: bool = False) -> "ExecutionQueue":
        device = torch.device(device)
        stream = None
        if new_stream and device.type == "cuda":
            stream = torch.cuda.Stream(device=device)
        return cls(device, stream)

    def scope(self):
        if self.stream is None:
            return contextlib.nullcontext()
        return torch.cuda.stream(self.stream)

    def synchronize(self):
        if self.stream is not None:
            self.stream.synchronize()
        elif self.device.type == "cuda":
            torch.cuda.synchronize(self.device)

    def __repr__(self):
        return f"ExecutionQueue(device={self.device}, stream={self.stream})"


class DeviceMatrix:
    def __init__(self, storage: torch.Tensor, layout: MatrixLayout = CM):
        if storage.dim() != 2:
            raise ValueError(f"DeviceMatrix storage must be 2D, got shape {tuple(storage.shape)}")
        self.storage = storage
        self.layout = parse_layout(layout)

    # ---------- allocation ----------
    @classmethod
    def empty(cls, m: int, n: int, queue: ExecutionQueue, layout: MatrixLayout = CM,
              dtype: torch.dtype = torch.float32) -> "DeviceMatrix":
        layout = parse_layout(layout)
        shape = (n, m) if layout == CM else (m, n)
        with queue.scope():
            storage = torch.empty(shape, dtype=dtype, device=queue.device)
        return cls(storage, layout)

    @classmethod
    def zeros(cls, m: int, n: int, queue: ExecutionQueue, layout: MatrixLayout = CM,
              dtype: torch.dtype = torch.float32) -> "DeviceMatrix":
        matrix = cls.empty(m, n, queue, layout, dtype)
        with queue.scope():
            matrix.storage.zero_()
        return matrix

    @classmethod
    def from_samples(cls, samples: torch.Tensor, layout: MatrixLayout = CM) -> "DeviceMatrix":
        """Copy an ``[n, m]`` tensor (one row per sample) into a matrix of the given layout."""
        layout = parse_layout(layout)
        if layout == CM:
            return cls(samples.clone().contiguous(), CM)
        return cls(samples.t().contiguous(), RM)

    # ---------- shape ----------
    @property
    def m(self) -> int:
        return self.storage.shape[1] if self.layout == CM else self.storage.shape[0]

    @property
    def n(self) -> int:
        return self.storage.shape[0] if self.layout == CM else self.storage.shape[1]

    @property
    def dtype(self) -> torch.dtype:
        return self.storage.dtype

    @property
    def device(self) -> torch.device:
        return self.storage.device

    def n_elements(self) -> int:
        return self.m * self.n

    def n_bytes(self) -> int:
        return self.n_elements() * self.storage.element_size()

    # ---------- views ----------
    def samples(self) -> torch.Tensor:
        """``[n, m]`` view: one row per sample."""
        return self.storage if self.layout == CM else self.storage.t()

    def rows(self) -> torch.Tensor:
        """``[m, n]`` view: one row per feature."""
        return self.storage.t() if self.layout == CM else self.storage

    def row(self, index: int) -> torch.Tensor:
        return self.rows()[index]

    def slice_rows(self, offset: int, count: int) -> "DeviceMatrix":
        if offset < 0 or count < 0 or offset + count > self.m:
            raise ValueError(f"Row slice [{offset}, {offset + count}) out of range for a matrix with {self.m} rows")
        if self.layout == CM:
            return DeviceMatrix(self.storage[:, offset:offset + count], CM)
        return DeviceMatrix(self.storage[offset:offset + count], RM)

    def memset_zero(self):
        self.storage.zero_()

    def __repr__(self):
        return f"DeviceMatrix(m={self.m}, n={self.n}, layout={self.layout.name}, dtype={self.dtype})"
