"""
Multi-resolution grid encodings (HashGrid / DenseGrid).

Each level l stores ``n_features_per_level`` features on a grid of
resolution ``floor(base_resolution * per_level_scale ** l)``. A level is
indexed densely while its vertex count fits the table; otherwise vertices
are hashed into a table of ``2 ** log2_hashmap_size`` entries with the
spatial hash of Teschner et al. Features of the 2^D corners surrounding a
sample are blended with d-linear weights.

Output is level-major: ``[level0 features, level1 features, ...]``.
Trainable: one ``(table_size, n_features_per_level)`` tensor per level.
"""

import math

import torch

from utils.matrix import RM
from .encoding import Encoding

PRIMES = (1, 2654435761, 805459861, 3674653429, 2097192037, 1434869437, 2165219737)


class GridEncoding(Encoding):
    otype = "Grid"
    default_layout = RM
    dense = False

    def __init__(self, n_dims_to_encode, config=None, alignment=1):
        super().__init__(n_dims_to_encode, config, alignment)
        if n_dims_to_encode > len(PRIMES):
            raise ValueError(f"{type(self).otype} supports at most {len(PRIMES)} dimensions, got {n_dims_to_encode}")
        self.n_levels = int(self.config.get("n_levels", 16))
        self.n_features_per_level = int(self.config.get("n_features_per_level", 2))
        self.log2_hashmap_size = int(self.config.get("log2_hashmap_size", 19))
        self.base_resolution = int(self.config.get("base_resolution", 16))
        self.per_level_scale = float(self.config.get("per_level_scale", 2.0))

        self.resolutions = []
        self.table_sizes = []
        max_table = 1 << self.log2_hashmap_size
        for level in range(self.n_levels):
            res = int(math.floor(self.base_resolution * self.per_level_scale ** level))
            dense_size = (res + 1) ** n_dims_to_encode
            self.resolutions.append(res)
            self.table_sizes.append(dense_size if self.dense else min(dense_size, max_table))

    def output_width(self):
        return self.n_levels * self.n_features_per_level

    def param_shapes(self):
        return [(size, self.n_features_per_level) for size in self.table_sizes]

    def init_weights(self, generator, views, scale):
        for view in views:
            values = torch.rand(view.shape, generator=generator, dtype=torch.float32) * 2e-4 - 1e-4
            view.copy_(values.to(view.device, view.dtype))

    def _index(self, coords, level):
        res = self.resolutions[level]
        size = self.table_sizes[level]
        if (res + 1) ** self.n_dims_to_encode <= size:
            coords = coords.clamp(0, res)
            index = torch.zeros_like(coords[:, 0])
            stride = 1
            for d in range(self.n_dims_to_encode):
                index = index + coords[:, d] * stride
                stride *= res + 1
            return index
        index = torch.zeros_like(coords[:, 0])
        for d in range(self.n_dims_to_encode):
            index = index ^ (coords[:, d] * PRIMES[d])
        return index % size

    def evaluate(self, x, weights, activations=None):
        n_dims = self.n_dims_to_encode
        corners = torch.tensor(
            [[(c >> d) & 1 for d in range(n_dims)] for c in range(1 << n_dims)],
            dtype=torch.int64, device=x.device,
        )
        features = []
        for level, table in enumerate(weights):
            pos = x * self.resolutions[level]
            base = torch.floor(pos)
            frac = pos - base
            base = base.long()
            level_out = 0
            for corner in corners:
                w = torch.prod(torch.where(corner.bool(), frac, 1.0 - frac), dim=-1, keepdim=True)
                level_out = level_out + w * table[self._index(base + corner, level)]
            features.append(level_out)
        return torch.cat(features, dim=-1)


class HashGridEncoding(GridEncoding):
    otype = "HashGrid"


class DenseGridEncoding(GridEncoding):
    otype = "DenseGrid"
    dense = True
