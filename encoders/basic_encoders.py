"""
Parameter-free encodings: Identity, Frequency and SphericalHarmonics.

    Identity            x -> scale * x + offset
    Frequency           x_j -> (sin(2^k pi x_j), cos(2^k pi x_j)) for k < n_frequencies
    SphericalHarmonics  unit direction in [0, 1]^3 -> degree^2 real SH basis values

Output ordering follows tiny-cuda-nn so trained weights keep their meaning:
Frequency interleaves sin/cos per octave, grouped by input dimension.
"""

import math

import torch

from .encoding import Encoding


class IdentityEncoding(Encoding):
    otype = "Identity"

    def __init__(self, n_dims_to_encode, config=None, alignment=1):
        super().__init__(n_dims_to_encode, config, alignment)
        self.scale = float(self.config.get("scale", 1.0))
        self.offset = float(self.config.get("offset", 0.0))

    def output_width(self):
        return self.n_dims_to_encode

    def evaluate(self, x, weights, activations=None):
        return x * self.scale + self.offset


class FrequencyEncoding(Encoding):
    otype = "Frequency"

    def __init__(self, n_dims_to_encode, config=None, alignment=1):
        super().__init__(n_dims_to_encode, config, alignment)
        self.n_frequencies = int(self.config.get("n_frequencies", 12))

    def output_width(self):
        return self.n_dims_to_encode * self.n_frequencies * 2

    def evaluate(self, x, weights, activations=None):
        freqs = 2.0 ** torch.arange(self.n_frequencies, device=x.device, dtype=x.dtype)
        scaled = x[..., None] * freqs * math.pi                       # [N, D, F]
        enc = torch.stack([torch.sin(scaled), torch.cos(scaled)], dim=-1)  # [N, D, F, 2]
        return enc.reshape(x.shape[0], -1)


class SphericalHarmonicsEncoding(Encoding):
    otype = "SphericalHarmonics"
    max_degree = 4

    def __init__(self, n_dims_to_encode, config=None, alignment=1):
        super().__init__(n_dims_to_encode, config, alignment)
        if n_dims_to_encode != 3:
            raise ValueError(f"SphericalHarmonics encodes 3D directions, got n_dims_to_encode={n_dims_to_encode}")
        self.degree = int(self.config.get("degree", 4))
        if not 1 <= self.degree <= self.max_degree:
            raise ValueError(f"SphericalHarmonics degree must be in [1, {self.max_degree}], got {self.degree}")

    def output_width(self):
        return self.degree ** 2

    def evaluate(self, x, weights, activations=None):
        # directions arrive in [0, 1]^3
        d = x * 2.0 - 1.0
        dx, dy, dz = d[:, 0], d[:, 1], d[:, 2]
        out = [torch.full_like(dx, 0.28209479177387814)]
        if self.degree > 1:
            out += [
                -0.48860251190291987 * dy,
                0.48860251190291987 * dz,
                -0.48860251190291987 * dx,
            ]
        if self.degree > 2:
            xy, yz, xz = dx * dy, dy * dz, dx * dz
            x2, y2, z2 = dx * dx, dy * dy, dz * dz
            out += [
                1.0925484305920792 * xy,
                -1.0925484305920792 * yz,
                0.94617469575755997 * z2 - 0.31539156525251999,
                -1.0925484305920792 * xz,
                0.54627421529603959 * x2 - 0.54627421529603959 * y2,
            ]
        if self.degree > 3:
            out += [
                0.59004358992664352 * dy * (-3.0 * x2 + y2),
                2.8906114426405538 * xy * dz,
                0.45704579946446572 * dy * (1.0 - 5.0 * z2),
                0.3731763325901154 * dz * (5.0 * z2 - 3.0),
                0.45704579946446572 * dx * (1.0 - 5.0 * z2),
                1.4453057213202769 * dz * (x2 - y2),
                0.59004358992664352 * dx * (-x2 + 3.0 * y2),
            ]
        return torch.stack(out, dim=-1)
