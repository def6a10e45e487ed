"""
Composite encoding: split the input dimensions into consecutive groups and
encode each group with its own nested encoding.

    {"otype": "Composite",
     "nested": [{"n_dims_to_encode": 3, "otype": "SphericalHarmonics", "degree": 4},
                {"otype": "Identity"}]}

A nested entry without ``n_dims_to_encode`` consumes the remaining dims.
"""

import torch

from .encoding import Encoding


class CompositeEncoding(Encoding):
    otype = "Composite"

    def __init__(self, n_dims_to_encode, config=None, alignment=1):
        super().__init__(n_dims_to_encode, config, alignment)
        # deferred: the factory imports this module
        from .factory import create_encoding

        nested = self.config.get("nested")
        if not nested:
            raise ValueError("Composite encoding requires a non-empty 'nested' list")

        self.nested = []
        self.dim_offsets = []
        offset = 0
        for sub_config in nested:
            n_dims = int(sub_config.get("n_dims_to_encode", n_dims_to_encode - offset))
            if n_dims <= 0:
                continue
            self.nested.append(create_encoding(n_dims, sub_config, alignment=1))
            self.dim_offsets.append(offset)
            offset += n_dims
        if offset != n_dims_to_encode:
            raise ValueError(
                f"Composite encoding nests {offset} dims but was created with n_dims_to_encode={n_dims_to_encode}"
            )

    def output_width(self):
        return sum(enc.padded_output_width() for enc in self.nested)

    def param_shapes(self):
        return [shape for enc in self.nested for shape in enc.param_shapes()]

    def _split(self, weights):
        groups, start = [], 0
        for enc in self.nested:
            count = len(enc.param_shapes())
            groups.append(list(weights[start:start + count]))
            start += count
        return groups

    def init_weights(self, generator, views, scale):
        for enc, group in zip(self.nested, self._split(views)):
            enc.init_weights(generator, group, scale)

    def evaluate(self, x, weights, activations=None):
        outputs = []
        for enc, offset, group in zip(self.nested, self.dim_offsets, self._split(weights)):
            outputs.append(enc.evaluate(x[:, offset:offset + enc.input_width()], group))
        return torch.cat(outputs, dim=-1)

    def hyperparams(self):
        return {
            "otype": self.otype,
            "nested": [dict(enc.hyperparams(), n_dims_to_encode=enc.input_width()) for enc in self.nested],
        }
