"""
tiny-cuda-nn backed encoding.

Selected with ``"backend": "tcnn"`` in an encoding config. The tcnn module
keeps its own ``params`` tensor; evaluation swaps in the arena view with
``torch.func.functional_call`` so gradients land in the caller's buffers
like every other encoding.
"""

import torch
from torch.func import functional_call

from .encoding import Encoding


class TcnnEncoding(Encoding):
    otype = "Tcnn"

    def __init__(self, n_dims_to_encode, config=None, alignment=1):
        super().__init__(n_dims_to_encode, config, alignment)
        import tinycudann as tcnn

        tcnn_config = {k: v for k, v in self.config.items() if k not in ("backend", "output_layout")}
        self.module = tcnn.Encoding(n_input_dims=n_dims_to_encode, encoding_config=tcnn_config,
                                    seed=int(self.config.get("seed", 1337)))
        self._n_params = self.module.params.numel()

    def output_width(self):
        return self.module.n_output_dims

    def param_shapes(self):
        return [(self._n_params,)] if self._n_params > 0 else []

    def init_weights(self, generator, views, scale):
        for view in views:
            view.copy_(self.module.params.detach().reshape(view.shape).to(view.device, view.dtype) * scale)

    def evaluate(self, x, weights, activations=None):
        if not weights:
            return self.module(x).to(x.dtype)
        return functional_call(self.module, {"params": weights[0]}, (x,)).to(x.dtype)

    def hyperparams(self):
        params = dict(self.config)
        params.setdefault("otype", self.otype)
        return params
