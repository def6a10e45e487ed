"""
tiny-cuda-nn backed network, selected with ``"backend": "tcnn"``.

Parameters live in the caller's arena and are swapped into the tcnn module
with ``torch.func.functional_call``. tcnn does not expose hidden
activations to Python, so this network reports none.
"""

from torch.func import functional_call

from .network import Network


class TcnnNetwork(Network):
    def __init__(self, n_input_dims, n_output_dims, config):
        super().__init__(n_input_dims, n_output_dims, config)
        import tinycudann as tcnn

        tcnn_config = {k: v for k, v in self.config.items() if k not in ("backend", "n_input_dims", "n_output_dims")}
        self.module = tcnn.Network(n_input_dims=n_input_dims, n_output_dims=n_output_dims,
                                   network_config=tcnn_config, seed=int(self.config.get("seed", 1337)))
        self._n_params = self.module.params.numel()

    def param_shapes(self):
        return [(self._n_params,)]

    def layer_sizes(self):
        n_neurons = int(self.config.get("n_neurons", 64))
        n_hidden = int(self.config.get("n_hidden_layers", 2))
        if n_hidden == 0:
            return [(self.padded_output_width(), self.n_input_dims)]
        return ([(n_neurons, self.n_input_dims)] + [(n_neurons, n_neurons)] * (n_hidden - 1)
                + [(self.padded_output_width(), n_neurons)])

    def init_weights(self, generator, views, scale):
        for view in views:
            view.copy_(self.module.params.detach().reshape(view.shape).to(view.device, view.dtype) * scale)

    def evaluate(self, x, weights, activations=None):
        return functional_call(self.module, {"params": weights[0]}, (x,)).to(x.dtype)
