"""
Bias-free multi-layer perceptron with the weight layout of tiny-cuda-nn.

Weight matrices, in order:
    (n_neurons, n_input_dims)
    (n_neurons, n_neurons)           x (n_hidden_layers - 1)
    (padded_output_width, n_neurons)
With ``n_hidden_layers == 0`` the network is a single
``(padded_output_width, n_input_dims)`` linear map.

The last matrix has a row per padded output, so the padded rows carry
(learnable, usually ignored) values rather than undefined memory.
"""

import math

import torch
import torch.nn.functional as F

from utils.general_utils import equals_case_insensitive
from .network import Network

ACTIVATIONS = {
    "None": lambda x: x,
    "ReLU": F.relu,
    "LeakyReLU": lambda x: F.leaky_relu(x, 0.01),
    "Exponential": torch.exp,
    "Sine": torch.sin,
    "Sigmoid": torch.sigmoid,
    "Softplus": F.softplus,
    "Tanh": torch.tanh,
}


def get_activation(name):
    for key, fn in ACTIVATIONS.items():
        if equals_case_insensitive(key, name):
            return fn
    raise ValueError(
        f"Unknown activation: {name}. "
        f"Expected one of {list(ACTIVATIONS)}"
    )


class MLP(Network):
    def __init__(self, n_input_dims, n_output_dims, config):
        super().__init__(n_input_dims, n_output_dims, config)
        self.n_neurons = int(self.config.get("n_neurons", 64))
        self.n_hidden_layers = int(self.config.get("n_hidden_layers", 2))
        self.activation_name = self.config.get("activation", "ReLU")
        self.output_activation_name = self.config.get("output_activation", "None")
        self.activation = get_activation(self.activation_name)
        self.output_activation = get_activation(self.output_activation_name)

    def param_shapes(self):
        padded_out = self.padded_output_width()
        if self.n_hidden_layers == 0:
            return [(padded_out, self.n_input_dims)]
        shapes = [(self.n_neurons, self.n_input_dims)]
        shapes += [(self.n_neurons, self.n_neurons)] * (self.n_hidden_layers - 1)
        shapes.append((padded_out, self.n_neurons))
        return shapes

    def init_weights(self, generator, views, scale):
        # xavier uniform
        for view in views:
            fan_out, fan_in = view.shape
            bound = scale * math.sqrt(6.0 / (fan_in + fan_out))
            values = (torch.rand(view.shape, generator=generator, dtype=torch.float32) * 2.0 - 1.0) * bound
            view.copy_(values.to(view.device, view.dtype))

    def num_forward_activations(self):
        return self.n_hidden_layers

    def width(self, layer):
        if not 0 <= layer < self.n_hidden_layers:
            raise IndexError(f"MLP has {self.n_hidden_layers} hidden layers, asked for layer {layer}")
        return self.n_neurons

    def evaluate(self, x, weights, activations=None):
        h = x
        for W in weights[:-1]:
            h = self.activation(h @ W.t())
            if activations is not None:
                activations.append(h)
        return self.output_activation(h @ weights[-1].t())

    def hyperparams(self):
        params = super().hyperparams()
        params.update({
            "n_neurons": self.n_neurons,
            "n_hidden_layers": self.n_hidden_layers,
            "activation": self.activation_name,
            "output_activation": self.output_activation_name,
        })
        return params
