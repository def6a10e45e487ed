"""
Network base class: a differentiable object with layer introspection.

Hidden activations recorded by ``forward`` are exposed one layer at a time
through ``forward_activations(ctx, layer)`` so tooling can visualise them
without knowing the network's internals.
"""

from typing import List, Tuple

from utils.differentiable import AutogradContext, DifferentiableObject
from utils.general_utils import equals_case_insensitive, next_multiple
from utils.matrix import CM, DeviceMatrix

FULLY_FUSED_ALIGNMENT = 16
CUTLASS_ALIGNMENT = 8


def minimum_alignment(network_config: dict) -> int:
    """Input/output width alignment the network type requires."""
    otype = network_config.get("otype", "")
    if equals_case_insensitive(otype, "FullyFusedMLP") or equals_case_insensitive(otype, "MegakernelMLP"):
        return FULLY_FUSED_ALIGNMENT
    return CUTLASS_ALIGNMENT


class Network(DifferentiableObject):
    def __init__(self, n_input_dims: int, n_output_dims: int, config: dict):
        super().__init__()
        self.n_input_dims = n_input_dims
        self.n_output_dims = n_output_dims
        self.config = dict(config)
        self.alignment = minimum_alignment(self.config)

    def input_width(self) -> int:
        return self.n_input_dims

    def output_width(self) -> int:
        return self.n_output_dims

    def padded_output_width(self) -> int:
        return next_multiple(self.n_output_dims, self.alignment)

    def required_input_alignment(self) -> int:
        return self.alignment

    def layer_sizes(self) -> List[Tuple[int, int]]:
        return [tuple(shape) for shape in self.param_shapes()]

    def num_forward_activations(self) -> int:
        return 0

    def width(self, layer: int) -> int:
        raise IndexError(f"{type(self).__name__} has no activation layer {layer}")

    def forward_activations(self, ctx: AutogradContext, layer: int) -> DeviceMatrix:
        if not 0 <= layer < len(ctx.activations):
            raise IndexError(f"{type(self).__name__}: activation layer {layer} out of range "
                             f"(have {len(ctx.activations)})")
        return DeviceMatrix(ctx.activations[layer], CM)

    def hyperparams(self) -> dict:
        params = dict(self.config)
        params["n_input_dims"] = self.n_input_dims
        params["n_output_dims"] = self.n_output_dims
        return params
