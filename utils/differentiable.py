"""
Base contract shared by every encoding and network.

A ``DifferentiableObject`` owns no storage for its parameters: the owner of
the parameter arena hands it three flat views (``set_params``) and the
object reshapes them into its weight tensors on every call. The forward
pass records a torch autograd graph in an opaque ``Context``; the backward
pass replays it with ``torch.autograd.grad`` and writes the results into
the caller's input-gradient matrix and the object's gradient view.
"""

import math
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import torch

from utils.matrix import CM, DeviceMatrix, ExecutionQueue, MatrixLayout


class GradientMode(Enum):
    IGNORE = "ignore"
    OVERWRITE = "overwrite"
    ACCUMULATE = "accumulate"


class Context:
    """State captured by a forward call and consumed by the matching backward call."""


class AutogradContext(Context):
    def __init__(self, input: torch.Tensor, weights: List[torch.Tensor], output: torch.Tensor,
                 activations: List[torch.Tensor]):
        self.input = input
        self.weights = weights
        self.output = output
        self.activations = activations


class DifferentiableObject(ABC):
    # value written into output rows past output_width()
    padding_value = 0.0

    def __init__(self):
        self._params = None
        self._inference_params = None
        self._gradients = None

    # ---------- shape contract ----------
    @abstractmethod
    def input_width(self) -> int:
        ...

    @abstractmethod
    def output_width(self) -> int:
        ...

    @abstractmethod
    def padded_output_width(self) -> int:
        ...

    def required_input_alignment(self) -> int:
        return 1

    def output_layout(self) -> MatrixLayout:
        return CM

    @abstractmethod
    def hyperparams(self) -> dict:
        ...

    # ---------- parameters ----------
    def param_shapes(self) -> List[Tuple[int, ...]]:
        return []

    def n_params(self) -> int:
        return sum(math.prod(shape) for shape in self.param_shapes())

    def split_params(self, flat: torch.Tensor) -> List[torch.Tensor]:
        views, offset = [], 0
        for shape in self.param_shapes():
            size = math.prod(shape)
            views.append(flat[offset:offset + size].view(shape))
            offset += size
        return views

    def set_params(self, params: torch.Tensor, inference_params: torch.Tensor, gradients: torch.Tensor):
        expected = self.n_params()
        for name, flat in (("params", params), ("inference_params", inference_params), ("gradients", gradients)):
            if flat is not None and flat.numel() != expected:
                raise ValueError(f"{type(self).__name__}: {name} holds {flat.numel()} values, expected {expected}")
        self._params = params
        self._inference_params = inference_params
        self._gradients = gradients

    def initialize_params(self, generator: torch.Generator, params_full_precision: torch.Tensor, scale: float = 1.0):
        if self.n_params() == 0:
            return
        self.init_weights(generator, self.split_params(params_full_precision[:self.n_params()]), scale)

    def init_weights(self, generator: torch.Generator, views: Sequence[torch.Tensor], scale: float):
        for view in views:
            view.zero_()

    def weights(self, use_inference_params: bool) -> List[torch.Tensor]:
        if self.n_params() == 0:
            return []
        flat = self._inference_params if use_inference_params else self._params
        if flat is None:
            raise RuntimeError(f"{type(self).__name__}: set_params() must be called before evaluation")
        return self.split_params(flat)

    def leaf_weights(self, use_inference_params: bool, dtype: torch.dtype) -> List[torch.Tensor]:
        return [w.detach().to(dtype).requires_grad_(True) for w in self.weights(use_inference_params)]

    # ---------- evaluation ----------
    @abstractmethod
    def evaluate(self, x: torch.Tensor, weights: Sequence[torch.Tensor],
                 activations: Optional[List[torch.Tensor]] = None) -> torch.Tensor:
        """Map ``[n, input_width]`` to ``[n, k]`` with ``output_width <= k <= padded_output_width``."""

    def write_output(self, y: torch.Tensor, output: DeviceMatrix):
        out = output.samples()
        width = y.shape[1]
        out[:, :width].copy_(y)
        if out.shape[1] > width:
            out[:, width:].fill_(self.padding_value)

    def inference_mixed_precision(self, queue: ExecutionQueue, input: DeviceMatrix, output: DeviceMatrix,
                                  use_inference_params: bool = True):
        with queue.scope(), torch.no_grad():
            x = input.samples()
            weights = [w.to(x.dtype) for w in self.weights(use_inference_params)]
            self.write_output(self.evaluate(x, weights), output)

    def forward(self, queue: ExecutionQueue, input: DeviceMatrix, output: Optional[DeviceMatrix] = None,
                use_inference_params: bool = False, prepare_input_gradients: bool = False) -> Context:
        # input gradients are always available; prepare_input_gradients is accepted for interface parity
        with queue.scope(), torch.enable_grad():
            x = input.samples().detach().requires_grad_(True)
            weights = self.leaf_weights(use_inference_params, x.dtype)
            activations = []
            y = self.evaluate(x, weights, activations)
            if output is not None:
                with torch.no_grad():
                    self.write_output(y.detach(), output)
        return AutogradContext(x, weights, y, [a.detach() for a in activations])

    def backward(self, queue: ExecutionQueue, ctx: Context, input: DeviceMatrix, output: DeviceMatrix,
                 dL_doutput: DeviceMatrix, dL_dinput: Optional[DeviceMatrix] = None,
                 use_inference_params: bool = False,
                 param_gradients_mode: GradientMode = GradientMode.OVERWRITE):
        if not isinstance(ctx, AutogradContext):
            raise TypeError(f"{type(self).__name__}.backward expects the context returned by its own forward()")

        want_params = self.n_params() > 0 and param_gradients_mode != GradientMode.IGNORE
        if want_params and self._gradients is None:
            raise RuntimeError(f"{type(self).__name__}: set_params() must be called before computing gradients")

        targets = []
        if dL_dinput is not None:
            targets.append(ctx.input)
        if want_params:
            targets.extend(ctx.weights)
        if not targets:
            return

        with queue.scope():
            if ctx.output.requires_grad:
                grad_output = dL_doutput.samples()[:, :ctx.output.shape[1]].to(ctx.output.dtype)
                grads = list(torch.autograd.grad(ctx.output, targets, grad_outputs=grad_output,
                                                 retain_graph=True, allow_unused=True))
            else:
                grads = [None] * len(targets)

            if dL_dinput is not None:
                g = grads.pop(0)
                dst = dL_dinput.samples()
                if g is None:
                    dst.zero_()
                else:
                    dst.copy_(g)

            if want_params:
                for view, g in zip(self.split_params(self._gradients), grads):
                    if param_gradients_mode == GradientMode.ACCUMULATE:
                        if g is not None:
                            view.add_(g.to(view.dtype))
                    elif g is None:
                        view.zero_()
                    else:
                        view.copy_(g)
