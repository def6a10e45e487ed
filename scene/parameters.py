"""
Parameter arena shared by the five sub-modules.

One flat buffer (plus an inference-precision shadow and a gradient buffer)
is cut into contiguous ranges in a fixed order. The range table is computed
once; loading, initialisation, checkpointing and introspection all walk the
same table, and every walk re-checks that each sub-module still reports the
size its range was cut for.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import torch

from utils.general_utils import make_generator

PARAMETER_ORDER = ("density_network", "uv_network", "rgb_network", "pos_encoding", "dir_encoding")


@dataclass(frozen=True)
class ParameterRange:
    name: str
    start: int
    stop: int

    @property
    def size(self) -> int:
        return self.stop - self.start

    def view(self, flat: Optional[torch.Tensor]) -> Optional[torch.Tensor]:
        if flat is None:
            return None
        return flat[self.start:self.stop]


class ParameterPartition:
    def __init__(self, modules: Dict[str, object], order: Tuple[str, ...] = PARAMETER_ORDER):
        missing = [name for name in order if name not in modules]
        if missing:
            raise ValueError(f"Parameter partition is missing sub-modules: {missing}")
        self.modules = modules
        self.ranges: List[ParameterRange] = []
        offset = 0
        for name in order:
            size = modules[name].n_params()
            self.ranges.append(ParameterRange(name, offset, offset + size))
            offset += size
        self.n_params = offset

    def __iter__(self):
        return iter(self.ranges)

    def __getitem__(self, name: str) -> ParameterRange:
        for r in self.ranges:
            if r.name == name:
                return r
        raise KeyError(name)

    def boundaries(self) -> List[Tuple[str, int, int]]:
        return [(r.name, r.start, r.stop) for r in self.ranges]

    def validate(self):
        for r in self.ranges:
            actual = self.modules[r.name].n_params()
            if actual != r.size:
                raise RuntimeError(
                    f"Parameter partition drifted: {r.name} reports {actual} params "
                    f"but its range [{r.start}, {r.stop}) holds {r.size}"
                )

    def set_params(self, params: torch.Tensor, inference_params: torch.Tensor, gradients: torch.Tensor):
        self.validate()
        for flat in (params, inference_params, gradients):
            if flat is not None and flat.numel() < self.n_params:
                raise ValueError(f"Parameter buffer holds {flat.numel()} values, expected at least {self.n_params}")
        for r in self.ranges:
            self.modules[r.name].set_params(r.view(params), r.view(inference_params), r.view(gradients))

    def initialize_params(self, generator: torch.Generator, params_full_precision: torch.Tensor, scale: float = 1.0):
        self.validate()
        if params_full_precision.numel() < self.n_params:
            raise ValueError(
                f"Initialisation buffer holds {params_full_precision.numel()} values, expected at least {self.n_params}"
            )
        for r in self.ranges:
            self.modules[r.name].initialize_params(generator, r.view(params_full_precision), scale)


class ParameterBlock:
    """
    Owned storage for one network's parameters.

    ``params_full_precision`` is the float32 master copy the initialiser
    writes; ``params`` and ``inference_params`` hold the network precision
    copies the sub-modules read; ``gradients`` receives backward results.
    """

    def __init__(self, n_params: int, device="cpu", dtype: torch.dtype = torch.float32,
                 inference_dtype: Optional[torch.dtype] = None):
        self.n_params = n_params
        self.dtype = dtype
        self.inference_dtype = inference_dtype or dtype
        self.params_full_precision = torch.zeros(n_params, dtype=torch.float32, device=device)
        self.params = torch.zeros(n_params, dtype=dtype, device=device)
        self.inference_params = torch.zeros(n_params, dtype=self.inference_dtype, device=device)
        self.gradients = torch.zeros(n_params, dtype=dtype, device=device)

    @classmethod
    def for_network(cls, network, device="cpu", dtype=torch.float32, inference_dtype=None,
                    seed: Optional[int] = 1337, scale: float = 1.0) -> "ParameterBlock":
        """Allocate, bind and (unless ``seed`` is None) initialise the parameters of ``network``."""
        block = cls(network.n_params(), device, dtype, inference_dtype)
        if seed is not None:
            block.initialize(network, seed, scale)
        else:
            block.bind(network)
        return block

    def bind(self, network):
        network.set_params(self.params, self.inference_params, self.gradients)

    def initialize(self, network, seed: int = 1337, scale: float = 1.0):
        network.initialize_params(make_generator(seed), self.params_full_precision, scale)
        self.sync()
        self.bind(network)

    def load(self, values: torch.Tensor):
        if values.numel() != self.n_params:
            raise RuntimeError(f"Loaded parameter vector holds {values.numel()} values, expected {self.n_params}")
        self.params_full_precision.copy_(values.reshape(-1))
        self.sync()

    @torch.no_grad()
    def sync(self):
        """Refresh ``params`` and ``inference_params`` from the full precision master copy."""
        self.params.copy_(self.params_full_precision)
        self.inference_params.copy_(self.params_full_precision)

    def zero_grad(self):
        self.gradients.zero_()
