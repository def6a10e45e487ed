"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest
import torch

# Add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from scene import NerfNetwork, ParameterBlock  # noqa: E402
from utils.matrix import CM, DeviceMatrix, ExecutionQueue  # noqa: E402


def small_config():
    """A NerfNetwork description small enough for CPU tests, with one extra dim."""
    return {
        "n_pos_dims": 3,
        "n_dir_dims": 3,
        "n_extra_dims": 1,
        "dir_offset": 4,
        "pos_encoding": {
            "otype": "HashGrid",
            "n_levels": 2,
            "n_features_per_level": 2,
            "log2_hashmap_size": 8,
            "base_resolution": 4,
            "per_level_scale": 2.0,
        },
        "dir_encoding": {
            "otype": "Composite",
            "nested": [
                {"n_dims_to_encode": 3, "otype": "SphericalHarmonics", "degree": 2},
                {"otype": "Identity"},
            ],
        },
        "density_network": {"otype": "FullyFusedMLP", "activation": "ReLU", "output_activation": "None",
                            "n_neurons": 16, "n_hidden_layers": 1},
        "uv_network": {"otype": "FullyFusedMLP", "activation": "ReLU", "output_activation": "Sigmoid",
                       "n_neurons": 16, "n_hidden_layers": 1},
        "rgb_network": {"otype": "FullyFusedMLP", "activation": "ReLU", "output_activation": "Sigmoid",
                        "n_neurons": 16, "n_hidden_layers": 1},
    }


def linear_config():
    """Identity encodings and single-layer linear density/uv networks."""
    return {
        "n_pos_dims": 3,
        "n_dir_dims": 3,
        "n_extra_dims": 0,
        "dir_offset": 4,
        "pos_encoding": {"otype": "Identity"},
        "dir_encoding": {"otype": "Identity"},
        "density_network": {"otype": "FullyFusedMLP", "output_activation": "None", "n_hidden_layers": 0},
        "uv_network": {"otype": "FullyFusedMLP", "output_activation": "None", "n_hidden_layers": 0},
        "rgb_network": {"otype": "FullyFusedMLP", "activation": "ReLU", "output_activation": "None",
                        "n_neurons": 16, "n_hidden_layers": 1},
    }


def make_network(config, seed=1337):
    network = NerfNetwork.from_config(config, verbose=False)
    block = ParameterBlock.for_network(network, seed=seed)
    return network, block


def make_input(network, batch_size, layout=CM, seed=0):
    generator = torch.Generator().manual_seed(seed)
    samples = torch.rand(batch_size, network.input_width(), generator=generator)
    return DeviceMatrix.from_samples(samples, layout)


@pytest.fixture
def queue():
    """CPU execution queue."""
    return ExecutionQueue("cpu")


@pytest.fixture
def small_network():
    return make_network(small_config())


@pytest.fixture
def linear_network():
    return make_network(linear_config())
