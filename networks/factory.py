"""
Network factory: ``otype`` selects the implementation, ``"backend": "tcnn"``
selects tiny-cuda-nn.
"""

from utils.general_utils import equals_case_insensitive

from .mlp import MLP

NETWORKS = ("FullyFusedMLP", "CutlassMLP", "MegakernelMLP", "MLP")


def create_network(network_config: dict):
    """Build a network from a config holding ``otype``, ``n_input_dims`` and ``n_output_dims``."""
    for key in ("otype", "n_input_dims", "n_output_dims"):
        if key not in network_config:
            raise ValueError(f"Network config is missing '{key}': {network_config}")
    otype = network_config["otype"]
    n_input_dims = int(network_config["n_input_dims"])
    n_output_dims = int(network_config["n_output_dims"])

    if equals_case_insensitive(network_config.get("backend", "torch"), "tcnn"):
        from .tcnn_network import TcnnNetwork
        return TcnnNetwork(n_input_dims, n_output_dims, network_config)

    if not any(equals_case_insensitive(name, otype) for name in NETWORKS):
        raise ValueError(
            f"Unknown network otype: {otype}. "
            f"Expected one of {list(NETWORKS)}"
        )
    return MLP(n_input_dims, n_output_dims, network_config)
