"""
Feed-forward sub-networks (density / uv / rgb heads).
"""

from .network import Network, minimum_alignment
from .mlp import MLP
from .factory import create_network

__all__ = [
    'Network',
    'MLP',
    'create_network',
    'minimum_alignment',
]
