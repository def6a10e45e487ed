"""
Coordinate encodings for the UV-latent NeRF network.

- Identity / Frequency / SphericalHarmonics: parameter-free encodings
- HashGrid / DenseGrid: trainable multi-resolution grids
- Composite: per-dimension-group nesting (direction + extra dims)
- create_encoding: config-driven factory
"""

from .encoding import Encoding
from .basic_encoders import IdentityEncoding, FrequencyEncoding, SphericalHarmonicsEncoding
from .grid_encoder import GridEncoding, HashGridEncoding, DenseGridEncoding
from .composite_encoder import CompositeEncoding
from .factory import create_encoding, ENCODINGS

__all__ = [
    'Encoding',
    'IdentityEncoding',
    'FrequencyEncoding',
    'SphericalHarmonicsEncoding',
    'GridEncoding',
    'HashGridEncoding',
    'DenseGridEncoding',
    'CompositeEncoding',
    'create_encoding',
    'ENCODINGS',
]
