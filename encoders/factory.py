"""
Encoding factory.

Encodings are selected from a config dict by their case-insensitive
``otype``. ``"backend": "tcnn"`` routes any otype to tiny-cuda-nn instead
of the built-in torch implementations:

    create_encoding(3, {"otype": "HashGrid", "n_levels": 8}, alignment=16)
    create_encoding(3, {"otype": "HashGrid", "backend": "tcnn"}, alignment=16)
"""

from utils.general_utils import equals_case_insensitive

from .basic_encoders import FrequencyEncoding, IdentityEncoding, SphericalHarmonicsEncoding
from .composite_encoder import CompositeEncoding
from .grid_encoder import DenseGridEncoding, HashGridEncoding

ENCODINGS = {
    "Identity": IdentityEncoding,
    "Frequency": FrequencyEncoding,
    "SphericalHarmonics": SphericalHarmonicsEncoding,
    "HashGrid": HashGridEncoding,
    "Grid": HashGridEncoding,
    "DenseGrid": DenseGridEncoding,
    "Composite": CompositeEncoding,
}


def create_encoding(n_dims_to_encode: int, encoding_config: dict, alignment: int = 8):
    """
    Build an encoding of ``n_dims_to_encode`` inputs.

    Args:
        n_dims_to_encode: number of raw input coordinates.
        encoding_config:  dict with at least ``otype``.
        alignment:        padded output width is a multiple of this.
    Returns:
        encoding – an ``Encoding`` instance.
    """
    if "otype" not in encoding_config:
        raise ValueError(f"Encoding config is missing 'otype': {encoding_config}")
    otype = encoding_config["otype"]

    if equals_case_insensitive(encoding_config.get("backend", "torch"), "tcnn"):
        from .tcnn_encoding import TcnnEncoding
        return TcnnEncoding(n_dims_to_encode, encoding_config, alignment)

    for name, cls in ENCODINGS.items():
        if equals_case_insensitive(name, otype):
            return cls(n_dims_to_encode, encoding_config, alignment)
    raise ValueError(
        f"Unknown encoding otype: {otype}. "
        f"Expected one of {list(ENCODINGS)}"
    )
