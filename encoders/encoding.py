"""
Encoding base class.

An encoding maps ``n_dims_to_encode`` raw coordinates to ``output_width``
features, padded up to the alignment requested by the consuming network.
Padding rows are filled with ones so the bias-free networks downstream can
still learn a constant offset.
"""

from typing import Optional

from utils.differentiable import DifferentiableObject
from utils.general_utils import next_multiple
from utils.matrix import CM, MatrixLayout, parse_layout


class Encoding(DifferentiableObject):
    padding_value = 1.0
    default_layout = CM

    def __init__(self, n_dims_to_encode: int, config: Optional[dict] = None, alignment: int = 1):
        super().__init__()
        self.n_dims_to_encode = n_dims_to_encode
        self.config = dict(config or {})
        self._alignment = max(1, int(alignment))
        layout = self.config.get("output_layout")
        self._layout = parse_layout(layout) if layout is not None else self.default_layout

    def input_width(self) -> int:
        return self.n_dims_to_encode

    def padded_output_width(self) -> int:
        return next_multiple(self.output_width(), self._alignment)

    def set_alignment(self, alignment: int):
        self._alignment = max(1, int(alignment))

    def preferred_output_layout(self) -> MatrixLayout:
        return self._layout

    def output_layout(self) -> MatrixLayout:
        return self._layout

    def hyperparams(self) -> dict:
        params = dict(self.config)
        params["otype"] = type(self).otype
        return params
