from .nerf_network import NerfNetwork, ModelConfiguration, ForwardContext, UvGridCache
from .layout import RgbInputLayout, plan_rgb_input
from .parameters import PARAMETER_ORDER, ParameterBlock, ParameterPartition, ParameterRange
from .checkpoint import save_parameters, load_parameters

__all__ = [
    'NerfNetwork',
    'ModelConfiguration',
    'ForwardContext',
    'UvGridCache',
    'RgbInputLayout',
    'plan_rgb_input',
    'PARAMETER_ORDER',
    'ParameterBlock',
    'ParameterPartition',
    'ParameterRange',
    'save_parameters',
    'load_parameters',
]
