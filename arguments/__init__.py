#
# Copyright (C) 2023, Inria
# GRAPHDECO research group, https://team.inria.fr/graphdeco
# All rights reserved.
#
# This software is free for non-commercial, research and evaluation use
# under the terms of the LICENSE.md file.
#
# For inquiries contact  george.drettakis@inria.fr
#

from argparse import ArgumentParser, Namespace
import copy
import json
import os
import sys

import yaml

# Network description used when no --config is given (mirrors configs/nerf_uv.yaml)
DEFAULT_NETWORK_CONFIG = {
    "pos_encoding": {
        "otype": "HashGrid",
        "n_levels": 16,
        "n_features_per_level": 2,
        "log2_hashmap_size": 19,
        "base_resolution": 16,
        "per_level_scale": 1.5,
    },
    "dir_encoding": {
        "otype": "Composite",
        "nested": [
            {"n_dims_to_encode": 3, "otype": "SphericalHarmonics", "degree": 4},
            {"otype": "Identity"},
        ],
    },
    "density_network": {
        "otype": "FullyFusedMLP",
        "activation": "ReLU",
        "output_activation": "None",
        "n_neurons": 64,
        "n_hidden_layers": 1,
    },
    "uv_network": {
        "otype": "FullyFusedMLP",
        "activation": "ReLU",
        "output_activation": "Sigmoid",
        "n_neurons": 64,
        "n_hidden_layers": 1,
    },
    "rgb_network": {
        "otype": "FullyFusedMLP",
        "activation": "ReLU",
        "output_activation": "Sigmoid",
        "n_neurons": 64,
        "n_hidden_layers": 2,
    },
}

class GroupParams:
    pass

class ParamGroup:
    def __init__(self, parser: ArgumentParser, name : str, fill_none = False):
        group = parser.add_argument_group(name)
        for key, value in vars(self).items():
            shorthand = False
            if key.startswith("_"):
                shorthand = True
                key = key[1:]
            t = type(value)
            value = value if not fill_none else None
            if shorthand:
                if t == bool:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, action="store_true")
                else:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, type=t)
            else:
                if t == bool:
                    group.add_argument("--" + key, default=value, action="store_true")
                else:
                    group.add_argument("--" + key, default=value, type=t)

    def extract(self, args):
        group = GroupParams()
        for arg in vars(args).items():
            if arg[0] in vars(self) or ("_" + arg[0]) in vars(self):
                setattr(group, arg[0], arg[1])
        return group

class ModelParams(ParamGroup):
    def __init__(self, parser, sentinel=False):
        self._config = ""
        self._model_path = ""
        self.n_pos_dims = 3
        self.n_dir_dims = 3
        self.n_extra_dims = 0
        self.dir_offset = 4          # NGP sample layout: pos(3) | dt(1) | dir(3) | extra
        self.uv_network_scale = 1.0  # multiplies the uv gradient entering the uv network
        super().__init__(parser, "Loading Parameters", sentinel)

    def extract(self, args):
        g = super().extract(args)
        if g.model_path:
            g.model_path = os.path.abspath(g.model_path)
        return g

class PipelineParams(ParamGroup):
    def __init__(self, parser):
        self.data_device = "cuda"
        self.half_precision = False  # evaluate sub-networks in float16
        self.seed = 1337
        super().__init__(parser, "Pipeline Parameters")

def load_network_config(path=None):
    """Read a YAML or JSON network description; ``None`` returns the default."""
    if not path:
        return copy.deepcopy(DEFAULT_NETWORK_CONFIG)
    with open(path, "r") as f:
        if path.endswith(".json"):
            config = json.load(f)
        else:
            config = yaml.safe_load(f)
    if not isinstance(config, dict):
        raise ValueError(f"Network config {path} must hold a mapping, got {type(config).__name__}")
    return config

def network_config_from_args(args):
    """Merge the dimension flags of ``ModelParams`` into the network description."""
    config = load_network_config(getattr(args, "config", ""))
    for key in ("n_pos_dims", "n_dir_dims", "n_extra_dims", "dir_offset", "uv_network_scale"):
        if hasattr(args, key):
            config[key] = getattr(args, key)
    return config

def save_cfg_args(args, model_path):
    os.makedirs(model_path, exist_ok=True)
    with open(os.path.join(model_path, "cfg_args"), "w") as cfg_log_f:
        yaml.dump(vars(args), cfg_log_f, default_flow_style=False, sort_keys=False)

def get_combined_args(parser : ArgumentParser, argv=None):
    cmdlne_string = sys.argv[1:] if argv is None else argv
    cfgfile_args = {}
    # Parse defaults separately so we can detect which CLI flags were
    # explicitly provided (vs. defaults).
    default_args = parser.parse_args([])
    args_cmdline = parser.parse_args(cmdlne_string)

    cfgfilepath = None
    try:
        cfgfilepath = os.path.join(args_cmdline.model_path, "cfg_args")
        print("Looking for config file in", cfgfilepath)
        with open(cfgfilepath) as cfg_file:
            print("Config file found: {}".format(cfgfilepath))
            cfgfile_args = yaml.safe_load(cfg_file) or {}
    except (TypeError, FileNotFoundError):
        print("Config file not found at", cfgfilepath)

    merged_dict = dict(cfgfile_args)

    for k, v in vars(args_cmdline).items():
        # Only override values that were explicitly set on the command line.
        if v != getattr(default_args, k):
            merged_dict[k] = v

    # Ensure all command line arguments are present in merged dict
    for k, v in vars(default_args).items():
        if k not in merged_dict:
            merged_dict[k] = v

    return Namespace(**merged_dict)
