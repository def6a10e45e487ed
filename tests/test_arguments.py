"""Tests for the argument groups and network config loading."""

import json
from argparse import ArgumentParser

import pytest
import yaml

from arguments import (
    DEFAULT_NETWORK_CONFIG,
    ModelParams,
    PipelineParams,
    get_combined_args,
    load_network_config,
    network_config_from_args,
    save_cfg_args,
)
from scene import NerfNetwork

from conftest import project_root


def test_default_config_is_a_copy():
    config = load_network_config()
    config["rgb_network"]["n_neurons"] = 1
    assert DEFAULT_NETWORK_CONFIG["rgb_network"]["n_neurons"] == 64


def test_shipped_yaml_matches_default():
    config = load_network_config(str(project_root / "configs" / "nerf_uv.yaml"))
    assert config == DEFAULT_NETWORK_CONFIG


def test_json_config(tmp_path):
    path = tmp_path / "net.json"
    path.write_text(json.dumps({"pos_encoding": {"otype": "Identity"}}))
    assert load_network_config(str(path)) == {"pos_encoding": {"otype": "Identity"}}


def test_non_mapping_config(tmp_path):
    path = tmp_path / "net.yaml"
    path.write_text(yaml.dump([1, 2, 3]))
    with pytest.raises(ValueError):
        load_network_config(str(path))


def test_param_groups_extract():
    parser = ArgumentParser()
    model = ModelParams(parser)
    pipeline = PipelineParams(parser)
    args = parser.parse_args(["--n_extra_dims", "2", "--uv_network_scale", "0.5", "--half_precision"])

    dataset = model.extract(args)
    assert dataset.n_extra_dims == 2
    assert dataset.uv_network_scale == 0.5
    assert pipeline.extract(args).half_precision is True


def test_network_config_from_args():
    parser = ArgumentParser()
    model = ModelParams(parser)
    args = parser.parse_args(["--dir_offset", "3", "--uv_network_scale", "0.1"])
    config = network_config_from_args(model.extract(args))
    assert config["dir_offset"] == 3
    assert config["uv_network_scale"] == pytest.approx(0.1)

    network = NerfNetwork.from_config(config, verbose=False)
    assert network.input_width() == 3 + 3
    assert network.uv_network_scale == pytest.approx(0.1)


def test_combined_args_prefers_explicit_flags(tmp_path):
    parser = ArgumentParser()
    ModelParams(parser)
    PipelineParams(parser)

    saved = parser.parse_args(["--model_path", str(tmp_path), "--n_extra_dims", "2", "--seed", "7"])
    save_cfg_args(saved, str(tmp_path))

    args = get_combined_args(parser, ["--model_path", str(tmp_path), "--seed", "11"])
    assert args.n_extra_dims == 2
    assert args.seed == 11
    assert args.dir_offset == 4


def test_missing_cfg_args_reports_path(tmp_path, capsys):
    parser = ArgumentParser()
    ModelParams(parser)
    get_combined_args(parser, ["--model_path", str(tmp_path)])
    assert f"Config file not found at {tmp_path / 'cfg_args'}" in capsys.readouterr().out


def test_render_args_survive_a_second_run(tmp_path):
    from render import parse_direction

    parser = ArgumentParser()
    ModelParams(parser)
    parser.add_argument("--direction", action="append", type=parse_direction, default=None)

    first = parser.parse_args(["--model_path", str(tmp_path), "--direction", "1,0.5,0.5"])
    save_cfg_args(first, str(tmp_path))

    args = get_combined_args(parser, ["--model_path", str(tmp_path)])
    assert args.direction == [[1.0, 0.5, 0.5]]
