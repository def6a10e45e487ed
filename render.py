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

import os
from os import makedirs
from argparse import ArgumentParser

import torch
import torchvision
from tqdm import tqdm

from arguments import ModelParams, PipelineParams, get_combined_args, network_config_from_args, save_cfg_args
from scene import NerfNetwork, ParameterBlock, load_parameters
from utils.general_utils import safe_state
from utils.matrix import DeviceMatrix, ExecutionQueue, RM

# Axis-aligned view directions, in the [0, 1]^3 convention of the direction encoding
DEFAULT_DIRECTIONS = {
    "px": (1.0, 0.5, 0.5),
    "nx": (0.0, 0.5, 0.5),
    "py": (0.5, 1.0, 0.5),
    "ny": (0.5, 0.0, 0.5),
    "pz": (0.5, 0.5, 1.0),
    "nz": (0.5, 0.5, 0.0),
}


def parse_direction(text):
    values = [float(v) for v in text.split(",")]
    if len(values) != 3:
        raise ValueError(f"A direction needs 3 comma separated values, got '{text}'")
    return values


def build_network(dataset, pipeline, checkpoint=None):
    device = pipeline.data_device if torch.cuda.is_available() else "cpu"
    if device != pipeline.data_device:
        print(f"[WARNING] {pipeline.data_device} unavailable, rendering on {device}")
    dtype = torch.float16 if pipeline.half_precision else torch.float32

    network = NerfNetwork.from_config(network_config_from_args(dataset), dtype=dtype)
    if checkpoint:
        block = ParameterBlock(network.n_params(), device=device, dtype=dtype)
        load_parameters(checkpoint, network, block)
    else:
        print(f"[INFO] No checkpoint given, using freshly initialised parameters (seed={pipeline.seed})")
        block = ParameterBlock.for_network(network, device=device, dtype=dtype, seed=pipeline.seed)
    return network, block, ExecutionQueue.for_device(device)


def render_textures(network, queue, texture_size, directions, output_dir):
    makedirs(output_dir, exist_ok=True)
    output = DeviceMatrix.empty(network.padded_output_width(), texture_size * texture_size, queue, RM,
                                network.dtype)

    with torch.no_grad():
        for name, direction in tqdm(directions.items(), desc="Rendering progress"):
            network.uv2texture(queue, texture_size, direction, output)
            queue.synchronize()
            image = network.texture_image(output, texture_size).float().clamp(0.0, 1.0)
            torchvision.utils.save_image(image, os.path.join(output_dir, f"texture_{name}.png"))


if __name__ == "__main__":
    # Set up command line argument parser
    parser = ArgumentParser(description="Texture rendering script parameters")
    model = ModelParams(parser)
    pipeline = PipelineParams(parser)
    parser.add_argument("--checkpoint", default="", type=str)
    parser.add_argument("--texture_size", default=512, type=int)
    parser.add_argument("--direction", action="append", type=parse_direction, default=None)
    parser.add_argument("--quiet", action="store_true")
    args = get_combined_args(parser)

    # Initialize system state (RNG)
    safe_state(args.quiet, seed=args.seed)

    dataset = model.extract(args)
    pipe = pipeline.extract(args)
    if dataset.model_path:
        save_cfg_args(args, dataset.model_path)
    output_dir = os.path.join(dataset.model_path or ".", "textures")
    print(f"[INFO] Rendering {args.texture_size}x{args.texture_size} textures into {output_dir}")

    if args.direction:
        directions = {f"dir{i:02d}": d for i, d in enumerate(args.direction)}
    else:
        directions = DEFAULT_DIRECTIONS

    network, block, queue = build_network(dataset, pipe, args.checkpoint)
    render_textures(network, queue, args.texture_size, directions, output_dir)
