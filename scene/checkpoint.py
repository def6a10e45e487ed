"""
Parameter checkpoints.

A checkpoint is one ``.npz`` archive:
    params      float32 flat parameter vector (full precision master copy)
    names       sub-module names in partition order
    starts      range start offsets
    stops       range stop offsets
    hyperparams JSON string of ``NerfNetwork.hyperparams()``

The flat vector is the five-way concatenation of the partition table, so a
checkpoint only loads into a network whose partition has the same
boundaries.
"""

import json
import os

import numpy as np
import torch


def save_parameters(path, network, block):
    dirname = os.path.dirname(path)
    if dirname:
        os.makedirs(dirname, exist_ok=True)

    boundaries = network.partition.boundaries()
    np.savez_compressed(
        path,
        params=block.params_full_precision.detach().cpu().numpy().astype(np.float32),
        names=np.array([name for name, _, _ in boundaries]),
        starts=np.array([start for _, start, _ in boundaries], dtype=np.int64),
        stops=np.array([stop for _, _, stop in boundaries], dtype=np.int64),
        hyperparams=np.array(json.dumps(network.hyperparams(), sort_keys=True)),
    )
    print(f"[INFO] Saved {block.n_params} parameters to {path}")


def load_parameters(path, network, block):
    with np.load(path) as checkpoint:
        saved = list(zip(checkpoint["names"].tolist(), checkpoint["starts"].tolist(), checkpoint["stops"].tolist()))
        current = network.partition.boundaries()
        if saved != current:
            raise RuntimeError(
                f"Checkpoint parameter layout does not match the network: "
                f"saved={saved}, current={current}"
            )

        saved_hyperparams = json.loads(str(checkpoint["hyperparams"]))
        current_hyperparams = json.loads(json.dumps(network.hyperparams(), sort_keys=True))
        for key in sorted(set(saved_hyperparams) | set(current_hyperparams)):
            if saved_hyperparams.get(key) != current_hyperparams.get(key):
                print(f"[WARNING] Hyperparameter mismatch for {key}: "
                      f"saved={saved_hyperparams.get(key)}, current={current_hyperparams.get(key)}")
        params = torch.from_numpy(checkpoint["params"])

    block.load(params)
    block.bind(network)
    print(f"[INFO] Loaded {block.n_params} parameters from {path}")
    return saved_hyperparams
