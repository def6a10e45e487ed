"""
NeRF network with a 2-channel uv latent.

Five sub-modules are wired over per-batch buffers:

    position --pos_encoding--> density_input --density_network--> density
                                      |
                                      +------uv_network------> uv ----+
    direction(+extra) --dir_encoding-------------------------> dir ---+--> rgb_input --rgb_network--> rgb

``rgb_input`` is one packed buffer ``[dir | uv | zero padding]``; the uv
network and the direction encoding write straight into their slices.
Output rows are ``rgb`` (0..2), ``density`` (3) and, when the output has
room, the uv latent (4, 5).

Backward routes two gradients into the shared ``density_input``: the
direct density gradient and the uv gradient coming back through the rgb
network. The uv gradient is multiplied by ``uv_network_scale`` before it
enters the uv network and is never rescaled afterwards.
"""

import copy
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import torch

from encoders import create_encoding
from networks import create_network, minimum_alignment
from scene.layout import RgbInputLayout, UV_CHANNELS, density_input_alignment, plan_rgb_input
from scene.parameters import ParameterPartition
from utils.differentiable import Context, GradientMode
from utils.kernels import (
    add_density_gradient,
    add_gradient,
    copy_rows,
    extract_density,
    extract_rgb,
    extract_uv,
    fill_rows_zero,
    generate_uv_grid,
    repeat_vec,
    scale_gradient,
    RGB_CHANNELS,
    UV_OUTPUT_CHANNEL,
)
from utils.matrix import CM, DeviceMatrix, ExecutionQueue, LayoutError, MatrixLayout

NERF_OUTPUT_WIDTH = 4


@dataclass(frozen=True)
class ModelConfiguration:
    pos_encoding: dict
    dir_encoding: dict
    density_network: dict
    uv_network: dict
    rgb_network: dict
    n_pos_dims: int = 3
    n_dir_dims: int = 3
    n_extra_dims: int = 0
    dir_offset: int = 4
    uv_network_scale: float = 1.0

    def __post_init__(self):
        for name in ("pos_encoding", "dir_encoding", "density_network", "uv_network", "rgb_network"):
            object.__setattr__(self, name, copy.deepcopy(dict(getattr(self, name))))

    @classmethod
    def from_dict(cls, config: dict) -> "ModelConfiguration":
        fields = {}
        for key in cls.__dataclass_fields__:
            if key in config:
                fields[key] = config[key]
        missing = [k for k in ("pos_encoding", "dir_encoding", "density_network", "uv_network", "rgb_network")
                   if k not in fields]
        if missing:
            raise ValueError(f"NerfNetwork config is missing sub-configs: {missing}")
        return cls(**fields)


@dataclass
class ForwardContext(Context):
    density_network_input: Optional[DeviceMatrix] = None
    density_network_output: Optional[DeviceMatrix] = None
    rgb_network_input: Optional[DeviceMatrix] = None
    rgb_network_output: Optional[DeviceMatrix] = None
    uv_network_output: Optional[DeviceMatrix] = None

    pos_encoding_ctx: Optional[Context] = None
    dir_encoding_ctx: Optional[Context] = None
    density_network_ctx: Optional[Context] = None
    uv_network_ctx: Optional[Context] = None
    rgb_network_ctx: Optional[Context] = None


class UvGridCache:
    """
    UV grid for texture rendering, generated on first use and reused after.

    The cache only remembers whether it has been generated. A later request
    for a different batch size raises; call ``reset()`` first. First use is
    not synchronised: callers sharing one network across queues must
    serialise it.
    """

    def __init__(self):
        self.grid: Optional[DeviceMatrix] = None

    @property
    def generated(self) -> bool:
        return self.grid is not None

    def get(self, queue: ExecutionQueue, batch_size: int, texture_size: int, layout: MatrixLayout,
            dtype: torch.dtype) -> DeviceMatrix:
        if self.grid is None:
            grid = DeviceMatrix.empty(UV_CHANNELS, batch_size, queue, layout, dtype)
            with queue.scope():
                generate_uv_grid(grid, texture_size)
            self.grid = grid
        elif self.grid.n != batch_size:
            raise ValueError(
                f"UV grid was generated for {self.grid.n} samples, got {batch_size}; "
                f"call reset_uv_grid() before changing the texture batch size"
            )
        return self.grid

    def reset(self):
        self.grid = None


class NerfNetwork:
    def __init__(self, n_pos_dims: int, n_dir_dims: int, n_extra_dims: int, dir_offset: int,
                 pos_encoding: dict, dir_encoding: dict, density_network: dict, uv_network: dict,
                 rgb_network: dict, uv_network_scale: float = 1.0, dtype: torch.dtype = torch.float32):
        self.config = ModelConfiguration(
            pos_encoding=pos_encoding,
            dir_encoding=dir_encoding,
            density_network=density_network,
            uv_network=uv_network,
            rgb_network=rgb_network,
            n_pos_dims=n_pos_dims,
            n_dir_dims=n_dir_dims,
            n_extra_dims=n_extra_dims,
            dir_offset=dir_offset,
            uv_network_scale=uv_network_scale,
        )
        cfg = self.config
        self.dtype = dtype
        self.n_pos_dims = n_pos_dims
        self.n_dir_dims = n_dir_dims
        self.dir_offset = dir_offset
        self._n_extra_dims = n_extra_dims
        self._uv_network_scale = float(uv_network_scale)
        self._uv_grid = UvGridCache()

        self.pos_encoding = create_encoding(n_pos_dims, cfg.pos_encoding, density_input_alignment(cfg.density_network))

        rgb_alignment = minimum_alignment(cfg.rgb_network)
        # extra dims are encoded together with the direction
        self.dir_encoding = create_encoding(n_dir_dims + n_extra_dims, cfg.dir_encoding, rgb_alignment)

        density_config = dict(cfg.density_network)
        density_config["n_input_dims"] = self.pos_encoding.padded_output_width()
        density_config.setdefault("n_output_dims", 1)
        self.density_network = create_network(density_config)

        uv_config = dict(cfg.uv_network)
        uv_config["n_input_dims"] = self.pos_encoding.padded_output_width()
        uv_config.setdefault("n_output_dims", UV_CHANNELS)
        self.uv_network = create_network(uv_config)

        self.rgb_input_layout: RgbInputLayout = plan_rgb_input(
            self.dir_encoding.padded_output_width(), self.uv_network.padded_output_width(), rgb_alignment
        )

        rgb_config = dict(cfg.rgb_network)
        rgb_config["n_input_dims"] = self.rgb_input_layout.width
        rgb_config["n_output_dims"] = RGB_CHANNELS
        self.rgb_network = create_network(rgb_config)

        self.partition = ParameterPartition({
            "density_network": self.density_network,
            "uv_network": self.uv_network,
            "rgb_network": self.rgb_network,
            "pos_encoding": self.pos_encoding,
            "dir_encoding": self.dir_encoding,
        })

    @classmethod
    def from_config(cls, config: dict, dtype: torch.dtype = torch.float32, verbose: bool = True) -> "NerfNetwork":
        cfg = ModelConfiguration.from_dict(config)
        network = cls(
            cfg.n_pos_dims, cfg.n_dir_dims, cfg.n_extra_dims, cfg.dir_offset,
            cfg.pos_encoding, cfg.dir_encoding, cfg.density_network, cfg.uv_network, cfg.rgb_network,
            uv_network_scale=cfg.uv_network_scale, dtype=dtype,
        )
        if verbose:
            layout = network.rgb_input_layout
            print(
                f"[NerfNetwork] pos={cfg.pos_encoding.get('otype')}({network.pos_encoding.padded_output_width()}) "
                f"dir={cfg.dir_encoding.get('otype')}({layout.dir_width}) "
                f"density_out={network.padded_density_output_width()} "
                f"uv_out={layout.uv_width} rgb_in={layout.width} "
                f"uv_scale={network.uv_network_scale} n_params={network.n_params()}"
            )
        return network

    # ---------- accessors ----------
    @property
    def uv_network_scale(self) -> float:
        return self._uv_network_scale

    @uv_network_scale.setter
    def uv_network_scale(self, scale: float):
        self._uv_network_scale = float(scale)

    def set_uv_network_scale(self, scale: float):
        self.uv_network_scale = scale

    def n_extra_dims(self) -> int:
        return self._n_extra_dims

    # ---------- introspection ----------
    def n_params(self) -> int:
        return (self.pos_encoding.n_params()
                + self.density_network.n_params()
                + self.uv_network.n_params()
                + self.dir_encoding.n_params()
                + self.rgb_network.n_params())

    def input_width(self) -> int:
        return self.dir_offset + self.n_dir_dims + self._n_extra_dims

    def output_width(self) -> int:
        return NERF_OUTPUT_WIDTH

    def padded_output_width(self) -> int:
        return max(self.rgb_network.padded_output_width(), NERF_OUTPUT_WIDTH)

    def padded_density_output_width(self) -> int:
        return self.density_network.padded_output_width()

    def required_input_alignment(self) -> int:
        return 1

    def layer_sizes(self) -> List[Tuple[int, int]]:
        return self.density_network.layer_sizes() + self.uv_network.layer_sizes() + self.rgb_network.layer_sizes()

    def num_forward_activations(self) -> int:
        return (self.density_network.num_forward_activations()
                + self.uv_network.num_forward_activations()
                + self.rgb_network.num_forward_activations()
                + 2)

    def width(self, layer: int) -> int:
        n_density = self.density_network.num_forward_activations()
        n_uv = self.uv_network.num_forward_activations()
        if layer == 0:
            return self.pos_encoding.padded_output_width()
        elif layer < n_density + 1:
            return self.density_network.width(layer - 1)
        elif layer < n_density + n_uv + 1:
            return self.uv_network.width(layer - n_density - 1)
        elif layer == n_density + n_uv + 1:
            return self.rgb_input_layout.width
        return self.rgb_network.width(layer - n_density - n_uv - 2)

    def forward_activations(self, ctx: "ForwardContext", layer: int) -> DeviceMatrix:
        ctx = self._check_context(ctx)
        n_density = self.density_network.num_forward_activations()
        n_uv = self.uv_network.num_forward_activations()
        if layer == 0:
            return ctx.density_network_input
        elif layer < n_density + 1:
            return self.density_network.forward_activations(ctx.density_network_ctx, layer - 1)
        elif layer < n_density + n_uv + 1:
            return self.uv_network.forward_activations(ctx.uv_network_ctx, layer - n_density - 1)
        elif layer == n_density + n_uv + 1:
            return ctx.rgb_network_input
        return self.rgb_network.forward_activations(ctx.rgb_network_ctx, layer - n_density - n_uv - 2)

    def hyperparams(self) -> dict:
        density_hyperparams = self.density_network.hyperparams()
        density_hyperparams["n_output_dims"] = self.density_network.padded_output_width()
        return {
            "otype": "NerfNetwork",
            "n_pos_dims": self.n_pos_dims,
            "n_dir_dims": self.n_dir_dims,
            "n_extra_dims": self._n_extra_dims,
            "dir_offset": self.dir_offset,
            "uv_network_scale": self._uv_network_scale,
            "pos_encoding": self.pos_encoding.hyperparams(),
            "dir_encoding": self.dir_encoding.hyperparams(),
            "density_network": density_hyperparams,
            "uv_network": self.uv_network.hyperparams(),
            "rgb_network": self.rgb_network.hyperparams(),
        }

    # ---------- parameters ----------
    def set_params(self, params: torch.Tensor, inference_params: torch.Tensor, gradients: torch.Tensor):
        self.partition.set_params(params, inference_params, gradients)

    def initialize_params(self, generator: torch.Generator, params_full_precision: torch.Tensor, scale: float = 1.0):
        self.partition.initialize_params(generator, params_full_precision, scale)

    # ---------- buffers ----------
    def _density_network_input(self, queue, batch_size):
        return DeviceMatrix.empty(self.pos_encoding.padded_output_width(), batch_size, queue,
                                  self.pos_encoding.preferred_output_layout(), self.dtype)

    def _rgb_network_input(self, queue, batch_size):
        return DeviceMatrix.empty(self.rgb_input_layout.width, batch_size, queue,
                                  self.dir_encoding.preferred_output_layout(), self.dtype)

    def _pos_input(self, input: DeviceMatrix) -> DeviceMatrix:
        return input.slice_rows(0, self.pos_encoding.input_width())

    def _dir_input(self, input: DeviceMatrix) -> DeviceMatrix:
        return input.slice_rows(self.dir_offset, self.dir_encoding.input_width())

    def _dir_output(self, rgb_network_input: DeviceMatrix) -> DeviceMatrix:
        return rgb_network_input.slice_rows(0, self.rgb_input_layout.dir_width)

    def _uv_output(self, rgb_network_input: DeviceMatrix) -> DeviceMatrix:
        return rgb_network_input.slice_rows(self.rgb_input_layout.uv_offset, self.rgb_input_layout.uv_width)

    def _rgb_output(self, output: DeviceMatrix) -> DeviceMatrix:
        return output.slice_rows(0, self.rgb_network.padded_output_width())

    def fill_unused_rgb_input(self, queue: ExecutionQueue, rgb_network_input: DeviceMatrix):
        """Zero everything after the two uv channels of a packed rgb-input (or its gradient)."""
        with queue.scope():
            fill_rows_zero(rgb_network_input, self.rgb_input_layout.padding_offset)

    def _check_context(self, ctx) -> ForwardContext:
        if not isinstance(ctx, ForwardContext):
            raise TypeError(f"NerfNetwork expects a ForwardContext, got {type(ctx).__name__}")
        return ctx

    # ---------- full network ----------
    def inference_mixed_precision(self, queue: ExecutionQueue, input: DeviceMatrix, output: DeviceMatrix,
                                  use_inference_params: bool = True):
        batch_size = input.n
        density_network_input = self._density_network_input(queue, batch_size)
        rgb_network_input = self._rgb_network_input(queue, batch_size)
        density_network_output = DeviceMatrix.empty(self.padded_density_output_width(), batch_size, queue,
                                                    CM, self.dtype)
        uv_network_output = self._uv_output(rgb_network_input)

        # density
        self.pos_encoding.inference_mixed_precision(queue, self._pos_input(input), density_network_input,
                                                    use_inference_params)
        self.density_network.inference_mixed_precision(queue, density_network_input, density_network_output,
                                                       use_inference_params)

        # uv
        self.uv_network.inference_mixed_precision(queue, density_network_input, uv_network_output,
                                                  use_inference_params)
        self.fill_unused_rgb_input(queue, rgb_network_input)

        self.dir_encoding.inference_mixed_precision(queue, self._dir_input(input), self._dir_output(rgb_network_input),
                                                    use_inference_params)
        self.rgb_network.inference_mixed_precision(queue, rgb_network_input, self._rgb_output(output),
                                                   use_inference_params)

        with queue.scope():
            extract_density(density_network_output, output)
            if output.m >= UV_OUTPUT_CHANNEL + UV_CHANNELS:
                extract_uv(uv_network_output, output)

    def forward(self, queue: ExecutionQueue, input: DeviceMatrix, output: Optional[DeviceMatrix] = None,
                use_inference_params: bool = False, prepare_input_gradients: bool = False) -> ForwardContext:
        batch_size = input.n
        forward = ForwardContext()
        forward.density_network_input = self._density_network_input(queue, batch_size)
        forward.rgb_network_input = self._rgb_network_input(queue, batch_size)

        # density
        forward.pos_encoding_ctx = self.pos_encoding.forward(
            queue, self._pos_input(input), forward.density_network_input,
            use_inference_params, prepare_input_gradients,
        )
        forward.density_network_output = DeviceMatrix.empty(self.padded_density_output_width(), batch_size, queue,
                                                             CM, self.dtype)
        forward.density_network_ctx = self.density_network.forward(
            queue, forward.density_network_input, forward.density_network_output,
            use_inference_params, prepare_input_gradients,
        )

        # uv
        forward.uv_network_output = self._uv_output(forward.rgb_network_input)
        forward.uv_network_ctx = self.uv_network.forward(
            queue, forward.density_network_input, forward.uv_network_output,
            use_inference_params, prepare_input_gradients,
        )
        self.fill_unused_rgb_input(queue, forward.rgb_network_input)

        forward.dir_encoding_ctx = self.dir_encoding.forward(
            queue, self._dir_input(input), self._dir_output(forward.rgb_network_input),
            use_inference_params, prepare_input_gradients,
        )

        if output is not None:
            forward.rgb_network_output = self._rgb_output(output)
        forward.rgb_network_ctx = self.rgb_network.forward(
            queue, forward.rgb_network_input, forward.rgb_network_output,
            use_inference_params, prepare_input_gradients,
        )

        if output is not None:
            with queue.scope():
                extract_density(forward.density_network_output, output)
                if output.m >= UV_OUTPUT_CHANNEL + UV_CHANNELS:
                    extract_uv(forward.uv_network_output, output)

        return forward

    def backward(self, queue: ExecutionQueue, ctx: ForwardContext, input: DeviceMatrix, output: DeviceMatrix,
                 dL_doutput: DeviceMatrix, dL_dinput: Optional[DeviceMatrix] = None,
                 use_inference_params: bool = False,
                 param_gradients_mode: GradientMode = GradientMode.OVERWRITE):
        forward = self._check_context(ctx)
        batch_size = input.n
        layout = self.rgb_input_layout

        dL_drgb = DeviceMatrix.zeros(self.rgb_network.padded_output_width(), batch_size, queue, CM, self.dtype)
        with queue.scope():
            extract_rgb(dL_doutput, dL_drgb)

        dL_drgb_network_input = DeviceMatrix.empty(layout.width, batch_size, queue,
                                                   self.dir_encoding.preferred_output_layout(), self.dtype)
        self.rgb_network.backward(
            queue, forward.rgb_network_ctx, forward.rgb_network_input, self._rgb_output(output),
            dL_drgb, dL_drgb_network_input, use_inference_params, param_gradients_mode,
        )

        # Backprop through dir encoding if it is trainable or if we need input gradients
        if self.dir_encoding.n_params() > 0 or dL_dinput is not None:
            self.dir_encoding.backward(
                queue, forward.dir_encoding_ctx, self._dir_input(input),
                self._dir_output(forward.rgb_network_input),
                self._dir_output(dL_drgb_network_input),
                self._dir_input(dL_dinput) if dL_dinput is not None else None,
                use_inference_params, param_gradients_mode,
            )

        # Position encoding gradient exists only if it is trainable or we need input gradients
        dL_ddensity_network_input = None
        if self.pos_encoding.n_params() > 0 or dL_dinput is not None:
            dL_ddensity_network_input = self._density_network_input(queue, batch_size)

        # uv
        dL_duv_network_output = self._uv_output(dL_drgb_network_input)
        self.fill_unused_rgb_input(queue, dL_drgb_network_input)
        with queue.scope():
            scale_gradient(dL_duv_network_output, self._uv_network_scale)

        dL_duv_network_input = None
        if dL_ddensity_network_input is not None:
            dL_duv_network_input = self._density_network_input(queue, batch_size)
        self.uv_network.backward(
            queue, forward.uv_network_ctx, forward.density_network_input, forward.uv_network_output,
            dL_duv_network_output, dL_duv_network_input, use_inference_params, param_gradients_mode,
        )

        # density
        dL_ddensity_network_output = DeviceMatrix.zeros(self.padded_density_output_width(), batch_size, queue,
                                                        CM, self.dtype)
        with queue.scope():
            add_density_gradient(dL_doutput, dL_ddensity_network_output)
        self.density_network.backward(
            queue, forward.density_network_ctx, forward.density_network_input, forward.density_network_output,
            dL_ddensity_network_output, dL_ddensity_network_input, use_inference_params, param_gradients_mode,
        )

        if dL_ddensity_network_input is None:
            return

        with queue.scope():
            add_gradient(dL_duv_network_input, dL_ddensity_network_input)

        self.pos_encoding.backward(
            queue, forward.pos_encoding_ctx, self._pos_input(input), forward.density_network_input,
            dL_ddensity_network_input,
            self._pos_input(dL_dinput) if dL_dinput is not None else None,
            use_inference_params, param_gradients_mode,
        )

    # ---------- density only ----------
    def density(self, queue: ExecutionQueue, input: DeviceMatrix, output: DeviceMatrix,
                use_inference_params: bool = True):
        if input.layout != CM:
            raise LayoutError("NerfNetwork.density input must be in column major format.")

        batch_size = output.n
        density_network_input = self._density_network_input(queue, batch_size)
        self.pos_encoding.inference_mixed_precision(queue, self._pos_input(input), density_network_input,
                                                    use_inference_params)
        self.density_network.inference_mixed_precision(queue, density_network_input, output, use_inference_params)

    def density_forward(self, queue: ExecutionQueue, input: DeviceMatrix, output: Optional[DeviceMatrix] = None,
                        use_inference_params: bool = False, prepare_input_gradients: bool = False) -> ForwardContext:
        if input.layout != CM:
            raise LayoutError("NerfNetwork.density_forward input must be in column major format.")

        batch_size = input.n
        forward = ForwardContext()
        forward.density_network_input = self._density_network_input(queue, batch_size)
        forward.pos_encoding_ctx = self.pos_encoding.forward(
            queue, self._pos_input(input), forward.density_network_input,
            use_inference_params, prepare_input_gradients,
        )
        if output is not None:
            forward.density_network_output = output.slice_rows(0, self.padded_density_output_width())
        forward.density_network_ctx = self.density_network.forward(
            queue, forward.density_network_input, forward.density_network_output,
            use_inference_params, prepare_input_gradients,
        )
        return forward

    def density_backward(self, queue: ExecutionQueue, ctx: ForwardContext, input: DeviceMatrix,
                         output: DeviceMatrix, dL_doutput: DeviceMatrix, dL_dinput: Optional[DeviceMatrix] = None,
                         use_inference_params: bool = False,
                         param_gradients_mode: GradientMode = GradientMode.OVERWRITE):
        if input.layout != CM or (dL_dinput is not None and dL_dinput.layout != CM):
            raise LayoutError("NerfNetwork.density_backward input must be in column major format.")

        forward = self._check_context(ctx)
        batch_size = input.n

        dL_ddensity_network_input = None
        if self.pos_encoding.n_params() > 0 or dL_dinput is not None:
            dL_ddensity_network_input = self._density_network_input(queue, batch_size)

        self.density_network.backward(
            queue, forward.density_network_ctx, forward.density_network_input, output, dL_doutput,
            dL_ddensity_network_input, use_inference_params, param_gradients_mode,
        )

        # Backprop through pos encoding if it is trainable or if we need input gradients
        if dL_ddensity_network_input is not None:
            self.pos_encoding.backward(
                queue, forward.pos_encoding_ctx, self._pos_input(input), forward.density_network_input,
                dL_ddensity_network_input,
                self._pos_input(dL_dinput) if dL_dinput is not None else None,
                use_inference_params, param_gradients_mode,
            )

    # ---------- texture ----------
    def uv2texture(self, queue: ExecutionQueue, texture_size: int, direction: Sequence[float], output: DeviceMatrix):
        """
        Render the rgb network over a ``texture_size x texture_size`` uv grid
        seen from ``direction``. ``output`` holds one sample per texel
        (``texel = y * texture_size + x``). Inference only.
        """
        batch_size = output.n

        dir_encoding_input = DeviceMatrix.zeros(self.dir_encoding.input_width(), batch_size, queue, CM)
        with queue.scope():
            repeat_vec(direction, dir_encoding_input)

        rgb_network_input = self._rgb_network_input(queue, batch_size)
        self.dir_encoding.inference_mixed_precision(queue, dir_encoding_input, self._dir_output(rgb_network_input))

        uv_grid = self._uv_grid.get(queue, batch_size, texture_size, rgb_network_input.layout, self.dtype)
        with queue.scope():
            copy_rows(uv_grid, rgb_network_input.slice_rows(self.rgb_input_layout.uv_offset, UV_CHANNELS))
        self.fill_unused_rgb_input(queue, rgb_network_input)

        self.rgb_network.inference_mixed_precision(queue, rgb_network_input, self._rgb_output(output))

    def uv_grid(self) -> Optional[DeviceMatrix]:
        return self._uv_grid.grid

    def reset_uv_grid(self):
        self._uv_grid.reset()

    @staticmethod
    def texture_image(output: DeviceMatrix, texture_size: int) -> torch.Tensor:
        """Reshape a ``uv2texture`` result into a ``(3, texture_size, texture_size)`` image."""
        if output.n != texture_size * texture_size:
            raise ValueError(f"Texture of size {texture_size} needs {texture_size ** 2} samples, got {output.n}")
        return output.rows()[:RGB_CHANNELS].reshape(RGB_CHANNELS, texture_size, texture_size)
