"""Tests for the composite NerfNetwork."""

import pytest
import torch

from scene import NerfNetwork, ParameterBlock
from utils.differentiable import GradientMode
from utils.matrix import CM, RM, DeviceMatrix, LayoutError

from conftest import linear_config, make_input, make_network, small_config

BATCH_SIZES = [1, 7, 256]


def new_output(network, queue, batch_size, layout=CM):
    return DeviceMatrix.zeros(network.padded_output_width(), batch_size, queue, layout)


def weight_view(network, block, name):
    r = network.partition[name]
    return getattr(network, name).split_params(block.params[r.start:r.stop])


class TestConstruction:
    def test_widths(self, small_network):
        network, _ = small_network
        assert network.input_width() == 4 + 3 + 1
        assert network.output_width() == 4
        assert network.padded_output_width() == 16
        assert network.padded_density_output_width() == 16
        assert network.required_input_alignment() == 1
        assert network.n_extra_dims() == 1
        assert network.pos_encoding.padded_output_width() == 16
        assert network.rgb_input_layout.width == 32
        assert network.rgb_network.input_width() == 32

    def test_defaults(self, small_network):
        network, _ = small_network
        assert network.density_network.output_width() == 1
        assert network.uv_network.output_width() == 2
        assert network.rgb_network.output_width() == 3
        assert network.uv_network_scale == 1.0

    def test_cutlass_alignment(self):
        config = small_config()
        config["density_network"]["otype"] = "CutlassMLP"
        config["rgb_network"]["otype"] = "CutlassMLP"
        network, _ = make_network(config)
        assert network.pos_encoding.padded_output_width() == 8
        assert network.dir_encoding.padded_output_width() == 8
        assert network.padded_output_width() == 8

    def test_configuration_is_copied(self):
        config = small_config()
        network, _ = make_network(config)
        config["rgb_network"]["n_neurons"] = 128
        assert network.config.rgb_network["n_neurons"] == 16
        with pytest.raises(Exception):
            network.config.dir_offset = 2

    def test_missing_sub_config(self):
        config = small_config()
        del config["uv_network"]
        with pytest.raises(ValueError):
            NerfNetwork.from_config(config, verbose=False)

    def test_uv_network_scale_accessors(self, small_network):
        network, _ = small_network
        network.set_uv_network_scale(0.5)
        assert network.uv_network_scale == 0.5
        network.uv_network_scale = 2
        assert network.uv_network_scale == 2.0

    def test_construction_summary(self, capsys):
        NerfNetwork.from_config(small_config())
        assert "[NerfNetwork]" in capsys.readouterr().out


class TestInference:
    @pytest.mark.parametrize("batch_size", BATCH_SIZES)
    @pytest.mark.parametrize("layout", [CM, RM])
    def test_inference_matches_forward(self, queue, small_network, batch_size, layout):
        network, _ = small_network
        x = make_input(network, batch_size, layout)
        inferred = new_output(network, queue, batch_size, layout)
        forwarded = new_output(network, queue, batch_size, layout)

        network.inference_mixed_precision(queue, x, inferred)
        network.forward(queue, x, forwarded)

        assert torch.allclose(inferred.rows()[:4], forwarded.rows()[:4], atol=1e-5)

    @pytest.mark.parametrize("output_layout", [CM, RM])
    def test_input_layout_does_not_matter(self, queue, small_network, output_layout):
        network, _ = small_network
        cm_out = new_output(network, queue, 7, output_layout)
        rm_out = new_output(network, queue, 7, output_layout)
        network.inference_mixed_precision(queue, make_input(network, 7, CM), cm_out)
        network.inference_mixed_precision(queue, make_input(network, 7, RM), rm_out)
        assert torch.allclose(cm_out.rows()[:4], rm_out.rows()[:4], atol=1e-6)

    def test_output_channels(self, queue, small_network):
        network, _ = small_network
        x = make_input(network, 7)
        output = new_output(network, queue, 7)
        ctx_output = new_output(network, queue, 7)
        network.inference_mixed_precision(queue, x, output)
        ctx = network.forward(queue, x, ctx_output)

        assert torch.allclose(output.row(3), ctx.density_network_output.row(0), atol=1e-6)
        uv = ctx.rgb_network_input.rows()[network.rgb_input_layout.uv_offset:][:2]
        assert torch.allclose(output.rows()[4:6], uv, atol=1e-6)
        # rgb head ends in a sigmoid
        assert torch.all((output.rows()[:3] >= 0) & (output.rows()[:3] <= 1))

    def test_batch_size_independence(self, queue, small_network):
        network, _ = small_network
        single = make_input(network, 1, seed=5)
        repeated = DeviceMatrix.from_samples(single.samples().repeat(256, 1))

        out_single = new_output(network, queue, 1)
        out_repeated = new_output(network, queue, 256)
        network.inference_mixed_precision(queue, single, out_single)
        network.inference_mixed_precision(queue, repeated, out_repeated)

        expected = out_single.samples()[:, :4].expand(256, 4)
        assert torch.allclose(out_repeated.samples()[:, :4], expected, atol=1e-5)

    @pytest.mark.parametrize("batch_size", BATCH_SIZES)
    @pytest.mark.parametrize("uv_otype", ["FullyFusedMLP", "CutlassMLP"])
    def test_rgb_input_padding_is_zero(self, queue, batch_size, uv_otype):
        config = small_config()
        config["uv_network"]["otype"] = uv_otype
        network, _ = make_network(config)
        layout = network.rgb_input_layout
        ctx = network.forward(queue, make_input(network, batch_size), new_output(network, queue, batch_size))

        rows = ctx.rgb_network_input.rows()
        assert layout.padding_width > 0
        assert torch.all(rows[layout.padding_offset:] == 0)
        assert torch.any(rows[layout.uv_offset:layout.padding_offset] != 0)

    @pytest.mark.parametrize("batch_size", BATCH_SIZES)
    def test_inference_rgb_input_padding_is_zero(self, queue, batch_size, monkeypatch):
        network, _ = make_network(small_config())
        layout = network.rgb_input_layout
        captured = []
        rgb_inference = network.rgb_network.inference_mixed_precision

        def capture(queue, input, output, use_inference_params=True):
            captured.append(input.rows().clone())
            return rgb_inference(queue, input, output, use_inference_params)

        monkeypatch.setattr(network.rgb_network, "inference_mixed_precision", capture)
        network.inference_mixed_precision(queue, make_input(network, batch_size),
                                          new_output(network, queue, batch_size))

        assert len(captured) == 1
        assert torch.all(captured[0][layout.padding_offset:] == 0)
        assert torch.any(captured[0][layout.uv_offset:layout.padding_offset] != 0)

    def test_forward_without_output(self, queue, small_network):
        network, _ = small_network
        ctx = network.forward(queue, make_input(network, 3))
        assert ctx.rgb_network_output is None
        assert ctx.rgb_network_ctx is not None


class TestBackward:
    def _gradients(self, queue, network, block, x, dL_doutput_rows, scale=1.0):
        network.uv_network_scale = scale
        batch_size = x.n
        output = new_output(network, queue, batch_size)
        ctx = network.forward(queue, x, output)
        dL_doutput = new_output(network, queue, batch_size)
        for row, values in dL_doutput_rows.items():
            dL_doutput.row(row).copy_(values)
        dL_dinput = DeviceMatrix.zeros(network.input_width(), batch_size, queue)
        block.zero_grad()
        network.backward(queue, ctx, x, output, dL_doutput, dL_dinput)
        return dL_dinput, block.gradients.clone()

    def test_density_gradient_reaches_position(self, queue, linear_network):
        network, block = linear_network
        x = make_input(network, 7)
        g = torch.linspace(0.5, 2.0, 7)
        dL_dinput, _ = self._gradients(queue, network, block, x, {3: g})

        W_density = weight_view(network, block, "density_network")[0]
        expected = g[:, None] * W_density[0, :3]
        assert torch.allclose(dL_dinput.samples()[:, :3], expected, atol=1e-6)
        # no rgb gradient, so neither uv nor direction contribute
        assert torch.all(dL_dinput.samples()[:, 4:] == 0)

    def test_uv_gradient_scaled_exactly(self, queue, linear_network):
        network, block = linear_network
        x = make_input(network, 7)
        g = {c: torch.linspace(-1.0, 1.0, 7) * (c + 1) for c in range(3)}

        unscaled, grads_unscaled = self._gradients(queue, network, block, x, g, scale=1.0)
        scaled, grads_scaled = self._gradients(queue, network, block, x, g, scale=0.25)

        pos_unscaled = unscaled.samples()[:, :3]
        assert torch.any(pos_unscaled != 0)
        assert torch.allclose(scaled.samples()[:, :3], 0.25 * pos_unscaled, rtol=1e-6, atol=1e-7)
        # direction path is untouched by the uv scale
        assert torch.equal(scaled.samples()[:, 4:], unscaled.samples()[:, 4:])

        uv = network.partition["uv_network"]
        rgb = network.partition["rgb_network"]
        assert torch.allclose(grads_scaled[uv.start:uv.stop], 0.25 * grads_unscaled[uv.start:uv.stop],
                              rtol=1e-6, atol=1e-7)
        assert torch.equal(grads_scaled[rgb.start:rgb.stop], grads_unscaled[rgb.start:rgb.stop])

    def test_gradients_from_both_heads_add(self, queue, linear_network):
        network, block = linear_network
        x = make_input(network, 7)
        density_g = torch.linspace(0.5, 2.0, 7)
        rgb_g = {c: torch.linspace(-1.0, 1.0, 7) for c in range(3)}

        density_only, _ = self._gradients(queue, network, block, x, {3: density_g})
        rgb_only, _ = self._gradients(queue, network, block, x, rgb_g)
        both, _ = self._gradients(queue, network, block, x, {**rgb_g, 3: density_g})

        assert torch.allclose(both.samples()[:, :3], density_only.samples()[:, :3] + rgb_only.samples()[:, :3],
                              atol=1e-6)

    def test_trainable_sub_modules_receive_gradients(self, queue, small_network):
        network, block = small_network
        x = make_input(network, 32)
        output = new_output(network, queue, 32)
        ctx = network.forward(queue, x, output)
        dL_doutput = DeviceMatrix.from_samples(torch.ones(32, network.padded_output_width()))
        block.zero_grad()
        network.backward(queue, ctx, x, output, dL_doutput)

        for r in network.partition:
            if r.size:
                assert torch.any(block.gradients[r.start:r.stop] != 0), r.name

    def test_accumulate_mode(self, queue, small_network):
        network, block = small_network
        x = make_input(network, 16)
        output = new_output(network, queue, 16)
        ctx = network.forward(queue, x, output)
        dL_doutput = DeviceMatrix.from_samples(torch.rand(16, network.padded_output_width()))

        block.zero_grad()
        network.backward(queue, ctx, x, output, dL_doutput)
        once = block.gradients.clone()
        network.backward(queue, ctx, x, output, dL_doutput, param_gradients_mode=GradientMode.ACCUMULATE)
        assert torch.allclose(block.gradients, 2 * once, atol=1e-6)

    def test_rejects_foreign_context(self, queue, small_network):
        network, _ = small_network
        x = make_input(network, 2)
        output = new_output(network, queue, 2)
        foreign = network.density_network.forward(queue, DeviceMatrix.zeros(16, 2, queue))
        with pytest.raises(TypeError):
            network.backward(queue, foreign, x, output, output)


class TestDensity:
    def test_matches_full_inference(self, queue, small_network):
        network, _ = small_network
        x = make_input(network, 64)
        full = new_output(network, queue, 64)
        density = DeviceMatrix.zeros(network.padded_density_output_width(), 64, queue)
        network.inference_mixed_precision(queue, x, full)
        network.density(queue, x, density)
        assert torch.allclose(density.row(0), full.row(3), atol=1e-6)

    def test_forward_matches_inference(self, queue, small_network):
        network, _ = small_network
        x = make_input(network, 7)
        inferred = DeviceMatrix.zeros(network.padded_density_output_width(), 7, queue)
        forwarded = DeviceMatrix.zeros(network.padded_density_output_width(), 7, queue)
        network.density(queue, x, inferred)
        network.density_forward(queue, x, forwarded)
        assert torch.allclose(inferred.samples(), forwarded.samples(), atol=1e-6)

    def test_backward_matches_full_path(self, queue, linear_network):
        network, block = linear_network
        x = make_input(network, 7)
        g = torch.linspace(0.5, 2.0, 7)

        output = DeviceMatrix.zeros(network.padded_density_output_width(), 7, queue)
        ctx = network.density_forward(queue, x, output)
        dL_doutput = DeviceMatrix.zeros(network.padded_density_output_width(), 7, queue)
        dL_doutput.row(0).copy_(g)
        dL_dinput = DeviceMatrix.zeros(network.input_width(), 7, queue)
        network.density_backward(queue, ctx, x, output, dL_doutput, dL_dinput)

        W_density = weight_view(network, block, "density_network")[0]
        assert torch.allclose(dL_dinput.samples()[:, :3], g[:, None] * W_density[0, :3], atol=1e-6)

    def test_layout_errors(self, queue, small_network):
        network, _ = small_network
        rm_input = make_input(network, 4, RM)
        cm_input = make_input(network, 4, CM)
        output = DeviceMatrix.zeros(network.padded_density_output_width(), 4, queue)

        with pytest.raises(LayoutError):
            network.density(queue, rm_input, output)
        assert torch.all(output.storage == 0)

        with pytest.raises(LayoutError):
            network.density_forward(queue, rm_input, output)

        ctx = network.density_forward(queue, cm_input, output)
        rm_gradient = DeviceMatrix.zeros(network.input_width(), 4, queue, RM)
        with pytest.raises(LayoutError):
            network.density_backward(queue, ctx, cm_input, output, output, rm_gradient)


class TestTexture:
    def test_grid_is_cached(self, queue, small_network):
        network, _ = small_network
        size = 8
        output = new_output(network, queue, size * size, RM)

        network.uv2texture(queue, size, (0.5, 0.5, 1.0), output)
        grid = network.uv_grid()
        snapshot = grid.storage.clone()
        first = output.storage.clone()

        network.uv2texture(queue, size, (0.5, 0.5, 1.0), output)
        assert network.uv_grid() is grid
        assert torch.equal(grid.storage, snapshot)
        assert torch.equal(output.storage, first)

    def test_grid_contents(self, queue, small_network):
        network, _ = small_network
        size = 4
        network.uv2texture(queue, size, (0.0, 0.0, 1.0), new_output(network, queue, size * size))
        grid = network.uv_grid()
        index = torch.arange(size * size)
        assert torch.allclose(grid.row(0), (index % size).float() / size)
        assert torch.allclose(grid.row(1), (index // size).float() / size)

    def test_batch_size_change_requires_reset(self, queue, small_network):
        network, _ = small_network
        network.uv2texture(queue, 4, (0.0, 0.0, 1.0), new_output(network, queue, 16))
        with pytest.raises(ValueError):
            network.uv2texture(queue, 8, (0.0, 0.0, 1.0), new_output(network, queue, 64))
        network.reset_uv_grid()
        network.uv2texture(queue, 8, (0.0, 0.0, 1.0), new_output(network, queue, 64))
        assert network.uv_grid().n == 64

    def test_direction_changes_colour(self, queue, small_network):
        network, _ = small_network
        a = new_output(network, queue, 16)
        b = new_output(network, queue, 16)
        network.uv2texture(queue, 4, (1.0, 0.5, 0.5), a)
        network.uv2texture(queue, 4, (0.0, 0.5, 0.5), b)
        assert not torch.allclose(a.rows()[:3], b.rows()[:3])

    def test_texture_image(self, queue, small_network):
        network, _ = small_network
        output = new_output(network, queue, 16)
        network.uv2texture(queue, 4, (0.5, 0.5, 1.0), output)
        image = NerfNetwork.texture_image(output, 4)
        assert image.shape == (3, 4, 4)
        assert torch.equal(image[:, 1, 2], output.samples()[6, :3])
        with pytest.raises(ValueError):
            NerfNetwork.texture_image(output, 5)


class TestIntrospection:
    def test_activation_view(self, queue, small_network):
        network, _ = small_network
        # 1 hidden layer per head + pos encoding output + packed rgb input
        assert network.num_forward_activations() == 5
        ctx = network.forward(queue, make_input(network, 3))

        assert network.width(0) == network.pos_encoding.padded_output_width()
        assert network.forward_activations(ctx, 0) is ctx.density_network_input
        assert network.width(1) == 16
        assert network.forward_activations(ctx, 1).m == 16
        assert network.width(3) == network.rgb_input_layout.width
        assert network.forward_activations(ctx, 3) is ctx.rgb_network_input
        assert network.forward_activations(ctx, 4).n == 3

    def test_layer_sizes(self, small_network):
        network, _ = small_network
        sizes = network.layer_sizes()
        assert len(sizes) == 6
        assert sizes[0] == (16, 16)
        assert sizes[-1] == (16, 16)
        assert sizes[4] == (16, 32)

    def test_hyperparams(self, small_network):
        network, _ = small_network
        params = network.hyperparams()
        assert params["otype"] == "NerfNetwork"
        assert params["uv_network_scale"] == 1.0
        assert params["density_network"]["n_output_dims"] == network.padded_density_output_width()
        assert params["pos_encoding"]["otype"] == "HashGrid"
        assert set(params) >= {"pos_encoding", "dir_encoding", "density_network", "uv_network", "rgb_network"}

    def test_rebuild_from_hyperparams(self, small_network):
        network, _ = small_network
        rebuilt = NerfNetwork.from_config(network.hyperparams(), verbose=False)
        assert rebuilt.partition.boundaries() == network.partition.boundaries()

    def test_mixed_precision_inference(self, queue):
        network = NerfNetwork.from_config(small_config(), dtype=torch.float64, verbose=False)
        block = ParameterBlock.for_network(network, dtype=torch.float64, inference_dtype=torch.float32)
        output = DeviceMatrix.zeros(network.padded_output_width(), 5, queue, dtype=torch.float64)
        network.inference_mixed_precision(queue, make_input(network, 5), output)
        assert output.dtype == torch.float64
        assert torch.isfinite(output.storage).all()
        assert block.inference_params.dtype == torch.float32
