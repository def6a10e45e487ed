"""Tests for DeviceMatrix layouts and the execution queue."""

import pytest
import torch

from utils.matrix import AoS, CM, RM, SoA, DeviceMatrix, ExecutionQueue, LayoutError, parse_layout


class TestLayouts:
    def test_aliases(self):
        assert AoS is CM
        assert SoA is RM
        assert parse_layout("aos") is CM
        assert parse_layout("SoA") is RM
        assert parse_layout(RM) is RM

    def test_unknown_layout(self):
        with pytest.raises(ValueError):
            parse_layout("diagonal")

    def test_layout_error_is_runtime_error(self):
        assert issubclass(LayoutError, RuntimeError)


class TestDeviceMatrix:
    @pytest.mark.parametrize("layout", [CM, RM])
    def test_shape_and_views(self, queue, layout):
        matrix = DeviceMatrix.zeros(5, 7, queue, layout)
        assert (matrix.m, matrix.n) == (5, 7)
        assert matrix.samples().shape == (7, 5)
        assert matrix.rows().shape == (5, 7)
        assert matrix.n_elements() == 35
        assert matrix.n_bytes() == 35 * 4

    def test_storage_order(self, queue):
        assert DeviceMatrix.empty(5, 7, queue, CM).storage.shape == (7, 5)
        assert DeviceMatrix.empty(5, 7, queue, RM).storage.shape == (5, 7)

    @pytest.mark.parametrize("layout", [CM, RM])
    def test_slice_rows_shares_storage(self, queue, layout):
        matrix = DeviceMatrix.zeros(6, 4, queue, layout)
        view = matrix.slice_rows(2, 3)
        assert (view.m, view.n) == (3, 4)
        view.rows().fill_(7.0)
        rows = matrix.rows()
        assert torch.all(rows[2:5] == 7.0)
        assert torch.all(rows[:2] == 0.0)
        assert torch.all(rows[5:] == 0.0)

    def test_slice_out_of_range(self, queue):
        matrix = DeviceMatrix.zeros(4, 3, queue)
        with pytest.raises(ValueError):
            matrix.slice_rows(3, 2)

    @pytest.mark.parametrize("layout", [CM, RM])
    def test_from_samples(self, layout):
        samples = torch.arange(12, dtype=torch.float32).reshape(4, 3)
        matrix = DeviceMatrix.from_samples(samples, layout)
        assert matrix.layout is layout
        assert torch.equal(matrix.samples(), samples)
        assert torch.equal(matrix.row(1), samples[:, 1])

    def test_storage_must_be_2d(self):
        with pytest.raises(ValueError):
            DeviceMatrix(torch.zeros(3))


class TestExecutionQueue:
    def test_cpu_queue_scope(self):
        queue = ExecutionQueue.for_device("cpu", new_stream=True)
        assert queue.stream is None
        with queue.scope():
            pass
        queue.synchronize()

    def test_stream_requires_cuda(self):
        with pytest.raises(ValueError):
            ExecutionQueue("cpu", stream=object())
