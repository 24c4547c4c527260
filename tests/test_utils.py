import numpy as np
import pytest
import torch

from fmrikernels.constants import ROWS_TILING
from fmrikernels.kernels import separable_launch_config
from fmrikernels.utils import (
    ArrayBridge,
    DeviceManager,
    _grid_1d,
    _grid_2d,
    _grid_3d,
    _validate_mask,
    _validate_taps,
    _validate_volume,
)


def test_grid_helpers_cover_every_element():
    assert _grid_1d(1000) == (4, 256)
    assert _grid_2d(33, 9, (32, 8)) == ((2, 2), (32, 8))
    grid, tpb = _grid_3d(64, 64, 30)
    assert grid == (4, 8, 8)
    assert tpb == (16, 8, 4)


def test_separable_launch_config_uses_launch_order():
    grid, block = separable_launch_config((30, 64, 64), ROWS_TILING.block, ROWS_TILING.repeats)
    assert grid == (2, 8, 4)
    assert block == (32, 8, 2)


def test_validate_volume():
    assert _validate_volume(np.zeros((2, 3, 4))) == (2, 3, 4)
    assert _validate_volume(torch.zeros(5, 2, 3, 4), (3, 4)) == (5, 2, 3, 4)
    with pytest.raises(ValueError, match="Expected volumes to be 4D"):
        _validate_volume(np.zeros((2, 3, 4)), (4,), "volumes")
    with pytest.raises(ValueError, match="must not be empty"):
        _validate_volume(np.zeros((2, 0, 4)))


def test_validate_mask_warns_for_non_binary_values():
    _validate_mask(np.array([[[0.0, 1.0]]]), (1, 1, 2))
    with pytest.warns(UserWarning):
        _validate_mask(torch.tensor([[[0.0, 0.3]]]), (1, 1, 2))
    with pytest.raises(ValueError, match="does not match"):
        _validate_mask(np.ones((1, 1, 3)), (1, 1, 2))


def test_validate_taps():
    taps = _validate_taps([1, 2, 3])
    assert taps.dtype == np.float32
    with pytest.raises(ValueError):
        _validate_taps(np.ones((3, 3)))


def test_array_bridge_keeps_caller_array_type():
    host = np.arange(6, dtype=np.float64).reshape(2, 3)

    bridge = ArrayBridge(host)
    out = bridge.to_host(bridge.to_device(host))
    assert isinstance(out, np.ndarray)
    assert out.dtype == np.float32
    np.testing.assert_array_equal(out, host)

    tensor = torch.from_numpy(host)
    bridge = ArrayBridge(tensor)
    assert bridge.is_torch and not bridge.on_cuda
    out = bridge.to_host(bridge.zeros((2, 2)))
    assert isinstance(out, torch.Tensor)
    assert not out.any()


def test_device_manager():
    tensor = torch.zeros(2)
    assert DeviceManager.get_device(tensor) == torch.device("cpu")
    assert DeviceManager.ensure_device(tensor, torch.device("cpu")) is tensor
