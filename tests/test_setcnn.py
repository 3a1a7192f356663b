import pytest
import torch

from convnp.architectures import SetConv, rbf


def test_rbf():
    assert rbf(torch.tensor(0.0)) == 1
    assert rbf(torch.tensor(100.0)) < 1e-20


def test_density_channel():
    set_conv = SetConv(2, length_scale=0.1, is_density=True)
    keys = torch.tensor([[[0.0]]])
    values = torch.tensor([[[2.5]]])
    queries = torch.tensor([[[0.0], [10.0]]])

    out = set_conv(keys, queries, values)

    assert out.shape == (1, 2, 2)
    # density, then signal normalised by it
    assert out[0, 0, 0].item() == pytest.approx(1.0)
    assert out[0, 0, 1].item() == pytest.approx(2.5)
    assert out[0, 1, 0].item() == pytest.approx(0.0)


def test_shapes():
    set_conv = SetConv(3, length_scale=0.5, is_density=True)
    keys, values = torch.randn(4, 6, 1), torch.randn(4, 6, 2)
    queries = torch.randn(4, 9, 1)
    assert set_conv(keys, queries, values).shape == (4, 9, 3)

    set_conv = SetConv(2, length_scale=0.5)
    assert set_conv(keys, queries, values).shape == (4, 9, 2)


def test_empty_keys():
    set_conv = SetConv(2, length_scale=0.5, is_density=True)
    out = set_conv(torch.zeros(3, 0, 1), torch.randn(3, 5, 1), torch.zeros(3, 0, 1))
    assert out.shape == (3, 5, 2)
    assert torch.equal(out, torch.zeros(3, 5, 2))


def test_channel_mismatch():
    set_conv = SetConv(3, length_scale=0.5)
    with pytest.raises(ValueError):
        set_conv(torch.randn(1, 2, 1), torch.randn(1, 2, 1), torch.randn(1, 2, 2))


def test_length_scales_are_learned():
    set_conv = SetConv(2, length_scale=0.3, is_density=True)
    assert torch.allclose(set_conv.length_scales, torch.full((2,), 0.3))

    out = set_conv(torch.randn(2, 4, 1), torch.randn(2, 5, 1), torch.randn(2, 4, 1))
    out.sum().backward()
    assert set_conv.log_length_scales.grad is not None
