from functools import partial

import numpy as np
import pytest
import torch

from convnp.architectures import build_conv
from convnp.utils.helpers import set_seed


def generate_sine_data(batch_size, n_cntxt, n_trgt, x_range=(-2, 2), noise_std=0.05):
    """Helper to generate context and target sets of random shifted sines."""
    n_points = n_cntxt + n_trgt
    x = np.random.uniform(*x_range, size=(batch_size, n_points, 1))
    shift = np.random.uniform(-1, 1, size=(batch_size, 1, 1))
    y = np.sin(np.pi * (x + shift)) + noise_std * np.random.randn(*x.shape)

    x, y = torch.from_numpy(x).float(), torch.from_numpy(y).float()
    return x[:, :n_cntxt], y[:, :n_cntxt], x[:, n_cntxt:], y[:, n_cntxt:]


@pytest.fixture(autouse=True)
def seed():
    set_seed(123)


@pytest.fixture
def sine_task():
    """Batch of 4 tasks with 3 context and 5 target points."""
    return generate_sine_data(batch_size=4, n_cntxt=3, n_trgt=5)


@pytest.fixture
def small_cnn():
    """Factory of small convolutional decoders, to keep tests fast."""
    return partial(build_conv, receptive_field=1.0, n_layers=2, n_channels=8)
