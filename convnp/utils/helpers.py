import math
import random

import numpy as np
import torch

__all__ = [
    "channels_to_2nd_dim",
    "channels_to_last_dim",
    "ceil_odd",
    "count_parameters",
    "set_seed",
    "make_depth_sep_conv",
    "mean_pool",
    "sum_pool",
    "get_pooling",
]


def channels_to_2nd_dim(X):
    """
    Takes a signal with channels on the last dimension (for most operations) and
    returns it with channels on the second dimension (for convolutions).
    """
    return X.permute(*([0, X.dim() - 1] + list(range(1, X.dim() - 1))))


def channels_to_last_dim(X):
    """
    Takes a signal with channels on the second dimension (for convolutions) and
    returns it with channels on the last dimension (for most operations).
    """
    return X.permute(*([0] + list(range(2, X.dim())) + [1]))


def ceil_odd(x):
    """Smallest odd integer greater or equal to `x`."""
    return int(math.ceil((x - 1) / 2) * 2 + 1)


def count_parameters(model):
    """Count the number of trainable parameters in a model."""
    return sum([p.numel() for p in model.parameters() if p.requires_grad])


def set_seed(seed):
    """Set the random seed."""
    if seed is not None:
        torch.manual_seed(seed)
        torch.cuda.manual_seed(seed)
        random.seed(seed)
        np.random.seed(seed)


def make_depth_sep_conv(Conv):
    """Make a convolution module depth separable."""

    class DepthSepConv(torch.nn.Module):
        """Make a convolution depth separable.

        Parameters
        ----------
        in_channels : int
            Number of input channels.

        out_channels : int
            Number of output channels.

        kernel_size : int

        **kwargs :
            Additional arguments to `Conv`
        """

        def __init__(self, in_channels, out_channels, kernel_size, bias=True, **kwargs):
            super().__init__()
            self.depthwise = Conv(
                in_channels,
                in_channels,
                kernel_size,
                groups=in_channels,
                bias=bias,
                **kwargs
            )
            self.pointwise = Conv(in_channels, out_channels, 1, bias=bias)

        def forward(self, x):
            return self.pointwise(self.depthwise(x))

    return DepthSepConv


def mean_pool(t, dim, keepdim=True):
    """Average `t` over `dim`."""
    return t.mean(dim=dim, keepdim=keepdim)


def sum_pool(t, dim, keepdim=True):
    """Sum `t` over `dim`."""
    return t.sum(dim=dim, keepdim=keepdim)


POOLINGS = {"mean": mean_pool, "sum": sum_pool}


def get_pooling(pooling_type):
    """Return the pooling function `pool(t, dim, keepdim=True)` called `pooling_type`."""
    try:
        return POOLINGS[pooling_type.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown pooling_type={pooling_type}. Should be one of {list(POOLINGS)}."
        ) from None
