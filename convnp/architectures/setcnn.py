import math

import torch
import torch.nn as nn

from convnp.backend import ExecutionContext
from convnp.ops import compute_dists2, insert_dim, repeat_cat

__all__ = ["SetConv", "rbf"]


def rbf(dists2):
    """Exponentiated quadratic kernel evaluated at squared distances `dists2`."""
    return torch.exp(-0.5 * dists2)


class SetConv(nn.Module):
    """Applies a convolution over a set of inputs, i.e. generalizes `nn._ConvNd`
    to non uniformly sampled samples [1].

    Parameters
    ----------
    n_channels : int
        Number of channels, including the density channel if `is_density`. Each channel
        has its own length scale.

    length_scale : float
        Initial length scale of the RBF kernel. A good default is twice the grid spacing.

    is_density : bool, optional
        Whether to prepend a density channel (the kernel mass at each query) and
        normalise the other channels by it. Used when going from a set of points to the
        grid, not when going from the grid back to points.

    context : ExecutionContext, optional
        Execution context of the primitives.

    References
    ----------
    [1] Gordon, Jonathan, et al. "Convolutional conditional neural processes." arXiv preprint
    arXiv:1910.13556 (2019).
    """

    def __init__(self, n_channels, length_scale, is_density=False, context=None):
        super().__init__()
        self.n_channels = n_channels
        self.is_density = is_density
        self.init_length_scale = length_scale
        self.context = context if context is not None else ExecutionContext()
        self.log_length_scales = nn.Parameter(torch.zeros(n_channels))
        self.reset_parameters()

    def reset_parameters(self):
        nn.init.constant_(self.log_length_scales, math.log(self.init_length_scale))

    @property
    def length_scales(self):
        return torch.exp(self.log_length_scales)

    def forward(self, keys, queries, values):
        """
        Compute the set convolution between {key, value} and {query}.

        Parameters
        ----------
        keys : torch.Tensor, size=[batch_size, n_keys, x_dim]
        queries : torch.Tensor, size=[batch_size, n_queries, x_dim]
        values : torch.Tensor, size=[batch_size, n_keys, in_channels]
            `in_channels` is `n_channels - 1` if `is_density` else `n_channels`.

        Return
        ------
        targets : torch.Tensor, size=[batch_size, n_queries, n_channels]
            If `is_density`, channel 0 is the density channel.
        """
        backend = self.context.backend_for(values)

        if self.is_density:
            # size = [batch_size, n_keys, n_channels]
            values = repeat_cat(backend.ones(1, 1, 1), values, dim=-1)

        if values.shape[-1] != self.n_channels:
            raise ValueError(
                f"Expected {self.n_channels} channels, got {values.shape[-1]} "
                f"(is_density={self.is_density})."
            )

        # size = [batch_size, n_keys, n_queries, 1]
        dists2 = insert_dim(compute_dists2(keys, queries), pos=-1)

        # size = [batch_size, n_keys, n_queries, n_channels]
        weights = rbf(dists2 / self.length_scales ** 2)

        # size = [batch_size, n_queries, n_channels]
        targets = (weights * insert_dim(values, pos=2)).sum(dim=1)

        if self.is_density:
            density, signal = targets[..., :1], targets[..., 1:]
            signal = signal / (density + 1e-8)
            targets = torch.cat([density, signal], dim=-1)

        return targets

    def extra_repr(self):
        return f"n_channels={self.n_channels}, is_density={self.is_density}"
