"""Output heads mapping the decoded grid to the predictive (mean, var) at the targets."""
import torch
import torch.nn as nn

from convnp.ops import softplus, split_mu_sigma
from convnp.utils.helpers import get_pooling
from convnp.utils.initialization import inverse_softplus, weights_init

from .setcnn import SetConv

__all__ = [
    "FixedNoise",
    "AmortisedNoise",
    "HeteroscedasticNoise",
    "build_noise_model",
]


class FixedNoise(nn.Module):
    """
    Single learned variance shared by every output.

    Parameters
    ----------
    y_dim : int
        Dimension of y values.

    length_scale : float
        Initial length scale of the set convolution from the grid to the targets.

    init_var : float, optional
        Initial value of the variance.

    min_var : float, optional
        Floor on the variance.

    context : ExecutionContext, optional
        Execution context of the primitives.
    """

    def __init__(self, y_dim, length_scale, init_var=0.1, min_var=1e-4, context=None):
        super().__init__()
        self.y_dim = y_dim
        self.n_in_channels = y_dim
        self.min_var = min_var
        self.init_var = init_var
        self.grid_to_trgt = SetConv(y_dim, length_scale, context=context)
        self.raw_var = nn.Parameter(torch.zeros(1))
        self.reset_parameters()

    def reset_parameters(self):
        nn.init.constant_(self.raw_var, inverse_softplus(self.init_var - self.min_var))

    def forward(self, X_grid, R_grid, X_trgt):
        # size = [batch_size, n_trgt, y_dim]
        mean = self.grid_to_trgt(X_grid, X_trgt, R_grid)
        var = self.min_var + softplus(self.raw_var)
        return mean, var.expand_as(mean)


class AmortisedNoise(nn.Module):
    """
    Variance predicted from a summary channel produced by the decoder CNN, pooled over
    the grid and broadcast to every output point.

    The decoder CNN outputs `y_dim + 1` channels on the grid: the first `y_dim` are
    interpolated to the targets as the mean, the last one is the summary. The summary is
    thus not the encoder representation but an extra channel that the decoder CNN learns.

    Parameters
    ----------
    y_dim : int
        Dimension of y values.

    length_scale : float
        Initial length scale of the set convolution from the grid to the targets.

    pooling_type : {"mean", "sum"}, optional
        How to pool the summary channel over the grid.

    min_var : float, optional
        Floor on the variance.

    context : ExecutionContext, optional
        Execution context of the primitives.
    """

    def __init__(
        self, y_dim, length_scale, pooling_type="mean", min_var=1e-4, context=None
    ):
        super().__init__()
        self.y_dim = y_dim
        # the decoder CNN outputs one extra channel: the summary used for the variance
        self.n_in_channels = y_dim + 1
        self.min_var = min_var
        self.pool = get_pooling(pooling_type)
        self.grid_to_trgt = SetConv(y_dim, length_scale, context=context)
        self.summary_to_var = nn.Linear(1, y_dim)
        self.reset_parameters()

    def reset_parameters(self):
        weights_init(self)

    def forward(self, X_grid, R_grid, X_trgt):
        R_mean, R_summary = R_grid[..., : self.y_dim], R_grid[..., self.y_dim :]

        # size = [batch_size, n_trgt, y_dim]
        mean = self.grid_to_trgt(X_grid, X_trgt, R_mean)

        # size = [batch_size, 1, 1]
        summary = self.pool(R_summary, dim=-2)

        # size = [batch_size, 1, y_dim]
        var = self.min_var + softplus(self.summary_to_var(summary))

        return mean, var.expand_as(mean)


class HeteroscedasticNoise(nn.Module):
    """
    One (mean, var) pair predicted per target point.

    Parameters
    ----------
    y_dim : int
        Dimension of y values.

    length_scale : float
        Initial length scale of the set convolution from the grid to the targets.

    min_var : float, optional
        Floor on the variance.

    context : ExecutionContext, optional
        Execution context of the primitives.
    """

    def __init__(self, y_dim, length_scale, min_var=1e-4, context=None):
        super().__init__()
        self.y_dim = y_dim
        self.n_in_channels = 2 * y_dim
        self.min_var = min_var
        self.grid_to_trgt = SetConv(2 * y_dim, length_scale, context=context)

    def forward(self, X_grid, R_grid, X_trgt):
        # size = [batch_size, n_trgt, 2*y_dim]
        suffstat = self.grid_to_trgt(X_grid, X_trgt, R_grid)
        return split_mu_sigma(suffstat, dim=-1, min_var=self.min_var)


NOISE_TYPES = {
    "fixed": FixedNoise,
    "amortised": AmortisedNoise,
    "heteroscedastic": HeteroscedasticNoise,
    "het": HeteroscedasticNoise,
}


def build_noise_model(
    noise_type, y_dim, length_scale, pooling_type="mean", context=None, **kwargs
):
    """
    Build the output head of a ConvNP.

    Parameters
    ----------
    noise_type : {"fixed", "amortised", "heteroscedastic"}
        How the predictive variance is parametrized. `"het"` is an alias for
        `"heteroscedastic"`.

    y_dim : int
        Dimension of y values.

    length_scale : float
        Initial length scale of the set convolution from the grid to the targets.

    pooling_type : {"mean", "sum"}, optional
        Pooling of the summary channel. Only used if `noise_type="amortised"`.

    context : ExecutionContext, optional
        Execution context of the primitives.

    kwargs :
        Additional arguments to the head.

    Return
    ------
    n_channels : int
        Number of channels the decoder has to output.

    noise : nn.Module
    """
    try:
        Noise = NOISE_TYPES[noise_type.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown noise_type={noise_type}. Should be one of {list(NOISE_TYPES)}."
        ) from None

    if Noise is AmortisedNoise:
        kwargs["pooling_type"] = pooling_type

    noise = Noise(y_dim, length_scale, context=context, **kwargs)
    return noise.n_in_channels, noise
