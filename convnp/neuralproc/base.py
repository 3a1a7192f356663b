"""Module for the functional encoder shared by the convolutional neural processes."""
from collections import namedtuple

import torch.nn as nn

from convnp.ops import split_mu_sigma

__all__ = [
    "NPOutputs",
    "Deterministic",
    "LatentGaussianHead",
    "FunctionalAggregator",
    "validate_inputs",
]


# mean, var : size=[n_z_samples, batch_size, n_trgt, y_dim]
# z_samples : size=[n_z_samples, batch_size, n_grid, z_dim]
# q_zCc, q_zCct : (mean, var) tuples, each of size=[batch_size, n_grid, z_dim]. `q_zCct` is
# `None` unless the latent was inferred from the targets.
NPOutputs = namedtuple("NPOutputs", ["mean", "var", "z_samples", "q_zCc", "q_zCct"])


def validate_inputs(X_cntxt, Y_cntxt, X_trgt, x_dim, y_dim):
    """Check the shapes of a batch of context and target sets."""
    if X_cntxt.dim() != 3 or Y_cntxt.dim() != 3 or X_trgt.dim() != 3:
        raise ValueError(
            "Inputs should be of size [batch_size, n_points, dim] but got "
            f"X_cntxt={tuple(X_cntxt.shape)}, Y_cntxt={tuple(Y_cntxt.shape)}, "
            f"X_trgt={tuple(X_trgt.shape)}."
        )

    if X_cntxt.shape[:2] != Y_cntxt.shape[:2]:
        raise ValueError(
            f"X_cntxt={tuple(X_cntxt.shape)} and Y_cntxt={tuple(Y_cntxt.shape)} "
            "should have the same batch size and number of points."
        )

    if X_cntxt.shape[0] != X_trgt.shape[0]:
        raise ValueError(
            f"Context batch size {X_cntxt.shape[0]} != target batch size {X_trgt.shape[0]}."
        )

    if X_cntxt.shape[-1] != x_dim or X_trgt.shape[-1] != x_dim:
        raise ValueError(f"Features should be of dimension x_dim={x_dim}.")

    if Y_cntxt.shape[-1] != y_dim:
        raise ValueError(
            f"Values should be of dimension y_dim={y_dim} but got {Y_cntxt.shape[-1]}."
        )


class Deterministic(nn.Module):
    """Pointwise transform of a deterministic representation, i.e. the identity."""

    def forward(self, R):
        return R


class LatentGaussianHead(nn.Module):
    """
    Maps a representation on the grid to a factorized Gaussian over latent functions.

    Parameters
    ----------
    cnn : nn.Module
        Convolutional network on the grid outputting `2*z_dim` channels.

    min_var : float, optional
        Floor on the latent variances.
    """

    def __init__(self, cnn, min_var=1e-4):
        super().__init__()
        self.cnn = cnn
        self.min_var = min_var

    def forward(self, R):
        # size = [batch_size, n_grid, 2*z_dim]
        q_z_suffstat = self.cnn(R)
        # size = [batch_size, n_grid, z_dim] each
        return split_mu_sigma(q_z_suffstat, dim=-1, min_var=self.min_var)


class FunctionalAggregator(nn.Module):
    """
    Encodes a set of points into a functional representation on a uniform grid.

    Parameters
    ----------
    discretisation : UniformDiscretisation1d
        Computes the grid from the context and target features.

    set_conv : SetConv
        Density set convolution from the points to the grid. Its output has the density
        channel first.

    transform : nn.Module, optional
        Pointwise transform of the set convolved representation. `Deterministic` keeps it
        as is, `LatentGaussianHead` returns the (mean, var) of a latent distribution.
    """

    def __init__(self, discretisation, set_conv, transform=None):
        super().__init__()
        self.discretisation = discretisation
        self.set_conv = set_conv
        self.transform = Deterministic() if transform is None else transform

    def discretise(self, X_cntxt, X_trgt):
        """
        Return the grid covering the context and target features.

        Return
        ------
        X_grid : torch.Tensor, size=[batch_size, n_grid, 1]
        """
        batch_size = X_cntxt.shape[0]
        X_grid = self.discretisation(X_cntxt, X_trgt)
        return X_grid.view(1, -1, 1).expand(batch_size, X_grid.shape[0], 1)

    def aggregate(self, X_grid, X, Y):
        """
        Encode the set {(x, y)} on a precomputed grid.

        Return
        ------
        representation : torch.Tensor, size=[batch_size, n_grid, y_dim + 1]
            Or the output of `transform`.
        """
        # channel 0 is the density
        R_grid = self.set_conv(X, X_grid, Y)
        return self.transform(R_grid)

    def forward(self, X_cntxt, Y_cntxt, X_trgt):
        """
        Parameters
        ----------
        X_cntxt: torch.Tensor, size=[batch_size, n_cntxt, 1]

        Y_cntxt: torch.Tensor, size=[batch_size, n_cntxt, y_dim]

        X_trgt: torch.Tensor, size=[batch_size, n_trgt, 1]

        Return
        ------
        X_grid : torch.Tensor, size=[batch_size, n_grid, 1]

        representation : torch.Tensor or tuple
            Functional representation of the context set on `X_grid`.
        """
        X_grid = self.discretise(X_cntxt, X_trgt)
        return X_grid, self.aggregate(X_grid, X_cntxt, Y_cntxt)
