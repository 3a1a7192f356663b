"""Gaussian log densities, divergences and reparameterised sampling."""
import math

import torch
from torch.autograd import Function

from convnp.backend import Backend

from .base import register_operation, sum_to_shape

__all__ = [
    "gaussian_logpdf",
    "mvn_logpdf",
    "gaussian_kl",
    "reparameterised_sample",
    "sample_gaussian",
]

LOG_2PI = math.log(2 * math.pi)


@register_operation("gaussian_logpdf")
class GaussianLogpdf(Function):
    @staticmethod
    def forward(ctx, x, mean, var):
        # rolled out elementwise, one kernel per term
        logdet = torch.log(var)
        diff = x - mean
        quad = diff * diff
        quad = quad / var
        total = LOG_2PI + logdet
        total = total + quad

        ctx.save_for_backward(diff, var)
        ctx.shapes = (x.shape, mean.shape, var.shape)
        return -total / 2

    @staticmethod
    def backward(ctx, grad_output):
        diff, var = ctx.saved_tensors
        x_shape, mean_shape, var_shape = ctx.shapes

        scaled = diff / var
        grad_x = -grad_output * scaled
        grad_mean = grad_output * scaled
        grad_var = grad_output * (scaled * scaled - 1 / var) / 2

        return (
            sum_to_shape(grad_x, x_shape),
            sum_to_shape(grad_mean, mean_shape),
            sum_to_shape(grad_var, var_shape),
        )


def gaussian_logpdf(x, mean, var):
    """
    Elementwise log density of a one dimensional Gaussian.

    Parameters
    ----------
    x : torch.Tensor
        Values at which to evaluate the log density.

    mean : torch.Tensor
        Means, broadcastable to `x`.

    var : torch.Tensor
        Strictly positive variances, broadcastable to `x`.
    """
    return GaussianLogpdf.apply(x, mean, var)


@register_operation("mvn_logpdf")
class MultivariateGaussianLogpdf(Function):
    @staticmethod
    def forward(ctx, x, mean, cov):
        n = x.shape[-1]

        # upper triangular factor, cov = U^T U. Raises if cov is not positive definite
        U = torch.linalg.cholesky(cov, upper=True)
        L = U.transpose(-2, -1)

        # size = [*batch, n, 1]
        z = torch.linalg.solve_triangular(L, (x - mean).unsqueeze(-1), upper=False)

        # diagonal of U rather than L: same values, no strided view
        logdet = 2 * torch.log(torch.diagonal(U, dim1=-2, dim2=-1)).sum(-1)
        quad = (z * z).sum(dim=(-2, -1))

        ctx.save_for_backward(U, z)
        ctx.shapes = (x.shape, mean.shape)
        return -(n * LOG_2PI + logdet + quad) / 2

    @staticmethod
    def backward(ctx, grad_output):
        U, z = ctx.saved_tensors
        x_shape, mean_shape = ctx.shapes
        n = U.shape[-1]
        L = U.transpose(-2, -1)

        # size = [*batch, n, 1]
        u = torch.linalg.solve_triangular(U, z, upper=True)

        eye = Backend.from_tensor(U).eye(n)
        cov_inv = torch.linalg.solve_triangular(
            U, torch.linalg.solve_triangular(L, eye, upper=False), upper=True
        )

        grad = grad_output.unsqueeze(-1).unsqueeze(-1)
        grad_x = (-grad * u).squeeze(-1)
        grad_mean = (grad * u).squeeze(-1)
        grad_cov = grad * (u * u.transpose(-2, -1) - cov_inv) / 2

        return (
            sum_to_shape(grad_x, x_shape),
            sum_to_shape(grad_mean, mean_shape),
            grad_cov,
        )


def mvn_logpdf(x, mean, cov):
    """
    Log density of multivariate Gaussians, batched over the leading dimensions.

    Parameters
    ----------
    x : torch.Tensor, size=[*batch, n]

    mean : torch.Tensor, size=[*batch, n]

    cov : torch.Tensor, size=[*batch, n, n]
        Symmetric positive definite covariance matrices.

    Return
    ------
    logpdf : torch.Tensor, size=[*batch]
    """
    return MultivariateGaussianLogpdf.apply(x, mean, cov)


def gaussian_kl(mean_p, var_p, mean_q, var_q):
    """Elementwise KL[p||q] between one dimensional Gaussians parametrized by variances."""
    logdet = torch.log(var_q / var_p)
    diff = mean_p - mean_q
    quad = (var_p + diff * diff) / var_q
    return (logdet + quad - 1) / 2


@register_operation("reparameterised_sample")
class ReparameterisedSample(Function):
    """Affine transform `mean + sqrt(var) * noise` of an independent noise source."""

    @staticmethod
    def forward(ctx, mean, var, noise):
        std = torch.sqrt(var)
        ctx.save_for_backward(std, noise)
        ctx.shapes = (mean.shape, var.shape)
        return mean + std * noise

    @staticmethod
    def backward(ctx, grad_output):
        std, noise = ctx.saved_tensors
        mean_shape, var_shape = ctx.shapes

        grad_mean = sum_to_shape(grad_output, mean_shape)
        grad_var = sum_to_shape(grad_output * noise / (2 * std), var_shape)

        # the noise is an input of the sampler, not of the model
        return grad_mean, grad_var, None


def reparameterised_sample(mean, var, noise):
    """Differentiable sample of N(mean, var) given standard normal `noise`."""
    return ReparameterisedSample.apply(mean, var, noise)


def sample_gaussian(mean, var, n_samples=1, backend=None, generator=None):
    """
    Draw `n_samples` reparameterised samples from N(mean, var).

    Return
    ------
    samples : torch.Tensor, size=[n_samples, *mean.shape]
    """
    if backend is None:
        backend = Backend.from_tensor(mean)
    noise = backend.randn(n_samples, *mean.shape, generator=generator)
    return reparameterised_sample(mean, var, noise)
