"""Broadcasting-safe concatenation and splitting."""
import torch
from torch.autograd import Function

from .base import register_operation, sum_to_shape
from .stable import softplus

__all__ = ["repeat_cat", "split", "split_mu_sigma", "insert_dim"]


def _repeat_plan(xs, dim):
    """Return the padded and expanded shape of each input, validating compatibility."""
    max_rank = max(x.dim() for x in xs)
    dim = dim % max_rank

    padded_shapes = [(1,) * (max_rank - x.dim()) + tuple(x.shape) for x in xs]
    # largest size of each dim, an empty dim (size 0) wins over singletons
    max_shape = [
        max(sizes) if min(sizes) > 0 else min(sizes) for sizes in zip(*padded_shapes)
    ]

    plan = []
    for padded_shape in padded_shapes:
        expanded_shape = list(padded_shape)
        for d, (size, max_size) in enumerate(zip(padded_shape, max_shape)):
            if d == dim:
                # never repeat along the concatenation dimension
                continue
            if size not in (1, max_size):
                raise ValueError(
                    f"Cannot repeat_cat shapes {[tuple(x.shape) for x in xs]} along "
                    f"dim={dim}: size {size} at dim={d} is neither 1 nor {max_size}."
                )
            expanded_shape[d] = max_size
        plan.append((padded_shape, tuple(expanded_shape)))

    return dim, plan


@register_operation("repeat_cat")
class RepeatCat(Function):
    @staticmethod
    def forward(ctx, dim, plan, *xs):
        ctx.dim = dim
        ctx.shapes = [x.shape for x in xs]
        ctx.sizes = [expanded[dim] for _, expanded in plan]
        return torch.cat(
            [
                x.reshape(padded).expand(*expanded)
                for x, (padded, expanded) in zip(xs, plan)
            ],
            dim=dim,
        )

    @staticmethod
    def backward(ctx, grad_output):
        grads = grad_output.split(ctx.sizes, dim=ctx.dim)
        grads = [sum_to_shape(g, shape) for g, shape in zip(grads, ctx.shapes)]
        return (None, None, *grads)


def repeat_cat(*xs, dim):
    """
    Concatenate tensors along `dim` after repeating them along every other dimension
    to the largest size among the inputs.

    Parameters
    ----------
    xs : torch.Tensor
        Tensors to concatenate. Lower rank tensors are padded with leading singleton
        dimensions. Along every dimension but `dim`, sizes must be 1 or the maximum size.

    dim : int
        Dimension to concatenate along (relative to the largest rank).
    """
    if len(xs) == 1:
        return xs[0]

    dim, plan = _repeat_plan(xs, dim)
    return RepeatCat.apply(dim, plan, *xs)


def split(x, dim=-1):
    """Split `x` into two halves along `dim`."""
    size = x.shape[dim]
    if size % 2 != 0:
        raise ValueError(f"Size of dimension {dim} must be even but is {size}.")
    return x.split(size // 2, dim=dim)


def split_mu_sigma(channels, dim=-1, min_var=0.0):
    """
    Split channels into means and variances along `dim`. The variances go through a
    softplus so that they are always positive.

    Parameters
    ----------
    channels : torch.Tensor, size=[..., 2*n_out, ...]

    dim : int, optional
        Channel dimension.

    min_var : float, optional
        Floor added to the variances.

    Return
    ------
    mean : torch.Tensor, size=[..., n_out, ...]

    var : torch.Tensor, size=[..., n_out, ...]
    """
    mean, transformed_var = split(channels, dim=dim)
    return mean, min_var + softplus(transformed_var)


def insert_dim(x, pos):
    """Insert a singleton dimension in `x` at position `pos`."""
    return x.unsqueeze(pos)
