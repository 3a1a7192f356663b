"""Batched linear algebra with hand written reverse-mode rules.

Matrix axes are always the two trailing axes, everything before them is batch.
"""
import torch
from torch.autograd import Function

from .base import register_operation, sum_to_shape

__all__ = [
    "to_rank",
    "batched_transpose",
    "batched_mul",
    "diagonal",
    "compute_dists2",
]


def _identity(x):
    return x


def to_rank(rank, x):
    """
    Coerce `x` to a `rank`-tensor by flattening (or padding) its leading batch axes.

    Parameters
    ----------
    rank : int
        Desired rank, at least 2.

    x : torch.Tensor

    Return
    ------
    x_rank : torch.Tensor, dim=rank

    back : callable
        Maps a tensor with the same (flattened) batch axes as `x_rank` back to the
        batch axes of `x`. `back(x_rank).shape == x.shape`.
    """
    if rank < 2:
        raise ValueError(f"rank={rank} has to be at least 2.")

    if x.dim() == rank:
        return x, _identity

    if x.dim() < rank:
        n_padded = rank - x.dim()
        x_rank = x.reshape(*([1] * n_padded), *x.shape)

        def back(y):
            return y.reshape(*y.shape[n_padded:])

        return x_rank, back

    n_batch = x.dim() - rank + 1
    batch_shape = x.shape[:n_batch]
    x_rank = x.reshape(-1, *x.shape[n_batch:])

    def back(y):
        return y.reshape(*batch_shape, *y.shape[1:])

    return x_rank, back


@register_operation("batched_transpose")
class BatchedTranspose(Function):
    """Swap the two matrix axes, batch axes untouched."""

    @staticmethod
    def forward(ctx, x):
        return x.transpose(-2, -1).clone()

    @staticmethod
    def backward(ctx, grad_output):
        return grad_output.transpose(-2, -1)


def batched_transpose(x):
    """Transpose the matrices of `x`. size=[*batch, n, m] -> [*batch, m, n]."""
    return BatchedTranspose.apply(x)


def _broadcast_batch(x, y):
    """Expand the batch axes of `x` and `y` against each other (size 1 axes stretch)."""
    x_batch, y_batch = x.shape[:-2], y.shape[:-2]
    if len(x_batch) == 0 or len(y_batch) == 0 or x_batch == y_batch:
        return x, y

    for x_size, y_size in zip(reversed(x_batch), reversed(y_batch)):
        if x_size != y_size and 1 not in (x_size, y_size):
            raise ValueError(
                f"Cannot batch multiply tensors of batch shapes {tuple(x_batch)} and "
                f"{tuple(y_batch)}. They should broadcast or one input should be a matrix."
            )

    batch_shape = torch.broadcast_shapes(x_batch, y_batch)
    return (
        x.expand(*batch_shape, *x.shape[-2:]),
        y.expand(*batch_shape, *y.shape[-2:]),
    )


@register_operation("batched_mul")
class BatchedMul(Function):
    """Matrix product on the trailing axes, broadcast over the batch axes."""

    @staticmethod
    def forward(ctx, x, y):
        x_full, y_full = _broadcast_batch(x, y)
        x3, back_x = to_rank(3, x_full)
        y3, back_y = to_rank(3, y_full)
        # un-coerce with the input which carries the batch axes
        back = back_x if x_full.dim() >= y_full.dim() else back_y

        ctx.save_for_backward(x3, y3)
        ctx.shapes = (x.shape, y.shape, x_full.shape, y_full.shape)
        return back(torch.matmul(x3, y3))

    @staticmethod
    def backward(ctx, grad_output):
        x3, y3 = ctx.saved_tensors
        x_shape, y_shape, x_full_shape, y_full_shape = ctx.shapes
        grad3, _ = to_rank(3, grad_output)
        grad_x = grad_y = None

        if ctx.needs_input_grad[0]:
            # size = [batch, n, m]
            grad_x = torch.matmul(grad3, y3.transpose(-2, -1))
            grad_x = sum_to_shape(grad_x, x3.shape).reshape(x_full_shape)
            grad_x = sum_to_shape(grad_x, x_shape)

        if ctx.needs_input_grad[1]:
            # size = [batch, m, k]
            grad_y = torch.matmul(x3.transpose(-2, -1), grad3)
            grad_y = sum_to_shape(grad_y, y3.shape).reshape(y_full_shape)
            grad_y = sum_to_shape(grad_y, y_shape)

        return grad_x, grad_y


def batched_mul(x, y):
    """Batched matrix product. size=[*batch, n, m] x [*batch, m, k] -> [*batch, n, k]."""
    return BatchedMul.apply(x, y)


@register_operation("diagonal")
class Diagonal(Function):
    """Embed the trailing axis of a tensor as the diagonal of matrices."""

    @staticmethod
    def forward(ctx, x):
        return torch.diag_embed(x)

    @staticmethod
    def backward(ctx, grad_output):
        return torch.diagonal(grad_output, dim1=-2, dim2=-1)


def diagonal(x):
    """Turn vectors into diagonal matrices. size=[*batch, n] -> [*batch, n, n]."""
    return Diagonal.apply(x)


def compute_dists2(x, y):
    """
    Batched pairwise squared euclidean distances.

    Parameters
    ----------
    x : torch.Tensor, size=[*batch, n, x_dim]
        Points corresponding to the rows of the distance matrices.

    y : torch.Tensor, size=[*batch, m, x_dim]
        Points corresponding to the columns of the distance matrices.

    Return
    ------
    dists2 : torch.Tensor, size=[*batch, n, m]
    """
    if x.shape[-1] == 1:
        return (x - batched_transpose(y)) ** 2

    y_t = batched_transpose(y)
    return (
        (x ** 2).sum(-1, keepdim=True)
        + (y_t ** 2).sum(-2, keepdim=True)
        - 2 * batched_mul(x, y_t)
    )
