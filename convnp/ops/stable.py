"""Numerically stable reductions and activations."""
import torch
from torch.autograd import Function

from .base import register_operation

__all__ = ["logsumexp", "softmax", "softplus"]


def _normalize_dims(x, dim):
    if dim is None:
        return tuple(range(x.dim()))
    if isinstance(dim, int):
        dim = (dim,)
    return tuple(sorted(d % x.dim() for d in dim))


def _squeeze_dims(x, dims):
    for d in reversed(dims):
        x = x.squeeze(d)
    return x


def _unsqueeze_dims(x, dims):
    for d in dims:
        x = x.unsqueeze(d)
    return x


def _must_work(x, dims):
    """Whether reducing `x` over `dims` is more than a no-op."""
    return any(x.shape[d] > 1 for d in dims)


def _stable_max(x, dims):
    # the max is a constant for the rules below: it never enters the graph
    u = torch.amax(x, dim=dims, keepdim=True)
    return torch.where(torch.isfinite(u), u, torch.zeros_like(u))


@register_operation("logsumexp")
class LogSumExp(Function):
    @staticmethod
    def forward(ctx, x, dims, keepdim):
        u = _stable_max(x, dims)
        out = u + torch.log(torch.exp(x - u).sum(dim=dims, keepdim=True))

        ctx.save_for_backward(x, out)
        ctx.dims = dims
        ctx.keepdim = keepdim

        if not keepdim:
            out = _squeeze_dims(out, dims)
        return out

    @staticmethod
    def backward(ctx, grad_output):
        x, out = ctx.saved_tensors
        if not ctx.keepdim:
            grad_output = _unsqueeze_dims(grad_output, ctx.dims)
        # slices that are entirely -inf (or hold +inf) do not move the output
        weights = torch.where(torch.isfinite(out), torch.exp(x - out), torch.zeros_like(x))
        return grad_output * weights, None, None


def logsumexp(x, dim=None, keepdim=True):
    """
    Safe log-sum-exp reduction of `x` along `dim`.

    Parameters
    ----------
    x : torch.Tensor

    dim : int or tuple of int, optional
        Dimensions to reduce. `None` reduces all of them.

    keepdim : bool, optional
        Whether to keep the reduced dimensions as singletons.

    Notes
    -----
    - If every reduced dimension has size 1 there is nothing to do and `x` is returned as
    is (squeezed if `keepdim=False`).
    """
    dims = _normalize_dims(x, dim)

    if not _must_work(x, dims):
        return x if keepdim else _squeeze_dims(x, dims)

    return LogSumExp.apply(x, dims, keepdim)


@register_operation("softmax")
class Softmax(Function):
    @staticmethod
    def forward(ctx, x, dims):
        out = torch.exp(x - _stable_max(x, dims))
        out = out / out.sum(dim=dims, keepdim=True)
        ctx.save_for_backward(out)
        ctx.dims = dims
        return out

    @staticmethod
    def backward(ctx, grad_output):
        (out,) = ctx.saved_tensors
        inner = (grad_output * out).sum(dim=ctx.dims, keepdim=True)
        return out * (grad_output - inner), None


def softmax(x, dim=None):
    """Safe softmax of `x` along `dim` (all dimensions if `None`)."""
    return Softmax.apply(x, _normalize_dims(x, dim))


@register_operation("softplus")
class Softplus(Function):
    @staticmethod
    def forward(ctx, x):
        ctx.save_for_backward(x)
        out = torch.log1p(torch.exp(-x.abs())) + torch.clamp(x, min=0)
        # `log1p(exp(x))` underflows to 0 below about -104 in float32
        return torch.clamp(out, min=torch.finfo(out.dtype).tiny)

    @staticmethod
    def backward(ctx, grad_output):
        (x,) = ctx.saved_tensors
        return grad_output * torch.sigmoid(x)


def softplus(x):
    """Safe softplus `log(1 + exp(x))`, elementwise. Strictly positive for finite `x`."""
    return Softplus.apply(x)
