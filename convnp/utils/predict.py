import numpy as np
import torch

__all__ = ["predict"]


def _to_batch(x, like):
    """Convert a one dimensional array of size [n] (or [n, 1]) to a [1, n, 1] tensor."""
    x = torch.as_tensor(np.asarray(x), dtype=like.dtype, device=like.device)
    return x.reshape(1, -1, 1)


def _to_numpy(t):
    return t.detach().cpu().numpy()


def predict(model, x_context, y_context, x_target, n_samples=3):
    """
    Predict a single task with one dimensional inputs and outputs.

    Parameters
    ----------
    model : nn.Module
        `ConvCNP`, `ConvLNP` or `CorrelatedConvCNP`.

    x_context, y_context : array-like, size=[n_cntxt]
        Context set.

    x_target : array-like, size=[n_trgt]
        Where to predict.

    n_samples : int, optional
        Number of samples to return for models that can be sampled from jointly.

    Return
    ------
    mean : np.ndarray, size=[n_trgt]

    lower, upper : np.ndarray, size=[n_trgt]
        Bounds of the `mean +/- 2 std` band.

    samples : np.ndarray, size=[n_samples, n_trgt] or None
        Function samples. `None` for conditional models with independent outputs.
    """
    like = next(model.parameters())
    X_cntxt, Y_cntxt, X_trgt = (
        _to_batch(x, like) for x in (x_context, y_context, x_target)
    )

    was_training = model.training
    model.eval()

    with torch.no_grad():
        if hasattr(model, "latent_forward"):
            # size = [n_z_samples, n_trgt]
            mean, var = (t[:, 0, :, 0] for t in model(X_cntxt, Y_cntxt, X_trgt))
            samples = mean[:n_samples]
            # moments of the uniform mixture over latent samples
            mixture_mean = mean.mean(0)
            var = (var + mean ** 2).mean(0) - mixture_mean ** 2
            mean = mixture_mean
        else:
            mean, var_or_cov = model(X_cntxt, Y_cntxt, X_trgt)
            if var_or_cov.dim() == mean.dim() + 1:
                # size = [n_trgt] and [n_trgt, n_trgt]
                mean, cov = mean[0], var_or_cov[0]
                var = torch.diagonal(cov)
                L = torch.linalg.cholesky(cov)
                noise = torch.randn(
                    mean.shape[0], n_samples, dtype=mean.dtype, device=mean.device
                )
                samples = (L @ noise).T + mean
            else:
                mean, var = mean[0, :, 0], var_or_cov[0, :, 0]
                samples = None

    model.train(was_training)

    std = torch.sqrt(var.clamp(min=0))
    samples = None if samples is None else _to_numpy(samples)
    return _to_numpy(mean), _to_numpy(mean - 2 * std), _to_numpy(mean + 2 * std), samples
