"""Module for all the losses of convolutional neural processes."""
import abc
import math

import torch.nn as nn

from convnp.backend import Backend
from convnp.neuralproc import NPOutputs
from convnp.ops import gaussian_kl, gaussian_logpdf, logsumexp, mvn_logpdf

__all__ = [
    "CNPFLoss",
    "ELBOLossLNPF",
    "NLLLossLNPF",
    "CorrelatedNLLLoss",
    "exponential_ridge_decay",
]


def sum_from_nth_dim(t, dim):
    """Sum all dims from `dim`. E.g. sum_after_nth_dim(torch.rand(2,3,4,5), 2).shape = [2,3]"""
    return t.reshape(*t.shape[:dim], -1).sum(-1)


def sum_log_prob(mean, var, sample):
    """Compute the Gaussian log density then sum all but the z_samples and batch."""
    # size = [n_z_samples, batch_size, *]
    log_p = gaussian_logpdf(sample, mean, var)
    # size = [n_z_samples, batch_size]
    return sum_from_nth_dim(log_p, 2)


def as_np_outputs(pred_outputs):
    """Wrap the `(mean, var)` of a conditional model as latent free `NPOutputs`."""
    if isinstance(pred_outputs, NPOutputs):
        return pred_outputs
    mean, var = pred_outputs
    return NPOutputs(mean, var, None, None, None)


def importance_weighted_nll(sum_log_w_k):
    """
    Numerically stable `-log mean_k exp(w_k)`.

    Parameters
    ----------
    sum_log_w_k : torch.Tensor, size=[n_z_samples, batch_size]

    Return
    ------
    nll : torch.Tensor, size=[batch_size]
    """
    n_z_samples = sum_log_w_k.shape[0]

    # LL MC = log ( mean_z ( \prod_t p(y^t|z)) )
    # = log_sum_exp_z ( \sum_t log p(y^t|z)) - log(n_z_samples)
    log_S_z_sum_p_yCz = logsumexp(sum_log_w_k, dim=0, keepdim=False)
    return -(log_S_z_sum_p_yCz - math.log(n_z_samples))


class BaseLossNPF(nn.Module, abc.ABC):
    """
    Compute the loss for members of the convolutional neural process family.

    Parameters
    ----------
    reduction : {None,"mean","sum"}, optional
        Batch wise reduction.

    is_force_mle_eval : bool, optional
        Whether to force the (importance weighted) likelihood in evaluation mode, ignoring
        `q_zCct`.
    """

    _valid_reductions = [None, "mean", "sum"]

    def __init__(self, reduction="mean", is_force_mle_eval=True):
        super().__init__()
        if reduction not in self._valid_reductions:
            raise ValueError(
                f"Unknown reduction={reduction}. Should be one of {self._valid_reductions}."
            )
        self.reduction = reduction
        self.is_force_mle_eval = is_force_mle_eval

    def forward(self, pred_outputs, Y_trgt):
        """Compute the Neural Process Loss.

        Parameters
        ----------
        pred_outputs : NPOutputs or tuple
            Output of `ConvLNP.latent_forward` or the `(mean, var)` of `ConvCNP`.

        Y_trgt : torch.Tensor, size=[batch_size, n_trgt, y_dim]
            Set of all target values {y_t}.

        Return
        ------
        loss : torch.Tensor
            size=[batch_size] if `reduction=None` else [].
        """
        mean, var, z_samples, q_zCc, q_zCct = as_np_outputs(pred_outputs)

        if self.training or q_zCc is None:
            loss = self.get_loss(mean, var, z_samples, q_zCc, q_zCct, Y_trgt)
        else:
            # always uses the likelihood for evaluation
            if self.is_force_mle_eval:
                q_zCct = None
            loss = get_nll(mean, var, z_samples, q_zCc, q_zCct, Y_trgt)

        return self.reduce(loss)

    def reduce(self, loss):
        if self.reduction is None:
            # size = [batch_size]
            return loss
        elif self.reduction == "mean":
            return loss.mean(0)
        else:
            return loss.sum(0)

    @abc.abstractmethod
    def get_loss(self, mean, var, z_samples, q_zCc, q_zCct, Y_trgt):
        """Compute the Neural Process Loss

        Parameters
        ------
        mean, var: torch.Tensor, size=[n_z_samples, batch_size, n_trgt, y_dim]
            Predictive distribution for target values {p(Y^t|y_c; x_c, x_t)}_t. No
            `n_z_samples` dimension for conditional models.

        z_samples: torch.Tensor, size=[n_z_samples, batch_size, n_grid, z_dim]
            Sampled latents. `None` for conditional models.

        q_zCc: tuple of torch.Tensor, size=[batch_size, n_grid, z_dim]
            (mean, var) of the latent distribution for the context points. `None` for
            conditional models.

        q_zCct: tuple of torch.Tensor, size=[batch_size, n_grid, z_dim]
            (mean, var) of the latent distribution for the targets. `None` for conditional
            models, when not training or not `is_q_zCct`.

        Y_trgt: torch.Tensor, size=[batch_size, n_trgt, y_dim]
            Set of all target values {y_t}.

        Return
        ------
        loss : torch.Tensor, size=[batch_size].
        """
        pass


class CNPFLoss(BaseLossNPF):
    """Negative log likelihood for conditional neural processes."""

    def get_loss(self, mean, var, _, __, ___, Y_trgt):
        # \sum_t log p(y^t). size = [batch_size]
        log_p = gaussian_logpdf(Y_trgt, mean, var)
        return -sum_from_nth_dim(log_p, 1)


def get_nll(mean, var, z_samples, q_zCc, q_zCct, Y_trgt):
    """
    Importance weighted negative log likelihood of latent models. Uses the weights
    q(z|cntxt) / q(z|cntxt, trgt) if `q_zCct` is not None, i.e. assumes the latents were
    sampled from it.
    """
    # \sum_t log p(y^t|z). size = [n_z_samples, batch_size]
    sum_log_p_yCz = sum_log_prob(mean, var, Y_trgt)

    if q_zCct is not None:
        # All latents are treated as independent. size = [n_z_samples, batch_size]
        sum_log_q_zCc = sum_log_prob(*q_zCc, z_samples)
        sum_log_q_zCct = sum_log_prob(*q_zCct, z_samples)

        # importance sampling : multiply \prod_t p(y^t|z)) by q(z|y_cntxt) / q(z|y_cntxt, y_trgt)
        sum_log_w_k = sum_log_p_yCz + sum_log_q_zCc - sum_log_q_zCct
    else:
        sum_log_w_k = sum_log_p_yCz

    return importance_weighted_nll(sum_log_w_k)


class NLLLossLNPF(BaseLossNPF):
    """
    Compute the approximate negative log likelihood for latent neural processes [1].

    Parameters
    ----------
    is_importance_weighted : bool, optional
        Whether to use the importance weighted (log mean exp) estimator over samples.
        Otherwise the Monte Carlo average of the per sample log likelihoods, a lower bound.
        Both are equal with a single sample.

    kwargs :
        Additional arguments to `BaseLossNPF`.

    Notes
    -----
    - biased, and might be high variance
    - approximate because expectation over q(z|cntxt) instead of p(z|cntxt)
    - if q_zCct is not None then uses importance sampling (i.e. assumes that sampled from it).

    References
    ----------
    [1] Foong, Andrew YK, et al. "Meta-Learning Stationary Stochastic Process Prediction with
    Convolutional Neural Processes." arXiv preprint arXiv:2007.01332 (2020).
    """

    def __init__(self, is_importance_weighted=True, **kwargs):
        super().__init__(**kwargs)
        self.is_importance_weighted = is_importance_weighted

    def get_loss(self, mean, var, z_samples, q_zCc, q_zCct, Y_trgt):
        if self.is_importance_weighted:
            return get_nll(mean, var, z_samples, q_zCc, q_zCct, Y_trgt)

        # size = [batch_size]
        return -sum_log_prob(mean, var, Y_trgt).mean(0)


class ELBOLossLNPF(BaseLossNPF):
    """Approximate conditional ELBO [1]. Requires a model with `is_q_zCct=True`.

    References
    ----------
    [1] Garnelo, Marta, et al. "Neural processes." arXiv preprint
        arXiv:1807.01622 (2018).
    """

    def get_loss(self, mean, var, _, q_zCc, q_zCct, Y_trgt):
        if q_zCct is None:
            raise ValueError(
                "ELBOLossLNPF needs q(z|cntxt,trgt). Use a model with `is_q_zCct=True` "
                "and give it the targets."
            )

        # first term in loss is E_{q(z|y_cntxt,y_trgt)}[\sum_t log p(y^t|z)]
        # E_{q(z|y_cntxt,y_trgt)}[...] . size = [batch_size]
        E_z_sum_log_p_yCz = sum_log_prob(mean, var, Y_trgt).mean(0)

        # second term in loss is \sum_l KL[q(z^l|y_cntxt,y_trgt)||q(z^l|y_cntxt)]
        # size = [batch_size, n_grid, z_dim]
        kl_z = gaussian_kl(*q_zCct, *q_zCc)
        # \sum_l ... . size = [batch_size]
        E_z_kl = sum_from_nth_dim(kl_z, 1)

        return -(E_z_sum_log_p_yCz - E_z_kl)


def exponential_ridge_decay(epoch):
    """Ridge added to predicted covariances: 0.1 at the first epoch, then decreasing
    tenfold per epoch down to 1e-5."""
    return 10 ** (-min(1 + epoch, 5))


class CorrelatedNLLLoss(nn.Module):
    """
    Negative log likelihood of correlated predictions, normalised per target point.

    Parameters
    ----------
    ridge_schedule : callable, optional
        Map from the epoch to the ridge added to the diagonal of the covariance, for
        numerical stability early in training.

    reduction : {None,"mean","sum"}, optional
        Batch wise reduction.
    """

    _valid_reductions = BaseLossNPF._valid_reductions

    def __init__(self, ridge_schedule=exponential_ridge_decay, reduction="mean"):
        super().__init__()
        if reduction not in self._valid_reductions:
            raise ValueError(
                f"Unknown reduction={reduction}. Should be one of {self._valid_reductions}."
            )
        self.ridge_schedule = ridge_schedule
        self.reduction = reduction

    def forward(self, pred_outputs, Y_trgt, epoch=0):
        """
        Parameters
        ----------
        pred_outputs : tuple
            `(mean, cov)` of `CorrelatedConvCNP`, of size [batch_size, n_trgt] and
            [batch_size, n_trgt, n_trgt].

        Y_trgt : torch.Tensor, size=[batch_size, n_trgt, 1]

        epoch : int, optional
            Current epoch, given to `ridge_schedule`.
        """
        mean, cov = pred_outputs
        n_trgt = mean.shape[-1]

        ridge = self.ridge_schedule(epoch)
        cov = cov + ridge * Backend.from_tensor(cov).eye(n_trgt)

        # size = [batch_size]
        loss = -mvn_logpdf(Y_trgt.squeeze(-1), mean, cov) / n_trgt

        return BaseLossNPF.reduce(self, loss)
