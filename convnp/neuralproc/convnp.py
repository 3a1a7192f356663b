"""Module for convolutional [conditional | latent | correlated] neural processes"""
import logging
import math
from functools import partial

import torch.nn as nn

from convnp.architectures import (
    SetConv,
    UniformDiscretisation1d,
    build_conv,
    build_noise_model,
)
from convnp.backend import ExecutionContext
from convnp.ops import (
    batched_mul,
    batched_transpose,
    diagonal,
    sample_gaussian,
    softplus,
)
from convnp.utils.helpers import count_parameters, get_pooling

from .base import (
    FunctionalAggregator,
    LatentGaussianHead,
    NPOutputs,
    validate_inputs,
)
from .helpers import (
    collapse_z_samples_batch,
    extract_z_samples_batch,
    replicate_z_samples,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ConvCNP",
    "ConvLNP",
    "CorrelatedConvCNP",
    "convcnp_1d",
    "convlnp_1d",
    "correlated_convcnp_1d",
]


class ConvCNP(nn.Module):
    """
    Convolutional conditional neural process [1].

    Parameters
    ----------
    x_dim : int
        Dimension of features. Only `x_dim=1` is supported.

    y_dim : int
        Dimension of y values.

    points_per_unit : float, optional
        Density of the discretisation grid.

    margin : float, optional
        Margin of the discretisation grid around the context and target features.

    length_scale : float, optional
        Initial length scale of the set convolutions. `None` uses twice the grid spacing.

    CNN : callable, optional
        Convolutional decoder on the grid. It should be constructed via
        `CNN(points_per_unit=..., in_channels=..., out_channels=...)` and expose
        `.multiple`, the number the grid length has to be a multiple of. Example:
            - `partial(build_conv, receptive_field=2., n_layers=4, n_channels=32)`.
            - `partial(build_conv, ..., is_unet=True)` : uses a UNet.

    noise_type : {"fixed", "amortised", "heteroscedastic"}, optional
        How the predictive variance is parametrized. See `build_noise_model`.

    pooling_type : {"mean", "sum"}, optional
        Pooling used by the amortised noise.

    min_var : float, optional
        Floor on the predictive variance.

    context : ExecutionContext, optional
        Execution context of the primitives. `None` disallows scalar indexing.

    References
    ----------
    [1] Gordon, Jonathan, et al. "Convolutional conditional neural processes." arXiv preprint
    arXiv:1910.13556 (2019).
    """

    def __init__(
        self,
        x_dim,
        y_dim,
        points_per_unit=32,
        margin=0.1,
        length_scale=None,
        CNN=partial(build_conv, receptive_field=2.0, n_layers=4, n_channels=32),
        noise_type="heteroscedastic",
        pooling_type="mean",
        min_var=1e-4,
        context=None,
    ):
        super().__init__()

        if x_dim != 1:
            raise ValueError(f"Currently only supports single spatial dimension, got x_dim={x_dim}.")

        self.x_dim = x_dim
        self.y_dim = y_dim
        self.points_per_unit = points_per_unit
        self.context = context if context is not None else ExecutionContext()

        if length_scale is None:
            length_scale = 2 / points_per_unit

        n_noise_channels, self.noise = build_noise_model(
            noise_type,
            y_dim,
            length_scale,
            pooling_type=pooling_type,
            min_var=min_var,
            context=self.context,
        )

        # + 1 because of the density channel
        self.decoder_conv = CNN(
            points_per_unit=points_per_unit,
            in_channels=y_dim + 1,
            out_channels=n_noise_channels,
        )

        self.encoder = FunctionalAggregator(
            UniformDiscretisation1d(
                points_per_unit,
                margin,
                # avoid artifacts when using up / down convolutions
                multiple=self.decoder_conv.multiple,
                context=self.context,
            ),
            SetConv(y_dim + 1, length_scale, is_density=True, context=self.context),
        )

    def forward(self, X_cntxt, Y_cntxt, X_trgt):
        """
        Given a set of context feature-values {(x^c, y^c)}_c and target features {x^t}_t,
        return the predictive distribution at the targets.

        Parameters
        ----------
        X_cntxt: torch.Tensor, size=[batch_size, n_cntxt, 1]

        Y_cntxt: torch.Tensor, size=[batch_size, n_cntxt, y_dim]

        X_trgt: torch.Tensor, size=[batch_size, n_trgt, 1]

        Return
        ------
        mean : torch.Tensor, size=[batch_size, n_trgt, y_dim]

        var : torch.Tensor, size=[batch_size, n_trgt, y_dim]
        """
        validate_inputs(X_cntxt, Y_cntxt, X_trgt, self.x_dim, self.y_dim)

        # size = [batch_size, n_grid, 1] and [batch_size, n_grid, y_dim + 1]
        X_grid, R_grid = self.encoder(X_cntxt, Y_cntxt, X_trgt)

        # size = [batch_size, n_grid, n_noise_channels]
        R_grid = self.decoder_conv(R_grid)

        return self.noise(X_grid, R_grid, X_trgt)


class ConvLNP(nn.Module):
    """
    Convolutional latent neural process [1].

    Parameters
    ----------
    x_dim : int
        Dimension of features. Only `x_dim=1` is supported.

    y_dim : int
        Dimension of y values.

    z_dim : int, optional
        Number of latent channels on the grid.

    EncoderCNN : callable, optional
        Convolutional network from the set convolved context to the latent distribution.
        Constructed like `CNN` in `ConvCNP`.

    DecoderCNN : callable, optional
        Convolutional network from the latent samples to the output head. Computations
        after sampling are done for every sample so you might want it smaller.

    is_q_zCct : bool, optional
        Whether to infer Z using q(Z|cntxt,trgt) instead of q(Z|cntxt) when the targets are
        given. Required by `ELBOLossLNPF`.

    is_pool_samples : bool, optional
        Whether to pool the latent samples (with `pooling_type`) into a single one before
        decoding.

    n_z_samples_train : int, optional
        Number of samples from the latent during training.

    n_z_samples_test : int, optional
        Number of samples from the latent during testing.

    min_z_var : float, optional
        Floor on the latent variance.

    kwargs :
        `points_per_unit`, `margin`, `length_scale`, `noise_type`, `pooling_type`,
        `min_var` and `context` as in `ConvCNP`.

    References
    ----------
    [1] Foong, Andrew YK, et al. "Meta-Learning Stationary Stochastic Process Prediction with
    Convolutional Neural Processes." arXiv preprint arXiv:2007.01332 (2020).
    """

    def __init__(
        self,
        x_dim,
        y_dim,
        z_dim=16,
        points_per_unit=32,
        margin=0.1,
        length_scale=None,
        EncoderCNN=partial(build_conv, receptive_field=2.0, n_layers=3, n_channels=32),
        DecoderCNN=partial(build_conv, receptive_field=2.0, n_layers=3, n_channels=16),
        noise_type="heteroscedastic",
        pooling_type="mean",
        is_q_zCct=False,
        is_pool_samples=False,
        n_z_samples_train=16,
        n_z_samples_test=16,
        min_var=1e-4,
        min_z_var=1e-4,
        context=None,
    ):
        super().__init__()

        if x_dim != 1:
            raise ValueError(f"Currently only supports single spatial dimension, got x_dim={x_dim}.")

        self.x_dim = x_dim
        self.y_dim = y_dim
        self.z_dim = z_dim
        self.is_q_zCct = is_q_zCct
        self.is_pool_samples = is_pool_samples
        self.n_z_samples_train = n_z_samples_train
        self.n_z_samples_test = n_z_samples_test
        self.pool = get_pooling(pooling_type)
        self.context = context if context is not None else ExecutionContext()

        if length_scale is None:
            length_scale = 2 / points_per_unit

        n_noise_channels, self.noise = build_noise_model(
            noise_type,
            y_dim,
            length_scale,
            pooling_type=pooling_type,
            min_var=min_var,
            context=self.context,
        )

        encoder_conv = EncoderCNN(
            points_per_unit=points_per_unit,
            in_channels=y_dim + 1,
            out_channels=2 * z_dim,
        )
        self.decoder_conv = DecoderCNN(
            points_per_unit=points_per_unit,
            in_channels=z_dim,
            out_channels=n_noise_channels,
        )

        self.encoder = FunctionalAggregator(
            UniformDiscretisation1d(
                points_per_unit,
                margin,
                multiple=_lcm(encoder_conv.multiple, self.decoder_conv.multiple),
                context=self.context,
            ),
            SetConv(y_dim + 1, length_scale, is_density=True, context=self.context),
            LatentGaussianHead(encoder_conv, min_var=min_z_var),
        )

    @property
    def n_z_samples(self):
        return self.n_z_samples_train if self.training else self.n_z_samples_test

    def latent_path(self, X_grid, q_zCc, X_trgt, Y_trgt):
        """Sample the latent functions on the grid.

        Return
        ------
        z_samples: torch.Tensor, size=[n_z_samples, batch_size, n_grid, z_dim]
            Sampled latents. `n_z_samples=1` if `is_pool_samples`.

        q_zCct: tuple or None
            (mean, var) of the latent distribution inferred from the targets.
        """
        if self.is_q_zCct and Y_trgt is not None:
            # during training when we know Y_trgt, we can take an expectation over
            # q(z|cntxt,trgt) instead of q(z|cntxt)
            q_zCct = self.encoder.aggregate(X_grid, X_trgt, Y_trgt)
            sampling_dist = q_zCct
        else:
            q_zCct = None
            sampling_dist = q_zCc

        backend = self.context.backend_for(X_grid)
        z_samples = sample_gaussian(*sampling_dist, self.n_z_samples, backend=backend)

        if self.is_pool_samples:
            z_samples = self.pool(z_samples, dim=0)

        return z_samples, q_zCct

    def decode(self, X_grid, z_samples, X_trgt):
        """Map every latent sample on the grid to a predictive at the targets."""
        n_z_samples = z_samples.shape[0]
        batch_size = X_trgt.shape[0]

        # make all computations with n_z_samples and batch size merged (because CNN need it)
        # size = [n_z_samples*batch_size, *, x_dim]
        X_grid = collapse_z_samples_batch(replicate_z_samples(X_grid, n_z_samples))
        X_trgt = collapse_z_samples_batch(replicate_z_samples(X_trgt, n_z_samples))

        # size = [n_z_samples*batch_size, n_grid, n_noise_channels]
        R_grid = self.decoder_conv(collapse_z_samples_batch(z_samples))

        # size = [n_z_samples*batch_size, n_trgt, y_dim]
        mean, var = self.noise(X_grid, R_grid, X_trgt)

        return (
            extract_z_samples_batch(mean, n_z_samples, batch_size),
            extract_z_samples_batch(var, n_z_samples, batch_size),
        )

    def latent_forward(self, X_cntxt, Y_cntxt, X_trgt, Y_trgt=None):
        """
        Predictive distribution at the targets together with the latent variables.

        Parameters
        ----------
        X_cntxt: torch.Tensor, size=[batch_size, n_cntxt, 1]

        Y_cntxt: torch.Tensor, size=[batch_size, n_cntxt, y_dim]

        X_trgt: torch.Tensor, size=[batch_size, n_trgt, 1]

        Y_trgt: torch.Tensor, size=[batch_size, n_trgt, y_dim], optional
            Only used if `is_q_zCct`.

        Return
        ------
        outputs : NPOutputs
        """
        validate_inputs(X_cntxt, Y_cntxt, X_trgt, self.x_dim, self.y_dim)

        # q(z|c). (mean, var) each of size = [batch_size, n_grid, z_dim]
        X_grid, q_zCc = self.encoder(X_cntxt, Y_cntxt, X_trgt)

        z_samples, q_zCct = self.latent_path(X_grid, q_zCc, X_trgt, Y_trgt)

        # size = [n_z_samples, batch_size, n_trgt, y_dim]
        mean, var = self.decode(X_grid, z_samples, X_trgt)

        return NPOutputs(mean, var, z_samples, q_zCc, q_zCct)

    def forward(self, X_cntxt, Y_cntxt, X_trgt, Y_trgt=None):
        """
        Return
        ------
        mean : torch.Tensor, size=[n_z_samples, batch_size, n_trgt, y_dim]

        var : torch.Tensor, size=[n_z_samples, batch_size, n_trgt, y_dim]
        """
        outputs = self.latent_forward(X_cntxt, Y_cntxt, X_trgt, Y_trgt)
        return outputs.mean, outputs.var


class CorrelatedConvCNP(nn.Module):
    """
    Convolutional conditional neural process with a correlated Gaussian predictive.

    The covariance at the targets is a low rank term from `n_basis` set convolved feature
    channels plus a heteroscedastic diagonal, `cov = F F^T / n_basis + diag(var)`.

    Parameters
    ----------
    x_dim : int
        Dimension of features. Only `x_dim=1` is supported.

    n_basis : int, optional
        Rank of the low rank part of the covariance.

    kwargs :
        `points_per_unit`, `margin`, `length_scale`, `CNN`, `min_var` and `context` as in
        `ConvCNP`.
    """

    def __init__(
        self,
        x_dim,
        n_basis=16,
        points_per_unit=32,
        margin=0.1,
        length_scale=None,
        CNN=partial(build_conv, receptive_field=2.0, n_layers=4, n_channels=32),
        min_var=1e-4,
        context=None,
    ):
        super().__init__()

        if x_dim != 1:
            raise ValueError(f"Currently only supports single spatial dimension, got x_dim={x_dim}.")

        self.x_dim = x_dim
        self.y_dim = 1
        self.n_basis = n_basis
        self.min_var = min_var
        self.context = context if context is not None else ExecutionContext()

        if length_scale is None:
            length_scale = 2 / points_per_unit

        # mean, basis functions, diagonal variance
        n_out = 1 + n_basis + 1
        self.decoder_conv = CNN(
            points_per_unit=points_per_unit, in_channels=2, out_channels=n_out
        )
        self.grid_to_trgt = SetConv(n_out, length_scale, context=self.context)

        self.encoder = FunctionalAggregator(
            UniformDiscretisation1d(
                points_per_unit,
                margin,
                multiple=self.decoder_conv.multiple,
                context=self.context,
            ),
            SetConv(2, length_scale, is_density=True, context=self.context),
        )

    def forward(self, X_cntxt, Y_cntxt, X_trgt):
        """
        Return
        ------
        mean : torch.Tensor, size=[batch_size, n_trgt]

        cov : torch.Tensor, size=[batch_size, n_trgt, n_trgt]
        """
        validate_inputs(X_cntxt, Y_cntxt, X_trgt, self.x_dim, self.y_dim)

        X_grid, R_grid = self.encoder(X_cntxt, Y_cntxt, X_trgt)
        R_grid = self.decoder_conv(R_grid)

        # size = [batch_size, n_trgt, n_basis + 2]
        R_trgt = self.grid_to_trgt(X_grid, X_trgt, R_grid)
        mean = R_trgt[..., 0]
        basis = R_trgt[..., 1:-1]
        var = self.min_var + softplus(R_trgt[..., -1])

        # size = [batch_size, n_trgt, n_trgt]
        cov = batched_mul(basis, batched_transpose(basis)) / self.n_basis
        cov = cov + diagonal(var)

        return mean, cov


def _lcm(a, b):
    return a * b // math.gcd(a, b)


def _log_n_params(model):
    logger.info(f"{type(model).__name__} has {count_parameters(model)} parameters.")
    return model


def convcnp_1d(
    receptive_field,
    n_layers,
    n_channels,
    points_per_unit,
    margin=None,
    y_dim=1,
    noise_type="heteroscedastic",
    pooling_type="mean",
    is_unet=False,
    context=None,
    **kwargs,
):
    """
    Construct a ConvCNP for one-dimensional data.

    Parameters
    ----------
    receptive_field : float
        Width of the receptive field.

    n_layers : int
        Number of layers of the CNN, excluding an initial and final pointwise layer
        to change the number of channels appropriately.

    n_channels : int
        Number of channels of the CNN.

    points_per_unit : float
        Density of the discretisation.

    margin : float, optional
        Margin for the discretisation. `None` uses `receptive_field`.

    kwargs :
        Additional arguments to `ConvCNP`.
    """
    margin = receptive_field if margin is None else margin
    model = ConvCNP(
        1,
        y_dim,
        points_per_unit=points_per_unit,
        margin=margin,
        CNN=partial(
            build_conv,
            receptive_field=receptive_field,
            n_layers=n_layers,
            n_channels=n_channels,
            is_unet=is_unet,
        ),
        noise_type=noise_type,
        pooling_type=pooling_type,
        context=context,
        **kwargs,
    )
    return _log_n_params(model)


def convlnp_1d(
    receptive_field,
    n_encoder_layers,
    n_decoder_layers,
    n_encoder_channels,
    n_decoder_channels,
    n_latent_channels,
    points_per_unit,
    margin=None,
    y_dim=1,
    noise_type="heteroscedastic",
    pooling_type="mean",
    n_z_samples=16,
    context=None,
    **kwargs,
):
    """
    Construct a ConvLNP for one-dimensional data.

    Parameters
    ----------
    receptive_field : float
        Width of the receptive field, of both the encoder and the decoder CNN.

    n_encoder_layers, n_decoder_layers : int
        Number of layers of the encoder and decoder CNNs.

    n_encoder_channels, n_decoder_channels : int
        Number of channels of the encoder and decoder CNNs.

    n_latent_channels : int
        Number of latent channels on the grid.

    points_per_unit : float
        Density of the discretisation.

    margin : float, optional
        Margin for the discretisation. `None` uses `receptive_field`.

    n_z_samples : int, optional
        Number of latent samples, during training and testing.

    kwargs :
        Additional arguments to `ConvLNP`.
    """
    margin = receptive_field if margin is None else margin
    model = ConvLNP(
        1,
        y_dim,
        z_dim=n_latent_channels,
        points_per_unit=points_per_unit,
        margin=margin,
        EncoderCNN=partial(
            build_conv,
            receptive_field=receptive_field,
            n_layers=n_encoder_layers,
            n_channels=n_encoder_channels,
        ),
        DecoderCNN=partial(
            build_conv,
            receptive_field=receptive_field,
            n_layers=n_decoder_layers,
            n_channels=n_decoder_channels,
        ),
        noise_type=noise_type,
        pooling_type=pooling_type,
        n_z_samples_train=n_z_samples,
        n_z_samples_test=n_z_samples,
        context=context,
        **kwargs,
    )
    return _log_n_params(model)


def correlated_convcnp_1d(
    receptive_field,
    n_layers,
    n_channels,
    points_per_unit,
    n_basis=16,
    margin=None,
    context=None,
    **kwargs,
):
    """Construct a CorrelatedConvCNP for one-dimensional data. See `convcnp_1d`."""
    margin = receptive_field if margin is None else margin
    model = CorrelatedConvCNP(
        1,
        n_basis=n_basis,
        points_per_unit=points_per_unit,
        margin=margin,
        CNN=partial(
            build_conv,
            receptive_field=receptive_field,
            n_layers=n_layers,
            n_channels=n_channels,
        ),
        context=context,
        **kwargs,
    )
    return _log_n_params(model)
