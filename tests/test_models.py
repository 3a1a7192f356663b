import itertools
import logging

import pytest
import torch

from convnp import (
    ConvCNP,
    ConvLNP,
    CorrelatedConvCNP,
    NPOutputs,
    convcnp_1d,
    convlnp_1d,
    correlated_convcnp_1d,
)


def test_convcnp(sine_task, small_cnn):
    X_cntxt, Y_cntxt, X_trgt, _ = sine_task
    model = ConvCNP(1, 1, points_per_unit=16, CNN=small_cnn)

    mean, var = model(X_cntxt, Y_cntxt, X_trgt)

    assert mean.shape == var.shape == (4, 5, 1)
    assert (var > 0).all()


def test_convcnp_empty_context(small_cnn):
    model = ConvCNP(1, 1, points_per_unit=16, CNN=small_cnn)
    X_trgt = torch.rand(2, 5, 1)

    mean, var = model(torch.zeros(2, 0, 1), torch.zeros(2, 0, 1), X_trgt)

    assert mean.shape == (2, 5, 1)
    assert torch.isfinite(mean).all() and (var > 0).all()


def test_convcnp_multi_output(small_cnn):
    model = ConvCNP(1, 3, points_per_unit=16, CNN=small_cnn)
    mean, var = model(torch.rand(2, 4, 1), torch.randn(2, 4, 3), torch.rand(2, 6, 1))
    assert mean.shape == var.shape == (2, 6, 3)


def test_invalid_inputs(small_cnn):
    with pytest.raises(ValueError):
        ConvCNP(2, 1, CNN=small_cnn)

    model = ConvCNP(1, 1, points_per_unit=16, CNN=small_cnn)
    with pytest.raises(ValueError):
        # y_dim mismatch
        model(torch.rand(2, 4, 1), torch.randn(2, 4, 2), torch.rand(2, 6, 1))
    with pytest.raises(ValueError):
        # number of context points mismatch
        model(torch.rand(2, 4, 1), torch.randn(2, 3, 1), torch.rand(2, 6, 1))


def test_unet_grid_is_aligned(sine_task):
    X_cntxt, Y_cntxt, X_trgt, _ = sine_task
    model = convcnp_1d(
        receptive_field=1.0, n_layers=5, n_channels=4, points_per_unit=16, is_unet=True
    )
    assert model.encoder.discretisation.multiple == model.decoder_conv.multiple == 4

    mean, _ = model(X_cntxt, Y_cntxt, X_trgt)
    assert mean.shape == (4, 5, 1)


def test_convcnp_float64(sine_task, small_cnn):
    X_cntxt, Y_cntxt, X_trgt, _ = (t.double() for t in sine_task)
    model = ConvCNP(1, 1, points_per_unit=16, CNN=small_cnn).double()
    mean, var = model(X_cntxt, Y_cntxt, X_trgt)
    assert mean.dtype == var.dtype == torch.float64


@pytest.mark.parametrize(
    "noise_type, pooling_type",
    list(itertools.product(["fixed", "amortised", "het"], ["mean", "sum"])),
)
def test_convlnp(sine_task, small_cnn, noise_type, pooling_type):
    X_cntxt, Y_cntxt, X_trgt, _ = sine_task
    model = ConvLNP(
        1,
        1,
        z_dim=4,
        points_per_unit=16,
        EncoderCNN=small_cnn,
        DecoderCNN=small_cnn,
        noise_type=noise_type,
        pooling_type=pooling_type,
        n_z_samples_train=3,
    )

    mean, var = model(X_cntxt, Y_cntxt, X_trgt)

    assert mean.shape == var.shape == (3, 4, 5, 1)
    assert (var > 0).all()


def test_convlnp_latent_forward(sine_task, small_cnn):
    X_cntxt, Y_cntxt, X_trgt, Y_trgt = sine_task
    model = ConvLNP(
        1,
        1,
        z_dim=4,
        points_per_unit=16,
        EncoderCNN=small_cnn,
        DecoderCNN=small_cnn,
        is_q_zCct=True,
        n_z_samples_train=2,
        n_z_samples_test=6,
    )

    outputs = model.latent_forward(X_cntxt, Y_cntxt, X_trgt, Y_trgt)
    assert isinstance(outputs, NPOutputs)

    n_grid = outputs.z_samples.shape[2]
    assert outputs.z_samples.shape == (2, 4, n_grid, 4)
    for q in (outputs.q_zCc, outputs.q_zCct):
        mean, var = q
        assert mean.shape == var.shape == (4, n_grid, 4)
        assert (var > 0).all()

    # no targets => no posterior
    assert model.latent_forward(X_cntxt, Y_cntxt, X_trgt).q_zCct is None

    model.eval()
    assert model(X_cntxt, Y_cntxt, X_trgt)[0].shape == (6, 4, 5, 1)


def test_convlnp_pool_samples(sine_task, small_cnn):
    X_cntxt, Y_cntxt, X_trgt, _ = sine_task
    model = ConvLNP(
        1,
        1,
        z_dim=4,
        points_per_unit=16,
        EncoderCNN=small_cnn,
        DecoderCNN=small_cnn,
        is_pool_samples=True,
        n_z_samples_train=5,
    )

    outputs = model.latent_forward(X_cntxt, Y_cntxt, X_trgt)
    assert outputs.z_samples.shape[0] == 1
    assert outputs.mean.shape == (1, 4, 5, 1)


def test_correlated_convcnp(sine_task, small_cnn):
    X_cntxt, Y_cntxt, X_trgt, _ = sine_task
    model = CorrelatedConvCNP(1, n_basis=4, points_per_unit=16, CNN=small_cnn)

    mean, cov = model(X_cntxt, Y_cntxt, X_trgt)

    assert mean.shape == (4, 5)
    assert cov.shape == (4, 5, 5)
    assert torch.allclose(cov, cov.transpose(-2, -1), atol=1e-6)
    # positive definite
    torch.linalg.cholesky(cov)


def test_builders_log_parameter_count(caplog):
    with caplog.at_level(logging.INFO, logger="convnp.neuralproc.convnp"):
        convcnp_1d(receptive_field=1.0, n_layers=2, n_channels=4, points_per_unit=8)
        convlnp_1d(
            receptive_field=1.0,
            n_encoder_layers=2,
            n_decoder_layers=2,
            n_encoder_channels=4,
            n_decoder_channels=4,
            n_latent_channels=2,
            points_per_unit=8,
            n_z_samples=4,
        )
        correlated_convcnp_1d(
            receptive_field=1.0, n_layers=2, n_channels=4, points_per_unit=8, n_basis=3
        )

    for name in ["ConvCNP", "ConvLNP", "CorrelatedConvCNP"]:
        assert f"{name} has" in caplog.text


def test_builder_margin_defaults_to_receptive_field():
    model = convcnp_1d(receptive_field=1.5, n_layers=2, n_channels=4, points_per_unit=8)
    assert model.encoder.discretisation.margin == 1.5
