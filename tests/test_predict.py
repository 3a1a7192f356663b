import numpy as np
import pytest

from convnp import ConvCNP, ConvLNP, CorrelatedConvCNP, predict

X_CONTEXT = np.array([-1.0, 0.0, 1.0])
Y_CONTEXT = np.sin(X_CONTEXT)
X_TARGET = np.linspace(-2, 2, 7)


def _check_bands(mean, lower, upper):
    assert mean.shape == lower.shape == upper.shape == (7,)
    assert (lower <= mean).all() and (mean <= upper).all()


def test_predict_convcnp(small_cnn):
    model = ConvCNP(1, 1, points_per_unit=16, CNN=small_cnn)
    model.train()

    mean, lower, upper, samples = predict(model, X_CONTEXT, Y_CONTEXT, X_TARGET)

    _check_bands(mean, lower, upper)
    assert samples is None
    # restores the mode of the model
    assert model.training


def test_predict_correlated(small_cnn):
    model = CorrelatedConvCNP(1, n_basis=4, points_per_unit=16, CNN=small_cnn)

    mean, lower, upper, samples = predict(
        model, X_CONTEXT, Y_CONTEXT, X_TARGET, n_samples=3
    )

    _check_bands(mean, lower, upper)
    assert samples.shape == (3, 7)


@pytest.mark.parametrize("n_samples", [2, 3])
def test_predict_convlnp(small_cnn, n_samples):
    model = ConvLNP(
        1,
        1,
        z_dim=4,
        points_per_unit=16,
        EncoderCNN=small_cnn,
        DecoderCNN=small_cnn,
        n_z_samples_test=4,
    )

    mean, lower, upper, samples = predict(
        model, X_CONTEXT, Y_CONTEXT, X_TARGET, n_samples=n_samples
    )

    _check_bands(mean, lower, upper)
    assert samples.shape == (n_samples, 7)
