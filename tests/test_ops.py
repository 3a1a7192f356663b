import math

import pytest
import torch
from torch.autograd import gradcheck

from convnp.ops import (
    OPERATIONS,
    batched_mul,
    batched_transpose,
    diagonal,
    gaussian_kl,
    gaussian_logpdf,
    get_operation,
    logsumexp,
    mvn_logpdf,
    register_operation,
    repeat_cat,
    reparameterised_sample,
    sample_gaussian,
    softmax,
    softplus,
    split,
    split_mu_sigma,
    to_rank,
)


def _double(*shape):
    return torch.randn(*shape, dtype=torch.float64, requires_grad=True)


def _positive(*shape):
    return (torch.rand(*shape, dtype=torch.float64) + 0.5).requires_grad_()


def _mvn_case():
    n = 4
    eye = torch.eye(n, dtype=torch.float64)

    # symmetric parametrisation as the cholesky only reads one triangle
    def f(x, mean, A):
        return mvn_logpdf(x, mean, A @ A.transpose(-2, -1) + eye)

    return f, (_double(2, n), _double(2, n), _double(2, n, n))


def _reparameterised_case():
    noise = torch.randn(3, 2, 4, dtype=torch.float64)

    def f(mean, var):
        return reparameterised_sample(mean, var, noise)

    return f, (_double(2, 4), _positive(1, 4))


GRADCHECK_CASES = {
    "gaussian_logpdf": lambda: (
        gaussian_logpdf,
        (_double(3, 4), _double(1, 4), _positive(3, 4)),
    ),
    "mvn_logpdf": _mvn_case,
    "reparameterised_sample": _reparameterised_case,
    "logsumexp": lambda: (lambda x: logsumexp(x, dim=1, keepdim=False), (_double(3, 4),)),
    "softmax": lambda: (lambda x: softmax(x, dim=-1), (_double(3, 4),)),
    "softplus": lambda: (softplus, (_double(3, 4),)),
    "batched_transpose": lambda: (batched_transpose, (_double(2, 3, 4),)),
    "batched_mul": lambda: (batched_mul, (_double(2, 3, 4), _double(4, 5))),
    "diagonal": lambda: (diagonal, (_double(2, 3),)),
    "repeat_cat": lambda: (
        lambda a, b: repeat_cat(a, b, dim=-1),
        (_double(2, 1, 3), _double(4, 2)),
    ),
}


def test_every_operation_is_gradchecked():
    assert set(GRADCHECK_CASES) == set(OPERATIONS)


@pytest.mark.parametrize("name", sorted(GRADCHECK_CASES))
def test_backward_matches_finite_differences(name):
    f, inputs = GRADCHECK_CASES[name]()
    assert gradcheck(f, inputs, eps=1e-6, atol=1e-5)


def test_get_operation():
    assert get_operation("softplus").op_name == "softplus"

    with pytest.raises(ValueError):
        get_operation("unknown")


def test_register_operation_twice():
    with pytest.raises(ValueError):

        @register_operation("softplus")
        class Duplicate(torch.autograd.Function):
            pass


def test_to_rank():
    x = torch.randn(2, 3, 4, 5)
    x3, back = to_rank(3, x)
    assert x3.shape == (6, 4, 5)
    assert torch.equal(back(x3), x)

    m = torch.randn(4, 5)
    m3, back = to_rank(3, m)
    assert m3.shape == (1, 4, 5)
    assert back(m3).shape == m.shape

    same, back = to_rank(3, x3)
    assert same is x3

    with pytest.raises(ValueError):
        to_rank(1, x)


def test_batched_mul():
    x, y = torch.randn(2, 3, 4, 5), torch.randn(2, 3, 5, 6)
    assert torch.allclose(batched_mul(x, y), x @ y, atol=1e-5)

    # a matrix is broadcast over the batch
    w = torch.randn(5, 6)
    assert torch.allclose(batched_mul(x, w), x @ w, atol=1e-5)

    with pytest.raises(ValueError):
        batched_mul(torch.randn(2, 3, 4), torch.randn(3, 4, 5))


def test_batched_mul_stretches_singleton_batch_axes():
    x, y = torch.randn(1, 3, 4), torch.randn(5, 4, 2)
    assert batched_mul(x, y).shape == (5, 3, 2)
    assert torch.allclose(batched_mul(x, y), x @ y, atol=1e-5)

    # batch axes are aligned from the right
    x, y = torch.randn(2, 1, 3, 4), torch.randn(6, 4, 2)
    assert torch.allclose(batched_mul(x, y), x @ y, atol=1e-5)

    x, y = _double(1, 3, 4), _double(2, 5, 4, 2)
    assert gradcheck(batched_mul, (x, y), eps=1e-6, atol=1e-5)


def test_gram_matrix_is_psd():
    X = torch.randn(3, 10, 4)
    gram = batched_mul(batched_transpose(X), X)
    assert gram.shape == (3, 4, 4)
    assert torch.allclose(gram, gram.transpose(-2, -1), atol=1e-5)
    assert (torch.linalg.eigvalsh(gram) > -1e-4).all()


def test_diagonal():
    x = torch.rand(2, 3)
    D = diagonal(x)
    assert D.shape == (2, 3, 3)
    assert torch.equal(torch.diagonal(D, dim1=-2, dim2=-1), x)


def test_logsumexp_is_stable():
    out = logsumexp(torch.tensor([1e30, 0.0, 0.0]), dim=0, keepdim=False)
    assert torch.isfinite(out)
    assert torch.isclose(out, torch.tensor(1e30))

    x = torch.randn(3, 4)
    assert torch.allclose(logsumexp(x, dim=1), torch.logsumexp(x, 1, keepdim=True))
    assert torch.allclose(logsumexp(x), torch.logsumexp(x.flatten(), 0))


def test_logsumexp_gradient_of_masked_slice():
    x = torch.tensor([[-float("inf"), -float("inf")], [0.0, 1.0]], requires_grad=True)
    out = logsumexp(x, dim=1, keepdim=False)
    assert out[0] == -float("inf")

    out[1].backward()
    assert torch.isfinite(x.grad).all()
    assert torch.equal(x.grad[0], torch.zeros(2))
    assert torch.allclose(x.grad[1], torch.softmax(torch.tensor([0.0, 1.0]), 0))


def test_logsumexp_singleton_is_noop():
    x = torch.randn(3, 1)
    assert logsumexp(x, dim=1) is x
    assert logsumexp(x, dim=1, keepdim=False).shape == (3,)


def test_softmax():
    x = torch.tensor([[1e4, 0.0, -1e4], [1.0, 2.0, 3.0]])
    out = softmax(x, dim=-1)
    assert torch.isfinite(out).all()
    assert torch.allclose(out.sum(-1), torch.ones(2))
    assert torch.allclose(out[1], torch.softmax(x[1], 0))


def test_softplus():
    x = torch.tensor([-1e4, -200.0, -50.0, -1.0, 0.0, 1.0, 100.0])
    out = softplus(x)
    assert torch.isfinite(out).all()
    assert (out > 0).all()
    assert torch.allclose(out, torch.nn.functional.softplus(x))

    # still strictly positive where `log1p(exp(x))` underflows
    assert (softplus(torch.tensor([-200.0, -1e4], dtype=torch.float64)) > 0).all()


def test_repeat_cat():
    a, b = torch.randn(2, 1, 3), torch.randn(4, 2)
    out = repeat_cat(a, b, dim=-1)
    assert out.shape == (2, 4, 5)
    assert torch.equal(out[:, :, :3], a.expand(2, 4, 3))
    assert torch.equal(out[1, :, 3:], b)

    # single input is untouched
    assert repeat_cat(a, dim=0) is a

    with pytest.raises(ValueError):
        repeat_cat(torch.randn(2, 3), torch.randn(4, 2), dim=-1)


def test_repeat_cat_empty():
    values = torch.randn(2, 0, 1)
    out = repeat_cat(torch.ones(1, 1, 1), values, dim=-1)
    assert out.shape == (2, 0, 2)


def test_split():
    x = torch.randn(3, 6)
    a, b = split(x)
    assert a.shape == b.shape == (3, 3)

    with pytest.raises(ValueError):
        split(torch.randn(3, 5))


def test_split_mu_sigma():
    mean, var = split_mu_sigma(torch.randn(10, 4) * 50, min_var=1e-3)
    assert mean.shape == var.shape == (10, 2)
    assert (var >= 1e-3).all()

    with pytest.raises(ValueError):
        split_mu_sigma(torch.randn(3, 3))


def test_split_mu_sigma_variance_never_vanishes():
    channels = torch.tensor([[0.0, 1e3, -200.0, -1e4]])
    mean, var = split_mu_sigma(channels)
    assert (var > 0).all()

    log_prob = gaussian_logpdf(torch.zeros_like(mean), torch.zeros_like(mean), var)
    assert torch.isfinite(log_prob).all()


def test_gaussian_logpdf():
    x, mean, var = torch.randn(5, 3), torch.randn(5, 3), torch.rand(5, 3) + 0.1
    expected = torch.distributions.Normal(mean, var.sqrt()).log_prob(x)
    assert torch.allclose(gaussian_logpdf(x, mean, var), expected, atol=1e-5)


def test_mvn_logpdf():
    A = torch.randn(2, 4, 4, dtype=torch.float64)
    cov = A @ A.transpose(-2, -1) + torch.eye(4, dtype=torch.float64)
    x, mean = torch.randn(2, 4, dtype=torch.float64), torch.randn(2, 4, dtype=torch.float64)

    expected = torch.distributions.MultivariateNormal(mean, cov).log_prob(x)
    out = mvn_logpdf(x, mean, cov)
    assert out.shape == (2,)
    assert torch.allclose(out, expected)


def test_mvn_logpdf_not_positive_definite():
    cov = -torch.eye(3)
    with pytest.raises(RuntimeError):
        mvn_logpdf(torch.zeros(3), torch.zeros(3), cov)


def test_gaussian_kl():
    mean, var = torch.randn(4), torch.rand(4) + 0.1
    assert torch.allclose(gaussian_kl(mean, var, mean, var), torch.zeros(4), atol=1e-6)

    p = torch.distributions.Normal(mean, var.sqrt())
    q = torch.distributions.Normal(torch.zeros(4), torch.ones(4))
    expected = torch.distributions.kl_divergence(p, q)
    assert torch.allclose(gaussian_kl(mean, var, torch.zeros(4), torch.ones(4)), expected, atol=1e-5)


def test_sample_gaussian():
    mean, var = torch.zeros(3, 2), torch.full((3, 2), 4.0)
    samples = sample_gaussian(mean, var, n_samples=5000)
    assert samples.shape == (5000, 3, 2)
    assert math.isclose(samples.std().item(), 2.0, rel_tol=0.05)

    generator = torch.Generator().manual_seed(0)
    first = sample_gaussian(mean, var, generator=generator)
    generator = torch.Generator().manual_seed(0)
    assert torch.equal(first, sample_gaussian(mean, var, generator=generator))
