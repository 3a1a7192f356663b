import math

from torch import nn

__all__ = ["weights_init", "inverse_softplus"]


def weights_init(module):
    """Initialize the convolutions and linear layers of a module and its descendents.

    Weights use He initialization [1] (the grid CNNs are ReLU networks), biases start at 0.

    Parameters
    ----------
    module : nn.Module
       module to initialize.

    References
    ----------
    [1] He, K., Zhang, X., Ren, S., & Sun, J. (2015). Delving deep into rectifiers:
        Surpassing human-level performance on imagenet classification. In Proceedings of
        the IEEE international conference on computer vision (pp. 1026-1034).
    """
    for m in module.modules():
        if isinstance(m, nn.modules.conv._ConvNd):
            nn.init.kaiming_normal_(m.weight, mode="fan_out", nonlinearity="relu")
        elif isinstance(m, nn.Linear):
            nn.init.kaiming_uniform_(m.weight, nonlinearity="relu")
        else:
            continue

        if m.bias is not None:
            nn.init.zeros_(m.bias)


def inverse_softplus(y):
    """Python float `x` such that `softplus(x) = y`, i.e. `log(exp(y) - 1)`."""
    return math.log(math.expm1(y))
