"""Convolutional networks acting on the uniform grid of a ConvNP."""
import logging

import torch
import torch.nn as nn
from torch.nn import functional as F

from convnp.utils.helpers import (
    ceil_odd,
    channels_to_2nd_dim,
    channels_to_last_dim,
    make_depth_sep_conv,
)
from convnp.utils.initialization import weights_init

__all__ = ["ResConvBlock", "CNN", "UnetCNN", "ConvPipeline", "build_conv"]

logger = logging.getLogger(__name__)


class ResConvBlock(nn.Module):
    """Pre-activation residual block [1] made of depthwise separable convolutions [2].

    Parameters
    ----------
    in_chan : int
        Channels entering the block.

    out_chan : int
        Channels leaving the block. Only the final pointwise convolution changes them.

    Conv : nn.Module, optional
        Convolution class, e.g. `nn.Conv1d` for one dimensional grids.

    kernel_size : int, optional
        Width of the depthwise kernels. Has to be odd so that the grid keeps its length.

    activation: callable, optional
        Non linearity applied before every convolution.

    Normalization : nn.Module, optional
        Normalization class applied before every activation.

    is_bias : bool, optional
        Whether the convolutions have a bias.

    n_conv_layers : int, optional
        1 or 2 depthwise convolutions before the residual connection.

    References
    ----------
    [1] He, K., Zhang, X., Ren, S., & Sun, J. (2016, October). Identity mappings
        in deep residual networks. In European conference on computer vision
        (pp. 630-645). Springer, Cham.

    [2] Chollet, F. (2017). Xception: Deep learning with depthwise separable
        convolutions. In Proceedings of the IEEE conference on computer vision
        and pattern recognition (pp. 1251-1258).
    """

    _valid_n_conv_layers = [1, 2]

    def __init__(
        self,
        in_chan,
        out_chan,
        Conv=nn.Conv1d,
        kernel_size=5,
        activation=nn.ReLU(),
        Normalization=nn.Identity,
        is_bias=True,
        n_conv_layers=1,
    ):
        super().__init__()

        if n_conv_layers not in self._valid_n_conv_layers:
            raise ValueError(
                f"n_conv_layers={n_conv_layers} should be in {self._valid_n_conv_layers}."
            )
        if kernel_size % 2 == 0:
            raise ValueError(f"kernel_size={kernel_size} should be odd.")

        self.activation = activation
        self.n_conv_layers = n_conv_layers
        same_padding = kernel_size // 2

        if n_conv_layers == 2:
            self.pre_norm = Normalization(in_chan)
            self.pre_conv = make_depth_sep_conv(Conv)(
                in_chan, in_chan, kernel_size, padding=same_padding, bias=is_bias
            )

        self.norm = Normalization(in_chan)
        self.depthwise = Conv(
            in_chan,
            in_chan,
            kernel_size,
            padding=same_padding,
            groups=in_chan,
            bias=is_bias,
        )
        self.pointwise = Conv(in_chan, out_chan, 1, bias=is_bias)

        self.reset_parameters()

    def reset_parameters(self):
        weights_init(self)

    def forward(self, X):
        out = X
        if self.n_conv_layers == 2:
            out = self.pre_conv(self.activation(self.pre_norm(out)))

        out = self.depthwise(self.activation(self.norm(out)))

        # residual before the pointwise conv so that the block can change channels
        return self.pointwise((out + X).contiguous())


class CNN(nn.Module):
    """Stack of convolutional blocks keeping the grid length.

    Parameters
    ----------
    n_channels : int or list
        Channels between blocks. An int keeps them constant, a list of length
        `n_blocks + 1` gives them explicitly, e.g. `[8, 16, 16]` for two blocks.

    ConvBlock : nn.Module, optional
        Block class, constructed as `ConvBlock(in_chan, out_chan, **kwargs)`.

    n_blocks : int, optional
        Number of blocks.

    is_chan_last : bool, optional
        Whether inputs are `[batch_size, n_grid, channels]` rather than
        `[batch_size, channels, n_grid]`.

    kwargs :
        Additional arguments to `ConvBlock`.
    """

    def __init__(
        self, n_channels, ConvBlock=ResConvBlock, n_blocks=3, is_chan_last=False, **kwargs
    ):
        super().__init__()
        self.n_blocks = n_blocks
        self.is_chan_last = is_chan_last
        self.in_out_channels = self._get_in_out_channels(n_channels, n_blocks)
        self.conv_blocks = nn.ModuleList(
            [ConvBlock(c_in, c_out, **kwargs) for c_in, c_out in self.in_out_channels]
        )

        self.reset_parameters()

    def reset_parameters(self):
        weights_init(self)

    @property
    def multiple(self):
        """Number the grid length has to be a multiple of."""
        return 1

    @property
    def in_channels(self):
        return self.in_out_channels[0][0]

    @property
    def out_channels(self):
        return self.in_out_channels[-1][1]

    def _get_in_out_channels(self, n_channels, n_blocks):
        """Return the (in, out) channels of every block."""
        if isinstance(n_channels, int):
            n_channels = [n_channels] * (n_blocks + 1)
        n_channels = list(n_channels)

        if len(n_channels) != n_blocks + 1:
            raise ValueError(
                f"{len(n_channels)} channels given for {n_blocks} blocks, expected "
                f"{n_blocks + 1}."
            )

        return list(zip(n_channels[:-1], n_channels[1:]))

    def forward(self, X):
        if self.is_chan_last:
            X = channels_to_2nd_dim(X)

        X = self.apply_convs(X)

        if self.is_chan_last:
            X = channels_to_last_dim(X)

        return X

    def apply_convs(self, X):
        for block in self.conv_blocks:
            X = block(X)
        return X


class UnetCNN(CNN):
    """UNet [1] over the grid: the first half of the blocks downsample, the second half
    upsample and concatenate the skip connections.

    Parameters
    ----------
    n_channels : int
        Channels of the first and last block. Doubled after every downsampling.

    ConvBlock : nn.Module, optional
        Block class, constructed as `ConvBlock(in_chan, out_chan, **kwargs)`.

    Pool : nn.Module, optional
        Downsampling class, e.g. `nn.MaxPool1d`.

    upsample_mode : str, optional
        Interpolation mode of `F.interpolate` used to upsample.

    max_nchannels : int, optional
        Cap on the number of channels of the inner blocks.

    pooling_size : int, optional
        Downsampling factor of every pooling.

    kwargs :
        Additional arguments to `CNN` (e.g. `n_blocks`, which has to be odd) and to
        `ConvBlock`.

    References
    ----------
    [1] Ronneberger, Olaf, Philipp Fischer, and Thomas Brox. "U-net: Convolutional
        networks for biomedical image segmentation." International Conference on
        Medical image computing and computer-assisted intervention. Springer, Cham, 2015.
    """

    def __init__(
        self,
        n_channels,
        ConvBlock=ResConvBlock,
        Pool=nn.MaxPool1d,
        upsample_mode="linear",
        max_nchannels=256,
        pooling_size=2,
        **kwargs,
    ):
        # needed by `_get_in_out_channels` during `CNN.__init__`
        self.max_nchannels = max_nchannels
        super().__init__(n_channels, ConvBlock, **kwargs)
        self.pooling_size = pooling_size
        self.pooling = Pool(pooling_size)
        self.upsample_mode = upsample_mode

    @property
    def multiple(self):
        return self.pooling_size ** (self.n_blocks // 2)

    def apply_convs(self, X):
        n_down = self.n_blocks // 2
        skips = []

        for block in self.conv_blocks[:n_down]:
            X = block(X)
            skips.append(X)
            X = self.pooling(X)

        X = self.conv_blocks[n_down](X)

        for block, skip in zip(self.conv_blocks[n_down + 1 :], reversed(skips)):
            X = F.interpolate(
                X,
                mode=self.upsample_mode,
                scale_factor=self.pooling_size,
                align_corners=True,
            )
            # size = [batch_size, 2 * channels, n_grid]
            X = block(torch.cat((X, skip), dim=1))

        return X

    def _get_in_out_channels(self, n_channels, n_blocks):
        """Return the (in, out) channels of every block, accounting for the skips."""
        if n_blocks % 2 != 1:
            raise ValueError(f"n_blocks={n_blocks} should be odd for a UNet.")

        n_down = n_blocks // 2

        # e.g. n_channels=8, n_blocks=5: [8, 16, 32, 32, 16, 8]
        down = [n_channels * 2 ** i for i in range(n_down + 1)]
        channels = down + down[::-1]
        # the first and last channels are the input / output ones and are not capped
        channels = (
            channels[:1]
            + [min(c, self.max_nchannels) for c in channels[1:-1]]
            + channels[-1:]
        )

        in_out_channels = super()._get_in_out_channels(channels, n_blocks)

        # up blocks also receive the skip connection
        # e.g.: [(8, 16), (16, 32), (32, 32), (64, 16), (32, 8)]
        for i in range(n_down + 1, n_blocks):
            c_in, c_out = in_out_channels[i]
            in_out_channels[i] = (2 * c_in, c_out)

        return in_out_channels


class ConvPipeline(nn.Module):
    """
    Pointwise input layer, convolutional body and pointwise output layer, on inputs with
    channels on the last dimension.

    Parameters
    ----------
    in_channels : int
        Number of input channels. For the decoder of a ConvNP this accounts for the
        density channel.

    out_channels : int
        Number of output channels.

    body : CNN
        Convolutional body with `is_chan_last=True` and `body.in_channels ==
        body.out_channels`.
    """

    def __init__(self, in_channels, out_channels, body):
        super().__init__()
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.body = body
        self.resizer_in = nn.Linear(in_channels, body.in_channels)
        self.resizer_out = nn.Linear(body.out_channels, out_channels)
        self.reset_parameters()

    def reset_parameters(self):
        weights_init(self)

    @property
    def multiple(self):
        return self.body.multiple

    def forward(self, X):
        """
        Parameters
        ----------
        X : torch.Tensor, size=[batch_size, n_grid, in_channels]

        Return
        ------
        out : torch.Tensor, size=[batch_size, n_grid, out_channels]
        """
        # (add ReLU to not have linear followed by linear)
        X = torch.relu(self.resizer_in(X))
        X = self.body(X)
        return self.resizer_out(X)


def build_conv(
    receptive_field,
    n_layers,
    n_channels,
    points_per_unit,
    in_channels,
    out_channels,
    is_unet=False,
    **kwargs
):
    """
    Build the convolutional decoder of a ConvNP.

    Parameters
    ----------
    receptive_field : float
        Width of the receptive field in input units.

    n_layers : int
        Number of convolutional blocks, excluding the pointwise input and output layers.
        Has to be odd for a UNet.

    n_channels : int
        Number of channels in the body of the CNN (of the first block for a UNet).

    points_per_unit : float
        Density of the grid the CNN acts on.

    in_channels : int
        Number of input channels (including the density channel).

    out_channels : int
        Number of output channels.

    is_unet : bool, optional
        Whether to use a UNet rather than a residual CNN.

    kwargs :
        Additional arguments to the `CNN`.
    """
    # every block adds `kernel_size - 1` points to the receptive field
    receptive_points = receptive_field * points_per_unit
    if is_unet:
        # resolution halves at each of the down blocks
        n_down = n_layers // 2
        receptive_points = receptive_points / 2 ** n_down
    kernel_size = ceil_odd(1 + (receptive_points - 1) / n_layers)
    if kernel_size < 3:
        logger.warning(
            f"receptive_field={receptive_field} spans less than the {n_layers} layers at "
            f"points_per_unit={points_per_unit}. Using kernel_size=3 instead."
        )
        kernel_size = 3

    logger.debug(f"Using kernel_size={kernel_size} for {n_layers} layers.")

    Body = UnetCNN if is_unet else CNN
    body = Body(
        n_channels,
        n_blocks=n_layers,
        is_chan_last=True,
        kernel_size=kernel_size,
        **kwargs,
    )
    return ConvPipeline(in_channels, out_channels, body)
