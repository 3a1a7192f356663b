import logging
import math

import torch
import torch.nn as nn

from convnp.backend import ExecutionContext

__all__ = ["UniformDiscretisation1d"]

logger = logging.getLogger(__name__)


class UniformDiscretisation1d(nn.Module):
    """Uniform one dimensional grid covering all the inputs of a batch.

    Parameters
    ----------
    points_per_unit : float
        Density of the grid, the spacing is `1 / points_per_unit`.

    margin : float, optional
        Distance the grid extends beyond the smallest and largest inputs.

    multiple : int, optional
        The number of grid points is rounded up to a multiple of `multiple`. Should be the
        alignment required by the decoder (e.g. `2**n_downsampling` for a UNet) to avoid
        convolution edge artifacts.

    context : ExecutionContext, optional
        Execution context through which bounds are read on the host.
    """

    def __init__(self, points_per_unit, margin=0.1, multiple=1, context=None):
        super().__init__()

        if points_per_unit <= 0:
            raise ValueError(f"points_per_unit={points_per_unit} should be positive.")
        if margin < 0:
            raise ValueError(f"margin={margin} should be non negative.")
        if multiple < 1:
            raise ValueError(f"multiple={multiple} should be at least 1.")

        self.points_per_unit = points_per_unit
        self.margin = margin
        self.multiple = int(multiple)
        self.context = context if context is not None else ExecutionContext()

    def get_n_points(self, span):
        """Number of grid points needed to cover an interval of length `span`."""
        n_points = math.ceil(span * self.points_per_unit - 1e-6) + 1
        return math.ceil(n_points / self.multiple) * self.multiple

    def forward(self, *Xs):
        """
        Compute the grid covering all the inputs.

        Parameters
        ----------
        Xs : torch.Tensor, size=[batch_size, n_i, 1]
            Inputs (e.g. context and target features). Empty sets are ignored.

        Return
        ------
        X_grid : torch.Tensor, size=[n_grid]
        """
        Xs = [X for X in Xs if X.numel() > 0]
        if len(Xs) == 0:
            raise ValueError("Cannot discretise without any input.")

        backend = self.context.backend_for(Xs[0])

        # bounds over the whole batch => same grid for every element
        x_min = backend.host_scalar(torch.stack([X.min() for X in Xs]).min())
        x_max = backend.host_scalar(torch.stack([X.max() for X in Xs]).max())

        lower = x_min - self.margin
        upper = x_max + self.margin
        n_points = self.get_n_points(upper - lower)

        # spread the extra length from rounding up evenly on both sides
        extra = (n_points - 1) / self.points_per_unit - (upper - lower)
        lower = lower - extra / 2

        logger.debug(
            f"Discretising [{x_min:.3f}, {x_max:.3f}] with {n_points} points."
        )

        # size = [n_grid]
        return lower + backend.arange(n_points) / self.points_per_unit

    def extra_repr(self):
        return f"points_per_unit={self.points_per_unit}, margin={self.margin}, multiple={self.multiple}"
