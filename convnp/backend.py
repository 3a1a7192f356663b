"""Module for the execution context and tensor backends used by the primitives."""

import torch

__all__ = ["ScalarIndexingError", "ExecutionContext", "Backend"]


class ScalarIndexingError(RuntimeError):
    """Raised when a non reduced tensor is moved element by element to the host."""


class ExecutionContext:
    """
    Explicit execution state given to the models at construction.

    Parameters
    ----------
    allow_scalar_indexing : bool, optional
        Whether tensors with more than one element can be read back on the host. Should
        stay `False` for accelerator runs, where only reduced values (e.g. the bounds of
        the discretisation) may leave the device.
    """

    def __init__(self, allow_scalar_indexing=False):
        self._allow_scalar_indexing = allow_scalar_indexing

    @property
    def allow_scalar_indexing(self):
        return self._allow_scalar_indexing

    def backend_for(self, tensor):
        """Return the backend matching the device and dtype of `tensor`."""
        return Backend.from_tensor(
            tensor, allow_scalar_indexing=self.allow_scalar_indexing
        )

    def __repr__(self):
        return f"ExecutionContext(allow_scalar_indexing={self.allow_scalar_indexing})"


class Backend:
    """Strategy object through which primitives create tensors and reach the host.

    Parameters
    ----------
    device : torch.device or str, optional
        Device on which to create the tensors.

    dtype : torch.dtype, optional
        Floating point type of the created tensors.

    allow_scalar_indexing : bool, optional
        See `ExecutionContext`.
    """

    def __init__(self, device="cpu", dtype=torch.float32, allow_scalar_indexing=False):
        self.device = torch.device(device)
        self.dtype = dtype
        self.allow_scalar_indexing = allow_scalar_indexing

    @classmethod
    def from_tensor(cls, tensor, allow_scalar_indexing=False):
        dtype = tensor.dtype if tensor.is_floating_point() else torch.get_default_dtype()
        return cls(
            device=tensor.device,
            dtype=dtype,
            allow_scalar_indexing=allow_scalar_indexing,
        )

    def ones(self, *size):
        return torch.ones(*size, device=self.device, dtype=self.dtype)

    def zeros(self, *size):
        return torch.zeros(*size, device=self.device, dtype=self.dtype)

    def eye(self, n):
        return torch.eye(n, device=self.device, dtype=self.dtype)

    def arange(self, n):
        return torch.arange(n, device=self.device, dtype=self.dtype)

    def randn(self, *size, generator=None):
        return torch.randn(
            *size, device=self.device, dtype=self.dtype, generator=generator
        )

    def host_scalar(self, tensor):
        """Move a reduced (single element) tensor to the host as a python number."""
        if tensor.numel() != 1 and not self.allow_scalar_indexing:
            raise ScalarIndexingError(
                f"Cannot read a tensor of shape {tuple(tensor.shape)} on the host when "
                "scalar indexing is disallowed. Reduce it on the device first."
            )
        return tensor.reshape(-1)[0].item()

    def __repr__(self):
        return (
            f"Backend(device={self.device}, dtype={self.dtype}, "
            f"allow_scalar_indexing={self.allow_scalar_indexing})"
        )
