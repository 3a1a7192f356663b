"""Operation table shared by all differentiable primitives."""

__all__ = ["OPERATIONS", "register_operation", "get_operation", "sum_to_shape"]

# name -> `torch.autograd.Function` subclass with an explicit `forward` and `backward`
OPERATIONS = dict()


def register_operation(name):
    """Class decorator adding a `torch.autograd.Function` to `OPERATIONS` under `name`."""

    def register(Operation):
        if name in OPERATIONS:
            raise ValueError(f"Operation `{name}` is already registered.")
        Operation.op_name = name
        OPERATIONS[name] = Operation
        return Operation

    return register


def get_operation(name):
    """Return the registered operation called `name`."""
    try:
        return OPERATIONS[name]
    except KeyError:
        raise ValueError(
            f"Unknown operation `{name}`. Available: {sorted(OPERATIONS)}."
        ) from None


def sum_to_shape(grad, shape):
    """Sum a broadcasted gradient back to the shape of the input it flows to."""
    if grad is None or grad.shape == shape:
        return grad
    return grad.sum_to_size(shape)
