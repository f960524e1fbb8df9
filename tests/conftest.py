import pytest
import torch
from deltaflow.config import dtype
from deltaflow.delta import DeltaSet
from deltaflow.layer import MutableResult
from deltaflow.layers import BiasLayer
from deltaflow.tensor import TensorList
from deltaflow.trainable import PointSample, Trainable


@pytest.fixture(autouse=True)
def seeded():
    torch.manual_seed(42)


def backprop(layer, *arrays, grad_output=None):
    """
    Runs `layer` forward on gradient collecting inputs and backward with `grad_output`
    (ones by default). Returns the output, the DeltaSet and the input gradients.
    """
    inputs = [MutableResult(TensorList.from_values(a)) for a in arrays]
    try:
        result = layer.eval(*inputs)
        try:
            output = result.data.data.clone()
            g = torch.ones_like(output) if grad_output is None else grad_output.to(dtype)
            delta = TensorList.wrap(g.clone())
            buffer = DeltaSet()
            result.accumulate(buffer, delta)
            delta.free()
        finally:
            result.free()
    finally:
        for r in inputs:
            r.free()
    input_grads = [buffer[r.key].delta.clone() if r.key in buffer else None for r in inputs]
    return output, buffer, input_grads


def autograd(fn, *arrays, params=(), grad_output=None):
    """Reference values from torch autograd: output, input gradients and parameter gradients."""
    with torch.enable_grad():
        xs = [torch.as_tensor(a, dtype=dtype).clone().requires_grad_(True) for a in arrays]
        ps = [p.clone().requires_grad_(True) for p in params]
        out = fn(*xs, *ps)
        out.backward(torch.ones_like(out) if grad_output is None else grad_output)
    return out.detach(), [x.grad for x in xs], [p.grad for p in ps]


def finite_difference(trainable, weights, eps=1e-6):
    """Central difference gradient of trainable fitness with respect to the tensor `weights`."""
    grad = torch.zeros_like(weights)
    flat = weights.view(-1)
    for i in range(flat.numel()):
        original = float(flat[i])
        flat[i] = original + eps
        upper = trainable.measure().fitness
        flat[i] = original - eps
        lower = trainable.measure().fitness
        flat[i] = original
        grad.view(-1)[i] = (upper - lower) / (2 * eps)
    return grad


class QuadraticTrainable(Trainable):
    """f(w) = 0.5 * sum(scales * (w - center)^2) over the bias of one BiasLayer."""

    def __init__(self, scales, center, start=None):
        self.scales = torch.as_tensor(scales, dtype=dtype)
        self.center = torch.as_tensor(center, dtype=dtype)
        self.layer = BiasLayer(self.scales.shape)
        if start is not None:
            self.layer.set_weights(start)
        self.evaluations = 0

    def get_layer(self):
        return self.layer

    def measure(self, monitor=None):
        self.evaluations += 1
        w = self.layer.bias
        diff = w - self.center
        delta = DeltaSet()
        delta.get(self.layer.id, w).accumulate(self.scales * diff)
        return PointSample(delta, delta.state(), 0.5 * float((self.scales * diff * diff).sum()), 1)


@pytest.fixture
def quadratic():
    return QuadraticTrainable([1.0, 10.0, 100.0], [1.0, -2.0, 0.5], start=[0.0, 0.0, 0.0])


@pytest.fixture
def regression_rows():
    """y = x0 - x1 + 1 on a small grid."""
    rows = []
    for a in (-1.0, 0.0, 1.0, 2.0):
        for b in (-1.0, 0.5, 1.5):
            rows.append((torch.tensor([a, b], dtype=dtype), torch.tensor([a - b + 1.0], dtype=dtype)))
    return rows
