import pytest
import torch
from numpy.testing import assert_allclose
from deltaflow.config import dtype
from deltaflow.errors import StructuralError
from deltaflow.layer import Layer
from deltaflow.layers import (BiasLayer, DropoutNoiseLayer, FullyConnectedLayer, GaussianNoiseLayer,
                              LinearActivationLayer, NthPowerActivationLayer, ProductInputsLayer,
                              ReLuActivationLayer, SigmoidActivationLayer, SoftmaxActivationLayer,
                              SumInputsLayer, SumReducerLayer)
from deltaflow.losses import EntropyLossLayer, MeanSqLossLayer
from conftest import autograd, backprop


def _randn(*shape):
    return torch.randn(*shape, dtype=dtype)


def _positive(*shape):
    return torch.rand(*shape, dtype=dtype) + 0.5


def check_layer(layer, fn, arrays, params=()):
    """Compares output, input gradients and parameter gradients with torch autograd."""
    output, buffer, input_grads = backprop(layer, *arrays)
    grad_output = torch.ones_like(output)
    expected, expected_inputs, expected_params = autograd(fn, *arrays, params=params, grad_output=grad_output)
    assert_allclose(output.numpy(), expected.reshape(output.shape).numpy(), rtol=1e-10, atol=1e-12)
    for actual, reference in zip(input_grads, expected_inputs):
        assert_allclose(actual.numpy(), reference.numpy(), rtol=1e-8, atol=1e-10)
    for reference in expected_params:
        assert_allclose(buffer[layer.id].delta.numpy(), reference.numpy(), rtol=1e-8, atol=1e-10)


def check_layer_weighted(layer, fn, arrays, params=()):
    """Same as check_layer with a random upstream gradient."""
    output, _, _ = backprop(layer, *arrays)
    grad_output = _randn(*output.shape)
    output, buffer, input_grads = backprop(layer, *arrays, grad_output=grad_output)
    _, expected_inputs, expected_params = autograd(fn, *arrays, params=params,
                                                   grad_output=grad_output.reshape(fn(*arrays, *params).shape))
    for actual, reference in zip(input_grads, expected_inputs):
        assert_allclose(actual.numpy(), reference.numpy(), rtol=1e-8, atol=1e-10)
    for reference in expected_params:
        assert_allclose(buffer[layer.id].delta.numpy(), reference.numpy(), rtol=1e-8, atol=1e-10)


def test_fully_connected():
    layer = FullyConnectedLayer(3, 2).set_weights(_randn(3, 2))
    check_layer_weighted(layer, lambda x, w: x @ w, [_randn(4, 3)], params=(layer.weights,))


def test_fully_connected_multi_dimensional():
    layer = FullyConnectedLayer((2, 2), (3,)).set_weights(_randn(4, 3))
    check_layer(layer, lambda x, w: x.reshape(5, -1) @ w, [_randn(5, 2, 2)], params=(layer.weights,))


def test_fully_connected_randomize_is_seeded():
    a = FullyConnectedLayer(3, 4).randomize(torch.Generator().manual_seed(1))
    b = FullyConnectedLayer(3, 4).randomize(torch.Generator().manual_seed(1))
    assert torch.equal(a.weights, b.weights)
    assert float(a.weights.abs().max()) > 0


def test_bias():
    layer = BiasLayer(3).set_weights(_randn(3))
    check_layer_weighted(layer, lambda x, b: x + b, [_randn(4, 3)], params=(layer.bias,))


def test_linear_activation():
    layer = LinearActivationLayer(1.5, -0.25)
    check_layer_weighted(layer, lambda x, w: x * w[0] + w[1], [_randn(4, 3)], params=(layer.weights,))


@pytest.mark.parametrize("balanced", [True, False])
def test_sigmoid(balanced):
    layer = SigmoidActivationLayer(balanced=balanced)
    if balanced:
        fn = lambda x: 2 * torch.sigmoid(x) - 1
    else:
        fn = torch.sigmoid
    check_layer_weighted(layer, fn, [_randn(4, 3)])


def test_relu():
    x = _randn(4, 3)
    x[x.abs() < 1e-3] = 0.5
    check_layer_weighted(ReLuActivationLayer(), torch.relu, [x])


@pytest.mark.parametrize("power", [2.0, 3.0, 0.5, -1.0])
def test_nth_power(power):
    check_layer_weighted(NthPowerActivationLayer(power), lambda x: x ** power, [_positive(4, 3)])


def test_softmax():
    check_layer_weighted(SoftmaxActivationLayer(), lambda x: torch.softmax(x, dim=1), [_randn(4, 5)])


def test_sum_inputs():
    check_layer_weighted(SumInputsLayer(), lambda x, y, z: x + y + z, [_randn(4, 3), _randn(4, 3), _randn(4, 3)])


def test_product_inputs():
    check_layer_weighted(ProductInputsLayer(), lambda x, y: x * y, [_randn(4, 3), _randn(4, 3)])


def test_product_inputs_broadcasts_single_values():
    check_layer_weighted(ProductInputsLayer(), lambda x, s: x * s, [_randn(4, 3), _randn(4, 1)])


def test_sum_reducer():
    check_layer_weighted(SumReducerLayer(),
                         lambda x, y: x.sum(dim=1, keepdim=True) + y.sum(dim=1, keepdim=True),
                         [_randn(4, 3), _randn(4, 2)])


def test_mean_sq_loss():
    check_layer_weighted(MeanSqLossLayer(), lambda p, t: ((p - t) ** 2).mean(dim=1, keepdim=True),
                         [_randn(4, 3), _randn(4, 3)])


def test_entropy_loss():
    check_layer_weighted(EntropyLossLayer(), lambda p, t: -(t * torch.log(p)).sum(dim=1, keepdim=True),
                         [_positive(4, 3), _positive(4, 3)])


def test_entropy_loss_ignores_zero_labels():
    p = torch.tensor([[0.0, 1.0]], dtype=dtype)
    t = torch.tensor([[0.0, 1.0]], dtype=dtype)
    output, _, _ = backprop(EntropyLossLayer(), p, t)
    assert_allclose(output.numpy(), [[0.0]])


def test_loss_shape_mismatch():
    with pytest.raises(ValueError):
        backprop(MeanSqLossLayer(), _randn(4, 3), _randn(4, 2))


def test_non_finite_values_propagate():
    output, _, grads = backprop(NthPowerActivationLayer(0.5), torch.tensor([[-1.0, 4.0]], dtype=dtype))
    assert torch.isnan(output[0, 0])
    assert float(output[0, 1]) == 2.0
    assert torch.isnan(grads[0][0, 0])


def test_frozen_layer_passes_gradient_without_own_delta():
    layer = FullyConnectedLayer(3, 2).set_weights(_randn(3, 2)).freeze()
    x = _randn(4, 3)
    _, buffer, grads = backprop(layer, x)
    assert layer.id not in buffer
    _, expected, _ = autograd(lambda x: x @ layer.weights, x)
    assert_allclose(grads[0].numpy(), expected[0].numpy())


def test_gaussian_noise_is_seeded_and_passes_gradient():
    x = _randn(4, 3)
    a, _, grads = backprop(GaussianNoiseLayer(0.1, seed=7), x)
    b, _, _ = backprop(GaussianNoiseLayer(0.1, seed=7), x)
    c, _, _ = backprop(GaussianNoiseLayer(0.1, seed=8), x)
    assert torch.equal(a, b)
    assert not torch.equal(a, c)
    assert_allclose(grads[0].numpy(), torch.ones(4, 3).numpy())


def test_gaussian_noise_redraws_per_eval():
    layer = GaussianNoiseLayer(1.0, seed=3)
    x = _randn(2, 2)
    first, _, _ = backprop(layer, x)
    second, _, _ = backprop(layer, x)
    assert not torch.equal(first, second)
    layer.reseed(3)
    third, _, _ = backprop(layer, x)
    assert torch.equal(first, third)


def test_dropout_backward_reuses_forward_mask():
    x = _positive(8, 10)
    output, _, grads = backprop(DropoutNoiseLayer(0.5, seed=11), x)
    kept = (output != 0).to(dtype)
    assert 0 < float(kept.sum()) < 80
    assert_allclose(grads[0].numpy(), kept.numpy())


def test_arity_is_checked():
    with pytest.raises(StructuralError):
        backprop(FullyConnectedLayer(3, 2), _randn(4, 3), _randn(4, 3))
    with pytest.raises(StructuralError):
        backprop(MeanSqLossLayer(), _randn(4, 3))


@pytest.mark.parametrize("layer", [
    FullyConnectedLayer(3, 2).set_weights(torch.randn(3, 2, dtype=dtype)),
    BiasLayer((2, 2)).set_weights(torch.randn(2, 2, dtype=dtype)),
    LinearActivationLayer(0.1, 0.2),
    SigmoidActivationLayer(balanced=False),
    NthPowerActivationLayer(0.3),
    GaussianNoiseLayer(0.2, seed=4),
    MeanSqLossLayer(),
])
def test_json_round_trip(layer):
    layer.freeze()
    restored = Layer.from_json(layer.to_json())
    assert type(restored) is type(layer)
    assert restored.id == layer.id
    assert restored.name == layer.name
    assert restored.frozen
    for a, b in zip(layer.state(), restored.state()):
        assert torch.equal(a, b)
    assert restored.to_json() == layer.to_json()


def test_copy_is_independent():
    layer = BiasLayer(2).set_weights([1.0, 2.0])
    clone = layer.copy()
    clone.bias.add_(1.0)
    assert_allclose(layer.bias.numpy(), [1.0, 2.0])


def test_unknown_layer_class():
    with pytest.raises(StructuralError):
        Layer.from_json({"class": "NoSuchLayer", "id": "00000000-0000-0000-0000-000000000000"})
