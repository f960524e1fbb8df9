import json
import pytest
import torch
from concurrent.futures import ThreadPoolExecutor
from numpy.testing import assert_allclose
from deltaflow.config import dtype
from deltaflow.evolving import NodeMode, PolynomialNetwork, SigmoidTreeNetwork
from deltaflow.layer import Layer
from deltaflow.layers import BiasLayer, FullyConnectedLayer
from deltaflow.losses import MeanSqLossLayer
from deltaflow.network import SimpleLossNetwork
from deltaflow.trainable import ArrayTrainable
from conftest import backprop


def _tree(**kwargs):
    alpha = FullyConnectedLayer(3, 2).set_weights(torch.randn(3, 2, dtype=dtype))
    alpha_bias = BiasLayer(3).set_weights(torch.randn(3, dtype=dtype))
    return SigmoidTreeNetwork(alpha, alpha_bias, **kwargs)


def test_polynomial_head_is_built_lazily():
    net = PolynomialNetwork((3,), (2,), seed=1)
    assert net.alpha is None
    output, buffer, _ = backprop(net, torch.randn(4, 3, dtype=dtype))
    assert output.shape == (4, 2)
    assert net.alpha.id in buffer
    assert len(net.state()) == 2


def test_polynomial_terms_keep_output():
    net = PolynomialNetwork((3,), (2,), seed=1)
    x = torch.randn(4, 3, dtype=dtype)
    before, _, _ = backprop(net, x)
    net.add_term(2.0)
    net.next_phase()
    assert [c.power for c in net.corrections] == [2.0, 2.0]
    after, buffer, _ = backprop(net, x)
    assert_allclose(after.numpy(), before.numpy(), rtol=1e-10)
    for c in net.corrections:
        assert c.factor.id in buffer and c.bias.id in buffer


def test_polynomial_json_round_trip():
    net = PolynomialNetwork((3,), (2,), seed=2)
    net.add_term(3.0)
    net.corrections[0].factor.set_weights(torch.randn(3, 2, dtype=dtype) * 0.1)
    x = torch.randn(5, 3, dtype=dtype)
    expected, _, _ = backprop(net, x)
    restored = Layer.from_json(json.loads(json.dumps(net.to_json())))
    assert isinstance(restored, PolynomialNetwork)
    assert restored.alpha.id == net.alpha.id
    assert restored.alpha_bias.id == net.alpha_bias.id
    assert [c.power for c in restored.corrections] == [3.0]
    actual, _, _ = backprop(restored, x)
    assert torch.equal(expected, actual)
    restored.add_term(2.0)
    grown, _, _ = backprop(restored, x)
    assert_allclose(grown.numpy(), expected.numpy(), rtol=1e-10)


def test_sigmoid_tree_transitions_keep_output():
    net = _tree()
    x = torch.randn(6, 3, dtype=dtype)
    expected, _, _ = backprop(net, x)
    modes = [net.mode]
    for _ in range(3):
        net.next_phase()
        modes.append(net.mode)
        actual, _, _ = backprop(net, x)
        assert_allclose(actual.numpy(), expected.numpy(), rtol=1e-8, atol=1e-10)
    assert modes == [NodeMode.LINEAR, NodeMode.FUZZY, NodeMode.BILINEAR, NodeMode.FINAL]


def test_sigmoid_tree_final_stage_recurses():
    net = _tree(skip_child_stage=True)
    for _ in range(3):
        net.next_phase()
    assert isinstance(net.alpha, SigmoidTreeNetwork)
    assert net.alpha.mode is NodeMode.FUZZY
    net.next_phase()
    assert net.mode is NodeMode.FINAL
    assert net.alpha.mode is NodeMode.BILINEAR
    assert net.beta.mode is NodeMode.BILINEAR


def test_sigmoid_tree_skip_fuzzy():
    net = _tree(skip_fuzzy=True)
    net.next_phase()
    assert net.mode is NodeMode.BILINEAR


def test_sigmoid_tree_gate_receives_gradient():
    net = _tree()
    net.next_phase()
    _, buffer, _ = backprop(net, torch.randn(4, 3, dtype=dtype), grad_output=torch.randn(4, 2, dtype=dtype))
    assert net.gate.id in buffer
    assert net.alpha.id in buffer


def test_sigmoid_tree_json_round_trip():
    net = _tree()
    for _ in range(3):
        net.next_phase()
    x = torch.randn(4, 3, dtype=dtype)
    expected, _, _ = backprop(net, x)
    restored = Layer.from_json(json.loads(json.dumps(net.to_json())))
    assert restored.mode is NodeMode.FINAL
    assert isinstance(restored.alpha, SigmoidTreeNetwork)
    assert restored.gate.id == net.gate.id
    actual, _, _ = backprop(restored, x)
    assert torch.equal(expected, actual)
    restored.next_phase()
    assert restored.alpha.mode is NodeMode.BILINEAR


def _sum_rows(count=12):
    x = torch.randn(count, 3, dtype=dtype)
    return list(zip(x, x.sum(dim=1, keepdim=True)))


def test_lazy_head_is_built_once_across_threads():
    net = PolynomialNetwork((3,), (1,), seed=3)
    for _ in range(5):
        net.next_phase()
        with ThreadPoolExecutor(max_workers=8) as executor:
            heads = list(executor.map(lambda _: net.get_head(), range(32)))
        assert all(h is heads[0] for h in heads)
        # alpha and its bias, three nodes per term, one product
        assert len(net.nodes) == 2 + 3 * len(net.corrections) + 1


def test_parallel_measure_after_growth():
    poly = PolynomialNetwork((3,), (1,), seed=4)
    net = SimpleLossNetwork(poly, MeanSqLossLayer())
    rows = _sum_rows()
    parallel = ArrayTrainable(rows, net, batch_size=1, num_workers=8)
    serial = ArrayTrainable(rows, net, num_workers=1)
    for _ in range(50):
        poly.next_phase()
        sample = parallel.measure()
        assert sample.is_finite()
        assert sample.count == len(rows)
        assert sample.fitness == pytest.approx(serial.measure().fitness)
    assert len(poly.corrections) == 50
