import math
import uuid
import pytest
import torch
from numpy.testing import assert_allclose
from deltaflow.config import dtype
from deltaflow.delta import Delta, DeltaSet, StateSet
from deltaflow.errors import NumericalError


def _params():
    return torch.tensor([1.0, 2.0], dtype=dtype), torch.tensor([[3.0]], dtype=dtype)


def test_accumulation_is_additive_and_order_independent():
    w1, w2 = _params()
    k1, k2 = uuid.uuid4(), uuid.uuid4()
    contributions = [(k1, w1, torch.tensor([1.0, 0.5])), (k2, w2, torch.tensor([[2.0]])),
                     (k1, w1, torch.tensor([-0.25, 4.0]))]
    forward, backward = DeltaSet(), DeltaSet()
    for key, target, values in contributions:
        forward.get(key, target).accumulate(values.to(dtype))
    for key, target, values in reversed(contributions):
        backward.get(key, target).accumulate(values.to(dtype))
    assert_allclose(forward[k1].delta.numpy(), [0.75, 4.5])
    assert_allclose(forward[k1].delta.numpy(), backward[k1].delta.numpy())
    assert_allclose(forward[k2].delta.numpy(), backward[k2].delta.numpy())


def test_shape_mismatch_is_rejected():
    w1, w2 = _params()
    key = uuid.uuid4()
    buffer = DeltaSet()
    buffer.get(key, w1)
    with pytest.raises(ValueError):
        buffer.get(key, w2)


def test_vector_operations():
    w1, w2 = _params()
    a = DeltaSet([Delta("a", w1, torch.tensor([3.0, 4.0], dtype=dtype))])
    b = DeltaSet([Delta("a", w1, torch.tensor([1.0, 1.0], dtype=dtype)),
                  Delta("b", w2, torch.tensor([[2.0]], dtype=dtype))])
    assert a.magnitude() == pytest.approx(5.0)
    assert a.dot(b) == pytest.approx(7.0)
    assert_allclose(a.add(b)["a"].delta.numpy(), [4.0, 5.0])
    assert_allclose(a.subtract(b)["b"].delta.numpy(), [[-2.0]])
    assert_allclose(a.scale(2.0)["a"].delta.numpy(), [6.0, 8.0])
    assert a.unit().magnitude() == pytest.approx(1.0)
    assert b.length() == 3
    assert_allclose(a["a"].delta.numpy(), [3.0, 4.0])


def test_unit_of_non_finite_set_raises():
    w1, _ = _params()
    broken = DeltaSet([Delta("a", w1, torch.tensor([math.inf, 1.0], dtype=dtype))])
    assert not broken.is_finite()
    with pytest.raises(NumericalError):
        broken.unit()


def test_apply_moves_live_parameters():
    w1, _ = _params()
    step = DeltaSet([Delta("a", w1, torch.tensor([1.0, -1.0], dtype=dtype))])
    step.apply(0.5)
    assert_allclose(w1.numpy(), [1.5, 1.5])


def test_state_snapshot_and_restore():
    w1, w2 = _params()
    gradient = DeltaSet([Delta("a", w1), Delta("b", w2)])
    state = gradient.state()
    assert isinstance(state, StateSet)
    assert state.matches_live()
    w1.add_(1.0)
    assert not state.matches_live()
    moved = gradient.state()
    assert_allclose(moved.difference(state)["a"].delta.numpy(), [1.0, 1.0])
    assert moved.is_different(state)
    state.restore()
    assert_allclose(w1.numpy(), [1.0, 2.0])
    assert not gradient.state().is_different(state)


def test_is_finite():
    w1, _ = _params()
    good = DeltaSet([Delta("a", w1, torch.tensor([1.0, 2.0], dtype=dtype))])
    bad = DeltaSet([Delta("a", w1, torch.tensor([1.0, float("nan")], dtype=dtype))])
    assert good.is_finite()
    assert not bad.is_finite()
