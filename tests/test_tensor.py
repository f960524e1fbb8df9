import math
import pytest
import torch
from numpy.testing import assert_allclose
from deltaflow import config
from deltaflow.errors import ResourceError
from deltaflow.tensor import POOL, RecyclingPool, Tensor, TensorList


def test_reference_count_arithmetic():
    t = Tensor.zeros(2, 3)
    for _ in range(4):
        t.add_ref()
    for _ in range(3):
        t.free()
    assert t.ref_count == 1 + 4 - 3
    assert not t.is_freed
    t.free()
    t.free()
    assert t.is_freed


def test_double_release_raises():
    t = Tensor.zeros(3)
    t.free()
    with pytest.raises(ResourceError):
        t.free()


def test_use_after_release_raises():
    t = TensorList.zeros(2, (3,))
    t.free()
    with pytest.raises(ResourceError):
        _ = t.data
    with pytest.raises(ResourceError):
        t.add_ref()


def test_pool_reuses_storage_across_shapes():
    pool = RecyclingPool(bucket_limit=2)
    first = pool.borrow((3, 4))
    pointer = first.data_ptr()
    pool.recycle(first)
    second = pool.borrow((12,))
    assert second.data_ptr() == pointer
    assert second.shape == (12,)
    assert pool.hits == 1 and pool.misses == 1


def test_pool_bucket_limit():
    pool = RecyclingPool(bucket_limit=2)
    buffers = [pool.borrow((5,)) for _ in range(4)]
    for b in buffers:
        pool.recycle(b)
    assert pool.size() == 2
    pool.clear()
    assert pool.size() == 0


@pytest.mark.skipif(not config.CHECK_REFERENCES, reason="poisoning is disabled")
def test_released_buffer_is_poisoned():
    t = Tensor.from_values([1.0, 2.0, 3.0])
    raw = t.data
    t.free()
    assert all(math.isnan(v) for v in raw.tolist())


def test_wrapped_tensor_is_not_recycled():
    source = torch.arange(6, dtype=config.dtype)
    before = POOL.size()
    t = Tensor.wrap(source)
    t.free()
    assert POOL.size() == before
    assert_allclose(source.numpy(), range(6))


def test_zeros_overwrites_recycled_content():
    t = Tensor.from_values([5.0, 6.0])
    t.free()
    z = Tensor.zeros(2)
    assert_allclose(z.data.numpy(), [0.0, 0.0])
    z.free()


def test_tensor_access():
    t = Tensor.from_values([1.0, 2.0, 3.0, 4.0], (2, 2))
    assert t.dimensions == (2, 2)
    assert t.length() == 4
    assert t.get(1, 0) == 3.0
    t.set((0, 1), 9.0)
    c = t.copy()
    assert c.get(0, 1) == 9.0
    t.free()
    c.free()


def test_tensor_list_stack_and_get():
    a = Tensor.from_values([1.0, 2.0])
    b = Tensor.from_values([3.0, 4.0])
    batch = TensorList.stack([a, b])
    assert len(batch) == 2
    assert batch.dimensions == (2,)
    item = batch.get(1)
    assert_allclose(item.data.numpy(), [3.0, 4.0])
    item.data.fill_(0.0)
    assert_allclose(batch.data[1].numpy(), [3.0, 4.0])
    for t in (a, b, item, batch):
        t.free()


def test_stack_rejects_mixed_shapes():
    a = Tensor.zeros(2)
    b = Tensor.zeros(3)
    with pytest.raises(ValueError):
        TensorList.stack([a, b])
    a.free()
    b.free()


def test_tensor_list_arithmetic():
    x = TensorList.from_values([[1.0, 2.0], [3.0, 4.0]])
    y = x.scale(2.0)
    z = x.add(y)
    assert_allclose(z.data.numpy(), [[3.0, 6.0], [9.0, 12.0]])
    doubled = x.copy()
    x.add_in_place(doubled)
    assert_allclose(x.data.numpy(), [[2.0, 4.0], [6.0, 8.0]])
    for t in (x, y, z, doubled):
        t.free()
