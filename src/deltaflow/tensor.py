import math
import logging
import threading
import torch
from .config import device, dtype, CHECK_REFERENCES, POOL_BUCKET_LIMIT
from .errors import ResourceError

logger = logging.getLogger(__name__)


class ReferenceCounted:
    """
    Explicit reference counting for objects that own large buffers.
    An object starts with one reference. add_ref() hands out another handle to the
    same object, free() gives one back and the last free() releases the resources.
    """
    __slots__ = ('_ref_count', '_ref_lock', '__weakref__')

    def __init__(self):
        self._ref_count = 1
        self._ref_lock = threading.Lock()

    def add_ref(self):
        with self._ref_lock:
            if self._ref_count <= 0:
                raise ResourceError(f"add_ref() on released {type(self).__name__}")
            self._ref_count += 1
        return self

    def free(self):
        with self._ref_lock:
            if self._ref_count <= 0:
                raise ResourceError(f"{type(self).__name__} released twice")
            self._ref_count -= 1
            release = self._ref_count == 0
        if release:
            self._free()

    def _free(self):
        pass

    @property
    def ref_count(self):
        return self._ref_count

    @property
    def is_freed(self):
        return self._ref_count <= 0

    def assert_alive(self):
        if self._ref_count <= 0:
            raise ResourceError(f"{type(self).__name__} used after release")


class RecyclingPool:
    """
    Size bucketed pool of flat float64 buffers. Buffers are keyed by element count
    and handed back reshaped, so a released (3, 4) buffer serves a later (12,) request.
    """
    __slots__ = ('_buckets', '_lock', 'bucket_limit', 'hits', 'misses')

    def __init__(self, bucket_limit=POOL_BUCKET_LIMIT):
        self._buckets = {}
        self._lock = threading.Lock()
        self.bucket_limit = bucket_limit
        self.hits = 0
        self.misses = 0

    def borrow(self, dimensions):
        dimensions = tuple(int(d) for d in dimensions)
        numel = math.prod(dimensions)
        buffer = None
        with self._lock:
            bucket = self._buckets.get(numel)
            if bucket:
                buffer = bucket.pop()
                self.hits += 1
            else:
                self.misses += 1
        if buffer is None:
            return torch.empty(dimensions, dtype=dtype, device=device)
        return buffer.view(dimensions)

    def recycle(self, buffer):
        if buffer.dtype != dtype or not buffer.is_contiguous():
            return
        flat = buffer.view(-1)
        if CHECK_REFERENCES:
            # stale readers see NaN instead of plausible numbers
            flat.fill_(math.nan)
        with self._lock:
            bucket = self._buckets.setdefault(flat.numel(), [])
            if len(bucket) < self.bucket_limit:
                bucket.append(flat)

    def size(self):
        with self._lock:
            return sum(len(bucket) for bucket in self._buckets.values())

    def clear(self):
        with self._lock:
            self._buckets.clear()
            self.hits = 0
            self.misses = 0

    def __repr__(self):
        return f"RecyclingPool(buffers={self.size()}, hits={self.hits}, misses={self.misses})"


POOL = RecyclingPool()


class Tensor(ReferenceCounted):
    """A dense float64 array with a fixed shape and reference counted storage."""
    __slots__ = ('_data', '_owned')

    def __init__(self, data, *, owned=True):
        super().__init__()
        assert isinstance(data, torch.Tensor)
        self._data = data
        self._owned = owned

    @classmethod
    def empty(cls, *dims):
        return cls(POOL.borrow(dims))

    @classmethod
    def zeros(cls, *dims):
        return cls(POOL.borrow(dims).zero_())

    @classmethod
    def from_values(cls, values, dims=None):
        source = torch.as_tensor(values, dtype=dtype, device=device)
        if dims is not None:
            source = source.reshape(tuple(dims))
        buffer = POOL.borrow(source.shape)
        buffer.copy_(source)
        return cls(buffer)

    @classmethod
    def wrap(cls, data):
        """Wrap an existing torch tensor without copying; the storage is never recycled."""
        return cls(data, owned=False)

    @property
    def data(self):
        if self._data is None:
            raise ResourceError("Tensor used after release")
        return self._data

    @property
    def dimensions(self):
        return tuple(self.data.shape)

    def length(self):
        return self.data.numel()

    def copy(self):
        buffer = POOL.borrow(self.dimensions)
        buffer.copy_(self.data)
        return Tensor(buffer)

    def get(self, *coords):
        return float(self.data[coords])

    def set(self, coords, value):
        self.data[tuple(coords)] = value
        return self

    def _free(self):
        data, self._data = self._data, None
        if self._owned:
            POOL.recycle(data)

    def __repr__(self):
        if self._data is None:
            return "Tensor(<released>)"
        return f"Tensor(dims={self.dimensions}, refs={self.ref_count})"


class TensorList(ReferenceCounted):
    """
    An ordered batch of equally shaped tensors stored as one buffer of shape
    (length, *dimensions). Sample i is data[i].
    """
    __slots__ = ('_data', '_owned')

    def __init__(self, data, *, owned=True):
        super().__init__()
        assert isinstance(data, torch.Tensor)
        assert data.ndim >= 1, "a TensorList needs a batch axis"
        self._data = data
        self._owned = owned

    @classmethod
    def empty(cls, length, dims):
        return cls(POOL.borrow((length, *dims)))

    @classmethod
    def zeros(cls, length, dims):
        return cls(POOL.borrow((length, *dims)).zero_())

    @classmethod
    def wrap(cls, data, *, owned=False):
        """
        Wrap a batched torch tensor. owned=True hands the storage to the pool on release,
        use it only for freshly computed tensors nobody else references.
        """
        return cls(data, owned=owned)

    @classmethod
    def stack(cls, tensors):
        tensors = list(tensors)
        if not tensors:
            raise ValueError("Cannot stack an empty sequence of tensors.")
        dims = tensors[0].dimensions
        for t in tensors:
            if t.dimensions != dims:
                raise ValueError(f"Non-uniform tensor shapes in batch: {dims} vs {t.dimensions}")
        result = cls.empty(len(tensors), dims)
        for i, t in enumerate(tensors):
            result._data[i].copy_(t.data)
        return result

    @classmethod
    def from_values(cls, values):
        source = torch.as_tensor(values, dtype=dtype, device=device)
        if source.ndim == 0:
            source = source.reshape(1, 1)
        elif source.ndim == 1:
            source = source.unsqueeze(1)
        result = cls.empty(source.shape[0], source.shape[1:])
        result._data.copy_(source)
        return result

    @property
    def data(self):
        if self._data is None:
            raise ResourceError("TensorList used after release")
        return self._data

    @property
    def dimensions(self):
        return tuple(self.data.shape[1:])

    def length(self):
        return self.data.shape[0]

    def __len__(self):
        return self.length()

    def get(self, index):
        """Returns an owned copy of sample `index`; the caller frees it."""
        buffer = POOL.borrow(self.dimensions)
        buffer.copy_(self.data[index])
        return Tensor(buffer)

    def __iter__(self):
        for i in range(self.length()):
            yield self.get(i)

    def copy(self):
        result = TensorList.empty(self.length(), self.dimensions)
        result._data.copy_(self.data)
        return result

    def add(self, other):
        if other.data.shape != self.data.shape:
            raise ValueError(f"Shape mismatch: {tuple(self.data.shape)} vs {tuple(other.data.shape)}")
        result = TensorList.empty(self.length(), self.dimensions)
        torch.add(self.data, other.data, out=result._data)
        return result

    def add_in_place(self, other):
        self.data.add_(other.data)
        return self

    def scale(self, factor):
        result = TensorList.empty(self.length(), self.dimensions)
        torch.mul(self.data, factor, out=result._data)
        return result

    def _free(self):
        data, self._data = self._data, None
        if self._owned:
            POOL.recycle(data)

    def __repr__(self):
        if self._data is None:
            return "TensorList(<released>)"
        return f"TensorList(length={self.length()}, dims={self.dimensions}, refs={self.ref_count})"
