import math
import threading
import torch
from .errors import NumericalError


class Delta:
    """
    One accumulation buffer for one parameter owner. `target` is the live parameter
    tensor the buffer applies to, `delta` has the same shape.
    """
    __slots__ = ('key', 'target', 'delta')

    def __init__(self, key, target, delta=None):
        self.key = key
        self.target = target
        self.delta = torch.zeros_like(target) if delta is None else delta

    def accumulate(self, values):
        self.delta.add_(values.reshape(self.delta.shape))
        return self

    def apply(self, factor=1.0):
        """Moves the live parameter by factor * delta, in place."""
        self.target.add_(self.delta, alpha=factor)

    def copy(self):
        return Delta(self.key, self.target, self.delta.clone())

    def length(self):
        return self.delta.numel()

    def dot(self, other):
        return float(torch.dot(self.delta.reshape(-1), other.delta.reshape(-1)))

    def __repr__(self):
        return f"Delta(key={self.key}, shape={tuple(self.delta.shape)})"


class DeltaSet:
    """
    Gradient accumulator keyed by parameter owner id. Accumulation is additive, so the
    order in which contributions arrive only matters up to floating point rounding.
    get() is thread safe; the buffers themselves are not, give each worker its own
    DeltaSet and merge them with accumulate().
    """
    __slots__ = ('_map', '_lock')

    def __init__(self, entries=None):
        self._map = {}
        self._lock = threading.Lock()
        if entries is not None:
            for entry in entries:
                self._map[entry.key] = entry

    def _new(self, entries):
        return type(self)(entries)

    def get(self, key, target):
        with self._lock:
            entry = self._map.get(key)
            if entry is None:
                entry = Delta(key, target)
                self._map[key] = entry
            elif entry.target.shape != target.shape:
                raise ValueError(f"Delta for {key} has shape {tuple(entry.target.shape)}, got {tuple(target.shape)}")
            return entry

    def __getitem__(self, key):
        return self._map[key]

    def __contains__(self, key):
        return key in self._map

    def __len__(self):
        return len(self._map)

    def __iter__(self):
        return iter(self._map)

    def keys(self):
        return self._map.keys()

    def values(self):
        return self._map.values()

    def items(self):
        return self._map.items()

    def accumulate(self, other):
        """Adds every entry of `other` into this set, in place."""
        for key, entry in other.items():
            self.get(key, entry.target).accumulate(entry.delta)
        return self

    def copy(self):
        return self._new(entry.copy() for entry in self.values())

    def map(self, fn):
        return self._new(Delta(key, entry.target, fn(entry.delta)) for key, entry in self.items())

    def scale(self, factor):
        return self.map(lambda d: d * factor)

    def add(self, other):
        return self.copy().accumulate(other)

    def subtract(self, other):
        return self.copy().accumulate(other.scale(-1.0))

    def dot(self, other):
        total = 0.0
        for key, entry in self.items():
            if key in other:
                total += entry.dot(other[key])
        return total

    def magnitude(self):
        return math.sqrt(max(self.dot(self), 0.0))

    def unit(self):
        magnitude = self.magnitude()
        if not math.isfinite(magnitude):
            raise NumericalError(f"Cannot normalize a delta set of magnitude {magnitude}")
        if magnitude == 0:
            return self.copy()
        return self.scale(1.0 / magnitude)

    def length(self):
        return sum(entry.length() for entry in self.values())

    def is_finite(self):
        return all(bool(torch.isfinite(entry.delta).all()) for entry in self.values())

    def apply(self, factor=1.0):
        for entry in self.values():
            entry.apply(factor)

    def state(self):
        """Snapshot of the live parameters of every key in this set."""
        return StateSet(Delta(key, entry.target, entry.target.clone()) for key, entry in self.items())

    def __repr__(self):
        return f"{type(self).__name__}(entries={len(self)}, length={self.length()})"


class StateSet(DeltaSet):
    """A DeltaSet whose buffers hold parameter values instead of gradients."""
    __slots__ = ()

    def restore(self):
        """Writes the snapshot back into the live parameters."""
        for entry in self.values():
            entry.target.copy_(entry.delta)

    def difference(self, other):
        """self - other as a DeltaSet, e.g. the step that moved `other` to `self`."""
        return DeltaSet(Delta(key, entry.target, entry.delta - other[key].delta)
                        for key, entry in self.items() if key in other)

    def is_different(self, other):
        if self.keys() != other.keys():
            return True
        return any(not torch.equal(entry.delta, other[key].delta) for key, entry in self.items())

    def matches_live(self):
        """True while the live parameters still hold this snapshot."""
        return all(torch.equal(entry.target, entry.delta) for entry in self.values())
