import math
import logging
import torch
from concurrent.futures import ThreadPoolExecutor
from .config import device, dtype, NUM_WORKERS
from .delta import DeltaSet
from .layer import ConstantResult
from .tensor import Tensor, TensorList

logger = logging.getLogger(__name__)


class PointSample:
    """
    One measurement of the objective: gradient (`delta`), the weights it was taken at,
    the summed loss over `count` samples, the step length that led here and an extra
    penalty term. Treated as immutable.
    """
    __slots__ = ('delta', 'weights', 'sum', 'count', 'rate', 'penalty')

    def __init__(self, delta, weights, sum, count, rate=0.0, penalty=0.0):
        assert count > 0
        self.delta = delta
        self.weights = weights
        self.sum = sum
        self.count = count
        self.rate = rate
        self.penalty = penalty

    @property
    def loss(self):
        return self.sum / self.count

    @property
    def fitness(self):
        return self.loss + self.penalty

    def with_rate(self, rate):
        return PointSample(self.delta, self.weights, self.sum, self.count, rate, self.penalty)

    def with_penalty(self, delta, penalty):
        return PointSample(delta, self.weights, self.sum, self.count, self.rate, self.penalty + penalty)

    def is_finite(self):
        return math.isfinite(self.fitness) and self.delta.is_finite()

    def __repr__(self):
        return f"PointSample(fitness={self.fitness:.6g}, count={self.count}, rate={self.rate:.3g})"


class Trainable:
    """An objective over the parameters of a network."""

    def measure(self, monitor=None):
        raise NotImplementedError("Subclasses of Trainable must implement measure.")

    def reseed(self, seed):
        """Draws a new sample of the data. Returns whether anything changed."""
        return False

    def get_layer(self):
        raise NotImplementedError("Subclasses of Trainable must implement get_layer.")


def _to_batch(column):
    first = column[0]
    if isinstance(first, Tensor):
        batch = TensorList.stack(column)
        data = batch.data.clone()
        batch.free()
        return data
    return torch.stack([torch.as_tensor(v, dtype=dtype, device=device) for v in column])


class ArrayTrainable(Trainable):
    """
    Full batch objective: the mean of the network's scalar output over `data`, a
    sequence of rows of tensors (one entry per network input). With `batch_size` the
    rows are evaluated in chunks, fanned out over a thread pool.
    """

    def __init__(self, data, network, batch_size=None, num_workers=NUM_WORKERS):
        rows = list(data)
        if not rows:
            raise ValueError("ArrayTrainable needs at least one row of data")
        self.network = network
        self.batch_size = batch_size
        self.num_workers = num_workers
        self._columns = [_to_batch(column) for column in zip(*rows)]
        network.check_arity(len(self._columns))

    def get_layer(self):
        return self.network

    def _active_columns(self):
        return self._columns

    def measure(self, monitor=None):
        columns = self._active_columns()
        n = columns[0].shape[0]
        size = self.batch_size or n
        bounds = [(start, min(start + size, n)) for start in range(0, n, size)]
        if len(bounds) == 1 or self.num_workers <= 1:
            results = [self._eval_batch(columns, start, end, n) for start, end in bounds]
        else:
            # lazy heads of nested networks are built here, not by the workers
            self.network.layers_by_id()
            with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
                results = list(executor.map(lambda b: self._eval_batch(columns, b[0], b[1], n), bounds))
        delta = DeltaSet()
        total = 0.0
        for batch_delta, batch_sum in results:
            delta.accumulate(batch_delta)
            total += batch_sum
        sample = PointSample(delta, delta.state(), total, n)
        logger.debug("Measured %s over %d batches", sample, len(bounds))
        return sample

    def _eval_batch(self, columns, start, end, total_count):
        inputs = [ConstantResult(TensorList.wrap(c[start:end])) for c in columns]
        try:
            result = self.network.eval(*inputs)
            try:
                output = result.data
                batch_sum = float(output.data.sum())
                buffer = DeltaSet()
                # gradient of the mean over every sample, not of this batch
                seed = TensorList.empty(output.length(), output.dimensions)
                seed.data.fill_(1.0 / total_count)
                try:
                    result.accumulate(buffer, seed)
                finally:
                    seed.free()
                return buffer, batch_sum
            finally:
                result.free()
        finally:
            for r in inputs:
                r.free()


class SampledArrayTrainable(ArrayTrainable):
    """ArrayTrainable over a random subset of `training_size` rows, redrawn by reseed()."""

    def __init__(self, data, network, training_size, seed=None, batch_size=None, num_workers=NUM_WORKERS):
        super().__init__(data, network, batch_size, num_workers)
        self._training_size = training_size
        self._generator = torch.Generator(device=device)
        self._sample = None
        self.reseed(seed)

    @property
    def training_size(self):
        return self._training_size

    @training_size.setter
    def training_size(self, size):
        self._training_size = size
        self._resample()

    def reseed(self, seed):
        if seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(seed)
        self._resample()
        return True

    def _resample(self):
        n = self._columns[0].shape[0]
        size = max(1, min(self._training_size, n))
        indices = torch.randperm(n, generator=self._generator, device=device)[:size]
        self._sample = [c.index_select(0, indices) for c in self._columns]

    def _active_columns(self):
        return self._sample


class CachedTrainable(Trainable):
    """Returns the previous measurement while the live weights still match it."""

    def __init__(self, inner):
        self.inner = inner
        self._last = None

    def get_layer(self):
        return self.inner.get_layer()

    @property
    def training_size(self):
        return self.inner.training_size

    @training_size.setter
    def training_size(self, size):
        self._last = None
        self.inner.training_size = size

    def measure(self, monitor=None):
        if self._last is not None and self._last.weights.matches_live():
            return self._last
        self._last = self.inner.measure(monitor)
        return self._last

    def reseed(self, seed):
        self._last = None
        return self.inner.reseed(seed)


class L12Normalizer(Trainable):
    """
    Adds l1 * |w| + l2 * w^2 over the weights of every layer to the fitness and its
    gradient. Override get_l1 / get_l2 for per layer factors.
    """

    def __init__(self, inner, l1=0.0, l2=0.0):
        self.inner = inner
        self.l1 = l1
        self.l2 = l2

    def get_l1(self, layer):
        return self.l1

    def get_l2(self, layer):
        return self.l2

    def get_layer(self):
        return self.inner.get_layer()

    @property
    def training_size(self):
        return self.inner.training_size

    @training_size.setter
    def training_size(self, size):
        self.inner.training_size = size

    def reseed(self, seed):
        return self.inner.reseed(seed)

    def measure(self, monitor=None):
        sample = self.inner.measure(monitor)
        layers = self.get_layer().layers_by_id()
        delta = sample.delta.copy()
        penalty = 0.0
        for key, entry in delta.items():
            layer = layers.get(key)
            if layer is None:
                continue
            l1, l2 = self.get_l1(layer), self.get_l2(layer)
            if l1 == 0 and l2 == 0:
                continue
            w = entry.target
            penalty += l1 * float(w.abs().sum()) + l2 * float((w * w).sum())
            entry.delta.add_(torch.sign(w) * l1 + w * (2 * l2))
        return sample.with_penalty(delta, penalty)
