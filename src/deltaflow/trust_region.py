import math
import logging
import torch
from .line_search import SimpleLineSearchCursor
from .optimizers import LBFGS, OrientationStrategy

logger = logging.getLogger(__name__)


class TrustRegion:
    """Constrains where one layer's weights may move during a line search."""

    def project(self, origin, point):
        """Returns the admissible weights closest to `point` for a search starting at `origin`."""
        raise NotImplementedError

    def update(self, ratio):
        """Feedback after a step: actual over predicted improvement."""


class SingleOrthant(TrustRegion):
    """Weights may reach zero but never change sign."""

    def project(self, origin, point):
        keep = (origin == 0) | (torch.sign(point) == torch.sign(origin))
        return torch.where(keep, point, torch.zeros_like(point))


class AdaptiveTrustSphere(TrustRegion):
    """
    A ball of `radius` around the starting weights. The radius shrinks when steps
    improve the fitness much less than the gradient predicted and grows when a
    boundary step was predicted well.
    """

    def __init__(self, radius=1.0, min_radius=1e-8, max_radius=1e8, shrink=0.5, grow=2.0):
        assert 0 < min_radius <= radius <= max_radius
        self.radius = radius
        self.min_radius = min_radius
        self.max_radius = max_radius
        self.shrink = shrink
        self.grow = grow
        self.clipped = False

    def project(self, origin, point):
        step = point - origin
        length = float(torch.linalg.vector_norm(step))
        self.clipped = length > self.radius
        if not self.clipped:
            return point
        return origin + step * (self.radius / length)

    def update(self, ratio):
        if not math.isfinite(ratio) or ratio < 0.25:
            self.radius = max(self.min_radius, self.radius * self.shrink)
        elif ratio > 0.75 and self.clipped:
            self.radius = min(self.max_radius, self.radius * self.grow)


class TrustRegionCursor(SimpleLineSearchCursor):
    """Follows the inner cursor's path and projects every trial point into the layer regions."""

    def __init__(self, inner, policies):
        super().__init__(inner.subject, inner.origin, inner.direction, "TrustRegion")
        self.inner = inner
        self.policies = policies

    def position(self, alpha):
        return self.inner.position(alpha)

    def tangent(self, alpha):
        return self.inner.tangent(alpha)

    def _move(self, alpha):
        self.inner._move(alpha)
        weights = self.origin.weights
        for key, policy in self.policies.items():
            entry = weights[key]
            entry.target.copy_(policy.project(entry.delta, entry.target))


class TrustRegionStrategy(OrientationStrategy):
    """
    Wraps another orientation and restricts its line search per layer. Override
    get_region_policy(layer) to return a TrustRegion, or None for an unconstrained layer.
    The policy of each layer is requested once and kept.
    """
    __slots__ = ('inner', '_policies', '_previous')

    def __init__(self, inner=None):
        self.inner = inner if inner is not None else LBFGS()
        self._policies = {}
        self._previous = None

    def get_region_policy(self, layer):
        return None

    def _policy(self, layer):
        if layer.id not in self._policies:
            self._policies[layer.id] = self.get_region_policy(layer)
        return self._policies[layer.id]

    def _adapt(self, measurement):
        previous, self._previous = self._previous, measurement
        if previous is None or not measurement.weights.is_different(previous.weights):
            return
        step = measurement.weights.difference(previous.weights)
        predicted = -previous.delta.dot(step)
        if predicted <= 0:
            return
        ratio = (previous.fitness - measurement.fitness) / predicted
        logger.debug("Trust region improvement ratio %g", ratio)
        for policy in self._policies.values():
            if policy is not None:
                policy.update(ratio)

    def orient(self, subject, measurement, monitor=None):
        self._adapt(measurement)
        cursor = self.inner.orient(subject, measurement, monitor)
        layers = subject.get_layer().layers_by_id()
        policies = {}
        for key in cursor.direction.keys():
            layer = layers.get(key)
            if layer is None or key not in measurement.weights:
                continue
            policy = self._policy(layer)
            if policy is not None:
                policies[key] = policy
        return TrustRegionCursor(cursor, policies)

    def reset(self):
        self._previous = None
        self.inner.reset()
