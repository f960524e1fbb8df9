import math
import logging
import torch
from collections import deque
from .config import dtype
from .delta import Delta, DeltaSet
from .line_search import LineSearchPoint, SimpleLineSearchCursor
from .trainable import PointSample

logger = logging.getLogger(__name__)


class OrientationStrategy:
    """Turns a measurement into a LineSearchCursor. Strategy state lives on the instance."""
    __slots__ = ()

    def orient(self, subject, measurement, monitor=None):
        raise NotImplementedError

    def reset(self):
        pass


class GradientDescent(OrientationStrategy):
    __slots__ = ()

    def orient(self, subject, measurement, monitor=None):
        return SimpleLineSearchCursor(subject, measurement, measurement.delta.scale(-1.0), "GD")


class MomentumStrategy(OrientationStrategy):
    """Adds `carry_over` times the previous direction to the inner direction."""
    __slots__ = ('inner', 'carry_over', 'previous')

    def __new__(cls, inner=None, carry_over=0.1):
        assert 0.0 <= carry_over < 1.0
        return super().__new__(cls)

    def __init__(self, inner=None, carry_over=0.1):
        self.inner = inner if inner is not None else GradientDescent()
        self.carry_over = carry_over
        self.previous = None

    def orient(self, subject, measurement, monitor=None):
        cursor = self.inner.orient(subject, measurement, monitor)
        direction = cursor.direction
        if self.previous is not None:
            direction = direction.add(self.previous.scale(self.carry_over))
        self.previous = direction
        return SimpleLineSearchCursor(subject, measurement, direction, cursor.direction_type)

    def reset(self):
        self.previous = None
        self.inner.reset()


class LBFGS(OrientationStrategy):
    """
    Limited memory BFGS over the last `max_history` measurements. Needs `min_history`
    points before it departs from gradient descent. A pair with non positive curvature
    (y.s <= 0) clears the history.
    """
    __slots__ = ('min_history', 'max_history', 'history')

    def __new__(cls, min_history=3, max_history=30):
        assert 2 <= min_history <= max_history
        return super().__new__(cls)

    def __init__(self, min_history=3, max_history=30):
        self.min_history = min_history
        self.max_history = max_history
        self.history = deque(maxlen=max_history)

    def add_to_history(self, measurement, monitor=None):
        if not measurement.is_finite():
            return
        if self.history:
            last = self.history[-1]
            if last.weights.keys() != measurement.weights.keys():
                self.history.clear()
            elif not measurement.weights.is_different(last.weights):
                return
            else:
                s = measurement.weights.difference(last.weights)
                y = measurement.delta.subtract(last.delta)
                if not y.dot(s) > 0:
                    logger.info("L-BFGS curvature condition failed, history cleared")
                    if monitor is not None:
                        monitor.log("L-BFGS history reset")
                    self.history.clear()
        self.history.append(measurement)

    def direction(self, measurement, monitor=None):
        """The two loop recursion; None while the history is too short or the result is unusable."""
        if len(self.history) < self.min_history:
            return None
        points = list(self.history)
        pairs = [(b.weights.difference(a.weights), b.delta.subtract(a.delta)) for a, b in zip(points, points[1:])]
        q = measurement.delta.copy()
        alphas = []
        for s, y in reversed(pairs):
            alpha = s.dot(q) / y.dot(s)
            alphas.append(alpha)
            q = q.subtract(y.scale(alpha))
        s, y = pairs[-1]
        r = q.scale(s.dot(y) / y.dot(y))
        for (s, y), alpha in zip(pairs, reversed(alphas)):
            beta = y.dot(r) / y.dot(s)
            r = r.add(s.scale(alpha - beta))
        result = r.scale(-1.0)
        if not result.is_finite() or not result.dot(measurement.delta) < 0:
            logger.info("L-BFGS direction is not a descent direction, using gradient descent")
            if monitor is not None:
                monitor.log("L-BFGS fallback to gradient descent")
            return None
        return result

    def orient(self, subject, measurement, monitor=None):
        self.add_to_history(measurement, monitor)
        direction = self.direction(measurement, monitor)
        if direction is None:
            return SimpleLineSearchCursor(subject, measurement, measurement.delta.scale(-1.0), "GD")
        return SimpleLineSearchCursor(subject, measurement, direction, "LBFGS")

    def reset(self):
        self.history.clear()


class QuadraticPathCursor(SimpleLineSearchCursor):
    """x(t) = x0 + (t - t^2) * gd + t^2 * qn: gradient descent near 0, the quasi newton step at 1."""

    def __init__(self, subject, origin, gd, qn):
        super().__init__(subject, origin, gd, "QQN")
        self.qn = qn

    def position(self, alpha):
        return self.direction.scale(alpha - alpha * alpha).add(self.qn.scale(alpha * alpha))

    def tangent(self, alpha):
        return self.direction.scale(1 - 2 * alpha).add(self.qn.scale(2 * alpha))


class QQN(OrientationStrategy):
    """Quadratic quasi newton: a curved path blending gradient descent into L-BFGS."""
    __slots__ = ('inner',)

    def __init__(self, inner=None):
        self.inner = inner if inner is not None else LBFGS()

    def orient(self, subject, measurement, monitor=None):
        self.inner.add_to_history(measurement, monitor)
        gd = measurement.delta.scale(-1.0)
        qn = self.inner.direction(measurement, monitor)
        if qn is None:
            return SimpleLineSearchCursor(subject, measurement, gd, "GD")
        return QuadraticPathCursor(subject, measurement, gd, qn)

    def reset(self):
        self.inner.reset()


class OrthantSample(PointSample):
    """A PointSample whose penalty already holds the l1 term of the cursor that measured it."""
    __slots__ = ()

    def with_rate(self, rate):
        return OrthantSample(self.delta, self.weights, self.sum, self.count, rate, self.penalty)


class OrthantCursor(SimpleLineSearchCursor):
    """
    Straight path whose trial points are projected onto the starting orthant. Every
    point carries factor_l1 * |w| in its penalty, and derivatives include the l1 slope
    along the path; the gradient in `delta` stays the one of the plain loss.
    """

    def __init__(self, subject, origin, direction, orthant, factor_l1=0.0, direction_type="OWLQN"):
        self.orthant = orthant
        self.factor_l1 = factor_l1
        super().__init__(subject, self._regularize(origin), direction, direction_type)

    def _regularize(self, sample):
        if isinstance(sample, OrthantSample):
            return sample
        penalty = self.factor_l1 * sum(float(entry.delta.abs().sum()) for entry in sample.weights.values())
        return OrthantSample(sample.delta, sample.weights, sample.sum, sample.count, sample.rate,
                             sample.penalty + penalty)

    def _derivative(self, sample, tangent):
        derivative = sample.delta.dot(tangent)
        if self.factor_l1 == 0:
            return derivative
        for key, entry in tangent.items():
            if key not in sample.weights:
                continue
            w = sample.weights[key].delta
            signs = torch.where(w != 0, torch.sign(w), self.orthant.get(key, torch.zeros_like(w)))
            derivative += self.factor_l1 * float((signs * entry.delta).sum())
        return derivative

    def origin_point(self):
        origin = self._origin.with_rate(0.0)
        return LineSearchPoint(origin, self._derivative(origin, self.tangent(0.0)))

    def _move(self, alpha):
        super()._move(alpha)
        for key, signs in self.orthant.items():
            target = self.direction[key].target
            target.mul_((torch.sign(target) == signs).to(dtype))

    def step(self, alpha, monitor=None):
        self.reset()
        if alpha != 0:
            self._move(alpha)
        sample = self._regularize(self.subject.measure(monitor).with_rate(alpha))
        return LineSearchPoint(sample, self._derivative(sample, self.tangent(alpha)))


class OwlQn(OrientationStrategy):
    """
    Orthant wise limited memory quasi newton for an l1 term of weight `factor_l1`.
    The inner strategy orients on the pseudo gradient, its direction is restricted to
    the components that agree with the steepest descent of the regularized objective,
    and every trial point stays in the starting orthant. Fitness and line search
    derivatives include the l1 term.
    """
    __slots__ = ('inner', 'factor_l1')

    def __new__(cls, inner=None, factor_l1=1e-6):
        assert factor_l1 >= 0
        return super().__new__(cls)

    def __init__(self, inner=None, factor_l1=1e-6):
        self.inner = inner if inner is not None else LBFGS()
        self.factor_l1 = factor_l1

    def pseudo_gradient(self, measurement):
        l1 = self.factor_l1
        entries = []
        for key, entry in measurement.delta.items():
            w, g = entry.target, entry.delta
            plus, minus = g + l1, g - l1
            at_zero = torch.where(plus < 0, plus, torch.where(minus > 0, minus, torch.zeros_like(g)))
            pseudo = torch.where(w > 0, plus, torch.where(w < 0, minus, at_zero))
            entries.append(Delta(key, w, pseudo))
        return DeltaSet(entries)

    def orient(self, subject, measurement, monitor=None):
        pseudo = self.pseudo_gradient(measurement)
        # the inner strategy steers by the pseudo gradient, its history sees the same
        steer = PointSample(pseudo, measurement.weights, measurement.sum, measurement.count, measurement.rate,
                            measurement.penalty)
        cursor = self.inner.orient(subject, steer, monitor)
        entries = []
        orthant = {}
        for key, entry in cursor.direction.items():
            if key not in pseudo:
                continue
            steepest = -pseudo[key].delta
            w = entry.target
            entries.append(Delta(key, w, torch.where(entry.delta * steepest > 0, entry.delta,
                                                     torch.zeros_like(entry.delta))))
            orthant[key] = torch.where(w != 0, torch.sign(w), torch.sign(steepest))
        return OrthantCursor(subject, measurement, DeltaSet(entries), orthant, self.factor_l1)

    def reset(self):
        self.inner.reset()


class ValidatingOrientationWrapper(OrientationStrategy):
    """Falls back to gradient descent when the inner cursor does not point downhill."""
    __slots__ = ('inner',)

    def __init__(self, inner):
        self.inner = inner

    def orient(self, subject, measurement, monitor=None):
        cursor = self.inner.orient(subject, measurement, monitor)
        derivative = cursor.origin_point().derivative
        if math.isfinite(derivative) and derivative < 0:
            return cursor
        if cursor.direction.magnitude() == 0:
            return cursor
        logger.warning("%s direction has derivative %g, falling back to gradient descent",
                       cursor.direction_type, derivative)
        if monitor is not None:
            monitor.log(f"{cursor.direction_type} is not a descent direction, using GD")
        return GradientDescent().orient(subject, measurement, monitor)

    def reset(self):
        self.inner.reset()
