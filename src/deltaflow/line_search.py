import math
import logging

logger = logging.getLogger(__name__)


class LineSearchPoint:
    """A measurement along a cursor with the directional derivative at that step length."""
    __slots__ = ('point', 'derivative')

    def __init__(self, point, derivative):
        self.point = point
        self.derivative = derivative

    @property
    def rate(self):
        return self.point.rate

    @property
    def fitness(self):
        return self.point.fitness

    def is_finite(self):
        return math.isfinite(self.point.fitness) and math.isfinite(self.derivative)

    def __repr__(self):
        return f"LineSearchPoint(rate={self.rate:.4g}, fitness={self.fitness:.6g}, derivative={self.derivative:.4g})"


class LineSearchCursor:
    """A one dimensional path through weight space starting at `origin`."""
    direction_type = None

    @property
    def origin(self):
        raise NotImplementedError

    def origin_point(self):
        raise NotImplementedError

    def step(self, alpha, monitor=None):
        """Moves the live weights to position `alpha` and measures there."""
        raise NotImplementedError

    def reset(self):
        """Restores the origin weights."""
        raise NotImplementedError


class SimpleLineSearchCursor(LineSearchCursor):
    """The straight path origin + alpha * direction."""

    def __init__(self, subject, origin, direction, direction_type="GD"):
        self.subject = subject
        self._origin = origin
        self.direction = direction
        self.direction_type = direction_type

    @property
    def origin(self):
        return self._origin

    def position(self, alpha):
        return self.direction.scale(alpha)

    def tangent(self, alpha):
        return self.direction

    def origin_point(self):
        return LineSearchPoint(self._origin.with_rate(0.0), self._origin.delta.dot(self.tangent(0.0)))

    def _move(self, alpha):
        self.position(alpha).apply()

    def step(self, alpha, monitor=None):
        self.reset()
        if alpha != 0:
            self._move(alpha)
        sample = self.subject.measure(monitor).with_rate(alpha)
        return LineSearchPoint(sample, sample.delta.dot(self.tangent(alpha)))

    def reset(self):
        self._origin.weights.restore()


class LineSearchStrategy:
    """Picks a step length along a cursor. search() leaves the chosen weights live."""

    def search(self, cursor, monitor=None):
        raise NotImplementedError("Subclasses of LineSearchStrategy must implement search.")

    @staticmethod
    def _better(best, candidate):
        if candidate.is_finite() and candidate.fitness < best.fitness:
            return candidate
        return best

    @staticmethod
    def _finish(cursor, best, origin, monitor=None):
        if best is origin:
            cursor.reset()
            if monitor is not None:
                monitor.log(f"{cursor.direction_type}: no improvement found, origin restored")
        else:
            best.point.weights.restore()
        logger.debug("Line search result: %s", best)
        return best.point


class StaticLearningRate(LineSearchStrategy):
    """Steps by a fixed rate, halving it until the fitness improves."""

    def __init__(self, rate=1e-4, minimum_rate=1e-12):
        self.rate = rate
        self.minimum_rate = minimum_rate

    def search(self, cursor, monitor=None):
        origin = cursor.origin_point()
        rate = self.rate
        while math.isfinite(rate) and rate >= self.minimum_rate:
            trial = cursor.step(rate, monitor)
            if trial.is_finite() and trial.fitness < origin.fitness:
                return self._finish(cursor, trial, origin, monitor)
            rate /= 2
        return self._finish(cursor, origin, origin, monitor)


class QuadraticSearch(LineSearchStrategy):
    """
    Brackets a minimum by doubling the step, then refines it by fitting parabolas to
    the fitness and derivative at the bracket ends. The accepted step seeds the next
    search.
    """

    def __init__(self, current_rate=1.0, relative_tolerance=1e-2, max_iterations=50, minimum_rate=1e-15):
        self.current_rate = current_rate
        self.relative_tolerance = relative_tolerance
        self.max_iterations = max_iterations
        self.minimum_rate = minimum_rate

    @staticmethod
    def _vertex(left, right):
        width = right.rate - left.rate
        curvature = right.fitness - left.fitness - left.derivative * width
        if curvature <= 0:
            return None
        x = left.rate - left.derivative * width * width / (2 * curvature)
        if not left.rate < x < right.rate:
            return None
        return x

    def search(self, cursor, monitor=None):
        origin = cursor.origin_point()
        if not origin.derivative < 0:
            return self._finish(cursor, origin, origin, monitor)
        best = left = origin
        rate = self.current_rate
        right = cursor.step(rate, monitor)
        best = self._better(best, right)
        iterations = 1
        # shrink until the right end is measurable
        while not right.is_finite() and iterations < self.max_iterations and rate > self.minimum_rate:
            rate /= 2
            right = cursor.step(rate, monitor)
            best = self._better(best, right)
            iterations += 1
        # grow while still descending
        while (right.is_finite() and right.derivative < 0 and right.fitness <= left.fitness
               and iterations < self.max_iterations):
            left = right
            rate *= 2
            right = cursor.step(rate, monitor)
            best = self._better(best, right)
            iterations += 1
        while iterations < self.max_iterations:
            if right.rate - left.rate <= self.relative_tolerance * right.rate:
                break
            x = self._vertex(left, right) if right.is_finite() else None
            if x is None:
                x = (left.rate + right.rate) / 2
            mid = cursor.step(x, monitor)
            iterations += 1
            best = self._better(best, mid)
            if mid.is_finite() and mid.derivative < 0 and mid.fitness <= left.fitness:
                left = mid
            else:
                right = mid
        if best is not origin:
            self.current_rate = best.rate
        else:
            self.current_rate = max(self.current_rate / 10, self.minimum_rate)
        return self._finish(cursor, best, origin, monitor)


class ArmijoWolfeSearch(LineSearchStrategy):
    """
    Step accepted under the Armijo (sufficient decrease, c1) and Wolfe (curvature, c2)
    conditions, found by doubling then bisecting. The accepted step seeds the next search.
    """

    def __init__(self, alpha=1.0, c1=1e-6, c2=0.9, alpha_growth=2.0, min_alpha=1e-15, max_alpha=1e10,
                 max_iterations=50):
        self.alpha = alpha
        self.c1 = c1
        self.c2 = c2
        self.alpha_growth = alpha_growth
        self.min_alpha = min_alpha
        self.max_alpha = max_alpha
        self.max_iterations = max_iterations

    def search(self, cursor, monitor=None):
        origin = cursor.origin_point()
        if not origin.derivative < 0:
            return self._finish(cursor, origin, origin, monitor)
        f0, d0 = origin.fitness, origin.derivative
        low, high = 0.0, math.inf
        alpha = self.alpha
        best = origin
        for _ in range(self.max_iterations):
            if not self.min_alpha <= alpha <= self.max_alpha:
                break
            trial = cursor.step(alpha, monitor)
            best = self._better(best, trial)
            if not trial.is_finite() or trial.fitness > f0 + self.c1 * alpha * d0:
                high = alpha
            elif trial.derivative < self.c2 * d0:
                low = alpha
            else:
                best = trial
                break
            alpha = (low + high) / 2 if math.isfinite(high) else alpha * self.alpha_growth
        if best is not origin:
            self.alpha = best.rate
        return self._finish(cursor, best, origin, monitor)


class BisectionSearch(LineSearchStrategy):
    """Bisects on the sign of the directional derivative once a sign change is bracketed."""

    def __init__(self, current_rate=1.0, relative_tolerance=1e-3, max_iterations=50):
        self.current_rate = current_rate
        self.relative_tolerance = relative_tolerance
        self.max_iterations = max_iterations

    def _overshot(self, trial, origin):
        return not trial.is_finite() or trial.derivative > 0 or trial.fitness > origin.fitness

    def search(self, cursor, monitor=None):
        origin = cursor.origin_point()
        if not origin.derivative < 0:
            return self._finish(cursor, origin, origin, monitor)
        best = origin
        left, right = 0.0, None
        rate = self.current_rate
        iterations = 0
        while right is None and iterations < self.max_iterations:
            trial = cursor.step(rate, monitor)
            iterations += 1
            best = self._better(best, trial)
            if self._overshot(trial, origin):
                right = rate
            else:
                left = rate
                rate *= 2
        while right is not None and iterations < self.max_iterations:
            if right - left <= self.relative_tolerance * right:
                break
            mid = (left + right) / 2
            trial = cursor.step(mid, monitor)
            iterations += 1
            best = self._better(best, trial)
            if self._overshot(trial, origin):
                right = mid
            else:
                left = mid
        if best is not origin:
            self.current_rate = best.rate
        return self._finish(cursor, best, origin, monitor)
