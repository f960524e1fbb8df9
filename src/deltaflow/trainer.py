import enum
import math
import time
import logging
from .line_search import ArmijoWolfeSearch, QuadraticSearch
from .monitor import Step, TrainingMonitor
from .optimizers import LBFGS

logger = logging.getLogger(__name__)


class TrainerState(enum.Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"
    ITERATION_LIMIT = "iteration_limit"
    FAILED = "failed"


class TrainingResult:
    __slots__ = ('state', 'fitness', 'iterations')

    def __init__(self, state, fitness, iterations):
        self.state = state
        self.fitness = fitness
        self.iterations = iterations

    def __repr__(self):
        return f"TrainingResult(state={self.state.name}, fitness={self.fitness:.6g}, iterations={self.iterations})"


def default_line_search(direction_type):
    if direction_type == "QQN":
        return QuadraticSearch()
    return ArmijoWolfeSearch()


class IterativeTrainer:
    """
    measure -> orient -> line search, until a stop condition. The accepted point of each
    iteration stays in the live weights and is reused as the next measurement.
    """

    def __init__(self, subject, orientation=None, line_search_factory=default_line_search, monitor=None,
                 max_iterations=100, timeout=None, terminate_threshold=-math.inf, iterations_per_sample=None,
                 seed=None):
        assert max_iterations >= 0
        assert timeout is None or timeout > 0
        self.subject = subject
        self.orientation = orientation if orientation is not None else LBFGS()
        self.line_search_factory = line_search_factory
        self.monitor = monitor if monitor is not None else TrainingMonitor()
        self.max_iterations = max_iterations
        self.timeout = timeout
        self.terminate_threshold = terminate_threshold
        self.iterations_per_sample = iterations_per_sample
        self.seed = seed
        self.state = TrainerState.RUNNING
        self.iterations = 0
        self._line_searches = {}
        self._last = None
        self._samples = 0

    def get_line_search(self, direction_type):
        if direction_type not in self._line_searches:
            self._line_searches[direction_type] = self.line_search_factory(direction_type)
        return self._line_searches[direction_type]

    def reset(self):
        self.state = TrainerState.RUNNING
        self.iterations = 0
        self._last = None
        self._line_searches.clear()
        self.orientation.reset()

    def _measure(self):
        if self._last is not None and self._last.weights.matches_live():
            return self._last
        self._last = self.subject.measure(self.monitor)
        return self._last

    def _reseed(self):
        self._samples += 1
        seed = None if self.seed is None else self.seed + self._samples
        if self.subject.reseed(seed):
            self._last = None
            self.orientation.reset()
            self.monitor.log(f"Resampled training data (seed={seed})")

    def _fitness(self):
        return self._last.fitness if self._last is not None else math.nan

    def result(self):
        return TrainingResult(self.state, self._fitness(), self.iterations)

    def run(self):
        if self.state is TrainerState.ITERATION_LIMIT and self.iterations < self.max_iterations:
            self.state = TrainerState.RUNNING
        if self.state is not TrainerState.RUNNING:
            return self.result()
        start = time.monotonic()
        while self.state is TrainerState.RUNNING:
            if self.iterations >= self.max_iterations:
                self.state = TrainerState.ITERATION_LIMIT
            elif self.timeout is not None and time.monotonic() - start >= self.timeout:
                self.state = TrainerState.TIMED_OUT
            else:
                self.state = self.step(start)
        logger.info("Training finished: %s", self.result())
        return self.result()

    def step(self, start=None):
        """Runs one iteration and returns the state the trainer is in afterwards."""
        start = time.monotonic() if start is None else start
        if self.iterations_per_sample and self.iterations and self.iterations % self.iterations_per_sample == 0:
            self._reseed()
        current = self._measure()
        if not current.is_finite():
            logger.warning("Non finite measurement at iteration %d: %s", self.iterations, current)
            self.monitor.log("Non finite fitness or gradient, stopping")
            return TrainerState.FAILED
        if current.fitness <= self.terminate_threshold:
            return TrainerState.CONVERGED
        cursor = self.orientation.orient(self.subject, current, self.monitor)
        if cursor.direction.magnitude() == 0:
            self.monitor.log("Zero gradient, converged")
            return TrainerState.CONVERGED
        result = self.get_line_search(cursor.direction_type).search(cursor, self.monitor)
        if not result.is_finite():
            current.weights.restore()
            self.monitor.log("Line search produced a non finite point, stopping")
            return TrainerState.FAILED
        # the cursor origin may carry a penalty the plain measurement does not
        baseline = cursor.origin.fitness
        if not result.fitness < baseline:
            current.weights.restore()
            self.monitor.log(f"No improvement over {baseline:.6g}, converged")
            return TrainerState.CONVERGED
        self.iterations += 1
        self._last = result
        self.monitor.on_step_complete(Step(result, self.iterations, time.monotonic() - start))
        logger.info("Iteration %d: fitness %.6g -> %.6g (%s, rate %.3g)", self.iterations, baseline,
                    result.fitness, cursor.direction_type, result.rate)
        if result.fitness <= self.terminate_threshold:
            return TrainerState.CONVERGED
        return TrainerState.RUNNING


class TrainingPhase:
    """One stage of a validating regimen: a trainable with its own orientation and line searches."""

    def __init__(self, trainable, orientation=None, line_search_factory=default_line_search, name=None):
        self.trainable = trainable
        self.orientation = orientation if orientation is not None else LBFGS()
        self.line_search_factory = line_search_factory
        self.name = name if name is not None else type(trainable).__name__
        self.trainer = None

    def build_trainer(self, monitor, seed=None):
        self.trainer = IterativeTrainer(self.trainable, self.orientation, self.line_search_factory, monitor,
                                        max_iterations=0, seed=seed)
        return self.trainer

    def set_training_size(self, size):
        if hasattr(self.trainable, "training_size"):
            self.trainable.training_size = size
            return True
        return False

    def __repr__(self):
        return f"TrainingPhase(name={self.name!r})"


class ValidatingTrainer:
    """
    Alternates training epochs with a validation measurement. Each epoch runs every phase
    for `epoch_iterations`; an epoch that does not improve the validation fitness grows
    the training sample by `training_size_growth`, and once the sample is at
    `max_training_size` training stops as converged. Improving epochs lengthen the
    next epoch, up to `max_epoch_iterations`.
    """

    def __init__(self, regimen, validation, monitor=None, epoch_iterations=1, max_epoch_iterations=100,
                 min_training_size=100, max_training_size=math.inf, training_size_growth=2.0,
                 max_epochs=100, timeout=None, terminate_threshold=-math.inf, seed=None):
        assert epoch_iterations >= 1
        assert training_size_growth > 1
        if not isinstance(regimen, (list, tuple)):
            regimen = [regimen]
        self.regimen = [p if isinstance(p, TrainingPhase) else TrainingPhase(p) for p in regimen]
        self.validation = validation
        self.monitor = monitor if monitor is not None else TrainingMonitor()
        self.epoch_iterations = epoch_iterations
        self.max_epoch_iterations = max(max_epoch_iterations, epoch_iterations)
        self.min_training_size = min_training_size
        self.max_training_size = max_training_size
        self.training_size_growth = training_size_growth
        self.max_epochs = max_epochs
        self.timeout = timeout
        self.terminate_threshold = terminate_threshold
        self.seed = seed
        self.state = TrainerState.RUNNING
        self.epochs = 0
        self.best_validation = math.inf
        self.training_size = min_training_size
        for phase in self.regimen:
            phase.build_trainer(self.monitor, seed)
            phase.set_training_size(self.training_size)

    def result(self):
        return TrainingResult(self.state, self.best_validation, self.epochs)

    def run(self):
        if self.state is TrainerState.ITERATION_LIMIT and self.epochs < self.max_epochs:
            self.state = TrainerState.RUNNING
        start = time.monotonic()
        while self.state is TrainerState.RUNNING:
            if self.epochs >= self.max_epochs:
                self.state = TrainerState.ITERATION_LIMIT
            elif self.timeout is not None and time.monotonic() - start >= self.timeout:
                self.state = TrainerState.TIMED_OUT
            else:
                self.state = self.run_epoch()
        logger.info("Validating training finished: %s", self.result())
        return self.result()

    def run_epoch(self):
        for phase in self.regimen:
            trainer = phase.trainer
            trainer.max_iterations = trainer.iterations + self.epoch_iterations
            if trainer.state is TrainerState.CONVERGED:
                trainer.state = TrainerState.RUNNING
            result = trainer.run()
            if result.state is TrainerState.FAILED:
                self.monitor.log(f"Phase {phase.name} failed")
                return TrainerState.FAILED
        self.epochs += 1
        validation = self.validation.measure(self.monitor).fitness
        if not math.isfinite(validation):
            self.monitor.log("Non finite validation fitness, stopping")
            return TrainerState.FAILED
        self.monitor.log(f"Epoch {self.epochs}: validation fitness {validation:.6g}, "
                         f"training size {self.training_size}")
        if validation < self.best_validation:
            self.best_validation = validation
            self.epoch_iterations = min(self.max_epoch_iterations,
                                        int(math.ceil(self.epoch_iterations * self.training_size_growth)))
            if validation <= self.terminate_threshold:
                return TrainerState.CONVERGED
            return TrainerState.RUNNING
        return self._grow_sample()

    def _grow_sample(self):
        if self.training_size >= self.max_training_size:
            self.monitor.log("No validation improvement at maximum training size, converged")
            return TrainerState.CONVERGED
        self.training_size = min(self.max_training_size, int(math.ceil(self.training_size * self.training_size_growth)))
        grown = False
        for phase in self.regimen:
            if phase.set_training_size(self.training_size):
                grown = True
                phase.trainable.reseed(None if self.seed is None else self.seed + self.epochs)
            iterations = phase.trainer.iterations
            phase.trainer.reset()
            phase.trainer.iterations = iterations
        if not grown:
            self.monitor.log("No validation improvement and no sampled phase to grow, converged")
            return TrainerState.CONVERGED
        self.monitor.log(f"Training size grown to {self.training_size}")
        return TrainerState.RUNNING
