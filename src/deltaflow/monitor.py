import logging

logger = logging.getLogger(__name__)


class Step:
    """One completed iteration: the accepted point, its iteration number and the wall time."""
    __slots__ = ('point', 'iteration', 'time')

    def __init__(self, point, iteration, time):
        self.point = point
        self.iteration = iteration
        self.time = time

    @property
    def fitness(self):
        return self.point.fitness

    def __repr__(self):
        return f"Step(iteration={self.iteration}, fitness={self.fitness:.6g})"


class TrainingMonitor:
    """Receives progress synchronously from the training loop. Subclass to record or plot."""

    def log(self, message):
        logger.info(message)

    def on_step_complete(self, step):
        logger.info("Iteration %d complete, fitness %.6g", step.iteration, step.fitness)


class RecordingMonitor(TrainingMonitor):
    """Keeps every message and step in memory."""

    def __init__(self):
        self.messages = []
        self.steps = []

    def log(self, message):
        self.messages.append(message)
        super().log(message)

    def on_step_complete(self, step):
        self.steps.append(step)
        super().on_step_complete(step)
