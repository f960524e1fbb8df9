"""
Exception types raised by deltaflow.

Structural problems surface before any computation starts, resource misuse
is a programming error, and numerical failures are reported to the trainer.
"""


class DeltaflowError(Exception):
    """Base for all deltaflow errors."""


class StructuralError(DeltaflowError, ValueError):
    """Malformed graph: cycle, arity mismatch, missing head, foreign node or unknown layer class."""


class NumericalError(DeltaflowError, ArithmeticError):
    """A value that must be finite is not."""


class ResourceError(DeltaflowError, RuntimeError):
    """A reference counted object was used after release or released twice."""
