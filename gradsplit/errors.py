"""Errors raised while building and splitting gradient graphs, and the
tagged results returned by the public build API."""
from dataclasses import dataclass
from typing import Any, Generic, Optional, Sequence, TypeVar, Union

T = TypeVar("T")


class GradSplitError(Exception):
    """Base class of all gradsplit errors.

    Args:
        message: A human readable description of the failure.
        names: The offending tensor or node names, if any.
        phase: The build phase that failed. Filled in by the builder when the
          error leaves a public API call.
    """

    def __init__(self,
                 message: str,
                 names: Sequence[str] = (),
                 phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.names = tuple(names)
        self.phase = phase

    def __str__(self):
        ret = self.message
        if self.names:
            ret += f" (names: {', '.join(self.names)})"
        if self.phase:
            ret = f"[{self.phase}] {ret}"
        return ret


class ModelLoadError(GradSplitError):
    """The serialized model is malformed or cannot be used for training."""


class DeserializationError(ModelLoadError):
    """The model bytes cannot be parsed."""


class SerializationError(GradSplitError):
    """A graph cannot be converted to model bytes."""


class InvalidGraph(GradSplitError):
    """A structural invariant of the dataflow graph is violated."""


class CycleDetected(InvalidGraph):
    """The graph has no topological order."""


class UnbalancedLayerBoundaries(GradSplitError):
    """The recompute pass found a different number of layer starts and
    layer ends."""


class SplitInconsistency(GradSplitError):
    """The partitioner cannot resolve a reference crossing the
    forward/backward boundary."""


class MissingRequiredGradient(GradSplitError):
    """A trainable tensor did not get a gradient from the differentiator."""


class BuildConfigError(GradSplitError):
    """The builder was called with an invalid configuration or in an invalid
    state."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    """A successful build result."""
    value: Any = None

    def __bool__(self):
        return True


@dataclass(frozen=True)
class Err:
    """A failed build result. No partial graph is attached."""
    error: GradSplitError

    @property
    def phase(self):
        return self.error.phase

    def __bool__(self):
        return False


Result = Union[Ok, Err]


def is_ok(result: Result) -> bool:
    return isinstance(result, Ok)


def is_err(result: Result) -> bool:
    return isinstance(result, Err)


def unwrap(result: Result):
    """Return the value of an Ok result or raise the error of an Err."""
    if isinstance(result, Ok):
        return result.value
    raise result.error
