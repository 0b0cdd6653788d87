"""The interface of the differentiator that appends gradient nodes to a
forward graph."""
from abc import ABC, abstractmethod
import dataclasses
from typing import AbstractSet

from gradsplit.graph import Graph


@dataclasses.dataclass
class GradientGraphConfig:
    """Options passed to a differentiator."""
    # Whether LayerNormalization gradients use the invertible formulation.
    # Passed through untouched.
    use_invertible_layernorm_grad: bool = False
    # Whether the differentiator adds the gradients of the x tensors to the
    # graph outputs.
    set_gradients_as_graph_outputs: bool = False


class GradientGraphBuilder(ABC):
    """Reverse-mode differentiator of a dataflow graph.

    Implementations append gradient nodes tagged ``NodePass.BACKWARD`` to the
    graph. For every tensor ``x`` in ``x_names`` whose gradient is defined, a
    tensor named ``x + "_grad"`` is produced. The gradient of an output ``y``
    is read from a tensor named ``y + "_grad"`` that nobody produces unless
    ``y`` also feeds another output.
    """

    @abstractmethod
    def differentiate(self, graph: Graph, y_names: AbstractSet[str],
                      x_names: AbstractSet[str],
                      config: GradientGraphConfig) -> Graph:
        """Return ``graph`` augmented with gradient nodes. The graph may be
        modified in place."""
        raise NotImplementedError()
