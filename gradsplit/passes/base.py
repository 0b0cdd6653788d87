"""Graph passes and the per-session pass manager."""
from abc import ABC, abstractmethod
import enum
import logging
from typing import Dict, List, Optional

from gradsplit.errors import InvalidGraph
from gradsplit.global_env import global_config
from gradsplit.graph import Graph

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class TransformerLevel(enum.IntEnum):
    """Optimization levels. Passes of a lower level run first."""
    LEVEL1 = 1
    LEVEL2 = 2


class GraphPass(ABC):
    """A rewrite of a dataflow graph.

    A pass computes all its mutations against the current graph first and
    applies them with one ``Graph.apply_batch``, so the graph is left
    untouched if the pass fails. Applying a pass twice must be a no-op the
    second time.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def apply(self, graph: Graph) -> bool:
        """Apply the pass to ``graph`` in place. Return whether the graph was
        modified."""
        raise NotImplementedError()


class PassManager:
    """An explicit list of passes grouped by level, owned by one build
    session.

    Args:
        max_level: The highest level run by ``apply_all``.
    """

    def __init__(self, max_level: Optional[int] = None):
        if max_level is None:
            max_level = global_config.max_transformer_level
        self.max_level = TransformerLevel(max_level)
        self.passes: Dict[TransformerLevel, List[GraphPass]] = {
            level: [] for level in TransformerLevel
        }

    def register(self, graph_pass: GraphPass, level: TransformerLevel):
        self.passes[TransformerLevel(level)].append(graph_pass)
        return self

    def apply(self, graph: Graph, level: TransformerLevel) -> bool:
        """Run the passes of one level. The graph inputs and outputs must not
        change.

        Raises:
            InvalidGraph: if a pass changed the graph inputs or outputs.
        """
        inputs, outputs = list(graph.inputs), list(graph.outputs)
        modified = False
        for graph_pass in self.passes[TransformerLevel(level)]:
            pass_modified = graph_pass.apply(graph)
            if graph.inputs != inputs or graph.outputs != outputs:
                raise InvalidGraph(
                    f"Pass {graph_pass.name} changed the interface of "
                    f"{graph.name}")
            if pass_modified:
                logger.debug(f"Pass {graph_pass.name} modified {graph.name}")
            modified |= pass_modified
        return modified

    def apply_all(self, graph: Graph) -> bool:
        """Run the passes of every level up to ``max_level``."""
        modified = False
        for level in TransformerLevel:
            if level > self.max_level:
                break
            modified |= self.apply(graph, level)
        return modified

    def __len__(self):
        return sum(len(x) for x in self.passes.values())

    @classmethod
    def default(cls, max_level: Optional[int] = None):
        """The passes run by the graph builder when none are given."""
        # pylint: disable=import-outside-toplevel
        from gradsplit.passes.cleanup import (DeadNodeElimination,
                                              ShapeConstantFolding)
        manager = cls(max_level)
        manager.register(DeadNodeElimination(), TransformerLevel.LEVEL1)
        manager.register(ShapeConstantFolding(), TransformerLevel.LEVEL2)
        return manager
