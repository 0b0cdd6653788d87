"""Generic cleanup passes run before and after differentiation."""
import logging
from typing import Sequence

import numpy as np

from gradsplit.graph import Graph
from gradsplit.passes.base import GraphPass
from gradsplit.util import is_static_shape, names_to_str

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class DeadNodeElimination(GraphPass):
    """Remove nodes none of whose outputs reach a graph output.

    Nodes without outputs and nodes in ``side_effect_ops`` are kept.

    Args:
        side_effect_ops: Op types that are never removed.
    """

    def __init__(self, side_effect_ops: Sequence[str] = ("Yield",)):
        self.side_effect_ops = tuple(side_effect_ops)

    def _removable(self, node, live) -> bool:
        if not node.outputs or node.op_type in self.side_effect_ops:
            return False
        return not any(o in live for o in node.outputs)

    def apply(self, graph: Graph) -> bool:
        live = set(graph.outputs)
        dead = []
        for node in reversed(graph.nodes_in_topological_order()):
            if self._removable(node, live):
                dead.append(node)
                continue
            live.update(x for x in node.inputs if x)

        if not dead:
            return False
        graph.apply_batch(remove=[node.index for node in dead])
        graph.prune_unused_references()
        logger.debug(f"Removed dead nodes: "
                     f"{names_to_str(node.name for node in dead)}")
        return True


class ShapeConstantFolding(GraphPass):
    """Replace ``Shape`` nodes whose input has a static shape by an int64
    initializer."""

    def apply(self, graph: Graph) -> bool:
        folded = {}
        remove = []
        for node in graph.nodes_in_topological_order():
            if node.op_type != "Shape" or node.domain not in ("", "ai.onnx"):
                continue
            if not node.inputs or not node.inputs[0]:
                continue
            ref = graph.get_reference(node.inputs[0])
            if ref is None or not is_static_shape(ref.shape):
                continue
            shape = [int(d) for d in ref.shape]
            start = node.attributes.get("start", 0)
            end = node.attributes.get("end", None)
            folded[node.outputs[0]] = np.array(shape[start:end],
                                               dtype=np.int64)
            remove.append(node.index)

        if not remove:
            return False
        graph.apply_batch(remove=remove, initializers=folded)
        logger.debug(f"Folded shapes: {names_to_str(folded)}")
        return True
