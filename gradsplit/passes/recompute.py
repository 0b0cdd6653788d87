"""Recompute the activations of transformer layers in the backward pass
instead of retaining them."""
from abc import ABC, abstractmethod
from collections import deque
import logging
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from gradsplit.errors import InvalidGraph, UnbalancedLayerBoundaries
from gradsplit.global_env import global_config
from gradsplit.graph import Graph, Node, NodePass, NodeProposal, TensorType
from gradsplit.passes.base import GraphPass
from gradsplit.util import is_static_shape, recompute_name

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

GELU_OPS = ("Gelu", "BiasGelu", "FastGelu")
DROPOUT_OPS = ("Dropout", "BiasDropout", "TrainableDropout")
NORMALIZATION_OPS = ("LayerNormalization",)
# Dropout ops recomputed from their saved mask.
DROPOUT_RECOMPUTE_OPS = {
    "Dropout": "DropoutGrad",
    "TrainableDropout": "TrainableDropoutGrad",
}

# (start tensor name, end tensor name)
LayerEdges = Tuple[str, str]


def is_recompute_node(graph: Graph, node: Node) -> bool:
    """Whether a node computes a recomputed twin."""
    twins = set(graph.recompute_table.values())
    return any(o in twins for o in node.outputs)


def _detectable(node: Node, twins: Set[str]) -> bool:
    return not node.is_backward and not any(o in twins for o in node.outputs)


class LayerBoundaryOption(ABC):
    """Strategy that finds the (start, end) tensors of repeated layers."""

    @abstractmethod
    def identify_layer_edges(self, graph: Graph) -> List[LayerEdges]:
        """Return the start and end tensor of every layer, in topological
        order.

        Raises:
            UnbalancedLayerBoundaries: if starts and ends do not pair up.
        """
        raise NotImplementedError()


class TransformerLayerBoundary(LayerBoundaryOption):
    """Boundaries of BERT-like transformer layers.

    A layer starts at the first output of a normalization or dropout node
    that feeds exactly ``start_edge_count`` inputs (query, key, value and the
    residual connection). A layer ends at the first output of the
    normalization reached by following the first consumer of a gelu node,
    through a dropout node.

    Backward nodes and recompute nodes are ignored, so the boundaries of a
    graph are the same before and after differentiation or recompute.

    Args:
        start_edge_count: The number of consumer edges of a layer start.
        start_ops: Op types that may start a layer.
        end_ops: Op types that close a layer.
        activation_ops: Op types that identify the feed-forward block.
        dropout_ops: Op types passed between the activation and the end.
    """

    def __init__(self,
                 start_edge_count: int = 4,
                 start_ops: Sequence[str] = NORMALIZATION_OPS + DROPOUT_OPS,
                 end_ops: Sequence[str] = NORMALIZATION_OPS,
                 activation_ops: Sequence[str] = GELU_OPS,
                 dropout_ops: Sequence[str] = DROPOUT_OPS):
        self.start_edge_count = start_edge_count
        self.start_ops = tuple(start_ops)
        self.end_ops = tuple(end_ops)
        self.activation_ops = tuple(activation_ops)
        self.dropout_ops = tuple(dropout_ops)

    def _next_node(self, graph: Graph, node: Node, twins: Set[str]):
        for consumer in graph.output_nodes(node):
            if _detectable(consumer, twins):
                return consumer
        return None

    def _find_end(self, graph: Graph, node: Node,
                  twins: Set[str]) -> Optional[str]:
        next_node = self._next_node(graph, node, twins)
        if next_node is None:
            return None
        for stop_ops in (self.dropout_ops, self.end_ops):
            while next_node.op_type not in stop_ops:
                after = self._next_node(graph, next_node, twins)
                if after is None:
                    break
                next_node = after
        if next_node.op_type in self.end_ops:
            return next_node.outputs[0]
        return None

    def identify_layer_edges(self, graph: Graph) -> List[LayerEdges]:
        twins = set(graph.recompute_table.values())
        starts, ends = [], []
        for node in graph.nodes_in_topological_order():
            if not _detectable(node, twins):
                continue
            if node.op_type in self.start_ops and graph.output_edges_count(
                    node, lambda x: _detectable(x, twins)
            ) == self.start_edge_count:
                starts.append(node.outputs[0])
            if node.op_type in self.activation_ops:
                end = self._find_end(graph, node, twins)
                if end is not None:
                    ends.append(end)

        if len(starts) != len(ends):
            raise UnbalancedLayerBoundaries(
                f"Found {len(starts)} layer starts and {len(ends)} layer ends",
                starts + ends)
        logger.debug(f"Found {len(starts)} transformer layers.")
        return list(zip(starts, ends))


def identify_layer_edges(
        graph: Graph,
        layer_option: Optional[LayerBoundaryOption] = None
) -> List[LayerEdges]:
    """Return the (start, end) tensors of the transformer layers of a
    graph."""
    layer_option = layer_option or TransformerLayerBoundary()
    return layer_option.identify_layer_edges(graph)


def nodes_between_edges(graph: Graph, start: str, end: str) -> List[Node]:
    """Return the nodes on the paths from tensor ``start`` to tensor ``end``,
    in topological order. The producers of both tensors are excluded."""
    end_node = graph.producer_of(end)
    if end_node is None:
        raise InvalidGraph(f"Layer end {end} has no producer", [end])

    start_nodes = graph.consumers_of(start)
    fw_visited = {node.index for node in start_nodes}
    queue = deque(start_nodes)
    while queue:
        node = queue.popleft()
        for succ in graph.output_nodes(node):
            if succ.index not in fw_visited:
                fw_visited.add(succ.index)
                queue.append(succ)

    # The end node itself is kept as the preserved boundary.
    bw_visited = set()
    queue = deque([end_node])
    while queue:
        node = queue.popleft()
        for pred in graph.input_nodes(node):
            if pred.index not in bw_visited:
                bw_visited.add(pred.index)
                queue.append(pred)

    span = fw_visited & bw_visited
    return [graph.nodes[i] for i in graph.topological_order() if i in span]


def _tensor_bytes(graph: Graph, name: str) -> float:
    ref = graph.get_reference(name)
    if ref is None or ref.dtype is None or not is_static_shape(ref.shape):
        return 0
    return float(np.prod(ref.shape, dtype=np.float64)) * np.dtype(
        ref.dtype).itemsize


def log_recompute_stats(graph: Graph, layer_edges: List[LayerEdges],
                        spans: List[List[Node]], twins: Dict[str, str]):
    """Print the recompute stats."""
    print("-" * 20, "Transformer layer recompute stats", "-" * 20)
    print(f"layer_num: {len(layer_edges)}")
    for i, ((start, end), span) in enumerate(zip(layer_edges, spans)):
        recomputed = [t for node in span for t in node.outputs if t in twins]
        size = sum(_tensor_bytes(graph, t) for t in recomputed)
        print(f"Layer {i}: start={start}, end={end}, #nodes={len(span)},"
              f" #recomputed_tensors={len(recomputed)},"
              f" recomputed_size={size / 1024**2:.3f} MB")
    print("-" * 75)


class TransformerLayerRecompute(GraphPass):
    """Duplicate the nodes of every transformer layer into a recompute
    branch that feeds the backward nodes.

    Each duplicate is named ``<name>_recompute``, tagged backward and given a
    low priority so it is scheduled right before its backward consumers.
    Backward consumers of a duplicated tensor are rewired to read its twin,
    and the twin is recorded in ``Graph.recompute_table``.

    Args:
        layer_option: The strategy that finds the layer boundaries.
    """

    def __init__(self, layer_option: Optional[LayerBoundaryOption] = None):
        self.layer_option = layer_option or TransformerLayerBoundary()

    def _duplicate_span(self, graph: Graph, span: List[Node],
                        proposals: List[NodeProposal],
                        twins: Dict[str, str], type_hints: Dict[str,
                                                                TensorType]):
        span_twins = {}

        def twin_of(name):
            return span_twins.get(name, name)

        def make_twin(name):
            if not name:
                return name
            twin = recompute_name(name)
            span_twins[name] = twin
            type_hints[twin] = graph.get_or_create_reference(name).type
            return twin

        for node in span:
            description = f"Recompute of {node.name}"
            if node.op_type in DROPOUT_RECOMPUTE_OPS:
                if len(node.outputs) < 2 or not node.outputs[1]:
                    logger.warning(
                        f"Dropout {node.name} has no mask output and is not "
                        f"recomputed. Its output is retained.")
                    continue
                inputs = [twin_of(node.inputs[0]), node.outputs[1]]
                inputs += node.inputs[1:]
                proposals.append(
                    NodeProposal(recompute_name(node.name),
                                 DROPOUT_RECOMPUTE_OPS[node.op_type],
                                 inputs=inputs,
                                 outputs=[make_twin(node.outputs[0])],
                                 domain=global_config.custom_op_domain,
                                 description=description,
                                 pass_tag=NodePass.BACKWARD,
                                 priority=global_config.recompute_priority))
                continue

            inputs = [twin_of(x) for x in node.inputs]
            outputs = [make_twin(x) for x in node.outputs]
            proposals.append(
                NodeProposal(recompute_name(node.name),
                             node.op_type,
                             inputs=inputs,
                             outputs=outputs,
                             attributes=dict(node.attributes),
                             domain=node.domain,
                             description=description,
                             pass_tag=NodePass.BACKWARD,
                             priority=global_config.recompute_priority))
        twins.update(span_twins)

    def apply(self, graph: Graph) -> bool:
        layer_edges = identify_layer_edges(graph, self.layer_option)
        if not layer_edges:
            return False

        recomputed = set(graph.recompute_table)
        proposals, type_hints, twins = [], {}, {}
        spans = []
        for start, end in layer_edges:
            span = [
                node for node in nodes_between_edges(graph, start, end)
                if not node.is_backward
            ]
            spans.append(span)
            if any(o in recomputed for node in span for o in node.outputs):
                logger.debug(f"Layer {start} -> {end} is already recomputed.")
                continue
            self._duplicate_span(graph, span, proposals, twins, type_hints)

        if not proposals:
            return False

        rewire = []
        for name, twin in twins.items():
            for consumer in graph.consumers_of(name):
                if not consumer.is_backward:
                    continue
                for slot, x in enumerate(consumer.inputs):
                    if x == name:
                        rewire.append((consumer.index, slot, twin))

        graph.apply_batch(add=proposals, rewire=rewire, type_hints=type_hints)
        graph.recompute_table.update(twins)
        graph.prune_unused_references()

        logger.info(f"Recomputed {len(proposals)} nodes in "
                    f"{len(layer_edges)} transformer layers.")
        if global_config.print_recompute_stats:
            log_recompute_stats(graph, layer_edges, spans, twins)
        return True
