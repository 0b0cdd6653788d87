"""Split a combined forward+backward graph into a forward graph and a
backward graph."""
import dataclasses
import logging
from typing import Dict, List, Tuple

from gradsplit.errors import InvalidGraph, SplitInconsistency
from gradsplit.graph import Graph
from gradsplit.util import OrderedSet, names_to_str

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


@dataclasses.dataclass
class SplitGraphsInfo:
    """The names the caller feeds to and fetches from the split graphs.

    Filled in incrementally by the graph builder during one build session.
    """
    # Declared graph inputs that are not initializers, in order.
    user_input_names: List[str] = dataclasses.field(default_factory=list)
    user_output_names: List[str] = dataclasses.field(default_factory=list)
    initializer_names_to_train: List[str] = dataclasses.field(
        default_factory=list)
    # User input name -> the name of its gradient, for inputs requiring grad.
    user_input_grad_names: Dict[str, str] = dataclasses.field(
        default_factory=dict)
    # Forward outputs retained for the backward graph.
    intermediate_tensor_names: List[str] = dataclasses.field(
        default_factory=list)
    initializer_grad_names_to_train: List[str] = dataclasses.field(
        default_factory=list)
    # Gradients of the user outputs consumed by the gradient graph.
    user_output_grad_names: List[str] = dataclasses.field(default_factory=list)
    # Gradients of the user outputs supplied by the caller.
    backward_output_grad_names: List[str] = dataclasses.field(
        default_factory=list)
    backward_user_input_names: List[str] = dataclasses.field(
        default_factory=list)
    backward_initializer_names_as_input: List[str] = dataclasses.field(
        default_factory=list)
    # User outputs read again by the backward graph.
    backward_user_output_names: List[str] = dataclasses.field(
        default_factory=list)
    # Trainable initializers in the order their gradients are yielded.
    ordered_initializer_names: List[str] = dataclasses.field(
        default_factory=list)


def _io_names(node, input_names: OrderedSet, output_names: OrderedSet):
    input_names.update(x for x in node.inputs if x)
    output_names.update(x for x in node.outputs if x)


def _filter_initializers(graph: Graph, used_names):
    for name in graph.initializer_names():
        if name not in used_names:
            graph.remove_initializer(name)


def _remove_nodes(graph: Graph, indices: List[int]):
    for index in indices:
        graph.remove_node(index)


def _resolve(graph: Graph, side: str):
    try:
        graph.resolve()
    except InvalidGraph as e:
        raise SplitInconsistency(
            f"The {side} graph is not closed: {e.message}", e.names) from e


def split_gradient_graph(graph: Graph,
                         info: SplitGraphsInfo) -> Tuple[Graph, Graph]:
    """Split a combined graph by the pass tag of its nodes.

    The forward graph takes the user inputs and the trainable initializers
    and returns the user outputs followed by the intermediate tensors. The
    backward graph takes the user inputs, trainable initializers, user
    outputs and intermediates it reads, followed by the output gradients
    supplied by the caller, and returns the gradient outputs of ``graph``.

    ``info`` is updated with the intermediate tensor names and the backward
    inputs. ``graph`` itself is not modified.

    Raises:
        SplitInconsistency: if a tensor crossing the boundary cannot be
          resolved in both graphs.
    """
    forward_graph = graph.copy()
    backward_graph = graph.copy()
    forward_graph.name = f"{graph.name}_forward"
    backward_graph.name = f"{graph.name}_backward"

    forward_nodes_to_remove, backward_nodes_to_remove = [], []
    forward_input_names, forward_output_names = OrderedSet(), OrderedSet()
    backward_input_names, backward_output_names = OrderedSet(), OrderedSet()
    for node in graph.nodes_in_topological_order():
        if node.is_backward:
            forward_nodes_to_remove.append(node.index)
            _io_names(node, backward_input_names, backward_output_names)
        else:
            backward_nodes_to_remove.append(node.index)
            _io_names(node, forward_input_names, forward_output_names)

    user_outputs = set(info.user_output_names)
    intermediate_names = [
        x for x in forward_output_names.intersection(backward_input_names)
        if x not in user_outputs
    ]
    info.intermediate_tensor_names = intermediate_names

    ##### Forward graph #####
    _remove_nodes(forward_graph, forward_nodes_to_remove)
    _filter_initializers(forward_graph, forward_input_names)
    forward_graph.set_inputs(info.user_input_names +
                             info.initializer_names_to_train)
    forward_graph.set_outputs(info.user_output_names + intermediate_names)
    forward_graph.prune_unused_references()

    missing = [
        x for x in intermediate_names if forward_graph.producer_of(x) is None
    ]
    if missing:
        raise SplitInconsistency(
            "Intermediate tensors are not produced by the forward graph",
            missing)
    _resolve(forward_graph, "forward")

    ##### Backward graph #####
    _remove_nodes(backward_graph, backward_nodes_to_remove)
    _filter_initializers(backward_graph, backward_input_names)

    info.backward_user_input_names = [
        x for x in info.user_input_names if x in backward_input_names
    ]
    info.backward_initializer_names_as_input = []
    for name in info.initializer_names_to_train:
        if name in backward_input_names:
            info.backward_initializer_names_as_input.append(name)
            backward_graph.remove_initializer(name)
    info.backward_user_output_names = [
        x for x in info.user_output_names if x in backward_input_names and
        backward_graph.producer_of(x) is None
    ]

    # Retained forward tensors keep the type and shape resolved in the
    # forward graph.
    for name in intermediate_names + info.backward_user_output_names:
        backward_graph.get_or_create_reference(name).update_type_and_shape(
            forward_graph.get_or_create_reference(name))

    backward_inputs = (info.backward_user_input_names +
                       info.backward_initializer_names_as_input +
                       intermediate_names + info.backward_user_output_names +
                       info.backward_output_grad_names)
    missing = [x for x in backward_inputs if not backward_graph.consumers_of(x)]
    if missing:
        raise SplitInconsistency(
            "Backward inputs are not consumed by the backward graph", missing)
    backward_graph.set_inputs(backward_inputs)
    backward_graph.set_outputs(
        [x for x in graph.outputs if x in backward_output_names])
    backward_graph.prune_unused_references()
    _resolve(backward_graph, "backward")

    logger.debug(f"Split {graph.name}: "
                 f"{len(forward_graph)} forward nodes, "
                 f"{len(backward_graph)} backward nodes, intermediates: "
                 f"{names_to_str(intermediate_names)}")
    return forward_graph, backward_graph
