"""The dataflow graph shared by the optimization passes, the recompute pass and
the forward/backward partitioner.

A graph owns its nodes, the named tensor references connecting them and the
initializers (constant tensors). Nodes refer to tensors by name; the graph
keeps a producer index (tensor name -> node) and a consumer index (tensor
name -> nodes) that are updated by every mutation and rebuilt by
``resolve()``.
"""
import enum
import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from gradsplit.errors import CycleDetected, GradSplitError, InvalidGraph
from gradsplit.util import OrderedSet, names_to_str

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class NodePass(enum.Enum):
    """Which pass of training a node belongs to."""
    FORWARD = "forward"
    BACKWARD = "backward"


@dataclass
class TensorType:
    """Element type and shape of a tensor reference.

    Each dimension of ``shape`` is an int, a str (a symbolic dimension) or
    None (unknown). A shape of None means the rank is unknown.
    """
    dtype: Optional[np.dtype] = None
    shape: Optional[Tuple] = None

    def copy(self):
        return TensorType(self.dtype,
                          None if self.shape is None else tuple(self.shape))

    @classmethod
    def from_array(cls, array: np.ndarray):
        return cls(np.dtype(array.dtype), tuple(int(d) for d in array.shape))


class TensorRef:
    """A named edge of the dataflow graph."""

    def __init__(self, name: str, tensor_type: Optional[TensorType] = None):
        self.name = name
        self.type = tensor_type.copy() if tensor_type else TensorType()

    @property
    def dtype(self):
        return self.type.dtype

    @property
    def shape(self):
        return self.type.shape

    def set_shape(self, dims: Optional[Sequence]):
        self.type.shape = None if dims is None else tuple(dims)

    def update_type_and_shape(self, other: "TensorRef"):
        """Copy the element type and the shape of another reference."""
        self.type = other.type.copy()

    def __repr__(self):
        return f"TensorRef({self.name!r}, {self.type.dtype}, {self.type.shape})"


class Node:
    """An operation instance.

    Attributes:
        index: The id of the node, unique within its graph.
        name: The name of the node, unique within its graph.
        op_type: The operator type.
        inputs: Input tensor names. An empty string is an omitted optional
          input.
        outputs: Output tensor names.
        attributes: Operator attributes.
        domain: The operator domain. An empty string is the default domain.
        description: A free-form description.
        priority: A scheduling hint. Nodes with a higher priority run earlier
          when several nodes are ready.
    """

    def __init__(self,
                 index: int,
                 name: str,
                 op_type: str,
                 inputs: Sequence[str] = (),
                 outputs: Sequence[str] = (),
                 attributes: Optional[Dict[str, Any]] = None,
                 domain: str = "",
                 description: str = "",
                 pass_tag: NodePass = NodePass.FORWARD,
                 priority: int = 0):
        self.index = index
        self.name = name
        self.op_type = op_type
        self.inputs = list(inputs)
        self.outputs = list(outputs)
        self.attributes = dict(attributes or {})
        self.domain = domain
        self.description = description
        self.priority = priority
        self._pass_tag = NodePass(pass_tag)

    @property
    def pass_tag(self) -> NodePass:
        """The training pass of the node. Fixed when the node is created."""
        return self._pass_tag

    @property
    def is_backward(self) -> bool:
        return self._pass_tag is NodePass.BACKWARD

    def copy(self):
        return Node(self.index, self.name, self.op_type, self.inputs,
                    self.outputs, self.attributes, self.domain,
                    self.description, self._pass_tag, self.priority)

    def __repr__(self):
        return (f"Node({self.index}, {self.name!r}, {self.op_type}, "
                f"inputs={self.inputs}, outputs={self.outputs}, "
                f"{self._pass_tag.value})")


@dataclass
class NodeProposal:
    """A node to be added by ``Graph.apply_batch``."""
    name: str
    op_type: str
    inputs: Sequence[str] = ()
    outputs: Sequence[str] = ()
    attributes: Dict[str, Any] = field(default_factory=dict)
    domain: str = ""
    description: str = ""
    pass_tag: NodePass = NodePass.FORWARD
    priority: int = 0


class Graph:
    """A mutable, directed, acyclic dataflow graph.

    Attributes:
        inputs: The names of the graph inputs, in order.
        outputs: The names of the graph outputs, in order.
        initializers: Constant tensors by name.
        recompute_table: Maps an original tensor name to the name of its
          recomputed twin.
        opset_imports: Operator set versions by domain, kept for
          serialization.
    """

    def __init__(self, name: str = "graph"):
        self.name = name
        self.doc_string = ""
        self.nodes: Dict[int, Node] = {}
        self.tensors: Dict[str, TensorRef] = {}
        self.initializers: Dict[str, np.ndarray] = {}
        self.inputs: List[str] = []
        self.outputs: List[str] = []
        self.recompute_table: Dict[str, str] = {}
        self.opset_imports: Dict[str, int] = {}
        self._next_index = 0
        self._producer: Dict[str, int] = {}
        self._consumers: Dict[str, List[int]] = {}

    ##### Nodes #####

    def add_node(self,
                 name: str,
                 op_type: str,
                 description: str = "",
                 inputs: Sequence[str] = (),
                 outputs: Sequence[str] = (),
                 attributes: Optional[Dict[str, Any]] = None,
                 domain: str = "",
                 pass_tag: NodePass = NodePass.FORWARD,
                 priority: int = 0) -> Node:
        """Add a node. Missing tensor references are created."""
        node = Node(self._next_index, name, op_type, inputs, outputs,
                    attributes, domain, description, pass_tag, priority)
        self._next_index += 1
        self.nodes[node.index] = node
        for tensor_name in node.inputs:
            if tensor_name:
                self.get_or_create_reference(tensor_name)
                self._add_consumer(tensor_name, node.index)
        for tensor_name in node.outputs:
            if tensor_name:
                self.get_or_create_reference(tensor_name)
                self._producer[tensor_name] = node.index
        return node

    def remove_node(self, index: int):
        """Remove a node and detach all its input and output edges."""
        if index not in self.nodes:
            raise InvalidGraph(f"Node {index} does not exist in {self.name}")
        node = self.nodes.pop(index)
        for tensor_name in node.outputs:
            if self._producer.get(tensor_name) == index:
                del self._producer[tensor_name]
        for tensor_name in node.inputs:
            consumers = self._consumers.get(tensor_name)
            if consumers and index in consumers:
                consumers.remove(index)

    def replace_node_input(self, index: int, slot: int, tensor_name: str):
        """Point input ``slot`` of a node to another tensor."""
        if index not in self.nodes:
            raise InvalidGraph(f"Node {index} does not exist in {self.name}")
        node = self.nodes[index]
        old_name = node.inputs[slot]
        node.inputs[slot] = tensor_name
        if old_name and old_name not in node.inputs:
            consumers = self._consumers.get(old_name)
            if consumers and index in consumers:
                consumers.remove(index)
        if tensor_name:
            self.get_or_create_reference(tensor_name)
            self._add_consumer(tensor_name, index)

    def get_node(self, index: int) -> Node:
        return self.nodes[index]

    def node_by_name(self, name: str) -> Optional[Node]:
        for node in self.nodes.values():
            if node.name == name:
                return node
        return None

    def __iter__(self) -> Iterator[Node]:
        return iter(list(self.nodes.values()))

    def __len__(self):
        return len(self.nodes)

    ##### Tensor references #####

    def get_or_create_reference(
            self,
            name: str,
            type_hint: Optional[TensorType] = None) -> TensorRef:
        """Get the reference of a tensor, creating it with a copy of
        ``type_hint`` if it does not exist."""
        ref = self.tensors.get(name)
        if ref is None:
            ref = TensorRef(name, type_hint)
            self.tensors[name] = ref
        return ref

    def get_reference(self, name: str) -> Optional[TensorRef]:
        return self.tensors.get(name)

    def producer_of(self, name: str) -> Optional[Node]:
        index = self._producer.get(name)
        return None if index is None else self.nodes[index]

    def consumers_of(self, name: str) -> List[Node]:
        return [self.nodes[i] for i in sorted(self._consumers.get(name, ()))]

    def input_nodes(self, node: Node) -> List[Node]:
        """The distinct producers of the inputs of a node."""
        indices = OrderedSet()
        for tensor_name in node.inputs:
            index = self._producer.get(tensor_name)
            if index is not None:
                indices.add(index)
        return [self.nodes[i] for i in sorted(indices)]

    def output_nodes(self, node: Node) -> List[Node]:
        """The distinct consumers of the outputs of a node."""
        indices = OrderedSet()
        for tensor_name in node.outputs:
            indices.update(self._consumers.get(tensor_name, ()))
        return [self.nodes[i] for i in sorted(indices)]

    def output_edges_count(self, node: Node, predicate=None) -> int:
        """The number of outgoing edges of a node, one per consuming input
        slot. If ``predicate`` is given, only consumers satisfying it are
        counted."""
        count = 0
        for tensor_name in node.outputs:
            for consumer in self.consumers_of(tensor_name):
                if predicate is None or predicate(consumer):
                    count += consumer.inputs.count(tensor_name)
        return count

    def prune_unused_references(self, keep_interface: bool = True):
        """Drop tensor references that no node, initializer or (optionally)
        graph input/output refers to."""
        used = set(self.initializers)
        if keep_interface:
            used.update(self.inputs)
            used.update(self.outputs)
        for node in self.nodes.values():
            used.update(n for n in node.inputs if n)
            used.update(n for n in node.outputs if n)
        for name in [n for n in self.tensors if n not in used]:
            del self.tensors[name]
            self._consumers.pop(name, None)

    ##### Initializers #####

    def add_initializer(self, name: str, array: np.ndarray):
        array = np.asarray(array)
        self.initializers[name] = array
        self.get_or_create_reference(name).type = TensorType.from_array(array)

    def remove_initializer(self, name: str):
        """Remove the value of an initializer. Its reference is kept."""
        self.initializers.pop(name, None)

    def get_initializer(self, name: str) -> Optional[np.ndarray]:
        return self.initializers.get(name)

    def is_initializer(self, name: str) -> bool:
        return name in self.initializers

    def initializer_names(self) -> List[str]:
        return list(self.initializers)

    ##### Interface #####

    def set_inputs(self, names: Sequence[str]):
        """Set the graph inputs. Reachability is not validated."""
        for name in names:
            self.get_or_create_reference(name)
        self.inputs = list(names)

    def set_outputs(self, names: Sequence[str]):
        """Set the graph outputs. Reachability is not validated."""
        for name in names:
            self.get_or_create_reference(name)
        self.outputs = list(names)

    ##### Ordering and validation #####

    def topological_order(self, priority_based: bool = False) -> List[int]:
        """Return node indices in a topological order.

        Ties are broken by node index. If ``priority_based`` is set, the ready
        node with the highest priority is emitted first.
        """
        in_degree = {}
        successors = {}
        for index, node in self.nodes.items():
            preds = self.input_nodes(node)
            in_degree[index] = len(preds)
            for pred in preds:
                successors.setdefault(pred.index, []).append(index)

        def key(index):
            if priority_based:
                return (-self.nodes[index].priority, index)
            return (index,)

        ready = [key(i) for i, d in in_degree.items() if d == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            index = heapq.heappop(ready)[-1]
            order.append(index)
            for succ in successors.get(index, ()):
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(ready, key(succ))

        if len(order) != len(self.nodes):
            emitted = set(order)
            names = [n.name for i, n in self.nodes.items() if i not in emitted]
            raise CycleDetected(f"Graph {self.name} contains a cycle", names)
        return order

    def nodes_in_topological_order(self,
                                   priority_based: bool = False) -> List[Node]:
        return [
            self.nodes[i]
            for i in self.topological_order(priority_based=priority_based)
        ]

    def resolve(self):
        """Rebuild the producer/consumer indices and validate the graph.

        Raises:
            InvalidGraph: if a node name is duplicated, a tensor has more than
              one producer, a node input or a graph output is not available,
              or the graph has a cycle (CycleDetected).
        """
        self._rebuild_indices()

        seen = set()
        duplicated = []
        for node in self.nodes.values():
            if node.name in seen:
                duplicated.append(node.name)
            seen.add(node.name)
        if duplicated:
            raise InvalidGraph("Duplicated node names", duplicated)

        produced_inputs = [n for n in self.inputs if n in self._producer]
        if produced_inputs:
            raise InvalidGraph("Graph inputs are also produced by nodes",
                               produced_inputs)

        available = set(self.inputs) | set(self.initializers) | set(
            self._producer)
        dangling = OrderedSet()
        for node in self.nodes.values():
            dangling.update(
                n for n in node.inputs if n and n not in available)
        if dangling:
            raise InvalidGraph(
                f"Node inputs of {self.name} have no producer and are not "
                f"graph inputs", list(dangling))

        missing_outputs = [n for n in self.outputs if n not in available]
        if missing_outputs:
            raise InvalidGraph(f"Graph outputs of {self.name} are not produced",
                               missing_outputs)

        self.topological_order()
        logger.debug(f"Resolved {self.name}: {len(self.nodes)} nodes, "
                     f"inputs: {names_to_str(self.inputs)}, "
                     f"outputs: {names_to_str(self.outputs)}")

    def _add_consumer(self, tensor_name: str, index: int):
        consumers = self._consumers.setdefault(tensor_name, [])
        if index not in consumers:
            consumers.append(index)

    def _rebuild_indices(self, strict: bool = True):
        self._producer = {}
        self._consumers = {}
        multi_produced = OrderedSet()
        for index, node in self.nodes.items():
            for tensor_name in node.inputs:
                if tensor_name:
                    self.get_or_create_reference(tensor_name)
                    self._add_consumer(tensor_name, index)
            for tensor_name in node.outputs:
                if not tensor_name:
                    continue
                self.get_or_create_reference(tensor_name)
                if tensor_name in self._producer:
                    multi_produced.add(tensor_name)
                self._producer[tensor_name] = index
        if strict and multi_produced:
            raise InvalidGraph("Tensors have more than one producer",
                               list(multi_produced))

    ##### Copy and batch mutation #####

    def copy(self) -> "Graph":
        """Return an independent copy. Node indices are preserved and
        initializer arrays are shared."""
        other = Graph(self.name)
        other.doc_string = self.doc_string
        other.tensors = {
            name: TensorRef(name, ref.type) for name, ref in self.tensors.items()
        }
        other.initializers = dict(self.initializers)
        other.inputs = list(self.inputs)
        other.outputs = list(self.outputs)
        other.recompute_table = dict(self.recompute_table)
        other.opset_imports = dict(self.opset_imports)
        other.nodes = {i: node.copy() for i, node in self.nodes.items()}
        other._next_index = self._next_index  # pylint: disable=protected-access
        other._rebuild_indices(strict=False)  # pylint: disable=protected-access
        return other

    def apply_batch(self,
                    add: Sequence[NodeProposal] = (),
                    remove: Sequence[int] = (),
                    rewire: Sequence[Tuple[int, int, str]] = (),
                    type_hints: Optional[Dict[str, TensorType]] = None,
                    initializers: Optional[Dict[str, np.ndarray]] = None
                   ) -> List[Node]:
        """Apply a precomputed set of mutations as one unit.

        Nodes in ``remove`` are removed first, then references in
        ``type_hints`` are created and ``initializers`` are added, nodes in
        ``add`` are added and finally the ``(node index, input slot, tensor
        name)`` triples in ``rewire`` are applied. The graph is resolved
        afterwards. If any step fails, the graph is restored to its state
        before the call and the error is re-raised.
        """
        backup = self.copy()
        try:
            for index in remove:
                self.remove_node(index)
            for name, hint in (type_hints or {}).items():
                self.get_or_create_reference(name, hint)
            for name, array in (initializers or {}).items():
                self.add_initializer(name, array)
            added = [
                self.add_node(p.name, p.op_type, p.description, p.inputs,
                              p.outputs, p.attributes, p.domain, p.pass_tag,
                              p.priority) for p in add
            ]
            for index, slot, tensor_name in rewire:
                self.replace_node_input(index, slot, tensor_name)
            self.resolve()
        except GradSplitError:
            self.__dict__.update(backup.__dict__)
            raise
        return added

    def __repr__(self):
        return (f"Graph({self.name!r}, nodes={len(self.nodes)}, "
                f"inputs={self.inputs}, outputs={self.outputs})")
