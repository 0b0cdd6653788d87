"""
Serialization utilities for gradsplit.
Convert between ONNX ModelProto bytes and the in-memory dataflow graph.
"""
import json
import logging
import os
from typing import Union

from google.protobuf.message import DecodeError, EncodeError
import numpy as np
import onnx
from onnx import helper, numpy_helper

from gradsplit.errors import (DeserializationError, InvalidGraph,
                              SerializationError)
from gradsplit.global_env import global_config
from gradsplit.graph import Graph, NodePass, TensorType

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

RECOMPUTE_TABLE_KEY = "gradsplit.recompute_table"
NODE_PRIORITY_KEY = "gradsplit.node_priority"
BACKWARD_NODES_KEY = "gradsplit.backward_nodes"
DEFAULT_OPSET_VERSION = 17


def _tensor_type_from_value_info(value_info: onnx.ValueInfoProto):
    tensor_type = value_info.type.tensor_type
    dtype = None
    if tensor_type.elem_type != onnx.TensorProto.UNDEFINED:
        dtype = np.dtype(helper.tensor_dtype_to_np_dtype(tensor_type.elem_type))
    shape = None
    if tensor_type.HasField("shape"):
        shape = []
        for dim in tensor_type.shape.dim:
            if dim.HasField("dim_value"):
                shape.append(int(dim.dim_value))
            elif dim.HasField("dim_param"):
                shape.append(dim.dim_param)
            else:
                shape.append(None)
        shape = tuple(shape)
    return TensorType(dtype, shape)


def _attribute_value(attribute: onnx.AttributeProto):
    value = helper.get_attribute_value(attribute)
    if isinstance(value, onnx.TensorProto):
        return numpy_helper.to_array(value)
    if isinstance(value, list) and not value:
        # The type of an empty list cannot be inferred again, keep the proto.
        return attribute
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, list) and isinstance(value[0], bytes):
        return [v.decode("utf-8") for v in value]
    return value


def _make_attribute(name: str, value):
    if isinstance(value, onnx.AttributeProto):
        attribute = onnx.AttributeProto()
        attribute.CopyFrom(value)
        attribute.name = name
        return attribute
    if isinstance(value, np.ndarray):
        value = numpy_helper.from_array(value)
    elif isinstance(value, np.integer):
        value = int(value)
    elif isinstance(value, np.floating):
        value = float(value)
    return helper.make_attribute(name, value)


def _make_value_info(graph: Graph, name: str):
    ref = graph.get_or_create_reference(name)
    elem_type = onnx.TensorProto.UNDEFINED
    if ref.dtype is not None:
        elem_type = helper.np_dtype_to_tensor_dtype(np.dtype(ref.dtype))
    return helper.make_tensor_value_info(name, elem_type, ref.shape)


def load_model(model_bytes: bytes) -> Graph:
    """Deserialize ONNX model bytes into a graph.

    Raises:
        DeserializationError: if the bytes are not a valid ONNX model.
    """
    if not isinstance(model_bytes, (bytes, bytearray, memoryview)):
        raise DeserializationError(
            f"Expect model bytes, got {type(model_bytes).__name__}")
    try:
        model = onnx.ModelProto.FromString(bytes(model_bytes))
    except (DecodeError, ValueError) as e:
        raise DeserializationError(f"Cannot parse the model: {e}") from e
    if not model.HasField("graph"):
        raise DeserializationError("The model has no graph")

    graph_proto = model.graph
    graph = Graph(graph_proto.name or "graph")
    graph.doc_string = graph_proto.doc_string
    graph.opset_imports = {
        opset.domain: opset.version for opset in model.opset_import
    }
    props = {prop.key: prop.value for prop in model.metadata_props}
    try:
        graph.recompute_table = dict(
            json.loads(props.get(RECOMPUTE_TABLE_KEY, "{}")))
        priorities = json.loads(props.get(NODE_PRIORITY_KEY, "{}"))
        backward_nodes = set(json.loads(props.get(BACKWARD_NODES_KEY, "[]")))
    except ValueError as e:
        raise DeserializationError(
            f"Malformed gradsplit metadata in the model: {e}") from e

    for value_info in list(graph_proto.input) + list(
            graph_proto.output) + list(graph_proto.value_info):
        ref = graph.get_or_create_reference(value_info.name)
        ref.type = _tensor_type_from_value_info(value_info)

    for tensor in graph_proto.initializer:
        if not tensor.name:
            raise DeserializationError("An initializer has no name")
        graph.add_initializer(tensor.name, numpy_helper.to_array(tensor))

    for i, node_proto in enumerate(graph_proto.node):
        if not node_proto.op_type:
            raise DeserializationError(f"Node {i} has no op_type")
        name = node_proto.name or f"{node_proto.op_type}_{i}"
        if (node_proto.doc_string == global_config.backward_pass_description
                or name in backward_nodes):
            pass_tag = NodePass.BACKWARD
        else:
            pass_tag = NodePass.FORWARD
        graph.add_node(name,
                       node_proto.op_type,
                       description=node_proto.doc_string,
                       inputs=node_proto.input,
                       outputs=node_proto.output,
                       attributes={
                           a.name: _attribute_value(a)
                           for a in node_proto.attribute
                       },
                       domain=node_proto.domain,
                       pass_tag=pass_tag,
                       priority=int(priorities.get(name, 0)))

    graph.set_inputs([vi.name for vi in graph_proto.input])
    graph.set_outputs([vi.name for vi in graph_proto.output])
    logger.debug(f"Loaded {graph}")
    return graph


def to_model_proto(graph: Graph) -> onnx.ModelProto:
    """Convert a graph to an ONNX ModelProto.

    Nodes are written in the priority-based topological order.
    """
    priorities = {}
    backward_nodes = []
    node_protos = []
    for node in graph.nodes_in_topological_order(priority_based=True):
        description = node.description
        if node.is_backward:
            if not description:
                description = global_config.backward_pass_description
            if description != global_config.backward_pass_description:
                backward_nodes.append(node.name)
        if node.priority:
            priorities[node.name] = node.priority
        node_proto = helper.make_node(node.op_type,
                                      node.inputs,
                                      node.outputs,
                                      name=node.name,
                                      doc_string=description or None,
                                      domain=node.domain or None)
        node_proto.attribute.extend(
            _make_attribute(k, v) for k, v in sorted(node.attributes.items()))
        node_protos.append(node_proto)

    interface = set(graph.inputs) | set(graph.outputs) | set(graph.initializers)
    value_infos = [
        _make_value_info(graph, name)
        for name, ref in graph.tensors.items()
        if name not in interface and (ref.dtype is not None or
                                      ref.shape is not None)
    ]
    graph_proto = helper.make_graph(
        node_protos,
        graph.name,
        [_make_value_info(graph, name) for name in graph.inputs],
        [_make_value_info(graph, name) for name in graph.outputs],
        initializer=[
            numpy_helper.from_array(np.asarray(array), name)
            for name, array in graph.initializers.items()
        ],
        doc_string=graph.doc_string or None,
        value_info=value_infos)

    opset_imports = dict(graph.opset_imports)
    opset_imports.setdefault("", DEFAULT_OPSET_VERSION)
    for node in graph.nodes.values():
        opset_imports.setdefault(node.domain, 1)
    model = helper.make_model(
        graph_proto,
        producer_name="gradsplit",
        opset_imports=[helper.make_opsetid(d, v) for d, v in opset_imports.items()])

    props = {}
    if graph.recompute_table:
        props[RECOMPUTE_TABLE_KEY] = json.dumps(graph.recompute_table)
    if priorities:
        props[NODE_PRIORITY_KEY] = json.dumps(priorities)
    if backward_nodes:
        props[BACKWARD_NODES_KEY] = json.dumps(backward_nodes)
    if props:
        helper.set_model_props(model, props)
    return model


def save_model(graph: Graph) -> bytes:
    """Serialize a graph into ONNX model bytes.

    No shape inference is run. An interface tensor whose dtype is unknown is
    written with an UNDEFINED element type and no shape, so
    ``onnx.checker`` rejects such a model until the types are filled in.

    Raises:
        SerializationError: if the graph cannot be converted or has a cycle.
    """
    try:
        return to_model_proto(graph).SerializeToString()
    except (EncodeError, ValueError, TypeError, InvalidGraph) as e:
        raise SerializationError(
            f"Fail to serialize graph {graph.name}: {e}") from e


def dump_model(graph: Graph, path: Union[str, os.PathLike]):
    """Save a graph to a file for debugging.

    Raises:
        SerializationError: if the graph cannot be serialized or the file
          cannot be written.
    """
    model_bytes = save_model(graph)
    try:
        if os.path.exists(path):
            os.remove(path)
        with open(path, "wb") as f:
            f.write(model_bytes)
    except OSError as e:
        raise SerializationError(
            f"Fail to dump graph {graph.name} to {path}: {e}") from e
    logger.info(f"Saved {graph.name} to {path}")
