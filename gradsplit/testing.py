"""Utilities for testing."""
from typing import Dict, List, Optional, Sequence

import numpy as np
import onnx

from gradsplit.global_env import global_config
from gradsplit.gradient import GradientGraphBuilder, GradientGraphConfig
from gradsplit.graph import Graph, Node, NodePass, NodeProposal
from gradsplit.util import grad_name

MS_DOMAIN = "com.microsoft"


class RuleBasedDifferentiator(GradientGraphBuilder):
    """A small reverse-mode differentiator for the ops used by the test
    models.

    Broadcasting is ignored and only the inputs with a rule get a gradient.
    Ops without a rule do not propagate gradients.
    """

    def __init__(self):
        self._proposals: List[NodeProposal] = []
        self._producers: Dict[str, NodeProposal] = {}
        self._fresh = set()
        self._counter = 0
        self._config = GradientGraphConfig()

    ##### Emitting nodes #####

    def _emit(self, node: Node, op_type: str, inputs: Sequence[str],
              num_outputs: int = 1, attributes=None, domain: str = ""):
        self._counter += 1
        prefix = f"{node.name}_Grad/{op_type}_{self._counter}"
        outputs = [f"{prefix}_out{i}" for i in range(num_outputs)]
        proposal = NodeProposal(
            prefix,
            op_type,
            inputs=list(inputs),
            outputs=outputs,
            attributes=dict(attributes or {}),
            domain=domain,
            description=global_config.backward_pass_description,
            pass_tag=NodePass.BACKWARD)
        self._proposals.append(proposal)
        for output in outputs:
            self._producers[output] = proposal
            self._fresh.add(output)
        return outputs if num_outputs > 1 else outputs[0]

    ##### Gradient rules #####

    def _input_grads(self, node: Node, dys: List[Optional[str]],
                     needed: Sequence[int]) -> Dict[int, str]:
        """Return the gradient contribution of each needed input slot."""
        dy = dys[0]
        if dy is None:
            return {}
        op, x = node.op_type, node.inputs
        ret = {}
        if op in ("Identity", "Add"):
            ret = {i: dy for i in needed}
        elif op == "Sub":
            ret = {0: dy, 1: self._emit(node, "Neg", [dy])}
        elif op == "Neg":
            ret = {0: self._emit(node, "Neg", [dy])}
        elif op == "Mul":
            ret = {
                0: self._emit(node, "Mul", [dy, x[1]]),
                1: self._emit(node, "Mul", [dy, x[0]]),
            }
        elif op == "MatMul":
            if 0 in needed:
                bt = self._emit(node, "Transpose", [x[1]])
                ret[0] = self._emit(node, "MatMul", [dy, bt])
            if 1 in needed:
                at = self._emit(node, "Transpose", [x[0]])
                ret[1] = self._emit(node, "MatMul", [at, dy])
        elif op == "Transpose":
            perm = node.attributes.get("perm")
            attributes = {}
            if perm is not None:
                attributes["perm"] = [int(i) for i in np.argsort(perm)]
            ret = {0: self._emit(node, "Transpose", [dy], attributes=attributes)}
        elif op == "Relu":
            ret = {0: self._emit(node, "ReluGrad", [dy, node.outputs[0]],
                                 domain=MS_DOMAIN)}
        elif op in ("Gelu", "FastGelu", "BiasGelu"):
            ret = {0: self._emit(node, "GeluGrad", [dy, x[0]],
                                 domain=MS_DOMAIN)}
        elif op == "Softmax":
            ret = {0: self._emit(node, "SoftmaxGrad", [dy, node.outputs[0]],
                                 attributes=node.attributes,
                                 domain=MS_DOMAIN)}
        elif op == "Reshape":
            shape = self._emit(node, "Shape", [x[0]])
            ret = {0: self._emit(node, "Reshape", [dy, shape])}
        elif op in ("Dropout", "TrainableDropout", "BiasDropout"):
            if len(node.outputs) > 1 and node.outputs[1]:
                grad_op = ("TrainableDropoutGrad"
                           if op == "TrainableDropout" else "DropoutGrad")
                ret[0] = self._emit(node, grad_op, [dy, node.outputs[1]],
                                    domain=MS_DOMAIN)
            else:
                ret[0] = dy
            if op == "BiasDropout" and len(x) > 2 and x[2]:
                ret[2] = dy
        elif op == "LayerNormalization":
            if self._config.use_invertible_layernorm_grad:
                grads = self._emit(node, "InvertibleLayerNormalizationGrad",
                                   [dy, node.outputs[0]] + x[1:3], 3,
                                   attributes=node.attributes,
                                   domain=MS_DOMAIN)
            else:
                grads = self._emit(node, "LayerNormalizationGrad",
                                   [dy] + x[:3], 3,
                                   attributes=node.attributes,
                                   domain=MS_DOMAIN)
            ret = dict(enumerate(grads))
        return {i: g for i, g in ret.items() if i in needed}

    ##### Accumulation #####

    def _finalize(self, node: Node, name: str, contributions: List[str],
                  y_names) -> Optional[str]:
        """Produce the tensor ``<name>_grad`` from the contributions."""
        target = grad_name(name)
        if not contributions:
            return target if name in y_names else None
        if len(contributions) == 1 and contributions[0] in self._fresh:
            # Rename the single fresh contribution.
            proposal = self._producers[contributions[0]]
            proposal.outputs = [
                target if o == contributions[0] else o
                for o in proposal.outputs
            ]
            self._fresh.discard(contributions[0])
            return target
        op_type = "Identity" if len(contributions) == 1 else "Sum"
        proposal = NodeProposal(
            f"{node.name}_Grad/{op_type}_{target}",
            op_type,
            inputs=list(contributions),
            outputs=[target],
            description=global_config.backward_pass_description,
            pass_tag=NodePass.BACKWARD)
        self._proposals.append(proposal)
        return target

    def differentiate(self, graph, y_names, x_names, config):
        self._proposals, self._producers, self._fresh = [], {}, set()
        self._config = config
        y_names, x_names = set(y_names), set(x_names)

        forward_nodes = [
            node for node in graph.nodes_in_topological_order()
            if not node.is_backward
        ]
        requires_grad = set(x_names)
        for node in forward_nodes:
            if any(x in requires_grad for x in node.inputs):
                requires_grad.update(node.outputs)
        reaches_y = set(y_names)
        for node in reversed(forward_nodes):
            if any(o in reaches_y for o in node.outputs):
                reaches_y.update(x for x in node.inputs if x)
        need = requires_grad & reaches_y

        contributions: Dict[str, List[str]] = {}
        for node in reversed(forward_nodes):
            dys = [
                self._finalize(node, o, contributions.get(o, []), y_names)
                if o in need else None for o in node.outputs
            ]
            needed = [i for i, x in enumerate(node.inputs) if x in need]
            if not needed or all(dy is None for dy in dys):
                continue
            for slot, g in self._input_grads(node, dys, needed).items():
                contributions.setdefault(node.inputs[slot], []).append(g)

        produced = []
        for name in sorted(x_names):
            if graph.producer_of(name) is not None:
                continue
            leaf = Node(-1, f"leaf_{name}", "Identity")
            if self._finalize(leaf, name, contributions.get(name, []),
                              ()) is not None:
                produced.append(grad_name(name))

        for p in self._proposals:
            graph.add_node(p.name, p.op_type, p.description, p.inputs,
                           p.outputs, p.attributes, p.domain, p.pass_tag,
                           p.priority)
        if config.set_gradients_as_graph_outputs:
            graph.set_outputs(graph.outputs +
                              [x for x in produced if x not in graph.outputs])
        return graph


########################################
##### Test Models
########################################


def _init(rs, shape):
    return rs.normal(size=shape).astype(np.float32)


def get_matmul_graph(in_dim: int = 3, out_dim: int = 4) -> Graph:
    """y = MatMul(x, w) with a trainable initializer w."""
    rs = np.random.RandomState(0)
    graph = Graph("matmul")
    graph.add_initializer("w", _init(rs, (in_dim, out_dim)))
    graph.add_node("MatMul", "MatMul", inputs=["x", "w"], outputs=["y"])
    graph.get_or_create_reference("x").type.dtype = np.dtype(np.float32)
    graph.get_or_create_reference("x").set_shape(("batch", in_dim))
    graph.get_or_create_reference("y").type.dtype = np.dtype(np.float32)
    graph.get_or_create_reference("y").set_shape(("batch", out_dim))
    graph.set_inputs(["x"])
    graph.set_outputs(["y"])
    graph.resolve()
    return graph


def get_mlp_graph(num_layers: int = 2, hidden_size: int = 4) -> Graph:
    """An MLP with MatMul, Add and Relu layers. The input is flattened to
    (-1, hidden_size) first."""
    rs = np.random.RandomState(0)
    graph = Graph("mlp")
    graph.add_initializer("in_shape",
                          np.array([-1, hidden_size], dtype=np.int64))
    graph.add_node("flatten", "Reshape", inputs=["x", "in_shape"],
                   outputs=["x_flat"])
    x = "x_flat"
    for i in range(num_layers):
        graph.add_initializer(f"w{i}", _init(rs, (hidden_size, hidden_size)))
        graph.add_initializer(f"b{i}", _init(rs, (hidden_size,)))
        graph.add_node(f"matmul{i}", "MatMul", inputs=[x, f"w{i}"],
                       outputs=[f"h{i}"])
        graph.add_node(f"add{i}", "Add", inputs=[f"h{i}", f"b{i}"],
                       outputs=[f"a{i}"])
        graph.add_node(f"relu{i}", "Relu", inputs=[f"a{i}"],
                       outputs=[f"r{i}"])
        x = f"r{i}"
    graph.add_node("output", "Identity", inputs=[x], outputs=["y"])
    graph.get_or_create_reference("x").type.dtype = np.dtype(np.float32)
    graph.get_or_create_reference("x").set_shape(("batch", "seq", hidden_size))
    graph.set_inputs(["x"])
    graph.set_outputs(["y"])
    graph.resolve()
    return graph


def get_chain_graph() -> Graph:
    """Nodes A -> B -> C -> D connected by single tensors."""
    graph = Graph("chain")
    graph.add_node("A", "Identity", inputs=["x"], outputs=["a"])
    graph.add_node("B", "Relu", inputs=["a"], outputs=["b"])
    graph.add_node("C", "Relu", inputs=["b"], outputs=["c"])
    graph.add_node("D", "Identity", inputs=["c"], outputs=["d"])
    graph.set_inputs(["x"])
    graph.set_outputs(["d"])
    graph.resolve()
    return graph


def _add_layer_norm(graph: Graph, rs, name: str, x: str, y: str,
                    hidden_size: int):
    graph.add_initializer(f"{name}.scale", _init(rs, (hidden_size,)))
    graph.add_initializer(f"{name}.bias", _init(rs, (hidden_size,)))
    graph.add_node(name,
                   "LayerNormalization",
                   inputs=[x, f"{name}.scale", f"{name}.bias"],
                   outputs=[y],
                   attributes={
                       "axis": -1,
                       "epsilon": 1e-5
                   })


def _add_transformer_layer(graph: Graph, rs, i: int, h: str, hidden_size: int,
                           dropout_op: str) -> str:
    p = f"layer{i}"

    def weight(name):
        graph.add_initializer(f"{p}.{name}",
                              _init(rs, (hidden_size, hidden_size)))
        return f"{p}.{name}"

    def add(name, op_type, inputs, outputs, **kwargs):
        graph.add_node(f"{p}/{name}", op_type, inputs=inputs,
                       outputs=[f"{p}/{o}" if o else o for o in outputs],
                       **kwargs)

    def t(name):
        return f"{p}/{name}"

    # Self attention. The layer input feeds query, key, value and the
    # residual connection.
    add("query", "MatMul", [h, weight("wq")], ["q"])
    add("key", "MatMul", [h, weight("wk")], ["k"])
    add("value", "MatMul", [h, weight("wv")], ["v"])
    add("key_t", "Transpose", [t("k")], ["kt"], attributes={"perm": [0, 2, 1]})
    add("scores", "MatMul", [t("q"), t("kt")], ["s"])
    add("softmax", "Softmax", [t("s")], ["probs"], attributes={"axis": -1})
    add("context", "MatMul", [t("probs"), t("v")], ["ctx"])
    add("attn_out", "MatMul", [t("ctx"), weight("wo")], ["ao"])
    add("attn_dropout", dropout_op, [t("ao")], ["ad", "amask"])
    add("attn_residual", "Add", [t("ad"), h], ["r1"])
    _add_layer_norm(graph, rs, t("attn_ln"), t("r1"), t("h1"), hidden_size)

    # Feed forward.
    add("ff1", "MatMul", [t("h1"), weight("w1")], ["f1"])
    add("gelu", "Gelu", [t("f1")], ["g"], domain=MS_DOMAIN)
    add("ff2", "MatMul", [t("g"), weight("w2")], ["f2"])
    add("ff_dropout", dropout_op, [t("f2")], ["fd", "fmask"])
    add("ff_residual", "Add", [t("fd"), t("h1")], ["r2"])
    _add_layer_norm(graph, rs, t("ff_ln"), t("r2"), t("out"), hidden_size)
    return t("out")


def get_transformer_graph(num_layers: int = 2,
                          hidden_size: int = 8,
                          dropout_op: str = "Dropout") -> Graph:
    """A BERT-like encoder: an embedding layer norm followed by transformer
    layers."""
    rs = np.random.RandomState(0)
    graph = Graph("transformer")
    _add_layer_norm(graph, rs, "embed_ln", "x", "embed", hidden_size)
    h = "embed"
    for i in range(num_layers):
        h = _add_transformer_layer(graph, rs, i, h, hidden_size, dropout_op)
    graph.add_node("output", "Identity", inputs=[h], outputs=["y"])
    graph.get_or_create_reference("x").type.dtype = np.dtype(np.float32)
    graph.get_or_create_reference("x").set_shape(("batch", "seq", hidden_size))
    graph.set_inputs(["x"])
    graph.set_outputs(["y"])
    graph.resolve()
    return graph


def get_unbalanced_layer_graph(hidden_size: int = 8) -> Graph:
    """A layer norm feeding four consumers without a gelu block after it."""
    rs = np.random.RandomState(0)
    graph = Graph("unbalanced")
    _add_layer_norm(graph, rs, "ln", "x", "h", hidden_size)
    for i in range(4):
        graph.add_node(f"relu{i}", "Relu", inputs=["h"], outputs=[f"r{i}"])
    graph.add_node("sum", "Sum", inputs=[f"r{i}" for i in range(4)],
                   outputs=["y"])
    graph.set_inputs(["x"])
    graph.set_outputs(["y"])
    graph.resolve()
    return graph


def trainable_initializer_names(graph: Graph) -> List[str]:
    """The float initializers of a graph, in order."""
    return [
        name for name, array in graph.initializers.items()
        if np.issubdtype(array.dtype, np.floating)
    ]


########################################
##### Model Checks
########################################


def assert_topologically_sorted(model_bytes: bytes):
    """Assert that every node of a serialized model only reads graph inputs,
    initializers and the outputs of the nodes listed before it."""
    model = onnx.ModelProto.FromString(model_bytes)
    available = {vi.name for vi in model.graph.input}
    available.update(tensor.name for tensor in model.graph.initializer)
    for i, node in enumerate(model.graph.node):
        for name in node.input:
            assert not name or name in available, (
                f"Node {i} ({node.name}) reads {name} before it is produced")
        available.update(node.output)
