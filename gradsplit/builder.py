"""Build gradient graphs of a model and split them into forward and backward
graphs."""
from contextlib import contextmanager
import copy
import dataclasses
import logging
from typing import List, Optional, Sequence

import numpy as np
from tqdm import tqdm

from gradsplit.errors import (BuildConfigError, Err, GradSplitError,
                              InvalidGraph, MissingRequiredGradient,
                              ModelLoadError, Ok, Result)
from gradsplit.global_env import global_config
from gradsplit.gradient import GradientGraphBuilder, GradientGraphConfig
from gradsplit.graph import Graph, NodeProposal
from gradsplit.passes.base import PassManager
from gradsplit.passes.recompute import (LayerBoundaryOption,
                                        TransformerLayerRecompute)
from gradsplit.serialization import dump_model, load_model, save_model
from gradsplit.split import SplitGraphsInfo, split_gradient_graph
from gradsplit.util import (OrderedSet, grad_name, names_to_str,
                            print_used_time, to_int_tuple)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

YIELD_OP_TYPE = "Yield"
FORWARD_YIELD_NAME = "YieldOp_fw_op"


@dataclasses.dataclass
class GradientGraphBuilderConfig:
    """The training configuration of a model."""
    # The initializers that get a gradient. They become graph inputs.
    initializer_names_to_train: Sequence[str] = ()
    # The user inputs that get a gradient.
    input_names_require_grad: Sequence[str] = ()
    # Passed to the differentiator untouched.
    use_invertible_layernorm_grad: bool = False
    # Whether to recompute transformer layers in the backward pass.
    enable_transformer_layer_recompute: bool = False
    # The layer boundaries used by recompute. None means
    # TransformerLayerBoundary().
    layer_boundary: Optional[LayerBoundaryOption] = None


@dataclasses.dataclass
class SplitModels:
    """The result of one build_and_split call."""
    forward_model: bytes
    backward_model: bytes
    split_graphs_info: SplitGraphsInfo


@contextmanager
def build_phase(phase: str):
    """Tag the errors raised inside the block with a build phase."""
    try:
        yield
    except GradSplitError as e:
        if e.phase is None:
            e.phase = phase
        raise
    print_used_time(phase)


def _io_names(graph: Graph):
    input_names, output_names = set(), set()
    for node in graph.nodes.values():
        input_names.update(x for x in node.inputs if x)
        output_names.update(x for x in node.outputs if x)
    return input_names, output_names


def _fill_unknown_type(graph: Graph, grad: str, name: str):
    """A gradient has the type of the tensor it differentiates."""
    grad_ref = graph.get_or_create_reference(grad)
    if grad_ref.dtype is None:
        grad_ref.update_type_and_shape(graph.get_or_create_reference(name))


def _check_shape(name: str, shape) -> tuple:
    if not isinstance(shape, (list, tuple, np.ndarray)):
        raise BuildConfigError(
            f"Expect a list of dims for input {name}, got {shape!r}", [name])
    for dim in np.asarray(shape, dtype=object).ravel():
        if (isinstance(dim, bool) or not isinstance(dim, (int, np.integer)) or
                dim < 0):
            raise BuildConfigError(
                f"Invalid dim {dim!r} in shape {list(shape)} of input {name}",
                [name])
    return to_int_tuple(shape)


class ModuleGradientGraphBuilder:
    """Build the gradient graph of a model and split it for staged training.

    A session calls ``initialize`` once, then ``build_and_split`` for every
    distinct set of input shapes, or ``build`` for a single gradient graph
    with yield boundaries. Every build starts from a copy of the initialized
    graph.

    Args:
        differentiator: Appends the gradient nodes.
        pass_manager: The passes run before and after differentiation.
          Defaults to ``PassManager.default()``.
    """

    def __init__(self,
                 differentiator: GradientGraphBuilder,
                 pass_manager: Optional[PassManager] = None):
        self.differentiator = differentiator
        self.pass_manager = (pass_manager if pass_manager is not None else
                             PassManager.default())
        self.config: Optional[GradientGraphBuilderConfig] = None
        self._base_graph: Optional[Graph] = None
        self._info = SplitGraphsInfo()
        self._reset_models()

    def _reset_models(self):
        self.forward_graph: Optional[Graph] = None
        self.backward_graph: Optional[Graph] = None
        self.gradient_graph: Optional[Graph] = None
        self._forward_model: Optional[bytes] = None
        self._backward_model: Optional[bytes] = None
        self._gradient_model: Optional[bytes] = None

    @property
    def split_graphs_info(self) -> SplitGraphsInfo:
        return self._info

    ##### Initialize #####

    def initialize(self, model_bytes: bytes,
                   config: GradientGraphBuilderConfig) -> Result:
        """Load a model and move its trainable initializers to graph inputs.

        Returns:
            Ok(SplitGraphsInfo) or Err(ModelLoadError | BuildConfigError).
        """
        print_used_time(None)
        try:
            with build_phase("initialize"):
                graph = load_model(model_bytes)
                info = self._initialize_graph(graph, config)
        except GradSplitError as e:
            logger.warning(f"Fail to initialize: {e}")
            return Err(e)

        self.config = config
        self._base_graph = graph
        self._info = info
        self._reset_models()
        logger.info(f"Initialized {graph.name}: "
                    f"inputs: {names_to_str(info.user_input_names)}, "
                    f"outputs: {names_to_str(info.user_output_names)}, "
                    f"trainable: "
                    f"{names_to_str(info.initializer_names_to_train)}")
        return Ok(info)

    @staticmethod
    def _initialize_graph(graph: Graph, config: GradientGraphBuilderConfig):
        trainable = list(config.initializer_names_to_train)
        not_initializers = [x for x in trainable if not graph.is_initializer(x)]
        if not_initializers:
            raise ModelLoadError(
                "Trainable names are not initializers of the model",
                not_initializers)

        user_input_names = [
            x for x in graph.inputs if not graph.is_initializer(x)
        ]
        unknown = [
            x for x in config.input_names_require_grad
            if x not in user_input_names
        ]
        if unknown:
            raise BuildConfigError("Inputs requiring grad are not user inputs",
                                   unknown)

        info = SplitGraphsInfo(user_input_names=user_input_names,
                               user_output_names=list(graph.outputs),
                               initializer_names_to_train=trainable)

        # The caller owns the trainable tensors from now on.
        for name in trainable:
            graph.remove_initializer(name)
        graph.set_inputs(user_input_names + trainable)
        try:
            graph.resolve()
        except InvalidGraph as e:
            raise ModelLoadError(f"The model is not a valid graph: {e}",
                                 e.names) from e
        return info

    def _check_initialized(self):
        if self._base_graph is None:
            raise BuildConfigError("The builder is not initialized")

    ##### Gradient graph #####

    def _x_names(self) -> OrderedSet:
        return OrderedSet(self.config.initializer_names_to_train).union(
            self.config.input_names_require_grad)

    def _specialize(self, input_shapes: Optional[Sequence[Sequence[int]]]):
        """Copy the initialized graph and set concrete input shapes."""
        graph = self._base_graph.copy()
        if input_shapes is not None:
            input_shapes = list(input_shapes)
            if len(input_shapes) != len(self._info.user_input_names):
                raise BuildConfigError(
                    f"Expect {len(self._info.user_input_names)} input shapes, "
                    f"got {len(input_shapes)}", self._info.user_input_names)
            for name, shape in zip(self._info.user_input_names, input_shapes):
                graph.get_or_create_reference(name).set_shape(
                    _check_shape(name, shape))
        graph.resolve()
        return graph

    def _differentiate(self, graph: Graph,
                       set_gradients_as_graph_outputs: bool) -> Graph:
        self.pass_manager.apply_all(graph)
        gradient_graph_config = GradientGraphConfig(
            use_invertible_layernorm_grad=self.config.
            use_invertible_layernorm_grad,
            set_gradients_as_graph_outputs=set_gradients_as_graph_outputs)
        graph = self.differentiator.differentiate(
            graph, OrderedSet(self._info.user_output_names), self._x_names(),
            gradient_graph_config)
        return graph

    def _check_gradients(self, graph: Graph, info: SplitGraphsInfo):
        """Record the gradient names of the trainable tensors."""
        _, output_names = _io_names(graph)
        missing = [
            x for x in info.initializer_names_to_train
            if grad_name(x) not in output_names
        ]
        if missing:
            raise MissingRequiredGradient(
                "Trainable initializers have no gradient", missing)
        info.initializer_grad_names_to_train = [
            grad_name(x) for x in info.initializer_names_to_train
        ]

        require_grad = set(self.config.input_names_require_grad)
        info.user_input_grad_names = {}
        for name in info.user_input_names:
            if name not in require_grad:
                continue
            if grad_name(name) not in output_names:
                raise MissingRequiredGradient(
                    "Required user input grad is not found in the gradient "
                    "graph", [name])
            info.user_input_grad_names[name] = grad_name(name)

        for name in list(info.initializer_names_to_train) + list(
                info.user_input_grad_names):
            _fill_unknown_type(graph, grad_name(name), name)

    def _add_output_grad_inputs(self, graph: Graph, info: SplitGraphsInfo):
        """Add the gradients of the user outputs supplied by the caller to
        the graph inputs."""
        input_names, output_names = _io_names(graph)
        info.user_output_grad_names = []
        info.backward_output_grad_names = []
        for name in info.user_output_names:
            output_grad_name = grad_name(name)
            if output_grad_name not in input_names:
                continue
            info.user_output_grad_names.append(output_grad_name)
            if output_grad_name not in output_names:
                info.backward_output_grad_names.append(output_grad_name)
                graph.get_or_create_reference(
                    output_grad_name).update_type_and_shape(
                        graph.get_or_create_reference(name))
        graph.set_inputs(graph.inputs + info.backward_output_grad_names)

    @staticmethod
    def reorder_outputs(graph: Graph, info: SplitGraphsInfo):
        """Set the graph outputs to the user outputs, then the required user
        input grads in user input order, then the trainable initializer grads
        in initializer order."""
        outputs = list(info.user_output_names)
        outputs += [
            info.user_input_grad_names[x]
            for x in info.user_input_names
            if x in info.user_input_grad_names
        ]
        outputs += info.initializer_grad_names_to_train
        graph.set_outputs(outputs)

    def _recompute(self, graph: Graph):
        if not self.config.enable_transformer_layer_recompute:
            return
        TransformerLayerRecompute(self.config.layer_boundary).apply(graph)

    ##### Build and split #####

    def build_and_split(
            self, input_shapes: Sequence[Sequence[int]]) -> Result:
        """Build the gradient graph for concrete input shapes and split it
        into a forward graph and a backward graph.

        Args:
            input_shapes: One shape per user input, in user input order.

        Returns:
            Ok(SplitModels) or Err(GradSplitError) with the failed phase.
        """
        print_used_time(None)
        info = copy.deepcopy(self._info)
        try:
            with build_phase("specialize"):
                self._check_initialized()
                graph = self._specialize(input_shapes)
            with build_phase("differentiate"):
                graph = self._differentiate(graph, True)
            with build_phase("gradient outputs"):
                self._check_gradients(graph, info)
                self._add_output_grad_inputs(graph, info)
                self.reorder_outputs(graph, info)
                graph.resolve()
            with build_phase("optimize"):
                self.pass_manager.apply_all(graph)
            with build_phase("recompute"):
                self._recompute(graph)
            with build_phase("split"):
                forward_graph, backward_graph = split_gradient_graph(
                    graph, info)
            with build_phase("serialize"):
                forward_model = save_model(forward_graph)
                backward_model = save_model(backward_graph)
        except GradSplitError as e:
            logger.warning(f"Fail to build and split: {e}")
            return Err(e)

        self._info = info
        self.forward_graph, self.backward_graph = forward_graph, backward_graph
        self._forward_model = forward_model
        self._backward_model = backward_model
        logger.info(f"Split {graph.name} into {len(forward_graph)} forward "
                    f"nodes and {len(backward_graph)} backward nodes with "
                    f"{len(info.intermediate_tensor_names)} intermediates.")
        return Ok(SplitModels(forward_model, backward_model,
                              copy.deepcopy(info)))

    def build_and_split_many(
            self, shape_list: Sequence[Sequence[Sequence[int]]]
    ) -> List[Result]:
        """Run ``build_and_split`` for independent input shape requests."""
        return [
            self.build_and_split(input_shapes)
            for input_shapes in tqdm(shape_list,
                                     desc="build_and_split",
                                     disable=not global_config.show_progress)
        ]

    ##### Build with yield boundaries #####

    def _add_yield_ops(self, graph: Graph, info: SplitGraphsInfo):
        """Add the hand-off node after the forward pass and one hand-off node
        per trainable initializer grad."""
        topo_nodes = graph.nodes_in_topological_order()
        _, output_names = _io_names(graph)

        info.user_output_grad_names = [
            grad_name(x) for x in info.user_output_names
        ]
        produced = {x for x in info.user_output_grad_names if x in output_names}
        yield_inputs = [
            x for x in info.user_output_names if grad_name(x) not in produced
        ]
        info.backward_output_grad_names = [grad_name(x) for x in yield_inputs]
        yield_inputs += [
            x for x in info.user_output_names if grad_name(x) in produced
        ]
        type_hints = {
            grad_name(x): graph.get_or_create_reference(x).type
            for x in info.user_output_names
            if grad_name(x) not in produced
        }
        proposals = [
            NodeProposal(FORWARD_YIELD_NAME,
                         YIELD_OP_TYPE,
                         inputs=yield_inputs,
                         outputs=info.backward_output_grad_names,
                         domain=global_config.custom_op_domain,
                         description="Yield Op")
        ]

        grad_to_initializer = {
            grad_name(x): x for x in info.initializer_names_to_train
        }
        ordered = []
        for node in topo_nodes:
            for output in node.outputs:
                if output in grad_to_initializer:
                    proposals.append(
                        NodeProposal(f"YieldOp_{output}",
                                     YIELD_OP_TYPE,
                                     inputs=[output],
                                     attributes={"push_input": 1},
                                     domain=global_config.custom_op_domain,
                                     description="Yield Op"))
                    ordered.append(grad_to_initializer[output])
        # Gradients of earlier parameters are produced later in the backward
        # pass.
        info.ordered_initializer_names = list(reversed(ordered))
        graph.apply_batch(add=proposals)
        for name, hint in type_hints.items():
            graph.get_or_create_reference(name).type = hint.copy()

    def build(self) -> Result:
        """Build one gradient graph with yield boundaries between the forward
        and the backward pass.

        Returns:
            Ok(bytes) with the gradient model or Err(GradSplitError).
        """
        print_used_time(None)
        info = copy.deepcopy(self._info)
        try:
            with build_phase("specialize"):
                self._check_initialized()
                graph = self._specialize(None)
            with build_phase("differentiate"):
                graph = self._differentiate(graph, False)
            with build_phase("gradient outputs"):
                self._check_gradients(graph, info)
            with build_phase("yield"):
                self._add_yield_ops(graph, info)
                self.reorder_outputs(graph, info)
                graph.resolve()
            with build_phase("optimize"):
                self.pass_manager.apply_all(graph)
            with build_phase("recompute"):
                self._recompute(graph)
            with build_phase("serialize"):
                gradient_model = save_model(graph)
                if global_config.dump_gradient_model_path:
                    dump_model(graph, global_config.dump_gradient_model_path)
        except GradSplitError as e:
            logger.warning(f"Fail to build: {e}")
            return Err(e)

        self._info = info
        self.gradient_graph = graph
        self._gradient_model = gradient_model
        logger.info(f"Built gradient graph {graph.name} with "
                    f"{len(graph)} nodes.")
        return Ok(gradient_model)

    ##### Accessors #####

    @staticmethod
    def _model_or_raise(model: Optional[bytes], tag: str) -> bytes:
        if model is None:
            raise BuildConfigError(f"The {tag} model is not built yet")
        return model

    def forward_model(self) -> bytes:
        return self._model_or_raise(self._forward_model, "forward")

    def backward_model(self) -> bytes:
        return self._model_or_raise(self._backward_model, "backward")

    def gradient_model(self) -> bytes:
        return self._model_or_raise(self._gradient_model, "gradient")
