"""gradsplit builds the gradient graph of a model and splits it into a forward
graph and a backward graph for staged training."""
# Import all public packages
from . import builder
from . import errors
from . import global_env
from . import gradient
from . import graph
from . import passes
from . import serialization
from . import split
from . import util
from . import version

# Short cuts
from gradsplit.builder import (GradientGraphBuilderConfig,
                               ModuleGradientGraphBuilder, SplitModels)
from gradsplit.errors import (BuildConfigError, CycleDetected,
                              DeserializationError, Err, GradSplitError,
                              InvalidGraph, MissingRequiredGradient,
                              ModelLoadError, Ok, SerializationError,
                              SplitInconsistency, UnbalancedLayerBoundaries,
                              is_err, is_ok, unwrap)
from gradsplit.global_env import global_config
from gradsplit.gradient import GradientGraphBuilder, GradientGraphConfig
from gradsplit.graph import Graph, Node, NodePass, TensorRef, TensorType
from gradsplit.passes import (PassManager, TransformerLevel,
                              TransformerLayerBoundary,
                              TransformerLayerRecompute)
from gradsplit.serialization import load_model, save_model
from gradsplit.split import SplitGraphsInfo, split_gradient_graph
from gradsplit.version import __version__
