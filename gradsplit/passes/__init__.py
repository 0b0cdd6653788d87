"""Graph passes run by the graph builder."""
from gradsplit.passes.base import GraphPass, PassManager, TransformerLevel
from gradsplit.passes.cleanup import DeadNodeElimination, ShapeConstantFolding
from gradsplit.passes.recompute import (LayerBoundaryOption,
                                        TransformerLayerBoundary,
                                        TransformerLayerRecompute,
                                        identify_layer_edges,
                                        nodes_between_edges)
