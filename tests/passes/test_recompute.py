"""Test the transformer layer recompute pass."""

import unittest

from gradsplit.errors import UnbalancedLayerBoundaries
from gradsplit.global_env import global_config
from gradsplit.gradient import GradientGraphConfig
from gradsplit.graph import Graph, NodePass
from gradsplit.passes.recompute import (TransformerLayerBoundary,
                                        TransformerLayerRecompute,
                                        identify_layer_edges,
                                        is_recompute_node,
                                        nodes_between_edges)
from gradsplit.testing import (RuleBasedDifferentiator, get_chain_graph,
                               get_transformer_graph,
                               get_unbalanced_layer_graph,
                               trainable_initializer_names)


def get_transformer_gradient_graph(num_layers=2, dropout_op="Dropout"):
    graph = get_transformer_graph(num_layers=num_layers,
                                  dropout_op=dropout_op)
    x_names = trainable_initializer_names(graph)
    for name in x_names:
        graph.remove_initializer(name)
    graph.set_inputs(graph.inputs + x_names)
    graph = RuleBasedDifferentiator().differentiate(
        graph, {"y"}, set(x_names), GradientGraphConfig())
    graph.set_inputs(graph.inputs + ["y_grad"])
    graph.resolve()
    return graph


class LayerBoundaryTest(unittest.TestCase):
    """Test layer boundary detection and span extraction."""

    def test_chain_span(self):
        graph = get_chain_graph()
        span = nodes_between_edges(graph, "a", "d")
        self.assertEqual([n.name for n in span], ["B", "C"])

    def test_transformer_layer_edges(self):
        graph = get_transformer_graph(num_layers=3)
        edges = identify_layer_edges(graph)
        self.assertEqual(edges, [("embed", "layer0/out"),
                                 ("layer0/out", "layer1/out"),
                                 ("layer1/out", "layer2/out")])

    def test_span_excludes_boundaries(self):
        graph = get_transformer_graph(num_layers=1)
        span = nodes_between_edges(graph, "embed", "layer0/out")
        names = [n.name for n in span]
        self.assertEqual(len(names), 16)
        self.assertNotIn("embed_ln", names)
        self.assertNotIn("layer0/ff_ln", names)
        self.assertIn("layer0/attn_ln", names)
        self.assertIn("layer0/gelu", names)
        self.assertEqual(names, [
            n.name for n in graph.nodes_in_topological_order()
            if n.name in names
        ])

    def test_backward_edges_are_not_counted(self):
        graph = get_transformer_gradient_graph(num_layers=2)
        self.assertEqual(identify_layer_edges(graph),
                         [("embed", "layer0/out"),
                          ("layer0/out", "layer1/out")])

    def test_unbalanced_boundaries(self):
        graph = get_unbalanced_layer_graph()
        with self.assertRaises(UnbalancedLayerBoundaries) as cm:
            identify_layer_edges(graph)
        self.assertIn("h", cm.exception.names)

        num_nodes = len(graph)
        with self.assertRaises(UnbalancedLayerBoundaries):
            TransformerLayerRecompute().apply(graph)
        self.assertEqual(len(graph), num_nodes)

    def test_custom_start_edge_count(self):
        graph = get_unbalanced_layer_graph()
        self.assertEqual(
            identify_layer_edges(graph,
                                 TransformerLayerBoundary(start_edge_count=3)),
            [])


class TransformerLayerRecomputeTest(unittest.TestCase):
    """Test the duplication and rewiring of transformer layers."""

    def test_recompute_nodes(self):
        graph = get_transformer_gradient_graph(num_layers=2)
        num_nodes = len(graph)
        self.assertTrue(TransformerLayerRecompute().apply(graph))
        # 16 nodes in each of the two layers.
        self.assertEqual(len(graph), num_nodes + 32)

        node = graph.node_by_name("layer0/query_recompute")
        self.assertEqual(node.op_type, "MatMul")
        self.assertEqual(node.inputs, ["embed", "layer0.wq"])
        self.assertEqual(node.outputs, ["layer0/q_recompute"])
        self.assertEqual(node.pass_tag, NodePass.BACKWARD)
        self.assertEqual(node.priority, global_config.recompute_priority)
        self.assertEqual(node.description, "Recompute of layer0/query")
        self.assertTrue(is_recompute_node(graph, node))

        node = graph.node_by_name("layer0/scores_recompute")
        self.assertEqual(node.inputs,
                         ["layer0/q_recompute", "layer0/kt_recompute"])
        node = graph.node_by_name("layer0/softmax_recompute")
        self.assertEqual(node.attributes, {"axis": -1})

        # Dropout is recomputed from the mask of the original node.
        node = graph.node_by_name("layer0/attn_dropout_recompute")
        self.assertEqual(node.op_type, "DropoutGrad")
        self.assertEqual(node.domain, global_config.custom_op_domain)
        self.assertEqual(node.inputs, ["layer0/ao_recompute", "layer0/amask"])
        self.assertEqual(node.outputs, ["layer0/ad_recompute"])

        # Boundaries are not duplicated.
        self.assertIsNone(graph.node_by_name("embed_ln_recompute"))
        self.assertIsNone(graph.node_by_name("layer0/ff_ln_recompute"))

        self.assertEqual(graph.recompute_table["layer0/probs"],
                         "layer0/probs_recompute")
        self.assertNotIn("layer0/amask", graph.recompute_table)
        graph.resolve()

    def test_backward_consumers_are_rewired(self):
        graph = get_transformer_gradient_graph(num_layers=1)
        TransformerLayerRecompute().apply(graph)
        for original, twin in graph.recompute_table.items():
            for consumer in graph.consumers_of(original):
                self.assertFalse(consumer.is_backward and
                                 not is_recompute_node(graph, consumer),
                                 f"{consumer.name} still reads {original}")
            self.assertTrue(graph.consumers_of(twin) or
                            twin not in graph.tensors)
        softmax_grad = [
            n for n in graph.nodes.values() if n.op_type == "SoftmaxGrad"
        ][0]
        self.assertEqual(softmax_grad.inputs[1], "layer0/probs_recompute")
        # Forward consumers keep the original tensors.
        self.assertEqual(
            graph.node_by_name("layer0/context").inputs,
            ["layer0/probs", "layer0/v"])

    def test_idempotence(self):
        graph = get_transformer_gradient_graph(num_layers=2)
        self.assertTrue(TransformerLayerRecompute().apply(graph))
        num_nodes = len(graph)
        table = dict(graph.recompute_table)
        self.assertFalse(TransformerLayerRecompute().apply(graph))
        self.assertEqual(len(graph), num_nodes)
        self.assertEqual(graph.recompute_table, table)

    def test_acyclic_after_recompute(self):
        graph = get_transformer_gradient_graph(num_layers=2)
        TransformerLayerRecompute().apply(graph)
        order = graph.nodes_in_topological_order(priority_based=True)
        self.assertEqual(len(order), len(graph))

        # A recomputed node runs after the forward pass of its layer.
        position = {node.name: i for i, node in enumerate(order)}
        self.assertGreater(position["layer0/query_recompute"],
                           position["layer1/ff_ln"])

    def test_dropout_without_mask_is_retained(self):
        graph = Graph("no_mask")
        graph.add_node("ln", "LayerNormalization", inputs=["x"],
                       outputs=["h"])
        for i in range(3):
            graph.add_node(f"branch{i}", "Relu", inputs=["h"],
                           outputs=[f"r{i}"])
        graph.add_node("sum", "Sum", inputs=["h", "r0", "r1", "r2"],
                       outputs=["s"])
        graph.add_node("gelu", "Gelu", inputs=["s"], outputs=["g"])
        graph.add_node("dropout", "Dropout", inputs=["g"], outputs=["d"])
        graph.add_node("end_ln", "LayerNormalization", inputs=["d"],
                       outputs=["y"])
        graph.add_node("relu_bwd", "Relu", inputs=["d"], outputs=["d_bwd"],
                       pass_tag=NodePass.BACKWARD)
        graph.set_inputs(["x"])
        graph.set_outputs(["y", "d_bwd"])
        graph.resolve()

        with self.assertLogs("gradsplit.passes.recompute", level="WARNING"):
            TransformerLayerRecompute().apply(graph)
        self.assertIsNone(graph.node_by_name("dropout_recompute"))
        self.assertIsNotNone(graph.node_by_name("gelu_recompute"))
        self.assertEqual(graph.node_by_name("relu_bwd").inputs, ["d"])
        self.assertNotIn("d", graph.recompute_table)

    def test_trainable_dropout_variant(self):
        graph = get_transformer_gradient_graph(num_layers=1,
                                               dropout_op="TrainableDropout")
        TransformerLayerRecompute().apply(graph)
        node = graph.node_by_name("layer0/ff_dropout_recompute")
        self.assertEqual(node.op_type, "TrainableDropoutGrad")
        self.assertEqual(node.inputs, ["layer0/f2_recompute", "layer0/fmask"])

    def test_print_stats(self):
        graph = get_transformer_gradient_graph(num_layers=1)
        global_config.print_recompute_stats = True
        try:
            TransformerLayerRecompute().apply(graph)
        finally:
            global_config.print_recompute_stats = False
        self.assertIn("layer0/out", graph.tensors)


def suite():
    suite = unittest.TestSuite()
    suite.addTest(
        unittest.defaultTestLoader.loadTestsFromTestCase(LayerBoundaryTest))
    suite.addTest(
        unittest.defaultTestLoader.loadTestsFromTestCase(
            TransformerLayerRecomputeTest))
    return suite


if __name__ == "__main__":
    runner = unittest.TextTestRunner()
    runner.run(suite())
