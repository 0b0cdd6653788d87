"""Test the dataflow graph."""

import unittest

import numpy as np

from gradsplit.errors import CycleDetected, InvalidGraph
from gradsplit.graph import Graph, NodePass, NodeProposal, TensorType
from gradsplit.testing import get_chain_graph, get_matmul_graph


class GraphTest(unittest.TestCase):
    """Test the mutation and query APIs of Graph."""

    def test_producer_and_consumers(self):
        graph = get_chain_graph()
        a_node = graph.node_by_name("A")
        b_node = graph.node_by_name("B")
        self.assertIs(graph.producer_of("a"), a_node)
        self.assertEqual(graph.consumers_of("a"), [b_node])
        self.assertIsNone(graph.producer_of("x"))
        self.assertEqual(graph.input_nodes(b_node), [a_node])
        self.assertEqual(graph.output_nodes(a_node), [b_node])

    def test_output_edges_count_per_slot(self):
        graph = Graph()
        graph.add_node("src", "Identity", inputs=["x"], outputs=["h"])
        graph.add_node("double", "Add", inputs=["h", "h"], outputs=["d"])
        graph.add_node("bwd", "Relu", inputs=["h"], outputs=["e"],
                       pass_tag=NodePass.BACKWARD)
        src = graph.node_by_name("src")
        self.assertEqual(graph.output_edges_count(src), 3)
        self.assertEqual(
            graph.output_edges_count(src, lambda n: not n.is_backward), 2)

    def test_remove_node_detaches_edges(self):
        graph = get_chain_graph()
        b_node = graph.node_by_name("B")
        graph.remove_node(b_node.index)
        self.assertIsNone(graph.producer_of("b"))
        self.assertEqual(graph.consumers_of("a"), [])
        with self.assertRaises(InvalidGraph):
            graph.remove_node(b_node.index)

    def test_reference_copies_type_hint(self):
        graph = Graph()
        hint = TensorType(np.dtype(np.float32), (2, 3))
        ref = graph.get_or_create_reference("t", hint)
        ref.set_shape((4,))
        self.assertEqual(hint.shape, (2, 3))
        self.assertIs(graph.get_or_create_reference("t", TensorType()), ref)

    def test_pass_tag_is_read_only(self):
        graph = get_chain_graph()
        node = graph.node_by_name("A")
        self.assertEqual(node.pass_tag, NodePass.FORWARD)
        with self.assertRaises(AttributeError):
            node.pass_tag = NodePass.BACKWARD

    def test_topological_order(self):
        graph = get_chain_graph()
        order = [graph.nodes[i].name for i in graph.topological_order()]
        self.assertEqual(order, ["A", "B", "C", "D"])

    def test_priority_based_order(self):
        graph = Graph()
        graph.add_node("late", "Relu", inputs=["x"], outputs=["a"],
                       priority=-10)
        graph.add_node("early", "Relu", inputs=["x"], outputs=["b"])
        graph.add_node("sum", "Add", inputs=["a", "b"], outputs=["y"])
        graph.set_inputs(["x"])
        graph.set_outputs(["y"])
        graph.resolve()

        names = [n.name for n in graph.nodes_in_topological_order()]
        self.assertEqual(names, ["late", "early", "sum"])
        names = [
            n.name
            for n in graph.nodes_in_topological_order(priority_based=True)
        ]
        self.assertEqual(names, ["early", "late", "sum"])

    def test_cycle_detected(self):
        graph = Graph()
        graph.add_node("n0", "Relu", inputs=["b"], outputs=["a"])
        graph.add_node("n1", "Relu", inputs=["a"], outputs=["b"])
        with self.assertRaises(CycleDetected) as cm:
            graph.topological_order()
        self.assertEqual(set(cm.exception.names), {"n0", "n1"})
        self.assertIsInstance(cm.exception, InvalidGraph)

    def test_resolve_rejects_invalid_graphs(self):
        # Dangling input.
        graph = Graph()
        graph.add_node("n", "Relu", inputs=["missing"], outputs=["y"])
        graph.set_outputs(["y"])
        with self.assertRaises(InvalidGraph) as cm:
            graph.resolve()
        self.assertEqual(cm.exception.names, ("missing",))

        # Two producers.
        graph = Graph()
        graph.add_node("n0", "Relu", inputs=["x"], outputs=["y"])
        graph.add_node("n1", "Relu", inputs=["x"], outputs=["y"])
        graph.set_inputs(["x"])
        with self.assertRaises(InvalidGraph):
            graph.resolve()

        # Duplicated names.
        graph = Graph()
        graph.add_node("n", "Relu", inputs=["x"], outputs=["y"])
        graph.add_node("n", "Relu", inputs=["x"], outputs=["z"])
        graph.set_inputs(["x"])
        with self.assertRaises(InvalidGraph):
            graph.resolve()

        # Missing output.
        graph = get_chain_graph()
        graph.set_outputs(["nothing"])
        with self.assertRaises(InvalidGraph):
            graph.resolve()

    def test_initializers_are_available_inputs(self):
        graph = get_matmul_graph()
        self.assertTrue(graph.is_initializer("w"))
        self.assertEqual(graph.get_reference("w").shape, (3, 4))
        graph.remove_initializer("w")
        self.assertFalse(graph.is_initializer("w"))
        # The reference keeps its type.
        self.assertEqual(graph.get_reference("w").shape, (3, 4))
        with self.assertRaises(InvalidGraph):
            graph.resolve()
        graph.set_inputs(["x", "w"])
        graph.resolve()

    def test_copy_is_independent(self):
        graph = get_chain_graph()
        other = graph.copy()
        other.remove_node(other.node_by_name("D").index)
        other.get_reference("a").set_shape((1,))
        other.recompute_table["a"] = "a_recompute"
        self.assertEqual(len(graph), 4)
        self.assertEqual(len(other), 3)
        self.assertIsNone(graph.get_reference("a").shape)
        self.assertEqual(graph.recompute_table, {})
        self.assertEqual(sorted(graph.nodes), sorted(other.nodes) + [3])

    def test_apply_batch(self):
        graph = get_chain_graph()
        d_node = graph.node_by_name("D")
        added = graph.apply_batch(
            add=[NodeProposal("E", "Relu", inputs=["c"], outputs=["e"])],
            rewire=[(d_node.index, 0, "e")],
            type_hints={"e": TensorType(np.dtype(np.float32), (2,))})
        self.assertEqual(added[0].name, "E")
        self.assertEqual(d_node.inputs, ["e"])
        self.assertEqual(graph.get_reference("e").shape, (2,))
        self.assertEqual(graph.consumers_of("c"), [added[0]])
        graph.topological_order()

    def test_apply_batch_rolls_back(self):
        graph = get_chain_graph()
        num_nodes = len(graph)
        b_node = graph.node_by_name("B")
        with self.assertRaises(InvalidGraph):
            # Removing B leaves C without an input.
            graph.apply_batch(
                add=[NodeProposal("E", "Relu", inputs=["a"], outputs=["e"])],
                remove=[b_node.index])
        self.assertEqual(len(graph), num_nodes)
        self.assertIsNone(graph.node_by_name("E"))
        self.assertEqual(graph.producer_of("b").name, "B")
        graph.resolve()

        with self.assertRaises(InvalidGraph):
            graph.apply_batch(rewire=[(1000, 0, "a")])
        self.assertEqual(len(graph), num_nodes)


def suite():
    suite = unittest.TestSuite()
    suite.addTest(unittest.defaultTestLoader.loadTestsFromTestCase(GraphTest))
    return suite


if __name__ == "__main__":
    runner = unittest.TextTestRunner()
    runner.run(suite())
