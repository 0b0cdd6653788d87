"""Test OrderedSet and the naming utilities."""

import unittest

from gradsplit.global_env import global_config
from gradsplit.util import (OrderedSet, grad_name, is_static_shape,
                            names_to_str, recompute_name, to_int_tuple)


class OrderedSetTest(unittest.TestCase):
    """Test OrderedSet."""

    def test_init(self):
        oset = OrderedSet()
        self.assertEqual(len(oset), 0)

        oset = OrderedSet([1, 2, 3])
        self.assertEqual(len(oset), 3)

    def test_update(self):
        oset = OrderedSet([1, 2, 3])
        oset.update([4, 5])
        self.assertEqual(len(oset), 5)
        self.assertEqual(oset, OrderedSet([1, 2, 3, 4, 5]))

    def test_union_keeps_order(self):
        oset = OrderedSet(["c", "a"])
        self.assertEqual(list(oset.union(["b", "a"])), ["c", "a", "b"])
        self.assertEqual(list(oset | ["d"]), ["c", "a", "d"])

    def test_intersection(self):
        oset = OrderedSet([3, 1, 2])
        result = oset.intersection([2, 3, 4])
        self.assertEqual(result, OrderedSet([3, 2]))
        self.assertEqual(oset & [1], OrderedSet([1]))

        oset.intersection_update([2, 3, 4])
        self.assertEqual(oset, OrderedSet([3, 2]))

    def test_remove_and_discard(self):
        oset = OrderedSet([1, 2, 3])
        oset.remove(2)
        self.assertEqual(oset, OrderedSet([1, 3]))
        with self.assertRaises(KeyError):
            oset.remove(2)

        oset.discard(4)
        self.assertEqual(oset, OrderedSet([1, 3]))

    def test_difference(self):
        oset = OrderedSet([1, 2, 3])
        self.assertEqual(oset.difference([2, 3, 4]), OrderedSet([1]))
        self.assertEqual(oset - [1], OrderedSet([2, 3]))

        oset -= [2, 3, 4]
        self.assertEqual(oset, OrderedSet([1]))

    def test_inplace_operators_return_self(self):
        oset = OrderedSet([1])
        same = oset
        oset |= [2]
        oset &= [2]
        self.assertIs(oset, same)
        self.assertEqual(oset, OrderedSet([2]))

    def test_equality_depends_on_order(self):
        self.assertNotEqual(OrderedSet([1, 2]), OrderedSet([2, 1]))
        self.assertNotEqual(OrderedSet([1, 2]), [1, 2])

    def test_repr(self):
        oset = OrderedSet([1, 2, 3])
        self.assertEqual(repr(oset), "OrderedSet([1, 2, 3])")


class NamingTest(unittest.TestCase):
    """Test the naming and shape utilities."""

    def test_suffixes(self):
        self.assertEqual(grad_name("w"), "w" + global_config.gradient_suffix)
        self.assertEqual(recompute_name("layer0/q"),
                         "layer0/q" + global_config.recompute_suffix)

    def test_names_to_str(self):
        self.assertEqual(names_to_str(["a", "b"]), "a, b")
        self.assertEqual(names_to_str(["a", "b", "c"], limit=2),
                         "a, b, ... (1 more)")

    def test_shapes(self):
        self.assertEqual(to_int_tuple([2, 3]), (2, 3))
        self.assertEqual(to_int_tuple(None), ())
        self.assertTrue(is_static_shape((2, 3)))
        self.assertFalse(is_static_shape(("batch", 3)))
        self.assertFalse(is_static_shape((None,)))
        self.assertFalse(is_static_shape(None))


def suite():
    suite = unittest.TestSuite()
    suite.addTest(
        unittest.defaultTestLoader.loadTestsFromTestCase(OrderedSetTest))
    suite.addTest(unittest.defaultTestLoader.loadTestsFromTestCase(NamingTest))
    return suite


if __name__ == "__main__":
    runner = unittest.TextTestRunner()
    runner.run(suite())
