# pylint: disable=consider-using-enumerate
"""Common utilities."""
from collections import OrderedDict
import time
from typing import Iterable, Sequence

import numpy as np

from gradsplit.global_env import global_config

########################################
##### Data Structure Utilities
########################################


class OrderedSet:
    """An ordered set implemented by using the built-in OrderedDict."""

    def __init__(self, iterable=()):
        self.dict = OrderedDict()
        self.dict.update({x: None for x in iterable})

    def add(self, *args):
        self.dict.update({x: None for x in args})

    def update(self, other):
        self.dict.update({x: None for x in other})

    def union(self, other):
        result = OrderedSet(self)
        result.update(other)
        return result

    def intersection_update(self, other):
        for x in [x for x in self.dict if x not in other]:
            del self.dict[x]

    def intersection(self, other):
        return OrderedSet(x for x in self if x in other)

    def discard(self, element):
        if element in self:
            del self.dict[element]

    def remove(self, element):
        if element not in self:
            raise KeyError(element)
        del self.dict[element]

    def clear(self):
        self.dict.clear()

    def difference(self, other):
        return OrderedSet([x for x in self if x not in other])

    def difference_update(self, other):
        for x in other:
            self.discard(x)

    def __iter__(self):
        return iter(self.dict)

    def __len__(self):
        return len(self.dict)

    def __contains__(self, element):
        return element in self.dict

    def __repr__(self):
        return "OrderedSet([" + ", ".join(repr(x) for x in self) + "])"

    def __or__(self, other):
        return self.union(other)

    def __and__(self, other):
        return self.intersection(other)

    def __sub__(self, other):
        return self.difference(other)

    def __ior__(self, other):
        self.update(other)
        return self

    def __iand__(self, other):
        self.intersection_update(other)
        return self

    def __isub__(self, other):
        self.difference_update(other)
        return self

    def __eq__(self, other):
        if isinstance(other, OrderedSet):
            return list(self.dict) == list(other.dict)
        return False


########################################
##### Naming Utilities
########################################


def grad_name(name: str) -> str:
    """Return the name of the gradient of a tensor."""
    return name + global_config.gradient_suffix


def recompute_name(name: str) -> str:
    """Return the name of the recomputed twin of a node or tensor."""
    return name + global_config.recompute_suffix


def names_to_str(names: Iterable[str], limit: int = 8) -> str:
    """Format a list of names for log messages."""
    names = list(names)
    ret = ", ".join(names[:limit])
    if len(names) > limit:
        ret += f", ... ({len(names) - limit} more)"
    return ret


########################################
##### Shape Utilities
########################################


def to_int_tuple(array: Sequence) -> tuple:
    """Convert a sequence of integers (or a numpy array) to an int tuple."""
    if array is None:
        return ()
    return tuple(int(x) for x in np.asarray(array, dtype=np.int64).ravel())


def is_static_shape(shape) -> bool:
    """Check whether every dimension of a shape is a concrete integer."""
    if shape is None:
        return False
    return all(isinstance(d, (int, np.integer)) and d >= 0 for d in shape)


########################################
##### Misc Utilities
########################################

_tic = None


def print_used_time(message: str):
    """Print a message and the elapsed time from the last call."""
    global _tic
    if message and _tic is not None and global_config.print_build_time:
        print(f" - {message}: {time.time() - _tic:.2f} s", flush=True)
    _tic = time.time()