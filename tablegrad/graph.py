"""
Computation Graph
=================

Nodes recorded during the forward pass and the edges between them.

Every differentiable operation that sees an input requiring grad creates one
:class:`BackwardNode`. The node holds:

1. The derivative table entry of the operation (its backward rules)
2. Only the forward state those rules read (see :class:`SavedVariable`)
3. One :class:`Edge` per differentiable input, pointing at the node that
   receives that input's gradient

Leaves that require grad receive gradients through an :class:`AccumulateGrad`
node, created on demand and shared by every consumer of the leaf.

Ownership follows plain reference counting: outputs own their ``grad_fn``,
nodes own the nodes their edges point to, and a leaf holds only a weak
reference to its accumulator. A graph disappears as soon as the last output
referencing it is dropped.
"""

from __future__ import annotations

import itertools
import threading
import weakref
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import GraphFreed, ShapeMismatch
from .registry import DerivativeEntry

# Guards grad_fn assignment and accumulator creation.
graph_lock = threading.RLock()

_sequence = itertools.count()

Shape = Tuple[int, ...]


class Edge(NamedTuple):
    """Gradient destination: output slot ``input_nr`` of ``node``."""
    node: "Node"
    input_nr: int


class TensorMeta(NamedTuple):
    shape: Shape
    dtype: np.dtype
    differentiable: bool = True


# =============================================================================
# Saved forward state
# =============================================================================

class SavedVariable:
    """
    A forward tensor kept for the backward pass.

    Inputs are kept as the Variable itself. Outputs keep only their data and
    are rebuilt on unpack with ``grad_fn`` pointing back at the owning node, so
    a node never holds a strong reference to its own outputs.
    """

    __slots__ = ("_variable", "_data", "_output_nr", "_requires_grad", "_is_output")

    def __init__(self, variable, is_output: bool = False) -> None:
        self._is_output = is_output
        if is_output:
            self._variable = None
            self._data = variable.data
            self._output_nr = variable.output_nr
            self._requires_grad = variable.requires_grad
        else:
            self._variable = variable
            self._data = None
            self._output_nr = 0
            self._requires_grad = False

    def unpack(self, node: Optional["Node"] = None):
        if not self._is_output:
            return self._variable
        from .variable import Variable

        if self._requires_grad and node is not None:
            return Variable._from_node(self._data, node, self._output_nr)
        return Variable(self._data)


# =============================================================================
# Nodes
# =============================================================================

class Node:
    """
    Base class of every graph node.

    ``apply(grad_outputs)`` receives one gradient per output slot and returns
    one gradient per entry of ``next_edges``.
    """

    __slots__ = ("next_edges", "sequence_nr", "__weakref__")

    def __init__(self, next_edges: Sequence[Optional[Edge]] = ()) -> None:
        self.next_edges: Tuple[Optional[Edge], ...] = tuple(next_edges)
        self.sequence_nr = next(_sequence)

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def num_outputs(self) -> int:
        return 1

    def apply(self, grad_outputs: Sequence[Any], edge_mask: Optional[Sequence[bool]] = None) -> List[Any]:
        raise NotImplementedError

    def release_saved(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{self.name} #{self.sequence_nr}>"


class GraphRoot(Node):
    """Synthetic start node whose outputs are the seed gradients."""

    __slots__ = ("seeds",)

    def __init__(self, edges: Sequence[Optional[Edge]], seeds: Sequence[Any]) -> None:
        super().__init__(edges)
        self.seeds = list(seeds)

    @property
    def num_outputs(self) -> int:
        return 0

    def apply(self, grad_outputs=(), edge_mask=None):
        return list(self.seeds)


class AccumulateGrad(Node):
    """Sink for a leaf Variable: adds incoming gradients into ``variable.grad``."""

    __slots__ = ("variable", "_lock")

    def __init__(self, variable) -> None:
        super().__init__(())
        self.variable = variable
        self._lock = threading.Lock()

    def apply(self, grad_outputs, edge_mask=None):
        grad = grad_outputs[0]
        if grad is None:
            return []
        variable = self.variable
        if grad.shape != variable.shape:
            raise ShapeMismatch(
                f"gradient of shape {grad.shape} for leaf of shape {variable.shape}"
            )
        with self._lock:
            # replaced, never updated in place
            variable.grad = grad if variable.grad is None else variable.grad + grad
        return []


class BackwardNode(Node):
    """
    Backward record of one forward call, driven by a derivative table entry.

    Attributes:
        entry: The validated table entry of the forward operation.
        input_slots: Differentiable input name -> index (or slice, for
            tensor lists) into ``next_edges``.
        input_meta: Shape and dtype of every differentiable input tensor.
        output_meta: Shape, dtype and differentiability of every output tensor.
    """

    __slots__ = ("entry", "input_slots", "input_meta", "output_meta", "_saved")

    def __init__(
        self,
        entry: DerivativeEntry,
        next_edges: Sequence[Optional[Edge]],
        input_slots: Dict[str, Union[int, slice]],
        input_meta: Sequence[TensorMeta],
        output_meta: Sequence[TensorMeta],
        saved: Dict[str, Any],
    ) -> None:
        super().__init__(next_edges)
        self.entry = entry
        self.input_slots = input_slots
        self.input_meta = tuple(input_meta)
        self.output_meta = tuple(output_meta)
        self._saved: Optional[Dict[str, Any]] = saved

    @property
    def name(self) -> str:
        return f"{self.entry.name}Backward"

    @property
    def num_outputs(self) -> int:
        return len(self.output_meta)

    def release_saved(self) -> None:
        if self._saved:
            self._saved = None

    def _unpack(self) -> Dict[str, Any]:
        if self._saved is None:
            raise GraphFreed(
                f"{self.name}: saved tensors were freed by an earlier backward pass; "
                "pass retain_graph=True to backward through the graph a second time"
            )
        unpacked = {}
        for name, value in self._saved.items():
            if isinstance(value, SavedVariable):
                value = value.unpack(self)
            elif isinstance(value, list):
                value = [v.unpack(self) if isinstance(v, SavedVariable) else v for v in value]
            unpacked[name] = value
        return unpacked

    def apply(self, grad_outputs, edge_mask=None):
        from .variable import Variable

        if edge_mask is None:
            edge_mask = [edge is not None for edge in self.next_edges]
        saved = self._unpack()

        grads = []
        for grad, meta in zip(grad_outputs, self.output_meta):
            if grad is None and meta.differentiable:
                grad = Variable(np.zeros(meta.shape, dtype=meta.dtype))
            grads.append(grad)

        results: List[Any] = [None] * len(self.next_edges)
        for rule in self.entry.rules:
            mask = [self._wanted(name, edge_mask) for name in rule.covers]
            if not any(mask):
                continue
            for name, grad in zip(rule.covers, rule.apply(grads, saved, mask)):
                if grad is None:
                    continue
                slot = self.input_slots[name]
                if isinstance(slot, slice):
                    grad = list(grad)
                    indices = range(*slot.indices(len(results)))
                    if len(grad) != len(indices):
                        raise ShapeMismatch(
                            f"{self.name}: expected {len(indices)} gradients for "
                            f"'{name}', got {len(grad)}"
                        )
                    for i, g in zip(indices, grad):
                        results[i] = self._checked(name, i, g)
                else:
                    results[slot] = self._checked(name, slot, grad)

        return [g if wanted else None for g, wanted in zip(results, edge_mask)]

    def _wanted(self, name: str, edge_mask: Sequence[bool]) -> bool:
        slot = self.input_slots[name]
        if isinstance(slot, slice):
            return any(edge_mask[slot])
        return bool(edge_mask[slot])

    def _checked(self, name: str, index: int, grad):
        from .variable import Variable

        if grad is None:
            return None
        if not isinstance(grad, Variable):
            grad = Variable(grad)
        expected = self.input_meta[index].shape
        if grad.shape != expected:
            raise ShapeMismatch(
                f"{self.name} returned a gradient of shape {grad.shape} for "
                f"input '{name}', expected {expected}"
            )
        return grad


# =============================================================================
# Graph construction helpers
# =============================================================================

def grad_accumulator(variable) -> AccumulateGrad:
    """Return the accumulator node of a leaf, creating it on first use."""
    with graph_lock:
        ref = variable._accumulator_ref
        node = ref() if ref is not None else None
        if node is None:
            node = AccumulateGrad(variable)
            variable._accumulator_ref = weakref.ref(node)
        return node


def gradient_edge(variable) -> Optional[Edge]:
    """Where the gradient of ``variable`` must be sent, or None."""
    if variable.grad_fn is not None:
        return Edge(variable.grad_fn, variable.output_nr)
    if variable.requires_grad:
        return Edge(grad_accumulator(variable), 0)
    return None


def topological_sort(root) -> List[Node]:
    """
    Compute a topological ordering of the backward graph rooted at ``root``.

    Nodes are ordered so that a node appears after every node its edges
    point to; ``root`` (a Variable's ``grad_fn`` or any Node) is last.

    Args:
        root: A Node, or a Variable whose ``grad_fn`` is used.

    Returns:
        List of Nodes in topological order.

    Example:
        >>> a = Variable(1.0, requires_grad=True)
        >>> d = (a + 2.0) * a
        >>> [n.name for n in topological_sort(d)]
        ['AccumulateGrad', 'addBackward', 'mulBackward']
    """
    if not isinstance(root, Node):
        edge = gradient_edge(root)
        if edge is None:
            return []
        root = edge.node

    topo: List[Node] = []
    visited = {root}
    stack = [(root, iter(root.next_edges))]
    while stack:
        node, edges = stack[-1]
        for edge in edges:
            if edge is not None and edge.node not in visited:
                visited.add(edge.node)
                stack.append((edge.node, iter(edge.node.next_edges)))
                break
        else:
            stack.pop()
            topo.append(node)
    return topo


def draw_graph(root, format: str = 'text') -> str:
    """
    Generate a visualization of the backward graph.

    Args:
        root: A Variable or Node at the top of the graph.
        format: 'text' for a plain listing, 'dot' for Graphviz DOT format.

    Returns:
        String representation of the graph.
    """
    nodes = topological_sort(root)
    node_ids = {n: i for i, n in enumerate(nodes)}

    def label(node: Node) -> str:
        if isinstance(node, AccumulateGrad) and node.variable.label:
            return f"{node.name}({node.variable.label})"
        return node.name

    if format == 'dot':
        lines = ['digraph G {', '  rankdir=LR;']
        for node in nodes:
            nid = node_ids[node]
            shape = 'box' if isinstance(node, AccumulateGrad) else 'ellipse'
            lines.append(f'  n{nid} [label="{label(node)}", shape={shape}];')
            for edge in node.next_edges:
                if edge is not None:
                    lines.append(f'  n{nid} -> n{node_ids[edge.node]} [label="{edge.input_nr}"];')
        lines.append('}')
        return '\n'.join(lines)

    lines = ['Backward Graph:', '=' * 50]
    for node in reversed(nodes):
        nid = node_ids[node]
        targets = [
            f'n{node_ids[e.node]}[{e.input_nr}]' if e is not None else '-'
            for e in node.next_edges
        ]
        arrow = f' -> {", ".join(targets)}' if targets else ''
        lines.append(f'{"n" + str(nid):>6}: {label(node)}{arrow}')
    return '\n'.join(lines)
