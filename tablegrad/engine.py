"""
Backward Engine
===============

Reverse-mode traversal of the recorded graph.

The algorithm:
1. Wrap the requested outputs in a synthetic :class:`GraphRoot` whose
   outputs are the seed gradients
2. Count, for every reachable node, how many edges point at it
3. Run Kahn's algorithm: a node becomes ready when its latch in the
   :class:`GradientAccumulator` reaches zero, ready nodes run newest first
4. Each node's produced gradients are added into the buffers of the nodes
   its edges point to, and leaves receive theirs through ``AccumulateGrad``

With ``create_graph=True`` the backward rules run with gradient recording
switched on, so the gradients are themselves differentiable and a second
pass can traverse the graph they built (double backward).

With ``num_workers > 0`` ready nodes are dispatched to a thread pool.
Independent branches then run concurrently; a node still only runs once
every contribution to it has arrived.
"""

from __future__ import annotations

import heapq
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

import numpy as np

from .accumulator import GradientAccumulator
from .config import get_settings
from .errors import AutogradError, ShapeMismatch
from .grad_mode import set_grad_enabled
from .graph import AccumulateGrad, Edge, GraphRoot, Node, gradient_edge
from .logger import get_logger
from .variable import Variable

logger = get_logger(__name__)

Capture = Tuple[Node, int]


class Engine:
    """
    Executes backward passes.

    Args:
        num_workers: Threads used to run ready nodes. 0 runs everything on the
            calling thread. Defaults to the ``num_workers`` setting.
    """

    def __init__(self, num_workers: Optional[int] = None) -> None:
        if num_workers is None:
            num_workers = get_settings().num_workers
        if num_workers < 0:
            raise ValueError(f"num_workers must be >= 0, got {num_workers}")
        self.num_workers = num_workers

    def execute(
        self,
        roots: Sequence[Edge],
        seeds: Sequence[Variable],
        keep_graph: bool,
        create_graph: bool,
        captures: Optional[Sequence[Capture]] = None,
    ) -> Optional[List[Optional[Variable]]]:
        """
        Run one backward pass.

        Args:
            roots: Gradient edges of the outputs being differentiated.
            seeds: One gradient per root.
            keep_graph: Keep saved forward state after the pass.
            create_graph: Record the backward computation itself.
            captures: ``(node, input_nr)`` pairs whose incoming gradient is
                returned instead of being propagated into ``.grad``. When
                given, only nodes on a path to a capture run.

        Returns:
            The captured gradients in order, or None when ``captures`` is None.
        """
        graph_root = GraphRoot(roots, seeds)
        capture_nodes = {node for node, _ in captures} if captures is not None else None
        runs = _runnable(graph_root, capture_nodes)
        dependencies = _dependencies(graph_root, runs, capture_nodes)

        accumulator = GradientAccumulator()
        for node, count in dependencies.items():
            accumulator.expect(node, count, node.num_outputs)

        pass_ = _Pass(graph_root, accumulator, runs, capture_nodes, create_graph)
        logger.debug(
            "backward pass over %d node(s), create_graph=%s, workers=%d",
            len(dependencies), create_graph, self.num_workers,
        )
        if self.num_workers > 0:
            pass_.run_parallel(self.num_workers)
        else:
            pass_.run_serial()
        accumulator.assert_drained()

        if not keep_graph:
            for node in pass_.executed:
                node.release_saved()

        if captures is None:
            return None
        return [pass_.captured.get(capture) for capture in captures]


class _Pass:
    """State of a single traversal."""

    def __init__(self, root, accumulator, runs, capture_nodes, create_graph) -> None:
        self.root = root
        self.accumulator = accumulator
        self.runs = runs
        self.capture_nodes = capture_nodes
        self.create_graph = create_graph
        self.captured: Dict[Capture, Optional[Variable]] = {}
        self.executed: List[Node] = []

    def _should_run(self, node: Node) -> bool:
        return self.runs is None or node in self.runs

    def _edge_mask(self, node: Node) -> List[bool]:
        mask = []
        for edge in node.next_edges:
            if edge is None:
                mask.append(False)
            elif self.runs is None:
                mask.append(True)
            else:
                mask.append(edge.node in self.runs or edge.node in self.capture_nodes)
        return mask

    def process(self, node: Node) -> List[Node]:
        """Run ``node`` and forward its gradients; return the nodes made ready."""
        with set_grad_enabled(self.create_graph):
            if node is self.root:
                grad_outputs = []
            else:
                grad_outputs = self.accumulator.take(node)
                if self.capture_nodes is not None and node in self.capture_nodes:
                    for i, grad in enumerate(grad_outputs):
                        self.captured[(node, i)] = grad
            if not self._should_run(node):
                return []

            mask = self._edge_mask(node)
            outputs = node.apply(grad_outputs, mask)
            self.executed.append(node)

            ready = []
            for edge, wanted, grad in zip(node.next_edges, mask, outputs):
                if wanted and self.accumulator.add(edge.node, edge.input_nr, grad):
                    ready.append(edge.node)
            return ready

    def run_serial(self) -> None:
        heap: List[Tuple[int, int, Node]] = []
        counter = 0
        for node in self.process(self.root):
            heapq.heappush(heap, (-node.sequence_nr, counter, node))
            counter += 1
        while heap:
            _, _, node = heapq.heappop(heap)
            for ready in self.process(node):
                heapq.heappush(heap, (-ready.sequence_nr, counter, ready))
                counter += 1

    def run_parallel(self, num_workers: int) -> None:
        with ThreadPoolExecutor(max_workers=num_workers, thread_name_prefix="tablegrad") as pool:
            pending = {pool.submit(self.process, self.root)}
            try:
                while pending:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        for node in sorted(future.result(), key=lambda n: -n.sequence_nr):
                            pending.add(pool.submit(self.process, node))
            except BaseException:
                for future in pending:
                    future.cancel()
                raise


# =============================================================================
# Graph analysis
# =============================================================================

def _runnable(root: GraphRoot, capture_nodes: Optional[Set[Node]]) -> Optional[Set[Node]]:
    """Nodes that must execute; None means all of them."""
    if capture_nodes is None:
        return None
    leads: Dict[Node, bool] = {}
    stack = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            leads[node] = any(
                e is not None and (e.node in capture_nodes or leads.get(e.node, False))
                for e in node.next_edges
            )
            continue
        if node in leads:
            continue
        leads[node] = False
        stack.append((node, True))
        for edge in node.next_edges:
            if edge is not None and edge.node not in leads:
                stack.append((edge.node, False))
    runs = {node for node, flag in leads.items() if flag}
    runs.add(root)
    return runs


def _dependencies(root: GraphRoot, runs: Optional[Set[Node]],
                  capture_nodes: Optional[Set[Node]]) -> Dict[Node, int]:
    """Number of incoming edges per node that will receive gradients."""
    counts: Dict[Node, int] = {}
    seen = {root}
    stack = [root]
    while stack:
        node = stack.pop()
        if runs is not None and node not in runs:
            continue
        for edge in node.next_edges:
            if edge is None:
                continue
            target = edge.node
            if runs is not None and target not in runs and target not in capture_nodes:
                continue
            counts[target] = counts.get(target, 0) + 1
            if target not in seen:
                seen.add(target)
                stack.append(target)
    return counts


# =============================================================================
# Public entry points
# =============================================================================

def _as_list(tensors) -> List[Variable]:
    if isinstance(tensors, Variable):
        return [tensors]
    return list(tensors)


def _make_seeds(outputs: Sequence[Variable], grad_outputs) -> List[Variable]:
    if grad_outputs is None:
        grad_outputs = [None] * len(outputs)
    elif isinstance(grad_outputs, (Variable, np.ndarray)):
        grad_outputs = [grad_outputs]
    else:
        grad_outputs = list(grad_outputs)
    if len(grad_outputs) != len(outputs):
        raise ValueError(
            f"got {len(grad_outputs)} gradients for {len(outputs)} outputs"
        )

    seeds = []
    for i, (output, seed) in enumerate(zip(outputs, grad_outputs)):
        if seed is None:
            if output.data.size != 1:
                raise AutogradError(
                    f"output {i} has shape {output.shape}; a seed gradient is only "
                    "created implicitly for single-element outputs"
                )
            seed = Variable(np.ones(output.shape, dtype=output.dtype))
        elif not isinstance(seed, Variable):
            seed = Variable(np.asarray(seed, dtype=output.dtype))
        if seed.shape != output.shape:
            raise ShapeMismatch(
                f"seed gradient {i} has shape {seed.shape}, output has shape {output.shape}"
            )
        seeds.append(seed)
    return seeds


def _root_edges(outputs: Sequence[Variable]) -> List[Edge]:
    edges = []
    for i, output in enumerate(outputs):
        edge = gradient_edge(output)
        if edge is None:
            raise AutogradError(
                f"element {i} of the outputs does not require grad and has no grad_fn"
            )
        edges.append(edge)
    return edges


def backward(
    tensors: Union[Variable, Sequence[Variable]],
    grad_tensors=None,
    retain_graph: Optional[bool] = None,
    create_graph: bool = False,
) -> None:
    """
    Accumulate gradients of ``tensors`` into the ``.grad`` of graph leaves.

    Args:
        tensors: Output(s) to differentiate.
        grad_tensors: Seed gradient per output. May be omitted for
            single-element outputs, which are seeded with ones.
        retain_graph: Keep saved state for another pass. Defaults to
            ``create_graph``.
        create_graph: Make the computed gradients differentiable.

    Raises:
        AutogradError: Or one of its subclasses; a failed pass frees nothing.
    """
    outputs = _as_list(tensors)
    if retain_graph is None:
        retain_graph = create_graph
    seeds = _make_seeds(outputs, grad_tensors)
    Engine().execute(_root_edges(outputs), seeds, retain_graph, create_graph)


def grad(
    outputs: Union[Variable, Sequence[Variable]],
    inputs: Union[Variable, Sequence[Variable]],
    grad_outputs=None,
    retain_graph: Optional[bool] = None,
    create_graph: bool = False,
    allow_unused: bool = False,
) -> Tuple[Optional[Variable], ...]:
    """
    Compute and return gradients of ``outputs`` with respect to ``inputs``.

    Leaves' ``.grad`` fields are left untouched. Only nodes on a path from
    the outputs to one of the inputs are executed.

    Example:
        >>> x = Variable(3.0, requires_grad=True)
        >>> (dx,) = grad(x * x, x, create_graph=True)
        >>> (dxx,) = grad(dx, x)
        >>> dx.item(), dxx.item()
        (6.0, 2.0)
    """
    outputs = _as_list(outputs)
    inputs = _as_list(inputs)
    if retain_graph is None:
        retain_graph = create_graph
    seeds = _make_seeds(outputs, grad_outputs)

    captures = []
    for i, variable in enumerate(inputs):
        edge = gradient_edge(variable)
        if edge is None:
            raise AutogradError(f"input {i} does not require grad")
        captures.append((edge.node, edge.input_nr))

    results = Engine().execute(
        _root_edges(outputs), seeds, retain_graph, create_graph, captures=captures,
    )
    for i, result in enumerate(results):
        if result is None and not allow_unused:
            raise AutogradError(
                f"input {i} was not used in the graph; pass allow_unused=True "
                "to get None for it"
            )
    if not create_graph:
        results = [r.detach() if r is not None else None for r in results]
    return tuple(results)
