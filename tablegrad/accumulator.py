"""
Gradient Accumulator
====================

Per-node input buffers used by the engine during one backward pass.

Each node that will run gets a buffer with one slot per output and a latch
initialised to the number of edges pointing at it. Every incoming edge calls
:meth:`GradientAccumulator.add` exactly once, with a gradient or ``None``;
the call that brings the latch to zero reports the node as ready.

Contributions to the same slot are summed as they arrive. The order of that
summation is not fixed across workers, so results may differ in the last bits
between runs.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

from .errors import AccumulatorNotReady
from .graph import Node


class _Buffer:
    __slots__ = ("grads", "remaining", "lock")

    def __init__(self, num_outputs: int, count: int) -> None:
        self.grads: List[Optional[Any]] = [None] * num_outputs
        self.remaining = count
        self.lock = threading.Lock()


class GradientAccumulator:
    """
    Buffers keyed by node identity.

    Example:
        >>> acc = GradientAccumulator()
        >>> acc.expect(node, count=2, num_outputs=1)
        >>> acc.add(node, 0, g1)
        False
        >>> acc.add(node, 0, g2)
        True
        >>> acc.take(node)        # [g1 + g2]
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buffers: Dict[Node, _Buffer] = {}

    def expect(self, node: Node, count: int, num_outputs: int) -> None:
        """Register ``node`` as waiting for ``count`` contributions."""
        if count <= 0:
            raise ValueError(f"a buffer needs at least one contribution, got {count}")
        with self._lock:
            if node in self._buffers:
                raise AccumulatorNotReady(f"{node!r} already has a buffer")
            self._buffers[node] = _Buffer(max(num_outputs, 1), count)

    def add(self, node: Node, input_nr: int, grad: Optional[Any]) -> bool:
        """
        Record one contribution for output slot ``input_nr`` of ``node``.

        Returns:
            True when this was the last expected contribution.

        Raises:
            AccumulatorNotReady: If ``node`` has no buffer or already received
                every contribution it expected.
        """
        with self._lock:
            buffer = self._buffers.get(node)
        if buffer is None:
            raise AccumulatorNotReady(f"gradient sent to {node!r}, which has no buffer")

        with buffer.lock:
            if buffer.remaining <= 0:
                raise AccumulatorNotReady(f"{node!r} received more contributions than expected")
            if grad is not None:
                current = buffer.grads[input_nr]
                buffer.grads[input_nr] = grad if current is None else current + grad
            buffer.remaining -= 1
            return buffer.remaining == 0

    def take(self, node: Node) -> List[Optional[Any]]:
        """Remove and return the finished gradients of ``node``."""
        with self._lock:
            buffer = self._buffers.get(node)
            if buffer is None:
                raise AccumulatorNotReady(f"{node!r} has no buffer")
            if buffer.remaining > 0:
                raise AccumulatorNotReady(
                    f"{node!r} read with {buffer.remaining} contribution(s) still pending"
                )
            del self._buffers[node]
        return buffer.grads

    def pending(self) -> List[Node]:
        with self._lock:
            return list(self._buffers)

    def assert_drained(self) -> None:
        """Raise if any buffer was never completed and taken."""
        leftovers = self.pending()
        if leftovers:
            names = ", ".join(repr(n) for n in leftovers[:5])
            raise AccumulatorNotReady(
                f"backward finished with {len(leftovers)} unconsumed buffer(s): {names}"
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)
