"""
Errors raised by the registry and the backward engine.

Every failure of ``backward()`` surfaces as a subclass of :class:`AutogradError`
so callers can catch the whole family in one place.
"""

from __future__ import annotations

from typing import Optional


class AutogradError(RuntimeError):
    """Base class for all autograd failures."""


class RegistryError(AutogradError):
    """The derivative table could not be loaded."""


class UncoveredInput(RegistryError):
    """A differentiable input of an operation has no backward rule."""

    def __init__(self, signature: str, input_name: str) -> None:
        self.signature = signature
        self.input_name = input_name
        super().__init__(
            f"{signature}: no derivative formula for differentiable input "
            f"'{input_name}' (mark it not_implemented() if it has none yet)"
        )


class MalformedEntry(RegistryError):
    """A table entry is syntactically or semantically invalid."""


class UnknownOperation(RegistryError):
    """A forward operation was looked up that the table does not define."""


class NotImplementedGradient(AutogradError):
    """Backward reached an operation whose derivative is not implemented."""

    def __init__(self, op_name: str, detail: Optional[str] = None) -> None:
        self.op_name = op_name
        message = f"the derivative for '{op_name}' is not implemented"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ShapeMismatch(AutogradError):
    """A gradient or shape-inverse helper disagrees with saved forward metadata."""


class AccumulatorNotReady(AutogradError):
    """A gradient buffer was read before all of its contributions arrived."""


class GraphFreed(AutogradError):
    """The saved state of a node was already released by an earlier backward."""
