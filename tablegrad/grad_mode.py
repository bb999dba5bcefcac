"""Thread-local switch controlling whether forward operations record graph nodes."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

_state = threading.local()


def is_grad_enabled() -> bool:
    return getattr(_state, "enabled", True)


@contextmanager
def set_grad_enabled(mode: bool) -> Iterator[None]:
    previous = is_grad_enabled()
    _state.enabled = bool(mode)
    try:
        yield
    finally:
        _state.enabled = previous


def no_grad():
    """
    Disable graph recording on the current thread.

    Example:
        >>> with no_grad():
        ...     y = x * 2   # y.requires_grad is False
    """
    return set_grad_enabled(False)


def enable_grad():
    return set_grad_enabled(True)
