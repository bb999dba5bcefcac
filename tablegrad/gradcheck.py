"""
Gradient Checking
=================

Compares the gradients the engine computes against central finite
differences.

For a function ``f`` with outputs ``y_1 ... y_m`` every check draws a fixed
random projection ``v_j`` per output and differentiates the scalar

    L = sum_j <v_j, y_j>

both ways: once through the backward graph (a vector-Jacobian product) and
once numerically, element by element of every input that requires grad::

    dL/dx_i ~ (L(x_i + eps) - L(x_i - eps)) / (2 * eps)

Use float64 inputs; float32 loses too many digits to central differences.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from .engine import grad
from .errors import AutogradError
from .logger import get_logger
from .variable import Variable

logger = get_logger(__name__)

Inputs = Union[Variable, Sequence[Variable]]


class GradcheckError(AutogradError):
    """Analytical and numerical gradients disagree."""


def _as_tuple(value) -> tuple:
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def _float_outputs(outputs) -> List[Variable]:
    return [
        out for out in _as_tuple(outputs)
        if isinstance(out, Variable) and np.issubdtype(out.dtype, np.floating)
    ]


def _projected(outputs: Sequence[Variable], projections: Sequence[np.ndarray]) -> float:
    return float(sum(np.sum(out.data * v) for out, v in zip(outputs, projections)))


def _numerical(fn, inputs, targets, projections, eps) -> List[np.ndarray]:
    grads = []
    for x in targets:
        original = x.data
        estimate = np.zeros(original.shape, dtype=np.float64)
        for i in range(original.size):
            values = []
            for step in (eps, -eps):
                x.data = original.copy()
                x.data.flat[i] += step
                values.append(_projected(_float_outputs(fn(*inputs)), projections))
            estimate.flat[i] = (values[0] - values[1]) / (2 * eps)
        x.data = original
        grads.append(estimate)
    return grads


def _analytical(outputs, targets, projections) -> List[np.ndarray]:
    pairs = [(out, v) for out, v in zip(outputs, projections) if out.requires_grad]
    if not pairs:
        return [np.zeros(x.shape) for x in targets]
    result = grad(
        [out for out, _ in pairs],
        targets,
        grad_outputs=[Variable(v.astype(out.dtype)) for out, v in pairs],
        allow_unused=True,
    )
    return [
        np.zeros(x.shape) if g is None else np.asarray(g.data, dtype=np.float64)
        for x, g in zip(targets, result)
    ]


def gradcheck(
    fn: Callable[..., Union[Variable, Sequence[Variable]]],
    inputs: Inputs,
    eps: float = 1e-6,
    atol: float = 1e-5,
    rtol: float = 1e-3,
    raise_exception: bool = True,
    seed: int = 0,
) -> bool:
    """
    Check the engine's gradients of ``fn`` against finite differences.

    Args:
        fn: Function of ``inputs`` returning a Variable or a sequence of them.
            Non-floating outputs are ignored.
        inputs: Arguments of ``fn``. Only those with ``requires_grad`` are
            checked.
        eps: Finite-difference step.
        atol: Absolute tolerance.
        rtol: Relative tolerance.
        raise_exception: Raise :class:`GradcheckError` on a mismatch instead
            of returning False.
        seed: Seed of the random output projections.

    Returns:
        True if every checked gradient matches.

    Example:
        >>> x = Variable(np.random.randn(3, 4), requires_grad=True)
        >>> gradcheck(lambda t: t.tanh().sum(1), [x])
        True
    """
    if eps <= 0 or atol < 0 or rtol < 0:
        raise ValueError("gradcheck: eps must be > 0 and atol, rtol must be >= 0")
    inputs = _as_tuple(inputs)
    targets = [x for x in inputs if isinstance(x, Variable) and x.requires_grad]
    if not targets:
        raise ValueError("gradcheck: no input requires grad")

    outputs = _float_outputs(fn(*inputs))
    if not outputs:
        raise ValueError("gradcheck: fn returned no floating point output")
    rng = np.random.default_rng(seed)
    projections = [rng.standard_normal(out.shape) for out in outputs]

    analytical = _analytical(outputs, targets, projections)
    numerical = _numerical(fn, inputs, targets, projections, eps)

    for i, (a, n) in enumerate(zip(analytical, numerical)):
        if not np.allclose(a, n, atol=atol, rtol=rtol):
            error = np.max(np.abs(a - n))
            message = (
                f"gradcheck: gradient of input {i} does not match finite differences "
                f"(max abs error {error:.3g})\nanalytical:\n{a}\nnumerical:\n{n}"
            )
            if raise_exception:
                raise GradcheckError(message)
            logger.info(message)
            return False
    return True


def gradgradcheck(
    fn: Callable[..., Union[Variable, Sequence[Variable]]],
    inputs: Inputs,
    grad_outputs: Optional[Sequence[Variable]] = None,
    eps: float = 1e-6,
    atol: float = 1e-5,
    rtol: float = 1e-3,
    raise_exception: bool = True,
    seed: int = 0,
) -> bool:
    """
    Check second derivatives of ``fn``.

    Runs :func:`gradcheck` on the function that maps ``inputs`` to the
    first-order gradients of ``fn`` computed with ``create_graph=True``. The
    first-order seeds are ``grad_outputs`` or fixed random values.
    """
    inputs = _as_tuple(inputs)
    targets = [x for x in inputs if isinstance(x, Variable) and x.requires_grad]
    if not targets:
        raise ValueError("gradgradcheck: no input requires grad")

    if grad_outputs is None:
        rng = np.random.default_rng(seed + 1)
        outputs = [out for out in _float_outputs(fn(*inputs)) if out.requires_grad]
        grad_outputs = [Variable(rng.standard_normal(out.shape).astype(out.dtype)) for out in outputs]
    seeds = list(grad_outputs)

    def first_order(*args):
        outputs = [out for out in _float_outputs(fn(*args)) if out.requires_grad]
        grads = grad(outputs, targets, grad_outputs=seeds, create_graph=True, allow_unused=True)
        return [
            Variable(np.zeros(x.shape, dtype=x.dtype)) if g is None else g
            for x, g in zip(targets, grads)
        ]

    return gradcheck(first_order, inputs, eps=eps, atol=atol, rtol=rtol,
                     raise_exception=raise_exception, seed=seed)
