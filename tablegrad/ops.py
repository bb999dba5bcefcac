"""
Differentiable Operations
=========================

Forward kernels over numpy arrays, each bound to one overload of the
derivative table with :func:`differentiable`::

    @differentiable("mul(Tensor self, Tensor other)")
    def _mul_tensor(self, other):
        return self * other

The decorator turns the kernel into an operation on Variables. On every call
it:

1. Binds the arguments by the names in the signature and unwraps Variables
2. Runs the kernel on plain arrays
3. Wraps the outputs, and, when gradient recording is on and some
   differentiable input requires grad, records a :class:`BackwardNode` that
   saves exactly what the entry's formulas read

Fallthrough operations never record: their outputs do not require grad.

Kernel parameter names must match the signature's argument names, which is
why tensor kernels take ``self`` like the table does. Because the public names
below shadow ``abs``, ``max``, ``min``, ``sum``, ``round``, ``all`` and
``any``, module code reaches the builtins through :mod:`builtins`.
"""

from __future__ import annotations

import builtins
import functools
import inspect
import math
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import get_settings
from .errors import MalformedEntry, ShapeMismatch
from .grad_mode import is_grad_enabled
from .graph import BackwardNode, SavedVariable, TensorMeta, gradient_edge, graph_lock
from .registry import DerivativeEntry, FormulaRegistry, Schema, default_registry
from .variable import Variable

_OPERATIONS: Dict[str, "Operation"] = {}
_rng = np.random.default_rng()


# =============================================================================
# Operation wrapper
# =============================================================================

class Operation:
    """A forward kernel bound to its derivative table entry."""

    def __init__(self, signature: str, kernel: Callable[..., Any]) -> None:
        self.schema = Schema.parse(signature)
        self.kernel = kernel
        self._signature = inspect.signature(kernel)
        params = tuple(self._signature.parameters)
        if params != self.schema.argument_names:
            raise MalformedEntry(
                f"kernel {kernel.__name__}{params} does not match {self.schema.key}"
            )
        self._entry: Optional[DerivativeEntry] = None

    @property
    def key(self) -> str:
        return self.schema.key

    @property
    def entry(self) -> DerivativeEntry:
        if self._entry is None:
            self._entry = default_registry().lookup(self.key)
        return self._entry

    def __call__(self, *args, **kwargs):
        bound = self._signature.bind(*args, **kwargs)
        bound.apply_defaults()

        values: Dict[str, Any] = {}
        raw: Dict[str, Any] = {}
        for arg in self.schema.arguments:
            value = bound.arguments[arg.name]
            if arg.type == "TensorList":
                value = [as_variable(v) for v in value]
                raw[arg.name] = [v.data for v in value]
            elif arg.is_tensor:
                value = as_variable(value)
                raw[arg.name] = value.data
            else:
                value = _convert(arg.type, value)
                raw[arg.name] = value
            values[arg.name] = value

        out = self.kernel(**raw)
        if len(self.schema.returns) == 1:
            out = (out,)
        return self._wrap(values, tuple(out))

    def _wrap(self, values: Dict[str, Any], outputs: Tuple[Any, ...]):
        entry = self.entry
        results: List[Any] = []
        flat_outputs: List[Tuple[Any, Variable]] = []
        for ret, value in zip(self.schema.returns, outputs):
            if ret.type == "TensorList":
                wrapped = [Variable(np.asarray(a)) for a in value]
                flat_outputs.extend((ret, v) for v in wrapped)
            elif ret.is_tensor:
                wrapped = Variable(np.asarray(value))
                flat_outputs.append((ret, wrapped))
            else:
                wrapped = value
            results.append(wrapped)

        if not entry.fallthrough and is_grad_enabled():
            inputs = [
                v for name in self.schema.differentiable_inputs
                for v in _flat(values[name])
            ]
            if builtins.any(v.requires_grad for v in inputs):
                self._record(entry, values, flat_outputs, results)

        return results[0] if len(results) == 1 else tuple(results)

    def _record(self, entry, values, flat_outputs, results) -> None:
        next_edges = []
        input_meta = []
        slots: Dict[str, Any] = {}
        output_meta = [
            TensorMeta(v.shape, v.dtype, ret.differentiable and _is_floating(v.dtype))
            for ret, v in flat_outputs
        ]
        outputs = dict(zip(self.schema.output_names, results))

        with graph_lock:
            for name in self.schema.differentiable_inputs:
                value = values[name]
                start = len(next_edges)
                for v in _flat(value):
                    next_edges.append(gradient_edge(v))
                    input_meta.append(TensorMeta(v.shape, v.dtype))
                slots[name] = slice(start, len(next_edges)) if isinstance(value, list) else start

            saved: Dict[str, Any] = {}
            node = BackwardNode(entry, next_edges, slots, input_meta, output_meta, saved)
            for i, (meta, (_, v)) in enumerate(zip(output_meta, flat_outputs)):
                if meta.differentiable:
                    v.requires_grad = True
                    v.grad_fn = node
                    v.output_nr = i

            for name in entry.saved_names:
                saved[name] = self._save(name, values, outputs)

    def _save(self, name: str, values: Dict[str, Any], outputs: Dict[str, Any]):
        if name in values:
            arg = self.schema.argument(name)
            if arg.type == "TensorList":
                return [SavedVariable(v) for v in values[name]]
            if arg.is_tensor:
                return SavedVariable(values[name])
            return values[name]
        if name in outputs:
            value = outputs[name]
            if isinstance(value, list):
                return [SavedVariable(v, is_output=True) for v in value]
            if isinstance(value, Variable):
                return SavedVariable(value, is_output=True)
            return value

        base, _, attr = name.rpartition("_")
        target = values[base] if base in values else outputs[base]
        if isinstance(target, list):
            return [getattr(v, attr) for v in target]
        return getattr(target, attr)

    def __repr__(self) -> str:
        return f"Operation({self.key!r})"


def differentiable(signature: str):
    """
    Register a numpy kernel as the forward pass of a table overload.

    Args:
        signature: Overload signature, with or without a return clause.
            The return clause decides how outputs are wrapped.
    """
    def decorator(kernel):
        op = Operation(signature, kernel)
        if op.key in _OPERATIONS:
            raise MalformedEntry(f"two kernels registered for {op.key}")
        _OPERATIONS[op.key] = op

        @functools.wraps(kernel)
        def wrapper(*args, **kwargs):
            return op(*args, **kwargs)

        wrapper.operation = op
        return wrapper
    return decorator


def operations() -> Dict[str, Operation]:
    return dict(_OPERATIONS)


def check_kernels(registry: FormulaRegistry) -> None:
    """
    Verify every kernel against ``registry``.

    Raises:
        UnknownOperation: A kernel has no table entry.
        MalformedEntry: A kernel's outputs disagree with its entry.
    """
    for op in _OPERATIONS.values():
        entry = registry.lookup(op.key)
        if entry.schema.returns != op.schema.returns:
            raise MalformedEntry(
                f"{op.key}: kernel returns {str(op.schema)!r}, table says {str(entry.schema)!r}"
            )


def manual_seed(seed: int) -> None:
    """Seed the generator used by random operations."""
    global _rng
    _rng = np.random.default_rng(seed)


def as_variable(value) -> Variable:
    if isinstance(value, Variable):
        return value
    if value is None:
        raise TypeError("expected a tensor, got None")
    return Variable(value)


def _flat(value) -> List[Variable]:
    return value if isinstance(value, list) else [value]


def _is_tensor(value) -> bool:
    return isinstance(value, (Variable, np.ndarray))


def _is_floating(dtype) -> bool:
    return np.issubdtype(dtype, np.floating)


def _convert(type_name: str, value):
    if isinstance(value, Variable):
        value = value.data
    if isinstance(value, np.ndarray):
        value = value.tolist() if value.ndim else value.item()
    if value is None:
        return None
    if type_name == "IntList":
        if isinstance(value, (int, np.integer)):
            return (int(value),)
        return tuple(int(v) for v in value)
    if type_name == "int64_t":
        return int(value)
    if type_name == "bool":
        return bool(value)
    if type_name == "ScalarType":
        return np.dtype(value).name
    return value


def _dtype(dtype) -> np.dtype:
    return np.dtype(dtype if dtype is not None else get_settings().default_dtype)


def _dim(dim: int, ndim: int) -> int:
    bound = builtins.max(ndim, 1)
    if not -bound <= dim < bound:
        raise IndexError(f"dimension {dim} out of range for {ndim}-d tensor")
    return dim % bound


def _dims(dims, ndim: int) -> Tuple[int, ...]:
    return tuple(_dim(d, ndim) for d in dims)


def _index(ndim: int, dim: int, item) -> Tuple[Any, ...]:
    index: List[Any] = [slice(None)] * ndim
    index[dim] = item
    return tuple(index)


# =============================================================================
# Elementwise Math
# =============================================================================

@differentiable("abs(Tensor self)")
def abs(self):
    return np.abs(self)


@differentiable("acos(Tensor self)")
def acos(self):
    return np.arccos(self)


@differentiable("asin(Tensor self)")
def asin(self):
    return np.arcsin(self)


@differentiable("atan(Tensor self)")
def atan(self):
    return np.arctan(self)


@differentiable("ceil(Tensor self)")
def ceil(self):
    return np.ceil(self)


@differentiable("clone(Tensor self)")
def clone(self):
    return np.array(self, copy=True)


@differentiable("alias(Tensor self)")
def alias(self):
    return self.view()


@differentiable("cos(Tensor self)")
def cos(self):
    return np.cos(self)


@differentiable("cosh(Tensor self)")
def cosh(self):
    return np.cosh(self)


@differentiable("erf(Tensor self)")
def erf(self):
    return np.vectorize(math.erf, otypes=[self.dtype])(self)


@differentiable("exp(Tensor self)")
def exp(self):
    return np.exp(self)


@differentiable("expm1(Tensor self)")
def expm1(self):
    return np.expm1(self)


@differentiable("floor(Tensor self)")
def floor(self):
    return np.floor(self)


@differentiable("frac(Tensor self)")
def frac(self):
    return self - np.trunc(self)


@differentiable("lgamma(Tensor self)")
def lgamma(self):
    return np.vectorize(math.lgamma, otypes=[self.dtype])(self)


@differentiable("log(Tensor self)")
def log(self):
    return np.log(self)


@differentiable("log1p(Tensor self)")
def log1p(self):
    return np.log1p(self)


@differentiable("neg(Tensor self)")
def neg(self):
    return np.negative(self)


@differentiable("reciprocal(Tensor self)")
def reciprocal(self):
    return np.divide(1, self)


@differentiable("round(Tensor self)")
def round(self):
    return np.round(self)


@differentiable("rsqrt(Tensor self)")
def rsqrt(self):
    return 1 / np.sqrt(self)


def _sigmoid(x):
    return 0.5 * (np.tanh(0.5 * x) + 1)


@differentiable("sigmoid(Tensor self)")
def sigmoid(self):
    return _sigmoid(self)


@differentiable("sign(Tensor self)")
def sign(self):
    return np.sign(self)


@differentiable("sin(Tensor self)")
def sin(self):
    return np.sin(self)


@differentiable("sinh(Tensor self)")
def sinh(self):
    return np.sinh(self)


@differentiable("sqrt(Tensor self)")
def sqrt(self):
    return np.sqrt(self)


@differentiable("tan(Tensor self)")
def tan(self):
    return np.tan(self)


@differentiable("tanh(Tensor self)")
def tanh(self):
    return np.tanh(self)


@differentiable("trunc(Tensor self)")
def trunc(self):
    return np.trunc(self)


@differentiable("to(Tensor self, ScalarType dtype)")
def to(self, dtype):
    return self.astype(dtype, copy=False)


# =============================================================================
# Binary and Ternary Operations
# =============================================================================

@differentiable("add(Tensor self, Tensor other, *, Scalar alpha)")
def _add_tensor(self, other, *, alpha=1):
    return self + other if alpha == 1 else self + alpha * other


@differentiable("add(Tensor self, Scalar other, *, Scalar alpha)")
def _add_scalar(self, other, *, alpha=1):
    return self + other * alpha


def add(self, other, alpha=1):
    if _is_tensor(other):
        return _add_tensor(self, other, alpha=alpha)
    return _add_scalar(self, other, alpha=alpha)


@differentiable("sub(Tensor self, Tensor other, *, Scalar alpha)")
def _sub_tensor(self, other, *, alpha=1):
    return self - other if alpha == 1 else self - alpha * other


@differentiable("sub(Tensor self, Scalar other, *, Scalar alpha)")
def _sub_scalar(self, other, *, alpha=1):
    return self - other * alpha


def sub(self, other, alpha=1):
    if _is_tensor(other):
        return _sub_tensor(self, other, alpha=alpha)
    return _sub_scalar(self, other, alpha=alpha)


@differentiable("mul(Tensor self, Tensor other)")
def _mul_tensor(self, other):
    return self * other


@differentiable("mul(Tensor self, Scalar other)")
def _mul_scalar(self, other):
    return self * other


def mul(self, other):
    if _is_tensor(other):
        return _mul_tensor(self, other)
    return _mul_scalar(self, other)


@differentiable("div(Tensor self, Tensor other)")
def _div_tensor(self, other):
    return np.true_divide(self, other)


@differentiable("div(Tensor self, Scalar other)")
def _div_scalar(self, other):
    return np.true_divide(self, other)


def div(self, other):
    if _is_tensor(other):
        return _div_tensor(self, other)
    return _div_scalar(self, other)


@differentiable("pow(Tensor self, Scalar exponent)")
def _pow_scalar(self, exponent):
    return np.power(self, exponent)


@differentiable("pow(Tensor self, Tensor exponent)")
def _pow_tensor(self, exponent):
    return np.power(self, exponent)


@differentiable("pow(Scalar self, Tensor exponent)")
def _pow_base(self, exponent):
    return np.power(self, exponent)


def pow(self, exponent):
    if not _is_tensor(self):
        return _pow_base(self, exponent)
    if _is_tensor(exponent):
        return _pow_tensor(self, exponent)
    return _pow_scalar(self, exponent)


@differentiable("atan2(Tensor self, Tensor other)")
def atan2(self, other):
    return np.arctan2(self, other)


@differentiable("fmod(Tensor self, Scalar other)")
def _fmod_scalar(self, other):
    return np.fmod(self, other)


@differentiable("fmod(Tensor self, Tensor other)")
def _fmod_tensor(self, other):
    return np.fmod(self, other)


def fmod(self, other):
    if _is_tensor(other):
        return _fmod_tensor(self, other)
    return _fmod_scalar(self, other)


@differentiable("remainder(Tensor self, Scalar other)")
def _remainder_scalar(self, other):
    return np.remainder(self, other)


@differentiable("remainder(Tensor self, Tensor other)")
def _remainder_tensor(self, other):
    return np.remainder(self, other)


def remainder(self, other):
    if _is_tensor(other):
        return _remainder_tensor(self, other)
    return _remainder_scalar(self, other)


@differentiable("max(Tensor self, Tensor other)")
def maximum(self, other):
    return np.maximum(self, other)


@differentiable("min(Tensor self, Tensor other)")
def minimum(self, other):
    return np.minimum(self, other)


@differentiable("lerp(Tensor self, Tensor end, Scalar weight)")
def lerp(self, end, weight):
    return self + weight * (end - self)


@differentiable("addcmul(Tensor self, Tensor tensor1, Tensor tensor2, *, Scalar value)")
def addcmul(self, tensor1, tensor2, *, value=1):
    return self + value * tensor1 * tensor2


@differentiable("addcdiv(Tensor self, Tensor tensor1, Tensor tensor2, *, Scalar value)")
def addcdiv(self, tensor1, tensor2, *, value=1):
    return self + value * tensor1 / tensor2


@differentiable("clamp(Tensor self, Scalar min, Scalar max)")
def clamp(self, min=None, max=None):
    if min is None and max is None:
        raise ValueError("clamp needs at least one of min and max")
    out = self
    if min is not None:
        out = np.maximum(out, min)
    if max is not None:
        out = np.minimum(out, max)
    return out


@differentiable("clamp_min(Tensor self, Scalar min)")
def clamp_min(self, min):
    return np.maximum(self, min)


@differentiable("clamp_max(Tensor self, Scalar max)")
def clamp_max(self, max):
    return np.minimum(self, max)


@differentiable("where(BoolTensor condition, Tensor self, Tensor other)")
def where(condition, self, other):
    return np.where(condition, self, other)


def _pnorm(x, p, axis=None, keepdims=False):
    if p == math.inf:
        return np.max(np.abs(x), axis=axis, keepdims=keepdims)
    if p == 0:
        return np.sum(x != 0, axis=axis, keepdims=keepdims).astype(x.dtype)
    if p == 2:
        return np.sqrt(np.sum(x * x, axis=axis, keepdims=keepdims))
    return np.sum(np.abs(x) ** p, axis=axis, keepdims=keepdims) ** (1.0 / p)


@differentiable("dist(Tensor self, Tensor other, Scalar p)")
def dist(self, other, p=2):
    return _pnorm(self - other, p)


# =============================================================================
# Reductions
# =============================================================================

@differentiable("sum(Tensor self)")
def _sum_all(self):
    return np.sum(self)


@differentiable("sum(Tensor self, IntList dim, bool keepdim)")
def _sum_dim(self, dim, keepdim=False):
    return np.sum(self, axis=_dims(dim, self.ndim), keepdims=keepdim)


def sum(self, dim=None, keepdim=False):
    if dim is None:
        return _sum_all(self)
    return _sum_dim(self, dim, keepdim)


def _sum_to_size(array, size):
    size = tuple(size)
    if array.shape == size:
        return array
    extra = array.ndim - len(size)
    if extra < 0 or builtins.any(
        s != 1 and s != g for s, g in zip(size, array.shape[extra:])
    ):
        raise ShapeMismatch(f"shape {array.shape} cannot be summed to size {size}")
    # reduce extra leading dims, then dims the target kept at size 1
    out = np.sum(array, axis=tuple(range(extra))) if extra else array
    axes = tuple(i for i, (s, g) in enumerate(zip(size, out.shape)) if s == 1 and g != 1)
    if axes:
        out = np.sum(out, axis=axes, keepdims=True)
    return out.reshape(size)


@differentiable("sum_to_size(Tensor self, IntList size)")
def sum_to_size(self, size):
    return _sum_to_size(self, size)


@differentiable("mean(Tensor self)")
def _mean_all(self):
    return np.mean(self)


@differentiable("mean(Tensor self, IntList dim, bool keepdim)")
def _mean_dim(self, dim, keepdim=False):
    return np.mean(self, axis=_dims(dim, self.ndim), keepdims=keepdim)


def mean(self, dim=None, keepdim=False):
    if dim is None:
        return _mean_all(self)
    return _mean_dim(self, dim, keepdim)


@differentiable("max(Tensor self)")
def _max_all(self):
    return np.max(self)


@differentiable("min(Tensor self)")
def _min_all(self):
    return np.min(self)


def _reduce_at(self, dim, keepdim, indices):
    dim = _dim(dim, self.ndim)
    kept = np.expand_dims(indices, dim) if indices.ndim < self.ndim else indices
    values = np.take_along_axis(self, kept, axis=dim)
    if not keepdim:
        return np.squeeze(values, axis=dim), np.squeeze(kept, axis=dim)
    return values, kept


@differentiable("max(Tensor self, int64_t dim, bool keepdim) -> (Tensor values, IndexTensor indices)")
def _max_dim(self, dim, keepdim=False):
    return _reduce_at(self, dim, keepdim, np.argmax(self, axis=_dim(dim, self.ndim)))


@differentiable("min(Tensor self, int64_t dim, bool keepdim) -> (Tensor values, IndexTensor indices)")
def _min_dim(self, dim, keepdim=False):
    return _reduce_at(self, dim, keepdim, np.argmin(self, axis=_dim(dim, self.ndim)))


def max(self, dim=None, keepdim=False):
    """Overall maximum, or ``(values, indices)`` along ``dim``."""
    if dim is None:
        return _max_all(self)
    return _max_dim(self, dim, keepdim)


def min(self, dim=None, keepdim=False):
    if dim is None:
        return _min_all(self)
    return _min_dim(self, dim, keepdim)


@differentiable("median(Tensor self)")
def _median_all(self):
    flat = np.sort(self, axis=None)
    return flat[(flat.size - 1) // 2]


@differentiable("median(Tensor self, int64_t dim, bool keepdim) -> (Tensor values, IndexTensor indices)")
def _median_dim(self, dim, keepdim=False):
    dim = _dim(dim, self.ndim)
    order = np.argsort(self, axis=dim, kind="stable")
    k = (self.shape[dim] - 1) // 2
    return _reduce_at(self, dim, keepdim, np.take(order, [k], axis=dim))


def median(self, dim=None, keepdim=False):
    """Lower median, overall or ``(values, indices)`` along ``dim``."""
    if dim is None:
        return _median_all(self)
    return _median_dim(self, dim, keepdim)


def _order(self, dim, descending):
    return np.argsort(-self if descending else self, axis=dim, kind="stable")


@differentiable("sort(Tensor self, int64_t dim, bool descending) -> (Tensor values, IndexTensor indices)")
def sort(self, dim=-1, descending=False):
    dim = _dim(dim, self.ndim)
    indices = _order(self, dim, descending)
    return np.take_along_axis(self, indices, axis=dim), indices


@differentiable("topk(Tensor self, int64_t k, int64_t dim, bool largest, bool sorted) -> (Tensor values, IndexTensor indices)")
def topk(self, k, dim=-1, largest=True, sorted=True):
    dim = _dim(dim, self.ndim)
    if not 0 <= k <= self.shape[dim]:
        raise ValueError(f"k={k} out of range for dimension of size {self.shape[dim]}")
    indices = np.take(_order(self, dim, largest), np.arange(k), axis=dim)
    return np.take_along_axis(self, indices, axis=dim), indices


@differentiable("cumsum(Tensor self, int64_t dim)")
def cumsum(self, dim):
    return np.cumsum(self, axis=_dim(dim, self.ndim))


@differentiable("var(Tensor self, bool unbiased)")
def _var_all(self, unbiased=True):
    return np.var(self, ddof=1 if unbiased else 0)


@differentiable("var(Tensor self, int64_t dim, bool unbiased, bool keepdim)")
def _var_dim(self, dim, unbiased=True, keepdim=False):
    return np.var(self, axis=_dim(dim, self.ndim), ddof=1 if unbiased else 0, keepdims=keepdim)


def var(self, dim=None, unbiased=True, keepdim=False):
    if dim is None:
        return _var_all(self, unbiased)
    return _var_dim(self, dim, unbiased, keepdim)


@differentiable("std(Tensor self, bool unbiased)")
def _std_all(self, unbiased=True):
    return np.std(self, ddof=1 if unbiased else 0)


@differentiable("std(Tensor self, int64_t dim, bool unbiased, bool keepdim)")
def _std_dim(self, dim, unbiased=True, keepdim=False):
    return np.std(self, axis=_dim(dim, self.ndim), ddof=1 if unbiased else 0, keepdims=keepdim)


def std(self, dim=None, unbiased=True, keepdim=False):
    if dim is None:
        return _std_all(self, unbiased)
    return _std_dim(self, dim, unbiased, keepdim)


@differentiable("norm(Tensor self, Scalar p)")
def _norm_all(self, p=2):
    return _pnorm(self, p)


@differentiable("norm(Tensor self, Scalar p, int64_t dim, bool keepdim)")
def _norm_dim(self, p, dim, keepdim=False):
    return _pnorm(self, p, axis=_dim(dim, self.ndim), keepdims=keepdim)


def norm(self, p=2, dim=None, keepdim=False):
    if dim is None:
        return _norm_all(self, p)
    return _norm_dim(self, p, dim, keepdim)


@differentiable("trace(Tensor self)")
def trace(self):
    if self.ndim != 2:
        raise ValueError(f"trace expects a 2-d tensor, got {self.ndim}-d")
    return np.trace(self)


@differentiable("prod(Tensor self)")
def prod(self):
    return np.prod(self)


@differentiable("cumprod(Tensor self, int64_t dim)")
def cumprod(self, dim):
    return np.cumprod(self, axis=_dim(dim, self.ndim))


@differentiable("histc(Tensor self, int64_t bins, Scalar min, Scalar max)")
def histc(self, bins=100, min=0, max=0):
    if min == max:
        min, max = (self.min(), self.max()) if self.size else (0, 1)
    counts, _ = np.histogram(self, bins=bins, range=(min, max))
    return counts.astype(self.dtype)


# =============================================================================
# Shape and Views
# =============================================================================

@differentiable("view(Tensor self, IntList size)")
def view(self, size):
    return np.reshape(self, size)


@differentiable("expand(Tensor self, IntList size)")
def expand(self, size):
    lead = len(size) - self.ndim
    if lead < 0:
        raise ValueError(f"cannot expand shape {self.shape} to {tuple(size)}")
    target = tuple(
        self.shape[i - lead] if s == -1 else s for i, s in enumerate(size)
    )
    return np.broadcast_to(self, target)


@differentiable("squeeze(Tensor self)")
def _squeeze_all(self):
    return np.squeeze(self)


@differentiable("squeeze(Tensor self, int64_t dim)")
def _squeeze_dim(self, dim):
    dim = _dim(dim, self.ndim)
    if self.ndim and self.shape[dim] == 1:
        return np.squeeze(self, axis=dim)
    return self


def squeeze(self, dim=None):
    if dim is None:
        return _squeeze_all(self)
    return _squeeze_dim(self, dim)


@differentiable("unsqueeze(Tensor self, int64_t dim)")
def unsqueeze(self, dim):
    return np.expand_dims(self, _dim(dim, self.ndim + 1))


@differentiable("transpose(Tensor self, int64_t dim0, int64_t dim1)")
def transpose(self, dim0, dim1):
    return np.swapaxes(self, _dim(dim0, self.ndim), _dim(dim1, self.ndim))


@differentiable("t(Tensor self)")
def t(self):
    if self.ndim > 2:
        raise ValueError(f"t() expects a tensor with <= 2 dimensions, got {self.ndim}")
    return self.T


@differentiable("permute(Tensor self, IntList dims)")
def permute(self, dims):
    return np.transpose(self, _dims(dims, self.ndim))


@differentiable("narrow(Tensor self, int64_t dim, int64_t start, int64_t length)")
def narrow(self, dim, start, length):
    dim = _dim(dim, self.ndim)
    if start < 0:
        start += self.shape[dim]
    if start < 0 or length < 0 or start + length > self.shape[dim]:
        raise IndexError(
            f"narrow({start}, {length}) out of range for dimension {dim} of size {self.shape[dim]}"
        )
    return self[_index(self.ndim, dim, slice(start, start + length))]


@differentiable("_unnarrow(Tensor self, int64_t dim, int64_t offset, int64_t dim_size)")
def _unnarrow(self, dim, offset, dim_size):
    """Inverse of narrow on shape: place ``self`` at ``offset`` in a zero tensor."""
    dim = _dim(dim, self.ndim)
    length = self.shape[dim]
    if offset < 0 or offset + length > dim_size:
        raise ShapeMismatch(
            f"cannot place {length} element(s) at offset {offset} in a dimension of size {dim_size}"
        )
    shape = list(self.shape)
    shape[dim] = dim_size
    out = np.zeros(shape, dtype=self.dtype)
    out[_index(self.ndim, dim, slice(offset, offset + length))] = self
    return out


@differentiable("select(Tensor self, int64_t dim, int64_t index)")
def select(self, dim, index):
    dim = _dim(dim, self.ndim)
    size = self.shape[dim]
    if not -size <= index < size:
        raise IndexError(f"index {index} out of range for dimension {dim} of size {size}")
    return self[_index(self.ndim, dim, index % size)]


@differentiable("cat(TensorList tensors, int64_t dim)")
def cat(tensors, dim=0):
    if not tensors:
        raise ValueError("cat expects a non-empty list of tensors")
    return np.concatenate(tensors, axis=_dim(dim, tensors[0].ndim))


@differentiable("split(Tensor self, int64_t split_size, int64_t dim) -> TensorList")
def split(self, split_size, dim=0):
    if split_size <= 0:
        raise ValueError(f"split_size must be positive, got {split_size}")
    dim = _dim(dim, self.ndim)
    return np.split(self, list(range(split_size, self.shape[dim], split_size)), axis=dim)


@differentiable("flip(Tensor self, IntList dims)")
def flip(self, dims):
    return np.flip(self, axis=_dims(dims, self.ndim))


@differentiable("diagonal(Tensor self, int64_t offset, int64_t dim1, int64_t dim2)")
def diagonal(self, offset=0, dim1=0, dim2=1):
    return np.array(np.diagonal(self, offset, _dim(dim1, self.ndim), _dim(dim2, self.ndim)))


@differentiable("diagonal_backward(Tensor grad_output, IntList input_sizes, int64_t offset, int64_t dim1, int64_t dim2)")
def diagonal_backward(grad_output, input_sizes, offset, dim1, dim2):
    """Scatter a diagonal back into a zero tensor of ``input_sizes``."""
    ndim = len(input_sizes)
    dim1, dim2 = _dim(dim1, ndim), _dim(dim2, ndim)
    out = np.zeros(input_sizes, dtype=grad_output.dtype)
    moved = np.moveaxis(out, (dim1, dim2), (-2, -1))
    rows, cols = moved.shape[-2:]
    length = grad_output.shape[-1]
    start_row, start_col = (0, offset) if offset >= 0 else (-offset, 0)
    if length != builtins.max(0, builtins.min(rows - start_row, cols - start_col)):
        raise ShapeMismatch(
            f"diagonal of length {length} does not fit sizes {tuple(input_sizes)} at offset {offset}"
        )
    idx = np.arange(length)
    moved[..., start_row + idx, start_col + idx] = grad_output
    return out


@differentiable("tril(Tensor self, int64_t diagonal)")
def tril(self, diagonal=0):
    return np.tril(self, k=diagonal)


@differentiable("triu(Tensor self, int64_t diagonal)")
def triu(self, diagonal=0):
    return np.triu(self, k=diagonal)


# =============================================================================
# Indexing
# =============================================================================

def _along(index, dim):
    """Open index grid over ``index``'s shape, with ``index`` itself on ``dim``."""
    grid = list(np.indices(index.shape, sparse=True))
    grid[dim] = index
    return tuple(grid)


def _prefix(src, shape):
    return src[tuple(slice(0, s) for s in shape)]


@differentiable("index_select(Tensor self, int64_t dim, IndexTensor index)")
def index_select(self, dim, index):
    return np.take(self, index.astype(np.int64), axis=_dim(dim, self.ndim))


@differentiable("index_add(Tensor self, int64_t dim, IndexTensor index, Tensor source)")
def index_add(self, dim, index, source):
    dim = _dim(dim, self.ndim)
    out = np.array(self, copy=True)
    np.add.at(np.moveaxis(out, dim, 0), index.astype(np.int64), np.moveaxis(source, dim, 0))
    return out


@differentiable("gather(Tensor self, int64_t dim, IndexTensor index)")
def gather(self, dim, index):
    return self[_along(index.astype(np.int64), _dim(dim, self.ndim))]


@differentiable("scatter(Tensor self, int64_t dim, IndexTensor index, Tensor src)")
def _scatter_tensor(self, dim, index, src):
    out = np.array(self, copy=True)
    out[_along(index.astype(np.int64), _dim(dim, self.ndim))] = _prefix(src, index.shape)
    return out


@differentiable("scatter(Tensor self, int64_t dim, IndexTensor index, Scalar value)")
def _scatter_scalar(self, dim, index, value):
    out = np.array(self, copy=True)
    out[_along(index.astype(np.int64), _dim(dim, self.ndim))] = value
    return out


def scatter(self, dim, index, src):
    if _is_tensor(src):
        return _scatter_tensor(self, dim, index, src)
    return _scatter_scalar(self, dim, index, src)


@differentiable("scatter_add(Tensor self, int64_t dim, IndexTensor index, Tensor src)")
def scatter_add(self, dim, index, src):
    out = np.array(self, copy=True)
    np.add.at(out, _along(index.astype(np.int64), _dim(dim, self.ndim)), _prefix(src, index.shape))
    return out


@differentiable("masked_fill(Tensor self, BoolTensor mask, Scalar value)")
def _masked_fill_scalar(self, mask, value):
    return np.where(np.broadcast_to(mask, self.shape), value, self).astype(self.dtype, copy=False)


@differentiable("masked_fill(Tensor self, BoolTensor mask, Tensor value)")
def _masked_fill_tensor(self, mask, value):
    if value.ndim:
        raise ValueError(f"masked_fill expects a 0-d value tensor, got shape {value.shape}")
    return np.where(np.broadcast_to(mask, self.shape), value, self).astype(self.dtype, copy=False)


def masked_fill(self, mask, value):
    if _is_tensor(value):
        return _masked_fill_tensor(self, mask, value)
    return _masked_fill_scalar(self, mask, value)


@differentiable("masked_select(Tensor self, BoolTensor mask)")
def masked_select(self, mask):
    return self[np.broadcast_to(mask, self.shape)]


@differentiable("masked_scatter(Tensor self, BoolTensor mask, Tensor source)")
def masked_scatter(self, mask, source):
    mask = np.broadcast_to(mask, self.shape)
    count = int(mask.sum())
    if source.size < count:
        raise ValueError(f"masked_scatter needs {count} source elements, got {source.size}")
    out = np.array(self, copy=True)
    out[mask] = source.reshape(-1)[:count]
    return out


@differentiable("take(Tensor self, IndexTensor index)")
def take(self, index):
    return np.take(self.reshape(-1), index.astype(np.int64))


@differentiable("put(Tensor self, IndexTensor index, Tensor source, bool accumulate)")
def put(self, index, source, accumulate=False):
    out = np.array(self, copy=True)
    flat = out.reshape(-1)
    index = index.astype(np.int64).reshape(-1)
    if accumulate:
        np.add.at(flat, index, source.reshape(-1))
    else:
        flat[index] = source.reshape(-1)
    return out


# =============================================================================
# Linear Algebra
# =============================================================================

def _check_ndim(name, array, ndim):
    if array.ndim != ndim:
        raise ValueError(f"{name} expects a {ndim}-d tensor, got shape {array.shape}")


@differentiable("mm(Tensor self, Tensor mat2)")
def mm(self, mat2):
    _check_ndim("mm", self, 2)
    _check_ndim("mm", mat2, 2)
    return self @ mat2


@differentiable("mv(Tensor self, Tensor vec)")
def mv(self, vec):
    _check_ndim("mv", self, 2)
    _check_ndim("mv", vec, 1)
    return self @ vec


@differentiable("dot(Tensor self, Tensor tensor)")
def dot(self, tensor):
    _check_ndim("dot", self, 1)
    _check_ndim("dot", tensor, 1)
    return np.dot(self, tensor)


@differentiable("bmm(Tensor self, Tensor mat2)")
def bmm(self, mat2):
    _check_ndim("bmm", self, 3)
    _check_ndim("bmm", mat2, 3)
    return np.matmul(self, mat2)


@differentiable("ger(Tensor self, Tensor vec2)")
def ger(self, vec2):
    return np.outer(self, vec2)


def matmul(self, other):
    """Dispatch ``@`` to dot, mv, mm or bmm by the operands' dimensions."""
    self, other = as_variable(self), as_variable(other)
    dims = (self.ndim, other.ndim)
    if dims == (1, 1):
        return dot(self, other)
    if dims == (2, 1):
        return mv(self, other)
    if dims == (1, 2):
        return mv(t(other), self)
    if dims == (2, 2):
        return mm(self, other)
    if dims == (3, 3):
        return bmm(self, other)
    raise ValueError(f"matmul not supported for shapes {self.shape} and {other.shape}")


@differentiable("addmm(Tensor self, Tensor mat1, Tensor mat2, *, Scalar beta, Scalar alpha)")
def addmm(self, mat1, mat2, *, beta=1, alpha=1):
    return beta * self + alpha * (mat1 @ mat2)


@differentiable("addmv(Tensor self, Tensor mat, Tensor vec, *, Scalar beta, Scalar alpha)")
def addmv(self, mat, vec, *, beta=1, alpha=1):
    return beta * self + alpha * (mat @ vec)


@differentiable("addr(Tensor self, Tensor vec1, Tensor vec2, *, Scalar beta, Scalar alpha)")
def addr(self, vec1, vec2, *, beta=1, alpha=1):
    return beta * self + alpha * np.outer(vec1, vec2)


@differentiable("inverse(Tensor self)")
def inverse(self):
    _check_ndim("inverse", self, 2)
    return np.linalg.inv(self)


@differentiable("qr(Tensor self) -> (Tensor Q, Tensor R)")
def qr(self):
    return np.linalg.qr(self)


@differentiable("svd(Tensor self, bool some) -> (Tensor U, Tensor S, Tensor V)")
def svd(self, some=True):
    u, s, vh = np.linalg.svd(self, full_matrices=not some)
    return u, s, np.swapaxes(vh, -1, -2)


@differentiable("symeig(Tensor self, bool eigenvectors, bool upper) -> (Tensor eigenvalues, Tensor V)")
def symeig(self, eigenvectors=False, upper=True):
    w, v = np.linalg.eigh(self, UPLO="U" if upper else "L")
    return w, v if eigenvectors else np.zeros((0,), dtype=self.dtype)


# =============================================================================
# Neural Network Primitives
# =============================================================================

@differentiable("relu(Tensor self)")
def relu(self):
    return np.maximum(self, 0)


@differentiable("threshold(Tensor self, Scalar threshold, Scalar value)")
def threshold(self, threshold, value):
    return np.where(self > threshold, self, value).astype(self.dtype, copy=False)


@differentiable("threshold_backward(Tensor grad_output, Tensor self, Scalar threshold)")
def threshold_backward(grad_output, self, threshold):
    return grad_output * (self > threshold)


@differentiable("leaky_relu(Tensor self, Scalar negative_slope)")
def leaky_relu(self, negative_slope=0.01):
    return np.where(self > 0, self, self * negative_slope)


@differentiable("leaky_relu_backward(Tensor grad_output, Tensor self, Scalar negative_slope)")
def leaky_relu_backward(grad_output, self, negative_slope):
    return np.where(self > 0, grad_output, grad_output * negative_slope)


@differentiable("elu(Tensor self, Scalar alpha)")
def elu(self, alpha=1.0):
    return np.where(self > 0, self, alpha * np.expm1(np.minimum(self, 0)))


@differentiable("elu_backward(Tensor grad_output, Scalar alpha, Tensor output)")
def elu_backward(grad_output, alpha, output):
    return np.where(output > 0, grad_output, grad_output * (output + alpha))


@differentiable("hardtanh(Tensor self, Scalar min_val, Scalar max_val)")
def hardtanh(self, min_val=-1.0, max_val=1.0):
    return np.minimum(np.maximum(self, min_val), max_val)


@differentiable("hardtanh_backward(Tensor grad_output, Tensor self, Scalar min_val, Scalar max_val)")
def hardtanh_backward(grad_output, self, min_val, max_val):
    return grad_output * ((self > min_val) & (self < max_val))


@differentiable("softplus(Tensor self, Scalar beta, Scalar threshold)")
def softplus(self, beta=1, threshold=20):
    z = self * beta
    return np.where(z > threshold, self, np.log1p(np.exp(np.minimum(z, threshold))) / beta)


@differentiable("softplus_backward(Tensor grad_output, Tensor self, Scalar beta, Scalar threshold)")
def softplus_backward(grad_output, self, beta, threshold):
    z = self * beta
    return np.where(z > threshold, grad_output, grad_output * _sigmoid(z))


@differentiable("softshrink(Tensor self, Scalar lambd)")
def softshrink(self, lambd=0.5):
    shrunk = np.where(self > lambd, self - lambd, np.where(self < -lambd, self + lambd, 0))
    return shrunk.astype(self.dtype, copy=False)


@differentiable("softshrink_backward(Tensor grad_output, Tensor self, Scalar lambd)")
def softshrink_backward(grad_output, self, lambd):
    return grad_output * (np.abs(self) > lambd)


@differentiable("hardshrink(Tensor self, Scalar lambd)")
def hardshrink(self, lambd=0.5):
    return np.where(np.abs(self) > lambd, self, 0).astype(self.dtype, copy=False)


@differentiable("hardshrink_backward(Tensor grad_output, Tensor self, Scalar lambd)")
def hardshrink_backward(grad_output, self, lambd):
    return grad_output * (np.abs(self) > lambd)


@differentiable("log_sigmoid(Tensor self)")
def log_sigmoid(self):
    return -(np.maximum(-self, 0) + np.log1p(np.exp(-np.abs(self))))


@differentiable("log_sigmoid_backward(Tensor grad_output, Tensor self)")
def log_sigmoid_backward(grad_output, self):
    return grad_output * _sigmoid(-self)


@differentiable("_sigmoid_backward(Tensor grad_output, Tensor output)")
def _sigmoid_backward(grad_output, output):
    return grad_output * output * (1 - output)


@differentiable("_tanh_backward(Tensor grad_output, Tensor output)")
def _tanh_backward(grad_output, output):
    return grad_output * (1 - output * output)


@differentiable("softmax(Tensor self, int64_t dim)")
def softmax(self, dim):
    dim = _dim(dim, self.ndim)
    e = np.exp(self - np.max(self, axis=dim, keepdims=True))
    return e / np.sum(e, axis=dim, keepdims=True)


@differentiable("softmax_backward(Tensor grad_output, Tensor output, int64_t dim)")
def softmax_backward(grad_output, output, dim):
    dim = _dim(dim, output.ndim)
    return output * (grad_output - np.sum(grad_output * output, axis=dim, keepdims=True))


@differentiable("log_softmax(Tensor self, int64_t dim)")
def log_softmax(self, dim):
    dim = _dim(dim, self.ndim)
    shifted = self - np.max(self, axis=dim, keepdims=True)
    return shifted - np.log(np.sum(np.exp(shifted), axis=dim, keepdims=True))


@differentiable("log_softmax_backward(Tensor grad_output, Tensor output, int64_t dim)")
def log_softmax_backward(grad_output, output, dim):
    dim = _dim(dim, output.ndim)
    return grad_output - np.exp(output) * np.sum(grad_output, axis=dim, keepdims=True)


def _channel_weight(weight, ndim):
    if weight.size == 1 or ndim < 2:
        return weight.reshape(()) if weight.size == 1 else weight
    return weight.reshape((1, -1) + (1,) * (ndim - 2))


@differentiable("prelu(Tensor self, Tensor weight)")
def prelu(self, weight):
    return np.where(self > 0, self, _channel_weight(weight, self.ndim) * self)


def _reduction(values, size_average, reduce):
    if not reduce:
        return values
    return np.mean(values) if size_average else np.sum(values)


@differentiable("mse_loss(Tensor self, Tensor target, bool size_average, bool reduce)")
def mse_loss(self, target, size_average=True, reduce=True):
    return _reduction((self - target) ** 2, size_average, reduce)


@differentiable("mse_loss_backward(Tensor grad_output, Tensor self, Tensor target, bool size_average, bool reduce)")
def mse_loss_backward(grad_output, self, target, size_average, reduce):
    grad = 2 * (self - target) * grad_output
    if reduce and size_average and self.size:
        grad = grad / self.size
    return grad


@differentiable("l1_loss(Tensor self, Tensor target, bool size_average, bool reduce)")
def l1_loss(self, target, size_average=True, reduce=True):
    return _reduction(np.abs(self - target), size_average, reduce)


@differentiable("l1_loss_backward(Tensor grad_output, Tensor self, Tensor target, bool size_average, bool reduce)")
def l1_loss_backward(grad_output, self, target, size_average, reduce):
    grad = np.sign(self - target) * grad_output
    if reduce and size_average and self.size:
        grad = grad / self.size
    return grad


# -----------------------------------------------------------------------------
# Pooling over (N, C, H, W)
# -----------------------------------------------------------------------------

def _pair(value) -> Tuple[int, int]:
    value = tuple(value)
    return (value[0], value[0]) if len(value) == 1 else (value[0], value[1])


def _pool_size(size, kernel, stride, pad, dilation, ceil_mode) -> int:
    span = size + 2 * pad - dilation * (kernel - 1) - 1
    if span < 0:
        raise ValueError(f"pooling window larger than padded input of size {size}")
    out = (-(-span // stride) if ceil_mode else span // stride) + 1
    # the last window must start inside the input or its left padding
    if ceil_mode and (out - 1) * stride >= size + pad:
        out -= 1
    return out


class _Pool:
    """Geometry of one 2-d pooling call."""

    def __init__(self, shape, kernel_size, stride, padding, dilation, ceil_mode) -> None:
        if len(shape) != 4:
            raise ValueError(f"2-d pooling expects an (N, C, H, W) tensor, got shape {shape}")
        self.shape = shape
        self.kernel = _pair(kernel_size)
        self.stride = _pair(stride) if stride else self.kernel
        self.padding = _pair(padding)
        self.dilation = _pair(dilation)
        _, _, h, w = shape
        self.out = tuple(
            _pool_size(n, k, s, p, d, ceil_mode)
            for n, k, s, p, d in zip((h, w), self.kernel, self.stride, self.padding, self.dilation)
        )
        # padded canvas large enough for every window
        self.canvas = tuple(
            builtins.max(n + 2 * p, (o - 1) * s + d * (k - 1) + 1)
            for n, o, k, s, p, d in zip((h, w), self.out, self.kernel, self.stride, self.padding, self.dilation)
        )

    def pad(self, x, fill):
        n, c, h, w = x.shape
        canvas = np.full((n, c) + self.canvas, fill, dtype=x.dtype)
        ph, pw = self.padding
        canvas[:, :, ph:ph + h, pw:pw + w] = x
        return canvas

    def crop(self, canvas):
        _, _, h, w = self.shape
        ph, pw = self.padding
        return canvas[:, :, ph:ph + h, pw:pw + w]

    def windows(self):
        """Yield ``(i, j, index)`` for every kernel offset; ``index`` slices the canvas."""
        (kh, kw), (sh, sw), (dh, dw), (oh, ow) = self.kernel, self.stride, self.dilation, self.out
        for i in range(kh):
            for j in range(kw):
                yield i, j, (
                    slice(None), slice(None),
                    slice(i * dh, i * dh + sh * (oh - 1) + 1, sh),
                    slice(j * dw, j * dw + sw * (ow - 1) + 1, sw),
                )

    def divisor(self, count_include_pad):
        _, _, h, w = self.shape
        sizes = []
        for n, o, k, s, p in zip((h, w), self.out, self.kernel, self.stride, self.padding):
            start = np.arange(o) * s - p
            end = np.minimum(start + k, n + p)
            padded = end - start
            clipped = np.minimum(end, n) - np.maximum(start, 0)
            sizes.append(padded if count_include_pad else clipped)
        return np.outer(sizes[0], sizes[1])


@differentiable("avg_pool2d(Tensor self, IntList kernel_size, IntList stride, IntList padding, bool ceil_mode, bool count_include_pad)")
def avg_pool2d(self, kernel_size, stride=None, padding=0, ceil_mode=False, count_include_pad=True):
    pool = _Pool(self.shape, kernel_size, stride, padding, (1,), ceil_mode)
    canvas = pool.pad(self, 0)
    total = np.zeros(self.shape[:2] + pool.out, dtype=self.dtype)
    for _, _, index in pool.windows():
        total += canvas[index]
    return total / pool.divisor(count_include_pad)


@differentiable("avg_pool2d_backward(Tensor grad_output, Tensor self, IntList kernel_size, IntList stride, IntList padding, bool ceil_mode, bool count_include_pad)")
def avg_pool2d_backward(grad_output, self, kernel_size, stride, padding, ceil_mode, count_include_pad):
    pool = _Pool(self.shape, kernel_size, stride, padding, (1,), ceil_mode)
    share = grad_output / pool.divisor(count_include_pad)
    canvas = np.zeros(self.shape[:2] + pool.canvas, dtype=grad_output.dtype)
    for _, _, index in pool.windows():
        canvas[index] += share
    return np.array(pool.crop(canvas))


@differentiable("max_pool2d(Tensor self, IntList kernel_size, IntList stride, IntList padding, IntList dilation, bool ceil_mode) -> (Tensor output, IndexTensor indices)")
def max_pool2d(self, kernel_size, stride=None, padding=0, dilation=1, ceil_mode=False):
    """Max pooling; ``indices`` hold flat ``row * W + col`` positions per plane."""
    pool = _Pool(self.shape, kernel_size, stride, padding, dilation, ceil_mode)
    fill = -np.inf if _is_floating(self.dtype) else np.iinfo(self.dtype).min
    canvas = pool.pad(self, fill)
    stacked = np.stack([canvas[index] for _, _, index in pool.windows()])
    best = np.argmax(stacked, axis=0)
    output = np.take_along_axis(stacked, best[None], axis=0)[0]

    (_, kw), (sh, sw), (ph, pw), (dh, dw) = pool.kernel, pool.stride, pool.padding, pool.dilation
    oh, ow = pool.out
    rows = (np.arange(oh) * sh - ph)[:, None] + (best // kw) * dh
    cols = (np.arange(ow) * sw - pw)[None, :] + (best % kw) * dw
    return output, (rows * self.shape[3] + cols).astype(np.int64)


@differentiable("max_pool2d_backward(Tensor grad_output, Tensor self, IntList kernel_size, IntList stride, IntList padding, IntList dilation, bool ceil_mode, IndexTensor indices)")
def max_pool2d_backward(grad_output, self, kernel_size, stride, padding, dilation, ceil_mode, indices):
    n, c, h, w = self.shape
    planes = np.zeros((n * c, h * w), dtype=grad_output.dtype)
    rows = np.arange(n * c)[:, None]
    np.add.at(planes, (rows, indices.reshape(n * c, -1)), grad_output.reshape(n * c, -1))
    return planes.reshape(self.shape)


# =============================================================================
# Creation, Random and Predicate Operations (never differentiated)
# =============================================================================

@differentiable("zeros(IntList size, *, ScalarType dtype)")
def zeros(size, *, dtype=None):
    return np.zeros(size, dtype=_dtype(dtype))


@differentiable("ones(IntList size, *, ScalarType dtype)")
def ones(size, *, dtype=None):
    return np.ones(size, dtype=_dtype(dtype))


@differentiable("zeros_like(Tensor self)")
def zeros_like(self):
    return np.zeros_like(self)


@differentiable("ones_like(Tensor self)")
def ones_like(self):
    return np.ones_like(self)


@differentiable("arange(Scalar start, Scalar end, Scalar step, *, ScalarType dtype)")
def arange(start, end, step=1, *, dtype=None):
    if dtype is None and builtins.all(isinstance(v, (int, np.integer)) for v in (start, end, step)):
        dtype = np.int64
    return np.arange(start, end, step, dtype=_dtype(dtype))


@differentiable("eye(int64_t n, *, ScalarType dtype)")
def eye(n, *, dtype=None):
    return np.eye(n, dtype=_dtype(dtype))


@differentiable("rand(IntList size, *, ScalarType dtype)")
def rand(size, *, dtype=None):
    return _rng.random(size).astype(_dtype(dtype))


@differentiable("randn(IntList size, *, ScalarType dtype)")
def randn(size, *, dtype=None):
    return _rng.standard_normal(size).astype(_dtype(dtype))


@differentiable("bernoulli(Tensor self)")
def bernoulli(self):
    return (_rng.random(self.shape) < self).astype(self.dtype)


@differentiable("geometric(Tensor self, double p)")
def geometric(self, p):
    return _rng.geometric(p, size=self.shape).astype(self.dtype)


@differentiable("log_normal(Tensor self, double mean, double std)")
def log_normal(self, mean=1.0, std=2.0):
    return _rng.lognormal(mean, std, size=self.shape).astype(self.dtype)


def _comparison(name, ufunc):
    @differentiable(f"{name}(Tensor self, Tensor other) -> BoolTensor")
    def tensor_kernel(self, other):
        return ufunc(self, other)

    @differentiable(f"{name}(Tensor self, Scalar other) -> BoolTensor")
    def scalar_kernel(self, other):
        return ufunc(self, other)

    def compare(self, other):
        if _is_tensor(other):
            return tensor_kernel(self, other)
        return scalar_kernel(self, other)

    compare.__name__ = name
    return compare


eq = _comparison("eq", np.equal)
ne = _comparison("ne", np.not_equal)
lt = _comparison("lt", np.less)
le = _comparison("le", np.less_equal)
gt = _comparison("gt", np.greater)
ge = _comparison("ge", np.greater_equal)


@differentiable("logical_not(BoolTensor self) -> BoolTensor")
def logical_not(self):
    return np.logical_not(self)


@differentiable("logical_and(BoolTensor self, BoolTensor other) -> BoolTensor")
def logical_and(self, other):
    return np.logical_and(self, other)


@differentiable("logical_or(BoolTensor self, BoolTensor other) -> BoolTensor")
def logical_or(self, other):
    return np.logical_or(self, other)


@differentiable("all(BoolTensor self) -> bool")
def all(self):
    return bool(np.all(self))


@differentiable("any(BoolTensor self) -> bool")
def any(self):
    return bool(np.any(self))


@differentiable("equal(Tensor self, Tensor other) -> bool")
def equal(self, other):
    return bool(np.array_equal(self, other))


@differentiable("is_same_size(Tensor self, Tensor other) -> bool")
def is_same_size(self, other):
    return self.shape == other.shape


@differentiable("numel(Tensor self) -> int64_t")
def numel(self):
    return int(self.size)


@differentiable("size(Tensor self, int64_t dim) -> int64_t")
def size(self, dim):
    return self.shape[_dim(dim, self.ndim)]


@differentiable("nonzero(Tensor self) -> IndexTensor")
def nonzero(self):
    return np.argwhere(self)


@differentiable("argsort(Tensor self, int64_t dim, bool descending) -> IndexTensor")
def argsort(self, dim=-1, descending=False):
    return _order(self, _dim(dim, self.ndim), descending)
