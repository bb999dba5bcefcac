"""
Variable: an Array Value that Tracks its History
=================================================

A :class:`Variable` wraps a ``numpy.ndarray`` and knows:
1. Its data (the array itself)
2. Whether gradients should flow to it (``requires_grad``)
3. Its gradient (``grad``), filled in by ``backward()`` for leaves
4. The graph node that produced it (``grad_fn``), absent for leaves

Every arithmetic operator and method below dispatches to a differentiable
kernel in :mod:`tablegrad.ops`, which records a graph node when needed.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

from .config import get_settings
from .graph import Node

Numeric = Union[int, float, np.number]


def _coerce(data: Any) -> np.ndarray:
    if isinstance(data, Variable):
        return data.data
    if isinstance(data, (np.ndarray, np.generic)):
        return np.asarray(data)
    array = np.asarray(data)
    # Python floats follow the configured default dtype
    if np.issubdtype(array.dtype, np.floating):
        array = array.astype(get_settings().default_dtype, copy=False)
    return array


class Variable:
    """
    An array value that tracks its computational history for automatic
    differentiation.

    Attributes:
        data: The numpy array.
        requires_grad: Whether gradients are computed for this Variable.
        grad: Accumulated gradient (a Variable), None until a backward pass
            reaches this leaf.
        grad_fn: Node that produced this Variable; None for leaves.
        output_nr: Which output of ``grad_fn`` this Variable is.
        label: Optional name for debugging and visualization.

    Example:
        >>> a = Variable(2.0, requires_grad=True, label='a')
        >>> b = Variable(3.0, requires_grad=True, label='b')
        >>> c = a * b + a
        >>> c.backward()
        >>> a.grad.item()  # dc/da = b + 1
        4.0
        >>> b.grad.item()  # dc/db = a
        2.0
    """

    __slots__ = (
        'data', 'requires_grad', 'grad', 'grad_fn', 'output_nr', 'label',
        '_accumulator_ref', '__weakref__',
    )

    # numpy defers binary operators to Variable
    __array_priority__ = 1000

    def __init__(self, data: Any, requires_grad: bool = False, label: str = '') -> None:
        """
        Initialize a leaf Variable.

        Args:
            data: Array-like data. Python floats use the default dtype.
            requires_grad: Track gradients for this leaf.
            label: Optional name for debugging.

        Raises:
            TypeError: If requires_grad is set on a non-floating array.
        """
        self.data: np.ndarray = _coerce(data)
        if requires_grad and not np.issubdtype(self.data.dtype, np.floating):
            raise TypeError(
                f"only floating point Variables can require gradients, got {self.data.dtype}"
            )
        self.requires_grad: bool = bool(requires_grad)
        self.grad: Optional[Variable] = None
        self.grad_fn: Optional[Node] = None
        self.output_nr: int = 0
        self.label: str = label
        self._accumulator_ref = None

    @classmethod
    def _from_node(cls, data: np.ndarray, grad_fn: Node, output_nr: int) -> "Variable":
        out = cls(data)
        out.requires_grad = True
        out.grad_fn = grad_fn
        out.output_nr = output_nr
        return out

    def __repr__(self) -> str:
        parts = []
        if self.label:
            parts.append(f"{self.label}=")
        body = np.array2string(self.data, precision=4, separator=', ')
        parts.append(body)
        if self.grad_fn is not None:
            parts.append(f", grad_fn=<{self.grad_fn.name}>")
        elif self.requires_grad:
            parts.append(", requires_grad=True")
        return f"Variable({''.join(parts)})"

    # =========================================================================
    # Metadata
    # =========================================================================

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.data.shape

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def ndim(self) -> int:
        return self.data.ndim

    @property
    def is_leaf(self) -> bool:
        return self.grad_fn is None

    @property
    def T(self) -> "Variable":
        return ops.t(self)

    def __len__(self) -> int:
        if not self.shape:
            raise TypeError("len() of a 0-d Variable")
        return self.shape[0]

    def __bool__(self) -> bool:
        return bool(self.data)

    def numel(self) -> int:
        return ops.numel(self)

    def size(self, dim: Optional[int] = None):
        if dim is None:
            return self.shape
        return ops.size(self, dim)

    def dim(self) -> int:
        return self.ndim

    # =========================================================================
    # Arithmetic Operations
    # =========================================================================

    def __add__(self, other: Union[Variable, Numeric, np.ndarray]) -> Variable:
        """
        Addition: out = self + other

        Tensor and Scalar operands pick different table overloads; both
        reduce a broadcast gradient back to each input's shape.

        Args:
            other: Variable, array or number to add.

        Returns:
            New Variable representing the sum.
        """
        return ops.add(self, other)

    def __radd__(self, other: Numeric) -> Variable:
        """Handle numeric + Variable."""
        return ops.add(self, other)

    def __sub__(self, other: Union[Variable, Numeric, np.ndarray]) -> Variable:
        """Subtraction: self - other."""
        return ops.sub(self, other)

    def __rsub__(self, other: Numeric) -> Variable:
        """Handle numeric - Variable."""
        return ops.add(ops.neg(self), other)

    def __mul__(self, other: Union[Variable, Numeric, np.ndarray]) -> Variable:
        """
        Multiplication: out = self * other

        Local derivatives:
            d(out)/d(self) = other
            d(out)/d(other) = self

        Args:
            other: Variable, array or number to multiply.

        Returns:
            New Variable representing the product.
        """
        return ops.mul(self, other)

    def __rmul__(self, other: Numeric) -> Variable:
        """Handle numeric * Variable."""
        return ops.mul(self, other)

    def __truediv__(self, other: Union[Variable, Numeric, np.ndarray]) -> Variable:
        """Division: self / other."""
        return ops.div(self, other)

    def __rtruediv__(self, other: Union[Numeric, np.ndarray]) -> Variable:
        """Handle numeric / Variable as other * self^(-1)."""
        if isinstance(other, np.ndarray):
            return ops.div(Variable(other), self)
        return ops.mul(ops.reciprocal(self), other)

    def __pow__(self, exponent: Union[Variable, Numeric]) -> Variable:
        """
        Power: out = self^exponent

        A number exponent records pow(Tensor, Scalar); a Variable exponent
        records pow(Tensor, Tensor) and also differentiates the exponent.
        """
        return ops.pow(self, exponent)

    def __rpow__(self, base: Numeric) -> Variable:
        """Handle numeric ** Variable."""
        return ops.pow(base, self)

    def __matmul__(self, other: Union[Variable, np.ndarray]) -> Variable:
        """Matrix product, dispatched to dot/mv/mm/bmm by rank."""
        return ops.matmul(self, other)

    def __rmatmul__(self, other: np.ndarray) -> Variable:
        return ops.matmul(Variable(other), self)

    def __neg__(self) -> Variable:
        """Negation: -self."""
        return ops.neg(self)

    def __abs__(self) -> Variable:
        return ops.abs(self)

    # Comparisons give BoolTensor results that never require grad. __eq__ is
    # left alone so Variables stay hashable by identity; use eq()/ne().
    def __lt__(self, other): return ops.lt(self, other)
    def __le__(self, other): return ops.le(self, other)
    def __gt__(self, other): return ops.gt(self, other)
    def __ge__(self, other): return ops.ge(self, other)
    def __invert__(self): return ops.logical_not(self)
    def __and__(self, other): return ops.logical_and(self, other)
    def __or__(self, other): return ops.logical_or(self, other)

    def eq(self, other): return ops.eq(self, other)
    def ne(self, other): return ops.ne(self, other)

    def __getitem__(self, key):
        """
        Basic indexing through select/narrow: integers and step-1 slices.

        Raises:
            TypeError: For fancy indexing; use index_select/gather instead.
        """
        if not isinstance(key, tuple):
            key = (key,)
        out = self
        dim = 0
        for item in key:
            if isinstance(item, (int, np.integer)):
                out = ops.select(out, dim, int(item))
            elif isinstance(item, slice):
                start, stop, step = item.indices(out.shape[dim])
                if step != 1:
                    raise TypeError("only step-1 slices are supported")
                out = ops.narrow(out, dim, start, max(stop - start, 0))
                dim += 1
            elif item is Ellipsis:
                dim = out.ndim - (len(key) - key.index(Ellipsis) - 1)
            else:
                raise TypeError(f"unsupported index {item!r}")
        return out

    # =========================================================================
    # Elementwise Math
    # =========================================================================

    def abs(self): return ops.abs(self)
    def exp(self): return ops.exp(self)
    def log(self): return ops.log(self)
    def log1p(self): return ops.log1p(self)
    def sqrt(self): return ops.sqrt(self)
    def rsqrt(self): return ops.rsqrt(self)
    def sin(self): return ops.sin(self)
    def cos(self): return ops.cos(self)
    def sinh(self): return ops.sinh(self)
    def cosh(self): return ops.cosh(self)
    def tanh(self): return ops.tanh(self)
    def sigmoid(self): return ops.sigmoid(self)
    def relu(self): return ops.relu(self)
    def sign(self): return ops.sign(self)
    def floor(self): return ops.floor(self)
    def ceil(self): return ops.ceil(self)
    def round(self): return ops.round(self)
    def reciprocal(self): return ops.reciprocal(self)
    def neg(self): return ops.neg(self)
    def pow(self, exponent): return ops.pow(self, exponent)
    def clamp(self, min=None, max=None): return ops.clamp(self, min, max)
    def clone(self): return ops.clone(self)
    def to(self, dtype): return ops.to(self, dtype)

    # =========================================================================
    # Reductions
    # =========================================================================

    def sum(self, dim=None, keepdim: bool = False): return ops.sum(self, dim, keepdim)
    def mean(self, dim=None, keepdim: bool = False): return ops.mean(self, dim, keepdim)
    def max(self, dim=None, keepdim: bool = False): return ops.max(self, dim, keepdim)
    def min(self, dim=None, keepdim: bool = False): return ops.min(self, dim, keepdim)
    def cumsum(self, dim: int): return ops.cumsum(self, dim)
    def norm(self, p=2, dim=None, keepdim: bool = False): return ops.norm(self, p, dim, keepdim)
    def sum_to_size(self, size): return ops.sum_to_size(self, size)

    # =========================================================================
    # Shape and Indexing
    # =========================================================================

    def view(self, *shape): return ops.view(self, _shape_args(shape))
    def reshape(self, *shape): return ops.view(self, _shape_args(shape))
    def expand(self, *shape): return ops.expand(self, _shape_args(shape))
    def expand_as(self, other): return ops.expand(self, other.shape)
    def squeeze(self, dim=None): return ops.squeeze(self, dim)
    def unsqueeze(self, dim: int): return ops.unsqueeze(self, dim)
    def transpose(self, dim0: int, dim1: int): return ops.transpose(self, dim0, dim1)
    def t(self): return ops.t(self)
    def permute(self, *dims): return ops.permute(self, _shape_args(dims))
    def narrow(self, dim: int, start: int, length: int): return ops.narrow(self, dim, start, length)
    def select(self, dim: int, index: int): return ops.select(self, dim, index)
    def flip(self, dims): return ops.flip(self, dims)
    def diagonal(self, offset: int = 0, dim1: int = 0, dim2: int = 1): return ops.diagonal(self, offset, dim1, dim2)
    def tril(self, diagonal: int = 0): return ops.tril(self, diagonal)
    def triu(self, diagonal: int = 0): return ops.triu(self, diagonal)
    def index_select(self, dim: int, index): return ops.index_select(self, dim, index)
    def index_add(self, dim: int, index, source): return ops.index_add(self, dim, index, source)
    def gather(self, dim: int, index): return ops.gather(self, dim, index)
    def scatter(self, dim: int, index, src): return ops.scatter(self, dim, index, src)
    def scatter_add(self, dim: int, index, src): return ops.scatter_add(self, dim, index, src)
    def masked_fill(self, mask, value): return ops.masked_fill(self, mask, value)
    def masked_select(self, mask): return ops.masked_select(self, mask)
    def masked_scatter(self, mask, source): return ops.masked_scatter(self, mask, source)
    def take(self, index): return ops.take(self, index)
    def put(self, index, source, accumulate: bool = False): return ops.put(self, index, source, accumulate)

    # =========================================================================
    # Linear Algebra
    # =========================================================================

    def mm(self, other): return ops.mm(self, other)
    def mv(self, vec): return ops.mv(self, vec)
    def dot(self, other): return ops.dot(self, other)
    def bmm(self, other): return ops.bmm(self, other)
    def matmul(self, other): return ops.matmul(self, other)

    # =========================================================================
    # Backpropagation
    # =========================================================================

    def backward(self, gradient=None, retain_graph: Optional[bool] = None,
                 create_graph: bool = False) -> None:
        """
        Compute gradients of this Variable with respect to graph leaves.

        Gradients ACCUMULATE into ``.grad`` across calls; call zero_grad()
        between passes for fresh values.

        Args:
            gradient: Seed gradient; optional for single-element Variables.
            retain_graph: Keep saved state for another backward pass.
                Defaults to ``create_graph``.
            create_graph: Build a graph of the backward pass so the
                resulting gradients can be differentiated again.

        Example:
            >>> x = Variable(2.0, requires_grad=True)
            >>> y = x ** 2 + 3 * x
            >>> y.backward()
            >>> x.grad.item()  # dy/dx = 2x + 3
            7.0
        """
        _engine.backward([self], None if gradient is None else [gradient],
                         retain_graph=retain_graph, create_graph=create_graph)

    def zero_grad(self) -> None:
        """Drop the accumulated gradient."""
        self.grad = None

    def requires_grad_(self, requires_grad: bool = True) -> "Variable":
        if not self.is_leaf:
            raise RuntimeError("requires_grad can only be changed on leaf Variables")
        if requires_grad and not np.issubdtype(self.dtype, np.floating):
            raise TypeError(
                f"only floating point Variables can require gradients, got {self.dtype}"
            )
        self.requires_grad = requires_grad
        return self

    def detach(self) -> "Variable":
        """A new leaf sharing this Variable's data, cut from the graph."""
        return Variable(self.data, label=self.label)

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def item(self) -> Numeric:
        """Return the single element as a Python number."""
        return self.data.item()

    def numpy(self) -> np.ndarray:
        return self.data

    def tolist(self):
        return self.data.tolist()

    @staticmethod
    def zero_grad_all(variables: Sequence["Variable"]) -> None:
        for v in variables:
            v.grad = None


def _shape_args(shape) -> Tuple[int, ...]:
    if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
        return tuple(shape[0])
    return tuple(shape)


from . import engine as _engine, ops  # noqa: E402
