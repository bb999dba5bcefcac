"""
Backward helpers used by the derivative table.

Every helper is written in terms of differentiable operations, so whatever a
formula builds from them can itself be differentiated (double backward).

The shape-reconciliation helpers (``reduce_to``, ``unnarrow``,
``unsqueeze_to``, ``maybe_unsqueeze``, ``sum_backward``, ``select_backward``)
are exact structural inverses of their forward counterparts: given the
gradient of the forward output and the saved input shape, they return a
gradient of exactly the input's shape.
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from . import ops
from .errors import ShapeMismatch
from .variable import Variable

Shape = Tuple[int, ...]


def _wrap_dim(dim: int, ndim: int) -> int:
    return dim % max(ndim, 1)


def _numel(shape: Sequence[int]) -> int:
    return int(np.prod(shape, dtype=np.int64))


# =============================================================================
# Shape reconciliation
# =============================================================================

def reduce_to(grad, shape: Sequence[int]):
    """Sum a broadcast gradient back down to ``shape``."""
    shape = tuple(shape)
    if grad.shape == shape:
        return grad
    return ops.sum_to_size(grad, shape)


def maybe_multiply(grad, factor):
    return grad if factor == 1 else grad * factor


def unnarrow(grad, dim: int, start: int, size: int):
    """Inverse of ``narrow(x, dim, start, len)``: zeros outside the slice."""
    return ops._unnarrow(grad, dim, start, size)


def pad_to(grad, shape: Sequence[int]):
    """Zero-pad ``grad`` at the end of each dimension up to ``shape``."""
    if len(shape) != grad.ndim:
        raise ShapeMismatch(f"cannot pad shape {grad.shape} to {tuple(shape)}")
    for dim, size in enumerate(shape):
        if grad.shape[dim] != size:
            grad = ops._unnarrow(grad, dim, 0, size)
    return grad


def unsqueeze_to(grad, shape: Sequence[int]):
    """Inverse of ``squeeze()``: reinsert every size-1 dimension of ``shape``."""
    for dim, size in enumerate(shape):
        if size == 1:
            grad = grad.unsqueeze(dim)
    if grad.shape != tuple(shape):
        raise ShapeMismatch(f"gradient of shape {grad.shape} does not unsqueeze to {tuple(shape)}")
    return grad


def maybe_unsqueeze(grad, dim: int, shape: Sequence[int]):
    """Inverse of ``squeeze(dim)``, which is a no-op unless that dim has size 1."""
    if not shape:
        return grad
    dim = _wrap_dim(dim, len(shape))
    if shape[dim] == 1:
        return grad.unsqueeze(dim)
    return grad


def sum_backward(grad, shape: Sequence[int], dims: Sequence[int], keepdim: bool):
    if not keepdim:
        for dim in sorted(_wrap_dim(d, len(shape)) for d in dims):
            grad = grad.unsqueeze(dim)
    return grad.expand(tuple(shape))


def mean_backward(grad, shape: Sequence[int], dims: Optional[Sequence[int]] = None,
                  keepdim: bool = False):
    if dims is None:
        return grad.expand(tuple(shape)) / _numel(shape)
    count = _numel([shape[_wrap_dim(d, len(shape))] for d in dims])
    return sum_backward(grad, shape, dims, keepdim) / count


def select_backward(grad, dim: int, index: int, shape: Sequence[int]):
    """Inverse of ``select(x, dim, index)``."""
    dim = _wrap_dim(dim, len(shape))
    return ops._unnarrow(grad.unsqueeze(dim), dim, index % shape[dim], shape[dim])


def select_backward_scalar(grad, self, result):
    """
    Gradient of a full reduction that picks one value (max, min, median).

    The gradient is split evenly between all elements equal to the result.
    """
    mask = ops.eq(self, result)
    ties = int(mask.data.sum())
    share = (grad / ties).expand(self.shape)
    return ops.where(mask, share, ops.zeros_like(share))


def index_reduce_backward(grad, dim: int, indices, shape: Sequence[int], keepdim: bool):
    """Scatter a per-slice gradient back to the positions named by ``indices``."""
    dim = _wrap_dim(dim, len(shape))
    if not keepdim:
        grad = grad.unsqueeze(dim)
        indices = indices.unsqueeze(dim)
    return ops.zeros(tuple(shape), dtype=grad.dtype).scatter(dim, indices, grad)


def cat_tensors_backward(grad, shapes: Sequence[Shape], dim: int) -> List:
    dim = _wrap_dim(dim, len(shapes[0]))
    grads = []
    offset = 0
    for shape in shapes:
        size = shape[dim]
        grads.append(grad.narrow(dim, offset, size))
        offset += size
    if offset != grad.shape[dim]:
        raise ShapeMismatch(
            f"cat inputs cover {offset} element(s) of dimension {dim}, gradient has {grad.shape[dim]}"
        )
    return grads


def split_backward(grads: Sequence, dim: int):
    return ops.cat(list(grads), dim)


def permute_backwards(grad, dims: Sequence[int]):
    inverse = np.argsort([_wrap_dim(d, len(dims)) for d in dims])
    return grad.permute(*[int(d) for d in inverse])


def cumsum_backward(grad, dim: int):
    return grad.flip([dim]).cumsum(dim).flip([dim])


def masked_scatter_backward(grad, mask, source_shape: Sequence[int]):
    selected = grad.masked_select(mask)
    missing = _numel(source_shape) - selected.shape[0]
    if missing > 0:
        selected = ops.cat([selected, ops.zeros((missing,), dtype=grad.dtype)], 0)
    return selected.view(tuple(source_shape))


# =============================================================================
# Elementwise and reductions
# =============================================================================

def pow_backward(grad, self, exponent):
    if exponent == 0:
        return ops.zeros_like(self)
    return grad * exponent * self.pow(exponent - 1)


def pow_backward_self(grad, self, exponent, self_shape):
    return reduce_to(grad * exponent * self.pow(exponent - 1), self_shape)


def pow_backward_exponent(grad, self, result, exponent_shape):
    if isinstance(self, Variable):
        return reduce_to(grad * result * self.log(), exponent_shape)
    return grad * result * math.log(self)


def clamp_backward(grad, self, min, max):
    mask = None
    if min is not None:
        mask = self < min
    if max is not None:
        above = self > max
        mask = above if mask is None else mask | above
    if mask is None:
        return grad
    return grad.masked_fill(mask, 0)


def norm_backward(grad, self, p, norm, dim: Optional[int] = None, keepdim: bool = False):
    if dim is not None and not keepdim:
        grad = grad.unsqueeze(dim)
        norm = norm.unsqueeze(dim)
    if p == 0:
        return ops.zeros_like(self)
    if p == 1:
        return self.sign() * grad
    if p == math.inf:
        mask = ops.eq(self.abs(), norm)
        hits = mask.to(self.dtype)
        ties = hits.sum() if dim is None else hits.sum(dim, True)
        return ops.where(mask, self.sign() * (grad / ties), ops.zeros_like(self))
    if p == 2:
        return self * (grad / norm)
    return self * self.abs().pow(p - 2) * (grad / norm.pow(p - 1))


def var_backward(grad, self, unbiased: bool, dim: Optional[int] = None, keepdim: bool = False):
    if dim is None:
        n = _numel(self.shape)
        centered = self - self.mean()
    else:
        n = self.shape[_wrap_dim(dim, self.ndim)]
        centered = self - self.mean(dim, True)
        if not keepdim:
            grad = grad.unsqueeze(dim)
    return (2.0 / (n - int(unbiased))) * grad * centered


def trace_backward(grad, shape: Sequence[int]):
    length = min(shape)
    return ops.diagonal_backward(grad.expand((length,)), tuple(shape), 0, 0, 1)


def atan2_backward(grad, self, other, grad_input_mask):
    recip = (self * self + other * other).reciprocal()
    return (
        reduce_to(grad * other * recip, self.shape) if grad_input_mask[0] else None,
        reduce_to(grad * -self * recip, other.shape) if grad_input_mask[1] else None,
    )


# =============================================================================
# Linear algebra
# =============================================================================

def mm_mat1_backward(grad, mat2, alpha=1):
    return maybe_multiply(grad.mm(mat2.t()), alpha)


def mm_mat2_backward(grad, mat1, alpha=1):
    return maybe_multiply(mat1.t().mm(grad), alpha)


# =============================================================================
# Neural network double backward
# =============================================================================

def _channel_view(weight, ndim: int):
    if _numel(weight.shape) == 1:
        return weight.view(())
    if ndim < 2:
        return weight
    return weight.view((1, -1) + (1,) * (ndim - 2))


def prelu_backward(grad, self, weight, grad_input_mask):
    positive = self > 0
    self_grad = weight_grad = None
    if grad_input_mask[0]:
        self_grad = ops.where(positive, grad, grad * _channel_view(weight, self.ndim))
    if grad_input_mask[1]:
        contrib = ops.where(positive, ops.zeros_like(grad), grad * self)
        if _numel(weight.shape) == 1:
            weight_grad = contrib.sum().view(weight.shape)
        elif self.ndim < 2:
            weight_grad = reduce_to(contrib, weight.shape)
        else:
            weight_grad = contrib.sum([0] + list(range(2, self.ndim))).view(weight.shape)
    return self_grad, weight_grad


def softplus_double_backward(grad, self, beta, threshold):
    z = self * beta
    s = z.sigmoid()
    return ops.where(z > threshold, ops.zeros_like(grad), grad * beta * s * (1 - s))


def log_sigmoid_double_backward(grad, self):
    s = self.sigmoid()
    return -grad * s * (1 - s)


def softmax_double_backward(grad, output, dim: int, grad_output):
    return (grad * (grad_output - (grad_output * output).sum(dim, True))
            - grad_output * (grad * output).sum(dim, True))


def _loss_scale(grad, self, size_average: bool, reduce: bool):
    if reduce and size_average and self.data.size:
        return grad / self.data.size
    return grad


def mse_loss_double_backward(grad, self, size_average: bool, reduce: bool):
    return _loss_scale(2 * grad, self, size_average, reduce)


def mse_loss_double_backward_grad_output(grad, self, target, size_average: bool, reduce: bool):
    out = _loss_scale(2 * grad * (self - target), self, size_average, reduce)
    return out.sum() if reduce else out


def l1_loss_double_backward_grad_output(grad, self, target, size_average: bool, reduce: bool):
    out = _loss_scale(grad * (self - target).sign(), self, size_average, reduce)
    return out.sum() if reduce else out


def max_pool2d_double_backward(grad, indices):
    n, c = indices.shape[:2]
    h, w = grad.shape[2:]
    return grad.view(n, c, h * w).gather(2, indices.view(n, c, -1)).view(indices.shape)
