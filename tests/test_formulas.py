"""
Unit Tests: Derivative Formulas vs Finite Differences
=====================================================

Every table entry that carries a formula gets one case here. A case builds
float64 inputs inside the domain where the operation is smooth and runs
``gradcheck`` against central differences.

Test coverage:
- One gradient check per formula entry
- Each case really dispatches to the overload it is named after
- Entries marked not implemented raise only when backward reaches them

Run with: pytest tests/test_formulas.py -v
"""

from typing import Callable, Dict, List, Tuple

import numpy as np
import pytest

from tablegrad import NotImplementedGradient, Variable, default_registry, gradcheck, ops

# =============================================================================
# Test Configuration
# =============================================================================

RNG = np.random.default_rng(1234)

Case = Tuple[Callable, List]
CASES: Dict[str, Callable[[], Case]] = {}

# Values kept away from integers, 0.5 boundaries and zero: every piecewise
# operation below is smooth around them.
KINKED = np.array([[-1.2, -0.3, 0.4], [0.9, 1.6, -0.05]])
MASK = np.array([[True, False, True], [False, True, False]])


def leaf(data) -> Variable:
    return Variable(np.asarray(data, dtype=np.float64), requires_grad=True)


def const(data) -> Variable:
    return Variable(np.asarray(data))


def uniform(*shape, low=-1.0, high=1.0) -> Variable:
    return leaf(RNG.uniform(low, high, shape))


def away(*shape, low=0.3, high=1.5) -> Variable:
    """Random values with magnitude in [low, high] and random sign."""
    signs = RNG.choice([-1.0, 1.0], size=shape)
    return leaf(signs * RNG.uniform(low, high, shape))


def case(signature: str):
    def register(factory):
        CASES[signature] = factory
        return factory
    return register


def unary(signature: str, op: Callable, make: Callable[[], Variable]) -> None:
    CASES[signature] = lambda: (op, [make()])


# =============================================================================
# Elementwise math
# =============================================================================

unary("abs(Tensor self)", ops.abs, lambda: away(2, 3))
unary("acos(Tensor self)", ops.acos, lambda: uniform(2, 3, low=-0.8, high=0.8))
unary("asin(Tensor self)", ops.asin, lambda: uniform(2, 3, low=-0.8, high=0.8))
unary("atan(Tensor self)", ops.atan, lambda: uniform(2, 3, low=-2.0, high=2.0))
unary("ceil(Tensor self)", ops.ceil, lambda: leaf(KINKED))
unary("clone(Tensor self)", ops.clone, lambda: uniform(2, 3))
unary("alias(Tensor self)", ops.alias, lambda: uniform(2, 3))
unary("cos(Tensor self)", ops.cos, lambda: uniform(2, 3, low=-3.0, high=3.0))
unary("cosh(Tensor self)", ops.cosh, lambda: uniform(2, 3))
unary("erf(Tensor self)", ops.erf, lambda: uniform(2, 3, low=-2.0, high=2.0))
unary("exp(Tensor self)", ops.exp, lambda: uniform(2, 3))
unary("expm1(Tensor self)", ops.expm1, lambda: uniform(2, 3))
unary("floor(Tensor self)", ops.floor, lambda: leaf(KINKED))
unary("frac(Tensor self)", ops.frac, lambda: leaf(KINKED))
unary("log(Tensor self)", ops.log, lambda: uniform(2, 3, low=0.2, high=3.0))
unary("log1p(Tensor self)", ops.log1p, lambda: uniform(2, 3, low=-0.5, high=2.0))
unary("neg(Tensor self)", ops.neg, lambda: uniform(2, 3))
unary("reciprocal(Tensor self)", ops.reciprocal, lambda: away(2, 3, low=0.5))
unary("round(Tensor self)", ops.round, lambda: leaf(KINKED))
unary("rsqrt(Tensor self)", ops.rsqrt, lambda: uniform(2, 3, low=0.3, high=3.0))
unary("sigmoid(Tensor self)", ops.sigmoid, lambda: uniform(2, 3, low=-3.0, high=3.0))
unary("sign(Tensor self)", ops.sign, lambda: leaf(KINKED))
unary("sin(Tensor self)", ops.sin, lambda: uniform(2, 3, low=-3.0, high=3.0))
unary("sinh(Tensor self)", ops.sinh, lambda: uniform(2, 3))
unary("sqrt(Tensor self)", ops.sqrt, lambda: uniform(2, 3, low=0.3, high=3.0))
unary("tan(Tensor self)", ops.tan, lambda: uniform(2, 3))
unary("tanh(Tensor self)", ops.tanh, lambda: uniform(2, 3, low=-2.0, high=2.0))
unary("trunc(Tensor self)", ops.trunc, lambda: leaf(KINKED))


@case("to(Tensor self, ScalarType dtype)")
def _to():
    return (lambda x: ops.to(x, "float64")), [uniform(2, 3)]


# =============================================================================
# Binary and ternary operations
# =============================================================================

@case("add(Tensor self, Tensor other, *, Scalar alpha)")
def _add_tensor():
    return (lambda a, b: ops.add(a, b, alpha=2.0)), [uniform(2, 3), uniform(3)]


@case("add(Tensor self, Scalar other, *, Scalar alpha)")
def _add_scalar():
    return (lambda a: ops.add(a, 3.0, alpha=2.0)), [uniform(2, 3)]


@case("sub(Tensor self, Tensor other, *, Scalar alpha)")
def _sub_tensor():
    return (lambda a, b: ops.sub(a, b, alpha=0.5)), [uniform(2, 1), uniform(2, 3)]


@case("sub(Tensor self, Scalar other, *, Scalar alpha)")
def _sub_scalar():
    return (lambda a: ops.sub(a, 1.5, alpha=2.0)), [uniform(2, 3)]


@case("mul(Tensor self, Tensor other)")
def _mul_tensor():
    return ops.mul, [uniform(2, 3), uniform(1, 3)]


@case("mul(Tensor self, Scalar other)")
def _mul_scalar():
    return (lambda a: ops.mul(a, -2.5)), [uniform(2, 3)]


@case("div(Tensor self, Tensor other)")
def _div_tensor():
    return ops.div, [uniform(2, 3), away(3, low=0.5)]


@case("div(Tensor self, Scalar other)")
def _div_scalar():
    return (lambda a: ops.div(a, 4.0)), [uniform(2, 3)]


@case("pow(Tensor self, Scalar exponent)")
def _pow_scalar():
    return (lambda a: ops.pow(a, 2.5)), [uniform(2, 3, low=0.3, high=2.0)]


@case("pow(Tensor self, Tensor exponent)")
def _pow_tensor():
    return ops.pow, [uniform(2, 3, low=0.5, high=1.5), uniform(3, low=2.0, high=3.0)]


@case("pow(Scalar self, Tensor exponent)")
def _pow_base():
    return (lambda e: ops.pow(2.0, e)), [uniform(2, 3)]


@case("atan2(Tensor self, Tensor other)")
def _atan2():
    return ops.atan2, [uniform(2, 3), uniform(2, 3, low=0.5, high=1.5)]


@case("fmod(Tensor self, Scalar other)")
def _fmod_scalar():
    return (lambda a: ops.fmod(a, 1.5)), [uniform(2, 3, low=-1.4, high=1.4)]


@case("fmod(Tensor self, Tensor other)")
def _fmod_tensor():
    return ops.fmod, [uniform(2, 3, low=-1.4, high=1.4), const(np.full(3, 1.5))]


@case("remainder(Tensor self, Scalar other)")
def _remainder_scalar():
    return (lambda a: ops.remainder(a, 1.5)), [uniform(2, 3, low=0.1, high=1.4)]


@case("remainder(Tensor self, Tensor other)")
def _remainder_tensor():
    # self / other stays inside (2, 3), away from the jumps of floor
    return ops.remainder, [uniform(2, 3, low=2.2, high=2.8), uniform(2, 3, low=1.0, high=1.05)]


def _separated():
    base = RNG.uniform(-1.0, 1.0, (2, 3))
    offset = RNG.choice([-0.5, 0.5], size=(2, 3))
    return [leaf(base), leaf(base + offset)]


@case("max(Tensor self, Tensor other)")
def _maximum():
    return ops.maximum, _separated()


@case("min(Tensor self, Tensor other)")
def _minimum():
    return ops.minimum, _separated()


@case("lerp(Tensor self, Tensor end, Scalar weight)")
def _lerp():
    return (lambda a, b: ops.lerp(a, b, 0.3)), [uniform(2, 3), uniform(2, 3)]


@case("addcmul(Tensor self, Tensor tensor1, Tensor tensor2, *, Scalar value)")
def _addcmul():
    return (lambda a, b, c: ops.addcmul(a, b, c, value=0.5)), [uniform(3), uniform(2, 3), uniform(2, 3)]


@case("addcdiv(Tensor self, Tensor tensor1, Tensor tensor2, *, Scalar value)")
def _addcdiv():
    return (lambda a, b, c: ops.addcdiv(a, b, c, value=0.5)), [uniform(2, 3), uniform(2, 3), away(2, 3, low=0.5)]


@case("clamp(Tensor self, Scalar min, Scalar max)")
def _clamp():
    return (lambda a: ops.clamp(a, -0.5, 0.5)), [leaf(KINKED)]


@case("clamp_min(Tensor self, Scalar min)")
def _clamp_min():
    return (lambda a: ops.clamp_min(a, 0.1)), [leaf(KINKED)]


@case("clamp_max(Tensor self, Scalar max)")
def _clamp_max():
    return (lambda a: ops.clamp_max(a, 0.1)), [leaf(KINKED)]


@case("where(BoolTensor condition, Tensor self, Tensor other)")
def _where():
    return ops.where, [const(MASK), uniform(2, 3), uniform(3)]


@case("dist(Tensor self, Tensor other, Scalar p)")
def _dist():
    return (lambda a, b: ops.dist(a, b, 3)), [uniform(2, 3), uniform(2, 3)]


# =============================================================================
# Reductions
# =============================================================================

@case("sum(Tensor self)")
def _sum_all():
    return ops.sum, [uniform(2, 3)]


@case("sum(Tensor self, IntList dim, bool keepdim)")
def _sum_dim():
    return (lambda x: ops.sum(x, (0, 2))), [uniform(2, 3, 4)]


@case("sum_to_size(Tensor self, IntList size)")
def _sum_to_size():
    return (lambda x: ops.sum_to_size(x, (1, 3))), [uniform(2, 3)]


@case("mean(Tensor self)")
def _mean_all():
    return ops.mean, [uniform(2, 3)]


@case("mean(Tensor self, IntList dim, bool keepdim)")
def _mean_dim():
    return (lambda x: ops.mean(x, (1,), True)), [uniform(2, 3, 4)]


@case("max(Tensor self)")
def _max_all():
    return ops.max, [uniform(2, 3)]


@case("min(Tensor self)")
def _min_all():
    return ops.min, [uniform(2, 3)]


@case("median(Tensor self)")
def _median_all():
    return ops.median, [uniform(2, 3)]


@case("max(Tensor self, int64_t dim, bool keepdim)")
def _max_dim():
    return (lambda x: ops.max(x, 1)), [uniform(3, 4)]


@case("min(Tensor self, int64_t dim, bool keepdim)")
def _min_dim():
    return (lambda x: ops.min(x, 0, True)), [uniform(3, 4)]


@case("median(Tensor self, int64_t dim, bool keepdim)")
def _median_dim():
    return (lambda x: ops.median(x, 1)), [uniform(3, 5)]


@case("sort(Tensor self, int64_t dim, bool descending)")
def _sort():
    return (lambda x: ops.sort(x, 1, True)), [uniform(3, 4)]


@case("topk(Tensor self, int64_t k, int64_t dim, bool largest, bool sorted)")
def _topk():
    return (lambda x: ops.topk(x, 2, 1)), [uniform(3, 4)]


@case("cumsum(Tensor self, int64_t dim)")
def _cumsum():
    return (lambda x: ops.cumsum(x, 1)), [uniform(2, 4)]


@case("var(Tensor self, bool unbiased)")
def _var_all():
    return ops.var, [uniform(2, 3)]


@case("var(Tensor self, int64_t dim, bool unbiased, bool keepdim)")
def _var_dim():
    return (lambda x: ops.var(x, 1, False)), [uniform(3, 4)]


@case("std(Tensor self, bool unbiased)")
def _std_all():
    return ops.std, [uniform(2, 3)]


@case("std(Tensor self, int64_t dim, bool unbiased, bool keepdim)")
def _std_dim():
    return (lambda x: ops.std(x, 0, True, True)), [uniform(3, 4)]


@case("norm(Tensor self, Scalar p)")
def _norm_all():
    return ops.norm, [uniform(2, 3)]


@case("norm(Tensor self, Scalar p, int64_t dim, bool keepdim)")
def _norm_dim():
    return (lambda x: ops.norm(x, 3, 1)), [uniform(3, 4)]


@case("trace(Tensor self)")
def _trace():
    return ops.trace, [uniform(3, 4)]


# =============================================================================
# Shape and views
# =============================================================================

@case("view(Tensor self, IntList size)")
def _view():
    return (lambda x: ops.view(x, (3, 2))), [uniform(2, 3)]


@case("expand(Tensor self, IntList size)")
def _expand():
    return (lambda x: ops.expand(x, (4, 2, 3))), [uniform(2, 1)]


@case("squeeze(Tensor self)")
def _squeeze_all():
    return ops.squeeze, [uniform(2, 1, 3, 1)]


@case("squeeze(Tensor self, int64_t dim)")
def _squeeze_dim():
    return (lambda x: ops.squeeze(x, 1)), [uniform(2, 1, 3)]


@case("unsqueeze(Tensor self, int64_t dim)")
def _unsqueeze():
    return (lambda x: ops.unsqueeze(x, -1)), [uniform(2, 3)]


@case("transpose(Tensor self, int64_t dim0, int64_t dim1)")
def _transpose():
    return (lambda x: ops.transpose(x, 0, 2)), [uniform(2, 3, 4)]


@case("t(Tensor self)")
def _t():
    return ops.t, [uniform(2, 3)]


@case("permute(Tensor self, IntList dims)")
def _permute():
    return (lambda x: ops.permute(x, (2, 0, 1))), [uniform(2, 3, 4)]


@case("narrow(Tensor self, int64_t dim, int64_t start, int64_t length)")
def _narrow():
    return (lambda x: ops.narrow(x, 1, -3, 2)), [uniform(2, 5)]


@case("_unnarrow(Tensor self, int64_t dim, int64_t offset, int64_t dim_size)")
def _unnarrow():
    return (lambda x: ops._unnarrow(x, 1, 1, 5)), [uniform(2, 3)]


@case("select(Tensor self, int64_t dim, int64_t index)")
def _select():
    return (lambda x: ops.select(x, 1, -1)), [uniform(2, 3)]


@case("cat(TensorList tensors, int64_t dim)")
def _cat():
    return (lambda a, b: ops.cat([a, b], 1)), [uniform(2, 2), uniform(2, 3)]


@case("split(Tensor self, int64_t split_size, int64_t dim)")
def _split():
    return (lambda x: ops.split(x, 2, 1)), [uniform(2, 5)]


@case("flip(Tensor self, IntList dims)")
def _flip():
    return (lambda x: ops.flip(x, (0, 1))), [uniform(2, 3)]


@case("diagonal(Tensor self, int64_t offset, int64_t dim1, int64_t dim2)")
def _diagonal():
    return (lambda x: ops.diagonal(x, 1, 0, 1)), [uniform(3, 4)]


@case("diagonal_backward(Tensor grad_output, IntList input_sizes, int64_t offset, int64_t dim1, int64_t dim2)")
def _diagonal_backward():
    return (lambda g: ops.diagonal_backward(g, (3, 4), 1, 0, 1)), [uniform(3)]


@case("tril(Tensor self, int64_t diagonal)")
def _tril():
    return (lambda x: ops.tril(x, -1)), [uniform(3, 3)]


@case("triu(Tensor self, int64_t diagonal)")
def _triu():
    return (lambda x: ops.triu(x, 1)), [uniform(3, 4)]


# =============================================================================
# Indexing
# =============================================================================

@case("index_select(Tensor self, int64_t dim, IndexTensor index)")
def _index_select():
    return (lambda x, i: ops.index_select(x, 0, i)), [uniform(3, 4), const([2, 0, 2])]


@case("index_add(Tensor self, int64_t dim, IndexTensor index, Tensor source)")
def _index_add():
    return (lambda x, i, s: ops.index_add(x, 0, i, s)), [uniform(3, 4), const([0, 2, 0]), uniform(3, 4)]


@case("gather(Tensor self, int64_t dim, IndexTensor index)")
def _gather():
    return (lambda x, i: ops.gather(x, 1, i)), [uniform(3, 4), const([[0, 3], [1, 1], [2, 0]])]


@case("scatter(Tensor self, int64_t dim, IndexTensor index, Tensor src)")
def _scatter_tensor():
    index = const([[0, 2], [1, 3], [3, 0]])
    return (lambda x, i, s: ops.scatter(x, 1, i, s)), [uniform(3, 4), index, uniform(3, 3)]


@case("scatter(Tensor self, int64_t dim, IndexTensor index, Scalar value)")
def _scatter_scalar():
    return (lambda x, i: ops.scatter(x, 1, i, 2.5)), [uniform(3, 4), const([[0, 2], [1, 3], [3, 0]])]


@case("scatter_add(Tensor self, int64_t dim, IndexTensor index, Tensor src)")
def _scatter_add():
    index = const([[0, 0], [1, 3], [2, 2]])
    return (lambda x, i, s: ops.scatter_add(x, 1, i, s)), [uniform(3, 4), index, uniform(3, 2)]


@case("masked_fill(Tensor self, BoolTensor mask, Scalar value)")
def _masked_fill_scalar():
    return (lambda x, m: ops.masked_fill(x, m, 0.5)), [uniform(2, 3), const(MASK)]


@case("masked_fill(Tensor self, BoolTensor mask, Tensor value)")
def _masked_fill_tensor():
    return ops.masked_fill, [uniform(2, 3), const(MASK), leaf(0.7)]


@case("masked_select(Tensor self, BoolTensor mask)")
def _masked_select():
    return ops.masked_select, [uniform(2, 3), const(MASK)]


@case("masked_scatter(Tensor self, BoolTensor mask, Tensor source)")
def _masked_scatter():
    # three selected positions, two unused source elements
    return ops.masked_scatter, [uniform(2, 3), const(MASK), uniform(5)]


@case("take(Tensor self, IndexTensor index)")
def _take():
    return ops.take, [uniform(2, 3), const([[0, 5], [3, 3]])]


@case("put(Tensor self, IndexTensor index, Tensor source, bool accumulate)")
def _put():
    return (lambda x, i, s: ops.put(x, i, s, False)), [uniform(2, 3), const([1, 4]), uniform(2)]


# =============================================================================
# Linear algebra
# =============================================================================

@case("mm(Tensor self, Tensor mat2)")
def _mm():
    return ops.mm, [uniform(2, 3), uniform(3, 4)]


@case("mv(Tensor self, Tensor vec)")
def _mv():
    return ops.mv, [uniform(2, 3), uniform(3)]


@case("dot(Tensor self, Tensor tensor)")
def _dot():
    return ops.dot, [uniform(4), uniform(4)]


@case("bmm(Tensor self, Tensor mat2)")
def _bmm():
    return ops.bmm, [uniform(2, 3, 4), uniform(2, 4, 2)]


@case("ger(Tensor self, Tensor vec2)")
def _ger():
    return ops.ger, [uniform(3), uniform(2)]


@case("addmm(Tensor self, Tensor mat1, Tensor mat2, *, Scalar beta, Scalar alpha)")
def _addmm():
    fn = lambda c, a, b: ops.addmm(c, a, b, beta=0.5, alpha=2.0)  # noqa: E731
    return fn, [uniform(4), uniform(2, 3), uniform(3, 4)]


@case("addmv(Tensor self, Tensor mat, Tensor vec, *, Scalar beta, Scalar alpha)")
def _addmv():
    fn = lambda c, m, v: ops.addmv(c, m, v, beta=0.5, alpha=2.0)  # noqa: E731
    return fn, [uniform(2), uniform(2, 3), uniform(3)]


@case("addr(Tensor self, Tensor vec1, Tensor vec2, *, Scalar beta, Scalar alpha)")
def _addr():
    fn = lambda c, a, b: ops.addr(c, a, b, beta=0.5, alpha=2.0)  # noqa: E731
    return fn, [uniform(3, 2), uniform(3), uniform(2)]


@case("inverse(Tensor self)")
def _inverse():
    return ops.inverse, [leaf(0.3 * RNG.standard_normal((3, 3)) + 3 * np.eye(3))]


# =============================================================================
# Neural network primitives
# =============================================================================

unary("relu(Tensor self)", ops.relu, lambda: away(2, 3))
unary("log_sigmoid(Tensor self)", ops.log_sigmoid, lambda: uniform(2, 3, low=-3.0, high=3.0))


@case("threshold(Tensor self, Scalar threshold, Scalar value)")
def _threshold():
    return (lambda x: ops.threshold(x, 0.1, -2.0)), [away(2, 3)]


@case("leaky_relu(Tensor self, Scalar negative_slope)")
def _leaky_relu():
    return (lambda x: ops.leaky_relu(x, 0.2)), [away(2, 3)]


@case("elu(Tensor self, Scalar alpha)")
def _elu():
    return (lambda x: ops.elu(x, 1.5)), [away(2, 3)]


@case("hardtanh(Tensor self, Scalar min_val, Scalar max_val)")
def _hardtanh():
    return (lambda x: ops.hardtanh(x, -0.5, 0.5)), [leaf(KINKED)]


@case("softplus(Tensor self, Scalar beta, Scalar threshold)")
def _softplus():
    return (lambda x: ops.softplus(x, 2, 20)), [uniform(2, 3, low=-2.0, high=2.0)]


@case("softshrink(Tensor self, Scalar lambd)")
def _softshrink():
    return (lambda x: ops.softshrink(x, 0.5)), [leaf(KINKED)]


@case("hardshrink(Tensor self, Scalar lambd)")
def _hardshrink():
    return (lambda x: ops.hardshrink(x, 0.5)), [leaf(KINKED)]


@case("softmax(Tensor self, int64_t dim)")
def _softmax():
    return (lambda x: ops.softmax(x, 1)), [uniform(2, 4)]


@case("log_softmax(Tensor self, int64_t dim)")
def _log_softmax():
    return (lambda x: ops.log_softmax(x, -1)), [uniform(2, 4)]


@case("prelu(Tensor self, Tensor weight)")
def _prelu():
    return ops.prelu, [away(2, 3, 4), uniform(3, low=0.1, high=0.5)]


@case("mse_loss(Tensor self, Tensor target, bool size_average, bool reduce)")
def _mse_loss():
    return ops.mse_loss, [uniform(2, 3), uniform(2, 3)]


@case("l1_loss(Tensor self, Tensor target, bool size_average, bool reduce)")
def _l1_loss():
    return ops.l1_loss, _separated()


POOL_AVG = ((2, 2), (2, 2), (1, 1), True, False)
POOL_MAX = ((2, 2), (2, 2), (0, 0), (1, 1), False)


@case("avg_pool2d(Tensor self, IntList kernel_size, IntList stride, IntList padding, bool ceil_mode, bool count_include_pad)")
def _avg_pool2d():
    return (lambda x: ops.avg_pool2d(x, *POOL_AVG)), [uniform(1, 2, 5, 5)]


@case("max_pool2d(Tensor self, IntList kernel_size, IntList stride, IntList padding, IntList dilation, bool ceil_mode)")
def _max_pool2d():
    return (lambda x: ops.max_pool2d(x, *POOL_MAX)), [uniform(1, 2, 4, 4)]


# =============================================================================
# Backward kernels (differentiated by double backward)
# =============================================================================

@case("_sigmoid_backward(Tensor grad_output, Tensor output)")
def _sigmoid_backward():
    return ops._sigmoid_backward, [uniform(2, 3), uniform(2, 3, low=0.1, high=0.9)]


@case("_tanh_backward(Tensor grad_output, Tensor output)")
def _tanh_backward():
    return ops._tanh_backward, [uniform(2, 3), uniform(2, 3, low=-0.9, high=0.9)]


@case("threshold_backward(Tensor grad_output, Tensor self, Scalar threshold)")
def _threshold_backward():
    return (lambda g, x: ops.threshold_backward(g, x, 0.1)), [uniform(2, 3), away(2, 3)]


@case("leaky_relu_backward(Tensor grad_output, Tensor self, Scalar negative_slope)")
def _leaky_relu_backward():
    return (lambda g, x: ops.leaky_relu_backward(g, x, 0.2)), [uniform(2, 3), away(2, 3)]


@case("elu_backward(Tensor grad_output, Scalar alpha, Tensor output)")
def _elu_backward():
    return (lambda g, o: ops.elu_backward(g, 1.5, o)), [uniform(2, 3), away(2, 3, high=1.2)]


@case("hardtanh_backward(Tensor grad_output, Tensor self, Scalar min_val, Scalar max_val)")
def _hardtanh_backward():
    return (lambda g, x: ops.hardtanh_backward(g, x, -0.5, 0.5)), [uniform(2, 3), leaf(KINKED)]


@case("softplus_backward(Tensor grad_output, Tensor self, Scalar beta, Scalar threshold)")
def _softplus_backward():
    return (lambda g, x: ops.softplus_backward(g, x, 2, 20)), [uniform(2, 3), uniform(2, 3)]


@case("softshrink_backward(Tensor grad_output, Tensor self, Scalar lambd)")
def _softshrink_backward():
    return (lambda g, x: ops.softshrink_backward(g, x, 0.5)), [uniform(2, 3), leaf(KINKED)]


@case("hardshrink_backward(Tensor grad_output, Tensor self, Scalar lambd)")
def _hardshrink_backward():
    return (lambda g, x: ops.hardshrink_backward(g, x, 0.5)), [uniform(2, 3), leaf(KINKED)]


@case("log_sigmoid_backward(Tensor grad_output, Tensor self)")
def _log_sigmoid_backward():
    return ops.log_sigmoid_backward, [uniform(2, 3), uniform(2, 3, low=-2.0, high=2.0)]


@case("softmax_backward(Tensor grad_output, Tensor output, int64_t dim)")
def _softmax_backward():
    return (lambda g, o: ops.softmax_backward(g, o, 1)), [uniform(2, 4), uniform(2, 4, low=0.1, high=0.4)]


@case("log_softmax_backward(Tensor grad_output, Tensor output, int64_t dim)")
def _log_softmax_backward():
    return (lambda g, o: ops.log_softmax_backward(g, o, 1)), [uniform(2, 4), uniform(2, 4, low=-2.0, high=-0.5)]


@case("mse_loss_backward(Tensor grad_output, Tensor self, Tensor target, bool size_average, bool reduce)")
def _mse_loss_backward():
    fn = lambda g, x, t: ops.mse_loss_backward(g, x, t, True, True)  # noqa: E731
    return fn, [leaf(1.3), uniform(2, 3), uniform(2, 3)]


@case("l1_loss_backward(Tensor grad_output, Tensor self, Tensor target, bool size_average, bool reduce)")
def _l1_loss_backward():
    fn = lambda g, x, t: ops.l1_loss_backward(g, x, t, True, True)  # noqa: E731
    return fn, [leaf(1.3)] + _separated()


@case("avg_pool2d_backward(Tensor grad_output, Tensor self, IntList kernel_size, IntList stride, IntList padding, bool ceil_mode, bool count_include_pad)")
def _avg_pool2d_backward():
    fn = lambda g, x: ops.avg_pool2d_backward(g, x, *POOL_AVG)  # noqa: E731
    return fn, [uniform(1, 2, 3, 3), uniform(1, 2, 5, 5)]


@case("max_pool2d_backward(Tensor grad_output, Tensor self, IntList kernel_size, IntList stride, IntList padding, IntList dilation, bool ceil_mode, IndexTensor indices)")
def _max_pool2d_backward():
    x = uniform(1, 2, 4, 4)
    _, indices = ops.max_pool2d(Variable(x.data), *POOL_MAX)
    fn = lambda g, x, i: ops.max_pool2d_backward(g, x, *POOL_MAX, i)  # noqa: E731
    return fn, [uniform(1, 2, 2, 2), x, indices]


# =============================================================================
# Tests
# =============================================================================

def _first_float_output(outputs) -> Variable:
    if isinstance(outputs, Variable):
        return outputs
    return next(o for o in outputs if np.issubdtype(o.dtype, np.floating))


class TestFormulas:
    """Analytical gradients of every formula entry vs finite differences."""

    @pytest.mark.parametrize("signature", sorted(CASES))
    def test_gradient_matches_finite_differences(self, signature: str) -> None:
        fn, inputs = CASES[signature]()
        assert gradcheck(fn, inputs)

    @pytest.mark.parametrize("signature", sorted(CASES))
    def test_case_records_its_overload(self, signature: str) -> None:
        """The case's output must come from the overload it is filed under."""
        fn, inputs = CASES[signature]()
        out = _first_float_output(fn(*inputs))
        assert out.grad_fn is not None
        assert out.grad_fn.entry.key == signature

    def test_every_formula_entry_has_a_case(self) -> None:
        missing = [e.key for e in default_registry() if e.has_formula and e.key not in CASES]
        assert missing == []

    def test_cases_name_real_entries(self) -> None:
        registry = default_registry()
        assert [s for s in CASES if s not in registry] == []


# =============================================================================
# Entries without a derivative
# =============================================================================

NOT_IMPLEMENTED = {
    "lgamma": lambda x: ops.lgamma(x),
    "prod": lambda x: ops.prod(x),
    "cumprod": lambda x: ops.cumprod(x, 1),
    "histc": lambda x: ops.histc(x, 4, 0, 1),
    "qr": lambda x: ops.qr(x)[1],
    "svd": lambda x: ops.svd(x, True)[1],
    "symeig": lambda x: ops.symeig(x, True, True)[0],
}


class TestNotImplementedEntries:

    @pytest.mark.parametrize("name", sorted(NOT_IMPLEMENTED))
    def test_forward_only_use_succeeds(self, name: str) -> None:
        x = leaf(np.array([[2.0, 0.5, 0.3], [0.5, 1.5, 0.2], [0.3, 0.2, 1.0]]))
        out = NOT_IMPLEMENTED[name](x)
        assert out.requires_grad
        assert np.all(np.isfinite(out.data))

    @pytest.mark.parametrize("name", sorted(NOT_IMPLEMENTED))
    def test_backward_raises(self, name: str) -> None:
        x = leaf(np.array([[2.0, 0.5, 0.3], [0.5, 1.5, 0.2], [0.3, 0.2, 1.0]]))
        out = NOT_IMPLEMENTED[name](x)
        with pytest.raises(NotImplementedGradient) as info:
            out.sum().backward()
        assert info.value.op_name == name
        assert x.grad is None


# =============================================================================
# Run Tests
# =============================================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
