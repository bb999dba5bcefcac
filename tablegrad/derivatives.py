"""
Derivative Table
================

One entry per differentiable operation overload, mapping each differentiable
input to the formula that computes its gradient from the gradient of the
output(s). See :mod:`tablegrad.registry` for how the parameter names of a
formula select what it reads and what the graph node saves.

Conventions:

- Every differentiable input needs a formula. Inputs whose derivative has not
  been written are marked ``not_implemented("op")``, so reaching them during
  backward raises instead of silently producing zeros.
- ``fallthrough(...)`` marks operations whose outputs never take part in
  differentiation: creation functions, random sampling, predicates and
  metadata queries.
- ``bogus_zero("op")`` marks zero gradients that nobody has checked against
  real usage. They stay disabled unless ``allow_bogus_gradients`` is set.
- Formulas are written with differentiable operations only, which is what
  makes ``backward(create_graph=True)`` work. The ``*_backward`` entries at the
  end exist so that the backward kernels used by activation and loss formulas
  can themselves be differentiated.
"""

import math

from . import functions as F
from . import ops
from .registry import bogus_zero, entry, fallthrough, not_implemented

DERIVATIVES = [
    # -------------------------------------------------------------------------
    # Elementwise math
    # -------------------------------------------------------------------------
    entry("abs(Tensor self)",
          self=lambda grad, self: grad * self.sign()),
    entry("acos(Tensor self)",
          self=lambda grad, self: -grad * (-self * self + 1).rsqrt()),
    entry("asin(Tensor self)",
          self=lambda grad, self: grad * (-self * self + 1).rsqrt()),
    entry("atan(Tensor self)",
          self=lambda grad, self: grad / (self * self + 1)),
    entry("ceil(Tensor self)",
          self=lambda grad: ops.zeros_like(grad)),
    entry("clone(Tensor self)",
          self=lambda grad: grad),
    entry("alias(Tensor self)",
          self=lambda grad: grad),
    entry("cos(Tensor self)",
          self=lambda grad, self: grad * -self.sin()),
    entry("cosh(Tensor self)",
          self=lambda grad, self: grad * self.sinh()),
    entry("erf(Tensor self)",
          self=lambda grad, self: 2.0 / math.sqrt(math.pi) * (-(self * self)).exp() * grad),
    entry("exp(Tensor self)",
          self=lambda grad, result: grad * result),
    entry("expm1(Tensor self)",
          self=lambda grad, result: grad * (result + 1)),
    entry("floor(Tensor self)",
          self=lambda grad: ops.zeros_like(grad)),
    entry("frac(Tensor self)",
          self=lambda grad: grad),
    entry("lgamma(Tensor self)",
          self=not_implemented("lgamma")),
    entry("log(Tensor self)",
          self=lambda grad, self: grad / self),
    entry("log1p(Tensor self)",
          self=lambda grad, self: grad / (self + 1)),
    entry("neg(Tensor self)",
          self=lambda grad: -grad),
    entry("reciprocal(Tensor self)",
          self=lambda grad, result: -grad * result * result),
    entry("round(Tensor self)",
          self=lambda grad: ops.zeros_like(grad)),
    entry("rsqrt(Tensor self)",
          self=lambda grad, result: -0.5 * grad * result.pow(3)),
    entry("sigmoid(Tensor self)",
          self=lambda grad, result: ops._sigmoid_backward(grad, result)),
    entry("sign(Tensor self)",
          self=lambda grad: ops.zeros_like(grad)),
    entry("sin(Tensor self)",
          self=lambda grad, self: grad * self.cos()),
    entry("sinh(Tensor self)",
          self=lambda grad, self: grad * self.cosh()),
    entry("sqrt(Tensor self)",
          self=lambda grad, result: grad / (2 * result)),
    entry("tan(Tensor self)",
          self=lambda grad, result: grad * (result * result + 1)),
    entry("tanh(Tensor self)",
          self=lambda grad, result: ops._tanh_backward(grad, result)),
    entry("trunc(Tensor self)",
          self=lambda grad: ops.zeros_like(grad)),
    entry("to(Tensor self, ScalarType dtype)",
          self=lambda grad, self_dtype: grad.to(self_dtype)),

    # -------------------------------------------------------------------------
    # Binary and ternary operations
    # -------------------------------------------------------------------------
    entry("add(Tensor self, Tensor other, *, Scalar alpha)",
          self=lambda grad, self_shape: F.reduce_to(grad, self_shape),
          other=lambda grad, alpha, other_shape: F.reduce_to(F.maybe_multiply(grad, alpha), other_shape)),
    entry("add(Tensor self, Scalar other, *, Scalar alpha)",
          self=lambda grad: grad),
    entry("sub(Tensor self, Tensor other, *, Scalar alpha)",
          self=lambda grad, self_shape: F.reduce_to(grad, self_shape),
          other=lambda grad, alpha, other_shape: F.reduce_to(-F.maybe_multiply(grad, alpha), other_shape)),
    entry("sub(Tensor self, Scalar other, *, Scalar alpha)",
          self=lambda grad: grad),
    entry("mul(Tensor self, Tensor other)",
          self=lambda grad, other, self_shape: F.reduce_to(grad * other, self_shape),
          other=lambda grad, self, other_shape: F.reduce_to(grad * self, other_shape)),
    entry("mul(Tensor self, Scalar other)",
          self=lambda grad, other: grad * other),
    entry("div(Tensor self, Tensor other)",
          self=lambda grad, other, self_shape: F.reduce_to(grad / other, self_shape),
          other=lambda grad, self, other, other_shape: F.reduce_to(-grad * self / (other * other), other_shape)),
    entry("div(Tensor self, Scalar other)",
          self=lambda grad, other: grad / other),
    entry("pow(Tensor self, Scalar exponent)",
          self=lambda grad, self, exponent: F.pow_backward(grad, self, exponent)),
    entry("pow(Tensor self, Tensor exponent)",
          self=lambda grad, self, exponent, self_shape: F.pow_backward_self(grad, self, exponent, self_shape),
          exponent=lambda grad, self, result, exponent_shape: F.pow_backward_exponent(grad, self, result, exponent_shape)),
    entry("pow(Scalar self, Tensor exponent)",
          exponent=lambda grad, self, result, exponent_shape: F.pow_backward_exponent(grad, self, result, exponent_shape)),
    entry("atan2(Tensor self, Tensor other)", {
        "self, other": lambda grad, self, other, grad_input_mask: F.atan2_backward(grad, self, other, grad_input_mask),
    }),
    entry("fmod(Tensor self, Scalar other)",
          self=lambda grad: grad),
    entry("fmod(Tensor self, Tensor other)",
          self=lambda grad, self_shape: F.reduce_to(grad, self_shape),
          other=not_implemented("fmod: other")),
    entry("remainder(Tensor self, Scalar other)",
          self=lambda grad: grad),
    entry("remainder(Tensor self, Tensor other)",
          self=lambda grad, self_shape: F.reduce_to(grad, self_shape),
          other=lambda grad, self, other, other_shape: F.reduce_to(-grad * (self / other).floor(), other_shape)),
    entry("max(Tensor self, Tensor other)",
          self=lambda grad, self, other, self_shape: F.reduce_to(grad.masked_fill(self <= other, 0), self_shape),
          other=lambda grad, self, other, other_shape: F.reduce_to(grad.masked_fill(self > other, 0), other_shape)),
    entry("min(Tensor self, Tensor other)",
          self=lambda grad, self, other, self_shape: F.reduce_to(grad.masked_fill(self >= other, 0), self_shape),
          other=lambda grad, self, other, other_shape: F.reduce_to(grad.masked_fill(self < other, 0), other_shape)),
    entry("lerp(Tensor self, Tensor end, Scalar weight)",
          self=lambda grad, weight, self_shape: F.reduce_to(grad * (1 - weight), self_shape),
          end=lambda grad, weight, end_shape: F.reduce_to(grad * weight, end_shape)),
    entry("addcmul(Tensor self, Tensor tensor1, Tensor tensor2, *, Scalar value)",
          self=lambda grad, self_shape: F.reduce_to(grad, self_shape),
          tensor1=lambda grad, tensor2, value, tensor1_shape: F.reduce_to(grad * tensor2 * value, tensor1_shape),
          tensor2=lambda grad, tensor1, value, tensor2_shape: F.reduce_to(grad * tensor1 * value, tensor2_shape)),
    entry("addcdiv(Tensor self, Tensor tensor1, Tensor tensor2, *, Scalar value)",
          self=lambda grad, self_shape: F.reduce_to(grad, self_shape),
          tensor1=lambda grad, tensor2, value, tensor1_shape: F.reduce_to(grad * value / tensor2, tensor1_shape),
          tensor2=lambda grad, tensor1, tensor2, value, tensor2_shape:
              F.reduce_to(-grad * value * tensor1 / (tensor2 * tensor2), tensor2_shape)),
    entry("clamp(Tensor self, Scalar min, Scalar max)",
          self=lambda grad, self, min, max: F.clamp_backward(grad, self, min, max)),
    entry("clamp_min(Tensor self, Scalar min)",
          self=lambda grad, self, min: F.clamp_backward(grad, self, min, None)),
    entry("clamp_max(Tensor self, Scalar max)",
          self=lambda grad, self, max: F.clamp_backward(grad, self, None, max)),
    entry("where(BoolTensor condition, Tensor self, Tensor other)",
          self=lambda grad, condition, self_shape:
              F.reduce_to(ops.where(condition, grad, ops.zeros_like(grad)), self_shape),
          other=lambda grad, condition, other_shape:
              F.reduce_to(ops.where(condition, ops.zeros_like(grad), grad), other_shape)),
    entry("dist(Tensor self, Tensor other, Scalar p)",
          self=lambda grad, self, other, p, result, self_shape:
              F.reduce_to(F.norm_backward(grad, self - other, p, result), self_shape),
          other=lambda grad, self, other, p, result, other_shape:
              F.reduce_to(-F.norm_backward(grad, self - other, p, result), other_shape)),

    # -------------------------------------------------------------------------
    # Reductions
    # -------------------------------------------------------------------------
    entry("sum(Tensor self)",
          self=lambda grad, self_shape: grad.expand(self_shape)),
    entry("sum(Tensor self, IntList dim, bool keepdim)",
          self=lambda grad, self_shape, dim, keepdim: F.sum_backward(grad, self_shape, dim, keepdim)),
    entry("sum_to_size(Tensor self, IntList size)",
          self=lambda grad, self_shape: grad.expand(self_shape)),
    entry("mean(Tensor self)",
          self=lambda grad, self_shape: F.mean_backward(grad, self_shape)),
    entry("mean(Tensor self, IntList dim, bool keepdim)",
          self=lambda grad, self_shape, dim, keepdim: F.mean_backward(grad, self_shape, dim, keepdim)),
    entry("max(Tensor self)",
          self=lambda grad, self, result: F.select_backward_scalar(grad, self, result)),
    entry("min(Tensor self)",
          self=lambda grad, self, result: F.select_backward_scalar(grad, self, result)),
    entry("median(Tensor self)",
          self=lambda grad, self, result: F.select_backward_scalar(grad, self, result)),
    entry("max(Tensor self, int64_t dim, bool keepdim) -> (Tensor values, IndexTensor indices)",
          self=lambda grad, dim, keepdim, indices, self_shape:
              F.index_reduce_backward(grad, dim, indices, self_shape, keepdim)),
    entry("min(Tensor self, int64_t dim, bool keepdim) -> (Tensor values, IndexTensor indices)",
          self=lambda grad, dim, keepdim, indices, self_shape:
              F.index_reduce_backward(grad, dim, indices, self_shape, keepdim)),
    entry("median(Tensor self, int64_t dim, bool keepdim) -> (Tensor values, IndexTensor indices)",
          self=lambda grad, dim, keepdim, indices, self_shape:
              F.index_reduce_backward(grad, dim, indices, self_shape, keepdim)),
    entry("sort(Tensor self, int64_t dim, bool descending) -> (Tensor values, IndexTensor indices)",
          self=lambda grad, dim, indices, self_shape: F.index_reduce_backward(grad, dim, indices, self_shape, True)),
    entry("topk(Tensor self, int64_t k, int64_t dim, bool largest, bool sorted) -> (Tensor values, IndexTensor indices)",
          self=lambda grad, dim, indices, self_shape: F.index_reduce_backward(grad, dim, indices, self_shape, True)),
    entry("cumsum(Tensor self, int64_t dim)",
          self=lambda grad, dim: F.cumsum_backward(grad, dim)),
    entry("var(Tensor self, bool unbiased)",
          self=lambda grad, self, unbiased: F.var_backward(grad, self, unbiased)),
    entry("var(Tensor self, int64_t dim, bool unbiased, bool keepdim)",
          self=lambda grad, self, dim, unbiased, keepdim: F.var_backward(grad, self, unbiased, dim, keepdim)),
    entry("std(Tensor self, bool unbiased)",
          self=lambda grad, self, unbiased, result: F.var_backward(grad / (result * 2), self, unbiased)),
    entry("std(Tensor self, int64_t dim, bool unbiased, bool keepdim)",
          self=lambda grad, self, dim, unbiased, keepdim, result:
              F.var_backward(grad / (result * 2), self, unbiased, dim, keepdim)),
    entry("norm(Tensor self, Scalar p)",
          self=lambda grad, self, p, result: F.norm_backward(grad, self, p, result)),
    entry("norm(Tensor self, Scalar p, int64_t dim, bool keepdim)",
          self=lambda grad, self, p, dim, keepdim, result: F.norm_backward(grad, self, p, result, dim, keepdim)),
    entry("trace(Tensor self)",
          self=lambda grad, self_shape: F.trace_backward(grad, self_shape)),
    entry("prod(Tensor self)",
          self=not_implemented("prod")),
    entry("cumprod(Tensor self, int64_t dim)",
          self=not_implemented("cumprod")),
    entry("histc(Tensor self, int64_t bins, Scalar min, Scalar max)",
          self=not_implemented("histc")),

    # -------------------------------------------------------------------------
    # Shape and views
    # -------------------------------------------------------------------------
    entry("view(Tensor self, IntList size)",
          self=lambda grad, self_shape: grad.view(self_shape)),
    entry("expand(Tensor self, IntList size)",
          self=lambda grad, self_shape: F.reduce_to(grad, self_shape)),
    entry("squeeze(Tensor self)",
          self=lambda grad, self_shape: F.unsqueeze_to(grad, self_shape)),
    entry("squeeze(Tensor self, int64_t dim)",
          self=lambda grad, dim, self_shape: F.maybe_unsqueeze(grad, dim, self_shape)),
    entry("unsqueeze(Tensor self, int64_t dim)",
          self=lambda grad, dim: grad.squeeze(dim)),
    entry("transpose(Tensor self, int64_t dim0, int64_t dim1)",
          self=lambda grad, dim0, dim1: grad.transpose(dim0, dim1)),
    entry("t(Tensor self)",
          self=lambda grad: grad.t()),
    entry("permute(Tensor self, IntList dims)",
          self=lambda grad, dims: F.permute_backwards(grad, dims)),
    entry("narrow(Tensor self, int64_t dim, int64_t start, int64_t length)",
          self=lambda grad, dim, start, self_shape:
              F.unnarrow(grad, dim, start % self_shape[dim], self_shape[dim])),
    entry("_unnarrow(Tensor self, int64_t dim, int64_t offset, int64_t dim_size)",
          self=lambda grad, dim, offset, self_shape: grad.narrow(dim, offset, self_shape[dim])),
    entry("select(Tensor self, int64_t dim, int64_t index)",
          self=lambda grad, dim, index, self_shape: F.select_backward(grad, dim, index, self_shape)),
    entry("cat(TensorList tensors, int64_t dim)",
          tensors=lambda grad, tensors_shape, dim: F.cat_tensors_backward(grad, tensors_shape, dim)),
    entry("split(Tensor self, int64_t split_size, int64_t dim) -> TensorList",
          self=lambda grads, dim: F.split_backward(grads, dim)),
    entry("flip(Tensor self, IntList dims)",
          self=lambda grad, dims: grad.flip(dims)),
    entry("diagonal(Tensor self, int64_t offset, int64_t dim1, int64_t dim2)",
          self=lambda grad, self_shape, offset, dim1, dim2:
              ops.diagonal_backward(grad, self_shape, offset, dim1, dim2)),
    entry("diagonal_backward(Tensor grad_output, IntList input_sizes, int64_t offset, int64_t dim1, int64_t dim2)",
          grad_output=lambda grad, offset, dim1, dim2: grad.diagonal(offset, dim1, dim2)),
    entry("tril(Tensor self, int64_t diagonal)",
          self=lambda grad, diagonal: grad.tril(diagonal)),
    entry("triu(Tensor self, int64_t diagonal)",
          self=lambda grad, diagonal: grad.triu(diagonal)),

    # -------------------------------------------------------------------------
    # Indexing
    # -------------------------------------------------------------------------
    entry("index_select(Tensor self, int64_t dim, IndexTensor index)",
          self=lambda grad, dim, index, self_shape:
              ops.zeros(self_shape, dtype=grad.dtype).index_add(dim, index, grad)),
    entry("index_add(Tensor self, int64_t dim, IndexTensor index, Tensor source)",
          self=lambda grad: grad,
          source=lambda grad, dim, index: grad.index_select(dim, index)),
    entry("gather(Tensor self, int64_t dim, IndexTensor index)",
          self=lambda grad, dim, index, self_shape:
              ops.zeros(self_shape, dtype=grad.dtype).scatter_add(dim, index, grad)),
    entry("scatter(Tensor self, int64_t dim, IndexTensor index, Tensor src)",
          self=lambda grad, dim, index: grad.scatter(dim, index, 0),
          src=lambda grad, dim, index, src_shape: F.pad_to(grad.gather(dim, index), src_shape)),
    entry("scatter(Tensor self, int64_t dim, IndexTensor index, Scalar value)",
          self=lambda grad, dim, index: grad.scatter(dim, index, 0)),
    entry("scatter_add(Tensor self, int64_t dim, IndexTensor index, Tensor src)",
          self=lambda grad: grad,
          src=lambda grad, dim, index, src_shape: F.pad_to(grad.gather(dim, index), src_shape)),
    entry("masked_fill(Tensor self, BoolTensor mask, Scalar value)",
          self=lambda grad, mask: grad.masked_fill(mask, 0)),
    entry("masked_fill(Tensor self, BoolTensor mask, Tensor value)",
          self=lambda grad, mask: grad.masked_fill(mask, 0),
          value=lambda grad, mask: ops.where(mask, grad, ops.zeros_like(grad)).sum()),
    entry("masked_select(Tensor self, BoolTensor mask)",
          self=lambda grad, mask, self_shape:
              ops.zeros(self_shape, dtype=grad.dtype).masked_scatter(mask, grad)),
    entry("masked_scatter(Tensor self, BoolTensor mask, Tensor source)",
          self=lambda grad, mask: grad.masked_fill(mask, 0),
          source=lambda grad, mask, source_shape: F.masked_scatter_backward(grad, mask, source_shape)),
    entry("take(Tensor self, IndexTensor index)",
          self=lambda grad, index, self_shape:
              ops.zeros(self_shape, dtype=grad.dtype).put(index, grad, True)),
    entry("put(Tensor self, IndexTensor index, Tensor source, bool accumulate)",
          self=lambda grad, index, source, accumulate:
              grad if accumulate else grad.put(index, ops.zeros_like(source), False),
          source=lambda grad, index, source_shape: grad.take(index).view(source_shape)),

    # -------------------------------------------------------------------------
    # Linear algebra
    # -------------------------------------------------------------------------
    entry("mm(Tensor self, Tensor mat2)",
          self=lambda grad, mat2: F.mm_mat1_backward(grad, mat2),
          mat2=lambda grad, self: F.mm_mat2_backward(grad, self)),
    entry("mv(Tensor self, Tensor vec)",
          self=lambda grad, vec: ops.ger(grad, vec),
          vec=lambda grad, self: self.t().mv(grad)),
    entry("dot(Tensor self, Tensor tensor)",
          self=lambda grad, tensor: grad * tensor,
          tensor=lambda grad, self: grad * self),
    entry("bmm(Tensor self, Tensor mat2)",
          self=lambda grad, mat2: grad.bmm(mat2.transpose(1, 2)),
          mat2=lambda grad, self: self.transpose(1, 2).bmm(grad)),
    entry("ger(Tensor self, Tensor vec2)",
          self=lambda grad, vec2: grad.mv(vec2),
          vec2=lambda grad, self: grad.t().mv(self)),
    entry("addmm(Tensor self, Tensor mat1, Tensor mat2, *, Scalar beta, Scalar alpha)",
          self=lambda grad, beta, self_shape: F.reduce_to(F.maybe_multiply(grad, beta), self_shape),
          mat1=lambda grad, mat2, alpha: F.mm_mat1_backward(grad, mat2, alpha),
          mat2=lambda grad, mat1, alpha: F.mm_mat2_backward(grad, mat1, alpha)),
    entry("addmv(Tensor self, Tensor mat, Tensor vec, *, Scalar beta, Scalar alpha)",
          self=lambda grad, beta, self_shape: F.reduce_to(F.maybe_multiply(grad, beta), self_shape),
          mat=lambda grad, vec, alpha: F.maybe_multiply(ops.ger(grad, vec), alpha),
          vec=lambda grad, mat, alpha: F.maybe_multiply(mat.t().mv(grad), alpha)),
    entry("addr(Tensor self, Tensor vec1, Tensor vec2, *, Scalar beta, Scalar alpha)",
          self=lambda grad, beta, self_shape: F.reduce_to(F.maybe_multiply(grad, beta), self_shape),
          vec1=lambda grad, vec2, alpha: F.maybe_multiply(grad.mv(vec2), alpha),
          vec2=lambda grad, vec1, alpha: F.maybe_multiply(grad.t().mv(vec1), alpha)),
    entry("inverse(Tensor self)",
          self=lambda grad, result: -result.t().mm(grad).mm(result.t())),
    entry("qr(Tensor self) -> (Tensor Q, Tensor R)",
          self=not_implemented("qr")),
    entry("svd(Tensor self, bool some) -> (Tensor U, Tensor S, Tensor V)",
          self=not_implemented("svd")),
    entry("symeig(Tensor self, bool eigenvectors, bool upper) -> (Tensor eigenvalues, Tensor V)",
          self=not_implemented("symeig")),

    # -------------------------------------------------------------------------
    # Neural network primitives
    # -------------------------------------------------------------------------
    entry("relu(Tensor self)",
          self=lambda grad, self: ops.threshold_backward(grad, self, 0)),
    entry("threshold(Tensor self, Scalar threshold, Scalar value)",
          self=lambda grad, self, threshold: ops.threshold_backward(grad, self, threshold)),
    entry("leaky_relu(Tensor self, Scalar negative_slope)",
          self=lambda grad, self, negative_slope: ops.leaky_relu_backward(grad, self, negative_slope)),
    entry("elu(Tensor self, Scalar alpha)",
          self=lambda grad, alpha, result: ops.elu_backward(grad, alpha, result)),
    entry("hardtanh(Tensor self, Scalar min_val, Scalar max_val)",
          self=lambda grad, self, min_val, max_val: ops.hardtanh_backward(grad, self, min_val, max_val)),
    entry("softplus(Tensor self, Scalar beta, Scalar threshold)",
          self=lambda grad, self, beta, threshold: ops.softplus_backward(grad, self, beta, threshold)),
    entry("softshrink(Tensor self, Scalar lambd)",
          self=lambda grad, self, lambd: ops.softshrink_backward(grad, self, lambd)),
    entry("hardshrink(Tensor self, Scalar lambd)",
          self=lambda grad, self, lambd: ops.hardshrink_backward(grad, self, lambd)),
    entry("log_sigmoid(Tensor self)",
          self=lambda grad, self: ops.log_sigmoid_backward(grad, self)),
    entry("softmax(Tensor self, int64_t dim)",
          self=lambda grad, result, dim: ops.softmax_backward(grad, result, dim)),
    entry("log_softmax(Tensor self, int64_t dim)",
          self=lambda grad, result, dim: ops.log_softmax_backward(grad, result, dim)),
    entry("prelu(Tensor self, Tensor weight)", {
        "self, weight": lambda grad, self, weight, grad_input_mask:
            F.prelu_backward(grad, self, weight, grad_input_mask),
    }),
    entry("mse_loss(Tensor self, Tensor target, bool size_average, bool reduce)",
          self=lambda grad, self, target, size_average, reduce:
              ops.mse_loss_backward(grad, self, target, size_average, reduce),
          target=lambda grad, self, target, size_average, reduce:
              -ops.mse_loss_backward(grad, self, target, size_average, reduce)),
    entry("l1_loss(Tensor self, Tensor target, bool size_average, bool reduce)",
          self=lambda grad, self, target, size_average, reduce:
              ops.l1_loss_backward(grad, self, target, size_average, reduce),
          target=lambda grad, self, target, size_average, reduce:
              -ops.l1_loss_backward(grad, self, target, size_average, reduce)),
    entry("avg_pool2d(Tensor self, IntList kernel_size, IntList stride, IntList padding, bool ceil_mode, bool count_include_pad)",
          self=lambda grad, self, kernel_size, stride, padding, ceil_mode, count_include_pad:
              ops.avg_pool2d_backward(grad, self, kernel_size, stride, padding, ceil_mode, count_include_pad)),
    entry("max_pool2d(Tensor self, IntList kernel_size, IntList stride, IntList padding, IntList dilation, bool ceil_mode) -> (Tensor output, IndexTensor indices)",
          self=lambda grad, self, kernel_size, stride, padding, dilation, ceil_mode, indices:
              ops.max_pool2d_backward(grad, self, kernel_size, stride, padding, dilation, ceil_mode, indices)),

    # -------------------------------------------------------------------------
    # NN double backwards support
    # -------------------------------------------------------------------------
    entry("_sigmoid_backward(Tensor grad_output, Tensor output)",
          grad_output=lambda grad, output: ops._sigmoid_backward(grad, output),
          output=lambda grad, grad_output, output: grad * grad_output * (-2 * output + 1)),
    entry("_tanh_backward(Tensor grad_output, Tensor output)",
          grad_output=lambda grad, output: ops._tanh_backward(grad, output),
          output=lambda grad, grad_output, output: -2 * output * grad * grad_output),
    entry("threshold_backward(Tensor grad_output, Tensor self, Scalar threshold)",
          grad_output=lambda grad, self, threshold: ops.threshold_backward(grad, self, threshold),
          self=lambda grad: ops.zeros_like(grad)),
    entry("leaky_relu_backward(Tensor grad_output, Tensor self, Scalar negative_slope)",
          grad_output=lambda grad, self, negative_slope: ops.leaky_relu_backward(grad, self, negative_slope),
          self=lambda grad: ops.zeros_like(grad)),
    entry("elu_backward(Tensor grad_output, Scalar alpha, Tensor output)",
          grad_output=lambda grad, alpha, output: ops.elu_backward(grad, alpha, output),
          output=lambda grad, grad_output, output:
              ops.where(output > 0, ops.zeros_like(grad), grad * grad_output)),
    entry("hardtanh_backward(Tensor grad_output, Tensor self, Scalar min_val, Scalar max_val)",
          grad_output=lambda grad, self, min_val, max_val: ops.hardtanh_backward(grad, self, min_val, max_val),
          self=lambda grad: ops.zeros_like(grad)),
    entry("softplus_backward(Tensor grad_output, Tensor self, Scalar beta, Scalar threshold)",
          grad_output=lambda grad, self, beta, threshold: ops.softplus_backward(grad, self, beta, threshold),
          self=lambda grad, grad_output, self, beta, threshold:
              F.softplus_double_backward(grad * grad_output, self, beta, threshold)),
    entry("softshrink_backward(Tensor grad_output, Tensor self, Scalar lambd)",
          grad_output=lambda grad, self, lambd: ops.softshrink_backward(grad, self, lambd),
          self=lambda grad: ops.zeros_like(grad)),
    entry("hardshrink_backward(Tensor grad_output, Tensor self, Scalar lambd)",
          grad_output=lambda grad, self, lambd: ops.hardshrink_backward(grad, self, lambd),
          self=lambda grad: ops.zeros_like(grad)),
    entry("log_sigmoid_backward(Tensor grad_output, Tensor self)",
          grad_output=lambda grad, self: ops.log_sigmoid_backward(grad, self),
          self=lambda grad, grad_output, self: F.log_sigmoid_double_backward(grad * grad_output, self)),
    entry("softmax_backward(Tensor grad_output, Tensor output, int64_t dim)",
          grad_output=lambda grad, output, dim: ops.softmax_backward(grad, output, dim),
          output=lambda grad, grad_output, output, dim: F.softmax_double_backward(grad, output, dim, grad_output)),
    entry("log_softmax_backward(Tensor grad_output, Tensor output, int64_t dim)",
          grad_output=lambda grad, output, dim: grad - (grad * output.exp()).sum(dim, True),
          output=lambda grad, grad_output, output, dim: -grad * output.exp() * grad_output.sum(dim, True)),
    entry("mse_loss_backward(Tensor grad_output, Tensor self, Tensor target, bool size_average, bool reduce)",
          grad_output=lambda grad, self, target, size_average, reduce:
              F.mse_loss_double_backward_grad_output(grad, self, target, size_average, reduce),
          self=lambda grad, grad_output, self, size_average, reduce:
              F.mse_loss_double_backward(grad * grad_output, self, size_average, reduce),
          target=lambda grad, grad_output, self, size_average, reduce:
              -F.mse_loss_double_backward(grad * grad_output, self, size_average, reduce)),
    entry("l1_loss_backward(Tensor grad_output, Tensor self, Tensor target, bool size_average, bool reduce)",
          grad_output=lambda grad, self, target, size_average, reduce:
              F.l1_loss_double_backward_grad_output(grad, self, target, size_average, reduce),
          self=lambda grad: ops.zeros_like(grad),
          target=lambda grad: ops.zeros_like(grad)),
    entry("avg_pool2d_backward(Tensor grad_output, Tensor self, IntList kernel_size, IntList stride, IntList padding, bool ceil_mode, bool count_include_pad)",
          grad_output=lambda grad, kernel_size, stride, padding, ceil_mode, count_include_pad:
              ops.avg_pool2d(grad, kernel_size, stride, padding, ceil_mode, count_include_pad),
          self=lambda grad, self: ops.zeros_like(self)),
    entry("max_pool2d_backward(Tensor grad_output, Tensor self, IntList kernel_size, IntList stride, IntList padding, IntList dilation, bool ceil_mode, IndexTensor indices)",
          grad_output=lambda grad, indices: F.max_pool2d_double_backward(grad, indices),
          self=lambda grad, self: ops.zeros_like(self)),

    # -------------------------------------------------------------------------
    # Random sampling with unverified zero gradients
    # -------------------------------------------------------------------------
    entry("geometric(Tensor self, double p)",
          self=bogus_zero("geometric")),
    entry("log_normal(Tensor self, double mean, double std)",
          self=bogus_zero("log_normal")),

    # -------------------------------------------------------------------------
    # Never differentiated
    # -------------------------------------------------------------------------
    fallthrough("zeros(IntList size, *, ScalarType dtype)"),
    fallthrough("ones(IntList size, *, ScalarType dtype)"),
    fallthrough("zeros_like(Tensor self)"),
    fallthrough("ones_like(Tensor self)"),
    fallthrough("arange(Scalar start, Scalar end, Scalar step, *, ScalarType dtype)"),
    fallthrough("eye(int64_t n, *, ScalarType dtype)"),
    fallthrough("rand(IntList size, *, ScalarType dtype)"),
    fallthrough("randn(IntList size, *, ScalarType dtype)"),
    fallthrough("bernoulli(Tensor self)"),
    fallthrough("eq(Tensor self, Tensor other) -> BoolTensor"),
    fallthrough("eq(Tensor self, Scalar other) -> BoolTensor"),
    fallthrough("ne(Tensor self, Tensor other) -> BoolTensor"),
    fallthrough("ne(Tensor self, Scalar other) -> BoolTensor"),
    fallthrough("lt(Tensor self, Tensor other) -> BoolTensor"),
    fallthrough("lt(Tensor self, Scalar other) -> BoolTensor"),
    fallthrough("le(Tensor self, Tensor other) -> BoolTensor"),
    fallthrough("le(Tensor self, Scalar other) -> BoolTensor"),
    fallthrough("gt(Tensor self, Tensor other) -> BoolTensor"),
    fallthrough("gt(Tensor self, Scalar other) -> BoolTensor"),
    fallthrough("ge(Tensor self, Tensor other) -> BoolTensor"),
    fallthrough("ge(Tensor self, Scalar other) -> BoolTensor"),
    fallthrough("logical_not(BoolTensor self) -> BoolTensor"),
    fallthrough("logical_and(BoolTensor self, BoolTensor other) -> BoolTensor"),
    fallthrough("logical_or(BoolTensor self, BoolTensor other) -> BoolTensor"),
    fallthrough("all(BoolTensor self) -> bool"),
    fallthrough("any(BoolTensor self) -> bool"),
    fallthrough("equal(Tensor self, Tensor other) -> bool"),
    fallthrough("is_same_size(Tensor self, Tensor other) -> bool"),
    fallthrough("numel(Tensor self) -> int64_t"),
    fallthrough("size(Tensor self, int64_t dim) -> int64_t"),
    fallthrough("nonzero(Tensor self) -> IndexTensor"),
    fallthrough("argsort(Tensor self, int64_t dim, bool descending) -> IndexTensor"),
]
