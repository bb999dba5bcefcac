"""
Unit Tests: Backward Helpers
============================

The shape-reconciliation helpers undo what a forward operation did to a
tensor's shape, so a gradient always comes back in its input's shape.

Test coverage:
- reduce_to / unnarrow / pad_to / unsqueeze_to / maybe_unsqueeze
- sum_backward / mean_backward / select_backward and index scatter
- Tie splitting for full max/min/median reductions
- ShapeMismatch on inconsistent shapes
- Helpers stay differentiable

Run with: pytest tests/test_functions.py -v
"""

import math

import numpy as np
import pytest

from tablegrad import ShapeMismatch, Variable, ops
from tablegrad import functions as F

TOLERANCE = 1e-12


def assert_close(actual, expected, tol: float = TOLERANCE) -> None:
    actual = np.asarray(actual, dtype=np.float64)
    expected = np.asarray(expected, dtype=np.float64)
    assert actual.shape == expected.shape, f"Shapes differ: {actual.shape} vs {expected.shape}"
    diff = np.max(np.abs(actual - expected)) if actual.size else 0.0
    assert diff < tol, f"Values differ: {actual} vs {expected} (diff={diff})"


def var(data) -> Variable:
    return Variable(np.asarray(data, dtype=np.float64))


def arange(*shape) -> Variable:
    return var(np.arange(int(np.prod(shape)), dtype=np.float64).reshape(shape))


# =============================================================================
# Shape reconciliation
# =============================================================================

class TestReduceTo:
    """Broadcast gradients are summed back to the input shape."""

    def test_same_shape_is_untouched(self) -> None:
        g = arange(2, 3)
        assert F.reduce_to(g, (2, 3)) is g

    def test_leading_and_size_one_dims(self) -> None:
        g = arange(4, 2, 3)
        out = F.reduce_to(g, (2, 1))
        assert out.shape == (2, 1)
        assert_close(out.data, g.data.sum(axis=0).sum(axis=1, keepdims=True))

    def test_size_one_dims_of_same_rank(self) -> None:
        g = arange(4, 2, 3)
        out = F.reduce_to(g, (1, 2, 1))
        assert out.shape == (1, 2, 1)
        assert_close(out.data, g.data.sum(axis=(0, 2), keepdims=True))

    def test_non_broadcastable_target(self) -> None:
        with pytest.raises(ShapeMismatch):
            F.reduce_to(arange(4, 2, 3), (2, 1, 3))

    def test_to_scalar(self) -> None:
        out = F.reduce_to(arange(2, 3), ())
        assert out.shape == ()
        assert_close(out.data, 15.0)

    def test_incompatible_shape(self) -> None:
        with pytest.raises(ShapeMismatch):
            F.reduce_to(arange(2, 3), (4,))

    def test_maybe_multiply(self) -> None:
        g = arange(3)
        assert F.maybe_multiply(g, 1) is g
        assert_close(F.maybe_multiply(g, 2.5).data, [0.0, 2.5, 5.0])


class TestUnnarrow:
    """unnarrow places a gradient back into a zero tensor of the full size."""

    def test_inverse_of_narrow(self) -> None:
        x = arange(5, 2)
        narrowed = x.narrow(0, 1, 3)
        back = F.unnarrow(narrowed, 0, 1, 5)
        assert back.shape == (5, 2)
        expected = x.data.copy()
        expected[[0, 4]] = 0.0
        assert_close(back.data, expected)

    def test_negative_dim(self) -> None:
        back = F.unnarrow(var([[1.0], [2.0]]), -1, 2, 3)
        assert_close(back.data, [[0.0, 0.0, 1.0], [0.0, 0.0, 2.0]])

    def test_out_of_range(self) -> None:
        with pytest.raises(ShapeMismatch):
            F.unnarrow(arange(3), 0, 3, 5)
        with pytest.raises(ShapeMismatch):
            F.unnarrow(arange(3), 0, -1, 5)

    def test_pad_to(self) -> None:
        out = F.pad_to(var([[1.0, 2.0], [3.0, 4.0]]), (3, 4))
        assert out.shape == (3, 4)
        assert_close(out.data[:2, :2], [[1.0, 2.0], [3.0, 4.0]])
        assert out.data[2:].sum() == 0.0
        assert out.data[:, 2:].sum() == 0.0

    def test_pad_to_wrong_rank(self) -> None:
        with pytest.raises(ShapeMismatch):
            F.pad_to(arange(2, 2), (2, 2, 1))


class TestUnsqueeze:
    """Squeezed dimensions come back where they were."""

    def test_unsqueeze_to(self) -> None:
        x = arange(1, 3, 1, 2)
        squeezed = x.squeeze()
        assert squeezed.shape == (3, 2)
        back = F.unsqueeze_to(squeezed, (1, 3, 1, 2))
        assert back.shape == (1, 3, 1, 2)
        assert_close(back.data, x.data)

    def test_unsqueeze_to_wrong_shape(self) -> None:
        with pytest.raises(ShapeMismatch):
            F.unsqueeze_to(arange(3, 2), (1, 2, 1, 3))

    def test_maybe_unsqueeze(self) -> None:
        g = arange(3)
        assert F.maybe_unsqueeze(g, 1, (3, 1)).shape == (3, 1)
        assert F.maybe_unsqueeze(g, -1, (3, 1)).shape == (3, 1)
        assert F.maybe_unsqueeze(g, 0, (3,)) is g
        scalar = var(2.0)
        assert F.maybe_unsqueeze(scalar, 0, ()) is scalar


# =============================================================================
# Reductions and selection
# =============================================================================

class TestReductionInverses:
    """Reduced gradients are broadcast back over the reduced dimensions."""

    def test_sum_backward(self) -> None:
        g = var([1.0, 2.0, 3.0])
        out = F.sum_backward(g, (2, 3, 4), [0, 2], False)
        assert out.shape == (2, 3, 4)
        assert_close(out.data, np.broadcast_to(g.data[None, :, None], (2, 3, 4)))

    def test_sum_backward_keepdim(self) -> None:
        g = var([[1.0], [2.0]])
        out = F.sum_backward(g, (2, 3), [-1], True)
        assert_close(out.data, [[1.0] * 3, [2.0] * 3])

    def test_mean_backward(self) -> None:
        out = F.mean_backward(var(8.0), (2, 4))
        assert_close(out.data, np.ones((2, 4)))

        out = F.mean_backward(var([4.0, 8.0]), (2, 4), [1], False)
        assert_close(out.data, [[1.0] * 4, [2.0] * 4])

    def test_select_backward(self) -> None:
        out = F.select_backward(var([1.0, 2.0, 3.0]), 0, -1, (4, 3))
        expected = np.zeros((4, 3))
        expected[3] = [1.0, 2.0, 3.0]
        assert_close(out.data, expected)

    def test_select_backward_middle_dim(self) -> None:
        out = F.select_backward(var([[5.0], [6.0]]), 1, 2, (2, 3, 1))
        assert out.shape == (2, 3, 1)
        assert_close(out.data[:, 2, 0], [5.0, 6.0])
        assert out.data[:, :2].sum() == 0.0

    def test_index_reduce_backward(self) -> None:
        indices = Variable(np.array([2, 0], dtype=np.int64))
        out = F.index_reduce_backward(var([7.0, 9.0]), 1, indices, (2, 3), False)
        assert_close(out.data, [[0.0, 0.0, 7.0], [9.0, 0.0, 0.0]])

    def test_single_extremum_takes_all(self) -> None:
        x = var([1.0, 4.0, 2.0])
        out = F.select_backward_scalar(var(1.0), x, var(4.0))
        assert_close(out.data, [0.0, 1.0, 0.0])

    def test_ties_split_evenly(self) -> None:
        x = var([[1.0, 3.0], [3.0, 2.0]])
        out = F.select_backward_scalar(var(2.0), x, var(3.0))
        assert_close(out.data, [[0.0, 1.0], [1.0, 0.0]])

    def test_ties_through_max(self) -> None:
        x = Variable(np.array([3.0, 1.0, 3.0, 3.0]), requires_grad=True)
        x.max().backward()
        assert_close(x.grad.data, [1 / 3, 0.0, 1 / 3, 1 / 3])


class TestSplitsAndPermutes:
    """Gradients of structural operations."""

    def test_cat_tensors_backward(self) -> None:
        g = arange(2, 5)
        first, second = F.cat_tensors_backward(g, [(2, 2), (2, 3)], 1)
        assert_close(first.data, g.data[:, :2])
        assert_close(second.data, g.data[:, 2:])

    def test_cat_tensors_backward_mismatch(self) -> None:
        with pytest.raises(ShapeMismatch):
            F.cat_tensors_backward(arange(2, 5), [(2, 2), (2, 2)], 1)

    def test_split_backward(self) -> None:
        out = F.split_backward([var([1.0, 2.0]), var([3.0])], 0)
        assert_close(out.data, [1.0, 2.0, 3.0])

    def test_permute_backwards(self) -> None:
        x = arange(2, 3, 4)
        permuted = x.permute(2, 0, 1)
        assert_close(F.permute_backwards(permuted, (2, 0, 1)).data, x.data)
        assert_close(F.permute_backwards(x.permute(1, 2, 0), (-2, -1, 0)).data, x.data)

    def test_cumsum_backward(self) -> None:
        assert_close(F.cumsum_backward(var(np.ones(4)), 0).data, [4.0, 3.0, 2.0, 1.0])

    def test_masked_scatter_backward(self) -> None:
        mask = Variable(np.array([[True, False], [False, True]]))
        out = F.masked_scatter_backward(var([[1.0, 2.0], [3.0, 4.0]]), mask, (3,))
        assert_close(out.data, [1.0, 4.0, 0.0])


# =============================================================================
# Elementwise helpers
# =============================================================================

class TestElementwiseHelpers:

    def test_pow_backward_zero_exponent(self) -> None:
        out = F.pow_backward(var([1.0, 2.0]), var([3.0, 0.0]), 0)
        assert_close(out.data, [0.0, 0.0])

    def test_pow_backward_exponent_with_scalar_base(self) -> None:
        result = var([2.0, 4.0])
        out = F.pow_backward_exponent(var([1.0, 1.0]), 2.0, result, (2,))
        assert_close(out.data, [2.0 * math.log(2.0), 4.0 * math.log(2.0)])

    def test_clamp_backward(self) -> None:
        x = var([-2.0, 0.0, 2.0])
        g = var([1.0, 1.0, 1.0])
        assert_close(F.clamp_backward(g, x, -1.0, 1.0).data, [0.0, 1.0, 0.0])
        assert_close(F.clamp_backward(g, x, None, 1.0).data, [1.0, 1.0, 0.0])
        assert F.clamp_backward(g, x, None, None) is g

    def test_infinity_norm_splits_ties(self) -> None:
        x = var([3.0, -3.0, 1.0])
        out = F.norm_backward(var(1.0), x, math.inf, var(3.0))
        assert_close(out.data, [0.5, -0.5, 0.0])

    def test_var_backward(self) -> None:
        data = np.array([1.0, 2.0, 4.0, 7.0])
        out = F.var_backward(var(1.0), var(data), True)
        assert_close(out.data, 2.0 / 3.0 * (data - data.mean()))


# =============================================================================
# Differentiability
# =============================================================================

class TestHelpersAreDifferentiable:
    """Helpers record graph nodes when their input requires grad."""

    def test_unnarrow_records(self) -> None:
        g = Variable(np.ones(3), requires_grad=True)
        out = F.unnarrow(g, 0, 1, 5)
        assert out.requires_grad
        (out * var([1.0, 2.0, 3.0, 4.0, 5.0])).sum().backward()
        assert_close(g.grad.data, [2.0, 3.0, 4.0])

    def test_reduce_to_records(self) -> None:
        g = Variable(np.ones((2, 3)), requires_grad=True)
        out = F.reduce_to(g, (3,))
        (out * var([1.0, 2.0, 3.0])).sum().backward()
        assert_close(g.grad.data, [[1.0, 2.0, 3.0]] * 2)

    def test_ties_stay_constant_in_the_mask(self) -> None:
        x = var([2.0, 2.0])
        g = Variable(np.array(1.0), requires_grad=True)
        out = F.select_backward_scalar(g, x, var(2.0))
        (out * var([1.0, 3.0])).sum().backward()
        assert_close(g.grad.data, 2.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
