"""Test expression construction and shape inference."""

from concurrent.futures import ThreadPoolExecutor

import jax
import jax.numpy as jnp
import numpy as np
import pytest

import dcpjax as dj
from dcpjax.expressions import (
    ArrayData,
    Atom,
    ExprKind,
    IndexRange,
    collect_variables,
    has_variables,
    new_expr_id,
    ravel_column_major,
    reset_expr_ids,
    unravel_column_major,
    variables,
)
from dcpjax.sparse import csc_identity
from dcpjax.utils.shapes import broadcast_shapes, check_static_shape, shape_to_string


class TestShapes:
    """Test shape helpers."""

    def setup_method(self):
        """Set up test environment."""
        jax.config.update("jax_enable_x64", True)
        reset_expr_ids()

    def test_broadcast_is_symmetric(self):
        """Broadcasting gives the same result in either order."""
        cases = [((), (3,)), ((3,), (3,)), ((2, 3), (1, 3)), ((2, 1), (2, 4)), ((1, 1), (2, 2))]
        for a, b in cases:
            assert broadcast_shapes(a, b) == broadcast_shapes(b, a)

    def test_broadcast_rules(self):
        assert broadcast_shapes((), (2, 3)) == (2, 3)
        assert broadcast_shapes((2, 1), (2, 4)) == (2, 4)
        assert broadcast_shapes((3,), (4,)) is None
        assert broadcast_shapes((3,), (3, 1)) is None

    def test_static_shape_validation(self):
        check_static_shape((2, 3))
        with pytest.raises(ValueError):
            check_static_shape((2, 3, 4))
        with pytest.raises(ValueError):
            check_static_shape((-1,))
        with pytest.raises(ValueError):
            check_static_shape((2.0,))

    def test_shape_to_string(self):
        assert shape_to_string(()) == "scalar"
        assert shape_to_string((3,)) == "(3,)"
        assert shape_to_string((2, 3)) == "(2, 3)"


class TestExpressions:
    """Test expression nodes and operator overloading."""

    def setup_method(self):
        """Set up test environment."""
        jax.config.update("jax_enable_x64", True)
        reset_expr_ids()

    def test_variable_creation(self):
        """Variables get fresh ids and normalized shapes."""
        x = dj.Variable(3, name="x")
        y = dj.Variable(shape=(2, 2), nonneg=True)
        assert x.shape == (3,)
        assert y.size == 4
        assert x.id != y.id
        assert y.nonneg and not y.nonpos

    def test_reset_expr_ids(self):
        """Resetting the allocator restarts numbering."""
        first = dj.Variable(1).id
        reset_expr_ids()
        assert dj.Variable(1).id == first

    def test_concurrent_id_allocation(self):
        """Ids stay unique when many threads allocate at once."""
        def allocate(_):
            return [new_expr_id() for _ in range(500)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            batches = list(pool.map(allocate, range(16)))
        ids = [i for batch in batches for i in batch]
        assert len(ids) == 16 * 500
        assert len(set(ids)) == len(ids)

    def test_constant_helpers(self):
        assert dj.zeros(3).shape == (3,)
        assert dj.ones(2, 3).shape == (2, 3)
        assert jnp.allclose(dj.ones(2, 3).value.to_array(), jnp.ones((2, 3)))
        assert jnp.allclose(dj.zeros(2, 2).value.to_array(), 0.0)
        assert jnp.allclose(dj.eye(3).value.to_array(), jnp.eye(3))
        assert isinstance(dj.eye(2), dj.Constant)

    def test_constant_payloads(self):
        """Constants wrap scalars, arrays and sparse matrices."""
        assert dj.Constant(2.0).value.kind == "scalar"
        dense = dj.Constant(jnp.array([[1.0, 2.0], [3.0, 4.0]]))
        assert dense.value.kind == "dense"
        assert dense.shape == (2, 2)
        # Stored column-major.
        assert jnp.allclose(dense.value.to_flat(), jnp.array([1.0, 3.0, 2.0, 4.0]))
        sparse = dj.Constant(csc_identity(3))
        assert sparse.value.kind == "sparse"
        assert sparse.shape == (3, 3)

    def test_array_data_round_trip(self):
        value = np.arange(6.0).reshape(2, 3)
        data = ArrayData.from_value(value)
        assert data.size == 6
        assert jnp.allclose(data.to_array(), value)

    def test_column_major_helpers(self):
        X = jnp.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
        flat = ravel_column_major(X)
        assert jnp.allclose(flat, jnp.array([1.0, 4.0, 2.0, 5.0, 3.0, 6.0]))
        assert jnp.allclose(unravel_column_major(flat, (2, 3)), X)

    def test_operator_overloading(self):
        """Python operators build atoms of the right kind and shape."""
        x = dj.Variable((3,))
        A = jnp.ones((2, 3))

        assert (x + 1).kind == ExprKind.ADD
        assert (2 * x).kind == ExprKind.MUL
        assert (x / 2).kind == ExprKind.DIV
        assert dj.matmul(A, x).shape == (2,)
        assert (-x).kind == ExprKind.NEG
        assert (x - 1).shape == (3,)

    def test_double_negation_cancels(self):
        x = dj.Variable((3,))
        assert -(-x) is x

    def test_double_transpose_cancels(self):
        X = dj.Variable((2, 3))
        assert X.T.shape == (3, 2)
        assert X.T.T is X

    def test_single_argument_stacks_return_argument(self):
        x = dj.Variable((3,))
        assert dj.vstack(x) is x
        assert dj.hstack(x) is x
        assert dj.maximum(x) is x
        assert dj.minimum(x) is x

    def test_power_simplifications(self):
        x = dj.Variable((3,))
        assert dj.power(x, 1) is x
        ones = dj.power(x, 0)
        assert isinstance(ones, dj.Constant)
        assert ones.shape == (3,)
        assert dj.square(x).p == 2.0

    def test_add_shape_mismatch(self):
        """Incompatible shapes raise ShapeError eagerly."""
        with pytest.raises(dj.ShapeError):
            dj.Variable((3,)) + dj.Variable((4,))

    def test_matmul_shapes(self):
        X = dj.Variable((3, 4))
        assert dj.matmul(jnp.ones((2, 3)), X).shape == (2, 4)
        assert dj.matmul(X, jnp.ones(4)).shape == (3,)
        assert dj.matmul(jnp.ones(3), X).shape == (4,)
        with pytest.raises(dj.ShapeError):
            dj.matmul(jnp.ones((2, 2)), X)

    def test_reduction_shapes(self):
        X = dj.Variable((3, 4))
        assert dj.sum(X).shape == ()
        assert dj.sum(X, axis=0).shape == (4,)
        assert dj.sum(X, axis=1).shape == (3,)
        assert dj.norm1(X).shape == ()
        assert dj.cumsum(X, axis=1).shape == (3, 4)
        with pytest.raises(dj.ShapeError):
            dj.sum(X, axis=2)

    def test_cumsum_axis_validation(self):
        X = dj.Variable((3, 4))
        x = dj.Variable(3)
        assert dj.cumsum(x).shape == (3,)
        assert dj.cumsum(dj.Variable(())).shape == ()
        with pytest.raises(dj.ShapeError):
            dj.cumsum(x, axis=1)
        with pytest.raises(dj.ShapeError):
            dj.cumsum(X, axis=2)
        with pytest.raises(dj.ShapeError):
            dj.cumsum(X, axis=-1)

    def test_reshape(self):
        X = dj.Variable((2, 3))
        assert dj.reshape(X, (3, 2)).shape == (3, 2)
        assert dj.reshape(X, 6).shape == (6,)
        with pytest.raises(dj.ShapeError):
            dj.reshape(X, (4, 2))

    def test_stack_shapes(self):
        x, y = dj.Variable((2,)), dj.Variable((3,))
        assert dj.vstack(x, y).shape == (5,)
        assert dj.hstack(dj.Variable((2,)), dj.Variable((2,))).shape == (2, 2)
        assert dj.vstack(dj.Variable((2, 3)), dj.Variable((1, 3))).shape == (3, 3)
        with pytest.raises(dj.ShapeError):
            dj.vstack(dj.Variable((2, 3)), dj.Variable((2, 2)))
        with pytest.raises(ValueError):
            dj.vstack()

    def test_indexing(self):
        """Indexing accepts ints, slices and ranges, and checks bounds."""
        X = dj.Variable((3, 4))
        assert X[0].shape == (4,)
        assert X[0, 1:3].shape == (2,)
        assert X[:, 2].shape == (3,)
        assert X[-1, :].shape == (4,)
        assert dj.index(X, (0, 2), "all").shape == (2, 4)
        assert dj.index(X, IndexRange.single(1), IndexRange.range(0, 2)).shape == (2,)
        with pytest.raises(dj.ShapeError):
            X[3]
        with pytest.raises(dj.ShapeError):
            dj.index(X, (2, 5))

    def test_empty_range(self):
        x = dj.Variable(3)
        X = dj.Variable((3, 4))
        assert x[1:1].shape == (0,)
        assert x[1:1].size == 0
        assert X[2:2, :].shape == (0, 4)
        assert dj.index(x, (0, 0)).shape == (0,)

    def test_trace_requires_square(self):
        with pytest.raises(dj.ShapeError):
            dj.trace(dj.Variable((2, 3)))
        assert dj.trace(dj.Variable((3, 3))).shape == ()

    def test_quad_form_shape_checks(self):
        x = dj.Variable((2,))
        assert dj.quad_form(x, jnp.eye(2)).shape == ()
        with pytest.raises(dj.ShapeError):
            dj.quad_form(x, jnp.eye(3))
        with pytest.raises(dj.ShapeError):
            dj.quad_over_lin(x, dj.Variable((2,)))

    def test_dot(self):
        x = dj.Variable((3,))
        expr = dj.dot(jnp.array([1.0, 2.0, 3.0]), x)
        assert expr.shape == ()
        with pytest.raises(dj.ShapeError):
            dj.dot(x, dj.Variable((2,)))

    def test_norm_orders(self):
        x = dj.Variable((3,))
        assert dj.norm(x, 1).kind == ExprKind.NORM1
        assert dj.norm(x).kind == ExprKind.NORM2
        assert dj.norm(x, "inf").kind == ExprKind.NORM_INF
        with pytest.raises(ValueError):
            dj.norm(x, 3)

    def test_variable_discovery_order(self):
        """Variables are reported in first-appearance order without duplicates."""
        x, y, z = dj.Variable(2), dj.Variable(2), dj.Variable(2)
        expr = y + dj.norm2(x) * 1.0 + y - z
        assert variables(expr) == [y.id, x.id, z.id]
        assert list(collect_variables(expr).values()) == [y, x, z]
        assert has_variables(expr)
        assert not has_variables(dj.Constant(1.0) + 2.0)

    def test_comparisons_build_constraints(self):
        x = dj.Variable((3,))
        assert isinstance(x >= 1, dj.Constraint)
        assert isinstance(x <= 1, dj.Constraint)
        assert isinstance(x == 1, dj.Constraint)
        assert isinstance(Atom(ExprKind.SUM, (x,)), dj.Expression)
