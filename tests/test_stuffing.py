"""Test stuffing canonical problems into solver matrices."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from jax import tree_util

import dcpjax as dj
from dcpjax.canonicalize import AuxVariable, canonicalize_problem
from dcpjax.expressions import reset_expr_ids
from dcpjax.linexpr import lin_add, lin_constant, lin_variable
from dcpjax.sparse import csc_from_dense, csc_identity, csc_to_dense
from dcpjax.stuffing import (
    StuffedProblem,
    VariableMap,
    build_variable_map,
    stuff_lin_expr,
    stuff_problem,
)


def _stuff(objective, constraints=(), sense="minimize"):
    return stuff_problem(canonicalize_problem(objective, constraints, sense))


class TestVariableMap:
    """Test the column layout of stuffed variables."""

    def setup_method(self):
        """Set up test environment."""
        jax.config.update("jax_enable_x64", True)
        reset_expr_ids()

    def test_layout_order(self):
        x = dj.Variable((2,))
        X = dj.Variable((2, 2))
        aux = AuxVariable(id=100, size=3)
        var_map = build_variable_map([x, X], [aux])
        assert var_map.offsets == {x.id: (0, 2), X.id: (2, 4), 100: (6, 3)}
        assert var_map.total == 9
        assert var_map.slice(X.id) == slice(2, 6)
        assert 100 in var_map
        assert 7 not in var_map

    def test_duplicates_are_skipped(self):
        x = dj.Variable(2)
        var_map = build_variable_map([x, x])
        assert var_map.total == 2

    def test_extract_unravels_column_major(self):
        X = dj.Variable((2, 2))
        var_map = VariableMap({X.id: (1, 4)}, 5)
        value = var_map.extract(jnp.array([9.0, 1.0, 3.0, 2.0, 4.0]), X)
        assert jnp.allclose(value, jnp.array([[1.0, 2.0], [3.0, 4.0]]))


class TestStuffLinExpr:
    """Test row blocks built from LinExprs."""

    def setup_method(self):
        """Set up test environment."""
        jax.config.update("jax_enable_x64", True)
        self.var_map = VariableMap({1: (0, 2), 2: (2, 1)}, 3)

    def test_signs(self):
        lin = lin_add(lin_variable(2, 1), lin_constant([4.0]))
        A, b = stuff_lin_expr(lin, self.var_map)
        assert jnp.allclose(csc_to_dense(A), jnp.array([[0.0, 0.0, 1.0]]))
        assert jnp.allclose(b, jnp.array([-4.0]))

        A, b = stuff_lin_expr(lin, self.var_map, negate=True)
        assert jnp.allclose(csc_to_dense(A), jnp.array([[0.0, 0.0, -1.0]]))
        assert jnp.allclose(b, jnp.array([4.0]))

    def test_constant_only(self):
        A, b = stuff_lin_expr(lin_constant([1.0, 2.0]), self.var_map)
        assert A.shape == (2, 3)
        assert A.nnz == 0

    def test_missing_variable(self):
        with pytest.raises(dj.CvxError, match="not in the variable map"):
            stuff_lin_expr(lin_variable(5, 2), self.var_map)

    def test_width_mismatch(self):
        with pytest.raises(dj.CvxError):
            stuff_lin_expr(lin_variable(1, 3), VariableMap({1: (0, 2)}, 2))


class TestStuffProblem:
    """Test whole-problem stuffing."""

    def setup_method(self):
        """Set up test environment."""
        jax.config.update("jax_enable_x64", True)
        reset_expr_ids()

    def test_scalar_equality(self):
        """minimize x s.t. x == 5 has a single zero-cone row."""
        x = dj.Variable(())
        stuffed = _stuff(x, [dj.eq(x, 5.0)])
        assert stuffed.cone_dims.zero == 1
        assert stuffed.cone_dims.rows == 1
        assert not stuffed.cone_dims.is_conic
        assert jnp.allclose(csc_to_dense(stuffed.A), jnp.array([[1.0]]))
        assert jnp.allclose(stuffed.b, jnp.array([5.0]))
        assert jnp.allclose(stuffed.q, jnp.array([1.0]))
        assert stuffed.P is None
        assert not stuffed.is_quadratic

    def test_nonneg_rows_are_negated(self):
        x = dj.Variable(3)
        stuffed = _stuff(dj.sum(x), [x >= jnp.ones(3)])
        assert stuffed.cone_dims.nonneg == 3
        assert jnp.allclose(csc_to_dense(stuffed.A), -jnp.eye(3))
        assert jnp.allclose(stuffed.b, -jnp.ones(3))
        # b - A x is the slack, nonnegative exactly when x >= 1.
        x_val = jnp.array([1.0, 2.0, 3.0])
        slack = stuffed.b - csc_to_dense(stuffed.A) @ x_val
        assert jnp.allclose(slack, x_val - 1.0)

    def test_cone_order(self):
        """Zero rows come first, then nonneg, then SOC."""
        x = dj.Variable(3)
        stuffed = _stuff(dj.norm2(x), [x >= 0.0, dj.sum(x) == 3.0])
        dims = stuffed.cone_dims
        assert dims.zero == 1
        assert dims.nonneg == 3
        assert dims.soc == (4,)
        assert stuffed.n_constraints == 8
        assert stuffed.n_vars == 4
        assert jnp.allclose(stuffed.b[0], 3.0)
        assert jnp.allclose(stuffed.q, jnp.array([0.0, 0.0, 0.0, 1.0]))

    def test_exp_and_power_dims(self):
        x = dj.Variable(2)
        stuffed = _stuff(dj.sum(dj.exp(x)))
        assert stuffed.cone_dims.exp == 2
        assert stuffed.cone_dims.rows == 6

        stuffed = _stuff(dj.sum(dj.sqrt(x)), sense="maximize")
        assert stuffed.cone_dims.power == (0.5, 0.5)
        assert stuffed.cone_dims.is_conic

    def test_quad_form_upper_triangle(self):
        x = dj.Variable(2)
        P = jnp.array([[2.0, 1.0], [1.0, 3.0]])
        stuffed = _stuff(dj.quad_form(x, P))
        assert stuffed.is_quadratic
        assert jnp.allclose(csc_to_dense(stuffed.P), jnp.array([[4.0, 2.0], [0.0, 6.0]]))

    def test_sum_squares_gives_twice_identity(self):
        x = dj.Variable(3)
        stuffed = _stuff(dj.sum_squares(x))
        assert jnp.allclose(csc_to_dense(stuffed.P), 2.0 * jnp.eye(3))
        assert jnp.allclose(stuffed.q, 0.0)

    def test_cross_terms_land_in_upper_triangle(self):
        x, y = dj.Variable(()), dj.Variable(())
        stuffed = _stuff(dj.sum_squares(x + y))
        assert jnp.allclose(csc_to_dense(stuffed.P), jnp.array([[2.0, 2.0], [0.0, 2.0]]))

    def test_objective_value(self):
        x = dj.Variable(2)
        stuffed = _stuff(dj.sum(x) + 1.0, sense="maximize")
        assert np.isclose(stuffed.objective_offset, -1.0)
        # Solver minimized -sum(x) - 1 and reports -sum(x) = -4.
        assert np.isclose(stuffed.objective_value(-4.0), 5.0)

    def test_pytree_round_trip(self):
        x = dj.Variable(2)
        stuffed = _stuff(dj.sum(x), [x <= 1.0])
        leaves = tree_util.tree_leaves(stuffed)
        assert len(leaves) == 2

        doubled = tree_util.tree_map(lambda v: 2.0 * v, stuffed)
        assert isinstance(doubled, StuffedProblem)
        assert jnp.allclose(doubled.q, 2.0 * stuffed.q)
        assert jnp.allclose(doubled.b, 2.0 * stuffed.b)
        assert doubled.A is stuffed.A
        assert doubled.cone_dims == stuffed.cone_dims

    def test_explicit_variable_map(self):
        x = dj.Variable(2)
        canonical = canonicalize_problem(dj.sum(x))
        var_map = VariableMap({x.id: (1, 2)}, 3)
        stuffed = stuff_problem(canonical, var_map)
        assert jnp.allclose(stuffed.q, jnp.array([0.0, 1.0, 1.0]))


def test_identity_block_stuffing():
    var_map = VariableMap({1: (0, 3)}, 3)
    A, _ = stuff_lin_expr(lin_variable(1, 3), var_map)
    assert jnp.allclose(csc_to_dense(A), csc_to_dense(csc_identity(3)))
    assert csc_from_dense(np.eye(3)).nnz == A.nnz
