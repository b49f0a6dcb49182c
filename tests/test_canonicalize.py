"""Test canonicalization to LinExprs and cone constraints."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

import dcpjax as dj
from dcpjax.canonicalize import (
    _CANON_RULES,
    Canonicalizer,
    canonicalize_problem,
    contains_quadratic,
    psd_factor,
)
from dcpjax.cones import ExpCone, NonnegCone, PowerCone, SocCone, ZeroCone
from dcpjax.evaluate import _EVALUATORS, evaluate
from dcpjax.expressions import ExprKind, ravel_column_major, reset_expr_ids
from dcpjax.sparse import csc_identity, csc_to_dense
from dcpjax.stuffing import stuff_problem


def _flat_values(values):
    return {var.id: ravel_column_major(jnp.asarray(value)) for var, value in values.items()}


def _assert_affine_matches(expr, values):
    """The canonical LinExpr must agree with direct evaluation."""
    canon = Canonicalizer()
    lin = canon.canonicalize(expr)
    assert lin.rows == expr.size
    assert canon.constraints == []
    expected = ravel_column_major(evaluate(expr, values))
    assert jnp.allclose(lin.evaluate(_flat_values(values)), expected)


class TestAffineCanonicalization:
    """Test that affine atoms lower to exact LinExprs."""

    def setup_method(self):
        """Set up test environment."""
        jax.config.update("jax_enable_x64", True)
        reset_expr_ids()
        rng = np.random.default_rng(0)
        self.x = dj.Variable((3,))
        self.X = dj.Variable((3, 4))
        self.values = {
            self.x: jnp.array([1.0, -2.0, 0.5]),
            self.X: jnp.asarray(rng.standard_normal((3, 4))),
        }
        self.M = jnp.asarray(rng.standard_normal((2, 3)))
        self.N = jnp.asarray(rng.standard_normal((4, 2)))

    def test_elementwise_arithmetic(self):
        c = jnp.array([2.0, -1.0, 3.0])
        for expr in [self.x + 1.0, 2.0 * self.x - 3.0, dj.mul(c, self.x), self.x / 4.0, -self.x + c]:
            _assert_affine_matches(expr, self.values)

    def test_matmul_left_and_right(self):
        _assert_affine_matches(dj.matmul(self.M, self.x), self.values)
        _assert_affine_matches(dj.matmul(self.M, self.X), self.values)
        _assert_affine_matches(dj.matmul(self.X, self.N), self.values)
        _assert_affine_matches(dj.matmul(jnp.ones(3), self.X), self.values)
        _assert_affine_matches(dj.matmul(self.X, jnp.arange(4.0)), self.values)
        _assert_affine_matches(dj.matmul(dj.Constant(csc_identity(3)), self.x), self.values)

    def test_sums(self):
        _assert_affine_matches(dj.sum(self.X), self.values)
        _assert_affine_matches(dj.sum(self.X, axis=0), self.values)
        _assert_affine_matches(dj.sum(self.X, axis=1), self.values)
        _assert_affine_matches(dj.dot(jnp.array([1.0, 2.0, 3.0]), self.x), self.values)

    def test_cumsum(self):
        _assert_affine_matches(dj.cumsum(self.x), self.values)
        _assert_affine_matches(dj.cumsum(self.X, axis=0), self.values)
        _assert_affine_matches(dj.cumsum(self.X, axis=1), self.values)

    def test_indexing(self):
        for expr in [self.x[0], self.x[1:], self.X[1], self.X[0, 1:3], self.X[:, 2], self.X[1:3, 0:2]]:
            _assert_affine_matches(expr, self.values)

    def test_empty_range(self):
        _assert_affine_matches(self.x[1:1], self.values)
        _assert_affine_matches(self.X[1:1, :], self.values)
        lin = Canonicalizer().canonicalize(self.x[2:2])
        assert lin.rows == 0

    def test_stacking_and_reshape(self):
        Y = dj.Variable((1, 4))
        values = dict(self.values)
        values[Y] = jnp.array([[9.0, 8.0, 7.0, 6.0]])
        _assert_affine_matches(dj.vstack(self.X, Y), values)
        _assert_affine_matches(dj.vstack(self.x, self.x[0:2]), values)
        _assert_affine_matches(dj.hstack(self.x, 2.0 * self.x), values)
        _assert_affine_matches(dj.reshape(self.X, (4, 3)), values)
        _assert_affine_matches(dj.reshape(self.X, 12), values)

    def test_vector_transpose(self):
        _assert_affine_matches(self.x.T, self.values)

    def test_constant_subtree_is_folded(self):
        """Nonlinear atoms of constants evaluate to constants."""
        canon = Canonicalizer()
        lin = canon.canonicalize(dj.log(dj.Constant(jnp.array([1.0, jnp.e]))) + self.x[0:2])
        assert canon.aux_vars == []
        flat = _flat_values(self.values)
        assert jnp.allclose(lin.evaluate(flat), jnp.array([0.0, 1.0]) + self.values[self.x][:2])

    def test_unsupported_constructs(self):
        y = dj.Variable((3,))
        for expr in [self.X.T, dj.trace(dj.Variable((3, 3))), dj.diag(self.x), self.x * y, self.x / y]:
            with pytest.raises(dj.DcpError):
                Canonicalizer().canonicalize(expr)
        with pytest.raises(dj.DcpError, match="zero"):
            Canonicalizer().canonicalize(self.x / 0.0)


class TestConeCanonicalization:
    """Test the cone encodings of nonlinear atoms."""

    def setup_method(self):
        """Set up test environment."""
        jax.config.update("jax_enable_x64", True)
        reset_expr_ids()
        self.x = dj.Variable((3,))
        self.x_val = jnp.array([1.0, -2.0, 0.5])

    def _values(self, canon, aux_values):
        values = {self.x.id: self.x_val}
        for aux, value in zip(canon.aux_vars, aux_values):
            values[aux.id] = jnp.asarray(value).reshape(-1)
        return values

    def test_norm1(self):
        canon = Canonicalizer()
        lin = canon.canonicalize(dj.norm1(self.x))
        assert len(canon.aux_vars) == 1
        assert canon.aux_vars[0].size == 3
        assert canon.aux_vars[0].nonneg
        assert [type(c) for c in canon.constraints] == [NonnegCone, NonnegCone]

        values = self._values(canon, [jnp.abs(self.x_val)])
        for cone in canon.constraints:
            assert jnp.all(cone.a.evaluate(values) >= -1e-12)
        assert jnp.allclose(lin.evaluate(values), 3.5)

    def test_norm_inf_and_abs(self):
        canon = Canonicalizer()
        canon.canonicalize(dj.norm_inf(self.x))
        assert canon.aux_vars[0].size == 1
        assert all(c.dim == 3 for c in canon.constraints)

        canon = Canonicalizer()
        lin = canon.canonicalize(dj.abs(self.x))
        assert lin.rows == 3
        assert len(canon.constraints) == 2

    def test_norm2(self):
        canon = Canonicalizer()
        canon.canonicalize(dj.norm2(self.x))
        (cone,) = canon.constraints
        assert isinstance(cone, SocCone)
        assert cone.dim == 4

    def test_quad_over_lin_is_tight_at_optimum(self):
        """At t = |x|^2 / y the rotated cone holds with equality."""
        canon = Canonicalizer()
        canon.canonicalize(dj.quad_over_lin(self.x, 2.0))
        (cone,) = canon.constraints
        t = jnp.sum(self.x_val ** 2) / 2.0
        values = self._values(canon, [t])
        lhs = jnp.linalg.norm(cone.x.evaluate(values))
        assert jnp.allclose(lhs, cone.t.evaluate(values)[0])

    def test_sum_squares_and_quad_form(self):
        canon = Canonicalizer()
        canon.canonicalize(dj.sum_squares(self.x))
        assert canon.constraints[0].dim == 5

        P = jnp.array([[2.0, 1.0, 0.0], [1.0, 3.0, 0.0], [0.0, 0.0, 1.0]])
        canon = Canonicalizer()
        canon.canonicalize(dj.quad_form(self.x, P))
        (cone,) = canon.constraints
        t = self.x_val @ P @ self.x_val
        values = self._values(canon, [t])
        assert jnp.allclose(jnp.linalg.norm(cone.x.evaluate(values)), cone.t.evaluate(values)[0])

    def test_exp_and_log(self):
        canon = Canonicalizer()
        canon.canonicalize(dj.exp(self.x))
        assert len(canon.constraints) == 3
        assert all(isinstance(c, ExpCone) for c in canon.constraints)
        values = self._values(canon, [jnp.exp(self.x_val)])
        first = canon.constraints[0]
        assert jnp.allclose(first.x.evaluate(values), self.x_val[0])
        assert jnp.allclose(first.y.evaluate(values), 1.0)
        assert jnp.allclose(first.z.evaluate(values), jnp.exp(self.x_val[0]))

        canon = Canonicalizer()
        canon.canonicalize(dj.log(self.x))
        assert not canon.aux_vars[0].nonneg
        values = self._values(canon, [jnp.zeros(3)])
        assert jnp.allclose(canon.constraints[1].z.evaluate(values), self.x_val[1])

    def test_entropy(self):
        canon = Canonicalizer()
        canon.canonicalize(dj.entropy(self.x))
        cone = canon.constraints[2]
        values = self._values(canon, [jnp.zeros(3)])
        assert jnp.allclose(cone.y.evaluate(values), self.x_val[2])
        assert jnp.allclose(cone.z.evaluate(values), 1.0)

    @pytest.mark.parametrize("p,alpha", [(3.0, 1.0 / 3.0), (0.5, 0.5), (0.25, 0.25), (-1.0, 0.5), (-3.0, 0.25)])
    def test_power_cones(self, p, alpha):
        canon = Canonicalizer()
        canon.canonicalize(dj.power(self.x, p))
        assert len(canon.constraints) == 3
        assert all(isinstance(c, PowerCone) for c in canon.constraints)
        assert all(np.isclose(c.alpha, alpha) for c in canon.constraints)

    def test_sqrt(self):
        canon = Canonicalizer()
        canon.canonicalize(dj.sqrt(self.x))
        assert all(isinstance(c, PowerCone) and c.alpha == 0.5 for c in canon.constraints)

    def test_pos_and_neg_part_bound_t_below(self):
        for atom in (dj.pos, dj.neg_part):
            canon = Canonicalizer()
            canon.canonicalize(atom(self.x))
            assert [type(c) for c in canon.constraints] == [NonnegCone, NonnegCone]

    def test_maximum_and_minimum(self):
        canon = Canonicalizer()
        lin = canon.canonicalize(dj.maximum(self.x, 0.0))
        assert lin.rows == 3
        assert len(canon.constraints) == 2
        values = self._values(canon, [jnp.maximum(self.x_val, 0.0)])
        for cone in canon.constraints:
            assert jnp.all(cone.a.evaluate(values) >= 0.0)

        canon = Canonicalizer()
        canon.canonicalize(dj.minimum(self.x, 1.0, -self.x))
        assert len(canon.constraints) == 3

    def test_constraints(self):
        canon = Canonicalizer()
        canon.canonicalize_constraint(dj.sum(self.x) == 1.0)
        canon.canonicalize_constraint(self.x >= 1.0)
        canon.canonicalize_constraint(dj.soc(self.x, 2.0))
        assert [type(c) for c in canon.constraints] == [ZeroCone, NonnegCone, SocCone]
        assert canon.constraints[0].dim == 1
        assert canon.constraints[1].dim == 3


class TestPsdFactor:
    """Test the PSD factorization used by quad_form."""

    def setup_method(self):
        """Set up test environment."""
        jax.config.update("jax_enable_x64", True)

    def test_factor_reconstructs(self):
        P = np.array([[2.0, 1.0], [1.0, 3.0]])
        F = np.asarray(csc_to_dense(psd_factor(P)))
        assert np.allclose(F.T @ F, P)

    def test_rank_deficient(self):
        F = psd_factor(np.array([[1.0, 1.0], [1.0, 1.0]]))
        assert F.shape == (1, 2)

    def test_indefinite_rejected(self):
        with pytest.raises(dj.DcpError, match="positive semidefinite"):
            psd_factor(np.array([[1.0, 0.0], [0.0, -1.0]]))


class TestProblemCanonicalization:
    """Test whole-problem canonicalization."""

    def setup_method(self):
        """Set up test environment."""
        jax.config.update("jax_enable_x64", True)
        reset_expr_ids()
        self.x = dj.Variable((2,))

    def test_contains_quadratic(self):
        x = self.x
        y = dj.Variable(())
        assert contains_quadratic(dj.sum_squares(x))
        assert contains_quadratic(2.0 * dj.sum_squares(x) + dj.sum(x))
        assert contains_quadratic(dj.sum_squares(x) / 2.0)
        assert contains_quadratic(dj.quad_form(x, jnp.eye(2)))
        assert contains_quadratic(dj.quad_over_lin(x, 2.0))
        assert not contains_quadratic(dj.quad_over_lin(x, y))
        assert not contains_quadratic(dj.norm2(x))
        assert not contains_quadratic(dj.sum(x))

    def test_quadratic_objective_and_offset(self):
        target = jnp.array([1.0, 2.0])
        problem = canonicalize_problem(dj.sum_squares(self.x - target) + 3.0)
        assert problem.quadratic is not None
        assert problem.aux_vars == ()
        assert np.isclose(problem.objective_offset, 8.0)
        value = problem.quadratic.evaluate({self.x.id: target}) + problem.objective_offset
        assert np.isclose(value, 3.0)

    def test_linear_objective_maximize(self):
        problem = canonicalize_problem(dj.sum(self.x) + 2.0, sense="maximize")
        assert problem.quadratic is None
        assert np.isclose(problem.objective_offset, -2.0)
        assert jnp.allclose(problem.objective.constant, 0.0)
        assert jnp.allclose(problem.objective.evaluate({self.x.id: jnp.ones(2)}), -2.0)

    def test_conic_objective(self):
        problem = canonicalize_problem(dj.norm1(self.x), [self.x >= 1.0])
        assert problem.quadratic is None
        assert len(problem.aux_vars) == 1
        assert [type(c) for c in problem.cone_constraints] == [NonnegCone, NonnegCone, NonnegCone]
        assert list(problem.variables) == [self.x.id]

    def test_sign_flags_add_rows(self):
        p = dj.Variable(2, nonneg=True)
        n = dj.Variable(2, nonpos=True)
        problem = canonicalize_problem(dj.sum(p) + dj.sum(n))
        assert len(problem.cone_constraints) == 2
        values = {p.id: jnp.array([1.0, 2.0]), n.id: jnp.array([-3.0, -4.0])}
        assert jnp.allclose(problem.cone_constraints[0].a.evaluate(values), jnp.array([1.0, 2.0]))
        assert jnp.allclose(problem.cone_constraints[1].a.evaluate(values), jnp.array([3.0, 4.0]))

    def test_layout_is_deterministic(self):
        """Identical trees built after a reset give identical aux layouts."""
        def build():
            reset_expr_ids()
            x = dj.Variable(3)
            y = dj.Variable(())
            objective = dj.norm2(x) + dj.sum(dj.exp(x)) + dj.maximum(y, 1.0)
            constraints = [dj.sum(x) == y, dj.sum_squares(x) <= 4.0, dj.sqrt(y) >= 0.5]
            return canonicalize_problem(objective, constraints)

        first, second = build(), build()
        assert first.aux_vars == second.aux_vars
        assert list(first.variables) == list(second.variables)
        assert [type(c) for c in first.cone_constraints] == [type(c) for c in second.cone_constraints]
        stuffed_a, stuffed_b = stuff_problem(first), stuff_problem(second)
        assert stuffed_a.var_map.offsets == stuffed_b.var_map.offsets
        assert jnp.allclose(csc_to_dense(stuffed_a.A), csc_to_dense(stuffed_b.A))
        assert jnp.allclose(stuffed_a.b, stuffed_b.b)
        assert jnp.allclose(stuffed_a.q, stuffed_b.q)

    def test_empty_range_solves(self):
        x = dj.Variable(3)
        prob = dj.Problem(dj.Minimize(dj.sum(x)), [x >= 1.0, x[1:1] <= 0.0])
        assert prob.stuff().cone_dims.nonneg == 3
        sol = prob.solve()
        assert np.isclose(sol.obj_value, 3.0, atol=1e-5)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            canonicalize_problem(dj.sum(self.x), sense="optimize")
        with pytest.raises(dj.DcpError):
            canonicalize_problem(self.x)

    def test_rule_tables_cover_every_kind(self):
        assert set(_CANON_RULES) == set(ExprKind)
        for name in _CANON_RULES.values():
            assert hasattr(Canonicalizer, name)
        assert set(_EVALUATORS) == set(ExprKind) - {ExprKind.VARIABLE, ExprKind.CONSTANT}
