"""Canonicalization of optimization problems to conic standard form.

The :class:`Canonicalizer` lowers a DCP-valid expression tree to a
:class:`~dcpjax.linexpr.LinExpr`. Nonlinear atoms are replaced by fresh
auxiliary variables bound by cone constraints (the epigraph or hypograph
of the atom), which accumulate on the canonicalizer instance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import jax.numpy as jnp
import numpy as np

from dcpjax.cones import ConeConstraint, ExpCone, NonnegCone, PowerCone, SocCone, ZeroCone
from dcpjax.constraints import (
    Constraint,
    EqualityConstraint,
    InequalityConstraint,
    SocConstraint,
)
from dcpjax.errors import DcpError
from dcpjax.evaluate import evaluate
from dcpjax.expressions import (
    Atom,
    Constant,
    Expression,
    ExprKind,
    Variable,
    as_expression,
    collect_variables,
    has_variables,
    new_expr_id,
    ravel_column_major,
)
from dcpjax.linexpr import (
    LinExpr,
    lin_add,
    lin_broadcast,
    lin_constant,
    lin_diag_scale,
    lin_left_mul,
    lin_neg,
    lin_scale,
    lin_select_rows,
    lin_sub,
    lin_sum,
    lin_variable,
    lin_vstack,
)
from dcpjax.quadexpr import (
    QuadExpr,
    quad_add,
    quad_from_affine_square,
    quad_from_linear,
    quad_scale,
)
from dcpjax.sparse import (
    CscMatrix,
    csc_from_dense,
    csc_from_triplets,
    csc_identity,
    csc_kron,
    csc_transpose,
)
from dcpjax.utils.shapes import as_matrix_shape, cols, shape_size

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuxVariable:
    """Variable introduced by canonicalization.

    Args:
        id: Expression id, allocated from the same pool as user variables.
        size: Number of scalar entries.
        nonneg: Whether the variable is known to be nonnegative.
    """
    id: int
    size: int
    nonneg: bool = False


@dataclass(frozen=True, eq=False)
class CanonicalProblem:
    """Result of :func:`canonicalize_problem`.

    Args:
        objective: Single-row linear part of the objective, constant zeroed.
        quadratic: Quadratic objective when one was detected, else ``None``.
        cone_constraints: All cone constraints in emission order.
        aux_vars: Auxiliary variables in creation order.
        objective_offset: Constant removed from the (possibly negated) objective.
        variables: Original variables in discovery order.
        sense: ``"minimize"`` or ``"maximize"``.
    """
    objective: LinExpr
    quadratic: Optional[QuadExpr]
    cone_constraints: Tuple[ConeConstraint, ...]
    aux_vars: Tuple[AuxVariable, ...]
    objective_offset: float
    variables: Dict[int, Variable]
    sense: str = "minimize"


_CANON_RULES: Dict[ExprKind, str] = {
    ExprKind.VARIABLE: "_canon_variable",
    ExprKind.CONSTANT: "_canon_constant",
    ExprKind.ADD: "_canon_add",
    ExprKind.NEG: "_canon_neg",
    ExprKind.MUL: "_canon_mul",
    ExprKind.DIV: "_canon_div",
    ExprKind.MATMUL: "_canon_matmul",
    ExprKind.SUM: "_canon_sum",
    ExprKind.RESHAPE: "_canon_reshape",
    ExprKind.INDEX: "_canon_index",
    ExprKind.VSTACK: "_canon_vstack",
    ExprKind.HSTACK: "_canon_hstack",
    ExprKind.TRANSPOSE: "_canon_transpose",
    ExprKind.TRACE: "_canon_unsupported",
    ExprKind.DIAG: "_canon_unsupported",
    ExprKind.CUMSUM: "_canon_cumsum",
    ExprKind.NORM1: "_canon_norm1",
    ExprKind.NORM2: "_canon_norm2",
    ExprKind.NORM_INF: "_canon_norm_inf",
    ExprKind.ABS: "_canon_abs",
    ExprKind.POS: "_canon_pos",
    ExprKind.NEG_PART: "_canon_neg_part",
    ExprKind.MAXIMUM: "_canon_maximum",
    ExprKind.SUM_SQUARES: "_canon_sum_squares",
    ExprKind.QUAD_FORM: "_canon_quad_form",
    ExprKind.QUAD_OVER_LIN: "_canon_quad_over_lin",
    ExprKind.EXP: "_canon_exp",
    ExprKind.MINIMUM: "_canon_minimum",
    ExprKind.LOG: "_canon_log",
    ExprKind.ENTROPY: "_canon_entropy",
    ExprKind.SQRT: "_canon_sqrt",
    ExprKind.POWER: "_canon_power",
}

_ONE = 1.0


def _row(a: LinExpr, i: int) -> LinExpr:
    return lin_select_rows(a, [i])


def _constant_value(expr: Expression) -> np.ndarray:
    return np.asarray(evaluate(expr))


def _lower_triangular_ones(n: int) -> CscMatrix:
    r, c = np.tril_indices(n)
    return csc_from_triplets(n, n, r, c, np.ones(r.shape[0]))


def psd_factor(P: np.ndarray, tol: float = 1e-10) -> CscMatrix:
    """Return ``F`` with ``F^T F = P`` for a symmetric PSD ``P``.

    Uses a symmetric eigendecomposition; eigenvalues below ``tol`` (relative)
    are dropped, so ``F`` has one row per retained eigenvalue.

    Raises:
        DcpError: If ``P`` has a clearly negative eigenvalue.
    """
    P = np.asarray(P, dtype=np.float64)
    sym = 0.5 * (P + P.T)
    w, V = jnp.linalg.eigh(jnp.asarray(sym))
    w, V = np.asarray(w), np.asarray(V)
    scale = max(1.0, float(np.max(np.abs(w)))) if w.size else 1.0
    if w.size and w.min() < -1e-8 * scale:
        raise DcpError(f"quad_form requires a positive semidefinite matrix, smallest eigenvalue is {w.min():.3e}")
    keep = w > tol * scale
    F = np.sqrt(w[keep])[:, None] * V[:, keep].T
    return csc_from_dense(F.reshape(int(keep.sum()), P.shape[0]))


class Canonicalizer:
    """Lowers expressions to LinExprs plus cone constraints.

    One instance is used per problem; the auxiliary variables and cone
    constraints it emits are collected in :attr:`aux_vars` and
    :attr:`constraints`.

    Example:
        >>> x = Variable((3,))
        >>> canon = Canonicalizer()
        >>> t = canon.canonicalize(norm2(x))
        >>> len(canon.aux_vars), len(canon.constraints)
        (1, 1)
    """

    def __init__(self) -> None:
        self.constraints: List[ConeConstraint] = []
        self.aux_vars: List[AuxVariable] = []

    def new_aux_var(self, size: int, nonneg: bool = False) -> Tuple[AuxVariable, LinExpr]:
        aux = AuxVariable(new_expr_id(), size, nonneg)
        self.aux_vars.append(aux)
        return aux, lin_variable(aux.id, size)

    def add_constraint(self, constraint: ConeConstraint) -> None:
        self.constraints.append(constraint)

    def canonicalize(self, expr: Expression) -> LinExpr:
        """Lower ``expr`` to a LinExpr with ``expr.size`` rows.

        Raises:
            DcpError: For constructs with no canonical form.
        """
        if isinstance(expr, Atom) and not has_variables(expr):
            return lin_constant(ravel_column_major(evaluate(expr)))
        return getattr(self, _CANON_RULES[expr.kind])(expr)

    # Leaves

    def _canon_variable(self, expr: Variable) -> LinExpr:
        return lin_variable(expr.id, expr.size)

    def _canon_constant(self, expr: Constant) -> LinExpr:
        return lin_constant(expr.value.to_flat())

    # Affine atoms

    def _broadcast_to(self, a: LinExpr, size: int) -> LinExpr:
        if a.rows == size:
            return a
        if a.rows != 1:
            raise DcpError(f"Only scalar broadcasting is supported in canonical form (got {a.rows} rows for {size})")
        return lin_broadcast(a, size)

    def _canon_add(self, expr: Atom) -> LinExpr:
        lhs, rhs = (self._broadcast_to(self.canonicalize(a), expr.size) for a in expr.args)
        return lin_add(lhs, rhs)

    def _canon_neg(self, expr: Atom) -> LinExpr:
        return lin_neg(self.canonicalize(expr.args[0]))

    def _scale_elementwise(self, a: LinExpr, c: np.ndarray, size: int) -> LinExpr:
        c = np.asarray(c, dtype=np.float64).reshape(-1)
        if c.shape[0] == 1:
            return self._broadcast_to(lin_scale(a, c[0]), size)
        if c.shape[0] != size:
            raise DcpError(f"Only scalar broadcasting is supported in canonical form (constant has {c.shape[0]} entries, result {size})")
        return lin_diag_scale(self._broadcast_to(a, size), c)

    def _canon_mul(self, expr: Atom) -> LinExpr:
        lhs, rhs = expr.args
        if not has_variables(lhs):
            const, other = lhs, rhs
        elif not has_variables(rhs):
            const, other = rhs, lhs
        else:
            raise DcpError("Cannot multiply two non-constant expressions")
        c = np.asarray(ravel_column_major(evaluate(const)))
        return self._scale_elementwise(self.canonicalize(other), c, expr.size)

    def _canon_div(self, expr: Atom) -> LinExpr:
        lhs, rhs = expr.args
        if has_variables(rhs):
            raise DcpError("Division requires a constant divisor")
        c = np.asarray(ravel_column_major(evaluate(rhs)))
        if np.any(c == 0):
            raise DcpError("Division by zero")
        return self._scale_elementwise(self.canonicalize(lhs), 1.0 / c, expr.size)

    def _constant_matrix(self, expr: Expression, vector_as_row: bool) -> CscMatrix:
        if isinstance(expr, Constant) and expr.value.kind == "sparse":
            return expr.value.data
        value = _constant_value(expr)
        if value.ndim == 1:
            value = value.reshape(1, -1) if vector_as_row else value.reshape(-1, 1)
        return csc_from_dense(value)

    def _canon_matmul(self, expr: Atom) -> LinExpr:
        lhs, rhs = expr.args
        if not has_variables(lhs):
            # vec(M X) = (I_n kron M) vec(X)
            M = self._constant_matrix(lhs, vector_as_row=True)
            n = cols(rhs.shape)
            op = M if n == 1 else csc_kron(csc_identity(n), M)
            return lin_left_mul(op, self.canonicalize(rhs))
        if not has_variables(rhs):
            # vec(X M) = (M^T kron I_m) vec(X)
            Mt = csc_transpose(self._constant_matrix(rhs, vector_as_row=False))
            m = 1 if len(lhs.shape) == 1 else lhs.shape[0]
            op = Mt if m == 1 else csc_kron(Mt, csc_identity(m))
            return lin_left_mul(op, self.canonicalize(lhs))
        raise DcpError("Cannot multiply two non-constant expressions (matmul)")

    def _canon_sum(self, expr: Atom) -> LinExpr:
        arg = expr.args[0]
        x = self.canonicalize(arg)
        if expr.axis is None or len(arg.shape) <= 1:
            return lin_sum(x)
        m, n = arg.shape
        i, j = np.meshgrid(np.arange(m), np.arange(n), indexing="ij")
        src = (j * m + i).reshape(-1)
        out = (j if expr.axis == 0 else i).reshape(-1)
        S = csc_from_triplets(n if expr.axis == 0 else m, m * n, out, src, np.ones(src.shape[0]))
        return lin_left_mul(S, x)

    def _canon_reshape(self, expr: Atom) -> LinExpr:
        return self.canonicalize(expr.args[0])

    def _canon_index(self, expr: Atom) -> LinExpr:
        arg = expr.args[0]
        m, n = as_matrix_shape(arg.shape)
        specs = expr.indices
        if not specs:
            return self.canonicalize(arg)
        row_sel = specs[0].positions(m)
        col_sel = specs[1].positions(n) if len(specs) == 2 else [0]

        src = [c * m + r for c in col_sel for r in row_sel]
        k = len(src)
        S = csc_from_triplets(k, m * n, np.arange(k), src, np.ones(k))
        return lin_left_mul(S, self.canonicalize(arg))

    def _canon_vstack(self, expr: Atom) -> LinExpr:
        stacked = lin_vstack([self.canonicalize(a) for a in expr.args])
        if len(expr.shape) <= 1 or expr.shape[1] == 1:
            return stacked

        total_rows, ncols = expr.shape
        dst, src = [], []
        base = row_offset = 0
        for arg in expr.args:
            m_k = as_matrix_shape(arg.shape)[0]
            for c in range(ncols):
                for r in range(m_k):
                    dst.append(c * total_rows + row_offset + r)
                    src.append(base + c * m_k + r)
            base += m_k * ncols
            row_offset += m_k
        size = expr.size
        P = csc_from_triplets(size, size, dst, src, np.ones(size))
        return lin_left_mul(P, stacked)

    def _canon_hstack(self, expr: Atom) -> LinExpr:
        return lin_vstack([self.canonicalize(a) for a in expr.args])

    def _canon_transpose(self, expr: Atom) -> LinExpr:
        arg = expr.args[0]
        if len(arg.shape) == 2 and arg.shape[0] > 1 and arg.shape[1] > 1:
            raise DcpError("Transpose of a matrix expression is not supported in canonical form")
        return self.canonicalize(arg)

    def _canon_unsupported(self, expr: Atom) -> LinExpr:
        raise DcpError(f"{expr.kind.value} of a non-constant expression is not supported in canonical form")

    def _canon_cumsum(self, expr: Atom) -> LinExpr:
        arg = expr.args[0]
        x = self.canonicalize(arg)
        if len(arg.shape) == 0:
            return x
        if len(arg.shape) == 1:
            return lin_left_mul(_lower_triangular_ones(arg.shape[0]), x)
        m, n = arg.shape
        if expr.axis == 1:
            op = csc_kron(_lower_triangular_ones(n), csc_identity(m))
        else:
            op = csc_kron(csc_identity(n), _lower_triangular_ones(m))
        return lin_left_mul(op, x)

    # Convex atoms

    def _abs_bound(self, x: LinExpr, t: LinExpr) -> None:
        self.add_constraint(NonnegCone(lin_sub(t, x)))
        self.add_constraint(NonnegCone(lin_add(t, x)))

    def _canon_norm1(self, expr: Atom) -> LinExpr:
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(x.rows, nonneg=True)
        self._abs_bound(x, t)
        return lin_sum(t)

    def _canon_norm2(self, expr: Atom) -> LinExpr:
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(1, nonneg=True)
        self.add_constraint(SocCone(t, x))
        return t

    def _canon_norm_inf(self, expr: Atom) -> LinExpr:
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(1, nonneg=True)
        self._abs_bound(x, lin_broadcast(t, x.rows))
        return t

    def _canon_abs(self, expr: Atom) -> LinExpr:
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(x.rows, nonneg=True)
        self._abs_bound(x, t)
        return t

    def _canon_pos(self, expr: Atom) -> LinExpr:
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(x.rows, nonneg=True)
        self.add_constraint(NonnegCone(lin_sub(t, x)))
        self.add_constraint(NonnegCone(t))
        return t

    def _canon_neg_part(self, expr: Atom) -> LinExpr:
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(x.rows, nonneg=True)
        self.add_constraint(NonnegCone(lin_add(t, x)))
        self.add_constraint(NonnegCone(t))
        return t

    def _canon_maximum(self, expr: Atom) -> LinExpr:
        parts = [self._broadcast_to(self.canonicalize(a), expr.size) for a in expr.args]
        _, t = self.new_aux_var(expr.size)
        for x in parts:
            self.add_constraint(NonnegCone(lin_sub(t, x)))
        return t

    def _rotated_soc(self, x: LinExpr, y: LinExpr) -> LinExpr:
        # sum_squares(x) / y <= t  <=>  norm2([2x; t - y]) <= t + y
        _, t = self.new_aux_var(1, nonneg=True)
        self.add_constraint(SocCone(lin_add(t, y), lin_vstack([lin_scale(x, 2.0), lin_sub(t, y)])))
        return t

    def _canon_sum_squares(self, expr: Atom) -> LinExpr:
        x = self.canonicalize(expr.args[0])
        return self._rotated_soc(x, lin_constant([_ONE]))

    def _canon_quad_form(self, expr: Atom) -> LinExpr:
        x_expr, P_expr = expr.args
        if has_variables(P_expr):
            raise DcpError("quad_form requires a constant matrix")
        F = psd_factor(_constant_value(P_expr))
        y = lin_left_mul(F, self.canonicalize(x_expr))
        return self._rotated_soc(y, lin_constant([_ONE]))

    def _canon_quad_over_lin(self, expr: Atom) -> LinExpr:
        x_expr, y_expr = expr.args
        return self._rotated_soc(self.canonicalize(x_expr), self.canonicalize(y_expr))

    def _canon_exp(self, expr: Atom) -> LinExpr:
        # exp(x_i) <= t_i  <=>  (x_i, 1, t_i) in K_exp
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(x.rows, nonneg=True)
        one = lin_constant([_ONE])
        for i in range(x.rows):
            self.add_constraint(ExpCone(_row(x, i), one, _row(t, i)))
        return t

    # Concave atoms

    def _canon_minimum(self, expr: Atom) -> LinExpr:
        parts = [self._broadcast_to(self.canonicalize(a), expr.size) for a in expr.args]
        _, t = self.new_aux_var(expr.size)
        for x in parts:
            self.add_constraint(NonnegCone(lin_sub(x, t)))
        return t

    def _canon_log(self, expr: Atom) -> LinExpr:
        # t_i <= log(x_i)  <=>  (t_i, 1, x_i) in K_exp
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(x.rows)
        one = lin_constant([_ONE])
        for i in range(x.rows):
            self.add_constraint(ExpCone(_row(t, i), one, _row(x, i)))
        return t

    def _canon_entropy(self, expr: Atom) -> LinExpr:
        # t_i <= -x_i log(x_i)  <=>  (t_i, x_i, 1) in K_exp
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(x.rows)
        one = lin_constant([_ONE])
        for i in range(x.rows):
            self.add_constraint(ExpCone(_row(t, i), _row(x, i), one))
        return t

    def _canon_sqrt(self, expr: Atom) -> LinExpr:
        # t_i <= x_i^(1/2)  <=>  (x_i, 1, t_i) in K_pow(1/2)
        x = self.canonicalize(expr.args[0])
        _, t = self.new_aux_var(x.rows)
        one = lin_constant([_ONE])
        for i in range(x.rows):
            self.add_constraint(PowerCone(_row(x, i), one, _row(t, i), 0.5))
        return t

    def _canon_power(self, expr: Atom) -> LinExpr:
        p = expr.p
        x = self.canonicalize(expr.args[0])
        if p == 1:
            return x
        if p == 0:
            return lin_constant(np.ones(x.rows))

        one = lin_constant([_ONE])
        if p > 1:
            # |x_i|^p <= t_i  <=>  (t_i, 1, x_i) in K_pow(1/p)
            _, t = self.new_aux_var(x.rows, nonneg=True)
            cones = [PowerCone(_row(t, i), one, _row(x, i), 1.0 / p) for i in range(x.rows)]
        elif p > 0:
            # t_i <= x_i^p  <=>  (x_i, 1, t_i) in K_pow(p)
            _, t = self.new_aux_var(x.rows)
            cones = [PowerCone(_row(x, i), one, _row(t, i), p) for i in range(x.rows)]
        else:
            # x_i^p <= t_i  <=>  (t_i, x_i, 1) in K_pow(1/(1-p))
            _, t = self.new_aux_var(x.rows, nonneg=True)
            cones = [PowerCone(_row(t, i), _row(x, i), one, 1.0 / (1.0 - p)) for i in range(x.rows)]
        for cone in cones:
            self.add_constraint(cone)
        return t

    # Constraints

    def canonicalize_constraint(self, constraint: Constraint) -> None:
        """Lower a user constraint into cone constraints."""
        if isinstance(constraint, EqualityConstraint):
            self.add_constraint(ZeroCone(self.canonicalize(constraint.expression)))
        elif isinstance(constraint, InequalityConstraint):
            self.add_constraint(NonnegCone(self.canonicalize(constraint.expression)))
        elif isinstance(constraint, SocConstraint):
            self.add_constraint(SocCone(self.canonicalize(constraint.t), self.canonicalize(constraint.x)))
        else:
            raise DcpError(f"Unsupported constraint type {type(constraint).__name__}")

    # Quadratic objectives

    def canonicalize_quadratic(self, expr: Expression) -> QuadExpr:
        """Lower a scalar objective to a QuadExpr.

        Quadratic atoms reachable through sums, negations and scalar
        constant scaling go to the quadratic part; everything else is
        canonicalized as usual.
        """
        if not contains_quadratic(expr):
            return quad_from_linear(self.canonicalize(expr))

        kind = expr.kind
        if kind == ExprKind.SUM_SQUARES:
            return quad_from_affine_square(self.canonicalize(expr.args[0]))
        if kind == ExprKind.QUAD_FORM:
            x_expr, P_expr = expr.args
            P = _constant_value(P_expr)
            psd_factor(P)
            weight = csc_from_dense(0.5 * (P + P.T))
            return quad_from_affine_square(self.canonicalize(x_expr), weight)
        if kind == ExprKind.QUAD_OVER_LIN:
            x_expr, y_expr = expr.args
            y = float(_constant_value(y_expr).reshape(-1)[0])
            return quad_scale(quad_from_affine_square(self.canonicalize(x_expr)), 1.0 / y)
        if kind == ExprKind.ADD:
            lhs, rhs = expr.args
            return quad_add(self.canonicalize_quadratic(lhs), self.canonicalize_quadratic(rhs))
        if kind == ExprKind.NEG:
            return quad_scale(self.canonicalize_quadratic(expr.args[0]), -1.0)

        scalar, other = _scalar_factor(expr)
        return quad_scale(self.canonicalize_quadratic(other), scalar)


def _scalar_constant(expr: Expression) -> Optional[float]:
    if has_variables(expr) or shape_size(expr.shape) != 1:
        return None
    return float(_constant_value(expr).reshape(-1)[0])


def _scalar_factor(expr: Atom) -> Tuple[Optional[float], Optional[Expression]]:
    """For ``c * e``, ``e * c`` and ``e / c`` with scalar constant ``c``, return the factor and ``e``."""
    lhs, rhs = expr.args
    if expr.kind == ExprKind.MUL:
        c = _scalar_constant(lhs)
        if c is not None:
            return c, rhs
        c = _scalar_constant(rhs)
        if c is not None:
            return c, lhs
    if expr.kind == ExprKind.DIV:
        c = _scalar_constant(rhs)
        if c is not None and c != 0:
            return 1.0 / c, lhs
    return None, None


def contains_quadratic(expr: Expression) -> bool:
    """Whether the top of a scalar objective holds a quadratic atom for the QP path."""
    if not isinstance(expr, Atom) or shape_size(expr.shape) != 1:
        return False
    kind = expr.kind
    if kind == ExprKind.SUM_SQUARES:
        return True
    if kind == ExprKind.QUAD_FORM:
        return not has_variables(expr.args[1])
    if kind == ExprKind.QUAD_OVER_LIN:
        y = _scalar_constant(expr.args[1])
        return y is not None and y > 0
    if kind == ExprKind.ADD:
        return any(contains_quadratic(a) for a in expr.args)
    if kind == ExprKind.NEG:
        return contains_quadratic(expr.args[0])
    if kind in (ExprKind.MUL, ExprKind.DIV):
        _, other = _scalar_factor(expr)
        return other is not None and contains_quadratic(other)
    return False


def canonicalize_problem(
    objective: Expression,
    constraints: Sequence[Constraint] = (),
    sense: str = "minimize",
) -> CanonicalProblem:
    """Canonicalize an objective and its constraints.

    Args:
        objective: Scalar objective expression.
        constraints: User constraints.
        sense: ``"minimize"`` or ``"maximize"``. A maximized objective is
            negated so the result is always a minimization.

    Returns:
        The canonical objective, cone constraints, auxiliary variables and
        the objective's constant offset (of the possibly negated objective).

    Raises:
        DcpError: If the objective is not scalar or a construct has no
            canonical form.
    """
    if sense not in ("minimize", "maximize"):
        raise ValueError(f"sense must be 'minimize' or 'maximize', got {sense!r}")
    objective = as_expression(objective)
    if objective.size != 1:
        raise DcpError(f"Objective must be scalar, got shape {objective.shape}")

    originals: Dict[int, Variable] = collect_variables(objective)
    for constraint in constraints:
        for expr in constraint.expressions():
            collect_variables(expr, originals)

    canon = Canonicalizer()
    quadratic: Optional[QuadExpr] = None
    if contains_quadratic(objective):
        quad = canon.canonicalize_quadratic(objective)
        if sense == "maximize":
            quad = quad_scale(quad, -1.0)
        offset = quad.constant
        linear = quad.linear
        if not quad.is_linear():
            quadratic = QuadExpr(quad.quad_coeffs, linear, 0.0)
    else:
        lin = canon.canonicalize(objective)
        if sense == "maximize":
            lin = lin_neg(lin)
        offset = float(lin.constant[0])
        linear = LinExpr(lin.coeffs, jnp.zeros(1), 1)

    for constraint in constraints:
        canon.canonicalize_constraint(constraint)

    for var in originals.values():
        if var.nonneg:
            canon.add_constraint(NonnegCone(lin_variable(var.id, var.size)))
        if var.nonpos:
            canon.add_constraint(NonnegCone(lin_neg(lin_variable(var.id, var.size))))

    log.debug(
        "Canonicalized problem: %d variables, %d auxiliary variables, %d cone constraints",
        len(originals), len(canon.aux_vars), len(canon.constraints),
    )
    return CanonicalProblem(
        objective=linear,
        quadratic=quadratic,
        cone_constraints=tuple(canon.constraints),
        aux_vars=tuple(canon.aux_vars),
        objective_offset=offset,
        variables=originals,
        sense=sense,
    )
