"""Stuffing of canonical problems into solver matrices.

The result represents::

    minimize    (1/2) x^T P x + q^T x
    subject to  A x + s = b,  s in K

where ``K`` is the product of the zero cone, the nonnegative orthant,
second-order cones, exponential cones and power cones, stacked in that
order. ``P`` is stored as its upper triangle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import jax.numpy as jnp
import numpy as np
from jax import tree_util

from dcpjax.canonicalize import AuxVariable, CanonicalProblem
from dcpjax.cones import ConeConstraint, ConeDims, ExpCone, NonnegCone, PowerCone, SocCone, ZeroCone
from dcpjax.errors import CvxError
from dcpjax.expressions import Variable, unravel_column_major
from dcpjax.linexpr import LinExpr, lin_vstack
from dcpjax.quadexpr import QuadExpr
from dcpjax.sparse import (
    CscMatrix,
    csc_from_triplets,
    csc_to_triplets,
    csc_vstack,
    csc_zeros,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class VariableMap:
    """Column layout of the stuffed variable vector.

    Args:
        offsets: Variable id -> ``(start, size)``.
        total: Total number of columns.
    """
    offsets: Dict[int, Tuple[int, int]]
    total: int

    def __contains__(self, var_id: int) -> bool:
        return var_id in self.offsets

    def slice(self, var_id: int) -> slice:
        start, size = self.offsets[var_id]
        return slice(start, start + size)

    def extract(self, x: jnp.ndarray, var: Variable) -> jnp.ndarray:
        """Value of ``var`` in the stuffed solution ``x``, in the variable's shape."""
        return unravel_column_major(jnp.asarray(x)[self.slice(var.id)], var.shape)


def build_variable_map(
    variables: Sequence[Variable],
    aux_vars: Sequence[AuxVariable] = (),
) -> VariableMap:
    """Lay out original variables first, then auxiliaries, each contiguous."""
    offsets: Dict[int, Tuple[int, int]] = {}
    total = 0
    for var in list(variables) + list(aux_vars):
        if var.id in offsets:
            continue
        offsets[var.id] = (total, var.size)
        total += var.size
    return VariableMap(offsets, total)


def stuff_lin_expr(lin: LinExpr, var_map: VariableMap, negate: bool = False) -> Tuple[CscMatrix, jnp.ndarray]:
    """Turn ``lin`` into a row block ``(A, b)`` over the stuffed columns.

    With ``negate=False`` the block encodes ``A x - b == lin(x)`` i.e.
    ``A = coeffs, b = -constant``; with ``negate=True`` it encodes
    ``b - A x == lin(x)`` i.e. ``A = -coeffs, b = constant``.

    Raises:
        CvxError: If ``lin`` references a variable missing from ``var_map``.
    """
    rows, cols, vals = [], [], []
    for var_id, block in lin.coeffs.items():
        if var_id not in var_map:
            raise CvxError(f"Variable {var_id} is not in the variable map")
        start, size = var_map.offsets[var_id]
        if block.ncols != size:
            raise CvxError(f"Coefficient block for variable {var_id} has {block.ncols} columns, expected {size}")
        r, c, v = csc_to_triplets(block)
        rows.append(r)
        cols.append(c + start)
        vals.append(v)

    sign = -1.0 if negate else 1.0
    if rows:
        A = csc_from_triplets(
            lin.rows, var_map.total,
            np.concatenate(rows), np.concatenate(cols), sign * np.concatenate(vals),
        )
    else:
        A = csc_zeros(lin.rows, var_map.total)
    b = lin.constant if negate else -lin.constant
    return A, b


def stuff_objective(objective: LinExpr, var_map: VariableMap) -> jnp.ndarray:
    """Dense ``q`` from a single-row objective."""
    A, _ = stuff_lin_expr(objective, var_map)
    r, c, v = csc_to_triplets(A)
    q = np.zeros(var_map.total)
    np.add.at(q, c, v)
    return jnp.asarray(q)


def stuff_quadratic_objective(quad: QuadExpr, var_map: VariableMap) -> Tuple[CscMatrix, jnp.ndarray]:
    """Upper-triangular ``P = 2 Q`` and dense ``q`` for a quadratic objective.

    Raises:
        CvxError: If a variable is missing from ``var_map``.
    """
    rows: List[np.ndarray] = []
    cols: List[np.ndarray] = []
    vals: List[np.ndarray] = []
    for (a, b), block in quad.quad_coeffs.items():
        if a not in var_map or b not in var_map:
            raise CvxError(f"Quadratic block ({a}, {b}) references a variable not in the variable map")
        start_a, _ = var_map.offsets[a]
        start_b, _ = var_map.offsets[b]
        r, c, v = csc_to_triplets(block)
        if a == b:
            # Symmetrize, then keep the upper triangle of 2 * sym(Q_aa).
            r, c = np.concatenate([r, c]), np.concatenate([c, r])
            v = np.concatenate([v, v]) * 0.5
            keep = r <= c
            r, c, v = r[keep], c[keep], 2.0 * v[keep]
            gr, gc = r + start_a, c + start_a
        else:
            # Q_ab and Q_ab^T each appear once in the full Q; one lands in the upper triangle.
            gr, gc = r + start_a, c + start_b
            lower = gr > gc
            gr, gc = np.where(lower, gc, gr), np.where(lower, gr, gc)
            v = 2.0 * v
        rows.append(gr)
        cols.append(gc)
        vals.append(v)

    n = var_map.total
    if rows:
        P = csc_from_triplets(n, n, np.concatenate(rows), np.concatenate(cols), np.concatenate(vals))
    else:
        P = csc_zeros(n, n)
    return P, stuff_objective(quad.linear, var_map)


@dataclass(frozen=True)
class StuffedProblem:
    """Solver-ready problem data.

    Args:
        P: Upper triangle of the quadratic cost (``None`` for linear objectives).
        q: Linear cost vector.
        A: Constraint matrix.
        b: Constraint right-hand side.
        cone_dims: Cone sizes, in stacking order.
        var_map: Column layout.
        objective_offset: Constant term of the (minimization) objective.
        variables: Original variables in layout order.
        sense: ``"minimize"`` or ``"maximize"``.
    """
    P: Optional[CscMatrix]
    q: jnp.ndarray
    A: CscMatrix
    b: jnp.ndarray
    cone_dims: ConeDims
    var_map: VariableMap
    objective_offset: float = 0.0
    variables: Tuple[Variable, ...] = ()
    sense: str = "minimize"

    @property
    def n_vars(self) -> int:
        return self.var_map.total

    @property
    def n_constraints(self) -> int:
        return self.A.nrows

    @property
    def is_quadratic(self) -> bool:
        return self.P is not None and self.P.nnz > 0

    def objective_value(self, solver_obj: float) -> float:
        """Objective of the user problem from the solver's objective value."""
        value = float(solver_obj) + self.objective_offset
        return -value if self.sense == "maximize" else value


# q and b are leaves; the sparse structure is static.
tree_util.register_pytree_node(
    StuffedProblem,
    lambda s: (
        (s.q, s.b),
        {
            "P": s.P, "A": s.A, "cone_dims": s.cone_dims, "var_map": s.var_map,
            "objective_offset": s.objective_offset, "variables": s.variables, "sense": s.sense,
        },
    ),
    lambda aux, children: StuffedProblem(
        P=aux["P"], q=children[0], A=aux["A"], b=children[1], cone_dims=aux["cone_dims"],
        var_map=aux["var_map"], objective_offset=aux["objective_offset"],
        variables=aux["variables"], sense=aux["sense"],
    ),
)


def _cone_rows(cone: ConeConstraint) -> LinExpr:
    if isinstance(cone, (ZeroCone, NonnegCone)):
        return cone.a
    if isinstance(cone, SocCone):
        return lin_vstack([cone.t, cone.x])
    return lin_vstack([cone.x, cone.y, cone.z])


_CONE_ORDER = (ZeroCone, NonnegCone, SocCone, ExpCone, PowerCone)


def stuff_problem(canonical: CanonicalProblem, var_map: Optional[VariableMap] = None) -> StuffedProblem:
    """Assemble ``(P, q, A, b, cone_dims)`` from a canonical problem.

    Args:
        canonical: Output of :func:`~dcpjax.canonicalize.canonicalize_problem`.
        var_map: Column layout; built from the canonical problem when omitted.

    Returns:
        The stuffed problem. Zero-cone rows are stuffed with ``negate=False``
        and every other cone with ``negate=True`` so that ``b - A x`` lies
        in ``K``.
    """
    variables = tuple(canonical.variables.values())
    if var_map is None:
        var_map = build_variable_map(variables, canonical.aux_vars)

    if canonical.quadratic is not None:
        P, q = stuff_quadratic_objective(canonical.quadratic, var_map)
    else:
        P, q = None, stuff_objective(canonical.objective, var_map)

    grouped: Dict[type, List[ConeConstraint]] = {kind: [] for kind in _CONE_ORDER}
    for cone in canonical.cone_constraints:
        grouped[type(cone)].append(cone)

    blocks: List[CscMatrix] = []
    rhs: List[jnp.ndarray] = []
    for kind in _CONE_ORDER:
        for cone in grouped[kind]:
            A_k, b_k = stuff_lin_expr(_cone_rows(cone), var_map, negate=kind is not ZeroCone)
            blocks.append(A_k)
            rhs.append(b_k)

    cone_dims = ConeDims(
        zero=sum(c.dim for c in grouped[ZeroCone]),
        nonneg=sum(c.dim for c in grouped[NonnegCone]),
        soc=tuple(c.dim for c in grouped[SocCone]),
        exp=len(grouped[ExpCone]),
        power=tuple(float(c.alpha) for c in grouped[PowerCone]),
    )
    A = csc_vstack(blocks) if blocks else csc_zeros(0, var_map.total)
    b = jnp.concatenate(rhs) if rhs else jnp.zeros(0)

    log.debug(
        "Stuffed problem: n=%d, m=%d, cones=%s, quadratic=%s",
        var_map.total, A.nrows, cone_dims.to_dict(), P is not None,
    )
    return StuffedProblem(
        P=P,
        q=q,
        A=A,
        b=b,
        cone_dims=cone_dims,
        var_map=var_map,
        objective_offset=canonical.objective_offset,
        variables=variables,
        sense=canonical.sense,
    )
