"""Quadratic expressions for QP objectives.

A :class:`QuadExpr` holds ``x^T Q x + q^T x + c`` where ``Q`` is symmetric
and stored by blocks: key ``(a, b)`` with ``a <= b`` maps to the block of
``Q`` at (variable ``a`` rows, variable ``b`` columns). Off-diagonal blocks
therefore contribute twice to the value. Stuffing emits ``P = 2 Q`` for the
solver form ``(1/2) x^T P x``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import jax.numpy as jnp
import numpy as np

from dcpjax.errors import ShapeError
from dcpjax.linexpr import LinExpr, lin_add, lin_scale, lin_zero
from dcpjax.sparse import (
    CscMatrix,
    csc_add,
    csc_from_dense,
    csc_identity,
    csc_mul_mat,
    csc_mul_mat_transpose_left,
    csc_mul_vec,
    csc_scale,
    csc_transpose,
)

QuadKey = Tuple[int, int]


def quad_key(a: int, b: int) -> QuadKey:
    """Normalize an unordered variable pair (smaller id first)."""
    return (a, b) if a <= b else (b, a)


@dataclass(frozen=True, eq=False)
class QuadExpr:
    """Quadratic function of the problem variables.

    Args:
        quad_coeffs: Normalized variable pair -> block of the symmetric ``Q``.
        linear: Single-row LinExpr with zero constant.
        constant: Scalar offset.
    """
    quad_coeffs: Dict[QuadKey, CscMatrix] = field(default_factory=dict)
    linear: LinExpr = field(default_factory=lambda: lin_zero(1))
    constant: float = 0.0

    def __post_init__(self) -> None:
        if self.linear.rows != 1:
            raise ShapeError("QuadExpr linear part must have one row", 1, self.linear.rows)
        for a, b in self.quad_coeffs:
            if a > b:
                raise ValueError(f"Quadratic key ({a}, {b}) is not normalized")

    def variables(self) -> List[int]:
        found: Dict[int, None] = {}
        for a, b in self.quad_coeffs:
            found.setdefault(a)
            found.setdefault(b)
        for var_id in self.linear.coeffs:
            found.setdefault(var_id)
        return list(found)

    def is_linear(self) -> bool:
        return all(block.nnz == 0 for block in self.quad_coeffs.values())

    def evaluate(self, values: Mapping[int, jnp.ndarray]) -> jnp.ndarray:
        """Value for variable values given as flat buffers keyed by id."""
        total = jnp.asarray(self.constant) + self.linear.evaluate(values)[0]
        for (a, b), block in self.quad_coeffs.items():
            xa = jnp.asarray(values[a]).reshape(-1)
            xb = jnp.asarray(values[b]).reshape(-1)
            weight = 1.0 if a == b else 2.0
            total = total + weight * jnp.dot(xa, csc_mul_vec(block, xb))
        return total


def quad_from_linear(lin: LinExpr) -> QuadExpr:
    """Split a scalar LinExpr into a linear part and a constant."""
    if lin.rows != 1:
        raise ShapeError("Objective must be scalar", 1, lin.rows)
    linear = LinExpr(dict(lin.coeffs), jnp.zeros(1), 1)
    return QuadExpr({}, linear, float(lin.constant[0]))


def quad_quadratic(var_id: int, P: CscMatrix) -> QuadExpr:
    """``x^T P x`` for a single variable."""
    if P.nrows != P.ncols:
        raise ShapeError("Quadratic coefficient must be square", (P.nrows, P.nrows), P.shape)
    return QuadExpr({(var_id, var_id): P})


def quad_sum_squares(var_id: int, size: int) -> QuadExpr:
    return quad_quadratic(var_id, csc_identity(size))


def _add_block(coeffs: Dict[QuadKey, CscMatrix], key: QuadKey, block: CscMatrix) -> None:
    coeffs[key] = csc_add(coeffs[key], block) if key in coeffs else block


def quad_add(a: QuadExpr, b: QuadExpr) -> QuadExpr:
    coeffs = dict(a.quad_coeffs)
    for key, block in b.quad_coeffs.items():
        _add_block(coeffs, key, block)
    return QuadExpr(coeffs, lin_add(a.linear, b.linear), a.constant + b.constant)


def quad_scale(a: QuadExpr, scalar: float) -> QuadExpr:
    scalar = float(scalar)
    coeffs = {key: csc_scale(block, scalar) for key, block in a.quad_coeffs.items()}
    return QuadExpr(coeffs, lin_scale(a.linear, scalar), a.constant * scalar)


def quad_from_affine_square(lin: LinExpr, weight: Optional[CscMatrix] = None) -> QuadExpr:
    """Expand ``(A x + c)^T W (A x + c)`` for a symmetric ``W`` (identity by default).

    Args:
        lin: Affine expression ``A x + c``.
        weight: Symmetric ``rows x rows`` weight matrix.
    """
    if weight is not None and weight.shape != (lin.rows, lin.rows):
        raise ShapeError("Weight matrix must match LinExpr rows", (lin.rows, lin.rows), weight.shape)

    weighted = {
        var_id: block if weight is None else csc_mul_mat(weight, block)
        for var_id, block in lin.coeffs.items()
    }
    var_ids = list(lin.coeffs)

    coeffs: Dict[QuadKey, CscMatrix] = {}
    for i, a in enumerate(var_ids):
        for b in var_ids[i:]:
            key = quad_key(a, b)
            block = csc_mul_mat_transpose_left(lin.coeffs[key[0]], weighted[key[1]])
            _add_block(coeffs, key, block)

    c = np.asarray(lin.constant)
    wc = c if weight is None else np.asarray(csc_mul_vec(weight, c))
    wc_col = csc_from_dense(wc.reshape(-1, 1))
    linear_coeffs = {
        var_id: csc_scale(csc_transpose(csc_mul_mat_transpose_left(block, wc_col)), 2.0)
        for var_id, block in lin.coeffs.items()
    }
    linear = LinExpr(linear_coeffs, jnp.zeros(1), 1)
    return QuadExpr(coeffs, linear, float(np.dot(c, wc)))
