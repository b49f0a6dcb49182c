"""Canonical affine expressions.

A :class:`LinExpr` represents ``sum_v A_v x_v + c`` where each ``A_v`` is a
sparse block with one column per entry of variable ``v`` (column-major).
The coefficient map keeps insertion order, which fixes the variable layout
of everything built from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

import jax.numpy as jnp
import numpy as np

from dcpjax.errors import CvxError, ShapeError
from dcpjax.sparse import (
    CscMatrix,
    csc_add,
    csc_diag,
    csc_from_triplets,
    csc_identity,
    csc_mul_mat,
    csc_mul_vec,
    csc_scale,
    csc_vstack,
    csc_zeros,
)


@dataclass(frozen=True, eq=False)
class LinExpr:
    """Affine map from variables to a vector of ``rows`` entries.

    Args:
        coeffs: Variable id -> coefficient block (``rows x size``).
        constant: Dense offset of length ``rows``.
        rows: Number of output rows.
    """
    coeffs: Dict[int, CscMatrix]
    constant: jnp.ndarray
    rows: int

    def __post_init__(self) -> None:
        constant = jnp.asarray(self.constant, dtype=jnp.float64).reshape(-1)
        object.__setattr__(self, "constant", constant)
        if constant.shape[0] != self.rows:
            raise ShapeError("LinExpr constant length must equal row count", self.rows, constant.shape[0])
        for var_id, block in self.coeffs.items():
            if block.nrows != self.rows:
                raise ShapeError(f"Coefficient block for variable {var_id} has wrong row count", self.rows, block.nrows)

    def variables(self) -> List[int]:
        return list(self.coeffs)

    def is_constant(self) -> bool:
        return all(block.nnz == 0 for block in self.coeffs.values())

    def evaluate(self, values: Mapping[int, Any]) -> jnp.ndarray:
        """Evaluate for variable values given as flat column-major buffers keyed by id."""
        result = self.constant
        for var_id, block in self.coeffs.items():
            if var_id not in values:
                raise CvxError(f"No value supplied for variable {var_id}")
            result = result + csc_mul_vec(block, jnp.asarray(values[var_id]).reshape(-1))
        return result


def lin_variable(var_id: int, size: int) -> LinExpr:
    """Identity map for a single variable."""
    return LinExpr({var_id: csc_identity(size)}, jnp.zeros(size), size)


def lin_constant(values: Any) -> LinExpr:
    constant = jnp.asarray(values, dtype=jnp.float64).reshape(-1)
    return LinExpr({}, constant, int(constant.shape[0]))


def lin_zero(rows: int) -> LinExpr:
    return LinExpr({}, jnp.zeros(rows), rows)


def _ones_column(n: int) -> CscMatrix:
    return csc_from_triplets(n, 1, np.arange(n), np.zeros(n, dtype=np.int64), np.ones(n))


def lin_left_mul(M: CscMatrix, a: LinExpr) -> LinExpr:
    """Compute ``M @ a``."""
    if M.ncols != a.rows:
        raise ShapeError("Left multiplier column count must equal LinExpr rows", a.rows, M.ncols)
    coeffs = {var_id: csc_mul_mat(M, block) for var_id, block in a.coeffs.items()}
    return LinExpr(coeffs, csc_mul_vec(M, a.constant), M.nrows)


def lin_broadcast(a: LinExpr, rows: int) -> LinExpr:
    """Replicate a one-row LinExpr ``rows`` times."""
    if a.rows == rows:
        return a
    if a.rows != 1:
        raise ShapeError("Only single-row LinExprs can be broadcast", 1, a.rows)
    return lin_left_mul(_ones_column(rows), a)


def lin_add(a: LinExpr, b: LinExpr) -> LinExpr:
    """Sum of two LinExprs; a single-row operand is broadcast to the other's size."""
    if a.rows != b.rows:
        if a.rows == 1:
            a = lin_broadcast(a, b.rows)
        elif b.rows == 1:
            b = lin_broadcast(b, a.rows)
        else:
            raise ShapeError("Cannot add LinExprs with different row counts", a.rows, b.rows)

    coeffs = dict(a.coeffs)
    for var_id, block in b.coeffs.items():
        coeffs[var_id] = csc_add(coeffs[var_id], block) if var_id in coeffs else block
    return LinExpr(coeffs, a.constant + b.constant, a.rows)


def lin_neg(a: LinExpr) -> LinExpr:
    return LinExpr({k: csc_scale(v, -1.0) for k, v in a.coeffs.items()}, -a.constant, a.rows)


def lin_sub(a: LinExpr, b: LinExpr) -> LinExpr:
    return lin_add(a, lin_neg(b))


def lin_scale(a: LinExpr, scalar: float) -> LinExpr:
    scalar = float(scalar)
    if scalar == 0.0:
        return lin_zero(a.rows)
    return LinExpr({k: csc_scale(v, scalar) for k, v in a.coeffs.items()}, a.constant * scalar, a.rows)


def lin_diag_scale(a: LinExpr, d: Any) -> LinExpr:
    """Multiply row ``i`` by ``d[i]``."""
    d = np.asarray(d, dtype=np.float64).reshape(-1)
    if d.shape[0] != a.rows:
        raise ShapeError("Diagonal scale length must equal LinExpr rows", a.rows, d.shape[0])
    return lin_left_mul(csc_diag(d), a)


def lin_sum(a: LinExpr) -> LinExpr:
    """Sum of all rows, as a single-row LinExpr."""
    ones_row = csc_from_triplets(1, a.rows, np.zeros(a.rows, dtype=np.int64), np.arange(a.rows), np.ones(a.rows))
    return lin_left_mul(ones_row, a)


def lin_select_rows(a: LinExpr, indices: Sequence[int]) -> LinExpr:
    """Rows ``indices`` of ``a``, in the given order."""
    indices = np.asarray(indices, dtype=np.int64).reshape(-1)
    k = indices.shape[0]
    selector = csc_from_triplets(k, a.rows, np.arange(k), indices, np.ones(k))
    return lin_left_mul(selector, a)


def lin_vstack(parts: Sequence[LinExpr]) -> LinExpr:
    """Stack LinExprs vertically; missing variables get zero blocks."""
    if not parts:
        raise ValueError("lin_vstack requires at least one part")

    sizes: Dict[int, int] = {}
    for part in parts:
        for var_id, block in part.coeffs.items():
            sizes.setdefault(var_id, block.ncols)

    coeffs = {}
    for var_id, size in sizes.items():
        blocks = [part.coeffs.get(var_id, csc_zeros(part.rows, size)) for part in parts]
        coeffs[var_id] = csc_vstack(blocks)
    constant = jnp.concatenate([part.constant for part in parts])
    return LinExpr(coeffs, constant, sum(part.rows for part in parts))


def lin_is_constant(a: LinExpr) -> bool:
    return a.is_constant()
