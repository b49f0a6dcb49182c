"""Compressed sparse column (CSC) matrices.

Index and value buffers are numpy arrays; dense results are returned as
jax arrays. Matrices are treated as immutable: every operation returns a
new :class:`CscMatrix`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import jax.numpy as jnp
import numpy as np
import scipy.sparse as spa

from dcpjax.errors import ShapeError


@dataclass(frozen=True, eq=False)
class CscMatrix:
    """Sparse matrix in compressed sparse column format.

    Args:
        nrows: Number of rows.
        ncols: Number of columns.
        col_ptr: Column pointers, length ``ncols + 1``.
        row_idx: Row index of every stored entry.
        values: Value of every stored entry.
    """
    nrows: int
    ncols: int
    col_ptr: np.ndarray
    row_idx: np.ndarray
    values: np.ndarray

    def __post_init__(self) -> None:
        col_ptr = np.asarray(self.col_ptr, dtype=np.int64)
        row_idx = np.asarray(self.row_idx, dtype=np.int64)
        values = np.asarray(self.values, dtype=np.float64)
        object.__setattr__(self, "col_ptr", col_ptr)
        object.__setattr__(self, "row_idx", row_idx)
        object.__setattr__(self, "values", values)

        if col_ptr.shape != (self.ncols + 1,):
            raise ValueError(f"col_ptr must have length {self.ncols + 1}, got {col_ptr.shape[0]}")
        if col_ptr[0] != 0 or np.any(np.diff(col_ptr) < 0):
            raise ValueError("col_ptr must start at 0 and be nondecreasing")
        if col_ptr[-1] != row_idx.shape[0] or row_idx.shape != values.shape:
            raise ValueError(
                f"col_ptr[-1]={col_ptr[-1]} must equal nnz (row_idx={row_idx.shape[0]}, values={values.shape[0]})"
            )

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.nrows, self.ncols)

    @property
    def nnz(self) -> int:
        return int(self.col_ptr[-1])

    def __repr__(self) -> str:
        return f"CscMatrix({self.nrows}x{self.ncols}, nnz={self.nnz})"


def _column_of_entries(A: CscMatrix) -> np.ndarray:
    return np.repeat(np.arange(A.ncols, dtype=np.int64), np.diff(A.col_ptr))


def csc_to_triplets(A: CscMatrix) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return ``(rows, cols, values)`` of the stored entries."""
    return A.row_idx.copy(), _column_of_entries(A), A.values.copy()


def csc_zeros(nrows: int, ncols: int) -> CscMatrix:
    """An ``nrows x ncols`` matrix with no stored entries."""
    return CscMatrix(nrows, ncols, np.zeros(ncols + 1, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0))


def csc_identity(n: int) -> CscMatrix:
    idx = np.arange(n, dtype=np.int64)
    return CscMatrix(n, n, np.arange(n + 1, dtype=np.int64), idx, np.ones(n))


def csc_from_triplets(
    nrows: int,
    ncols: int,
    rows: Sequence[int],
    cols: Sequence[int],
    values: Sequence[float],
) -> CscMatrix:
    """Build a matrix from coordinate triplets.

    Entries are sorted by (column, row), duplicates at the same position are
    summed, and entries that end up exactly zero are dropped.

    Raises:
        ValueError: If an index is out of range or the inputs differ in length.
    """
    rows = np.asarray(rows, dtype=np.int64).reshape(-1)
    cols = np.asarray(cols, dtype=np.int64).reshape(-1)
    values = np.asarray(values, dtype=np.float64).reshape(-1)
    if not rows.shape == cols.shape == values.shape:
        raise ValueError("Triplet arrays must have equal length")
    if rows.size == 0:
        return csc_zeros(nrows, ncols)
    if rows.min() < 0 or rows.max() >= nrows or cols.min() < 0 or cols.max() >= ncols:
        raise ValueError(f"Triplet index out of range for {nrows}x{ncols} matrix")

    keys = cols * nrows + rows
    unique_keys, inverse = np.unique(keys, return_inverse=True)
    summed = np.zeros(unique_keys.shape[0])
    np.add.at(summed, inverse.reshape(-1), values)

    keep = summed != 0.0
    unique_keys = unique_keys[keep]
    summed = summed[keep]
    out_cols = unique_keys // nrows
    out_rows = unique_keys % nrows

    col_ptr = np.zeros(ncols + 1, dtype=np.int64)
    col_ptr[1:] = np.cumsum(np.bincount(out_cols, minlength=ncols))
    return CscMatrix(nrows, ncols, col_ptr, out_rows, summed)


def csc_from_dense(data: Any, nrows: Optional[int] = None, ncols: Optional[int] = None) -> CscMatrix:
    """Build a matrix from a dense array.

    Args:
        data: A 2-D array, or a flat column-major buffer when ``nrows`` and
            ``ncols`` are given.
        nrows: Row count for a flat buffer.
        ncols: Column count for a flat buffer.
    """
    dense = np.asarray(data, dtype=np.float64)
    if nrows is not None or ncols is not None:
        if nrows is None or ncols is None:
            raise ValueError("nrows and ncols must be given together")
        if dense.size != nrows * ncols:
            raise ShapeError("Dense buffer length does not match matrix size", nrows * ncols, dense.size)
        dense = dense.reshape((ncols, nrows)).T
    elif dense.ndim == 1:
        dense = dense.reshape(-1, 1)
    elif dense.ndim == 0:
        dense = dense.reshape(1, 1)
    r, c = np.nonzero(dense)
    return csc_from_triplets(dense.shape[0], dense.shape[1], r, c, dense[r, c])


def csc_from_scipy(matrix: Any) -> CscMatrix:
    """Convert any scipy sparse matrix or array."""
    m = spa.csc_matrix(matrix)
    m.sum_duplicates()
    m.eliminate_zeros()
    return CscMatrix(m.shape[0], m.shape[1], m.indptr, m.indices, m.data)


def csc_to_scipy(A: CscMatrix) -> spa.csc_matrix:
    return spa.csc_matrix((A.values, A.row_idx, A.col_ptr), shape=A.shape)


def _to_numpy_dense(A: CscMatrix) -> np.ndarray:
    dense = np.zeros((A.nrows, A.ncols))
    dense[A.row_idx, _column_of_entries(A)] = A.values
    return dense


def csc_to_dense(A: CscMatrix) -> jnp.ndarray:
    """Dense 2-D jax array."""
    return jnp.asarray(_to_numpy_dense(A))


def csc_to_dense_flat(A: CscMatrix) -> jnp.ndarray:
    """Dense column-major flat buffer."""
    return jnp.asarray(_to_numpy_dense(A).T.reshape(-1))


def csc_nnz(A: CscMatrix) -> int:
    return A.nnz


def csc_get(A: CscMatrix, row: int, col: int) -> float:
    """Entry at ``(row, col)``; 0.0 if not stored."""
    if not (0 <= row < A.nrows and 0 <= col < A.ncols):
        raise IndexError(f"Index ({row}, {col}) out of bounds for {A.nrows}x{A.ncols} matrix")
    start, end = A.col_ptr[col], A.col_ptr[col + 1]
    hits = np.nonzero(A.row_idx[start:end] == row)[0]
    return float(A.values[start + hits[0]]) if hits.size else 0.0


def csc_clone(A: CscMatrix) -> CscMatrix:
    return CscMatrix(A.nrows, A.ncols, A.col_ptr.copy(), A.row_idx.copy(), A.values.copy())


def csc_scale(A: CscMatrix, scalar: float) -> CscMatrix:
    """Multiply every entry by ``scalar``; scaling by zero yields an empty matrix."""
    scalar = float(scalar)
    if scalar == 0.0:
        return csc_zeros(A.nrows, A.ncols)
    return CscMatrix(A.nrows, A.ncols, A.col_ptr, A.row_idx, A.values * scalar)


def _check_same_shape(A: CscMatrix, B: CscMatrix, operation: str) -> None:
    if A.shape != B.shape:
        raise ShapeError(f"Cannot {operation} sparse matrices", A.shape, B.shape)


def csc_add(A: CscMatrix, B: CscMatrix) -> CscMatrix:
    _check_same_shape(A, B, "add")
    ra, ca, va = csc_to_triplets(A)
    rb, cb, vb = csc_to_triplets(B)
    return csc_from_triplets(
        A.nrows, A.ncols,
        np.concatenate([ra, rb]), np.concatenate([ca, cb]), np.concatenate([va, vb]),
    )


def csc_sub(A: CscMatrix, B: CscMatrix) -> CscMatrix:
    _check_same_shape(A, B, "subtract")
    return csc_add(A, csc_scale(B, -1.0))


def csc_transpose(A: CscMatrix) -> CscMatrix:
    """Transpose by a stable counting sort on row indices."""
    order = np.argsort(A.row_idx, kind="stable")
    col_ptr = np.zeros(A.nrows + 1, dtype=np.int64)
    col_ptr[1:] = np.cumsum(np.bincount(A.row_idx, minlength=A.nrows))
    return CscMatrix(A.ncols, A.nrows, col_ptr, _column_of_entries(A)[order], A.values[order])


def csc_hstack(blocks: Sequence[CscMatrix]) -> CscMatrix:
    """Concatenate matrices with equal row counts side by side."""
    if not blocks:
        raise ValueError("csc_hstack requires at least one block")
    nrows = blocks[0].nrows
    for block in blocks:
        if block.nrows != nrows:
            raise ShapeError("hstack requires equal row counts", nrows, block.nrows)

    col_ptrs = [np.zeros(1, dtype=np.int64)]
    offset = 0
    for block in blocks:
        col_ptrs.append(block.col_ptr[1:] + offset)
        offset += block.nnz
    return CscMatrix(
        nrows,
        sum(b.ncols for b in blocks),
        np.concatenate(col_ptrs),
        np.concatenate([b.row_idx for b in blocks]),
        np.concatenate([b.values for b in blocks]),
    )


def csc_vstack(blocks: Sequence[CscMatrix]) -> CscMatrix:
    """Stack matrices with equal column counts on top of each other."""
    if not blocks:
        raise ValueError("csc_vstack requires at least one block")
    ncols = blocks[0].ncols
    for block in blocks:
        if block.ncols != ncols:
            raise ShapeError("vstack requires equal column counts", ncols, block.ncols)
    return csc_transpose(csc_hstack([csc_transpose(b) for b in blocks]))


def csc_mul_vec(A: CscMatrix, x: Any) -> jnp.ndarray:
    """Matrix-vector product ``A @ x``."""
    x = np.asarray(x, dtype=np.float64).reshape(-1)
    if x.shape[0] != A.ncols:
        raise ShapeError("Vector length must match column count", A.ncols, x.shape[0])
    y = np.zeros(A.nrows)
    np.add.at(y, A.row_idx, A.values * x[_column_of_entries(A)])
    return jnp.asarray(y)


def csc_mul_mat(A: CscMatrix, B: CscMatrix) -> CscMatrix:
    """Sparse product ``A @ B``, accumulated one column of ``B`` at a time."""
    if A.ncols != B.nrows:
        raise ShapeError("Inner dimensions must match for sparse matmul", A.ncols, B.nrows)

    col_ptr = np.zeros(B.ncols + 1, dtype=np.int64)
    out_rows: List[np.ndarray] = []
    out_vals: List[np.ndarray] = []
    scratch = np.zeros(A.nrows)
    for j in range(B.ncols):
        scratch[:] = 0.0
        for p in range(B.col_ptr[j], B.col_ptr[j + 1]):
            k = B.row_idx[p]
            start, end = A.col_ptr[k], A.col_ptr[k + 1]
            scratch[A.row_idx[start:end]] += B.values[p] * A.values[start:end]
        nz = np.nonzero(scratch)[0]
        out_rows.append(nz)
        out_vals.append(scratch[nz].copy())
        col_ptr[j + 1] = col_ptr[j] + nz.shape[0]

    return CscMatrix(
        A.nrows,
        B.ncols,
        col_ptr,
        np.concatenate(out_rows) if out_rows else np.zeros(0, dtype=np.int64),
        np.concatenate(out_vals) if out_vals else np.zeros(0),
    )


def csc_mul_mat_transpose_left(A: CscMatrix, B: CscMatrix) -> CscMatrix:
    """Compute ``A.T @ B`` without forming ``A.T``.

    A row index of ``A`` (row -> its columns and values) is built once;
    each column of the result then gathers the rows of ``A`` selected by
    the entries of the matching column of ``B``.
    """
    if A.nrows != B.nrows:
        raise ShapeError("Row counts must match for A.T @ B", A.nrows, B.nrows)

    order = np.argsort(A.row_idx, kind="stable")
    row_ptr = np.zeros(A.nrows + 1, dtype=np.int64)
    row_ptr[1:] = np.cumsum(np.bincount(A.row_idx, minlength=A.nrows))
    row_cols = _column_of_entries(A)[order]
    row_vals = A.values[order]

    col_ptr = np.zeros(B.ncols + 1, dtype=np.int64)
    out_rows: List[np.ndarray] = []
    out_vals: List[np.ndarray] = []
    scratch = np.zeros(A.ncols)
    for j in range(B.ncols):
        scratch[:] = 0.0
        for p in range(B.col_ptr[j], B.col_ptr[j + 1]):
            k = B.row_idx[p]
            start, end = row_ptr[k], row_ptr[k + 1]
            scratch[row_cols[start:end]] += B.values[p] * row_vals[start:end]
        nz = np.nonzero(scratch)[0]
        out_rows.append(nz)
        out_vals.append(scratch[nz].copy())
        col_ptr[j + 1] = col_ptr[j] + nz.shape[0]

    return CscMatrix(
        A.ncols,
        B.ncols,
        col_ptr,
        np.concatenate(out_rows) if out_rows else np.zeros(0, dtype=np.int64),
        np.concatenate(out_vals) if out_vals else np.zeros(0),
    )


def csc_diag(values: Any) -> CscMatrix:
    """Square diagonal matrix from a vector."""
    values = np.asarray(values, dtype=np.float64).reshape(-1)
    idx = np.arange(values.shape[0])
    return csc_from_triplets(values.shape[0], values.shape[0], idx, idx, values)


def csc_kron(A: CscMatrix, B: CscMatrix) -> CscMatrix:
    """Kronecker product ``A ⊗ B``."""
    ra, ca, va = csc_to_triplets(A)
    rb, cb, vb = csc_to_triplets(B)
    rows = (ra[:, None] * B.nrows + rb[None, :]).reshape(-1)
    cols = (ca[:, None] * B.ncols + cb[None, :]).reshape(-1)
    vals = (va[:, None] * vb[None, :]).reshape(-1)
    return csc_from_triplets(A.nrows * B.nrows, A.ncols * B.ncols, rows, cols, vals)


def csc_equals(A: CscMatrix, B: CscMatrix, tol: float = 1e-10) -> bool:
    """Structural and element-wise equality within an absolute tolerance."""
    if A.shape != B.shape or not np.array_equal(A.col_ptr, B.col_ptr):
        return False
    order_a = np.lexsort((A.row_idx, _column_of_entries(A)))
    order_b = np.lexsort((B.row_idx, _column_of_entries(B)))
    if not np.array_equal(A.row_idx[order_a], B.row_idx[order_b]):
        return False
    return bool(np.all(np.abs(A.values[order_a] - B.values[order_b]) <= tol))
