"""Atomic functions for building expressions.

Every constructor promotes plain numbers and arrays to constants, checks
shapes eagerly (raising :class:`~dcpjax.errors.ShapeError`) and returns a
new immutable node.
"""

from __future__ import annotations

import builtins
import math
from typing import Any, Optional, Union

import jax.numpy as jnp
import numpy as np

from dcpjax.errors import ShapeError
from dcpjax.expressions import (
    Atom,
    Constant,
    Expression,
    ExprKind,
    IndexRange,
    as_expression,
)
from dcpjax.utils.shapes import Shape


# Affine atoms

def add(lhs: Any, rhs: Any) -> Expression:
    """Element-wise sum with broadcasting.

    Example:
        >>> x = Variable((3,))
        >>> add(x, 1.0).shape
        (3,)
    """
    return Atom(ExprKind.ADD, (as_expression(lhs), as_expression(rhs)))


def sub(lhs: Any, rhs: Any) -> Expression:
    """Element-wise difference, built as ``add(lhs, neg(rhs))``."""
    return add(lhs, neg(rhs))


def neg(expr: Any) -> Expression:
    expr = as_expression(expr)
    if isinstance(expr, Atom) and expr.kind == ExprKind.NEG:
        return expr.args[0]
    return Atom(ExprKind.NEG, (expr,))


def mul(lhs: Any, rhs: Any) -> Expression:
    """Element-wise product. One operand must be constant for DCP."""
    return Atom(ExprKind.MUL, (as_expression(lhs), as_expression(rhs)))


def div(lhs: Any, rhs: Any) -> Expression:
    """Element-wise division by a constant."""
    return Atom(ExprKind.DIV, (as_expression(lhs), as_expression(rhs)))


def matmul(lhs: Any, rhs: Any) -> Expression:
    """Matrix multiplication.

    Args:
        lhs: Left operand (vector or matrix).
        rhs: Right operand (vector or matrix).

    Returns:
        Expression with the usual vector/matrix product shape.

    Raises:
        ShapeError: If inner dimensions don't match.

    Example:
        >>> A = jnp.array([[1.0, 2.0], [3.0, 4.0]])
        >>> x = Variable(shape=(2,))
        >>> matmul(A, x).shape
        (2,)
    """
    return Atom(ExprKind.MATMUL, (as_expression(lhs), as_expression(rhs)))


def sum(expr: Any, axis: Optional[int] = None) -> Expression:
    """Sum of all entries, or along one axis.

    Args:
        expr: Expression to sum.
        axis: Axis to reduce; ``None`` sums everything to a scalar.
    """
    return Atom(ExprKind.SUM, (as_expression(expr),), axis=axis)


def reshape(expr: Any, shape: Union[int, Shape]) -> Expression:
    """Reshape in column-major order."""
    target = (shape,) if isinstance(shape, int) else tuple(shape)
    return Atom(ExprKind.RESHAPE, (as_expression(expr),), target_shape=target)


def _normalize_index(key: Any, dim: int) -> IndexRange:
    if isinstance(key, IndexRange):
        return key
    if isinstance(key, str):
        if key in ("all", ":"):
            return IndexRange.all()
        raise ValueError(f"Unknown index spec {key!r}")
    if isinstance(key, slice):
        if key.step not in (None, 1):
            raise ValueError("Strided slices are not supported")
        if key.start is None and key.stop is None:
            return IndexRange.all()
        start, stop, _ = key.indices(dim)
        return IndexRange.range(start, builtins.max(start, stop))
    if isinstance(key, tuple):
        start, stop = key
        return IndexRange.range(int(start), int(stop))
    if isinstance(key, (int, np.integer)):
        index = int(key)
        if index < 0:
            index += dim
        return IndexRange.single(index)
    raise TypeError(f"Unsupported index type {type(key).__name__}")


def index(expr: Any, *keys: Any) -> Expression:
    """Select entries per dimension.

    Each key is an int (single position, drops the dimension), a
    ``(start, stop)`` pair or slice (half-open range), or ``"all"``.
    Missing trailing keys select everything.

    Example:
        >>> X = Variable((3, 4))
        >>> index(X, 0, (1, 3)).shape
        (2,)
    """
    expr = as_expression(expr)
    shape = expr.shape
    if len(keys) > len(shape):
        raise ShapeError("Too many indices", len(shape), len(keys))
    specs = [_normalize_index(k, d) for k, d in zip(keys, shape)]
    specs.extend(IndexRange.all() for _ in range(len(shape) - len(specs)))
    return Atom(ExprKind.INDEX, (expr,), indices=tuple(specs))


def vstack(*exprs: Any) -> Expression:
    """Concatenate along rows. Vectors are treated as columns."""
    if len(exprs) == 0:
        raise ValueError("vstack requires at least one argument")
    if len(exprs) == 1:
        return as_expression(exprs[0])
    return Atom(ExprKind.VSTACK, tuple(as_expression(e) for e in exprs))


def hstack(*exprs: Any) -> Expression:
    """Concatenate along columns. Vectors are treated as columns."""
    if len(exprs) == 0:
        raise ValueError("hstack requires at least one argument")
    if len(exprs) == 1:
        return as_expression(exprs[0])
    return Atom(ExprKind.HSTACK, tuple(as_expression(e) for e in exprs))


def transpose(expr: Any) -> Expression:
    expr = as_expression(expr)
    if isinstance(expr, Atom) and expr.kind == ExprKind.TRANSPOSE:
        return expr.args[0]
    return Atom(ExprKind.TRANSPOSE, (expr,))


def trace(expr: Any) -> Expression:
    return Atom(ExprKind.TRACE, (as_expression(expr),))


def diag(expr: Any) -> Expression:
    """Vector to diagonal matrix, or matrix to its main diagonal."""
    return Atom(ExprKind.DIAG, (as_expression(expr),))


def cumsum(expr: Any, axis: int = 0) -> Expression:
    return Atom(ExprKind.CUMSUM, (as_expression(expr),), axis=axis)


def dot(lhs: Any, rhs: Any) -> Expression:
    """Inner product of two vectors of equal length."""
    lhs, rhs = as_expression(lhs), as_expression(rhs)
    if len(lhs.shape) != 1 or lhs.shape != rhs.shape:
        raise ShapeError("dot requires two vectors of equal length", lhs.shape, rhs.shape)
    return sum(mul(lhs, rhs))


# Convex atoms

def norm1(expr: Any) -> Expression:
    """Sum of absolute values of all entries."""
    return Atom(ExprKind.NORM1, (as_expression(expr),))


def norm2(expr: Any) -> Expression:
    """Euclidean norm of all entries (Frobenius norm for matrices)."""
    return Atom(ExprKind.NORM2, (as_expression(expr),))


def norm_inf(expr: Any) -> Expression:
    """Largest absolute value of all entries."""
    return Atom(ExprKind.NORM_INF, (as_expression(expr),))


def norm(expr: Any, p: Union[int, float, str] = 2) -> Expression:
    """Entry-wise p-norm for ``p`` in ``{1, 2, inf}``."""
    if p == 1:
        return norm1(expr)
    if p == 2:
        return norm2(expr)
    if p in ("inf", math.inf):
        return norm_inf(expr)
    raise ValueError(f"Unsupported norm order {p!r}; expected 1, 2 or inf")


def abs(expr: Any) -> Expression:
    """Element-wise absolute value."""
    return Atom(ExprKind.ABS, (as_expression(expr),))


def pos(expr: Any) -> Expression:
    """Element-wise ``max(x, 0)``."""
    return Atom(ExprKind.POS, (as_expression(expr),))


def neg_part(expr: Any) -> Expression:
    """Element-wise ``max(-x, 0)``."""
    return Atom(ExprKind.NEG_PART, (as_expression(expr),))


def maximum(*exprs: Any) -> Expression:
    """Element-wise maximum of one or more expressions."""
    if len(exprs) == 0:
        raise ValueError("maximum requires at least one argument")
    if len(exprs) == 1:
        return as_expression(exprs[0])
    return Atom(ExprKind.MAXIMUM, tuple(as_expression(e) for e in exprs))


def sum_squares(expr: Any) -> Expression:
    """Sum of squares of all entries.

    Args:
        expr: Affine expression.

    Returns:
        Scalar convex expression.

    Example:
        >>> x = Variable(shape=(3,))
        >>> obj = sum_squares(x)  # x[0]^2 + x[1]^2 + x[2]^2
    """
    return Atom(ExprKind.SUM_SQUARES, (as_expression(expr),))


def quad_form(x: Any, P: Any) -> Expression:
    """Quadratic form ``x^T P x``.

    Args:
        x: Vector expression of length n.
        P: Constant n x n matrix, assumed positive semidefinite.

    Raises:
        ShapeError: If ``x`` is not a vector or ``P`` is not n x n.

    Example:
        >>> x = Variable(shape=(2,))
        >>> P = jnp.array([[2.0, 1.0], [1.0, 3.0]])
        >>> obj = quad_form(x, P)
    """
    return Atom(ExprKind.QUAD_FORM, (as_expression(x), as_expression(P)))


def quad_over_lin(x: Any, y: Any) -> Expression:
    """``sum_squares(x) / y`` for a scalar ``y > 0``."""
    return Atom(ExprKind.QUAD_OVER_LIN, (as_expression(x), as_expression(y)))


def exp(expr: Any) -> Expression:
    return Atom(ExprKind.EXP, (as_expression(expr),))


# Concave atoms

def minimum(*exprs: Any) -> Expression:
    """Element-wise minimum of one or more expressions."""
    if len(exprs) == 0:
        raise ValueError("minimum requires at least one argument")
    if len(exprs) == 1:
        return as_expression(exprs[0])
    return Atom(ExprKind.MINIMUM, tuple(as_expression(e) for e in exprs))


def log(expr: Any) -> Expression:
    return Atom(ExprKind.LOG, (as_expression(expr),))


def entropy(expr: Any) -> Expression:
    """Element-wise ``-x log(x)``."""
    return Atom(ExprKind.ENTROPY, (as_expression(expr),))


def sqrt(expr: Any) -> Expression:
    return Atom(ExprKind.SQRT, (as_expression(expr),))


def power(expr: Any, p: float) -> Expression:
    """Element-wise power.

    For ``p > 1`` this is ``|x|^p`` (convex); for ``0 < p < 1`` it is
    ``x^p`` on ``x >= 0`` (concave); for ``p < 0`` it is ``x^p`` on
    ``x > 0`` (convex). ``p == 1`` returns ``expr`` and ``p == 0`` a
    constant of ones.
    """
    expr = as_expression(expr)
    p = float(p)
    if p == 1.0:
        return expr
    if p == 0.0:
        return Constant(jnp.ones(expr.shape) if expr.shape else 1.0)
    return Atom(ExprKind.POWER, (expr,), p=p)


def square(expr: Any) -> Expression:
    """Element-wise square.

    Example:
        >>> x = Variable(shape=(3,))
        >>> obj = sum(square(x))
    """
    return power(expr, 2)
