"""Numeric evaluation of expression trees."""

from __future__ import annotations

from functools import reduce
from typing import Any, Callable, Dict, Mapping, Union

import jax.numpy as jnp
import jax.scipy.special as jsp

from dcpjax.errors import CvxError
from dcpjax.expressions import (
    Atom,
    Constant,
    Expression,
    ExprKind,
    Variable,
    ravel_column_major,
    unravel_column_major,
)
from dcpjax.utils.shapes import as_matrix_shape

VariableValues = Mapping[Union[int, Variable], Any]


def _as_2d(value: jnp.ndarray) -> jnp.ndarray:
    return value.reshape(as_matrix_shape(value.shape)) if value.ndim < 2 else value


def _vstack(node: Atom, vals) -> jnp.ndarray:
    if len(node.shape) == 1:
        return jnp.concatenate([ravel_column_major(v) for v in vals])
    return jnp.concatenate([_as_2d(v) for v in vals], axis=0)


def _hstack(node: Atom, vals) -> jnp.ndarray:
    return jnp.concatenate([_as_2d(v) for v in vals], axis=1)


def _index(node: Atom, vals) -> jnp.ndarray:
    key = []
    for spec in node.indices:
        if spec.kind == "single":
            key.append(spec.start)
        elif spec.kind == "range":
            key.append(slice(spec.start, spec.stop))
        else:
            key.append(slice(None))
    return vals[0][tuple(key)]


def _power(node: Atom, vals) -> jnp.ndarray:
    if node.p > 1:
        return jnp.abs(vals[0]) ** node.p
    return jnp.power(vals[0], node.p)


def _quad_over_lin(node: Atom, vals) -> jnp.ndarray:
    return jnp.sum(vals[0] ** 2) / jnp.reshape(vals[1], ())


_EVALUATORS: Dict[ExprKind, Callable[[Atom, list], jnp.ndarray]] = {
    ExprKind.ADD: lambda n, v: v[0] + v[1],
    ExprKind.NEG: lambda n, v: -v[0],
    ExprKind.MUL: lambda n, v: v[0] * v[1],
    ExprKind.DIV: lambda n, v: v[0] / v[1],
    ExprKind.MATMUL: lambda n, v: jnp.matmul(v[0], v[1]),
    ExprKind.SUM: lambda n, v: jnp.sum(v[0], axis=n.axis),
    ExprKind.RESHAPE: lambda n, v: unravel_column_major(ravel_column_major(v[0]), n.shape),
    ExprKind.INDEX: _index,
    ExprKind.VSTACK: _vstack,
    ExprKind.HSTACK: _hstack,
    ExprKind.TRANSPOSE: lambda n, v: v[0].T if v[0].ndim == 2 else v[0],
    ExprKind.TRACE: lambda n, v: jnp.trace(v[0]),
    ExprKind.DIAG: lambda n, v: jnp.diag(v[0]),
    ExprKind.CUMSUM: lambda n, v: jnp.cumsum(v[0], axis=n.axis if v[0].ndim else None).reshape(n.shape),
    ExprKind.NORM1: lambda n, v: jnp.sum(jnp.abs(v[0])),
    ExprKind.NORM2: lambda n, v: jnp.sqrt(jnp.sum(v[0] ** 2)),
    ExprKind.NORM_INF: lambda n, v: jnp.max(jnp.abs(v[0])),
    ExprKind.ABS: lambda n, v: jnp.abs(v[0]),
    ExprKind.POS: lambda n, v: jnp.maximum(v[0], 0.0),
    ExprKind.NEG_PART: lambda n, v: jnp.maximum(-v[0], 0.0),
    ExprKind.MAXIMUM: lambda n, v: reduce(jnp.maximum, v),
    ExprKind.SUM_SQUARES: lambda n, v: jnp.sum(v[0] ** 2),
    ExprKind.QUAD_FORM: lambda n, v: v[0] @ v[1] @ v[0],
    ExprKind.QUAD_OVER_LIN: _quad_over_lin,
    ExprKind.EXP: lambda n, v: jnp.exp(v[0]),
    ExprKind.MINIMUM: lambda n, v: reduce(jnp.minimum, v),
    ExprKind.LOG: lambda n, v: jnp.log(v[0]),
    ExprKind.ENTROPY: lambda n, v: jsp.entr(v[0]),
    ExprKind.SQRT: lambda n, v: jnp.sqrt(v[0]),
    ExprKind.POWER: _power,
}


def _lookup(values: VariableValues, var: Variable) -> jnp.ndarray:
    if var in values:
        raw = values[var]
    elif var.id in values:
        raw = values[var.id]
    else:
        raise CvxError(f"No value supplied for {var!r}")
    value = jnp.asarray(raw, dtype=jnp.float64)
    if value.shape != var.shape:
        value = unravel_column_major(value.reshape(-1), var.shape)
    return value


def evaluate(expr: Expression, values: VariableValues = None) -> jnp.ndarray:
    """Evaluate an expression numerically.

    Args:
        expr: Expression to evaluate.
        values: Map from :class:`Variable` (or its id) to its value. Flat
            column-major buffers are accepted for matrix variables.

    Returns:
        A jax array with the expression's shape.

    Example:
        >>> x = Variable((2,))
        >>> evaluate(norm1(x), {x: jnp.array([1.0, -2.0])})
        Array(3., dtype=float64)
    """
    values = {} if values is None else values
    if isinstance(expr, Variable):
        return _lookup(values, expr)
    if isinstance(expr, Constant):
        return expr.value.to_array()
    args = [evaluate(arg, values) for arg in expr.args]
    return jnp.asarray(_EVALUATORS[expr.kind](expr, args)).reshape(expr.shape)
