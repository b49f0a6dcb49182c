"""Disciplined convex programming analysis: curvature and sign."""

from __future__ import annotations

import enum
from typing import Callable, Dict, List

import numpy as np

from dcpjax.expressions import Atom, Constant, Expression, ExprKind, Variable


class Curvature(enum.Enum):
    CONSTANT = "constant"
    AFFINE = "affine"
    CONVEX = "convex"
    CONCAVE = "concave"
    UNKNOWN = "unknown"


class Sign(enum.Enum):
    NONNEGATIVE = "nonnegative"
    NONPOSITIVE = "nonpositive"
    ZERO = "zero"
    UNKNOWN = "unknown"


# Lattice helpers

def is_affine_curvature(c: Curvature) -> bool:
    return c in (Curvature.CONSTANT, Curvature.AFFINE)


def is_convex_curvature(c: Curvature) -> bool:
    return c in (Curvature.CONSTANT, Curvature.AFFINE, Curvature.CONVEX)


def is_concave_curvature(c: Curvature) -> bool:
    return c in (Curvature.CONSTANT, Curvature.AFFINE, Curvature.CONCAVE)


def add_curvature(a: Curvature, b: Curvature) -> Curvature:
    """Curvature of a sum."""
    if a == Curvature.CONSTANT:
        return b
    if b == Curvature.CONSTANT:
        return a
    if a == Curvature.AFFINE:
        return b
    if b == Curvature.AFFINE:
        return a
    if a == b:
        return a
    return Curvature.UNKNOWN


def negate_curvature(c: Curvature) -> Curvature:
    if c == Curvature.CONVEX:
        return Curvature.CONCAVE
    if c == Curvature.CONCAVE:
        return Curvature.CONVEX
    return c


def scale_curvature(c: Curvature, s: Sign) -> Curvature:
    """Curvature of ``c`` multiplied by a constant of sign ``s``."""
    if s == Sign.ZERO:
        return Curvature.CONSTANT
    if s == Sign.NONNEGATIVE:
        return c
    if s == Sign.NONPOSITIVE:
        return negate_curvature(c)
    return c if is_affine_curvature(c) else Curvature.UNKNOWN


def add_sign(a: Sign, b: Sign) -> Sign:
    if a == Sign.ZERO:
        return b
    if b == Sign.ZERO:
        return a
    if a == b:
        return a
    return Sign.UNKNOWN


def negate_sign(s: Sign) -> Sign:
    if s == Sign.NONNEGATIVE:
        return Sign.NONPOSITIVE
    if s == Sign.NONPOSITIVE:
        return Sign.NONNEGATIVE
    return s


def mul_sign(a: Sign, b: Sign) -> Sign:
    if a == Sign.ZERO or b == Sign.ZERO:
        return Sign.ZERO
    if a == Sign.UNKNOWN or b == Sign.UNKNOWN:
        return Sign.UNKNOWN
    return Sign.NONNEGATIVE if a == b else Sign.NONPOSITIVE


def _is_nonneg(s: Sign) -> bool:
    return s in (Sign.NONNEGATIVE, Sign.ZERO)


def _is_nonpos(s: Sign) -> bool:
    return s in (Sign.NONPOSITIVE, Sign.ZERO)


# Curvature rules

def _fold_add(expr: Atom) -> Curvature:
    result = Curvature.CONSTANT
    for arg in expr.args:
        result = add_curvature(result, curvature(arg))
    return result


def _constant_scaled(expr: Atom) -> Curvature:
    lhs, rhs = expr.args
    cl, cr = curvature(lhs), curvature(rhs)
    if cl == Curvature.CONSTANT and cr == Curvature.CONSTANT:
        return Curvature.CONSTANT
    if cl == Curvature.CONSTANT:
        return scale_curvature(cr, sign(lhs))
    if cr == Curvature.CONSTANT:
        return scale_curvature(cl, sign(rhs))
    return Curvature.UNKNOWN


def _div(expr: Atom) -> Curvature:
    lhs, rhs = expr.args
    if curvature(rhs) != Curvature.CONSTANT:
        return Curvature.UNKNOWN
    return scale_curvature(curvature(lhs), sign(rhs))


def _passthrough(expr: Atom) -> Curvature:
    return curvature(expr.args[0])


def _atom_of(children: List[Curvature], result: Curvature, valid: bool) -> Curvature:
    if all(c == Curvature.CONSTANT for c in children):
        return Curvature.CONSTANT
    return result if valid else Curvature.UNKNOWN


def _child_curvatures(expr: Atom) -> List[Curvature]:
    return [curvature(a) for a in expr.args]


def _convex_of_affine(expr: Atom) -> Curvature:
    children = _child_curvatures(expr)
    return _atom_of(children, Curvature.CONVEX, all(is_affine_curvature(c) for c in children))


def _concave_of_affine(expr: Atom) -> Curvature:
    children = _child_curvatures(expr)
    return _atom_of(children, Curvature.CONCAVE, all(is_affine_curvature(c) for c in children))


def _pos(expr: Atom) -> Curvature:
    children = _child_curvatures(expr)
    return _atom_of(children, Curvature.CONVEX, is_convex_curvature(children[0]))


def _neg_part(expr: Atom) -> Curvature:
    children = _child_curvatures(expr)
    return _atom_of(children, Curvature.CONVEX, is_concave_curvature(children[0]))


def _maximum(expr: Atom) -> Curvature:
    children = _child_curvatures(expr)
    return _atom_of(children, Curvature.CONVEX, all(is_convex_curvature(c) for c in children))


def _minimum(expr: Atom) -> Curvature:
    children = _child_curvatures(expr)
    return _atom_of(children, Curvature.CONCAVE, all(is_concave_curvature(c) for c in children))


def _quad_form(expr: Atom) -> Curvature:
    children = _child_curvatures(expr)
    cx, cP = children
    return _atom_of(children, Curvature.CONVEX, is_affine_curvature(cx) and cP == Curvature.CONSTANT)


def _power(expr: Atom) -> Curvature:
    p = expr.p
    if p == 0:
        return Curvature.CONSTANT
    if p == 1:
        return curvature(expr.args[0])
    if 0 < p < 1:
        return _concave_of_affine(expr)
    return _convex_of_affine(expr)


_CURVATURE_RULES: Dict[ExprKind, Callable[[Atom], Curvature]] = {
    ExprKind.ADD: _fold_add,
    ExprKind.NEG: lambda e: negate_curvature(curvature(e.args[0])),
    ExprKind.MUL: _constant_scaled,
    ExprKind.DIV: _div,
    ExprKind.MATMUL: _constant_scaled,
    ExprKind.SUM: _passthrough,
    ExprKind.RESHAPE: _passthrough,
    ExprKind.INDEX: _passthrough,
    ExprKind.VSTACK: _fold_add,
    ExprKind.HSTACK: _fold_add,
    ExprKind.TRANSPOSE: _passthrough,
    ExprKind.TRACE: _passthrough,
    ExprKind.DIAG: _passthrough,
    ExprKind.CUMSUM: _passthrough,
    ExprKind.NORM1: _convex_of_affine,
    ExprKind.NORM2: _convex_of_affine,
    ExprKind.NORM_INF: _convex_of_affine,
    ExprKind.ABS: _convex_of_affine,
    ExprKind.POS: _pos,
    ExprKind.NEG_PART: _neg_part,
    ExprKind.MAXIMUM: _maximum,
    ExprKind.SUM_SQUARES: _convex_of_affine,
    ExprKind.QUAD_FORM: _quad_form,
    ExprKind.QUAD_OVER_LIN: _convex_of_affine,
    ExprKind.EXP: _convex_of_affine,
    ExprKind.MINIMUM: _minimum,
    ExprKind.LOG: _concave_of_affine,
    ExprKind.ENTROPY: _concave_of_affine,
    ExprKind.SQRT: _concave_of_affine,
    ExprKind.POWER: _power,
}


def curvature(expr: Expression) -> Curvature:
    """DCP curvature of an expression.

    Args:
        expr: Expression to analyze.

    Returns:
        The curvature; ``Curvature.UNKNOWN`` when the composition rules
        cannot certify convexity or concavity.

    Example:
        >>> x = Variable((3,))
        >>> curvature(norm2(x))
        <Curvature.CONVEX: 'convex'>
    """
    if isinstance(expr, Variable):
        return Curvature.AFFINE
    if isinstance(expr, Constant):
        return Curvature.CONSTANT
    return _CURVATURE_RULES[expr.kind](expr)


# Sign rules

def _constant_sign(expr: Constant) -> Sign:
    values = np.asarray(expr.value.to_flat())
    if np.all(values == 0):
        return Sign.ZERO
    if np.all(values >= 0):
        return Sign.NONNEGATIVE
    if np.all(values <= 0):
        return Sign.NONPOSITIVE
    return Sign.UNKNOWN


def _variable_sign(expr: Variable) -> Sign:
    if expr.nonneg and expr.nonpos:
        return Sign.ZERO
    if expr.nonneg:
        return Sign.NONNEGATIVE
    if expr.nonpos:
        return Sign.NONPOSITIVE
    return Sign.UNKNOWN


def _fold_add_sign(expr: Atom) -> Sign:
    result = Sign.ZERO
    for arg in expr.args:
        result = add_sign(result, sign(arg))
    return result


def _product_sign(expr: Atom) -> Sign:
    return mul_sign(sign(expr.args[0]), sign(expr.args[1]))


def _forward_sign(expr: Atom) -> Sign:
    return sign(expr.args[0])


def _nonneg_sign(expr: Atom) -> Sign:
    return Sign.NONNEGATIVE


def _unknown_sign(expr: Atom) -> Sign:
    return Sign.UNKNOWN


def _maximum_sign(expr: Atom) -> Sign:
    signs = [sign(a) for a in expr.args]
    if any(_is_nonneg(s) for s in signs):
        return Sign.NONNEGATIVE
    if all(_is_nonpos(s) for s in signs):
        return Sign.NONPOSITIVE
    return Sign.UNKNOWN


def _minimum_sign(expr: Atom) -> Sign:
    signs = [sign(a) for a in expr.args]
    if any(_is_nonpos(s) for s in signs):
        return Sign.NONPOSITIVE
    if all(_is_nonneg(s) for s in signs):
        return Sign.NONNEGATIVE
    return Sign.UNKNOWN


_SIGN_RULES: Dict[ExprKind, Callable[[Atom], Sign]] = {
    ExprKind.ADD: _fold_add_sign,
    ExprKind.NEG: lambda e: negate_sign(sign(e.args[0])),
    ExprKind.MUL: _product_sign,
    ExprKind.DIV: _product_sign,
    ExprKind.MATMUL: _product_sign,
    ExprKind.SUM: _forward_sign,
    ExprKind.RESHAPE: _forward_sign,
    ExprKind.INDEX: _forward_sign,
    ExprKind.VSTACK: _fold_add_sign,
    ExprKind.HSTACK: _fold_add_sign,
    ExprKind.TRANSPOSE: _forward_sign,
    ExprKind.TRACE: _forward_sign,
    ExprKind.DIAG: _forward_sign,
    ExprKind.CUMSUM: _forward_sign,
    ExprKind.NORM1: _nonneg_sign,
    ExprKind.NORM2: _nonneg_sign,
    ExprKind.NORM_INF: _nonneg_sign,
    ExprKind.ABS: _nonneg_sign,
    ExprKind.POS: _nonneg_sign,
    ExprKind.NEG_PART: _nonneg_sign,
    ExprKind.MAXIMUM: _maximum_sign,
    ExprKind.SUM_SQUARES: _nonneg_sign,
    ExprKind.QUAD_FORM: _nonneg_sign,
    ExprKind.QUAD_OVER_LIN: _nonneg_sign,
    ExprKind.EXP: _nonneg_sign,
    ExprKind.MINIMUM: _minimum_sign,
    ExprKind.LOG: _unknown_sign,
    ExprKind.ENTROPY: _unknown_sign,
    ExprKind.SQRT: _nonneg_sign,
    ExprKind.POWER: _nonneg_sign,
}


def sign(expr: Expression) -> Sign:
    """Sign of an expression's values over its whole domain."""
    if isinstance(expr, Variable):
        return _variable_sign(expr)
    if isinstance(expr, Constant):
        return _constant_sign(expr)
    return _SIGN_RULES[expr.kind](expr)


def is_constant(expr: Expression) -> bool:
    return curvature(expr) == Curvature.CONSTANT


def is_affine(expr: Expression) -> bool:
    return is_affine_curvature(curvature(expr))


def is_convex(expr: Expression) -> bool:
    return is_convex_curvature(curvature(expr))


def is_concave(expr: Expression) -> bool:
    return is_concave_curvature(curvature(expr))


def is_nonneg(expr: Expression) -> bool:
    return _is_nonneg(sign(expr))


def is_nonpos(expr: Expression) -> bool:
    return _is_nonpos(sign(expr))
