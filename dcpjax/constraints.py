"""Constraint classes for optimization problems."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Sequence

from dcpjax import dcp
from dcpjax.errors import DcpError, ShapeError
from dcpjax.expressions import Expression, as_expression, collect_variables
from dcpjax.utils.checking import check_shapes_compatible, create_error_message
from dcpjax.utils.shapes import shape_size


class Constraint(ABC):
    """Base class for all constraints."""

    kind: str

    @abstractmethod
    def expressions(self) -> List[Expression]:
        """Expressions the constraint is built from."""

    @abstractmethod
    def is_dcp(self) -> bool:
        """Check if the constraint follows the DCP rules."""

    @abstractmethod
    def validate_dcp(self) -> None:
        """Raise :class:`DcpError` if the constraint violates the DCP rules."""

    def variables(self) -> List[int]:
        found: dict = {}
        for expr in self.expressions():
            collect_variables(expr, found)
        return list(found)


@dataclass(frozen=True, eq=False)
class EqualityConstraint(Constraint):
    """Equality constraint: expr == 0.

    Args:
        expression: Expression that should equal zero.

    Example:
        >>> x = Variable(shape=(2,))
        >>> con = EqualityConstraint(sum(x) - 1)  # sum(x) == 1
    """
    expression: Expression

    kind = "zero"

    def expressions(self) -> List[Expression]:
        return [self.expression]

    def is_dcp(self) -> bool:
        """Equality constraints require affine expressions."""
        return dcp.is_affine(self.expression)

    def validate_dcp(self) -> None:
        if not self.is_dcp():
            raise DcpError(
                f"Equality constraint requires affine expression, got {dcp.curvature(self.expression).value}"
            )


@dataclass(frozen=True, eq=False)
class InequalityConstraint(Constraint):
    """Inequality constraint stored in the normalized form expr >= 0.

    Args:
        expression: Expression that should be nonnegative.

    Example:
        >>> x = Variable(shape=(2,))
        >>> con = InequalityConstraint(x)  # x >= 0
    """
    expression: Expression

    kind = "nonneg"

    def expressions(self) -> List[Expression]:
        return [self.expression]

    def is_dcp(self) -> bool:
        """``expr >= 0`` needs a concave (or affine) expression."""
        return dcp.is_concave(self.expression)

    def validate_dcp(self) -> None:
        if not self.is_dcp():
            raise DcpError(
                "Inequality constraint requires concave expression (rhs - lhs >= 0), "
                f"got {dcp.curvature(self.expression).value}"
            )


@dataclass(frozen=True, eq=False)
class SocConstraint(Constraint):
    """Second-order cone constraint: ``norm2(x) <= t``.

    Args:
        t: Scalar expression.
        x: Expression whose entries form the cone vector.
    """
    t: Expression
    x: Expression

    kind = "soc"

    def expressions(self) -> List[Expression]:
        return [self.t, self.x]

    def is_dcp(self) -> bool:
        return dcp.is_affine(self.t) and dcp.is_affine(self.x)

    def validate_dcp(self) -> None:
        if not dcp.is_affine(self.t):
            raise DcpError(f"SOC constraint requires affine t, got {dcp.curvature(self.t).value}")
        if not dcp.is_affine(self.x):
            raise DcpError(f"SOC constraint requires affine x, got {dcp.curvature(self.x).value}")


def eq(lhs: Any, rhs: Any) -> EqualityConstraint:
    """``lhs == rhs``, stored as ``lhs - rhs == 0``."""
    lhs, rhs = as_expression(lhs), as_expression(rhs)
    check_shapes_compatible(lhs.shape, rhs.shape, "equate")
    return EqualityConstraint(lhs - rhs)


def le(lhs: Any, rhs: Any) -> InequalityConstraint:
    """``lhs <= rhs``, stored as ``rhs - lhs >= 0``."""
    lhs, rhs = as_expression(lhs), as_expression(rhs)
    check_shapes_compatible(lhs.shape, rhs.shape, "compare")
    return InequalityConstraint(rhs - lhs)


def ge(lhs: Any, rhs: Any) -> InequalityConstraint:
    """``lhs >= rhs``, stored as ``lhs - rhs >= 0``."""
    lhs, rhs = as_expression(lhs), as_expression(rhs)
    check_shapes_compatible(lhs.shape, rhs.shape, "compare")
    return InequalityConstraint(lhs - rhs)


def soc(x: Any, t: Any) -> SocConstraint:
    """``norm2(x) <= t`` for a scalar ``t``."""
    x, t = as_expression(x), as_expression(t)
    if shape_size(t.shape) != 1:
        raise ShapeError("SOC constraint requires a scalar t", "scalar", t.shape)
    return SocConstraint(t, x)


def is_dcp_constraint(constraint: Constraint) -> bool:
    return constraint.is_dcp()


def validate_dcp_constraint(constraint: Constraint) -> None:
    constraint.validate_dcp()


def validate_constraints_dcp(constraints: Sequence[Constraint]) -> None:
    """Validate every constraint, naming the first offender.

    Raises:
        DcpError: If any constraint violates the DCP rules.
    """
    for i, constraint in enumerate(constraints):
        try:
            constraint.validate_dcp()
        except DcpError as exc:
            raise DcpError(create_error_message(
                f"Constraint {i} violates DCP rules",
                {"constraint": constraint.kind, "reason": str(exc)},
            )) from exc
