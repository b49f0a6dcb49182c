"""Exception hierarchy for dcpjax."""

from __future__ import annotations

from typing import Any


class CvxError(Exception):
    """Base class for all errors raised by dcpjax."""


class ShapeError(CvxError, ValueError):
    """Dimension or broadcast mismatch detected while building an expression.

    Args:
        message: Description of the failing operation.
        expected: Expected shape (or description of it).
        got: Actual shape that was supplied.
    """

    def __init__(self, message: str, expected: Any = None, got: Any = None) -> None:
        self.expected = expected
        self.got = got
        if expected is not None or got is not None:
            message = f"{message}: expected {_describe(expected)}, got {_describe(got)}"
        super().__init__(message)


class DcpError(CvxError, ValueError):
    """Violation of the disciplined convex programming rules, or an unsupported construct."""


class SolverError(CvxError):
    """The numeric solver failed or returned an unusable status."""

    def __init__(self, message: str, status: str | None = None) -> None:
        self.status = status
        super().__init__(message)


class InfeasibleError(SolverError):
    def __init__(self, message: str = "Problem is infeasible") -> None:
        super().__init__(message, status="infeasible")


class UnboundedError(SolverError):
    def __init__(self, message: str = "Problem is unbounded") -> None:
        super().__init__(message, status="unbounded")


def _describe(value: Any) -> str:
    if isinstance(value, tuple):
        from dcpjax.utils.shapes import shape_to_string

        return shape_to_string(value)
    return str(value)
