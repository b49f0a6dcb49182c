"""Backend selection from the structure of a stuffed problem."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from dcpjax.errors import SolverError
from dcpjax.stuffing import StuffedProblem

SOLVERS = ("clarabel", "osqp")


@dataclass(frozen=True)
class ProblemClass:
    """Coarse classification of a stuffed problem.

    Args:
        is_quadratic: Objective has a nonzero ``P``.
        is_conic: Any SOC, exponential or power cone present.
        n_vars: Stuffed variable count.
        n_constraints: Stuffed row count.
    """
    is_quadratic: bool
    is_conic: bool
    n_vars: int
    n_constraints: int

    @property
    def name(self) -> str:
        if self.is_conic:
            return "conic"
        return "qp" if self.is_quadratic else "lp"


def analyze_problem(stuffed: StuffedProblem) -> ProblemClass:
    return ProblemClass(
        is_quadratic=stuffed.is_quadratic,
        is_conic=stuffed.cone_dims.is_conic,
        n_vars=stuffed.n_vars,
        n_constraints=stuffed.n_constraints,
    )


def select_solver(problem_class: ProblemClass, requested: Optional[str] = "auto") -> str:
    """Pick a backend name.

    ``None`` and ``"auto"`` pick Clarabel, which handles every problem class.

    Raises:
        ValueError: For an unknown solver name.
        SolverError: If OSQP is requested for a conic problem.
    """
    if requested is None or requested == "auto":
        return "clarabel"
    name = requested.lower()
    if name not in SOLVERS:
        raise ValueError(f"Unknown solver {requested!r}; expected one of {('auto',) + SOLVERS}")
    if name == "osqp" and problem_class.is_conic:
        raise SolverError(
            "OSQP cannot solve conic problems (SOC, exponential or power cones); use 'clarabel'",
            status="unsupported",
        )
    return name
