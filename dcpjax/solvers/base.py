"""Solver settings and results shared by the backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import jax.numpy as jnp

OPTIMAL = "optimal"
INFEASIBLE = "infeasible"
UNBOUNDED = "unbounded"
MAX_ITERATIONS = "max_iterations"
NUMERICAL_ERROR = "numerical_error"
UNKNOWN = "unknown"

STATUSES = (OPTIMAL, INFEASIBLE, UNBOUNDED, MAX_ITERATIONS, NUMERICAL_ERROR, UNKNOWN)


@dataclass(frozen=True)
class SolverSettings:
    """Options forwarded to the backends.

    Args:
        verbose: Print solver output.
        max_iter: Iteration limit.
        time_limit: Wall-clock limit in seconds, ``None`` for no limit.
        tol: Feasibility and gap tolerance.
        extra: Backend-specific options, set as attributes on the backend's
            settings object (Clarabel) or passed to its constructor (OSQP).
    """
    verbose: bool = False
    max_iter: int = 200
    time_limit: Optional[float] = None
    tol: float = 1e-8
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_iter <= 0:
            raise ValueError(f"max_iter must be positive, got {self.max_iter}")
        if self.tol <= 0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        if self.time_limit is not None and self.time_limit <= 0:
            raise ValueError(f"time_limit must be positive, got {self.time_limit}")


@dataclass(frozen=True)
class SolveResult:
    """Raw backend output over the stuffed variable vector.

    Args:
        status: One of :data:`STATUSES`.
        x: Stuffed primal solution, ``None`` if the backend produced none.
        obj_val: Solver objective ``(1/2) x^T P x + q^T x`` (no offset).
        solve_time: Seconds spent in the backend.
        iterations: Iterations taken.
        solver: Backend name.
        info: Backend-specific extras.
    """
    status: str
    x: Optional[jnp.ndarray]
    obj_val: float
    solve_time: float = 0.0
    iterations: int = 0
    solver: str = ""
    info: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_optimal(self) -> bool:
        return self.status == OPTIMAL
