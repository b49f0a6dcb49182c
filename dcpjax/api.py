"""Main API for dcpjax: objectives, problems and solutions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence

import jax.numpy as jnp
from jax import tree_util

from dcpjax import dcp
from dcpjax.canonicalize import CanonicalProblem, canonicalize_problem
from dcpjax.constraints import Constraint, validate_constraints_dcp
from dcpjax.errors import DcpError, InfeasibleError, SolverError, UnboundedError
from dcpjax.evaluate import evaluate
from dcpjax.expressions import Variable, as_expression, collect_variables
from dcpjax.solvers.base import (
    INFEASIBLE,
    NUMERICAL_ERROR,
    OPTIMAL,
    UNBOUNDED,
    SolveResult,
    SolverSettings,
)
from dcpjax.solvers.clarabel_bridge import solve_conic_clarabel
from dcpjax.solvers.osqp_bridge import solve_qp_osqp
from dcpjax.solvers.router import analyze_problem, select_solver
from dcpjax.stuffing import StuffedProblem, stuff_problem
from dcpjax.utils.checking import create_error_message

log = logging.getLogger(__name__)

_BACKENDS: Dict[str, Callable[[StuffedProblem, SolverSettings], SolveResult]] = {
    "clarabel": solve_conic_clarabel,
    "osqp": solve_qp_osqp,
}


class Objective:
    """Base class for optimization objectives."""

    sense: str = "minimize"

    def __init__(self, expression: Any) -> None:
        self.expression = as_expression(expression)

    def is_dcp(self) -> bool:
        raise NotImplementedError


class Minimize(Objective):
    """Minimization objective.

    Args:
        expression: Scalar convex expression to minimize.

    Example:
        >>> x = Variable(shape=(2,))
        >>> obj = Minimize(sum_squares(x))
    """

    sense = "minimize"

    def is_dcp(self) -> bool:
        return dcp.is_convex(self.expression)


class Maximize(Objective):
    """Maximization objective.

    Args:
        expression: Scalar concave expression to maximize.

    Example:
        >>> x = Variable(shape=(2,))
        >>> obj = Maximize(sum(log(x)))
    """

    sense = "maximize"

    def is_dcp(self) -> bool:
        return dcp.is_concave(self.expression)


@dataclass(frozen=True)
class Solution:
    """Solution returned by :meth:`Problem.solve`.

    Args:
        status: Solver termination status.
        obj_value: Optimal objective value of the user problem.
        primal: Mapping from variables to their optimal values.
        dual: Raw cone duals keyed by name (``"z"``, ``"s"``) when available.
        info: Additional solver information.
    """
    status: Literal["optimal", "infeasible", "unbounded", "max_iterations", "numerical_error", "unknown"]
    obj_value: float
    primal: Dict[Variable, jnp.ndarray]
    dual: Dict[str, jnp.ndarray] = field(default_factory=dict)
    info: Dict[str, Any] = field(default_factory=dict)

    def value(self, expr: Any) -> jnp.ndarray:
        """Evaluate an expression at the optimal point."""
        return evaluate(as_expression(expr), self.primal)


# Variables are not orderable, so primal is flattened as keys (static) and values (leaves).
tree_util.register_pytree_node(
    Solution,
    lambda s: (
        (s.obj_value, tuple(s.primal.values()), s.dual, s.info),
        {"status": s.status, "variables": tuple(s.primal.keys())},
    ),
    lambda aux, children: Solution(
        status=aux["status"],
        obj_value=children[0],
        primal=dict(zip(aux["variables"], children[1])),
        dual=children[2],
        info=children[3],
    ),
)


class Problem:
    """Optimization problem combining objective and constraints.

    Args:
        objective: The objective to optimize (Minimize or Maximize).
        constraints: List of constraints.

    Raises:
        DcpError: If the objective is not scalar.

    Example:
        >>> x = Variable(shape=(3,))
        >>> prob = Problem(Minimize(sum(x)), [x >= 1])
        >>> sol = prob.solve()  # sol.obj_value is about 3.0
    """

    def __init__(self, objective: Objective, constraints: Optional[Sequence[Constraint]] = None) -> None:
        if not isinstance(objective, Objective):
            raise TypeError(f"objective must be Minimize or Maximize, got {type(objective).__name__}")
        if objective.expression.size != 1:
            raise DcpError(f"Objective must be scalar, got shape {objective.expression.shape}")
        self.objective = objective
        self.constraints: List[Constraint] = list(constraints or [])

    def subject_to(self, *constraints: Constraint) -> Problem:
        """New problem with additional constraints."""
        return Problem(self.objective, self.constraints + list(constraints))

    @property
    def sense(self) -> str:
        return self.objective.sense

    def variables(self) -> List[Variable]:
        """Variables of the objective and constraints, in discovery order."""
        found = collect_variables(self.objective.expression)
        for constraint in self.constraints:
            for expr in constraint.expressions():
                collect_variables(expr, found)
        return list(found.values())

    def is_dcp(self) -> bool:
        return self.objective.is_dcp() and all(c.is_dcp() for c in self.constraints)

    def validate_dcp(self) -> None:
        """Raise :class:`DcpError` naming the first DCP violation."""
        if not self.objective.is_dcp():
            required = "convex" if self.sense == "minimize" else "concave"
            raise DcpError(create_error_message(
                "Objective violates DCP rules",
                {
                    "sense": self.sense,
                    "required": required,
                    "got": dcp.curvature(self.objective.expression).value,
                },
            ))
        validate_constraints_dcp(self.constraints)

    def canonicalize(self) -> CanonicalProblem:
        return canonicalize_problem(self.objective.expression, self.constraints, self.sense)

    def stuff(self) -> StuffedProblem:
        return stuff_problem(self.canonicalize())

    def solve(
        self,
        solver: Optional[str] = "auto",
        verbose: bool = False,
        max_iter: int = 200,
        time_limit: Optional[float] = None,
        tol: float = 1e-8,
        **solver_kwargs: Any,
    ) -> Solution:
        """Solve the optimization problem.

        Args:
            solver: ``"auto"`` (Clarabel), ``"clarabel"`` or ``"osqp"``.
            verbose: Print solver output.
            max_iter: Maximum number of iterations.
            time_limit: Wall-clock limit in seconds.
            tol: Convergence tolerance.
            **solver_kwargs: Additional backend-specific settings.

        Returns:
            Solution with the optimal value and per-variable primal values.

        Raises:
            DcpError: If the problem violates the DCP rules or uses an
                unsupported construct.
            InfeasibleError: If the solver proves infeasibility.
            UnboundedError: If the solver proves unboundedness.
            SolverError: On a numerical error. Other non-optimal statuses
                such as ``max_iterations`` are returned on the Solution with
                an empty ``primal`` and a NaN objective.
        """
        self.validate_dcp()
        stuffed = self.stuff()
        problem_class = analyze_problem(stuffed)
        name = select_solver(problem_class, solver)
        settings = SolverSettings(
            verbose=verbose, max_iter=max_iter, time_limit=time_limit, tol=tol, extra=dict(solver_kwargs),
        )

        result = _BACKENDS[name](stuffed, settings)
        log.info(
            "Solved %s problem (n=%d, m=%d) with %s: status=%s",
            problem_class.name, stuffed.n_vars, stuffed.n_constraints, name, result.status,
        )

        if result.status == INFEASIBLE:
            raise InfeasibleError()
        if result.status == UNBOUNDED:
            raise UnboundedError()
        if result.status == NUMERICAL_ERROR or (result.status == OPTIMAL and result.x is None):
            raise SolverError(f"Solver {name} terminated with status {result.status}", status=result.status)

        info = {
            "solver": name,
            "problem_class": problem_class.name,
            "iterations": result.iterations,
            "solve_time": result.solve_time,
            "raw_status": result.info.get("raw_status", result.status),
        }
        if result.status != OPTIMAL:
            # max_iterations and unknown come back without a primal point.
            log.warning("Solver %s stopped with status %s", name, result.status)
            return Solution(status=result.status, obj_value=float("nan"), primal={}, info=info)

        primal = {var: stuffed.var_map.extract(result.x, var) for var in stuffed.variables}
        dual = {k: v for k, v in result.info.items() if k in ("z", "s")}
        return Solution(
            status=OPTIMAL,
            obj_value=stuffed.objective_value(result.obj_val),
            primal=primal,
            dual=dual,
            info=info,
        )
