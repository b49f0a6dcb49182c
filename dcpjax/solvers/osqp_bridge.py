"""OSQP backend for LPs and QPs via jaxopt's BoxOSQP."""

from __future__ import annotations

import logging
import time
from typing import Optional

import jax.numpy as jnp
import numpy as np

from dcpjax.errors import SolverError
from dcpjax.solvers.base import (
    INFEASIBLE,
    MAX_ITERATIONS,
    OPTIMAL,
    UNBOUNDED,
    SolveResult,
    SolverSettings,
)
from dcpjax.sparse import csc_to_dense
from dcpjax.stuffing import StuffedProblem

log = logging.getLogger(__name__)


def check_osqp_available() -> bool:
    """Whether jaxopt (and with it BoxOSQP) can be imported."""
    try:
        from jaxopt import BoxOSQP  # noqa: F401
    except ImportError:
        return False
    return True


def _dense_objective(stuffed: StuffedProblem) -> jnp.ndarray:
    n = stuffed.n_vars
    if stuffed.P is None:
        return jnp.zeros((n, n))
    upper = csc_to_dense(stuffed.P)
    return upper + upper.T - jnp.diag(jnp.diag(upper))


def solve_qp_osqp(stuffed: StuffedProblem, settings: Optional[SolverSettings] = None) -> SolveResult:
    """Solve an LP/QP with BoxOSQP.

    BoxOSQP solves ``min (1/2) x^T P x + q^T x  s.t.  l <= A x <= u``.
    Zero-cone rows map to ``l = u = b`` and nonnegative rows to
    ``-inf <= A x <= b``.

    Raises:
        SolverError: If the problem holds cones other than zero/nonneg.
    """
    from jaxopt import BoxOSQP

    settings = settings if settings is not None else SolverSettings()
    dims = stuffed.cone_dims
    if dims.is_conic:
        raise SolverError("OSQP only supports zero and nonnegative cones", status="unsupported")

    n = stuffed.n_vars
    A = csc_to_dense(stuffed.A)
    b = jnp.asarray(stuffed.b)
    lower = jnp.concatenate([b[:dims.zero], jnp.full(dims.nonneg, -jnp.inf)])
    upper = b
    if A.shape[0] == 0:
        # BoxOSQP needs at least one row; add a free one.
        A = jnp.zeros((1, n))
        lower = jnp.full(1, -jnp.inf)
        upper = jnp.full(1, jnp.inf)

    solver = BoxOSQP(
        tol=settings.tol,
        maxiter=settings.extra.get("maxiter", max(settings.max_iter, 4000)),
        verbose=settings.verbose,
        **{k: v for k, v in settings.extra.items() if k != "maxiter"},
    )

    log.debug("BoxOSQP: n=%d, m=%d", n, A.shape[0])
    start = time.perf_counter()
    P = _dense_objective(stuffed)
    result = solver.run(params_obj=(P, jnp.asarray(stuffed.q)), params_eq=A, params_ineq=(lower, upper))
    elapsed = time.perf_counter() - start

    x = result.params.primal[0]
    solver_status = int(result.state.status)
    if solver_status == solver.SOLVED:
        status = OPTIMAL
    elif solver_status == solver.PRIMAL_INFEASIBLE:
        status = INFEASIBLE
    elif solver_status == solver.DUAL_INFEASIBLE:
        status = UNBOUNDED
    else:
        status = MAX_ITERATIONS

    obj_val = float(0.5 * x @ P @ x + jnp.asarray(stuffed.q) @ x)
    log.debug("BoxOSQP finished: status=%s, iterations=%s", status, result.state.iter_num)
    return SolveResult(
        status=status,
        x=x if status in (OPTIMAL, MAX_ITERATIONS) else None,
        obj_val=obj_val if np.isfinite(obj_val) else float("nan"),
        solve_time=elapsed,
        iterations=int(result.state.iter_num),
        solver="osqp",
        info={"status_code": solver_status},
    )
