"""Clarabel interior-point backend for conic problems."""

from __future__ import annotations

import logging
import time
import warnings
from typing import List, Optional

import clarabel
import jax.numpy as jnp
import numpy as np
import scipy.sparse as spa

from dcpjax.cones import ConeDims
from dcpjax.solvers.base import (
    INFEASIBLE,
    MAX_ITERATIONS,
    NUMERICAL_ERROR,
    OPTIMAL,
    UNBOUNDED,
    UNKNOWN,
    SolveResult,
    SolverSettings,
)
from dcpjax.sparse import csc_to_scipy, csc_zeros
from dcpjax.stuffing import StuffedProblem

log = logging.getLogger(__name__)

_STATUS_MAP = {
    "Solved": OPTIMAL,
    "AlmostSolved": OPTIMAL,
    "PrimalInfeasible": INFEASIBLE,
    "AlmostPrimalInfeasible": INFEASIBLE,
    "DualInfeasible": UNBOUNDED,
    "AlmostDualInfeasible": UNBOUNDED,
    "MaxIterations": MAX_ITERATIONS,
    "MaxTime": MAX_ITERATIONS,
    "NumericalError": NUMERICAL_ERROR,
    "InsufficientProgress": NUMERICAL_ERROR,
}


def build_cones(dims: ConeDims) -> List:
    """Clarabel cone list in stacking order (zero, nonneg, soc, exp, power)."""
    cones = []
    if dims.zero > 0:
        cones.append(clarabel.ZeroConeT(int(dims.zero)))
    if dims.nonneg > 0:
        cones.append(clarabel.NonnegativeConeT(int(dims.nonneg)))
    cones.extend(clarabel.SecondOrderConeT(int(d)) for d in dims.soc)
    cones.extend(clarabel.ExponentialConeT() for _ in range(dims.exp))
    cones.extend(clarabel.PowerConeT(float(alpha)) for alpha in dims.power)
    return cones


def map_status(raw_status) -> str:
    """Map a Clarabel status to one of the package statuses."""
    name = str(raw_status).split(".")[-1]
    return _STATUS_MAP.get(name, UNKNOWN)


def _build_settings(settings: SolverSettings):
    clarabel_settings = clarabel.DefaultSettings()
    clarabel_settings.verbose = settings.verbose
    clarabel_settings.max_iter = int(settings.max_iter)
    if settings.time_limit is not None:
        clarabel_settings.time_limit = float(settings.time_limit)
    clarabel_settings.tol_gap_abs = settings.tol
    clarabel_settings.tol_gap_rel = settings.tol
    clarabel_settings.tol_feas = settings.tol
    for key, value in settings.extra.items():
        if not hasattr(clarabel_settings, key):
            raise ValueError(f"Unknown Clarabel setting: {key}")
        setattr(clarabel_settings, key, value)
    return clarabel_settings


def solve_conic_clarabel(stuffed: StuffedProblem, settings: Optional[SolverSettings] = None) -> SolveResult:
    """Solve ``min (1/2) x^T P x + q^T x  s.t.  A x + s = b, s in K`` with Clarabel.

    Args:
        stuffed: Stuffed problem data.
        settings: Solver options, defaults when ``None``.

    Returns:
        Raw result over the stuffed variable vector. ``AlmostSolved`` is
        reported as optimal with a warning.
    """
    settings = settings if settings is not None else SolverSettings()
    n = stuffed.n_vars
    P = csc_to_scipy(stuffed.P if stuffed.P is not None else csc_zeros(n, n))
    P = spa.triu(P, format="csc")
    q = np.asarray(stuffed.q, dtype=np.float64)
    A = csc_to_scipy(stuffed.A)
    b = np.asarray(stuffed.b, dtype=np.float64)
    cones = build_cones(stuffed.cone_dims)

    log.debug("Clarabel: n=%d, m=%d, %d cones", n, A.shape[0], len(cones))

    start = time.perf_counter()
    solver = clarabel.DefaultSolver(P, q, A, b, cones, _build_settings(settings))
    solution = solver.solve()
    elapsed = time.perf_counter() - start

    raw = str(solution.status).split(".")[-1]
    status = map_status(solution.status)
    if raw.startswith("Almost"):
        warnings.warn(f"Clarabel returned {raw}; the solution has reduced accuracy")
    log.debug("Clarabel finished: status=%s, iterations=%s", raw, solution.iterations)

    x = jnp.asarray(np.asarray(solution.x, dtype=np.float64)) if status in (OPTIMAL, MAX_ITERATIONS) else None
    return SolveResult(
        status=status,
        x=x,
        obj_val=float(solution.obj_val),
        solve_time=float(getattr(solution, "solve_time", elapsed)),
        iterations=int(solution.iterations),
        solver="clarabel",
        info={
            "raw_status": raw,
            "z": jnp.asarray(np.asarray(solution.z, dtype=np.float64)),
            "s": jnp.asarray(np.asarray(solution.s, dtype=np.float64)),
        },
    )
