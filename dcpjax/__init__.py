"""dcpjax: disciplined convex programming on JAX."""

import jax

jax.config.update("jax_enable_x64", True)

from dcpjax.api import Maximize, Minimize, Problem, Solution  # noqa: E402
from dcpjax.atoms import (  # noqa: E402
    abs,
    cumsum,
    diag,
    dot,
    entropy,
    exp,
    hstack,
    index,
    log,
    matmul,
    maximum,
    minimum,
    mul,
    neg_part,
    norm,
    norm1,
    norm2,
    norm_inf,
    pos,
    power,
    quad_form,
    quad_over_lin,
    reshape,
    sqrt,
    square,
    sum,
    sum_squares,
    trace,
    transpose,
    vstack,
)
from dcpjax.constraints import Constraint, eq, ge, le, soc  # noqa: E402
from dcpjax.dcp import Curvature, Sign, curvature, sign  # noqa: E402
from dcpjax.errors import (  # noqa: E402
    CvxError,
    DcpError,
    InfeasibleError,
    ShapeError,
    SolverError,
    UnboundedError,
)
from dcpjax.evaluate import evaluate  # noqa: E402
from dcpjax.expressions import Constant, Expression, Variable, eye, ones, zeros  # noqa: E402
from dcpjax.solvers.base import SolverSettings  # noqa: E402

__version__ = "0.1.0"

__all__ = [
    "Variable",
    "Constant",
    "Expression",
    "zeros",
    "ones",
    "eye",
    "Minimize",
    "Maximize",
    "Problem",
    "Solution",
    "SolverSettings",
    "Constraint",
    "eq",
    "le",
    "ge",
    "soc",
    "Curvature",
    "Sign",
    "curvature",
    "sign",
    "evaluate",
    "CvxError",
    "ShapeError",
    "DcpError",
    "SolverError",
    "InfeasibleError",
    "UnboundedError",
    "abs",
    "cumsum",
    "diag",
    "dot",
    "entropy",
    "exp",
    "hstack",
    "index",
    "log",
    "matmul",
    "maximum",
    "minimum",
    "mul",
    "neg_part",
    "norm",
    "norm1",
    "norm2",
    "norm_inf",
    "pos",
    "power",
    "quad_form",
    "quad_over_lin",
    "reshape",
    "sqrt",
    "square",
    "sum",
    "sum_squares",
    "trace",
    "transpose",
    "vstack",
]
