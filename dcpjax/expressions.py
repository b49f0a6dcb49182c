"""Expression DAG for convex optimization problems.

Expressions are immutable nodes. Leaves are :class:`Variable` and
:class:`Constant`; every other node is an :class:`Atom` tagged with an
:class:`ExprKind`. Children are held by shared reference, so the same
subexpression may appear under several parents.
"""

from __future__ import annotations

import enum
import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import jax.numpy as jnp
import numpy as np

from dcpjax.errors import ShapeError
from dcpjax.sparse import CscMatrix, csc_from_scipy, csc_to_dense
from dcpjax.utils.checking import (
    check_matrix_multiply_shapes,
    check_shapes_compatible,
    check_square,
)
from dcpjax.utils.shapes import (
    Shape,
    as_matrix_shape,
    check_static_shape,
    cols,
    reshape_compatible,
    shape_size,
    transpose_shape,
)


class _IdAllocator:
    """Thread-safe, monotonically increasing id source."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count()

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)

    def reset(self) -> None:
        with self._lock:
            self._counter = itertools.count()


_ID_ALLOCATOR = _IdAllocator()


def new_expr_id() -> int:
    """Allocate a fresh expression id."""
    return _ID_ALLOCATOR.next_id()


def reset_expr_ids() -> None:
    """Restart id allocation from zero. Intended for test isolation only."""
    _ID_ALLOCATOR.reset()


def ravel_column_major(array: Any) -> jnp.ndarray:
    """Flatten an array in column-major (Fortran) order."""
    array = jnp.asarray(array)
    if array.ndim <= 1:
        return array.reshape(-1)
    return array.T.reshape(-1)


def unravel_column_major(flat: Any, shape: Shape) -> jnp.ndarray:
    """Inverse of :func:`ravel_column_major`."""
    flat = jnp.asarray(flat)
    if len(shape) == 0:
        return flat.reshape(())
    if len(shape) == 1:
        return flat.reshape(shape)
    return flat.reshape((shape[1], shape[0])).T


@dataclass(frozen=True)
class ArrayData:
    """Numeric payload of a constant.

    Args:
        kind: One of ``"scalar"``, ``"dense"`` or ``"sparse"``.
        shape: Logical shape of the value.
        data: A Python float for scalars, a flat column-major jax array for
            dense values, or a :class:`~dcpjax.sparse.CscMatrix`.
    """
    kind: str
    shape: Shape
    data: Any

    def __post_init__(self) -> None:
        if self.kind == "dense" and int(self.data.size) != shape_size(self.shape):
            raise ShapeError("Dense buffer length does not match shape", shape_size(self.shape), int(self.data.size))
        if self.kind == "sparse" and (self.data.nrows, self.data.ncols) != tuple(self.shape):
            raise ShapeError("Sparse payload does not match shape", self.shape, (self.data.nrows, self.data.ncols))

    @classmethod
    def from_value(cls, value: Any) -> ArrayData:
        """Wrap a Python number, nested list, numpy/jax array or sparse matrix."""
        if isinstance(value, ArrayData):
            return value
        if isinstance(value, CscMatrix):
            return cls("sparse", (value.nrows, value.ncols), value)
        if hasattr(value, "tocsc"):
            csc = csc_from_scipy(value)
            return cls("sparse", (csc.nrows, csc.ncols), csc)
        if isinstance(value, (bool, int, float)):
            return cls("scalar", (), float(value))

        array = jnp.asarray(value, dtype=jnp.float64)
        if array.ndim == 0:
            return cls("scalar", (), float(array))
        check_static_shape(tuple(array.shape))
        return cls("dense", tuple(int(d) for d in array.shape), ravel_column_major(array))

    @property
    def size(self) -> int:
        return shape_size(self.shape)

    def to_flat(self) -> jnp.ndarray:
        """Column-major flat buffer of the value."""
        if self.kind == "scalar":
            return jnp.array([self.data], dtype=jnp.float64)
        if self.kind == "sparse":
            return ravel_column_major(csc_to_dense(self.data))
        return self.data

    def to_array(self) -> jnp.ndarray:
        """Value as a jax array of :attr:`shape`."""
        if self.kind == "scalar":
            return jnp.asarray(self.data, dtype=jnp.float64)
        if self.kind == "sparse":
            return csc_to_dense(self.data)
        return unravel_column_major(self.data, self.shape)


class ExprKind(enum.Enum):
    """Tag of an expression node."""
    VARIABLE = "variable"
    CONSTANT = "constant"
    # affine
    ADD = "add"
    NEG = "neg"
    MUL = "mul"
    DIV = "div"
    MATMUL = "matmul"
    SUM = "sum"
    RESHAPE = "reshape"
    INDEX = "index"
    VSTACK = "vstack"
    HSTACK = "hstack"
    TRANSPOSE = "transpose"
    TRACE = "trace"
    DIAG = "diag"
    CUMSUM = "cumsum"
    # convex
    NORM1 = "norm1"
    NORM2 = "norm2"
    NORM_INF = "norm_inf"
    ABS = "abs"
    POS = "pos"
    NEG_PART = "neg_part"
    MAXIMUM = "maximum"
    SUM_SQUARES = "sum_squares"
    QUAD_FORM = "quad_form"
    QUAD_OVER_LIN = "quad_over_lin"
    EXP = "exp"
    # concave
    MINIMUM = "minimum"
    LOG = "log"
    ENTROPY = "entropy"
    SQRT = "sqrt"
    POWER = "power"


AFFINE_KINDS = frozenset({
    ExprKind.ADD, ExprKind.NEG, ExprKind.MUL, ExprKind.DIV, ExprKind.MATMUL,
    ExprKind.SUM, ExprKind.RESHAPE, ExprKind.INDEX, ExprKind.VSTACK, ExprKind.HSTACK,
    ExprKind.TRANSPOSE, ExprKind.TRACE, ExprKind.DIAG, ExprKind.CUMSUM,
})

ELEMENTWISE_KINDS = frozenset({
    ExprKind.ABS, ExprKind.POS, ExprKind.NEG_PART, ExprKind.EXP, ExprKind.LOG,
    ExprKind.ENTROPY, ExprKind.SQRT, ExprKind.POWER, ExprKind.NEG, ExprKind.CUMSUM,
})


@dataclass(frozen=True)
class IndexRange:
    """Per-dimension index spec: a single index, a half-open range, or everything.

    Example:
        >>> IndexRange.single(2)
        >>> IndexRange.range(0, 3)
        >>> IndexRange.all()
    """
    kind: str
    start: int = 0
    stop: int = 0

    @classmethod
    def single(cls, index: int) -> IndexRange:
        return cls("single", index, index + 1)

    @classmethod
    def range(cls, start: int, stop: int) -> IndexRange:
        return cls("range", start, stop)

    @classmethod
    def all(cls) -> IndexRange:
        return cls("all")

    def positions(self, dim: int) -> List[int]:
        """Selected positions along a dimension of length ``dim``."""
        if self.kind == "all":
            return list(range(dim))
        return list(range(self.start, self.stop))


class Expression:
    """Base class for all expression nodes.

    Subclasses provide ``shape`` and ``kind``. Python operators build new
    nodes; comparison operators build constraints.
    """

    __array_priority__ = 100
    __array_ufunc__ = None

    kind: ExprKind

    @property
    def size(self) -> int:
        """Total number of elements in the expression."""
        return shape_size(self.shape)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def T(self) -> Expression:
        from dcpjax import atoms
        return atoms.transpose(self)

    @property
    def curvature(self):
        from dcpjax import dcp
        return dcp.curvature(self)

    @property
    def sign(self):
        from dcpjax import dcp
        return dcp.sign(self)

    def is_constant(self) -> bool:
        from dcpjax import dcp
        return dcp.is_constant(self)

    def is_affine(self) -> bool:
        from dcpjax import dcp
        return dcp.is_affine(self)

    def is_convex(self) -> bool:
        from dcpjax import dcp
        return dcp.is_convex(self)

    def is_concave(self) -> bool:
        from dcpjax import dcp
        return dcp.is_concave(self)

    def variables(self) -> List[int]:
        return variables(self)

    def __add__(self, other: Any) -> Expression:
        from dcpjax import atoms
        return atoms.add(self, other)

    def __radd__(self, other: Any) -> Expression:
        from dcpjax import atoms
        return atoms.add(other, self)

    def __sub__(self, other: Any) -> Expression:
        from dcpjax import atoms
        return atoms.sub(self, other)

    def __rsub__(self, other: Any) -> Expression:
        from dcpjax import atoms
        return atoms.sub(other, self)

    def __mul__(self, other: Any) -> Expression:
        from dcpjax import atoms
        return atoms.mul(self, other)

    def __rmul__(self, other: Any) -> Expression:
        from dcpjax import atoms
        return atoms.mul(other, self)

    def __truediv__(self, other: Any) -> Expression:
        from dcpjax import atoms
        return atoms.div(self, other)

    def __matmul__(self, other: Any) -> Expression:
        from dcpjax import atoms
        return atoms.matmul(self, other)

    def __rmatmul__(self, other: Any) -> Expression:
        from dcpjax import atoms
        return atoms.matmul(other, self)

    def __neg__(self) -> Expression:
        from dcpjax import atoms
        return atoms.neg(self)

    def __getitem__(self, key: Any) -> Expression:
        from dcpjax import atoms
        if not isinstance(key, tuple):
            key = (key,)
        return atoms.index(self, *key)

    def __le__(self, other: Any):
        from dcpjax.constraints import le
        return le(self, other)

    def __ge__(self, other: Any):
        from dcpjax.constraints import ge
        return ge(self, other)

    def __eq__(self, other: Any):  # type: ignore[override]
        from dcpjax.constraints import eq
        return eq(self, other)

    def __hash__(self) -> int:
        return id(self)


@dataclass(frozen=True, eq=False)
class Variable(Expression):
    """Optimization variable with shape and optional name.

    Args:
        shape: Shape of the variable; an int is read as a vector length.
        name: Optional name for debugging and display.
        nonneg: Constrain every entry to be nonnegative.
        nonpos: Constrain every entry to be nonpositive.

    Example:
        >>> x = Variable(shape=(3,), name="weights")
        >>> y = Variable(shape=(2, 2), nonneg=True)
    """
    shape: Shape
    name: Optional[str] = None
    nonneg: bool = False
    nonpos: bool = False
    id: int = field(default_factory=new_expr_id)

    kind = ExprKind.VARIABLE

    def __post_init__(self) -> None:
        shape = (self.shape,) if isinstance(self.shape, int) else tuple(self.shape)
        check_static_shape(shape)
        object.__setattr__(self, "shape", shape)

    def __repr__(self) -> str:
        label = self.name or f"var{self.id}"
        return f"Variable({label}, shape={self.shape})"


@dataclass(frozen=True, eq=False)
class Constant(Expression):
    """Constant leaf wrapping an :class:`ArrayData` payload.

    Args:
        value: Number, nested list, numpy/jax array, or sparse matrix.
        name: Optional name for debugging and display.
    """
    value: ArrayData
    name: Optional[str] = None
    id: int = field(default_factory=new_expr_id)

    kind = ExprKind.CONSTANT

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", ArrayData.from_value(self.value))

    @property
    def shape(self) -> Shape:
        return self.value.shape

    def __repr__(self) -> str:
        return f"Constant(shape={self.shape})"


@dataclass(frozen=True, eq=False)
class Atom(Expression):
    """Operator node. The shape is inferred (and checked) on construction.

    Args:
        kind: Operator tag.
        args: Child expressions.
        axis: Axis for ``sum`` and ``cumsum``.
        target_shape: Target shape for ``reshape``.
        indices: Per-dimension :class:`IndexRange` specs for ``index``.
        p: Exponent for ``power``.
    """
    kind: ExprKind
    args: Tuple[Expression, ...]
    axis: Optional[int] = None
    target_shape: Optional[Shape] = None
    indices: Optional[Tuple[IndexRange, ...]] = None
    p: Optional[float] = None
    shape: Shape = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "shape", _infer_shape(self))

    def __repr__(self) -> str:
        inner = ", ".join(repr(a) for a in self.args)
        return f"{self.kind.value}({inner})"


def as_expression(value: Any) -> Expression:
    """Return ``value`` if it is an expression, else wrap it in a :class:`Constant`."""
    if isinstance(value, Expression):
        return value
    return Constant(value)


def zeros(rows: int, cols: Optional[int] = None) -> Constant:
    """Constant vector of ``rows`` zeros, or a ``rows x cols`` zero matrix."""
    shape = (rows,) if cols is None else (rows, cols)
    return Constant(jnp.zeros(shape))


def ones(rows: int, cols: Optional[int] = None) -> Constant:
    """Constant vector of ``rows`` ones, or a ``rows x cols`` matrix of ones."""
    shape = (rows,) if cols is None else (rows, cols)
    return Constant(jnp.ones(shape))


def eye(n: int) -> Constant:
    """Dense ``n x n`` identity constant."""
    return Constant(jnp.eye(n))


def shape_of(expr: Expression) -> Shape:
    """Shape of an expression node (validated when the node was built)."""
    return expr.shape


def _broadcast_all(shapes: List[Shape], operation: str) -> Shape:
    result = shapes[0]
    for other in shapes[1:]:
        result = check_shapes_compatible(result, other, operation)
    return result


def _infer_shape(node: Atom) -> Shape:
    kind = node.kind
    args = node.args
    shapes = [a.shape for a in args]

    if kind == ExprKind.CUMSUM:
        # A scalar only accepts axis 0.
        upper = max(len(shapes[0]), 1)
        if node.axis is None or not 0 <= node.axis < upper:
            raise ShapeError("Invalid axis for cumsum", f"axis in [0, {upper})", node.axis)

    if kind in ELEMENTWISE_KINDS:
        return shapes[0]

    if kind == ExprKind.ADD:
        return _broadcast_all(shapes, "add")
    if kind in (ExprKind.MUL, ExprKind.DIV):
        return _broadcast_all(shapes, "multiply" if kind == ExprKind.MUL else "divide")
    if kind in (ExprKind.MAXIMUM, ExprKind.MINIMUM):
        return _broadcast_all(shapes, kind.value)
    if kind == ExprKind.MATMUL:
        return check_matrix_multiply_shapes(shapes[0], shapes[1])

    if kind == ExprKind.SUM:
        if node.axis is None:
            return ()
        if not 0 <= node.axis < len(shapes[0]):
            raise ShapeError("Invalid axis for sum", f"axis in [0, {len(shapes[0])})", node.axis)
        return tuple(d for i, d in enumerate(shapes[0]) if i != node.axis)

    if kind == ExprKind.RESHAPE:
        target = tuple(node.target_shape)
        check_static_shape(target)
        if not reshape_compatible(shapes[0], target):
            raise ShapeError("Cannot reshape expression", f"{shape_size(shapes[0])} elements", f"{shape_size(target)} elements")
        return target

    if kind == ExprKind.INDEX:
        return _index_shape(shapes[0], node.indices)

    if kind == ExprKind.VSTACK:
        widths = {cols(s) for s in shapes}
        if len(widths) != 1:
            raise ShapeError("vstack requires equal column counts", cols(shapes[0]), sorted(widths))
        total = sum(as_matrix_shape(s)[0] for s in shapes)
        if all(len(s) <= 1 for s in shapes):
            return (total,)
        return (total, widths.pop())

    if kind == ExprKind.HSTACK:
        heights = {as_matrix_shape(s)[0] for s in shapes}
        if len(heights) != 1:
            raise ShapeError("hstack requires equal row counts", as_matrix_shape(shapes[0])[0], sorted(heights))
        return (heights.pop(), sum(cols(s) for s in shapes))

    if kind == ExprKind.TRANSPOSE:
        return transpose_shape(shapes[0])

    if kind == ExprKind.TRACE:
        check_square(shapes[0], "trace")
        return ()

    if kind == ExprKind.DIAG:
        if len(shapes[0]) == 1:
            return (shapes[0][0], shapes[0][0])
        if len(shapes[0]) == 2:
            return (min(shapes[0]),)
        raise ShapeError("diag requires a vector or matrix", "vector or matrix", shapes[0])

    if kind in (ExprKind.NORM1, ExprKind.NORM2, ExprKind.NORM_INF, ExprKind.SUM_SQUARES):
        return ()

    if kind == ExprKind.QUAD_FORM:
        x_shape, p_shape = shapes
        if len(x_shape) != 1:
            raise ShapeError("quad_form requires a vector argument", "(n,)", x_shape)
        n = x_shape[0]
        if tuple(p_shape) != (n, n):
            raise ShapeError("quad_form matrix must be n x n", (n, n), p_shape)
        return ()

    if kind == ExprKind.QUAD_OVER_LIN:
        if shape_size(shapes[1]) != 1:
            raise ShapeError("quad_over_lin requires a scalar denominator", "scalar", shapes[1])
        return ()

    raise ShapeError(f"No shape rule for {kind.value}")


def _index_shape(shape: Shape, indices: Tuple[IndexRange, ...]) -> Shape:
    if len(indices) != len(shape):
        raise ShapeError("Wrong number of indices", len(shape), len(indices))
    result = []
    for dim, spec in zip(shape, indices):
        if spec.kind == "single":
            if not 0 <= spec.start < dim:
                raise ShapeError("Index out of bounds", f"0 <= index < {dim}", spec.start)
        elif spec.kind == "range":
            if spec.start < 0 or spec.stop > dim or spec.start > spec.stop:
                raise ShapeError("Invalid index range", f"0 <= start <= stop <= {dim}", f"[{spec.start}, {spec.stop})")
            result.append(spec.stop - spec.start)
        else:
            result.append(dim)
    return tuple(result)


def variables(expr: Expression) -> List[int]:
    """Ids of all variables referenced by ``expr``, in discovery order."""
    return list(collect_variables(expr))


def collect_variables(expr: Expression, found: Optional[Dict[int, Variable]] = None) -> Dict[int, Variable]:
    """Map of variable id to :class:`Variable`, in discovery order."""
    if found is None:
        found = {}
    if isinstance(expr, Variable):
        found.setdefault(expr.id, expr)
    elif isinstance(expr, Atom):
        for arg in expr.args:
            collect_variables(arg, found)
    return found


def has_variables(expr: Expression) -> bool:
    if isinstance(expr, Variable):
        return True
    if isinstance(expr, Atom):
        return any(has_variables(arg) for arg in expr.args)
    return False


ExpressionLike = Union[Expression, float, int, np.ndarray, jnp.ndarray, list]
