"""Cone constraints produced by canonicalization."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Tuple, Union

from dcpjax.errors import ShapeError
from dcpjax.linexpr import LinExpr


@dataclass(frozen=True, eq=False)
class ZeroCone:
    """``a(x) == 0``."""
    a: LinExpr

    kind: ClassVar[str] = "zero"

    @property
    def dim(self) -> int:
        return self.a.rows


@dataclass(frozen=True, eq=False)
class NonnegCone:
    """``a(x) >= 0`` element-wise."""
    a: LinExpr

    kind: ClassVar[str] = "nonneg"

    @property
    def dim(self) -> int:
        return self.a.rows


@dataclass(frozen=True, eq=False)
class SocCone:
    """``norm2(x) <= t``."""
    t: LinExpr
    x: LinExpr

    kind: ClassVar[str] = "soc"

    def __post_init__(self) -> None:
        if self.t.rows != 1:
            raise ShapeError("SOC cone requires a scalar t", 1, self.t.rows)

    @property
    def dim(self) -> int:
        return 1 + self.x.rows


@dataclass(frozen=True, eq=False)
class ExpCone:
    """``y * exp(x / y) <= z`` with ``y > 0`` (closure included)."""
    x: LinExpr
    y: LinExpr
    z: LinExpr

    kind: ClassVar[str] = "exp"

    def __post_init__(self) -> None:
        _check_scalar_parts(self.x, self.y, self.z)

    @property
    def dim(self) -> int:
        return 3


@dataclass(frozen=True, eq=False)
class PowerCone:
    """``x^alpha * y^(1 - alpha) >= |z|`` with ``x, y >= 0``."""
    x: LinExpr
    y: LinExpr
    z: LinExpr
    alpha: float

    kind: ClassVar[str] = "power"

    def __post_init__(self) -> None:
        _check_scalar_parts(self.x, self.y, self.z)
        if not 0.0 < self.alpha < 1.0:
            raise ValueError(f"Power cone alpha must lie in (0, 1), got {self.alpha}")

    @property
    def dim(self) -> int:
        return 3


ConeConstraint = Union[ZeroCone, NonnegCone, SocCone, ExpCone, PowerCone]


def _check_scalar_parts(*parts: LinExpr) -> None:
    for part in parts:
        if part.rows != 1:
            raise ShapeError("Exponential and power cone entries must be scalar", 1, part.rows)


@dataclass(frozen=True)
class ConeDims:
    """Sizes of the cones making up ``K``, in stacking order.

    Args:
        zero: Rows in the zero cone.
        nonneg: Rows in the nonnegative orthant.
        soc: Dimension of each second-order cone.
        exp: Number of exponential cones.
        power: Alpha of each power cone.
    """
    zero: int = 0
    nonneg: int = 0
    soc: Tuple[int, ...] = ()
    exp: int = 0
    power: Tuple[float, ...] = ()

    @property
    def rows(self) -> int:
        """Total constraint rows."""
        return self.zero + self.nonneg + sum(self.soc) + 3 * self.exp + 3 * len(self.power)

    @property
    def is_conic(self) -> bool:
        """True if any cone beyond zero/nonneg is present."""
        return bool(self.soc) or self.exp > 0 or bool(self.power)

    def to_dict(self) -> dict:
        return {
            "zero": self.zero,
            "nonneg": self.nonneg,
            "soc": list(self.soc),
            "exp": self.exp,
            "power": list(self.power),
        }
