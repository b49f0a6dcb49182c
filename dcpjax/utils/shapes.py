"""Shape validation and manipulation utilities."""

from typing import Optional, Tuple

Shape = Tuple[int, ...]


def check_static_shape(shape: Shape) -> None:
    """Check that shape is a tuple of at most two non-negative integer dimensions.

    Args:
        shape: Shape tuple to validate.

    Raises:
        ValueError: If shape is not a tuple/list, has more than two dimensions,
            or contains negative or non-integer dimensions.
    """
    if not isinstance(shape, (tuple, list)):
        raise ValueError(f"Shape must be tuple or list, got {type(shape)}")
    if len(shape) > 2:
        raise ValueError(f"Only scalars, vectors and matrices are supported, got shape {tuple(shape)}")

    for i, dim in enumerate(shape):
        if isinstance(dim, bool) or not isinstance(dim, int):
            raise ValueError(f"Shape dimension {i} must be integer, got {type(dim)}")
        if dim < 0:
            raise ValueError(f"Shape dimension {i} must be non-negative, got {dim}")


def shape_size(shape: Shape) -> int:
    """Total number of elements; 1 for a scalar."""
    size = 1
    for dim in shape:
        size *= dim
    return size


def is_scalar_shape(shape: Shape) -> bool:
    return len(shape) == 0


def is_vector_shape(shape: Shape) -> bool:
    return len(shape) == 1


def is_matrix_shape(shape: Shape) -> bool:
    return len(shape) == 2


def rows(shape: Shape) -> int:
    """Row count when the shape is viewed as a column-major matrix."""
    return shape[0] if len(shape) >= 1 else 1


def cols(shape: Shape) -> int:
    """Column count when the shape is viewed as a column-major matrix."""
    return shape[1] if len(shape) >= 2 else 1


def as_matrix_shape(shape: Shape) -> Tuple[int, int]:
    """View a scalar as (1, 1) and a vector as an (n, 1) column."""
    return rows(shape), cols(shape)


def shape_to_string(shape: Shape) -> str:
    """Human-readable shape: ``"scalar"`` or ``"(2, 3)"``."""
    if len(shape) == 0:
        return "scalar"
    if len(shape) == 1:
        return f"({shape[0]},)"
    return "(" + ", ".join(str(d) for d in shape) + ")"


def broadcast_shapes(shape1: Shape, shape2: Shape) -> Optional[Shape]:
    """Compute the broadcast shape of two shapes.

    A scalar broadcasts against anything. Otherwise both shapes must have
    the same number of dimensions, and each pair of dimensions must be equal
    or contain a 1.

    Args:
        shape1: First shape.
        shape2: Second shape.

    Returns:
        The broadcast shape, or ``None`` if the shapes are incompatible.
    """
    if len(shape1) == 0:
        return tuple(shape2)
    if len(shape2) == 0:
        return tuple(shape1)
    if len(shape1) != len(shape2):
        return None

    result = []
    for dim1, dim2 in zip(shape1, shape2):
        if dim1 == dim2:
            result.append(dim1)
        elif dim1 == 1:
            result.append(dim2)
        elif dim2 == 1:
            result.append(dim1)
        else:
            return None
    return tuple(result)


def transpose_shape(shape: Shape) -> Shape:
    """Swap matrix dimensions; vectors and scalars are unchanged."""
    if len(shape) == 2:
        return (shape[1], shape[0])
    return tuple(shape)


def reshape_compatible(old_shape: Shape, new_shape: Shape) -> bool:
    """Check if a reshape preserves the total number of elements."""
    return shape_size(old_shape) == shape_size(new_shape)
