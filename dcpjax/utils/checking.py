"""Validation and checking utilities."""

from typing import Optional

from dcpjax.errors import ShapeError
from dcpjax.utils.shapes import Shape, broadcast_shapes, shape_to_string


def check_shapes_compatible(shape1: Shape, shape2: Shape, operation: str = "combine") -> Shape:
    """Check that two shapes broadcast for an element-wise operation.

    Args:
        shape1: First shape.
        shape2: Second shape.
        operation: Operation name used in the error message.

    Returns:
        The broadcast shape.

    Raises:
        ShapeError: If the shapes do not broadcast.
    """
    result = broadcast_shapes(shape1, shape2)
    if result is None:
        raise ShapeError(
            f"Cannot {operation} expressions with incompatible shapes", shape1, shape2
        )
    return result


def check_matrix_multiply_shapes(left_shape: Shape, right_shape: Shape) -> Shape:
    """Check matrix multiplication shapes and return result shape.

    Args:
        left_shape: Shape of left operand.
        right_shape: Shape of right operand.

    Returns:
        Shape of the result: vector @ vector is a scalar, matrix @ vector a
        vector, vector @ matrix a vector and matrix @ matrix a matrix.

    Raises:
        ShapeError: On scalar operands or an inner dimension mismatch.
    """
    if len(left_shape) == 0 or len(right_shape) == 0:
        raise ShapeError(
            "matmul requires vector or matrix operands; use mul for scalars",
            "vector or matrix",
            left_shape if len(left_shape) == 0 else right_shape,
        )

    inner_left = left_shape[-1]
    inner_right = right_shape[0]
    if inner_left != inner_right:
        raise ShapeError(
            f"Inner dimensions must match for matmul ({shape_to_string(left_shape)} @ "
            f"{shape_to_string(right_shape)})",
            inner_left,
            inner_right,
        )

    if len(left_shape) == 1 and len(right_shape) == 1:
        return ()
    if len(left_shape) == 2 and len(right_shape) == 1:
        return (left_shape[0],)
    if len(left_shape) == 1 and len(right_shape) == 2:
        return (right_shape[1],)
    return (left_shape[0], right_shape[1])


def check_square(shape: Shape, operation: str) -> int:
    """Require a square matrix shape and return its dimension."""
    if len(shape) != 2 or shape[0] != shape[1]:
        raise ShapeError(f"{operation} requires a square matrix", "(n, n)", shape)
    return shape[0]


def create_error_message(
    error_type: str,
    context: dict,
    suggestion: Optional[str] = None,
) -> str:
    """Create informative error message.

    Args:
        error_type: Type of error.
        context: Context information.
        suggestion: Optional suggestion for fixing.

    Returns:
        Formatted error message.
    """
    message = f"{error_type}:"

    for key, value in context.items():
        message += f"\n  {key}: {value}"

    if suggestion:
        message += f"\n  Suggestion: {suggestion}"

    return message
