"""
nodeforge/models/validator.py

Validates raw API payloads (Vault, Tailscale) against pydantic-compatible
types using TypeAdapter.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validates that a decoded JSON payload conforms to the expected type.

    Args:
        obj (Any): The decoded payload.
        expected_type (Type[T]): The type (pydantic model, TypedDict, Dict[...]) to check.

    Returns:
        T: The validated object.

    Raises:
        ValueError: If validation fails.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Unexpected payload for {expected_type}: {e}") from e
