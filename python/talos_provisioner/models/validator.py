"""
talos_provisioner/models/validator.py

Validates untyped Python objects (decoded JSON/YAML manifests, RPC payloads)
against pydantic-based types using TypeAdapter.
"""

from typing import Any, Type, TypeVar

from pydantic import TypeAdapter, ValidationError

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T], *, what: str = "") -> T:
    """
    Validates that a given Python object conforms to the expected pydantic-based type.

    Args:
        obj (Any): The object to validate.
        expected_type (Type[T]): The type (pydantic, a discriminated union, or a
            plain typing construct) to validate against.
        what (str): Optional description of the object for the error message.

    Returns:
        T: The validated object, cast to the expected type.

    Raises:
        ValueError: If validation fails.
    """
    try:
        adapter: TypeAdapter[T] = TypeAdapter(expected_type)
        return adapter.validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Validation failed for {what or expected_type}: {e}") from e
