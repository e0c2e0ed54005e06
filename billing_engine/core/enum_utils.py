"""
Enum Utilities for VARCHAR-based Status Fields

Status-like columns are stored as VARCHAR(50), never as database ENUM types.
Python enums describe the allowed values for validation and comparison.

DATA FLOW:
    INPUT:  InvoiceStatus.DRAFT -> "DRAFT" -> VARCHAR
    OUTPUT: VARCHAR "DRAFT" -> "DRAFT" (returned as-is)

Provider-facing values (reference types, fee names) keep the provider's
spelling; internal lifecycle values are UPPERCASE.
"""

from enum import Enum
from typing import Any, Optional, Type


def get_enum_value(value: Any) -> Optional[str]:
    """
    Safely get string value from an enum or string.

    Examples:
        >>> get_enum_value(InvoiceStatus.DRAFT)
        'DRAFT'
        >>> get_enum_value("DRAFT")
        'DRAFT'
    """
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def enum_comment(enum_class: Type[Enum]) -> str:
    """Comma-separated list of valid values, for VARCHAR column comments."""
    return ", ".join(e.value for e in enum_class)


def status_in(db_value: Optional[str], *enum_values: Enum) -> bool:
    """Check if a database value matches any of the given enums."""
    if db_value is None:
        return False
    return db_value in {e.value for e in enum_values}
