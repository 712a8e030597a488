"""Construction of the call strings sent to the remote evaluator."""

from __future__ import annotations

import math
from typing import Any

# Comparison operators travel as integer codes.
BOOLEAN_OPERATORS: dict[str, int] = {
    "==": 1,
    "!=": 2,
    "<": 3,
    "<=": 4,
    ">": 5,
    ">=": 6,
}

OPERATOR_SYMBOLS: dict[int, str] = {code: op for op, code in BOOLEAN_OPERATORS.items()}


def operator_code(op: str) -> int:
    """Return the integer code of a comparison operator.

    Raises:
        ValueError: If the operator is unsupported.
    """
    code = BOOLEAN_OPERATORS.get(op)
    if code is None:
        raise ValueError(
            f"Unsupported operator '{op}'. "
            f"Supported: {sorted(BOOLEAN_OPERATORS.keys())}"
        )
    return code


def format_number(value: float | int) -> str:
    """Render a number in its shortest form (``10.0`` -> ``"10"``)."""
    if isinstance(value, bool):
        raise TypeError("Booleans are not numbers here")
    if isinstance(value, float):
        if math.isnan(value):
            return "NA"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def quote(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def literal(value: Any) -> str:
    """Render a Python value as an expression literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return format_number(value)
    if isinstance(value, str):
        return quote(value)
    if isinstance(value, (list, tuple)):
        return "c(" + ", ".join(literal(v) for v in value) + ")"
    raise TypeError(f"Cannot render {type(value).__name__} as an expression literal")


def build_call(name: str, *args: Any) -> str:
    """Build ``name(arg1, arg2, ...)`` with every argument rendered as a literal."""
    return f"{name}(" + ", ".join(literal(a) for a in args) + ")"


def ref(df: str, var: str) -> str:
    """Reference to column *var* of remote data frame *df*."""
    return f"{df}${var}"
