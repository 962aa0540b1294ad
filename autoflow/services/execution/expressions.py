"""Sandboxed expression evaluation for condition and code nodes.

Expressions are single expressions evaluated with simpleeval: no statements,
no imports, no attribute access to private members. Dict values can be read
with dot notation (``input.value``) as well as subscripts. Common JavaScript
operators (``===``, ``!==``, ``&&``, ``||``, ``!``) and literals (``true``,
``false``, ``null``) are accepted and rewritten before evaluation.
"""

import re
from typing import Any, Dict

from simpleeval import EvalWithCompoundTypes, InvalidExpression

from autoflow.core.logging import get_logger

logger = get_logger(__name__)

SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "sorted": sorted,
    "any": any,
    "all": all,
}

LITERALS = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}

# Strings are protected from operator rewriting
_STRING_RE = re.compile(r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")""")
_REWRITES = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]


class ExpressionError(ValueError):
    """Expression could not be parsed or evaluated."""


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript-style operators outside string literals."""
    parts = _STRING_RE.split(expression)
    for index in range(0, len(parts), 2):
        for pattern, replacement in _REWRITES:
            parts[index] = pattern.sub(replacement, parts[index])
    return "".join(parts).strip()


def evaluate_expression(expression: str, names: Dict[str, Any]) -> Any:
    """Evaluate a single expression against ``names``.

    Raises:
        ExpressionError: On syntax errors, unknown names or runtime errors
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Expression must be a non-empty string")

    evaluator = EvalWithCompoundTypes(
        names={**LITERALS, **names},
        functions=SAFE_FUNCTIONS,
    )
    try:
        return evaluator.eval(normalize_expression(expression))
    except InvalidExpression as e:
        raise ExpressionError(str(e)) from e
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}") from e
    except (TypeError, ValueError, KeyError, IndexError, ZeroDivisionError, AttributeError) as e:
        raise ExpressionError(f"Expression evaluation failed: {e}") from e


def evaluate_condition(expression: str, names: Dict[str, Any]) -> bool:
    """Evaluate an expression and coerce the result to bool."""
    return bool(evaluate_expression(expression, names))


def get_nested_value(data: Any, field_path: str) -> Any:
    """Get a nested value using dot notation.

    Args:
        data: Dict (or list) to extract value from
        field_path: Dot-separated path (e.g., "customer.email", "items.0.name")

    Returns:
        Value at path or None if not found

    Examples:
        >>> get_nested_value({"customer": {"email": "a@b.c"}}, "customer.email")
        'a@b.c'
        >>> get_nested_value({"items": [{"name": "a"}]}, "items.0.name")
        'a'
    """
    if data is None or not field_path:
        return None

    current = data
    for part in field_path.split('.'):
        if current is None:
            return None
        if part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            current = current[index] if 0 <= index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None

    return current
