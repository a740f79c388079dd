"""Flatten nested records into the dotted key/value pairs of a data frame."""

import math
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

FlatRecord = List[Tuple[str, str]]

# Floats in this magnitude range render in positional notation
FIXED_NOTATION_MIN = 1e-6
FIXED_NOTATION_MAX = 1e21


def is_scalar(value: Any) -> bool:
    """Strings and numbers are scalars; booleans are not."""
    if isinstance(value, bool):
        return False
    return isinstance(value, (str, int, float))


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"

    magnitude = abs(value)
    if value.is_integer() and magnitude < FIXED_NOTATION_MAX:
        return str(int(value))
    # repr() yields the shortest digit string that round-trips
    shortest = repr(value)
    if FIXED_NOTATION_MIN <= magnitude < FIXED_NOTATION_MAX:
        return format(Decimal(shortest), 'f')
    mantissa, _, exponent = shortest.partition('e')
    return f"{mantissa}e{int(exponent):+d}"


def format_scalar(value: Any) -> str:
    """
    Render a scalar the way Logmet indexes it.

    Floats keep every significant digit: ``0.1 + 0.2`` gives
    ``"0.30000000000000004"``, ``1.0`` gives ``"1"`` and ``1e20`` gives
    ``"100000000000000000000"``.
    """
    if isinstance(value, float):
        return _format_float(value)
    return str(value)


def _join_key(prefix: str, key: Any) -> str:
    return f"{prefix}.{key}" if prefix else str(key)


def _flatten_into(data: Mapping, prefix: str, out: Dict[str, str]) -> None:
    for key, value in data.items():
        if is_scalar(value):
            out[_join_key(prefix, key)] = format_scalar(value)
        elif isinstance(value, (list, tuple)):
            # Only non-empty sequences made entirely of scalars are kept
            if value and all(is_scalar(item) for item in value):
                out[_join_key(prefix, key)] = ",".join(format_scalar(item) for item in value)
        elif isinstance(value, Mapping):
            _flatten_into(value, _join_key(prefix, key), out)
        # Anything else (None, booleans, objects, lists of mappings) is omitted


def flatten_record(data: Mapping, prefix: Optional[str] = None) -> FlatRecord:
    """
    Flatten a nested mapping into ``(dotted_key, string_value)`` pairs.

    Nested mappings contribute a dot-joined key prefix, sequences of scalars
    are joined with commas, and every other leaf is silently dropped. Pairs
    keep the insertion order of the source mapping; when two paths collapse
    to the same dotted key, the later value wins.

    Example:
        >>> flatten_record({"a": 1, "b": {"c": "x", "d": [1, 2]}, "e": None})
        [('a', '1'), ('b.c', 'x'), ('b.d', '1,2')]
    """
    out: Dict[str, str] = {}
    _flatten_into(data, prefix or "", out)
    return list(out.items())
