"""
Document access for rule evaluation.

A document is the parsed message body: nested mappings whose leaves are
strings or numbers. Documents converted from JSON may also carry booleans
and lists; lists are never addressable by a field path.
"""

import json
import math
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

Document = Union[None, str, int, float, bool, Dict[str, Any], List[Any]]


class _Absent:
    """Marker for a field path that does not resolve to a value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "ABSENT"


ABSENT = _Absent()

OBJECT_TEXT = "[object Object]"

_DECIMAL_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def resolve_field(document: Document, path: str):
    """Walk ``path`` one dot-separated segment at a time.

    Returns the value found or ``ABSENT`` when a segment is missing, lands on
    something that is not a mapping, or the value is null or a list.
    """
    current = document
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return ABSENT
        current = current[segment]
        if current is None:
            return ABSENT

    if isinstance(current, list):
        return ABSENT
    return current


def serialize_document(document: Document) -> str:
    """Compact JSON text of a document."""
    return json.dumps(document, ensure_ascii=False, separators=(",", ":"))


def _format_float(value: float) -> str:
    """Shortest round-trip decimal form with exponent only below 1e-6 or from 1e21."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == 0:
        return "0"

    sign, digit_tuple, exponent = Decimal(repr(value)).as_tuple()
    digits = list(digit_tuple)
    while len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exponent += 1

    text = "".join(str(d) for d in digits)
    k = len(digits)
    # Position of the decimal point relative to the first digit
    n = exponent + k

    if k <= n <= 21:
        body = text + "0" * (n - k)
    elif 0 < n <= 21:
        body = text[:n] + "." + text[n:]
    elif -6 < n <= 0:
        body = "0." + "0" * (-n) + text
    else:
        e = n - 1
        mantissa = text if k == 1 else text[0] + "." + text[1:]
        body = f"{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"

    return "-" + body if sign else body


def to_comparable_string(value: Any) -> str:
    """Natural textual form of a resolved value.

    Mappings have no textual form of their own and all render as
    ``OBJECT_TEXT``.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    return OBJECT_TEXT


def to_number_or_none(value: Any) -> Optional[float]:
    """Parse a plain decimal number, or ``None`` when the value is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not _DECIMAL_RE.fullmatch(text):
            return None
        number = float(text)
    else:
        return None

    if math.isnan(number) or math.isinf(number):
        return None
    return number
