"""Rendering of row values as short SQL literals."""

from __future__ import annotations

from datetime import datetime
from typing import Any

_MAX_LEN = 50
_KEEP_LEN = 47


def _truncate_bytes(raw: bytes) -> str:
    if len(raw) > _MAX_LEN:
        return raw[:_KEEP_LEN].decode("utf-8", errors="ignore") + "..."
    return raw.decode("utf-8", errors="replace")


def _quote_text(raw: bytes) -> str:
    escaped = raw.replace(b"'", b"''")
    return f"'{_truncate_bytes(escaped)}'"


def format_value(val: Any) -> str:
    """Render a value as a SQL literal, shortening long text."""
    if val is None:
        return "NULL"
    if isinstance(val, str):
        return _quote_text(val.encode("utf-8"))
    if isinstance(val, (bytes, bytearray, memoryview)):
        return _quote_text(bytes(val))
    if isinstance(val, bool):
        return "1" if val else "0"
    if isinstance(val, int):
        return str(val)
    if isinstance(val, float):
        return "%.6g" % val
    if isinstance(val, datetime):
        return f"'{val.strftime('%Y-%m-%d %H:%M:%S')}'"
    text = str(val)
    if len(text) > _MAX_LEN:
        text = text[:_KEEP_LEN] + "..."
    return f"'{text}'"


def values_equal(a: Any, b: Any) -> bool:
    """Compare two row values; byte strings compare by content."""
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    bytes_like = (bytes, bytearray, memoryview)
    if isinstance(a, bytes_like) and isinstance(b, bytes_like):
        return bytes(a) == bytes(b)
    return type(a) is type(b) and a == b