"""
Pagination Cursors
==================

Opaque cursors describing a position in the ``(timestamp, id)`` total order.

Wire format::

    base64( "<id>:<unix_seconds>:<extra>" )

``unix_seconds`` is an integer; when the timestamp has sub-second precision
the fraction is appended with six digits (``1700000000.250000``) so stored
microsecond timestamps survive a round trip. The empty string is the zero
cursor ("from the beginning").
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar, Union

from taskapi.core.exceptions import CursorError
from taskapi.utils.helpers import EPOCH, ensure_utc, to_unix_micros

T = TypeVar("T", int, str)

ASC = "ASC"
DESC = "DESC"

_SEPARATOR = ":"
_TIMESTAMP_RE = re.compile(r"^-?\d+(\.\d{1,6})?$")
_UINT_RE = re.compile(r"^\d+$")
_INT_RE = re.compile(r"^[+-]?\d+$")


class IdKind(str, Enum):
    """Type of the id embedded in a cursor."""
    UINT = "uint"
    INT = "int"
    STR = "str"


@dataclass(frozen=True)
class CursorOptions:
    """Timestamp field name and sort direction (``ASC`` | ``DESC``)."""

    field: str
    direction: str


@dataclass(frozen=True)
class Cursor(Generic[T]):
    id: Optional[T] = None
    timestamp: Optional[datetime] = None
    extra: str = ""

    @property
    def is_empty(self) -> bool:
        """A cursor without a timestamp points at the start of the stream."""
        return self.timestamp is None


def new_cursor(id: T, timestamp: datetime, extra: str = "") -> Cursor[T]:
    return Cursor(id=id, timestamp=ensure_utc(timestamp), extra=extra)


def validate_options(opts: CursorOptions) -> None:
    if not opts.field:
        raise CursorError("field option is required")
    if opts.direction not in (ASC, DESC):
        raise CursorError("direction must be either ASC or DESC")


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _format_id(value: object) -> str:
    # bool is an int subclass but never a valid id
    if isinstance(value, bool):
        raise CursorError(f"unsupported ID type: {type(value).__name__}")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        if _SEPARATOR in value:
            raise CursorError("string IDs must not contain ':'")
        return value
    raise CursorError(f"unsupported ID type: {type(value).__name__}")


def _format_timestamp(ts: datetime) -> str:
    seconds, micros = divmod(to_unix_micros(ts), 1_000_000)
    if micros:
        return f"{seconds}.{micros:06d}"
    return str(seconds)


def encode(cursor: Cursor, opts: CursorOptions) -> str:
    """
    Encode a cursor to its opaque base-64 form.

    The zero cursor encodes to ``""``.

    Raises:
        CursorError: invalid options or unsupported id type
    """
    validate_options(opts)
    if cursor.is_empty:
        return ""

    raw = _SEPARATOR.join(
        (_format_id(cursor.id), _format_timestamp(cursor.timestamp), cursor.extra)
    )
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _parse_uint(text: str) -> int:
    if not _UINT_RE.match(text):
        raise ValueError(text)
    return int(text)


def _parse_int(text: str) -> int:
    if not _INT_RE.match(text):
        raise ValueError(text)
    return int(text)


def _parse_str(text: str) -> str:
    return text


_ID_PARSERS: dict[IdKind, Callable[[str], Union[int, str]]] = {
    IdKind.UINT: _parse_uint,
    IdKind.INT: _parse_int,
    IdKind.STR: _parse_str,
}


def _parse_timestamp(text: str) -> datetime:
    if not _TIMESTAMP_RE.match(text):
        raise ValueError(text)
    seconds, _, fraction = text.partition(".")
    micros = int(seconds) * 1_000_000
    if fraction:
        micros += int(fraction.ljust(6, "0"))
    return EPOCH + timedelta(microseconds=micros)


def decode(token: str, id_kind: IdKind = IdKind.UINT) -> Cursor:
    """
    Decode an opaque cursor.

    Args:
        token: Value produced by :func:`encode` (``""`` means "start")
        id_kind: Expected id type

    Raises:
        CursorError: on any malformed input
    """
    if token == "":
        return Cursor()

    try:
        raw = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise CursorError(f"failed to decode cursor: {exc}") from exc

    parts = raw.split(_SEPARATOR, 2)
    if len(parts) < 2:
        raise CursorError("invalid cursor format")

    try:
        timestamp = _parse_timestamp(parts[1])
    except (ValueError, OverflowError) as exc:
        raise CursorError("invalid cursor timestamp") from exc

    parse_id = _ID_PARSERS[IdKind(id_kind)]
    try:
        cursor_id = parse_id(parts[0])
    except ValueError as exc:
        raise CursorError("invalid cursor ID") from exc

    extra = parts[2] if len(parts) > 2 else ""
    return Cursor(id=cursor_id, timestamp=timestamp, extra=extra)
