"""Key rules, key ranges and the order-preserving key codec.

Keys follow the object-store ordering: numbers sort before dates, dates
before strings, strings before bytes and bytes before arrays. Arrays compare
element by element, a shorter prefix sorting first.

``encode_key`` maps a key to bytes whose ``memcmp`` order equals that key
order, so the engine can compare and range-scan keys as plain BLOBs.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from stowage.errors import ValidationError

__all__ = [
    "KeyRange",
    "is_valid_key",
    "compare_keys",
    "encode_key",
    "decode_key",
    "to_key_range",
]

_NUMBER = 0x10
_DATE = 0x20
_STRING = 0x30
_BYTES = 0x40
_ARRAY = 0x50
_END = 0x00
_ESCAPE = 0xFF

_MAX_SAFE_INTEGER = 2**53


def is_valid_key(key: Any) -> bool:
    """Return True if ``key`` can be used as a primary or index key."""
    if isinstance(key, bool):
        return False
    if isinstance(key, int):
        return abs(key) <= 2**1023
    if isinstance(key, float):
        return not math.isnan(key)
    if isinstance(key, (str, bytes, bytearray, memoryview, datetime)):
        return True
    if isinstance(key, (list, tuple)):
        return all(is_valid_key(item) for item in key)
    return False


def _require_key(key: Any) -> None:
    if not is_valid_key(key):
        raise ValidationError(f"Invalid key: {key!r}")


# --- Codec ---


def _pack_float(value: float) -> bytes:
    raw = bytearray(struct.pack(">d", value + 0.0))  # folds -0.0 into 0.0
    if raw[0] & 0x80:
        return bytes(b ^ 0xFF for b in raw)
    raw[0] ^= 0x80
    return bytes(raw)


def _unpack_float(data: bytes) -> float:
    raw = bytearray(data)
    if raw[0] & 0x80:
        raw[0] ^= 0x80
    else:
        raw = bytearray(b ^ 0xFF for b in raw)
    return struct.unpack(">d", bytes(raw))[0]


def _escape(data: bytes) -> bytes:
    return data.replace(b"\x00", b"\x00\xff") + b"\x00"


def _timestamp_ms(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp() * 1000.0


def _encode_into(key: Any, out: bytearray) -> None:
    if isinstance(key, (int, float)) and not isinstance(key, bool):
        out.append(_NUMBER)
        out += _pack_float(float(key))
    elif isinstance(key, datetime):
        out.append(_DATE)
        out += _pack_float(_timestamp_ms(key))
    elif isinstance(key, str):
        out.append(_STRING)
        out += _escape(key.encode("utf-8"))
    elif isinstance(key, (bytes, bytearray, memoryview)):
        out.append(_BYTES)
        out += _escape(bytes(key))
    elif isinstance(key, (list, tuple)):
        out.append(_ARRAY)
        for item in key:
            _encode_into(item, out)
        out.append(_END)
    else:
        raise ValidationError(f"Invalid key: {key!r}")


def encode_key(key: Any) -> bytes:
    """Encode a valid key into order-preserving bytes."""
    _require_key(key)
    out = bytearray()
    _encode_into(key, out)
    return bytes(out)


def _read_escaped(data: bytes, pos: int) -> tuple[bytes, int]:
    out = bytearray()
    while True:
        byte = data[pos]
        if byte == 0x00:
            if pos + 1 < len(data) and data[pos + 1] == _ESCAPE:
                out.append(0x00)
                pos += 2
                continue
            return bytes(out), pos + 1
        out.append(byte)
        pos += 1


def _number(value: float) -> int | float:
    if value.is_integer() and abs(value) <= _MAX_SAFE_INTEGER:
        return int(value)
    return value


def _decode_from(data: bytes, pos: int) -> tuple[Any, int]:
    tag = data[pos]
    pos += 1
    if tag == _NUMBER:
        return _number(_unpack_float(data[pos : pos + 8])), pos + 8
    if tag == _DATE:
        ms = _unpack_float(data[pos : pos + 8])
        return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc), pos + 8
    if tag == _STRING:
        raw, pos = _read_escaped(data, pos)
        return raw.decode("utf-8"), pos
    if tag == _BYTES:
        return _read_escaped(data, pos)
    if tag == _ARRAY:
        items: list[Any] = []
        while data[pos] != _END:
            item, pos = _decode_from(data, pos)
            items.append(item)
        return items, pos + 1
    raise ValueError(f"Corrupt key encoding: unknown tag 0x{tag:02x}")


def decode_key(data: bytes) -> Any:
    """Decode bytes produced by ``encode_key``.

    Numbers come back as ``int`` when integral, arrays as ``list`` and dates
    as timezone-aware UTC datetimes.
    """
    key, pos = _decode_from(bytes(data), 0)
    if pos != len(data):
        raise ValueError("Corrupt key encoding: trailing bytes")
    return key


def compare_keys(a: Any, b: Any) -> int:
    """Three-way comparison of two valid keys."""
    ea, eb = encode_key(a), encode_key(b)
    return (ea > eb) - (ea < eb)


# --- Ranges ---


@dataclass(frozen=True)
class KeyRange:
    """A contiguous interval of keys. ``None`` bounds are unbounded."""

    lower: Any = None
    upper: Any = None
    lower_open: bool = False
    upper_open: bool = False

    def __post_init__(self) -> None:
        if self.lower is None and self.upper is None:
            raise ValidationError("KeyRange needs at least one bound")
        if self.lower is not None:
            _require_key(self.lower)
        if self.upper is not None:
            _require_key(self.upper)
        if self.lower is not None and self.upper is not None:
            order = compare_keys(self.lower, self.upper)
            if order > 0:
                raise ValidationError(
                    f"KeyRange lower bound {self.lower!r} is greater than upper bound {self.upper!r}"
                )
            if order == 0 and (self.lower_open or self.upper_open):
                raise ValidationError("KeyRange with equal bounds cannot be open")

    @classmethod
    def only(cls, value: Any) -> KeyRange:
        return cls(value, value)

    @classmethod
    def lower_bound(cls, lower: Any, open: bool = False) -> KeyRange:
        return cls(lower=lower, lower_open=open)

    @classmethod
    def upper_bound(cls, upper: Any, open: bool = False) -> KeyRange:
        return cls(upper=upper, upper_open=open)

    @classmethod
    def bound(
        cls, lower: Any, upper: Any, lower_open: bool = False, upper_open: bool = False
    ) -> KeyRange:
        return cls(lower, upper, lower_open, upper_open)

    def includes(self, key: Any) -> bool:
        _require_key(key)
        if self.lower is not None:
            order = compare_keys(key, self.lower)
            if order < 0 or (order == 0 and self.lower_open):
                return False
        if self.upper is not None:
            order = compare_keys(key, self.upper)
            if order > 0 or (order == 0 and self.upper_open):
                return False
        return True

    def encoded_bounds(self) -> tuple[bytes | None, bytes | None]:
        lower = encode_key(self.lower) if self.lower is not None else None
        upper = encode_key(self.upper) if self.upper is not None else None
        return lower, upper


def to_key_range(value: Any) -> KeyRange:
    """Coerce a key or a ``KeyRange`` into a ``KeyRange``."""
    if isinstance(value, KeyRange):
        return value
    _require_key(value)
    return KeyRange.only(value)
