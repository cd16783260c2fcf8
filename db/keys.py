"""Tuple keys for the key-value store.

Keys are tuples of ``str``, ``int`` and ``bytes`` parts, e.g.
``("reminder", 1735689600, "abc")``.  They are encoded to ``bytes`` so that
plain byte comparison gives the same order as comparing the tuples part by
part: strings sort as strings and integers sort numerically, including
negative values.  Range scans over a prefix rely on this.

Layout of one part::

    bytes  0x01 <data, 0x00 escaped as 0x00 0xff> 0x00
    str    0x02 <utf-8,  0x00 escaped as 0x00 0xff> 0x00
    int    0x21 <8 bytes big-endian of value + 2**63>

No part starts with 0xff, so every key with prefix ``P`` sorts inside
``[encode(P), encode(P) + b"\\xff")``.
"""

from __future__ import annotations

import struct
from typing import Tuple, Union

KeyPart = Union[str, int, bytes]
Key = Tuple[KeyPart, ...]

_BYTES = 0x01
_STR = 0x02
_INT = 0x21

_INT_OFFSET = 1 << 63
_INT_MIN = -(1 << 63)
_INT_MAX = (1 << 63) - 1

PREFIX_END = b"\xff"


def _escape(raw: bytes) -> bytes:
    return raw.replace(b"\x00", b"\x00\xff") + b"\x00"


def encode_key(key: Key) -> bytes:
    """Encode a key tuple into its byte-comparable form."""
    if not isinstance(key, tuple):
        raise TypeError(f"key must be a tuple, got {type(key).__name__}")
    out = bytearray()
    for part in key:
        # bool is an int subclass; refuse it rather than silently storing 0/1
        if isinstance(part, bool):
            raise TypeError("bool key parts are not supported")
        if isinstance(part, int):
            if not _INT_MIN <= part <= _INT_MAX:
                raise ValueError(f"integer key part out of range: {part}")
            out.append(_INT)
            out += struct.pack(">Q", part + _INT_OFFSET)
        elif isinstance(part, str):
            out.append(_STR)
            out += _escape(part.encode("utf-8"))
        elif isinstance(part, bytes):
            out.append(_BYTES)
            out += _escape(part)
        else:
            raise TypeError(f"unsupported key part type: {type(part).__name__}")
    return bytes(out)


def _read_escaped(raw: bytes, pos: int) -> tuple[bytes, int]:
    out = bytearray()
    while True:
        b = raw[pos]
        if b == 0x00:
            if pos + 1 < len(raw) and raw[pos + 1] == 0xFF:
                out.append(0x00)
                pos += 2
                continue
            return bytes(out), pos + 1
        out.append(b)
        pos += 1


def decode_key(raw: bytes) -> Key:
    """Inverse of :func:`encode_key`."""
    parts: list[KeyPart] = []
    pos = 0
    while pos < len(raw):
        tag = raw[pos]
        pos += 1
        if tag == _INT:
            (value,) = struct.unpack(">Q", raw[pos:pos + 8])
            parts.append(value - _INT_OFFSET)
            pos += 8
        elif tag == _STR:
            data, pos = _read_escaped(raw, pos)
            parts.append(data.decode("utf-8"))
        elif tag == _BYTES:
            data, pos = _read_escaped(raw, pos)
            parts.append(data)
        else:
            raise ValueError(f"invalid key tag 0x{tag:02x} at offset {pos - 1}")
    return tuple(parts)


def prefix_range(prefix: Key) -> tuple[bytes, bytes]:
    """Encoded ``[start, end)`` bounds of all keys strictly under ``prefix``."""
    encoded = encode_key(prefix)
    return encoded + b"\x00", encoded + PREFIX_END
