"""Document identifier generation.

Generated identifiers are lowercase ULIDs (Crockford base32): 48-bit
millisecond timestamp followed by 80 random bits, 26 characters.
"""

from __future__ import annotations

import os
import time
from typing import Final

_ALPHABET: Final[str] = "0123456789abcdefghjkmnpqrstvwxyz"

MAX_DOCUMENT_ID_LENGTH: Final[int] = 64


def _encode_base32(value: int, length: int) -> str:
    chars: list[str] = []
    for _ in range(length):
        value, rem = divmod(value, 32)
        chars.append(_ALPHABET[rem])
    chars.reverse()
    return "".join(chars)


def generate_document_id(ts_ms: int | None = None) -> str:
    if ts_ms is None:
        ts_ms = int(time.time() * 1000)
    ts = ts_ms & ((1 << 48) - 1)
    rnd = int.from_bytes(os.urandom(10), "big")
    return _encode_base32((ts << 80) | rnd, 26)


def is_valid_document_id(value: object) -> bool:
    """Portable identifiers are non-empty strings of bounded length."""
    return isinstance(value, str) and 0 < len(value) <= MAX_DOCUMENT_ID_LENGTH
