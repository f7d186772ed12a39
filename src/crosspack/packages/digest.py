"""Content digest parsing and formatting.

Pinned hashes appear in three spellings:

- hex: 64 lowercase hex characters
- Nix base-32: 52 characters from the alphabet ``0123456789abcdfghijklmnpqrsvwxyz``
  (least-significant bits first, as printed by ``nix-hash --type sha256 --base32``)
- SRI: ``sha256-<base64>``

All of them are normalized to hex, which is also the content-addressed
cache key.
"""

import base64
import binascii
import hashlib
from pathlib import Path

NIX_BASE32_CHARS = "0123456789abcdfghijklmnpqrsvwxyz"
SHA256_SIZE = 32
NIX_BASE32_LEN = (SHA256_SIZE * 8 - 1) // 5 + 1


class DigestFormatError(ValueError):
    """Raised when a pinned hash cannot be parsed."""

    pass


def nix_base32_encode(raw: bytes) -> str:
    """Encode raw digest bytes in Nix base-32."""
    size = len(raw)
    length = (size * 8 - 1) // 5 + 1
    chars = []
    for n in range(length - 1, -1, -1):
        b = n * 5
        i = b // 8
        j = b % 8
        c = raw[i] >> j
        if i < size - 1:
            c |= raw[i + 1] << (8 - j)
        chars.append(NIX_BASE32_CHARS[c & 0x1F])
    return "".join(chars)


def nix_base32_decode(text: str, size: int = SHA256_SIZE) -> bytes:
    """Decode a Nix base-32 string into ``size`` raw bytes.

    Raises:
        DigestFormatError: On invalid characters or overflowing input
    """
    out = bytearray(size)
    for n, ch in enumerate(reversed(text)):
        digit = NIX_BASE32_CHARS.find(ch)
        if digit < 0:
            raise DigestFormatError(f"Invalid character {ch!r} in base-32 hash")
        b = n * 5
        i = b // 8
        j = b % 8
        out[i] |= (digit << j) & 0xFF
        carry = digit >> (8 - j)
        if i + 1 < size:
            out[i + 1] |= carry
        elif carry:
            raise DigestFormatError(f"Base-32 hash overflows {size} bytes: {text}")
    return bytes(out)


def normalize_sha256(pinned: str) -> str:
    """Normalize a pinned SHA-256 in any supported spelling to lowercase hex.

    Args:
        pinned: Hex, Nix base-32 or SRI encoded digest

    Returns:
        64-character lowercase hex digest

    Raises:
        DigestFormatError: If the value is not a recognizable SHA-256 digest
    """
    value = pinned.strip()
    if value.startswith("sha256-"):
        try:
            raw = base64.b64decode(value[len("sha256-"):], validate=True)
        except binascii.Error as e:
            raise DigestFormatError(f"Invalid SRI hash: {pinned}") from e
        if len(raw) != SHA256_SIZE:
            raise DigestFormatError(f"SRI hash has wrong length: {pinned}")
        return raw.hex()

    if value.startswith("sha256:"):
        value = value[len("sha256:"):]

    lowered = value.lower()
    if len(lowered) == SHA256_SIZE * 2 and all(c in "0123456789abcdef" for c in lowered):
        return lowered
    if len(value) == NIX_BASE32_LEN:
        return nix_base32_decode(value).hex()

    raise DigestFormatError(
        f"Unrecognized sha256 digest {pinned!r}: expected hex, Nix base-32 or SRI"
    )


def sha256_file(path: Path, chunk_size: int = 8192) -> str:
    """Compute the hex SHA-256 of a file."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
    return sha256.hexdigest()
