"""Shamir secret sharing over GF(2^31 - 1).

Any ``threshold`` of the ``num_shares`` shares reconstruct the secret; fewer
reveal nothing about it.  Integer secrets are shared directly.  Byte strings
such as 32-byte mask seeds are shared chunk by chunk with
:func:`split_bytes` / :func:`reconstruct_bytes`.

Python integers are arbitrary precision, so products of two field elements
never overflow before the modulus is taken.
"""

from __future__ import annotations

import logging
import secrets
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from .errors import InvalidConfigurationError

logger = logging.getLogger(__name__)

# Mersenne prime used as the field modulus.
PRIME = (1 << 31) - 1

# Byte-level sharing splits secrets into chunks that fit the field:
# 3 bytes = 24 bits < 31 bits.
_BYTE_CHUNK_SIZE = 3


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecretShare:
    """A single share: the polynomial evaluated at ``x``."""

    x: int
    y: int

    def to_bytes(self) -> bytes:
        return struct.pack(">II", self.x, self.y)

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> Tuple["SecretShare", int]:
        x, y = struct.unpack(">II", data[offset : offset + 8])
        return cls(x=x, y=y), offset + 8

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SecretShare":
        return cls(x=int(payload["x"]), y=int(payload["y"]))


@dataclass(frozen=True)
class SeedShare:
    """Share of a byte-string secret: one :class:`SecretShare` per chunk."""

    x: int
    chunks: Tuple[int, ...]
    secret_length: int

    def chunk_shares(self) -> List[SecretShare]:
        return [SecretShare(x=self.x, y=y) for y in self.chunks]

    def to_bytes(self) -> bytes:
        # Header: 4-byte index, 4-byte num_chunks, 4-byte secret_length
        buf = struct.pack(">III", self.x, len(self.chunks), self.secret_length)
        return buf + b"".join(struct.pack(">I", y) for y in self.chunks)

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> Tuple["SeedShare", int]:
        x, num_chunks, secret_length = struct.unpack(">III", data[offset : offset + 12])
        offset += 12
        chunks = struct.unpack(f">{num_chunks}I", data[offset : offset + 4 * num_chunks])
        offset += 4 * num_chunks
        return cls(x=x, chunks=tuple(chunks), secret_length=secret_length), offset


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _mod_inverse(a: int) -> int:
    """Inverse of *a* in GF(PRIME) by Fermat's little theorem."""
    a %= PRIME
    if a == 0:
        raise InvalidConfigurationError("0 has no inverse in the field")
    return pow(a, PRIME - 2, PRIME)


def _evaluate_polynomial(coefficients: Sequence[int], x: int) -> int:
    """Evaluate polynomial at *x* using Horner's method in GF(PRIME)."""
    result = 0
    for coeff in reversed(coefficients):
        result = (result * x + coeff) % PRIME
    return result


def _validate_threshold(threshold: int, num_shares: int) -> None:
    if threshold < 1:
        raise InvalidConfigurationError("threshold must be >= 1")
    if threshold > num_shares:
        raise InvalidConfigurationError(
            f"threshold must be <= num_shares ({threshold} > {num_shares})"
        )


# ---------------------------------------------------------------------------
# Integer sharing
# ---------------------------------------------------------------------------


def shamir_split(secret: int, threshold: int, num_shares: int) -> List[SecretShare]:
    """Split *secret* into *num_shares* shares, any *threshold* of which reconstruct it.

    The secret is reduced modulo :data:`PRIME`.  ``threshold == 1`` is allowed
    and makes every share equal to the secret.
    """
    _validate_threshold(threshold, num_shares)

    # Random polynomial of degree threshold - 1 with the secret as constant term.
    coefficients = [secret % PRIME]
    for _ in range(threshold - 1):
        coefficients.append(secrets.randbelow(PRIME))

    return [SecretShare(x=x, y=_evaluate_polynomial(coefficients, x)) for x in range(1, num_shares + 1)]


def shamir_reconstruct(shares: Sequence[SecretShare]) -> int:
    """Recover the secret by Lagrange interpolation at ``x = 0``.

    Every share passed in is used, so callers should pass exactly the
    threshold number of shares from a single split.
    """
    if not shares:
        raise InvalidConfigurationError("Need at least one share")
    xs = [s.x % PRIME for s in shares]
    if len(set(xs)) != len(xs):
        raise InvalidConfigurationError("Shares must have distinct x coordinates")

    secret = 0
    for i, share_i in enumerate(shares):
        numerator = 1
        denominator = 1
        for j, share_j in enumerate(shares):
            if i == j:
                continue
            numerator = (numerator * ((PRIME - share_j.x) % PRIME)) % PRIME
            denominator = (denominator * ((share_i.x - share_j.x) % PRIME)) % PRIME
        lagrange = (numerator * _mod_inverse(denominator)) % PRIME
        secret = (secret + share_i.y * lagrange) % PRIME
    return secret


# ---------------------------------------------------------------------------
# Byte-level sharing
# ---------------------------------------------------------------------------


def split_bytes(secret: bytes, threshold: int, num_shares: int) -> List[SeedShare]:
    """Shamir-share an arbitrary byte string.

    The secret is split into 3-byte big-endian chunks (the last one
    zero-padded) and each chunk is shared independently with the same
    threshold.  Share ``i`` of the result holds share ``i`` of every chunk.
    """
    _validate_threshold(threshold, num_shares)
    remainder = len(secret) % _BYTE_CHUNK_SIZE
    padded = secret + b"\x00" * ((_BYTE_CHUNK_SIZE - remainder) % _BYTE_CHUNK_SIZE)

    per_share: List[List[int]] = [[] for _ in range(num_shares)]
    for offset in range(0, len(padded), _BYTE_CHUNK_SIZE):
        chunk_int = int.from_bytes(padded[offset : offset + _BYTE_CHUNK_SIZE], "big")
        for share in shamir_split(chunk_int, threshold, num_shares):
            per_share[share.x - 1].append(share.y)

    return [
        SeedShare(x=i + 1, chunks=tuple(ys), secret_length=len(secret))
        for i, ys in enumerate(per_share)
    ]


def reconstruct_bytes(shares: Sequence[SeedShare]) -> bytes:
    """Inverse of :func:`split_bytes`."""
    if not shares:
        raise InvalidConfigurationError("Need at least one share")
    num_chunks = len(shares[0].chunks)
    secret_length = shares[0].secret_length
    for share in shares[1:]:
        if len(share.chunks) != num_chunks or share.secret_length != secret_length:
            raise InvalidConfigurationError("Seed shares come from different splits")

    out = bytearray()
    for c in range(num_chunks):
        chunk_int = shamir_reconstruct([SecretShare(x=s.x, y=s.chunks[c]) for s in shares])
        # Only a wrong share set can produce a value above 24 bits.
        out.extend((chunk_int % (1 << (8 * _BYTE_CHUNK_SIZE))).to_bytes(_BYTE_CHUNK_SIZE, "big"))
    return bytes(out[:secret_length])
