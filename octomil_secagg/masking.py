"""Pairwise masking of weight updates.

Per aggregation round each party:

1. **Key generation** -- :meth:`PairwiseMasking.generate_key_pair` creates a
   fresh P-256 key pair and returns only the public key (as a JWK).
2. **Secret derivation** -- :meth:`PairwiseMasking.derive_shared_secret`
   runs ECDH against a peer's public key.  Both sides obtain the same
   32 bytes.
3. **Mask expansion** -- :meth:`PairwiseMasking.create_mask` expands a shared
   secret into a deterministic float mask via HKDF-SHA256.
4. **Apply / remove** -- :meth:`PairwiseMasking.mask_update` adds masks,
   :meth:`PairwiseMasking.unmask` subtracts them.

Public keys are exchanged as JWK dicts (``kty=EC``, ``crv=P-256``) so that
Python clients interoperate with the browser SDK.  Uncompressed X9.62 points
are accepted on import as well.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

import numpy as np
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import DimensionMismatchError, InvalidConfigurationError, KeyAgreementStateError
from .weights import WeightMap

logger = logging.getLogger(__name__)

# HKDF parameters shared with the browser and mobile SDKs.  Changing any of
# these changes every mask.
HKDF_INFO_MASK = b"octomil-secagg-mask"
HKDF_SALT = bytes(32)

# One derivation produces at most 8160 bits; longer masks tile this output.
MAX_MASK_BYTES = 8160 // 8

SHARED_SECRET_BYTES = 32

MASK_ENCODINGS = ("uniform", "float32")

PublicKeyLike = Union[Dict[str, Any], bytes, ec.EllipticCurvePublicKey]


def _b64url_encode(value: int) -> str:
    return base64.urlsafe_b64encode(value.to_bytes(32, "big")).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> int:
    padded = text + "=" * (-len(text) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), "big")


def public_key_to_jwk(public_key: ec.EllipticCurvePublicKey) -> Dict[str, Any]:
    """Export a P-256 public key as a JWK dict."""
    numbers = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "x": _b64url_encode(numbers.x),
        "y": _b64url_encode(numbers.y),
    }


def load_public_key(key: PublicKeyLike) -> ec.EllipticCurvePublicKey:
    """Import a peer public key from a JWK dict, an X9.62 point, or a key object."""
    if isinstance(key, ec.EllipticCurvePublicKey):
        return key
    if isinstance(key, (bytes, bytearray)):
        try:
            return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), bytes(key))
        except ValueError as exc:
            raise InvalidConfigurationError(f"Invalid P-256 public key point: {exc}") from exc
    if isinstance(key, dict):
        if key.get("kty") != "EC" or key.get("crv") != "P-256":
            raise InvalidConfigurationError(
                f"Expected an EC P-256 JWK, got kty={key.get('kty')!r} crv={key.get('crv')!r}"
            )
        try:
            numbers = ec.EllipticCurvePublicNumbers(
                _b64url_decode(key["x"]),
                _b64url_decode(key["y"]),
                ec.SECP256R1(),
            )
            return numbers.public_key()
        except (KeyError, ValueError) as exc:
            raise InvalidConfigurationError(f"Invalid P-256 JWK: {exc}") from exc
    raise InvalidConfigurationError(f"Unsupported public key type: {type(key).__name__}")


@dataclass(frozen=True)
class KeyPair:
    """A P-256 key pair for one aggregation round.

    Only the public half is ever exported.
    """

    private_key: ec.EllipticCurvePrivateKey

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls(private_key=ec.generate_private_key(ec.SECP256R1()))

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self.private_key.public_key()

    def public_jwk(self) -> Dict[str, Any]:
        return public_key_to_jwk(self.public_key)

    def public_bytes(self) -> bytes:
        """Uncompressed X9.62 encoding of the public key (65 bytes)."""
        return self.public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)

    def __repr__(self) -> str:
        return f"KeyPair(public={self.public_jwk()!r})"


def _words_to_floats(raw: bytes, encoding: str) -> np.ndarray:
    if encoding == "float32":
        return np.frombuffer(raw, dtype="<f4").astype(np.float32)
    words = np.frombuffer(raw, dtype="<u4").astype(np.float64)
    return (words / float(1 << 32) * 2.0 - 1.0).astype(np.float32)


def expand_mask(secret: bytes, length: int, encoding: str = "uniform") -> np.ndarray:
    """Deterministically expand *secret* into a ``float32`` mask of *length* elements.

    HKDF-SHA256 (32 zero bytes of salt, info ``b"octomil-secagg-mask"``)
    produces ``min(4 * length, 1020)`` bytes.  Each little-endian 32-bit word
    becomes one float:

    - ``"uniform"`` maps the word as an unsigned integer onto ``[-1, 1)``.
    - ``"float32"`` reinterprets the word's bits as an IEEE-754 float, matching
      the browser SDK byte for byte (values may be huge, infinite or NaN).

    When fewer words than *length* are derived, the words are tiled:
    ``mask[i] = words[i % len(words)]``.
    """
    if not isinstance(secret, (bytes, bytearray, memoryview)):
        raise InvalidConfigurationError(
            f"Mask secret must be bytes, got {type(secret).__name__}"
        )
    if encoding not in MASK_ENCODINGS:
        raise InvalidConfigurationError(f"encoding must be one of {MASK_ENCODINGS}, got {encoding!r}")
    if length < 0:
        raise InvalidConfigurationError(f"mask length must be >= 0, got {length}")
    if length == 0:
        return np.zeros(0, dtype=np.float32)

    num_bytes = min(length * 4, MAX_MASK_BYTES)
    raw = HKDF(
        algorithm=hashes.SHA256(),
        length=num_bytes,
        salt=HKDF_SALT,
        info=HKDF_INFO_MASK,
    ).derive(bytes(secret))
    source = _words_to_floats(raw, encoding)
    return np.resize(source, length).astype(np.float32)


def _combine(
    values: Mapping[str, np.ndarray],
    masks: Mapping[str, np.ndarray],
    sign: float,
) -> WeightMap:
    out: WeightMap = {}
    for key, arr in values.items():
        result = np.array(arr, dtype=np.float32, copy=True).reshape(-1)
        mask = masks.get(key)
        if mask is not None:
            mask_arr = np.asarray(mask, dtype=np.float32).reshape(-1)
            if mask_arr.shape[0] != result.shape[0]:
                raise DimensionMismatchError(key, result.shape[0], mask_arr.shape[0])
            if sign > 0:
                result = np.add(result, mask_arr, dtype=np.float32)
            else:
                result = np.subtract(result, mask_arr, dtype=np.float32)
        out[key] = result
    return out


class PairwiseMasking:
    """Per-round pairwise masking state: one P-256 key pair plus pure helpers.

    Example::

        alice, bob = PairwiseMasking(), PairwiseMasking()
        alice_pub = alice.generate_key_pair()
        bob_pub = bob.generate_key_pair()
        secret = alice.derive_shared_secret(bob_pub)   # == bob.derive_shared_secret(alice_pub)
        mask = alice.create_mask(secret, len(delta["w"]))
        masked = alice.mask_update(delta, {"w": mask})
    """

    def __init__(self) -> None:
        self._key_pair: Optional[KeyPair] = None

    @property
    def key_pair(self) -> Optional[KeyPair]:
        return self._key_pair

    def generate_key_pair(self) -> Dict[str, Any]:
        """Generate this round's key pair and return the public key as a JWK."""
        self._key_pair = KeyPair.generate()
        logger.debug("Generated P-256 key pair for pairwise masking")
        return self._key_pair.public_jwk()

    def public_key_jwk(self) -> Dict[str, Any]:
        return self._require_key_pair().public_jwk()

    def derive_shared_secret(self, peer_public_key: PublicKeyLike) -> bytes:
        """Derive the 32-byte ECDH shared secret with a peer."""
        key_pair = self._require_key_pair()
        peer_key = load_public_key(peer_public_key)
        return key_pair.private_key.exchange(ec.ECDH(), peer_key)

    def create_mask(self, secret: bytes, length: int, encoding: str = "uniform") -> np.ndarray:
        """See :func:`expand_mask`."""
        return expand_mask(secret, length, encoding=encoding)

    def mask_update(self, delta: Mapping[str, np.ndarray], masks: Mapping[str, np.ndarray]) -> WeightMap:
        """Return ``delta + masks`` per tensor; unmasked tensors are copied through."""
        return _combine(delta, masks, 1.0)

    def unmask(self, masked_sum: Mapping[str, np.ndarray], masks: Mapping[str, np.ndarray]) -> WeightMap:
        """Return ``masked_sum - masks`` per tensor; unmasked tensors are copied through."""
        return _combine(masked_sum, masks, -1.0)

    def _require_key_pair(self) -> KeyPair:
        if self._key_pair is None:
            raise KeyAgreementStateError("Call generate_key_pair() first.")
        return self._key_pair
