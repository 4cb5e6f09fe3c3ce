"""SecAgg+ coordinator view: pairwise masking plus threshold recovery.

:class:`SecAggPlus` fixes a Shamir threshold ``T`` for the round and layers
dropout recovery on top of :class:`~octomil_secagg.masking.PairwiseMasking`.

Sign convention for N-party cancellation: the mask derived from the secret
shared by clients ``i`` and ``j`` is **added** by the client with the larger
index and **subtracted** by the client with the smaller one.  Summed over all
clients every pairwise mask cancels.  When client ``d`` drops out after the
others have uploaded, each survivor ``i`` still carries its signed mask for
the pair ``(i, d)``; the coordinator reconstructs those pair secrets from
Shamir shares (:meth:`SecAggPlus.reconstruct_seed`) and removes them with
:meth:`SecAggPlus.dropout_correction` and ``unmask``.

Example::

    sap = SecAggPlus(threshold=3)
    pub = sap.generate_key_pair()
    # ... exchange public keys via the coordinator ...
    secrets_by_peer = {j: sap.derive_shared_secret(pk) for j, pk in peers.items()}
    masks = sap.build_pairwise_masks(my_index, secrets_by_peer, shapes)
    masked = sap.mask_update(delta, masks)
    # Pre-distribute shares of each pair secret for dropout recovery.
    seed_shares = {j: sap.split_seed(s, num_peers) for j, s in secrets_by_peer.items()}
"""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np

from .config import SecAggPlusConfig
from .errors import InsufficientSharesError, InvalidConfigurationError
from .masking import PairwiseMasking, expand_mask
from .shamir import SecretShare, SeedShare, reconstruct_bytes, shamir_reconstruct, shamir_split, split_bytes
from .weights import WeightMap

logger = logging.getLogger(__name__)


def _flat_layout(shapes: Mapping[str, int]) -> List[tuple]:
    """``(key, start, stop)`` slices of one flat vector, in sorted key order."""
    layout = []
    offset = 0
    for key in sorted(shapes):
        length = int(shapes[key])
        if length < 0:
            raise InvalidConfigurationError(f'Tensor "{key}" has negative length {length}')
        layout.append((key, offset, offset + length))
        offset += length
    return layout


class SecAggPlus(PairwiseMasking):
    """Pairwise masking with a fixed Shamir reconstruction threshold."""

    def __init__(self, threshold: int) -> None:
        if threshold < 1:
            raise InvalidConfigurationError(f"threshold must be >= 1, got {threshold}")
        super().__init__()
        self._threshold = threshold

    @classmethod
    def from_config(cls, config: SecAggPlusConfig) -> "SecAggPlus":
        return cls(config.threshold)

    @property
    def threshold(self) -> int:
        return self._threshold

    # ------------------------------------------------------------------
    # Threshold sharing
    # ------------------------------------------------------------------

    def split_secret(self, secret: int, num_peers: int) -> List[SecretShare]:
        """Split *secret* so that any ``threshold`` of *num_peers* peers can recover it."""
        return shamir_split(secret, self._threshold, num_peers)

    def reconstruct_secret(self, shares: Sequence[SecretShare]) -> int:
        """Reconstruct a dropped peer's secret from the first ``threshold`` shares."""
        self._check_share_count(len(shares))
        return shamir_reconstruct(list(shares)[: self._threshold])

    def split_seed(self, seed: bytes, num_peers: int) -> List[SeedShare]:
        """Byte-level variant of :meth:`split_secret` for mask seeds."""
        return split_bytes(seed, self._threshold, num_peers)

    def reconstruct_seed(self, shares: Sequence[SeedShare]) -> bytes:
        self._check_share_count(len(shares))
        return reconstruct_bytes(list(shares)[: self._threshold])

    def _check_share_count(self, received: int) -> None:
        if received < self._threshold:
            raise InsufficientSharesError(self._threshold, received)

    # ------------------------------------------------------------------
    # N-party masks
    # ------------------------------------------------------------------

    def pair_mask(self, secret: bytes, shapes: Mapping[str, int], encoding: str = "uniform") -> WeightMap:
        """Expand one pair secret into a mask per tensor.

        A single mask covering all tensors (sorted by name) is expanded and
        sliced, so different tensors receive different mask elements.
        """
        layout = _flat_layout(shapes)
        total = layout[-1][2] if layout else 0
        flat = expand_mask(secret, total, encoding=encoding)
        return {key: flat[start:stop].copy() for key, start, stop in layout}

    def build_pairwise_masks(
        self,
        my_index: int,
        peer_secrets: Mapping[int, bytes],
        shapes: Mapping[str, int],
        encoding: str = "uniform",
    ) -> WeightMap:
        """Combine this client's signed pairwise masks into one mask per tensor.

        *peer_secrets* maps peer index to the shared secret derived with that
        peer.  The mask is added for peers with a smaller index and
        subtracted for peers with a larger one.
        """
        signed = [
            (1.0 if my_index > peer_index else -1.0, secret)
            for peer_index, secret in sorted(peer_secrets.items())
            if peer_index != my_index
        ]
        logger.debug("Building pairwise masks for client %d against %d peers", my_index, len(signed))
        return self._signed_sum(signed, shapes, encoding)

    def dropout_correction(
        self,
        dropped_index: int,
        recovered_secrets: Mapping[int, bytes],
        shapes: Mapping[str, int],
        encoding: str = "uniform",
    ) -> WeightMap:
        """Masks left uncancelled in the aggregate by a dropped client.

        *recovered_secrets* maps each surviving client's index to the secret
        it shared with the dropped client (reconstructed from Shamir shares).
        Pass the result to :meth:`unmask` together with the aggregate.
        """
        # Each survivor signed the pair mask from its own point of view.
        signed = [
            (1.0 if survivor_index > dropped_index else -1.0, secret)
            for survivor_index, secret in sorted(recovered_secrets.items())
            if survivor_index != dropped_index
        ]
        logger.debug(
            "Computing dropout correction for client %d from %d survivors",
            dropped_index,
            len(signed),
        )
        return self._signed_sum(signed, shapes, encoding)

    def _signed_sum(
        self,
        signed_secrets: Sequence[Tuple[float, bytes]],
        shapes: Mapping[str, int],
        encoding: str,
    ) -> WeightMap:
        total = {key: np.zeros(int(n), dtype=np.float32) for key, n in shapes.items()}
        for sign, secret in signed_secrets:
            for key, mask in self.pair_mask(secret, shapes, encoding).items():
                total[key] = np.add(total[key], sign * mask, dtype=np.float32)
        return total


def shapes_of(weights: Mapping[str, np.ndarray]) -> Dict[str, int]:
    """Tensor lengths of a weight map, as used by the mask builders."""
    return {key: int(np.asarray(arr).size) for key, arr in weights.items()}
