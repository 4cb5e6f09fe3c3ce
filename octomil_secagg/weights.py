"""Weight-map helpers: delta computation, application, norms and serialization.

A weight map is a ``dict`` from tensor name to a flat ``float32`` numpy array.
Every helper here returns fresh arrays so no stage of the privacy pipeline
can observe or mutate another stage's data.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, Mapping

import numpy as np

from .errors import DimensionMismatchError, OctomilSecAggError

logger = logging.getLogger(__name__)

WeightMap = Dict[str, np.ndarray]


def as_tensor(values: Any) -> np.ndarray:
    """Return *values* as a fresh flat ``float32`` array."""
    return np.array(values, dtype=np.float32).reshape(-1)


def to_weight_map(weights: Mapping[str, Any]) -> WeightMap:
    """Coerce a mapping of sequences/arrays into a :data:`WeightMap` copy."""
    return {key: as_tensor(values) for key, values in weights.items()}


def clone_weights(weights: Mapping[str, np.ndarray]) -> WeightMap:
    return {key: np.array(arr, dtype=np.float32, copy=True) for key, arr in weights.items()}


def _check_lengths(key: str, expected: np.ndarray, actual: np.ndarray) -> None:
    if expected.shape[0] != actual.shape[0]:
        raise DimensionMismatchError(key, expected.shape[0], actual.shape[0])


def compute_delta(before: Mapping[str, np.ndarray], after: Mapping[str, np.ndarray]) -> WeightMap:
    """Element-wise ``after - before`` for every tensor in *before*.

    The returned arrays are read-only: a delta is immutable once created.
    Raises :class:`DimensionMismatchError` when a tensor is missing from
    *after* or its length differs.
    """
    delta: WeightMap = {}
    for key, b in before.items():
        if key not in after:
            raise DimensionMismatchError(key, len(b), 0)
        b_arr = as_tensor(b)
        a_arr = as_tensor(after[key])
        _check_lengths(key, b_arr, a_arr)
        d = np.subtract(a_arr, b_arr, dtype=np.float32)
        d.flags.writeable = False
        delta[key] = d
    return delta


def apply_delta(weights: Mapping[str, np.ndarray], delta: Mapping[str, np.ndarray]) -> WeightMap:
    """Return ``weights + delta``.

    Tensors absent from *delta* are copied through unchanged.
    """
    result: WeightMap = {}
    for key, w in weights.items():
        w_arr = as_tensor(w)
        d = delta.get(key)
        if d is None:
            result[key] = w_arr
            continue
        d_arr = np.asarray(d, dtype=np.float32).reshape(-1)
        _check_lengths(key, w_arr, d_arr)
        result[key] = np.add(w_arr, d_arr, dtype=np.float32)
    return result


def l2_norm(weights: Mapping[str, np.ndarray]) -> float:
    """L2 norm of all tensors flattened into a single vector."""
    sum_sq = 0.0
    for arr in weights.values():
        flat = np.asarray(arr, dtype=np.float64).reshape(-1)
        sum_sq += float(np.dot(flat, flat))
    return math.sqrt(sum_sq)


def sum_weight_maps(maps: Iterable[Mapping[str, np.ndarray]]) -> WeightMap:
    """Element-wise sum of several weight maps with identical keys and lengths."""
    total: WeightMap = {}
    count = 0
    for wm in maps:
        count += 1
        if count == 1:
            total = clone_weights(wm)
            continue
        if set(wm.keys()) != set(total.keys()):
            differing = sorted(set(total.keys()) ^ set(wm.keys()))
            raise OctomilSecAggError(f"Weight maps disagree on tensors: {differing}")
        for key, arr in wm.items():
            arr = np.asarray(arr, dtype=np.float32).reshape(-1)
            _check_lengths(key, total[key], arr)
            total[key] = np.add(total[key], arr, dtype=np.float32)
    logger.debug("Summed %d weight maps over %d tensors", count, len(total))
    return total


def num_elements(weights: Mapping[str, np.ndarray]) -> int:
    return sum(int(np.asarray(arr).size) for arr in weights.values())


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_weight_map(weights: Mapping[str, np.ndarray]) -> Dict[str, Dict[str, Any]]:
    """Convert a weight map into the JSON form used for update submission.

    Each tensor becomes ``{"data": [...], "shape": [n]}``.
    """
    serialized: Dict[str, Dict[str, Any]] = {}
    for key, arr in weights.items():
        flat = np.asarray(arr, dtype=np.float32).reshape(-1)
        serialized[key] = {"data": flat.tolist(), "shape": [int(flat.shape[0])]}
    return serialized


def deserialize_weight_map(payload: Mapping[str, Mapping[str, Any]]) -> WeightMap:
    """Inverse of :func:`serialize_weight_map`."""
    weights: WeightMap = {}
    for key, entry in payload.items():
        if "data" not in entry:
            raise OctomilSecAggError(f'Serialized tensor "{key}" has no data')
        arr = as_tensor(entry["data"])
        shape = entry.get("shape")
        if shape is not None and int(np.prod(shape)) != arr.shape[0]:
            raise DimensionMismatchError(key, int(np.prod(shape)), arr.shape[0])
        weights[key] = arr
    return weights
