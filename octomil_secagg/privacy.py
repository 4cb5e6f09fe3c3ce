"""Differential-privacy and quantization transforms for weight deltas.

- :func:`clip_gradients` -- global L2 clipping
- :func:`add_gaussian_noise` -- calibrated Gaussian mechanism for (epsilon, delta)-DP
- :func:`quantize` / :func:`dequantize` -- symmetric 8/16-bit quantization

All functions are pure: they never mutate their input and keep no state
between calls.  Noise is drawn from a fresh unseeded generator on every call
unless the caller injects one, so results are not reproducible by default.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import numpy as np

from .config import PrivacyBudget, validate_quantization_bits
from .errors import InvalidConfigurationError
from .weights import WeightMap, l2_norm

logger = logging.getLogger(__name__)

_MAX_REPRESENTABLE = {8: 127, 16: 32767}
_INT_DTYPES = {8: np.int8, 16: np.int16}


# ---------------------------------------------------------------------------
# Gradient clipping
# ---------------------------------------------------------------------------


def clip_gradients(delta: Mapping[str, np.ndarray], max_norm: float) -> Mapping[str, np.ndarray]:
    """Clip *delta* to global L2 norm ``max_norm``.

    When the norm is already within bounds the input object itself is
    returned.  Otherwise every element is scaled by ``max_norm / norm``, which
    preserves the direction of the flattened vector.
    """
    if max_norm < 0 or math.isnan(max_norm):
        raise InvalidConfigurationError(f"max_norm must be >= 0, got {max_norm}")

    norm = l2_norm(delta)
    if norm <= max_norm:
        return delta

    scale = max_norm / norm
    logger.debug("Clipping delta: norm=%.6g max_norm=%.6g scale=%.6g", norm, max_norm, scale)
    clipped: WeightMap = {}
    for key, arr in delta.items():
        flat = np.asarray(arr, dtype=np.float64).reshape(-1)
        clipped[key] = (flat * scale).astype(np.float32)
    return clipped


# ---------------------------------------------------------------------------
# Gaussian noise
# ---------------------------------------------------------------------------


def noise_stddev(epsilon: float, sensitivity: float, delta_dp: float) -> float:
    """``sensitivity * sqrt(2 * ln(1.25 / delta_dp)) / epsilon``.

    Raises :class:`InvalidConfigurationError` for out-of-range parameters.
    """
    return PrivacyBudget(epsilon=epsilon, sensitivity=sensitivity, delta_dp=delta_dp).noise_stddev


def _box_muller(rng: np.random.Generator, size: int) -> np.ndarray:
    """Standard normal samples from pairs of uniform draws.

    Zero first draws are redrawn so ``log(u1)`` is always finite.
    """
    u1 = rng.random(size)
    zeros = u1 == 0.0
    while zeros.any():
        u1[zeros] = rng.random(int(zeros.sum()))
        zeros = u1 == 0.0
    u2 = rng.random(size)
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


def add_gaussian_noise(
    delta: Mapping[str, np.ndarray],
    epsilon: float,
    sensitivity: float,
    delta_dp: float,
    rng: Optional[np.random.Generator] = None,
) -> WeightMap:
    """Add calibrated Gaussian noise for (epsilon, delta_dp)-differential privacy.

    Parameters
    ----------
    delta:
        Weight delta to perturb.  Not modified.
    epsilon:
        Privacy loss bound, must be > 0.
    sensitivity:
        L2 sensitivity (typically the clipping norm), must be >= 0.
    delta_dp:
        Failure probability, must be > 0.
    rng:
        Optional ``numpy.random.Generator``.  A fresh unseeded generator is
        used when omitted.

    Returns
    -------
    A new weight map of the same shape with one independent N(0, sigma^2)
    sample added per element.
    """
    sigma = noise_stddev(epsilon, sensitivity, delta_dp)
    generator = rng if rng is not None else np.random.default_rng()
    logger.debug("Adding Gaussian noise: sigma=%.6g", sigma)

    noisy: WeightMap = {}
    for key, arr in delta.items():
        flat = np.asarray(arr, dtype=np.float64).reshape(-1)
        noise = _box_muller(generator, flat.shape[0]) * sigma
        noisy[key] = (flat + noise).astype(np.float32)
    return noisy


def add_gaussian_noise_for_budget(
    delta: Mapping[str, np.ndarray],
    budget: PrivacyBudget,
    rng: Optional[np.random.Generator] = None,
) -> WeightMap:
    return add_gaussian_noise(delta, budget.epsilon, budget.sensitivity, budget.delta_dp, rng=rng)


# ---------------------------------------------------------------------------
# Quantization
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class QuantizedTensor:
    """A symmetrically quantized tensor (``zero_point`` is always 0)."""

    data: np.ndarray
    scale: float
    zero_point: int = 0

    @property
    def bits(self) -> int:
        return self.data.dtype.itemsize * 8


QuantizedWeightMap = Dict[str, QuantizedTensor]


def quantize(delta: Mapping[str, np.ndarray], bits: int = 8) -> QuantizedWeightMap:
    """Per-tensor symmetric min-max quantization to 8 or 16 bits.

    ``scale = max|x| / max_representable`` (1.0 for an all-zero tensor) and
    ``q = round(x / scale)``.
    """
    bits = validate_quantization_bits(bits)
    max_rep = _MAX_REPRESENTABLE[bits]
    dtype = _INT_DTYPES[bits]

    result: QuantizedWeightMap = {}
    for key, arr in delta.items():
        flat = np.asarray(arr, dtype=np.float64).reshape(-1)
        abs_max = float(np.max(np.abs(flat))) if flat.size else 0.0
        scale = abs_max / max_rep if abs_max > 0 else 1.0
        q = np.clip(np.rint(flat / scale), -max_rep, max_rep).astype(dtype)
        result[key] = QuantizedTensor(data=q, scale=scale, zero_point=0)
    return result


def dequantize(quantized: Mapping[str, QuantizedTensor]) -> WeightMap:
    """Map quantized tensors back to ``float32``."""
    result: WeightMap = {}
    for key, entry in quantized.items():
        values = (entry.data.astype(np.float64) - entry.zero_point) * entry.scale
        result[key] = values.astype(np.float32)
    return result


def quantization_error_bound(quantized: Mapping[str, QuantizedTensor]) -> Dict[str, float]:
    """Per-tensor bound on ``|dequantize(quantize(x)) - x|`` (the scale)."""
    return {key: entry.scale for key, entry in quantized.items()}
