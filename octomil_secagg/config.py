"""Configuration dataclasses for privacy policies, SecAgg+ and local training.

The server issues a per-round policy as a JSON object; :meth:`PrivacyPolicy.from_dict`
accepts that payload directly.  For local experiments the same policy can be
read from ``OCTOMIL_DP_*`` environment variables via :meth:`PrivacyPolicy.from_env`.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import InvalidConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_QUANTIZATION_BITS = (8, 16)


def _require_finite(name: str, value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidConfigurationError(f"{name} must be a number, got {value!r}") from exc
    if math.isnan(value) or math.isinf(value):
        raise InvalidConfigurationError(f"{name} must be finite, got {value}")
    return value


def validate_quantization_bits(bits: Any) -> int:
    """Return *bits* as an int, accepting numeric strings such as ``"16"``."""
    try:
        value = float(bits)
    except (TypeError, ValueError):
        value = None
    if isinstance(bits, bool) or value not in SUPPORTED_QUANTIZATION_BITS:
        raise InvalidConfigurationError(
            f"bits must be one of {SUPPORTED_QUANTIZATION_BITS}, got {bits!r}"
        )
    return int(value)


@dataclass(frozen=True)
class PrivacyBudget:
    """(epsilon, delta)-DP parameters used to calibrate Gaussian noise.

    ``sensitivity`` is the L2 sensitivity of the update, normally the clipping
    norm applied beforehand.
    """

    epsilon: float
    sensitivity: float
    delta_dp: float

    def __post_init__(self) -> None:
        epsilon = _require_finite("epsilon", self.epsilon)
        sensitivity = _require_finite("sensitivity", self.sensitivity)
        delta_dp = _require_finite("delta_dp", self.delta_dp)
        if epsilon <= 0:
            raise InvalidConfigurationError(f"epsilon must be > 0, got {epsilon}")
        if delta_dp <= 0:
            raise InvalidConfigurationError(f"delta_dp must be > 0, got {delta_dp}")
        if sensitivity < 0:
            raise InvalidConfigurationError(f"sensitivity must be >= 0, got {sensitivity}")
        object.__setattr__(self, "epsilon", epsilon)
        object.__setattr__(self, "sensitivity", sensitivity)
        object.__setattr__(self, "delta_dp", delta_dp)

    @property
    def noise_stddev(self) -> float:
        """Gaussian-mechanism standard deviation for this budget."""
        return self.sensitivity * math.sqrt(2.0 * math.log(1.25 / self.delta_dp)) / self.epsilon

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], default_sensitivity: Optional[float] = None) -> "PrivacyBudget":
        sensitivity = payload.get("sensitivity", default_sensitivity)
        if sensitivity is None:
            raise InvalidConfigurationError("sensitivity is required when no clip norm is set")
        delta_dp = payload.get("delta_dp", payload.get("delta"))
        if delta_dp is None:
            raise InvalidConfigurationError("delta_dp is required")
        if "epsilon" not in payload:
            raise InvalidConfigurationError("epsilon is required")
        return cls(epsilon=payload["epsilon"], sensitivity=sensitivity, delta_dp=delta_dp)

    def to_dict(self) -> Dict[str, float]:
        return {
            "epsilon": self.epsilon,
            "sensitivity": self.sensitivity,
            "delta_dp": self.delta_dp,
        }


@dataclass(frozen=True)
class PrivacyPolicy:
    """Server-issued per-round privacy policy.

    Attributes:
        clip_norm: Global L2 clipping norm applied to the delta.
        budget: DP budget for Gaussian noise, or ``None`` to skip noise.
        quantize_bits: 8 or 16 to quantize before masking, ``None`` to skip.
    """

    clip_norm: float
    budget: Optional[PrivacyBudget] = None
    quantize_bits: Optional[int] = None

    def __post_init__(self) -> None:
        clip_norm = _require_finite("clip_norm", self.clip_norm)
        if clip_norm < 0:
            raise InvalidConfigurationError(f"clip_norm must be >= 0, got {clip_norm}")
        object.__setattr__(self, "clip_norm", clip_norm)
        if self.quantize_bits is not None:
            object.__setattr__(self, "quantize_bits", validate_quantization_bits(self.quantize_bits))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PrivacyPolicy":
        """Build a policy from the server's round configuration."""
        clip_norm = payload.get("clip_norm", payload.get("max_norm"))
        if clip_norm is None:
            raise InvalidConfigurationError("clip_norm is required")
        budget = None
        if payload.get("epsilon") is not None:
            budget = PrivacyBudget.from_dict(payload, default_sensitivity=clip_norm)
        return cls(
            clip_norm=clip_norm,
            budget=budget,
            quantize_bits=payload.get("quantize_bits"),
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PrivacyPolicy":
        """Build a policy from ``OCTOMIL_DP_*`` environment variables.

        ``OCTOMIL_DP_CLIP_NORM`` is required.  Noise is enabled when
        ``OCTOMIL_DP_EPSILON`` is set; ``OCTOMIL_DP_DELTA`` defaults to 1e-5 and
        ``OCTOMIL_DP_SENSITIVITY`` to the clip norm.
        """
        env = os.environ if environ is None else environ
        clip_norm = env.get("OCTOMIL_DP_CLIP_NORM")
        if not clip_norm:
            raise InvalidConfigurationError(
                "Clip norm required. Set OCTOMIL_DP_CLIP_NORM."
            )
        payload: Dict[str, Any] = {"clip_norm": clip_norm}
        if env.get("OCTOMIL_DP_EPSILON"):
            payload["epsilon"] = env["OCTOMIL_DP_EPSILON"]
            payload["delta_dp"] = env.get("OCTOMIL_DP_DELTA", "1e-5")
            if env.get("OCTOMIL_DP_SENSITIVITY"):
                payload["sensitivity"] = env["OCTOMIL_DP_SENSITIVITY"]
        if env.get("OCTOMIL_QUANTIZE_BITS"):
            payload["quantize_bits"] = env["OCTOMIL_QUANTIZE_BITS"]
        policy = cls.from_dict(payload)
        logger.debug(
            "Loaded privacy policy from environment (noise=%s, quantize_bits=%s)",
            policy.budget is not None,
            policy.quantize_bits,
        )
        return policy


@dataclass
class SecAggPlusConfig:
    """Client-side view of a SecAgg+ session."""

    threshold: int
    total_clients: int
    my_index: int  # 1-based index of this client
    round_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise InvalidConfigurationError("threshold must be >= 1")
        if self.threshold > self.total_clients:
            raise InvalidConfigurationError("threshold must be <= total_clients")
        if not 1 <= self.my_index <= self.total_clients:
            raise InvalidConfigurationError(
                f"my_index must be in [1, {self.total_clients}], got {self.my_index}"
            )


@dataclass
class TrainingConfig:
    epochs: int
    batch_size: int = 32
    learning_rate: float = 0.01
    model_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.epochs < 0:
            raise InvalidConfigurationError(f"epochs must be >= 0, got {self.epochs}")
