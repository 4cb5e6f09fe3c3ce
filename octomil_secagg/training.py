"""Local training loop and update preparation for a federated round.

The gradient step itself is supplied by the caller; this module only runs it
for the configured number of epochs, computes the resulting weight delta and
pushes that delta through the privacy pipeline (clip, noise, quantize, mask)
before it is handed to whatever transport submits it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np

from .config import PrivacyPolicy, TrainingConfig
from .errors import OctomilSecAggError
from .filters import GaussianNoiseFilter, GradientClipFilter, apply_filters
from .masking import PairwiseMasking
from .privacy import QuantizedWeightMap, dequantize, quantize
from .weights import WeightMap, clone_weights, compute_delta, l2_norm, to_weight_map

logger = logging.getLogger(__name__)

StepResult = Union[Mapping[str, Any], Tuple[Mapping[str, Any], Optional[float]]]
TrainStep = Callable[[WeightMap, Dict[str, Any]], StepResult]


@dataclass
class TrainingResult:
    final_weights: WeightMap
    delta: WeightMap
    duration_ms: float
    losses: List[float] = field(default_factory=list)
    delta_norm: float = 0.0


@dataclass
class PreparedUpdate:
    """A privacy-filtered (and optionally masked) delta ready for upload."""

    delta: WeightMap
    audit_trail: List[str] = field(default_factory=list)
    quantized: Optional[QuantizedWeightMap] = None
    masked: bool = False


def _unpack_step_result(result: StepResult, epoch: int) -> Tuple[WeightMap, Optional[float]]:
    loss: Optional[float] = None
    if isinstance(result, tuple):
        if len(result) != 2:
            raise OctomilSecAggError(
                f"Training step for epoch {epoch} returned a tuple of length {len(result)}, expected (weights, loss)"
            )
        weights, loss = result
    else:
        weights = result
    if not isinstance(weights, Mapping):
        raise OctomilSecAggError(
            f"Training step for epoch {epoch} must return a weight map, got {type(weights).__name__}"
        )
    return to_weight_map(weights), (float(loss) if loss is not None else None)


def train_locally(
    initial_weights: Mapping[str, Any],
    step_fn: TrainStep,
    config: TrainingConfig,
) -> TrainingResult:
    """Run *step_fn* once per epoch starting from *initial_weights*.

    *step_fn* receives a private copy of the current weights and a dict with
    ``epoch``, ``batch_size`` and ``learning_rate``.  It returns the updated
    weights, or a ``(weights, loss)`` tuple.

    Returns the final weights and ``delta = final - initial``.
    """
    start = time.monotonic()
    initial = to_weight_map(initial_weights)
    weights = clone_weights(initial)
    losses: List[float] = []

    for epoch in range(config.epochs):
        result = step_fn(
            clone_weights(weights),
            {
                "epoch": epoch,
                "batch_size": config.batch_size,
                "learning_rate": config.learning_rate,
            },
        )
        weights, loss = _unpack_step_result(result, epoch)
        if loss is not None:
            losses.append(loss)

    delta = compute_delta(initial, weights)
    duration_ms = (time.monotonic() - start) * 1000
    delta_norm = l2_norm(delta)
    logger.info(
        "Local training complete (model=%s, epochs=%d, delta_norm=%.6g, %.1f ms)",
        config.model_id or "unknown",
        config.epochs,
        delta_norm,
        duration_ms,
    )
    return TrainingResult(
        final_weights=weights,
        delta=delta,
        duration_ms=duration_ms,
        losses=losses,
        delta_norm=delta_norm,
    )


def prepare_update(
    delta: Mapping[str, np.ndarray],
    policy: PrivacyPolicy,
    masks: Optional[Mapping[str, np.ndarray]] = None,
    masking: Optional[PairwiseMasking] = None,
    rng: Optional[np.random.Generator] = None,
) -> PreparedUpdate:
    """Clip, add noise, optionally quantize, then mask *delta*.

    Noise is added only when the policy carries a budget; quantization
    only when ``policy.quantize_bits`` is set.  The quantized form is kept on
    the result for bandwidth-constrained uploads while ``delta`` holds the
    dequantized values that the masks are applied to.
    """
    filters: List[Any] = [GradientClipFilter(max_norm=policy.clip_norm)]
    if policy.budget is not None:
        filters.append(
            GaussianNoiseFilter(
                epsilon=policy.budget.epsilon,
                sensitivity=policy.budget.sensitivity,
                delta_dp=policy.budget.delta_dp,
                rng=rng,
            )
        )
    result = apply_filters(dict(delta), filters)
    current = result.delta
    audit_trail = list(result.audit_trail)

    quantized: Optional[QuantizedWeightMap] = None
    if policy.quantize_bits is not None:
        quantized = quantize(current, policy.quantize_bits)
        current = dequantize(quantized)
        audit_trail.append("QuantizationFilter")

    if masks:
        current = (masking or PairwiseMasking()).mask_update(current, masks)
        audit_trail.append("PairwiseMask")

    return PreparedUpdate(
        delta=current,
        audit_trail=audit_trail,
        quantized=quantized,
        masked=bool(masks),
    )
