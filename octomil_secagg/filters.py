"""Composable privacy filters for weight deltas.

A pipeline is a list whose entries are either :class:`DeltaFilter`
instances or server-style dict configs such as
``{"type": "gradient_clip", "max_norm": 1.0}``; dict entries are resolved by
name through :class:`FilterRegistry`.  :func:`apply_filters` runs the list in
order and records which filters changed the delta.

Built-in filters wrap :mod:`octomil_secagg.privacy`:

  - ``gradient_clip`` -- :class:`GradientClipFilter`
  - ``gaussian_noise`` -- :class:`GaussianNoiseFilter`
  - ``quantization`` -- :class:`QuantizationFilter`
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Type, Union

import numpy as np

from .config import PrivacyBudget
from .privacy import add_gaussian_noise_for_budget, clip_gradients, dequantize, quantize
from .weights import WeightMap, clone_weights

logger = logging.getLogger(__name__)

FilterSpec = Union[Dict[str, Any], "DeltaFilter"]


@dataclass
class FilterResult:
    """Output of :func:`apply_filters`.

    ``audit_trail`` lists, in order, the names of the filters that returned
    a new delta.
    """

    delta: WeightMap
    audit_trail: List[str] = field(default_factory=list)


class DeltaFilter(ABC):
    """One stage of the pipeline.

    :meth:`process` gets a private copy of the running delta and returns the
    new delta, or ``None`` when it leaves the delta as it is.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def process(
        self,
        delta: WeightMap,
        config: Optional[Dict[str, Any]] = None,
    ) -> Optional[WeightMap]:
        """Filter *delta*; *config* carries per-round overrides from a dict entry."""


class FilterRegistry:
    """Name -> :class:`DeltaFilter` subclass lookup for dict pipeline entries."""

    _registry: Dict[str, Type[DeltaFilter]] = {}

    @classmethod
    def register(cls, name: str, filter_class: Type[DeltaFilter]) -> None:
        if not (isinstance(filter_class, type) and issubclass(filter_class, DeltaFilter)):
            raise ValueError(f"{filter_class!r} is not a DeltaFilter subclass")
        cls._registry[name] = filter_class

    @classmethod
    def get(cls, name: str) -> Optional[Type[DeltaFilter]]:
        return cls._registry.get(name)


# ---------------------------------------------------------------------------
# Built-ins
# ---------------------------------------------------------------------------


class GradientClipFilter(DeltaFilter):
    def __init__(self, max_norm: float = 1.0) -> None:
        self.max_norm = max_norm

    def process(self, delta, config=None):
        max_norm = float((config or {}).get("max_norm", self.max_norm))
        clipped = clip_gradients(delta, max_norm)
        # clip_gradients hands back its input when the norm is already in bounds
        return None if clipped is delta else dict(clipped)


class GaussianNoiseFilter(DeltaFilter):
    def __init__(
        self,
        epsilon: float = 1.0,
        sensitivity: float = 1.0,
        delta_dp: float = 1e-5,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.budget_defaults = {"epsilon": epsilon, "sensitivity": sensitivity, "delta_dp": delta_dp}
        self.rng = rng

    def process(self, delta, config=None):
        overrides = dict(config or {})
        if "delta" in overrides and "delta_dp" not in overrides:
            overrides["delta_dp"] = overrides.pop("delta")
        budget = PrivacyBudget.from_dict({**self.budget_defaults, **overrides})
        return add_gaussian_noise_for_budget(delta, budget, rng=self.rng)


class QuantizationFilter(DeltaFilter):
    """Round-trip through 8/16-bit quantization so the delta carries the rounding error."""

    def __init__(self, bits: int = 8) -> None:
        self.bits = bits

    def process(self, delta, config=None):
        return dequantize(quantize(delta, (config or {}).get("bits", self.bits)))


FilterRegistry.register("gradient_clip", GradientClipFilter)
FilterRegistry.register("gaussian_noise", GaussianNoiseFilter)
FilterRegistry.register("quantization", QuantizationFilter)


def _resolve(entry: FilterSpec):
    if isinstance(entry, DeltaFilter):
        return entry, None
    if isinstance(entry, dict):
        filter_class = FilterRegistry.get(entry.get("type", ""))
        if filter_class is None:
            logger.warning("Unknown filter type %r, skipping", entry.get("type"))
            return None, None
        return filter_class(), entry
    logger.warning("Invalid filter entry %r, skipping", entry)
    return None, None


def apply_filters(delta: WeightMap, filters: Sequence[FilterSpec]) -> FilterResult:
    """Run *filters* over a copy of *delta* and return the result with its audit trail."""
    current = clone_weights(delta)
    applied: List[str] = []
    for entry in filters:
        instance, config = _resolve(entry)
        if instance is None:
            continue
        result = instance.process(current, config=config)
        if result is None:
            continue
        current = result
        applied.append(instance.name)
        logger.debug("Applied filter %s", instance.name)
    return FilterResult(delta=current, audit_trail=applied)
