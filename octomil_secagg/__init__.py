"""
Octomil secure aggregation.

Pairwise masking, Shamir threshold recovery and differential-privacy filters
for federated learning weight updates.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import PrivacyBudget, PrivacyPolicy, SecAggPlusConfig, TrainingConfig
from .errors import (
    DimensionMismatchError,
    InsufficientSharesError,
    InvalidConfigurationError,
    KeyAgreementStateError,
    OctomilSecAggError,
)
from .filters import (
    DeltaFilter,
    FilterRegistry,
    FilterResult,
    GaussianNoiseFilter,
    GradientClipFilter,
    QuantizationFilter,
    apply_filters,
)
from .masking import HKDF_INFO_MASK, KeyPair, PairwiseMasking, expand_mask
from .privacy import (
    QuantizedTensor,
    add_gaussian_noise,
    clip_gradients,
    dequantize,
    noise_stddev,
    quantize,
)
from .secagg_plus import SecAggPlus, shapes_of
from .shamir import PRIME, SecretShare, SeedShare, shamir_reconstruct, shamir_split
from .training import PreparedUpdate, TrainingResult, prepare_update, train_locally
from .weights import WeightMap, apply_delta, compute_delta, l2_norm, sum_weight_maps, to_weight_map

__all__ = [
    "__version__",
    "PrivacyBudget",
    "PrivacyPolicy",
    "SecAggPlusConfig",
    "TrainingConfig",
    "OctomilSecAggError",
    "DimensionMismatchError",
    "InsufficientSharesError",
    "InvalidConfigurationError",
    "KeyAgreementStateError",
    "DeltaFilter",
    "FilterRegistry",
    "FilterResult",
    "GaussianNoiseFilter",
    "GradientClipFilter",
    "QuantizationFilter",
    "apply_filters",
    "HKDF_INFO_MASK",
    "KeyPair",
    "PairwiseMasking",
    "expand_mask",
    "QuantizedTensor",
    "add_gaussian_noise",
    "clip_gradients",
    "dequantize",
    "noise_stddev",
    "quantize",
    "SecAggPlus",
    "shapes_of",
    "PRIME",
    "SecretShare",
    "SeedShare",
    "shamir_reconstruct",
    "shamir_split",
    "PreparedUpdate",
    "TrainingResult",
    "prepare_update",
    "train_locally",
    "WeightMap",
    "apply_delta",
    "compute_delta",
    "l2_norm",
    "sum_weight_maps",
    "to_weight_map",
]
