"""Error types raised by the secure-aggregation core.

All failures are local and synchronous.  Nothing here is retried; retry
policy belongs to whatever orchestrates the federated round.
"""

from __future__ import annotations


class OctomilSecAggError(RuntimeError):
    pass


class DimensionMismatchError(OctomilSecAggError, ValueError):
    """Two weight maps disagree on the length of a shared tensor."""

    def __init__(self, key: str, expected: int, actual: int) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f'Weight dimension mismatch for "{key}": expected {expected}, got {actual}.'
        )


class InvalidConfigurationError(OctomilSecAggError, ValueError):
    pass


class InsufficientSharesError(OctomilSecAggError, ValueError):
    """Fewer shares than the threshold were supplied for reconstruction."""

    def __init__(self, required: int, received: int) -> None:
        self.required = required
        self.received = received
        super().__init__(f"Need at least {required} shares, got {received}.")


class KeyAgreementStateError(OctomilSecAggError):
    pass
