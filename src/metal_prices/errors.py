"""
Error taxonomy for price resolution.

Source errors are local to one source attempt and only advance the fallback
chain. Configuration errors are raised at load time.
"""

from .models import AttemptOutcome


class PriceError(Exception):
    """Base class for all metal_prices errors."""


class ConfigurationError(PriceError):
    """Invalid or unreadable configuration."""


class PriceSourceError(PriceError):
    outcome = AttemptOutcome.ERROR

    def __init__(self, message: str, source_id: str | None = None):
        super().__init__(message)
        self.source_id = source_id


class TransportFailure(PriceSourceError):
    """Network error, timeout or non-2xx response."""

    outcome = AttemptOutcome.TRANSPORT_FAILURE

    def __init__(self, message: str, source_id: str | None = None, status: int | None = None):
        super().__init__(message, source_id)
        self.status = status


class ShapeNotFound(PriceSourceError):
    """Payload parsed but no recognizable price node."""

    outcome = AttemptOutcome.SHAPE_NOT_FOUND


class NormalizationFailure(PriceSourceError):
    """Value present but its unit or currency could not be converted."""

    outcome = AttemptOutcome.NORMALIZATION_FAILURE


class PlausibilityRejected(PriceSourceError):
    """Normalized value outside the configured plausible range."""

    outcome = AttemptOutcome.PLAUSIBILITY_REJECTED

    def __init__(self, message: str, source_id: str | None = None, value: float | None = None):
        super().__init__(message, source_id)
        self.value = value
