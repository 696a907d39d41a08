"""Error taxonomy for the matching and settlement engine."""

from __future__ import annotations


class MarketplaceError(Exception):
    """Base class for every error the engine raises on purpose."""

    code = "marketplace_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationFailed(MarketplaceError):
    """Malformed input; the caller should fix the input and retry."""

    code = "validation_failed"


class NotFound(MarketplaceError):
    code = "not_found"


class Forbidden(MarketplaceError):
    """The actor is not the party allowed to perform the operation."""

    code = "forbidden"


class InvalidStateTransition(MarketplaceError):
    """The (status, operation) pair is not an edge of the request state machine."""

    code = "invalid_state_transition"

    def __init__(self, message: str = "", current: str | None = None, target: str | None = None) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class AlreadyAccepted(InvalidStateTransition):
    """Lost the compare-and-set race for PENDING -> ACCEPTED."""

    code = "already_accepted"


class CapacityExceeded(MarketplaceError):
    """The provider already carries as much accepted work as it declared it can."""

    code = "capacity_exceeded"


class NoEligibleProvider(MarketplaceError):
    code = "no_eligible_provider"


class EscrowNotHeld(MarketplaceError):
    code = "escrow_not_held"


class RequestNotCompleted(MarketplaceError):
    code = "request_not_completed"


class DistributionSumMismatch(MarketplaceError):
    """Computed split does not add up to the gross amount. Never persisted."""

    code = "distribution_sum_mismatch"


class ConfigError(MarketplaceError):
    code = "config_error"


class GatewayError(MarketplaceError):
    """Downstream payment-provider failure."""

    code = "gateway_error"

    def __init__(self, message: str = "", retryable: bool = True, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
