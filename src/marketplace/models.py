"""Domain records shared by the lifecycle, assignment and settlement engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from marketplace.errors import ValidationFailed


class RequestStatus(StrEnum):
    """Service request states."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    ABANDONED = "ABANDONED"

    @property
    def is_terminal(self) -> bool:
        match self:
            case RequestStatus.COMPLETED | RequestStatus.CANCELLED:
                return True
            case (
                RequestStatus.PENDING
                | RequestStatus.ACCEPTED
                | RequestStatus.IN_PROGRESS
                | RequestStatus.ABANDONED
            ):
                return False


class AssignmentMethod(StrEnum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"
    CLIENT_SPECIFIED = "CLIENT_SPECIFIED"


class VerificationStatus(StrEnum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


class IndependentWorkPolicy(StrEnum):
    """What a firm member may take on outside the firm."""

    NO_INDEPENDENT_WORK = "NO_INDEPENDENT_WORK"
    LIMITED_WITH_APPROVAL = "LIMITED_WITH_APPROVAL"
    FULL_INDEPENDENT_WORK = "FULL_INDEPENDENT_WORK"
    CLIENT_RESTRICTIONS = "CLIENT_RESTRICTIONS"


class MemberRole(StrEnum):
    ADMIN = "ADMIN"
    PARTNER = "PARTNER"
    ASSOCIATE = "ASSOCIATE"
    CONSULTANT = "CONSULTANT"


class EscrowStatus(StrEnum):
    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class CaptureStatus(StrEnum):
    CAPTURED = "CAPTURED"


class AbandonmentReason(StrEnum):
    EMERGENCY = "EMERGENCY"
    ILLNESS = "ILLNESS"
    OVERCOMMITTED = "OVERCOMMITTED"
    PERSONAL_REASONS = "PERSONAL_REASONS"
    TECHNICAL_ISSUES = "TECHNICAL_ISSUES"
    CLIENT_UNRESPONSIVE = "CLIENT_UNRESPONSIVE"
    OTHER = "OTHER"


class CancellationReason(StrEnum):
    CLIENT_REQUEST = "CLIENT_REQUEST"
    PROVIDER_ABANDONMENT = "PROVIDER_ABANDONMENT"
    NO_ELIGIBLE_PROVIDER = "NO_ELIGIBLE_PROVIDER"
    ADMINISTRATIVE = "ADMINISTRATIVE"


def to_money(value: Any, quantum: Decimal = Decimal("0.01")) -> Decimal:
    """Coerce to Decimal rounded half-up to the money quantum."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def parse_money(value: Any, name: str, quantum: Decimal = Decimal("0.01")) -> Decimal:
    """``to_money`` for caller input: garbage becomes ValidationFailed."""
    try:
        return to_money(value, quantum)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationFailed(f"{name} is not a valid amount: {value!r}") from exc


def parse_percent(value: Any, name: str) -> Decimal:
    try:
        percent = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationFailed(f"{name} is not a number: {value!r}") from exc
    if not percent.is_finite():
        raise ValidationFailed(f"{name} must be finite, got {value!r}")
    return percent


@dataclass
class Provider:
    """Snapshot of a service provider as read from the directory."""

    id: str
    name: str
    specializations: list[str] = field(default_factory=list)
    experience_years: int = 0
    hourly_rate: Decimal = Decimal("0")
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verified_at: str | None = None
    reputation_score: float = 5.0
    abandonment_count: int = 0
    average_rating: float = 0.0
    rating_count: int = 0
    firm_id: str | None = None
    max_capacity: int = 5
    current_workload: int = 0
    withholding_exempt: bool = False

    @property
    def free_capacity_percent(self) -> float:
        if self.max_capacity <= 0:
            return 0.0
        free = self.max_capacity - self.current_workload
        return max(0.0, free / self.max_capacity * 100.0)


@dataclass
class FirmMembership:
    firm_id: str
    provider_id: str
    role: MemberRole = MemberRole.ASSOCIATE
    independent_work_policy: IndependentWorkPolicy | None = None  # None: firm default
    is_active: bool = True


@dataclass
class Firm:
    id: str
    name: str
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verified_at: str | None = None
    commission_percent: Decimal = Decimal("0")
    independent_work_policy: IndependentWorkPolicy = IndependentWorkPolicy.NO_INDEPENDENT_WORK
    minimum_ca_required: int | None = None
    restricted_clients: list[str] = field(default_factory=list)

    def policy_for(self, membership: FirmMembership) -> IndependentWorkPolicy:
        return membership.independent_work_policy or self.independent_work_policy


@dataclass
class ServiceRequest:
    """A client's request for professional services."""

    id: str
    requester_id: str
    category: str
    description: str
    assignment_method: AssignmentMethod
    status: RequestStatus = RequestStatus.PENDING
    budget: Decimal | None = None
    deadline: str | None = None
    allow_firm_assignment: bool = False
    explicit_provider_id: str | None = None
    explicit_firm_id: str | None = None
    assigned_provider_id: str | None = None
    assigned_firm_id: str | None = None
    assigned_by: str | None = None
    assignment_score: float | None = None
    excluded_provider_ids: list[str] = field(default_factory=list)
    amount: Decimal | None = None
    cancellation_reason: CancellationReason | None = None
    cancelled_from: RequestStatus | None = None
    cancelled_by: str | None = None
    version: int = 0
    created_at: str = ""
    updated_at: str = ""
    accepted_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None

    @property
    def payment_pending(self) -> bool:
        return self.status == RequestStatus.COMPLETED and self.amount is None


@dataclass
class Payment:
    id: str
    request_id: str
    gross_amount: Decimal
    currency: str
    external_reference: str
    capture_status: CaptureStatus = CaptureStatus.CAPTURED
    escrow_status: EscrowStatus = EscrowStatus.HELD
    captured_at: str = ""
    released_at: str | None = None
    refunded_at: str | None = None


@dataclass(frozen=True)
class Distribution:
    """Immutable split of a released payment."""

    id: str
    payment_id: str
    request_id: str
    provider_id: str
    firm_id: str | None
    gross_amount: Decimal
    platform_fee: Decimal
    firm_commission: Decimal
    provider_net: Decimal
    withholding: Decimal
    net_payout: Decimal
    created_at: str = ""

    @property
    def recorded_total(self) -> Decimal:
        return self.platform_fee + self.firm_commission + self.withholding + self.net_payout


@dataclass(frozen=True)
class RefundRecord:
    id: str
    payment_id: str
    authorized_by: str
    percentage: Decimal
    refund_amount: Decimal
    processing_fee: Decimal
    net_refund: Decimal
    retained_amount: Decimal
    reason: str = ""
    created_at: str = ""
