"""Conflict & eligibility checks - may this candidate legally take this request?"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from marketplace.models import (
    Firm,
    FirmMembership,
    IndependentWorkPolicy,
    Provider,
    ServiceRequest,
    VerificationStatus,
)


class EligibilityReason(StrEnum):
    """Reason codes, one per check, in evaluation order."""

    ELIGIBLE = "ELIGIBLE"
    NOT_VERIFIED = "NOT_VERIFIED"
    AT_CAPACITY = "AT_CAPACITY"
    INDEPENDENT_WORK_FORBIDDEN = "INDEPENDENT_WORK_FORBIDDEN"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    CLIENT_RESTRICTED = "CLIENT_RESTRICTED"
    FIRM_BELOW_MINIMUM = "FIRM_BELOW_MINIMUM"


@dataclass(frozen=True)
class EligibilityVerdict:
    eligible: bool
    reason: EligibilityReason
    detail: str = ""

    @classmethod
    def ok(cls) -> EligibilityVerdict:
        return cls(True, EligibilityReason.ELIGIBLE)

    @classmethod
    def deny(cls, reason: EligibilityReason, detail: str = "") -> EligibilityVerdict:
        return cls(False, reason, detail)


def check_policy(
    policy: IndependentWorkPolicy,
    firm: Firm,
    requester_id: str,
    has_approval: bool,
) -> EligibilityVerdict:
    """Apply a firm's independent-work policy to one requester."""
    match policy:
        case IndependentWorkPolicy.NO_INDEPENDENT_WORK:
            return EligibilityVerdict.deny(
                EligibilityReason.INDEPENDENT_WORK_FORBIDDEN,
                f"{firm.name} does not allow independent work",
            )
        case IndependentWorkPolicy.LIMITED_WITH_APPROVAL:
            if has_approval:
                return EligibilityVerdict.ok()
            return EligibilityVerdict.deny(
                EligibilityReason.APPROVAL_REQUIRED,
                f"no approval from {firm.name} for client {requester_id}",
            )
        case IndependentWorkPolicy.FULL_INDEPENDENT_WORK:
            return EligibilityVerdict.ok()
        case IndependentWorkPolicy.CLIENT_RESTRICTIONS:
            if requester_id in firm.restricted_clients:
                return EligibilityVerdict.deny(
                    EligibilityReason.CLIENT_RESTRICTED,
                    f"client {requester_id} is restricted by {firm.name}",
                )
            return EligibilityVerdict.ok()


def check_provider(
    request: ServiceRequest,
    provider: Provider,
    firm: Firm | None = None,
    membership: FirmMembership | None = None,
    has_approval: bool = False,
    on_behalf_of_firm: bool = False,
) -> EligibilityVerdict:
    """
    Decide whether an individual provider may be assigned.

    Args:
        request: The request being assigned
        provider: Candidate snapshot
        firm: The provider's firm, when the provider is a member
        membership: The provider's active membership in ``firm``
        has_approval: An independent-work approval exists for this requester
        on_behalf_of_firm: Assignment goes through the firm (second pass), so
            the independent-work policy does not apply

    Returns:
        Verdict for the first failing check, or ELIGIBLE
    """
    if provider.verification_status != VerificationStatus.VERIFIED:
        return EligibilityVerdict.deny(
            EligibilityReason.NOT_VERIFIED,
            f"verification status is {provider.verification_status.value}",
        )

    if provider.current_workload >= provider.max_capacity:
        return EligibilityVerdict.deny(
            EligibilityReason.AT_CAPACITY,
            f"workload {provider.current_workload}/{provider.max_capacity}",
        )

    if firm is not None and membership is not None and not on_behalf_of_firm:
        verdict = check_policy(firm.policy_for(membership), firm, request.requester_id, has_approval)
        if not verdict.eligible:
            return verdict

    return EligibilityVerdict.ok()


def check_firm(request: ServiceRequest, firm: Firm, members: Sequence[Provider]) -> EligibilityVerdict:
    """Decide whether a firm may be assigned as a whole (before member selection)."""
    if firm.verification_status != VerificationStatus.VERIFIED:
        return EligibilityVerdict.deny(
            EligibilityReason.NOT_VERIFIED,
            f"firm verification status is {firm.verification_status.value}",
        )

    capacity = sum(m.max_capacity for m in members)
    workload = sum(m.current_workload for m in members)
    if workload >= capacity:
        return EligibilityVerdict.deny(
            EligibilityReason.AT_CAPACITY,
            f"firm workload {workload}/{capacity}",
        )

    if firm.minimum_ca_required is not None and len(members) < firm.minimum_ca_required:
        return EligibilityVerdict.deny(
            EligibilityReason.FIRM_BELOW_MINIMUM,
            f"{len(members)} active members, {firm.minimum_ca_required} required",
        )

    return EligibilityVerdict.ok()
