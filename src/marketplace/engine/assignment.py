"""Assignment Engine - scored auto-assignment and validated manual assignment."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import Any

from marketplace.config import AssignmentConfig
from marketplace.engine.conflict import EligibilityVerdict, check_firm, check_provider
from marketplace.errors import NoEligibleProvider, NotFound, ValidationFailed
from marketplace.models import AssignmentMethod, Firm, Provider, ServiceRequest
from marketplace.storage.directory import ProviderDirectory

logger = logging.getLogger(__name__)

# Sorts after every real ISO timestamp, so unverified-date candidates lose ties.
_NEVER = "9999-12-31T23:59:59"


class CandidateKind(StrEnum):
    PROVIDER = "PROVIDER"
    FIRM = "FIRM"


@dataclass(frozen=True)
class Candidate:
    """Scoring snapshot of an individual provider or a whole firm."""

    kind: CandidateKind
    id: str
    name: str
    specializations: frozenset[str]
    experience_years: int
    average_rating: float
    free_capacity_percent: float
    hourly_rate: Decimal
    current_workload: int
    verified_at: str | None

    @classmethod
    def from_provider(cls, provider: Provider) -> Candidate:
        return cls(
            kind=CandidateKind.PROVIDER,
            id=provider.id,
            name=provider.name,
            specializations=frozenset(s.upper() for s in provider.specializations),
            experience_years=provider.experience_years,
            average_rating=provider.average_rating,
            free_capacity_percent=provider.free_capacity_percent,
            hourly_rate=provider.hourly_rate,
            current_workload=provider.current_workload,
            verified_at=provider.verified_at,
        )

    @classmethod
    def from_firm(cls, firm: Firm, members: Sequence[Provider]) -> Candidate:
        """Aggregate a firm's active members into one candidate."""
        capacity = sum(m.max_capacity for m in members)
        workload = sum(m.current_workload for m in members)
        rated = [m.average_rating for m in members if m.rating_count > 0]
        return cls(
            kind=CandidateKind.FIRM,
            id=firm.id,
            name=firm.name,
            specializations=frozenset(s.upper() for m in members for s in m.specializations),
            experience_years=max((m.experience_years for m in members), default=0),
            average_rating=sum(rated) / len(rated) if rated else 0.0,
            free_capacity_percent=max(0.0, (capacity - workload) / capacity * 100.0) if capacity else 0.0,
            hourly_rate=min((m.hourly_rate for m in members), default=Decimal("0")),
            current_workload=workload,
            verified_at=firm.verified_at,
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    specialization: float
    experience: float
    rating: float
    capacity: float
    budget: float

    @property
    def total(self) -> float:
        return round(self.specialization + self.experience + self.rating + self.capacity + self.budget, 4)


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    breakdown: ScoreBreakdown

    @property
    def score(self) -> float:
        return self.breakdown.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.candidate.kind.value,
            "id": self.candidate.id,
            "name": self.candidate.name,
            "score": self.score,
            "breakdown": {
                "specialization": self.breakdown.specialization,
                "experience": self.breakdown.experience,
                "rating": self.breakdown.rating,
                "capacity": self.breakdown.capacity,
                "budget": self.breakdown.budget,
            },
        }


@dataclass(frozen=True)
class AssignmentDecision:
    """Outcome of one assignment pass."""

    provider_id: str
    firm_id: str | None
    method: AssignmentMethod
    score: float | None = None
    alternatives: tuple[ScoredCandidate, ...] = field(default_factory=tuple)


def score_candidate(
    request: ServiceRequest,
    candidate: Candidate,
    config: AssignmentConfig,
) -> ScoredCandidate:
    """
    Score a candidate for a request.

    Score = specialization match + capped experience + rating + free capacity
    + budget fit, with every weight taken from ``config``.
    """
    matches = request.category.upper() in candidate.specializations
    years = min(candidate.experience_years, config.max_experience_years)
    within_budget = request.budget is not None and candidate.hourly_rate <= request.budget

    breakdown = ScoreBreakdown(
        specialization=config.specialization_points if matches else 0.0,
        experience=config.points_per_year * years,
        rating=round(config.rating_weight * candidate.average_rating, 4),
        capacity=round(config.capacity_weight * candidate.free_capacity_percent, 4),
        budget=config.budget_points if within_budget else 0.0,
    )
    return ScoredCandidate(candidate, breakdown)


def rank(scored: Iterable[ScoredCandidate]) -> list[ScoredCandidate]:
    """Highest score first; ties go to lower workload, then earlier verification."""
    return sorted(
        scored,
        key=lambda s: (
            -s.score,
            s.candidate.current_workload,
            s.candidate.verified_at or _NEVER,
            s.candidate.id,
        ),
    )


class AssignmentEngine:
    """Selects the provider (and firm, if any) responsible for a request."""

    ALTERNATIVES = 3

    def __init__(self, directory: ProviderDirectory, config: AssignmentConfig | None = None) -> None:
        self.directory = directory
        self.config = config or AssignmentConfig()

    def assign(self, request: ServiceRequest, excluded: Iterable[str] = ()) -> AssignmentDecision:
        """
        Run the request's assignment policy.

        Raises:
            NoEligibleProvider: nothing eligible remains after exclusions
        """
        excluded_ids = set(excluded) | set(request.excluded_provider_ids)
        match request.assignment_method:
            case AssignmentMethod.AUTO:
                return self._auto(request, excluded_ids)
            case AssignmentMethod.MANUAL | AssignmentMethod.CLIENT_SPECIFIED:
                return self._explicit(request, excluded_ids)

    def reassign(self, request: ServiceRequest, previous_assignee: str) -> AssignmentDecision:
        """Re-run the same policy with the previous assignee excluded."""
        return self.assign(request, excluded={previous_assignee})

    def recommend(self, request: ServiceRequest, limit: int | None = None) -> list[ScoredCandidate]:
        """Ranked eligible candidates with score breakdowns, for operators."""
        limit = limit or self.config.recommendation_limit
        return self._ranked(request, set(request.excluded_provider_ids))[:limit]

    def validate_explicit(
        self,
        request: ServiceRequest,
        provider_id: str,
        excluded: Iterable[str] = (),
    ) -> AssignmentDecision:
        """Check a named provider for an operator's manual assignment."""
        if provider_id in set(excluded) | set(request.excluded_provider_ids):
            raise NoEligibleProvider(f"{provider_id} already rejected or abandoned this request")
        verdict = self._check_individual(request, self._provider(provider_id))
        if not verdict.eligible:
            raise NoEligibleProvider(f"{provider_id} is not eligible: {verdict.reason.value} {verdict.detail}")
        return AssignmentDecision(provider_id=provider_id, firm_id=None, method=AssignmentMethod.MANUAL)

    # -- auto ------------------------------------------------------------

    def _auto(self, request: ServiceRequest, excluded: set[str]) -> AssignmentDecision:
        ranked = self._ranked(request, excluded)

        for position, winner in enumerate(ranked):
            alternatives = tuple(ranked[position + 1 : position + 1 + self.ALTERNATIVES])
            if winner.candidate.kind == CandidateKind.PROVIDER:
                decision = AssignmentDecision(
                    provider_id=winner.candidate.id,
                    firm_id=None,
                    method=AssignmentMethod.AUTO,
                    score=winner.score,
                    alternatives=alternatives,
                )
            else:
                member = self._pick_member(request, self._firm(winner.candidate.id), excluded)
                if member is None:
                    logger.debug("firm %s won but has no eligible member", winner.candidate.id)
                    continue
                decision = AssignmentDecision(
                    provider_id=member.candidate.id,
                    firm_id=winner.candidate.id,
                    method=AssignmentMethod.AUTO,
                    score=winner.score,
                    alternatives=alternatives,
                )
            logger.info(
                "auto-assigned %s to %s (firm=%s, score=%.2f)",
                request.id,
                decision.provider_id,
                decision.firm_id,
                winner.score,
            )
            return decision

        raise NoEligibleProvider(f"no eligible provider for request {request.id}")

    def _ranked(self, request: ServiceRequest, excluded: set[str]) -> list[ScoredCandidate]:
        candidates: list[Candidate] = []

        for provider in self.directory.list_providers():
            if provider.id in excluded or provider.free_capacity_percent <= 0:
                continue
            verdict = self._check_individual(request, provider)
            if verdict.eligible:
                candidates.append(Candidate.from_provider(provider))
            else:
                logger.debug("skip %s: %s %s", provider.id, verdict.reason.value, verdict.detail)

        if request.allow_firm_assignment:
            for firm in self.directory.list_firms():
                if firm.id in excluded:
                    continue
                members = self.directory.firm_members(firm.id)
                verdict = check_firm(request, firm, members)
                if not verdict.eligible:
                    logger.debug("skip firm %s: %s %s", firm.id, verdict.reason.value, verdict.detail)
                    continue
                candidate = Candidate.from_firm(firm, members)
                if candidate.free_capacity_percent > 0:
                    candidates.append(candidate)

        return rank(score_candidate(request, c, self.config) for c in candidates)

    def _pick_member(
        self,
        request: ServiceRequest,
        firm: Firm,
        excluded: set[str],
    ) -> ScoredCandidate | None:
        """Second pass: best active, non-excluded member working on the firm's behalf."""
        scored = []
        for member in self.directory.firm_members(firm.id):
            if member.id in excluded or member.free_capacity_percent <= 0:
                continue
            verdict = check_provider(request, member, on_behalf_of_firm=True)
            if verdict.eligible:
                scored.append(score_candidate(request, Candidate.from_provider(member), self.config))
        ranked = rank(scored)
        return ranked[0] if ranked else None

    # -- manual / client specified -----------------------------------------

    def _explicit(self, request: ServiceRequest, excluded: set[str]) -> AssignmentDecision:
        method = request.assignment_method

        if request.explicit_firm_id:
            firm = self._firm(request.explicit_firm_id)
            members = self.directory.firm_members(firm.id)
            verdict = check_firm(request, firm, members)
            if not verdict.eligible:
                raise NoEligibleProvider(f"firm {firm.id} is not eligible: {verdict.reason.value} {verdict.detail}")

            if request.explicit_provider_id:
                if request.explicit_provider_id in excluded:
                    raise NoEligibleProvider(f"{request.explicit_provider_id} is excluded from this request")
                if request.explicit_provider_id not in {m.id for m in members}:
                    raise NoEligibleProvider(
                        f"{request.explicit_provider_id} is not an active member of {firm.id}"
                    )
                member = self._provider(request.explicit_provider_id)
                verdict = check_provider(request, member, on_behalf_of_firm=True)
                if not verdict.eligible:
                    raise NoEligibleProvider(f"{member.id} is not eligible: {verdict.reason.value}")
                return AssignmentDecision(provider_id=member.id, firm_id=firm.id, method=method)

            picked = self._pick_member(request, firm, excluded)
            if picked is None:
                raise NoEligibleProvider(f"firm {firm.id} has no eligible member")
            return AssignmentDecision(provider_id=picked.candidate.id, firm_id=firm.id, method=method)

        if not request.explicit_provider_id:
            raise ValidationFailed(f"{method.value} assignment requires an explicit provider or firm")

        provider_id = request.explicit_provider_id
        if provider_id in excluded:
            raise NoEligibleProvider(f"{provider_id} is excluded from this request")
        verdict = self._check_individual(request, self._provider(provider_id))
        if not verdict.eligible:
            raise NoEligibleProvider(f"{provider_id} is not eligible: {verdict.reason.value} {verdict.detail}")
        logger.info("%s assignment of %s to %s", method.value.lower(), request.id, provider_id)
        return AssignmentDecision(provider_id=provider_id, firm_id=None, method=method)

    # -- helpers -------------------------------------------------------------

    def _check_individual(self, request: ServiceRequest, provider: Provider) -> EligibilityVerdict:
        """Eligibility for a provider taking the request in their own name."""
        membership = self.directory.membership_of(provider.id)
        firm = self.directory.get_firm(membership.firm_id) if membership else None
        approved = bool(
            membership and self.directory.has_approval(membership.firm_id, provider.id, request.requester_id)
        )
        return check_provider(request, provider, firm=firm, membership=membership, has_approval=approved)

    def _provider(self, provider_id: str) -> Provider:
        try:
            return self.directory.get_provider(provider_id)
        except NotFound as exc:
            raise NoEligibleProvider(str(exc)) from exc

    def _firm(self, firm_id: str) -> Firm:
        try:
            return self.directory.get_firm(firm_id)
        except NotFound as exc:
            raise NoEligibleProvider(str(exc)) from exc
