"""Matching engine: eligibility, assignment, reputation and the request lifecycle."""

from marketplace.engine.assignment import (
    AssignmentDecision,
    AssignmentEngine,
    Candidate,
    CandidateKind,
    ScoreBreakdown,
    ScoredCandidate,
    rank,
    score_candidate,
)
from marketplace.engine.conflict import (
    EligibilityReason,
    EligibilityVerdict,
    check_firm,
    check_policy,
    check_provider,
)
from marketplace.engine.lifecycle import (
    TRANSITIONS,
    AbandonOutcome,
    RequestLifecycle,
    SettlementHook,
    can_transition,
    request_to_dict,
)
from marketplace.engine.reputation import PenaltyResult, RatingResult, ReputationTracker, clamp_score

__all__ = [
    "TRANSITIONS",
    "AbandonOutcome",
    "AssignmentDecision",
    "AssignmentEngine",
    "Candidate",
    "CandidateKind",
    "EligibilityReason",
    "EligibilityVerdict",
    "PenaltyResult",
    "RatingResult",
    "ReputationTracker",
    "RequestLifecycle",
    "ScoreBreakdown",
    "ScoredCandidate",
    "SettlementHook",
    "can_transition",
    "check_firm",
    "check_policy",
    "check_provider",
    "clamp_score",
    "rank",
    "request_to_dict",
    "score_candidate",
]
