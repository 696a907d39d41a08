"""Tests for the request state machine and its side effects."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from marketplace.engine.lifecycle import TRANSITIONS, can_transition, ensure_transition
from marketplace.errors import (
    AlreadyAccepted,
    CapacityExceeded,
    Forbidden,
    InvalidStateTransition,
    MarketplaceError,
    NoEligibleProvider,
    NotFound,
    ValidationFailed,
)
from marketplace.models import (
    AbandonmentReason,
    AssignmentMethod,
    CancellationReason,
    Provider,
    RequestStatus,
    ServiceRequest,
)
from marketplace.service import MarketplaceService


@pytest.fixture
def two_providers(add_provider: Callable[..., Provider]) -> None:
    add_provider("first", experience_years=10)
    add_provider("second", experience_years=4)


@pytest.fixture
def request_(service: MarketplaceService, two_providers: None) -> ServiceRequest:
    return service.create_request("client-1", "gst", "Quarterly GST return", budget=15000)


def _event_types(service: MarketplaceService, subject_id: str) -> list[str]:
    return [e.event_type for e in reversed(service.events.recent(subject_id=subject_id))]


def _in_progress(service: MarketplaceService, request: ServiceRequest) -> ServiceRequest:
    service.accept_request(request.id, "first")
    return service.start_work(request.id, "first")


class TestTransitionTable:
    def test_terminal_states_have_no_exits(self) -> None:
        for status in RequestStatus:
            if status.is_terminal:
                assert TRANSITIONS[status] == frozenset()

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (RequestStatus.PENDING, RequestStatus.IN_PROGRESS),
            (RequestStatus.PENDING, RequestStatus.COMPLETED),
            (RequestStatus.PENDING, RequestStatus.ABANDONED),
            (RequestStatus.ACCEPTED, RequestStatus.COMPLETED),
            (RequestStatus.ACCEPTED, RequestStatus.PENDING),
            (RequestStatus.IN_PROGRESS, RequestStatus.ACCEPTED),
            (RequestStatus.COMPLETED, RequestStatus.CANCELLED),
            (RequestStatus.CANCELLED, RequestStatus.PENDING),
            (RequestStatus.ABANDONED, RequestStatus.ACCEPTED),
        ],
    )
    def test_illegal_edges(self, current: RequestStatus, target: RequestStatus) -> None:
        assert not can_transition(current, target)
        with pytest.raises(InvalidStateTransition) as exc_info:
            ensure_transition(current, target)
        assert exc_info.value.current == current.value
        assert exc_info.value.target == target.value

    def test_abandoned_only_returns_to_pending(self) -> None:
        assert TRANSITIONS[RequestStatus.ABANDONED] == frozenset({RequestStatus.PENDING})


class TestCreate:
    def test_auto_assigns_on_create(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        assert request_.status == RequestStatus.PENDING
        assert request_.category == "GST"
        assert request_.assigned_provider_id == "first"
        assert request_.assigned_by == "system"
        assert request_.assignment_score is not None
        assert _event_types(service, request_.id) == ["request.pending", "request.assigned"]

        stored = service.get_request(request_.id)
        assert stored.assigned_provider_id == "first"
        assert str(stored.budget) == "15000.00"

    def test_nothing_eligible_stores_nothing(self, service: MarketplaceService) -> None:
        with pytest.raises(NoEligibleProvider):
            service.create_request("client-1", "GST", "GST filing")
        assert service.lifecycle.list_requests() == []
        assert service.events.recent() == []

    def test_client_specified(self, service: MarketplaceService, two_providers: None) -> None:
        request = service.create_request(
            "client-1",
            "GST",
            "GST filing",
            assignment_method=AssignmentMethod.CLIENT_SPECIFIED,
            explicit_provider_id="second",
        )
        assert request.assigned_provider_id == "second"
        assert request.assigned_by == "client-1"
        assert request.assignment_score is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"budget": -5},
            {"budget": "lots"},
            {"explicit_provider_id": "first"},
            {"assignment_method": AssignmentMethod.MANUAL},
            {"description": "  "},
        ],
    )
    def test_invalid_input(self, service: MarketplaceService, two_providers: None, kwargs: dict) -> None:
        args = {"requester_id": "client-1", "category": "GST", "description": "GST filing", **kwargs}
        with pytest.raises(ValidationFailed):
            service.create_request(**args)

    def test_unknown_request(self, service: MarketplaceService) -> None:
        with pytest.raises(NotFound):
            service.get_request("req-missing")


class TestAccept:
    def test_accept_counts_workload(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        accepted = service.accept_request(request_.id, "first")
        assert accepted.status == RequestStatus.ACCEPTED
        assert accepted.accepted_at is not None
        assert service.directory.get_provider("first").current_workload == 1

    def test_only_assignee_may_accept(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        with pytest.raises(Forbidden):
            service.accept_request(request_.id, "second")
        assert service.get_request(request_.id).status == RequestStatus.PENDING

    def test_second_accept_conflicts(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.accept_request(request_.id, "first")
        with pytest.raises(AlreadyAccepted):
            service.accept_request(request_.id, "first")

    def test_accept_after_cancel(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.cancel_request(request_.id, "client-1")
        with pytest.raises(InvalidStateTransition):
            service.accept_request(request_.id, "first")

    def test_concurrent_accepts_one_winner(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        outcomes: list[str] = []
        lock = threading.Lock()
        barrier = threading.Barrier(4)

        def attempt() -> None:
            barrier.wait()
            try:
                service.accept_request(request_.id, "first")
                result = "ok"
            except MarketplaceError as exc:
                result = type(exc).__name__
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("AlreadyAccepted") == 3
        assert service.directory.get_provider("first").current_workload == 1

    def test_accept_respects_capacity(
        self, service: MarketplaceService, add_provider: Callable[..., Provider]
    ) -> None:
        add_provider("solo", max_capacity=1)
        requests = [service.create_request("client-1", "GST", f"GST filing {n}") for n in range(3)]
        assert {r.assigned_provider_id for r in requests} == {"solo"}

        service.accept_request(requests[0].id, "solo")
        for request in requests[1:]:
            with pytest.raises(CapacityExceeded):
                service.accept_request(request.id, "solo")
            assert service.get_request(request.id).status == RequestStatus.PENDING
        assert service.directory.get_provider("solo").current_workload == 1

    def test_capacity_frees_up_after_completion(
        self, service: MarketplaceService, add_provider: Callable[..., Provider]
    ) -> None:
        add_provider("solo", max_capacity=1)
        first = service.create_request("client-1", "GST", "GST filing")
        second = service.create_request("client-2", "GST", "GST filing")
        service.accept_request(first.id, "solo")
        service.start_work(first.id, "solo")
        service.complete_request(first.id, "solo")

        assert service.accept_request(second.id, "solo").status == RequestStatus.ACCEPTED


class TestReject:
    def test_reject_reassigns_without_penalty(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        rejected = service.reject_request(request_.id, "first", reason="conflict of interest")

        assert rejected.status == RequestStatus.PENDING
        assert rejected.assigned_provider_id == "second"
        assert rejected.excluded_provider_ids == ["first"]
        assert service.directory.get_provider("first").reputation_score == 5.0
        assert _event_types(service, request_.id)[-2:] == ["request.rejected", "request.assigned"]

    def test_last_candidate_leaves_request_unassigned(
        self, service: MarketplaceService, request_: ServiceRequest
    ) -> None:
        service.reject_request(request_.id, "first")
        request = service.reject_request(request_.id, "second")

        assert request.status == RequestStatus.PENDING
        assert request.assigned_provider_id is None
        assert request.excluded_provider_ids == ["first", "second"]
        assert _event_types(service, request_.id)[-1] == "request.unassigned"

    def test_only_pending(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.accept_request(request_.id, "first")
        with pytest.raises(InvalidStateTransition):
            service.reject_request(request_.id, "first")


class TestProgress:
    def test_happy_path(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        started = _in_progress(service, request_)
        assert started.status == RequestStatus.IN_PROGRESS
        assert started.started_at is not None

        done = service.complete_request(request_.id, "first")
        assert done.status == RequestStatus.COMPLETED
        assert done.completed_at is not None
        assert done.payment_pending
        assert service.directory.get_provider("first").current_workload == 0
        assert _event_types(service, request_.id)[-3:] == [
            "request.accepted",
            "request.in_progress",
            "request.completed",
        ]

    def test_cannot_skip_start(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.accept_request(request_.id, "first")
        with pytest.raises(InvalidStateTransition):
            service.complete_request(request_.id, "first")

    def test_only_assignee_may_start(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.accept_request(request_.id, "first")
        with pytest.raises(Forbidden):
            service.start_work(request_.id, "second")

    def test_version_advances(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        before = service.get_request(request_.id).version
        _in_progress(service, request_)
        assert service.get_request(request_.id).version == before + 2


class TestAbandon:
    def test_abandon_in_progress(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        _in_progress(service, request_)
        outcome = service.abandon_request(request_.id, "first", AbandonmentReason.EMERGENCY)

        assert outcome.reputation_delta == pytest.approx(-0.3)
        assert outcome.reassigned_to == "second"
        assert outcome.request.status == RequestStatus.PENDING
        assert outcome.request.accepted_at is None
        assert outcome.request.started_at is None

        provider = service.directory.get_provider("first")
        assert provider.reputation_score == pytest.approx(4.7)
        assert provider.abandonment_count == 1
        assert provider.current_workload == 0

        types = _event_types(service, request_.id)
        assert types[-3:] == ["request.abandoned", "request.pending", "request.assigned"]
        abandoned = next(e for e in service.events.recent(subject_id=request_.id) if e.event_type == "request.abandoned")
        assert abandoned.payload["from_status"] == "IN_PROGRESS"
        assert abandoned.payload["reputation_delta"] == pytest.approx(-0.3)

    def test_abandon_accepted_costs_less(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.accept_request(request_.id, "first")
        outcome = service.abandon_request(request_.id, "first", AbandonmentReason.OVERCOMMITTED)
        assert outcome.reputation_delta == pytest.approx(-0.2)
        assert service.directory.get_provider("first").reputation_score == pytest.approx(4.8)

    def test_penalty_clamped(
        self, service: MarketplaceService, add_provider: Callable[..., Provider]
    ) -> None:
        add_provider("worn", reputation_score=0.1, experience_years=10)
        add_provider("backup")
        request = service.create_request("client-1", "GST", "GST filing")
        service.accept_request(request.id, "worn")
        service.start_work(request.id, "worn")

        outcome = service.abandon_request(request.id, "worn", AbandonmentReason.ILLNESS)
        assert service.directory.get_provider("worn").reputation_score == 0.0
        assert outcome.reputation_delta == pytest.approx(-0.1)

    def test_pending_cannot_be_abandoned(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        with pytest.raises(InvalidStateTransition):
            service.abandon_request(request_.id, "first", AbandonmentReason.OVERCOMMITTED)

    def test_other_requires_text(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.accept_request(request_.id, "first")
        with pytest.raises(ValidationFailed):
            service.abandon_request(request_.id, "first", AbandonmentReason.OTHER, "   ")
        outcome = service.abandon_request(request_.id, "first", AbandonmentReason.OTHER, "moving abroad")
        assert outcome.reassigned_to == "second"

    def test_only_assignee(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.accept_request(request_.id, "first")
        with pytest.raises(Forbidden):
            service.abandon_request(request_.id, "second", AbandonmentReason.OVERCOMMITTED)
        assert service.directory.get_provider("first").reputation_score == 5.0

    def test_partial_penalty_table_in_config_file(self, tmp_path: Path) -> None:
        data_dir = tmp_path / "custom"
        data_dir.mkdir()
        (data_dir / "config.toml").write_text("[reputation.penalties]\nIN_PROGRESS = 0.5\n")
        custom = MarketplaceService(data_dir)
        custom.directory.add_provider("First", specializations=["GST"], provider_id="first")
        request = custom.create_request("client-1", "GST", "GST filing")
        custom.accept_request(request.id, "first")

        outcome = custom.abandon_request(request.id, "first", AbandonmentReason.OVERCOMMITTED)
        assert outcome.reputation_delta == pytest.approx(-0.2)
        assert outcome.request.status == RequestStatus.PENDING

    def test_exclusions_accumulate(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.accept_request(request_.id, "first")
        service.abandon_request(request_.id, "first", AbandonmentReason.OVERCOMMITTED)
        service.accept_request(request_.id, "second")
        outcome = service.abandon_request(request_.id, "second", AbandonmentReason.OVERCOMMITTED)

        assert outcome.reassigned_to is None
        assert outcome.request.excluded_provider_ids == ["first", "second"]
        assert outcome.request.status == RequestStatus.PENDING
        assert _event_types(service, request_.id)[-1] == "request.unassigned"


class TestManualAssign:
    def test_operator_recovers_unassigned_request(
        self, service: MarketplaceService, request_: ServiceRequest, add_provider: Callable[..., Provider]
    ) -> None:
        service.reject_request(request_.id, "first")
        service.reject_request(request_.id, "second")
        add_provider("late")

        request = service.assign_request(request_.id, "late", assigned_by="ops-1")
        assert request.assigned_provider_id == "late"
        assert request.assigned_by == "ops-1"
        assert service.accept_request(request_.id, "late").status == RequestStatus.ACCEPTED

    def test_excluded_provider_refused(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.reject_request(request_.id, "first")
        with pytest.raises(NoEligibleProvider):
            service.assign_request(request_.id, "first", assigned_by="ops-1")

    def test_only_pending(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.accept_request(request_.id, "first")
        with pytest.raises(InvalidStateTransition):
            service.assign_request(request_.id, "second", assigned_by="ops-1")


class TestCancel:
    def test_cancel_pending(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        cancelled = service.cancel_request(request_.id, "client-1")
        assert cancelled.status == RequestStatus.CANCELLED
        assert cancelled.cancelled_from == RequestStatus.PENDING
        assert cancelled.cancellation_reason == CancellationReason.CLIENT_REQUEST
        assert cancelled.cancelled_by == "client-1"

    def test_cancel_in_progress_releases_workload(
        self, service: MarketplaceService, request_: ServiceRequest
    ) -> None:
        _in_progress(service, request_)
        cancelled = service.cancel_request(request_.id, "ops-1", CancellationReason.ADMINISTRATIVE)

        assert cancelled.cancelled_from == RequestStatus.IN_PROGRESS
        assert service.directory.get_provider("first").current_workload == 0
        stored = service.get_request(request_.id)
        assert stored.cancellation_reason == CancellationReason.ADMINISTRATIVE

    @pytest.mark.parametrize("finish", ["complete", "cancel"])
    def test_terminal_requests_cannot_be_cancelled(
        self, service: MarketplaceService, request_: ServiceRequest, finish: str
    ) -> None:
        if finish == "complete":
            _in_progress(service, request_)
            service.complete_request(request_.id, "first")
        else:
            service.cancel_request(request_.id, "client-1")
        with pytest.raises(InvalidStateTransition):
            service.cancel_request(request_.id, "client-1")


def test_list_requests_filters(service: MarketplaceService, two_providers: None) -> None:
    one = service.create_request("client-1", "GST", "first return")
    service.create_request("client-2", "GST", "second return")
    service.accept_request(one.id, "first")

    accepted = service.lifecycle.list_requests(status=RequestStatus.ACCEPTED)
    assert [r.id for r in accepted] == [one.id]
    assert len(service.lifecycle.list_requests(provider_id="first")) == 2
