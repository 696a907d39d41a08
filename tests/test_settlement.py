"""Tests for payment capture, escrow release and refunds."""

from __future__ import annotations

import threading
from collections.abc import Callable
from decimal import Decimal
from pathlib import Path

import pytest

from marketplace.config import MarketplaceConfig, RefundConfig
from marketplace.errors import EscrowNotHeld, NotFound, RequestNotCompleted, ValidationFailed
from marketplace.models import (
    CancellationReason,
    EscrowStatus,
    IndependentWorkPolicy,
    Provider,
    RequestStatus,
    ServiceRequest,
)
from marketplace.service import MarketplaceService
from marketplace.settlement.queue import JobKind, JobStatus

D = Decimal


def _advance(service: MarketplaceService, request: ServiceRequest, status: RequestStatus) -> ServiceRequest:
    """Walk a freshly created request forward to ``status``."""
    provider_id = request.assigned_provider_id
    assert provider_id is not None
    if status == RequestStatus.PENDING:
        return request
    request = service.accept_request(request.id, provider_id)
    if status == RequestStatus.ACCEPTED:
        return request
    request = service.start_work(request.id, provider_id)
    if status == RequestStatus.IN_PROGRESS:
        return request
    return service.complete_request(request.id, provider_id)


@pytest.fixture
def request_(service: MarketplaceService, add_provider: Callable[..., Provider]) -> ServiceRequest:
    add_provider("p1")
    return service.create_request("client-1", "GST", "Annual GST reconciliation", budget=150000)


@pytest.fixture
def completed(service: MarketplaceService, request_: ServiceRequest) -> ServiceRequest:
    return _advance(service, request_, RequestStatus.COMPLETED)


class TestCapture:
    def test_capture_holds_in_escrow(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        payment = service.capture_payment(request_.id, "100000", "ext-1")

        assert payment.escrow_status == EscrowStatus.HELD
        assert payment.gross_amount == D("100000.00")
        assert payment.currency == "INR"
        assert service.get_request(request_.id).amount == D("100000.00")
        assert service.queue.list_jobs() == []

    def test_same_reference_is_idempotent(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        first = service.capture_payment(request_.id, "100000", "ext-1")
        again = service.capture_payment(request_.id, "100000", "ext-1")
        assert again.id == first.id

    def test_second_payment_refused(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.capture_payment(request_.id, "100000", "ext-1")
        with pytest.raises(ValidationFailed):
            service.capture_payment(request_.id, "100000", "ext-2")

    @pytest.mark.parametrize(("amount", "reference"), [("0", "ext"), ("-10", "ext"), ("abc", "ext"), ("10", " ")])
    def test_invalid_capture(
        self, service: MarketplaceService, request_: ServiceRequest, amount: str, reference: str
    ) -> None:
        with pytest.raises(ValidationFailed):
            service.capture_payment(request_.id, amount, reference)

    def test_cancelled_request_refused(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        service.cancel_request(request_.id, "client-1")
        with pytest.raises(ValidationFailed):
            service.capture_payment(request_.id, "100", "ext-1")

    def test_unknown_request(self, service: MarketplaceService) -> None:
        with pytest.raises(NotFound):
            service.capture_payment("req-missing", "100", "ext-1")

    def test_capture_after_completion_queues_release(
        self, service: MarketplaceService, completed: ServiceRequest
    ) -> None:
        assert service.get_request(completed.id).payment_pending
        payment = service.capture_payment(completed.id, "1000", "ext-1")

        jobs = service.queue.list_jobs()
        assert [(j.kind, j.payment_id, j.status) for j in jobs] == [(JobKind.RELEASE, payment.id, JobStatus.QUEUED)]
        assert not service.get_request(completed.id).payment_pending


class TestRelease:
    def test_completion_queues_release(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        _advance(service, request_, RequestStatus.COMPLETED)

        jobs = service.queue.list_jobs()
        assert [(j.kind, j.payment_id) for j in jobs] == [(JobKind.RELEASE, payment.id)]

    def test_release_splits_independent_provider(
        self, service: MarketplaceService, completed: ServiceRequest
    ) -> None:
        payment = service.capture_payment(completed.id, "100000", "ext-1")
        distribution = service.release_escrow(payment.id)

        assert distribution.provider_id == "p1"
        assert distribution.firm_id is None
        assert distribution.platform_fee == D("15000.00")
        assert distribution.firm_commission == 0
        assert distribution.net_payout == D("76500.00")
        assert distribution.recorded_total == payment.gross_amount
        assert service.settlement.get_payment(payment.id).escrow_status == EscrowStatus.RELEASED

    def test_release_takes_firm_commission(
        self, service: MarketplaceService, add_provider: Callable[..., Provider]
    ) -> None:
        service.directory.add_firm(
            "Kapoor & Co",
            commission_percent=15,
            independent_work_policy=IndependentWorkPolicy.FULL_INDEPENDENT_WORK,
            firm_id="f1",
        )
        add_provider("member")
        service.directory.add_member("f1", "member")
        request = _advance(service, service.create_request("client-1", "GST", "GST audit"), RequestStatus.COMPLETED)

        payment = service.capture_payment(request.id, "100000", "ext-1")
        distribution = service.release_escrow(payment.id)

        assert distribution.firm_id == "f1"
        assert distribution.firm_commission == D("12750.00")
        assert distribution.withholding == D("7225.00")
        assert distribution.net_payout == D("65025.00")

    def test_release_is_idempotent(self, service: MarketplaceService, completed: ServiceRequest) -> None:
        payment = service.capture_payment(completed.id, "1000", "ext-1")
        first = service.release_escrow(payment.id)
        second = service.release_escrow(payment.id)
        assert first.id == second.id
        assert service.db.execute("SELECT COUNT(*) AS n FROM distributions")[0]["n"] == 1

    def test_concurrent_releases_make_one_distribution(
        self, service: MarketplaceService, completed: ServiceRequest
    ) -> None:
        payment = service.capture_payment(completed.id, "1000", "ext-1")
        ids: list[str] = []
        lock = threading.Lock()
        barrier = threading.Barrier(4)

        def release() -> None:
            barrier.wait()
            distribution = service.release_escrow(payment.id)
            with lock:
                ids.append(distribution.id)

        threads = [threading.Thread(target=release) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ids) == 4
        assert len(set(ids)) == 1

    def test_request_must_be_completed(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        _advance(service, request_, RequestStatus.IN_PROGRESS)
        with pytest.raises(RequestNotCompleted):
            service.release_escrow(payment.id)
        assert service.settlement.get_payment(payment.id).escrow_status == EscrowStatus.HELD

    def test_refunded_payment_cannot_be_released(
        self, service: MarketplaceService, request_: ServiceRequest
    ) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        service.cancel_request(request_.id, "client-1")
        service.issue_refund(payment.id, "ops-1")
        with pytest.raises(EscrowNotHeld):
            service.release_escrow(payment.id)

    def test_unknown_payment(self, service: MarketplaceService) -> None:
        with pytest.raises(NotFound):
            service.release_escrow("pay-missing")


class TestRefundEvaluation:
    @pytest.mark.parametrize(
        ("stopped_at", "percentage", "refund", "retained"),
        [
            (RequestStatus.PENDING, "100", "1000.00", "0.00"),
            (RequestStatus.ACCEPTED, "95", "950.00", "50.00"),
            (RequestStatus.IN_PROGRESS, "50", "500.00", "500.00"),
        ],
    )
    def test_tiers_follow_cancellation_origin(
        self,
        service: MarketplaceService,
        request_: ServiceRequest,
        stopped_at: RequestStatus,
        percentage: str,
        refund: str,
        retained: str,
    ) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        _advance(service, request_, stopped_at)
        service.cancel_request(request_.id, "client-1")

        verdict = service.evaluate_refund(payment.id)
        assert verdict.eligible
        assert verdict.recommended_percentage == D(percentage)
        assert verdict.refund_amount == D(refund)
        assert verdict.retained_amount == D(retained)
        assert verdict.net_refund + verdict.processing_fee + verdict.retained_amount == payment.gross_amount

    def test_live_request_judged_by_current_status(
        self, service: MarketplaceService, request_: ServiceRequest
    ) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        _advance(service, request_, RequestStatus.ACCEPTED)
        assert service.evaluate_refund(payment.id).recommended_percentage == D("95")

    def test_completed_work_is_not_refundable(
        self, service: MarketplaceService, completed: ServiceRequest
    ) -> None:
        payment = service.capture_payment(completed.id, "1000", "ext-1")
        verdict = service.evaluate_refund(payment.id)
        assert not verdict.eligible
        assert verdict.retained_amount == payment.gross_amount

    def test_cancellation_publishes_verdict(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        _advance(service, request_, RequestStatus.IN_PROGRESS)
        service.cancel_request(request_.id, "client-1")

        events = [e for e in service.events.recent(subject_id=request_.id) if e.event_type == "payment.refund_evaluated"]
        assert len(events) == 1
        assert events[0].payload["payment_id"] == payment.id
        assert events[0].payload["recommended_percentage"] == "50"
        assert events[0].payload["amounts"]["retained_amount"] == "500.00"

    def test_abandonment_refunds_in_full_without_fee(self, tmp_path: Path) -> None:
        config = MarketplaceConfig(refunds=RefundConfig(processing_fee_percent=D("2")))
        service = MarketplaceService(tmp_path / "fees", config=config)
        service.directory.add_provider("Asha", specializations=["GST"], provider_id="p1")
        request = service.create_request("client-1", "GST", "GST filing")
        payment = service.capture_payment(request.id, "1000", "ext-1")
        _advance(service, request, RequestStatus.IN_PROGRESS)

        service.cancel_request(request.id, "ops-1", CancellationReason.PROVIDER_ABANDONMENT)
        verdict = service.evaluate_refund(payment.id)
        assert verdict.recommended_percentage == D("100")
        assert verdict.processing_fee == 0
        assert verdict.net_refund == D("1000.00")

    def test_processing_fee_applies_otherwise(self, tmp_path: Path) -> None:
        config = MarketplaceConfig(refunds=RefundConfig(processing_fee_percent=D("2")))
        service = MarketplaceService(tmp_path / "fees", config=config)
        service.directory.add_provider("Asha", specializations=["GST"], provider_id="p1")
        request = service.create_request("client-1", "GST", "GST filing")
        payment = service.capture_payment(request.id, "1000", "ext-1")
        service.cancel_request(request.id, "client-1")

        verdict = service.evaluate_refund(payment.id)
        assert verdict.processing_fee == D("20.00")
        assert verdict.net_refund == D("980.00")


class TestIssueRefund:
    def test_full_refund(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        service.cancel_request(request_.id, "client-1")

        refunded = service.issue_refund(payment.id, "ops-1", reason="client changed plans")
        assert refunded.escrow_status == EscrowStatus.REFUNDED
        assert refunded.refunded_at is not None

        record = service.settlement.get_refund(payment.id)
        assert record is not None
        assert record.net_refund == D("1000.00")
        assert record.authorized_by == "ops-1"
        assert service.settlement.get_distribution(payment.id) is None
        assert [j.kind for j in service.queue.list_jobs()] == [JobKind.REFUND]

    def test_partial_refund_distributes_retained(
        self, service: MarketplaceService, request_: ServiceRequest
    ) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        _advance(service, request_, RequestStatus.IN_PROGRESS)
        service.cancel_request(request_.id, "client-1")

        refunded = service.issue_refund(payment.id, "ops-1")
        assert refunded.escrow_status == EscrowStatus.PARTIALLY_REFUNDED

        record = service.settlement.get_refund(payment.id)
        distribution = service.settlement.get_distribution(payment.id)
        assert record is not None and distribution is not None
        assert record.retained_amount == D("500.00")
        assert distribution.gross_amount == D("500.00")
        assert distribution.provider_id == "p1"
        assert record.net_refund + record.processing_fee + distribution.recorded_total == payment.gross_amount

    def test_override_percentage(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        service.cancel_request(request_.id, "client-1")
        service.issue_refund(payment.id, "ops-1", percentage="80")

        record = service.settlement.get_refund(payment.id)
        assert record is not None
        assert record.percentage == D("80")
        assert record.retained_amount == D("200.00")

    @pytest.mark.parametrize("percentage", ["0", "101", "-5", "nan", "ten"])
    def test_bad_percentage(self, service: MarketplaceService, request_: ServiceRequest, percentage: str) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        service.cancel_request(request_.id, "client-1")
        with pytest.raises(ValidationFailed):
            service.issue_refund(payment.id, "ops-1", percentage=percentage)
        assert service.settlement.get_payment(payment.id).escrow_status == EscrowStatus.HELD

    def test_request_must_be_cancelled(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        with pytest.raises(ValidationFailed):
            service.issue_refund(payment.id, "ops-1")

    def test_refund_only_once(self, service: MarketplaceService, request_: ServiceRequest) -> None:
        payment = service.capture_payment(request_.id, "1000", "ext-1")
        service.cancel_request(request_.id, "client-1")
        service.issue_refund(payment.id, "ops-1")
        with pytest.raises(EscrowNotHeld):
            service.issue_refund(payment.id, "ops-1")


class TestReconcile:
    def test_requeues_missing_release(self, service: MarketplaceService, completed: ServiceRequest) -> None:
        payment = service.capture_payment(completed.id, "1000", "ext-1")
        with service.db.transaction() as conn:
            conn.execute("DELETE FROM settlement_jobs")

        assert service.reconcile() == [payment.id]
        assert service.reconcile() == []
        assert [j.payment_id for j in service.queue.list_jobs()] == [payment.id]

    def test_nothing_to_do(self, service: MarketplaceService, completed: ServiceRequest) -> None:
        service.capture_payment(completed.id, "1000", "ext-1")
        assert service.reconcile() == []
