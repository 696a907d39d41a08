"""
Marketplace service - one facade over the matching and settlement engine.

Wires the provider directory, assignment, reputation, request lifecycle,
settlement, job queue and event log together over a single data directory.
The HTTP API, the CLI and background workers all talk to this class.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path

from marketplace.config import MarketplaceConfig, config_path, load_config
from marketplace.engine.assignment import AssignmentEngine, ScoredCandidate
from marketplace.engine.lifecycle import AbandonOutcome, RequestLifecycle
from marketplace.engine.reputation import RatingResult, ReputationTracker
from marketplace.events import EventLog
from marketplace.models import (
    AbandonmentReason,
    AssignmentMethod,
    CancellationReason,
    Distribution,
    Payment,
    ServiceRequest,
)
from marketplace.settlement.escrow import RefundVerdict, SettlementEngine
from marketplace.settlement.gateway import HttpPaymentGateway, PaymentGateway
from marketplace.settlement.queue import SettlementJob, SettlementQueue
from marketplace.settlement.worker import SettlementWorker
from marketplace.storage.database import Database
from marketplace.storage.directory import ProviderDirectory

logger = logging.getLogger(__name__)


class MarketplaceService:
    def __init__(
        self,
        data_dir: Path | None = None,
        config: MarketplaceConfig | None = None,
        gateway: PaymentGateway | None = None,
    ) -> None:
        self.db = Database(data_dir)
        self.db.ensure_tables()
        self.config = config or load_config(config_path(self.db.data_dir))

        self.events = EventLog(self.db)
        self.directory = ProviderDirectory(self.db, initial_score=self.config.reputation.initial_score)
        self.reputation = ReputationTracker(self.db)
        self.assignment = AssignmentEngine(self.directory, self.config.assignment)
        self.queue = SettlementQueue(self.db, self.config.retry, events=self.events)
        self.settlement = SettlementEngine(
            self.db,
            self.directory,
            self.events,
            self.queue,
            config=self.config.settlement,
            refunds=self.config.refunds,
        )
        self.lifecycle = RequestLifecycle(
            self.db,
            self.directory,
            self.assignment,
            self.reputation,
            self.events,
            reputation_config=self.config.reputation,
            settlement=self.settlement,
        )
        self.gateway = gateway or HttpPaymentGateway(self.config.gateway)

    # -- request contracts -------------------------------------------------------

    def create_request(
        self,
        requester_id: str,
        category: str,
        description: str,
        budget: Decimal | int | str | None = None,
        deadline: str | None = None,
        assignment_method: AssignmentMethod = AssignmentMethod.AUTO,
        explicit_provider_id: str | None = None,
        explicit_firm_id: str | None = None,
        allow_firm_assignment: bool = False,
    ) -> ServiceRequest:
        return self.lifecycle.create(
            requester_id,
            category,
            description,
            assignment_method=assignment_method,
            budget=budget,
            deadline=deadline,
            explicit_provider_id=explicit_provider_id,
            explicit_firm_id=explicit_firm_id,
            allow_firm_assignment=allow_firm_assignment,
        )

    def accept_request(self, request_id: str, provider_id: str) -> ServiceRequest:
        return self.lifecycle.accept(request_id, provider_id)

    def reject_request(self, request_id: str, provider_id: str, reason: str = "") -> ServiceRequest:
        return self.lifecycle.reject(request_id, provider_id, reason)

    def start_work(self, request_id: str, provider_id: str) -> ServiceRequest:
        return self.lifecycle.start(request_id, provider_id)

    def complete_request(self, request_id: str, provider_id: str) -> ServiceRequest:
        return self.lifecycle.complete(request_id, provider_id)

    def cancel_request(
        self,
        request_id: str,
        actor_id: str,
        reason: CancellationReason = CancellationReason.CLIENT_REQUEST,
    ) -> ServiceRequest:
        return self.lifecycle.cancel(request_id, actor_id, reason)

    def abandon_request(
        self,
        request_id: str,
        provider_id: str,
        reason: AbandonmentReason,
        reason_text: str | None = None,
    ) -> AbandonOutcome:
        return self.lifecycle.abandon(request_id, provider_id, reason, reason_text)

    def assign_request(self, request_id: str, provider_id: str, assigned_by: str) -> ServiceRequest:
        return self.lifecycle.assign(request_id, provider_id, assigned_by)

    def get_request(self, request_id: str) -> ServiceRequest:
        return self.lifecycle.get(request_id)

    def recommend(self, request_id: str, limit: int | None = None) -> list[ScoredCandidate]:
        return self.assignment.recommend(self.lifecycle.get(request_id), limit)

    def rate_provider(self, provider_id: str, stars: int) -> RatingResult:
        return self.reputation.record_rating(provider_id, stars)

    # -- payment contracts -------------------------------------------------------

    def capture_payment(
        self,
        request_id: str,
        gross_amount: Decimal | int | str,
        external_reference: str,
        currency: str | None = None,
    ) -> Payment:
        return self.settlement.capture_payment(request_id, gross_amount, external_reference, currency)

    def release_escrow(self, payment_id: str) -> Distribution:
        return self.settlement.release_escrow(payment_id)

    def evaluate_refund(self, payment_id: str) -> RefundVerdict:
        return self.settlement.evaluate_refund(payment_id)

    def issue_refund(
        self,
        payment_id: str,
        authorized_by: str,
        percentage: Decimal | int | str | None = None,
        reason: str = "",
    ) -> Payment:
        return self.settlement.issue_refund(payment_id, authorized_by, percentage, reason)

    # -- operator ------------------------------------------------------------------

    def worker(self, batch_size: int = 10) -> SettlementWorker:
        return SettlementWorker(self.queue, self.settlement, self.gateway, batch_size=batch_size)

    def reconcile(self) -> list[str]:
        return self.settlement.reconcile()

    def dead_letters(self) -> list[SettlementJob]:
        return self.queue.dead_letters()

    def retry_job(self, job_id: str) -> SettlementJob:
        return self.queue.requeue(job_id)
