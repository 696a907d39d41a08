"""Settlement Engine - payment capture, escrow release, refunds."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from marketplace.config import RefundConfig, SettlementConfig
from marketplace.engine.lifecycle import load_request
from marketplace.errors import EscrowNotHeld, NotFound, RequestNotCompleted, ValidationFailed
from marketplace.events import EventPublisher
from marketplace.models import (
    CancellationReason,
    CaptureStatus,
    Distribution,
    EscrowStatus,
    Payment,
    RefundRecord,
    RequestStatus,
    ServiceRequest,
    parse_money,
    parse_percent,
    to_money,
)
from marketplace.settlement.queue import JobKind, SettlementQueue
from marketplace.settlement.splits import HUNDRED, ZERO, Split, compute_distribution
from marketplace.storage.database import Database, utcnow
from marketplace.storage.directory import ProviderDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundVerdict:
    """Advice only; issuing the refund is a separate authorized action."""

    eligible: bool
    recommended_percentage: Decimal
    refund_amount: Decimal
    processing_fee: Decimal
    net_refund: Decimal
    retained_amount: Decimal
    basis: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "eligible": self.eligible,
            "recommended_percentage": str(self.recommended_percentage),
            "amounts": {
                "refund_amount": str(self.refund_amount),
                "processing_fee": str(self.processing_fee),
                "net_refund": str(self.net_refund),
                "retained_amount": str(self.retained_amount),
            },
            "basis": self.basis,
        }


def refund_amounts(
    gross: Decimal,
    percentage: Decimal,
    fee_percent: Decimal,
    quantum: Decimal,
) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    """(refund, processing fee, net refund, retained); net + fee + retained == gross."""
    refund = to_money(gross * percentage / HUNDRED, quantum)
    fee = to_money(refund * fee_percent / HUNDRED, quantum)
    return refund, fee, refund - fee, gross - refund


def evaluate_refund_eligibility(
    payment: Payment,
    request: ServiceRequest,
    refunds: RefundConfig,
    settlement: SettlementConfig,
) -> RefundVerdict:
    """
    Recommend a refund for a payment given where its request stopped.

    A cancelled request is judged by the status it was cancelled from.
    Provider abandonment always recommends a full refund.
    """

    def ineligible(basis: str) -> RefundVerdict:
        return RefundVerdict(False, ZERO, ZERO, ZERO, ZERO, payment.gross_amount, basis)

    if payment.escrow_status != EscrowStatus.HELD:
        return ineligible(f"escrow is {payment.escrow_status.value}")

    status = request.cancelled_from if request.status == RequestStatus.CANCELLED else request.status
    fee_percent = refunds.processing_fee_percent

    if request.cancellation_reason == CancellationReason.PROVIDER_ABANDONMENT:
        percentage = HUNDRED
        basis = "provider abandonment"
        if refunds.waive_fee_on_abandonment:
            fee_percent = ZERO
    else:
        match status:
            case RequestStatus.PENDING | RequestStatus.ABANDONED:
                percentage, basis = refunds.pending_refund_percent, "work never started"
            case RequestStatus.ACCEPTED:
                percentage, basis = refunds.accepted_refund_percent, "accepted, not started"
            case RequestStatus.IN_PROGRESS:
                percentage, basis = refunds.in_progress_refund_percent, "work in progress"
            case RequestStatus.COMPLETED:
                return ineligible("work completed")
            case RequestStatus.CANCELLED | None:
                return ineligible("cancellation origin unknown")

    refund, fee, net, retained = refund_amounts(
        payment.gross_amount, percentage, fee_percent, settlement.money_quantum
    )
    return RefundVerdict(True, percentage, refund, fee, net, retained, basis)


class SettlementEngine:
    """
    Owns payments, distributions and refunds.

    Release and refund both start with a conditional update on
    ``escrow_status = 'HELD'``; the UNIQUE payment_id on distributions and
    refunds makes a duplicate record impossible even if that guard were lost.
    """

    def __init__(
        self,
        db: Database,
        directory: ProviderDirectory,
        events: EventPublisher,
        queue: SettlementQueue,
        config: SettlementConfig | None = None,
        refunds: RefundConfig | None = None,
    ) -> None:
        self.db = db
        self.directory = directory
        self.events = events
        self.queue = queue
        self.config = config or SettlementConfig()
        self.refunds = refunds or RefundConfig()

    # -- capture ---------------------------------------------------------------

    def capture_payment(
        self,
        request_id: str,
        gross_amount: Decimal | int | str,
        external_reference: str,
        currency: str | None = None,
    ) -> Payment:
        """
        Record a captured client payment and hold it in escrow.

        Replaying the same external reference returns the existing payment.
        """
        gross = parse_money(gross_amount, "gross_amount", self.config.money_quantum)
        if gross <= 0:
            raise ValidationFailed(f"gross amount must be positive, got {gross}")
        if not external_reference.strip():
            raise ValidationFailed("external_reference is required")
        currency = (currency or self.config.currency).upper()

        with self.db.transaction() as conn:
            request = load_request(conn, request_id)
            existing = self._payment_for_request(conn, request_id)
            if existing is not None:
                if existing.external_reference == external_reference:
                    return existing
                raise ValidationFailed(f"request {request_id} already has payment {existing.id}")
            if request.status == RequestStatus.CANCELLED:
                raise ValidationFailed(f"request {request_id} is cancelled")

            payment = Payment(
                id=f"pay-{uuid.uuid4().hex[:12]}",
                request_id=request_id,
                gross_amount=gross,
                currency=currency,
                external_reference=external_reference,
                capture_status=CaptureStatus.CAPTURED,
                escrow_status=EscrowStatus.HELD,
                captured_at=utcnow(),
            )
            conn.execute(
                """
                INSERT INTO payments (
                    id, request_id, gross_amount, currency, external_reference,
                    capture_status, escrow_status, captured_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payment.id,
                    request_id,
                    str(gross),
                    currency,
                    external_reference,
                    payment.capture_status.value,
                    payment.escrow_status.value,
                    payment.captured_at,
                ),
            )
            conn.execute(
                "UPDATE service_requests SET amount = ?, updated_at = ?, version = version + 1 WHERE id = ?",
                (str(gross), utcnow(), request_id),
            )
            self.events.publish(
                "payment.captured",
                request_id,
                {"payment_id": payment.id, "gross_amount": str(gross), "currency": currency},
                conn=conn,
            )
            if request.status == RequestStatus.COMPLETED:
                self.queue.enqueue(JobKind.RELEASE, payment.id, conn=conn)

        logger.info("captured %s %s for %s as %s", gross, currency, request_id, payment.id)
        return payment

    # -- release ---------------------------------------------------------------

    def release_escrow(self, payment_id: str) -> Distribution:
        """
        Release a HELD payment for a COMPLETED request into one Distribution.

        Idempotent: once released, every call returns the same Distribution.
        """
        with self.db.transaction() as conn:
            payment = self._get_payment(conn, payment_id)
            if payment.escrow_status == EscrowStatus.RELEASED:
                existing = self._distribution(conn, payment_id)
                if existing is not None:
                    return existing
            if payment.escrow_status != EscrowStatus.HELD:
                raise EscrowNotHeld(f"payment {payment_id} is {payment.escrow_status.value}")

            request = load_request(conn, payment.request_id)
            if request.status != RequestStatus.COMPLETED:
                raise RequestNotCompleted(f"request {request.id} is {request.status.value}")

            split, firm_id = self._split_for(request, payment)
            distribution = self._insert_distribution(conn, payment, request, split, firm_id)

            now = utcnow()
            updated = conn.execute(
                "UPDATE payments SET escrow_status = ?, released_at = ? WHERE id = ? AND escrow_status = ?",
                (EscrowStatus.RELEASED.value, now, payment_id, EscrowStatus.HELD.value),
            ).rowcount
            if not updated:
                raise EscrowNotHeld(f"payment {payment_id} left HELD concurrently")

            self.events.publish(
                "escrow.released",
                request.id,
                {
                    "payment_id": payment_id,
                    "distribution_id": distribution.id,
                    "provider_id": distribution.provider_id,
                    "net_payout": str(distribution.net_payout),
                },
                conn=conn,
            )

        logger.info(
            "released %s: fee=%s commission=%s withholding=%s payout=%s",
            payment_id,
            distribution.platform_fee,
            distribution.firm_commission,
            distribution.withholding,
            distribution.net_payout,
        )
        return distribution

    # -- refunds ---------------------------------------------------------------

    def evaluate_refund(self, payment_id: str) -> RefundVerdict:
        with self.db.connect() as conn:
            payment = self._get_payment(conn, payment_id)
            request = load_request(conn, payment.request_id)
        return evaluate_refund_eligibility(payment, request, self.refunds, self.config)

    def issue_refund(
        self,
        payment_id: str,
        authorized_by: str,
        percentage: Decimal | int | str | None = None,
        reason: str = "",
    ) -> Payment:
        """
        Refund a HELD payment of a CANCELLED request.

        ``percentage`` defaults to the evaluated recommendation. Anything below
        100% leaves a retained amount that is distributed to the provider.
        """
        if not authorized_by.strip():
            raise ValidationFailed("authorized_by is required")

        with self.db.transaction() as conn:
            payment = self._get_payment(conn, payment_id)
            if payment.escrow_status != EscrowStatus.HELD:
                raise EscrowNotHeld(f"payment {payment_id} is {payment.escrow_status.value}")
            request = load_request(conn, payment.request_id)
            if request.status != RequestStatus.CANCELLED:
                raise ValidationFailed(f"request {request.id} is {request.status.value}, not CANCELLED")

            verdict = evaluate_refund_eligibility(payment, request, self.refunds, self.config)
            pct = verdict.recommended_percentage
            if percentage is not None:
                pct = parse_percent(percentage, "percentage")
            if not ZERO < pct <= HUNDRED:
                raise ValidationFailed(f"refund percentage must be in (0, 100], got {pct}")

            fee_percent = self.refunds.processing_fee_percent
            if request.cancellation_reason == CancellationReason.PROVIDER_ABANDONMENT and (
                self.refunds.waive_fee_on_abandonment
            ):
                fee_percent = ZERO
            refund_amount, fee, net_refund, retained = refund_amounts(
                payment.gross_amount, pct, fee_percent, self.config.money_quantum
            )

            target = EscrowStatus.REFUNDED if retained == ZERO else EscrowStatus.PARTIALLY_REFUNDED
            now = utcnow()
            updated = conn.execute(
                "UPDATE payments SET escrow_status = ?, refunded_at = ? WHERE id = ? AND escrow_status = ?",
                (target.value, now, payment_id, EscrowStatus.HELD.value),
            ).rowcount
            if not updated:
                raise EscrowNotHeld(f"payment {payment_id} left HELD concurrently")

            record = RefundRecord(
                id=f"rfd-{uuid.uuid4().hex[:12]}",
                payment_id=payment_id,
                authorized_by=authorized_by,
                percentage=pct,
                refund_amount=refund_amount,
                processing_fee=fee,
                net_refund=net_refund,
                retained_amount=retained,
                reason=reason,
                created_at=now,
            )
            conn.execute(
                """
                INSERT INTO refunds (
                    id, payment_id, authorized_by, percentage, refund_amount,
                    processing_fee, net_refund, retained_amount, reason, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    payment_id,
                    authorized_by,
                    str(pct),
                    str(refund_amount),
                    str(fee),
                    str(net_refund),
                    str(retained),
                    reason,
                    now,
                ),
            )

            if retained > ZERO:
                if request.assigned_provider_id is None:
                    raise ValidationFailed(f"request {request.id} has no provider to receive the retained amount")
                split, firm_id = self._split_for(request, payment, gross=retained)
                self._insert_distribution(conn, payment, request, split, firm_id)

            self.queue.enqueue(JobKind.REFUND, payment_id, conn=conn)
            self.events.publish(
                "payment.refunded",
                request.id,
                {
                    "payment_id": payment_id,
                    "percentage": str(pct),
                    "net_refund": str(net_refund),
                    "retained_amount": str(retained),
                    "authorized_by": authorized_by,
                },
                conn=conn,
            )
            payment = self._get_payment(conn, payment_id)

        logger.info(
            "refunded %s%% of %s (net %s, fee %s) authorized by %s",
            pct,
            payment_id,
            net_refund,
            fee,
            authorized_by,
        )
        return payment

    # -- lifecycle hooks -------------------------------------------------------

    def on_request_completed(self, request: ServiceRequest, conn: sqlite3.Connection) -> None:
        payment = self._payment_for_request(conn, request.id)
        if payment is None:
            logger.info("%s completed with payment pending", request.id)
            return
        if payment.escrow_status == EscrowStatus.HELD:
            self.queue.enqueue(JobKind.RELEASE, payment.id, conn=conn)

    def on_request_cancelled(self, request: ServiceRequest, conn: sqlite3.Connection) -> None:
        payment = self._payment_for_request(conn, request.id)
        if payment is None:
            return
        verdict = evaluate_refund_eligibility(payment, request, self.refunds, self.config)
        self.events.publish(
            "payment.refund_evaluated",
            request.id,
            {"payment_id": payment.id, **verdict.to_dict()},
            conn=conn,
        )
        logger.info(
            "%s cancelled with payment %s: recommend %s%% refund (%s)",
            request.id,
            payment.id,
            verdict.recommended_percentage,
            verdict.basis,
        )

    def reconcile(self) -> list[str]:
        """Queue a release for every HELD payment of a COMPLETED request that has no release job."""
        queued = []
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT p.id FROM payments p
                JOIN service_requests r ON r.id = p.request_id
                WHERE p.escrow_status = ? AND r.status = ?
                AND NOT EXISTS (
                    SELECT 1 FROM settlement_jobs j WHERE j.payment_id = p.id AND j.kind = ?
                )
                ORDER BY p.captured_at
                """,
                (EscrowStatus.HELD.value, RequestStatus.COMPLETED.value, JobKind.RELEASE.value),
            ).fetchall()
            for row in rows:
                self.queue.enqueue(JobKind.RELEASE, row["id"], conn=conn)
                queued.append(row["id"])
        if queued:
            logger.warning("reconcile queued %d missing release job(s)", len(queued))
        return queued

    # -- reads -----------------------------------------------------------------

    def get_payment(self, payment_id: str) -> Payment:
        with self.db.connect() as conn:
            return self._get_payment(conn, payment_id)

    def payment_for_request(self, request_id: str) -> Payment | None:
        with self.db.connect() as conn:
            return self._payment_for_request(conn, request_id)

    def get_distribution(self, payment_id: str) -> Distribution | None:
        with self.db.connect() as conn:
            return self._distribution(conn, payment_id)

    def get_refund(self, payment_id: str) -> RefundRecord | None:
        rows = self.db.execute("SELECT * FROM refunds WHERE payment_id = ?", (payment_id,))
        return _row_to_refund(rows[0]) if rows else None

    # -- internals -------------------------------------------------------------

    def _split_for(
        self,
        request: ServiceRequest,
        payment: Payment,
        gross: Decimal | None = None,
    ) -> tuple[Split, str | None]:
        if request.assigned_provider_id is None:
            raise ValidationFailed(f"request {request.id} has no assigned provider")
        provider = self.directory.get_provider(request.assigned_provider_id)
        firm_id = request.assigned_firm_id or provider.firm_id
        firm = self.directory.get_firm(firm_id) if firm_id else None
        return compute_distribution(payment, provider, firm, self.config, gross=gross), firm_id

    @staticmethod
    def _insert_distribution(
        conn: sqlite3.Connection,
        payment: Payment,
        request: ServiceRequest,
        split: Split,
        firm_id: str | None,
    ) -> Distribution:
        distribution = Distribution(
            id=f"dist-{uuid.uuid4().hex[:12]}",
            payment_id=payment.id,
            request_id=request.id,
            provider_id=request.assigned_provider_id or "",
            firm_id=firm_id,
            gross_amount=split.gross_amount,
            platform_fee=split.platform_fee,
            firm_commission=split.firm_commission,
            provider_net=split.provider_net,
            withholding=split.withholding,
            net_payout=split.net_payout,
            created_at=utcnow(),
        )
        conn.execute(
            """
            INSERT INTO distributions (
                id, payment_id, request_id, provider_id, firm_id, gross_amount,
                platform_fee, firm_commission, provider_net, withholding, net_payout, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                distribution.id,
                distribution.payment_id,
                distribution.request_id,
                distribution.provider_id,
                distribution.firm_id,
                str(distribution.gross_amount),
                str(distribution.platform_fee),
                str(distribution.firm_commission),
                str(distribution.provider_net),
                str(distribution.withholding),
                str(distribution.net_payout),
                distribution.created_at,
            ),
        )
        return distribution

    @staticmethod
    def _get_payment(conn: sqlite3.Connection, payment_id: str) -> Payment:
        row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        if row is None:
            raise NotFound(f"payment {payment_id} not found")
        return _row_to_payment(row)

    @staticmethod
    def _payment_for_request(conn: sqlite3.Connection, request_id: str) -> Payment | None:
        row = conn.execute("SELECT * FROM payments WHERE request_id = ?", (request_id,)).fetchone()
        return _row_to_payment(row) if row else None

    @staticmethod
    def _distribution(conn: sqlite3.Connection, payment_id: str) -> Distribution | None:
        row = conn.execute("SELECT * FROM distributions WHERE payment_id = ?", (payment_id,)).fetchone()
        return _row_to_distribution(row) if row else None


def _row_to_payment(row: Any) -> Payment:
    return Payment(
        id=row["id"],
        request_id=row["request_id"],
        gross_amount=Decimal(row["gross_amount"]),
        currency=row["currency"],
        external_reference=row["external_reference"],
        capture_status=CaptureStatus(row["capture_status"]),
        escrow_status=EscrowStatus(row["escrow_status"]),
        captured_at=row["captured_at"],
        released_at=row["released_at"],
        refunded_at=row["refunded_at"],
    )


def _row_to_distribution(row: Any) -> Distribution:
    return Distribution(
        id=row["id"],
        payment_id=row["payment_id"],
        request_id=row["request_id"],
        provider_id=row["provider_id"],
        firm_id=row["firm_id"],
        gross_amount=Decimal(row["gross_amount"]),
        platform_fee=Decimal(row["platform_fee"]),
        firm_commission=Decimal(row["firm_commission"]),
        provider_net=Decimal(row["provider_net"]),
        withholding=Decimal(row["withholding"]),
        net_payout=Decimal(row["net_payout"]),
        created_at=row["created_at"],
    )


def _row_to_refund(row: Any) -> RefundRecord:
    return RefundRecord(
        id=row["id"],
        payment_id=row["payment_id"],
        authorized_by=row["authorized_by"],
        percentage=Decimal(row["percentage"]),
        refund_amount=Decimal(row["refund_amount"]),
        processing_fee=Decimal(row["processing_fee"]),
        net_refund=Decimal(row["net_refund"]),
        retained_amount=Decimal(row["retained_amount"]),
        reason=row["reason"],
        created_at=row["created_at"],
    )
