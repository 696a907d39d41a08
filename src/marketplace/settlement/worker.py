"""Settlement worker - drains the job queue through the payment gateway."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from marketplace.errors import GatewayError, MarketplaceError, NotFound
from marketplace.settlement.escrow import SettlementEngine
from marketplace.settlement.gateway import PaymentGateway
from marketplace.settlement.queue import JobKind, JobStatus, SettlementJob, SettlementQueue

logger = logging.getLogger(__name__)


@dataclass
class WorkerReport:
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0

    @property
    def processed(self) -> int:
        return self.succeeded + self.retried + self.dead_lettered


class SettlementWorker:
    """
    Runs due RELEASE and REFUND jobs.

    Gateway errors follow their ``retryable`` flag. Engine precondition
    failures (escrow not held, request not completed, bad split) cannot heal
    by waiting and go straight to the dead-letter queue.
    """

    def __init__(
        self,
        queue: SettlementQueue,
        settlement: SettlementEngine,
        gateway: PaymentGateway,
        batch_size: int = 10,
    ) -> None:
        self.queue = queue
        self.settlement = settlement
        self.gateway = gateway
        self.batch_size = batch_size

    async def run_once(self) -> WorkerReport:
        """Process every job that is due right now (one batch)."""
        report = WorkerReport()
        # sqlite work stays off the event loop
        for job in await asyncio.to_thread(self.queue.claim_due, self.batch_size):
            try:
                await self._run(job)
            except GatewayError as exc:
                updated = await asyncio.to_thread(self.queue.mark_failed, job.id, str(exc), exc.retryable)
                self._count_failure(report, updated)
            except MarketplaceError as exc:
                error = f"{exc.code}: {exc.message}"
                updated = await asyncio.to_thread(self.queue.mark_failed, job.id, error, False)
                self._count_failure(report, updated)
            except Exception as exc:
                logger.exception("unexpected failure in job %s", job.id)
                updated = await asyncio.to_thread(self.queue.mark_failed, job.id, repr(exc), True)
                self._count_failure(report, updated)
            else:
                await asyncio.to_thread(self.queue.mark_succeeded, job.id)
                report.succeeded += 1
        return report

    async def run_forever(self, poll_interval: float = 1.0, stop: asyncio.Event | None = None) -> None:
        logger.info("settlement worker started (poll every %.1fs)", poll_interval)
        while stop is None or not stop.is_set():
            report = await self.run_once()
            if report.processed:
                logger.info(
                    "batch: %d ok, %d retrying, %d dead-lettered",
                    report.succeeded,
                    report.retried,
                    report.dead_lettered,
                )
            await asyncio.sleep(poll_interval)
        logger.info("settlement worker stopped")

    async def _run(self, job: SettlementJob) -> None:
        match job.kind:
            case JobKind.RELEASE:
                distribution = await asyncio.to_thread(self.settlement.release_escrow, job.payment_id)
                payment = await asyncio.to_thread(self.settlement.get_payment, job.payment_id)
                await self.gateway.payout(payment, distribution)
            case JobKind.REFUND:
                payment = await asyncio.to_thread(self.settlement.get_payment, job.payment_id)
                refund = await asyncio.to_thread(self.settlement.get_refund, job.payment_id)
                if refund is None:
                    raise NotFound(f"no refund recorded for {job.payment_id}")
                await self.gateway.refund(payment, refund)
                retained = await asyncio.to_thread(self.settlement.get_distribution, job.payment_id)
                if retained is not None:
                    await self.gateway.payout(payment, retained)

    @staticmethod
    def _count_failure(report: WorkerReport, job: SettlementJob) -> None:
        if job.status == JobStatus.DEAD_LETTER:
            report.dead_lettered += 1
        else:
            report.retried += 1
