"""Settlement: splits, escrow, refunds and the durable job queue."""

from marketplace.settlement.escrow import (
    RefundVerdict,
    SettlementEngine,
    evaluate_refund_eligibility,
    refund_amounts,
)
from marketplace.settlement.gateway import HttpPaymentGateway, PaymentGateway
from marketplace.settlement.queue import JobKind, JobStatus, SettlementJob, SettlementQueue
from marketplace.settlement.splits import Split, compute_distribution, split_amount
from marketplace.settlement.worker import SettlementWorker, WorkerReport

__all__ = [
    "HttpPaymentGateway",
    "JobKind",
    "JobStatus",
    "PaymentGateway",
    "RefundVerdict",
    "SettlementEngine",
    "SettlementJob",
    "SettlementQueue",
    "SettlementWorker",
    "Split",
    "WorkerReport",
    "compute_distribution",
    "evaluate_refund_eligibility",
    "refund_amounts",
    "split_amount",
]
