"""FastAPI server exposing the matching and settlement contracts."""

from __future__ import annotations

import time
from dataclasses import asdict
from decimal import Decimal
from pathlib import Path
from typing import Any

import click
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from marketplace import __version__
from marketplace.engine.lifecycle import request_to_dict
from marketplace.errors import (
    AlreadyAccepted,
    CapacityExceeded,
    DistributionSumMismatch,
    EscrowNotHeld,
    Forbidden,
    GatewayError,
    InvalidStateTransition,
    MarketplaceError,
    NoEligibleProvider,
    NotFound,
    RequestNotCompleted,
    ValidationFailed,
)
from marketplace.models import AbandonmentReason, AssignmentMethod, CancellationReason, RequestStatus
from marketplace.service import MarketplaceService

# Most specific class first; the first isinstance match wins.
STATUS_CODES: list[tuple[type[MarketplaceError], int]] = [
    (ValidationFailed, 400),
    (NotFound, 404),
    (Forbidden, 403),
    (AlreadyAccepted, 409),
    (InvalidStateTransition, 409),
    (CapacityExceeded, 409),
    (NoEligibleProvider, 422),
    (EscrowNotHeld, 409),
    (RequestNotCompleted, 409),
    (DistributionSumMismatch, 500),
    (GatewayError, 502),
]


def status_for(exc: MarketplaceError) -> int:
    for cls, code in STATUS_CODES:
        if isinstance(exc, cls):
            return code
    return 500


def _error(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": {"code": code, "message": message}})


def _jsonable(record: Any) -> dict[str, Any]:
    data = asdict(record)
    return {key: str(value) if isinstance(value, Decimal) else value for key, value in data.items()}


class CreateRequestBody(BaseModel):
    requester_id: str
    category: str
    description: str
    budget: Decimal | None = None
    deadline: str | None = None
    assignment_method: AssignmentMethod = AssignmentMethod.AUTO
    explicit_provider_id: str | None = None
    explicit_firm_id: str | None = None
    allow_firm_assignment: bool = False


class ProviderActionBody(BaseModel):
    provider_id: str


class RejectBody(ProviderActionBody):
    reason: str = ""


class AbandonBody(ProviderActionBody):
    reason: AbandonmentReason
    reason_text: str | None = None


class CancelBody(BaseModel):
    actor_id: str
    reason: CancellationReason = CancellationReason.CLIENT_REQUEST


class AssignBody(ProviderActionBody):
    assigned_by: str


class RatingBody(BaseModel):
    stars: int = Field(ge=1, le=5)


class CaptureBody(BaseModel):
    request_id: str
    gross_amount: Decimal
    external_reference: str
    currency: str | None = None


class RefundBody(BaseModel):
    authorized_by: str
    percentage: Decimal | None = None
    reason: str = ""


def create_app(service: MarketplaceService | None = None) -> FastAPI:
    """Build the API around a service (a default one over ~/.marketplace if omitted)."""
    service = service or MarketplaceService()
    started = time.monotonic()

    app = FastAPI(
        title="Marketplace Matching & Settlement API",
        version=__version__,
        description="Request lifecycle, provider assignment and escrow settlement",
    )
    app.state.service = service

    @app.exception_handler(MarketplaceError)
    async def marketplace_error(request: Request, exc: MarketplaceError) -> JSONResponse:
        return _error(status_for(exc), exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return _error(400, ValidationFailed.code, details)

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Health check."""
        uptime = time.monotonic() - started
        return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}

    # -- requests ------------------------------------------------------------------

    @app.post("/api/requests", status_code=201)
    def create_request(body: CreateRequestBody) -> dict[str, Any]:
        request = service.create_request(
            body.requester_id,
            body.category,
            body.description,
            budget=body.budget,
            deadline=body.deadline,
            assignment_method=body.assignment_method,
            explicit_provider_id=body.explicit_provider_id,
            explicit_firm_id=body.explicit_firm_id,
            allow_firm_assignment=body.allow_firm_assignment,
        )
        return request_to_dict(request)

    @app.get("/api/requests")
    def list_requests(
        status: RequestStatus | None = None,
        provider_id: str | None = None,
        limit: int = 100,
    ) -> dict[str, Any]:
        requests = service.lifecycle.list_requests(status=status, provider_id=provider_id, limit=limit)
        return {"requests": [request_to_dict(r) for r in requests], "count": len(requests)}

    @app.get("/api/requests/{request_id}")
    def get_request(request_id: str) -> dict[str, Any]:
        return request_to_dict(service.get_request(request_id))

    @app.post("/api/requests/{request_id}/accept")
    def accept(request_id: str, body: ProviderActionBody) -> dict[str, Any]:
        return request_to_dict(service.accept_request(request_id, body.provider_id))

    @app.post("/api/requests/{request_id}/reject")
    def reject(request_id: str, body: RejectBody) -> dict[str, Any]:
        return request_to_dict(service.reject_request(request_id, body.provider_id, body.reason))

    @app.post("/api/requests/{request_id}/start")
    def start(request_id: str, body: ProviderActionBody) -> dict[str, Any]:
        return request_to_dict(service.start_work(request_id, body.provider_id))

    @app.post("/api/requests/{request_id}/complete")
    def complete(request_id: str, body: ProviderActionBody) -> dict[str, Any]:
        return request_to_dict(service.complete_request(request_id, body.provider_id))

    @app.post("/api/requests/{request_id}/cancel")
    def cancel(request_id: str, body: CancelBody) -> dict[str, Any]:
        return request_to_dict(service.cancel_request(request_id, body.actor_id, body.reason))

    @app.post("/api/requests/{request_id}/abandon")
    def abandon(request_id: str, body: AbandonBody) -> dict[str, Any]:
        outcome = service.abandon_request(request_id, body.provider_id, body.reason, body.reason_text)
        return outcome.to_dict()

    @app.post("/api/requests/{request_id}/assign")
    def assign(request_id: str, body: AssignBody) -> dict[str, Any]:
        return request_to_dict(service.assign_request(request_id, body.provider_id, body.assigned_by))

    @app.get("/api/requests/{request_id}/recommendations")
    def recommendations(request_id: str, limit: int | None = None) -> dict[str, Any]:
        ranked = service.recommend(request_id, limit)
        return {"request_id": request_id, "candidates": [c.to_dict() for c in ranked]}

    @app.post("/api/providers/{provider_id}/ratings")
    def rate(provider_id: str, body: RatingBody) -> dict[str, Any]:
        return asdict(service.rate_provider(provider_id, body.stars))

    # -- payments ------------------------------------------------------------------

    @app.post("/api/payments", status_code=201)
    def capture(body: CaptureBody) -> dict[str, Any]:
        payment = service.capture_payment(
            body.request_id, body.gross_amount, body.external_reference, body.currency
        )
        return _jsonable(payment)

    @app.get("/api/payments/{payment_id}")
    def get_payment(payment_id: str) -> dict[str, Any]:
        payment = service.settlement.get_payment(payment_id)
        distribution = service.settlement.get_distribution(payment_id)
        refund = service.settlement.get_refund(payment_id)
        return {
            **_jsonable(payment),
            "distribution": _jsonable(distribution) if distribution else None,
            "refund": _jsonable(refund) if refund else None,
        }

    @app.post("/api/payments/{payment_id}/release")
    def release(payment_id: str) -> dict[str, Any]:
        return _jsonable(service.release_escrow(payment_id))

    @app.get("/api/payments/{payment_id}/refund")
    def evaluate_refund(payment_id: str) -> dict[str, Any]:
        return {"payment_id": payment_id, **service.evaluate_refund(payment_id).to_dict()}

    @app.post("/api/payments/{payment_id}/refund")
    def issue_refund(payment_id: str, body: RefundBody) -> dict[str, Any]:
        payment = service.issue_refund(payment_id, body.authorized_by, body.percentage, body.reason)
        return _jsonable(payment)

    return app


@click.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--data-dir", type=click.Path(path_type=Path), default=None, help="Data directory")
def main(port: int, host: str, data_dir: Path | None) -> None:
    """Start the marketplace API server."""
    import uvicorn

    uvicorn.run(create_app(MarketplaceService(data_dir)), host=host, port=port)
