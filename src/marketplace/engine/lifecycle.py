"""Request Lifecycle - the service request state machine and its side effects."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Protocol

from marketplace.config import ReputationConfig
from marketplace.engine.assignment import AssignmentDecision, AssignmentEngine
from marketplace.engine.reputation import ReputationTracker
from marketplace.errors import (
    AlreadyAccepted,
    CapacityExceeded,
    Forbidden,
    InvalidStateTransition,
    NoEligibleProvider,
    NotFound,
    ValidationFailed,
)
from marketplace.events import EventPublisher
from marketplace.models import (
    AbandonmentReason,
    AssignmentMethod,
    CancellationReason,
    RequestStatus,
    ServiceRequest,
    parse_money,
)
from marketplace.storage.database import Database, utcnow
from marketplace.storage.directory import ProviderDirectory

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

# Legal edges of the request state machine. Anything else is rejected.
TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.ACCEPTED, RequestStatus.CANCELLED}),
    RequestStatus.ACCEPTED: frozenset(
        {RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED, RequestStatus.ABANDONED}
    ),
    RequestStatus.IN_PROGRESS: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.CANCELLED, RequestStatus.ABANDONED}
    ),
    RequestStatus.ABANDONED: frozenset({RequestStatus.PENDING}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: RequestStatus, target: RequestStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"cannot move request from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


class SettlementHook(Protocol):
    """Called inside the transition's transaction when money may need to move."""

    def on_request_completed(self, request: ServiceRequest, conn: sqlite3.Connection) -> None: ...

    def on_request_cancelled(self, request: ServiceRequest, conn: sqlite3.Connection) -> None: ...


@dataclass
class AbandonOutcome:
    """What an abandoning provider (and the caller) is told."""

    request: ServiceRequest
    reputation_delta: float
    reassigned_to: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": request_to_dict(self.request),
            "reputation_delta": self.reputation_delta,
            "reassigned_to": self.reassigned_to,
        }


class RequestLifecycle:
    """
    Owns every status change of a service request.

    Each operation runs in one BEGIN IMMEDIATE transaction and finishes with a
    conditional UPDATE guarded on the expected status (and version), so a
    transition either lands completely or leaves the row untouched.
    """

    def __init__(
        self,
        db: Database,
        directory: ProviderDirectory,
        assignment: AssignmentEngine,
        reputation: ReputationTracker,
        events: EventPublisher,
        reputation_config: ReputationConfig | None = None,
        settlement: SettlementHook | None = None,
    ) -> None:
        self.db = db
        self.directory = directory
        self.assignment = assignment
        self.reputation = reputation
        self.events = events
        self.reputation_config = reputation_config or ReputationConfig()
        self.settlement = settlement

    # -- creation ------------------------------------------------------------

    def create(
        self,
        requester_id: str,
        category: str,
        description: str,
        assignment_method: AssignmentMethod = AssignmentMethod.AUTO,
        budget: Decimal | int | str | None = None,
        deadline: str | None = None,
        explicit_provider_id: str | None = None,
        explicit_firm_id: str | None = None,
        allow_firm_assignment: bool = False,
    ) -> ServiceRequest:
        """
        Create a PENDING request and assign it.

        Raises:
            ValidationFailed: malformed input
            NoEligibleProvider: nothing can take the request; nothing is stored
        """
        if not requester_id.strip() or not category.strip() or not description.strip():
            raise ValidationFailed("requester_id, category and description are required")
        budget_value = None
        if budget is not None:
            budget_value = parse_money(budget, "budget")
            if budget_value <= 0:
                raise ValidationFailed(f"budget must be positive, got {budget_value}")
        if assignment_method == AssignmentMethod.AUTO and (explicit_provider_id or explicit_firm_id):
            raise ValidationFailed("explicit provider or firm requires MANUAL or CLIENT_SPECIFIED assignment")
        if assignment_method != AssignmentMethod.AUTO and not (explicit_provider_id or explicit_firm_id):
            raise ValidationFailed(f"{assignment_method.value} assignment requires a provider or firm")

        now = utcnow()
        request = ServiceRequest(
            id=f"req-{uuid.uuid4().hex[:12]}",
            requester_id=requester_id,
            category=category.strip().upper(),
            description=description,
            assignment_method=assignment_method,
            budget=budget_value,
            deadline=deadline,
            allow_firm_assignment=allow_firm_assignment or explicit_firm_id is not None,
            explicit_provider_id=explicit_provider_id,
            explicit_firm_id=explicit_firm_id,
            created_at=now,
            updated_at=now,
        )

        decision = self.assignment.assign(request)
        assigned_by = SYSTEM_ACTOR if assignment_method == AssignmentMethod.AUTO else requester_id
        _apply_decision(request, decision, assigned_by)

        with self.db.transaction() as conn:
            _insert_request(conn, request)
            self.events.publish("request.pending", request.id, {"requester_id": requester_id}, conn=conn)
            self._publish_assigned(conn, request)

        logger.info("created %s (%s) -> %s", request.id, assignment_method.value, request.assigned_provider_id)
        return request

    # -- provider actions ------------------------------------------------------

    def accept(self, request_id: str, provider_id: str) -> ServiceRequest:
        """
        PENDING -> ACCEPTED, as a compare-and-set on (id, status, assignee)
        plus the assignee having free capacity.

        Raises:
            AlreadyAccepted: another accept won
            CapacityExceeded: provider workload already at max_capacity
            Forbidden: provider is not the assigned candidate
            InvalidStateTransition: request is past PENDING
        """
        now = utcnow()
        with self.db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE service_requests
                SET status = ?, accepted_at = ?, updated_at = ?, version = version + 1
                WHERE id = ? AND status = ? AND assigned_provider_id = ?
                  AND EXISTS (
                      SELECT 1 FROM providers
                      WHERE id = ? AND current_workload < max_capacity
                  )
                """,
                (
                    RequestStatus.ACCEPTED.value,
                    now,
                    now,
                    request_id,
                    RequestStatus.PENDING.value,
                    provider_id,
                    provider_id,
                ),
            ).rowcount

            if not updated:
                current = load_request(conn, request_id)
                if current.status == RequestStatus.ACCEPTED:
                    raise AlreadyAccepted(
                        f"request {request_id} was already accepted",
                        current=current.status.value,
                        target=RequestStatus.ACCEPTED.value,
                    )
                if current.status != RequestStatus.PENDING:
                    ensure_transition(current.status, RequestStatus.ACCEPTED)
                if current.assigned_provider_id == provider_id:
                    raise CapacityExceeded(f"{provider_id} is at capacity and cannot accept {request_id}")
                raise Forbidden(f"{provider_id} is not the assigned candidate for {request_id}")

            self.directory.adjust_workload(conn, provider_id, +1)
            request = load_request(conn, request_id)
            self.events.publish("request.accepted", request_id, {"provider_id": provider_id}, conn=conn)

        logger.info("%s accepted by %s", request_id, provider_id)
        return request

    def reject(self, request_id: str, provider_id: str, reason: str = "") -> ServiceRequest:
        """Decline a PENDING assignment; the request is reassigned without penalty."""
        with self.db.transaction() as conn:
            request = load_request(conn, request_id)
            if request.status != RequestStatus.PENDING:
                raise InvalidStateTransition(
                    f"only PENDING requests can be rejected, {request_id} is {request.status.value}",
                    current=request.status.value,
                    target=RequestStatus.PENDING.value,
                )
            self._require_assignee(request, provider_id)

            self.events.publish(
                "request.rejected", request_id, {"provider_id": provider_id, "reason": reason}, conn=conn
            )
            self._reassign(conn, request, provider_id, expected=RequestStatus.PENDING)

        logger.info("%s rejected by %s (%s)", request_id, provider_id, reason or "no reason")
        return request

    def start(self, request_id: str, provider_id: str) -> ServiceRequest:
        """ACCEPTED -> IN_PROGRESS."""
        return self._provider_transition(
            request_id, provider_id, RequestStatus.IN_PROGRESS, started_at=utcnow()
        )

    def complete(self, request_id: str, provider_id: str) -> ServiceRequest:
        """IN_PROGRESS -> COMPLETED; hands a captured payment to settlement."""
        return self._provider_transition(
            request_id, provider_id, RequestStatus.COMPLETED, completed_at=utcnow()
        )

    def abandon(
        self,
        request_id: str,
        provider_id: str,
        reason: AbandonmentReason,
        reason_text: str | None = None,
    ) -> AbandonOutcome:
        """
        Provider walks away from an ACCEPTED or IN_PROGRESS request.

        The penalty, workload release, ABANDONED -> PENDING return and the
        reassignment all commit together.
        """
        if reason == AbandonmentReason.OTHER and not (reason_text or "").strip():
            raise ValidationFailed("reason_text is required when the reason is OTHER")

        with self.db.transaction() as conn:
            request = load_request(conn, request_id)
            ensure_transition(request.status, RequestStatus.ABANDONED)
            self._require_assignee(request, provider_id)

            from_status = request.status
            penalty = self.reputation.apply_penalty(
                provider_id,
                self.reputation_config.penalty_for(from_status),
                from_abandonment=True,
                conn=conn,
            )
            self.directory.adjust_workload(conn, provider_id, -1)

            _guarded_update(conn, request, from_status, status=RequestStatus.ABANDONED)
            self.events.publish(
                "request.abandoned",
                request_id,
                {
                    "provider_id": provider_id,
                    "from_status": from_status.value,
                    "reason": reason.value,
                    "reason_text": reason_text,
                    "reputation_delta": penalty.applied_delta,
                },
                conn=conn,
            )

            ensure_transition(RequestStatus.ABANDONED, RequestStatus.PENDING)
            request.accepted_at = None
            request.started_at = None
            self._reassign(conn, request, provider_id, expected=RequestStatus.ABANDONED)

        logger.info(
            "%s abandoned by %s from %s (%s), reputation %+.2f, reassigned to %s",
            request_id,
            provider_id,
            from_status.value,
            reason.value,
            penalty.applied_delta,
            request.assigned_provider_id,
        )
        return AbandonOutcome(request, penalty.applied_delta, request.assigned_provider_id)

    # -- requester / operator actions ------------------------------------------

    def cancel(
        self,
        request_id: str,
        actor_id: str,
        reason: CancellationReason = CancellationReason.CLIENT_REQUEST,
    ) -> ServiceRequest:
        """Any non-terminal status -> CANCELLED; a captured payment gets a refund verdict."""
        with self.db.transaction() as conn:
            request = load_request(conn, request_id)
            ensure_transition(request.status, RequestStatus.CANCELLED)

            from_status = request.status
            if from_status in (RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS) and request.assigned_provider_id:
                self.directory.adjust_workload(conn, request.assigned_provider_id, -1)

            _guarded_update(
                conn,
                request,
                from_status,
                status=RequestStatus.CANCELLED,
                cancellation_reason=reason,
                cancelled_from=from_status,
                cancelled_by=actor_id,
                cancelled_at=utcnow(),
            )
            self.events.publish(
                "request.cancelled",
                request_id,
                {"actor_id": actor_id, "reason": reason.value, "from_status": from_status.value},
                conn=conn,
            )
            if self.settlement is not None:
                self.settlement.on_request_cancelled(request, conn)

        logger.info("%s cancelled by %s from %s (%s)", request_id, actor_id, from_status.value, reason.value)
        return request

    def assign(self, request_id: str, provider_id: str, assigned_by: str) -> ServiceRequest:
        """Operator assigns a PENDING request to a named provider."""
        with self.db.transaction() as conn:
            request = load_request(conn, request_id)
            if request.status != RequestStatus.PENDING:
                raise InvalidStateTransition(
                    f"only PENDING requests can be assigned, {request_id} is {request.status.value}",
                    current=request.status.value,
                    target=RequestStatus.PENDING.value,
                )
            decision = self.assignment.validate_explicit(request, provider_id)
            _apply_decision(request, decision, assigned_by)
            _guarded_update(
                conn,
                request,
                RequestStatus.PENDING,
                assigned_provider_id=request.assigned_provider_id,
                assigned_firm_id=request.assigned_firm_id,
                assigned_by=request.assigned_by,
                assignment_score=request.assignment_score,
            )
            self._publish_assigned(conn, request)

        logger.info("%s manually assigned to %s by %s", request_id, provider_id, assigned_by)
        return request

    # -- reads -------------------------------------------------------------------

    def get(self, request_id: str) -> ServiceRequest:
        with self.db.connect() as conn:
            return load_request(conn, request_id)

    def list_requests(
        self,
        status: RequestStatus | None = None,
        provider_id: str | None = None,
        limit: int = 100,
    ) -> list[ServiceRequest]:
        sql = "SELECT * FROM service_requests WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if provider_id is not None:
            sql += " AND assigned_provider_id = ?"
            params.append(provider_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [_row_to_request(row) for row in self.db.execute(sql, tuple(params))]

    # -- internals -----------------------------------------------------------------

    def _provider_transition(
        self,
        request_id: str,
        provider_id: str,
        target: RequestStatus,
        **stamps: str,
    ) -> ServiceRequest:
        with self.db.transaction() as conn:
            request = load_request(conn, request_id)
            ensure_transition(request.status, target)
            self._require_assignee(request, provider_id)

            _guarded_update(conn, request, request.status, status=target, **stamps)
            self.events.publish(f"request.{target.value.lower()}", request_id, {"provider_id": provider_id}, conn=conn)

            if target == RequestStatus.COMPLETED:
                self.directory.adjust_workload(conn, provider_id, -1)
                if self.settlement is not None:
                    self.settlement.on_request_completed(request, conn)

        logger.info("%s -> %s by %s", request_id, target.value, provider_id)
        return request

    def _reassign(
        self,
        conn: sqlite3.Connection,
        request: ServiceRequest,
        previous_assignee: str,
        expected: RequestStatus,
    ) -> None:
        """Clear the assignment, exclude the previous assignee and try again."""
        if previous_assignee not in request.excluded_provider_ids:
            request.excluded_provider_ids.append(previous_assignee)
        request.assigned_provider_id = None
        request.assigned_firm_id = None
        request.assigned_by = None
        request.assignment_score = None

        try:
            decision = self.assignment.reassign(request, previous_assignee)
        except NoEligibleProvider as exc:
            decision = None
            logger.warning("%s left unassigned: %s", request.id, exc)
        if decision is not None:
            _apply_decision(request, decision, SYSTEM_ACTOR)

        _guarded_update(
            conn,
            request,
            expected,
            status=RequestStatus.PENDING,
            excluded_provider_ids=request.excluded_provider_ids,
            assigned_provider_id=request.assigned_provider_id,
            assigned_firm_id=request.assigned_firm_id,
            assigned_by=request.assigned_by,
            assignment_score=request.assignment_score,
            accepted_at=request.accepted_at,
            started_at=request.started_at,
        )
        if expected != RequestStatus.PENDING:
            self.events.publish("request.pending", request.id, {"from_status": expected.value}, conn=conn)
        self._publish_assigned(conn, request)

    def _publish_assigned(self, conn: sqlite3.Connection, request: ServiceRequest) -> None:
        if request.assigned_provider_id is None:
            self.events.publish(
                "request.unassigned",
                request.id,
                {"excluded_provider_ids": list(request.excluded_provider_ids)},
                conn=conn,
            )
            return
        self.events.publish(
            "request.assigned",
            request.id,
            {
                "provider_id": request.assigned_provider_id,
                "firm_id": request.assigned_firm_id,
                "assigned_by": request.assigned_by,
                "score": request.assignment_score,
            },
            conn=conn,
        )

    @staticmethod
    def _require_assignee(request: ServiceRequest, provider_id: str) -> None:
        if request.assigned_provider_id != provider_id:
            raise Forbidden(f"{provider_id} is not the assignee of {request.id}")


def _apply_decision(request: ServiceRequest, decision: AssignmentDecision, assigned_by: str) -> None:
    request.assigned_provider_id = decision.provider_id
    request.assigned_firm_id = decision.firm_id
    request.assigned_by = assigned_by
    request.assignment_score = decision.score


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, list):
        return json.dumps(value)
    if isinstance(value, bool):
        return int(value)
    if hasattr(value, "value"):
        return value.value
    return value


def _guarded_update(
    conn: sqlite3.Connection,
    request: ServiceRequest,
    expected: RequestStatus,
    **changes: Any,
) -> None:
    """
    Write ``changes`` only if the row still has the status and version we read.

    Mutates ``request`` in place to match what was written.
    """
    now = utcnow()
    columns = ", ".join(f"{name} = ?" for name in changes)
    params = [_encode(value) for value in changes.values()]
    updated = conn.execute(
        f"""
        UPDATE service_requests
        SET {columns}, updated_at = ?, version = version + 1
        WHERE id = ? AND status = ? AND version = ?
        """,
        (*params, now, request.id, expected.value, request.version),
    ).rowcount
    if not updated:
        raise InvalidStateTransition(
            f"request {request.id} changed concurrently",
            current=expected.value,
            target=changes.get("status", expected).value,
        )
    for name, value in changes.items():
        setattr(request, name, value)
    request.updated_at = now
    request.version += 1


def _insert_request(conn: sqlite3.Connection, request: ServiceRequest) -> None:
    conn.execute(
        """
        INSERT INTO service_requests (
            id, requester_id, category, description, assignment_method, status,
            budget, deadline, allow_firm_assignment, explicit_provider_id,
            explicit_firm_id, assigned_provider_id, assigned_firm_id, assigned_by,
            assignment_score, excluded_provider_ids, version, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            request.id,
            request.requester_id,
            request.category,
            request.description,
            request.assignment_method.value,
            request.status.value,
            _encode(request.budget),
            request.deadline,
            int(request.allow_firm_assignment),
            request.explicit_provider_id,
            request.explicit_firm_id,
            request.assigned_provider_id,
            request.assigned_firm_id,
            request.assigned_by,
            request.assignment_score,
            json.dumps(request.excluded_provider_ids),
            request.version,
            request.created_at,
            request.updated_at,
        ),
    )


def load_request(conn: sqlite3.Connection, request_id: str) -> ServiceRequest:
    row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
    if row is None:
        raise NotFound(f"request {request_id} not found")
    return _row_to_request(row)


def _row_to_request(row: Any) -> ServiceRequest:
    reason = row["cancellation_reason"]
    cancelled_from = row["cancelled_from"]
    return ServiceRequest(
        id=row["id"],
        requester_id=row["requester_id"],
        category=row["category"],
        description=row["description"],
        assignment_method=AssignmentMethod(row["assignment_method"]),
        status=RequestStatus(row["status"]),
        budget=Decimal(row["budget"]) if row["budget"] is not None else None,
        deadline=row["deadline"],
        allow_firm_assignment=bool(row["allow_firm_assignment"]),
        explicit_provider_id=row["explicit_provider_id"],
        explicit_firm_id=row["explicit_firm_id"],
        assigned_provider_id=row["assigned_provider_id"],
        assigned_firm_id=row["assigned_firm_id"],
        assigned_by=row["assigned_by"],
        assignment_score=row["assignment_score"],
        excluded_provider_ids=json.loads(row["excluded_provider_ids"]),
        amount=Decimal(row["amount"]) if row["amount"] is not None else None,
        cancellation_reason=CancellationReason(reason) if reason else None,
        cancelled_from=RequestStatus(cancelled_from) if cancelled_from else None,
        cancelled_by=row["cancelled_by"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        accepted_at=row["accepted_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        cancelled_at=row["cancelled_at"],
    )


def request_to_dict(request: ServiceRequest) -> dict[str, Any]:
    """JSON-friendly view of a request (Decimals as strings)."""
    data = asdict(request)
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = str(value)
    data["payment_pending"] = request.payment_pending
    return data
