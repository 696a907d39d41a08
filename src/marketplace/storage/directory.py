"""Provider directory - provider, firm, membership and approval facts."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from marketplace.errors import NotFound, ValidationFailed
from marketplace.models import (
    Firm,
    FirmMembership,
    IndependentWorkPolicy,
    MemberRole,
    Provider,
    VerificationStatus,
)
from marketplace.storage.database import Database, utcnow


class ProviderDirectory:
    """
    Read/write surface over the provider and firm tables.

    The engine only reads snapshots from here (plus workload bookkeeping);
    profile management proper belongs to the surrounding CRUD layer.
    """

    def __init__(self, db: Database, initial_score: float = 5.0) -> None:
        self.db = db
        self.initial_score = initial_score

    def add_provider(
        self,
        name: str,
        specializations: Sequence[str] = (),
        experience_years: int = 0,
        hourly_rate: Decimal | int | str = 0,
        verification_status: VerificationStatus = VerificationStatus.VERIFIED,
        verified_at: str | None = None,
        average_rating: float = 0.0,
        rating_count: int = 0,
        max_capacity: int = 5,
        current_workload: int = 0,
        withholding_exempt: bool = False,
        reputation_score: float | None = None,
        provider_id: str | None = None,
    ) -> Provider:
        """Register a provider snapshot and return it."""
        if not name.strip():
            raise ValidationFailed("provider name is required")
        if experience_years < 0 or max_capacity < 0 or current_workload < 0:
            raise ValidationFailed("experience, capacity and workload must be >= 0")
        if not 0.0 <= average_rating <= 5.0:
            raise ValidationFailed(f"average_rating must be in [0.0, 5.0], got {average_rating}")

        provider_id = provider_id or f"prov-{uuid.uuid4().hex[:8]}"
        if reputation_score is None:
            reputation_score = self.initial_score
        now = utcnow()
        if verification_status == VerificationStatus.VERIFIED and verified_at is None:
            verified_at = now

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO providers (
                    id, name, specializations, experience_years, hourly_rate,
                    verification_status, verified_at, reputation_score,
                    average_rating, rating_count, max_capacity, current_workload,
                    withholding_exempt, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    provider_id,
                    name,
                    json.dumps([s.upper() for s in specializations]),
                    experience_years,
                    str(Decimal(str(hourly_rate))),
                    verification_status.value,
                    verified_at,
                    reputation_score,
                    average_rating,
                    rating_count,
                    max_capacity,
                    current_workload,
                    int(withholding_exempt),
                    now,
                ),
            )
        return self.get_provider(provider_id)

    def add_firm(
        self,
        name: str,
        commission_percent: Decimal | int | str = 0,
        independent_work_policy: IndependentWorkPolicy = IndependentWorkPolicy.NO_INDEPENDENT_WORK,
        minimum_ca_required: int | None = None,
        restricted_clients: Sequence[str] = (),
        verification_status: VerificationStatus = VerificationStatus.VERIFIED,
        verified_at: str | None = None,
        firm_id: str | None = None,
    ) -> Firm:
        commission = Decimal(str(commission_percent))
        if not 0 <= commission <= 100:
            raise ValidationFailed(f"commission_percent must be in [0, 100], got {commission}")
        if minimum_ca_required is not None and minimum_ca_required < 1:
            raise ValidationFailed("minimum_ca_required must be >= 1")

        firm_id = firm_id or f"firm-{uuid.uuid4().hex[:8]}"
        now = utcnow()
        if verification_status == VerificationStatus.VERIFIED and verified_at is None:
            verified_at = now

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO firms (
                    id, name, verification_status, verified_at, commission_percent,
                    independent_work_policy, minimum_ca_required, restricted_clients, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    firm_id,
                    name,
                    verification_status.value,
                    verified_at,
                    str(commission),
                    independent_work_policy.value,
                    minimum_ca_required,
                    json.dumps(list(restricted_clients)),
                    now,
                ),
            )
        return self.get_firm(firm_id)

    def add_member(
        self,
        firm_id: str,
        provider_id: str,
        role: MemberRole = MemberRole.ASSOCIATE,
        independent_work_policy: IndependentWorkPolicy | None = None,
        is_active: bool = True,
    ) -> FirmMembership:
        """Attach a provider to a firm; a provider belongs to at most one firm."""
        self.get_firm(firm_id)
        provider = self.get_provider(provider_id)
        if provider.firm_id and provider.firm_id != firm_id:
            raise ValidationFailed(f"{provider_id} already belongs to {provider.firm_id}")

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO firm_memberships
                    (firm_id, provider_id, role, independent_work_policy, is_active, joined_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(firm_id, provider_id) DO UPDATE SET
                    role = excluded.role,
                    independent_work_policy = excluded.independent_work_policy,
                    is_active = excluded.is_active
                """,
                (
                    firm_id,
                    provider_id,
                    role.value,
                    independent_work_policy.value if independent_work_policy else None,
                    int(is_active),
                    utcnow(),
                ),
            )
            conn.execute("UPDATE providers SET firm_id = ? WHERE id = ?", (firm_id, provider_id))
        return FirmMembership(
            firm_id=firm_id,
            provider_id=provider_id,
            role=role,
            independent_work_policy=independent_work_policy,
            is_active=is_active,
        )

    def grant_approval(self, firm_id: str, provider_id: str, requester_id: str, approved_by: str) -> None:
        """Record an out-of-band independent-work approval for one client."""
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO independent_work_approvals
                    (firm_id, provider_id, requester_id, approved_by, approved_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (firm_id, provider_id, requester_id, approved_by, utcnow()),
            )

    def has_approval(self, firm_id: str, provider_id: str, requester_id: str) -> bool:
        rows = self.db.execute(
            """
            SELECT 1 FROM independent_work_approvals
            WHERE firm_id = ? AND provider_id = ? AND requester_id = ?
            """,
            (firm_id, provider_id, requester_id),
        )
        return bool(rows)

    def get_provider(self, provider_id: str) -> Provider:
        rows = self.db.execute("SELECT * FROM providers WHERE id = ?", (provider_id,))
        if not rows:
            raise NotFound(f"provider {provider_id} not found")
        return _row_to_provider(rows[0])

    def get_firm(self, firm_id: str) -> Firm:
        rows = self.db.execute("SELECT * FROM firms WHERE id = ?", (firm_id,))
        if not rows:
            raise NotFound(f"firm {firm_id} not found")
        return _row_to_firm(rows[0])

    def list_providers(self) -> list[Provider]:
        rows = self.db.execute("SELECT * FROM providers ORDER BY created_at, id")
        return [_row_to_provider(row) for row in rows]

    def list_firms(self) -> list[Firm]:
        rows = self.db.execute("SELECT * FROM firms ORDER BY created_at, id")
        return [_row_to_firm(row) for row in rows]

    def memberships(self, firm_id: str, active_only: bool = True) -> list[FirmMembership]:
        sql = "SELECT * FROM firm_memberships WHERE firm_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        rows = self.db.execute(sql + " ORDER BY joined_at, provider_id", (firm_id,))
        return [_row_to_membership(row) for row in rows]

    def membership_of(self, provider_id: str) -> FirmMembership | None:
        rows = self.db.execute(
            "SELECT * FROM firm_memberships WHERE provider_id = ? AND is_active = 1",
            (provider_id,),
        )
        return _row_to_membership(rows[0]) if rows else None

    def firm_members(self, firm_id: str) -> list[Provider]:
        """Active members of a firm as provider snapshots."""
        rows = self.db.execute(
            """
            SELECT p.* FROM providers p
            JOIN firm_memberships m ON m.provider_id = p.id
            WHERE m.firm_id = ? AND m.is_active = 1
            ORDER BY m.joined_at, p.id
            """,
            (firm_id,),
        )
        return [_row_to_provider(row) for row in rows]

    def adjust_workload(self, conn: sqlite3.Connection, provider_id: str, delta: int) -> None:
        """Shift a provider's workload inside the caller's transaction, floored at 0."""
        conn.execute(
            "UPDATE providers SET current_workload = MAX(0, current_workload + ?) WHERE id = ?",
            (delta, provider_id),
        )


def _row_to_provider(row: Any) -> Provider:
    return Provider(
        id=row["id"],
        name=row["name"],
        specializations=json.loads(row["specializations"]),
        experience_years=row["experience_years"],
        hourly_rate=Decimal(row["hourly_rate"]),
        verification_status=VerificationStatus(row["verification_status"]),
        verified_at=row["verified_at"],
        reputation_score=row["reputation_score"],
        abandonment_count=row["abandonment_count"],
        average_rating=row["average_rating"],
        rating_count=row["rating_count"],
        firm_id=row["firm_id"],
        max_capacity=row["max_capacity"],
        current_workload=row["current_workload"],
        withholding_exempt=bool(row["withholding_exempt"]),
    )


def _row_to_firm(row: Any) -> Firm:
    return Firm(
        id=row["id"],
        name=row["name"],
        verification_status=VerificationStatus(row["verification_status"]),
        verified_at=row["verified_at"],
        commission_percent=Decimal(row["commission_percent"]),
        independent_work_policy=IndependentWorkPolicy(row["independent_work_policy"]),
        minimum_ca_required=row["minimum_ca_required"],
        restricted_clients=json.loads(row["restricted_clients"]),
    )


def _row_to_membership(row: Any) -> FirmMembership:
    policy = row["independent_work_policy"]
    return FirmMembership(
        firm_id=row["firm_id"],
        provider_id=row["provider_id"],
        role=MemberRole(row["role"]),
        independent_work_policy=IndependentWorkPolicy(policy) if policy else None,
        is_active=bool(row["is_active"]),
    )
