"""
Reputation Tracker - abandonment penalties and client star ratings.

Two separate numeric channels live on each provider:
- reputation_score (0.0-5.0): lowered by abandonment penalties only
- average_rating (0.0-5.0): running mean of client-submitted 1-5 star reviews

Neither channel ever writes the other.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from marketplace.errors import NotFound, ValidationFailed
from marketplace.storage.database import Database

logger = logging.getLogger(__name__)

MIN_SCORE = 0.0
MAX_SCORE = 5.0


def clamp_score(score: float, delta: float) -> float:
    """New reputation after applying ``delta``, clamped to [0.0, 5.0]."""
    return round(min(MAX_SCORE, max(MIN_SCORE, score + delta)), 4)


@dataclass(frozen=True)
class PenaltyResult:
    provider_id: str
    previous_score: float
    new_score: float
    abandonment_count: int

    @property
    def applied_delta(self) -> float:
        """Delta actually applied after clamping (0.0 when already at the floor)."""
        return round(self.new_score - self.previous_score, 4)


@dataclass(frozen=True)
class RatingResult:
    provider_id: str
    average_rating: float
    rating_count: int


class ReputationTracker:
    def __init__(self, db: Database) -> None:
        self.db = db

    def apply_penalty(
        self,
        provider_id: str,
        delta: float,
        from_abandonment: bool = False,
        conn: sqlite3.Connection | None = None,
    ) -> PenaltyResult:
        """
        Add a (non-positive) delta to the provider's reputation score.

        Runs inside ``conn`` when given so the penalty commits or rolls back
        together with the state transition that caused it.
        """
        if delta > 0:
            raise ValidationFailed(f"penalty delta must be <= 0, got {delta}")
        if conn is None:
            with self.db.transaction() as own:
                return self._apply(own, provider_id, delta, from_abandonment)
        return self._apply(conn, provider_id, delta, from_abandonment)

    def _apply(
        self,
        conn: sqlite3.Connection,
        provider_id: str,
        delta: float,
        from_abandonment: bool,
    ) -> PenaltyResult:
        row = conn.execute(
            "SELECT reputation_score, abandonment_count FROM providers WHERE id = ?",
            (provider_id,),
        ).fetchone()
        if row is None:
            raise NotFound(f"provider {provider_id} not found")

        previous = row["reputation_score"]
        new_score = clamp_score(previous, delta)
        count = row["abandonment_count"] + (1 if from_abandonment else 0)
        conn.execute(
            "UPDATE providers SET reputation_score = ?, abandonment_count = ? WHERE id = ?",
            (new_score, count, provider_id),
        )
        logger.info(
            "reputation %s: %.2f -> %.2f (abandonments=%d)", provider_id, previous, new_score, count
        )
        return PenaltyResult(provider_id, previous, new_score, count)

    def record_rating(self, provider_id: str, stars: int) -> RatingResult:
        """Fold one client review into the running average rating."""
        if isinstance(stars, bool) or not isinstance(stars, int) or not 1 <= stars <= 5:
            raise ValidationFailed(f"stars must be an integer 1-5, got {stars!r}")

        with self.db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE providers
                SET average_rating = (average_rating * rating_count + ?) / (rating_count + 1),
                    rating_count = rating_count + 1
                WHERE id = ?
                """,
                (stars, provider_id),
            ).rowcount
            if not updated:
                raise NotFound(f"provider {provider_id} not found")
            row = conn.execute(
                "SELECT average_rating, rating_count FROM providers WHERE id = ?",
                (provider_id,),
            ).fetchone()
        return RatingResult(provider_id, row["average_rating"], row["rating_count"])
