"""Exception taxonomy for the gamification ledger."""

from __future__ import annotations


class GamificationError(Exception):
    """Base class for ledger errors surfaced to the HTTP layer."""

    status_code = 500


class ProfileNotFound(GamificationError):
    status_code = 404

    def __init__(self, student_id: str):
        super().__init__(f"Student profile not found: {student_id}")
        self.student_id = student_id


class InvalidAmount(GamificationError):
    """Non-positive XP grant or multiplier. Raised before any write."""

    status_code = 400


class ConcurrentUpdateConflict(GamificationError):
    """Transaction retries exhausted under lock contention. Safe to retry later."""

    status_code = 503


class CriteriaEvaluationError(GamificationError):
    """An achievement or badge references criteria the evaluator cannot check."""

    status_code = 422
