"""TypedDict models for audit store records."""

from typing import TypedDict


class RemediationAttemptRecord(TypedDict):
    id: int
    anomaly_kind: str
    action: str
    attempt: int
    started_at: str  # ISO 8601
    finished_at: str  # ISO 8601
    outcome: str  # success | failure | skipped
    error: str | None
