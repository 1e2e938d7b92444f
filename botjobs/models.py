"""
Data models for the bot job engine.
"""
import json
from typing import Optional, Dict, Any

from botjobs.utils import now_iso

# Job statuses
PENDING = "pending"
IN_FLIGHT = "in_flight"
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, IN_FLIGHT, COMPLETED, FAILED)
TERMINAL_STATUSES = (COMPLETED, FAILED)

# Longest error reason kept on a failed job
MAX_ERROR_LENGTH = 500


class Job:
    """
    Represents a bot job in the queue.

    Attributes:
        id: Unique identifier for the job
        kind: Selects the action handler that runs this job
        payload: Kind-specific data for the handler (room, bot identity, move...)
        status: Current status (pending, in_flight, completed, failed)
        attempts: Number of times the job has been claimed
        dedupe_key: Optional enqueue key; a second enqueue with the same key is a no-op
        created_at: When the job was enqueued
        updated_at: When the job was last written
        claimed_at: When the current (or last) claim was taken
        completed_at: When the job reached a terminal status
        error: Last failure reason, only set when status is failed
    """

    def __init__(
        self,
        id: str,
        kind: str,
        payload: Optional[Dict[str, Any]] = None,
        status: str = PENDING,
        attempts: int = 0,
        dedupe_key: Optional[str] = None,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
        claimed_at: Optional[str] = None,
        completed_at: Optional[str] = None,
        error: Optional[str] = None
    ):
        self.id = id
        self.kind = kind
        self.payload = payload if payload is not None else {}
        self.status = status
        self.attempts = attempts
        self.dedupe_key = dedupe_key
        self.created_at = created_at or now_iso()
        self.updated_at = updated_at or self.created_at
        self.claimed_at = claimed_at
        self.completed_at = completed_at
        self.error = error

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert Job to dictionary for display and JSON output."""
        return {
            'id': self.id,
            'kind': self.kind,
            'payload': self.payload,
            'status': self.status,
            'attempts': self.attempts,
            'dedupe_key': self.dedupe_key,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'claimed_at': self.claimed_at,
            'completed_at': self.completed_at,
            'error': self.error
        }

    @classmethod
    def from_row(cls, row) -> "Job":
        """Create Job from a database row (payload is stored as JSON text)."""
        data = dict(row)
        payload = data.get('payload')
        return cls(
            id=data['id'],
            kind=data['kind'],
            payload=json.loads(payload) if payload else {},
            status=data['status'],
            attempts=data['attempts'],
            dedupe_key=data.get('dedupe_key'),
            created_at=data['created_at'],
            updated_at=data['updated_at'],
            claimed_at=data.get('claimed_at'),
            completed_at=data.get('completed_at'),
            error=data.get('error')
        )

    def __repr__(self):
        return f"Job(id={self.id}, kind={self.kind}, status={self.status}, attempts={self.attempts})"


class Outcome:
    """
    Result of executing one claimed job.

    Attributes:
        job_id: The job the outcome belongs to
        status: completed or failed
        reason: Failure reason (None when completed)
    """

    def __init__(self, job_id: str, status: str, reason: Optional[str] = None):
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Outcome status must be terminal, got {status!r}")
        self.job_id = job_id
        self.status = status
        self.reason = reason

    @classmethod
    def completed(cls, job_id: str) -> "Outcome":
        return cls(job_id, COMPLETED)

    @classmethod
    def failed(cls, job_id: str, reason: str) -> "Outcome":
        return cls(job_id, FAILED, str(reason)[:MAX_ERROR_LENGTH])

    @property
    def ok(self) -> bool:
        return self.status == COMPLETED

    def __repr__(self):
        if self.reason:
            return f"Outcome(job_id={self.job_id}, status={self.status}, reason={self.reason!r})"
        return f"Outcome(job_id={self.job_id}, status={self.status})"


class RunResult:
    """Aggregate counts for one processing run."""

    def __init__(self, processed: int = 0, failed: int = 0):
        self.processed = processed
        self.failed = failed

    @property
    def claimed(self) -> int:
        return self.processed + self.failed

    def add(self, outcome: Outcome) -> None:
        if outcome.ok:
            self.processed += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, int]:
        return {'processed': self.processed, 'failed': self.failed}

    def __eq__(self, other):
        if isinstance(other, RunResult):
            return self.to_dict() == other.to_dict()
        if isinstance(other, dict):
            return self.to_dict() == other
        return NotImplemented

    # Mutable counts, so not hashable
    __hash__ = None

    def __repr__(self):
        return f"RunResult(processed={self.processed}, failed={self.failed})"
