"""Observability store for the loyalty job scheduler."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, List


_RECENT_ERROR_LIMIT = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobRunSnapshot:
    """Serializable view of one scheduled job's history."""

    job_id: str
    task: str
    totals: Dict[str, int]
    runtime_seconds: float
    last_started_at: datetime | None
    last_success_at: datetime | None
    last_error_at: datetime | None
    last_error: str | None
    last_attempts: int
    last_retry_delay_seconds: float | None
    last_summary: Dict[str, Any] | None
    recent_errors: List[str]

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": self.totals,
            "runtime_seconds": self.runtime_seconds,
            "last_started_at": _iso(self.last_started_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_attempts": self.last_attempts,
            "last_retry_delay_seconds": self.last_retry_delay_seconds,
            "last_summary": self.last_summary,
            "recent_errors": list(self.recent_errors),
        }


@dataclass
class SchedulerSnapshot:
    totals: Dict[str, int]
    jobs: Dict[str, JobRunSnapshot]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "jobs": {job_id: snapshot.as_dict() for job_id, snapshot in self.jobs.items()},
        }


@dataclass
class _JobState:
    job_id: str
    task: str
    runs: int = 0
    success: int = 0
    run_failures: int = 0
    attempt_failures: int = 0
    retries: int = 0
    consecutive_failures: int = 0
    runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0
    last_retry_delay_seconds: float | None = None
    last_summary: Dict[str, Any] | None = None
    recent_errors: Deque[str] = field(default_factory=lambda: deque(maxlen=_RECENT_ERROR_LIMIT))

    def snapshot(self) -> JobRunSnapshot:
        return JobRunSnapshot(
            job_id=self.job_id,
            task=self.task,
            totals={
                "runs": self.runs,
                "success": self.success,
                "run_failures": self.run_failures,
                "attempt_failures": self.attempt_failures,
                "retries": self.retries,
                "consecutive_failures": self.consecutive_failures,
            },
            runtime_seconds=self.runtime_seconds,
            last_started_at=self.last_started_at,
            last_success_at=self.last_success_at,
            last_error_at=self.last_error_at,
            last_error=self.last_error,
            last_attempts=self.last_attempts,
            last_retry_delay_seconds=self.last_retry_delay_seconds,
            last_summary=dict(self.last_summary) if self.last_summary is not None else None,
            recent_errors=list(self.recent_errors),
        )


class LoyaltySchedulerObservabilityStore:
    """Tracks dispatch, retry and outcome metrics for scheduled loyalty jobs."""

    def __init__(self) -> None:
        self._lock: Lock = Lock()
        self._jobs: Dict[str, _JobState] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def _state(self, job_id: str, task: str) -> _JobState:
        state = self._jobs.get(job_id)
        if state is None:
            state = _JobState(job_id=job_id, task=task)
            self._jobs[job_id] = state
        state.task = task
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.runs += 1
            state.last_started_at = _utcnow()
            state.last_attempts = 0
            state.last_retry_delay_seconds = None

    def record_attempt_failure(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.attempt_failures += 1
            state.consecutive_failures += 1
            state.last_attempts = attempts
            state.last_error = error
            state.last_error_at = _utcnow()
            state.recent_errors.append(error)

    def record_retry(self, job_id: str, task: str, *, delay_seconds: float, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.retries += 1
            state.last_retry_delay_seconds = delay_seconds
            state.last_attempts = attempts

    def record_success(
        self,
        job_id: str,
        task: str,
        *,
        runtime_seconds: float,
        attempts: int,
        summary: Dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.success += 1
            state.runtime_seconds += runtime_seconds
            state.last_success_at = _utcnow()
            state.last_attempts = attempts
            state.last_summary = summary
            state.consecutive_failures = 0
            state.last_error = None
            state.last_error_at = None

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.run_failures += 1
            state.runtime_seconds += runtime_seconds
            state.last_attempts = attempts
            state.last_error = error
            state.last_error_at = _utcnow()

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            jobs = {job_id: state.snapshot() for job_id, state in self._jobs.items()}
            states = list(self._jobs.values())
            totals = {
                "runs": sum(state.runs for state in states),
                "success": sum(state.success for state in states),
                "run_failures": sum(state.run_failures for state in states),
                "attempt_failures": sum(state.attempt_failures for state in states),
                "retries": sum(state.retries for state in states),
            }
        return SchedulerSnapshot(totals=totals, jobs=jobs)


_SCHEDULER_STORE = LoyaltySchedulerObservabilityStore()


def get_scheduler_store() -> LoyaltySchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = [
    "JobRunSnapshot",
    "LoyaltySchedulerObservabilityStore",
    "SchedulerSnapshot",
    "get_scheduler_store",
]
