"""
SQLite-backed durable build queue.

One job per build id. A claim holds a lease that the owning pool renews while
the attempt runs. Jobs survive process restarts: an `active` job whose lease
has expired belongs to a dead process and is reclaimed by recover_stale(),
with the lost attempt counted against the job's attempt budget.

Claiming uses a conditional UPDATE (... WHERE state='waiting'), so exactly one
worker wins each job even with several pools sharing the database.

Logs only build_id, job_id, state and attempt counts - never payloads.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import or_

from buildforge.core.metrics import metrics
from buildforge.db.database import SessionLocal
from buildforge.db.models import QueueJob
from buildforge.schemas.build import QueueState

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_S = 2.0
DEFAULT_LEASE_S = 60.0
WORKER_LOST_MESSAGE = "Worker stopped before the attempt finished"
CLAIM_CANDIDATES = 5
MAX_LAST_ERROR_LENGTH = 1000

TERMINAL_QUEUE_STATES = (
    QueueState.COMPLETED.value,
    QueueState.FAILED.value,
    QueueState.CANCELLED.value,
)


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"  # Removed from the queue before any claim
    CANCEL_REQUESTED = "cancel_requested"  # Running; the executor will stop it
    ALREADY_TERMINAL = "already_terminal"
    NOT_FOUND = "not_found"


@dataclass
class QueuedJob:
    """In-memory view of a queue job."""
    id: str
    build_id: str
    state: QueueState
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    progress: int
    cancel_requested: bool
    claimed_by: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def attempt(self) -> int:
        """1-based number of the attempt currently being made."""
        return self.attempts + 1


@dataclass
class RecoveredJob:
    """An expired job and the state recovery moved it to."""
    build_id: str
    state: QueueState
    attempts: int


@dataclass
class FailOutcome:
    will_retry: bool
    attempts: int
    delay_s: float = 0.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _model_to_job(model: QueueJob) -> QueuedJob:
    return QueuedJob(
        id=model.id,
        build_id=model.build_id,
        state=QueueState(model.state),
        payload=json.loads(model.payload),
        attempts=model.attempts,
        max_attempts=model.max_attempts,
        progress=model.progress,
        cancel_requested=bool(model.cancel_requested),
        claimed_by=model.claimed_by,
        last_error=model.last_error,
    )


def backoff_delay(attempts: int, base_delay_s: float) -> float:
    """Exponential backoff after the given number of failed attempts."""
    return base_delay_s * (2 ** max(0, attempts - 1))


class BuildQueue:
    """Persisted FIFO of build jobs with retry and cancellation."""

    def __init__(
        self,
        base_delay_s: float = DEFAULT_BASE_DELAY_S,
        session_factory: Callable = SessionLocal,
        lease_s: float = DEFAULT_LEASE_S,
    ):
        self._base_delay_s = base_delay_s
        self.lease_s = lease_s
        self._session_factory = session_factory

    def enqueue(self, build_id: str, payload: dict[str, Any], max_attempts: int = 3) -> QueuedJob:
        """Add a waiting job for a build."""
        now = _now().isoformat()
        db = self._session_factory()
        try:
            model = QueueJob(
                build_id=build_id,
                id=str(uuid.uuid4()),
                state=QueueState.WAITING.value,
                payload=json.dumps(payload),
                attempts=0,
                max_attempts=max(1, max_attempts),
                progress=0,
                available_at=now,
                cancel_requested=0,
                created_at=now,
                updated_at=now,
            )
            db.add(model)
            db.commit()
            db.refresh(model)
            logger.info(
                f"job_enqueued build_id={build_id} job_id={model.id}",
                extra={"build_id": build_id, "job_id": model.id},
            )
            metrics.inc("builds_queued_total")
            return _model_to_job(model)
        finally:
            db.close()

    def claim(self, worker_id: str) -> Optional[QueuedJob]:
        """Claim the oldest available waiting job, or None."""
        claimed_at = _now()
        now = claimed_at.isoformat()
        lease_expires_at = (claimed_at + timedelta(seconds=self.lease_s)).isoformat()
        db = self._session_factory()
        try:
            candidates = (
                db.query(QueueJob.build_id)
                .filter(QueueJob.state == QueueState.WAITING.value, QueueJob.available_at <= now)
                .order_by(QueueJob.created_at.asc())
                .limit(CLAIM_CANDIDATES)
                .all()
            )
            for (build_id,) in candidates:
                won = (
                    db.query(QueueJob)
                    .filter(QueueJob.build_id == build_id, QueueJob.state == QueueState.WAITING.value)
                    .update(
                        {
                            QueueJob.state: QueueState.ACTIVE.value,
                            QueueJob.claimed_by: worker_id,
                            QueueJob.claimed_at: now,
                            QueueJob.lease_expires_at: lease_expires_at,
                            QueueJob.updated_at: now,
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
                if won == 1:
                    model = db.query(QueueJob).filter(QueueJob.build_id == build_id).first()
                    job = _model_to_job(model)
                    logger.info(
                        f"job_claimed build_id={build_id} worker_id={worker_id} attempt={job.attempt}",
                        extra={"build_id": build_id, "worker_id": worker_id, "attempt": job.attempt},
                    )
                    return job
            return None
        finally:
            db.close()

    def complete(self, build_id: str) -> None:
        self._set_state(build_id, QueueState.COMPLETED, progress=100)

    def mark_cancelled(self, build_id: str) -> None:
        self._set_state(build_id, QueueState.CANCELLED)

    def _set_state(self, build_id: str, state: QueueState, progress: Optional[int] = None) -> None:
        db = self._session_factory()
        try:
            model = db.query(QueueJob).filter(QueueJob.build_id == build_id).first()
            if model is None:
                return
            model.state = state.value
            model.lease_expires_at = None
            if progress is not None:
                model.progress = max(model.progress, progress)
            model.updated_at = _now().isoformat()
            db.commit()
            logger.info(f"job_{state.value} build_id={build_id}", extra={"build_id": build_id})
        finally:
            db.close()

    def fail(self, build_id: str, error: str, retryable: bool) -> FailOutcome:
        """
        Record a failed attempt. Retryable errors with attempts remaining go
        back to waiting after an exponential backoff; otherwise the job fails.
        """
        db = self._session_factory()
        try:
            model = db.query(QueueJob).filter(QueueJob.build_id == build_id).first()
            if model is None:
                return FailOutcome(will_retry=False, attempts=0)

            now = _now()
            model.attempts += 1
            model.last_error = (error or "")[:MAX_LAST_ERROR_LENGTH]
            model.claimed_by = None
            model.lease_expires_at = None
            model.updated_at = now.isoformat()

            will_retry = (
                retryable
                and model.attempts < model.max_attempts
                and not model.cancel_requested
            )
            delay = 0.0
            if will_retry:
                delay = backoff_delay(model.attempts, self._base_delay_s)
                model.state = QueueState.WAITING.value
                model.available_at = (now + timedelta(seconds=delay)).isoformat()
            else:
                model.state = QueueState.FAILED.value
            db.commit()

            logger.info(
                f"job_failed build_id={build_id} attempts={model.attempts}/{model.max_attempts} "
                f"will_retry={will_retry} delay_s={delay}",
                extra={"build_id": build_id, "attempt": model.attempts},
            )
            return FailOutcome(will_retry=will_retry, attempts=model.attempts, delay_s=delay)
        finally:
            db.close()

    def update_progress(self, build_id: str, value: int) -> int:
        """Raise stored progress to `value`. Never lowers it. Returns the stored value."""
        value = max(0, min(100, int(value)))
        db = self._session_factory()
        try:
            (
                db.query(QueueJob)
                .filter(QueueJob.build_id == build_id, QueueJob.progress < value)
                .update({QueueJob.progress: value}, synchronize_session=False)
            )
            db.commit()
            row = db.query(QueueJob.progress).filter(QueueJob.build_id == build_id).first()
            return row[0] if row else 0
        finally:
            db.close()

    def cancel(self, build_id: str) -> CancelOutcome:
        db = self._session_factory()
        try:
            now = _now().isoformat()
            removed = (
                db.query(QueueJob)
                .filter(QueueJob.build_id == build_id, QueueJob.state == QueueState.WAITING.value)
                .update(
                    {QueueJob.state: QueueState.CANCELLED.value, QueueJob.updated_at: now},
                    synchronize_session=False,
                )
            )
            db.commit()
            if removed == 1:
                logger.info(f"job_cancelled build_id={build_id}", extra={"build_id": build_id})
                return CancelOutcome.CANCELLED

            model = db.query(QueueJob).filter(QueueJob.build_id == build_id).first()
            if model is None:
                return CancelOutcome.NOT_FOUND
            if model.state in TERMINAL_QUEUE_STATES:
                return CancelOutcome.ALREADY_TERMINAL

            model.cancel_requested = 1
            model.updated_at = now
            db.commit()
            logger.info(f"job_cancel_requested build_id={build_id}", extra={"build_id": build_id})
            return CancelOutcome.CANCEL_REQUESTED
        finally:
            db.close()

    def is_cancel_requested(self, build_id: str) -> bool:
        db = self._session_factory()
        try:
            row = db.query(QueueJob.cancel_requested).filter(QueueJob.build_id == build_id).first()
            return bool(row and row[0])
        finally:
            db.close()

    def get(self, build_id: str) -> Optional[QueuedJob]:
        db = self._session_factory()
        try:
            model = db.query(QueueJob).filter(QueueJob.build_id == build_id).first()
            return _model_to_job(model) if model else None
        finally:
            db.close()

    def position(self, build_id: str) -> Optional[int]:
        """
        Number of waiting jobs ahead of this one plus one, 0 while active,
        None once the job is finished or unknown.
        """
        db = self._session_factory()
        try:
            model = db.query(QueueJob).filter(QueueJob.build_id == build_id).first()
            if model is None or model.state in TERMINAL_QUEUE_STATES:
                return None
            if model.state == QueueState.ACTIVE.value:
                return 0
            ahead = (
                db.query(QueueJob)
                .filter(
                    QueueJob.state == QueueState.WAITING.value,
                    QueueJob.created_at < model.created_at,
                )
                .count()
            )
            return ahead + 1
        finally:
            db.close()

    def count(self, state: QueueState) -> int:
        db = self._session_factory()
        try:
            return db.query(QueueJob).filter(QueueJob.state == state.value).count()
        finally:
            db.close()

    def renew_leases(self, owners: dict[str, str]) -> int:
        """Extend the lease of active jobs still held by the given workers (build_id -> worker_id)."""
        if not owners:
            return 0
        now = _now()
        lease_expires_at = (now + timedelta(seconds=self.lease_s)).isoformat()
        renewed = 0
        db = self._session_factory()
        try:
            for build_id, worker_id in owners.items():
                renewed += (
                    db.query(QueueJob)
                    .filter(
                        QueueJob.build_id == build_id,
                        QueueJob.state == QueueState.ACTIVE.value,
                        QueueJob.claimed_by == worker_id,
                    )
                    .update(
                        {QueueJob.lease_expires_at: lease_expires_at, QueueJob.updated_at: now.isoformat()},
                        synchronize_session=False,
                    )
                )
            db.commit()
            return renewed
        finally:
            db.close()

    def recover_stale(self, now: Optional[datetime] = None) -> list[RecoveredJob]:
        """
        Reclaim active jobs whose lease has expired.

        The interrupted attempt counts as a failed one: the job goes back to
        waiting while attempts remain, fails once they are used up, and is
        cancelled when a cancel was requested. Jobs with a live lease are left
        alone, whichever process holds them. `now` sets the expiry cutoff.
        """
        updated_at = _now().isoformat()
        expired_before = (now or _now()).isoformat()
        db = self._session_factory()
        try:
            expired = (
                db.query(QueueJob)
                .filter(
                    QueueJob.state == QueueState.ACTIVE.value,
                    or_(QueueJob.lease_expires_at.is_(None), QueueJob.lease_expires_at < expired_before),
                )
                .all()
            )
            recovered: list[RecoveredJob] = []
            for model in expired:
                attempts = model.attempts + 1
                if model.cancel_requested:
                    state = QueueState.CANCELLED
                elif attempts < model.max_attempts:
                    state = QueueState.WAITING
                else:
                    state = QueueState.FAILED
                # Conditional on the lease read above, so a renewal in between wins
                won = (
                    db.query(QueueJob)
                    .filter(
                        QueueJob.build_id == model.build_id,
                        QueueJob.state == QueueState.ACTIVE.value,
                        QueueJob.lease_expires_at == model.lease_expires_at,
                    )
                    .update(
                        {
                            QueueJob.state: state.value,
                            QueueJob.attempts: attempts,
                            QueueJob.claimed_by: None,
                            QueueJob.lease_expires_at: None,
                            QueueJob.last_error: WORKER_LOST_MESSAGE,
                            QueueJob.available_at: updated_at,
                            QueueJob.updated_at: updated_at,
                        },
                        synchronize_session=False,
                    )
                )
                if won == 1:
                    recovered.append(RecoveredJob(build_id=model.build_id, state=state, attempts=attempts))
            db.commit()
            for job in recovered:
                logger.info(
                    f"job_recovered build_id={job.build_id} state={job.state.value} attempts={job.attempts}",
                    extra={"build_id": job.build_id, "attempt": job.attempts},
                )
            return recovered
        finally:
            db.close()

    def delete(self, build_id: str) -> bool:
        db = self._session_factory()
        try:
            deleted = db.query(QueueJob).filter(QueueJob.build_id == build_id).delete()
            db.commit()
            return deleted > 0
        finally:
            db.close()
