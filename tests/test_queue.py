"""
Tests for the persisted build queue.
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from buildforge.core.metrics import metrics
from buildforge.core.queue import WORKER_LOST_MESSAGE, BuildQueue, CancelOutcome, backoff_delay
from buildforge.schemas.build import QueueState

PAYLOAD = {"project_id": "proj-1"}


@pytest.fixture
def queue():
    return BuildQueue(base_delay_s=0)


# =============================================================================
# Claiming
# =============================================================================

class TestClaim:
    """Tests for FIFO claiming."""

    def test_enqueue_and_claim(self, queue):
        queued_before = metrics.get("builds_queued_total")
        job = queue.enqueue("b1", PAYLOAD, max_attempts=3)
        assert job.state == QueueState.WAITING
        assert metrics.get("builds_queued_total") == queued_before + 1

        claimed = queue.claim("worker-0")
        assert claimed.build_id == "b1"
        assert claimed.state == QueueState.ACTIVE
        assert claimed.claimed_by == "worker-0"
        assert claimed.payload == PAYLOAD
        assert claimed.attempt == 1
        assert queue.claim("worker-1") is None

    def test_claims_oldest_first(self, queue):
        for build_id in ("b1", "b2", "b3"):
            queue.enqueue(build_id, PAYLOAD)
        assert [queue.claim("w").build_id for _ in range(3)] == ["b1", "b2", "b3"]

    def test_concurrent_claims_are_exclusive(self, queue):
        """Test that each job is claimed by exactly one worker."""
        for i in range(10):
            queue.enqueue(f"b{i}", PAYLOAD)

        claimed: list[str] = []
        lock = threading.Lock()

        def worker(worker_id):
            while True:
                job = queue.claim(worker_id)
                if job is None:
                    return
                with lock:
                    claimed.append(job.build_id)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(f"b{i}" for i in range(10))

    def test_position(self, queue):
        """Test queue positions for waiting, active and finished jobs."""
        for build_id in ("b1", "b2", "b3"):
            queue.enqueue(build_id, PAYLOAD)
        assert queue.position("b3") == 3

        queue.claim("w")
        assert queue.position("b1") == 0
        assert queue.position("b2") == 1
        assert queue.position("b3") == 2

        queue.complete("b1")
        assert queue.position("b1") is None
        assert queue.position("missing") is None

    def test_counts(self, queue):
        queue.enqueue("b1", PAYLOAD)
        queue.enqueue("b2", PAYLOAD)
        queue.claim("w")
        assert queue.count(QueueState.WAITING) == 1
        assert queue.count(QueueState.ACTIVE) == 1


# =============================================================================
# Failure and retry
# =============================================================================

class TestRetry:
    """Tests for retry with exponential backoff."""

    def test_backoff_delay(self):
        assert [backoff_delay(n, 2.0) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_retryable_failure_returns_to_waiting(self, queue):
        queue.enqueue("b1", PAYLOAD, max_attempts=3)
        queue.claim("w")

        outcome = queue.fail("b1", "exit 1", retryable=True)

        assert outcome.will_retry is True
        assert outcome.attempts == 1
        job = queue.get("b1")
        assert job.state == QueueState.WAITING
        assert job.last_error == "exit 1"
        assert job.claimed_by is None
        assert queue.claim("w").attempt == 2

    def test_attempts_are_bounded(self, queue):
        """Test that max_attempts is the total number of attempts."""
        queue.enqueue("b1", PAYLOAD, max_attempts=3)
        outcomes = []
        for _ in range(3):
            assert queue.claim("w") is not None
            outcomes.append(queue.fail("b1", "exit 1", retryable=True))

        assert [o.will_retry for o in outcomes] == [True, True, False]
        assert queue.get("b1").state == QueueState.FAILED
        assert queue.get("b1").attempts == 3
        assert queue.claim("w") is None

    def test_backoff_delays_next_claim(self):
        """Test that a retried job is not claimable before its delay."""
        queue = BuildQueue(base_delay_s=60)
        queue.enqueue("b1", PAYLOAD)
        queue.claim("w")
        outcome = queue.fail("b1", "exit 1", retryable=True)
        assert outcome.delay_s == 60
        assert queue.claim("w") is None

    def test_non_retryable_failure_is_final(self, queue):
        queue.enqueue("b1", PAYLOAD, max_attempts=3)
        queue.claim("w")
        outcome = queue.fail("b1", "bad config", retryable=False)
        assert outcome.will_retry is False
        assert queue.get("b1").state == QueueState.FAILED

    def test_cancel_requested_prevents_retry(self, queue):
        queue.enqueue("b1", PAYLOAD, max_attempts=3)
        queue.claim("w")
        queue.cancel("b1")
        assert queue.fail("b1", "killed", retryable=True).will_retry is False


# =============================================================================
# Progress, cancellation, recovery
# =============================================================================

class TestProgress:
    """Tests for monotonic progress."""

    def test_progress_never_decreases(self, queue):
        queue.enqueue("b1", PAYLOAD)
        assert queue.update_progress("b1", 30) == 30
        assert queue.update_progress("b1", 10) == 30
        assert queue.update_progress("b1", 250) == 100
        assert queue.get("b1").progress == 100

    def test_progress_survives_retry(self, queue):
        """Test that a new attempt starts from the stored progress."""
        queue.enqueue("b1", PAYLOAD)
        queue.claim("w")
        queue.update_progress("b1", 60)
        queue.fail("b1", "exit 1", retryable=True)
        assert queue.claim("w").progress == 60


class TestCancel:
    """Tests for cancel outcomes."""

    def test_cancel_waiting_job(self, queue):
        queue.enqueue("b1", PAYLOAD)
        assert queue.cancel("b1") == CancelOutcome.CANCELLED
        assert queue.get("b1").state == QueueState.CANCELLED
        assert queue.claim("w") is None

    def test_cancel_active_job_sets_flag(self, queue):
        queue.enqueue("b1", PAYLOAD)
        queue.claim("w")
        assert queue.cancel("b1") == CancelOutcome.CANCEL_REQUESTED
        assert queue.is_cancel_requested("b1") is True
        assert queue.get("b1").state == QueueState.ACTIVE

    def test_cancel_finished_or_unknown(self, queue):
        queue.enqueue("b1", PAYLOAD)
        queue.claim("w")
        queue.complete("b1")
        assert queue.cancel("b1") == CancelOutcome.ALREADY_TERMINAL
        assert queue.cancel("missing") == CancelOutcome.NOT_FOUND
        assert queue.is_cancel_requested("missing") is False


class TestRecovery:
    """Tests for lease expiry and restart recovery."""

    def _after_lease(self, queue, leases=1):
        return datetime.now(timezone.utc) + timedelta(seconds=queue.lease_s * leases + 1)

    def test_live_lease_is_left_alone(self, queue):
        """Test that a job claimed by a running process is never reclaimed."""
        queue.enqueue("b1", PAYLOAD)
        queue.claim("other-process")

        assert queue.recover_stale() == []
        job = queue.get("b1")
        assert job.state == QueueState.ACTIVE
        assert job.claimed_by == "other-process"
        assert queue.claim("w") is None

    def test_expired_lease_is_reclaimed_and_counted(self, queue):
        queue.enqueue("b1", PAYLOAD)
        queue.enqueue("b2", PAYLOAD)
        queue.claim("dead-worker")

        recovered = queue.recover_stale(now=self._after_lease(queue))
        assert [(r.build_id, r.state, r.attempts) for r in recovered] == [("b1", QueueState.WAITING, 1)]
        job = queue.get("b1")
        assert job.state == QueueState.WAITING
        assert job.claimed_by is None
        assert job.last_error == WORKER_LOST_MESSAGE

        claimed = queue.claim("w")
        assert claimed.build_id == "b1"
        assert claimed.attempt == 2

    def test_repeated_loss_exhausts_attempts(self, queue):
        """Test that a job whose worker keeps dying fails instead of looping."""
        queue.enqueue("b1", PAYLOAD, max_attempts=2)
        queue.claim("dead-1")
        assert queue.recover_stale(now=self._after_lease(queue))[0].state == QueueState.WAITING

        assert queue.claim("dead-2") is not None
        recovered = queue.recover_stale(now=self._after_lease(queue, leases=2))
        assert recovered[0].state == QueueState.FAILED
        assert recovered[0].attempts == 2
        assert queue.get("b1").state == QueueState.FAILED
        assert queue.claim("w") is None

    def test_lost_job_with_cancel_request_is_cancelled(self, queue):
        queue.enqueue("b1", PAYLOAD)
        queue.claim("dead-worker")
        queue.cancel("b1")

        recovered = queue.recover_stale(now=self._after_lease(queue))
        assert recovered[0].state == QueueState.CANCELLED
        assert queue.get("b1").state == QueueState.CANCELLED

    def test_renewal_extends_only_the_owners_lease(self):
        queue = BuildQueue(base_delay_s=0, lease_s=30)
        queue.enqueue("b1", PAYLOAD)
        queue.claim("w")

        assert queue.renew_leases({"b1": "someone-else"}) == 0
        assert queue.renew_leases({"b1": "w"}) == 1
        assert queue.renew_leases({}) == 0
        soon = datetime.now(timezone.utc) + timedelta(seconds=20)
        assert queue.recover_stale(now=soon) == []

    def test_delete(self, queue):
        queue.enqueue("b1", PAYLOAD)
        assert queue.delete("b1") is True
        assert queue.get("b1") is None
        assert queue.delete("b1") is False
