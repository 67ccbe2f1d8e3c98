"""
Bounded worker pool pulling jobs from the persisted build queue.

Each worker thread claims a job, runs one attempt through the pipeline and
routes the outcome:
    success            -> tracker.mark_succeeded, queue.complete
    cancelled          -> tracker.mark_cancelled, queue.mark_cancelled
    retryable failure  -> queue.fail (backoff), tracker.record_retry
    final failure      -> tracker.mark_failed

A lease thread renews the claims of in-flight jobs and reclaims jobs whose
lease expired in a process that died.
"""
import logging
import threading
from typing import Optional

from buildforge.core.errors import BuildCancelledError, BuildEngineError, InvalidTransitionError
from buildforge.core.metrics import metrics
from buildforge.core.pipeline import BuildPipeline
from buildforge.core.queue import WORKER_LOST_MESSAGE, BuildQueue, QueuedJob
from buildforge.core.retention import RetentionSweeper
from buildforge.core.tracker import BuildNotFoundError, BuildTracker
from buildforge.schemas.build import QueueState

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


class BuildWorkerPool:
    """Fixed-size pool of build worker threads plus an optional sweeper."""

    def __init__(
        self,
        queue: BuildQueue,
        pipeline: BuildPipeline,
        tracker: BuildTracker,
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval_s: float = 1.0,
        sweeper: Optional[RetentionSweeper] = None,
        sweep_interval_s: float = 3600,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.tracker = tracker
        self.concurrency = max(1, concurrency)
        self.poll_interval_s = poll_interval_s
        self.sweeper = sweeper
        self.sweep_interval_s = sweep_interval_s
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._in_flight: dict[str, str] = {}  # build_id -> worker_id
        self._in_flight_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._worker_loop, args=(f"worker-{i}",), name=f"build-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        self._threads.append(threading.Thread(target=self._lease_loop, name="lease-keeper", daemon=True))
        if self.sweeper is not None:
            self._threads.append(
                threading.Thread(target=self._sweeper_loop, name="retention-sweeper", daemon=True)
            )
        for thread in self._threads:
            thread.start()
        logger.info(f"worker_pool_started concurrency={self.concurrency}")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("worker_pool_stopped")

    def drain(self, worker_id: str = "drain") -> int:
        """Process jobs on the calling thread until none is claimable."""
        processed = 0
        while True:
            job = self.queue.claim(worker_id)
            if job is None:
                return processed
            self.handle(job)
            processed += 1

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.queue.claim(worker_id)
            except Exception as e:
                logger.warning(f"claim_failed worker_id={worker_id} error_type={type(e).__name__}")
                job = None
            if job is None:
                self._stop_event.wait(self.poll_interval_s)
                continue
            self.handle(job)

    def _lease_loop(self) -> None:
        while not self._stop_event.wait(self.queue.lease_s / 3):
            with self._in_flight_lock:
                owners = dict(self._in_flight)
            try:
                self.queue.renew_leases(owners)
                self.recover()
            except Exception as e:
                logger.warning(f"lease_renewal_failed error_type={type(e).__name__}")

    def _sweeper_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_s):
            try:
                self.sweeper.sweep()
            except Exception as e:
                logger.warning(f"retention_sweep_failed error_type={type(e).__name__}")

    # -------------------------------------------------------------------------
    # Outcome routing
    # -------------------------------------------------------------------------

    def handle(self, job: QueuedJob) -> None:
        """Run one attempt of a claimed job and record its outcome."""
        with self._in_flight_lock:
            self._in_flight[job.build_id] = job.claimed_by
        try:
            self._handle(job)
        finally:
            with self._in_flight_lock:
                self._in_flight.pop(job.build_id, None)

    def recover(self) -> int:
        """Reclaim jobs with expired leases and settle the builds they belong to."""
        recovered = self.queue.recover_stale()
        for job in recovered:
            build_id = job.build_id
            if job.state == QueueState.CANCELLED:
                self._cancelled(build_id)
                continue
            self._settle(build_id, self.tracker.record_retry, build_id, job.attempts, WORKER_LOST_MESSAGE)
            if job.state == QueueState.FAILED:
                self._settle(build_id, self.tracker.mark_failed, build_id, WORKER_LOST_MESSAGE, "worker_lost")
        return len(recovered)

    def _handle(self, job: QueuedJob) -> None:
        build_id = job.build_id
        try:
            result = self.pipeline.process(job)
        except BuildCancelledError:
            self._cancelled(build_id)
        except BuildEngineError as e:
            self._failed(job, e.message, e.reason, e.retryable)
        except Exception as e:
            logger.warning(
                f"build_attempt_internal_error build_id={build_id} error_type={type(e).__name__}",
                extra={"build_id": build_id},
            )
            self._failed(job, f"Internal error: {type(e).__name__}", "internal", True)
        else:
            self._settle(build_id, self.tracker.mark_succeeded, build_id, result.artifact, result.cache)
            self.queue.complete(build_id)

    def _cancelled(self, build_id: str) -> None:
        self._settle(build_id, self.tracker.mark_cancelled, build_id)
        self.queue.mark_cancelled(build_id)

    def _failed(self, job: QueuedJob, message: str, reason: str, retryable: bool) -> None:
        build_id = job.build_id
        outcome = self.queue.fail(build_id, message, retryable)
        self._settle(build_id, self.tracker.record_retry, build_id, outcome.attempts, message)

        if outcome.will_retry:
            metrics.inc("build_retries_total")
            logger.info(
                f"build_retry_scheduled build_id={build_id} attempt={outcome.attempts} "
                f"reason={reason} delay_s={outcome.delay_s}",
                extra={"build_id": build_id, "attempt": outcome.attempts},
            )
            return

        if self.queue.is_cancel_requested(build_id):
            self._cancelled(build_id)
            return
        self._settle(build_id, self.tracker.mark_failed, build_id, message, reason)

    @staticmethod
    def _settle(build_id: str, fn, *args) -> None:
        # The build may have been finished elsewhere (cancel, retention)
        try:
            fn(*args)
        except (InvalidTransitionError, BuildNotFoundError) as e:
            logger.warning(
                f"build_update_skipped build_id={build_id} step={fn.__name__} error_type={type(e).__name__}",
                extra={"build_id": build_id},
            )
