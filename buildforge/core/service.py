"""
Build engine facade used by the HTTP layer and by other services.

    queue_build      validate, persist and enqueue a build
    get_build_status best-known state, including live progress
    get_build_logs   every stage of every attempt, in order
    cancel_build     remove from queue or stop a running build
    rebuild          enqueue a new build from a previous build's request
    list_builds      filtered, paginated listing
"""
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from buildforge.core.artifacts import ArtifactStore
from buildforge.core.cache import CacheManager, cache_key, cache_lanes_for
from buildforge.core.config import Settings, get_settings
from buildforge.core.executor import SandboxedExecutor
from buildforge.core.notifier import DeploymentNotifier, DeploymentStore, WebhookDeploymentNotifier
from buildforge.core.pipeline import BuildPipeline
from buildforge.core.queue import BuildQueue, CancelOutcome
from buildforge.core.retention import RetentionSweeper
from buildforge.core.sandbox import ContainerRuntime, DockerRuntime
from buildforge.core.scripts import generate_script
from buildforge.core.tracker import BuildNotFoundError, BuildTracker
from buildforge.core.workers import BuildWorkerPool
from buildforge.core.workspace import WorkspaceManager
from buildforge.schemas.build import (
    BuildListResponse,
    BuildLogsView,
    BuildRequest,
    BuildStatus,
    BuildStatusView,
    CancelResult,
    EnqueueResult,
    QueueState,
    dump_request,
)

logger = logging.getLogger(__name__)


class BuildService:
    """Public operations of the build engine."""

    def __init__(self, tracker: BuildTracker, queue: BuildQueue, artifacts: ArtifactStore, settings: Settings):
        self.tracker = tracker
        self.queue = queue
        self.artifacts = artifacts
        self.settings = settings

    def queue_build(self, request: BuildRequest) -> EnqueueResult:
        """
        Accept a build request.

        Raises:
            ConfigurationError: If no build script can be produced for the
                project. Nothing is persisted in that case.
        """
        generate_script(
            request.project_type,
            request.build_config,
            request.repository,
            request.branch,
            request.commit,
            clone_timeout_s=self.settings.clone_timeout_s,
        )

        build_id = str(uuid.uuid4())
        lanes = cache_lanes_for(request.project_type)
        self.tracker.create_build(
            request,
            build_id=build_id,
            max_retries=self.settings.max_retries,
            cache_key=cache_key(request.project_id, lanes),
        )
        job = self.queue.enqueue(build_id, dump_request(request), max_attempts=self.settings.max_retries)
        position = self.queue.position(build_id) or 0

        logger.info(
            f"build_queued build_id={build_id} job_id={job.id} project_id={request.project_id} "
            f"position={position}",
            extra={"build_id": build_id, "job_id": job.id},
        )
        return EnqueueResult(build_id=build_id, job_id=job.id, queue_position=position)

    def get_build_status(self, build_id: str) -> Optional[BuildStatusView]:
        view = self.tracker.get_status(build_id)
        if view is None:
            return None

        job = self.queue.get(build_id)
        if job is None:
            return view

        progress = 100 if view.status == BuildStatus.SUCCESS else job.progress
        return view.model_copy(update={
            "progress": progress,
            "queue_state": job.state,
            "queue_position": self.queue.position(build_id),
        })

    def get_build_logs(self, build_id: str) -> BuildLogsView:
        return self.tracker.get_logs(build_id)

    def cancel_build(self, build_id: str) -> CancelResult:
        status = self.tracker.get_status_value(build_id)
        if status is None:
            return CancelResult(build_id=build_id, outcome=CancelOutcome.NOT_FOUND.value)
        if status.is_terminal:
            return CancelResult(build_id=build_id, outcome=CancelOutcome.ALREADY_TERMINAL.value, status=status)

        outcome = self.queue.cancel(build_id)
        if outcome in (CancelOutcome.CANCELLED, CancelOutcome.NOT_FOUND):
            # Not held by any worker: finish it here
            self.tracker.mark_cancelled(build_id)
            outcome = CancelOutcome.CANCELLED
        elif outcome == CancelOutcome.ALREADY_TERMINAL:
            # Job finished but the build record has not caught up yet
            outcome = CancelOutcome.CANCEL_REQUESTED

        logger.info(f"build_cancel build_id={build_id} outcome={outcome.value}", extra={"build_id": build_id})
        return CancelResult(
            build_id=build_id,
            outcome=outcome.value,
            status=self.tracker.get_status_value(build_id),
        )

    def rebuild(self, build_id: str) -> EnqueueResult:
        """
        Queue a new build from a previous build's request. The original build
        is left untouched.

        Raises:
            BuildNotFoundError: If the build does not exist
            ConfigurationError: If the stored request can no longer be built
        """
        request = self.tracker.get_request(build_id)
        if request is None:
            raise BuildNotFoundError(build_id)
        result = self.queue_build(request.model_copy(update={"rebuild_from": build_id}))
        logger.info(f"build_rebuild source={build_id} build_id={result.build_id}", extra={"build_id": result.build_id})
        return result

    def list_builds(
        self,
        project_id: Optional[str] = None,
        status: Optional[BuildStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> BuildListResponse:
        return self.tracker.list_builds(project_id=project_id, status=status, limit=limit, offset=offset)

    def get_artifact_path(self, build_id: str) -> Optional[Path]:
        """Artifact file of a successful build, if still retained."""
        if self.tracker.get_status_value(build_id) != BuildStatus.SUCCESS:
            return None
        return self.artifacts.get_artifact_path(build_id)

    def queue_depth(self) -> dict[str, int]:
        """Waiting and active job counts, for health reporting."""
        return {state.value: self.queue.count(state) for state in (QueueState.WAITING, QueueState.ACTIVE)}


@dataclass
class BuildEngine:
    """Wired build engine components."""
    settings: Settings
    service: BuildService
    pool: BuildWorkerPool
    tracker: BuildTracker
    queue: BuildQueue
    sweeper: RetentionSweeper


def default_notifiers(settings: Settings) -> list[DeploymentNotifier]:
    notifiers: list[DeploymentNotifier] = [DeploymentStore()]
    if settings.deployment_callback_url:
        notifiers.append(WebhookDeploymentNotifier(settings.deployment_callback_url))
    return notifiers


def create_build_engine(
    settings: Optional[Settings] = None,
    runtime: Optional[ContainerRuntime] = None,
    notifiers: Optional[Sequence[DeploymentNotifier]] = None,
) -> BuildEngine:
    """Wire all components from settings. A custom runtime replaces docker."""
    settings = settings or get_settings()
    runtime = runtime or DockerRuntime(settings.docker_bin)
    notifiers = default_notifiers(settings) if notifiers is None else list(notifiers)

    tracker = BuildTracker(notifiers=notifiers)
    queue = BuildQueue(base_delay_s=settings.retry_base_delay_s, lease_s=settings.lease_s)
    artifacts = ArtifactStore(settings.artifacts_dir)
    executor = SandboxedExecutor(
        runtime,
        run_timeout_s=settings.run_timeout_s,
        poll_interval_s=min(settings.poll_interval_s, 1.0),
    )
    pipeline = BuildPipeline(
        tracker=tracker,
        queue=queue,
        executor=executor,
        workspaces=WorkspaceManager(settings.workspaces_dir),
        cache=CacheManager(settings.cache_dir),
        artifacts=artifacts,
        settings=settings,
    )
    sweeper = RetentionSweeper(artifacts, retention_days=settings.retention_days)
    pool = BuildWorkerPool(
        queue=queue,
        pipeline=pipeline,
        tracker=tracker,
        concurrency=settings.concurrency,
        poll_interval_s=settings.poll_interval_s,
        sweeper=sweeper,
        sweep_interval_s=settings.sweep_interval_s,
    )
    service = BuildService(tracker=tracker, queue=queue, artifacts=artifacts, settings=settings)
    return BuildEngine(
        settings=settings,
        service=service,
        pool=pool,
        tracker=tracker,
        queue=queue,
        sweeper=sweeper,
    )
