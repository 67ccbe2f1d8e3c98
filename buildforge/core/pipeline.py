"""
One build attempt, end to end:

    payload -> script -> workspace -> cache restore -> sandboxed run
            -> cache save -> package artifact -> workspace cleanup

Every attempt gets its own stages so logs accumulate across retries.
Errors propagate to the worker, which decides between retry and failure.
"""
import logging
import time
from dataclasses import dataclass

from pydantic import ValidationError

from buildforge.core.artifacts import ArtifactInfo, ArtifactStore
from buildforge.core.cache import CacheManager, CacheSummary, cache_lanes_for
from buildforge.core.config import Settings
from buildforge.core.errors import BuildCancelledError, ConfigurationError
from buildforge.core.executor import SandboxedExecutor, build_environment, select_image
from buildforge.core.queue import BuildQueue, QueuedJob
from buildforge.core.sandbox import ResourceLimits
from buildforge.core.scripts import generate_script
from buildforge.core.tracker import BuildTracker
from buildforge.core.workspace import WorkspaceManager
from buildforge.schemas.build import BuildRequest, StageStatus

logger = logging.getLogger(__name__)

LOG_FLUSH_LINES = 50
LOG_FLUSH_INTERVAL_S = 1.0
STARTED_PROGRESS = 5


@dataclass
class AttemptResult:
    artifact: ArtifactInfo
    cache: CacheSummary


def limits_from_settings(settings: Settings) -> ResourceLimits:
    # Every generated script clones over the network
    return ResourceLimits(
        memory=settings.memory_limit,
        cpu_shares=settings.cpu_shares,
        pids_limit=settings.pids_limit,
        network=settings.build_network,
    )


class BuildPipeline:
    """Runs a single claimed job."""

    def __init__(
        self,
        tracker: BuildTracker,
        queue: BuildQueue,
        executor: SandboxedExecutor,
        workspaces: WorkspaceManager,
        cache: CacheManager,
        artifacts: ArtifactStore,
        settings: Settings,
    ):
        self.tracker = tracker
        self.queue = queue
        self.executor = executor
        self.workspaces = workspaces
        self.cache = cache
        self.artifacts = artifacts
        self.settings = settings

    def process(self, job: QueuedJob) -> AttemptResult:
        """
        Run one attempt of a build.

        Raises:
            BuildEngineError subclasses for classified failures; anything else
            is an internal error.
        """
        build_id = job.build_id
        try:
            request = BuildRequest.model_validate(job.payload)
        except ValidationError as e:
            raise ConfigurationError(f"Stored build request is invalid: {e.error_count()} errors") from e

        self.tracker.mark_running(build_id)
        if self.queue.is_cancel_requested(build_id):
            raise BuildCancelledError("Build was cancelled")

        script = generate_script(
            request.project_type,
            request.build_config,
            request.repository,
            request.branch,
            request.commit,
            clone_timeout_s=self.settings.clone_timeout_s,
        )
        lanes = cache_lanes_for(request.project_type)

        self.queue.update_progress(build_id, STARTED_PROGRESS)
        workspace = self.workspaces.create(build_id, script)
        try:
            cache = self.cache.restore_all(request.project_id, lanes, workspace.cache_dir)
            self.tracker.record_cache(build_id, cache)

            stage_id = self.tracker.start_stage(build_id, f"build (attempt {job.attempt})")
            try:
                self._run(job, request, workspace, stage_id)
            except Exception as e:
                # The output is already in the stage log
                self.tracker.append_stage_logs(stage_id, [f"Attempt failed: {getattr(e, 'summary', e)}"])
                self.tracker.finish_stage(stage_id, StageStatus.FAILED)
                raise
            self.tracker.finish_stage(stage_id, StageStatus.SUCCESS)

            cache = self.cache.save_all(request.project_id, lanes, workspace.cache_dir, cache)

            stage_id = self.tracker.start_stage(build_id, f"package (attempt {job.attempt})")
            try:
                artifact = self.artifacts.package(build_id, workspace.output_dir)
            except Exception as e:
                self.tracker.append_stage_logs(stage_id, [f"Packaging failed: {e}"])
                self.tracker.finish_stage(stage_id, StageStatus.FAILED)
                raise
            self.tracker.append_stage_logs(
                stage_id,
                [f"Packaged {artifact.name} ({artifact.size_bytes} bytes, sha256 {artifact.sha256})"],
            )
            self.tracker.finish_stage(stage_id, StageStatus.SUCCESS)
            return AttemptResult(artifact=artifact, cache=cache)
        finally:
            self.workspaces.cleanup(build_id)

    def _run(self, job: QueuedJob, request: BuildRequest, workspace, stage_id: str) -> None:
        build_id = job.build_id
        execution = self.executor.stream(
            build_id=build_id,
            workspace=workspace.root,
            image=select_image(request.project_type, request.build_config),
            environment=build_environment(request.build_config.environment),
            limits=limits_from_settings(self.settings),
            cancel_requested=lambda: self.queue.is_cancel_requested(build_id),
            timeout_s=self.settings.run_timeout_s,
            start_progress=job.progress,
        )

        buffer: list[str] = []
        last_flush = time.monotonic()
        progress = job.progress
        try:
            for event in execution:
                buffer.append(event.line)
                if event.progress > progress:
                    progress = self.queue.update_progress(build_id, event.progress)
                if len(buffer) >= LOG_FLUSH_LINES or time.monotonic() - last_flush >= LOG_FLUSH_INTERVAL_S:
                    self.tracker.append_stage_logs(stage_id, buffer)
                    buffer = []
                    last_flush = time.monotonic()
        finally:
            if buffer:
                self.tracker.append_stage_logs(stage_id, buffer)

        result = execution.result
        logger.info(
            f"build_attempt_executed build_id={build_id} attempt={job.attempt} "
            f"duration_ms={result.duration_ms} lines={result.line_count}",
            extra={"build_id": build_id, "attempt": job.attempt, "duration_ms": result.duration_ms},
        )
