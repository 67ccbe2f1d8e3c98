"""
Build state tracker: persists build status, stages, logs and artifacts.

Status machine:
    pending -> running | cancelled
    running -> success | failed | cancelled
Terminal builds (success, failed, cancelled) reject any further transition.

Deployment notifications are sent after the build's own commit. Notifier
failures are logged and never revert the build.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from buildforge.core.artifacts import ArtifactInfo
from buildforge.core.cache import CacheSummary
from buildforge.core.errors import InvalidTransitionError
from buildforge.core.metrics import metrics
from buildforge.core.notifier import BuildEvent, DeploymentNotifier
from buildforge.db.database import SessionLocal
from buildforge.db.models import Build, BuildArtifact, BuildStage
from buildforge.schemas.build import (
    ArtifactView,
    BuildErrorView,
    BuildListResponse,
    BuildLogsView,
    BuildRequest,
    BuildStatus,
    BuildStatusView,
    BuildSummary,
    CacheView,
    StageStatus,
    StageView,
    dump_request,
)

logger = logging.getLogger(__name__)

MAX_STAGE_LOG_LINES = 5000
MAX_LOG_LINE_LENGTH = 4000
MAX_ERROR_MESSAGE_LENGTH = 2000

ALLOWED_TRANSITIONS = {
    BuildStatus.PENDING: {BuildStatus.RUNNING, BuildStatus.CANCELLED},
    BuildStatus.RUNNING: {BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.CANCELLED},
    BuildStatus.SUCCESS: set(),
    BuildStatus.FAILED: set(),
    BuildStatus.CANCELLED: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _duration_ms(start_iso: Optional[str], end: datetime) -> Optional[int]:
    if not start_iso:
        return None
    start = datetime.fromisoformat(start_iso)
    return max(0, int((end - start).total_seconds() * 1000))


class BuildNotFoundError(LookupError):
    """No build with the given identifier."""


class BuildTracker:
    """Owns the Build, BuildStage and BuildArtifact tables."""

    def __init__(
        self,
        notifiers: Sequence[DeploymentNotifier] = (),
        session_factory: Callable = SessionLocal,
    ):
        self._notifiers = list(notifiers)
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _load(self, db, build_id: str) -> Build:
        build = db.query(Build).filter(Build.id == build_id).first()
        if build is None:
            raise BuildNotFoundError(build_id)
        return build

    def _transition(self, build: Build, target: BuildStatus) -> None:
        current = BuildStatus(build.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Build {build.id} cannot move from {current.value} to {target.value}"
            )
        build.status = target.value

    def _notify(self, hook: str, event: BuildEvent) -> None:
        for notifier in self._notifiers:
            try:
                getattr(notifier, hook)(event)
            except Exception as e:
                logger.warning(
                    f"deployment_notify_failed hook={hook} build_id={event.build_id} "
                    f"deployment_id={event.deployment_id} notifier={type(notifier).__name__} "
                    f"error_type={type(e).__name__}"
                )

    @staticmethod
    def _event(build: Build, at: str, **fields) -> BuildEvent:
        return BuildEvent(
            deployment_id=build.deployment_id,
            project_id=build.project_id,
            build_id=build.id,
            at=at,
            **fields,
        )

    def _finish(self, db, build: Build, target: BuildStatus) -> datetime:
        self._transition(build, target)
        now = _now()
        build.completed_at = now.isoformat()
        build.duration_ms = _duration_ms(build.started_at, now)
        build.updated_at = now.isoformat()
        return now

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def create_build(
        self,
        request: BuildRequest,
        build_id: Optional[str] = None,
        max_retries: int = 3,
        cache_key: Optional[str] = None,
    ) -> str:
        """Persist a new pending build and return its id."""
        build_id = build_id or str(uuid.uuid4())
        now = _now().isoformat()
        db = self._session_factory()
        try:
            build = Build(
                id=build_id,
                deployment_id=request.deployment_id,
                project_id=request.project_id,
                status=BuildStatus.PENDING.value,
                repository=request.repository,
                branch=request.branch,
                commit_sha=request.commit,
                request_json=json.dumps(dump_request(request)),
                project_kind=request.project_type.kind,
                rebuild_from=request.rebuild_from,
                retry_count=0,
                max_retries=max_retries,
                cache_enabled=1 if cache_key else 0,
                cache_key=cache_key,
                created_at=now,
                updated_at=now,
            )
            db.add(build)
            db.commit()
            logger.info(
                f"build_created build_id={build_id} project_id={request.project_id} "
                f"kind={request.project_type.kind}",
                extra={"build_id": build_id},
            )
            return build_id
        finally:
            db.close()

    def mark_running(self, build_id: str) -> bool:
        """
        Move a build to running. A build that is already running (a retry or
        a recovered attempt) is left as is. Returns True on the first start.
        """
        db = self._session_factory()
        try:
            build = self._load(db, build_id)
            if build.status == BuildStatus.RUNNING.value:
                return False
            self._transition(build, BuildStatus.RUNNING)
            now = _now().isoformat()
            build.started_at = now
            build.updated_at = now
            db.commit()
            event = self._event(build, now)
            logger.info(f"build_running build_id={build_id}", extra={"build_id": build_id})
        finally:
            db.close()
        self._notify("on_build_started", event)
        return True

    def mark_succeeded(self, build_id: str, artifact: ArtifactInfo, cache: Optional[CacheSummary] = None) -> None:
        db = self._session_factory()
        try:
            build = self._load(db, build_id)
            now = self._finish(db, build, BuildStatus.SUCCESS)
            build.error_message = None
            build.error_reason = None
            if cache is not None:
                self._apply_cache(build, cache)
            db.add(BuildArtifact(
                id=str(uuid.uuid4()),
                build_id=build_id,
                name=artifact.name,
                path=str(artifact.path),
                size_bytes=artifact.size_bytes,
                type=artifact.type,
                sha256=artifact.sha256,
                created_at=artifact.created_at.isoformat(),
            ))
            db.commit()
            event = self._event(
                build,
                build.completed_at,
                artifact_path=str(artifact.path),
                artifact_size_bytes=artifact.size_bytes,
            )
            logger.info(
                f"build_succeeded build_id={build_id} duration_ms={build.duration_ms} "
                f"artifact_size={artifact.size_bytes}",
                extra={"build_id": build_id, "duration_ms": build.duration_ms},
            )
        finally:
            db.close()
        metrics.inc("builds_succeeded_total")
        self._notify("on_build_completed", event)

    def mark_failed(self, build_id: str, message: str, reason: Optional[str] = None) -> None:
        message = (message or "Build failed")[:MAX_ERROR_MESSAGE_LENGTH]
        db = self._session_factory()
        try:
            build = self._load(db, build_id)
            if build.status == BuildStatus.PENDING.value:
                # Failed before any attempt could start (e.g. payload unreadable)
                self._transition(build, BuildStatus.RUNNING)
                build.started_at = _now().isoformat()
            self._finish(db, build, BuildStatus.FAILED)
            build.error_message = message
            build.error_reason = reason
            db.commit()
            event = self._event(build, build.completed_at, error_message=message)
            logger.info(
                f"build_failed build_id={build_id} reason={reason} retry_count={build.retry_count}",
                extra={"build_id": build_id},
            )
        finally:
            db.close()
        metrics.inc("builds_failed_total")
        self._notify("on_build_failed", event)

    def mark_cancelled(self, build_id: str) -> None:
        db = self._session_factory()
        try:
            build = self._load(db, build_id)
            self._finish(db, build, BuildStatus.CANCELLED)
            build.error_message = "Build was cancelled"
            build.error_reason = "cancelled"
            # Stages left open by a killed attempt
            for stage in build.stages:
                if stage.status == StageStatus.RUNNING.value:
                    stage.status = StageStatus.FAILED.value
                    stage.completed_at = build.completed_at
                elif stage.status == StageStatus.PENDING.value:
                    stage.status = StageStatus.SKIPPED.value
            db.commit()
            event = self._event(build, build.completed_at)
            logger.info(f"build_cancelled build_id={build_id}", extra={"build_id": build_id})
        finally:
            db.close()
        metrics.inc("builds_cancelled_total")
        self._notify("on_build_cancelled", event)

    def record_retry(self, build_id: str, attempts: int, message: str) -> None:
        """Record a failed attempt on a build that is still running."""
        db = self._session_factory()
        try:
            build = self._load(db, build_id)
            build.retry_count = attempts
            build.error_message = (message or "")[:MAX_ERROR_MESSAGE_LENGTH]
            build.updated_at = _now().isoformat()
            db.commit()
        finally:
            db.close()

    def record_cache(self, build_id: str, cache: CacheSummary) -> None:
        db = self._session_factory()
        try:
            build = self._load(db, build_id)
            self._apply_cache(build, cache)
            db.commit()
        finally:
            db.close()

    @staticmethod
    def _apply_cache(build: Build, cache: CacheSummary) -> None:
        build.cache_enabled = 1 if cache.enabled else 0
        build.cache_key = cache.key
        build.cache_hits = cache.hits
        build.cache_misses = cache.misses
        build.cache_size_bytes = cache.size_bytes

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def start_stage(self, build_id: str, name: str) -> str:
        """Open a new running stage at the end of the build's stage list."""
        db = self._session_factory()
        try:
            build = self._load(db, build_id)
            stage_id = str(uuid.uuid4())
            db.add(BuildStage(
                id=stage_id,
                build_id=build_id,
                position=len(build.stages),
                name=name,
                status=StageStatus.RUNNING.value,
                logs="[]",
                started_at=_now().isoformat(),
            ))
            db.commit()
            return stage_id
        finally:
            db.close()

    def append_stage_logs(self, stage_id: str, lines: Iterable[str]) -> None:
        """Append lines to a stage, keeping the most recent MAX_STAGE_LOG_LINES."""
        new_lines = [line[:MAX_LOG_LINE_LENGTH] for line in lines]
        if not new_lines:
            return
        db = self._session_factory()
        try:
            stage = db.query(BuildStage).filter(BuildStage.id == stage_id).first()
            if stage is None:
                raise BuildNotFoundError(stage_id)
            existing = json.loads(stage.logs or "[]")
            existing.extend(new_lines)
            if len(existing) > MAX_STAGE_LOG_LINES:
                dropped = len(existing) - MAX_STAGE_LOG_LINES + 1
                existing = [f"... {dropped} earlier lines truncated"] + existing[dropped:]
            stage.logs = json.dumps(existing)
            db.commit()
        finally:
            db.close()

    def finish_stage(self, stage_id: str, status: StageStatus) -> None:
        db = self._session_factory()
        try:
            stage = db.query(BuildStage).filter(BuildStage.id == stage_id).first()
            if stage is None:
                raise BuildNotFoundError(stage_id)
            now = _now()
            stage.status = status.value
            stage.completed_at = now.isoformat()
            stage.duration_ms = _duration_ms(stage.started_at, now)
            db.commit()
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def exists(self, build_id: str) -> bool:
        db = self._session_factory()
        try:
            return db.query(Build.id).filter(Build.id == build_id).first() is not None
        finally:
            db.close()

    def get_status_value(self, build_id: str) -> Optional[BuildStatus]:
        db = self._session_factory()
        try:
            row = db.query(Build.status).filter(Build.id == build_id).first()
            return BuildStatus(row[0]) if row else None
        finally:
            db.close()

    def get_request(self, build_id: str) -> Optional[BuildRequest]:
        """The stored request a build was created from."""
        db = self._session_factory()
        try:
            build = db.query(Build).filter(Build.id == build_id).first()
            if build is None:
                return None
            return BuildRequest.model_validate(json.loads(build.request_json))
        finally:
            db.close()

    def get_status(self, build_id: str) -> Optional[BuildStatusView]:
        db = self._session_factory()
        try:
            build = db.query(Build).filter(Build.id == build_id).first()
            if build is None:
                return None

            error = None
            if build.error_message and build.status in (BuildStatus.FAILED.value, BuildStatus.CANCELLED.value):
                error = BuildErrorView(message=build.error_message, reason=build.error_reason)

            progress = 100 if build.status == BuildStatus.SUCCESS.value else 0
            return BuildStatusView(
                build_id=build.id,
                deployment_id=build.deployment_id,
                project_id=build.project_id,
                status=BuildStatus(build.status),
                progress=progress,
                created_at=build.created_at,
                started_at=build.started_at,
                completed_at=build.completed_at,
                duration_ms=build.duration_ms,
                retry_count=build.retry_count,
                max_retries=build.max_retries,
                rebuild_from=build.rebuild_from,
                artifacts=[
                    ArtifactView(
                        name=a.name,
                        path=a.path,
                        size_bytes=a.size_bytes,
                        type=a.type,
                        sha256=a.sha256,
                        created_at=a.created_at,
                    )
                    for a in build.artifacts
                ],
                stages=[
                    StageView(
                        name=s.name,
                        status=StageStatus(s.status),
                        started_at=s.started_at,
                        completed_at=s.completed_at,
                        duration_ms=s.duration_ms,
                        line_count=len(json.loads(s.logs or "[]")),
                    )
                    for s in build.stages
                ],
                cache=CacheView(
                    enabled=bool(build.cache_enabled),
                    key=build.cache_key,
                    hits=build.cache_hits,
                    misses=build.cache_misses,
                    size_bytes=build.cache_size_bytes,
                ),
                error=error,
            )
        finally:
            db.close()

    def get_logs(self, build_id: str) -> BuildLogsView:
        """All stage logs, every attempt, in order."""
        db = self._session_factory()
        try:
            build = db.query(Build).filter(Build.id == build_id).first()
            if build is None:
                return BuildLogsView(build_id=build_id, logs="", exists=False)

            parts = []
            for stage in build.stages:
                parts.append(f"=== {stage.name} [{stage.status}] ===")
                parts.extend(json.loads(stage.logs or "[]"))
            return BuildLogsView(build_id=build_id, logs="\n".join(parts), exists=True)
        finally:
            db.close()

    def list_builds(
        self,
        project_id: Optional[str] = None,
        status: Optional[BuildStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> BuildListResponse:
        db = self._session_factory()
        try:
            query = db.query(Build)
            if project_id:
                query = query.filter(Build.project_id == project_id)
            if status:
                query = query.filter(Build.status == BuildStatus(status).value)
            total = query.count()
            rows = query.order_by(Build.created_at.desc()).offset(offset).limit(limit).all()
            return BuildListResponse(
                builds=[
                    BuildSummary(
                        build_id=b.id,
                        project_id=b.project_id,
                        deployment_id=b.deployment_id,
                        status=BuildStatus(b.status),
                        project_kind=b.project_kind,
                        commit=b.commit_sha,
                        created_at=b.created_at,
                        completed_at=b.completed_at,
                        rebuild_from=b.rebuild_from,
                    )
                    for b in rows
                ],
                total=total,
                limit=limit,
                offset=offset,
            )
        finally:
            db.close()
