"""
Retention sweep for finished builds.

Terminal builds completed more than `retention_days` ago are removed together
with their artifact file, stages, artifact rows and queue job. A failure on one
build is logged and the sweep moves on.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from buildforge.core.artifacts import ArtifactStore
from buildforge.core.metrics import metrics
from buildforge.db.database import SessionLocal
from buildforge.db.models import Build, QueueJob
from buildforge.schemas.build import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 7
SWEEP_BATCH_SIZE = 500


@dataclass
class SweepReport:
    removed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class RetentionSweeper:
    """Deletes expired builds and their artifacts."""

    def __init__(
        self,
        artifacts: ArtifactStore,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        session_factory: Callable = SessionLocal,
    ):
        self.artifacts = artifacts
        self.retention_days = retention_days
        self._session_factory = session_factory

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=self.retention_days)).isoformat()
        report = SweepReport()

        db = self._session_factory()
        try:
            expired = [
                row[0]
                for row in db.query(Build.id)
                .filter(
                    Build.status.in_([s.value for s in TERMINAL_STATUSES]),
                    Build.completed_at.isnot(None),
                    Build.completed_at < cutoff,
                )
                .order_by(Build.completed_at.asc())
                .limit(SWEEP_BATCH_SIZE)
                .all()
            ]
        finally:
            db.close()

        for build_id in expired:
            try:
                self._remove(build_id)
                report.removed.append(build_id)
            except Exception as e:
                logger.warning(
                    f"retention_remove_failed build_id={build_id} error_type={type(e).__name__}",
                    extra={"build_id": build_id},
                )
                report.failed.append(build_id)

        if report.removed or report.failed:
            logger.info(f"retention_sweep removed={len(report.removed)} failed={len(report.failed)}")
        return report

    def _remove(self, build_id: str) -> None:
        if self.artifacts.delete_artifact(build_id):
            metrics.inc("artifacts_purged_total")

        db = self._session_factory()
        try:
            db.query(QueueJob).filter(QueueJob.build_id == build_id).delete()
            build = db.query(Build).filter(Build.id == build_id).first()
            if build is not None:
                # Stages and artifact rows cascade through the relationships
                db.delete(build)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info(f"build_purged build_id={build_id}", extra={"build_id": build_id})
