"""
SQLAlchemy models for builds, their stages and artifacts, the deployment
projection, and the persisted build queue.
"""
from sqlalchemy import Column, Text, Integer, Index, ForeignKey
from sqlalchemy.orm import relationship

from buildforge.db.database import Base


class Build(Base):
    """One attempt to turn a source commit into a deployable artifact."""
    __tablename__ = "builds"

    id = Column(Text, primary_key=True, index=True)
    deployment_id = Column(Text, nullable=False, index=True)
    project_id = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False, index=True)  # pending, running, success, failed, cancelled

    # Build context
    repository = Column(Text, nullable=False)
    branch = Column(Text, nullable=False)
    commit_sha = Column(Text, nullable=False)
    request_json = Column(Text, nullable=False)  # Full BuildRequest (secret values included, never logged)
    project_kind = Column(Text, nullable=False)
    rebuild_from = Column(Text, nullable=True, index=True)

    # Retry bookkeeping
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)

    # Cache summary
    cache_enabled = Column(Integer, nullable=False, default=1)
    cache_key = Column(Text, nullable=True)
    cache_hits = Column(Integer, nullable=False, default=0)
    cache_misses = Column(Integer, nullable=False, default=0)
    cache_size_bytes = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    error_reason = Column(Text, nullable=True)

    created_at = Column(Text, nullable=False, index=True)  # ISO timestamp
    started_at = Column(Text, nullable=True)
    completed_at = Column(Text, nullable=True, index=True)
    duration_ms = Column(Integer, nullable=True)
    updated_at = Column(Text, nullable=False)

    stages = relationship(
        "BuildStage",
        back_populates="build",
        cascade="all, delete-orphan",
        order_by="BuildStage.position",
    )
    artifacts = relationship(
        "BuildArtifact",
        back_populates="build",
        cascade="all, delete-orphan",
        order_by="BuildArtifact.created_at",
    )

    __table_args__ = (
        Index("ix_builds_project_created", "project_id", "created_at"),
        Index("ix_builds_status_completed", "status", "completed_at"),
    )


class BuildStage(Base):
    """A named, time-bounded phase of a build with its own captured log."""
    __tablename__ = "build_stages"

    id = Column(Text, primary_key=True, index=True)
    build_id = Column(Text, ForeignKey("builds.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending, running, success, failed, skipped
    logs = Column(Text, nullable=False, default="[]")  # JSON array of lines
    started_at = Column(Text, nullable=True)
    completed_at = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    build = relationship("Build", back_populates="stages")

    __table_args__ = (
        Index("ix_build_stages_build_position", "build_id", "position"),
    )


class BuildArtifact(Base):
    """Packaged output of a successful build."""
    __tablename__ = "build_artifacts"

    id = Column(Text, primary_key=True, index=True)
    build_id = Column(Text, ForeignKey("builds.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    path = Column(Text, nullable=False)
    size_bytes = Column(Integer, nullable=False)
    type = Column(Text, nullable=False)  # e.g. "tar.gz"
    sha256 = Column(Text, nullable=False)
    created_at = Column(Text, nullable=False)

    build = relationship("Build", back_populates="artifacts")


class Deployment(Base):
    """Local projection of the release attempt that owns a build."""
    __tablename__ = "deployments"

    id = Column(Text, primary_key=True, index=True)
    project_id = Column(Text, nullable=True, index=True)
    status = Column(Text, nullable=False, default="queued")  # queued, building, deploying, success, failed, cancelled
    build_id = Column(Text, nullable=True)
    build_started_at = Column(Text, nullable=True)
    build_completed_at = Column(Text, nullable=True)
    artifact_path = Column(Text, nullable=True)
    artifact_size_bytes = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)


class QueueJob(Base):
    """Persisted queue job, one per build identifier."""
    __tablename__ = "build_jobs"

    build_id = Column(Text, primary_key=True, index=True)
    id = Column(Text, unique=True, nullable=False)
    state = Column(Text, nullable=False, index=True)  # waiting, active, completed, failed, cancelled
    payload = Column(Text, nullable=False)  # JSON BuildRequest
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    progress = Column(Integer, nullable=False, default=0)
    available_at = Column(Text, nullable=False, index=True)
    claimed_by = Column(Text, nullable=True)
    claimed_at = Column(Text, nullable=True)
    lease_expires_at = Column(Text, nullable=True)  # Renewed by the owning pool while active
    cancel_requested = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False, index=True)
    updated_at = Column(Text, nullable=False)

    __table_args__ = (
        Index("ix_build_jobs_state_available", "state", "available_at"),
    )
