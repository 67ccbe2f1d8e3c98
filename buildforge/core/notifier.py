"""
Deployment notifications.

The build tracker reports lifecycle transitions to the deployment that owns
the build. Notification happens after the build's own state is committed;
a failing notifier is logged by the caller and never changes the build.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx

from buildforge.db.database import SessionLocal
from buildforge.db.models import Deployment
from buildforge.schemas.build import DeploymentStatus

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_S = 10.0


@dataclass
class BuildEvent:
    """A build lifecycle transition, as seen by the owning deployment."""
    deployment_id: str
    project_id: str
    build_id: str
    at: str  # ISO timestamp
    artifact_path: Optional[str] = None
    artifact_size_bytes: Optional[int] = None
    error_message: Optional[str] = None


class DeploymentNotifier(ABC):
    """Receives build lifecycle notifications for deployments."""

    def on_build_started(self, event: BuildEvent) -> None:
        """Build moved to running. Optional for implementations."""

    @abstractmethod
    def on_build_completed(self, event: BuildEvent) -> None:
        """Build succeeded and its artifact is stored."""

    @abstractmethod
    def on_build_failed(self, event: BuildEvent) -> None:
        """Build failed permanently."""

    def on_build_cancelled(self, event: BuildEvent) -> None:
        """Build was cancelled. Optional for implementations."""


class DeploymentStore(DeploymentNotifier):
    """Maintains the local Deployment projection."""

    def __init__(self, session_factory: Callable = SessionLocal):
        self._session_factory = session_factory

    def _apply(self, event: BuildEvent, status: DeploymentStatus, **fields) -> None:
        db = self._session_factory()
        try:
            now = datetime.now(timezone.utc).isoformat()
            deployment = db.query(Deployment).filter(Deployment.id == event.deployment_id).first()
            if deployment is None:
                deployment = Deployment(
                    id=event.deployment_id,
                    project_id=event.project_id,
                    created_at=now,
                )
                db.add(deployment)
            deployment.status = status.value
            deployment.build_id = event.build_id
            deployment.updated_at = now
            for key, value in fields.items():
                setattr(deployment, key, value)
            db.commit()
            logger.info(
                f"deployment_updated deployment_id={event.deployment_id} "
                f"build_id={event.build_id} status={status.value}"
            )
        finally:
            db.close()

    def on_build_started(self, event: BuildEvent) -> None:
        self._apply(event, DeploymentStatus.BUILDING, build_started_at=event.at)

    def on_build_completed(self, event: BuildEvent) -> None:
        self._apply(
            event,
            DeploymentStatus.DEPLOYING,
            build_completed_at=event.at,
            artifact_path=event.artifact_path,
            artifact_size_bytes=event.artifact_size_bytes,
            error_message=None,
        )

    def on_build_failed(self, event: BuildEvent) -> None:
        self._apply(
            event,
            DeploymentStatus.FAILED,
            build_completed_at=event.at,
            error_message=event.error_message,
        )

    def on_build_cancelled(self, event: BuildEvent) -> None:
        self._apply(event, DeploymentStatus.CANCELLED, build_completed_at=event.at)

    def get(self, deployment_id: str) -> Optional[Deployment]:
        db = self._session_factory()
        try:
            return db.query(Deployment).filter(Deployment.id == deployment_id).first()
        finally:
            db.close()


class WebhookDeploymentNotifier(DeploymentNotifier):
    """
    Posts lifecycle events as JSON to the deployment service.

    Payload: {"event", "deployment_id", "project_id", "build_id", "at", ...}.
    Non-2xx responses raise httpx.HTTPStatusError.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float = WEBHOOK_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._url = url
        self._timeout_s = timeout_s
        self._transport = transport

    def _post(self, name: str, event: BuildEvent) -> None:
        payload = {
            "event": name,
            "delivery_id": str(uuid.uuid4()),
            "deployment_id": event.deployment_id,
            "project_id": event.project_id,
            "build_id": event.build_id,
            "at": event.at,
        }
        if event.artifact_path is not None:
            payload["artifact_path"] = event.artifact_path
            payload["artifact_size_bytes"] = event.artifact_size_bytes
        if event.error_message is not None:
            payload["error_message"] = event.error_message

        with httpx.Client(timeout=self._timeout_s, transport=self._transport) as client:
            response = client.post(self._url, json=payload)
            response.raise_for_status()
        logger.info(
            f"deployment_webhook_sent event={name} deployment_id={event.deployment_id} "
            f"status={response.status_code}"
        )

    def on_build_started(self, event: BuildEvent) -> None:
        self._post("build.started", event)

    def on_build_completed(self, event: BuildEvent) -> None:
        self._post("build.completed", event)

    def on_build_failed(self, event: BuildEvent) -> None:
        self._post("build.failed", event)

    def on_build_cancelled(self, event: BuildEvent) -> None:
        self._post("build.cancelled", event)
