"""
Tests for deployment notifiers and the retention sweep.
"""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from buildforge.core.artifacts import ArtifactStore
from buildforge.core.notifier import BuildEvent, DeploymentStore, WebhookDeploymentNotifier
from buildforge.core.queue import BuildQueue
from buildforge.core.retention import RetentionSweeper
from buildforge.core.tracker import BuildTracker
from buildforge.db.database import SessionLocal
from buildforge.db.models import Build, BuildStage
from buildforge.schemas.build import DeploymentStatus, dump_request

from conftest import make_request

AT = "2026-01-01T00:00:00+00:00"


def event(**fields) -> BuildEvent:
    return BuildEvent(deployment_id="dep-1", project_id="proj-1", build_id="b1", at=AT, **fields)


# =============================================================================
# Deployment store
# =============================================================================

class TestDeploymentStore:
    """Tests for the local deployment projection."""

    def test_lifecycle_success(self):
        store = DeploymentStore()
        store.on_build_started(event())
        assert store.get("dep-1").status == DeploymentStatus.BUILDING.value

        store.on_build_completed(event(artifact_path="/data/artifacts/b1.tar.gz", artifact_size_bytes=99))
        deployment = store.get("dep-1")
        assert deployment.status == DeploymentStatus.DEPLOYING.value
        assert deployment.build_id == "b1"
        assert deployment.artifact_path == "/data/artifacts/b1.tar.gz"
        assert deployment.artifact_size_bytes == 99
        assert deployment.build_started_at == AT
        assert deployment.build_completed_at == AT

    def test_failure_records_error(self):
        store = DeploymentStore()
        store.on_build_failed(event(error_message="Repository clone failed"))
        deployment = store.get("dep-1")
        assert deployment.status == DeploymentStatus.FAILED.value
        assert deployment.error_message == "Repository clone failed"

    def test_cancelled(self):
        store = DeploymentStore()
        store.on_build_cancelled(event())
        assert store.get("dep-1").status == DeploymentStatus.CANCELLED.value

    def test_unknown_deployment(self):
        assert DeploymentStore().get("missing") is None


# =============================================================================
# Webhook notifier
# =============================================================================

class TestWebhookNotifier:
    """Tests for webhook delivery via a mock transport."""

    def test_posts_event_payload(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        notifier = WebhookDeploymentNotifier("https://deploy.example.com/hooks/builds", transport=httpx.MockTransport(handler))
        notifier.on_build_completed(event(artifact_path="/a/b1.tar.gz", artifact_size_bytes=10))

        payload = received[0]
        assert payload["event"] == "build.completed"
        assert payload["deployment_id"] == "dep-1"
        assert payload["build_id"] == "b1"
        assert payload["artifact_path"] == "/a/b1.tar.gz"
        assert payload["artifact_size_bytes"] == 10
        assert "error_message" not in payload
        assert payload["delivery_id"]

    def test_failure_payload(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(204)

        notifier = WebhookDeploymentNotifier("https://deploy.example.com/hooks", transport=httpx.MockTransport(handler))
        notifier.on_build_failed(event(error_message="boom"))
        assert received[0]["event"] == "build.failed"
        assert received[0]["error_message"] == "boom"

    def test_non_2xx_raises(self):
        """Test that a rejected delivery surfaces as an error for the tracker to log."""
        notifier = WebhookDeploymentNotifier(
            "https://deploy.example.com/hooks",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            notifier.on_build_started(event())


# =============================================================================
# Retention
# =============================================================================

class TestRetentionSweeper:
    """Tests for expired build removal."""

    def _finished_build(self, tracker, queue, store, tmp_path, completed_at: datetime) -> str:
        request = make_request()
        build_id = tracker.create_build(request)
        queue.enqueue(build_id, dump_request(request))
        stage_id = tracker.start_stage(build_id, "build (attempt 1)")
        tracker.append_stage_logs(stage_id, ["hello"])
        tracker.mark_running(build_id)
        output = tmp_path / build_id
        output.mkdir()
        (output / "index.html").write_text("x")
        tracker.mark_succeeded(build_id, store.package(build_id, output))

        db = SessionLocal()
        try:
            build = db.query(Build).filter(Build.id == build_id).first()
            build.completed_at = completed_at.isoformat()
            db.commit()
        finally:
            db.close()
        return build_id

    def test_removes_only_expired_builds(self, tmp_path):
        tracker = BuildTracker()
        queue = BuildQueue(base_delay_s=0)
        store = ArtifactStore(tmp_path / "artifacts")
        now = datetime.now(timezone.utc)
        old = self._finished_build(tracker, queue, store, tmp_path, now - timedelta(days=8))
        recent = self._finished_build(tracker, queue, store, tmp_path, now - timedelta(days=1))

        report = RetentionSweeper(store, retention_days=7).sweep(now=now)

        assert report.removed == [old]
        assert report.failed == []
        assert tracker.exists(old) is False
        assert queue.get(old) is None
        assert store.get_artifact_path(old) is None
        assert tracker.exists(recent) is True
        assert store.get_artifact_path(recent) is not None

        db = SessionLocal()
        try:
            assert db.query(BuildStage).filter(BuildStage.build_id == old).count() == 0
        finally:
            db.close()

    def test_non_terminal_builds_are_kept(self, tmp_path):
        tracker = BuildTracker()
        build_id = tracker.create_build(make_request())
        tracker.mark_running(build_id)
        report = RetentionSweeper(ArtifactStore(tmp_path / "artifacts")).sweep(
            now=datetime.now(timezone.utc) + timedelta(days=30),
        )
        assert report.removed == []
        assert tracker.exists(build_id) is True

    def test_one_failure_does_not_stop_the_sweep(self, tmp_path):
        """Test that a build whose removal fails is reported and others proceed."""
        tracker = BuildTracker()
        queue = BuildQueue(base_delay_s=0)
        store = ArtifactStore(tmp_path / "artifacts")
        now = datetime.now(timezone.utc)
        first = self._finished_build(tracker, queue, store, tmp_path, now - timedelta(days=10))
        second = self._finished_build(tracker, queue, store, tmp_path, now - timedelta(days=9))

        sweeper = RetentionSweeper(store)
        original = store.delete_artifact

        def flaky_delete(build_id):
            if build_id == first:
                raise OSError("permission denied")
            return original(build_id)

        store.delete_artifact = flaky_delete
        report = sweeper.sweep(now=now)

        assert report.failed == [first]
        assert report.removed == [second]
        assert tracker.exists(first) is True
