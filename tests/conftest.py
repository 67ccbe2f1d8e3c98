"""
Pytest configuration and fixtures.

A fake container runtime stands in for docker: each started session replays
scripted output lines, writes files into the workspace output dir and exits
with a scripted code.
"""
import os
import sys
import tempfile
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Optional

# Set test environment before importing the app
_DATA_DIR = tempfile.mkdtemp(prefix="buildforge-tests-")
os.environ["BUILDFORGE_DATA_DIR"] = _DATA_DIR
os.environ["BUILDFORGE_START_WORKERS"] = "false"
os.environ["BUILDFORGE_RETRY_BASE_DELAY_S"] = "0"
os.environ["BUILDFORGE_POLL_INTERVAL_S"] = "0.02"
os.environ.pop("BUILDFORGE_DEPLOYMENT_CALLBACK_URL", None)

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from buildforge.core.config import get_settings
from buildforge.core.notifier import BuildEvent, DeploymentNotifier, DeploymentStore
from buildforge.core.sandbox import ContainerRuntime, ResourceLimits, SandboxSession
from buildforge.core.scripts import SCRIPT_NAME, SUCCESS_SENTINEL
from buildforge.core.service import create_build_engine
from buildforge.db.database import SessionLocal, init_db
from buildforge.db.models import Build, BuildArtifact, BuildStage, Deployment, QueueJob
from buildforge.schemas.build import (
    BuildConfig,
    BuildRequest,
    FrontendFramework,
    NodeFrontend,
)

init_db()

COMMIT = "0123456789abcdef0123456789abcdef01234567"

SUCCESS_LINES = [
    "==> Cloning repository (branch main, commit 0123456789ab)",
    "==> Restoring cache (node_modules)",
    "==> Installing dependencies",
    "added 312 packages in 9s",
    "==> Building",
    "Compiled successfully.",
    "==> Build completed",
    "==> Copying output",
    "==> Saving cache (node_modules)",
    SUCCESS_SENTINEL,
]


# =============================================================================
# Fake container runtime
# =============================================================================

@dataclass
class FakeRun:
    """Scripted behaviour of one container run."""
    lines: list[str] = field(default_factory=lambda: list(SUCCESS_LINES))
    exit_code: int = 0
    outputs: dict[str, str] = field(default_factory=lambda: {"index.html": "<h1>hello</h1>"})
    cache_files: dict[str, bytes] = field(default_factory=dict)
    hang: bool = False  # Block after the lines until killed
    line_delay_s: float = 0.0
    on_start: Optional[Callable[[], None]] = None


class FakeSession(SandboxSession):
    def __init__(self, runtime: "FakeRuntime", name: str, run: FakeRun):
        super().__init__(name)
        self._runtime = runtime
        self._run = run
        self._killed = threading.Event()

    def lines(self):
        for line in self._run.lines:
            if self._killed.is_set():
                return
            if self._run.line_delay_s:
                self._killed.wait(self._run.line_delay_s)
            yield line
        if self._run.hang:
            self._killed.wait(timeout=10)

    def wait(self) -> int:
        return 137 if self._killed.is_set() else self._run.exit_code

    def kill(self) -> None:
        self._runtime.killed.append(self.name)
        self._killed.set()

    def remove(self) -> None:
        self._runtime.removed.append(self.name)
        self._runtime.active.discard(self.name)


class FakeRuntime(ContainerRuntime):
    """Records every start and replays queued FakeRuns (default: success)."""

    def __init__(self):
        self.runs: list[FakeRun] = []
        self.started: list[dict] = []
        self.scripts: list[str] = []
        self.killed: list[str] = []
        self.removed: list[str] = []
        self.active: set[str] = set()

    def queue(self, *runs: FakeRun) -> None:
        self.runs.extend(runs)

    def start(self, name, image, workspace, environment, limits: ResourceLimits, command) -> SandboxSession:
        run = self.runs.pop(0) if self.runs else FakeRun()
        workspace = Path(workspace)
        self.started.append({
            "name": name,
            "image": image,
            "environment": dict(environment),
            "limits": limits,
            "command": list(command),
        })
        self.scripts.append((workspace / SCRIPT_NAME).read_text())
        for rel, content in run.outputs.items():
            target = workspace / "output" / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        for rel, content in run.cache_files.items():
            (workspace / "cache" / rel).write_bytes(content)
        if run.on_start:
            run.on_start()
        self.active.add(name)
        return FakeSession(self, name, run)


class RecordingNotifier(DeploymentNotifier):
    def __init__(self):
        self.events: list[tuple[str, BuildEvent]] = []

    def on_build_started(self, event):
        self.events.append(("started", event))

    def on_build_completed(self, event):
        self.events.append(("completed", event))

    def on_build_failed(self, event):
        self.events.append(("failed", event))

    def on_build_cancelled(self, event):
        self.events.append(("cancelled", event))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_db():
    """Empty every table before each test."""
    db = SessionLocal()
    try:
        for model in (BuildArtifact, BuildStage, QueueJob, Build, Deployment):
            db.query(model).delete()
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture
def settings(tmp_path):
    return replace(
        get_settings(),
        data_dir=tmp_path,
        retry_base_delay_s=0,
        run_timeout_s=5,
        poll_interval_s=0.02,
        start_workers=False,
    )


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest.fixture
def engine(settings, runtime, recorder):
    return create_build_engine(settings, runtime=runtime, notifiers=[DeploymentStore(), recorder])


@pytest.fixture
def client(engine):
    """Test client wired to the fake-runtime engine."""
    from main import app

    previous = app.state.engine
    app.state.engine = engine
    yield TestClient(app, raise_server_exceptions=False)
    app.state.engine = previous


def make_request(**overrides) -> BuildRequest:
    """A React frontend build request."""
    data = {
        "project_id": "proj-1",
        "deployment_id": "dep-1",
        "repository": "https://github.com/acme/web.git",
        "branch": "main",
        "commit": COMMIT,
        "project_type": NodeFrontend(framework=FrontendFramework.REACT),
        "build_config": BuildConfig(),
    }
    data.update(overrides)
    return BuildRequest(**data)


@pytest.fixture
def build_request() -> BuildRequest:
    return make_request()
