"""
Sandboxed executor: runs a generated build script inside a fresh container.

The combined output is streamed line by line with a heuristic progress value.
A watchdog thread enforces the wall-clock timeout and polls for cancellation;
either one kills the container. The container is always removed.

Exit status mapping:
    65                  -> CloneError
    66                  -> BuildTimeoutError(reason="clone_timeout")
    wall-clock timeout  -> BuildTimeoutError
    cancellation        -> BuildCancelledError
    other non-zero      -> ExecutionError
    zero, no sentinel   -> ExecutionError
"""
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from buildforge.core.errors import (
    BuildCancelledError,
    BuildTimeoutError,
    CloneError,
    ExecutionError,
)
from buildforge.core.progress import ProgressTracker
from buildforge.core.sandbox import ContainerRuntime, ResourceLimits
from buildforge.core.scripts import (
    CLONE_FAILED_EXIT_CODE,
    CLONE_TIMEOUT_EXIT_CODE,
    SCRIPT_NAME,
    SUCCESS_SENTINEL,
    WORKSPACE_MOUNT,
)
from buildforge.schemas.build import (
    BuildConfig,
    EnvVar,
    NodeBackend,
    NodeFrontend,
    PythonApp,
    StaticSite,
)

logger = logging.getLogger(__name__)

DEFAULT_RUN_TIMEOUT_S = 600
KILL_RETRY_INTERVAL_S = 5.0
ERROR_TAIL_LINES = 5  # Output lines quoted in error messages

# Secrets with these prefixes are meant to be embedded in client bundles
PUBLIC_ENV_PREFIXES = (
    "NEXT_PUBLIC_",
    "REACT_APP_",
    "VITE_",
    "VUE_APP_",
    "NUXT_PUBLIC_",
    "PUBLIC_",
)

STATIC_IMAGE = "nginx:alpine"
FALLBACK_IMAGE = "buildpack-deps:bookworm"


def select_image(project_type, config: BuildConfig) -> str:
    """Base image for a project type."""
    if isinstance(project_type, (NodeFrontend, NodeBackend)):
        return f"node:{config.node_version}-bullseye"
    if isinstance(project_type, PythonApp):
        return f"python:{config.python_version}-slim"
    if isinstance(project_type, StaticSite):
        return STATIC_IMAGE
    return FALLBACK_IMAGE


def build_environment(env_vars: Iterable[EnvVar]) -> dict[str, str]:
    """
    Environment injected into the build container.

    Non-secret variables are always passed. Secret variables are passed only
    when their key carries a public prefix.
    """
    env = {"CI": "true", "NODE_ENV": "production"}

    for var in env_vars:
        if var.secret and not var.key.startswith(PUBLIC_ENV_PREFIXES):
            continue
        env[var.key] = var.value
    return env


@dataclass
class LogEvent:
    """One output line and the progress after it."""
    line: str
    progress: int


@dataclass
class ExecutionResult:
    """Outcome of a successful script run."""
    exit_code: int
    log: str
    progress: int
    duration_ms: int
    line_count: int


class _Watchdog(threading.Thread):
    """Kills the session on timeout or cancellation."""

    def __init__(
        self,
        session,
        timeout_s: float,
        cancel_requested: Optional[Callable[[], bool]],
        poll_interval_s: float,
    ):
        super().__init__(name=f"watchdog-{session.name}", daemon=True)
        self._session = session
        self._deadline = time.monotonic() + timeout_s
        self._cancel_requested = cancel_requested
        self._poll_interval_s = poll_interval_s
        self._stop_event = threading.Event()
        self.timed_out = False
        self.cancelled = False

    def run(self) -> None:
        while not self._stop_event.wait(self._poll_interval_s):
            if time.monotonic() >= self._deadline:
                self.timed_out = True
                logger.warning(f"execution_timeout container={self._session.name}")
                break
            if self._cancel_requested is not None and self._check_cancel():
                self.cancelled = True
                logger.info(f"execution_cancelled container={self._session.name}")
                break
        else:
            return

        # Repeat the kill until the output stream has ended
        attempt = 1
        self._kill(attempt)
        while not self._stop_event.wait(KILL_RETRY_INTERVAL_S):
            attempt += 1
            logger.warning(f"container_kill_retry container={self._session.name} attempt={attempt}")
            self._kill(attempt)

    def _kill(self, attempt: int) -> None:
        try:
            self._session.kill()
        except Exception as e:
            logger.warning(
                f"container_kill_failed container={self._session.name} attempt={attempt} "
                f"error_type={type(e).__name__}"
            )

    def _check_cancel(self) -> bool:
        try:
            return bool(self._cancel_requested())
        except Exception as e:
            # A failed poll is not a cancellation; try again next tick
            logger.warning(
                f"cancel_poll_failed container={self._session.name} error_type={type(e).__name__}"
            )
            return False

    def stop(self) -> None:
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=5)


class ExecutionStream:
    """
    Iterable over a running build's LogEvents.

    After iteration completes, `result` holds the ExecutionResult. Failures
    are raised from the iteration itself.
    """

    def __init__(
        self,
        executor: "SandboxedExecutor",
        build_id: str,
        workspace: Path,
        image: str,
        environment: dict[str, str],
        limits: ResourceLimits,
        cancel_requested: Optional[Callable[[], bool]],
        timeout_s: float,
        start_progress: int,
    ):
        self._executor = executor
        self.build_id = build_id
        self._workspace = workspace
        self._image = image
        self._environment = environment
        self._limits = limits
        self._cancel_requested = cancel_requested
        self._timeout_s = timeout_s
        self._start_progress = start_progress
        self.result: Optional[ExecutionResult] = None

    def __iter__(self) -> Iterator[LogEvent]:
        return self._events()

    def _events(self) -> Iterator[LogEvent]:
        executor = self._executor
        name = container_name(self.build_id)
        tracker = ProgressTracker(self._start_progress)
        captured: list[str] = []
        line_count = 0
        saw_sentinel = False
        started = time.monotonic()

        executor._claim(self.build_id)
        try:
            try:
                session = executor.runtime.start(
                    name=name,
                    image=self._image,
                    workspace=self._workspace,
                    environment=self._environment,
                    limits=self._limits,
                    command=["sh", f"{WORKSPACE_MOUNT}/{SCRIPT_NAME}"],
                )
            except OSError as e:
                raise ExecutionError(
                    f"Container runtime unavailable: {type(e).__name__}",
                    reason="runtime_unavailable",
                ) from e

            with session:
                watchdog = _Watchdog(
                    session, self._timeout_s, self._cancel_requested, executor.poll_interval_s
                )
                watchdog.start()
                try:
                    for line in session.lines():
                        line_count += 1
                        captured.append(line)
                        if line.strip() == SUCCESS_SENTINEL:
                            saw_sentinel = True
                        yield LogEvent(line=line, progress=tracker.observe(line))
                    exit_code = session.wait()
                finally:
                    watchdog.stop()
        finally:
            executor._release(self.build_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        log = "\n".join(captured)
        logger.info(
            f"execution_finished build_id={self.build_id} exit_code={exit_code} "
            f"duration_ms={duration_ms} lines={line_count}"
        )

        if watchdog.timed_out:
            raise BuildTimeoutError(
                f"Build exceeded the {int(self._timeout_s)}s time limit",
                exit_code=exit_code,
                log=log,
            )
        if watchdog.cancelled:
            raise BuildCancelledError("Build was cancelled")
        if exit_code == CLONE_TIMEOUT_EXIT_CODE:
            raise BuildTimeoutError(
                "Repository clone timed out", exit_code=exit_code, log=log, reason="clone_timeout"
            )
        if exit_code == CLONE_FAILED_EXIT_CODE:
            summary = "Repository clone failed"
            raise CloneError(_with_tail(summary, captured), summary=summary)
        if exit_code != 0:
            summary = f"Build script exited with code {exit_code}"
            raise ExecutionError(
                _with_tail(summary, captured),
                exit_code=exit_code,
                log=log,
                summary=summary,
            )
        if not saw_sentinel:
            raise ExecutionError(
                "Build script finished without the success marker",
                exit_code=exit_code,
                log=log,
            )

        self.result = ExecutionResult(
            exit_code=exit_code,
            log=log,
            progress=tracker.value,
            duration_ms=duration_ms,
            line_count=line_count,
        )


def _with_tail(message: str, captured: list[str], lines: int = ERROR_TAIL_LINES) -> str:
    last = [line for line in captured[-lines:] if line.strip()]
    if not last:
        return message
    return message + ": " + " | ".join(last)


def container_name(build_id: str) -> str:
    return f"buildforge-{build_id}"


class SandboxedExecutor:
    """Runs build scripts in isolated containers, one active run per build."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        run_timeout_s: float = DEFAULT_RUN_TIMEOUT_S,
        poll_interval_s: float = 1.0,
    ):
        self.runtime = runtime
        self.run_timeout_s = run_timeout_s
        self.poll_interval_s = poll_interval_s
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def _claim(self, build_id: str) -> None:
        with self._lock:
            if build_id in self._active:
                raise ExecutionError(
                    f"Build {build_id} already has an active execution",
                    reason="already_running",
                )
            self._active.add(build_id)

    def _release(self, build_id: str) -> None:
        with self._lock:
            self._active.discard(build_id)

    def is_active(self, build_id: str) -> bool:
        with self._lock:
            return build_id in self._active

    def stream(
        self,
        build_id: str,
        workspace: Path,
        image: str,
        environment: dict[str, str],
        limits: ResourceLimits,
        cancel_requested: Optional[Callable[[], bool]] = None,
        timeout_s: Optional[float] = None,
        start_progress: int = 0,
    ) -> ExecutionStream:
        """Start streaming a build. The container starts on first iteration."""
        return ExecutionStream(
            executor=self,
            build_id=build_id,
            workspace=workspace,
            image=image,
            environment=environment,
            limits=limits,
            cancel_requested=cancel_requested,
            timeout_s=timeout_s or self.run_timeout_s,
            start_progress=start_progress,
        )

    def run(
        self,
        build_id: str,
        workspace: Path,
        image: str,
        environment: dict[str, str],
        limits: ResourceLimits,
        cancel_requested: Optional[Callable[[], bool]] = None,
        timeout_s: Optional[float] = None,
    ) -> ExecutionResult:
        """Run a build to completion and return its result."""
        execution = self.stream(
            build_id, workspace, image, environment, limits,
            cancel_requested=cancel_requested, timeout_s=timeout_s,
        )
        for _ in execution:
            pass
        return execution.result
