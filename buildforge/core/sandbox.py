"""
Container runtime for sandboxed build execution.

One throwaway container per build. Sessions are context managers: the
container is removed on every exit path (success, error, timeout,
cancellation).

Security:
- No shell=True anywhere; the docker CLI is driven with argument lists
- All capabilities dropped except CHOWN, SETUID, SETGID
- no-new-privileges, memory/CPU/PID caps
- Network is "none" unless the caller grants one
- Environment values are passed through the client process environment,
  never on the command line
"""
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from buildforge.core.scripts import WORKSPACE_MOUNT

logger = logging.getLogger(__name__)

ALLOWED_CAPABILITIES = ("CHOWN", "SETUID", "SETGID")
DOCKER_CONTROL_TIMEOUT = 30  # seconds for kill/rm calls
CONTAINER_LABEL = "buildforge.build"


@dataclass(frozen=True)
class ResourceLimits:
    """Per-build resource caps."""
    memory: str = "2g"
    cpu_shares: int = 512
    pids_limit: int = 512
    network: Optional[str] = None  # None disables networking


class SandboxSession(ABC):
    """A running build container. Removing it is idempotent."""

    def __init__(self, name: str):
        self.name = name

    def __enter__(self) -> "SandboxSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.remove()
        return False

    @abstractmethod
    def lines(self) -> Iterator[str]:
        """Combined stdout/stderr, one line at a time, until the container exits."""

    @abstractmethod
    def wait(self) -> int:
        """Block until the container exits and return its exit code."""

    @abstractmethod
    def kill(self) -> None:
        """Stop the container immediately. `lines()` must end soon after."""

    @abstractmethod
    def remove(self) -> None:
        """Destroy the container and release its resources."""


class ContainerRuntime(ABC):
    """Starts isolated build containers."""

    @abstractmethod
    def start(
        self,
        name: str,
        image: str,
        workspace: Path,
        environment: dict[str, str],
        limits: ResourceLimits,
        command: list[str],
    ) -> SandboxSession:
        """Start a container running `command` with the workspace mounted at /workspace."""


def build_run_args(
    docker_bin: str,
    name: str,
    image: str,
    workspace: Path,
    environment: dict[str, str],
    limits: ResourceLimits,
    command: list[str],
) -> list[str]:
    """Assemble the `docker run` argument list for a build container."""
    args = [
        docker_bin, "run",
        "--name", name,
        "--label", f"{CONTAINER_LABEL}={name}",
        "--memory", limits.memory,
        "--memory-swap", limits.memory,
        "--cpu-shares", str(limits.cpu_shares),
        "--pids-limit", str(limits.pids_limit),
        "--cap-drop", "ALL",
    ]
    for capability in ALLOWED_CAPABILITIES:
        args += ["--cap-add", capability]
    args += [
        "--security-opt", "no-new-privileges",
        "--network", limits.network or "none",
        "--workdir", WORKSPACE_MOUNT,
        "--volume", f"{Path(workspace).resolve()}:{WORKSPACE_MOUNT}:rw",
    ]
    # Keys only; values come from the client environment
    for key in sorted(environment):
        args += ["--env", key]
    args.append(image)
    args += command
    return args


class DockerSession(SandboxSession):
    """Build container driven through the docker CLI."""

    def __init__(self, name: str, docker_bin: str, process: subprocess.Popen):
        super().__init__(name)
        self._docker_bin = docker_bin
        self._process = process
        self._removed = False

    def lines(self) -> Iterator[str]:
        assert self._process.stdout is not None
        for line in self._process.stdout:
            yield line.rstrip("\n")

    def wait(self) -> int:
        return self._process.wait()

    def _control(self, *args: str) -> None:
        try:
            result = subprocess.run(
                [self._docker_bin, *args],
                capture_output=True,
                text=True,
                timeout=DOCKER_CONTROL_TIMEOUT,
            )
            if result.returncode != 0 and "No such container" not in (result.stderr or ""):
                logger.warning(
                    f"docker_control_failed container={self.name} action={args[0]} "
                    f"exit_code={result.returncode}"
                )
        except (subprocess.SubprocessError, OSError) as e:
            logger.warning(
                f"docker_control_failed container={self.name} action={args[0]} "
                f"error_type={type(e).__name__}"
            )

    def kill(self) -> None:
        logger.info(f"container_kill container={self.name}")
        self._control("kill", self.name)
        # The container may not exist yet (image pull) or the daemon may not
        # answer; ending the client closes the output stream either way
        if self._process.poll() is None:
            self._process.kill()

    def remove(self) -> None:
        if self._removed:
            return
        self._removed = True
        self._control("rm", "--force", "--volumes", self.name)
        if self._process.poll() is None:
            self._process.kill()
            self._process.wait(timeout=DOCKER_CONTROL_TIMEOUT)
        if self._process.stdout is not None:
            self._process.stdout.close()
        logger.info(f"container_removed container={self.name}")


class DockerRuntime(ContainerRuntime):
    """Container runtime backed by the docker CLI."""

    def __init__(self, docker_bin: str = "docker"):
        self._docker_bin = docker_bin

    def start(
        self,
        name: str,
        image: str,
        workspace: Path,
        environment: dict[str, str],
        limits: ResourceLimits,
        command: list[str],
    ) -> SandboxSession:
        args = build_run_args(self._docker_bin, name, image, workspace, environment, limits, command)

        # Minimal client environment plus the build variables referenced by --env KEY
        client_env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": os.environ.get("HOME", "/tmp"),
        }
        for key in ("DOCKER_HOST", "DOCKER_CONFIG", "DOCKER_CONTEXT", "DOCKER_CERT_PATH", "DOCKER_TLS_VERIFY"):
            if key in os.environ:
                client_env[key] = os.environ[key]
        client_env.update(environment)

        process = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            env=client_env,
            text=True,
            errors="replace",
            bufsize=1,
        )
        logger.info(f"container_started container={name} image={image} network={limits.network or 'none'}")
        return DockerSession(name, self._docker_bin, process)
