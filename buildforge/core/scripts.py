"""
Build script generator.

Maps (ProjectType, BuildConfig) to the POSIX shell script executed inside the
sandbox. Pure and deterministic: identical inputs produce byte-identical text,
which keeps cache keys stable and the output testable.

Workspace layout inside the sandbox (bind-mounted at /workspace):
- /workspace/source  - shallow clone of the requested commit
- /workspace/output  - build output, archived by the artifact store
- /workspace/cache   - cache lane archives exchanged with the cache manager
"""
import json
import shlex
from dataclasses import dataclass
from typing import Optional

from buildforge.core.cache import CacheLane, cache_lanes_for
from buildforge.core.errors import ConfigurationError
from buildforge.schemas.build import (
    BuildConfig,
    FrontendFramework,
    NodeBackend,
    NodeFrontend,
    NodeTool,
    PythonApp,
    PythonFramework,
    PythonTool,
    StaticSite,
    Unrecognized,
)

# =============================================================================
# Constants
# =============================================================================

WORKSPACE_MOUNT = "/workspace"
SOURCE_DIR = f"{WORKSPACE_MOUNT}/source"
OUTPUT_DIR = f"{WORKSPACE_MOUNT}/output"
CACHE_DIR = f"{WORKSPACE_MOUNT}/cache"
SCRIPT_NAME = "build.sh"

# Last line of a successful script; the executor requires it
SUCCESS_SENTINEL = "BUILDFORGE_BUILD_SUCCEEDED"

# Script exit codes reserved for clone problems
CLONE_FAILED_EXIT_CODE = 65
CLONE_TIMEOUT_EXIT_CODE = 66
# coreutils `timeout` exits 124; busybox `timeout` (alpine images) dies with SIGTERM
TIMEOUT_EXIT_CODES = (124, 143)

DEFAULT_CLONE_TIMEOUT_S = 120

FRONTEND_OUTPUT_DIRS = {
    FrontendFramework.REACT: "build",
    FrontendFramework.VUE: "dist",
    FrontendFramework.ANGULAR: "dist",
    FrontendFramework.NEXTJS: ".next",
}

NODE_INSTALL = {
    NodeTool.NPM: "npm install",
    NodeTool.YARN: "yarn install",
    NodeTool.PNPM: "pnpm install",
}

NODE_INSTALL_PRODUCTION = {
    NodeTool.NPM: "npm install --production",
    NodeTool.YARN: "yarn install --production",
    NodeTool.PNPM: "pnpm install --prod",
}

NODE_BUILD = {
    NodeTool.NPM: "npm run build",
    NodeTool.YARN: "yarn build",
    NodeTool.PNPM: "pnpm build",
}

NODE_START = {
    NodeTool.NPM: "npm start",
    NodeTool.YARN: "yarn start",
    NodeTool.PNPM: "pnpm start",
}

PYTHON_INSTALL = {
    PythonTool.PIP: "if [ -f requirements.txt ]; then pip install -r requirements.txt; "
                    "else echo 'no requirements.txt, skipping'; fi",
    PythonTool.PIPENV: "pip install pipenv && pipenv install --deploy --system",
    PythonTool.POETRY: "pip install poetry && poetry config virtualenvs.create false "
                       "&& poetry install --no-root --no-interaction",
}

PYTHON_IMAGE_INSTALL = {
    PythonTool.PIP: "pip install --no-cache-dir -r requirements.txt",
    PythonTool.PIPENV: "pip install --no-cache-dir pipenv && pipenv install --deploy --system",
    PythonTool.POETRY: "pip install --no-cache-dir poetry && poetry config virtualenvs.create false "
                       "&& poetry install --no-root --no-interaction",
}

PYTHON_DEFAULT_START = {
    PythonFramework.DJANGO: "gunicorn --bind 0.0.0.0:8000 wsgi:application",
    PythonFramework.FLASK: "gunicorn --bind 0.0.0.0:8000 app:app",
}


@dataclass(frozen=True)
class BuildPlan:
    """Resolved command sequence for one project type."""
    install_commands: tuple[str, ...] = ()
    build_commands: tuple[str, ...] = ()
    output_directory: Optional[str] = None  # None means "copy the source tree"
    exclude_from_output: tuple[str, ...] = (".git",)
    container_manifest: Optional[str] = None  # Dockerfile text for backend images
    cache_lanes: tuple[CacheLane, ...] = ()
    setup_lines: tuple[str, ...] = ()


# =============================================================================
# Policy table
# =============================================================================

def _docker_cmd(command: str) -> str:
    """Render a start command as a Dockerfile exec-form CMD."""
    try:
        parts = shlex.split(command)
    except ValueError as e:
        raise ConfigurationError(f"Invalid start command: {e}")
    if not parts:
        raise ConfigurationError("Start command is empty")
    return "CMD " + json.dumps(parts)


def _node_backend_manifest(tool: NodeTool, config: BuildConfig) -> str:
    start = config.start_command or NODE_START[tool]
    lines = [
        f"FROM node:{config.node_version}-alpine",
        "WORKDIR /app",
        "ENV NODE_ENV=production",
        "COPY . .",
    ]
    if tool != NodeTool.NPM:
        lines.append(f"RUN npm install -g {tool.value}")
    lines += [
        f"RUN {NODE_INSTALL_PRODUCTION[tool]}",
        "EXPOSE 3000",
        _docker_cmd(start),
    ]
    return "\n".join(lines) + "\n"


def _python_manifest(project_type: PythonApp, config: BuildConfig, start: str) -> str:
    lines = [
        f"FROM python:{config.python_version}-slim",
        "WORKDIR /app",
        "ENV PYTHONDONTWRITEBYTECODE=1 PYTHONUNBUFFERED=1",
        "COPY . .",
        f"RUN {PYTHON_IMAGE_INSTALL[project_type.build_tool]}",
    ]
    if start.startswith("gunicorn"):
        lines.append("RUN pip install --no-cache-dir gunicorn")
    lines += [
        "EXPOSE 8000",
        _docker_cmd(start),
    ]
    return "\n".join(lines) + "\n"


def plan_build(project_type, config: BuildConfig) -> BuildPlan:
    """
    Resolve the install/build commands and output convention for a project.

    Raises:
        ConfigurationError: unsupported project type or missing required command
    """
    lanes = tuple(cache_lanes_for(project_type))

    if isinstance(project_type, StaticSite):
        return BuildPlan()

    if isinstance(project_type, NodeFrontend):
        tool = project_type.build_tool
        return BuildPlan(
            install_commands=(config.install_command or NODE_INSTALL[tool],),
            build_commands=(config.build_command or NODE_BUILD[tool],),
            output_directory=config.output_directory or FRONTEND_OUTPUT_DIRS[project_type.framework],
            cache_lanes=lanes,
        )

    if isinstance(project_type, NodeBackend):
        tool = project_type.build_tool
        return BuildPlan(
            install_commands=(config.install_command or NODE_INSTALL_PRODUCTION[tool],),
            build_commands=(config.build_command,) if config.build_command else (),
            exclude_from_output=(".git", "node_modules"),
            container_manifest=_node_backend_manifest(tool, config),
            cache_lanes=lanes,
        )

    if isinstance(project_type, PythonApp):
        start = config.start_command or PYTHON_DEFAULT_START.get(project_type.framework)
        if not start:
            raise ConfigurationError(
                "Python projects without a framework need an explicit start command"
            )
        build_commands: tuple[str, ...] = ()
        if config.build_command:
            build_commands = (config.build_command,)
        elif project_type.framework == PythonFramework.DJANGO:
            build_commands = ("python manage.py collectstatic --noinput",)
        return BuildPlan(
            install_commands=(config.install_command or PYTHON_INSTALL[project_type.build_tool],),
            build_commands=build_commands,
            exclude_from_output=(".git", "__pycache__", ".venv"),
            container_manifest=_python_manifest(project_type, config, start),
            cache_lanes=lanes,
            setup_lines=(
                f'export PIP_CACHE_DIR="$CACHE_DIR/{CacheLane.PIP.value}"',
                'mkdir -p "$PIP_CACHE_DIR"',
            ),
        )

    if isinstance(project_type, Unrecognized):
        if not config.output_directory:
            raise ConfigurationError(
                f"Unrecognized project type ({project_type.language or 'unknown'}) "
                "requires an output directory"
            )
        return BuildPlan(
            install_commands=(config.install_command,) if config.install_command else (),
            build_commands=(config.build_command,) if config.build_command else (),
            output_directory=config.output_directory,
        )

    raise ConfigurationError(f"Unsupported project type: {project_type!r}")


# =============================================================================
# Rendering
# =============================================================================

def _timed_out(variable: str) -> str:
    return " || ".join(f'[ "{variable}" -eq {code} ]' for code in TIMEOUT_EXIT_CODES)


def _clone_section(repository: str, branch: str, commit: str, clone_timeout_s: int) -> list[str]:
    repo = shlex.quote(repository)
    ref = shlex.quote(branch)
    sha = shlex.quote(commit)
    return [
        "echo " + shlex.quote(f"==> Cloning repository (branch {branch}, commit {commit[:12]})"),
        "ensure_git",
        'rm -rf "$SOURCE_DIR"',
        "rc=0",
        f'timeout {clone_timeout_s} git clone --quiet --depth 1 --branch {ref} {repo} "$SOURCE_DIR" || rc=$?',
        f'if {_timed_out("$rc")}; then echo "ERROR: clone timed out after {clone_timeout_s}s"; exit {CLONE_TIMEOUT_EXIT_CODE}; fi',
        f'if [ "$rc" -ne 0 ]; then echo "ERROR: clone failed (exit $rc)"; exit {CLONE_FAILED_EXIT_CODE}; fi',
        'cd "$SOURCE_DIR"',
        f"if ! git checkout --quiet {sha} 2>/dev/null; then",
        '  echo "==> Commit is not at the branch tip, fetching it"',
        "  rc=0",
        f"  timeout {clone_timeout_s} git fetch --quiet --depth 1 origin {sha} || rc=$?",
        f'  if {_timed_out("$rc")}; then echo "ERROR: fetch timed out after {clone_timeout_s}s"; exit {CLONE_TIMEOUT_EXIT_CODE}; fi',
        f'  if [ "$rc" -ne 0 ]; then echo "ERROR: commit {commit} not found"; exit {CLONE_FAILED_EXIT_CODE}; fi',
        "  git checkout --quiet FETCH_HEAD",
        "fi",
    ]


def _restore_cache_section(lanes: tuple[CacheLane, ...]) -> list[str]:
    lines = []
    for lane in lanes:
        archive = f'"$CACHE_DIR/{lane.archive_name}"'
        target = '"$SOURCE_DIR"' if lane == CacheLane.NODE_MODULES else '"$CACHE_DIR"'
        cleanup = f'rm -rf "$SOURCE_DIR/{lane.value}"' if lane == CacheLane.NODE_MODULES else "true"
        lines += [
            f'echo "==> Restoring cache ({lane.value})"',
            f"if [ -f {archive} ]; then",
            f'  tar -xzf {archive} -C {target} || {{ echo "WARN: cache restore failed, continuing"; {cleanup}; }}',
            "else",
            f'  echo "cache miss: {lane.value}"',
            "fi",
        ]
    return lines


def _save_cache_section(lanes: tuple[CacheLane, ...]) -> list[str]:
    lines = []
    for lane in lanes:
        archive = f'"$CACHE_DIR/{lane.archive_name}"'
        tmp = f'"$CACHE_DIR/{lane.archive_name}.tmp"'
        if lane == CacheLane.NODE_MODULES:
            source_dir, member = '"$SOURCE_DIR"', lane.value
        else:
            source_dir, member = '"$CACHE_DIR"', lane.value
        lines += [
            f'echo "==> Saving cache ({lane.value})"',
            f"if [ -d {source_dir}/{member} ]; then",
            f"  (tar -czf {tmp} -C {source_dir} {member} && mv {tmp} {archive}) "
            '|| echo "WARN: cache save failed, continuing"',
            "fi",
        ]
    return lines


def _output_section(plan: BuildPlan) -> list[str]:
    lines = [
        'echo "==> Copying output"',
        'rm -rf "$OUTPUT_DIR"',
        'mkdir -p "$OUTPUT_DIR"',
    ]
    if plan.output_directory and plan.output_directory != ".":
        out = shlex.quote(plan.output_directory)
        lines += [
            f'if [ ! -d "$SOURCE_DIR"/{out} ]; then',
            "  echo " + shlex.quote(f"ERROR: output directory {plan.output_directory} not found"),
            "  exit 1",
            "fi",
            f'cp -a "$SOURCE_DIR"/{out}/. "$OUTPUT_DIR"/',
        ]
    else:
        excludes = " ".join(f"--exclude={shlex.quote(e)}" for e in plan.exclude_from_output)
        lines.append(f'tar -C "$SOURCE_DIR" {excludes} -cf - . | tar -C "$OUTPUT_DIR" -xf -')

    if plan.container_manifest:
        lines += [
            "cat > \"$OUTPUT_DIR/Dockerfile\" <<'BUILDFORGE_EOF'",
            plan.container_manifest.rstrip("\n"),
            "BUILDFORGE_EOF",
        ]
    return lines


def generate_script(
    project_type,
    config: BuildConfig,
    repository: str,
    branch: str,
    commit: str,
    clone_timeout_s: int = DEFAULT_CLONE_TIMEOUT_S,
) -> str:
    """
    Generate the build script for a project.

    Args:
        project_type: ProjectType variant
        config: Project build configuration
        repository: Clone URL
        branch: Branch to clone
        commit: Exact commit to check out
        clone_timeout_s: Bound for the clone and fetch sub-steps

    Returns:
        Script text (POSIX sh)

    Raises:
        ConfigurationError: If the project cannot be built with this config
    """
    plan = plan_build(project_type, config)

    lines = [
        "#!/bin/sh",
        "# Generated by buildforge",
        "set -eu",
        "",
        f"SOURCE_DIR={SOURCE_DIR}",
        f"OUTPUT_DIR={OUTPUT_DIR}",
        f"CACHE_DIR={CACHE_DIR}",
        'mkdir -p "$CACHE_DIR"',
        "",
        "ensure_git() {",
        "  if command -v git >/dev/null 2>&1; then return 0; fi",
        "  if command -v apk >/dev/null 2>&1; then apk add --no-cache git >/dev/null",
        "  elif command -v apt-get >/dev/null 2>&1; then apt-get update -qq >/dev/null && apt-get install -y -qq git >/dev/null",
        f'  else echo "ERROR: git is not available"; exit {CLONE_FAILED_EXIT_CODE}; fi',
        "}",
        "",
    ]
    lines += _clone_section(repository, branch, commit, clone_timeout_s)
    lines += list(plan.setup_lines)
    lines += _restore_cache_section(plan.cache_lanes)

    if plan.install_commands:
        lines.append('echo "==> Installing dependencies"')
        lines += list(plan.install_commands)

    if plan.build_commands:
        lines.append('echo "==> Building"')
        lines += list(plan.build_commands)
        lines.append('echo "==> Build completed"')

    lines += _output_section(plan)
    lines += _save_cache_section(plan.cache_lanes)
    lines.append(f'echo "{SUCCESS_SENTINEL}"')

    return "\n".join(lines) + "\n"
