"""
Pydantic schemas for build requests, project descriptors and status views.
"""
import re
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BuildStatus(str, Enum):
    """Build lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.CANCELLED})


class StageStatus(str, Enum):
    """Stage execution status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeploymentStatus(str, Enum):
    """Deployment status as seen by the build engine."""
    QUEUED = "queued"
    BUILDING = "building"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueueState(str, Enum):
    """Persisted queue job state."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# Project type (closed tagged variant)
# =============================================================================

class NodeTool(str, Enum):
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"


class PythonTool(str, Enum):
    PIP = "pip"
    PIPENV = "pipenv"
    POETRY = "poetry"


class FrontendFramework(str, Enum):
    REACT = "react"
    VUE = "vue"
    ANGULAR = "angular"
    NEXTJS = "nextjs"


class PythonFramework(str, Enum):
    PLAIN = "plain"
    DJANGO = "django"
    FLASK = "flask"


class StaticSite(BaseModel):
    """Plain static files, served as-is."""
    model_config = ConfigDict(frozen=True)
    kind: Literal["static"] = "static"


class NodeFrontend(BaseModel):
    """JavaScript frontend compiled to static assets."""
    model_config = ConfigDict(frozen=True)
    kind: Literal["node_frontend"] = "node_frontend"
    framework: FrontendFramework
    build_tool: NodeTool = NodeTool.NPM


class NodeBackend(BaseModel):
    """Node.js server shipped as a container image."""
    model_config = ConfigDict(frozen=True)
    kind: Literal["node_backend"] = "node_backend"
    build_tool: NodeTool = NodeTool.NPM


class PythonApp(BaseModel):
    """Python web application shipped as a container image."""
    model_config = ConfigDict(frozen=True)
    kind: Literal["python"] = "python"
    framework: PythonFramework = PythonFramework.PLAIN
    build_tool: PythonTool = PythonTool.PIP


class Unrecognized(BaseModel):
    """Anything else; built with the project's own commands."""
    model_config = ConfigDict(frozen=True)
    kind: Literal["unrecognized"] = "unrecognized"
    language: Optional[str] = None


ProjectType = Annotated[
    Union[StaticSite, NodeFrontend, NodeBackend, PythonApp, Unrecognized],
    Field(discriminator="kind"),
]


def project_type_from_descriptor(
    language: Optional[str],
    framework: Optional[str] = None,
    build_tool: Optional[str] = None,
) -> Union[StaticSite, NodeFrontend, NodeBackend, PythonApp, Unrecognized]:
    """
    Convert the detector's loose {language, framework, buildTool} descriptor
    into a ProjectType variant. Unknown combinations become Unrecognized.
    """
    language = (language or "").lower()
    framework = (framework or "").lower()
    build_tool = (build_tool or "").lower()

    # The project model flattens frameworks into its type field
    if language in {f.value for f in FrontendFramework}:
        framework, language = language, "nodejs"
    elif language in ("django", "flask"):
        framework, language = language, "python"

    if language == "static":
        return StaticSite()

    if language in ("nodejs", "node", "javascript", "typescript"):
        tool = NodeTool(build_tool) if build_tool in {t.value for t in NodeTool} else NodeTool.NPM
        if framework in {f.value for f in FrontendFramework}:
            return NodeFrontend(framework=FrontendFramework(framework), build_tool=tool)
        if framework in ("backend", "express", "fastify", "koa", ""):
            return NodeBackend(build_tool=tool)
        return Unrecognized(language=language)

    if language == "python":
        tool = PythonTool(build_tool) if build_tool in {t.value for t in PythonTool} else PythonTool.PIP
        if framework in ("django", "flask"):
            return PythonApp(framework=PythonFramework(framework), build_tool=tool)
        return PythonApp(framework=PythonFramework.PLAIN, build_tool=tool)

    return Unrecognized(language=language or None)


# =============================================================================
# Build configuration and request
# =============================================================================

ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
COMMIT_PATTERN = re.compile(r"^[0-9a-fA-F]{7,40}$")


class EnvVar(BaseModel):
    """Project environment variable."""
    model_config = ConfigDict(frozen=True)
    key: str
    value: str = ""
    secret: bool = False

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        if not ENV_KEY_PATTERN.match(v):
            raise ValueError(f"Invalid environment variable name: {v}")
        return v


class BuildConfig(BaseModel):
    """Project build settings. Never mutated by the build engine."""
    model_config = ConfigDict(frozen=True)
    install_command: Optional[str] = None
    build_command: Optional[str] = None
    output_directory: Optional[str] = None
    start_command: Optional[str] = None
    environment: tuple[EnvVar, ...] = ()
    node_version: str = "18"
    python_version: str = "3.11"

    @field_validator("output_directory")
    @classmethod
    def validate_output_directory(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().strip("/") or "."
        if ".." in v.split("/"):
            raise ValueError("Output directory must stay inside the repository")
        return v

    @field_validator("node_version", "python_version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not re.match(r"^[0-9][0-9.]*$", v):
            raise ValueError(f"Invalid runtime version: {v}")
        return v


class BuildRequest(BaseModel):
    """Input from a webhook or manual trigger; becomes a Build."""
    model_config = ConfigDict(frozen=True)
    project_id: str = Field(..., min_length=1, max_length=128)
    deployment_id: str = Field(..., min_length=1, max_length=128)
    repository: str = Field(..., min_length=1, max_length=2048)
    branch: str = Field(default="main", min_length=1, max_length=255)
    commit: str
    project_type: ProjectType
    build_config: BuildConfig = Field(default_factory=BuildConfig)
    rebuild_from: Optional[str] = None

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        v = v.strip()
        if not (v.startswith("https://") or v.startswith("http://")
                or v.startswith("git@") or v.startswith("file://")):
            raise ValueError("Repository must be an http(s), ssh or file URL")
        return v

    @field_validator("commit")
    @classmethod
    def validate_commit(cls, v: str) -> str:
        if not COMMIT_PATTERN.match(v):
            raise ValueError("Commit must be a hex SHA (7-40 characters)")
        return v.lower()

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        if v.startswith("-") or ".." in v or any(c.isspace() for c in v):
            raise ValueError(f"Invalid branch name: {v}")
        return v


# =============================================================================
# Views returned to collaborators
# =============================================================================

class ArtifactView(BaseModel):
    name: str
    path: str
    size_bytes: int
    type: str
    sha256: str
    created_at: str


class BuildErrorView(BaseModel):
    message: str
    reason: Optional[str] = None


class CacheView(BaseModel):
    enabled: bool = True
    key: Optional[str] = None
    hits: int = 0
    misses: int = 0
    size_bytes: int = 0


class StageView(BaseModel):
    name: str
    status: StageStatus
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    line_count: int = 0


class BuildStatusView(BaseModel):
    """Best-known state of a build, queryable at any time."""
    build_id: str
    deployment_id: str
    project_id: str
    status: BuildStatus
    progress: int = 0
    queue_state: Optional[QueueState] = None
    queue_position: Optional[int] = None
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    retry_count: int = 0
    max_retries: int = 3
    rebuild_from: Optional[str] = None
    artifacts: list[ArtifactView] = Field(default_factory=list)
    stages: list[StageView] = Field(default_factory=list)
    cache: CacheView = Field(default_factory=CacheView)
    error: Optional[BuildErrorView] = None


class BuildLogsView(BaseModel):
    build_id: str
    logs: str = ""
    exists: bool = False


class EnqueueResult(BaseModel):
    build_id: str
    job_id: str
    status: str = "queued"
    queue_position: int = 0


class BuildSummary(BaseModel):
    """Lightweight row for build listings."""
    build_id: str
    project_id: str
    deployment_id: str
    status: BuildStatus
    project_kind: str
    commit: str
    created_at: str
    completed_at: Optional[str] = None
    rebuild_from: Optional[str] = None


class BuildListResponse(BaseModel):
    builds: list[BuildSummary]
    total: int
    limit: int
    offset: int


def dump_request(request: BuildRequest) -> dict[str, Any]:
    """Serialise a request for persistence (JSON-safe)."""
    return request.model_dump(mode="json")


class CancelResult(BaseModel):
    build_id: str
    outcome: str  # cancelled, cancel_requested, already_terminal, not_found
    status: Optional[BuildStatus] = None
