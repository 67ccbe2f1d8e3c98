"""
Build engine configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).parent.parent.parent


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Build engine settings (immutable)."""
    data_dir: Path = PROJECT_ROOT / "data"
    concurrency: int = 5
    max_retries: int = 3
    retry_base_delay_s: float = 2.0
    run_timeout_s: int = 600  # 10 minutes for the whole script
    clone_timeout_s: int = 120
    memory_limit: str = "2g"
    cpu_shares: int = 512
    pids_limit: int = 512
    retention_days: int = 7
    sweep_interval_s: int = 3600
    poll_interval_s: float = 1.0
    lease_s: float = 60.0  # Claim lease, renewed every third of it
    docker_bin: str = "docker"
    build_network: str = "bridge"
    start_workers: bool = True
    log_level: str = "INFO"
    deployment_callback_url: Optional[str] = None  # Never logged with credentials

    @property
    def workspaces_dir(self) -> Path:
        return self.data_dir / "workspaces"

    @property
    def artifacts_dir(self) -> Path:
        return self.data_dir / "artifacts"

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "cache"

    @property
    def database_path(self) -> Path:
        return self.data_dir / "builds.db"


def get_settings() -> Settings:
    """Load build engine settings from environment."""
    data_dir = os.getenv("BUILDFORGE_DATA_DIR")

    concurrency = _env_int("BUILDFORGE_CONCURRENCY", 5)
    if concurrency < 1:
        concurrency = 1

    return Settings(
        data_dir=Path(data_dir) if data_dir else PROJECT_ROOT / "data",
        concurrency=concurrency,
        max_retries=max(1, _env_int("BUILDFORGE_MAX_RETRIES", 3)),
        retry_base_delay_s=_env_float("BUILDFORGE_RETRY_BASE_DELAY_S", 2.0),
        run_timeout_s=_env_int("BUILDFORGE_RUN_TIMEOUT_S", 600),
        clone_timeout_s=_env_int("BUILDFORGE_CLONE_TIMEOUT_S", 120),
        memory_limit=os.getenv("BUILDFORGE_MEMORY_LIMIT", "2g"),
        cpu_shares=_env_int("BUILDFORGE_CPU_SHARES", 512),
        pids_limit=_env_int("BUILDFORGE_PIDS_LIMIT", 512),
        retention_days=_env_int("BUILDFORGE_RETENTION_DAYS", 7),
        sweep_interval_s=_env_int("BUILDFORGE_SWEEP_INTERVAL_S", 3600),
        poll_interval_s=_env_float("BUILDFORGE_POLL_INTERVAL_S", 1.0),
        lease_s=max(3.0, _env_float("BUILDFORGE_LEASE_S", 60.0)),
        docker_bin=os.getenv("BUILDFORGE_DOCKER_BIN", "docker"),
        build_network=os.getenv("BUILDFORGE_BUILD_NETWORK", "bridge"),
        start_workers=_env_bool("BUILDFORGE_START_WORKERS", True),
        log_level=os.getenv("BUILDFORGE_LOG_LEVEL", "INFO"),
        deployment_callback_url=os.getenv("BUILDFORGE_DEPLOYMENT_CALLBACK_URL") or None,
    )
