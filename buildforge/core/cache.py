"""
Dependency cache lanes, reused across builds of the same project.

Archives live at <cache_root>/<project_id>/<lane>.tar.gz. Before a build the
archive is copied into the workspace cache dir, where the build script unpacks
it; after the build the script repacks it and the archive is copied back.
Restore and save are best-effort: they never raise.
"""
import logging
import os
import re
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from buildforge.core.errors import CacheError
from buildforge.core.metrics import metrics
from buildforge.schemas.build import NodeBackend, NodeFrontend, PythonApp

logger = logging.getLogger(__name__)

CACHE_ARCHIVE_SUFFIX = ".tar.gz"
MAX_CACHE_ARCHIVE_BYTES = 1024 * 1024 * 1024  # 1GB per lane

_PROJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class CacheLane(str, Enum):
    """Ecosystem-specific cache lane."""
    NODE_MODULES = "node_modules"
    PIP = "pip"

    @property
    def archive_name(self) -> str:
        return f"{self.value}{CACHE_ARCHIVE_SUFFIX}"


def cache_lanes_for(project_type) -> list[CacheLane]:
    """Cache lanes used by a project type (none for static/unrecognized)."""
    if isinstance(project_type, (NodeFrontend, NodeBackend)):
        return [CacheLane.NODE_MODULES]
    if isinstance(project_type, PythonApp):
        return [CacheLane.PIP]
    return []


def cache_key(project_id: str, lanes: list[CacheLane]) -> Optional[str]:
    """Summary key recorded on the build."""
    if not lanes:
        return None
    return f"{project_id}:" + ",".join(lane.value for lane in lanes)


@dataclass
class CacheSummary:
    """Cache usage for one build."""
    enabled: bool = True
    key: Optional[str] = None
    hits: int = 0
    misses: int = 0
    size_bytes: int = 0


class CacheManager:
    """Restores and saves cache lanes between the cache root and a workspace."""

    def __init__(self, cache_root: Path):
        self._cache_root = Path(cache_root)
        self._cache_root.mkdir(parents=True, exist_ok=True)

    @property
    def cache_root(self) -> Path:
        return self._cache_root

    def archive_path(self, project_id: str, lane: CacheLane) -> Path:
        """Location of a lane archive in the cache store."""
        if not _PROJECT_ID_PATTERN.match(project_id) or project_id in (".", ".."):
            raise CacheError(f"Invalid project id for cache: {project_id!r}")
        return self._cache_root / project_id / lane.archive_name

    def restore(self, project_id: str, lane: CacheLane, workspace_cache_dir: Path) -> bool:
        """
        Copy a lane archive into the workspace. Returns True on hit.
        A missing archive is a miss; any failure is logged and treated as a miss.
        """
        try:
            source = self.archive_path(project_id, lane)
            if not source.is_file():
                logger.info(f"cache_miss project_id={project_id} lane={lane.value}")
                metrics.inc("cache_misses_total")
                return False

            workspace_cache_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, workspace_cache_dir / lane.archive_name)
            logger.info(
                f"cache_restored project_id={project_id} lane={lane.value} "
                f"size={source.stat().st_size}"
            )
            metrics.inc("cache_hits_total")
            return True
        except (OSError, CacheError) as e:
            logger.warning(
                f"cache_restore_failed project_id={project_id} lane={lane.value} "
                f"error_type={type(e).__name__}"
            )
            metrics.inc("cache_misses_total")
            return False

    def save(self, project_id: str, lane: CacheLane, workspace_cache_dir: Path) -> int:
        """
        Copy the lane archive produced by the build back into the store.
        Returns the stored size in bytes (0 if nothing was saved). Never raises.
        """
        produced = workspace_cache_dir / lane.archive_name
        try:
            if not produced.is_file():
                return 0

            size = produced.stat().st_size
            if size > MAX_CACHE_ARCHIVE_BYTES:
                raise CacheError(f"Cache archive too large: {size} > {MAX_CACHE_ARCHIVE_BYTES}")

            target = self.archive_path(project_id, lane)
            target.parent.mkdir(parents=True, exist_ok=True)

            # Copy to a temp name then rename so readers never see a partial archive
            tmp = target.with_name(f".{target.name}.{os.getpid()}.tmp")
            shutil.copy2(produced, tmp)
            os.replace(tmp, target)

            logger.info(f"cache_saved project_id={project_id} lane={lane.value} size={size}")
            return size
        except (OSError, CacheError) as e:
            logger.warning(
                f"cache_save_failed project_id={project_id} lane={lane.value} "
                f"error_type={type(e).__name__}"
            )
            return 0

    def restore_all(self, project_id: str, lanes: list[CacheLane], workspace_cache_dir: Path) -> CacheSummary:
        """Restore every lane, returning hit/miss counts."""
        summary = CacheSummary(enabled=bool(lanes), key=cache_key(project_id, lanes))
        for lane in lanes:
            if self.restore(project_id, lane, workspace_cache_dir):
                summary.hits += 1
            else:
                summary.misses += 1
        return summary

    def save_all(
        self,
        project_id: str,
        lanes: list[CacheLane],
        workspace_cache_dir: Path,
        summary: CacheSummary,
    ) -> CacheSummary:
        """Save every lane, accumulating stored size into the summary."""
        for lane in lanes:
            summary.size_bytes += self.save(project_id, lane, workspace_cache_dir)
        return summary

