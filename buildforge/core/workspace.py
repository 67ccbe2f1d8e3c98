"""
Per-build host workspaces.

Layout: <workspaces_dir>/<build_id>/
    build.sh   generated script, mounted read-write at /workspace
    output/    files to package after a successful run
    cache/     cache lane archives exchanged with the cache store
"""
import logging
import re
import shutil
from pathlib import Path
from typing import Optional

from buildforge.core.scripts import SCRIPT_NAME

logger = logging.getLogger(__name__)

_BUILD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class Workspace:
    """Paths for one build's workspace."""

    def __init__(self, root: Path):
        self.root = root

    @property
    def script_path(self) -> Path:
        return self.root / SCRIPT_NAME

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    @property
    def cache_dir(self) -> Path:
        return self.root / "cache"


class WorkspaceManager:
    """Creates and removes isolated workspaces for builds."""

    def __init__(self, base_dir: Path):
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _path(self, build_id: str) -> Path:
        if not _BUILD_ID_PATTERN.match(build_id):
            raise ValueError(f"Invalid build id: {build_id!r}")
        return self._base_dir / build_id

    def create(self, build_id: str, script: str) -> Workspace:
        """Create a fresh workspace and write the build script into it."""
        root = self._path(build_id)
        if root.exists():
            # Leftover from an interrupted attempt
            try:
                shutil.rmtree(root)
            except OSError as e:
                logger.error(f"workspace_reset_failed build_id={build_id} error_type={type(e).__name__}")
                raise
        workspace = Workspace(root)
        workspace.output_dir.mkdir(parents=True)
        workspace.cache_dir.mkdir(parents=True)
        workspace.script_path.write_text(script, encoding="utf-8")
        workspace.script_path.chmod(0o755)
        logger.info(f"workspace_created build_id={build_id}")
        return workspace

    def get(self, build_id: str) -> Optional[Workspace]:
        root = self._path(build_id)
        if root.exists():
            return Workspace(root)
        return None

    def cleanup(self, build_id: str) -> bool:
        """Remove the workspace for a build."""
        root = self._path(build_id)
        if root.exists():
            shutil.rmtree(root, ignore_errors=True)
            logger.info(f"workspace_cleaned build_id={build_id}")
            return True
        return False
