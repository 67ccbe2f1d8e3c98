"""
Artifact storage for build outputs.

Each successful build produces <artifacts_dir>/<build_id>.tar.gz. Archives are
reproducible: entries sorted, mtimes and owners zeroed, gzip header mtime 0,
so identical outputs hash identically.

Security:
- Build id validated before touching the filesystem
- Symlinks stored as links, never followed
- Size limits enforced
"""
import gzip
import hashlib
import logging
import os
import re
import tarfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from buildforge.core.errors import PackagingError

logger = logging.getLogger(__name__)

ARTIFACT_TYPE = "tar.gz"
MAX_ARTIFACT_BYTES = 2 * 1024 * 1024 * 1024  # 2GB compressed
MAX_ARTIFACT_FILES = 200_000

_BUILD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class ArtifactInfo:
    """Information about a stored artifact."""
    build_id: str
    name: str
    path: Path
    size_bytes: int
    sha256: str
    type: str
    created_at: datetime


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    return info


def _collect_entries(output_dir: Path) -> list[Path]:
    """All paths under output_dir in sorted order, without following symlinks."""
    entries = []
    for root, dirs, files in os.walk(output_dir, followlinks=False):
        dirs.sort()
        root_path = Path(root)
        for name in dirs:
            entries.append(root_path / name)
        for name in sorted(files):
            entries.append(root_path / name)
    entries.sort(key=lambda p: p.relative_to(output_dir).as_posix())
    return entries


class ArtifactStore:
    """Manages artifact packaging, retrieval and deletion."""

    def __init__(self, artifacts_dir: Path, max_bytes: int = MAX_ARTIFACT_BYTES):
        self._artifacts_dir = Path(artifacts_dir)
        self._artifacts_dir.mkdir(parents=True, exist_ok=True)
        self._max_bytes = max_bytes

    @property
    def artifacts_dir(self) -> Path:
        return self._artifacts_dir

    def _path(self, build_id: str) -> Path:
        if not _BUILD_ID_PATTERN.match(build_id):
            raise PackagingError(f"Invalid build id: {build_id!r}")
        return self._artifacts_dir / f"{build_id}.{ARTIFACT_TYPE}"

    def package(self, build_id: str, output_dir: Path) -> ArtifactInfo:
        """
        Package a build's output directory.

        Args:
            build_id: Build the artifact belongs to
            output_dir: Directory populated by the build script

        Returns:
            ArtifactInfo with artifact metadata

        Raises:
            PackagingError: If the output is missing or empty, limits are
                exceeded, or the archive cannot be written
        """
        target = self._path(build_id)
        output_dir = Path(output_dir)

        if not output_dir.is_dir():
            raise PackagingError("Build output directory is missing")

        entries = _collect_entries(output_dir)
        if not entries:
            raise PackagingError("Build produced no output")
        if len(entries) > MAX_ARTIFACT_FILES:
            raise PackagingError(f"Too many files: {len(entries)} > {MAX_ARTIFACT_FILES}")

        tmp = target.with_name(f".{target.name}.{os.getpid()}.tmp")
        try:
            with open(tmp, "wb") as raw:
                # filename="" and mtime=0 keep the gzip header stable
                with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
                    with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                        for path in entries:
                            arcname = path.relative_to(output_dir).as_posix()
                            info = _normalize(tar.gettarinfo(str(path), arcname=arcname))
                            if info.isfile():
                                with open(path, "rb") as f:
                                    tar.addfile(info, f)
                            elif info.isdir() or info.issym():
                                tar.addfile(info)
                            # Sockets, fifos and devices are skipped

            size = tmp.stat().st_size
            if size > self._max_bytes:
                raise PackagingError(f"Artifact too large: {size} > {self._max_bytes} bytes")

            sha256 = _sha256_file(tmp)
            os.replace(tmp, target)
        except PackagingError:
            tmp.unlink(missing_ok=True)
            raise
        except (OSError, tarfile.TarError) as e:
            tmp.unlink(missing_ok=True)
            raise PackagingError(f"Failed to write artifact: {type(e).__name__}") from e

        logger.info(f"artifact_created build_id={build_id} size={size} sha256={sha256[:12]}")

        return ArtifactInfo(
            build_id=build_id,
            name=target.name,
            path=target,
            size_bytes=size,
            sha256=sha256,
            type=ARTIFACT_TYPE,
            created_at=datetime.now(timezone.utc),
        )

    def get_artifact_path(self, build_id: str) -> Optional[Path]:
        """Get artifact path if it exists."""
        try:
            path = self._path(build_id)
        except PackagingError:
            return None
        if path.is_file():
            return path
        return None

    def delete_artifact(self, build_id: str) -> bool:
        """Delete a build's artifact. Returns True if a file was removed."""
        path = self.get_artifact_path(build_id)
        if path is None:
            return False
        path.unlink()
        logger.info(f"artifact_deleted build_id={build_id}")
        return True
