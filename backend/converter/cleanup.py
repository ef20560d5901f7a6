"""Temp artifact cleanup and per-request batch workspaces."""
import logging
import shutil
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger("converter.cleanup")

WORKSPACE_PREFIX = "batch-"
STALE_WORKSPACE_AGE = 6 * 3600


class CleanupManager:
    """Best-effort file deletion. Never raises."""

    def remove_paths(self, paths: Iterable[Path]) -> int:
        """Delete every path; return how many files were actually removed."""
        removed = 0
        for path in paths:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                logger.debug("Already gone: %s", path)
            except OSError as e:
                logger.warning("Could not remove %s: %s", path, e)
        return removed

    def remove_directory(self, path: Path) -> None:
        try:
            path.rmdir()
        except FileNotFoundError:
            logger.debug("Workspace already gone: %s", path)
        except OSError as e:
            # Leftovers not tracked as artifacts (should not happen)
            logger.warning("Workspace %s not empty (%s), removing tree", path, e)
            shutil.rmtree(path, ignore_errors=True)


class BatchWorkspace:
    """Scoped directory owning every artifact of one batch.

    Paths are registered before any file is written so release() sees the
    full set. release() deletes them once; later calls do nothing.
    """

    def __init__(self, root: Path, cleanup: Optional[CleanupManager] = None, batch_id: Optional[str] = None):
        self.batch_id = batch_id or str(uuid.uuid4())
        self.root = root
        self.cleanup = cleanup or CleanupManager()
        root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"{WORKSPACE_PREFIX}{self.batch_id[:8]}-", dir=root))
        self.artifacts: list[Path] = []
        self._lock = threading.Lock()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def plan_artifacts(self, input_suffix: str, output_suffix: str) -> tuple[Path, Path]:
        """Reserve (input_path, output_path) under a unique per-upload token."""
        token = uuid.uuid4().hex[:12]
        input_path = self.path / f"{token}-in{input_suffix}"
        output_path = self.path / f"{token}-out{output_suffix}"
        with self._lock:
            if self._released:
                raise RuntimeError(f"Workspace for batch {self.batch_id} already released")
            self.artifacts.extend((input_path, output_path))
        return input_path, output_path

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            artifacts = list(self.artifacts)
        removed = self.cleanup.remove_paths(artifacts)
        self.cleanup.remove_directory(self.path)
        logger.info("Released workspace for batch %s (%s files removed)", self.batch_id, removed)


def purge_stale_workspaces(root: Path, max_age: float = STALE_WORKSPACE_AGE) -> int:
    """Remove workspaces left behind by a crashed process.

    Only directories untouched for max_age seconds go, so workspaces of
    other live workers sharing the same root are kept.
    """
    if not root.is_dir():
        return 0
    now = time.time()
    count = 0
    for entry in root.iterdir():
        if not entry.is_dir() or not entry.name.startswith(WORKSPACE_PREFIX):
            continue
        try:
            age = now - entry.stat().st_mtime
        except FileNotFoundError:
            continue
        if age >= max_age:
            shutil.rmtree(entry, ignore_errors=True)
            count += 1
    if count:
        logger.warning("Purged %s stale batch workspaces from %s", count, root)
    return count
