from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from cumulus.errors import (
    LockHeldError,
    ProviderFatalError,
    StateCorruptedError,
    StateNotFoundError,
)
from cumulus.logger import logger
from cumulus.state.base import DEFAULT_OPERATION, StateBackend
from cumulus.state.types import BackendInfo, ClusterState, LockInfo
from cumulus.utils import utc_now

LOCK_DIR = "locks"


class LocalBackend(StateBackend):
    """
    Keeps cluster states as JSON files under a local directory.

    Lock records are files created with O_CREAT | O_EXCL, so the file system
    decides which caller gets the lock. This backend is meant for a single
    machine; it offers no versioning and no encryption.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root).expanduser()

    @property
    def location(self) -> str:
        return f"file://{self.root}"

    def _state_path(self, cluster_name: str) -> Path:
        return self.root / self.state_key(cluster_name)

    def _lock_path(self, cluster_name: str) -> Path:
        return self.root / LOCK_DIR / f"{self.lock_id(cluster_name)}.lock"

    def initialize(self) -> None:
        try:
            (self.root / self.prefix).mkdir(parents=True, exist_ok=True)
            (self.root / LOCK_DIR).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProviderFatalError(
                f"Failed to create state directory {self.root}: {e}"
            ) from e

    def save(self, cluster_name: str, state: ClusterState) -> None:
        path = self._state_path(cluster_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        state.updatedAt = utc_now()
        # Write to a temporary file first so readers never see a partial document
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(state.model_dump_json(indent=2))
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise ProviderFatalError(
                f"Failed to save state of cluster {cluster_name}: {e}"
            ) from e

    def load(self, cluster_name: str) -> ClusterState:
        path = self._state_path(cluster_name)
        try:
            content = path.read_text()
        except FileNotFoundError as e:
            raise StateNotFoundError(cluster_name, str(path)) from e
        except OSError as e:
            raise ProviderFatalError(
                f"Failed to load state of cluster {cluster_name}: {e}"
            ) from e

        try:
            return ClusterState.model_validate_json(content)
        except ValidationError as e:
            raise StateCorruptedError(cluster_name, str(e)) from e

    def delete(self, cluster_name: str) -> None:
        try:
            self._state_path(cluster_name).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ProviderFatalError(
                f"Failed to delete state of cluster {cluster_name}: {e}"
            ) from e

    def list(self) -> List[str]:
        state_dir = self.root / self.prefix
        if not state_dir.is_dir():
            return []
        names = []
        for path in state_dir.iterdir():
            if not path.is_file():
                continue
            name = self.cluster_name_from_key(f"{self.prefix}{path.name}")
            if name:
                names.append(name)
        return sorted(names)

    def exists(self, cluster_name: str) -> bool:
        return self._state_path(cluster_name).is_file()

    def lock(self, cluster_name: str, operation: str = DEFAULT_OPERATION) -> LockInfo:
        path = self._lock_path(cluster_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        lock = self.new_lock_info(cluster_name, operation)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError as e:
            raise LockHeldError(cluster_name, self._describe_holder(path)) from e
        except OSError as e:
            raise ProviderFatalError(
                f"Failed to acquire lock of cluster {cluster_name}: {e}"
            ) from e
        with os.fdopen(fd, "w") as f:
            f.write(lock.model_dump_json())
        return lock

    def _read_lock(self, path: Path) -> Optional[LockInfo]:
        try:
            return LockInfo.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            logger.debug(f"Could not read lock file {path}: {e}")
            return None

    def _describe_holder(self, path: Path) -> Optional[str]:
        holder = self._read_lock(path)
        if holder is None:
            return None
        return (
            f"{holder.operation} by {holder.owner} since {holder.createdAt.isoformat()}"
        )

    def unlock(self, cluster_name: str, lock: Optional[LockInfo] = None) -> None:
        path = self._lock_path(cluster_name)
        if lock is not None:
            current = self._read_lock(path)
            if current is None or current.token != lock.token:
                logger.warning(
                    f"Lock {lock.id} is no longer owned by this operation, leaving it in place"
                )
                return
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"Lock {self.lock_id(cluster_name)} was not held")
        except OSError as e:
            logger.warning(f"Failed to release lock {self.lock_id(cluster_name)}: {e}")

    def get_info(self) -> BackendInfo:
        return BackendInfo(
            type="file",
            location=self.location,
            lockingEnabled=True,
            metadata={"path": str(self.root)},
        )
