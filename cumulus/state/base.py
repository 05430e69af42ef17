from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Generator, List, Optional

from cumulus.constants import STATE_PREFIX
from cumulus.logger import logger
from cumulus.state.types import BackendInfo, ClusterState, LockInfo
from cumulus.utils import get_hostname

DEFAULT_OPERATION = "cluster-operation"


class StateBackend(ABC):
    """
    Abstract base class for a cluster state backend.

    A StateBackend stores one ClusterState per cluster name and provides a lock
    per cluster name. The lock is acquired with "create if absent" semantics and
    never waits: if somebody else holds it, `lock` fails right away.

    Backends do not retry. They raise the most specific cumulus error they can
    and leave retrying to the caller.
    """

    prefix: str = STATE_PREFIX

    @abstractmethod
    def initialize(self) -> None:
        """Create the backing storage if needed. Safe to call repeatedly."""

    @abstractmethod
    def save(self, cluster_name: str, state: ClusterState) -> None:
        pass

    @abstractmethod
    def load(self, cluster_name: str) -> ClusterState:
        """
        Raises:
            StateNotFoundError: If no state is stored for the cluster.
        """

    @abstractmethod
    def delete(self, cluster_name: str) -> None:
        pass

    @abstractmethod
    def list(self) -> List[str]:
        pass

    @abstractmethod
    def exists(self, cluster_name: str) -> bool:
        pass

    @abstractmethod
    def lock(self, cluster_name: str, operation: str = DEFAULT_OPERATION) -> LockInfo:
        """
        Raises:
            LockHeldError: If the lock is already held.
        """

    @abstractmethod
    def unlock(self, cluster_name: str, lock: Optional[LockInfo] = None) -> None:
        """
        Release the lock. When `lock` is given, the record is only removed if it
        still carries the same owner token. Failures are logged, not raised.
        """

    @abstractmethod
    def get_info(self) -> BackendInfo:
        pass

    def state_key(self, cluster_name: str) -> str:
        return f"{self.prefix}{cluster_name}.json"

    def lock_id(self, cluster_name: str) -> str:
        return f"cluster-{cluster_name}"

    def cluster_name_from_key(self, key: str) -> Optional[str]:
        if not key.startswith(self.prefix) or not key.endswith(".json"):
            return None
        name = key[len(self.prefix) : -len(".json")]
        # Only direct children of the prefix are cluster states
        if not name or "/" in name:
            return None
        return name

    def new_lock_info(self, cluster_name: str, operation: str) -> LockInfo:
        return LockInfo(
            id=self.lock_id(cluster_name),
            cluster=cluster_name,
            operation=operation,
            owner=get_hostname(),
            token=uuid.uuid4().hex,
        )

    @contextmanager
    def locked(
        self, cluster_name: str, operation: str = DEFAULT_OPERATION
    ) -> Generator[LockInfo, None, None]:
        """
        Holds the cluster lock for the duration of the block. The release is
        always attempted, whether the block succeeds or not.
        """
        lock = self.lock(cluster_name, operation)
        logger.debug(f"Lock acquired: {lock.id} ({operation})")
        try:
            yield lock
        finally:
            self.unlock(cluster_name, lock)
