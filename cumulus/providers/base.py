from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from cumulus.config import ClusterConfig
from cumulus.context import Context
from cumulus.errors import AWS_ERRORS, ConfigurationError, CumulusError
from cumulus.logger import logger
from cumulus.state.base import StateBackend
from cumulus.state.types import ClusterState, ClusterSummary
from cumulus.teardown import TeardownReport
from cumulus.waiter import retry_transient


class CloudProvider(ABC):
    """
    Abstract base class for a cloud provider.

    A CloudProvider turns a ClusterConfig into cloud resources and records them
    in a state backend. Every mutating workflow holds the cluster lock of the
    backend for its whole duration.
    """

    name: str

    def __init__(self, ctx: Context) -> None:
        self.ctx = ctx

    @abstractmethod
    def create_cluster(
        self, config: ClusterConfig, backend: StateBackend
    ) -> ClusterState:
        pass

    @abstractmethod
    def delete_cluster(
        self,
        cluster_name: str,
        backend: StateBackend,
        keep_state_on_failure: bool = False,
    ) -> TeardownReport:
        pass

    @abstractmethod
    def update_cluster(
        self,
        cluster_name: str,
        backend: StateBackend,
        desired_size: Optional[int] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
        k8s_version: Optional[str] = None,
        dry_run: bool = False,
    ) -> ClusterState:
        pass


def load_provider(ctx: Context, provider: str) -> CloudProvider:
    # Imported here so that the AWS stack is only loaded when it is used
    if provider == "aws":
        from cumulus.providers.aws.provider import AWSProvider

        return AWSProvider(ctx)
    raise ConfigurationError(f"Unknown provider: {provider}")


def get_cluster_state(backend: StateBackend, cluster_name: str) -> ClusterState:
    """
    Reads the state of one cluster without taking the lock. The result may be
    stale if another operation is running.
    """
    return retry_transient(backend.load)(cluster_name)


def list_clusters(backend: StateBackend) -> List[ClusterSummary]:
    """
    Summarizes every cluster of a backend, without taking any lock. States that
    can not be read are skipped with a warning.
    """
    summaries = []
    for name in retry_transient(backend.list)():
        try:
            state = retry_transient(backend.load)(name)
        except (CumulusError, *AWS_ERRORS) as e:
            logger.warning(f"Skipping cluster {name}: {e}")
            continue
        summaries.append(ClusterSummary.from_state(state))
    return summaries
