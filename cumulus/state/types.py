from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import Field

from cumulus.config import ClusterConfig, CumulusBaseModel
from cumulus.utils import utc_now


class ClusterPhase(str, Enum):
    CREATING = "Creating"
    ACTIVE = "Active"
    UPDATING = "Updating"
    DELETING = "Deleting"
    FAILED = "Failed"


class ClusterStatus(CumulusBaseModel):
    """
    The observed status of a cluster.
    """

    phase: ClusterPhase = Field(ClusterPhase.CREATING)
    ready: bool = False
    message: Optional[str] = None
    endpoint: Optional[str] = None
    nodesReady: int = 0
    nodesTotal: int = 0
    updatedAt: datetime = Field(default_factory=utc_now)


class ClusterState(CumulusBaseModel):
    """
    The persisted record of a cluster.

    `resources` is keyed by provider name ("aws") and holds the JSON form of the
    provider's resource graph. Its layout is private to the provider.
    """

    config: ClusterConfig
    status: ClusterStatus = Field(default_factory=ClusterStatus)
    resources: Dict[str, Any] = Field(default_factory=dict)
    updatedAt: datetime = Field(default_factory=utc_now)


class ClusterSummary(CumulusBaseModel):
    name: str
    provider: str
    region: str
    status: ClusterStatus
    nodeCount: int
    k8sVersion: str
    environment: str
    createdAt: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: ClusterState) -> "ClusterSummary":
        config = state.config
        return cls(
            name=config.name,
            provider=config.provider,
            region=config.region,
            status=state.status,
            nodeCount=config.nodeConfig.desiredSize,
            k8sVersion=config.k8sVersion,
            environment=config.environment,
            createdAt=config.createdAt,
        )


class LockInfo(CumulusBaseModel):
    """
    Metadata stored with a lock record. The record's existence is the lock; the
    token identifies which caller owns it.
    """

    id: str
    cluster: str
    operation: str
    owner: str
    token: str
    createdAt: datetime = Field(default_factory=utc_now)


class BackendInfo(CumulusBaseModel):
    type: str
    location: str
    region: str = ""
    encrypted: bool = False
    versioningEnabled: bool = False
    lockingEnabled: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)
