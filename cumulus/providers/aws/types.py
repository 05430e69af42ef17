from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

SG_ROLE_CLUSTER = "cluster"
SG_ROLE_NODE = "node"


class ResourceModel(BaseModel):
    # Records read back from state written by newer versions keep loading
    model_config = ConfigDict(extra="ignore")


class Subnet(ResourceModel):
    id: str
    cidr: str
    availabilityZone: str
    public: bool = False


class NatGateway(ResourceModel):
    id: str
    allocationId: str
    subnetId: str
    availabilityZone: str


class RouteTable(ResourceModel):
    id: str
    public: bool = False
    subnetIds: List[str] = Field(default_factory=list)
    associationIds: List[str] = Field(default_factory=list)


class SecurityGroup(ResourceModel):
    id: str
    name: str
    description: str = ""
    role: str = ""


class NetworkingResources(ResourceModel):
    """
    The network graph of a cluster. Every list keeps its creation order, which
    teardown walks backwards.
    """

    vpcId: str
    vpcCidr: str
    publicSubnets: List[Subnet] = Field(default_factory=list)
    privateSubnets: List[Subnet] = Field(default_factory=list)
    internetGatewayId: Optional[str] = None
    natGateways: List[NatGateway] = Field(default_factory=list)
    routeTables: List[RouteTable] = Field(default_factory=list)
    securityGroups: List[SecurityGroup] = Field(default_factory=list)

    @property
    def subnets(self) -> List[Subnet]:
        """Subnets in creation order: public first, then private."""
        return self.publicSubnets + self.privateSubnets

    def security_group(self, role: str) -> Optional[SecurityGroup]:
        for sg in self.securityGroups:
            if sg.role == role:
                return sg
        return None

    def nat_for_zone(self, zone: str) -> Optional[NatGateway]:
        """
        Returns the NAT gateway of the given zone, falling back to the first NAT
        gateway when the zone has none.
        """
        for nat in self.natGateways:
            if nat.availabilityZone == zone:
                return nat
        return self.natGateways[0] if self.natGateways else None


class IAMRole(ResourceModel):
    name: str
    arn: str


class IAMResources(ResourceModel):
    clusterRole: Optional[IAMRole] = None
    nodeRole: Optional[IAMRole] = None
    instanceProfileName: Optional[str] = None
    instanceProfileArn: Optional[str] = None


class ScalingConfig(ResourceModel):
    minSize: int
    maxSize: int
    desiredSize: int


class EKSCluster(ResourceModel):
    name: str
    arn: str = ""
    version: str = ""
    endpoint: str = ""
    certificateAuthority: str = ""
    status: str = ""
    createdAt: Optional[datetime] = None


class NodeGroup(ResourceModel):
    name: str
    arn: str = ""
    status: str = ""
    instanceTypes: List[str] = Field(default_factory=list)
    scaling: ScalingConfig
    createdAt: Optional[datetime] = None


class EKSResources(ResourceModel):
    cluster: Optional[EKSCluster] = None
    nodeGroups: List[NodeGroup] = Field(default_factory=list)


class FullClusterResources(ResourceModel):
    """
    Everything one create run produced. Stored under the "aws" key of the
    cluster state resources.

    `failedPhase` is set when a create stopped part-way through, and names the
    phase the next create resumes from.
    """

    networking: Optional[NetworkingResources] = None
    iam: Optional[IAMResources] = None
    eks: Optional[EKSResources] = None
    failedPhase: Optional[str] = None
