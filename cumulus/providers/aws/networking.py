from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from cumulus.config import ClusterConfig
from cumulus.constants import (
    MANAGED_BY,
    NAT_WAIT_INTERVAL,
    NAT_WAIT_TIMEOUT,
    VPC_WAIT_INTERVAL,
    VPC_WAIT_TIMEOUT,
)
from cumulus.errors import (
    AWS_ERRORS,
    ProviderFatalError,
    error_code,
    from_client_error,
)
from cumulus.logger import logger
from cumulus.providers.aws.cidr import plan_subnets
from cumulus.providers.aws.types import (
    SG_ROLE_CLUSTER,
    SG_ROLE_NODE,
    NatGateway,
    NetworkingResources,
    RouteTable,
    SecurityGroup,
    Subnet,
)
from cumulus.teardown import TeardownReport
from cumulus.waiter import wait_until

ANYWHERE = "0.0.0.0/0"


def is_missing(err: ClientError) -> bool:
    code = error_code(err)
    return code == "NotFound" or code.endswith(".NotFound")


class NetworkManager:
    """
    Builds and dismantles the network graph of a cluster.

    Creation runs in a strict order: VPC, internet gateway, subnets, NAT
    gateways, route tables and security groups. Deletion walks the exact same
    sequence backwards, and within each class of resources it deletes the last
    created one first.
    """

    def __init__(
        self,
        session: boto3.Session,
        cluster_name: str,
        region: str,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        self.ec2 = session.client("ec2", region_name=region)
        self.cluster_name = cluster_name
        self.region = region
        self.tags = tags or {}
        self.resources: Optional[NetworkingResources] = None

    def _tag_specs(
        self, resource_type: str, role: str, extra: Optional[Dict[str, str]] = None
    ) -> List[Dict[str, Any]]:
        tags = {
            **self.tags,
            "Name": f"{self.cluster_name}-{role}",
            f"kubernetes.io/cluster/{self.cluster_name}": "owned",
            "ManagedBy": MANAGED_BY,
            **(extra or {}),
        }
        return [
            {
                "ResourceType": resource_type,
                "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
            }
        ]

    def create_networking(
        self,
        config: ClusterConfig,
        zones: List[str],
        create_internet_gateway: bool = True,
        create_nat_gateways: bool = True,
    ) -> NetworkingResources:
        """
        Creates the VPC and everything that lives in it.

        Args:
            config (ClusterConfig): The cluster configuration, for the VPC CIDR.
            zones (List[str]): One availability zone per public/private subnet pair.
            create_internet_gateway (bool): Whether to attach an internet gateway.
            create_nat_gateways (bool): Whether to create one NAT gateway per zone.
                Requires an internet gateway.

        Returns:
            NetworkingResources: The created resources, in creation order.

        Raises:
            ProviderFatalError: If a resource can not be created.
            WaitTimeoutError: If the VPC or a NAT gateway does not become available.
        """
        try:
            self._create_vpc(config.vpcCidr)
            if create_internet_gateway:
                self._create_internet_gateway()
            self._create_subnets(config.vpcCidr, zones)
            if create_nat_gateways and create_internet_gateway:
                self._create_nat_gateways()
            elif create_nat_gateways:
                logger.warning("NAT gateways need an internet gateway, skipping them")
            self._create_route_tables()
            self._create_security_groups()
        except AWS_ERRORS as e:
            raise from_client_error(e, "Failed to create networking") from e

        logger.info(f"Networking for {self.cluster_name} is ready")
        assert self.resources is not None
        return self.resources

    def _create_vpc(self, cidr: str) -> None:
        logger.info(f"Creating VPC {cidr}...")
        vpc = self.ec2.create_vpc(
            CidrBlock=cidr, TagSpecifications=self._tag_specs("vpc", "vpc")
        )["Vpc"]
        vpc_id = vpc["VpcId"]
        self.resources = NetworkingResources(vpcId=vpc_id, vpcCidr=cidr)

        wait_until(
            lambda: self._vpc_state(vpc_id) == "available",
            VPC_WAIT_INTERVAL,
            VPC_WAIT_TIMEOUT,
            f"VPC {vpc_id}",
        )

        self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": True})
        self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True})
        logger.info(f"Created VPC {vpc_id}")

    def _vpc_state(self, vpc_id: str) -> str:
        try:
            vpcs = self.ec2.describe_vpcs(VpcIds=[vpc_id])["Vpcs"]
        except ClientError as e:
            # A new VPC may not be visible to Describe calls yet
            if is_missing(e):
                return ""
            raise from_client_error(e, f"Failed to describe VPC {vpc_id}") from e
        except AWS_ERRORS as e:
            raise from_client_error(e, f"Failed to describe VPC {vpc_id}") from e
        return vpcs[0]["State"] if vpcs else ""

    def _create_internet_gateway(self) -> None:
        assert self.resources is not None
        igw_id = self.ec2.create_internet_gateway(
            TagSpecifications=self._tag_specs("internet-gateway", "igw")
        )["InternetGateway"]["InternetGatewayId"]
        self.resources.internetGatewayId = igw_id
        self.ec2.attach_internet_gateway(
            InternetGatewayId=igw_id, VpcId=self.resources.vpcId
        )
        logger.info(f"Created internet gateway {igw_id}")

    def _create_subnets(self, vpc_cidr: str, zones: List[str]) -> None:
        assert self.resources is not None
        public_cidrs, private_cidrs = plan_subnets(vpc_cidr, len(zones))

        for i, (cidr, zone) in enumerate(zip(public_cidrs, zones)):
            subnet = self._create_subnet(
                cidr,
                zone,
                f"public-{i + 1}",
                {"kubernetes.io/role/elb": "1", "Type": "public"},
            )
            self.resources.publicSubnets.append(
                Subnet(id=subnet, cidr=cidr, availabilityZone=zone, public=True)
            )
            self.ec2.modify_subnet_attribute(
                SubnetId=subnet, MapPublicIpOnLaunch={"Value": True}
            )

        for i, (cidr, zone) in enumerate(zip(private_cidrs, zones)):
            subnet = self._create_subnet(
                cidr,
                zone,
                f"private-{i + 1}",
                {"kubernetes.io/role/internal-elb": "1", "Type": "private"},
            )
            self.resources.privateSubnets.append(
                Subnet(id=subnet, cidr=cidr, availabilityZone=zone, public=False)
            )

        logger.info(
            f"Created {len(public_cidrs)} public and {len(private_cidrs)} private subnets"
        )

    def _create_subnet(
        self, cidr: str, zone: str, role: str, extra_tags: Dict[str, str]
    ) -> str:
        assert self.resources is not None
        return self.ec2.create_subnet(
            VpcId=self.resources.vpcId,
            CidrBlock=cidr,
            AvailabilityZone=zone,
            TagSpecifications=self._tag_specs("subnet", role, extra_tags),
        )["Subnet"]["SubnetId"]

    def _create_nat_gateways(self) -> None:
        assert self.resources is not None
        for i, subnet in enumerate(self.resources.publicSubnets):
            allocation_id = self.ec2.allocate_address(
                Domain="vpc",
                TagSpecifications=self._tag_specs("elastic-ip", f"nat-eip-{i + 1}"),
            )["AllocationId"]
            try:
                nat_id = self.ec2.create_nat_gateway(
                    SubnetId=subnet.id,
                    AllocationId=allocation_id,
                    TagSpecifications=self._tag_specs("natgateway", f"nat-{i + 1}"),
                )["NatGateway"]["NatGatewayId"]
            except AWS_ERRORS:
                self.ec2.release_address(AllocationId=allocation_id)
                raise
            self.resources.natGateways.append(
                NatGateway(
                    id=nat_id,
                    allocationId=allocation_id,
                    subnetId=subnet.id,
                    availabilityZone=subnet.availabilityZone,
                )
            )
            logger.info(f"Created NAT gateway {nat_id}, waiting for it...")
            wait_until(
                lambda: self._nat_if_available(nat_id),
                NAT_WAIT_INTERVAL,
                NAT_WAIT_TIMEOUT,
                f"NAT gateway {nat_id}",
            )

    def _nat_if_available(self, nat_id: str) -> bool:
        nat = self._describe_nat(nat_id)
        if nat is None:
            return False
        if nat["State"] == "failed":
            reason = nat.get("FailureMessage", "unknown reason")
            raise ProviderFatalError(f"NAT gateway {nat_id} failed: {reason}")
        return nat["State"] == "available"

    def _nat_gone(self, nat_id: str) -> bool:
        # A NAT gateway that failed to create holds nothing and goes away by itself
        nat = self._describe_nat(nat_id)
        return nat is None or nat["State"] in ("deleted", "failed")

    def _describe_nat(self, nat_id: str) -> Optional[Dict[str, Any]]:
        try:
            nats = self.ec2.describe_nat_gateways(NatGatewayIds=[nat_id])[
                "NatGateways"
            ]
        except ClientError as e:
            if is_missing(e):
                return None
            raise from_client_error(e, f"Failed to describe NAT gateway {nat_id}") from e
        except AWS_ERRORS as e:
            raise from_client_error(e, f"Failed to describe NAT gateway {nat_id}") from e
        return nats[0] if nats else None

    def _create_route_tables(self) -> None:
        assert self.resources is not None
        resources = self.resources

        public_table = RouteTable(id=self._new_route_table("public-rt"), public=True)
        resources.routeTables.append(public_table)
        if resources.internetGatewayId:
            self.ec2.create_route(
                RouteTableId=public_table.id,
                DestinationCidrBlock=ANYWHERE,
                GatewayId=resources.internetGatewayId,
            )
        for subnet in resources.publicSubnets:
            self._associate(public_table, subnet.id)

        for i, subnet in enumerate(resources.privateSubnets):
            table = RouteTable(id=self._new_route_table(f"private-rt-{i + 1}"))
            resources.routeTables.append(table)
            nat = resources.nat_for_zone(subnet.availabilityZone)
            if nat is not None:
                self.ec2.create_route(
                    RouteTableId=table.id,
                    DestinationCidrBlock=ANYWHERE,
                    NatGatewayId=nat.id,
                )
            self._associate(table, subnet.id)

        logger.info(f"Created {len(resources.routeTables)} route tables")

    def _new_route_table(self, role: str) -> str:
        assert self.resources is not None
        return self.ec2.create_route_table(
            VpcId=self.resources.vpcId,
            TagSpecifications=self._tag_specs("route-table", role),
        )["RouteTable"]["RouteTableId"]

    def _associate(self, table: RouteTable, subnet_id: str) -> None:
        association = self.ec2.associate_route_table(
            RouteTableId=table.id, SubnetId=subnet_id
        )["AssociationId"]
        table.subnetIds.append(subnet_id)
        table.associationIds.append(association)

    def _create_security_groups(self) -> None:
        assert self.resources is not None
        resources = self.resources

        cluster_sg = self._new_security_group(
            f"{self.cluster_name}-cluster-sg",
            "EKS control plane security group",
            SG_ROLE_CLUSTER,
        )
        # The default allow-all egress rule covers the control plane reaching the nodes

        node_sg = self._new_security_group(
            f"{self.cluster_name}-node-sg",
            "EKS worker node security group",
            SG_ROLE_NODE,
        )
        self.ec2.authorize_security_group_ingress(
            GroupId=node_sg.id,
            IpPermissions=[
                {
                    "IpProtocol": "-1",
                    "UserIdGroupPairs": [{"GroupId": node_sg.id}],
                },
                {
                    "IpProtocol": "tcp",
                    "FromPort": 443,
                    "ToPort": 443,
                    "UserIdGroupPairs": [{"GroupId": cluster_sg.id}],
                },
                {
                    "IpProtocol": "tcp",
                    "FromPort": 1025,
                    "ToPort": 65535,
                    "UserIdGroupPairs": [{"GroupId": cluster_sg.id}],
                },
            ],
        )
        logger.info(f"Created security groups {cluster_sg.id} and {node_sg.id}")

    def _new_security_group(
        self, name: str, description: str, role: str
    ) -> SecurityGroup:
        assert self.resources is not None
        group_id = self.ec2.create_security_group(
            GroupName=name,
            Description=description,
            VpcId=self.resources.vpcId,
            TagSpecifications=self._tag_specs("security-group", f"{role}-sg"),
        )["GroupId"]
        sg = SecurityGroup(id=group_id, name=name, description=description, role=role)
        self.resources.securityGroups.append(sg)
        return sg

    def delete_networking(self, resources: NetworkingResources) -> TeardownReport:
        """
        Deletes the network graph in the reverse order of its creation.

        NAT gateways (and their addresses) go first, the VPC goes last. A failed
        step is recorded in the report and the teardown carries on, so it can
        be re-run against a partially cleaned up environment.

        Args:
            resources (NetworkingResources): What the create run recorded.

        Returns:
            TeardownReport: The outcome of every deletion step.
        """
        report = TeardownReport()
        logger.info(f"Deleting networking of {self.cluster_name}...")

        for nat in reversed(resources.natGateways):
            report.run("nat-gateway", nat.id, lambda nat=nat: self._delete_nat(nat))
            report.run(
                "elastic-ip",
                nat.allocationId,
                lambda nat=nat: self._ignore_missing(
                    self.ec2.release_address, AllocationId=nat.allocationId
                ),
            )

        if resources.internetGatewayId:
            igw_id = resources.internetGatewayId
            report.run(
                "internet-gateway",
                igw_id,
                lambda: self._delete_internet_gateway(igw_id, resources.vpcId),
            )

        for table in reversed(resources.routeTables):
            report.run(
                "route-table", table.id, lambda table=table: self._delete_route_table(table)
            )

        for subnet in reversed(resources.subnets):
            report.run(
                "subnet",
                subnet.id,
                lambda subnet=subnet: self._ignore_missing(
                    self.ec2.delete_subnet, SubnetId=subnet.id
                ),
            )

        for sg in reversed(resources.securityGroups):
            report.run(
                "security-group",
                sg.id,
                lambda sg=sg: self._ignore_missing(
                    self.ec2.delete_security_group, GroupId=sg.id
                ),
            )

        report.run(
            "vpc",
            resources.vpcId,
            lambda: self._ignore_missing(self.ec2.delete_vpc, VpcId=resources.vpcId),
        )
        return report

    def _ignore_missing(self, call: Callable[..., Any], **kwargs: Any) -> None:
        try:
            call(**kwargs)
        except ClientError as e:
            if not is_missing(e):
                raise
            logger.debug(f"{kwargs}: already gone ({error_code(e)})")

    def _delete_nat(self, nat: NatGateway) -> None:
        self._ignore_missing(self.ec2.delete_nat_gateway, NatGatewayId=nat.id)
        wait_until(
            lambda: self._nat_gone(nat.id),
            NAT_WAIT_INTERVAL,
            NAT_WAIT_TIMEOUT,
            f"deletion of NAT gateway {nat.id}",
        )

    def _delete_internet_gateway(self, igw_id: str, vpc_id: str) -> None:
        try:
            self.ec2.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        except ClientError as e:
            if not (is_missing(e) or error_code(e) == "Gateway.NotAttached"):
                raise
        self._ignore_missing(self.ec2.delete_internet_gateway, InternetGatewayId=igw_id)

    def _delete_route_table(self, table: RouteTable) -> None:
        try:
            tables = self.ec2.describe_route_tables(RouteTableIds=[table.id])[
                "RouteTables"
            ]
        except ClientError as e:
            if is_missing(e):
                return
            raise

        associations = [
            association["RouteTableAssociationId"]
            for t in tables
            for association in t.get("Associations", [])
            if not association.get("Main", False)
        ]
        for association_id in associations:
            self._ignore_missing(
                self.ec2.disassociate_route_table, AssociationId=association_id
            )
        self._ignore_missing(self.ec2.delete_route_table, RouteTableId=table.id)
