from __future__ import annotations

from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from cumulus.config import ClusterConfig, parse_taint
from cumulus.constants import (
    CLUSTER_ACTIVE_TIMEOUT,
    CLUSTER_DELETE_TIMEOUT,
    CLUSTER_UPDATE_TIMEOUT,
    CLUSTER_WAIT_INTERVAL,
    MANAGED_BY,
    NODEGROUP_ACTIVE_TIMEOUT,
    NODEGROUP_DELETE_TIMEOUT,
    NODEGROUP_WAIT_INTERVAL,
)
from cumulus.errors import (
    AWS_ERRORS,
    ConfigurationError,
    ProviderFatalError,
    from_client_error,
    is_error_code,
)
from cumulus.logger import logger
from cumulus.providers.aws.types import (
    SG_ROLE_CLUSTER,
    EKSCluster,
    EKSResources,
    IAMResources,
    NetworkingResources,
    NodeGroup,
    ScalingConfig,
)
from cumulus.teardown import TeardownReport
from cumulus.waiter import wait_until

CLUSTER_LOG_TYPES = ["api", "audit", "authenticator", "controllerManager", "scheduler"]

NODE_AMI_TYPE = "AL2_x86_64"

EXEC_API_VERSION = "client.authentication.k8s.io/v1beta1"

# Update statuses reported by DescribeUpdate
UPDATE_SUCCESSFUL = "Successful"
UPDATE_FAILED_STATUSES = ("Failed", "Cancelled")


def generate_kubeconfig(cluster: EKSCluster, region: str) -> Dict[str, Any]:
    """
    Builds a kubeconfig document for a cluster. Authentication goes through
    `aws eks get-token`, so the document carries no secret.

    Args:
        cluster (EKSCluster): The control plane record.
        region (str): The region of the cluster.

    Returns:
        Dict[str, Any]: The kubeconfig document.
    """
    name = cluster.name
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": name,
                "cluster": {
                    "server": cluster.endpoint,
                    "certificate-authority-data": cluster.certificateAuthority,
                },
            }
        ],
        "contexts": [{"name": name, "context": {"cluster": name, "user": name}}],
        "current-context": name,
        "preferences": {},
        "users": [
            {
                "name": name,
                "user": {
                    "exec": {
                        "apiVersion": EXEC_API_VERSION,
                        "command": "aws",
                        "args": [
                            "eks",
                            "get-token",
                            "--cluster-name",
                            name,
                            "--region",
                            region,
                        ],
                    }
                },
            }
        ],
    }


class EKSManager:
    """
    Manages the EKS control plane and its node group.
    """

    def __init__(
        self,
        session: boto3.Session,
        cluster_name: str,
        region: str,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        self.eks = session.client("eks", region_name=region)
        self.cluster_name = cluster_name
        self.region = region
        self.tags = {**(tags or {}), "ManagedBy": MANAGED_BY}
        self.resources = EKSResources()

    @property
    def node_group_name(self) -> str:
        return f"{self.cluster_name}-nodes"

    def create_cluster(
        self,
        config: ClusterConfig,
        networking: NetworkingResources,
        iam: IAMResources,
    ) -> EKSResources:
        """
        Creates the control plane, waits for it, then creates the node group in
        the private subnets and waits for it too.

        Args:
            config (ClusterConfig): The cluster configuration.
            networking (NetworkingResources): The network the cluster runs in.
            iam (IAMResources): The cluster and node roles.

        Returns:
            EKSResources: The control plane and the node group.

        Raises:
            ProviderFatalError: If EKS rejects a request or reports a failed resource.
            WaitTimeoutError: If a resource does not become active in time.
        """
        if iam.clusterRole is None or iam.nodeRole is None:
            raise ConfigurationError("The cluster and node roles must exist first")
        cluster_sg = networking.security_group(SG_ROLE_CLUSTER)

        try:
            self._create_control_plane(config, networking, iam, cluster_sg and cluster_sg.id)
            self._create_node_group(config, networking, iam)
        except AWS_ERRORS as e:
            raise from_client_error(e, "Failed to create EKS cluster") from e
        return self.resources

    def _create_control_plane(
        self,
        config: ClusterConfig,
        networking: NetworkingResources,
        iam: IAMResources,
        security_group_id: Optional[str],
    ) -> None:
        assert iam.clusterRole is not None
        logger.info(f"Creating EKS cluster {self.cluster_name} ({config.k8sVersion})...")
        subnet_ids = [s.id for s in networking.privateSubnets] + [
            s.id for s in networking.publicSubnets
        ]
        try:
            created = self.eks.create_cluster(
                name=self.cluster_name,
                version=config.k8sVersion,
                roleArn=iam.clusterRole.arn,
                resourcesVpcConfig={
                    "subnetIds": subnet_ids,
                    "securityGroupIds": [security_group_id] if security_group_id else [],
                    "endpointPublicAccess": True,
                    "endpointPrivateAccess": True,
                },
                logging={
                    "clusterLogging": [{"types": CLUSTER_LOG_TYPES, "enabled": True}]
                },
                tags=self.tags,
            )["cluster"]
        except ClientError as e:
            if not is_error_code(e, "ResourceInUseException"):
                raise
            logger.info(f"EKS cluster {self.cluster_name} already exists, reusing it")
            created = self.eks.describe_cluster(name=self.cluster_name)["cluster"]

        self.resources.cluster = EKSCluster(
            name=self.cluster_name,
            arn=created.get("arn", ""),
            version=created.get("version", config.k8sVersion),
            status=created.get("status", ""),
        )

        logger.info("Waiting for the control plane to become active, this takes a while...")
        active = wait_until(
            self._cluster_if_active,
            CLUSTER_WAIT_INTERVAL,
            CLUSTER_ACTIVE_TIMEOUT,
            f"EKS cluster {self.cluster_name}",
        )
        self.resources.cluster = EKSCluster(
            name=self.cluster_name,
            arn=active.get("arn", ""),
            version=active.get("version", config.k8sVersion),
            endpoint=active.get("endpoint", ""),
            certificateAuthority=active.get("certificateAuthority", {}).get("data", ""),
            status=active.get("status", ""),
            createdAt=active.get("createdAt"),
        )
        logger.info(f"EKS cluster {self.cluster_name} is active")

    def _describe_cluster(self) -> Optional[Dict[str, Any]]:
        try:
            return self.eks.describe_cluster(name=self.cluster_name)["cluster"]
        except ClientError as e:
            if is_error_code(e, "ResourceNotFoundException"):
                return None
            raise from_client_error(
                e, f"Failed to describe EKS cluster {self.cluster_name}"
            ) from e
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to describe EKS cluster {self.cluster_name}"
            ) from e

    def _cluster_if_active(self) -> Optional[Dict[str, Any]]:
        cluster = self._describe_cluster()
        if cluster is None:
            return None
        if cluster["status"] == "FAILED":
            raise ProviderFatalError(f"EKS cluster {self.cluster_name} failed to create")
        return cluster if cluster["status"] == "ACTIVE" else None

    def _create_node_group(
        self,
        config: ClusterConfig,
        networking: NetworkingResources,
        iam: IAMResources,
    ) -> None:
        assert iam.nodeRole is not None
        node = config.nodeConfig
        name = self.node_group_name
        scaling = ScalingConfig(
            minSize=node.minSize, maxSize=node.maxSize, desiredSize=node.desiredSize
        )
        labels = {**node.labels, "cluster": self.cluster_name}
        params: Dict[str, Any] = {
            "clusterName": self.cluster_name,
            "nodegroupName": name,
            "scalingConfig": scaling.model_dump(),
            "diskSize": node.diskSize,
            "subnets": [s.id for s in networking.privateSubnets],
            "instanceTypes": [node.instanceType],
            "amiType": NODE_AMI_TYPE,
            "nodeRole": iam.nodeRole.arn,
            "labels": labels,
            "capacityType": "SPOT" if node.spotInstances else "ON_DEMAND",
            "tags": self.tags,
        }
        if node.taints:
            params["taints"] = [parse_taint(t) for t in node.taints]

        logger.info(f"Creating node group {name} ({node.instanceType})...")
        try:
            created = self.eks.create_nodegroup(**params)["nodegroup"]
        except ClientError as e:
            if not is_error_code(e, "ResourceInUseException"):
                raise
            logger.info(f"Node group {name} already exists, reusing it")
            created = self.eks.describe_nodegroup(
                clusterName=self.cluster_name, nodegroupName=name
            )["nodegroup"]

        record = NodeGroup(
            name=name,
            arn=created.get("nodegroupArn", ""),
            status=created.get("status", ""),
            instanceTypes=created.get("instanceTypes", [node.instanceType]),
            scaling=scaling,
            createdAt=created.get("createdAt"),
        )
        self.resources.nodeGroups = [
            group for group in self.resources.nodeGroups if group.name != name
        ]
        self.resources.nodeGroups.append(record)

        active = wait_until(
            lambda: self._node_group_if_active(name),
            NODEGROUP_WAIT_INTERVAL,
            NODEGROUP_ACTIVE_TIMEOUT,
            f"node group {name}",
        )
        record.status = active.get("status", record.status)
        logger.info(f"Node group {name} is active")

    def _describe_node_group(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.eks.describe_nodegroup(
                clusterName=self.cluster_name, nodegroupName=name
            )["nodegroup"]
        except ClientError as e:
            if is_error_code(e, "ResourceNotFoundException"):
                return None
            raise from_client_error(e, f"Failed to describe node group {name}") from e
        except AWS_ERRORS as e:
            raise from_client_error(e, f"Failed to describe node group {name}") from e

    def _node_group_if_active(self, name: str) -> Optional[Dict[str, Any]]:
        group = self._describe_node_group(name)
        if group is None:
            return None
        if group["status"] in ("CREATE_FAILED", "DEGRADED"):
            issues = group.get("health", {}).get("issues", [])
            raise ProviderFatalError(f"Node group {name} is {group['status']}: {issues}")
        return group if group["status"] == "ACTIVE" else None

    def delete_cluster(self, resources: EKSResources) -> TeardownReport:
        """
        Deletes the node groups, then the control plane. Each deletion is waited
        for, since EKS refuses to delete a control plane that still has node
        groups.

        Returns:
            TeardownReport: The outcome of every deletion step.
        """
        report = TeardownReport()
        for group in reversed(resources.nodeGroups):
            report.run(
                "node-group",
                group.name,
                lambda name=group.name: self._delete_node_group(name),
            )
        if resources.cluster is not None:
            report.run("eks-cluster", resources.cluster.name, self._delete_control_plane)
        return report

    def _delete_node_group(self, name: str) -> None:
        logger.info(f"Deleting node group {name}...")
        try:
            self.eks.delete_nodegroup(clusterName=self.cluster_name, nodegroupName=name)
        except ClientError as e:
            if not is_error_code(e, "ResourceNotFoundException"):
                raise
        wait_until(
            lambda: self._node_group_gone(name),
            NODEGROUP_WAIT_INTERVAL,
            NODEGROUP_DELETE_TIMEOUT,
            f"deletion of node group {name}",
        )
        logger.info(f"Deleted node group {name}")

    def _node_group_gone(self, name: str) -> bool:
        group = self._describe_node_group(name)
        if group is None:
            return True
        if group["status"] == "DELETE_FAILED":
            raise ProviderFatalError(f"EKS failed to delete node group {name}")
        return False

    def _delete_control_plane(self) -> None:
        logger.info(f"Deleting EKS cluster {self.cluster_name}...")
        try:
            self.eks.delete_cluster(name=self.cluster_name)
        except ClientError as e:
            if not is_error_code(e, "ResourceNotFoundException"):
                raise
        wait_until(
            lambda: self._describe_cluster() is None,
            CLUSTER_WAIT_INTERVAL,
            CLUSTER_DELETE_TIMEOUT,
            f"deletion of EKS cluster {self.cluster_name}",
        )
        logger.info(f"Deleted EKS cluster {self.cluster_name}")

    def update_node_group(
        self, name: str, min_size: int, max_size: int, desired_size: int
    ) -> None:
        """
        Changes the scaling configuration of a node group and waits for the
        update to finish.
        """
        logger.info(
            f"Scaling node group {name} to min={min_size} max={max_size} desired={desired_size}"
        )
        try:
            update = self.eks.update_nodegroup_config(
                clusterName=self.cluster_name,
                nodegroupName=name,
                scalingConfig={
                    "minSize": min_size,
                    "maxSize": max_size,
                    "desiredSize": desired_size,
                },
            )["update"]
        except AWS_ERRORS as e:
            raise from_client_error(e, f"Failed to update node group {name}") from e

        self._wait_for_update(
            update["id"], NODEGROUP_ACTIVE_TIMEOUT, f"scaling of node group {name}", name
        )

    def update_cluster_version(self, version: str) -> None:
        logger.info(f"Upgrading EKS cluster {self.cluster_name} to {version}...")
        try:
            update = self.eks.update_cluster_version(
                name=self.cluster_name, version=version
            )["update"]
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to upgrade EKS cluster {self.cluster_name}"
            ) from e

        self._wait_for_update(
            update["id"],
            CLUSTER_UPDATE_TIMEOUT,
            f"upgrade of EKS cluster {self.cluster_name} to {version}",
        )

    def _wait_for_update(
        self,
        update_id: str,
        timeout: float,
        description: str,
        node_group: Optional[str] = None,
    ) -> None:
        params: Dict[str, Any] = {"name": self.cluster_name, "updateId": update_id}
        if node_group:
            params["nodegroupName"] = node_group

        def probe() -> bool:
            try:
                update = self.eks.describe_update(**params)["update"]
            except AWS_ERRORS as e:
                raise from_client_error(e, f"Failed to describe {description}") from e
            status = update["status"]
            if status in UPDATE_FAILED_STATUSES:
                errors: List[str] = [
                    err.get("errorMessage", "") for err in update.get("errors", [])
                ]
                raise ProviderFatalError(f"{description} {status.lower()}: {errors}")
            return status == UPDATE_SUCCESSFUL

        wait_until(probe, CLUSTER_WAIT_INTERVAL, timeout, description)
        logger.info(f"Finished {description}")

    def generate_kubeconfig(self, cluster: EKSCluster) -> Dict[str, Any]:
        return generate_kubeconfig(cluster, self.region)
