from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import boto3
from botocore.exceptions import ClientError

from cumulus.constants import IAM_PROPAGATION_SECONDS, MANAGED_BY
from cumulus.errors import AWS_ERRORS, from_client_error, is_error_code
from cumulus.logger import logger
from cumulus.providers.aws.types import IAMResources, IAMRole
from cumulus.teardown import TeardownReport

CLUSTER_ROLE_POLICIES = ["arn:aws:iam::aws:policy/AmazonEKSClusterPolicy"]

NODE_ROLE_POLICIES = [
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
]

CREATED = "created"
ALREADY_EXISTED = "already-existed"


class CreateResult(NamedTuple):
    """
    The outcome of a "create, or reuse what is already there" call.
    """

    outcome: str
    resource: Dict[str, Any]

    @property
    def created(self) -> bool:
        return self.outcome == CREATED


def create_or_get(
    create: Callable[[], Dict[str, Any]],
    get: Callable[[], Dict[str, Any]],
    description: str,
) -> CreateResult:
    """
    Calls `create`, and falls back to `get` when IAM reports that the entity
    already exists. The decision is made on the EntityAlreadyExists error code.
    """
    try:
        return CreateResult(CREATED, create())
    except ClientError as e:
        if not is_error_code(e, "EntityAlreadyExists"):
            raise from_client_error(e, f"Failed to create {description}") from e
    except AWS_ERRORS as e:
        raise from_client_error(e, f"Failed to create {description}") from e

    logger.info(f"{description} already exists, reusing it")
    try:
        return CreateResult(ALREADY_EXISTED, get())
    except AWS_ERRORS as e:
        raise from_client_error(e, f"Failed to read existing {description}") from e


def assume_role_policy(service: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


class IAMManager:
    """
    Creates and removes the two roles and the instance profile of a cluster.

    Creation is safe to re-run: an entity that already exists is reused. The
    `resources` attribute always reflects what has been created or found so
    far, including when a step fails.
    """

    def __init__(
        self,
        session: boto3.Session,
        cluster_name: str,
        tags: Optional[Dict[str, str]] = None,
        settle_seconds: float = IAM_PROPAGATION_SECONDS,
    ) -> None:
        self.iam = session.client("iam")
        self.cluster_name = cluster_name
        self.tags = {**(tags or {}), "ManagedBy": MANAGED_BY, "Cluster": cluster_name}
        self.settle_seconds = settle_seconds
        self.resources = IAMResources()

    @property
    def cluster_role_name(self) -> str:
        return f"{self.cluster_name}-cluster-role"

    @property
    def node_role_name(self) -> str:
        return f"{self.cluster_name}-node-role"

    @property
    def instance_profile_name(self) -> str:
        return f"{self.cluster_name}-node-instance-profile"

    def _tag_list(self) -> List[Dict[str, str]]:
        return [{"Key": k, "Value": v} for k, v in self.tags.items()]

    def _settle(self) -> None:
        # IAM is eventually consistent; new entities are not usable right away
        if self.settle_seconds > 0:
            time.sleep(self.settle_seconds)

    def create_iam_resources(self) -> IAMResources:
        """
        Creates the control plane role, the node role and the node instance
        profile.

        Returns:
            IAMResources: The roles and the instance profile.

        Raises:
            ProviderFatalError: If an entity can not be created or read.
        """
        logger.info("Creating IAM roles...")
        self.resources.clusterRole = self._ensure_role(
            self.cluster_role_name,
            "eks.amazonaws.com",
            CLUSTER_ROLE_POLICIES,
            "EKS cluster role",
        )
        self.resources.nodeRole = self._ensure_role(
            self.node_role_name,
            "ec2.amazonaws.com",
            NODE_ROLE_POLICIES,
            "EKS node role",
        )
        self._ensure_instance_profile()
        logger.info("IAM roles are ready")
        return self.resources

    def _ensure_role(
        self, name: str, service: str, policies: List[str], description: str
    ) -> IAMRole:
        result = create_or_get(
            lambda: self.iam.create_role(
                RoleName=name,
                AssumeRolePolicyDocument=assume_role_policy(service),
                Description=f"{description} for {self.cluster_name}",
                Tags=self._tag_list(),
            )["Role"],
            lambda: self.iam.get_role(RoleName=name)["Role"],
            f"IAM role {name}",
        )
        role = IAMRole(name=name, arn=result.resource["Arn"])

        for policy_arn in policies:
            # Attaching an already attached policy is a no-op
            try:
                self.iam.attach_role_policy(RoleName=name, PolicyArn=policy_arn)
            except AWS_ERRORS as e:
                raise from_client_error(
                    e, f"Failed to attach {policy_arn} to {name}"
                ) from e

        if result.created:
            logger.info(f"Created IAM role {name}")
            self._settle()
        return role

    def _ensure_instance_profile(self) -> None:
        name = self.instance_profile_name
        result = create_or_get(
            lambda: self.iam.create_instance_profile(
                InstanceProfileName=name, Tags=self._tag_list()
            )["InstanceProfile"],
            lambda: self.iam.get_instance_profile(InstanceProfileName=name)[
                "InstanceProfile"
            ],
            f"instance profile {name}",
        )
        self.resources.instanceProfileName = name
        self.resources.instanceProfileArn = result.resource["Arn"]

        attached = [role["RoleName"] for role in result.resource.get("Roles", [])]
        if self.node_role_name not in attached:
            try:
                self.iam.add_role_to_instance_profile(
                    InstanceProfileName=name, RoleName=self.node_role_name
                )
            except AWS_ERRORS as e:
                raise from_client_error(
                    e, f"Failed to add {self.node_role_name} to {name}"
                ) from e

        if result.created:
            logger.info(f"Created instance profile {name}")
            self._settle()

    def delete_iam_resources(self, resources: IAMResources) -> TeardownReport:
        """
        Removes the instance profile and both roles, in reverse creation order.
        Every step is attempted even if an earlier one failed.

        Args:
            resources (IAMResources): What the create run recorded.

        Returns:
            TeardownReport: The outcome of every deletion step.
        """
        report = TeardownReport()
        logger.info("Deleting IAM roles...")

        if resources.instanceProfileName:
            profile = resources.instanceProfileName
            if resources.nodeRole:
                role_name = resources.nodeRole.name
                report.run(
                    "instance-profile-role",
                    f"{profile}/{role_name}",
                    lambda: self._ignore_missing(
                        self.iam.remove_role_from_instance_profile,
                        InstanceProfileName=profile,
                        RoleName=role_name,
                    ),
                )
            report.run(
                "instance-profile",
                profile,
                lambda: self._ignore_missing(
                    self.iam.delete_instance_profile, InstanceProfileName=profile
                ),
            )

        for role in [resources.nodeRole, resources.clusterRole]:
            if role is None:
                continue
            report.run("iam-role", role.name, lambda name=role.name: self._delete_role(name))

        return report

    def _ignore_missing(self, call: Callable[..., Any], **kwargs: Any) -> None:
        try:
            call(**kwargs)
        except ClientError as e:
            if not is_error_code(e, "NoSuchEntity"):
                raise

    def _delete_role(self, name: str) -> None:
        try:
            paginator = self.iam.get_paginator("list_attached_role_policies")
            policies = [
                policy["PolicyArn"]
                for page in paginator.paginate(RoleName=name)
                for policy in page["AttachedPolicies"]
            ]
        except ClientError as e:
            if is_error_code(e, "NoSuchEntity"):
                logger.debug(f"IAM role {name} is already gone")
                return
            raise

        for policy_arn in policies:
            self._ignore_missing(
                self.iam.detach_role_policy, RoleName=name, PolicyArn=policy_arn
            )
        self._ignore_missing(self.iam.delete_role, RoleName=name)
        logger.info(f"Deleted IAM role {name}")
