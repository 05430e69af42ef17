from __future__ import annotations

from typing import List, Optional

from pydantic import ValidationError

from cumulus.config import ClusterConfig, check_scaling, validate_config
from cumulus.context import Context
from cumulus.errors import (
    ClusterExistsError,
    ConfigurationError,
    CumulusError,
    PartialFailureError,
    ProviderFatalError,
    ProvisioningError,
    StateCorruptedError,
)
from cumulus.kubeconfig import merge_kubeconfig, save_kubeconfig
from cumulus.logger import logger
from cumulus.providers.aws.cidr import get_availability_zones, plan_subnets
from cumulus.providers.aws.eks import EKSManager
from cumulus.providers.aws.iam import IAMManager
from cumulus.providers.aws.networking import NetworkManager
from cumulus.providers.aws.types import (
    EKSCluster,
    FullClusterResources,
    NetworkingResources,
)
from cumulus.providers.base import CloudProvider
from cumulus.state.base import StateBackend
from cumulus.state.types import ClusterPhase, ClusterState, ClusterStatus
from cumulus.teardown import TeardownReport
from cumulus.utils import get_hostname, utc_now
from cumulus.waiter import retry_transient

PROVIDER_NAME = "aws"

PHASE_IAM = "IAM roles"
PHASE_NETWORKING = "networking"
PHASE_EKS = "EKS cluster"


def decode_resources(state: ClusterState) -> FullClusterResources:
    try:
        return FullClusterResources.model_validate(
            state.resources.get(PROVIDER_NAME) or {}
        )
    except ValidationError as e:
        raise StateCorruptedError(state.config.name, str(e)) from e


class AWSProvider(CloudProvider):
    """
    Sequences the IAM, network and EKS managers into create, destroy and update
    workflows.

    A failed create is not rolled back. The resources created so far are kept
    in a Failed state record, which the next create resumes from and which
    `cumulus cluster destroy` can reclaim.
    """

    name = PROVIDER_NAME

    def __init__(self, ctx: Context) -> None:
        super().__init__(ctx)

    def _iam_manager(self, config: ClusterConfig) -> IAMManager:
        return IAMManager(self.ctx.session(config.region), config.name, config.tags)

    def _network_manager(self, config: ClusterConfig) -> NetworkManager:
        return NetworkManager(
            self.ctx.session(config.region), config.name, config.region, config.tags
        )

    def _eks_manager(self, config: ClusterConfig) -> EKSManager:
        return EKSManager(
            self.ctx.session(config.region), config.name, config.region, config.tags
        )

    def _availability_zones(self, config: ClusterConfig) -> List[str]:
        ec2 = self.ctx.session(config.region).client("ec2", region_name=config.region)
        return get_availability_zones(ec2, config.region, config.availabilityZones)

    def create_cluster(
        self, config: ClusterConfig, backend: StateBackend
    ) -> ClusterState:
        """
        Creates a cluster: IAM roles, then networking, then the EKS control
        plane and node group.

        If the previous create of the same cluster failed, this one resumes it:
        IAM roles and the control plane are reused, networking is reused when
        it was complete and rebuilt otherwise.

        Args:
            config (ClusterConfig): The desired cluster.
            backend (StateBackend): Where the resulting state is stored.

        Returns:
            ClusterState: The saved state of the new cluster.

        Raises:
            ConfigurationError: If the configuration is invalid. Nothing is touched.
            LockHeldError: If another operation holds the cluster lock.
            ClusterExistsError: If the backend already has a state for the name
                that is not a failed create.
            ProvisioningError: If a step fails. Resources created so far are kept.
        """
        validate_config(config)
        if not config.createVpc:
            raise ConfigurationError("Using an existing VPC is not supported yet")
        # Fails on a VPC too small for the subnets before anything is created
        plan_subnets(config.vpcCidr, config.availabilityZones)

        config = config.model_copy(
            update={
                "createdAt": config.createdAt or utc_now(),
                "createdBy": config.createdBy or get_hostname(),
            }
        )
        self.ctx.set_config(config)

        with backend.locked(config.name, "create"):
            resources = self._resumable_resources(backend, config.name)
            failed_phase = resources.failedPhase
            resources.failedPhase = None

            zones = self._availability_zones(config)
            logger.info(
                f"Creating cluster {config.name} in {config.region} ({', '.join(zones)})"
            )

            iam = self._iam_manager(config)
            if resources.iam is not None:
                iam.resources = resources.iam.model_copy(deep=True)
            network: Optional[NetworkManager] = None
            eks: Optional[EKSManager] = None
            phase = PHASE_IAM
            try:
                resources.iam = iam.create_iam_resources()

                phase = PHASE_NETWORKING
                network = self._network_manager(config)
                if resources.networking is not None and failed_phase == PHASE_EKS:
                    logger.info(f"Reusing VPC {resources.networking.vpcId}")
                else:
                    if resources.networking is not None:
                        self._remove_partial_networking(network, resources.networking)
                        resources.networking = None
                    resources.networking = network.create_networking(config, zones)

                phase = PHASE_EKS
                eks = self._eks_manager(config)
                if resources.eks is not None:
                    eks.resources = resources.eks.model_copy(deep=True)
                resources.eks = eks.create_cluster(
                    config, resources.networking, resources.iam
                )
            except CumulusError as e:
                resources.iam = iam.resources
                if network is not None and network.resources is not None:
                    resources.networking = network.resources
                if eks is not None:
                    resources.eks = eks.resources
                resources.failedPhase = phase
                self._save_failed_state(backend, config, resources, e)
                error = ProvisioningError(config.name, phase, e, resources)
                logger.error(str(error))
                raise error from e

            cluster = resources.eks.cluster if resources.eks else None
            node = config.nodeConfig
            state = ClusterState(
                config=config,
                status=ClusterStatus(
                    phase=ClusterPhase.ACTIVE,
                    ready=True,
                    message="Cluster is ready",
                    endpoint=cluster.endpoint if cluster else None,
                    nodesReady=node.desiredSize,
                    nodesTotal=node.desiredSize,
                ),
                resources={PROVIDER_NAME: resources.model_dump(mode="json")},
            )
            retry_transient(backend.save)(config.name, state)
            logger.info(f"Cluster {config.name} is ready")

        if cluster is not None:
            self._export_kubeconfig(eks, cluster)
        return state

    def _resumable_resources(
        self, backend: StateBackend, cluster_name: str
    ) -> FullClusterResources:
        """
        Returns the resources recorded by a failed create of the cluster, or an
        empty graph when the backend has no state for it.

        Raises:
            ClusterExistsError: If the stored state is not a failed create.
        """
        if not retry_transient(backend.exists)(cluster_name):
            return FullClusterResources()

        state = retry_transient(backend.load)(cluster_name)
        resources = decode_resources(state)
        if state.status.phase != ClusterPhase.FAILED or not resources.failedPhase:
            raise ClusterExistsError(cluster_name)

        logger.info(
            f"Resuming the failed create of {cluster_name} from {resources.failedPhase}"
        )
        return resources

    def _remove_partial_networking(
        self, network: NetworkManager, networking: NetworkingResources
    ) -> None:
        logger.info(f"Removing the incomplete network of VPC {networking.vpcId}...")
        report = network.delete_networking(networking)
        if not report.ok:
            report.log_failures()
            raise ProviderFatalError(
                f"Failed to remove the incomplete network of VPC {networking.vpcId}"
            )

    def _save_failed_state(
        self,
        backend: StateBackend,
        config: ClusterConfig,
        resources: FullClusterResources,
        cause: BaseException,
    ) -> None:
        state = ClusterState(
            config=config,
            status=ClusterStatus(phase=ClusterPhase.FAILED, message=str(cause)),
            resources={PROVIDER_NAME: resources.model_dump(mode="json")},
        )
        try:
            backend.save(config.name, state)
        except CumulusError as e:
            logger.warning(f"Failed to record the partial state of {config.name}: {e}")

    def _export_kubeconfig(
        self, eks: Optional[EKSManager], cluster: EKSCluster
    ) -> None:
        if eks is None:
            return
        kubeconfig = eks.generate_kubeconfig(cluster)
        self.ctx.set_kubeconfig(kubeconfig)
        if not self.ctx.should_save_kubeconfig:
            return
        try:
            save_kubeconfig(cluster.name, kubeconfig)
            merge_kubeconfig(kubeconfig)
        except OSError as e:
            logger.warning(f"Failed to write kubeconfig: {e}")

    def delete_cluster(
        self,
        cluster_name: str,
        backend: StateBackend,
        keep_state_on_failure: bool = False,
    ) -> TeardownReport:
        """
        Destroys a cluster: EKS first, then networking, then IAM.

        Teardown is best effort: a failed step is recorded and logged, and the
        rest carries on. Once all three phases were attempted the state is
        deleted, and the returned report lists what was left behind.

        Args:
            cluster_name (str): The name of the cluster.
            backend (StateBackend): The backend holding the cluster state.
            keep_state_on_failure (bool): Keep the state (phase Failed) when some
                resources could not be deleted, so the destroy can be re-run.

        Returns:
            TeardownReport: The outcome of every deletion step.

        Raises:
            StateNotFoundError: If the backend has no state for the cluster.
            LockHeldError: If another operation holds the cluster lock.
            PartialFailureError: If some resources could not be deleted and
                `keep_state_on_failure` is set.
        """
        with backend.locked(cluster_name, "destroy"):
            state = retry_transient(backend.load)(cluster_name)
            resources = decode_resources(state)
            config = state.config
            self.ctx.set_config(config)

            state.status.phase = ClusterPhase.DELETING
            state.status.ready = False
            try:
                backend.save(cluster_name, state)
            except CumulusError as e:
                logger.warning(f"Failed to mark {cluster_name} as deleting: {e}")

            logger.info(f"Destroying cluster {cluster_name}...")
            report = TeardownReport()
            if resources.eks is not None:
                report.extend(self._eks_manager(config).delete_cluster(resources.eks))
            else:
                report.skip("eks-cluster", cluster_name, "not recorded")
            if resources.networking is not None:
                report.extend(
                    self._network_manager(config).delete_networking(
                        resources.networking
                    )
                )
            else:
                report.skip("vpc", cluster_name, "not recorded")
            if resources.iam is not None:
                report.extend(self._iam_manager(config).delete_iam_resources(resources.iam))
            else:
                report.skip("iam-role", cluster_name, "not recorded")

            if not report.ok:
                report.log_failures()
                if keep_state_on_failure:
                    # A half-destroyed graph is not something a create can resume
                    resources.failedPhase = None
                    state.resources = {PROVIDER_NAME: resources.model_dump(mode="json")}
                    state.status.phase = ClusterPhase.FAILED
                    state.status.message = "Teardown left resources behind"
                    retry_transient(backend.save)(cluster_name, state)
                    raise PartialFailureError(
                        f"Cluster {cluster_name} was only partially destroyed. "
                        "Fix the errors above and run the destroy again.",
                        report,
                    )

            retry_transient(backend.delete)(cluster_name)
            if report.ok:
                logger.info(f"Cluster {cluster_name} destroyed")
            else:
                logger.warning(
                    f"Cluster {cluster_name} was removed from the state backend, "
                    f"but {len(report.failures)} resources were left behind"
                )
            return report

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
        """
        Scales the node group and/or upgrades the control plane of a cluster.

        Values left as None keep what the stored configuration says.

        Returns:
            ClusterState: The saved state after the update.

        Raises:
            ConfigurationError: If the resulting scaling is invalid.
            StateNotFoundError: If the backend has no state for the cluster.
        """
        with backend.locked(cluster_name, "update"):
            state = retry_transient(backend.load)(cluster_name)
            resources = decode_resources(state)
            node = state.config.nodeConfig

            new_min = node.minSize if min_size is None else min_size
            new_max = node.maxSize if max_size is None else max_size
            new_desired = node.desiredSize if desired_size is None else desired_size
            try:
                check_scaling(new_min, new_max, new_desired)
            except ValueError as e:
                raise ConfigurationError(str(e)) from e

            scale = (new_min, new_max, new_desired) != (
                node.minSize,
                node.maxSize,
                node.desiredSize,
            )
            upgrade = bool(k8s_version) and k8s_version != state.config.k8sVersion

            if not scale and not upgrade:
                logger.info(f"Cluster {cluster_name} is already up to date")
                return state

            if scale:
                logger.info(
                    f"Node group: min {node.minSize} -> {new_min}, max {node.maxSize} -> "
                    f"{new_max}, desired {node.desiredSize} -> {new_desired}"
                )
            if upgrade:
                logger.info(
                    f"Kubernetes version: {state.config.k8sVersion} -> {k8s_version}"
                )
            if dry_run:
                logger.info("Dry run, nothing was changed")
                return state

            if resources.eks is None or resources.eks.cluster is None:
                raise ProviderFatalError(
                    f"No EKS cluster is recorded for {cluster_name}, can not update it"
                )

            state.status.phase = ClusterPhase.UPDATING
            retry_transient(backend.save)(cluster_name, state)

            eks = self._eks_manager(state.config)
            try:
                if scale:
                    for group in resources.eks.nodeGroups:
                        eks.update_node_group(group.name, new_min, new_max, new_desired)
                        group.scaling.minSize = new_min
                        group.scaling.maxSize = new_max
                        group.scaling.desiredSize = new_desired
                    state.config.nodeConfig = node.model_copy(
                        update={
                            "minSize": new_min,
                            "maxSize": new_max,
                            "desiredSize": new_desired,
                        }
                    )
                if upgrade:
                    assert k8s_version is not None
                    eks.update_cluster_version(k8s_version)
                    resources.eks.cluster.version = k8s_version
                    state.config.k8sVersion = k8s_version
            except CumulusError as e:
                state.status.phase = ClusterPhase.FAILED
                state.status.message = str(e)
                state.resources[PROVIDER_NAME] = resources.model_dump(mode="json")
                try:
                    backend.save(cluster_name, state)
                except CumulusError as save_error:
                    logger.warning(f"Failed to record the failed update: {save_error}")
                raise

            state.status.phase = ClusterPhase.ACTIVE
            state.status.ready = True
            state.status.message = "Cluster is ready"
            state.status.nodesReady = new_desired
            state.status.nodesTotal = new_desired
            state.status.updatedAt = utc_now()
            state.resources[PROVIDER_NAME] = resources.model_dump(mode="json")
            retry_transient(backend.save)(cluster_name, state)
            logger.info(f"Cluster {cluster_name} updated")
            return state
