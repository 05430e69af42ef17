from pathlib import Path
from typing import Iterator
from unittest.mock import MagicMock, patch

import boto3
import pytest

from cumulus.config import ClusterConfig, NodeConfig
from cumulus.context import Context
from cumulus.errors import (
    ClusterExistsError,
    ConfigurationError,
    LockHeldError,
    PartialFailureError,
    ProviderFatalError,
    ProvisioningError,
    StateCorruptedError,
    StateNotFoundError,
)
from cumulus.providers.aws.provider import AWSProvider, decode_resources
from cumulus.providers.aws.types import (
    EKSCluster,
    EKSResources,
    FullClusterResources,
    IAMResources,
    IAMRole,
    NetworkingResources,
    NodeGroup,
    ScalingConfig,
)
from cumulus.state.local import LocalBackend
from cumulus.state.s3 import S3Backend
from cumulus.state.types import ClusterPhase, ClusterState, ClusterStatus
from cumulus.teardown import TeardownReport

ZONES = ["us-east-1a", "us-east-1b"]


@pytest.fixture
def backend(tmp_path: Path) -> LocalBackend:
    backend = LocalBackend(str(tmp_path / "states"))
    backend.initialize()
    return backend


@pytest.fixture
def managers() -> Iterator[MagicMock]:
    """
    Replaces the three resource managers with mocks that share one parent, so
    tests can assert on the order of the calls across managers.
    """
    parent = MagicMock()
    with patch.object(
        AWSProvider, "_iam_manager", return_value=parent.iam
    ), patch.object(
        AWSProvider, "_network_manager", return_value=parent.network
    ), patch.object(
        AWSProvider, "_eks_manager", return_value=parent.eks
    ), patch.object(
        AWSProvider, "_availability_zones", return_value=ZONES
    ):
        yield parent


def recorded_resources() -> FullClusterResources:
    return FullClusterResources(
        networking=NetworkingResources(vpcId="vpc-1", vpcCidr="10.0.0.0/16"),
        iam=IAMResources(
            clusterRole=IAMRole(name="t1-cluster-role", arn="arn:cluster"),
            nodeRole=IAMRole(name="t1-node-role", arn="arn:node"),
        ),
        eks=EKSResources(
            cluster=EKSCluster(name="t1", version="1.30"),
            nodeGroups=[
                NodeGroup(
                    name="t1-nodes",
                    scaling=ScalingConfig(minSize=1, maxSize=3, desiredSize=2),
                )
            ],
        ),
    )


def stored_state(
    config: ClusterConfig, resources: FullClusterResources
) -> ClusterState:
    return ClusterState(
        config=config,
        status=ClusterStatus(phase=ClusterPhase.ACTIVE, ready=True),
        resources={"aws": resources.model_dump(mode="json")},
    )


def test_create_and_destroy_cluster(
    aws: None, no_sleep: None, ctx: Context, cluster_config: ClusterConfig
) -> None:
    backend = S3Backend(
        "cumulus-test-states", "us-east-1", session=ctx.session("us-east-1")
    )
    backend.initialize()
    provider = AWSProvider(ctx)

    state = provider.create_cluster(cluster_config, backend)

    assert state.status.phase == ClusterPhase.ACTIVE
    assert state.status.ready
    assert state.status.endpoint
    assert state.config.createdAt is not None

    stored = backend.load("t1")
    assert stored.status.phase == ClusterPhase.ACTIVE
    assert stored.config.nodeConfig.desiredSize == 2
    assert stored.status.nodesTotal == 2
    resources = decode_resources(stored)
    assert resources.networking is not None
    assert len(resources.networking.publicSubnets) == 2
    assert len(resources.networking.privateSubnets) == 2
    assert resources.eks is not None and resources.eks.cluster is not None
    assert resources.eks.cluster.endpoint == state.status.endpoint

    kubeconfig = ctx.kubeconfig
    assert kubeconfig is not None
    assert kubeconfig["current-context"] == "t1"

    # The lock was released
    backend.unlock("t1", backend.lock("t1"))

    report = provider.delete_cluster("t1", backend)

    assert report.ok
    assert not backend.exists("t1")
    eks = boto3.client("eks", region_name="us-east-1")
    assert eks.list_clusters()["clusters"] == []
    ec2 = boto3.client("ec2", region_name="us-east-1")
    vpc_ids = [v["VpcId"] for v in ec2.describe_vpcs()["Vpcs"]]
    assert resources.networking.vpcId not in vpc_ids
    assert boto3.client("iam").list_roles()["Roles"] == []
    backend.lock("t1")


def test_create_cluster_already_exists(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    backend.save("t1", stored_state(cluster_config, recorded_resources()))

    with pytest.raises(ClusterExistsError):
        AWSProvider(ctx).create_cluster(cluster_config, backend)

    assert managers.method_calls == []
    AWSProvider._availability_zones.assert_not_called()  # type: ignore[attr-defined]
    backend.lock("t1")


def test_create_cluster_lock_held(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    backend.lock("t1", "destroy")

    with pytest.raises(LockHeldError):
        AWSProvider(ctx).create_cluster(cluster_config, backend)

    assert managers.method_calls == []
    assert not backend.exists("t1")


def test_create_cluster_invalid_config(ctx: Context, cluster_config: ClusterConfig) -> None:
    backend = MagicMock()
    # model_construct skips the pydantic validators
    config = cluster_config.model_copy(
        update={
            "nodeConfig": NodeConfig.model_construct(
                minSize=3, maxSize=1, desiredSize=2
            )
        }
    )

    with pytest.raises(ConfigurationError):
        AWSProvider(ctx).create_cluster(config, backend)

    backend.lock.assert_not_called()


def test_create_cluster_existing_vpc_not_supported(
    ctx: Context, cluster_config: ClusterConfig
) -> None:
    backend = MagicMock()
    config = cluster_config.model_copy(update={"createVpc": False})

    with pytest.raises(ConfigurationError, match="not supported"):
        AWSProvider(ctx).create_cluster(config, backend)

    backend.lock.assert_not_called()


def test_create_cluster_vpc_too_small(ctx: Context, cluster_config: ClusterConfig) -> None:
    backend = MagicMock()
    config = cluster_config.model_copy(update={"vpcCidr": "10.0.0.0/28"})

    with pytest.raises(ConfigurationError):
        AWSProvider(ctx).create_cluster(config, backend)

    backend.lock.assert_not_called()


def test_create_cluster_keeps_partial_state(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    partial = recorded_resources()
    managers.iam.create_iam_resources.return_value = partial.iam
    managers.iam.resources = partial.iam
    managers.network.create_networking.side_effect = ProviderFatalError(
        "Failed to create networking: VpcLimitExceeded", "VpcLimitExceeded"
    )
    managers.network.resources = partial.networking

    with pytest.raises(ProvisioningError) as e:
        AWSProvider(ctx).create_cluster(cluster_config, backend)

    assert e.value.phase == "networking"
    assert e.value.code == "VpcLimitExceeded"
    assert "cumulus cluster destroy t1" in str(e.value)
    managers.eks.create_cluster.assert_not_called()

    stored = backend.load("t1")
    assert stored.status.phase == ClusterPhase.FAILED
    assert "VpcLimitExceeded" in (stored.status.message or "")
    resources = decode_resources(stored)
    assert resources.iam == partial.iam
    assert resources.networking == partial.networking
    assert resources.eks is None
    assert resources.failedPhase == "networking"
    backend.lock("t1")


def partial_resources() -> FullClusterResources:
    recorded = recorded_resources()
    return FullClusterResources(iam=recorded.iam, networking=recorded.networking)


def failing_report() -> TeardownReport:
    report = TeardownReport()
    report.run("vpc", "vpc-1", MagicMock(side_effect=ProviderFatalError("DependencyViolation")))
    return report


def failed_create_state(
    config: ClusterConfig, resources: FullClusterResources, phase: str
) -> ClusterState:
    return ClusterState(
        config=config,
        status=ClusterStatus(phase=ClusterPhase.FAILED, message="boom"),
        resources={
            "aws": resources.model_copy(update={"failedPhase": phase}).model_dump(
                mode="json"
            )
        },
    )


def test_create_cluster_rerun_after_failure(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    created = recorded_resources()
    managers.iam.resources = IAMResources()
    managers.iam.create_iam_resources.side_effect = ProviderFatalError("quota")

    with pytest.raises(ProvisioningError):
        AWSProvider(ctx).create_cluster(cluster_config, backend)
    assert backend.load("t1").status.phase == ClusterPhase.FAILED

    managers.iam.create_iam_resources.side_effect = None
    managers.iam.create_iam_resources.return_value = created.iam
    managers.network.create_networking.return_value = created.networking
    managers.eks.create_cluster.return_value = created.eks

    state = AWSProvider(ctx).create_cluster(cluster_config, backend)

    assert state.status.phase == ClusterPhase.ACTIVE
    stored = backend.load("t1")
    assert stored.status.phase == ClusterPhase.ACTIVE
    resources = decode_resources(stored)
    assert resources.failedPhase is None
    assert resources.networking == created.networking
    managers.eks.create_cluster.assert_called_once_with(
        state.config, created.networking, created.iam
    )
    backend.lock("t1")


def test_create_cluster_resume_reuses_networking(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    recorded = recorded_resources()
    backend.save(
        "t1",
        failed_create_state(
            cluster_config, partial_resources(), "EKS cluster"
        ),
    )
    managers.iam.create_iam_resources.return_value = recorded.iam
    managers.eks.create_cluster.return_value = recorded.eks

    AWSProvider(ctx).create_cluster(cluster_config, backend)

    managers.network.create_networking.assert_not_called()
    managers.network.delete_networking.assert_not_called()
    networking = managers.eks.create_cluster.call_args.args[1]
    assert networking.vpcId == "vpc-1"
    assert decode_resources(backend.load("t1")).networking == recorded.networking


def test_create_cluster_resume_rebuilds_partial_networking(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    recorded = recorded_resources()
    backend.save(
        "t1",
        failed_create_state(
            cluster_config, partial_resources(), "networking"
        ),
    )
    rebuilt = NetworkingResources(vpcId="vpc-2", vpcCidr="10.0.0.0/16")
    managers.iam.create_iam_resources.return_value = recorded.iam
    managers.network.delete_networking.return_value = TeardownReport()
    managers.network.create_networking.return_value = rebuilt
    managers.eks.create_cluster.return_value = recorded.eks

    AWSProvider(ctx).create_cluster(cluster_config, backend)

    assert [c[0] for c in managers.method_calls] == [
        "iam.create_iam_resources",
        "network.delete_networking",
        "network.create_networking",
        "eks.create_cluster",
        "eks.generate_kubeconfig",
    ]
    managers.network.delete_networking.assert_called_once_with(recorded.networking)
    assert decode_resources(backend.load("t1")).networking == rebuilt


def test_create_cluster_resume_cleanup_failure(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    recorded = recorded_resources()
    backend.save(
        "t1",
        failed_create_state(
            cluster_config, partial_resources(), "networking"
        ),
    )
    managers.iam.create_iam_resources.return_value = recorded.iam
    managers.network.delete_networking.return_value = failing_report()
    managers.network.resources = None

    with pytest.raises(ProvisioningError) as e:
        AWSProvider(ctx).create_cluster(cluster_config, backend)

    assert e.value.phase == "networking"
    managers.network.create_networking.assert_not_called()
    resources = decode_resources(backend.load("t1"))
    # The incomplete network is still recorded for the next attempt
    assert resources.networking == recorded.networking
    assert resources.failedPhase == "networking"


def test_create_cluster_after_failed_update(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    state = stored_state(cluster_config, recorded_resources())
    state.status.phase = ClusterPhase.FAILED
    backend.save("t1", state)

    with pytest.raises(ClusterExistsError):
        AWSProvider(ctx).create_cluster(cluster_config, backend)

    assert managers.method_calls == []


def test_destroy_missing_cluster(
    ctx: Context, backend: LocalBackend, managers: MagicMock
) -> None:
    with pytest.raises(StateNotFoundError):
        AWSProvider(ctx).delete_cluster("t1", backend)

    assert managers.method_calls == []
    backend.lock("t1")


def test_destroy_cluster_order(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    resources = recorded_resources()
    backend.save("t1", stored_state(cluster_config, resources))
    managers.eks.delete_cluster.return_value = TeardownReport()
    managers.network.delete_networking.return_value = TeardownReport()
    managers.iam.delete_iam_resources.return_value = TeardownReport()

    report = AWSProvider(ctx).delete_cluster("t1", backend)

    assert report.ok
    assert [c[0] for c in managers.method_calls] == [
        "eks.delete_cluster",
        "network.delete_networking",
        "iam.delete_iam_resources",
    ]
    managers.eks.delete_cluster.assert_called_once_with(resources.eks)
    assert not backend.exists("t1")
    backend.lock("t1")


def test_destroy_cluster_skips_what_was_never_created(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    resources = FullClusterResources(iam=recorded_resources().iam)
    backend.save("t1", stored_state(cluster_config, resources))
    managers.iam.delete_iam_resources.return_value = TeardownReport()

    report = AWSProvider(ctx).delete_cluster("t1", backend)

    assert report.ok
    assert [s.outcome for s in report.steps] == ["skipped", "skipped"]
    managers.eks.delete_cluster.assert_not_called()
    managers.network.delete_networking.assert_not_called()
    assert not backend.exists("t1")


def test_destroy_cluster_partial_failure(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    backend.save("t1", stored_state(cluster_config, recorded_resources()))
    managers.eks.delete_cluster.return_value = TeardownReport()
    managers.network.delete_networking.return_value = failing_report()
    managers.iam.delete_iam_resources.return_value = TeardownReport()

    report = AWSProvider(ctx).delete_cluster("t1", backend)

    assert report.failed_by_resource() == {"vpc": ["vpc-1"]}
    # IAM is still cleaned up after the network failure
    managers.iam.delete_iam_resources.assert_called_once()
    assert not backend.exists("t1")
    assert "Could not delete vpc: vpc-1" in caplog.text
    backend.lock("t1")


def test_destroy_cluster_partial_failure_keeps_state(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    backend.save(
        "t1", failed_create_state(cluster_config, partial_resources(), "EKS cluster")
    )
    managers.network.delete_networking.return_value = failing_report()
    managers.iam.delete_iam_resources.return_value = TeardownReport()

    with pytest.raises(PartialFailureError) as e:
        AWSProvider(ctx).delete_cluster("t1", backend, keep_state_on_failure=True)

    assert e.value.report.failed_by_resource() == {"vpc": ["vpc-1"]}
    stored = backend.load("t1")
    assert stored.status.phase == ClusterPhase.FAILED
    # What is left can only be destroyed, not resumed by a create
    assert decode_resources(stored).failedPhase is None
    backend.lock("t1")


def test_destroy_cluster_corrupted_resources(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    state = ClusterState(config=cluster_config, resources={"aws": {"iam": "oops"}})
    backend.save("t1", state)

    with pytest.raises(StateCorruptedError):
        AWSProvider(ctx).delete_cluster("t1", backend)

    assert managers.method_calls == []
    assert backend.exists("t1")


def test_update_cluster_scale(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    backend.save("t1", stored_state(cluster_config, recorded_resources()))

    state = AWSProvider(ctx).update_cluster(
        "t1", backend, desired_size=4, max_size=5
    )

    managers.eks.update_node_group.assert_called_once_with("t1-nodes", 1, 5, 4)
    managers.eks.update_cluster_version.assert_not_called()
    assert state.status.phase == ClusterPhase.ACTIVE
    stored = backend.load("t1")
    assert stored.status.phase == ClusterPhase.ACTIVE
    assert stored.status.nodesTotal == 4
    assert stored.config.nodeConfig.desiredSize == 4
    assert stored.config.nodeConfig.maxSize == 5
    resources = decode_resources(stored)
    assert resources.eks is not None
    assert resources.eks.nodeGroups[0].scaling == ScalingConfig(
        minSize=1, maxSize=5, desiredSize=4
    )
    backend.lock("t1")


def test_update_cluster_version(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    backend.save("t1", stored_state(cluster_config, recorded_resources()))

    AWSProvider(ctx).update_cluster("t1", backend, k8s_version="1.31")

    managers.eks.update_cluster_version.assert_called_once_with("1.31")
    managers.eks.update_node_group.assert_not_called()
    stored = backend.load("t1")
    assert stored.config.k8sVersion == "1.31"
    resources = decode_resources(stored)
    assert resources.eks is not None and resources.eks.cluster is not None
    assert resources.eks.cluster.version == "1.31"


def test_update_cluster_invalid_scaling(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    backend.save("t1", stored_state(cluster_config, recorded_resources()))

    with pytest.raises(ConfigurationError):
        AWSProvider(ctx).update_cluster("t1", backend, desired_size=4)

    assert managers.method_calls == []
    backend.lock("t1")


def test_update_cluster_dry_run(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    backend.save("t1", stored_state(cluster_config, recorded_resources()))

    AWSProvider(ctx).update_cluster("t1", backend, desired_size=3, dry_run=True)

    assert managers.method_calls == []
    assert backend.load("t1").config.nodeConfig.desiredSize == 2


def test_update_cluster_nothing_to_do(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    backend.save("t1", stored_state(cluster_config, recorded_resources()))

    state = AWSProvider(ctx).update_cluster(
        "t1", backend, desired_size=2, k8s_version=cluster_config.k8sVersion
    )

    assert state.status.phase == ClusterPhase.ACTIVE
    assert managers.method_calls == []


def test_update_cluster_failure(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    backend.save("t1", stored_state(cluster_config, recorded_resources()))
    managers.eks.update_node_group.side_effect = ProviderFatalError("no capacity")

    with pytest.raises(ProviderFatalError):
        AWSProvider(ctx).update_cluster("t1", backend, desired_size=3)

    stored = backend.load("t1")
    assert stored.status.phase == ClusterPhase.FAILED
    assert stored.status.message == "no capacity"
    assert stored.config.nodeConfig.desiredSize == 2
    backend.lock("t1")


def test_update_cluster_without_control_plane(
    ctx: Context,
    cluster_config: ClusterConfig,
    backend: LocalBackend,
    managers: MagicMock,
) -> None:
    resources = FullClusterResources(iam=recorded_resources().iam)
    backend.save("t1", stored_state(cluster_config, resources))

    with pytest.raises(ProviderFatalError, match="No EKS cluster"):
        AWSProvider(ctx).update_cluster("t1", backend, desired_size=3)

    assert managers.method_calls == []
