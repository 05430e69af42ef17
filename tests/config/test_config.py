from __future__ import annotations

import pytest

from cumulus.config import (
    CONFIG_VERSION,
    ClusterConfig,
    Config,
    IstioConfig,
    NodeConfig,
    check_scaling,
    generate_yaml,
    new_default_cluster_config,
    parse_taint,
    parse_yaml,
    validate_config,
)
from cumulus.errors import ConfigurationError

cluster_config = ClusterConfig(
    name="test-cluster",
    region="us-west-2",
    environment="staging",
    k8sVersion="1.29",
    vpcCidr="10.1.0.0/16",
    availabilityZones=2,
    nodeConfig=NodeConfig(
        instanceType="m5.large",
        minSize=1,
        maxSize=4,
        desiredSize=2,
        spotInstances=True,
        labels={"workload": "general"},
        taints=["dedicated=gpu:NoSchedule"],
    ),
    tags={"Team": "platform"},
)


def test_default_cluster_config() -> None:
    config = new_default_cluster_config("t1")

    assert config.provider == "aws"
    assert config.region == "us-east-1"
    assert config.k8sVersion == "1.30"
    assert config.vpcCidr == "10.0.0.0/16"
    assert config.availabilityZones == 3
    assert config.createVpc
    assert config.nodeConfig == NodeConfig(
        instanceType="t3.medium", minSize=1, maxSize=5, desiredSize=3, diskSize=30
    )
    assert config.tags == {"ManagedBy": "cumulus"}
    assert config.addons.istio is None


def test_node_config_scaling() -> None:
    with pytest.raises(ValueError, match="minSize must be greater than 0"):
        NodeConfig(minSize=0, maxSize=2, desiredSize=1)

    with pytest.raises(
        ValueError, match="maxSize must be greater than or equal to minSize"
    ):
        NodeConfig(minSize=3, maxSize=2, desiredSize=2)

    with pytest.raises(ValueError, match="Invalid node configuration"):
        NodeConfig(minSize=1, maxSize=3, desiredSize=4)

    with pytest.raises(ValueError, match="diskSize must be greater than 0"):
        NodeConfig(diskSize=0)


def test_check_scaling() -> None:
    check_scaling(1, 1, 1)
    check_scaling(1, 5, 3)

    with pytest.raises(ValueError):
        check_scaling(2, 5, 1)


def test_parse_taint() -> None:
    assert parse_taint("dedicated=gpu:NoSchedule") == {
        "key": "dedicated",
        "value": "gpu",
        "effect": "NO_SCHEDULE",
    }
    assert parse_taint("spot:PreferNoSchedule") == {
        "key": "spot",
        "effect": "PREFER_NO_SCHEDULE",
    }

    with pytest.raises(ValueError, match="Invalid taint:"):
        parse_taint("dedicated=gpu")

    with pytest.raises(ValueError, match="Invalid taint effect"):
        parse_taint("dedicated=gpu:Sometimes")

    with pytest.raises(ValueError):
        NodeConfig(taints=["no-effect"])


def test_cluster_config_validation() -> None:
    with pytest.raises(ValueError, match="Cluster name is required"):
        ClusterConfig(name="", region="us-east-1")

    with pytest.raises(ValueError, match="Region is required"):
        ClusterConfig(name="t1", region="")

    with pytest.raises(ValueError, match="Unknown provider: gcp"):
        ClusterConfig(name="t1", region="us-east-1", provider="gcp")

    with pytest.raises(ValueError, match="Invalid VPC CIDR"):
        ClusterConfig(name="t1", region="us-east-1", vpcCidr="10.0.0.1/16")

    with pytest.raises(ValueError, match="Only IPv4"):
        ClusterConfig(name="t1", region="us-east-1", vpcCidr="fd00::/48")

    with pytest.raises(ValueError, match="availabilityZones must be greater than 0"):
        ClusterConfig(name="t1", region="us-east-1", availabilityZones=0)

    with pytest.raises(ValueError):
        ClusterConfig(name="t1", region="us-east-1", unknownField=True)


def test_validate_config() -> None:
    validate_config(cluster_config)

    # model_copy does not run the validators
    with pytest.raises(ConfigurationError, match="Cluster name is required"):
        validate_config(cluster_config.model_copy(update={"name": ""}))

    with pytest.raises(ConfigurationError, match="Unknown provider"):
        validate_config(cluster_config.model_copy(update={"provider": "azure"}))

    with pytest.raises(ConfigurationError, match="Region is required"):
        validate_config(cluster_config.model_copy(update={"region": ""}))

    with pytest.raises(ConfigurationError, match="availabilityZones"):
        validate_config(cluster_config.model_copy(update={"availabilityZones": 0}))

    with pytest.raises(ConfigurationError, match="Invalid VPC CIDR"):
        validate_config(cluster_config.model_copy(update={"vpcCidr": "not-a-cidr"}))

    node = NodeConfig.model_construct(minSize=2, maxSize=3, desiredSize=1)
    with pytest.raises(ConfigurationError, match="Invalid node configuration"):
        validate_config(cluster_config.model_copy(update={"nodeConfig": node}))


def test_generate_yaml() -> None:
    config = Config(version="1.0", cluster=cluster_config)
    yaml_str = generate_yaml(config)
    assert isinstance(yaml_str, str)
    assert "cluster:" in yaml_str
    assert "createdAt" not in yaml_str


def test_parse_yaml() -> None:
    yaml_str = """
    version: "1.0"
    cluster:
        name: test-cluster
        region: eu-west-1
        k8sVersion: "1.29"
        availabilityZones: 2
        nodeConfig:
            instanceType: m5.large
            minSize: 2
            maxSize: 6
            desiredSize: 3
            labels:
                workload: general
            taints:
                - dedicated=gpu:NoSchedule
        addons:
            istio:
                enabled: true
                profile: minimal
            nginxIngress:
                enabled: true
        tags:
            Team: platform
    """
    config = parse_yaml(yaml_str)
    assert isinstance(config, Config)
    assert config.version == "1.0"
    cluster = config.cluster
    assert cluster.name == "test-cluster"
    assert cluster.region == "eu-west-1"
    assert cluster.provider == "aws"
    assert cluster.k8sVersion == "1.29"
    assert cluster.availabilityZones == 2
    assert cluster.nodeConfig.instanceType == "m5.large"
    assert cluster.nodeConfig.minSize == 2
    assert cluster.nodeConfig.maxSize == 6
    assert cluster.nodeConfig.desiredSize == 3
    assert cluster.nodeConfig.labels == {"workload": "general"}
    assert cluster.nodeConfig.taints == ["dedicated=gpu:NoSchedule"]
    assert cluster.addons.istio == IstioConfig(enabled=True, profile="minimal")
    assert cluster.addons.nginxIngress is not None
    assert cluster.addons.nginxIngress.enabled
    assert cluster.addons.argocd is None
    # Tags given in the file replace the default ones
    assert cluster.tags == {"Team": "platform"}


def test_parse_yaml_invalid_cluster() -> None:
    yaml_str = """
    version: "1.0"
    cluster:
        name: test-cluster
        region: eu-west-1
        nodeConfig:
            minSize: 3
            maxSize: 2
            desiredSize: 2
    """
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        parse_yaml(yaml_str)


def test_round_trip() -> None:
    original_config = Config(version="1.0", cluster=cluster_config)
    yaml_str = generate_yaml(original_config)
    parsed_config = parse_yaml(yaml_str)
    assert original_config == parsed_config


def test_config_version_validation() -> None:
    with pytest.raises(ValueError, match='version must be in the format "x.x"'):
        Config(version="1", cluster=cluster_config)


def test_parse_yaml_version_validation() -> None:
    major_version, minor_version = map(int, CONFIG_VERSION.split("."))
    cluster = "cluster: {name: t1, region: us-east-1}"
    with pytest.raises(
        ConfigurationError,
        match="Invalid configuration: The 'version' field is missing.",
    ):
        parse_yaml(cluster)

    with pytest.raises(ConfigurationError, match='version must be in the format "x.x"'):
        parse_yaml(f"version: '1'\n{cluster}")

    with pytest.raises(
        ConfigurationError,
        match=f"Invalid configuration: This tool supports versions starting from {major_version}.0.",
    ):
        parse_yaml(f"version: '{major_version - 1}.0'\n{cluster}")

    with pytest.raises(
        ConfigurationError, match="Invalid configuration: Your current tool is too old."
    ):
        parse_yaml(f"version: '{major_version + 1}.0'\n{cluster}")

    with pytest.raises(
        ConfigurationError,
        match=f"Invalid configuration: This tool supports versions up to {major_version}.{minor_version}.",
    ):
        parse_yaml(f"version: '{major_version}.{minor_version + 1}'\n{cluster}")
