from __future__ import annotations

import ipaddress
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from ruamel.yaml import YAML

from cumulus.constants import (
    DEFAULT_AZ_COUNT,
    DEFAULT_K8S_VERSION,
    DEFAULT_NODE_DESIRED_SIZE,
    DEFAULT_NODE_DISK_SIZE,
    DEFAULT_NODE_INSTANCE_TYPE,
    DEFAULT_NODE_MAX_SIZE,
    DEFAULT_NODE_MIN_SIZE,
    DEFAULT_VPC_CIDR,
    MANAGED_BY,
)
from cumulus.errors import ConfigurationError
from cumulus.utils import to_yaml

CONFIG_VERSION = "1.0"

SUPPORTED_PROVIDERS = ["aws"]


class CumulusBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


def validate_cidr(v: str) -> str:
    """
    Validates that the value is an IPv4 network in CIDR notation.

    Args:
        v (str): The CIDR string, e.g. "10.0.0.0/16".

    Returns:
        str: The input value if validation is successful.

    Raises:
        ValueError: If the value is not a valid IPv4 network.
    """
    try:
        network = ipaddress.ip_network(v, strict=True)
    except ValueError:
        raise ValueError(f"Invalid VPC CIDR: {v}")
    if network.version != 4:
        raise ValueError(f"Invalid VPC CIDR: {v}. Only IPv4 is supported")
    return v


def check_scaling(min_size: int, max_size: int, desired_size: int) -> None:
    """
    Checks that 1 <= min <= desired <= max.

    Raises:
        ValueError: If the scaling triple is inconsistent.
    """
    if min_size < 1:
        raise ValueError("minSize must be greater than 0")
    if max_size < min_size:
        raise ValueError("maxSize must be greater than or equal to minSize")
    if desired_size < min_size or desired_size > max_size:
        raise ValueError(
            f"Invalid node configuration: min ({min_size}) <= desired "
            f"({desired_size}) <= max ({max_size}) is required"
        )


TAINT_EFFECTS = {
    "NoSchedule": "NO_SCHEDULE",
    "PreferNoSchedule": "PREFER_NO_SCHEDULE",
    "NoExecute": "NO_EXECUTE",
}


def parse_taint(taint: str) -> Dict[str, str]:
    """
    Parses a Kubernetes taint such as "dedicated=gpu:NoSchedule".

    Args:
        taint (str): The taint in `key[=value]:Effect` form.

    Returns:
        Dict[str, str]: The taint in the EKS API form (key, value, effect).

    Raises:
        ValueError: If the taint is malformed or uses an unknown effect.
    """
    match = re.match(r"^([^=:\s]+)(?:=([^:\s]*))?:(\w+)$", taint)
    if not match:
        raise ValueError(f"Invalid taint: {taint}. Expected key=value:Effect")
    key, value, effect = match.groups()
    if effect not in TAINT_EFFECTS:
        raise ValueError(
            f"Invalid taint effect: {effect}. Expected one of: {list(TAINT_EFFECTS)}"
        )
    result = {"key": key, "effect": TAINT_EFFECTS[effect]}
    if value:
        result["value"] = value
    return result


class NodeConfig(CumulusBaseModel):
    """
    Represents the shape of the worker node pool.
    """

    instanceType: str = Field(
        DEFAULT_NODE_INSTANCE_TYPE, description="The instance type of the nodes."
    )
    minSize: int = Field(
        DEFAULT_NODE_MIN_SIZE, description="The minimum number of nodes."
    )
    maxSize: int = Field(
        DEFAULT_NODE_MAX_SIZE, description="The maximum number of nodes."
    )
    desiredSize: int = Field(
        DEFAULT_NODE_DESIRED_SIZE, description="The desired number of nodes."
    )
    diskSize: int = Field(
        DEFAULT_NODE_DISK_SIZE, description="The size of the node disk in GB."
    )
    spotInstances: bool = Field(False, description="Whether to use spot capacity.")
    labels: Dict[str, str] = Field(
        default_factory=dict, description="Kubernetes labels applied to the nodes."
    )
    taints: List[str] = Field(
        default_factory=list, description="Kubernetes taints applied to the nodes."
    )

    @model_validator(mode="after")
    def check_sizes(self) -> "NodeConfig":
        check_scaling(self.minSize, self.maxSize, self.desiredSize)
        return self

    @field_validator("taints")
    def validate_taints(cls, v: List[str]) -> List[str]:
        for taint in v:
            parse_taint(taint)
        return v

    @field_validator("diskSize", mode="before")
    def validate_disk_size(cls, v: int) -> int:
        if v is not None and v <= 0:
            raise ValueError("diskSize must be greater than 0")
        return v


class IstioConfig(CumulusBaseModel):
    enabled: bool = False
    version: str = "1.20.0"
    profile: str = Field("default", description="demo, default or minimal.")


class ToggleConfig(CumulusBaseModel):
    enabled: bool = False


class AddonConfig(CumulusBaseModel):
    """
    Optional add-on toggles. They are recorded with the cluster state.
    """

    istio: Optional[IstioConfig] = None
    nginxIngress: Optional[ToggleConfig] = None
    argocd: Optional[ToggleConfig] = None
    prometheus: Optional[ToggleConfig] = None
    certManager: Optional[ToggleConfig] = None


class ClusterConfig(CumulusBaseModel):
    """
    The desired state of a cluster.

    A ClusterConfig is validated before any cloud resource is touched and is not
    changed while an operation runs.
    """

    name: str = Field(..., description="The name of the cluster.")
    provider: str = Field("aws", description="The cloud provider.")
    region: str = Field(..., description="The region of the cluster.")
    environment: str = Field(
        "production", description="production, staging or development."
    )
    k8sVersion: str = Field(
        DEFAULT_K8S_VERSION, description="The Kubernetes version of the cluster."
    )
    createVpc: bool = Field(True, description="Whether to create a new VPC.")
    vpcCidr: str = Field(DEFAULT_VPC_CIDR, description="The CIDR of the VPC.")
    availabilityZones: int = Field(
        DEFAULT_AZ_COUNT, description="The number of availability zones to span."
    )
    nodeConfig: NodeConfig = Field(
        default_factory=NodeConfig, description="The worker node pool."
    )
    addons: AddonConfig = Field(default_factory=AddonConfig)
    tags: Dict[str, str] = Field(
        default_factory=lambda: {"ManagedBy": MANAGED_BY},
        description="Tags applied to the cloud resources.",
    )
    createdAt: Optional[datetime] = None
    createdBy: Optional[str] = None

    @field_validator("name", mode="before")
    def validate_name(cls, v: str) -> str:
        if not v:
            raise ValueError("Cluster name is required")
        return v

    @field_validator("provider", mode="before")
    def validate_provider(cls, v: str) -> str:
        if v not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unknown provider: {v}. Expected one of: {SUPPORTED_PROVIDERS}"
            )
        return v

    @field_validator("region", mode="before")
    def validate_region(cls, v: str) -> str:
        if not v:
            raise ValueError("Region is required")
        return v

    @field_validator("vpcCidr", mode="before")
    def validate_vpc_cidr(cls, v: str) -> str:
        return validate_cidr(v)

    @field_validator("availabilityZones")
    def validate_availability_zones(cls, v: int) -> int:
        if v < 1:
            raise ValueError("availabilityZones must be greater than 0")
        return v


def validate_config(config: ClusterConfig) -> None:
    """
    Checks a cluster configuration again, field by field.

    Models built with `model_copy(update=...)` or mutated in place skip the
    pydantic validators, so every workflow calls this before touching a
    resource.

    Args:
        config (ClusterConfig): The configuration to check.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    if not config.name:
        raise ConfigurationError("Cluster name is required")
    if config.provider not in SUPPORTED_PROVIDERS:
        raise ConfigurationError(
            f"Unknown provider: {config.provider}. Expected one of: {SUPPORTED_PROVIDERS}"
        )
    if not config.region:
        raise ConfigurationError("Region is required")
    if config.availabilityZones < 1:
        raise ConfigurationError("availabilityZones must be greater than 0")

    node = config.nodeConfig
    try:
        validate_cidr(config.vpcCidr)
        check_scaling(node.minSize, node.maxSize, node.desiredSize)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def new_default_cluster_config(
    name: str, provider: str = "aws", region: str = "us-east-1"
) -> ClusterConfig:
    return ClusterConfig(name=name, provider=provider, region=region)


class Config(CumulusBaseModel):
    """
    The content of a cluster configuration file.
    """

    version: str = Field(..., description="The version of the configuration.")
    cluster: ClusterConfig = Field(..., description="The cluster to provision.")

    @field_validator("version", mode="before")
    def validate_version(cls, v: str) -> str:
        if not re.match(r"^\d+\.\d+$", v):
            raise ValueError('version must be in the format "x.x"')
        return v


def generate_yaml(config: Config) -> str:
    """
    Generate a YAML string representation of the given config object.

    Args:
        config (Config): The config object to generate YAML from.

    Returns:
        str: The YAML string representation of the config object.
    """
    return to_yaml(config.model_dump(mode="json", exclude_none=True))


def parse_yaml(yaml_str: str) -> Config:
    """
    Parse a YAML string and return a Config object.

    Args:
        yaml_str (str): The YAML string to parse.

    Returns:
        Config: The parsed Config object.

    Raises:
        ConfigurationError: If the document is not a valid configuration.
    """
    yaml = YAML()
    data: Dict[str, Any] = yaml.load(yaml_str) or {}
    version = data.get("version", None)
    if version is None:
        raise ConfigurationError(
            "Invalid configuration: The 'version' field is missing."
        )

    version = str(version)
    if not re.match(r"^\d+\.\d+$", version):
        raise ConfigurationError('version must be in the format "x.x"')

    # Make sure the major version matches
    major_version, minor_version = map(int, version.split("."))
    tool_major_version, tool_minor_version = map(int, CONFIG_VERSION.split("."))

    if major_version < tool_major_version:
        raise ConfigurationError(
            f"Invalid configuration: This tool supports versions starting from {tool_major_version}.0."
            " Please use an older version of the tool if you need to work with a previous configuration version."
        )
    elif major_version > tool_major_version:
        raise ConfigurationError(
            "Invalid configuration: Your current tool is too old. Please upgrade your tool to handle this configuration."
        )
    elif minor_version > tool_minor_version:  # No forward compatibility
        raise ConfigurationError(
            f"Invalid configuration: This tool supports versions up to {tool_major_version}.{tool_minor_version}."
            " Please upgrade your tool to handle this configuration."
        )

    data["version"] = version
    try:
        return Config(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
