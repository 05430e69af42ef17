from __future__ import annotations

import ipaddress
import math
from typing import Any, Dict, List, Tuple

from botocore.exceptions import ClientError

from cumulus.errors import AWS_ERRORS, ConfigurationError, from_client_error, is_error_code
from cumulus.logger import logger

# Subnets are /24 unless the VPC is too small to hold them
DEFAULT_SUBNET_PREFIX = 24
# The smallest subnet AWS accepts
MAX_SUBNET_PREFIX = 28
# The largest VPC AWS accepts
MIN_VPC_PREFIX = 16

# Used when the caller may not call DescribeAvailabilityZones
FALLBACK_ZONES: Dict[str, List[str]] = {
    "us-east-1": ["us-east-1a", "us-east-1b", "us-east-1c", "us-east-1d"],
    "us-east-2": ["us-east-2a", "us-east-2b", "us-east-2c"],
    "us-west-1": ["us-west-1a", "us-west-1b"],
    "us-west-2": ["us-west-2a", "us-west-2b", "us-west-2c", "us-west-2d"],
    "eu-west-1": ["eu-west-1a", "eu-west-1b", "eu-west-1c"],
}

ACCESS_DENIED_CODES = ("UnauthorizedOperation", "AccessDenied", "AccessDeniedException")


def subnet_prefix(vpc_cidr: str, az_count: int) -> int:
    """
    Returns the prefix length of the subnets carved out of a VPC.

    The VPC is cut into equal blocks, with room for `az_count` private blocks in
    the lower half and `az_count` public blocks in the upper half.

    Raises:
        ConfigurationError: If the VPC is too small or too large.
    """
    network = ipaddress.ip_network(vpc_cidr, strict=True)
    if network.prefixlen < MIN_VPC_PREFIX:
        raise ConfigurationError(
            f"VPC CIDR {vpc_cidr} is too large. The prefix must be /{MIN_VPC_PREFIX} or longer"
        )
    if az_count < 1:
        raise ConfigurationError("availabilityZones must be greater than 0")

    bits = math.ceil(math.log2(2 * az_count))
    prefix = max(DEFAULT_SUBNET_PREFIX, network.prefixlen + bits)
    if prefix > MAX_SUBNET_PREFIX:
        raise ConfigurationError(
            f"VPC CIDR {vpc_cidr} is too small for {az_count} public and "
            f"{az_count} private subnets"
        )
    return prefix


def plan_subnets(vpc_cidr: str, az_count: int) -> Tuple[List[str], List[str]]:
    """
    Partitions a VPC CIDR into public and private subnet CIDRs.

    Private subnets take blocks 0..n-1 and public subnets take the blocks
    starting at the middle of the range, so the two sets never overlap.

    Args:
        vpc_cidr (str): The VPC CIDR, e.g. "10.0.0.0/16".
        az_count (int): The number of availability zones.

    Returns:
        Tuple[List[str], List[str]]: The public and the private subnet CIDRs,
        one per availability zone.

    Example:
        >>> plan_subnets("10.0.0.0/16", 2)
        (['10.0.128.0/24', '10.0.129.0/24'], ['10.0.0.0/24', '10.0.1.0/24'])
    """
    network = ipaddress.ip_network(vpc_cidr, strict=True)
    prefix = subnet_prefix(vpc_cidr, az_count)
    block_size = 2 ** (32 - prefix)
    public_offset = 2 ** (prefix - network.prefixlen) // 2
    base = int(network.network_address)

    def block(index: int) -> str:
        address = ipaddress.IPv4Address(base + index * block_size)
        return f"{address}/{prefix}"

    public = [block(public_offset + i) for i in range(az_count)]
    private = [block(i) for i in range(az_count)]
    return public, private


def get_availability_zones(ec2: Any, region: str, count: int) -> List[str]:
    """
    Returns the first `count` available zones of the region.

    Args:
        ec2: An EC2 client for the region.
        region (str): The region.
        count (int): The number of zones wanted.

    Returns:
        List[str]: The zone names, sorted.

    Raises:
        ConfigurationError: If the region has fewer zones than requested.
    """
    try:
        response = ec2.describe_availability_zones(
            Filters=[{"Name": "state", "Values": ["available"]}]
        )
        zones = sorted(
            zone["ZoneName"]
            for zone in response["AvailabilityZones"]
            if zone.get("ZoneType", "availability-zone") == "availability-zone"
        )
    except ClientError as e:
        if not is_error_code(e, *ACCESS_DENIED_CODES):
            raise from_client_error(e, "Failed to list availability zones") from e
        logger.warning(
            f"Not allowed to list availability zones in {region}, using defaults"
        )
        zones = FALLBACK_ZONES.get(region, [f"{region}{s}" for s in "abc"])
    except AWS_ERRORS as e:
        raise from_client_error(e, "Failed to list availability zones") from e

    if len(zones) < count:
        raise ConfigurationError(
            f"Region {region} has {len(zones)} availability zones, {count} requested"
        )
    return zones[:count]
