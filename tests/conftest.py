import time
from typing import Any, Iterator

import pytest
from moto import mock_aws

from cumulus.config import ClusterConfig, NodeConfig
from cumulus.context import Context

# moto only ships the AWS managed policies when asked to
MOTO_CONFIG: Any = {"iam": {"load_aws_managed_policies": True}}


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture
def aws() -> Iterator[None]:
    with mock_aws(config=MOTO_CONFIG):
        yield


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(time, "sleep", lambda _: None)


@pytest.fixture
def cluster_config() -> ClusterConfig:
    return ClusterConfig(
        name="t1",
        region="us-east-1",
        availabilityZones=2,
        nodeConfig=NodeConfig(minSize=1, maxSize=3, desiredSize=2),
    )


@pytest.fixture
def ctx() -> Context:
    context = Context(
        state_backend="s3://cumulus-test-states", backend_region="us-east-1"
    )
    context.set_should_save_kubeconfig(False)
    return context
