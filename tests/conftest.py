import pytest

from fakes import FakeGateway, cluster_body
from ray_operator import crd
from ray_operator.config import OperatorConfig


@pytest.fixture
def gateway():
    """Empty in-memory API server."""
    return FakeGateway()


@pytest.fixture
def config():
    return OperatorConfig(requeue_seconds=10, degraded_grace_seconds=600, failure_budget=3)


@pytest.fixture
def cluster(gateway):
    """A RayCluster with one head and two ``small`` workers, stored in the gateway."""
    return gateway.create(crd.CLUSTER_KIND, "default", cluster_body())
