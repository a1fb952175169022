import pytest

from crdb_convergence.cluster import ClusterSpec
from crdb_convergence.poller import ConvergencePoller

from tests.helpers import RecordingSleep


@pytest.fixture
def cluster():
    return ClusterSpec(name="crdb", namespace="crdb-test", nodes=3, image="cockroachdb/cockroach:v21.1.0")


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def poller(sleep):
    return ConvergencePoller(sleep=sleep)
