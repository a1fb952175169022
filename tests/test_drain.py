import pytest

from crdb_convergence.cluster import ClusterSpec
from crdb_convergence.drain import DrainConvergenceChecker, DrainTarget, node_status_command
from crdb_convergence.errors import (
    NodeStatusParseError,
    RemoteCommandError,
    UnexpectedStateError,
)
from crdb_convergence.poller import OutcomeState

from tests.helpers import FakeExecutor, FakeProvider, node_status_row, node_status_table

TARGET_ADDRESS = "crdb-3.crdb.crdb-test.svc.cluster.local:26257"
OTHER_ADDRESS = "crdb-0.crdb.crdb-test.svc.cluster.local:26257"


@pytest.fixture
def target(cluster):
    return DrainTarget.for_cluster(cluster, 3)


def checker_for(cluster, target, *responses):
    return DrainConvergenceChecker(cluster, FakeExecutor(*responses), target)


def test_drain_target_address_convention(cluster):
    assert DrainTarget.for_cluster(cluster, 3).expected_address_substring == "crdb-3.crdb.crdb-test"
    assert DrainTarget.for_member("db", 0, "ns") == DrainTarget("db-0.db.ns")


def test_node_status_command_uses_secure_mode():
    secure = ClusterSpec("crdb", "ns")
    insecure = ClusterSpec("crdb", "ns", tls_enabled=False)

    assert node_status_command(secure)[:5] == ["/cockroach/cockroach", "node", "status", "--decommission",
                                               "--format=csv"]
    assert node_status_command(secure)[-1].startswith("--certs-dir=")
    assert node_status_command(insecure)[-1] == "--insecure"


def test_runs_node_status_in_first_member(cluster, target):
    executor = FakeExecutor((node_status_table(), ""))
    checker = DrainConvergenceChecker(cluster, executor, target)

    checker.check(FakeProvider())

    pod, container, argv = executor.calls[0]
    assert pod == "crdb-0"
    assert container == "db"
    assert "--decommission" in argv


def test_decommissioned_node_without_replicas_converges(cluster, target):
    raw = node_status_table(
        node_status_row(3, TARGET_ADDRESS, replicas="0", is_decommissioning="true"),
        node_status_row(1, OTHER_ADDRESS, replicas="80"),
    )

    outcome = checker_for(cluster, target, (raw, "")).check(FakeProvider())

    assert outcome.state is OutcomeState.CONVERGED


def test_node_still_holding_replicas_is_pending(cluster, target):
    raw = node_status_table(
        node_status_row(3, TARGET_ADDRESS, replicas="5", is_decommissioning="true"),
        node_status_row(1, OTHER_ADDRESS, replicas="80"),
    )

    outcome = checker_for(cluster, target, (raw, "")).check(FakeProvider())

    assert outcome.is_pending
    assert "5 replicas" in outcome.reason


def test_no_matching_node_is_pending_not_converged(cluster, target):
    raw = node_status_table(
        node_status_row(1, OTHER_ADDRESS),
        node_status_row(2, "crdb-1.crdb.crdb-test.svc.cluster.local:26257"),
        node_status_row(3, "crdb-2.crdb.crdb-test.svc.cluster.local:26257"),
    )

    outcome = checker_for(cluster, target, (raw, "")).check(FakeProvider())

    assert outcome.is_pending


def test_address_prefix_of_another_member_does_not_match(cluster):
    target = DrainTarget.for_cluster(cluster, 1)
    raw = node_status_table(
        node_status_row(11, "crdb-11.crdb.crdb-test.svc.cluster.local:26257", is_decommissioning="false"),
    )

    assert checker_for(cluster, target, (raw, "")).check(FakeProvider()).is_pending


def test_liveness_is_not_checked(cluster, target):
    raw = node_status_table(
        node_status_row(3, TARGET_ADDRESS, is_live="true", replicas="0", is_decommissioning="true"),
    )

    assert checker_for(cluster, target, (raw, "")).check(FakeProvider()).is_converged


def test_node_not_decommissioning_is_fatal(cluster, target):
    raw = node_status_table(node_status_row(3, TARGET_ADDRESS, replicas="0", is_decommissioning="false"))

    outcome = checker_for(cluster, target, (raw, "")).check(FakeProvider())

    assert outcome.is_fatal
    assert isinstance(outcome.error, UnexpectedStateError)


def test_every_matching_record_must_be_drained(cluster, target):
    raw = node_status_table(
        node_status_row(3, TARGET_ADDRESS, replicas="0", is_decommissioning="true"),
        node_status_row(7, TARGET_ADDRESS, replicas="12", is_decommissioning="true"),
    )

    assert checker_for(cluster, target, (raw, "")).check(FakeProvider()).is_pending


def test_stderr_output_is_fatal(cluster, target):
    outcome = checker_for(cluster, target, ("", "ERROR: cannot dial server")).check(FakeProvider())

    assert outcome.is_fatal
    assert isinstance(outcome.error, RemoteCommandError)
    assert "cannot dial server" in str(outcome.error)


def test_exec_failure_is_fatal(cluster, target):
    error = RemoteCommandError("crdb-0", ["cockroach"], stderr="container not found")

    outcome = checker_for(cluster, target, error).check(FakeProvider())

    assert outcome.is_fatal
    assert outcome.error is error


def test_malformed_table_is_fatal(cluster, target):
    raw = node_status_table(node_status_row(3, TARGET_ADDRESS, replicas="lots", is_decommissioning="true"))

    outcome = checker_for(cluster, target, (raw, "")).check(FakeProvider())

    assert outcome.is_fatal
    assert isinstance(outcome.error, NodeStatusParseError)
