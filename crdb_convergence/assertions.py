"""
Caller-facing convergence assertions for CockroachDB clusters.

Every `require_*` function either returns once the cluster converged or
raises a ConvergenceError (an AssertionError), so pytest reports a failed
wait as a failed assertion.
"""

import time
from typing import Callable, Optional

from . import config
from .cluster import ClusterSpec
from .database import ConnectionSpec, open_connection
from .drain import DrainConvergenceChecker, DrainTarget
from .errors import PollTimeoutError, RequestDeadlineError, UnexpectedStateError
from .logger_config import setup_logger
from .poller import CancelToken, ConvergencePoller, Outcome, PollSpec, RequestBudget
from .predicates import (
    AllOf,
    ContainerImageMatches,
    Predicate,
    ReplicaSetReady,
    StatefulSetVolumeClaimsResized,
    VolumeClaimCountBound,
    cluster_is_decommissioned,
    cluster_is_initialized,
    selector_string,
)
from .remote import RemoteCommandExecutor
from .snapshot import StatusSnapshotProvider

logger = setup_logger("assertions")

# Lines of pod log shown when a readiness wait times out
POD_LOG_TAIL = 20


def _bounded(provider: StatusSnapshotProvider, spec: PollSpec, cancel: Optional[CancelToken],
             tick: Callable[[], Outcome]) -> Callable[[], Outcome]:
    """Wrap *tick* so its API requests end by the poll deadline or on cancel"""
    started = []

    def bounded_tick() -> Outcome:
        if not started:
            started.append(time.monotonic())
        with provider.bounded(RequestBudget.for_poll(started[0], spec, cancel)):
            try:
                return tick()
            except RequestDeadlineError as e:
                return Outcome.pending(str(e))

    return bounded_tick


def _converge(predicate: Predicate, provider: StatusSnapshotProvider, spec: PollSpec,
              cancel: Optional[CancelToken], poller: Optional[ConvergencePoller],
              on_pending: Optional[Callable[[Outcome], None]] = None) -> None:
    def tick() -> Outcome:
        outcome = predicate.check(provider)
        if outcome.is_pending and on_pending is not None:
            on_pending(outcome)
        return outcome

    (poller or ConvergencePoller()).run(spec, _bounded(provider, spec, cancel, tick),
                                        description=predicate.description, cancel=cancel)


def _dump_pod_logs(provider: StatusSnapshotProvider, cluster: ClusterSpec) -> None:
    for ordinal in range(cluster.nodes):
        pod = cluster.pod_name(ordinal)
        text = provider.get_pod_log(pod, config.DB_CONTAINER_NAME)
        if text:
            tail = "\n".join(text.splitlines()[-POD_LOG_TAIL:])
            logger.warning(f"last log lines of {pod}:\n{tail}")


def require_cluster_ready(provider: StatusSnapshotProvider, cluster: ClusterSpec,
                          poll: Optional[PollSpec] = None, cancel: Optional[CancelToken] = None,
                          poller: Optional[ConvergencePoller] = None) -> None:
    """Wait until the StatefulSet exists and all of its replicas are ready"""
    spec = poll or PollSpec(config.POLL_INTERVAL, config.READY_TIMEOUT)
    selector = cluster.label_selector()

    def log_pods(outcome: Outcome) -> None:
        logger.info(outcome.reason)
        provider.log_pods(selector)

    try:
        _converge(ReplicaSetReady(cluster.stateful_set_name), provider, spec, cancel, poller, log_pods)
    except PollTimeoutError:
        _dump_pod_logs(provider, cluster)
        raise


def require_db_containers_use_image(provider: StatusSnapshotProvider, cluster: ClusterSpec,
                                    poll: Optional[PollSpec] = None, cancel: Optional[CancelToken] = None,
                                    poller: Optional[ConvergencePoller] = None) -> None:
    """Wait until every member pod runs the expected database image"""
    predicate = ContainerImageMatches(cluster.label_selector(), cluster.nodes, cluster=cluster)
    _converge(predicate, provider, poll or PollSpec(config.POLL_INTERVAL, config.IMAGE_TIMEOUT),
              cancel, poller)


def require_cluster_initialized(provider: StatusSnapshotProvider, cluster: ClusterSpec,
                                poll: Optional[PollSpec] = None, cancel: Optional[CancelToken] = None,
                                poller: Optional[ConvergencePoller] = None) -> None:
    _converge(cluster_is_initialized(cluster.name), provider,
              poll or PollSpec(config.POLL_INTERVAL, config.CONDITION_TIMEOUT), cancel, poller)


def require_cluster_decommissioned(provider: StatusSnapshotProvider, cluster: ClusterSpec,
                                   poll: Optional[PollSpec] = None, cancel: Optional[CancelToken] = None,
                                   poller: Optional[ConvergencePoller] = None) -> None:
    _converge(cluster_is_decommissioned(cluster.name), provider,
              poll or PollSpec(config.POLL_INTERVAL, config.CONDITION_TIMEOUT), cancel, poller)


def require_decommission_node(provider: StatusSnapshotProvider, executor: RemoteCommandExecutor,
                              cluster: ClusterSpec, num_nodes: int, poll: Optional[PollSpec] = None,
                              cancel: Optional[CancelToken] = None,
                              poller: Optional[ConvergencePoller] = None) -> None:
    """
    Wait until the cluster was scaled down to *num_nodes* and the removed
    member (ordinal *num_nodes*) has handed off all of its replicas.
    """
    predicate = AllOf(
        ReplicaSetReady(cluster.stateful_set_name, expected_replicas=num_nodes),
        DrainConvergenceChecker(cluster, executor, DrainTarget.for_cluster(cluster, num_nodes), cancel=cancel),
    )
    _converge(predicate, provider, poll or PollSpec(config.POLL_INTERVAL, config.DECOMMISSION_TIMEOUT),
              cancel, poller)


def require_pvcs_resized(provider: StatusSnapshotProvider, cluster: ClusterSpec, quantity: str,
                         poll: Optional[PollSpec] = None, cancel: Optional[CancelToken] = None,
                         poller: Optional[ConvergencePoller] = None) -> None:
    """Wait until every in-use volume claim requests *quantity* of storage"""
    predicate = StatefulSetVolumeClaimsResized(cluster.stateful_set_name, quantity)
    _converge(predicate, provider, poll or PollSpec(config.POLL_INTERVAL, config.RESIZE_TIMEOUT),
              cancel, poller)


def require_number_of_pvcs(provider: StatusSnapshotProvider, cluster: ClusterSpec, quantity: int,
                           poll: Optional[PollSpec] = None, cancel: Optional[CancelToken] = None,
                           poller: Optional[ConvergencePoller] = None) -> None:
    """Wait until exactly *quantity* claims selected by the StatefulSet are bound"""
    spec = poll or PollSpec(config.POLL_INTERVAL, config.PVC_COUNT_TIMEOUT)

    def tick() -> Outcome:
        sts = provider.get_stateful_set(cluster.stateful_set_name)
        if sts is None:
            return Outcome.pending("stateful set is not found")
        return VolumeClaimCountBound(selector_string(sts.spec.selector), quantity).check(provider)

    (poller or ConvergencePoller()).run(spec, _bounded(provider, spec, cancel, tick),
                                        description=f"{quantity} bound volume claims", cancel=cancel)


def require_database_to_function(executor: RemoteCommandExecutor, cluster: ClusterSpec,
                                 cancel: Optional[CancelToken] = None) -> None:
    """Check a TLS cluster accepts writes and serves them back"""
    _require_database_to_function(executor, cluster, use_ssl=True, cancel=cancel)


def require_database_to_function_insecure(executor: RemoteCommandExecutor, cluster: ClusterSpec,
                                          cancel: Optional[CancelToken] = None) -> None:
    _require_database_to_function(executor, cluster, use_ssl=False, cancel=cancel)


def _require_database_to_function(executor: RemoteCommandExecutor, cluster: ClusterSpec, use_ssl: bool,
                                  cancel: Optional[CancelToken] = None) -> None:
    spec = ConnectionSpec.for_cluster(cluster, use_ssl=use_ssl)
    with open_connection(executor, spec, cancel=cancel) as db:
        db.exec("CREATE DATABASE test_db")
        db.exec("CREATE TABLE IF NOT EXISTS test_db.accounts (id INT PRIMARY KEY, balance INT)")
        db.exec("INSERT INTO test_db.accounts (id, balance) VALUES (1, 1000), (2, 250)")

        logger.info("Initial balances:")
        for row in db.query("SELECT id, balance FROM test_db.accounts"):
            logger.info(f"balances {row['id']} {row['balance']}")

        count = int(db.query_value("SELECT COUNT(*) AS count FROM test_db.accounts"))
        if count != 2:
            raise UnexpectedStateError(f"found incorrect number of rows. Expected 2 got {count}")

    logger.info("finished testing database")


def require_downgrade_option_set(executor: RemoteCommandExecutor, cluster: ClusterSpec, version: str,
                                 cancel: Optional[CancelToken] = None) -> None:
    """Check cluster.preserve_downgrade_option is pinned to *version*"""
    spec = ConnectionSpec.for_cluster(cluster)
    with open_connection(executor, spec, cancel=cancel) as db:
        value = db.query_value("SHOW CLUSTER SETTING cluster.preserve_downgrade_option")

    if not value:
        raise UnexpectedStateError(f"downgrade_option is empty and should be set to {version}")
    if value != version:
        raise UnexpectedStateError(f"downgrade_option is not set to {version}, but is set to {value}")
