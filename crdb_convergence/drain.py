from dataclasses import dataclass
from typing import List, Optional

from . import config
from .cluster import ClusterSpec
from .errors import ConvergenceError, RemoteCommandError, UnexpectedStateError
from .logger_config import setup_logger
from .node_status import parse_node_status
from .poller import CancelToken, Outcome
from .predicates import Predicate
from .remote import RemoteCommandExecutor
from .snapshot import StatusSnapshotProvider

logger = setup_logger("drain")


@dataclass(frozen=True)
class DrainTarget:
    """Identifies the decommissioned node by its advertised address"""
    expected_address_substring: str

    @classmethod
    def for_member(cls, stateful_set_name: str, ordinal: int, namespace: str) -> "DrainTarget":
        return cls(f"{stateful_set_name}-{ordinal}.{stateful_set_name}.{namespace}")

    @classmethod
    def for_cluster(cls, cluster: ClusterSpec, ordinal: int) -> "DrainTarget":
        return cls.for_member(cluster.stateful_set_name, ordinal, cluster.namespace)


def node_status_command(cluster: ClusterSpec) -> List[str]:
    return [config.COCKROACH_BINARY, "node", "status", "--decommission", "--format=csv", cluster.secure_mode()]


class DrainConvergenceChecker(Predicate):
    """
    Converges once the node at the target address has no replicas left.

    The node status table is read from the first cluster member. A matching
    node that is not marked decommissioning is fatal; a node that still holds
    replicas, or no matching node at all, is pending. Liveness is not checked:
    the node may still report live right after the operator finishes.
    """

    def __init__(self, cluster: ClusterSpec, executor: RemoteCommandExecutor, target: DrainTarget,
                 cancel: Optional[CancelToken] = None):
        self.cluster = cluster
        self.executor = executor
        self.target = target
        self.cancel = cancel
        self.pod = cluster.pod_name(0)
        self.description = f"node {target.expected_address_substring} drained"

    def fetch(self, provider: StatusSnapshotProvider) -> str:
        cmd = node_status_command(self.cluster)
        stdout, stderr = self.executor.exec(self.pod, config.DB_CONTAINER_NAME, cmd, cancel=self.cancel)
        if stderr:
            logger.error(f"exec cmd={cmd} on pod={self.pod} wrote to stderr: {stderr.strip()}")
            raise RemoteCommandError(self.pod, cmd, stderr=stderr)
        return stdout

    def evaluate(self, raw: str) -> Outcome:
        matched = 0
        try:
            for record in parse_node_status(raw):
                if self.target.expected_address_substring not in record.address:
                    continue
                matched += 1

                logger.info(
                    f"draining node id={record.id} address={record.address} is_live={record.is_live} "
                    f"replicas={record.replica_count} is_decommissioning={record.is_decommissioning}"
                )
                if not record.is_decommissioning:
                    raise UnexpectedStateError(
                        f"node {record.id} at {record.address} is not decommissioning"
                    )
                if record.replica_count != 0:
                    return Outcome.pending(
                        f"node {record.id} has not completed draining yet ({record.replica_count} replicas)"
                    )
        except ConvergenceError as e:
            return Outcome.fatal(e)

        if not matched:
            return Outcome.pending(f"no node with address {self.target.expected_address_substring} reported")
        return Outcome.converged()
