"""
Convergence predicates.

Each predicate separates fetching a snapshot from the provider (the only
place that does I/O) from evaluating it, so evaluation can be exercised with
hand-built Kubernetes objects. `check()` runs both and turns any
ConvergenceError raised while fetching into a FATAL outcome; cancellation and
an expired request deadline propagate to the caller instead.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from kubernetes import client
from kubernetes.utils import parse_quantity

from . import config
from .cluster import ClusterSpec
from .conditions import ConditionRecord, ConditionStatus, ConditionType, strip_timestamps
from .errors import ConvergenceError, ImageResolutionError, PollCancelledError, RequestDeadlineError
from .logger_config import setup_logger
from .poller import Outcome
from .snapshot import StatusSnapshotProvider

logger = setup_logger("predicates")


class Predicate(ABC):
    """Decides from one snapshot whether the cluster reached a target state."""

    description = "predicate"

    @abstractmethod
    def fetch(self, provider: StatusSnapshotProvider) -> Any:
        ...

    @abstractmethod
    def evaluate(self, snapshot: Any) -> Outcome:
        ...

    def check(self, provider: StatusSnapshotProvider) -> Outcome:
        try:
            snapshot = self.fetch(provider)
        except (PollCancelledError, RequestDeadlineError):
            raise
        except ConvergenceError as e:
            return Outcome.fatal(e)
        return self.evaluate(snapshot)


class AllOf(Predicate):
    """Converged only when every member converges, checked in order"""

    def __init__(self, *predicates: Predicate):
        self.predicates = predicates
        self.description = " and ".join(p.description for p in predicates)

    def fetch(self, provider: StatusSnapshotProvider) -> StatusSnapshotProvider:
        # Members fetch lazily so a pending first member skips later I/O
        return provider

    def evaluate(self, provider: StatusSnapshotProvider) -> Outcome:
        for predicate in self.predicates:
            outcome = predicate.check(provider)
            if not outcome.is_converged:
                return outcome
        return Outcome.converged()


class ReplicaSetReady(Predicate):

    def __init__(self, stateful_set_name: str, expected_replicas: Optional[int] = None):
        self.stateful_set_name = stateful_set_name
        self.expected_replicas = expected_replicas
        self.description = f"statefulset {stateful_set_name} ready"

    def fetch(self, provider: StatusSnapshotProvider) -> Optional[client.V1StatefulSet]:
        return provider.get_stateful_set(self.stateful_set_name)

    def evaluate(self, sts: Optional[client.V1StatefulSet]) -> Outcome:
        if sts is None:
            return Outcome.pending("stateful set is not found")

        status = sts.status
        replicas = (status.replicas if status else None) or 0
        ready = (status.ready_replicas if status else None) or 0
        if ready != replicas:
            return Outcome.pending(f"stateful set is not ready ({ready}/{replicas} replicas ready)")

        if self.expected_replicas is not None and replicas != self.expected_replicas:
            return Outcome.pending(
                f"statefulset replicas do not match ({replicas} running, {self.expected_replicas} expected)"
            )
        return Outcome.converged()


def resolve_expected_image(cluster: ClusterSpec) -> str:
    """Explicit image if configured, otherwise the related image for the version"""
    if cluster.image:
        return cluster.image
    image = config.lookup_related_image(cluster.cockroach_version)
    if not image:
        raise ImageResolutionError(
            f"no image configured for cluster {cluster.name} and "
            f"{config.related_image_env_name(cluster.cockroach_version)} is not set"
        )
    return image


def find_container(name: str, pod: client.V1Pod) -> Optional[client.V1Container]:
    if pod.spec is None:
        return None
    for container in pod.spec.containers or []:
        if container.name == name:
            return container
    return None


class ContainerImageMatches(Predicate):

    def __init__(self, label_selector: str, required_pod_count: int, expected_image: str = "",
                 cluster: Optional[ClusterSpec] = None, container_name: str = config.DB_CONTAINER_NAME):
        if not expected_image and cluster is None:
            raise ValueError("either expected_image or cluster is required")
        self.label_selector = label_selector
        self.required_pod_count = required_pod_count
        self.expected_image = expected_image
        self.cluster = cluster
        self.container_name = container_name
        self.description = "database containers use expected image"

    def fetch(self, provider: StatusSnapshotProvider) -> List[client.V1Pod]:
        return provider.list_pods(self.label_selector)

    def evaluate(self, pods: List[client.V1Pod]) -> Outcome:
        try:
            expected = self.expected_image or resolve_expected_image(self.cluster)
        except ImageResolutionError as e:
            return Outcome.fatal(e)

        if len(pods) < self.required_pod_count:
            return Outcome.pending(f"{len(pods)} of {self.required_pod_count} pods found")

        for pod in pods:
            container = find_container(self.container_name, pod)
            if container is None:
                return Outcome.pending(f"pod {pod.metadata.name} has no {self.container_name} container")
            if container.image != expected:
                return Outcome.pending(f"pod {pod.metadata.name} runs {container.image}, want {expected}")
        return Outcome.converged()


class ConditionSetEquals(Predicate):

    def __init__(self, cluster_name: str, expected: Sequence[Tuple[ConditionType, ConditionStatus]]):
        self.cluster_name = cluster_name
        self.expected = [ConditionRecord(kind, status) for kind, status in expected]
        self.description = f"cluster {cluster_name} conditions"

    def fetch(self, provider: StatusSnapshotProvider) -> Optional[List[ConditionRecord]]:
        return provider.get_cluster_conditions(self.cluster_name)

    def evaluate(self, conditions: Optional[List[ConditionRecord]]) -> Outcome:
        if conditions is None:
            return Outcome.pending(f"cluster {self.cluster_name} is not found")
        actual = strip_timestamps(conditions)
        if actual != strip_timestamps(self.expected):
            return Outcome.pending(f"conditions are {[(c.kind, c.status) for c in actual]}")
        return Outcome.converged()


def cluster_is_initialized(cluster_name: str) -> ConditionSetEquals:
    return ConditionSetEquals(cluster_name, [(ConditionType.INITIALIZED, ConditionStatus.FALSE)])


def cluster_is_decommissioned(cluster_name: str) -> ConditionSetEquals:
    return ConditionSetEquals(cluster_name, [(ConditionType.DECOMMISSION, ConditionStatus.TRUE)])


@dataclass(frozen=True)
class VolumeClaimRequirement:
    """Claims named <name_prefix><ordinal> below the replica count must have this size"""
    name_prefix: str
    expected_replica_count: int
    expected_storage_quantity: str

    def in_scope_names(self) -> List[str]:
        return [f"{self.name_prefix}{i}" for i in range(self.expected_replica_count)]


def requirements_for_stateful_set(sts: client.V1StatefulSet, quantity: str) -> List[VolumeClaimRequirement]:
    replicas = (sts.spec.replicas if sts.spec.replicas is not None else 1)
    templates = sts.spec.volume_claim_templates or []
    return [
        VolumeClaimRequirement(f"{template.metadata.name}-{sts.metadata.name}-", replicas, quantity)
        for template in templates
    ]


def requested_storage(pvc: client.V1PersistentVolumeClaim) -> Optional[str]:
    resources = pvc.spec.resources if pvc.spec else None
    requests = (resources.requests if resources else None) or {}
    return requests.get("storage")


def quantities_equal(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return False
    return parse_quantity(left) == parse_quantity(right)


class VolumeClaimsResized(Predicate):

    def __init__(self, requirements: Sequence[VolumeClaimRequirement], label_selector: str):
        self.requirements = list(requirements)
        self.label_selector = label_selector
        self.description = "volume claims resized"

    def fetch(self, provider: StatusSnapshotProvider) -> List[client.V1PersistentVolumeClaim]:
        return provider.list_volume_claims(self.label_selector)

    def evaluate(self, claims: List[client.V1PersistentVolumeClaim]) -> Outcome:
        by_name: Dict[str, client.V1PersistentVolumeClaim] = {pvc.metadata.name: pvc for pvc in claims}
        for requirement in self.requirements:
            for name in requirement.in_scope_names():
                pvc = by_name.get(name)
                if pvc is None:
                    return Outcome.pending(f"pvc {name} is not found")
                logger.debug(f"checking pvc {name}")
                size = requested_storage(pvc)
                if not quantities_equal(size, requirement.expected_storage_quantity):
                    return Outcome.pending(
                        f"pvc {name} requests {size}, want {requirement.expected_storage_quantity}"
                    )
        return Outcome.converged()


class StatefulSetVolumeClaimsResized(Predicate):
    """Waits for the StatefulSet to be ready, then checks its claims against its templates"""

    def __init__(self, stateful_set_name: str, quantity: str):
        self.ready = ReplicaSetReady(stateful_set_name)
        self.quantity = quantity
        self.description = f"volume claims of {stateful_set_name} resized to {quantity}"

    def fetch(self, provider: StatusSnapshotProvider):
        sts = self.ready.fetch(provider)
        if not self.ready.evaluate(sts).is_converged:
            return sts, []
        return sts, provider.list_volume_claims(selector_string(sts.spec.selector))

    def evaluate(self, snapshot) -> Outcome:
        sts, claims = snapshot
        outcome = self.ready.evaluate(sts)
        if not outcome.is_converged:
            return outcome
        requirements = requirements_for_stateful_set(sts, self.quantity)
        return VolumeClaimsResized(requirements, selector_string(sts.spec.selector)).evaluate(claims)


def selector_string(selector: Optional[client.V1LabelSelector]) -> str:
    """Render a label selector in the form the list APIs accept"""
    if selector is None:
        return ""
    parts = [f"{key}={value}" for key, value in sorted((selector.match_labels or {}).items())]
    for expression in selector.match_expressions or []:
        operator = expression.operator
        values = ",".join(expression.values or [])
        if operator == "In":
            parts.append(f"{expression.key} in ({values})")
        elif operator == "NotIn":
            parts.append(f"{expression.key} notin ({values})")
        elif operator == "Exists":
            parts.append(expression.key)
        elif operator == "DoesNotExist":
            parts.append(f"!{expression.key}")
    return ",".join(parts)


class VolumeClaimCountBound(Predicate):

    def __init__(self, label_selector: str, expected_count: int):
        self.label_selector = label_selector
        self.expected_count = expected_count
        self.description = f"{expected_count} bound volume claims"

    def fetch(self, provider: StatusSnapshotProvider) -> List[client.V1PersistentVolumeClaim]:
        return provider.list_volume_claims(self.label_selector)

    def evaluate(self, claims: List[client.V1PersistentVolumeClaim]) -> Outcome:
        bound = sum(1 for pvc in claims if pvc.status is not None and pvc.status.phase == "Bound")
        if bound != self.expected_count:
            return Outcome.pending(f"{bound} bound pvcs, want {self.expected_count}")
        return Outcome.converged()
