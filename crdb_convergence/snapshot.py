from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from . import config
from .conditions import ConditionRecord
from .errors import SnapshotFetchError
from .logger_config import setup_logger
from .poller import RequestBudget

logger = setup_logger("snapshot")

CRDB_GROUP = "crdb.cockroachlabs.com"
CRDB_VERSION = "v1alpha1"
CRDB_PLURAL = "crdbclusters"

# Connection refused, resets, DNS and TLS failures surface as one of these
TRANSPORT_ERRORS = (HTTPError, OSError)
# Seconds between cancel/deadline checks while a request is in flight
WAIT_SLICE = 0.1


class StatusSnapshotProvider(ABC):
    """Read-only view of the live cluster state, fetched fresh on every call."""

    @abstractmethod
    def get_stateful_set(self, name: str) -> Optional[client.V1StatefulSet]:
        """Return the StatefulSet, or None if it does not exist yet"""

    @abstractmethod
    def list_pods(self, label_selector: str) -> List[client.V1Pod]:
        ...

    @abstractmethod
    def list_volume_claims(self, label_selector: str) -> List[client.V1PersistentVolumeClaim]:
        ...

    @abstractmethod
    def get_cluster_conditions(self, name: str) -> Optional[List[ConditionRecord]]:
        """Return the cluster resource's conditions, or None if it does not exist yet"""

    def log_pods(self, label_selector: str = "") -> None:
        """Log pod phases and conditions while waiting, when the provider can"""

    def get_pod_log(self, pod_name: str, container: Optional[str] = None) -> str:
        return ""

    @contextmanager
    def bounded(self, budget: RequestBudget) -> Iterator["StatusSnapshotProvider"]:
        """Bound the requests made inside the block by *budget*"""
        yield self


class KubernetesSnapshotProvider(StatusSnapshotProvider):
    """Snapshot provider backed by the Kubernetes API"""

    def __init__(self, namespace: str, api_client: Optional[client.ApiClient] = None):
        self.namespace = namespace
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.custom_objects = client.CustomObjectsApi(api_client)
        self._budget = RequestBudget()

    @contextmanager
    def bounded(self, budget: RequestBudget) -> Iterator["KubernetesSnapshotProvider"]:
        previous, self._budget = self._budget, budget
        try:
            yield self
        finally:
            self._budget = previous

    def _request(self, func, *args, **kwargs):
        """
        Call an API method with a request timeout no later than the deadline.

        Under a cancel token or deadline the call runs on the client's thread
        pool so the wait can be abandoned; the worker itself stops once its
        request timeout expires.
        """
        budget = self._budget
        kwargs["_request_timeout"] = budget.request_timeout(config.REQUEST_TIMEOUT)
        if not budget.bounded:
            return func(*args, **kwargs)

        pending = func(*args, async_req=True, **kwargs)
        while not pending.ready():
            budget.check()
            pending.wait(WAIT_SLICE)
        return pending.get()

    def get_stateful_set(self, name: str) -> Optional[client.V1StatefulSet]:
        try:
            return self._request(self.apps_v1.read_namespaced_stateful_set, name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error(f"Failed to get statefulset {self.namespace}/{name}: {e.reason}")
            raise SnapshotFetchError(f"statefulset {self.namespace}/{name}", e) from e
        except TRANSPORT_ERRORS as e:
            logger.error(f"Failed to reach the API server for statefulset {self.namespace}/{name}: {e}")
            raise SnapshotFetchError(f"statefulset {self.namespace}/{name}", e) from e

    def list_pods(self, label_selector: str) -> List[client.V1Pod]:
        try:
            pods = self._request(self.core_v1.list_namespaced_pod, self.namespace, label_selector=label_selector)
            return pods.items
        except (ApiException,) + TRANSPORT_ERRORS as e:
            logger.error(f"Failed to list pods in {self.namespace}: {getattr(e, 'reason', e)}")
            raise SnapshotFetchError(f"pods matching {label_selector!r}", e) from e

    def list_volume_claims(self, label_selector: str) -> List[client.V1PersistentVolumeClaim]:
        try:
            pvcs = self._request(
                self.core_v1.list_namespaced_persistent_volume_claim, self.namespace, label_selector=label_selector
            )
            return pvcs.items
        except (ApiException,) + TRANSPORT_ERRORS as e:
            logger.error(f"Failed to list PVCs in {self.namespace}: {getattr(e, 'reason', e)}")
            raise SnapshotFetchError(f"volume claims matching {label_selector!r}", e) from e

    def get_cluster_conditions(self, name: str) -> Optional[List[ConditionRecord]]:
        try:
            cluster = self._request(
                self.custom_objects.get_namespaced_custom_object,
                group=CRDB_GROUP,
                version=CRDB_VERSION,
                namespace=self.namespace,
                plural=CRDB_PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error(f"Failed to fetch current cluster status for {name}: {e.reason}")
            raise SnapshotFetchError(f"cluster {self.namespace}/{name}", e) from e
        except TRANSPORT_ERRORS as e:
            logger.error(f"Failed to reach the API server for cluster {self.namespace}/{name}: {e}")
            raise SnapshotFetchError(f"cluster {self.namespace}/{name}", e) from e

        conditions = (cluster.get("status") or {}).get("conditions") or []
        return [ConditionRecord.from_dict(raw) for raw in conditions]

    def log_pods(self, label_selector: str = "") -> None:
        try:
            pods = self._request(self.core_v1.list_namespaced_pod, self.namespace, label_selector=label_selector)
        except (ApiException,) + TRANSPORT_ERRORS as e:
            logger.warning(f"Could not list pods for diagnostics: {getattr(e, 'reason', e)}")
            return

        if not pods.items:
            logger.info("no pods found")

        for pod in pods.items:
            status = pod.status
            conditions = [(c.type, c.status) for c in (status.conditions or [])] if status else []
            logger.info(
                f"pod={pod.metadata.name} phase={status.phase if status else None} conditions={conditions}"
            )

    def get_pod_log(self, pod_name: str, container: Optional[str] = None) -> str:
        """Return the pod's current log, or an empty string if it cannot be read"""
        try:
            return self._request(self.core_v1.read_namespaced_pod_log, pod_name, self.namespace, container=container)
        except (ApiException,) + TRANSPORT_ERRORS as e:
            logger.warning(f"Failed to read logs of pod {pod_name}: {getattr(e, 'reason', e)}")
            return ""
