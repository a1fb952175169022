"""Builders for Kubernetes objects and fakes for the cluster collaborators."""

import threading
from multiprocessing.pool import ThreadPool
from typing import Dict, List, Optional, Sequence

from kubernetes import client

from crdb_convergence.remote import RemoteCommandExecutor
from crdb_convergence.snapshot import StatusSnapshotProvider

NODE_STATUS_HEADER = (
    "id,address,sql_address,build,started_at,updated_at,locality,is_available,"
    "is_live,gossiped_replicas,is_decommissioning,membership,is_draining"
)


def node_status_row(node_id, address, is_live="true", replicas="0", is_decommissioning="false"):
    return (
        f"{node_id},{address},{address},v21.1.0,2021-05-01 10:00:00,2021-05-01 10:05:00,,"
        f"true,{is_live},{replicas},{is_decommissioning},active,false"
    )


def node_status_table(*rows: str) -> str:
    return "\n".join((NODE_STATUS_HEADER,) + rows) + "\n"


def make_stateful_set(name="crdb", replicas=3, ready=3, spec_replicas=None,
                      templates: Sequence[str] = ("datadir",), match_labels: Optional[Dict[str, str]] = None):
    labels = match_labels or {"app.kubernetes.io/instance": name}
    return client.V1StatefulSet(
        metadata=client.V1ObjectMeta(name=name, namespace="default"),
        spec=client.V1StatefulSetSpec(
            replicas=replicas if spec_replicas is None else spec_replicas,
            selector=client.V1LabelSelector(match_labels=labels),
            service_name=name,
            template=client.V1PodTemplateSpec(),
            volume_claim_templates=[
                client.V1PersistentVolumeClaim(metadata=client.V1ObjectMeta(name=template))
                for template in templates
            ],
        ),
        status=client.V1StatefulSetStatus(replicas=replicas, ready_replicas=ready),
    )


def make_pod(name, image, container="db"):
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1PodSpec(containers=[client.V1Container(name=container, image=image)]),
        status=client.V1PodStatus(
            phase="Running",
            conditions=[client.V1PodCondition(type="Ready", status="True")],
        ),
    )


def make_pvc(name, storage="10Gi", phase="Bound"):
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1PersistentVolumeClaimSpec(
            resources=client.V1VolumeResourceRequirements(requests={"storage": storage}),
        ),
        status=client.V1PersistentVolumeClaimStatus(phase=phase),
    )


class FakeProvider(StatusSnapshotProvider):
    """Serves canned snapshots; a list of stateful sets is replayed one per call"""

    def __init__(self, stateful_sets=None, pods=None, claims=None, conditions=None, pod_logs=None):
        self.stateful_sets = list(stateful_sets) if stateful_sets is not None else [None]
        self.pods = pods or []
        self.claims = claims or []
        self.conditions = conditions
        self.pod_logs = pod_logs or {}
        self.fail_with: Optional[Exception] = None
        self.calls: List[tuple] = []
        self.logged_selectors: List[str] = []

    def _record(self, *call):
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    def get_stateful_set(self, name):
        self._record("get_stateful_set", name)
        if len(self.stateful_sets) > 1:
            return self.stateful_sets.pop(0)
        return self.stateful_sets[0]

    def list_pods(self, label_selector):
        self._record("list_pods", label_selector)
        return self.pods

    def list_volume_claims(self, label_selector):
        self._record("list_volume_claims", label_selector)
        return self.claims

    def get_cluster_conditions(self, name):
        self._record("get_cluster_conditions", name)
        return self.conditions

    def log_pods(self, label_selector=""):
        self.logged_selectors.append(label_selector)

    def get_pod_log(self, pod_name, container=None):
        self.calls.append(("get_pod_log", pod_name))
        return self.pod_logs.get(pod_name, "")


class FakeExecutor(RemoteCommandExecutor):
    """Replays scripted (stdout, stderr) pairs or exceptions, repeating the last one"""

    def __init__(self, *responses):
        self.responses = list(responses) or [("", "")]
        self.calls: List[tuple] = []

    def exec(self, pod, container, argv, cancel=None):
        self.calls.append((pod, container, list(argv)))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class RecordingSleep:
    def __init__(self, on_sleep=None):
        self.sleeps: List[float] = []
        self.on_sleep = on_sleep

    def __call__(self, seconds):
        self.sleeps.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep()



class HangingCall:
    """An API method whose response arrives only once released, like a stuck request"""

    def __init__(self, result=None):
        self.result = result
        self.release = threading.Event()
        self.pool = ThreadPool(1)
        self.calls: List[dict] = []

    def __call__(self, *args, **kwargs):
        self.calls.append(kwargs)
        if kwargs.get("async_req"):
            return self.pool.apply_async(self._respond)
        return self._respond()

    def _respond(self):
        self.release.wait(10)
        return self.result

    def close(self):
        self.release.set()
        self.pool.close()
        self.pool.join()
