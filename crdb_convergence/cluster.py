from dataclasses import dataclass, field
from typing import Dict

from . import config

APP_NAME = "cockroachdb"
COMPONENT = "database"


@dataclass(frozen=True)
class ClusterSpec:
    """The CockroachDB cluster a test expects to see running"""
    name: str
    namespace: str
    nodes: int = 3
    image: str = ""
    cockroach_version: str = ""
    tls_enabled: bool = True
    sql_port: int = 26257
    additional_labels: Dict[str, str] = field(default_factory=dict)

    @property
    def stateful_set_name(self) -> str:
        return self.name

    def selector(self) -> Dict[str, str]:
        """Labels shared by every member pod and volume claim"""
        labels = dict(self.additional_labels)
        labels.update({
            "app.kubernetes.io/name": APP_NAME,
            "app.kubernetes.io/instance": self.name,
            "app.kubernetes.io/component": COMPONENT,
        })
        return labels

    def label_selector(self) -> str:
        return ",".join(f"{key}={value}" for key, value in sorted(self.selector().items()))

    def secure_mode(self) -> str:
        """Flag telling the cockroach CLI how to reach the cluster"""
        if self.tls_enabled:
            return f"--certs-dir={config.CERTS_DIR}"
        return "--insecure"

    def pod_name(self, ordinal: int) -> str:
        return f"{self.stateful_set_name}-{ordinal}"
