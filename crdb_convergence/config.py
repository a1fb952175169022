import os

from dotenv import load_dotenv
from kubernetes import config as kube_config

load_dotenv()

# Poll cadence and per-check deadlines, in seconds
POLL_INTERVAL = float(os.getenv("CRDB_POLL_INTERVAL", "10"))
READY_TIMEOUT = float(os.getenv("CRDB_READY_TIMEOUT", "60"))
IMAGE_TIMEOUT = float(os.getenv("CRDB_IMAGE_TIMEOUT", "400"))
RESIZE_TIMEOUT = float(os.getenv("CRDB_RESIZE_TIMEOUT", "500"))
PVC_COUNT_TIMEOUT = float(os.getenv("CRDB_PVC_COUNT_TIMEOUT", "500"))
DECOMMISSION_TIMEOUT = float(os.getenv("CRDB_DECOMMISSION_TIMEOUT", "700"))
CONDITION_TIMEOUT = float(os.getenv("CRDB_CONDITION_TIMEOUT", "60"))
# Upper bound on a single API request
REQUEST_TIMEOUT = float(os.getenv("CRDB_REQUEST_TIMEOUT", "30"))

DB_CONTAINER_NAME = os.getenv("CRDB_DB_CONTAINER", "db")
COCKROACH_BINARY = os.getenv("CRDB_BINARY", "/cockroach/cockroach")
CERTS_DIR = os.getenv("CRDB_CERTS_DIR", "/cockroach/cockroach-certs")

RELATED_IMAGE_PREFIX = "RELATED_IMAGE_COCKROACH_"


def related_image_env_name(version: str) -> str:
    """Environment variable holding the image for a CockroachDB version."""
    return f"{RELATED_IMAGE_PREFIX}{version.replace('.', '_')}"


def lookup_related_image(version: str) -> str:
    return os.getenv(related_image_env_name(version), "")


def load_kube_client_config() -> None:
    """Load in-cluster config when running in a pod, kubeconfig otherwise"""
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        kube_config.load_kube_config()
