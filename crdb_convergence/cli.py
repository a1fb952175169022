#!/usr/bin/env python3
"""
Wait for a CockroachDB cluster on Kubernetes to converge from a shell.

Each command polls the live cluster with the same checks the test helpers use
and exits 0 once the cluster converged, 1 if the wait failed or timed out.
"""

from typing import Callable, Optional

import typer

from . import assertions, config
from .cluster import ClusterSpec
from .drain import node_status_command
from .errors import ConvergenceError, RemoteCommandError
from .logger_config import setup_logger
from .node_status import parse_node_status
from .poller import PollSpec
from .remote import KubernetesPodExecutor, RemoteCommandExecutor
from .snapshot import KubernetesSnapshotProvider, StatusSnapshotProvider

logger = setup_logger("cli")

app = typer.Typer(help="Convergence checks for CockroachDB clusters on Kubernetes")

NAME = typer.Option(..., "--name", "-n", help="CrdbCluster name")
NAMESPACE = typer.Option("default", "--namespace", help="Namespace of the cluster")
NODES = typer.Option(3, "--nodes", help="Expected number of members")
INSECURE = typer.Option(False, "--insecure", help="Cluster runs without TLS")
TIMEOUT = typer.Option(None, "--timeout", help="Seconds to wait (default per check)")
INTERVAL = typer.Option(None, "--interval", help="Seconds between checks")


def make_provider(namespace: str) -> StatusSnapshotProvider:
    config.load_kube_client_config()
    return KubernetesSnapshotProvider(namespace)


def make_executor(namespace: str) -> RemoteCommandExecutor:
    config.load_kube_client_config()
    return KubernetesPodExecutor(namespace)


def _poll(interval: Optional[float], timeout: Optional[float], default_timeout: float) -> PollSpec:
    try:
        return PollSpec(interval or config.POLL_INTERVAL, timeout or default_timeout)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--timeout/--interval")


def _run(description: str, check: Callable[[], None]) -> None:
    try:
        check()
    except ConvergenceError as e:
        logger.error(f"{description} failed: {e}")
        raise typer.Exit(code=1)
    logger.info(f"{description} passed")


@app.command()
def ready(name: str = NAME, namespace: str = NAMESPACE, nodes: int = NODES,
          timeout: Optional[float] = TIMEOUT, interval: Optional[float] = INTERVAL):
    """Wait for all members of the cluster to be ready"""
    cluster = ClusterSpec(name, namespace, nodes)
    poll = _poll(interval, timeout, config.READY_TIMEOUT)
    provider = make_provider(namespace)
    _run("cluster ready", lambda: assertions.require_cluster_ready(provider, cluster, poll=poll))


@app.command()
def image(name: str = NAME, namespace: str = NAMESPACE, nodes: int = NODES,
          expected_image: str = typer.Option("", "--image", help="Expected image, overrides --version"),
          version: str = typer.Option("", "--version", help="CockroachDB version to look up"),
          timeout: Optional[float] = TIMEOUT, interval: Optional[float] = INTERVAL):
    """Wait for every database container to run the expected image"""
    if not expected_image and not version:
        raise typer.BadParameter("either --image or --version is required")
    cluster = ClusterSpec(name, namespace, nodes, image=expected_image, cockroach_version=version)
    poll = _poll(interval, timeout, config.IMAGE_TIMEOUT)
    provider = make_provider(namespace)
    _run("image check", lambda: assertions.require_db_containers_use_image(provider, cluster, poll=poll))


@app.command()
def decommission(name: str = NAME, namespace: str = NAMESPACE,
                 nodes: int = typer.Option(..., "--nodes", help="Member count after the scale down"),
                 insecure: bool = INSECURE,
                 timeout: Optional[float] = TIMEOUT, interval: Optional[float] = INTERVAL):
    """Wait for the removed member to finish draining"""
    cluster = ClusterSpec(name, namespace, nodes, tls_enabled=not insecure)
    poll = _poll(interval, timeout, config.DECOMMISSION_TIMEOUT)
    provider = make_provider(namespace)
    executor = make_executor(namespace)
    _run("decommission", lambda: assertions.require_decommission_node(provider, executor, cluster, nodes, poll=poll))


@app.command("pvc-resize")
def pvc_resize(name: str = NAME, namespace: str = NAMESPACE,
               quantity: str = typer.Option(..., "--quantity", help="Expected storage request, e.g. 20Gi"),
               timeout: Optional[float] = TIMEOUT, interval: Optional[float] = INTERVAL):
    """Wait for in-use volume claims to be resized"""
    cluster = ClusterSpec(name, namespace)
    poll = _poll(interval, timeout, config.RESIZE_TIMEOUT)
    provider = make_provider(namespace)
    _run("pvc resize", lambda: assertions.require_pvcs_resized(provider, cluster, quantity, poll=poll))


@app.command("pvc-count")
def pvc_count(name: str = NAME, namespace: str = NAMESPACE,
              count: int = typer.Option(..., "--count", help="Expected number of bound claims"),
              timeout: Optional[float] = TIMEOUT, interval: Optional[float] = INTERVAL):
    """Wait for the number of bound volume claims to match"""
    cluster = ClusterSpec(name, namespace)
    poll = _poll(interval, timeout, config.PVC_COUNT_TIMEOUT)
    provider = make_provider(namespace)
    _run("pvc count", lambda: assertions.require_number_of_pvcs(provider, cluster, count, poll=poll))


@app.command("node-status")
def node_status(name: str = NAME, namespace: str = NAMESPACE, insecure: bool = INSECURE):
    """Print the decommission-aware node status table"""
    cluster = ClusterSpec(name, namespace, tls_enabled=not insecure)
    executor = make_executor(namespace)
    try:
        stdout, stderr = executor.exec(cluster.pod_name(0), config.DB_CONTAINER_NAME, node_status_command(cluster))
        if stderr:
            raise RemoteCommandError(cluster.pod_name(0), node_status_command(cluster), stderr=stderr)
        records = list(parse_node_status(stdout))
    except ConvergenceError as e:
        logger.error(f"node status failed: {e}")
        raise typer.Exit(code=1)

    typer.echo(f"{'ID':>4}  {'ADDRESS':<50} {'LIVE':<6} {'REPLICAS':>8}  DECOMMISSIONING")
    for record in records:
        typer.echo(
            f"{record.id:>4}  {record.address:<50} {str(record.is_live).lower():<6} "
            f"{record.replica_count:>8}  {str(record.is_decommissioning).lower()}"
        )


@app.command()
def smoke(name: str = NAME, namespace: str = NAMESPACE, insecure: bool = INSECURE,
          downgrade_version: str = typer.Option("", "--downgrade-version",
                                                help="Also check preserve_downgrade_option")):
    """Write and read back rows to check the database functions"""
    cluster = ClusterSpec(name, namespace, tls_enabled=not insecure)
    executor = make_executor(namespace)
    if insecure:
        _run("database smoke test", lambda: assertions.require_database_to_function_insecure(executor, cluster))
    else:
        _run("database smoke test", lambda: assertions.require_database_to_function(executor, cluster))
    if downgrade_version:
        _run("downgrade option",
             lambda: assertions.require_downgrade_option_set(executor, cluster, downgrade_version))


def main():
    app()


if __name__ == "__main__":
    main()
