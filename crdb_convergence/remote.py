from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from urllib3.exceptions import HTTPError
from websocket import WebSocketException

from . import config
from .errors import RemoteCommandError
from .logger_config import setup_logger
from .poller import CancelToken

logger = setup_logger("remote")

# Seconds to block on the exec websocket before re-checking cancellation
READ_TIMEOUT = 1
# Failures of the exec websocket or the connection under it
TRANSPORT_ERRORS = (HTTPError, OSError, WebSocketException)


class RemoteCommandExecutor(ABC):
    """Runs a command inside a container of a cluster member."""

    @abstractmethod
    def exec(self, pod: str, container: str, argv: Sequence[str],
             cancel: Optional[CancelToken] = None) -> Tuple[str, str]:
        """Return (stdout, stderr); raise RemoteCommandError if the command cannot run"""


class KubernetesPodExecutor(RemoteCommandExecutor):
    """Executor using the pod exec subresource"""

    def __init__(self, namespace: str, api_client: Optional[client.ApiClient] = None):
        self.namespace = namespace
        self.core_v1 = client.CoreV1Api(api_client)

    def exec(self, pod: str, container: str, argv: Sequence[str],
             cancel: Optional[CancelToken] = None) -> Tuple[str, str]:
        argv = list(argv)
        try:
            resp = stream(
                self.core_v1.connect_get_namespaced_pod_exec,
                pod,
                self.namespace,
                container=container,
                command=argv,
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
                _request_timeout=config.REQUEST_TIMEOUT,
            )
        except (ApiException,) + TRANSPORT_ERRORS as e:
            logger.error(f"exec cmd={argv} on pod={pod} ns={self.namespace} failed: {getattr(e, 'reason', e)}")
            raise RemoteCommandError(pod, argv, cause=e) from e

        stdout: List[str] = []
        stderr: List[str] = []
        try:
            while resp.is_open():
                if cancel is not None and cancel.cancelled:
                    logger.info(f"exec on pod={pod} cancelled")
                    cancel.raise_if_cancelled()
                resp.update(timeout=READ_TIMEOUT)
                if resp.peek_stdout():
                    stdout.append(resp.read_stdout())
                if resp.peek_stderr():
                    stderr.append(resp.read_stderr())
            returncode = resp.returncode
        except TRANSPORT_ERRORS as e:
            logger.error(f"exec cmd={argv} on pod={pod} lost its connection: {e}")
            raise RemoteCommandError(pod, argv, stderr="".join(stderr), cause=e) from e
        finally:
            resp.close()

        out, err = "".join(stdout), "".join(stderr)
        if returncode not in (None, 0):
            logger.error(f"exec cmd={argv} on pod={pod} exited with {returncode}: {err.strip()}")
            raise RemoteCommandError(pod, argv, stderr=err or f"exit code {returncode}")
        return out, err
