from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError
from websocket import WebSocketConnectionClosedException

from crdb_convergence import config, remote
from crdb_convergence.errors import PollCancelledError, RemoteCommandError
from crdb_convergence.poller import CancelToken
from crdb_convergence.remote import KubernetesPodExecutor


class FakeWsClient:
    """Serves stdout/stderr chunks, one pair per update(), then closes"""

    def __init__(self, chunks, returncode=0, on_update=None):
        self.chunks = list(chunks)
        self.returncode = returncode
        self.on_update = on_update
        self.current = ("", "")
        self.closed = False

    def is_open(self):
        return bool(self.chunks) and not self.closed

    def update(self, timeout=0):
        if self.on_update is not None:
            self.on_update()
        if isinstance(self.chunks[0], Exception):
            raise self.chunks.pop(0)
        self.current = self.chunks.pop(0)

    def peek_stdout(self):
        return bool(self.current[0])

    def read_stdout(self):
        return self.current[0]

    def peek_stderr(self):
        return bool(self.current[1])

    def read_stderr(self):
        return self.current[1]

    def close(self):
        self.closed = True


@pytest.fixture
def executor():
    return KubernetesPodExecutor("crdb-test", api_client=MagicMock())


def patch_stream(monkeypatch, result):
    calls = []

    def fake_stream(func, *args, **kwargs):
        calls.append((args, kwargs))
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(remote, "stream", fake_stream)
    return calls


def test_collects_stdout_and_stderr(monkeypatch, executor):
    ws = FakeWsClient([("id,address\n", ""), ("1,a\n", "warning\n")])
    calls = patch_stream(monkeypatch, ws)

    out, err = executor.exec("crdb-0", "db", ["cockroach", "node", "status"])

    assert out == "id,address\n1,a\n"
    assert err == "warning\n"
    assert ws.closed
    args, kwargs = calls[0]
    assert args == ("crdb-0", "crdb-test")
    assert kwargs["container"] == "db"
    assert kwargs["command"] == ["cockroach", "node", "status"]
    assert kwargs["_preload_content"] is False
    assert kwargs["_request_timeout"] == config.REQUEST_TIMEOUT


def test_nonzero_exit_raises(monkeypatch, executor):
    ws = FakeWsClient([("", "ERROR: connection refused\n")], returncode=1)
    patch_stream(monkeypatch, ws)

    with pytest.raises(RemoteCommandError, match="connection refused") as excinfo:
        executor.exec("crdb-0", "db", ["cockroach", "sql"])

    assert excinfo.value.pod == "crdb-0"
    assert ws.closed


def test_exec_api_failure_raises(monkeypatch, executor):
    patch_stream(monkeypatch, ApiException(status=404, reason="pod not found"))

    with pytest.raises(RemoteCommandError) as excinfo:
        executor.exec("crdb-9", "db", ["true"])

    assert isinstance(excinfo.value.cause, ApiException)


def test_cancel_stops_reading_and_closes(monkeypatch, executor):
    token = CancelToken()
    ws = FakeWsClient([("a", ""), ("b", ""), ("c", "")], on_update=token.cancel)
    patch_stream(monkeypatch, ws)

    with pytest.raises(PollCancelledError):
        executor.exec("crdb-0", "db", ["sleep", "60"], cancel=token)

    assert ws.closed
    assert len(ws.chunks) == 2


@pytest.mark.parametrize("error", [
    MaxRetryError(None, "/api/v1/namespaces/crdb-test/pods/crdb-0/exec", "connection refused"),
    ConnectionRefusedError(111, "Connection refused"),
])
def test_unreachable_api_server_raises(monkeypatch, executor, error):
    patch_stream(monkeypatch, error)

    with pytest.raises(RemoteCommandError) as excinfo:
        executor.exec("crdb-0", "db", ["true"])

    assert excinfo.value.cause is error


def test_connection_lost_while_reading_raises(monkeypatch, executor):
    ws = FakeWsClient([("id,address\n", ""), WebSocketConnectionClosedException("socket is already closed.")])
    patch_stream(monkeypatch, ws)

    with pytest.raises(RemoteCommandError) as excinfo:
        executor.exec("crdb-0", "db", ["cockroach", "node", "status"])

    assert isinstance(excinfo.value.cause, WebSocketConnectionClosedException)
    assert ws.closed
