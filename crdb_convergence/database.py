"""
SQL access to the cluster through the cockroach shell of a member pod.

Statements run as `cockroach sql --execute` inside the database container, so
no port-forward or client certificates are needed on the test host.
"""

import csv
import io
from dataclasses import dataclass
from typing import Dict, List, Optional

from . import config
from .cluster import ClusterSpec
from .errors import RemoteCommandError, SqlError
from .logger_config import setup_logger
from .poller import CancelToken
from .remote import RemoteCommandExecutor

logger = setup_logger("database")


@dataclass(frozen=True)
class ConnectionSpec:
    pod: str
    database: str = "system"
    use_ssl: bool = True
    port: int = 26257
    container: str = config.DB_CONTAINER_NAME

    @classmethod
    def for_cluster(cls, cluster: ClusterSpec, database: str = "system",
                    use_ssl: Optional[bool] = None) -> "ConnectionSpec":
        return cls(
            pod=cluster.pod_name(0),
            database=database,
            use_ssl=cluster.tls_enabled if use_ssl is None else use_ssl,
            port=cluster.sql_port,
        )

    def secure_mode(self) -> str:
        if self.use_ssl:
            return f"--certs-dir={config.CERTS_DIR}"
        return "--insecure"


class SqlConnection:
    """A connection-shaped wrapper around one-shot `cockroach sql` invocations"""

    def __init__(self, executor: RemoteCommandExecutor, spec: ConnectionSpec,
                 cancel: Optional[CancelToken] = None):
        self.executor = executor
        self.spec = spec
        self.cancel = cancel
        self.closed = False

    def argv(self, statement: str) -> List[str]:
        return [
            config.COCKROACH_BINARY,
            "sql",
            f"--execute={statement}",
            "--format=csv",
            f"--database={self.spec.database}",
            f"--host=localhost:{self.spec.port}",
            self.spec.secure_mode(),
        ]

    def _run(self, statement: str) -> str:
        if self.closed:
            raise SqlError("connection is closed")
        try:
            stdout, stderr = self.executor.exec(
                self.spec.pod, self.spec.container, self.argv(statement), cancel=self.cancel
            )
        except RemoteCommandError as e:
            logger.error(f"Statement failed on {self.spec.pod}: {statement}")
            raise SqlError(f"{statement!r} failed: {e.stderr.strip() or e}") from e
        if stderr.strip():
            logger.warning(f"cockroach sql wrote to stderr: {stderr.strip()}")
        return stdout

    def exec(self, statement: str) -> None:
        self._run(statement)

    def query(self, statement: str) -> List[Dict[str, str]]:
        """Run a statement and return its rows keyed by column name"""
        return list(csv.DictReader(io.StringIO(self._run(statement))))

    def query_value(self, statement: str) -> str:
        """Return the first column of the first row"""
        rows = list(csv.reader(io.StringIO(self._run(statement))))
        if len(rows) < 2:
            raise SqlError(f"{statement!r} returned no rows")
        # a lone empty value is printed as a blank line
        return rows[1][0] if rows[1] else ""

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "SqlConnection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def open_connection(executor: RemoteCommandExecutor, spec: ConnectionSpec,
                    cancel: Optional[CancelToken] = None) -> SqlConnection:
    """Open a connection, checking the database answers before returning it"""
    conn = SqlConnection(executor, spec, cancel=cancel)
    conn.query_value("SELECT 1")
    logger.info(f"Connected to database {spec.database} via pod {spec.pod}")
    return conn
