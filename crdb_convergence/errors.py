from typing import Optional


class ConvergenceError(AssertionError):
    """Base class for every failure raised by a convergence check."""


class SnapshotFetchError(ConvergenceError):
    """The platform API failed while fetching a snapshot."""

    def __init__(self, what: str, cause: Optional[BaseException] = None):
        self.what = what
        self.cause = cause
        message = f"failed to fetch {what}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class RequestDeadlineError(ConvergenceError):
    """A request was abandoned because the poll deadline passed."""


class NodeStatusParseError(ConvergenceError):
    """Node status output did not have the expected shape."""


class UnexpectedStateError(ConvergenceError):
    """The cluster reported a state the check never expects to see."""


class RemoteCommandError(ConvergenceError):
    """A command run inside a cluster member failed."""

    def __init__(self, pod: str, argv, stderr: str = "", cause: Optional[BaseException] = None):
        self.pod = pod
        self.argv = list(argv)
        self.stderr = stderr
        self.cause = cause
        detail = stderr.strip() or (str(cause) if cause else "unknown error")
        super().__init__(f"command {' '.join(self.argv)!r} on pod {pod} failed: {detail}")


class ImageResolutionError(ConvergenceError):
    """No explicit image and no image mapping for the requested version."""


class SqlError(ConvergenceError):
    """A SQL statement could not be executed."""


class PollAbortedError(ConvergenceError):
    """A tick reported a fatal error; the poll stopped without retrying."""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"convergence check aborted: {cause}")


class PollTimeoutError(ConvergenceError):
    """The deadline passed before the predicate converged."""

    def __init__(self, timeout: float, ticks: int, last_reason: str = ""):
        self.timeout = timeout
        self.ticks = ticks
        self.last_reason = last_reason
        message = f"timed out after {timeout}s ({ticks} checks)"
        if last_reason:
            message = f"{message}; last status: {last_reason}"
        super().__init__(message)


class PollCancelledError(ConvergenceError):
    """The caller cancelled the poll."""
