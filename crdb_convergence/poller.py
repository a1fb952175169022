"""
Bounded polling of convergence checks.

A tick is any callable returning an Outcome. The poller runs the first tick
immediately, sleeps a fixed interval between ticks, and stops as soon as a
tick converges, reports a fatal error, the caller cancels, or the deadline
(measured from the first tick) passes.
"""

import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, stop_after_delay, wait_fixed

from .errors import ConvergenceError, PollAbortedError, PollCancelledError, PollTimeoutError, RequestDeadlineError
from .logger_config import setup_logger

logger = setup_logger("poller")


class OutcomeState(Enum):
    CONVERGED = "converged"
    PENDING = "pending"
    FATAL = "fatal"


@dataclass(frozen=True)
class Outcome:
    """Result of evaluating a predicate against one snapshot"""
    state: OutcomeState
    reason: str = ""
    error: Optional[BaseException] = None

    @classmethod
    def converged(cls, reason: str = "") -> "Outcome":
        return cls(OutcomeState.CONVERGED, reason)

    @classmethod
    def pending(cls, reason: str = "") -> "Outcome":
        return cls(OutcomeState.PENDING, reason)

    @classmethod
    def fatal(cls, error: BaseException) -> "Outcome":
        return cls(OutcomeState.FATAL, str(error), error)

    @property
    def is_converged(self) -> bool:
        return self.state is OutcomeState.CONVERGED

    @property
    def is_pending(self) -> bool:
        return self.state is OutcomeState.PENDING

    @property
    def is_fatal(self) -> bool:
        return self.state is OutcomeState.FATAL


@dataclass(frozen=True)
class PollSpec:
    """Interval between ticks and overall deadline, in seconds"""
    interval: float
    timeout: float

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError(f"poll interval must be positive, got {self.interval}")
        if self.timeout < self.interval:
            raise ValueError(f"poll timeout {self.timeout} is shorter than interval {self.interval}")

    @property
    def max_ticks(self) -> int:
        # round() absorbs float noise such as 0.05 / 0.01 == 5.000000000000001
        return math.ceil(round(self.timeout / self.interval, 9)) + 1


class CancelToken:
    """Caller-side handle for aborting a poll and the blocking calls inside it."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return early with True once cancelled"""
        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PollCancelledError("convergence check cancelled")


@dataclass(frozen=True)
class RequestBudget:
    """Bounds for the blocking requests made during one tick"""
    deadline: Optional[float] = None  # time.monotonic() value
    cancel: Optional[CancelToken] = None

    @classmethod
    def for_poll(cls, started: float, spec: PollSpec, cancel: Optional[CancelToken] = None) -> "RequestBudget":
        return cls(started + spec.timeout, cancel)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise RequestDeadlineError("request abandoned, poll deadline passed")

    def request_timeout(self, cap: float) -> float:
        """Seconds a request may take: the cap, or less if the deadline is closer"""
        self.check()
        remaining = self.remaining()
        return cap if remaining is None else min(remaining, cap)

    @property
    def bounded(self) -> bool:
        return self.deadline is not None or self.cancel is not None


class ConvergencePoller:
    """Drives a tick function to convergence, abort, cancellation or timeout."""

    def __init__(self, sleep: Optional[Callable[[float], None]] = None):
        self._sleep = sleep

    def run(self, spec: PollSpec, tick: Callable[[], Outcome], description: str = "",
            cancel: Optional[CancelToken] = None) -> None:
        label = description or getattr(tick, "__name__", "convergence check")
        state = {"ticks": 0, "last": None}

        def guarded_tick() -> Outcome:
            if cancel is not None:
                cancel.raise_if_cancelled()
            state["ticks"] += 1
            try:
                outcome = tick()
            except PollCancelledError:
                raise
            except ConvergenceError as e:
                outcome = Outcome.fatal(e)
            state["last"] = outcome
            logger.debug(f"{label}: tick {state['ticks']} -> {outcome.state.value} {outcome.reason}".rstrip())
            return outcome

        stop = stop_after_delay(spec.timeout) | stop_after_attempt(spec.max_ticks)
        retrying = Retrying(
            sleep=self._sleeper(cancel),
            stop=stop,
            wait=wait_fixed(spec.interval),
            retry=retry_if_result(lambda outcome: outcome.is_pending),
            before_sleep=lambda retry_state: self._log_pending(label, state["last"]),
        )

        try:
            outcome = retrying(guarded_tick)
        except RetryError:
            if cancel is not None:
                cancel.raise_if_cancelled()
            last_reason = state["last"].reason if state["last"] else ""
            logger.warning(f"{label}: not converged within {spec.timeout}s after {state['ticks']} checks")
            raise PollTimeoutError(spec.timeout, state["ticks"], last_reason) from None

        if outcome.is_fatal:
            logger.error(f"{label}: aborted: {outcome.error}")
            raise PollAbortedError(outcome.error) from outcome.error

        logger.info(f"{label}: converged after {state['ticks']} checks")

    def _sleeper(self, cancel: Optional[CancelToken]) -> Callable[[float], None]:
        if self._sleep is not None:
            return self._sleep
        if cancel is not None:
            return cancel.wait
        return time.sleep

    @staticmethod
    def _log_pending(label: str, outcome: Optional[Outcome]) -> None:
        if outcome is not None and outcome.reason:
            logger.info(f"{label}: waiting, {outcome.reason}")


def wait_for(spec: PollSpec, tick: Callable[[], Outcome], description: str = "",
             cancel: Optional[CancelToken] = None) -> None:
    """Run *tick* under a default poller"""
    ConvergencePoller().run(spec, tick, description=description, cancel=cancel)
