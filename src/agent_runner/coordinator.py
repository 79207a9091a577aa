from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from agent_runner.backends import Backend, Completed, LaunchFailed, launch
from agent_runner.correlator import (
    DEFAULT_CORRELATION_TIMEOUT_SECONDS,
    CorrelationOutcome,
    LogStreamCorrelator,
    LogSubscription,
)
from agent_runner.credentials import CredentialError, CredentialResolver
from agent_runner.task import TaskDescriptor


DEFAULT_LOG_CONNECT_GRACE_SECONDS = 1.5

LOGGER = logging.getLogger("agent_runner")
LOGGER.addHandler(logging.NullHandler())


class RunState(str, Enum):
    IDLE = "idle"
    CREDENTIAL_RESOLVED = "credential_resolved"
    LAUNCHED = "launched"
    COMPLETED = "completed"
    AWAITING_CORRELATION = "awaiting_correlation"
    DONE = "done"


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    UNKNOWN = "unknown"
    CANCELLED = "cancelled"
    TRANSPORT_ERROR = "transport_error"
    CONFIG_ERROR = "config_error"
    LAUNCH_FAILED = "launch_failed"


@dataclass(frozen=True)
class RunResult:
    backend_name: str
    outcome: RunOutcome
    exit_code: int | None
    elapsed_seconds: float
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.COMPLETED and self.exit_code == 0


_CORRELATION_OUTCOMES = {
    CorrelationOutcome.TIMED_OUT: RunOutcome.UNKNOWN,
    CorrelationOutcome.CANCELLED: RunOutcome.CANCELLED,
    CorrelationOutcome.TRANSPORT_ERROR: RunOutcome.TRANSPORT_ERROR,
}


class RunCoordinator:
    """Drive one run: resolve credential, launch, and correlate when needed.

    Elapsed time is measured from the start of the launch call. For backends
    that return before the workload finishes it stops at the arrival of the
    exit marker, not when correlation returns.
    """

    def __init__(
        self,
        resolver: CredentialResolver,
        *,
        correlator: LogStreamCorrelator | None = None,
        correlation_timeout: float = DEFAULT_CORRELATION_TIMEOUT_SECONDS,
        log_connect_grace_seconds: float = DEFAULT_LOG_CONNECT_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.resolver = resolver
        self.correlator = correlator or LogStreamCorrelator()
        self.correlation_timeout = correlation_timeout
        self.log_connect_grace_seconds = log_connect_grace_seconds
        self.clock = clock
        self.sleep = sleep
        self.state = RunState.IDLE
        self.transitions: list[RunState] = []

    def _transition(self, state: RunState) -> None:
        LOGGER.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    def _finish(
        self,
        backend: Backend,
        outcome: RunOutcome,
        exit_code: int | None,
        elapsed_seconds: float,
        detail: str = "",
    ) -> RunResult:
        self._transition(RunState.DONE)
        result = RunResult(
            backend_name=backend.name,
            outcome=outcome,
            exit_code=exit_code if outcome is RunOutcome.COMPLETED else None,
            elapsed_seconds=round(max(0.0, elapsed_seconds), 3),
            detail=detail,
        )
        LOGGER.info(
            "Run finished backend=%s outcome=%s exit_code=%s elapsed=%.1fs",
            result.backend_name,
            result.outcome.value,
            result.exit_code,
            result.elapsed_seconds,
        )
        return result

    def run(
        self,
        backend: Backend,
        task: TaskDescriptor,
        cancel_event: threading.Event | None = None,
    ) -> RunResult:
        self.state = RunState.IDLE
        self.transitions = [RunState.IDLE]

        try:
            credential = self.resolver.resolve()
        except CredentialError as exc:
            return self._finish(backend, RunOutcome.CONFIG_ERROR, None, 0.0, str(exc))
        self._transition(RunState.CREDENTIAL_RESOLVED)

        subscription: LogSubscription | None = None
        started_at: float | None = None

        def elapsed() -> float:
            return 0.0 if started_at is None else self.clock() - started_at

        try:
            # Subscribe before launching so an early exit marker is buffered, not lost.
            subscription = backend.open_log_subscription()
            if subscription is not None:
                # Marker arrival times are compared with started_at, so both use this clock.
                subscription.clock = self.clock
                subscription.start()
                if self.log_connect_grace_seconds > 0:
                    self.sleep(self.log_connect_grace_seconds)

            if cancel_event is not None and cancel_event.is_set():
                return self._finish(backend, RunOutcome.CANCELLED, None, 0.0, "cancelled before launch")

            started_at = self.clock()
            try:
                result = launch(backend, credential, task, log_handle=subscription)
            except LaunchFailed as exc:
                return self._finish(backend, RunOutcome.LAUNCH_FAILED, None, elapsed(), exc.detail)
            self._transition(RunState.LAUNCHED)

            if isinstance(result, Completed):
                self._transition(RunState.COMPLETED)
                return self._finish(backend, RunOutcome.COMPLETED, result.exit_code, elapsed())

            self._transition(RunState.AWAITING_CORRELATION)
            handle = result.log_handle or subscription
            if handle is None:
                return self._finish(
                    backend,
                    RunOutcome.TRANSPORT_ERROR,
                    None,
                    elapsed(),
                    f"instance {result.instance_id} started without a log channel",
                )
            correlation = self.correlator.wait_for_exit(
                result.instance_id,
                handle,
                timeout=self.correlation_timeout,
                cancel_event=cancel_event,
            )
            if correlation.outcome is CorrelationOutcome.EXITED:
                matched_at = correlation.matched_at
                duration = elapsed() if matched_at is None else matched_at - started_at
                return self._finish(backend, RunOutcome.COMPLETED, result.exit_code, duration)
            return self._finish(
                backend,
                _CORRELATION_OUTCOMES[correlation.outcome],
                None,
                elapsed(),
                correlation.detail,
            )
        except KeyboardInterrupt:
            return self._finish(backend, RunOutcome.CANCELLED, None, elapsed(), "interrupted")
        finally:
            if subscription is not None:
                subscription.close()
