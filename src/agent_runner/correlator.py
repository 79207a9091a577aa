from __future__ import annotations

import logging
import queue
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from threading import Thread
from typing import Callable, Iterable

from agent_runner.processes import redact_command, stop_process


DEFAULT_CORRELATION_TIMEOUT_SECONDS = 5 * 60.0
DEFAULT_FLUSH_GRACE_SECONDS = 2.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.1
INSTANCE_SCOPE_RE = re.compile(r"runner\[([^\]\s]+)\]")
# Fly logs "machine restart policy set to 'no', not restarting" when a --rm machine exits.
TERMINATION_PHRASES = ("machine restart policy",)

LOGGER = logging.getLogger("agent_runner")
LOGGER.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class LogEvent:
    text: str
    arrived_at: float


class LogSubscription:
    """Single-pass, append-only stream of log events fed by a reader thread.

    Events published before anyone reads are buffered, so a subscription
    started ahead of a launch keeps lines emitted while the launch call is
    still running. Once the stream ends (or fails) next_event() returns None;
    history is not replayed, open a new subscription instead.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self.error = ""
        self._queue: queue.Queue[LogEvent | None] = queue.Queue()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: Thread | None = None
        self._closed = False
        self._ended = False

    @property
    def started(self) -> bool:
        return self._thread is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None or self._closed:
                return
            self._thread = Thread(target=self._reader_loop, daemon=True)
            self._thread.start()

    def next_event(self, timeout: float) -> LogEvent | None:
        """Return the next event, None at end of stream, or raise queue.Empty."""
        if self._ended:
            return None
        event = self._queue.get(timeout=max(0.0, timeout))
        if event is None:
            self._ended = True
        return event

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._stop.set()
            thread = self._thread
        self._release()
        if thread is not None:
            thread.join(timeout=2)

    def __enter__(self) -> "LogSubscription":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _reader_loop(self) -> None:
        try:
            self._produce()
        except OSError as exc:
            self.error = f"log stream failed: {exc}"
            LOGGER.warning("Log subscription failed: %s", exc)
        finally:
            self._queue.put(None)

    def _publish(self, text: str) -> None:
        if self._stop.is_set():
            return
        self._queue.put(LogEvent(text=text, arrived_at=self.clock()))

    def _produce(self) -> None:
        raise NotImplementedError

    def _release(self) -> None:
        pass


class ProcessLogSubscription(LogSubscription):
    """Log subscription backed by a long-running CLI such as `fly logs`."""

    def __init__(self, cmd: Iterable[str], *, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(clock=clock)
        self.cmd = [str(part) for part in cmd]
        self._process: subprocess.Popen[str] | None = None

    def _produce(self) -> None:
        LOGGER.debug("$ %s", redact_command(self.cmd))
        process = subprocess.Popen(
            self.cmd,
            text=True,
            encoding="utf-8",
            errors="replace",
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            bufsize=1,
            start_new_session=True,
        )
        with self._lock:
            self._process = process
            closed_early = self._closed
        if closed_early:
            stop_process(process)
            return

        stdout = process.stdout
        if stdout is not None:
            for line in iter(stdout.readline, ""):
                self._publish(line.rstrip("\r\n"))
            stdout.close()
        exit_code = process.wait()
        if not self.stopping:
            self.error = f"log stream ended unexpectedly (exit code {exit_code})"

    def _release(self) -> None:
        with self._lock:
            process = self._process
        if process is not None:
            stop_process(process)


class CorrelationOutcome(str, Enum):
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class CorrelationResult:
    outcome: CorrelationOutcome
    matched_at: float | None = None
    detail: str = ""

    @property
    def observed(self) -> bool:
        return self.outcome is CorrelationOutcome.EXITED


def references_instance(line: str, instance_id: str) -> bool:
    return any(match.group(1) == instance_id for match in INSTANCE_SCOPE_RE.finditer(line))


def is_termination_line(line: str, instance_id: str, phrases: Iterable[str] = TERMINATION_PHRASES) -> bool:
    # One joint predicate: a termination phrase logged for another instance must not count.
    return references_instance(line, instance_id) and any(phrase in line for phrase in phrases)


class LogStreamCorrelator:
    """Watch a shared log stream for one instance's termination marker.

    Matching is textual (instance scope plus a literal phrase) because the
    log transport offers nothing structured; a reworded platform message
    will surface as a timeout, never as a false success.
    """

    def __init__(
        self,
        *,
        termination_phrases: Iterable[str] = TERMINATION_PHRASES,
        flush_grace_seconds: float = DEFAULT_FLUSH_GRACE_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_line: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.termination_phrases = tuple(termination_phrases)
        self.flush_grace_seconds = flush_grace_seconds
        self.poll_interval = poll_interval
        self.on_line = on_line
        self.clock = clock

    def await_completion(
        self,
        instance_id: str,
        subscription: LogSubscription,
        timeout: float = DEFAULT_CORRELATION_TIMEOUT_SECONDS,
        cancel_event: threading.Event | None = None,
    ) -> bool:
        return self.wait_for_exit(instance_id, subscription, timeout, cancel_event).observed

    def wait_for_exit(
        self,
        instance_id: str,
        subscription: LogSubscription,
        timeout: float = DEFAULT_CORRELATION_TIMEOUT_SECONDS,
        cancel_event: threading.Event | None = None,
    ) -> CorrelationResult:
        subscription.start()
        deadline = self.clock() + max(0.0, timeout)
        LOGGER.debug("Waiting up to %.1fs for instance=%s to exit.", timeout, instance_id)
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    return CorrelationResult(CorrelationOutcome.CANCELLED, detail="cancelled by caller")
                remaining = deadline - self.clock()
                if remaining <= 0:
                    LOGGER.info("No exit signal for instance=%s within %.1fs.", instance_id, timeout)
                    return CorrelationResult(CorrelationOutcome.TIMED_OUT, detail=f"no exit signal within {timeout:.1f}s")
                try:
                    event = subscription.next_event(timeout=min(self.poll_interval, remaining))
                except queue.Empty:
                    continue
                if event is None:
                    detail = subscription.error or "log stream ended"
                    return CorrelationResult(CorrelationOutcome.TRANSPORT_ERROR, detail=detail)
                self._emit(event)
                if is_termination_line(event.text, instance_id, self.termination_phrases):
                    LOGGER.debug("Exit signal observed for instance=%s.", instance_id)
                    self._flush(subscription, cancel_event)
                    return CorrelationResult(CorrelationOutcome.EXITED, matched_at=event.arrived_at)
        finally:
            subscription.close()

    def _flush(self, subscription: LogSubscription, cancel_event: threading.Event | None) -> None:
        deadline = self.clock() + max(0.0, self.flush_grace_seconds)
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return
            remaining = deadline - self.clock()
            if remaining <= 0:
                return
            try:
                event = subscription.next_event(timeout=min(self.poll_interval, remaining))
            except queue.Empty:
                continue
            if event is None:
                return
            self._emit(event)

    def _emit(self, event: LogEvent) -> None:
        if self.on_line is not None:
            self.on_line(event.text)
