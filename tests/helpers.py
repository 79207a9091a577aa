from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Iterable

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from agent_runner.backends import Backend, LaunchFailed, LaunchResult
from agent_runner.correlator import LogSubscription
from agent_runner.credentials import Credential, CredentialSource
from agent_runner.task import TaskDescriptor


class ListLogSubscription(LogSubscription):
    """Emits scripted (delay, line) pairs, then stays open until closed."""

    def __init__(self, lines: Iterable[str | tuple[float, str]] = (), *, hold_open: bool = True, error: str = "") -> None:
        super().__init__()
        self.script = [item if isinstance(item, tuple) else (0.0, item) for item in lines]
        self.hold_open = hold_open
        self.scripted_error = error
        self.release_count = 0

    def _produce(self) -> None:
        for delay, line in self.script:
            if delay:
                time.sleep(delay)
            if self.stopping:
                return
            self._publish(line)
        if not self.hold_open:
            self.error = self.scripted_error
            return
        while not self.stopping:
            time.sleep(0.01)

    def _release(self) -> None:
        self.release_count += 1


class StaticSource:
    def __init__(self, credential: Credential | None, source: CredentialSource = CredentialSource.FILE_STORE) -> None:
        self.credential = credential
        self.source = source
        self.reads = 0

    def read(self) -> Credential | None:
        self.reads += 1
        return self.credential


class FakeBackend(Backend):
    def __init__(
        self,
        result: LaunchResult | BaseException | None = None,
        *,
        subscription: LogSubscription | None = None,
        launch_delay: float = 0.0,
        backend_name: str = "fake",
    ) -> None:
        self.result = result
        self.subscription = subscription
        self.launch_delay = launch_delay
        self.backend_name = backend_name
        self.calls: list[tuple[Credential, TaskDescriptor, LogSubscription | None]] = []
        self.subscription_started_at_launch: bool | None = None

    @property
    def name(self) -> str:
        return self.backend_name

    def open_log_subscription(self) -> LogSubscription | None:
        return self.subscription

    def launch(self, credential, task, *, log_handle=None):
        self.calls.append((credential, task, log_handle))
        if log_handle is not None:
            self.subscription_started_at_launch = log_handle.started
        if self.launch_delay:
            time.sleep(self.launch_delay)
        if isinstance(self.result, BaseException):
            raise self.result
        if self.result is None:
            raise LaunchFailed(self.name, "no scripted result")
        return self.result


def credential(value: str = "tok", *, expires_in: float | None = 3600.0, source=CredentialSource.FILE_STORE, now=None) -> Credential:
    base = time.time() if now is None else now
    expires_at = None if expires_in is None else base + expires_in
    return Credential(value=value, expires_at=expires_at, source=source, subscription_type="max")
