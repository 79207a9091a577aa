from __future__ import annotations

import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path

from helpers import FakeBackend, ListLogSubscription, StaticSource, credential

from agent_runner.backends import Completed, LaunchFailed, LocalProcessBackend, Started
from agent_runner.coordinator import RunCoordinator, RunOutcome, RunState
from agent_runner.correlator import LogStreamCorrelator
from agent_runner.credentials import CredentialResolver
from agent_runner.task import TaskDescriptor


MARKER = "machine restart policy set to 'no', not restarting"
TASK = TaskDescriptor(prompt="say hi")


def _resolver(*credentials) -> CredentialResolver:
    return CredentialResolver([StaticSource(item) for item in credentials])


def _coordinator(resolver: CredentialResolver, **kwargs) -> RunCoordinator:
    kwargs.setdefault("correlator", LogStreamCorrelator(flush_grace_seconds=0.05, poll_interval=0.01))
    kwargs.setdefault("log_connect_grace_seconds", 0.0)
    return RunCoordinator(resolver, **kwargs)


class RunCoordinatorTests(unittest.TestCase):
    def test_local_run_completes_with_workload_exit_code(self) -> None:
        backend = FakeBackend(Completed(exit_code=0, stdout="Hello\n", stderr=""), backend_name="local")
        coordinator = _coordinator(_resolver(credential("tok")))

        result = coordinator.run(backend, TASK)

        self.assertEqual(result.backend_name, "local")
        self.assertEqual(result.outcome, RunOutcome.COMPLETED)
        self.assertEqual(result.exit_code, 0)
        self.assertTrue(result.succeeded)
        self.assertGreaterEqual(result.elapsed_seconds, 0.0)
        self.assertEqual(
            coordinator.transitions,
            [RunState.IDLE, RunState.CREDENTIAL_RESOLVED, RunState.LAUNCHED, RunState.COMPLETED, RunState.DONE],
        )
        launched_credential, launched_task, _ = backend.calls[0]
        self.assertEqual(launched_credential.value, "tok")
        self.assertIs(launched_task, TASK)

    def test_nonzero_workload_exit_is_completed_but_not_succeeded(self) -> None:
        backend = FakeBackend(Completed(exit_code=2, stdout="", stderr="boom"))
        result = _coordinator(_resolver(credential())).run(backend, TASK)
        self.assertEqual(result.outcome, RunOutcome.COMPLETED)
        self.assertEqual(result.exit_code, 2)
        self.assertFalse(result.succeeded)

    def test_missing_credential_never_launches(self) -> None:
        backend = FakeBackend(Completed(exit_code=0, stdout="", stderr=""))
        coordinator = _coordinator(_resolver(None))

        result = coordinator.run(backend, TASK)

        self.assertEqual(result.outcome, RunOutcome.CONFIG_ERROR)
        self.assertIsNone(result.exit_code)
        self.assertEqual(result.elapsed_seconds, 0.0)
        self.assertEqual(backend.calls, [])
        self.assertEqual(coordinator.transitions, [RunState.IDLE, RunState.DONE])

    def test_expired_credential_is_config_error(self) -> None:
        backend = FakeBackend(Completed(exit_code=0, stdout="", stderr=""))
        result = _coordinator(_resolver(credential(expires_in=-1))).run(backend, TASK)
        self.assertEqual(result.outcome, RunOutcome.CONFIG_ERROR)
        self.assertIn("expired", result.detail)
        self.assertEqual(backend.calls, [])

    def test_launch_failure(self) -> None:
        backend = FakeBackend(LaunchFailed("local", "docker: command not found"), backend_name="local")
        result = _coordinator(_resolver(credential())).run(backend, TASK)
        self.assertEqual(result.outcome, RunOutcome.LAUNCH_FAILED)
        self.assertIsNone(result.exit_code)
        self.assertEqual(result.detail, "docker: command not found")

    def test_ephemeral_run_is_correlated_and_timed_to_the_marker(self) -> None:
        subscription = ListLogSubscription([(0.3, "runner[m1] Hello"), (0.05, f"runner[m1] {MARKER}")])
        backend = FakeBackend(
            Started(instance_id="m1", log_handle=None, exit_code=0),
            subscription=subscription,
            launch_delay=0.05,
            backend_name="fly",
        )
        flush_grace = 0.5
        coordinator = _coordinator(
            _resolver(credential()),
            correlator=LogStreamCorrelator(flush_grace_seconds=flush_grace, poll_interval=0.01),
        )

        started = time.monotonic()
        result = coordinator.run(backend, TASK)
        total = time.monotonic() - started

        self.assertEqual(result.outcome, RunOutcome.COMPLETED)
        self.assertEqual(result.exit_code, 0)
        self.assertTrue(backend.subscription_started_at_launch)
        self.assertLess(result.elapsed_seconds, total - flush_grace + 0.05)
        self.assertGreater(result.elapsed_seconds, 0.0)
        self.assertTrue(subscription.closed)
        self.assertEqual(
            coordinator.transitions,
            [
                RunState.IDLE,
                RunState.CREDENTIAL_RESOLVED,
                RunState.LAUNCHED,
                RunState.AWAITING_CORRELATION,
                RunState.DONE,
            ],
        )

    def test_marker_emitted_during_launch_is_not_lost(self) -> None:
        subscription = ListLogSubscription([(0.01, f"runner[m1] {MARKER}")])
        backend = FakeBackend(
            Started(instance_id="m1", log_handle=None),
            subscription=subscription,
            launch_delay=0.2,
        )
        result = _coordinator(_resolver(credential())).run(backend, TASK)
        self.assertEqual(result.outcome, RunOutcome.COMPLETED)

    def test_correlation_timeout_is_unknown(self) -> None:
        subscription = ListLogSubscription(["runner[m1] still working"])
        backend = FakeBackend(Started(instance_id="m1", log_handle=None), subscription=subscription)
        coordinator = _coordinator(_resolver(credential()), correlation_timeout=0.1)

        result = coordinator.run(backend, TASK)

        self.assertEqual(result.outcome, RunOutcome.UNKNOWN)
        self.assertIsNone(result.exit_code)
        self.assertFalse(result.succeeded)
        self.assertTrue(subscription.closed)

    def test_log_stream_failure_is_transport_error(self) -> None:
        subscription = ListLogSubscription(hold_open=False, error="fly logs: unauthorized")
        backend = FakeBackend(Started(instance_id="m1", log_handle=None), subscription=subscription)

        result = _coordinator(_resolver(credential())).run(backend, TASK)

        self.assertEqual(result.outcome, RunOutcome.TRANSPORT_ERROR)
        self.assertEqual(result.detail, "fly logs: unauthorized")

    def test_cancel_event_during_correlation(self) -> None:
        subscription = ListLogSubscription()
        backend = FakeBackend(Started(instance_id="m1", log_handle=None), subscription=subscription)
        cancel = threading.Event()
        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        try:
            result = _coordinator(_resolver(credential()), correlation_timeout=10.0).run(
                backend, TASK, cancel_event=cancel
            )
        finally:
            timer.cancel()

        self.assertEqual(result.outcome, RunOutcome.CANCELLED)
        self.assertTrue(subscription.closed)

    def test_cancel_before_launch_skips_launch(self) -> None:
        backend = FakeBackend(Completed(exit_code=0, stdout="", stderr=""))
        cancel = threading.Event()
        cancel.set()
        result = _coordinator(_resolver(credential())).run(backend, TASK, cancel_event=cancel)
        self.assertEqual(result.outcome, RunOutcome.CANCELLED)
        self.assertEqual(backend.calls, [])

    def test_keyboard_interrupt_is_cancelled_and_closes_subscription(self) -> None:
        subscription = ListLogSubscription()
        backend = FakeBackend(KeyboardInterrupt(), subscription=subscription)

        result = _coordinator(_resolver(credential())).run(backend, TASK)

        self.assertEqual(result.outcome, RunOutcome.CANCELLED)
        self.assertIsNone(result.exit_code)
        self.assertTrue(subscription.closed)

    def test_log_connect_grace_waits_before_launch(self) -> None:
        order: list[str] = []
        subscription = ListLogSubscription([f"runner[m1] {MARKER}"])

        class RecordingBackend(FakeBackend):
            def launch(self, credential, task, *, log_handle=None):
                order.append("launch")
                return super().launch(credential, task, log_handle=log_handle)

        backend = RecordingBackend(Started(instance_id="m1", log_handle=None), subscription=subscription)
        coordinator = _coordinator(
            _resolver(credential()),
            log_connect_grace_seconds=1.5,
            sleep=lambda seconds: order.append(f"sleep {seconds}"),
        )

        result = coordinator.run(backend, TASK)

        self.assertEqual(order, ["sleep 1.5", "launch"])
        self.assertEqual(result.outcome, RunOutcome.COMPLETED)

    def test_coordinator_is_reusable_across_runs(self) -> None:
        coordinator = _coordinator(_resolver(credential()))
        first = coordinator.run(FakeBackend(Completed(exit_code=0, stdout="", stderr="")), TASK)
        second = coordinator.run(FakeBackend(LaunchFailed("fake", "nope")), TASK)
        self.assertEqual(first.outcome, RunOutcome.COMPLETED)
        self.assertEqual(second.outcome, RunOutcome.LAUNCH_FAILED)
        self.assertEqual(coordinator.transitions[0], RunState.IDLE)
        self.assertEqual(coordinator.state, RunState.DONE)

    def test_invalid_utf8_from_local_workload_still_yields_a_result(self) -> None:
        script = "import sys; sys.stdout.buffer.write(b'caf\\xe9 \\xff\\n')"

        class ScriptedLocalBackend(LocalProcessBackend):
            def command(self, task):
                return [sys.executable, "-c", script]

        seen: list[str] = []
        with tempfile.TemporaryDirectory() as workspace:
            backend = ScriptedLocalBackend(Path(workspace), on_output=seen.append)
            result = _coordinator(_resolver(credential())).run(backend, TASK)

        self.assertEqual(result.outcome, RunOutcome.COMPLETED)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(seen, ["caf\ufffd \ufffd\n"])

    def test_marker_arrival_uses_the_coordinator_clock(self) -> None:
        offset = 10_000.0

        def shifted_clock() -> float:
            return time.monotonic() + offset

        subscription = ListLogSubscription([(0.1, f"runner[m1] {MARKER}")])
        backend = FakeBackend(Started(instance_id="m1", log_handle=None), subscription=subscription)

        result = _coordinator(_resolver(credential()), clock=shifted_clock).run(backend, TASK)

        self.assertEqual(result.outcome, RunOutcome.COMPLETED)
        self.assertIs(subscription.clock, shifted_clock)
        self.assertGreater(result.elapsed_seconds, 0.05)
        self.assertLess(result.elapsed_seconds, 5.0)


if __name__ == "__main__":
    unittest.main()
