from __future__ import annotations

import abc
import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Union

from agent_runner.correlator import LogSubscription, ProcessLogSubscription
from agent_runner.credentials import OVERRIDE_ENV_VAR, Credential
from agent_runner.processes import run_captured, stream_process
from agent_runner.task import TaskDescriptor


BACKEND_LOCAL = "local"
BACKEND_SANDBOX = "sandbox"
BACKEND_FLY = "fly"
BACKEND_NAMES = (BACKEND_LOCAL, BACKEND_SANDBOX, BACKEND_FLY)
CONTAINER_RUNTIMES = ("docker", "podman")
DEFAULT_IMAGE = "cpm-runner:demo"
DEFAULT_SANDBOX_NAME = "cpm-demo-sandbox"
DEFAULT_FLY_REGION = "arn"
DEFAULT_FLY_VM_MEMORY_MB = 2048
CONTAINER_WORKSPACE = "/workspace"
ENABLE_TASKS_ENV = "CLAUDE_CODE_ENABLE_TASKS=1"
# docker/podman: 125 daemon or run error, 126 not executable, 127 not found.
RUNTIME_START_FAILURE_CODES = {125, 126, 127}
MACHINE_ID_RE = re.compile(r"Machine ID:\s*([a-z0-9]+)")
SANDBOX_CREDENTIALS_WRITE_SCRIPT = (
    'mkdir -p "$HOME/.claude" && umask 077 && cat > "$HOME/.claude/.credentials.json"'
)
SANDBOX_ONBOARDING_WRITE_SCRIPT = 'cat > "$HOME/.claude.json"'
SANDBOX_ONBOARDING_MARKER = {"hasCompletedOnboarding": True}
SANDBOX_WORKSPACE_KEYS = ("workspace", "workspacedir", "workspace_dir", "workspacepath")

LOGGER = logging.getLogger("agent_runner")
LOGGER.addHandler(logging.NullHandler())

OutputCallback = Callable[[str], None]


class LaunchFailed(Exception):
    def __init__(self, backend_name: str, detail: str) -> None:
        self.backend_name = backend_name
        self.detail = detail
        super().__init__(f"{backend_name}: {detail}")


@dataclass(frozen=True)
class Completed:
    exit_code: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class Started:
    instance_id: str
    log_handle: LogSubscription | None
    exit_code: int = 0
    output: str = ""


LaunchResult = Union[Completed, Started]


def _tail(text: str, limit: int = 500) -> str:
    return (text or "").strip()[-limit:]


def _bound_workspace(inspect_output: str) -> Path | None:
    """Workspace path reported by `docker sandbox inspect`, when it reports one."""
    try:
        payload = json.loads(inspect_output or "")
    except json.JSONDecodeError:
        return None
    if isinstance(payload, list):
        payload = payload[0] if payload else None
    if not isinstance(payload, dict):
        return None
    for key, value in payload.items():
        if str(key).lower() in SANDBOX_WORKSPACE_KEYS and isinstance(value, str) and value.strip():
            return Path(value.strip())
    return None


class Backend(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short identifier used in results (e.g. 'local', 'sandbox', 'fly')."""
        pass

    @property
    def isolation(self) -> str:
        return ""

    def open_log_subscription(self) -> LogSubscription | None:
        """Backends that return before the workload finishes hand back their log channel here."""
        return None

    @abc.abstractmethod
    def launch(
        self,
        credential: Credential,
        task: TaskDescriptor,
        *,
        log_handle: LogSubscription | None = None,
    ) -> LaunchResult:
        pass


def launch(
    backend: Backend,
    credential: Credential,
    task: TaskDescriptor,
    log_handle: LogSubscription | None = None,
) -> LaunchResult:
    return backend.launch(credential, task, log_handle=log_handle)


class LocalProcessBackend(Backend):
    def __init__(
        self,
        workspace: Path,
        *,
        runtime: str = "docker",
        image: str = DEFAULT_IMAGE,
        on_output: OutputCallback | None = None,
        on_error_output: OutputCallback | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        if runtime not in CONTAINER_RUNTIMES:
            raise ValueError(f"Unsupported container runtime: {runtime!r}")
        self.workspace = Path(workspace)
        self.runtime = runtime
        self.image = image
        self.on_output = on_output
        self.on_error_output = on_error_output
        self.base_env = base_env

    @property
    def name(self) -> str:
        return BACKEND_LOCAL

    @property
    def isolation(self) -> str:
        return f"{self.runtime} container (shared kernel)"

    def command(self, task: TaskDescriptor) -> list[str]:
        return [
            self.runtime,
            "run",
            "--rm",
            "-w",
            CONTAINER_WORKSPACE,
            "-v",
            f"{self.workspace}:{CONTAINER_WORKSPACE}",
            # Value is inherited from the runtime client's environment, keeping it out of argv.
            "-e",
            OVERRIDE_ENV_VAR,
            "-e",
            ENABLE_TASKS_ENV,
            self.image,
            *task.agent_args(),
        ]

    def launch(
        self,
        credential: Credential,
        task: TaskDescriptor,
        *,
        log_handle: LogSubscription | None = None,
    ) -> LaunchResult:
        del log_handle
        env = dict(os.environ if self.base_env is None else self.base_env)
        env[OVERRIDE_ENV_VAR] = credential.value
        try:
            result = stream_process(
                self.command(task),
                cwd=str(self.workspace),
                env=env,
                on_output=self.on_output,
                on_error_output=self.on_error_output,
            )
        except OSError as exc:
            raise LaunchFailed(self.name, f"failed to spawn {self.runtime}: {exc}") from exc

        if result.returncode in RUNTIME_START_FAILURE_CODES and not result.stdout.strip():
            raise LaunchFailed(
                self.name,
                f"{self.runtime} run exited with code {result.returncode}: {_tail(result.stderr) or 'no output'}",
            )
        return Completed(exit_code=result.returncode, stdout=result.stdout, stderr=result.stderr)


class PersistentSandboxBackend(Backend):
    """Docker Sandbox microVM reused across runs under one fixed name.

    The sandbox cannot take new environment variables after creation, so each
    run pushes a fresh credential file into it over `sandbox exec -i`.
    Concurrent runs against the same sandbox name are not supported.
    """

    def __init__(
        self,
        workspace: Path,
        *,
        sandbox_name: str = DEFAULT_SANDBOX_NAME,
        docker: str = "docker",
        on_output: OutputCallback | None = None,
        on_error_output: OutputCallback | None = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.sandbox_name = sandbox_name
        self.docker = docker
        self.on_output = on_output
        self.on_error_output = on_error_output

    @property
    def name(self) -> str:
        return BACKEND_SANDBOX

    @property
    def isolation(self) -> str:
        return "Docker Sandbox microVM (dedicated kernel)"

    def _sandbox_cmd(self, *args: str) -> list[str]:
        return [self.docker, "sandbox", *args]

    def _inspect(self) -> subprocess.CompletedProcess[str] | None:
        try:
            result = run_captured(self._sandbox_cmd("inspect", self.sandbox_name))
        except OSError:
            return None
        return result if result.returncode == 0 else None

    def exists(self) -> bool:
        return self._inspect() is not None

    def ensure_context(self) -> bool:
        """Create the sandbox if it is missing; return True when this call created it.

        The workspace is bound at create time. A sandbox bound to a different
        workspace is removed and recreated so the agent writes where the caller
        looks.
        """
        inspected = self._inspect()
        if inspected is not None:
            bound = _bound_workspace(inspected.stdout)
            if bound is None or bound == self.workspace:
                LOGGER.debug("Reusing sandbox %s.", self.sandbox_name)
                return False
            LOGGER.info("Sandbox %s is bound to %s; recreating it for %s.", self.sandbox_name, bound, self.workspace)
            if not self.remove():
                raise LaunchFailed(
                    self.name,
                    f'sandbox {self.sandbox_name} is bound to {bound}; run "agent-runner sandbox-reset" and retry',
                )
        LOGGER.info("Creating sandbox %s (first run may pull the template image).", self.sandbox_name)
        try:
            result = run_captured(
                self._sandbox_cmd("create", "--name", self.sandbox_name, "--workspace", str(self.workspace), "claude")
            )
        except OSError as exc:
            raise LaunchFailed(self.name, f"failed to spawn {self.docker} sandbox: {exc}") from exc
        if result.returncode != 0:
            if self.exists():
                return False
            raise LaunchFailed(
                self.name,
                f"sandbox create exited with code {result.returncode}: {_tail(result.stderr or result.stdout)}",
            )
        return True

    def _write_into_sandbox(self, script: str, payload: str, label: str) -> None:
        try:
            result = run_captured(
                self._sandbox_cmd("exec", "-i", self.sandbox_name, "sh", "-c", script),
                input_text=payload,
            )
        except OSError as exc:
            raise LaunchFailed(self.name, f"failed to write {label}: {exc}") from exc
        if result.returncode != 0:
            raise LaunchFailed(
                self.name,
                f"writing {label} exited with code {result.returncode}: {_tail(result.stderr or result.stdout)}",
            )

    def inject_credential(self, credential: Credential) -> None:
        self._write_into_sandbox(SANDBOX_CREDENTIALS_WRITE_SCRIPT, credential.to_secret_blob(), "credentials")
        self._write_into_sandbox(
            SANDBOX_ONBOARDING_WRITE_SCRIPT,
            json.dumps(SANDBOX_ONBOARDING_MARKER),
            "onboarding marker",
        )
        LOGGER.debug("Injected credential into sandbox %s.", self.sandbox_name)

    def command(self, task: TaskDescriptor) -> list[str]:
        return self._sandbox_cmd(
            "exec",
            self.sandbox_name,
            "claude",
            "-p",
            "--dangerously-skip-permissions",
            *task.agent_args(),
        )

    def launch(
        self,
        credential: Credential,
        task: TaskDescriptor,
        *,
        log_handle: LogSubscription | None = None,
    ) -> LaunchResult:
        del log_handle
        self.ensure_context()
        self.inject_credential(credential)
        try:
            result = stream_process(
                self.command(task),
                on_output=self.on_output,
                on_error_output=self.on_error_output,
            )
        except OSError as exc:
            raise LaunchFailed(self.name, f"failed to spawn {self.docker} sandbox exec: {exc}") from exc
        return Completed(exit_code=result.returncode, stdout=result.stdout, stderr=result.stderr)

    def remove(self) -> bool:
        try:
            result = run_captured(self._sandbox_cmd("rm", self.sandbox_name))
        except OSError as exc:
            LOGGER.warning("Unable to remove sandbox %s: %s", self.sandbox_name, exc)
            return False
        return result.returncode == 0


class EphemeralMachineBackend(Backend):
    """Fly.io machine started with --rm.

    `fly machine run` returns once the machine starts; workload output and the
    exit marker only appear on the app-wide `fly logs` stream.
    """

    def __init__(
        self,
        *,
        app: str,
        image: str,
        region: str = DEFAULT_FLY_REGION,
        org: str | None = None,
        vm_memory_mb: int = DEFAULT_FLY_VM_MEMORY_MB,
        fly: str = "fly",
        on_error_output: OutputCallback | None = None,
    ) -> None:
        if not app:
            raise ValueError("Fly app name is required.")
        if not image:
            raise ValueError("Fly image reference is required.")
        self.app = app
        self.image = image
        self.region = region
        self.org = org
        self.vm_memory_mb = vm_memory_mb
        self.fly = fly
        self.on_error_output = on_error_output

    @property
    def name(self) -> str:
        return BACKEND_FLY

    @property
    def isolation(self) -> str:
        return "Fly.io Firecracker microVM (ephemeral)"

    def log_command(self) -> list[str]:
        return [self.fly, "logs", "--app", self.app]

    def open_log_subscription(self) -> LogSubscription:
        return ProcessLogSubscription(self.log_command())

    def command(self, credential: Credential, task: TaskDescriptor) -> list[str]:
        cmd = [
            self.fly,
            "machine",
            "run",
            self.image,
            "--app",
            self.app,
            "--env",
            f"{OVERRIDE_ENV_VAR}={credential.value}",
            "--env",
            ENABLE_TASKS_ENV,
            "--region",
            self.region,
            "--vm-memory",
            str(self.vm_memory_mb),
            "--rm",
        ]
        if self.org:
            cmd.extend(["--org", self.org])
        cmd.append("--")
        cmd.extend(task.agent_args())
        return cmd

    def launch(
        self,
        credential: Credential,
        task: TaskDescriptor,
        *,
        log_handle: LogSubscription | None = None,
    ) -> LaunchResult:
        try:
            result = stream_process(self.command(credential, task), on_error_output=self.on_error_output)
        except OSError as exc:
            raise LaunchFailed(self.name, f"failed to spawn {self.fly}: {exc}") from exc
        if result.returncode != 0:
            raise LaunchFailed(
                self.name,
                f"fly machine run exited with code {result.returncode}: {_tail(result.stderr or result.stdout)}",
            )
        match = MACHINE_ID_RE.search(result.stdout)
        if match is None:
            raise LaunchFailed(self.name, "fly machine run did not report a Machine ID")
        instance_id = match.group(1)
        LOGGER.info("Fly machine %s started in region %s.", instance_id, self.region)
        return Started(instance_id=instance_id, log_handle=log_handle, exit_code=result.returncode, output=result.stdout)
