from __future__ import annotations

import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from threading import Thread
from typing import Callable, Iterable, Mapping


STOP_TIMEOUT_SECONDS = 4.0
SECRET_FLAGS = {"--env", "-e"}

LOGGER = logging.getLogger("agent_runner")
LOGGER.addHandler(logging.NullHandler())


@dataclass
class StreamedProcess:
    returncode: int
    stdout: str
    stderr: str


def redact_command(cmd: Iterable[str]) -> str:
    parts = [str(part) for part in cmd]
    redacted: list[str] = []
    for index, part in enumerate(parts):
        if index > 0 and parts[index - 1] in SECRET_FLAGS and "=" in part:
            key, _, _ = part.partition("=")
            redacted.append(f"{key}=***")
        else:
            redacted.append(part)
    return " ".join(redacted)


def _is_process_running(process: subprocess.Popen) -> bool:
    return process.poll() is None


def stop_process(process: subprocess.Popen, timeout_seconds: float = STOP_TIMEOUT_SECONDS) -> None:
    if not _is_process_running(process):
        return

    try:
        pgid = os.getpgid(process.pid)
    except (ProcessLookupError, OSError):
        pgid = None

    try:
        if pgid:
            os.killpg(pgid, signal.SIGTERM)
        else:
            process.terminate()
    except (ProcessLookupError, PermissionError, OSError):
        try:
            process.terminate()
        except OSError:
            return

    try:
        process.wait(timeout=timeout_seconds)
        return
    except subprocess.TimeoutExpired:
        pass

    try:
        if pgid:
            os.killpg(pgid, signal.SIGKILL)
        else:
            process.kill()
    except (ProcessLookupError, PermissionError, OSError):
        try:
            process.kill()
        except OSError:
            return
    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        LOGGER.warning("Process pid=%s did not exit after SIGKILL.", process.pid)


def stream_process(
    cmd: list[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    on_output: Callable[[str], None] | None = None,
    on_error_output: Callable[[str], None] | None = None,
) -> StreamedProcess:
    """Run a command, forwarding stdout and stderr line by line as they arrive.

    Raises OSError when the command cannot be started. A KeyboardInterrupt
    while streaming stops the child before propagating.
    """
    LOGGER.debug("$ %s", redact_command(cmd))
    process = subprocess.Popen(
        cmd,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        text=True,
        encoding="utf-8",
        errors="replace",
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        bufsize=1,
        start_new_session=True,
    )
    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []

    def _drain_stderr() -> None:
        stream = process.stderr
        if stream is None:
            return
        for line in iter(stream.readline, ""):
            stderr_chunks.append(line)
            if on_error_output is not None:
                on_error_output(line)
        stream.close()

    reader = Thread(target=_drain_stderr, daemon=True)
    reader.start()
    try:
        stdout = process.stdout
        if stdout is not None:
            for line in iter(stdout.readline, ""):
                stdout_chunks.append(line)
                if on_output is not None:
                    on_output(line)
            stdout.close()
        returncode = process.wait()
    except BaseException:
        stop_process(process)
        raise
    finally:
        reader.join(timeout=5)
    return StreamedProcess(returncode=returncode, stdout="".join(stdout_chunks), stderr="".join(stderr_chunks))


def run_captured(
    cmd: list[str],
    *,
    input_text: str | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    LOGGER.debug("$ %s", redact_command(cmd))
    return subprocess.run(
        cmd,
        check=False,
        text=True,
        input=input_text,
        encoding="utf-8",
        errors="replace",
        capture_output=True,
        timeout=timeout,
    )


def command_succeeds(cmd: list[str], timeout: float = 10.0) -> bool:
    try:
        result = subprocess.run(
            cmd,
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


def detect_runtimes() -> dict[str, bool]:
    checks = {
        "docker": ["docker", "--version"],
        "sandbox": ["docker", "sandbox", "version"],
        "podman": ["podman", "--version"],
        "fly": ["fly", "version"],
    }
    return {name: command_succeeds(cmd) for name, cmd in checks.items()}
