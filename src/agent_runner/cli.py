from __future__ import annotations

import json
import logging
import sys
import tempfile
import time
from pathlib import Path

import click

from agent_runner.backends import (
    BACKEND_FLY,
    BACKEND_LOCAL,
    BACKEND_NAMES,
    BACKEND_SANDBOX,
    CONTAINER_RUNTIMES,
    Backend,
    EphemeralMachineBackend,
    LocalProcessBackend,
    PersistentSandboxBackend,
)
from agent_runner.config import LOG_LEVEL_CHOICES, ConfigError, RunnerConfig, load_config
from agent_runner.coordinator import RunCoordinator, RunOutcome, RunResult
from agent_runner.correlator import LogStreamCorrelator
from agent_runner.credentials import (
    CommandRefresher,
    CredentialError,
    CredentialFileSource,
    CredentialResolver,
    EnvOverrideSource,
    KeychainSource,
    mask_token,
)
from agent_runner.processes import detect_runtimes
from agent_runner.task import DEMO_PROMPT, TaskDescriptor


MODE_AUTO = "auto"
MODE_ALL = "all"
WORKSPACE_PREFIX = "agent-runner-"
RESULT_COLUMNS = (("Backend", 9), ("Outcome", 16), ("Exit code", 9), ("Duration", 10))

LOGGER = logging.getLogger("agent_runner")
LOGGER.addHandler(logging.NullHandler())


def _configure_logging(level: str) -> None:
    normalized = level if level in LOG_LEVEL_CHOICES else "info"
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def build_resolver(config: RunnerConfig) -> CredentialResolver:
    refresher = None
    if config.refresh_command:
        refresher = CommandRefresher(config.refresh_command, timeout=config.refresh_timeout)
    return CredentialResolver(
        [KeychainSource(config.keychain_service), CredentialFileSource(config.credentials_file)],
        override=EnvOverrideSource(),
        refresher=refresher,
        refresh_threshold_seconds=config.refresh_threshold_seconds,
    )


def _echo_output(line: str) -> None:
    click.echo(line, nl=False)


def _stderr_echo(label: str):
    def _echo(line: str) -> None:
        if line.strip():
            click.echo(f"   [{label}] {line.rstrip()}", err=True)

    return _echo


def build_backend(name: str, config: RunnerConfig, workspace: Path) -> Backend:
    if name == BACKEND_LOCAL:
        return LocalProcessBackend(
            workspace,
            runtime=config.runtime,
            image=config.image,
            on_output=_echo_output,
            on_error_output=_stderr_echo(config.runtime),
        )
    if name == BACKEND_SANDBOX:
        return PersistentSandboxBackend(
            config.sandbox_workspace,
            sandbox_name=config.sandbox_name,
            on_output=_echo_output,
            on_error_output=_stderr_echo("sandbox"),
        )
    if name == BACKEND_FLY:
        if not config.fly_app:
            raise ConfigError("Fly app name not set. Update fly.toml or set FLY_APP in .env")
        if not config.fly_image:
            raise ConfigError("No Fly image reference found. Set FLY_IMAGE or write it to .fly-image-ref")
        return EphemeralMachineBackend(
            app=config.fly_app,
            image=config.fly_image,
            region=config.fly_region,
            org=config.fly_org,
            vm_memory_mb=config.fly_vm_memory_mb,
            on_error_output=_stderr_echo("fly"),
        )
    raise ConfigError(f"Unknown backend: {name!r}")


def _prepare_workspace(workspace: Path) -> Path:
    workspace.mkdir(parents=True, exist_ok=True)
    manifest = workspace / "package.json"
    if not manifest.exists():
        manifest.write_text(
            json.dumps({"name": "agent-runner-workspace", "version": "1.0.0", "type": "module"}, indent=2) + "\n",
            encoding="utf-8",
        )
    return workspace.resolve()


def _create_workspace() -> Path:
    return _prepare_workspace(Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX)))


def _show_workspace(workspace: Path) -> None:
    try:
        entries = sorted(workspace.iterdir())
    except OSError as exc:
        click.echo(f"Unable to list workspace {workspace}: {exc}", err=True)
        return
    click.echo(f"Files in workspace {workspace}:")
    for entry in entries:
        suffix = "/" if entry.is_dir() else ""
        click.echo(f"  {entry.name}{suffix}")


def _selected_backends(mode: str, runtime: str, config: RunnerConfig) -> list[str]:
    if mode == MODE_ALL:
        return list(BACKEND_NAMES)
    if mode != MODE_AUTO:
        return [mode]
    available = detect_runtimes()
    selected: list[str] = []
    if available.get(runtime):
        selected.append(BACKEND_LOCAL)
    if available.get("sandbox"):
        selected.append(BACKEND_SANDBOX)
    if available.get("fly") and config.fly_app and config.fly_image:
        selected.append(BACKEND_FLY)
    return selected


def _format_elapsed(result: RunResult) -> str:
    if result.outcome is RunOutcome.CONFIG_ERROR:
        return "-"
    return f"{result.elapsed_seconds:.1f}s"


def render_results(results: list[RunResult]) -> str:
    def row(values: list[str]) -> str:
        return "| " + " | ".join(value.ljust(width) for value, (_, width) in zip(values, RESULT_COLUMNS)) + " |"

    separator = "+-" + "-+-".join("-" * width for _, width in RESULT_COLUMNS) + "-+"
    lines = [separator, row([title for title, _ in RESULT_COLUMNS]), separator]
    for result in results:
        lines.append(
            row(
                [
                    result.backend_name,
                    result.outcome.value,
                    "-" if result.exit_code is None else str(result.exit_code),
                    _format_elapsed(result),
                ]
            )
        )
    lines.append(separator)
    return "\n".join(lines)


@click.group(help="Run a coding agent inside different isolation backends and compare the results")
@click.option("--config-file", type=click.Path(path_type=Path, dir_okay=False), default=None)
@click.option("--log-level", type=click.Choice(LOG_LEVEL_CHOICES), default=None, help="Diagnostic log level")
@click.pass_context
def main(ctx: click.Context, config_file: Path | None, log_level: str | None) -> None:
    try:
        config = load_config(config_file)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    config = config.replace(log_level=log_level)
    _configure_logging(config.log_level)
    ctx.obj = config


@main.command(help="Launch the agent on one or more backends")
@click.option(
    "--mode",
    type=click.Choice([MODE_AUTO, MODE_ALL, *BACKEND_NAMES]),
    default=MODE_AUTO,
    show_default=True,
)
@click.option("--runtime", type=click.Choice(CONTAINER_RUNTIMES), default=None, help="Container runtime for local mode")
@click.option("--workspace", type=click.Path(path_type=Path, file_okay=False), default=None)
@click.option("--prompt", default=None, help="Prompt for the agent (defaults to the built-in demo task)")
@click.option("--max-turns", type=click.IntRange(min=1), default=None)
@click.option("--timeout", "correlation_timeout", type=click.FloatRange(min=0), default=None, help="Seconds to wait for remote completion")
@click.pass_obj
def run(
    config: RunnerConfig,
    mode: str,
    runtime: str | None,
    workspace: Path | None,
    prompt: str | None,
    max_turns: int | None,
    correlation_timeout: float | None,
) -> None:
    try:
        config = config.replace(runtime=runtime, max_turns=max_turns, correlation_timeout=correlation_timeout)
        task = TaskDescriptor(
            prompt=prompt or DEMO_PROMPT,
            max_turns=config.max_turns,
            output_format=config.output_format,
        )
    except (ConfigError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    backends = _selected_backends(mode, config.runtime, config)
    if not backends:
        raise click.ClickException("No usable backend found. Run `agent-runner detect` to see what is available.")

    if workspace is None:
        workspace = _create_workspace()
    else:
        workspace = _prepare_workspace(workspace)
        # An explicit workspace applies to every backend, the sandbox included.
        config = config.replace(sandbox_workspace=workspace)
    click.echo(f"Workspace: {workspace}")
    if BACKEND_SANDBOX in backends:
        sandbox_workspace = _prepare_workspace(config.sandbox_workspace)
        config = config.replace(sandbox_workspace=sandbox_workspace)
        if sandbox_workspace != workspace:
            click.echo(f"Sandbox workspace: {sandbox_workspace}")

    coordinator = RunCoordinator(
        build_resolver(config),
        correlator=LogStreamCorrelator(flush_grace_seconds=config.flush_grace_seconds, on_line=click.echo),
        correlation_timeout=config.correlation_timeout,
        log_connect_grace_seconds=config.log_connect_grace_seconds,
    )

    results: list[RunResult] = []
    for name in backends:
        try:
            backend = build_backend(name, config, workspace)
        except ConfigError as exc:
            click.echo(f"Skipping {name}: {exc}", err=True)
            results.append(RunResult(name, RunOutcome.CONFIG_ERROR, None, 0.0, str(exc)))
            continue
        click.echo("")
        click.echo(f"=== {name}: {backend.isolation} ===")
        result = coordinator.run(backend, task)
        results.append(result)
        if result.detail:
            click.echo(f"{name}: {result.outcome.value} ({result.detail})", err=True)
        if result.outcome is RunOutcome.CANCELLED:
            break

    ran = {result.backend_name for result in results if result.outcome is not RunOutcome.CONFIG_ERROR}
    shown: list[Path] = []
    if BACKEND_LOCAL in ran:
        shown.append(workspace)
    if BACKEND_SANDBOX in ran and config.sandbox_workspace not in shown:
        shown.append(config.sandbox_workspace)
    for path in shown:
        _show_workspace(path)
    click.echo("")
    click.echo(render_results(results))
    if not all(result.succeeded for result in results):
        raise SystemExit(1)


@main.command(help="Show which backend CLIs are installed")
def detect() -> None:
    for name, available in detect_runtimes().items():
        click.echo(f"{name:<8} {'available' if available else 'not found'}")


@main.command(help="Resolve the OAuth credential and show where it came from")
@click.pass_obj
def token(config: RunnerConfig) -> None:
    resolver = build_resolver(config)
    try:
        credential = resolver.resolve()
    except CredentialError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Source:  {credential.source.value}")
    click.echo(f"Token:   {mask_token(credential.value)}")
    hours_left = credential.hours_remaining(time.time())
    if hours_left is None:
        click.echo("Expires: unknown (externally managed)")
        return
    click.echo(f"Expires: in {hours_left:.1f}h")
    if hours_left * 3600 <= config.refresh_threshold_seconds:
        click.echo('Warning: token expiring soon; run "claude" to refresh.', err=True)


@main.command("sandbox-reset", help="Remove the persistent Docker Sandbox so the next run recreates it")
@click.pass_obj
def sandbox_reset(config: RunnerConfig) -> None:
    backend = PersistentSandboxBackend(Path.cwd(), sandbox_name=config.sandbox_name)
    if not backend.exists():
        click.echo(f"Sandbox {config.sandbox_name} does not exist.")
        return
    if not backend.remove():
        raise click.ClickException(f'Unable to remove sandbox; run "docker sandbox rm {config.sandbox_name}" manually.')
    click.echo(f"Sandbox {config.sandbox_name} removed.")


if __name__ == "__main__":
    main()
