"""
CLI interface for sandboxer.

Provides commands: setup, status, reset, env, startup, teardown,
fix-permissions, validate.
"""

import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import NoReturn

import click
from rich.table import Table

from sandboxer import __version__
from sandboxer.bringup import BringUp
from sandboxer.config import load_config
from sandboxer.environment import EnvironmentDescriptor, parse_exports
from sandboxer.errors import SandboxerError
from sandboxer.markers import MarkerStore
from sandboxer.permissions import reconcile_ownership
from sandboxer.pipeline import Pipeline
from sandboxer.runner import CommandRunner
from sandboxer.services.watcher import Supervisor
from sandboxer.utils import (
    console,
    format_duration,
    print_action,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


def _load(ctx: click.Context, with_logging: bool = True):
    """Load configuration from the group options and set up logging."""
    obj = ctx.obj or {}
    config = load_config(obj.get("config_path"))
    if with_logging:
        setup_logging(
            config.get_log_file_path(),
            "DEBUG" if obj.get("verbose") else config.get_log_level(),
            config.get_log_format(),
            config.should_log_to_console(),
        )
    return config


def _fail(message: str, verbose: bool = False) -> NoReturn:
    print_error(message)
    if verbose:
        console.print_exception()
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="sandboxer")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file (default: $SANDBOXER_CONFIG or the packaged defaults)",
)
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_path, verbose):
    """
    sandboxer - provision a persistent volume and bring a sandbox up.

    `setup` installs dependencies onto the volume once; `startup` runs on
    every container start.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


@main.command()
@click.option("--stage", help="Run a single stage only")
@click.option("--force", is_flag=True, help="Re-run even if the stage is marked complete")
@click.option("--dry-run", is_flag=True, help="Log commands instead of executing them")
@click.pass_context
def setup(ctx, stage, force, dry_run):
    """
    Install dependencies onto the persistent volume.

    Completed stages are skipped; a failed stage stops the run and is
    retried first next time.

    Examples:

      # Full setup (resumes where a previous run stopped)
      sandboxer setup

      # Rebuild one stage
      sandboxer setup --stage libraries --force
    """
    verbose = ctx.obj.get("verbose")
    try:
        config = _load(ctx)
        config.validate()
        pipeline = Pipeline(config, runner=CommandRunner(dry_run=dry_run))
        result = pipeline.run(only=stage, force=force)
    except SandboxerError as e:
        _fail(f"Setup failed: {e}", verbose)

    if result.success:
        sys.exit(0)

    if result.failed_stage and result.retryable:
        print_action(f"{result.failed_stage} hit a temporary error; re-run 'sandboxer setup' to retry it")
    elif result.failed_stage:
        print_action(f"Fix the problem, then re-run 'sandboxer setup' to resume at {result.failed_stage}")
    sys.exit(1)


@main.command()
@click.pass_context
def status(ctx):
    """
    Show per-stage completion and the last setup run.
    """
    try:
        config = _load(ctx, with_logging=False)
        pipeline = Pipeline(config)
        current = pipeline.status()
    except SandboxerError as e:
        _fail(f"Could not retrieve status: {e}")

    print_banner(f"{config.name} v{config.version}")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Stage")
    table.add_column("Marker")
    table.add_column("Installed")
    for stage in current.stages:
        if not stage.enabled:
            installed = "[dim]disabled[/dim]"
        elif stage.complete:
            installed = f"[green]✓[/green] {stage.completed_at.strftime('%Y-%m-%d %H:%M')}"
        else:
            installed = "[red]✗[/red]"
        table.add_row(stage.name, stage.marker, installed)
    console.print(table)

    if current.setup_completed_at:
        print_success(f"Setup complete since {current.setup_completed_at.strftime('%Y-%m-%d %H:%M:%S')}")
    else:
        print_warning("Setup not complete")

    last_run = current.last_run
    if last_run:
        outcome = "SUCCESS" if last_run.success else "FAILED"
        print_info(
            f"Last run: {last_run.started_at.strftime('%Y-%m-%d %H:%M:%S')} "
            f"{outcome} in {format_duration(last_run.duration_seconds)}"
        )
        if last_run.error_message:
            print_error(last_run.error_message)

    log_file = config.get_log_file_path()
    if log_file and log_file.exists():
        print_info(f"Logs: {log_file}")


@main.command()
@click.argument("stage")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset(ctx, stage, yes):
    """
    Remove a stage's completion marker so the next setup re-runs it.
    """
    try:
        config = _load(ctx, with_logging=False)
    except SandboxerError as e:
        _fail(str(e))

    stage_config = config.get_stage(stage)
    if stage_config is None:
        _fail(f"Unknown stage: {stage}")

    if not yes and not click.confirm(f"Re-run stage '{stage}' on the next setup?"):
        print_info("Cancelled")
        return

    if MarkerStore(config.marker_dir).clear(stage_config.marker):
        print_success(f"Marker '{stage_config.marker}' removed")
    else:
        print_info(f"Stage '{stage}' was not marked complete")


@main.command()
@click.option("--key", help="Print a single resolved value")
@click.option("--shell", "as_shell", is_flag=True, help="Print the rendered shell exports")
@click.option("--check", is_flag=True, help="Verify the rendered file matches the fragments")
@click.pass_context
def env(ctx, key, as_shell, check):
    """
    Show the accumulated environment.
    """
    try:
        config = _load(ctx, with_logging=False)
        descriptor = EnvironmentDescriptor.load(config.fragments_file, config.env_file)
    except SandboxerError as e:
        _fail(str(e))

    if check:
        if not config.env_file.exists():
            _fail(f"{config.env_file} does not exist")
        sourced = parse_exports(config.env_file.read_text(), base={})
        resolved = descriptor.resolve(base={})
        if sourced != resolved:
            differing = sorted(k for k in set(sourced) | set(resolved) if sourced.get(k) != resolved.get(k))
            _fail(f"{config.env_file} is out of date: {', '.join(differing)}")
        print_success(f"{config.env_file} matches {len(descriptor)} fragment(s)")
        return

    if as_shell:
        click.echo(descriptor.render(), nl=False)
        return

    resolved = descriptor.resolve()
    if key:
        if key not in resolved:
            _fail(f"{key} is not defined by any fragment")
        click.echo(resolved[key])
        return

    for name, value in resolved.items():
        click.echo(f"{name}={value}")


@contextmanager
def _stop_on_signals():
    """Yield an Event that SIGTERM or SIGINT sets; restore the old handlers after."""
    stop = threading.Event()
    previous = {}
    for signum in (signal.SIGTERM, signal.SIGINT):
        previous[signum] = signal.signal(signum, lambda received, frame: stop.set())
    try:
        yield stop
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _print_summary(report) -> None:
    print_banner("Sandbox ready")
    for line in report.summary_lines():
        if line.startswith("Action: "):
            print_action(line[len("Action: "):])
        elif line.startswith("Warning: "):
            print_warning(line[len("Warning: "):])
        else:
            console.print(line)


@main.command()
@click.option("--wait/--no-wait", default=True, help="Wait for background watchers before exiting")
@click.option("--hold", is_flag=True, help="Keep running until terminated (container entrypoint)")
@click.pass_context
def startup(ctx, wait, hold):
    """
    Bring the sandbox up: permissions, environment, SSH, network identity.

    Never fails on a service problem; the summary lists what to fix.
    Service daemons keep running after exit; with --hold they are stopped
    on SIGTERM.
    """
    try:
        config = _load(ctx)
    except SandboxerError as e:
        _fail(str(e))

    with _stop_on_signals() as stop:
        supervisor = Supervisor()
        report = BringUp(config, supervisor=supervisor).run()
        _print_summary(report)

        if hold:
            while not stop.wait(1.0):
                pass
            supervisor.teardown()
            return

        pending = [watcher.name for watcher in supervisor.pending]
        if pending and not wait:
            print_warning(
                f"Not waiting for {', '.join(pending)}; readiness will not be confirmed "
                "(use --wait or --hold)"
            )
            return

        if pending:
            print_info(f"Waiting for {', '.join(pending)} to come up (Ctrl-C to stop waiting)")
        if not supervisor.wait(stop):
            supervisor.cancel_all()
            supervisor.join(timeout=5.0)
            print_warning("Stopped waiting; services may still be starting")
            return
        for name, outcome in supervisor.join().items():
            print_info(f"{name}: {outcome.value}")


@main.command()
@click.pass_context
def teardown(ctx):
    """
    Stop the service daemons started by `startup`.
    """
    try:
        config = _load(ctx)
    except SandboxerError as e:
        _fail(str(e))

    runner = CommandRunner()
    names = list(config.runtime.get("stop_processes", []) or [])
    network = config.get_service("network_identity")
    if network is not None and network.enabled:
        names.append(network.get("daemon", "tailscaled"))
    remote = config.get_service("remote_access")
    if remote is not None and remote.enabled:
        names.append(remote.get("process_name", "sshd"))

    for name in dict.fromkeys(names):
        if runner.kill_process(name, signal=15):
            print_success(f"Stopped {name}")
        else:
            print_info(f"{name} was not running")


@main.command(name="fix-permissions")
@click.pass_context
def fix_permissions(ctx):
    """
    Reconcile ownership of the volume without starting services.
    """
    try:
        config = _load(ctx)
    except SandboxerError as e:
        _fail(str(e))

    uid = int(config.ownership.get("uid", 1000))
    gid = int(config.ownership.get("gid", 1000))
    exclude = config.ownership.get("exclude", [".ssh"])
    failed = 0
    for root in config.get_ownership_paths():
        report = reconcile_ownership(root, uid, gid, exclude=exclude)
        failed += report.failed
        print_info(report.summary())

    if failed:
        print_warning(f"{failed} entries could not be repaired (see log for details)")
    else:
        print_success("Ownership reconciled")


@main.command()
@click.pass_context
def validate(ctx):
    """
    Validate the configuration and stage definitions.
    """
    print_banner("Configuration Validation")
    try:
        config = _load(ctx, with_logging=False)
        pipeline = Pipeline(config)
        pipeline.validate()
    except SandboxerError as e:
        _fail(f"Configuration invalid: {e}")

    print_success(f"Configuration valid ({len(config.get_enabled_stages())} enabled stages)")
    for stage in pipeline.stages():
        print_info(f"  {stage.ordinal + 1}. {stage.name} ({stage.config.type}) -> marker {stage.marker_id}")


if __name__ == "__main__":
    main()
