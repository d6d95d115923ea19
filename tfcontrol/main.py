"""
tf-control — CLI entrypoint.

Usage:
    tfcontrol --help
    tfcontrol run [--mock --objects objects.yml]
    tfcontrol reconcile NAME -n NAMESPACE
    tfcontrol plan-id main/abcdef0123456789
    tfcontrol config check
"""

from __future__ import annotations

import json
import os
import signal
import sys
import threading
from pathlib import Path

import click

from tfcontrol import __version__
from tfcontrol.core.observability.logging_config import parse_logger_levels, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="tfcontrol")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to controller.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """tf-control — reconcile Terraform resources toward their declared state."""
    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("TFC_LOG_LEVEL", "WARNING")

    setup_logging(
        level=level,
        log_file=os.environ.get("TFC_LOG_FILE"),
        log_file_level=os.environ.get("TFC_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
        log_format=os.environ.get("TFC_LOG_FORMAT", "text"),
        logger_levels=parse_logger_levels(os.environ.get("TFC_LOG_LEVELS")),
    )


def _load_config(ctx: click.Context):  # type: ignore[no-untyped-def]
    from tfcontrol.core.config.loader import ConfigError, load_config

    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)


def _build(ctx: click.Context, mock: bool, objects: str | None):  # type: ignore[no-untyped-def]
    """Build the controller app for the real cluster or the in-memory one."""
    from tfcontrol.adapters.kubectl import KubectlCluster
    from tfcontrol.adapters.memory import InMemoryCluster, ScriptedRunner, StaticProvisioner
    from tfcontrol.adapters.terraform import LocalRunnerProvisioner
    from tfcontrol.core.app import build_app
    from tfcontrol.core.config.loader import ConfigError, load_objects

    config = _load_config(ctx)
    if mock:
        cluster = InMemoryCluster()
        if objects:
            try:
                resources, sources = load_objects(Path(objects))
            except ConfigError as e:
                click.secho(f"❌ {e}", fg="red", err=True)
                sys.exit(1)
            for source in sources:
                cluster.add_source(source)
            for resource in resources:
                cluster.add(resource)
        provisioner = StaticProvisioner(ScriptedRunner())
    else:
        cluster = KubectlCluster(namespace=config.namespace, timeout=config.kubectl_timeout.total_seconds())
        provisioner = LocalRunnerProvisioner()
    return build_app(config, cluster, provisioner)


@cli.command()
@click.option("--mock", is_flag=True, help="Use the in-memory cluster and a scripted runner.")
@click.option("--objects", type=click.Path(exists=True), default=None, help="YAML objects to load in --mock mode.")
@click.pass_context
def run(ctx: click.Context, mock: bool, objects: str | None) -> None:
    """Start the controller, watcher, rotation server and probe server."""
    from tfcontrol.ui.probes import create_app, start_in_background

    app = _build(ctx, mock, objects)
    probes = create_app(app.rotator, app.metrics, app.events, app.controller.queue)
    start_in_background(probes, app.config.probe_address)
    app.start()

    stop = threading.Event()

    def _handle(signum, frame):  # type: ignore[no-untyped-def]
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    if not ctx.obj.get("quiet"):
        click.secho(f"🚀 tf-control running (probes on {app.config.probe_address})", fg="green")
    stop.wait()
    app.stop()


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default", help="Namespace of the resource.")
@click.option("--mock", is_flag=True, help="Use the in-memory cluster and a scripted runner.")
@click.option("--objects", type=click.Path(exists=True), default=None, help="YAML objects to load in --mock mode.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def reconcile(ctx: click.Context, name: str, namespace: str, mock: bool, objects: str | None, as_json: bool) -> None:
    """Run one reconciliation attempt for NAME and print the result."""
    from tfcontrol.core.errors import ControllerError
    from tfcontrol.core.models.meta import NamespacedName

    app = _build(ctx, mock, objects)
    app.rotation_server.rotate()
    key = NamespacedName(namespace=namespace, name=name)

    try:
        result = app.reconciler.reconcile(key)
    except ControllerError as e:
        click.secho(f"❌ {key}: {e}", fg="red", err=True)
        sys.exit(1)

    if as_json:
        delay = result.requeue_after.total_seconds() if result.requeue_after else None
        click.echo(json.dumps({"object": str(key), "requeue": result.requeue, "requeue_after": delay}, indent=2))
        return
    click.echo(f"{key}: {result.describe()}")


@cli.command("plan-id")
@click.argument("revision")
@click.option("--message", "-m", default="Plan generated", help="Message to prefix the approval hint with.")
def plan_id(revision: str, message: str) -> None:
    """Print the plan id and approval message for REVISION."""
    from tfcontrol.core.engine.transitions import plan_id_and_approve_message

    pid, approve_message = plan_id_and_approve_message(revision, message)
    click.echo(pid)
    click.echo(approve_message)


@cli.group()
def config() -> None:
    """Controller configuration commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate controller.yml and environment overrides."""
    from tfcontrol.core.config.loader import ConfigError, load_config

    try:
        cfg = load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        if as_json:
            click.echo(json.dumps({"valid": False, "error": str(e)}, indent=2))
        else:
            click.secho("❌ Configuration errors:", fg="red", bold=True)
            click.echo(f"   • {e}")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps({"valid": True, "config": cfg.model_dump(mode="json")}, indent=2))
        return

    click.secho("✅ Configuration is valid", fg="green", bold=True)
    click.echo(f"   Workers: {cfg.max_concurrent_reconciles}")
    click.echo(f"   Field owner: {cfg.field_owner}")
    click.echo(f"   Insecure local runner: {cfg.insecure_local_runner}")
    if cfg.source_controller_localhost:
        click.echo(f"   Source host override: {cfg.source_controller_localhost}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
