"""
gatewayctl — CLI entrypoint.

Usage:
    python -m src.main --help
    python -m src.main config check
    python -m src.main target install <name>
    python -m src.main sandbox detect
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from src import __version__
from src.core.observability.logging_config import resolve_level, setup_logging_from_env


@click.group()
@click.version_option(version=__version__, prog_name="gatewayctl")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to targets.yml (default: auto-detect).",
)
@click.option("--mock", is_flag=True, help="Use in-memory providers (no real execution).")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    mock: bool,
) -> None:
    """gatewayctl — deploy and operate gateways across execution targets."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["mock"] = mock

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging_from_env(resolve_level(debug=debug, verbose=verbose, quiet=quiet))


# ── Config ──────────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Targets configuration commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate targets.yml."""
    from src.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    if result.valid and result.config is not None:
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   File:    {result.config_path}")
        click.echo(f"   Targets: {len(result.config.targets)}")
        for t in result.config.targets:
            click.echo(f"     • {t.name} [{t.type}] profile={t.profile_name} port={t.gateway_port}")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


# ── Sub-groups ──────────────────────────────────────────────────

from src.ui.cli.sandbox import sandbox
from src.ui.cli.target import target
from src.ui.cli.tiers import tiers

cli.add_command(target)
cli.add_command(sandbox)
cli.add_command(tiers)


if __name__ == "__main__":
    cli()
