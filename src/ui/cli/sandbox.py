"""
CLI commands for the sysbox sandbox runtime.

Thin wrappers over ``src.core.services.sandbox``.
"""

from __future__ import annotations

import asyncio
import json
import sys

import click


def _detector(ctx: click.Context):
    if ctx.obj.get("mock"):
        from src.adapters.registry import mock_services

        return mock_services().detector

    from src.core.services.sandbox import get_detector

    return get_detector()


@click.group()
def sandbox() -> None:
    """Sandbox runtime — detect and install sysbox."""


@sandbox.command("detect")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def detect(ctx: click.Context, as_json: bool) -> None:
    """Report whether sysbox is usable on this machine."""
    capability = asyncio.run(_detector(ctx).detect(skip_cache=True))

    if as_json:
        click.echo(json.dumps(capability.model_dump(mode="json"), indent=2))
        return

    icon = {"available": "✅", "not-installed": "⚪", "unavailable": "❌", "unsupported": "🚫"}.get(capability.availability, "❓")
    click.secho(f"{icon} Sysbox: {capability.availability}", bold=True)
    click.echo(f"   Platform: {capability.platform or 'unknown'}")
    if capability.version:
        click.echo(f"   Version:  {capability.version}")
    if capability.reason:
        click.echo(f"   Reason:   {capability.reason}")
    if capability.install_command:
        click.echo()
        click.secho(f"   Install ({capability.install_method}):", fg="cyan")
        click.echo(f"   {capability.install_command}")


@sandbox.command("install")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(ctx: click.Context, as_json: bool) -> None:
    """Install sysbox (or the VM that hosts it) for this platform."""
    from src.core.services.sandbox import SandboxInstaller

    def on_log(line: str, stream: str) -> None:
        if not as_json and not ctx.obj.get("quiet"):
            click.secho(f"   {line}", err=True, fg="yellow" if stream == "stderr" else None)

    installer = SandboxInstaller(_detector(ctx), on_log=on_log)
    result = asyncio.run(installer.attempt_install())

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        sys.exit(0 if result.success else 1)

    if result.success:
        click.secho(f"✅ {result.message}", fg="green")
        return

    click.secho(f"❌ {result.message}", fg="red")
    if result.requires_manual_action and result.manual_command:
        click.echo()
        click.secho("   Run this yourself:", fg="yellow")
        click.echo(f"   {result.manual_command}")
    sys.exit(1)
