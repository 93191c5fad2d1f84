"""
CLI commands for deployment targets.

Thin wrappers over the target registry: each command loads targets.yml,
builds the named target and runs one lifecycle operation on it.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click


def _fail(message: str) -> None:
    click.secho(f"❌ {message}", fg="red")
    sys.exit(1)


def _load_config(ctx: click.Context):
    from src.core.config.loader import ConfigError, load_config

    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        _fail(str(e))


def _build_target(ctx: click.Context, name: str, *, stream: bool = True):
    """Build the target named ``name``; progress lines go to stderr when ``stream``."""
    from src.adapters.registry import create_target
    from src.core.config.loader import ConfigError, get_target_config

    config = _load_config(ctx)
    try:
        target_config = get_target_config(config, name)
    except ConfigError as e:
        _fail(str(e))

    target = create_target(target_config, mock=ctx.obj.get("mock", False))
    if stream and not ctx.obj.get("quiet"):
        target.set_log_callback(
            lambda line, s: click.secho(f"   {line}", err=True, fg="yellow" if s == "stderr" else None)
        )
    return target_config, target


def _dump(model: Any) -> None:
    click.echo(json.dumps(model.model_dump(mode="json"), indent=2))


@click.group()
def target() -> None:
    """Deployment targets — install, configure, run, observe, resize."""


# ── Discover ────────────────────────────────────────────────────


@target.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_targets(ctx: click.Context, as_json: bool) -> None:
    """List targets configured in targets.yml."""
    config = _load_config(ctx)

    if as_json:
        click.echo(json.dumps([t.model_dump(mode="json") for t in config.targets], indent=2))
        return

    if not config.targets:
        click.secho("No targets configured.", fg="yellow")
        return

    click.secho(f"🎯 Targets ({len(config.targets)}):", fg="cyan", bold=True)
    for t in config.targets:
        click.echo(f"   • {t.name:<20} [{t.type}]  profile={t.profile_name}  port={t.gateway_port}")
    click.echo()


@target.command("types")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def list_types(as_json: bool) -> None:
    """List supported target types."""
    from src.adapters.registry import get_target_registry

    items = get_target_registry().list_metadata()

    if as_json:
        click.echo(json.dumps([m.model_dump(mode="json") for m in items], indent=2))
        return

    click.secho("🧩 Target types:", fg="cyan", bold=True)
    for m in items:
        click.echo(f"   • {m.type:<10} {m.display_name} ({m.status})")
        click.echo(f"     {m.description}")
        if m.tier_provider:
            click.echo(f"     Tiers: gatewayctl tiers {m.tier_provider}")
    click.echo()


# ── Observe ─────────────────────────────────────────────────────


_STATE_ICONS = {"running": "🟢", "stopped": "🔴", "error": "⚠️ ", "not-installed": "⚪"}


@target.command("status")
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show the runtime state of a target."""
    _, t = _build_target(ctx, name, stream=False)
    result = asyncio.run(t.get_status())

    if as_json:
        _dump(result)
        return

    click.secho(f"{_STATE_ICONS.get(result.state, '⚪')} {name}: {result.state}", bold=True)
    if result.pid:
        click.echo(f"   PID:    {result.pid}")
    if result.uptime is not None:
        click.echo(f"   Uptime: {result.uptime}s")
    if result.gateway_port:
        click.echo(f"   Port:   {result.gateway_port}")
    if result.error:
        click.secho(f"   Error:  {result.error}", fg="red")


@target.command("logs")
@click.argument("name")
@click.option("--lines", "-n", type=int, default=None, help="Number of lines (default: 100).")
@click.option("--filter", "pattern", default=None, help="Case-insensitive regex filter.")
@click.option("--since", type=click.DateTime(), default=None, help="Only lines after this time.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def logs(ctx: click.Context, name: str, lines: int | None, pattern: str | None, since, as_json: bool) -> None:
    """Show recent gateway log lines."""
    from src.core.models.target import LogOptions

    _, t = _build_target(ctx, name, stream=False)
    result = asyncio.run(t.get_logs(LogOptions(lines=lines, filter=pattern, since=since)))

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return
    for line in result:
        click.echo(line)


@target.command("endpoint")
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def endpoint(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show the gateway's WebSocket endpoint."""
    from src.core.errors import TargetError

    _, t = _build_target(ctx, name, stream=False)
    try:
        result = asyncio.run(t.get_endpoint())
    except TargetError as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps({**result.model_dump(mode="json"), "url": result.url}, indent=2))
        return
    click.echo(result.url)


# ── Provision ───────────────────────────────────────────────────


@target.command("install")
@click.argument("name")
@click.option("--version", "version", default=None, help="Gateway version to install.")
@click.option("--port", type=int, default=None, help="Gateway port (default: from config).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(ctx: click.Context, name: str, version: str | None, port: int | None, as_json: bool) -> None:
    """Install the gateway on a target (idempotent)."""
    from src.core.models.target import InstallOptions

    cfg, t = _build_target(ctx, name, stream=not as_json)
    options = InstallOptions(
        profile_name=cfg.profile_name,
        port=port or cfg.gateway_port,
        version=version,
    )
    result = asyncio.run(t.install(options))

    if as_json:
        _dump(result)
        sys.exit(0 if result.success else 1)

    if not result.success:
        _fail(result.message)
    click.secho(f"✅ {result.message}", fg="green")
    click.echo(f"   Instance: {result.instance_id}")
    if result.service_name:
        click.echo(f"   Service:  {result.service_name}")
    if result.install_path:
        click.echo(f"   Path:     {result.install_path}")


def _read_config_file(path: Path) -> dict[str, Any]:
    import yaml

    # YAML is a superset of JSON
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must contain a mapping", param_hint="--file")
    return data


@target.command("configure")
@click.argument("name")
@click.option(
    "--file",
    "-f",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Gateway config (JSON or YAML).",
)
@click.option("--env", "-e", "env_pairs", multiple=True, help="Environment variable KEY=VALUE.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def configure(
    ctx: click.Context,
    name: str,
    config_file: Path | None,
    env_pairs: tuple[str, ...],
    as_json: bool,
) -> None:
    """Push gateway configuration to a target."""
    from src.core.models.target import ConfigurePayload

    environment: dict[str, str] = {}
    for pair in env_pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="--env")
        environment[key] = value

    cfg, t = _build_target(ctx, name, stream=not as_json)
    payload = ConfigurePayload(
        profile_name=cfg.profile_name,
        gateway_port=cfg.gateway_port,
        environment=environment,
        config=_read_config_file(config_file) if config_file else {},
    )
    result = asyncio.run(t.configure(payload))

    if as_json:
        _dump(result)
        sys.exit(0 if result.success else 1)

    if not result.success:
        _fail(result.message)
    click.secho(f"✅ {result.message}", fg="green")
    if result.requires_restart:
        click.secho(f"   Restart to apply: gatewayctl target restart {name}", fg="yellow")


@target.command("destroy")
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def destroy(ctx: click.Context, name: str, yes: bool) -> None:
    """Remove everything the target provisioned."""
    if not yes:
        click.confirm(f"Destroy all resources of target '{name}'?", abort=True)

    _, t = _build_target(ctx, name)
    asyncio.run(t.destroy())
    click.secho(f"🗑️  Destroyed {name}", fg="green")


# ── Lifecycle ───────────────────────────────────────────────────


def _lifecycle(ctx: click.Context, name: str, verb: str) -> None:
    from src.core.errors import TargetError

    _, t = _build_target(ctx, name)
    try:
        asyncio.run(getattr(t, verb)())
    except TargetError as e:
        _fail(str(e))
    click.secho(f"✅ {name}: {verb} done", fg="green")


@target.command("start")
@click.argument("name")
@click.pass_context
def start(ctx: click.Context, name: str) -> None:
    """Start the gateway."""
    _lifecycle(ctx, name, "start")


@target.command("stop")
@click.argument("name")
@click.pass_context
def stop(ctx: click.Context, name: str) -> None:
    """Stop the gateway."""
    _lifecycle(ctx, name, "stop")


@target.command("restart")
@click.argument("name")
@click.pass_context
def restart(ctx: click.Context, name: str) -> None:
    """Restart the gateway."""
    _lifecycle(ctx, name, "restart")


# ── Resources ───────────────────────────────────────────────────


def _tier_table(name: str, target_type: str):
    from src.adapters.registry import get_target_registry
    from src.core.models.resources import get_tier_table

    metadata = get_target_registry().get_metadata(target_type)
    if metadata is None or not metadata.tier_provider:
        _fail(f"Target '{name}' ({target_type}) has no resource tiers")
    return get_tier_table(metadata.tier_provider)


@target.command("resize")
@click.argument("name")
@click.option("--tier", type=click.Choice(["light", "standard", "performance"]), default=None)
@click.option("--cpu", type=int, default=None, help="CPU units (1024 = 1 vCPU).")
@click.option("--memory", type=int, default=None, help="Memory in MiB.")
@click.option("--disk", "disk_gb", type=int, default=None, help="Data disk size in GB.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def resize(
    ctx: click.Context,
    name: str,
    tier: str | None,
    cpu: int | None,
    memory: int | None,
    disk_gb: int | None,
    as_json: bool,
) -> None:
    """Change the compute allocation of a target."""
    from src.adapters.targets.base import SupportsResourceUpdates
    from src.core.models.resources import ResourceSpec

    cfg, t = _build_target(ctx, name, stream=not as_json)
    if not isinstance(t, SupportsResourceUpdates):
        _fail(f"Target '{name}' ({cfg.type}) does not support resizing")

    if tier:
        spec = next(s for s in _tier_table(name, cfg.type) if s.tier == tier).to_spec()
        if disk_gb:
            spec.data_disk_size_gb = disk_gb
    elif cpu and memory:
        spec = ResourceSpec(cpu=cpu, memory=memory, data_disk_size_gb=disk_gb)
    else:
        raise click.UsageError("Give either --tier or both --cpu and --memory")

    result = asyncio.run(t.update_resources(spec))

    if as_json:
        _dump(result)
        sys.exit(0 if result.success else 1)

    if not result.success:
        _fail(result.message)
    click.secho(f"✅ {result.message}", fg="green")
    if result.estimated_downtime:
        click.echo(f"   Estimated downtime: {result.estimated_downtime}s")


@target.command("resources")
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def resources(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show the current compute allocation of a target."""
    from src.adapters.targets.base import SupportsResourceQuery
    from src.core.errors import TargetError
    from src.core.models.resources import spec_to_tier

    cfg, t = _build_target(ctx, name, stream=False)
    if not isinstance(t, SupportsResourceQuery):
        _fail(f"Target '{name}' ({cfg.type}) does not report resources")

    try:
        spec = asyncio.run(t.get_resources())
    except (TargetError, ValueError) as e:
        _fail(str(e))
    tier = spec_to_tier(spec, _tier_table(name, cfg.type))

    if as_json:
        click.echo(json.dumps({**spec.model_dump(mode="json"), "tier": str(tier)}, indent=2))
        return

    click.secho(f"📐 {name} ({tier})", fg="cyan", bold=True)
    click.echo(f"   CPU:    {spec.cpu} units")
    click.echo(f"   Memory: {spec.memory} MiB")
    if spec.data_disk_size_gb:
        click.echo(f"   Disk:   {spec.data_disk_size_gb} GB")
