"""
CLI command for listing a provider's resource tiers.
"""

from __future__ import annotations

import json

import click

from src.core.models.resources import TIER_TABLES, get_tier_table


@click.command()
@click.argument("provider", type=click.Choice(sorted(TIER_TABLES)))
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def tiers(provider: str, as_json: bool) -> None:
    """Show the named resource tiers for PROVIDER."""
    table = get_tier_table(provider)

    if as_json:
        click.echo(json.dumps([t.model_dump(mode="json") for t in table], indent=2))
        return

    click.secho(f"📐 {provider} tiers:", fg="cyan", bold=True)
    for t in table:
        native = f"  ({t.native_size})" if t.native_size else ""
        click.echo(f"   • {t.tier:<12} {t.cpu:>5} cpu  {t.memory:>5} MiB  {t.data_disk_size_gb:>3} GB{native}")
    click.echo()
