"""
Central data registry for static templates.

Loads stack templates and bootstrap scripts from ``src/core/data/templates/``
once at first access and caches them for the process lifetime. Template
content is configuration data; targets only fill in parameters.

Usage::

    from src.core.data import get_registry

    registry = get_registry()
    body = registry.template_body("shared_infra")        # JSON string
    script = registry.render_startup_script("gce", image=..., ...)
"""

from __future__ import annotations

import json
import logging
from functools import cached_property
from pathlib import Path
from string import Template

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).parent


def _load_json(relative_path: str) -> dict:
    """Load a JSON file relative to the data directory."""
    path = _DATA_DIR / relative_path
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _load_text(relative_path: str) -> str:
    return (_DATA_DIR / relative_path).read_text(encoding="utf-8")


class DataRegistry:
    """Registry for stack templates and bootstrap scripts.

    Each property lazily loads its file on first access and caches the
    result for the lifetime of the instance.
    """

    # ── Stack templates ──────────────────────────────────────────

    @cached_property
    def shared_infra_template(self) -> dict:
        """Per-region shared VPC + IAM stack."""
        data = _load_json("templates/shared_infra.json")
        logger.debug("Loaded shared infra template (%d resources)", len(data.get("Resources", {})))
        return data

    @cached_property
    def ecs_ec2_bot_template(self) -> dict:
        """Per-bot ECS-on-EC2 stack."""
        data = _load_json("templates/ecs_ec2_bot.json")
        logger.debug("Loaded ECS bot template (%d resources)", len(data.get("Resources", {})))
        return data

    def template_body(self, name: str) -> str:
        """Serialized template for a stack service call."""
        templates = {
            "shared_infra": self.shared_infra_template,
            "ecs_ec2_bot": self.ecs_ec2_bot_template,
        }
        if name not in templates:
            raise KeyError(f"Unknown template '{name}'. Valid: {', '.join(sorted(templates))}")
        return json.dumps(templates[name], separators=(",", ":"), sort_keys=True)

    # ── VM bootstrap ─────────────────────────────────────────────

    @cached_property
    def gce_startup_script(self) -> Template:
        return Template(_load_text("templates/gce_startup.sh"))

    @cached_property
    def azure_startup_script(self) -> Template:
        """Custom data for Azure VMs; cloud-init runs it once on first boot."""
        return Template(_load_text("templates/azure_startup.sh"))

    def render_startup_script(self, provider: str, **values: str | int) -> str:
        """Fill a VM startup script; every placeholder must be supplied."""
        scripts = {"gce": self.gce_startup_script, "azure": self.azure_startup_script}
        if provider not in scripts:
            raise KeyError(f"No startup script for '{provider}'. Valid: {', '.join(sorted(scripts))}")
        return scripts[provider].substitute({k: str(v) for k, v in values.items()})

    # ── Local service ────────────────────────────────────────────

    @cached_property
    def systemd_unit(self) -> Template:
        return Template(_load_text("templates/gateway.service"))

    def render_systemd_unit(self, **values: str | int) -> str:
        return self.systemd_unit.substitute({k: str(v) for k, v in values.items()})


# ── Module-level singleton ───────────────────────────────────────

_registry: DataRegistry | None = None


def get_registry() -> DataRegistry:
    """Return the process-level DataRegistry singleton."""
    global _registry  # noqa: PLW0603
    if _registry is None:
        _registry = DataRegistry()
    return _registry
