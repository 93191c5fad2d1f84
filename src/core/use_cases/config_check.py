"""
Config check use case — validate targets.yml and report issues.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

from src.adapters.targets.base import TargetToolkit, validate_port_spacing
from src.core.config.loader import ConfigError, find_config_file, load_config
from src.core.models.config import DeployConfig, DockerTargetConfig, LocalTargetConfig


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    config: DeployConfig | None = None
    config_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "target_count": len(self.config.targets) if self.config else 0,
            "targets": [
                {"name": t.name, "type": t.type, "profile": t.profile_name}
                for t in (self.config.targets if self.config else [])
            ],
        }


def _duplicates(values: list[str]) -> list[str]:
    return sorted(v for v, n in Counter(values).items() if n > 1)


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate the targets configuration and report issues.

    Errors make the file unusable (bad schema, duplicate names, profiles
    that collapse to the same resource names, host port clashes).
    Warnings are worth a look but do not block anything.
    """
    result = ConfigCheckResult()

    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        result.errors.append("No targets.yml found.")
        return result
    result.config_path = config_path

    try:
        config = load_config(config_path)
    except ConfigError as e:
        result.errors.append(str(e))
        return result
    result.config = config

    if not config.targets:
        result.warnings.append("No targets defined. There is nothing to deploy.")

    dupes = _duplicates([t.name for t in config.targets])
    if dupes:
        result.errors.append(f"Duplicate target names: {', '.join(dupes)}")

    # Profiles map to resource names; two targets of one type must not share them
    for target_type in sorted({t.type for t in config.targets}):
        profiles = []
        for t in config.targets:
            if t.type != target_type:
                continue
            try:
                profiles.append(TargetToolkit.sanitize_name(t.profile_name))
            except ValueError:
                result.errors.append(f"Target '{t.name}' has an unusable profile name: {t.profile_name!r}")
        dupes = _duplicates(profiles)
        if dupes:
            result.errors.append(f"Duplicate {target_type} profiles: {', '.join(dupes)}")

    # Gateways sharing this host need room between their ports
    host_ports = [
        t.gateway_port for t in config.targets
        if isinstance(t, LocalTargetConfig | DockerTargetConfig)
    ]
    spacing = validate_port_spacing(host_ports)
    for c in spacing.conflicts:
        result.errors.append(
            f"Gateway ports {c.port_a} and {c.port_b} are only {c.spacing} apart on this host"
        )

    for t in config.targets:
        if isinstance(t, DockerTargetConfig) and t.sandbox == "off":
            result.warnings.append(f"Target '{t.name}' runs without a sandbox runtime.")
        if t.type == "ecs-ec2" and t.allowed_cidr == "0.0.0.0/0":
            result.warnings.append(f"Target '{t.name}' accepts traffic from any address (0.0.0.0/0).")

    result.valid = not result.errors
    return result
