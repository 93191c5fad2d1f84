"""
Resource models — compute allocation specs and the named tier tables.

A ``ResourceSpec`` is what a caller asks for (cpu units, memory MiB,
optional data disk). Each provider maps the closed set of tiers to its
own native sizing (task cpu/memory, machine type, VM size). Anything
that does not match a tier exactly is ``custom``.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class Tier(StrEnum):
    LIGHT = "light"
    STANDARD = "standard"
    PERFORMANCE = "performance"
    CUSTOM = "custom"


class ResourceSpec(BaseModel):
    """Desired compute allocation."""

    cpu: int = Field(gt=0)                   # cpu units (1024 = 1 vCPU)
    memory: int = Field(gt=0)                # MiB
    data_disk_size_gb: int | None = Field(default=None, gt=0)


class ResourceUpdateResult(BaseModel):
    success: bool
    message: str
    requires_restart: bool = False
    estimated_downtime: int | None = None    # seconds


class TierSpec(BaseModel):
    """A named tier and its provider-native sizing."""

    tier: Tier
    cpu: int
    memory: int
    data_disk_size_gb: int
    native_size: str | None = None           # machine type / VM size

    def to_spec(self) -> ResourceSpec:
        return ResourceSpec(
            cpu=self.cpu,
            memory=self.memory,
            data_disk_size_gb=self.data_disk_size_gb,
        )


# ── Tier tables ─────────────────────────────────────────────────

ECS_TIERS: list[TierSpec] = [
    TierSpec(tier=Tier.LIGHT, cpu=512, memory=1024, data_disk_size_gb=5),
    TierSpec(tier=Tier.STANDARD, cpu=1024, memory=2048, data_disk_size_gb=10),
    TierSpec(tier=Tier.PERFORMANCE, cpu=2048, memory=4096, data_disk_size_gb=20),
]

GCE_TIERS: list[TierSpec] = [
    TierSpec(tier=Tier.LIGHT, cpu=256, memory=1024, data_disk_size_gb=5, native_size="e2-micro"),
    TierSpec(tier=Tier.STANDARD, cpu=2048, memory=2048, data_disk_size_gb=10, native_size="e2-small"),
    TierSpec(tier=Tier.PERFORMANCE, cpu=2048, memory=4096, data_disk_size_gb=20, native_size="e2-medium"),
]

AZURE_TIERS: list[TierSpec] = [
    TierSpec(tier=Tier.LIGHT, cpu=1024, memory=1024, data_disk_size_gb=5, native_size="Standard_B1s"),
    TierSpec(tier=Tier.STANDARD, cpu=2048, memory=2048, data_disk_size_gb=10, native_size="Standard_B2s"),
    TierSpec(tier=Tier.PERFORMANCE, cpu=2048, memory=4096, data_disk_size_gb=20, native_size="Standard_D2s_v3"),
]

TIER_TABLES: dict[str, list[TierSpec]] = {
    "ecs": ECS_TIERS,
    "gce": GCE_TIERS,
    "azure": AZURE_TIERS,
}


def get_tier_table(provider: str) -> list[TierSpec]:
    """Look up a provider's tier table by name."""
    try:
        return TIER_TABLES[provider]
    except KeyError:
        raise ValueError(
            f"Unknown provider '{provider}'. Valid: {', '.join(sorted(TIER_TABLES))}"
        ) from None


def spec_to_tier(spec: ResourceSpec, tiers: list[TierSpec]) -> Tier:
    """Classify a spec as a named tier, or ``custom``.

    A tier matches when cpu and memory are equal and the disk size is
    either unset or equal too.
    """
    for t in tiers:
        if t.cpu != spec.cpu or t.memory != spec.memory:
            continue
        if spec.data_disk_size_gb is None or spec.data_disk_size_gb == t.data_disk_size_gb:
            return t.tier
    return Tier.CUSTOM


def nearest_tier(spec: ResourceSpec, tiers: list[TierSpec]) -> TierSpec:
    """Pick the tier that best serves ``spec``.

    Exact cpu/memory match first. Otherwise the smallest tier (ordered by
    memory, then cpu) that covers both; when nothing covers the request,
    the largest tier.
    """
    if not tiers:
        raise ValueError("Tier table is empty")

    for t in tiers:
        if t.cpu == spec.cpu and t.memory == spec.memory:
            return t

    ordered = sorted(tiers, key=lambda t: (t.memory, t.cpu))
    for t in ordered:
        if t.memory >= spec.memory and t.cpu >= spec.cpu:
            return t
    return ordered[-1]


def tier_for_native_size(native_size: str, tiers: list[TierSpec]) -> TierSpec | None:
    """Reverse lookup: machine type / VM size → tier."""
    for t in tiers:
        if t.native_size == native_size:
            return t
    return None
