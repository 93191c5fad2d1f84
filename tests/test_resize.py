"""
Tests for the resize orchestrator.
"""

import asyncio

import pytest

from src.core.models.resources import GCE_TIERS, ResourceSpec
from src.core.services.resize import ESTIMATED_DOWNTIME, ResizeOrchestrator


class FakeCompute:
    """A resizable unit that records each step and can fail on one."""

    def __init__(self, size="e2-small", disk=10, fail_on=None):
        self.size = size
        self.disk = disk
        self.running = True
        self.fail_on = fail_on or {}
        self.steps: list[str] = []

    def _step(self, name):
        self.steps.append(name)
        error = self.fail_on.pop(name, None)
        if error:
            raise RuntimeError(error)

    async def stop(self):
        self._step("stop")
        self.running = False

    async def start(self):
        self._step("start")
        self.running = True

    async def get_size(self):
        return self.size

    async def set_size(self, native_size):
        self._step("set_size")
        assert not self.running
        self.size = native_size

    async def get_disk_size_gb(self):
        return self.disk

    async def resize_disk(self, size_gb):
        self._step("resize_disk")
        self.disk = size_gb


def update(compute, on_log=None, **spec):
    orchestrator = ResizeOrchestrator(compute, GCE_TIERS, on_log=on_log)
    return asyncio.run(orchestrator.update_resources(ResourceSpec(**spec)))


class TestUpdateResources:
    def test_full_sequence(self, on_log, log_lines):
        compute = FakeCompute()
        result = update(compute, on_log, cpu=2048, memory=4096, data_disk_size_gb=20)

        assert result.success
        assert result.message == "Resources updated to e2-medium"
        assert result.requires_restart
        assert result.estimated_downtime == ESTIMATED_DOWNTIME
        assert compute.steps == ["stop", "set_size", "resize_disk", "start"]
        assert (compute.size, compute.disk, compute.running) == ("e2-medium", 20, True)
        steps = [line for line, _ in log_lines if line.startswith("[")]
        assert [s[:5] for s in steps] == ["[1/4]", "[2/4]", "[3/4]", "[4/4]"]

    def test_same_disk_is_not_resized(self):
        compute = FakeCompute()
        result = update(compute, cpu=256, memory=1024, data_disk_size_gb=10)
        assert result.success
        assert compute.steps == ["stop", "set_size", "start"]
        assert compute.size == "e2-micro"

    def test_custom_spec_rounds_up_to_covering_tier(self):
        compute = FakeCompute(size="e2-micro")
        update(compute, cpu=1024, memory=1536)
        assert compute.size == "e2-small"

    def test_oversized_spec_gets_largest_tier(self):
        compute = FakeCompute()
        update(compute, cpu=8192, memory=32768)
        assert compute.size == "e2-medium"

    def test_shrinking_disk_is_rejected_untouched(self):
        compute = FakeCompute(disk=30)
        result = update(compute, cpu=2048, memory=2048, data_disk_size_gb=10)
        assert not result.success
        assert result.message.startswith("Cannot shrink data disk from 30 GB to 10 GB")
        assert compute.steps == []

    def test_stop_failure_leaves_unit_alone(self):
        compute = FakeCompute(fail_on={"stop": "quota"})
        result = update(compute, cpu=2048, memory=4096)
        assert result.message == "Resource update failed while stopping: quota"
        assert compute.steps == ["stop"]

    def test_set_size_failure_restarts_unit(self, on_log, log_lines):
        compute = FakeCompute(fail_on={"set_size": "machine type unavailable"})
        result = update(compute, on_log, cpu=2048, memory=4096)
        assert not result.success
        assert result.message == "Resource update failed while changing size: machine type unavailable"
        assert compute.steps == ["stop", "set_size", "start"]
        assert compute.running
        assert compute.size == "e2-small"
        assert ("Compute unit restarted after failed resize", "stdout") in log_lines

    def test_disk_failure_restarts_unit(self):
        compute = FakeCompute(fail_on={"resize_disk": "disk busy"})
        result = update(compute, cpu=2048, memory=4096, data_disk_size_gb=50)
        assert result.message == "Resource update failed while growing data disk: disk busy"
        assert compute.running

    def test_failed_recovery_is_reported(self, on_log, log_lines):
        compute = FakeCompute(fail_on={"set_size": "boom"})
        compute.fail_on["start"] = "still broken"
        result = update(compute, on_log, cpu=2048, memory=4096)
        assert result.message == "Resource update failed while changing size: boom"
        assert any(line.startswith("Recovery failed: still broken") for line, _ in log_lines)


class TestGetResources:
    def test_reads_through_tier_table(self):
        orchestrator = ResizeOrchestrator(FakeCompute(size="e2-medium", disk=40), GCE_TIERS)
        spec = asyncio.run(orchestrator.get_resources())
        assert spec == ResourceSpec(cpu=2048, memory=4096, data_disk_size_gb=40)

    def test_missing_disk_uses_tier_default(self):
        orchestrator = ResizeOrchestrator(FakeCompute(size="e2-micro", disk=None), GCE_TIERS)
        assert asyncio.run(orchestrator.get_resources()).data_disk_size_gb == 5

    def test_unknown_size(self):
        orchestrator = ResizeOrchestrator(FakeCompute(size="n2-standard-8"), GCE_TIERS)
        with pytest.raises(ValueError, match="n2-standard-8"):
            asyncio.run(orchestrator.get_resources())
