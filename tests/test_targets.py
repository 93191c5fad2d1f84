"""
Tests for the deployment targets and their shared toolkit.

Every target runs against in-memory provider services or a scripted
command runner; nothing here touches docker, systemd or a cloud.
"""

import asyncio
import base64
import json
from datetime import datetime, timezone

import pytest

from src.adapters.base import InstanceInfo
from src.adapters.mock import InMemoryClusterService
from src.adapters.targets.azure_vm import AzureVmTarget
from src.adapters.targets.base import TargetToolkit, capabilities_of, validate_port_spacing
from src.adapters.targets.docker import DockerContainerTarget
from src.adapters.targets.ecs_ec2 import EcsEc2Target
from src.adapters.targets.gce import GceVmTarget
from src.adapters.targets.local import LocalProcessTarget
from src.core.errors import TargetError
from src.core.models.config import (
    AzureVmTargetConfig,
    DockerTargetConfig,
    EcsEc2TargetConfig,
    GceTargetConfig,
    LocalTargetConfig,
)
from src.core.models.resources import ResourceSpec
from src.core.models.stack import StackStatus
from src.core.models.target import ConfigurePayload, InstallOptions, LogOptions, TargetState
from src.core.services.shared_infra import SHARED_STACK_NAME

WITH_SYSBOX = json.dumps({"runc": {}, "sysbox-runc": {"path": "/usr/bin/sysbox-runc"}})


def run(coro):
    return asyncio.run(coro)


# ── Toolkit ─────────────────────────────────────────────────────


class TestToolkit:
    def test_sanitize_name(self):
        assert TargetToolkit.sanitize_name("My Bot!") == "my-bot"
        assert TargetToolkit.sanitize_name("--a__b--") == "a-b"
        assert TargetToolkit.sanitize_name("42bot") == "a42bot"

    def test_sanitize_rejects_empty(self):
        with pytest.raises(ValueError, match="no usable characters"):
            TargetToolkit.sanitize_name("!!!")

    def test_resource_name(self):
        toolkit = TargetToolkit()
        assert toolkit.resource_name("alpha") == "gateway-alpha"
        assert toolkit.resource_name("alpha", "data") == "gateway-alpha-data"
        long_name = toolkit.resource_name("x" * 80)
        assert len(long_name) == 63
        assert not long_name.endswith("-")

    def test_transform_config(self):
        config = {
            "gateway": {"host": "0.0.0.0"},
            "sandbox": {"mode": "all"},
            "channels": {"slack": {"enabled": True, "token": "t"}},
            "skills": {"allowUnverified": True, "dirs": ["a"]},
        }
        result = TargetToolkit.transform_config(config)
        assert result["gateway"] == {"bind": "0.0.0.0"}
        assert result["agents"]["defaults"]["sandbox"] == {"mode": "all"}
        assert result["channels"]["slack"] == {"token": "t"}
        assert result["skills"] == {"dirs": ["a"]}
        assert config["gateway"] == {"host": "0.0.0.0"}

    def test_filter_lines(self):
        lines = ["INFO ready", "ERROR boom", "warn [x]"]
        assert TargetToolkit.filter_lines(lines, "error") == ["ERROR boom"]
        assert TargetToolkit.filter_lines(lines, "[x") == ["warn [x]"]
        assert TargetToolkit.filter_lines(lines, None) == lines

    def test_log_callback(self, on_log, log_lines):
        toolkit = TargetToolkit(on_log=on_log)
        toolkit.log("hello")
        toolkit.set_log_callback(None)
        toolkit.log("dropped")
        assert log_lines == [("hello", "stdout")]

    def test_port_spacing(self):
        result = validate_port_spacing([18789, 18829, 18799])
        assert not result.valid
        assert [(c.port_a, c.port_b, c.spacing) for c in result.conflicts] == [(18789, 18799, 10)]
        assert validate_port_spacing([18789, 18809]).valid


# ── Local ───────────────────────────────────────────────────────


@pytest.fixture
def local(tmp_path, runner):
    config = LocalTargetConfig(name="dev", profile_name="Alpha Bot")
    return LocalProcessTarget(config, runner, home=tmp_path, init_system=lambda: "systemd")


class TestLocalTarget:
    def test_names(self, local, tmp_path):
        assert local.service_name == "gateway-alpha-bot.service"
        assert local.install_path == tmp_path / ".local" / "share" / "gateway" / "alpha-bot"

    def test_install(self, local, runner):
        runner.respond("npm install")
        runner.respond("systemctl --user")

        result = run(local.install(InstallOptions(profile_name="Alpha Bot", version="1.2.3")))
        assert result.success
        assert result.service_name == "gateway-alpha-bot.service"
        assert runner.ran(f"npm install --prefix {local.install_path} openclaw@1.2.3")
        unit = local.unit_path.read_text()
        assert "gateway --port 18789" in unit
        assert f"GATEWAY_CONFIG_PATH={local.config_path}" in unit
        assert runner.ran("systemctl --user enable gateway-alpha-bot.service")

    def test_install_requires_systemd(self, tmp_path, runner):
        target = LocalProcessTarget(
            LocalTargetConfig(name="dev", profile_name="a"), runner, home=tmp_path, init_system=lambda: "openrc"
        )
        result = run(target.install(InstallOptions(profile_name="a")))
        assert not result.success
        assert result.message == "Local target requires systemd (detected: openrc)"
        assert runner.commands == []

    def test_install_npm_failure(self, local, runner):
        runner.fail("npm install", "npm ERR! 404")
        result = run(local.install(InstallOptions(profile_name="Alpha Bot")))
        assert not result.success
        assert result.message == "Failed to install openclaw: npm ERR! 404"

    def test_configure(self, local):
        payload = ConfigurePayload(
            profile_name="Alpha Bot",
            gateway_port=18800,
            environment={"API_KEY": "k"},
            config={"gateway": {"host": "127.0.0.1"}},
        )
        result = run(local.configure(payload))
        assert result.success
        assert result.requires_restart
        written = json.loads(local.config_path.read_text())
        assert written["gateway"] == {"bind": "127.0.0.1", "port": 18800}
        assert written["env"] == {"API_KEY": "k"}

    def test_status_running(self, local, runner):
        runner.respond(
            "systemctl --user show",
            "ActiveState=active\nMainPID=4242\nActiveEnterTimestampMonotonic=0\nLoadState=loaded\n",
        )
        status = run(local.get_status())
        assert status.state == TargetState.RUNNING
        assert status.pid == 4242
        assert status.gateway_port == 18789

    def test_status_not_found(self, local, runner):
        runner.respond("systemctl --user show", "LoadState=not-found\nActiveState=inactive\n")
        assert run(local.get_status()).state == TargetState.NOT_INSTALLED

    def test_status_failed_unit(self, local, runner):
        runner.respond("systemctl --user show", "ActiveState=failed\nMainPID=0\nLoadState=loaded\n")
        status = run(local.get_status())
        assert status.state == TargetState.ERROR
        assert status.pid is None
        assert status.error == "Unit is failed"

    def test_start_failure_raises(self, local, runner):
        runner.fail("systemctl --user start", "Unit not found")
        with pytest.raises(TargetError, match="systemctl start gateway-alpha-bot.service failed"):
            run(local.start())

    def test_logs(self, local, runner):
        runner.respond("journalctl", "boot\nerror: bad token\nready\n")
        lines = run(local.get_logs(LogOptions(lines=50, filter="ERROR")))
        assert lines == ["error: bad token"]
        assert runner.ran("journalctl --user -u gateway-alpha-bot.service -n 50")

    def test_endpoint(self, local):
        assert run(local.get_endpoint()).url == "ws://localhost:18789"

    def test_destroy(self, local, runner):
        runner.respond("systemctl --user")
        local.install_path.mkdir(parents=True)
        local.unit_path.parent.mkdir(parents=True)
        local.unit_path.write_text("[Unit]")

        run(local.destroy())
        assert not local.unit_path.exists()
        assert not local.install_path.exists()
        assert runner.ran("systemctl --user disable gateway-alpha-bot.service")

    def test_destroy_twice(self, local, runner):
        run(local.destroy())
        run(local.destroy())


# ── Docker ──────────────────────────────────────────────────────


@pytest.fixture
def docker_target(tmp_path, runner, make_detector):
    def build(**overrides):
        config = DockerTargetConfig(
            name="box", profile_name="alpha", config_path=str(tmp_path / "cfg"), **overrides
        )
        return DockerContainerTarget(config, runner, make_detector())

    return build


class TestDockerTarget:
    def test_install_pins_version(self, docker_target, runner):
        runner.respond("docker pull")
        target = docker_target()
        result = run(target.install(InstallOptions(profile_name="alpha", version="1.2.3")))
        assert result.success
        assert result.instance_id == "gateway-alpha"
        assert runner.ran("docker pull ghcr.io/openclaw/openclaw:1.2.3")
        assert target.image == "ghcr.io/openclaw/openclaw:1.2.3"

    def test_pinned_version_survives_new_target(self, docker_target, runner, tmp_path):
        runner.respond("docker pull")
        runner.respond("docker run")
        run(docker_target().install(InstallOptions(profile_name="alpha", version="1.2.3")))
        assert (tmp_path / "cfg" / "image").read_text().strip() == "ghcr.io/openclaw/openclaw:1.2.3"

        fresh = docker_target(sandbox="off")
        assert fresh.image == "ghcr.io/openclaw/openclaw:1.2.3"
        run(fresh.start())
        cmd = next(c for c in runner.commands if c.startswith("docker run"))
        assert cmd.endswith("--restart unless-stopped ghcr.io/openclaw/openclaw:1.2.3")

    def test_install_without_version_uses_configured_image(self, docker_target, runner):
        runner.respond("docker pull")
        run(docker_target().install(InstallOptions(profile_name="alpha", version="1.2.3")))
        target = docker_target()
        run(target.install(InstallOptions(profile_name="alpha")))
        assert target.image == "ghcr.io/openclaw/openclaw:latest"
        assert docker_target().image == "ghcr.io/openclaw/openclaw:latest"

    def test_install_pull_failure(self, docker_target, runner):
        runner.fail("docker pull", "manifest unknown")
        result = run(docker_target().install(InstallOptions(profile_name="alpha")))
        assert not result.success
        assert result.message == "Failed to pull image: manifest unknown"

    def test_start_uses_sysbox_when_available(self, docker_target, runner):
        runner.respond("docker --version", "Docker version 24.0.7")
        runner.respond("docker info", WITH_SYSBOX)
        runner.respond("docker run")

        run(docker_target().start())
        cmd = next(c for c in runner.commands if c.startswith("docker run"))
        assert "--name gateway-alpha" in cmd
        assert "-p 18789:18789" in cmd
        assert "--runtime sysbox-runc" in cmd
        assert cmd.endswith("--restart unless-stopped ghcr.io/openclaw/openclaw:latest")

    def test_start_falls_back_to_default_runtime(self, docker_target, runner):
        runner.respond("docker --version", "Docker version 24.0.7")
        runner.respond("docker info", json.dumps({"runc": {}}))
        runner.respond("docker run")

        run(docker_target(network_name="gw-net").start())
        cmd = next(c for c in runner.commands if c.startswith("docker run"))
        assert "--runtime" not in cmd
        assert "--network gw-net" in cmd

    def test_required_sandbox_refuses_to_start(self, docker_target, runner):
        with pytest.raises(TargetError, match="Sysbox runtime is required"):
            run(docker_target(sandbox="required").start())
        assert not runner.ran("docker run")

    def test_sandbox_off_skips_detection(self, docker_target, runner):
        runner.respond("docker run")
        run(docker_target(sandbox="off").start())
        assert not runner.ran("docker info")

    def test_start_existing_container(self, docker_target, runner):
        runner.respond("docker inspect", "exited\n")
        runner.respond("docker start")
        run(docker_target().start())
        assert runner.ran("docker start gateway-alpha")
        assert not runner.ran("docker run")

    def test_start_running_container_is_noop(self, docker_target, runner):
        runner.respond("docker inspect", "running\n")
        run(docker_target().start())
        assert runner.commands == ["docker inspect --format {{.State.Status}} gateway-alpha"]

    def test_stop_failure(self, docker_target, runner):
        runner.fail("docker stop", "No such container: gateway-alpha")
        with pytest.raises(TargetError, match="docker stop failed"):
            run(docker_target().stop())

    def test_status(self, docker_target, runner):
        started = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.123456789Z")
        runner.respond("docker inspect", f"running|321|{started}\n")
        status = run(docker_target().get_status())
        assert status.state == TargetState.RUNNING
        assert status.pid == 321
        assert 0 <= status.uptime < 60

    def test_status_missing_container(self, docker_target):
        assert run(docker_target().get_status()).state == TargetState.NOT_INSTALLED

    def test_logs_merge_streams(self, docker_target, runner):
        runner.respond("docker logs", "out line\n", stderr="err line\n")
        assert run(docker_target().get_logs()) == ["out line", "err line"]
        assert runner.ran("docker logs --tail 100 gateway-alpha")

    def test_configure(self, docker_target, tmp_path):
        target = docker_target()
        payload = ConfigurePayload(profile_name="alpha", gateway_port=18789, config={"agents": {}})
        result = run(target.configure(payload))
        data = json.loads((tmp_path / "cfg" / "config.json").read_text())
        assert result.success
        assert data["profileName"] == "alpha"
        assert data["gatewayPort"] == 18789

    def test_destroy_tolerates_missing_container(self, docker_target, runner):
        runner.fail("docker rm", "No such container")
        run(docker_target().destroy())
        assert runner.ran("docker rm -f gateway-alpha")


# ── ECS on EC2 ──────────────────────────────────────────────────


@pytest.fixture
def ecs_cluster():
    return InMemoryClusterService(auto_create=True)


@pytest.fixture
def ecs(stacks, ecs_cluster, scaling, secrets, log_service, sleep, on_log):
    def build(**overrides):
        config = EcsEc2TargetConfig(name="aws", profile_name="alpha", **overrides)
        target = EcsEc2Target(
            config,
            stacks=stacks,
            cluster=ecs_cluster,
            scaling=scaling,
            secrets=secrets,
            logs=log_service,
            poll_interval=1,
            sleep=sleep,
        )
        target.set_log_callback(on_log)
        return target

    return build


class TestEcsEc2Target:
    def test_names(self, ecs):
        target = ecs()
        assert target.stack_name == "gateway-bot-alpha"
        assert target.cluster_name == "gateway-alpha"
        assert target.secret_name == "gateway/alpha/config"
        assert target.log_group == "/ecs/gateway-alpha"

    def test_install(self, ecs, stacks, secrets, log_lines):
        result = run(ecs().install(InstallOptions(profile_name="alpha")))

        assert result.success, result.message
        assert stacks.status_of(SHARED_STACK_NAME) == StackStatus.CREATE_COMPLETE
        assert stacks.status_of("gateway-bot-alpha") == StackStatus.CREATE_COMPLETE
        assert "gateway/alpha/config" in secrets.secrets

        params = next(c for c in stacks.calls("create_stack") if c["name"] == "gateway-bot-alpha")["parameters"]
        assert params["BotName"] == "alpha"
        assert (params["TaskCpu"], params["TaskMemory"], params["InstanceType"]) == ("1024", "2048", "t3.medium")
        assert params["VpcId"] == "vpc-123"
        assert params["PrivateSubnetIds"] == "subnet-priv-a,subnet-priv-b"
        assert params["SecretArn"] == "gateway/alpha/config"
        steps = [line[:5] for line, _ in log_lines if line.startswith("[") and line[1].isdigit()]
        assert steps == ["[1/4]", "[2/4]", "[3/4]", "[4/4]"]

    def test_install_is_idempotent(self, ecs, stacks):
        target = ecs(tier="light")
        run(target.install(InstallOptions(profile_name="alpha")))
        result = run(ecs(tier="light").install(InstallOptions(profile_name="alpha")))

        assert result.success
        bot_creates = [c for c in stacks.calls("create_stack") if c["name"] == "gateway-bot-alpha"]
        assert len(bot_creates) == 1
        assert bot_creates[0]["parameters"]["InstanceType"] == "t3.small"

    def test_install_recovers_rolled_back_stack(self, ecs, stacks):
        stacks.seed("gateway-bot-alpha", StackStatus.ROLLBACK_COMPLETE)
        result = run(ecs().install(InstallOptions(profile_name="alpha")))
        assert result.success
        assert stacks.call_count("delete_stack") == 1

    def test_install_failure_is_reported(self, ecs, stacks):
        stacks.plan_next("gateway-bot-alpha", "create",
                         [StackStatus.CREATE_IN_PROGRESS, StackStatus.ROLLBACK_COMPLETE],
                         reason="Resource handler returned message: quota exceeded")
        result = run(ecs().install(InstallOptions(profile_name="alpha")))
        assert not result.success
        assert "quota exceeded" in result.message

    def test_configure_stores_secret(self, ecs, secrets):
        target = ecs()
        payload = ConfigurePayload(profile_name="alpha", gateway_port=18789, config={"gateway": {"host": "0.0.0.0"}})
        assert run(target.configure(payload)).success
        assert run(target.configure(payload)).success
        stored = json.loads(secrets.secrets["gateway/alpha/config"])
        assert stored["gateway"] == {"bind": "0.0.0.0", "port": 18789}
        assert secrets.call_count("create_secret") == 1
        assert secrets.call_count("put_secret") == 1

    def test_start_stop_restart(self, ecs, ecs_cluster):
        target = ecs()
        run(target.start())
        run(target.stop())
        run(target.restart())
        calls = ecs_cluster.calls("update_service")
        assert [c["desired_count"] for c in calls] == [1, 0, None]
        assert calls[2]["force_new_deployment"]

    def test_stop_without_service_raises(self, stacks, cluster, scaling, secrets, log_service):
        target = EcsEc2Target(
            EcsEc2TargetConfig(name="aws", profile_name="alpha"),
            stacks=stacks, cluster=cluster, scaling=scaling, secrets=secrets, logs=log_service,
        )
        with pytest.raises(TargetError, match="Failed to update ECS service gateway-alpha"):
            run(target.stop())

    def test_status(self, stacks, cluster, scaling, secrets, log_service):
        target = EcsEc2Target(
            EcsEc2TargetConfig(name="aws", profile_name="alpha"),
            stacks=stacks, cluster=cluster, scaling=scaling, secrets=secrets, logs=log_service,
        )
        assert run(target.get_status()).state == TargetState.NOT_INSTALLED

        cluster.add_service("gateway-alpha", "gateway-alpha", desired_count=1)
        assert run(target.get_status()).state == TargetState.RUNNING

        cluster.add_service("gateway-alpha", "gateway-alpha", desired_count=0)
        assert run(target.get_status()).state == TargetState.STOPPED

        cluster.services[("gateway-alpha", "gateway-alpha")].desired_count = 1
        status = run(target.get_status())
        assert status.state == TargetState.ERROR
        assert status.error == "Service status: ACTIVE, running: 0/1"

    def test_logs(self, ecs, log_service):
        log_service.groups["/ecs/gateway-alpha"] = ["starting", "ERROR auth", "listening"]
        target = ecs()
        assert run(target.get_logs(LogOptions(filter="error"))) == ["ERROR auth"]
        assert run(target.get_logs(LogOptions(lines=1))) == ["listening"]

    def test_endpoint(self, ecs, stacks):
        stacks.seed("gateway-bot-alpha", StackStatus.CREATE_COMPLETE, outputs={"AlbDnsName": "alb.example.com"})
        assert run(ecs().get_endpoint()).url == "ws://alb.example.com:80"
        assert run(ecs(certificate_arn="arn:cert").get_endpoint()).url == "wss://alb.example.com:443"

    def test_endpoint_without_alb(self, ecs, stacks):
        stacks.seed("gateway-bot-alpha", StackStatus.CREATE_COMPLETE)
        with pytest.raises(TargetError, match="ALB DNS name"):
            run(ecs().get_endpoint())

    def test_destroy_removes_everything(self, ecs, stacks, secrets, log_service, ecs_cluster, scaling):
        target = ecs()
        run(target.install(InstallOptions(profile_name="alpha")))
        ecs_cluster.container_instances["gateway-alpha"] = ["arn:ci/1"]
        log_service.groups["/ecs/gateway-alpha"] = ["x"]

        run(target.destroy())
        assert stacks.status_of("gateway-bot-alpha") == StackStatus.ABSENT
        assert stacks.status_of(SHARED_STACK_NAME) == StackStatus.ABSENT
        assert "gateway/alpha/config" not in secrets.secrets
        assert "/ecs/gateway-alpha" not in log_service.groups
        assert ecs_cluster.container_instances["gateway-alpha"] == []
        assert scaling.calls("remove_scale_in_protection") == [{"group_name": "gateway-alpha-asg"}]

    def test_release_cluster_continues_past_failures(self, ecs, ecs_cluster, scaling, log_lines):
        ecs_cluster.container_instances["gateway-alpha"] = ["arn:ci/1", "arn:ci/2"]
        ecs_cluster.set_failure("deregister_container_instance", "InvalidParameterException: draining")

        run(ecs()._release_cluster())
        assert [c["instance"] for c in ecs_cluster.calls("deregister_container_instance")] == ["arn:ci/1", "arn:ci/2"]
        assert ecs_cluster.container_instances["gateway-alpha"] == ["arn:ci/1"]
        assert scaling.call_count("remove_scale_in_protection") == 1
        assert any("Could not deregister arn:ci/1" in line for line, stream in log_lines if stream == "stderr")

    def test_release_cluster_logs_listing_errors(self, ecs, ecs_cluster, scaling, log_lines):
        ecs_cluster.set_failure("list_container_instances", "AccessDeniedException")

        run(ecs()._release_cluster())
        assert scaling.call_count("remove_scale_in_protection") == 1
        assert ("Could not list container instances: AccessDeniedException", "stderr") in log_lines

    def test_destroy_keeps_shared_infra_for_other_bots(self, ecs, stacks):
        run(ecs().install(InstallOptions(profile_name="alpha")))
        stacks.seed("gateway-bot-beta", StackStatus.CREATE_COMPLETE)

        run(ecs().destroy())
        assert stacks.status_of(SHARED_STACK_NAME) == StackStatus.CREATE_COMPLETE

    def test_destroy_is_idempotent(self, ecs, log_lines):
        run(ecs().destroy())
        run(ecs().destroy())
        assert ("ECS EC2 resource destruction completed", "stdout") in log_lines

    def test_update_resources(self, ecs, stacks):
        target = ecs()
        run(target.install(InstallOptions(profile_name="alpha")))
        result = run(target.update_resources(ResourceSpec(cpu=2048, memory=4096)))

        assert result.success
        assert result.message == "ECS task resources updated to 2048 CPU units, 4096 MiB memory"
        params = stacks.calls("update_stack")[-1]["parameters"]
        assert (params["TaskCpu"], params["TaskMemory"]) == ("2048", "4096")

    def test_update_resources_without_changes(self, ecs):
        target = ecs()
        run(target.install(InstallOptions(profile_name="alpha")))
        result = run(target.update_resources(ResourceSpec(cpu=1024, memory=2048)))
        assert result.success
        assert result.message == "Resources already at requested levels"

    def test_update_resources_recovers_failed_stack(self, ecs, stacks):
        target = ecs()
        run(target.install(InstallOptions(profile_name="alpha")))
        stacks.seed("gateway-bot-alpha", StackStatus.UPDATE_ROLLBACK_FAILED)

        result = run(target.update_resources(ResourceSpec(cpu=2048, memory=4096)))
        assert result.success, result.message
        assert stacks.status_of("gateway-bot-alpha") == StackStatus.CREATE_COMPLETE
        assert stacks.calls("delete_stack")[-1]["name"] == "gateway-bot-alpha"
        params = stacks.calls("create_stack")[-1]["parameters"]
        assert (params["TaskCpu"], params["TaskMemory"]) == ("2048", "4096")

    def test_install_keeps_resized_task(self, ecs, stacks):
        target = ecs()
        run(target.install(InstallOptions(profile_name="alpha")))
        run(target.update_resources(ResourceSpec(cpu=2048, memory=4096)))
        stacks.set_outputs("gateway-bot-alpha", {"TaskCpu": "2048", "TaskMemory": "4096"})

        assert run(ecs().install(InstallOptions(profile_name="alpha"))).success
        bot_updates = [c for c in stacks.calls("update_stack") if c["name"] == "gateway-bot-alpha"]
        assert len(bot_updates) == 2
        assert (bot_updates[-1]["parameters"]["TaskCpu"], bot_updates[-1]["parameters"]["TaskMemory"]) == ("2048", "4096")

    def test_update_resources_without_shared_infra(self, ecs):
        result = run(ecs().update_resources(ResourceSpec(cpu=1024, memory=2048)))
        assert not result.success
        assert result.message.startswith("Failed to update resources:")

    def test_get_resources(self, ecs, stacks):
        assert run(ecs(tier="performance").get_resources()) == ResourceSpec(cpu=2048, memory=4096)
        stacks.seed("gateway-bot-alpha", StackStatus.UPDATE_COMPLETE, outputs={"TaskCpu": "512", "TaskMemory": "1024"})
        assert run(ecs().get_resources()) == ResourceSpec(cpu=512, memory=1024)

    def test_capabilities(self, ecs):
        assert capabilities_of(ecs()) == ["update_resources", "get_resources"]


# ── GCE ─────────────────────────────────────────────────────────


@pytest.fixture
def gce(compute, secrets, sleep, on_log):
    def build(**overrides):
        config = GceTargetConfig(name="gcp", profile_name="alpha", project_id="proj", **overrides)
        target = GceVmTarget(config, compute=compute, secrets=secrets, poll_interval=1, sleep=sleep)
        target.set_log_callback(on_log)
        return target

    return build


class TestGceTarget:
    def test_names(self, gce):
        target = gce()
        assert target.instance_name == "gateway-alpha"
        assert target.data_disk_name == "gateway-alpha-data"
        assert target.firewall_rule == "gateway-alpha-allow-gateway"
        assert target.secret_name == "gateway-alpha-config"

    def test_install(self, gce, compute, secrets):
        result = run(gce().install(InstallOptions(profile_name="alpha", port=18800)))

        assert result.success, result.message
        assert compute.instances["gateway-alpha"].running
        assert compute.disks["gateway-alpha-data"] == 10
        assert compute.firewall_rules["gateway-alpha-allow-gateway"] == (18800, "gateway-alpha")
        assert secrets.secrets["gateway-alpha-config"] == "{}"

    def test_install_reuses_stopped_instance(self, gce, compute):
        compute.instances["gateway-alpha"] = InstanceInfo(name="gateway-alpha", status="TERMINATED", machine_type="e2-small")
        result = run(gce().install(InstallOptions(profile_name="alpha")))
        assert result.success
        assert compute.call_count("create_instance") == 0
        assert compute.call_count("start_instance") == 1

    def test_install_failure(self, gce, compute):
        compute.set_failure("create_instance", "ZONE_RESOURCE_POOL_EXHAUSTED")
        result = run(gce().install(InstallOptions(profile_name="alpha")))
        assert not result.success
        assert result.message == "GCE install failed: ZONE_RESOURCE_POOL_EXHAUSTED"

    def test_configure(self, gce, secrets):
        payload = ConfigurePayload(profile_name="alpha", gateway_port=18789, environment={"TOKEN": "t"})
        assert run(gce().configure(payload)).success
        stored = json.loads(secrets.secrets["gateway-alpha-config"])
        assert stored == {"gateway": {"port": 18789}, "env": {"TOKEN": "t"}}

    def test_lifecycle(self, gce, compute):
        target = gce()
        run(target.install(InstallOptions(profile_name="alpha")))
        run(target.stop())
        assert run(target.get_status()).state == TargetState.STOPPED
        run(target.start())
        run(target.restart())
        assert run(target.get_status()).state == TargetState.RUNNING
        assert compute.call_count("reset_instance") == 1

    def test_stop_missing_instance(self, gce):
        with pytest.raises(TargetError, match="Failed to stop instance gateway-alpha"):
            run(gce().stop())

    def test_status(self, gce, compute):
        target = gce()
        assert run(target.get_status()).state == TargetState.NOT_INSTALLED
        compute.instances["gateway-alpha"] = InstanceInfo(name="gateway-alpha", status="PROVISIONING")
        status = run(target.get_status())
        assert status.state == TargetState.ERROR
        assert status.error == "Instance status: PROVISIONING"

    def test_logs(self, gce, compute):
        compute.serial_output["gateway-alpha"] = ["boot", "gateway: listening", "gateway: ready", "kernel"]
        target = gce()
        assert run(target.get_logs(LogOptions(filter="gateway"))) == ["gateway: listening", "gateway: ready"]
        assert run(target.get_logs(LogOptions(lines=1))) == ["kernel"]

    def test_endpoint(self, gce, compute):
        run(gce().install(InstallOptions(profile_name="alpha")))
        assert run(gce().get_endpoint()).url == "ws://203.0.113.10:18789"
        assert run(gce(custom_domain="bot.example.com").get_endpoint()).url == "wss://bot.example.com:443"

    def test_endpoint_without_ip(self, gce):
        with pytest.raises(TargetError, match="no external IP"):
            run(gce().get_endpoint())

    def test_destroy_continues_past_failures(self, gce, compute, secrets, log_lines):
        target = gce()
        run(target.install(InstallOptions(profile_name="alpha")))
        compute.set_failure("delete_instance", "resourceInUseByAnotherResource")

        run(target.destroy())
        assert "gateway-alpha-data" not in compute.disks
        assert compute.firewall_rules == {}
        assert secrets.secrets == {}
        assert (
            "Failed to delete instance gateway-alpha: resourceInUseByAnotherResource", "stderr"
        ) in log_lines

    def test_update_resources(self, gce, compute):
        target = gce()
        run(target.install(InstallOptions(profile_name="alpha")))
        result = run(target.update_resources(ResourceSpec(cpu=2048, memory=4096, data_disk_size_gb=20)))

        assert result.success, result.message
        instance = compute.instances["gateway-alpha"]
        assert (instance.machine_type, instance.status) == ("e2-medium", "RUNNING")
        assert compute.disks["gateway-alpha-data"] == 20

    def test_update_resources_rejects_shrink(self, gce, compute):
        target = gce(data_disk_size_gb=30)
        run(target.install(InstallOptions(profile_name="alpha")))
        result = run(target.update_resources(ResourceSpec(cpu=2048, memory=2048, data_disk_size_gb=10)))
        assert not result.success
        assert compute.call_count("stop_instance") == 0

    def test_get_resources_from_machine_type_url(self, gce, compute):
        compute.instances["gateway-alpha"] = InstanceInfo(
            name="gateway-alpha",
            status="RUNNING",
            machine_type="https://www.googleapis.com/compute/v1/projects/p/zones/z/machineTypes/e2-medium",
        )
        compute.disks["gateway-alpha-data"] = 25
        assert run(gce().get_resources()) == ResourceSpec(cpu=2048, memory=4096, data_disk_size_gb=25)

    def test_capabilities(self, gce, local):
        assert capabilities_of(gce()) == ["update_resources", "get_resources"]
        assert capabilities_of(local) == []


# ── Azure VM ────────────────────────────────────────────────────


@pytest.fixture
def azure(compute, secrets, sleep, on_log):
    def build(**overrides):
        config = AzureVmTargetConfig(
            name="az", profile_name="alpha", subscription_id="sub", resource_group="rg", **overrides
        )
        target = AzureVmTarget(config, compute=compute, secrets=secrets, poll_interval=1, sleep=sleep)
        target.set_log_callback(on_log)
        return target

    return build


class TestAzureVmTarget:
    def test_names(self, azure):
        target = azure()
        assert target.vm_name == "gateway-alpha"
        assert target.data_disk_name == "gateway-alpha-data"
        assert target.nsg_name == "gateway-alpha-nsg"
        assert target.secret_name == "gateway-alpha-config"

    def test_install(self, azure, compute, secrets, log_lines):
        result = run(azure().install(InstallOptions(profile_name="alpha", port=18800)))

        assert result.success, result.message
        assert result.message == "Azure VM gateway-alpha created at 203.0.113.10 in eastus"
        assert compute.instances["gateway-alpha"].running
        assert compute.disks["gateway-alpha-data"] == 10
        assert compute.firewall_rules["gateway-alpha-nsg"] == (18800, "gateway-alpha-nsg")
        assert secrets.secrets == {}
        assert ("[2/4] No Key Vault configured, skipping config secret", "stdout") in log_lines

        call = compute.calls("create_instance")[0]
        assert call["machine_type"] == "Standard_B2s"
        assert call["network_tags"] == ["gateway-alpha-nsg"]
        script = call["metadata"]["custom-data"]
        assert "/dev/disk/azure/scsi1/lun0" in script
        assert "-p 18800:18800" in script
        assert "ghcr.io/openclaw/openclaw:latest" in script
        assert "ssh-public-key" not in call["metadata"]

    def test_install_with_key_vault_and_ssh_key(self, azure, compute, secrets):
        target = azure(key_vault_name="gw-vault", ssh_public_key="ssh-ed25519 AAAA")
        assert run(target.install(InstallOptions(profile_name="alpha"))).success
        assert secrets.secrets["gateway-alpha-config"] == "{}"
        assert compute.calls("create_instance")[0]["metadata"]["ssh-public-key"] == "ssh-ed25519 AAAA"

    def test_install_starts_deallocated_vm(self, azure, compute):
        compute.instances["gateway-alpha"] = InstanceInfo(name="gateway-alpha", status="TERMINATED")
        assert run(azure().install(InstallOptions(profile_name="alpha"))).success
        assert compute.call_count("create_instance") == 0
        assert compute.call_count("start_instance") == 1

    def test_install_failure(self, azure, compute):
        compute.set_failure("create_instance", "SkuNotAvailable")
        result = run(azure().install(InstallOptions(profile_name="alpha")))
        assert not result.success
        assert result.message == "Azure VM install failed: SkuNotAvailable"

    def test_configure_pushes_config_to_vm(self, azure, compute, secrets):
        target = azure()
        run(target.install(InstallOptions(profile_name="alpha")))
        payload = ConfigurePayload(profile_name="alpha", gateway_port=18789, environment={"TOKEN": "t"})

        result = run(target.configure(payload))
        assert result.success
        assert not result.requires_restart
        script = compute.calls("run_script")[0]["script"]
        encoded = script[0].split("'")[1]
        assert json.loads(base64.b64decode(encoded)) == {"gateway": {"port": 18789}, "env": {"TOKEN": "t"}}
        assert script[0].endswith("> /mnt/gateway/config/config.json")
        assert script[1].startswith("docker restart gateway")
        assert secrets.secrets == {}

    def test_configure_keeps_copy_in_key_vault(self, azure, compute, secrets):
        target = azure(key_vault_name="gw-vault")
        run(target.install(InstallOptions(profile_name="alpha")))
        assert run(target.configure(ConfigurePayload(profile_name="alpha", gateway_port=18789))).success
        assert json.loads(secrets.secrets["gateway-alpha-config"]) == {"gateway": {"port": 18789}}

    def test_configure_without_vm(self, azure):
        result = run(azure().configure(ConfigurePayload(profile_name="alpha", gateway_port=18789)))
        assert not result.success
        assert result.message == "Failed to configure: Instance gateway-alpha not found"

    def test_lifecycle(self, azure, compute):
        target = azure()
        run(target.install(InstallOptions(profile_name="alpha")))
        run(target.stop())
        assert run(target.get_status()).state == TargetState.STOPPED
        run(target.start())
        run(target.restart())
        assert run(target.get_status()).state == TargetState.RUNNING
        assert compute.call_count("reset_instance") == 1

    def test_stop_missing_vm(self, azure):
        with pytest.raises(TargetError, match="Failed to stop VM gateway-alpha"):
            run(azure().stop())

    def test_status_while_provisioning(self, azure, compute):
        compute.instances["gateway-alpha"] = InstanceInfo(name="gateway-alpha", status="PROVISIONING")
        status = run(azure().get_status())
        assert status.state == TargetState.ERROR
        assert status.error == "VM power state: PROVISIONING"

    def test_logs(self, azure, compute):
        compute.serial_output["gateway-alpha"] = ["cloud-init: start", "gateway: ready"]
        assert run(azure().get_logs(LogOptions(filter="gateway"))) == ["gateway: ready"]

    def test_endpoint(self, azure):
        run(azure().install(InstallOptions(profile_name="alpha")))
        assert run(azure().get_endpoint()).url == "ws://203.0.113.10:18789"
        assert run(azure(custom_domain="bot.example.com").get_endpoint()).url == "wss://bot.example.com:443"

    def test_endpoint_without_ip(self, azure):
        with pytest.raises(TargetError, match="no public IP"):
            run(azure().get_endpoint())

    def test_destroy(self, azure, compute, secrets, log_lines):
        target = azure(key_vault_name="gw-vault")
        run(target.install(InstallOptions(profile_name="alpha")))
        compute.set_failure("delete_disk", "OperationNotAllowed")

        run(target.destroy())
        assert compute.instances == {}
        assert compute.firewall_rules == {}
        assert secrets.secrets == {}
        assert ("Failed to delete data disk gateway-alpha-data: OperationNotAllowed", "stderr") in log_lines

    def test_update_resources(self, azure, compute):
        target = azure()
        run(target.install(InstallOptions(profile_name="alpha")))
        result = run(target.update_resources(ResourceSpec(cpu=2048, memory=4096, data_disk_size_gb=20)))

        assert result.success, result.message
        assert result.message == "Resources updated to Standard_D2s_v3"
        instance = compute.instances["gateway-alpha"]
        assert (instance.machine_type, instance.status) == ("Standard_D2s_v3", "RUNNING")
        assert compute.disks["gateway-alpha-data"] == 20

    def test_get_resources(self, azure, compute):
        compute.instances["gateway-alpha"] = InstanceInfo(name="gateway-alpha", status="RUNNING", machine_type="Standard_B1s")
        compute.disks["gateway-alpha-data"] = 8
        assert run(azure().get_resources()) == ResourceSpec(cpu=1024, memory=1024, data_disk_size_gb=8)

    def test_capabilities(self, azure):
        assert capabilities_of(azure()) == ["update_resources", "get_resources"]
