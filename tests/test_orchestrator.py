import os
import socket
import time
from dataclasses import replace

import pytest

from conftest import FakeRunner, agent_payload, k3s_topology
from pve_orchestrator.errors import ConcurrentRunError, ValidationError
from pve_orchestrator.models import (
    InventoryGroup,
    Phase,
    PhaseStatus,
    ProvisionedResource,
    ResourceKind,
    ResourceState,
    RunState,
)
from pve_orchestrator.orchestrator import PhaseOrchestrator
from pve_orchestrator.provisioner import Provisioner
from pve_orchestrator.readiness import ReadinessPoller
from pve_orchestrator.state import RunLock, StateManager
from pve_orchestrator.workers import CancellationToken


ADDRESSES = {1: "10.10.1.101", 2: "10.10.1.102", 3: "10.10.1.103"}


@pytest.fixture
def token():
    return CancellationToken()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_orchestrator(context, fake_api, clock, runner, token):
    def factory(topology=None, provisioner=None):
        poller = ReadinessPoller(fake_api, context.config.readiness, token, clock=clock, sleep=clock.sleep)
        return PhaseOrchestrator(
            context,
            topology or k3s_topology(),
            token=token,
            provisioner=provisioner or Provisioner(fake_api),
            poller=poller,
            runner=runner,
        )
    return factory


def announce(fake_api, ids=(1, 2, 3)):
    for spec_id in ids:
        fake_api.set_interfaces(spec_id, agent_payload(ADDRESSES[spec_id]))


@pytest.mark.asyncio
async def test_full_run_resolves_groups_and_configures_in_role_order(make_orchestrator, fake_api, runner):
    announce(fake_api)

    report = await make_orchestrator().run()

    assert report.success
    assert report.state is RunState.CONFIGURE_DONE
    assert report.inventory == {
        "server": InventoryGroup("server", {1: "10.10.1.101"}),
        "agent": InventoryGroup("agent", {2: "10.10.1.102", 3: "10.10.1.103"}),
    }
    assert runner.applied == [
        ("server", {1: "10.10.1.101"}),
        ("agent", {2: "10.10.1.102", 3: "10.10.1.103"}),
    ]
    assert [p.status for p in report.phases] == [PhaseStatus.COMPLETED] * 3
    assert {o.spec_id: o.state for o in report.resources} == {1: "ready", 2: "ready", 3: "ready"}
    assert len(fake_api.calls_named("clone_vm")) == 3


@pytest.mark.asyncio
async def test_readiness_timeout_fails_bootstrap_but_keeps_ready_members(make_orchestrator, fake_api, runner):
    announce(fake_api, ids=(1, 3))

    report = await make_orchestrator().run()

    assert not report.success
    assert report.state is RunState.FAILED
    assert report.failed_phase is Phase.BOOTSTRAP
    assert report.phase_reached == "failed(bootstrap)"

    outcomes = {o.spec_id: o for o in report.resources}
    assert outcomes[1].state == "ready"
    assert outcomes[3].state == "ready"
    assert outcomes[2].state == "failed"
    assert outcomes[2].error_kind == "readiness_timeout"

    assert report.inventory == {
        "server": InventoryGroup("server", {1: "10.10.1.101"}),
        "agent": InventoryGroup("agent", {3: "10.10.1.103"}),
    }
    bootstrap = report.phase_report(Phase.BOOTSTRAP)
    assert bootstrap.status is PhaseStatus.FAILED
    assert list(bootstrap.failures) == ["2"]
    assert report.phase_report(Phase.CONFIGURE).status is PhaseStatus.SKIPPED
    assert runner.applied == []


@pytest.mark.asyncio
async def test_configure_with_cached_inventory_skips_earlier_phases(make_orchestrator, context, fake_api, runner):
    state = StateManager(context.config.state_path, "homelab")
    state.save_inventory({
        "server": InventoryGroup("server", {1: "10.10.1.101"}),
        "agent": InventoryGroup("agent", {2: "10.10.1.102", 3: "10.10.1.103"}),
    })

    report = await make_orchestrator().run(start=Phase.CONFIGURE)

    assert report.state is RunState.CONFIGURE_DONE
    assert report.phase_report(Phase.INFRA).status is PhaseStatus.SKIPPED
    assert report.phase_report(Phase.BOOTSTRAP).status is PhaseStatus.SKIPPED
    assert fake_api.calls == []
    assert [role for role, _ in runner.applied] == ["server", "agent"]
    assert (context.config.state_path / "homelab-inventory.yml").exists()


@pytest.mark.asyncio
async def test_configure_without_cached_inventory_fails_before_any_mutation(make_orchestrator, fake_api, runner):
    report = await make_orchestrator().run(start=Phase.CONFIGURE)

    assert report.state is RunState.FAILED
    assert report.failed_phase is Phase.CONFIGURE
    assert "No cached inventory" in report.error
    assert fake_api.calls == []
    assert runner.applied == []


@pytest.mark.asyncio
async def test_bootstrap_resumes_from_cached_resources(make_orchestrator, fake_api):
    announce(fake_api)
    first = await make_orchestrator().run(stop=Phase.INFRA)
    assert first.state is RunState.INFRA_DONE
    clones = len(fake_api.calls_named("clone_vm"))

    second = await make_orchestrator().run(start=Phase.BOOTSTRAP, stop=Phase.BOOTSTRAP)

    assert second.state is RunState.BOOTSTRAP_DONE
    assert set(second.inventory) == {"agent", "server"}
    assert len(fake_api.calls_named("clone_vm")) == clones


@pytest.mark.asyncio
async def test_bootstrap_without_cached_resources_is_a_precondition_failure(make_orchestrator, fake_api):
    report = await make_orchestrator().run(start=Phase.BOOTSTRAP)

    assert report.state is RunState.FAILED
    assert report.failed_phase is Phase.BOOTSTRAP
    assert "run infra first" in report.error
    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_rerun_adopts_existing_guests(make_orchestrator, fake_api):
    announce(fake_api)
    await make_orchestrator().run()
    await make_orchestrator().run()

    assert len(fake_api.calls_named("clone_vm")) == 3


@pytest.mark.asyncio
async def test_configure_failure_is_reported_per_role(make_orchestrator, fake_api, runner):
    announce(fake_api)
    runner.fail_roles = {"server"}

    report = await make_orchestrator().run()

    assert report.failed_phase is Phase.CONFIGURE
    configure = report.phase_report(Phase.CONFIGURE)
    assert list(configure.failures) == ["server"]
    assert configure.failures["server"].startswith("apply_error")
    # remaining roles are still attempted
    assert [role for role, _ in runner.applied] == ["server", "agent"]


@pytest.mark.asyncio
async def test_unwritable_inventory_fails_configure_with_a_report(make_orchestrator, context, fake_api,
                                                                  runner, mocker):
    announce(fake_api)
    mocker.patch("pve_orchestrator.orchestrator.write_inventory",
                 side_effect=PermissionError(13, "Permission denied"))

    report = await make_orchestrator().run()

    assert report.phase_reached == "failed(configure)"
    assert "Permission denied" in report.error
    assert runner.applied == []
    last_run = StateManager(context.config.state_path, "homelab").state["last_run"]
    assert last_run["phase_reached"] == "failed(configure)"


@pytest.mark.asyncio
async def test_cancelled_before_start_runs_nothing(make_orchestrator, fake_api, token):
    token.cancel("operator abort")

    report = await make_orchestrator().run()

    assert report.cancelled
    assert not report.success
    assert [p.status for p in report.phases] == [PhaseStatus.CANCELLED] * 3
    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_cancellation_mid_infra_stops_new_provisioning(context, fake_api, clock, runner, token):
    provisioner = Provisioner(fake_api)
    ensured = []

    class CancellingProvisioner:
        def ensure(self, spec):
            ensured.append(spec.id)
            resource = provisioner.ensure(spec)
            token.cancel("SIGINT")
            return resource

    context = replace(context, config=replace(context.config, max_workers=1))
    orchestrator = PhaseOrchestrator(
        context, k3s_topology(), token=token,
        provisioner=CancellingProvisioner(),
        poller=ReadinessPoller(fake_api, context.config.readiness, token, clock=clock, sleep=clock.sleep),
        runner=runner,
    )

    report = await orchestrator.run()

    assert ensured == [1]
    assert report.cancelled
    assert report.phase_report(Phase.INFRA).status is PhaseStatus.CANCELLED
    assert report.phase_report(Phase.BOOTSTRAP).status is PhaseStatus.CANCELLED
    outcomes = {o.spec_id: o.state for o in report.resources}
    assert outcomes == {1: "booting", 2: "cancelled", 3: "cancelled"}
    assert fake_api.calls_named("poll") == []


@pytest.mark.asyncio
async def test_live_lock_rejects_a_second_run(make_orchestrator, context):
    with RunLock(context.config.state_path, "homelab"):
        with pytest.raises(ConcurrentRunError):
            await make_orchestrator().run()


@pytest.mark.asyncio
async def test_stale_lock_is_reclaimed(make_orchestrator, context, fake_api):
    announce(fake_api)
    lock_file = context.config.state_path / "homelab.lock"
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock_file.write_text('{"pid": %d, "host": "%s", "started_at": %f}'
                         % (os.getpid(), socket.gethostname(), time.time() - 7 * 24 * 3600))

    report = await make_orchestrator().run()

    assert report.success
    assert not lock_file.exists()


@pytest.mark.asyncio
async def test_invalid_phase_range_is_rejected(make_orchestrator):
    with pytest.raises(ValidationError):
        await make_orchestrator().run(start=Phase.CONFIGURE, stop=Phase.INFRA)


@pytest.mark.asyncio
async def test_bad_template_fails_before_any_clone(make_orchestrator, fake_api):
    topology = k3s_topology()
    topology.specs[0] = replace(topology.specs[0], template="local:iso/ubuntu.iso")

    with pytest.raises(ValidationError, match="VMID"):
        await make_orchestrator(topology).run()

    assert fake_api.calls_named("clone_vm") == []


@pytest.mark.asyncio
async def test_run_report_is_cached(make_orchestrator, context, fake_api):
    announce(fake_api)
    await make_orchestrator().run()

    state = StateManager(context.config.state_path, "homelab")
    assert state.state["last_run"]["phase_reached"] == "configure_done"
    assert state.is_phase_complete(Phase.CONFIGURE)
    cached = state.resources()
    assert cached[1] == ProvisionedResource(
        spec_id=1, platform_handle="pve/qemu/1", kind=ResourceKind.VM, node="pve",
        state=ResourceState.BOOTING,
    )
