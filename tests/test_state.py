import json
import os
import socket
import time

import pytest

from pve_orchestrator.errors import ConcurrentRunError
from pve_orchestrator.models import (
    DiscoveredAddress,
    InventoryGroup,
    Phase,
    ProvisionedResource,
    ResourceKind,
    ResourceState,
)
from pve_orchestrator.state import RunLock, StateManager


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


def test_fresh_state(state_dir):
    state = StateManager(state_dir, "homelab")

    assert state.state_file == state_dir / "homelab.json"
    assert not state.is_phase_complete(Phase.INFRA)
    assert state.resources() == {}
    assert state.inventory() == {}


def test_entities_survive_reload(state_dir):
    state = StateManager(state_dir, "homelab")
    resource = ProvisionedResource(1, "pve/qemu/1", ResourceKind.VM, "pve", ResourceState.BOOTING)
    state.save_resources([resource])
    state.save_addresses([DiscoveredAddress(1, "10.10.1.101", interface="eth0")])
    state.save_inventory({"server": InventoryGroup("server", {1: "10.10.1.101"})})

    reloaded = StateManager(state_dir, "homelab")

    assert reloaded.resources() == {1: resource}
    assert reloaded.addresses()[1].address == "10.10.1.101"
    assert reloaded.inventory() == {"server": InventoryGroup("server", {1: "10.10.1.101"})}


def test_failed_resources_are_dropped(state_dir):
    state = StateManager(state_dir, "homelab")
    state.save_resources([
        ProvisionedResource(1, "pve/qemu/1", ResourceKind.VM, "pve", ResourceState.BOOTING),
        ProvisionedResource(2, "pve/qemu/2", ResourceKind.VM, "pve", ResourceState.BOOTING),
    ])

    state.save_resources([], drop=[2])

    assert list(state.resources()) == [1]


def test_invalidate_phase_cascades(state_dir):
    state = StateManager(state_dir, "homelab")
    for phase in Phase:
        state.mark_phase_complete(phase)

    state.invalidate_phase(Phase.BOOTSTRAP)

    assert state.is_phase_complete(Phase.INFRA)
    assert not state.is_phase_complete(Phase.BOOTSTRAP)
    assert not state.is_phase_complete(Phase.CONFIGURE)


def test_corrupt_state_file_is_ignored(state_dir):
    state_dir.mkdir(parents=True)
    (state_dir / "homelab.json").write_text("{not json")

    state = StateManager(state_dir, "homelab")

    assert state.state["phases"] == {}


def test_lock_excludes_second_holder(state_dir):
    with RunLock(state_dir, "homelab") as lock:
        holder = json.loads(lock.path.read_text())
        assert holder["pid"] == os.getpid()
        with pytest.raises(ConcurrentRunError, match="locked by pid"):
            RunLock(state_dir, "homelab").acquire()
    assert not (state_dir / "homelab.lock").exists()


def test_lock_per_topology(state_dir):
    with RunLock(state_dir, "homelab"):
        with RunLock(state_dir, "media"):
            pass


@pytest.mark.parametrize("holder", [
    json.dumps({"pid": os.getpid(), "host": socket.gethostname(), "started_at": 0}),
    json.dumps({"pid": 0, "host": socket.gethostname(), "started_at": time.time()}),
])
def test_stale_lock_reclaimed(state_dir, holder):
    state_dir.mkdir(parents=True)
    (state_dir / "homelab.lock").write_text(holder)

    lock = RunLock(state_dir, "homelab").acquire()

    assert lock.acquired
    lock.release()


@pytest.mark.parametrize("holder", ["", "garbage"])
def test_unreadable_fresh_lease_is_live(state_dir, holder):
    state_dir.mkdir(parents=True)
    (state_dir / "homelab.lock").write_text(holder)

    with pytest.raises(ConcurrentRunError, match="still writing"):
        RunLock(state_dir, "homelab").acquire()
    assert (state_dir / "homelab.lock").read_text() == holder


@pytest.mark.parametrize("holder", ["", "garbage"])
def test_unreadable_old_lease_is_reclaimed(state_dir, holder):
    state_dir.mkdir(parents=True)
    lock_file = state_dir / "homelab.lock"
    lock_file.write_text(holder)
    old = time.time() - 2 * RunLock.UNREADABLE_GRACE
    os.utime(lock_file, (old, old))

    with RunLock(state_dir, "homelab"):
        assert json.loads(lock_file.read_text())["pid"] == os.getpid()


def test_acquire_leaves_no_temp_files(state_dir):
    with RunLock(state_dir, "homelab"):
        assert [p.name for p in state_dir.iterdir()] == ["homelab.lock"]
    assert list(state_dir.iterdir()) == []


def test_dead_pid_on_same_host_is_stale(state_dir, mocker):
    mocker.patch("pve_orchestrator.state.os.kill", side_effect=ProcessLookupError)
    state_dir.mkdir(parents=True)
    (state_dir / "homelab.lock").write_text(
        json.dumps({"pid": 424242, "host": socket.gethostname(), "started_at": time.time()})
    )

    with RunLock(state_dir, "homelab") as lock:
        assert lock.acquired


def test_lock_held_on_another_host_is_respected(state_dir):
    state_dir.mkdir(parents=True)
    (state_dir / "homelab.lock").write_text(
        json.dumps({"pid": 424242, "host": "other-admin-box", "started_at": time.time()})
    )

    with pytest.raises(ConcurrentRunError):
        RunLock(state_dir, "homelab").acquire()
