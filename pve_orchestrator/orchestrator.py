"""
Phase orchestrator: infra -> bootstrap -> configure.

Within a phase every resource is attempted and failures are aggregated into
one PhaseFailed; a failed phase ends the run and no later phase starts.
Runs can start at any phase as long as the earlier phases' outputs exist in
the state cache.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import RunContext
from .configure import PlaybookRunner, ordered_groups, write_inventory
from .errors import (
    OrchestrationCancelled,
    OrchestratorError,
    PhaseFailed,
    PreconditionError,
    StateError,
    ValidationError,
    error_kind,
)
from .health import verify_cluster
from .inventory import AddressBook, resolve
from .models import (
    PHASE_ORDER,
    DiscoveredAddress,
    InventoryGroup,
    Phase,
    PhaseReport,
    PhaseStatus,
    ProvisionedResource,
    ResourceOutcome,
    ResourceSpec,
    ResourceState,
    RunReport,
    RunState,
)
from .provisioner import Provisioner
from .proxmox import ProxmoxAPI
from .readiness import ReadinessPoller
from .state import RunLock, StateManager
from .topology import Topology, list_specs
from .workers import CancellationToken, run_bounded

logger = logging.getLogger(__name__)


class PhaseOrchestrator:
    """Drives one topology through the ordered phases"""

    def __init__(self, context: RunContext, topology: Topology,
                 token: Optional[CancellationToken] = None,
                 api: Optional[ProxmoxAPI] = None,
                 provisioner: Optional[Provisioner] = None,
                 poller: Optional[ReadinessPoller] = None,
                 runner: Optional[PlaybookRunner] = None,
                 state: Optional[StateManager] = None,
                 verifier: Callable = verify_cluster):
        self.context = context
        self.config = context.config
        self.topology = topology
        self.token = token or CancellationToken()

        if (provisioner is None or poller is None) and api is None:
            api = ProxmoxAPI(self.config.proxmox, context.credentials, self.config.retry)
        self.provisioner = provisioner or Provisioner(api)
        self.poller = poller or ReadinessPoller(api, self.config.readiness, self.token)
        self.runner = runner or PlaybookRunner(self.config.ansible, check_mode=context.check_mode)
        self.state = state or StateManager(self.config.state_path, topology.name)
        self.verifier = verifier

        self.specs: List[ResourceSpec] = []
        self.resources: Dict[int, ProvisionedResource] = {}
        self.addresses: Dict[int, DiscoveredAddress] = {}
        self.inventory: Dict[str, InventoryGroup] = {}
        self.errors: Dict[int, BaseException] = {}

    @property
    def inventory_path(self) -> Path:
        return self.state.state_dir / f"{self.topology.name}-inventory.yml"

    async def run(self, start: Phase = Phase.INFRA, stop: Phase = Phase.CONFIGURE) -> RunReport:
        """Run phases start..stop inclusive and return the run report"""
        if start.index > stop.index:
            raise ValidationError(f"Start phase {start.value} comes after stop phase {stop.value}")
        self.specs = list_specs(self.topology)

        with RunLock(self.config.state_path, self.topology.name, self.config.lock_ttl):
            return await self._run_locked(start, stop)

    async def _run_locked(self, start: Phase, stop: Phase) -> RunReport:
        report = RunReport(topology=self.topology.name)
        started = time.time()
        selected = [p for p in PHASE_ORDER if start.index <= p.index <= stop.index]

        for phase in PHASE_ORDER:
            if phase.index < start.index:
                report.phases.append(PhaseReport(phase, PhaseStatus.SKIPPED, message="using cached state"))

        try:
            self._load_preconditions(start)
        except PreconditionError as e:
            logger.error(f"❌ {e}")
            report.state = RunState.FAILED
            report.failed_phase = start
            report.error = str(e)
            for phase in selected:
                status = PhaseStatus.FAILED if phase is start else PhaseStatus.SKIPPED
                report.phases.append(PhaseReport(phase, status, message=str(e) if phase is start else ""))
            return self._finish(report, started)

        if start.index > 0:
            report.state = PHASE_ORDER[start.index - 1].done_state

        handlers = {
            Phase.INFRA: self._run_infra,
            Phase.BOOTSTRAP: self._run_bootstrap,
            Phase.CONFIGURE: self._run_configure,
        }
        for position, phase in enumerate(selected):
            if self.token.cancelled:
                for remaining in selected[position:]:
                    report.phases.append(PhaseReport(remaining, PhaseStatus.CANCELLED))
                break

            phase_report = await self._execute_phase(phase, handlers[phase], report)
            report.phases.append(phase_report)
            if phase_report.status is not PhaseStatus.COMPLETED:
                for remaining in selected[position + 1:]:
                    status = PhaseStatus.CANCELLED if report.cancelled else PhaseStatus.SKIPPED
                    report.phases.append(PhaseReport(remaining, status))
                break

        if self.token.cancelled:
            report.cancelled = True
            if not report.error:
                report.error = f"cancelled: {self.token.reason}"
        return self._finish(report, started)

    async def _execute_phase(self, phase: Phase, handler, report: RunReport) -> PhaseReport:
        """Execute a phase with timing and error handling"""
        logger.info(f"🚀 Starting phase: {phase.value}")
        phase_report = PhaseReport(phase)
        start_time = time.time()
        try:
            try:
                await handler()
            except OSError as e:
                raise StateError(f"Local I/O failed during {phase.value}: {e}") from e
        except OrchestratorError as e:
            phase_report.duration = time.time() - start_time
            failures = e.failures if isinstance(e, PhaseFailed) else {}
            phase_report.failures = {
                str(key): f"{error_kind(exc)}: {exc}" for key, exc in sorted(failures.items(), key=lambda i: i[0])
            }
            phase_report.message = str(e)
            try:
                self.state.invalidate_phase(phase)
            except OSError as err:
                logger.error(f"❌ Could not update {self.state.state_file}: {err}")

            if self.token.cancelled:
                phase_report.status = PhaseStatus.CANCELLED
                report.cancelled = True
                report.error = f"{phase.value} cancelled: {e}"
                logger.warning(f"⏹️ {phase.value} cancelled after {phase_report.duration:.2f}s")
            else:
                phase_report.status = PhaseStatus.FAILED
                report.state = RunState.FAILED
                report.failed_phase = phase
                report.error = str(e)
                logger.error(f"❌ {phase.value} failed after {phase_report.duration:.2f}s: {e}")
            return phase_report

        phase_report.duration = time.time() - start_time
        phase_report.status = PhaseStatus.COMPLETED
        phase_report.message = f"{phase.value} completed successfully"
        report.state = phase.done_state
        self.state.mark_phase_complete(phase, {"duration": round(phase_report.duration, 3)})
        logger.info(f"✅ {phase.value} completed in {phase_report.duration:.2f}s")
        return phase_report

    # === PRECONDITIONS ===

    def _load_preconditions(self, start: Phase):
        """Pull earlier phases' outputs from the cache, before any platform call"""
        if start.index >= Phase.CONFIGURE.index:
            cached = self.state.inventory()
            if not cached:
                raise PreconditionError(
                    f"No cached inventory for topology '{self.topology.name}'; run bootstrap first"
                )
            known = {spec.id for spec in self.specs}
            stale = sorted(
                spec_id for group in cached.values() for spec_id in group.members if spec_id not in known
            )
            if stale:
                raise PreconditionError(f"Cached inventory references resources not in the topology: {stale}")
            self.inventory = cached
            self.addresses = self.state.addresses()
            return

        if start.index >= Phase.BOOTSTRAP.index:
            cached_resources = self.state.resources()
            missing = [spec.id for spec in self.specs if spec.id not in cached_resources]
            failed = [
                spec.id for spec in self.specs
                if spec.id in cached_resources and cached_resources[spec.id].state is ResourceState.FAILED
            ]
            if missing or failed:
                raise PreconditionError(
                    f"Bootstrap needs a provisioned resource for every spec "
                    f"(missing: {missing}, failed: {failed}); run infra first"
                )
            # a cached handle only proves the guest was started, readiness is re-checked
            self.resources = {
                spec.id: ProvisionedResource(
                    spec_id=spec.id,
                    platform_handle=cached_resources[spec.id].platform_handle,
                    kind=cached_resources[spec.id].kind,
                    node=cached_resources[spec.id].node,
                    state=ResourceState.BOOTING,
                )
                for spec in self.specs
            }

    # === PHASES ===

    async def _run_infra(self):
        async def ensure(spec: ResourceSpec) -> ProvisionedResource:
            return await asyncio.to_thread(self.provisioner.ensure, spec)

        collector = await run_bounded(
            self.specs, ensure, key=lambda s: s.id,
            max_workers=self.config.max_workers, token=self.token,
        )
        self.resources = dict(collector.results)
        self.errors.update(collector.failures)
        self.state.save_resources(list(self.resources.values()), drop=collector.failures.keys())

        logger.info(f"Provisioned {len(collector.results)}/{len(self.specs)} resource(s)")
        if collector.failures:
            raise PhaseFailed(Phase.INFRA.value, collector.failures)

    async def _run_bootstrap(self):
        book = AddressBook()

        async def wait(spec: ResourceSpec) -> DiscoveredAddress:
            address = await self.poller.wait_ready(self.resources[spec.id], spec)
            book.record(address)
            return address

        collector = await run_bounded(
            self.specs, wait, key=lambda s: s.id,
            max_workers=self.config.max_workers, token=self.token,
        )
        self.errors.update(collector.failures)

        fresh = book.all()
        self.addresses = {address.spec_id: address for address in fresh}
        self.inventory = resolve(fresh, self.specs)
        self.state.save_addresses(fresh)
        self.state.save_inventory(self.inventory)

        logger.info(f"{len(fresh)}/{len(self.specs)} resource(s) ready, groups: {sorted(self.inventory)}")
        if collector.failures:
            raise PhaseFailed(Phase.BOOTSTRAP.value, collector.failures)

    async def _run_configure(self):
        inventory_path = write_inventory(self.inventory, self.specs, self.inventory_path)
        failures: Dict[str, BaseException] = {}

        for step, group in ordered_groups(self.topology.roles, self.inventory):
            if self.token.cancelled:
                failures[step.role] = OrchestrationCancelled(self.token.reason or "cancelled")
                continue
            try:
                await self.runner.apply(step, group, inventory_path)
            except OrchestratorError as e:
                failures[step.role] = e

        verify = self.topology.verify
        if verify and not failures and not self.context.check_mode:
            members = {spec_id for group in self.inventory.values() for spec_id in group.members}
            expected = [
                spec.name for spec in self.specs
                if spec.role in verify.roles and spec.id in members
            ]
            try:
                await asyncio.to_thread(self.verifier, verify, expected)
            except OrchestratorError as e:
                failures["verify"] = e

        if failures:
            raise PhaseFailed(Phase.CONFIGURE.value, failures)

    # === REPORT ===

    def _finish(self, report: RunReport, started: float) -> RunReport:
        report.resources = self._outcomes()
        report.inventory = self.inventory
        report.elapsed = time.time() - started
        try:
            self.state.save_report(report.to_dict())
        except OSError as e:
            logger.error(f"❌ Could not save run report to {self.state.state_file}: {e}")
        return report

    def _outcomes(self) -> List[ResourceOutcome]:
        outcomes: List[ResourceOutcome] = []
        for spec in self.specs:
            resource = self.resources.get(spec.id)
            error = self.errors.get(spec.id)
            address = self.addresses.get(spec.id)
            if isinstance(error, OrchestrationCancelled):
                state = "cancelled"
            elif error is not None:
                state = ResourceState.FAILED.value
            elif resource is not None:
                state = resource.state.value
            elif address is not None:
                state = ResourceState.READY.value
            else:
                state = "pending"
            outcomes.append(ResourceOutcome(
                spec_id=spec.id,
                name=spec.name,
                role=spec.role,
                state=state,
                address=address.address if address else None,
                error_kind=error_kind(error) if error is not None else None,
                message=str(error) if error is not None else None,
            ))
        return outcomes
