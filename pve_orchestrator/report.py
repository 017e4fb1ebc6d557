"""
Human and machine readable run reports.
"""

import json
from typing import Any, Dict, List

from .models import PhaseStatus, RunReport

PHASE_ICONS = {
    PhaseStatus.COMPLETED: "✅",
    PhaseStatus.FAILED: "❌",
    PhaseStatus.PENDING: "⏸️",
    PhaseStatus.SKIPPED: "⏭️",
    PhaseStatus.CANCELLED: "⏹️",
}

RESOURCE_ICONS = {
    "ready": "✅",
    "booting": "⏳",
    "created": "⏳",
    "creating": "⏳",
    "failed": "❌",
    "cancelled": "⏹️",
}


def render_report(report: RunReport) -> str:
    """Text report in the deployment status style"""
    lines: List[str] = [
        "=" * 60,
        f"TOPOLOGY {report.topology} - RUN REPORT",
        "=" * 60,
    ]
    for phase in report.phases:
        icon = PHASE_ICONS.get(phase.status, "❓")
        duration = f" ({phase.duration:.2f}s)" if phase.duration else ""
        message = f": {phase.message}" if phase.message else ""
        lines.append(f"{icon} {phase.phase.value} [{phase.status.value}]{message}{duration}")

    if report.resources:
        lines.append("-" * 60)
        for outcome in report.resources:
            icon = RESOURCE_ICONS.get(outcome.state, "❓")
            line = f"{icon} {outcome.spec_id:>5} {outcome.name:<24} {outcome.role:<12} {outcome.state}"
            if outcome.address:
                line += f" {outcome.address}"
            if outcome.error_kind:
                line += f" ({outcome.error_kind})"
            lines.append(line)

    if report.inventory:
        lines.append("-" * 60)
        for role, group in report.inventory.items():
            lines.append(f"{role}: {', '.join(group.addresses)}")

    lines.append("=" * 60)
    lines.append(f"Phase reached: {report.phase_reached} in {report.elapsed:.2f}s")
    if report.error:
        lines.append(f"Error: {report.error}")
    return "\n".join(lines)


def render_json(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, sort_keys=False)


def render_status(state: Dict[str, Any]) -> str:
    """Cached state of a topology as a status table"""
    lines: List[str] = ["=" * 60, f"TOPOLOGY {state.get('topology')} - CACHED STATE", "=" * 60]
    phases = state.get("phases", {})
    for name in ("infra", "bootstrap", "configure"):
        entry = phases.get(name, {})
        icon = "✅" if entry.get("completed") else "⏸️"
        when = f" ({entry['timestamp']})" if entry.get("timestamp") else ""
        lines.append(f"{icon} {name}{when}")

    addresses = state.get("addresses", {})
    resources = state.get("resources", {})
    if resources or addresses:
        lines.append("-" * 60)
        for spec_id in sorted(set(resources) | set(addresses), key=int):
            resource = resources.get(spec_id, {})
            address = addresses.get(spec_id, {}).get("address", "-")
            handle = resource.get("platform_handle", "-")
            lines.append(f"{spec_id:>5} {handle:<24} {address}")

    last_run = state.get("last_run") or {}
    if last_run:
        lines.append("-" * 60)
        lines.append(f"Last run: {last_run.get('phase_reached')} (success: {last_run.get('success')})")
    lines.append("=" * 60)
    return "\n".join(lines)
