"""
pve-orchestrator command line.

    pve-orchestrator run topology.yaml
    pve-orchestrator phase bootstrap topology.yaml
    pve-orchestrator resume --from configure topology.yaml
    pve-orchestrator status topology.yaml
    pve-orchestrator inventory topology.yaml --format ini
    pve-orchestrator verify topology.yaml
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from .config import RunContext, load_config
from .configure import format_inventory
from .errors import OrchestratorError, ValidationError
from .health import verify_cluster
from .inventory import to_ansible_inventory
from .models import Phase
from .orchestrator import PhaseOrchestrator
from .report import render_json, render_report, render_status
from .secrets import load_credentials
from .state import StateManager
from .topology import list_specs, load_topology
from .workers import CancellationToken

logger = logging.getLogger("pve_orchestrator")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

PHASE_NAMES = [phase.value for phase in Phase]


def setup_logging(verbose: bool = False):
    """Console logging on stderr so --json output stays parseable"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    # urllib3 connection chatter drowns the phase log at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def attach_log_file(path: Path):
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to orchestrator.yaml")
    common.add_argument("--json", action="store_true", help="Print a machine-readable report")
    common.add_argument("--check", action="store_true",
                        help="Run the configure playbooks in ansible check mode")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    common.add_argument("--log-file", help="Log file (default: pve-orchestrator.log in the state directory)")

    parser = argparse.ArgumentParser(
        prog="pve-orchestrator",
        description="Phased Proxmox infrastructure orchestrator (infra -> bootstrap -> configure)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", parents=[common], help="Run all phases")
    run.add_argument("topology", help="Topology YAML file")

    phase = subparsers.add_parser("phase", parents=[common], help="Run a single phase")
    phase.add_argument("name", choices=PHASE_NAMES, help="Phase to run")
    phase.add_argument("topology", help="Topology YAML file")

    resume = subparsers.add_parser("resume", parents=[common], help="Run from a phase to the end")
    resume.add_argument("--from", dest="start", required=True, choices=PHASE_NAMES,
                        help="First phase to run")
    resume.add_argument("topology", help="Topology YAML file")

    status = subparsers.add_parser("status", parents=[common], help="Show cached run state")
    status.add_argument("topology", help="Topology YAML file")

    inventory = subparsers.add_parser("inventory", parents=[common], help="Print the cached inventory")
    inventory.add_argument("topology", help="Topology YAML file")
    inventory.add_argument("--format", choices=["yaml", "json", "ini"], default="yaml",
                           help="Inventory format (default: yaml)")

    verify = subparsers.add_parser("verify", parents=[common], help="Check Kubernetes node health")
    verify.add_argument("topology", help="Topology YAML file")

    return parser


def phase_range(args: argparse.Namespace):
    if args.command == "phase":
        return Phase(args.name), Phase(args.name)
    if args.command == "resume":
        return Phase(args.start), Phase.CONFIGURE
    return Phase.INFRA, Phase.CONFIGURE


def install_signal_handlers(token: CancellationToken):
    """First SIGINT/SIGTERM cancels cooperatively, a second one aborts"""
    def signal_handler(signum, frame):
        if token.cancelled:
            raise KeyboardInterrupt
        token.cancel(f"received {signal.Signals(signum).name}")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def cmd_run(args, config, topology) -> int:
    context = RunContext(config=config, credentials=load_credentials(config), check_mode=args.check)
    token = CancellationToken()
    install_signal_handlers(token)

    start, stop = phase_range(args)
    orchestrator = PhaseOrchestrator(context, topology, token=token)
    report = asyncio.run(orchestrator.run(start=start, stop=stop))

    print(render_json(report.to_dict()) if args.json else render_report(report))
    if report.cancelled:
        return EXIT_CANCELLED
    if report.success:
        logger.info("🎉 Run completed successfully")
        return EXIT_OK
    return EXIT_FAILED


def cmd_status(args, config, topology) -> int:
    state = StateManager(config.state_path, topology.name).state
    print(render_json(state) if args.json else render_status(state))
    return EXIT_OK


def cmd_inventory(args, config, topology) -> int:
    groups = StateManager(config.state_path, topology.name).inventory()
    if not groups:
        logger.error(f"No cached inventory for topology '{topology.name}'; run bootstrap first")
        return EXIT_FAILED
    inventory = to_ansible_inventory(groups, list_specs(topology))
    print(format_inventory(inventory, "json" if args.json else args.format))
    return EXIT_OK


def cmd_verify(args, config, topology) -> int:
    if topology.verify is None:
        raise ValidationError(f"Topology '{topology.name}' has no verify block")
    expected = [spec.name for spec in list_specs(topology) if spec.role in topology.verify.roles]
    health = verify_cluster(topology.verify, expected, include_pods=True)
    if args.json:
        print(render_json({
            "healthy_nodes": health.healthy_nodes,
            "unhealthy_pods": [list(pod) for pod in health.unhealthy_pods],
        }))
    else:
        print(f"Node Health: all {len(health.healthy_nodes)} node(s) Ready")
        if health.unhealthy_pods:
            print(f"Pod Health: {len(health.unhealthy_pods)} pod(s) not running")
    return EXIT_OK


COMMANDS = {
    "run": cmd_run,
    "phase": cmd_run,
    "resume": cmd_run,
    "status": cmd_status,
    "inventory": cmd_inventory,
    "verify": cmd_verify,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        attach_log_file(Path(args.log_file) if args.log_file else config.state_path / "pve-orchestrator.log")
        topology = load_topology(args.topology)
        return COMMANDS[args.command](args, config, topology)
    except ValidationError as e:
        logger.error(f"❌ {e}")
        return EXIT_USAGE
    except OrchestratorError as e:
        logger.error(f"❌ {e}")
        return EXIT_FAILED
    except OSError as e:
        logger.error(f"❌ {e}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Aborted")
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
