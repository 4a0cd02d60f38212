#!/usr/bin/env python3
"""
Azure DNS Migration Coordinator

Command line entry point that moves a hub-and-spoke lab from Azure-provided
DNS to self-hosted BIND servers, one verified phase at a time. It plans the
cutover order from the forwarding rules, deploys up to a target phase,
re-runs verification, reports live status, and rolls zones back.

Runs against Azure through the `az` CLI, or against an in-memory lab with
--simulate.
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from tabulate import tabulate

from azure_lab import (
    AZ_TIMEOUT, AzureCli, AzureProvisioner, RunCommandAgent, RunCommandExecutor,
)
from cutover_sequencer import CutoverSequencer, IdempotencyGuard
from dns_topology import (
    ConfigurationError, CutoverPhase, MigrationState, TopologyError,
    VerificationFailure, load_topology,
)
from lab_simulator import SimulatedLab
from verification_gate import (
    DEFAULT_PUBLIC_PROBE_NAME, CheckStatus, DirectDnsProbe, RetryPolicy, VerificationGate,
    VerificationResult,
)

DEFAULT_SETTINGS = {
    'topology': None,
    'resource_group_prefix': None,
    'location': None,
    'timeout': AZ_TIMEOUT,
    'retry_count': 5,
    'retry_delay': 2.0,
    'public_probe_name': DEFAULT_PUBLIC_PROBE_NAME,
    'simulate': False,
    'simulate_state': None,
    'direct_probe': False,
}


def setup_logging(verbose: bool = False, log_file: str = None) -> logging.Logger:
    """Setup logging configuration"""
    logger = logging.getLogger('dns_migration')
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Clear any existing handlers
    logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Console handler (only in verbose mode)
    if verbose:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


class UserOutput:
    """Handle user-facing output separate from logging"""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def info(self, message: str):
        print(message)

    def error(self, message: str):
        print(f"ERROR: {message}", file=sys.stderr)

    def verbose_info(self, message: str):
        """Print verbose information if verbose mode is enabled"""
        if self.verbose:
            print(f"[VERBOSE] {message}")


def load_config(config_file: str) -> Dict:
    """Load settings from a JSON file"""
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load config file {config_file}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_file} must contain a JSON object")
    unknown = set(data) - set(DEFAULT_SETTINGS)
    if unknown:
        raise ConfigurationError(f"Unknown settings in {config_file}: {', '.join(sorted(unknown))}")
    return data


def resolve_settings(args: argparse.Namespace) -> Dict:
    """Defaults, then the --config file, then command line flags"""
    settings = dict(DEFAULT_SETTINGS)
    if args.config:
        settings.update(load_config(args.config))
    for key in DEFAULT_SETTINGS:
        value = getattr(args, key, None)
        if value is not None and value is not False:
            settings[key] = value
    return settings


@dataclass
class MigrationReport:
    """Everything one command run produced"""
    command: str
    target: CutoverPhase
    state: Dict[str, str] = field(default_factory=dict)
    zones: List[Dict] = field(default_factory=list)
    steps: List[Tuple[str, CutoverPhase]] = field(default_factory=list)
    results: List[VerificationResult] = field(default_factory=list)
    error: Optional[str] = None
    simulated: bool = False

    @property
    def passed(self) -> bool:
        return self.error is None and all(r.passed for r in self.results)

    def count(self, status: CheckStatus) -> int:
        return sum(r.count(status) for r in self.results)


class ReportGenerator:
    """Generate migration reports"""

    def generate_text_report(self, report: MigrationReport) -> str:
        lines = []
        lines.append("Azure DNS Migration Report")
        lines.append("=" * 50)
        lines.append(f"Command: {report.command}")
        lines.append(f"Target phase: {report.target.label}")
        lines.append(f"Mode: {'simulated lab' if report.simulated else 'azure'}")
        lines.append(f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        lines.append("")

        if report.zones:
            lines.append("Zones:")
            rows = [
                [z['zone'], z['suffix'], z['server'], z['phase'], z.get('vnet_dns', '')]
                for z in report.zones
            ]
            lines.append(tabulate(rows, headers=["Zone", "Suffix", "DNS Server", "Phase", "VNet DNS"],
                                  tablefmt="github"))
            lines.append("")

        if report.steps:
            lines.append("Planned Steps:")
            rows = [[i, zone, phase.label] for i, (zone, phase) in enumerate(report.steps, 1)]
            lines.append(tabulate(rows, headers=["#", "Zone", "Phase"], tablefmt="github"))
            lines.append("")
        elif report.command == 'plan':
            lines.append("Planned Steps: none, every selected zone is already at the target phase")
            lines.append("")

        if report.error:
            lines.append(f"[FAIL] {report.error}")
            lines.append("")

        lines.append("Check Summary:")
        rows = []
        for result in report.results:
            for check in result.checks:
                rows.append([
                    result.zone, result.phase.label, check.name, check.status.value,
                    check.expected, check.observed or '',
                ])
        if rows:
            lines.append(tabulate(rows, headers=["Zone", "Phase", "Check", "Status", "Expected", "Observed"],
                                  tablefmt="github"))
        lines.append(
            f"  PASS: {report.count(CheckStatus.PASS)}  "
            f"FAIL: {report.count(CheckStatus.FAIL)}  "
            f"SKIP: {report.count(CheckStatus.SKIP)}"
        )
        lines.append(f"  Overall: {'PASS' if report.passed else 'FAIL'}")
        return "\n".join(lines)

    def generate_json_report(self, report: MigrationReport) -> str:
        data = {
            'command': report.command,
            'target_phase': report.target.label,
            'simulated': report.simulated,
            'state': report.state,
            'zones': report.zones,
            'steps': [{'zone': zone, 'phase': phase.label} for zone, phase in report.steps],
            'results': [r.to_dict() for r in report.results],
            'error': report.error,
            'summary': {
                'pass': report.count(CheckStatus.PASS),
                'fail': report.count(CheckStatus.FAIL),
                'skip': report.count(CheckStatus.SKIP),
                'overall_status': 'PASS' if report.passed else 'FAIL',
            },
        }
        return json.dumps(data, indent=2, default=str)


def no_wait(seconds: float):
    """Simulated state changes are immediate"""


def build_sequencer(topology, settings: Dict, logger: logging.Logger):
    """Wire collaborators for Azure or the simulated lab"""
    registry, rules = topology.registry, topology.rules
    if settings['simulate'] and settings['direct_probe']:
        raise ConfigurationError("--direct-probe queries real DNS servers and cannot be used with --simulate")
    if settings['simulate']:
        lab = SimulatedLab.load(settings['simulate_state'], registry, logger.getChild('simulator'))
        provisioner = agent = lab
        sleep = no_wait
    else:
        lab = None
        cli = AzureCli(timeout=settings['timeout'], logger=logger.getChild('azure'))
        provisioner = AzureProvisioner(cli, topology.location, attempts=settings['retry_count'],
                                       logger=logger.getChild('azure'))
        executor = RunCommandExecutor(cli, timeout=settings['timeout'], attempts=settings['retry_count'],
                                      logger=logger.getChild('azure'))
        agent = RunCommandAgent(provisioner, executor, logger.getChild('agent'))
        sleep = time.sleep

    probe = None
    if settings['direct_probe']:
        probe = DirectDnsProbe(logger=logger.getChild('probe'))

    policy = RetryPolicy(attempts=settings['retry_count'], initial_delay=settings['retry_delay'])
    gate = VerificationGate(registry, rules, agent, provisioner, policy,
                            settings['public_probe_name'], sleep, logger.getChild('gate'), probe)
    guard = IdempotencyGuard(registry, rules, provisioner, agent, topology.location, logger.getChild('guard'))
    sequencer = CutoverSequencer(registry, rules, provisioner, agent, gate, guard,
                                 topology.peerings, logger=logger.getChild('sequencer'))
    return sequencer, lab


def zone_rows(sequencer: CutoverSequencer, state: MigrationState) -> List[Dict]:
    rows = []
    for zone in sequencer.registry.server_zones():
        vnet_dns = ''
        if zone.vnet_id:
            vnet_dns = sequencer.registry.binding(zone.vnet_id).dns_server
        rows.append({
            'zone': zone.name,
            'suffix': zone.suffix,
            'server': zone.server_address,
            'phase': state.get(zone.name).label,
            'vnet_dns': vnet_dns,
        })
    return rows


def confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def run_command(args: argparse.Namespace, sequencer: CutoverSequencer, report: MigrationReport,
                user_output: UserOutput, logger: logging.Logger):
    """Execute one subcommand, filling in the report"""
    zones = args.zone or None
    for name in zones or []:
        sequencer.registry.get(name)

    if args.command == 'plan':
        sequencer.refresh()
        report.steps = sequencer.plan(report.target, zones)

    elif args.command == 'deploy':
        if not args.force and not confirm(f"Deploy to phase {report.target.label}?"):
            report.error = "Deployment cancelled by user"
            return
        sequencer.refresh()
        report.steps = sequencer.plan(report.target, zones)
        user_output.verbose_info(f"Executing {len(report.steps)} step(s)")
        try:
            sequencer.run(report.target, zones)
        finally:
            report.results = list(sequencer.history)

    elif args.command == 'test':
        state = sequencer.refresh()
        for zone in sequencer.registry.server_zones():
            if zones and zone.name not in zones:
                continue
            phase = min(state.get(zone.name), report.target)
            # Live state cannot tell a verified zone from one that was only cut over
            if phase == CutoverPhase.RESOLVER_CUTOVER and report.target == CutoverPhase.VERIFIED:
                phase = CutoverPhase.VERIFIED
            if phase == CutoverPhase.UNPROVISIONED:
                user_output.verbose_info(f"{zone.name} is not provisioned; nothing to verify")
                continue
            report.results.append(sequencer.gate.verify(zone.name, phase))

    elif args.command == 'status':
        sequencer.refresh(verify=args.verify)

    elif args.command == 'teardown':
        verb = "Delete the resource groups of" if args.delete_resources else "Roll back"
        selected = zones or sequencer.cutover_order()
        if not args.force and not confirm(f"{verb} {', '.join(selected)}?"):
            report.error = "Teardown cancelled by user"
            return
        sequencer.refresh()
        ordered = list(reversed([n for n in sequencer.cutover_order() if n in selected]))
        if args.delete_resources:
            for name in ordered:
                sequencer.check_decommission(name, removed_with=ordered)
        for name in ordered:
            sequencer.rollback(name)
        if args.delete_resources:
            # Every selected zone is off its DNS server before any server is deleted
            for name in ordered:
                sequencer.decommission(name)
        logger.info(f"Teardown of {', '.join(ordered)} complete")

    report.state = sequencer.state.to_dict()
    report.zones = zone_rows(sequencer, sequencer.state)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Migrate an Azure hub-and-spoke lab from provider DNS to self-hosted BIND servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python dns_migration.py plan
  python dns_migration.py deploy --phase authority-configured
  python dns_migration.py deploy --phase 5 --force
  python dns_migration.py test --zone hub --format json --output report.json
  python dns_migration.py status --topology lab.yaml
  python dns_migration.py teardown --zone spoke1 --force
  python dns_migration.py deploy --force --simulate --simulate-state lab-state.json
        """
    )
    parser.add_argument("command", choices=["plan", "deploy", "test", "status", "teardown"],
                        help="Action to perform")
    parser.add_argument("--phase", default="verified",
                        help="Target phase as number or name (default: verified)")
    parser.add_argument("--zone", action="append",
                        help="Limit to this zone (repeatable)")
    parser.add_argument("--topology", help="YAML topology file (default: built-in lab)")
    parser.add_argument("--config", help="JSON settings file")
    parser.add_argument("--resource-group-prefix", dest="resource_group_prefix",
                        help="Prefix for per-zone resource groups")
    parser.add_argument("--location", help="Azure region for new resources")
    parser.add_argument("--force", action="store_true",
                        help="Do not ask for confirmation")
    parser.add_argument("--timeout", type=int,
                        help=f"Timeout in seconds for each Azure call (default: {AZ_TIMEOUT})")
    parser.add_argument("--retry-count", dest="retry_count", type=int,
                        help="Attempts per verification check and Azure call (default: 5)")
    parser.add_argument("--verify", action="store_true",
                        help="With status: run end-to-end checks to tell verified zones apart")
    parser.add_argument("-o", "--output", help="Output file for the report")
    parser.add_argument("-f", "--format", choices=["text", "json"],
                        default="text", help="Output format (default: text)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable verbose output")
    parser.add_argument("--log-file", help="Save detailed logs to file")
    parser.add_argument("--simulate", action="store_true",
                        help="Run against an in-memory lab instead of Azure")
    parser.add_argument("--simulate-state", dest="simulate_state",
                        help="JSON file that keeps the simulated lab between runs")
    parser.add_argument("--direct-probe", dest="direct_probe", action="store_true",
                        help="Query DNS servers from this host with dnspython instead of dig on the DNS VMs")
    parser.add_argument("--delete-resources", action="store_true",
                        help="With teardown: delete the zones' resource groups")
    return parser


def main():
    """Main function"""
    parser = build_parser()
    args = parser.parse_args()

    logger = setup_logging(args.verbose, args.log_file)
    user_output = UserOutput(args.verbose)

    logger.info("Azure DNS Migration Coordinator started")
    logger.info(f"Command line args: {' '.join(sys.argv[1:])}")

    try:
        target = CutoverPhase.parse(args.phase)
    except ValueError as e:
        user_output.error(str(e))
        sys.exit(1)

    lab = None
    settings = {}
    report = MigrationReport(command=args.command, target=target)
    try:
        settings = resolve_settings(args)
        report.simulated = bool(settings['simulate'])
        topology = load_topology(settings['topology'], logger.getChild('topology'), overrides={
            'resource_group_prefix': settings['resource_group_prefix'],
            'location': settings['location'],
        })
        sequencer, lab = build_sequencer(topology, settings, logger)
        run_command(args, sequencer, report, user_output, logger)

    except VerificationFailure as e:
        report.error = str(e)
        logger.error(f"Migration halted: {e}")
        if not report.results:
            report.results = [e.result]
        user_output.error(str(e))
    except TopologyError as e:
        report.error = str(e)
        logger.error(f"{type(e).__name__}: {e}")
        user_output.error(f"{type(e).__name__}: {e}")
    except Exception as e:
        error_msg = f"Unexpected error: {e}"
        report.error = error_msg
        logger.error(error_msg, exc_info=True)
        user_output.error(error_msg)
    finally:
        if lab is not None and settings.get('simulate_state'):
            lab.save(settings['simulate_state'])

    reporter = ReportGenerator()
    if args.format == "json":
        output = reporter.generate_json_report(report)
    else:
        output = reporter.generate_text_report(report)

    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(output)
        user_output.info(f"Report saved to: {args.output}")
        logger.info(f"Report saved to: {args.output}")
    else:
        user_output.info(output)

    if report.passed:
        logger.info(f"{args.command} completed successfully")
        sys.exit(0)
    logger.warning(f"{args.command} finished with failures")
    sys.exit(1)


if __name__ == "__main__":
    main()
