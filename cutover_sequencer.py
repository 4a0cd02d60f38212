#!/usr/bin/env python3
"""
Cutover Sequencer

Drives every zone through the migration phases:

    provisioned -> authority-configured -> forwarding-configured
                -> resolver-cutover -> verified

The order is derived from the forwarding rules instead of being hard-coded,
a VNet is never pointed at a DNS server whose forwarding peers are not ready,
and every step is expressed as "ensure this holds" so a rerun after a
partial failure converges instead of duplicating configuration.
"""

import heapq
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from azure_lab import vm_spec_for
from bind_config import next_serial
from dns_topology import (
    AZURE_PROVIDER_RESOLVER, PROVIDER_DEFAULT, ConfigurationError, CutoverPhase,
    Forwarder, ForwardingRuleSet, MigrationState, PrerequisiteNotMetError,
    ServerConfig, VerificationFailure, Zone, ZoneRegistry, authority_document,
)
from verification_gate import ProbeError, VerificationGate, VerificationResult

# Phases that route real client traffic to the zone's server
TRAFFIC_PHASES = (CutoverPhase.RESOLVER_CUTOVER, CutoverPhase.VERIFIED)

# Lowest phase a dependency must hold before a dependent zone takes traffic
REQUIRED_DEPENDENCY_PHASE = CutoverPhase.FORWARDING_CONFIGURED


class ChangeKind(Enum):
    """Kinds of state the guard knows how to check and converge"""
    NETWORK = "network"
    VM = "vm"
    PEERING = "peering"
    AUTHORITY = "authority"
    FORWARDING = "forwarding"
    DNSSEC_EXEMPTION = "dnssec-exemption"
    RESOLVER_BINDING = "resolver-binding"
    CLIENT_RESOLVER = "client-resolver"


CONFIG_KINDS = {ChangeKind.AUTHORITY, ChangeKind.FORWARDING, ChangeKind.DNSSEC_EXEMPTION}


@dataclass(frozen=True)
class Change:
    """Desired state: kind + key (suffix, VM, peer...) + value (server...)"""
    kind: ChangeKind
    key: str
    value: str = ''

    def describe(self) -> str:
        if self.value:
            return f"{self.kind.value} {self.key} -> {self.value}"
        return f"{self.kind.value} {self.key}"


@dataclass
class LiveSnapshot:
    """What probing the live infrastructure found for one zone"""
    zone: str
    network_exists: bool = False
    dns_vm_exists: bool = False
    probe_vm_exists: bool = False
    service_active: bool = False
    config: Optional[ServerConfig] = None
    vnet_resolver: str = PROVIDER_DEFAULT
    verified: Optional[bool] = None


def changes_for(zone: Zone, phase: CutoverPhase, rules: ForwardingRuleSet,
                peers: Sequence[str] = ()) -> List[Change]:
    """Changes that make up the step into `phase`"""
    if phase == CutoverPhase.PROVISIONED:
        changes = [
            Change(ChangeKind.NETWORK, zone.vnet_name),
            Change(ChangeKind.VM, zone.dns_vm),
            Change(ChangeKind.VM, zone.probe_vm),
        ]
        changes.extend(Change(ChangeKind.PEERING, peer) for peer in peers)
        return changes
    if phase == CutoverPhase.AUTHORITY_CONFIGURED:
        if not zone.authoritative:
            return []
        return [Change(ChangeKind.AUTHORITY, zone.suffix)]
    if phase == CutoverPhase.FORWARDING_CONFIGURED:
        changes = [
            Change(ChangeKind.FORWARDING, r.target_suffix, r.target_server)
            for r in rules.rules_for(zone.name)
        ]
        changes.extend(
            Change(ChangeKind.DNSSEC_EXEMPTION, s) for s in sorted(rules.dnssec_exemptions(zone.name))
        )
        return changes
    if phase == CutoverPhase.RESOLVER_CUTOVER:
        return [
            Change(ChangeKind.RESOLVER_BINDING, zone.vnet_name, zone.server_address),
            Change(ChangeKind.CLIENT_RESOLVER, zone.probe_vm, zone.server_address),
        ]
    return []


def rollback_changes(zone: Zone) -> List[Change]:
    return [
        Change(ChangeKind.RESOLVER_BINDING, zone.vnet_name, PROVIDER_DEFAULT),
        Change(ChangeKind.CLIENT_RESOLVER, zone.probe_vm, PROVIDER_DEFAULT),
    ]


def _has_authority(config: ServerConfig, zone: Zone) -> bool:
    records = config.authoritative_zones.get(zone.suffix)
    return records is not None and records == zone.records and config.upstream == zone.upstream


def derive_phase(zone: Zone, snapshot: LiveSnapshot, rules: ForwardingRuleSet) -> CutoverPhase:
    """Highest phase whose conditions, and all earlier ones, hold in the snapshot"""
    if not (snapshot.network_exists and snapshot.dns_vm_exists and snapshot.probe_vm_exists):
        return CutoverPhase.UNPROVISIONED
    if not snapshot.service_active:
        return CutoverPhase.UNPROVISIONED

    config = snapshot.config or ServerConfig(zone=zone.name)
    if zone.authoritative and not _has_authority(config, zone):
        return CutoverPhase.PROVISIONED

    for rule in rules.rules_for(zone.name):
        fwd = config.forwarder_for(rule.target_suffix)
        if fwd is None or fwd.server != rule.target_server:
            return CutoverPhase.AUTHORITY_CONFIGURED
    if not rules.dnssec_exemptions(zone.name) <= set(config.dnssec_exemptions):
        return CutoverPhase.AUTHORITY_CONFIGURED

    if snapshot.vnet_resolver != zone.server_address:
        return CutoverPhase.FORWARDING_CONFIGURED
    if snapshot.verified:
        return CutoverPhase.VERIFIED
    return CutoverPhase.RESOLVER_CUTOVER


def derive_state(snapshots: Dict[str, LiveSnapshot], registry: ZoneRegistry,
                 rules: ForwardingRuleSet) -> MigrationState:
    """Pure: MigrationState implied by live snapshots of every server zone"""
    phases = {}
    for zone in registry.server_zones():
        snapshot = snapshots.get(zone.name) or LiveSnapshot(zone=zone.name)
        phases[zone.name] = derive_phase(zone, snapshot, rules)
    return MigrationState(phases)


def strongly_connected_components(nodes: Sequence[str], graph: Dict[str, Sequence[str]]) -> List[List[str]]:
    """Tarjan's algorithm; components come out dependencies-first"""
    index = {}
    lowlink = {}
    stack = []
    on_stack = set()
    components = []
    counter = [0]

    def visit(node):
        index[node] = lowlink[node] = counter[0]
        counter[0] += 1
        stack.append(node)
        on_stack.add(node)
        for successor in graph.get(node, ()):
            if successor not in index:
                visit(successor)
                lowlink[node] = min(lowlink[node], lowlink[successor])
            elif successor in on_stack:
                lowlink[node] = min(lowlink[node], index[successor])
        if lowlink[node] == index[node]:
            component = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            components.append(component)

    for node in nodes:
        if node not in index:
            visit(node)
    return components


def cutover_order(registry: ZoneRegistry, rules: ForwardingRuleSet) -> List[str]:
    """Server zones ordered so relaying zones come before the zones that rely on them"""
    names = [z.name for z in registry.server_zones()]
    graph = {n: sorted(rules.relay_dependencies(n), key=registry.index_of) for n in names}
    components = strongly_connected_components(names, graph)

    component_of = {}
    for i, component in enumerate(components):
        component.sort(key=registry.index_of)
        for member in component:
            component_of[member] = i

    # Kahn over the condensed graph; ties go to the earliest registered zone
    dependents = {i: set() for i in range(len(components))}
    pending = {i: 0 for i in range(len(components))}
    for node, deps in graph.items():
        for dep in deps:
            a, b = component_of[dep], component_of[node]
            if a != b and b not in dependents[a]:
                dependents[a].add(b)
                pending[b] += 1

    ready = [(registry.index_of(components[i][0]), i) for i, count in pending.items() if count == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        _, i = heapq.heappop(ready)
        order.extend(components[i])
        for j in dependents[i]:
            pending[j] -= 1
            if pending[j] == 0:
                heapq.heappush(ready, (registry.index_of(components[j][0]), j))
    return order


class IdempotencyGuard:
    """Checks live state before every write so repeated runs converge"""

    def __init__(self, registry: ZoneRegistry, rules: ForwardingRuleSet, provisioner, agent,
                 location: str = 'eastus2', logger: logging.Logger = None):
        self.registry = registry
        self.rules = rules
        self.provisioner = provisioner
        self.agent = agent
        self.location = location
        self.logger = logger or logging.getLogger('dns_migration.guard')

    def already_applied(self, zone_name: str, change: Change,
                        live_config: Optional[ServerConfig] = None) -> bool:
        """True if the live infrastructure already satisfies `change`"""
        zone = self.registry.get(zone_name)
        kind = change.kind

        if kind == ChangeKind.NETWORK:
            return self.provisioner.network_exists(zone)
        if kind == ChangeKind.VM:
            return self.provisioner.vm_exists(zone, change.key)
        if kind == ChangeKind.PEERING:
            peer = self.registry.get(change.key)
            if not peer.vnet_id and not self.provisioner.network_exists(peer):
                return False
            if not zone.vnet_id:
                return False
            return (self.provisioner.peering_exists(zone.vnet_id, peer.vnet_id)
                    and self.provisioner.peering_exists(peer.vnet_id, zone.vnet_id))
        if kind == ChangeKind.RESOLVER_BINDING:
            return self.provisioner.get_vnet_resolver(zone.vnet_id) == change.value
        if kind == ChangeKind.CLIENT_RESOLVER:
            expected = AZURE_PROVIDER_RESOLVER if change.value == PROVIDER_DEFAULT else change.value
            servers = self.agent.resolver_addresses(zone)
            return bool(servers) and servers[0] == expected

        if live_config is None:
            live_config = self.agent.read_config(zone)
        if live_config is None:
            return False
        if kind == ChangeKind.AUTHORITY:
            return _has_authority(live_config, zone)
        if kind == ChangeKind.FORWARDING:
            fwd = live_config.forwarder_for(change.key)
            return fwd is not None and fwd.server == change.value
        if kind == ChangeKind.DNSSEC_EXEMPTION:
            return change.key in live_config.dnssec_exemptions
        raise ValueError(f"Unknown change kind: {kind}")

    def ensure(self, zone_name: str, changes: Sequence[Change]) -> List[Change]:
        """Apply whatever part of `changes` does not hold yet; returns what was applied"""
        zone = self.registry.get(zone_name)
        applied = []

        config_changes = [c for c in changes if c.kind in CONFIG_KINDS]
        if config_changes:
            applied.extend(self._ensure_config(zone, config_changes))

        for change in changes:
            if change.kind in CONFIG_KINDS:
                continue
            if self.already_applied(zone_name, change):
                self.logger.debug(f"{zone.name}: {change.describe()} already applied")
                continue
            if self._apply(zone, change):
                applied.append(change)
        return applied

    def _ensure_config(self, zone: Zone, changes: Sequence[Change]) -> List[Change]:
        live = self.agent.read_config(zone)
        missing = [c for c in changes if not self.already_applied(zone.name, c, live or ServerConfig(zone.name))]
        if not missing:
            self.logger.info(f"{zone.name}: server config already holds {len(changes)} item(s); not rewriting")
            return []

        fragment = ServerConfig(zone=zone.name)
        for change in missing:
            if change.kind == ChangeKind.AUTHORITY:
                fragment = fragment.merged_with(authority_document(zone))
            elif change.kind == ChangeKind.FORWARDING:
                fragment.forwarders.append(Forwarder(change.key, change.value))
            elif change.kind == ChangeKind.DNSSEC_EXEMPTION:
                fragment.dnssec_exemptions.append(change.key)

        base = live or ServerConfig(zone=zone.name, upstream=zone.upstream)
        desired = base.merged_with(fragment)
        desired.serial = next_serial(base.serial)
        self.logger.info(f"{zone.name}: writing server config ({', '.join(c.describe() for c in missing)})")
        self.agent.write_config(zone, desired)
        return missing

    def _apply(self, zone: Zone, change: Change) -> bool:
        kind = change.kind
        if kind == ChangeKind.NETWORK:
            info = self.provisioner.create_network(zone)
            self.registry.set_vnet_id(zone.name, info.vnet_id)
        elif kind == ChangeKind.VM:
            self.provisioner.create_vm(vm_spec_for(zone, change.key, self.location))
        elif kind == ChangeKind.PEERING:
            peer = self.registry.get(change.key)
            if not (zone.vnet_id and self.provisioner.network_exists(peer)):
                # Created when the peer is provisioned
                self.logger.info(f"{zone.name}: peer {peer.name} has no network yet; peering deferred")
                return False
            self.provisioner.create_peering(zone.vnet_id, peer.vnet_id)
        elif kind == ChangeKind.RESOLVER_BINDING:
            self.provisioner.set_vnet_resolver(zone.vnet_id, change.value)
            self.registry.bind(zone.vnet_id, change.value)
        elif kind == ChangeKind.CLIENT_RESOLVER:
            # Clients only pick up new VNet DNS servers with a fresh DHCP lease
            self.agent.restart_probe_vm(zone)
        else:
            raise ValueError(f"Cannot apply {change.describe()} outside a config write")
        self.logger.info(f"{zone.name}: applied {change.describe()}")
        return True


class CutoverSequencer:
    """Single-threaded coordinator that owns MigrationState"""

    def __init__(self, registry: ZoneRegistry, rules: ForwardingRuleSet, provisioner, agent,
                 gate: VerificationGate, guard: IdempotencyGuard = None,
                 peerings: Sequence[Tuple[str, str]] = (), state: MigrationState = None,
                 logger: logging.Logger = None):
        self.registry = registry
        self.rules = rules
        self.provisioner = provisioner
        self.agent = agent
        self.gate = gate
        self.logger = logger or logging.getLogger('dns_migration.sequencer')
        self.guard = guard or IdempotencyGuard(registry, rules, provisioner, agent, logger=self.logger)
        self.peerings = list(peerings)
        self._state = state or MigrationState({z.name: CutoverPhase.UNPROVISIONED for z in registry.server_zones()})
        self.history: List[VerificationResult] = []

    @property
    def state(self) -> MigrationState:
        return self._state

    def phase(self, zone_name: str) -> CutoverPhase:
        return self._state.get(zone_name)

    def peers_of(self, zone_name: str) -> List[str]:
        peers = []
        for a, b in self.peerings:
            if a == zone_name and b not in peers:
                peers.append(b)
            elif b == zone_name and a not in peers:
                peers.append(a)
        return peers

    def snapshot(self, zone: Zone, verify: bool = False) -> LiveSnapshot:
        """Probe the live infrastructure of one zone"""
        snap = LiveSnapshot(zone=zone.name)
        snap.network_exists = self.provisioner.network_exists(zone)
        if not snap.network_exists:
            return snap
        if zone.vnet_id is None:
            return snap
        self.registry.set_vnet_id(zone.name, zone.vnet_id)
        snap.dns_vm_exists = self.provisioner.vm_exists(zone, zone.dns_vm)
        snap.probe_vm_exists = self.provisioner.vm_exists(zone, zone.probe_vm)
        if not snap.dns_vm_exists:
            return snap

        try:
            snap.service_active = self.agent.service_active(zone)
        except ProbeError as e:
            self.logger.warning(f"{zone.name}: could not check DNS service: {e}")
            snap.service_active = False
        if snap.service_active:
            snap.config = self.agent.read_config(zone)

        snap.vnet_resolver = self.provisioner.get_vnet_resolver(zone.vnet_id)
        self.registry.bind(zone.vnet_id, snap.vnet_resolver)
        if verify and snap.vnet_resolver == zone.server_address:
            snap.verified = self.gate.verify(zone.name, CutoverPhase.VERIFIED).passed
        return snap

    def refresh(self, verify: bool = False) -> MigrationState:
        """Re-derive MigrationState from live infrastructure"""
        snapshots = {z.name: self.snapshot(z, verify) for z in self.registry.server_zones()}
        self._state = derive_state(snapshots, self.registry, self.rules)
        self.logger.info(f"Derived state: {self._state.to_dict()}")
        return self._state

    def dependencies(self, zone_name: str) -> List[str]:
        return sorted(self.rules.dependencies(zone_name), key=self.registry.index_of)

    def check_prerequisites(self, zone_name: str, target: CutoverPhase):
        """Raise PrerequisiteNotMetError if a dependency is not ready for `target`"""
        target = CutoverPhase(target)
        if target not in TRAFFIC_PHASES:
            return
        for dep in self.dependencies(zone_name):
            dep_phase = self.phase(dep)
            if dep_phase < REQUIRED_DEPENDENCY_PHASE:
                raise PrerequisiteNotMetError(zone_name, target, dep, dep_phase, REQUIRED_DEPENDENCY_PHASE)

    def advance(self, zone_name: str, target: CutoverPhase) -> CutoverPhase:
        """Move a zone to `target` one verified phase at a time; no-op if already there"""
        zone = self.registry.get(zone_name)
        if zone.is_provider:
            raise ConfigurationError(f"Zone '{zone_name}' is provider-managed and is not migrated")
        target = CutoverPhase(target)
        current = self.phase(zone_name)

        if current >= target:
            self.logger.info(f"{zone_name} is already at {current.label}; nothing to do for {target.label}")
            return current

        # Reject before touching anything
        self.check_prerequisites(zone_name, target)

        while current < target:
            step = current.next()
            self.check_prerequisites(zone_name, step)
            self.logger.info(f"{zone_name}: {current.label} -> {step.label}")

            changes = changes_for(zone, step, self.rules, self.peers_of(zone_name))
            applied = self.guard.ensure(zone_name, changes)
            if not applied and changes:
                self.logger.info(f"{zone_name}: {step.label} changes were already in place")

            result = self.gate.verify(zone_name, step)
            self.history.append(result)
            if not result.passed:
                raise VerificationFailure(zone_name, step, result)

            self._state = self._state.with_phase(zone_name, step)
            current = step
        return current

    def cutover_order(self) -> List[str]:
        return cutover_order(self.registry, self.rules)

    def plan(self, target: CutoverPhase, zones: Optional[Sequence[str]] = None) -> List[Tuple[str, CutoverPhase]]:
        """Phase-major steps from the current state to `target`"""
        target = CutoverPhase(target)
        order = self.cutover_order()
        selected = set(zones) if zones else set(order)
        for name in selected:
            if self.registry.get(name).is_provider:
                raise ConfigurationError(f"Zone '{name}' is provider-managed and is not migrated")

        projected = {name: self.phase(name) for name in order}
        steps = []
        for level in range(CutoverPhase.PROVISIONED, target + 1):
            phase = CutoverPhase(level)
            for name in order:
                if name in selected and projected[name] < phase:
                    steps.append((name, phase))
                    projected[name] = phase
        return steps

    def run(self, target: CutoverPhase, zones: Optional[Sequence[str]] = None) -> MigrationState:
        """Execute the plan step by step; stops at the first error"""
        steps = self.plan(target, zones)
        self.logger.info(f"Executing {len(steps)} step(s) towards {CutoverPhase(target).label}")
        for name, phase in steps:
            self.advance(name, phase)
        return self._state

    def rollback(self, zone_name: str) -> CutoverPhase:
        """Point the zone's VNet back at provider DNS; authority and forwarding stay"""
        zone = self.registry.get(zone_name)
        current = self.phase(zone_name)
        if current < CutoverPhase.RESOLVER_CUTOVER:
            self.logger.info(f"{zone_name} is at {current.label}; no resolver cutover to roll back")
            return current

        self.guard.ensure(zone_name, rollback_changes(zone))
        self._state = self._state.with_phase(zone_name, CutoverPhase.FORWARDING_CONFIGURED)
        self.logger.info(f"{zone_name}: rolled back to {CutoverPhase.FORWARDING_CONFIGURED.label}")
        return CutoverPhase.FORWARDING_CONFIGURED

    def dependents(self, zone_name: str) -> List[str]:
        """Zones routing client traffic that need zone_name's server"""
        return [
            name for name, needs in self.rules.dependency_graph().items()
            if name != zone_name and self.phase(name) in TRAFFIC_PHASES and zone_name in needs
        ]

    def check_decommission(self, zone_name: str, removed_with: Sequence[str] = ()):
        """Raise PrerequisiteNotMetError if a zone outside `removed_with` still resolves through zone_name"""
        for dependent in self.dependents(zone_name):
            if dependent in removed_with:
                continue
            phase = self.phase(dependent)
            raise PrerequisiteNotMetError(
                dependent, phase, zone_name, CutoverPhase.UNPROVISIONED, REQUIRED_DEPENDENCY_PHASE,
                message=(f"Cannot decommission '{zone_name}': zone '{dependent}' is at {phase.label} "
                         f"and resolves through it; roll back '{dependent}' first"),
            )

    def decommission(self, zone_name: str) -> CutoverPhase:
        """Roll back, then delete the zone's resource group"""
        zone = self.registry.get(zone_name)
        self.check_decommission(zone_name)
        self.rollback(zone_name)
        if self.phase(zone_name) > CutoverPhase.UNPROVISIONED or self.provisioner.network_exists(zone):
            self.provisioner.delete_resource_group(zone)
        self._state = self._state.with_phase(zone_name, CutoverPhase.UNPROVISIONED)
        return CutoverPhase.UNPROVISIONED
