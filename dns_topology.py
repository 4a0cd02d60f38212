#!/usr/bin/env python3
"""
DNS Topology Model

Describes the network zones taking part in the Azure DNS migration (on-prem,
hub and spokes), which DNS server is authoritative for which private suffix,
and which suffixes each server forwards to a peer. The Zone Registry and the
Forwarding Rule Set are the single source of truth every other component
queries before it emits configuration or probes a server.
"""

import ipaddress
import logging
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, Iterator, List, Optional, Set, Tuple

import yaml

# Address of the Azure-provided resolver reachable from every VNet
AZURE_PROVIDER_RESOLVER = '168.63.129.16'

# Marker for a VNet that uses the cloud's built-in DNS
PROVIDER_DEFAULT = 'provider-default'

# Top-level labels that are never delegated from the public root, so never signed
PRIVATE_TLDS = {
    'pvt', 'internal', 'local', 'lan', 'corp', 'home', 'intranet', 'private', 'localdomain'
}

DEFAULT_TOPOLOGY = {
    'resource_group_prefix': 'rg-dnsmig',
    'location': 'eastus2',
    'zones': [
        {
            'name': 'onprem',
            'suffix': 'onprem.pvt',
            'server_address': '10.0.10.4',
            'address_space': '10.0.0.0/16',
            'subnet_prefix': '10.0.10.0/24',
            'upstream': AZURE_PROVIDER_RESOLVER,
            'records': {'dns': '10.0.10.4', 'app': '10.0.10.10'},
        },
        {
            'name': 'hub',
            'suffix': 'azure.pvt',
            'server_address': '10.1.10.4',
            'address_space': '10.1.0.0/16',
            'subnet_prefix': '10.1.10.0/24',
            'upstream': AZURE_PROVIDER_RESOLVER,
            'records': {'dns': '10.1.10.4', 'app': '10.1.10.10'},
        },
        {
            'name': 'spoke1',
            'suffix': 'spoke1.pvt',
            'server_address': '10.2.10.4',
            'address_space': '10.2.0.0/16',
            'subnet_prefix': '10.2.10.0/24',
            'upstream': AZURE_PROVIDER_RESOLVER,
            'records': {'dns': '10.2.10.4', 'app': '10.2.10.10'},
        },
        {
            'name': 'spoke2',
            'suffix': 'spoke2.pvt',
            'server_address': '10.3.10.4',
            'address_space': '10.3.0.0/16',
            'subnet_prefix': '10.3.10.0/24',
            'upstream': AZURE_PROVIDER_RESOLVER,
            'records': {'dns': '10.3.10.4', 'app': '10.3.10.10'},
        },
        {
            # Azure Private DNS zone for the spoke1 storage private endpoint
            'name': 'privatelink-blob',
            'kind': 'provider',
            'suffix': 'privatelink.blob.core.windows.net',
            'server_address': AZURE_PROVIDER_RESOLVER,
            'public_suffix': 'blob.core.windows.net',
            'records': {'account': '10.2.10.5'},
        },
    ],
    'rules': [
        {'from': 'onprem', 'suffix': 'azure.pvt', 'target': '10.1.10.4'},
        {'from': 'onprem', 'suffix': 'spoke1.pvt', 'target': '10.1.10.4'},
        {'from': 'onprem', 'suffix': 'spoke2.pvt', 'target': '10.1.10.4'},
        {'from': 'onprem', 'suffix': 'blob.core.windows.net', 'target': '10.1.10.4'},
        {'from': 'hub', 'suffix': 'onprem.pvt', 'target': '10.0.10.4'},
        {'from': 'hub', 'suffix': 'spoke1.pvt', 'target': '10.2.10.4'},
        {'from': 'hub', 'suffix': 'spoke2.pvt', 'target': '10.3.10.4'},
        {'from': 'hub', 'suffix': 'privatelink.blob.core.windows.net', 'target': AZURE_PROVIDER_RESOLVER},
        {'from': 'spoke1', 'suffix': 'onprem.pvt', 'target': '10.1.10.4'},
        {'from': 'spoke1', 'suffix': 'azure.pvt', 'target': '10.1.10.4'},
        {'from': 'spoke1', 'suffix': 'spoke2.pvt', 'target': '10.1.10.4'},
        {'from': 'spoke2', 'suffix': 'onprem.pvt', 'target': '10.1.10.4'},
        {'from': 'spoke2', 'suffix': 'azure.pvt', 'target': '10.1.10.4'},
        {'from': 'spoke2', 'suffix': 'spoke1.pvt', 'target': '10.1.10.4'},
    ],
    'peerings': [
        ['hub', 'onprem'],
        ['hub', 'spoke1'],
        ['hub', 'spoke2'],
    ],
}


class TopologyError(Exception):
    """Base class for every error raised by the migration coordinator"""


class ConfigurationError(TopologyError):
    """Topology or rule definition rejected before any mutation"""


class ZoneNotFoundError(ConfigurationError):
    """Zone name or suffix is not registered"""


class DuplicateAuthorityError(ConfigurationError):
    """Two zones claim authority for the same suffix"""

    def __init__(self, suffix: str, existing: str, incoming: str):
        self.suffix = suffix
        self.existing = existing
        self.incoming = incoming
        super().__init__(
            f"Zone '{incoming}' cannot be authoritative for '{suffix}': "
            f"zone '{existing}' already claims it"
        )


class SelfForwardError(ConfigurationError):
    """Rule forwards a zone's own suffix (or to its own server)"""


class UnknownTargetError(ConfigurationError):
    """Rule targets an address that is not a registered zone server"""


class MissingDnssecExemptionError(ConfigurationError):
    """Rule validates DNSSEC for an unsigned suffix with no exemption"""


class ForwardingLoopError(ConfigurationError):
    """Rule would make a query for a suffix bounce between servers forever"""


class PrerequisiteNotMetError(TopologyError):
    """A zone this zone depends on has not reached the required phase"""

    def __init__(self, zone: str, target, blocking_zone: str, blocking_phase, required_phase,
                 message: str = None):
        self.zone = zone
        self.target = target
        self.blocking_zone = blocking_zone
        self.blocking_phase = blocking_phase
        self.required_phase = required_phase
        super().__init__(message or (
            f"Cannot advance '{zone}' to {target.label}: zone '{blocking_zone}' is at "
            f"{blocking_phase.label}, needs {required_phase.label} or later"
        ))


class ProvisioningError(TopologyError):
    """A call to the cloud provisioning or command execution API failed"""


class VerificationFailure(TopologyError):
    """Post-mutation verification did not pass"""

    def __init__(self, zone: str, phase, result):
        self.zone = zone
        self.phase = phase
        self.result = result
        failed = [c.name for c in result.failed_checks]
        super().__init__(
            f"Verification of '{zone}' at {phase.label} failed: {', '.join(failed)}"
        )


class CutoverPhase(IntEnum):
    """Ordered migration phases of a single zone"""
    UNPROVISIONED = 0
    PROVISIONED = 1
    AUTHORITY_CONFIGURED = 2
    FORWARDING_CONFIGURED = 3
    RESOLVER_CUTOVER = 4
    VERIFIED = 5

    @property
    def label(self) -> str:
        return self.name.lower().replace('_', '-')

    def next(self) -> 'CutoverPhase':
        if self is CutoverPhase.VERIFIED:
            return self
        return CutoverPhase(self.value + 1)

    @classmethod
    def parse(cls, value) -> 'CutoverPhase':
        """Accept a phase number, a kebab-case label or an enum name"""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        key = text.upper().replace('-', '_')
        try:
            return cls[key]
        except KeyError:
            valid = ', '.join(f"{p.value}/{p.label}" for p in cls)
            raise ValueError(f"Unknown phase '{value}' (valid: {valid})")


class ZoneKind(Enum):
    """Who runs the DNS server of a zone"""
    SERVER = "server"
    PROVIDER = "provider"


def normalize_suffix(suffix: str) -> str:
    """Lower-case a DNS name and strip leading/trailing dots"""
    return (suffix or '').strip().strip('.').lower()


def is_subdomain(name: str, suffix: str) -> bool:
    """True if name equals suffix or sits below it"""
    name = normalize_suffix(name)
    suffix = normalize_suffix(suffix)
    if not suffix:
        return True
    return name == suffix or name.endswith('.' + suffix)


def suffix_sort_key(suffix: str) -> Tuple[int, str]:
    """Narrow suffixes (more labels) first, then alphabetical"""
    suffix = normalize_suffix(suffix)
    return (-len(suffix.split('.')), suffix)


@dataclass
class Zone:
    """A network zone and the DNS server that serves it"""
    name: str
    suffix: str
    server_address: str
    vnet_id: Optional[str] = None
    authoritative: bool = True
    kind: ZoneKind = ZoneKind.SERVER
    records: Dict[str, str] = field(default_factory=dict)
    upstream: Optional[str] = None
    dnssec_signed: bool = False
    resource_group: Optional[str] = None
    location: Optional[str] = None
    vnet_name: Optional[str] = None
    address_space: Optional[str] = None
    subnet_prefix: Optional[str] = None
    dns_vm: Optional[str] = None
    probe_vm: Optional[str] = None
    probe_record: Optional[str] = None
    # Provider zones only: public names <label>.<public_suffix> CNAME into this zone
    public_suffix: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.kind, str):
            self.kind = ZoneKind(self.kind)
        self.suffix = normalize_suffix(self.suffix)
        if self.public_suffix:
            self.public_suffix = normalize_suffix(self.public_suffix)
        if not self.name or not self.suffix:
            raise ConfigurationError("Zone requires a name and a suffix")
        try:
            ipaddress.ip_address(self.server_address)
        except ValueError:
            raise ConfigurationError(
                f"Zone '{self.name}' has an invalid server address: {self.server_address!r}"
            )

        self.records = {normalize_suffix(k) or '@': str(v).strip() for k, v in (self.records or {}).items()}
        if self.kind is ZoneKind.SERVER:
            self.records.setdefault('dns', self.server_address)
            self.vnet_name = self.vnet_name or f"vnet-{self.name}"
            self.dns_vm = self.dns_vm or f"vm-{self.name}-dns"
            self.probe_vm = self.probe_vm or f"vm-{self.name}-client"

    @property
    def is_provider(self) -> bool:
        return self.kind is ZoneKind.PROVIDER

    def fqdn(self, label: str) -> str:
        label = normalize_suffix(label)
        if label in ('', '@'):
            return self.suffix
        return f"{label}.{self.suffix}"

    def record_map(self) -> Dict[str, str]:
        """Records keyed by fully-qualified name"""
        return {self.fqdn(label): value for label, value in self.records.items()}

    def probe_name(self) -> Optional[str]:
        """Name used by verification probes for this zone, if any"""
        if self.probe_record:
            return self.fqdn(self.probe_record)
        if 'dns' in self.records:
            return self.fqdn('dns')
        if self.records:
            return self.fqdn(sorted(self.records)[0])
        return None

    def public_name(self) -> Optional[str]:
        """Public alias of the probe name, e.g. account.blob.core.windows.net"""
        name = self.probe_name()
        if not self.public_suffix or name is None:
            return None
        return name[:-len(self.suffix)] + self.public_suffix

    def alias_target(self, fqdn: str) -> Optional[str]:
        """Name in this zone a public alias points at, if the record exists"""
        fqdn = normalize_suffix(fqdn)
        if not self.public_suffix or is_subdomain(fqdn, self.suffix) or not is_subdomain(fqdn, self.public_suffix):
            return None
        target = fqdn[:-len(self.public_suffix)] + self.suffix
        return target if target in self.record_map() else None


@dataclass(frozen=True)
class ForwardingRule:
    """Forward queries for target_suffix from from_zone's server to target_server"""
    from_zone: str
    target_suffix: str
    target_server: str
    validate_dnssec: bool = False


@dataclass
class VnetResolverBinding:
    """DNS server a VNet hands out to its VMs through DHCP"""
    vnet_id: str
    dns_server: str = PROVIDER_DEFAULT


class MigrationState:
    """Immutable snapshot: zone name -> CutoverPhase"""

    def __init__(self, phases: Optional[Dict[str, CutoverPhase]] = None):
        self._phases = {name: CutoverPhase(phase) for name, phase in (phases or {}).items()}

    def get(self, zone_name: str) -> CutoverPhase:
        return self._phases.get(zone_name, CutoverPhase.UNPROVISIONED)

    def with_phase(self, zone_name: str, phase: CutoverPhase) -> 'MigrationState':
        phases = dict(self._phases)
        phases[zone_name] = CutoverPhase(phase)
        return MigrationState(phases)

    def items(self):
        return self._phases.items()

    def lowest(self) -> CutoverPhase:
        if not self._phases:
            return CutoverPhase.UNPROVISIONED
        return min(self._phases.values())

    def to_dict(self) -> Dict[str, str]:
        return {name: phase.label for name, phase in self._phases.items()}

    def __getitem__(self, zone_name: str) -> CutoverPhase:
        return self.get(zone_name)

    def __contains__(self, zone_name) -> bool:
        return zone_name in self._phases

    def __iter__(self) -> Iterator[str]:
        return iter(self._phases)

    def __len__(self) -> int:
        return len(self._phases)

    def __eq__(self, other) -> bool:
        if not isinstance(other, MigrationState):
            return NotImplemented
        return self._phases == other._phases

    def __repr__(self) -> str:
        return f"MigrationState({self.to_dict()})"


class ZoneRegistry:
    """Static description of every zone plus the live VNet resolver bindings"""

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger('dns_migration.registry')
        self._zones: Dict[str, Zone] = {}
        self._bindings: Dict[str, VnetResolverBinding] = {}

    def register(self, zone: Zone) -> Zone:
        """Add a zone, rejecting a second authority for the same suffix"""
        if zone.name in self._zones:
            raise ConfigurationError(f"Zone '{zone.name}' is already registered")

        if zone.authoritative:
            existing = self.resolve(zone.suffix)
            if existing is not None:
                raise DuplicateAuthorityError(zone.suffix, existing.name, zone.name)

        if zone.kind is ZoneKind.SERVER:
            for other in self.zones_at(zone.server_address):
                if other.kind is ZoneKind.SERVER:
                    raise ConfigurationError(
                        f"Zones '{other.name}' and '{zone.name}' cannot share DNS server {zone.server_address}"
                    )

        self._zones[zone.name] = zone
        if zone.vnet_id:
            self._bindings.setdefault(zone.vnet_id, VnetResolverBinding(zone.vnet_id))
        self.logger.debug(f"Registered zone {zone.name} ({zone.suffix} @ {zone.server_address})")
        return zone

    def resolve(self, suffix: str) -> Optional[Zone]:
        """Zone authoritative for exactly this suffix, or None"""
        suffix = normalize_suffix(suffix)
        for zone in self._zones.values():
            if zone.authoritative and zone.suffix == suffix:
                return zone
        return None

    def authority_for(self, fqdn: str) -> Optional[Zone]:
        """Authoritative zone with the longest suffix covering fqdn"""
        best = None
        for zone in self._zones.values():
            if zone.authoritative and is_subdomain(fqdn, zone.suffix):
                if best is None or len(zone.suffix) > len(best.suffix):
                    best = zone
        return best

    def alias_target(self, fqdn: str) -> Optional[str]:
        """Private name a public alias CNAMEs to, or None"""
        for zone in self._zones.values():
            target = zone.alias_target(fqdn)
            if target:
                return target
        return None

    def get(self, name: str) -> Zone:
        try:
            return self._zones[name]
        except KeyError:
            raise ZoneNotFoundError(f"Zone '{name}' is not registered")

    def zones_at(self, address: str) -> List[Zone]:
        return [z for z in self._zones.values() if z.server_address == address]

    def zones(self) -> List[Zone]:
        return list(self._zones.values())

    def server_zones(self) -> List[Zone]:
        return [z for z in self._zones.values() if z.kind is ZoneKind.SERVER]

    def index_of(self, name: str) -> int:
        return list(self._zones).index(name)

    def set_vnet_id(self, zone_name: str, vnet_id: str):
        zone = self.get(zone_name)
        zone.vnet_id = vnet_id
        self._bindings.setdefault(vnet_id, VnetResolverBinding(vnet_id))

    def binding(self, vnet_id: str) -> VnetResolverBinding:
        return self._bindings.setdefault(vnet_id, VnetResolverBinding(vnet_id))

    def bind(self, vnet_id: str, dns_server: str) -> VnetResolverBinding:
        """Record the resolver currently handed out by a VNet"""
        binding = self.binding(vnet_id)
        binding.dns_server = dns_server or PROVIDER_DEFAULT
        return binding

    def __contains__(self, name) -> bool:
        return name in self._zones

    def __iter__(self) -> Iterator[Zone]:
        return iter(list(self._zones.values()))

    def __len__(self) -> int:
        return len(self._zones)


class ForwardingRuleSet:
    """Per-zone forwarding rules plus the DNSSEC exemptions they require"""

    def __init__(self, registry: ZoneRegistry, logger: logging.Logger = None):
        self.registry = registry
        self.logger = logger or logging.getLogger('dns_migration.rules')
        self._rules: Dict[str, Dict[str, ForwardingRule]] = {}
        self._exemptions: Dict[str, Set[str]] = {}

    def add_exemption(self, zone_name: str, suffix: str):
        """Declare that zone_name's server must not DNSSEC-validate suffix"""
        self.registry.get(zone_name)
        self._exemptions.setdefault(zone_name, set()).add(normalize_suffix(suffix))

    def add_rule(self, rule: ForwardingRule):
        """Validate and store a rule; nothing is stored if any check fails"""
        zone = self.registry.get(rule.from_zone)
        suffix = normalize_suffix(rule.target_suffix)
        rule = ForwardingRule(rule.from_zone, suffix, rule.target_server, rule.validate_dnssec)

        if suffix == zone.suffix:
            raise SelfForwardError(f"Zone '{zone.name}' cannot forward its own suffix '{suffix}'")
        if rule.target_server == zone.server_address:
            raise SelfForwardError(f"Zone '{zone.name}' cannot forward '{suffix}' to its own server")

        if not self.registry.zones_at(rule.target_server):
            raise UnknownTargetError(
                f"Rule {zone.name} -> {suffix} targets {rule.target_server}, which is not a registered zone server"
            )

        if rule.validate_dnssec and self._is_unsigned(suffix) and not self._exempted(zone.name, suffix):
            raise MissingDnssecExemptionError(
                f"Zone '{zone.name}' forwards unsigned suffix '{suffix}' with DNSSEC validation on; "
                f"add an exemption or disable validation for the rule"
            )

        existing = self._rules.get(zone.name, {}).get(suffix)
        if existing is not None:
            if existing.target_server == rule.target_server:
                self.logger.debug(f"Rule {zone.name} -> {suffix} already present")
                return
            raise ConfigurationError(
                f"Zone '{zone.name}' already forwards '{suffix}' to {existing.target_server}"
            )

        # Raises ForwardingLoopError if this rule would close a cycle
        self._trace(zone, suffix, first_rule=rule)

        self._rules.setdefault(zone.name, {})[suffix] = rule
        self.logger.debug(f"Added rule {zone.name}: {suffix} -> {rule.target_server}")

    def rules_for(self, zone_name: str) -> List[ForwardingRule]:
        """Rules of a zone, narrow suffixes before broad ones"""
        rules = self._rules.get(zone_name, {})
        return [rules[s] for s in sorted(rules, key=suffix_sort_key)]

    def all_rules(self) -> List[ForwardingRule]:
        result = []
        for zone in self.registry:
            result.extend(self.rules_for(zone.name))
        return result

    def dnssec_exemptions(self, zone_name: str) -> Set[str]:
        exemptions = set(self._exemptions.get(zone_name, set()))
        exemptions.update(rule.target_suffix for rule in self.rules_for(zone_name))
        return exemptions

    def match(self, zone_name: str, fqdn: str) -> Optional[ForwardingRule]:
        """Longest-suffix rule of zone_name covering fqdn"""
        for rule in self.rules_for(zone_name):
            if is_subdomain(fqdn, rule.target_suffix):
                return rule
        return None

    def target_zone(self, rule: ForwardingRule) -> Zone:
        return self._zone_serving(rule.target_server, rule.target_suffix)

    def dependencies(self, zone_name: str) -> Set[str]:
        """Server zones that must be able to answer before zone_name can rely on its rules"""
        zone = self.registry.get(zone_name)
        needed = set()
        for rule in self.rules_for(zone_name):
            for hop in self._trace(zone, rule.target_suffix)[1:]:
                if hop.kind is ZoneKind.SERVER and hop.name != zone_name:
                    needed.add(hop.name)
        return needed

    def relay_dependencies(self, zone_name: str) -> Set[str]:
        """Server zones that pass zone_name's forwarded queries on to another server"""
        zone = self.registry.get(zone_name)
        relays = set()
        for rule in self.rules_for(zone_name):
            for hop in self._trace(zone, rule.target_suffix)[1:-1]:
                if hop.kind is ZoneKind.SERVER:
                    relays.add(hop.name)
        return relays

    def resolution_path(self, zone_name: str, suffix: str) -> List[Zone]:
        """Zones a query for suffix passes through, starting at zone_name"""
        return self._trace(self.registry.get(zone_name), normalize_suffix(suffix))

    def dependency_graph(self) -> Dict[str, Set[str]]:
        return {z.name: self.dependencies(z.name) for z in self.registry.server_zones()}

    def _zone_serving(self, address: str, suffix: str) -> Zone:
        candidates = self.registry.zones_at(address)
        if not candidates:
            raise UnknownTargetError(f"No registered zone serves {address}")
        covering = [z for z in candidates if z.authoritative and is_subdomain(suffix, z.suffix)]
        if covering:
            return max(covering, key=lambda z: len(z.suffix))
        for zone in candidates:
            if zone.kind is ZoneKind.SERVER:
                return zone
        return candidates[0]

    def _trace(self, start: Zone, suffix: str, first_rule: ForwardingRule = None) -> List[Zone]:
        """Servers a query for suffix visits, starting at start's server"""
        path = [start]
        visited = {start.server_address}
        rule = first_rule or self.match(start.name, suffix)
        while rule is not None:
            hop = self._zone_serving(rule.target_server, suffix)
            if hop.server_address in visited:
                chain = ' -> '.join(z.name for z in path + [hop])
                raise ForwardingLoopError(f"Forwarding loop for '{suffix}': {chain}")
            path.append(hop)
            visited.add(hop.server_address)
            if hop.kind is ZoneKind.PROVIDER:
                break
            if hop.authoritative and is_subdomain(suffix, hop.suffix):
                break
            rule = self.match(hop.name, suffix)
        return path

    def _is_unsigned(self, suffix: str) -> bool:
        labels = suffix.split('.')
        if labels[-1] in PRIVATE_TLDS or 'privatelink' in labels:
            return True
        authority = self.registry.authority_for(suffix)
        if authority is not None:
            return authority.kind is ZoneKind.SERVER or not authority.dnssec_signed
        return False

    def _exempted(self, zone_name: str, suffix: str) -> bool:
        return any(is_subdomain(suffix, e) for e in self._exemptions.get(zone_name, set()))


@dataclass(frozen=True)
class Forwarder:
    """One conditional forwarder entry in a server document"""
    suffix: str
    server: str


@dataclass
class ServerConfig:
    """Declarative DNS server document: authority, forwarders, DNSSEC exemptions"""
    zone: str
    authoritative_zones: Dict[str, Dict[str, str]] = field(default_factory=dict)
    forwarders: List[Forwarder] = field(default_factory=list)
    dnssec_exemptions: List[str] = field(default_factory=list)
    upstream: Optional[str] = None
    # SOA serial of the last write; not part of the desired state
    serial: int = field(default=0, compare=False)

    def forwarder_for(self, suffix: str) -> Optional[Forwarder]:
        suffix = normalize_suffix(suffix)
        for fwd in self.forwarders:
            if fwd.suffix == suffix:
                return fwd
        return None

    def merged_with(self, other: 'ServerConfig') -> 'ServerConfig':
        """Union of two documents; other wins on conflicting keys"""
        merged = deepcopy(self)
        merged.authoritative_zones.update(deepcopy(other.authoritative_zones))
        by_suffix = {f.suffix: f for f in merged.forwarders}
        by_suffix.update({f.suffix: f for f in other.forwarders})
        merged.forwarders = [by_suffix[s] for s in sorted(by_suffix, key=suffix_sort_key)]
        merged.dnssec_exemptions = sorted(set(merged.dnssec_exemptions) | set(other.dnssec_exemptions))
        if other.upstream:
            merged.upstream = other.upstream
        return merged

    def to_dict(self) -> Dict:
        return {
            'zone': self.zone,
            'authoritative_zones': self.authoritative_zones,
            'forwarders': [{'suffix': f.suffix, 'server': f.server} for f in self.forwarders],
            'dnssec_exemptions': list(self.dnssec_exemptions),
            'upstream': self.upstream,
            'serial': self.serial,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ServerConfig':
        return cls(
            zone=data['zone'],
            authoritative_zones={
                normalize_suffix(s): dict(records)
                for s, records in (data.get('authoritative_zones') or {}).items()
            },
            forwarders=[
                Forwarder(normalize_suffix(f['suffix']), f['server'])
                for f in data.get('forwarders') or []
            ],
            dnssec_exemptions=[normalize_suffix(s) for s in data.get('dnssec_exemptions') or []],
            upstream=data.get('upstream'),
            serial=int(data.get('serial') or 0),
        )


def authority_document(zone: Zone) -> ServerConfig:
    """Server document slice written at AUTHORITY_CONFIGURED"""
    config = ServerConfig(zone=zone.name, upstream=zone.upstream)
    if zone.authoritative:
        config.authoritative_zones[zone.suffix] = dict(zone.records)
    return config


def forwarding_document(zone: Zone, rules: ForwardingRuleSet) -> ServerConfig:
    """Server document slice written at FORWARDING_CONFIGURED"""
    return ServerConfig(
        zone=zone.name,
        forwarders=[Forwarder(r.target_suffix, r.target_server) for r in rules.rules_for(zone.name)],
        dnssec_exemptions=sorted(rules.dnssec_exemptions(zone.name)),
    )


def desired_server_config(zone: Zone, rules: ForwardingRuleSet) -> ServerConfig:
    """Complete document a fully migrated server should hold"""
    return authority_document(zone).merged_with(forwarding_document(zone, rules))


@dataclass
class Topology:
    """Registry, rules and provisioning settings loaded together"""
    registry: ZoneRegistry
    rules: ForwardingRuleSet
    peerings: List[Tuple[str, str]] = field(default_factory=list)
    resource_group_prefix: str = 'rg-dnsmig'
    location: str = 'eastus2'


def build_topology(data: Dict, logger: logging.Logger = None) -> Topology:
    """Build a Topology from a parsed YAML/dict description"""
    logger = logger or logging.getLogger('dns_migration.topology')
    prefix = data.get('resource_group_prefix', DEFAULT_TOPOLOGY['resource_group_prefix'])
    location = data.get('location', DEFAULT_TOPOLOGY['location'])

    registry = ZoneRegistry(logger)
    for entry in data.get('zones') or []:
        entry = dict(entry)
        if entry.get('kind', 'server') == ZoneKind.SERVER.value:
            entry.setdefault('resource_group', f"{prefix}-{entry.get('name')}")
            entry.setdefault('location', location)
        try:
            registry.register(Zone(**entry))
        except TypeError as e:
            raise ConfigurationError(f"Invalid zone definition {entry.get('name')!r}: {e}")

    rules = ForwardingRuleSet(registry, logger)
    for entry in data.get('exemptions') or []:
        rules.add_exemption(entry['zone'], entry['suffix'])
    for entry in data.get('rules') or []:
        try:
            rule = ForwardingRule(
                from_zone=entry['from'],
                target_suffix=entry['suffix'],
                target_server=entry['target'],
                validate_dnssec=bool(entry.get('validate_dnssec', False)),
            )
        except KeyError as e:
            raise ConfigurationError(f"Forwarding rule {entry!r} is missing {e}")
        rules.add_rule(rule)

    peerings = []
    for pair in data.get('peerings') or []:
        if len(pair) != 2:
            raise ConfigurationError(f"Peering {pair!r} must name exactly two zones")
        a, b = registry.get(pair[0]), registry.get(pair[1])
        peerings.append((a.name, b.name))

    logger.info(f"Loaded topology: {len(registry)} zones, {len(rules.all_rules())} rules, {len(peerings)} peerings")
    return Topology(registry, rules, peerings, prefix, location)


def load_topology(path: Optional[str] = None, logger: logging.Logger = None,
                  overrides: Optional[Dict] = None) -> Topology:
    """Load a topology YAML file, or the built-in lab when path is None"""
    if path is None:
        data = deepcopy(DEFAULT_TOPOLOGY)
    else:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigurationError(f"Cannot read topology file {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid topology file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Topology file {path} must contain a mapping")
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    return build_topology(data, logger)
