#!/usr/bin/env python3
"""
Simulated Azure Lab

In-memory stand-in for the Azure CLI provisioner and the run-command DNS
agent. It models what matters to the migration: VNets, peerings, the DNS
server a VNet hands out, client VMs that only pick up that server after a
restart, and BIND servers that answer from the document last written to
them (authoritative zones first, then the first matching forwarder, then the
default upstream).

Used by `dns_migration.py --simulate` and by the tests.
"""

import ipaddress
import json
import logging
import os
from collections import Counter
from typing import Dict, List, Optional, Set, Tuple

from azure_lab import DNS_SUBNET_NAME, NetworkInfo, VmSpec
from bind_config import render_server_files
from dns_topology import (
    AZURE_PROVIDER_RESOLVER, PRIVATE_TLDS, PROVIDER_DEFAULT, ProvisioningError,
    ServerConfig, Zone, ZoneKind, ZoneRegistry, is_subdomain, normalize_suffix,
)
from verification_gate import ProbeAnswer, ProbeError

SUBSCRIPTION_ID = '00000000-0000-0000-0000-000000000000'

# Recursive resolvers reachable from every VNet
PUBLIC_RESOLVERS = {AZURE_PROVIDER_RESOLVER, '8.8.8.8', '1.1.1.1'}

# What the public internet answers for a few well-known names
PUBLIC_RECORDS = {
    'www.microsoft.com': 'www.microsoft.com-c-3.edgekey.net.',
    'www.microsoft.com-c-3.edgekey.net': '23.45.229.117',
    'account.privatelink.blob.core.windows.net': '52.239.169.68',
}

MAX_DEPTH = 16


def _is_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def _rdata(value: str) -> str:
    if _is_address(value):
        return value
    return normalize_suffix(value) + '.'


def vnet_resource_id(resource_group: str, vnet_name: str) -> str:
    return (f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.Network/virtualNetworks/{vnet_name}")


def vm_resource_id(resource_group: str, vm_name: str) -> str:
    return (f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.Compute/virtualMachines/{vm_name}")


class SimulatedLab:
    """Provisioner and DNS agent backed by an in-memory model of the lab"""

    def __init__(self, registry: ZoneRegistry, logger: logging.Logger = None):
        self.registry = registry
        self.logger = logger or logging.getLogger('dns_migration.simulator')
        self.networks: Dict[str, Dict] = {}
        self.vms: Dict[str, Dict] = {}
        self.peerings: Set[Tuple[str, str]] = set()
        self.counters = Counter()
        self._failures = Counter()

    # -- test hooks ---------------------------------------------------------

    def inject_failure(self, operation: str, times: int = 1):
        """Make the next `times` calls of `operation` raise ProvisioningError"""
        self._failures[operation] += times

    def _maybe_fail(self, operation: str):
        if self._failures[operation] > 0:
            self._failures[operation] -= 1
            raise ProvisioningError(f"Simulated failure in {operation}")
        self.counters[operation] += 1

    def set_service_active(self, zone: Zone, active: bool):
        self._dns_vm(zone)['service_active'] = active

    # -- provisioner ----------------------------------------------------------

    def _vnet_id(self, zone: Zone) -> str:
        return vnet_resource_id(zone.resource_group, zone.vnet_name)

    def network_exists(self, zone: Zone) -> bool:
        vnet_id = self._vnet_id(zone)
        if vnet_id in self.networks:
            zone.vnet_id = vnet_id
            return True
        return False

    def create_network(self, zone: Zone) -> NetworkInfo:
        vnet_id = self._vnet_id(zone)
        if vnet_id not in self.networks:
            self._maybe_fail('create_network')
            self.networks[vnet_id] = {'zone': zone.name, 'dns_server': PROVIDER_DEFAULT}
            self.logger.info(f"[sim] created {zone.vnet_name} in {zone.resource_group}")
        zone.vnet_id = vnet_id
        return NetworkInfo(vnet_id, [f"{vnet_id}/subnets/{DNS_SUBNET_NAME}"])

    def vm_id(self, zone: Zone, vm_name: str) -> Optional[str]:
        vm_id = vm_resource_id(zone.resource_group, vm_name)
        return vm_id if vm_id in self.vms else None

    def vm_exists(self, zone: Zone, vm_name: str) -> bool:
        return self.vm_id(zone, vm_name) is not None

    def create_vm(self, spec: VmSpec) -> str:
        vm_id = vm_resource_id(spec.resource_group, spec.name)
        if vm_id in self.vms:
            return vm_id
        vnet_id = vnet_resource_id(spec.resource_group, spec.vnet_name)
        if vnet_id not in self.networks:
            raise ProvisioningError(f"VNet {spec.vnet_name} does not exist in {spec.resource_group}")
        self._maybe_fail('create_vm')

        is_dns = spec.custom_data is not None
        self.vms[vm_id] = {
            'name': spec.name,
            'vnet_id': vnet_id,
            'private_ip': spec.private_ip,
            'role': 'dns' if is_dns else 'client',
            # cloud-init installs and starts named
            'service_active': is_dns,
            'config': None,
            'files': {},
            'lease': self.networks[vnet_id]['dns_server'],
        }
        self.logger.info(f"[sim] created VM {spec.name}")
        return vm_id

    def get_vnet_resolver(self, vnet_id: str) -> str:
        if vnet_id not in self.networks:
            raise ProvisioningError(f"VNet {vnet_id} does not exist")
        return self.networks[vnet_id]['dns_server']

    def set_vnet_resolver(self, vnet_id: str, dns_server: str):
        if vnet_id not in self.networks:
            raise ProvisioningError(f"VNet {vnet_id} does not exist")
        self._maybe_fail('set_vnet_resolver')
        self.networks[vnet_id]['dns_server'] = dns_server or PROVIDER_DEFAULT

    def peering_exists(self, vnet_a: str, vnet_b: str) -> bool:
        return (vnet_a, vnet_b) in self.peerings

    def create_peering(self, vnet_a: str, vnet_b: str):
        for vnet_id in (vnet_a, vnet_b):
            if vnet_id not in self.networks:
                raise ProvisioningError(f"VNet {vnet_id} does not exist")
        self._maybe_fail('create_peering')
        self.peerings.add((vnet_a, vnet_b))
        self.peerings.add((vnet_b, vnet_a))

    def restart_vm(self, vm_id: str):
        """A restart renews the DHCP lease, picking up the VNet's DNS server"""
        vm = self.vms.get(vm_id)
        if vm is None:
            raise ProvisioningError(f"VM {vm_id} does not exist")
        self._maybe_fail('restart_vm')
        vm['lease'] = self.networks[vm['vnet_id']]['dns_server']

    def delete_resource_group(self, zone: Zone):
        self._maybe_fail('delete_resource_group')
        marker = f"/resourceGroups/{zone.resource_group}/"
        removed = {v for v in self.networks if marker in v}
        self.networks = {k: v for k, v in self.networks.items() if k not in removed}
        self.vms = {k: v for k, v in self.vms.items() if marker not in k}
        self.peerings = {p for p in self.peerings if not (set(p) & removed)}

    # -- DNS agent ------------------------------------------------------------

    def _dns_vm(self, zone: Zone) -> Dict:
        vm_id = self.vm_id(zone, zone.dns_vm)
        if vm_id is None:
            raise ProbeError(f"VM {zone.dns_vm} of zone {zone.name} does not exist")
        return self.vms[vm_id]

    def _probe_vm(self, zone: Zone) -> Dict:
        vm_id = self.vm_id(zone, zone.probe_vm)
        if vm_id is None:
            raise ProbeError(f"VM {zone.probe_vm} of zone {zone.name} does not exist")
        return self.vms[vm_id]

    def service_active(self, zone: Zone) -> bool:
        return self._dns_vm(zone)['service_active']

    def read_config(self, zone: Zone) -> Optional[ServerConfig]:
        config = self._dns_vm(zone)['config']
        return ServerConfig.from_dict(config) if config else None

    def write_config(self, zone: Zone, config: ServerConfig):
        vm = self._dns_vm(zone)
        files = render_server_files(config, logger=self.logger)
        self._maybe_fail('write_config')
        vm['config'] = json.loads(json.dumps(config.to_dict()))
        vm['files'] = files
        self.logger.info(f"[sim] wrote {len(files)} files to {zone.dns_vm}")

    def query(self, zone: Zone, server: str, name: str) -> ProbeAnswer:
        self._dns_vm(zone)
        return self._lookup(zone, server, name)

    def resolve_from_client(self, zone: Zone, name: str) -> ProbeAnswer:
        lease = self._probe_vm(zone)['lease']
        server = AZURE_PROVIDER_RESOLVER if lease == PROVIDER_DEFAULT else lease
        return self._lookup(zone, server, name)

    def resolver_addresses(self, zone: Zone) -> List[str]:
        lease = self._probe_vm(zone)['lease']
        return [AZURE_PROVIDER_RESOLVER if lease == PROVIDER_DEFAULT else lease]

    def restart_probe_vm(self, zone: Zone):
        vm_id = self.vm_id(zone, zone.probe_vm)
        if vm_id is None:
            raise ProbeError(f"VM {zone.probe_vm} of zone {zone.name} does not exist")
        self.restart_vm(vm_id)

    # -- resolution model -----------------------------------------------------

    def _hosted_zones(self, server: str) -> List[Zone]:
        return [z for z in self.registry.zones_at(server) if z.kind is ZoneKind.PROVIDER]

    def _server_zone(self, server: str) -> Optional[Zone]:
        for zone in self.registry.zones_at(server):
            if zone.kind is ZoneKind.SERVER:
                return zone
        return None

    def _reachable(self, source: Zone, server: str) -> bool:
        if server in PUBLIC_RESOLVERS or self._hosted_zones(server):
            return True
        target = self._server_zone(server)
        if target is None:
            return False
        if target.name == source.name:
            return True
        return (self._vnet_id(source), self._vnet_id(target)) in self.peerings

    def _lookup(self, source: Zone, server: str, name: str) -> ProbeAnswer:
        if not self._reachable(source, server):
            raise ProbeError(f"connection timed out: {server} is unreachable from {source.name}")
        answer = self._answer(server, normalize_suffix(name), frozenset(), 0)
        if answer is None:
            raise ProbeError(f"connection timed out: no response from {server}")
        return answer

    def _answer(self, server: str, name: str, seen, depth: int) -> Optional[ProbeAnswer]:
        """What `server` replies for `name`; None when nothing listens there"""
        if depth > MAX_DEPTH or (server, name) in seen:
            return ProbeAnswer(name, 'SERVFAIL')
        seen = seen | {(server, name)}

        if server in PUBLIC_RESOLVERS or self._hosted_zones(server):
            return self._provider_answer(server, name, seen, depth)

        zone = self._server_zone(server)
        if zone is None or not self.vm_exists(zone, zone.dns_vm):
            return None
        vm = self._dns_vm(zone)
        if not vm['service_active']:
            return None
        config = ServerConfig.from_dict(vm['config']) if vm['config'] else ServerConfig(zone=zone.name)
        return self._server_answer(zone, config, name, seen, depth)

    def _server_answer(self, zone: Zone, config: ServerConfig, name: str, seen, depth: int) -> ProbeAnswer:
        covering = [s for s in config.authoritative_zones if is_subdomain(name, s)]
        if covering:
            suffix = max(covering, key=len)
            label = name[:-len(suffix)].rstrip('.') or '@'
            value = config.authoritative_zones[suffix].get(label)
            if value is None:
                return ProbeAnswer(name, 'NXDOMAIN', authoritative=True)
            answer = ProbeAnswer(name, 'NOERROR', True, [_rdata(value)])
            if not _is_address(value):
                chased = self._server_answer(zone, config, normalize_suffix(value), seen, depth + 1)
                answer.answers.extend(chased.answers)
                answer.rcode = chased.rcode
            return answer

        forwarder = next((f for f in config.forwarders if is_subdomain(name, f.suffix)), None)
        target = forwarder.server if forwarder else config.upstream
        if target is None:
            return ProbeAnswer(name, 'SERVFAIL')

        # Unsigned private names fail validation unless exempted
        if name.split('.')[-1] in PRIVATE_TLDS and not any(
                is_subdomain(name, e) for e in config.dnssec_exemptions):
            return ProbeAnswer(name, 'SERVFAIL')
        if not self._reachable(zone, target):
            return ProbeAnswer(name, 'SERVFAIL')

        upstream = self._answer(target, name, seen, depth + 1)
        if upstream is None:
            return ProbeAnswer(name, 'SERVFAIL')
        answer = ProbeAnswer(name, upstream.rcode, False, list(upstream.answers))
        if answer.rcode == 'NOERROR' and answer.answers and not _is_address(answer.answers[-1]):
            chased = self._server_answer(zone, config, normalize_suffix(answer.answers[-1]), seen, depth + 1)
            answer.answers.extend(chased.answers)
            answer.rcode = chased.rcode
        return answer

    def _provider_answer(self, server: str, name: str, seen, depth: int) -> ProbeAnswer:
        hosted = [z for z in self._hosted_zones(server) if is_subdomain(name, z.suffix)]
        if hosted:
            zone = max(hosted, key=lambda z: len(z.suffix))
            value = zone.record_map().get(name)
            if value is None:
                return ProbeAnswer(name, 'NXDOMAIN', authoritative=True)
            answer = ProbeAnswer(name, 'NOERROR', True, [_rdata(value)])
        elif server in PUBLIC_RESOLVERS:
            value = PUBLIC_RECORDS.get(name)
            if value is None and self.registry.alias_target(name):
                # Private endpoint: the public name CNAMEs into the privatelink zone
                value = self.registry.alias_target(name) + '.'
            if value is None:
                return ProbeAnswer(name, 'NXDOMAIN')
            answer = ProbeAnswer(name, 'NOERROR', False, [_rdata(value)])
        else:
            return ProbeAnswer(name, 'REFUSED')

        if not _is_address(value):
            target = normalize_suffix(value)
            authority = self.registry.authority_for(target)
            if authority is not None and authority.server_address != server:
                # Zone cut: the querying resolver chases the target itself
                return answer
            chased = self._answer(server, target, seen, depth + 1)
            if chased is not None:
                answer.answers.extend(chased.answers)
                answer.rcode = chased.rcode
        return answer

    # -- persistence ----------------------------------------------------------

    def to_dict(self) -> Dict:
        return {
            'networks': self.networks,
            'vms': self.vms,
            'peerings': sorted([list(p) for p in self.peerings]),
            'counters': dict(self.counters),
        }

    def save(self, path: str):
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)
        self.logger.debug(f"[sim] saved lab state to {path}")

    @classmethod
    def load(cls, path: Optional[str], registry: ZoneRegistry, logger: logging.Logger = None) -> 'SimulatedLab':
        """Lab from a saved state file; an empty lab if the file does not exist yet"""
        lab = cls(registry, logger)
        if not path or not os.path.exists(path):
            return lab
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ProvisioningError(f"Cannot read simulated lab state {path}: {e}")
        lab.networks = data.get('networks') or {}
        lab.vms = data.get('vms') or {}
        lab.peerings = {tuple(p) for p in data.get('peerings') or []}
        lab.counters = Counter(data.get('counters') or {})
        return lab
