#!/usr/bin/env python3
"""
Azure Lab Collaborators

Thin wrappers around the Azure CLI that the migration coordinator calls to
create VNets, VMs and peerings, change the DNS servers a VNet hands out, and
run shell scripts on VMs through `az vm run-command`. Every call blocks, has a
timeout, and is retried a bounded number of times before a ProvisioningError
reaches the caller.
"""

import base64
import json
import logging
import os
import re
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from bind_config import DNS_SERVER_CLOUD_INIT, STATE_PATH, render_server_files
from dns_topology import PROVIDER_DEFAULT, ProvisioningError, ServerConfig, Zone
from verification_gate import ProbeAnswer, ProbeError, parse_dig_output

DEFAULT_VM_IMAGE = 'Ubuntu2204'
DEFAULT_VM_SIZE = 'Standard_B1s'
ADMIN_USERNAME = 'azureuser'
DNS_SUBNET_NAME = 'snet-dns'

AZ_TIMEOUT = 600                 # seconds for a single az invocation
RUN_COMMAND_TIMEOUT = 300        # seconds for a single run-command invocation
PROVISIONING_ATTEMPTS = 3
PROVISIONING_DELAY = 5.0

EXIT_MARKER = '__DNSMIG_EXIT__='
DIG_OPTIONS = '+noall +comments +answer +time=2 +tries=1'

_IPV4_RE = re.compile(r'\b(\d{1,3}(?:\.\d{1,3}){3})\b')
_VNET_ID_RE = re.compile(
    r'/resourceGroups/(?P<rg>[^/]+)/providers/Microsoft\.Network/virtualNetworks/(?P<name>[^/]+)',
    re.IGNORECASE,
)


@dataclass
class NetworkInfo:
    """Identifiers of a zone's VNet and subnets"""
    vnet_id: str
    subnet_ids: List[str] = field(default_factory=list)


@dataclass
class VmSpec:
    """What to create for one VM"""
    name: str
    resource_group: str
    location: str
    vnet_name: str
    subnet_name: str = DNS_SUBNET_NAME
    private_ip: Optional[str] = None
    custom_data: Optional[str] = None
    image: str = DEFAULT_VM_IMAGE
    size: str = DEFAULT_VM_SIZE


@dataclass
class CommandResult:
    """Outcome of a script run on a VM"""
    exit_code: int
    stdout: str
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def with_retries(operation: Callable, description: str, attempts: int = PROVISIONING_ATTEMPTS,
                 delay: float = PROVISIONING_DELAY, factor: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep, logger: logging.Logger = None):
    """Call operation, retrying ProvisioningError with exponential backoff"""
    logger = logger or logging.getLogger('dns_migration.azure')
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ProvisioningError as e:
            last_error = e
            if attempt < attempts:
                logger.warning(f"{description} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay}s")
                sleep(delay)
                delay *= factor
    logger.error(f"{description} failed after {attempts} attempts: {last_error}")
    raise ProvisioningError(f"{description} failed after {attempts} attempts: {last_error}")


def vm_spec_for(zone: Zone, vm_name: str, default_location: str = 'eastus2') -> VmSpec:
    """VmSpec for a zone's DNS server VM or its probe (client) VM"""
    spec = VmSpec(
        name=vm_name, resource_group=zone.resource_group,
        location=zone.location or default_location, vnet_name=zone.vnet_name,
    )
    if vm_name == zone.dns_vm:
        spec.private_ip = zone.server_address
        spec.custom_data = DNS_SERVER_CLOUD_INIT
    return spec


def split_vnet_id(vnet_id: str):
    """(resource group, vnet name) from a VNet resource ID"""
    match = _VNET_ID_RE.search(vnet_id or '')
    if not match:
        raise ProvisioningError(f"Not a VNet resource ID: {vnet_id!r}")
    return match.group('rg'), match.group('name')


class AzureCli:
    """Runs `az` and returns parsed JSON"""

    def __init__(self, az_path: str = 'az', timeout: int = AZ_TIMEOUT, logger: logging.Logger = None):
        self.az_path = az_path
        self.timeout = timeout
        self.logger = logger or logging.getLogger('dns_migration.azure')

    def run(self, args: List[str], timeout: Optional[int] = None, allow_missing: bool = False):
        cmd = [self.az_path] + list(args) + ['--output', 'json']
        self.logger.debug(f"$ {' '.join(shlex.quote(a) for a in cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout or self.timeout)
        except FileNotFoundError:
            raise ProvisioningError(f"Azure CLI '{self.az_path}' not found; install it or use --simulate")
        except subprocess.TimeoutExpired:
            raise ProvisioningError(f"az {' '.join(args[:3])} timed out after {timeout or self.timeout}s")

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if allow_missing and ('ResourceNotFound' in stderr or 'was not found' in stderr):
                return None
            raise ProvisioningError(f"az {' '.join(args[:3])} failed: {stderr or result.returncode}")

        if not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProvisioningError(f"az {' '.join(args[:3])} returned invalid JSON: {e}")


class AzureProvisioner:
    """Provisioning API: networks, VMs, peerings and VNet DNS settings"""

    def __init__(self, cli: AzureCli = None, location: str = 'eastus2',
                 attempts: int = PROVISIONING_ATTEMPTS, delay: float = PROVISIONING_DELAY,
                 sleep: Callable[[float], None] = time.sleep, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger('dns_migration.azure')
        self.cli = cli or AzureCli(logger=self.logger)
        self.location = location
        self.attempts = attempts
        self.delay = delay
        self.sleep = sleep
        self._vm_ids: Dict[str, str] = {}

    def _az(self, args: List[str], description: str, allow_missing: bool = False):
        return with_retries(
            lambda: self.cli.run(args, allow_missing=allow_missing), description,
            attempts=self.attempts, delay=self.delay, sleep=self.sleep, logger=self.logger,
        )

    def network_exists(self, zone: Zone) -> bool:
        vnet = self._az(
            ['network', 'vnet', 'show', '-g', zone.resource_group, '-n', zone.vnet_name],
            f"show vnet {zone.vnet_name}", allow_missing=True,
        )
        if vnet and not zone.vnet_id:
            zone.vnet_id = vnet['id']
        return vnet is not None

    def create_network(self, zone: Zone) -> NetworkInfo:
        """Ensure the zone's resource group, VNet and DNS subnet exist"""
        location = zone.location or self.location
        self._az(['group', 'create', '-n', zone.resource_group, '-l', location],
                 f"create resource group {zone.resource_group}")

        vnet = self._az(
            ['network', 'vnet', 'show', '-g', zone.resource_group, '-n', zone.vnet_name],
            f"show vnet {zone.vnet_name}", allow_missing=True,
        )
        if vnet is None:
            self.logger.info(f"Creating VNet {zone.vnet_name} ({zone.address_space})")
            created = self._az([
                'network', 'vnet', 'create',
                '-g', zone.resource_group, '-n', zone.vnet_name, '-l', location,
                '--address-prefixes', zone.address_space,
                '--subnet-name', DNS_SUBNET_NAME, '--subnet-prefixes', zone.subnet_prefix,
            ], f"create vnet {zone.vnet_name}")
            vnet = created['newVNet']

        zone.vnet_id = vnet['id']
        return NetworkInfo(vnet['id'], [s['id'] for s in vnet.get('subnets', [])])

    def vm_id(self, zone: Zone, vm_name: str) -> Optional[str]:
        key = f"{zone.resource_group}/{vm_name}"
        if key not in self._vm_ids:
            vm = self._az(['vm', 'show', '-g', zone.resource_group, '-n', vm_name],
                          f"show vm {vm_name}", allow_missing=True)
            if vm is None:
                return None
            self._vm_ids[key] = vm['id']
        return self._vm_ids[key]

    def vm_exists(self, zone: Zone, vm_name: str) -> bool:
        return self.vm_id(zone, vm_name) is not None

    def create_vm(self, spec: VmSpec) -> str:
        """Create a VM unless one with the same name exists; returns its resource ID"""
        key = f"{spec.resource_group}/{spec.name}"
        existing = self._az(['vm', 'show', '-g', spec.resource_group, '-n', spec.name],
                            f"show vm {spec.name}", allow_missing=True)
        if existing is not None:
            self._vm_ids[key] = existing['id']
            return existing['id']

        args = [
            'vm', 'create', '-g', spec.resource_group, '-n', spec.name, '-l', spec.location,
            '--image', spec.image, '--size', spec.size,
            '--vnet-name', spec.vnet_name, '--subnet', spec.subnet_name,
            '--public-ip-address', '', '--nsg', '',
            '--admin-username', ADMIN_USERNAME, '--generate-ssh-keys',
        ]
        if spec.private_ip:
            args += ['--private-ip-address', spec.private_ip]

        custom_data_path = None
        try:
            if spec.custom_data:
                with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
                    f.write(spec.custom_data)
                    custom_data_path = f.name
                args += ['--custom-data', custom_data_path]
            self.logger.info(f"Creating VM {spec.name} in {spec.resource_group}")
            created = self._az(args, f"create vm {spec.name}")
        finally:
            if custom_data_path:
                os.unlink(custom_data_path)

        self._vm_ids[key] = created['id']
        return created['id']

    def get_vnet_resolver(self, vnet_id: str) -> str:
        vnet = self._az(['network', 'vnet', 'show', '--ids', vnet_id], f"show vnet {vnet_id}")
        servers = ((vnet or {}).get('dhcpOptions') or {}).get('dnsServers') or []
        return servers[0] if servers else PROVIDER_DEFAULT

    def set_vnet_resolver(self, vnet_id: str, dns_server: str):
        if dns_server == PROVIDER_DEFAULT:
            args = ['network', 'vnet', 'update', '--ids', vnet_id, '--set', 'dhcpOptions.dnsServers=[]']
        else:
            args = ['network', 'vnet', 'update', '--ids', vnet_id, '--dns-servers', dns_server]
        self.logger.info(f"Setting DNS servers of {vnet_id} to {dns_server}")
        self._az(args, f"update dns servers of {vnet_id}")

    def peering_exists(self, vnet_a: str, vnet_b: str) -> bool:
        """True if vnet_a has a peering to vnet_b"""
        rg, name = split_vnet_id(vnet_a)
        peerings = self._az(['network', 'vnet', 'peering', 'list', '-g', rg, '--vnet-name', name],
                            f"list peerings of {name}") or []
        remote = vnet_b.lower()
        return any(
            ((p.get('remoteVirtualNetwork') or {}).get('id') or '').lower() == remote
            for p in peerings
        )

    def create_peering(self, vnet_a: str, vnet_b: str):
        """Peer two VNets in both directions"""
        for src, dst in ((vnet_a, vnet_b), (vnet_b, vnet_a)):
            if self.peering_exists(src, dst):
                continue
            rg, name = split_vnet_id(src)
            _, remote_name = split_vnet_id(dst)
            self._az([
                'network', 'vnet', 'peering', 'create', '-g', rg, '--vnet-name', name,
                '-n', f"peer-{name}-to-{remote_name}", '--remote-vnet', dst,
                '--allow-vnet-access', '--allow-forwarded-traffic',
            ], f"peer {name} -> {remote_name}")

    def restart_vm(self, vm_id: str):
        self.logger.info(f"Restarting {vm_id}")
        self._az(['vm', 'restart', '--ids', vm_id], f"restart {vm_id}")

    def delete_resource_group(self, zone: Zone):
        if not zone.resource_group:
            return
        self.logger.info(f"Deleting resource group {zone.resource_group}")
        self._az(['group', 'delete', '-n', zone.resource_group, '--yes'],
                 f"delete resource group {zone.resource_group}", allow_missing=True)
        self._vm_ids = {k: v for k, v in self._vm_ids.items() if not k.startswith(f"{zone.resource_group}/")}


def parse_run_command_output(payload) -> CommandResult:
    """Turn `az vm run-command invoke` JSON into a CommandResult"""
    message = ''
    for item in (payload or {}).get('value', []):
        message += item.get('message') or ''

    stdout, stderr = message, ''
    if '[stdout]' in message:
        stdout = message.split('[stdout]', 1)[1]
        if '[stderr]' in stdout:
            stdout, stderr = stdout.split('[stderr]', 1)
    stdout = stdout.strip('\n')
    stderr = stderr.strip('\n')

    exit_code = 1
    lines = []
    for line in stdout.splitlines():
        if line.startswith(EXIT_MARKER):
            value = line[len(EXIT_MARKER):].strip()
            exit_code = int(value) if value.isdigit() else 1
        else:
            lines.append(line)
    return CommandResult(exit_code, "\n".join(lines), stderr)


class RunCommandExecutor:
    """Command-execution API: run a shell script on a VM and capture its output"""

    def __init__(self, cli: AzureCli = None, timeout: int = RUN_COMMAND_TIMEOUT,
                 attempts: int = PROVISIONING_ATTEMPTS, delay: float = PROVISIONING_DELAY,
                 sleep: Callable[[float], None] = time.sleep, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger('dns_migration.azure')
        self.cli = cli or AzureCli(logger=self.logger)
        self.timeout = timeout
        self.attempts = attempts
        self.delay = delay
        self.sleep = sleep

    def run_on_vm(self, vm_id: str, script: str, timeout: Optional[int] = None) -> CommandResult:
        # run-command reports success for any script; the marker carries the real exit code
        wrapped = f"__dnsmig_main() {{\n{script}\n}}\n__dnsmig_main\necho \"{EXIT_MARKER}$?\"\n"
        args = ['vm', 'run-command', 'invoke', '--ids', vm_id,
                '--command-id', 'RunShellScript', '--scripts', wrapped]
        payload = with_retries(
            lambda: self.cli.run(args, timeout=timeout or self.timeout),
            f"run-command on {vm_id}", attempts=self.attempts, delay=self.delay,
            sleep=self.sleep, logger=self.logger,
        )
        result = parse_run_command_output(payload)
        self.logger.debug(f"run-command on {vm_id} exited {result.exit_code}")
        return result


def heredoc_write(path: str, content: str) -> str:
    """Shell snippet writing content to path through a base64 heredoc"""
    encoded = base64.b64encode(content.encode('utf-8')).decode('ascii')
    directory = os.path.dirname(path)
    return (
        f"mkdir -p {shlex.quote(directory)}\n"
        f"base64 -d > {shlex.quote(path)} <<'DNSMIG_EOF'\n{encoded}\nDNSMIG_EOF\n"
    )


class RunCommandAgent:
    """DNS agent that reads, writes and probes BIND servers through run-command"""

    def __init__(self, provisioner: AzureProvisioner, executor: RunCommandExecutor,
                 logger: logging.Logger = None):
        self.provisioner = provisioner
        self.executor = executor
        self.logger = logger or logging.getLogger('dns_migration.agent')

    def _vm(self, zone: Zone, vm_name: str) -> str:
        vm_id = self.provisioner.vm_id(zone, vm_name)
        if vm_id is None:
            raise ProbeError(f"VM {vm_name} of zone {zone.name} does not exist")
        return vm_id

    def service_active(self, zone: Zone) -> bool:
        result = self.executor.run_on_vm(self._vm(zone, zone.dns_vm), 'systemctl is-active named')
        return result.stdout.strip() == 'active'

    def read_config(self, zone: Zone) -> Optional[ServerConfig]:
        """Document last written to the server, or None if it holds none"""
        script = f"if [ -f {STATE_PATH} ]; then cat {STATE_PATH}; fi"
        result = self.executor.run_on_vm(self._vm(zone, zone.dns_vm), script)
        if not result.ok:
            raise ProvisioningError(f"Reading config of {zone.name} failed: {result.stderr}")
        if not result.stdout.strip():
            return None
        try:
            return ServerConfig.from_dict(json.loads(result.stdout))
        except (json.JSONDecodeError, KeyError) as e:
            raise ProvisioningError(f"Config document on {zone.dns_vm} is unreadable: {e}")

    def write_config(self, zone: Zone, config: ServerConfig):
        """Push rendered BIND files plus the document, validate, reload"""
        files = render_server_files(config, logger=self.logger)
        files[STATE_PATH] = json.dumps(config.to_dict(), indent=2, sort_keys=True) + "\n"

        script = "set -e\n"
        for path in sorted(files):
            script += heredoc_write(path, files[path])
        script += "chown -R bind:bind /etc/bind/zones\n"
        script += "named-checkconf -z\n"
        script += "systemctl reload named || systemctl restart named\n"

        result = self.executor.run_on_vm(self._vm(zone, zone.dns_vm), script)
        if not result.ok:
            raise ProvisioningError(f"Writing config of {zone.name} failed: {result.stderr or result.stdout}")
        self.logger.info(f"Wrote {len(files)} files to {zone.dns_vm}")

    def query(self, zone: Zone, server: str, name: str) -> ProbeAnswer:
        """dig from the zone's DNS VM against `server`"""
        script = f"dig {DIG_OPTIONS} @{shlex.quote(server)} {shlex.quote(name)} A"
        result = self.executor.run_on_vm(self._vm(zone, zone.dns_vm), script)
        return parse_dig_output(result.stdout, name)

    def resolve_from_client(self, zone: Zone, name: str) -> ProbeAnswer:
        """dig from the zone's probe VM through whatever resolver it uses"""
        script = f"dig {DIG_OPTIONS} {shlex.quote(name)} A"
        result = self.executor.run_on_vm(self._vm(zone, zone.probe_vm), script)
        return parse_dig_output(result.stdout, name)

    def resolver_addresses(self, zone: Zone) -> List[str]:
        """Upstream DNS servers the probe VM currently uses"""
        script = "resolvectl dns 2>/dev/null || grep '^nameserver' /etc/resolv.conf"
        result = self.executor.run_on_vm(self._vm(zone, zone.probe_vm), script)
        servers = []
        for address in _IPV4_RE.findall(result.stdout):
            # systemd-resolved stub listener
            if address.startswith('127.') or address in servers:
                continue
            servers.append(address)
        return servers

    def restart_probe_vm(self, zone: Zone):
        self.provisioner.restart_vm(self._vm(zone, zone.probe_vm))
