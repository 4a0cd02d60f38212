#!/usr/bin/env python3
"""
Tests for the Azure CLI collaborators

`subprocess.run` and the run-command executor are mocked; nothing here talks
to Azure.
"""

import base64
import json
import subprocess
from unittest import mock

import pytest

from azure_lab import (
    EXIT_MARKER, AzureCli, AzureProvisioner, CommandResult, RunCommandAgent,
    RunCommandExecutor, heredoc_write, parse_run_command_output, split_vnet_id,
    vm_spec_for, with_retries,
)
from bind_config import DNS_SERVER_CLOUD_INIT, STATE_PATH
from dns_topology import (
    PROVIDER_DEFAULT, Forwarder, ProvisioningError, ServerConfig, load_topology,
)

VNET_ID = ('/subscriptions/0000/resourceGroups/rg-dnsmig-hub'
           '/providers/Microsoft.Network/virtualNetworks/vnet-hub')


def completed(returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess(args=['az'], returncode=returncode, stdout=stdout, stderr=stderr)


def hub_zone():
    return load_topology().registry.get('hub')


class FakeExecutor:
    """Records scripts and replays canned results"""

    def __init__(self, *results):
        self.results = list(results)
        self.scripts = []

    def run_on_vm(self, vm_id, script, timeout=None):
        self.scripts.append((vm_id, script))
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class FakeProvisioner:

    def vm_id(self, zone, vm_name):
        return f"/vms/{vm_name}"

    def restart_vm(self, vm_id):
        self.restarted = vm_id


def test_az_cli_returns_json():
    cli = AzureCli()
    with mock.patch('azure_lab.subprocess.run', return_value=completed(stdout='{"id": "abc"}')) as run:
        assert cli.run(['group', 'show', '-n', 'rg']) == {'id': 'abc'}
    cmd = run.call_args[0][0]
    assert cmd[0] == 'az'
    assert cmd[-2:] == ['--output', 'json']


def test_az_cli_missing_resource():
    cli = AzureCli()
    failure = completed(3, stderr='ERROR: (ResourceNotFound) The Resource was not found.')
    with mock.patch('azure_lab.subprocess.run', return_value=failure):
        assert cli.run(['vm', 'show'], allow_missing=True) is None
        with pytest.raises(ProvisioningError):
            cli.run(['vm', 'show'])


def test_az_cli_not_installed():
    cli = AzureCli(az_path='az-missing')
    with mock.patch('azure_lab.subprocess.run', side_effect=FileNotFoundError()):
        with pytest.raises(ProvisioningError) as excinfo:
            cli.run(['group', 'list'])
    assert '--simulate' in str(excinfo.value)


def test_az_cli_timeout():
    cli = AzureCli(timeout=5)
    with mock.patch('azure_lab.subprocess.run', side_effect=subprocess.TimeoutExpired('az', 5)):
        with pytest.raises(ProvisioningError):
            cli.run(['vm', 'create'])


def test_with_retries_backs_off_then_succeeds():
    calls = []
    sleeps = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ProvisioningError("throttled")
        return 'ok'

    assert with_retries(flaky, 'flaky op', attempts=3, delay=1.0, sleep=sleeps.append) == 'ok'
    assert sleeps == [1.0, 2.0]


def test_with_retries_gives_up():
    def broken():
        raise ProvisioningError("quota exceeded")

    with pytest.raises(ProvisioningError) as excinfo:
        with_retries(broken, 'create vm', attempts=2, delay=0.5, sleep=lambda s: None)
    assert 'after 2 attempts' in str(excinfo.value)


def test_set_vnet_resolver_arguments():
    cli = mock.Mock()
    provisioner = AzureProvisioner(cli, sleep=lambda s: None)

    provisioner.set_vnet_resolver(VNET_ID, '10.1.10.4')
    args = cli.run.call_args[0][0]
    assert args[-2:] == ['--dns-servers', '10.1.10.4']

    provisioner.set_vnet_resolver(VNET_ID, PROVIDER_DEFAULT)
    args = cli.run.call_args[0][0]
    assert args[-2:] == ['--set', 'dhcpOptions.dnsServers=[]']


def test_get_vnet_resolver():
    cli = mock.Mock()
    provisioner = AzureProvisioner(cli, sleep=lambda s: None)

    cli.run.return_value = {'dhcpOptions': {'dnsServers': []}}
    assert provisioner.get_vnet_resolver(VNET_ID) == PROVIDER_DEFAULT
    cli.run.return_value = {'dhcpOptions': {'dnsServers': ['10.1.10.4']}}
    assert provisioner.get_vnet_resolver(VNET_ID) == '10.1.10.4'


def test_network_exists_records_vnet_id():
    cli = mock.Mock()
    cli.run.return_value = {'id': VNET_ID}
    provisioner = AzureProvisioner(cli, sleep=lambda s: None)
    zone = hub_zone()

    assert provisioner.network_exists(zone)
    assert zone.vnet_id == VNET_ID


def test_peering_exists_matches_remote_id():
    cli = mock.Mock()
    remote = VNET_ID.replace('hub', 'spoke1')
    cli.run.return_value = [{'remoteVirtualNetwork': {'id': remote.upper()}}]
    provisioner = AzureProvisioner(cli, sleep=lambda s: None)
    assert provisioner.peering_exists(VNET_ID, remote)
    assert not provisioner.peering_exists(VNET_ID, VNET_ID.replace('hub', 'spoke2'))


def test_split_vnet_id():
    assert split_vnet_id(VNET_ID) == ('rg-dnsmig-hub', 'vnet-hub')
    with pytest.raises(ProvisioningError):
        split_vnet_id('vnet-hub')


def test_vm_spec_for_dns_and_probe_vms():
    zone = hub_zone()
    dns_spec = vm_spec_for(zone, zone.dns_vm)
    assert dns_spec.private_ip == '10.1.10.4'
    assert dns_spec.custom_data == DNS_SERVER_CLOUD_INIT
    assert dns_spec.resource_group == 'rg-dnsmig-hub'

    probe_spec = vm_spec_for(zone, zone.probe_vm)
    assert probe_spec.private_ip is None
    assert probe_spec.custom_data is None


def test_parse_run_command_output():
    payload = {'value': [{
        'code': 'ProvisioningState/succeeded',
        'message': f"Enable succeeded: \n[stdout]\nactive\n{EXIT_MARKER}0\n\n[stderr]\n",
    }]}
    result = parse_run_command_output(payload)
    assert result.ok
    assert result.stdout == 'active'
    assert result.stderr == ''


def test_parse_run_command_output_failure():
    payload = {'value': [{'message': "[stdout]\n\n[stderr]\nnamed-checkconf: syntax error\n"}]}
    result = parse_run_command_output(payload)
    assert result.exit_code == 1
    assert 'syntax error' in result.stderr


def test_executor_wraps_script_with_exit_marker():
    cli = mock.Mock()
    cli.run.return_value = {'value': [{'message': f"[stdout]\nhello\n{EXIT_MARKER}0\n[stderr]\n"}]}
    executor = RunCommandExecutor(cli, sleep=lambda s: None)

    result = executor.run_on_vm('/vms/vm-hub-dns', 'echo hello')
    assert result.stdout == 'hello'
    args = cli.run.call_args[0][0]
    script = args[args.index('--scripts') + 1]
    assert 'echo hello' in script
    assert EXIT_MARKER in script


def test_heredoc_write_round_trips_content():
    content = 'zone "azure.pvt" {\n    type master;\n};\n'
    snippet = heredoc_write('/etc/bind/named.conf.local', content)
    encoded = snippet.split("<<'DNSMIG_EOF'\n", 1)[1].split("\nDNSMIG_EOF", 1)[0]
    assert base64.b64decode(encoded).decode('utf-8') == content
    assert snippet.startswith('mkdir -p /etc/bind\n')


def test_agent_write_config_pushes_files_and_validates():
    executor = FakeExecutor(CommandResult(0, ''))
    agent = RunCommandAgent(FakeProvisioner(), executor)
    zone = hub_zone()
    config = ServerConfig(zone='hub', authoritative_zones={'azure.pvt': dict(zone.records)},
                          forwarders=[Forwarder('onprem.pvt', '10.0.10.4')])

    agent.write_config(zone, config)
    vm_id, script = executor.scripts[0]
    assert vm_id == '/vms/vm-hub-dns'
    assert script.startswith('set -e\n')
    assert 'named-checkconf -z' in script
    assert STATE_PATH in script


def test_agent_write_config_failure():
    executor = FakeExecutor(CommandResult(1, '', 'zone azure.pvt/IN: loading failed'))
    agent = RunCommandAgent(FakeProvisioner(), executor)
    with pytest.raises(ProvisioningError):
        agent.write_config(hub_zone(), ServerConfig(zone='hub'))


def test_agent_read_config():
    config = ServerConfig(zone='hub', forwarders=[Forwarder('onprem.pvt', '10.0.10.4')])
    executor = FakeExecutor(CommandResult(0, json.dumps(config.to_dict())), CommandResult(0, ''))
    agent = RunCommandAgent(FakeProvisioner(), executor)

    assert agent.read_config(hub_zone()) == config
    assert agent.read_config(hub_zone()) is None


def test_agent_resolver_addresses_skip_stub():
    output = "Global: 127.0.0.53\nLink 2 (eth0): 10.1.10.4 168.63.129.16\n"
    agent = RunCommandAgent(FakeProvisioner(), FakeExecutor(CommandResult(0, output)))
    assert agent.resolver_addresses(hub_zone()) == ['10.1.10.4', '168.63.129.16']


def test_agent_query_runs_dig_on_dns_vm():
    dig = ";; ->>HEADER<<- opcode: QUERY, status: NXDOMAIN, id: 1\n;; flags: qr aa rd ra; QUERY: 1\n"
    executor = FakeExecutor(CommandResult(0, dig))
    agent = RunCommandAgent(FakeProvisioner(), executor)

    answer = agent.query(hub_zone(), '10.0.10.4', 'missing.onprem.pvt')
    assert answer.rcode == 'NXDOMAIN'
    vm_id, script = executor.scripts[0]
    assert vm_id == '/vms/vm-hub-dns'
    assert '@10.0.10.4 missing.onprem.pvt A' in script
