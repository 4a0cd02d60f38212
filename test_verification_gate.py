#!/usr/bin/env python3
"""
Tests for the verification gate

Probes are answered by small fakes so each check can be driven through its
pass, retry and fail paths without a lab.
"""

from unittest import mock

import dns.exception
import dns.flags
import dns.message
import dns.rrset
import pytest

from dns_topology import CutoverPhase, build_topology, load_topology
from verification_gate import (
    CheckStatus, DirectDnsProbe, ProbeAnswer, ProbeError, RetryPolicy, VerificationGate,
    parse_dig_output,
)

TWO_ZONES = {
    'zones': [
        {'name': 'onprem', 'suffix': 'onprem.pvt', 'server_address': '10.0.10.4',
         'records': {'app': '10.0.10.10'}},
        {'name': 'hub', 'suffix': 'azure.pvt', 'server_address': '10.1.10.4',
         'records': {'app': '10.1.10.10', 'www': 'app.azure.pvt'}},
    ],
    'rules': [
        {'from': 'onprem', 'suffix': 'azure.pvt', 'target': '10.1.10.4'},
        {'from': 'hub', 'suffix': 'onprem.pvt', 'target': '10.0.10.4'},
        {'from': 'hub', 'suffix': 'elsewhere.pvt', 'target': '10.0.10.4'},
    ],
}

DIG_AUTHORITATIVE = """
; <<>> DiG 9.18.18 <<>> +noall +comments +answer dns.azure.pvt A
;; global options: +cmd
;; Got answer:
;; ->>HEADER<<- opcode: QUERY, status: NOERROR, id: 4242
;; flags: qr aa rd ra; QUERY: 1, ANSWER: 1, AUTHORITY: 0, ADDITIONAL: 1

dns.azure.pvt.		300	IN	A	10.1.10.4
"""

DIG_CNAME_CHAIN = """
;; ->>HEADER<<- opcode: QUERY, status: NOERROR, id: 17
;; flags: qr rd ra; QUERY: 1, ANSWER: 2, AUTHORITY: 0, ADDITIONAL: 1

account.blob.core.windows.net. 60 IN CNAME account.privatelink.blob.core.windows.net.
account.privatelink.blob.core.windows.net. 10 IN A 10.2.10.5
"""


class FakeAgent:
    """Answers queries from a table; a list of values is consumed one call at a time"""

    def __init__(self):
        self.answers = {}
        self.resolvers = [['168.63.129.16']]
        self.active = True

    def service_active(self, zone):
        return self.active

    def query(self, zone, server, name):
        value = self.answers.get((server, name))
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if value is None:
            raise ProbeError(f"no answer for {name} from {server}")
        return value

    def resolve_from_client(self, zone, name):
        return self.query(zone, 'client', name)

    def resolver_addresses(self, zone):
        return self.resolvers.pop(0) if len(self.resolvers) > 1 else self.resolvers[0]


class FakeProvisioner:

    def __init__(self, bound='provider-default'):
        self.bound = bound

    def get_vnet_resolver(self, vnet_id):
        return self.bound


def make_gate(agent, provisioner=None, attempts=3):
    topology = build_topology(TWO_ZONES)
    sleeps = []
    gate = VerificationGate(
        topology.registry, topology.rules, agent, provisioner or FakeProvisioner(),
        RetryPolicy(attempts=attempts, initial_delay=1.0, factor=2.0), sleep=sleeps.append,
    )
    return gate, sleeps


def test_parse_dig_authoritative():
    answer = parse_dig_output(DIG_AUTHORITATIVE, 'dns.azure.pvt')
    assert answer.rcode == 'NOERROR'
    assert answer.authoritative
    assert answer.addresses == ['10.1.10.4']


def test_parse_dig_cname_chain():
    answer = parse_dig_output(DIG_CNAME_CHAIN, 'account.blob.core.windows.net')
    assert not answer.authoritative
    assert answer.answers == ['account.privatelink.blob.core.windows.net.', '10.2.10.5']
    assert answer.addresses == ['10.2.10.5']


def test_parse_dig_timeout():
    with pytest.raises(ProbeError):
        parse_dig_output(";; connection timed out; no servers could be reached\n", 'dns.azure.pvt')


def test_retry_policy_delays():
    assert RetryPolicy().delays() == [2.0, 4.0, 8.0, 16.0]
    assert RetryPolicy(attempts=4, initial_delay=3.0, max_delay=5.0).delays() == [3.0, 5.0, 5.0]
    assert RetryPolicy(attempts=1).delays() == []


def test_authority_check_passes():
    agent = FakeAgent()
    agent.answers[('10.1.10.4', 'dns.azure.pvt')] = ProbeAnswer('dns.azure.pvt', 'NOERROR', True, ['10.1.10.4'])
    gate, sleeps = make_gate(agent)

    result = gate.verify('hub', CutoverPhase.AUTHORITY_CONFIGURED)
    assert result.passed
    assert [c.status for c in result.checks] == [CheckStatus.PASS, CheckStatus.PASS]
    assert sleeps == []


def test_authority_check_fails_without_aa_after_retries():
    agent = FakeAgent()
    agent.answers[('10.1.10.4', 'dns.azure.pvt')] = ProbeAnswer('dns.azure.pvt', 'NOERROR', False, ['10.1.10.4'])
    gate, sleeps = make_gate(agent)

    result = gate.verify('hub', CutoverPhase.AUTHORITY_CONFIGURED)
    assert not result.passed
    failed = result.failed_checks[0]
    assert failed.name == 'hub: authority for azure.pvt'
    assert failed.attempts == 3
    assert failed.observed == 'NOERROR no-aa 10.1.10.4'
    assert sleeps == [1.0, 2.0]


def test_probe_errors_count_as_failed_attempts():
    agent = FakeAgent()
    gate, _ = make_gate(agent, attempts=2)

    result = gate.verify('hub', CutoverPhase.AUTHORITY_CONFIGURED)
    check = result.failed_checks[0]
    assert check.status == CheckStatus.FAIL
    assert check.observed.startswith('error: no answer')


def test_forwarding_check():
    agent = FakeAgent()
    agent.answers[('10.0.10.4', 'dns.onprem.pvt')] = ProbeAnswer('dns.onprem.pvt', 'NOERROR', True, ['10.0.10.4'])
    agent.answers[('10.1.10.4', 'dns.azure.pvt')] = ProbeAnswer('dns.azure.pvt', 'NOERROR', True, ['10.1.10.4'])
    # Forwarded answers arrive once the reload has happened
    agent.answers[('10.1.10.4', 'dns.onprem.pvt')] = [
        ProbeAnswer('dns.onprem.pvt', 'SERVFAIL'),
        ProbeAnswer('dns.onprem.pvt', 'NOERROR', False, ['10.0.10.4']),
    ]
    gate, sleeps = make_gate(agent)

    result = gate.verify('hub', CutoverPhase.FORWARDING_CONFIGURED)
    by_name = {c.name: c for c in result.checks}
    assert by_name['hub: forward onprem.pvt -> 10.0.10.4'].status == CheckStatus.PASS
    assert by_name['hub: forward onprem.pvt -> 10.0.10.4'].attempts == 2
    # No registered zone holds names under elsewhere.pvt
    assert by_name['hub: forward elsewhere.pvt -> 10.0.10.4'].status == CheckStatus.SKIP
    assert result.passed
    assert result.count(CheckStatus.SKIP) == 1


def test_forwarding_check_rejects_authoritative_answer():
    agent = FakeAgent()
    agent.answers[('10.1.10.4', 'dns.azure.pvt')] = ProbeAnswer('dns.azure.pvt', 'NOERROR', True, ['10.1.10.4'])
    agent.answers[('10.0.10.4', 'dns.onprem.pvt')] = ProbeAnswer('dns.onprem.pvt', 'NOERROR', True, ['10.0.10.4'])
    # Hub holds a stale copy of onprem.pvt instead of forwarding it
    agent.answers[('10.1.10.4', 'dns.onprem.pvt')] = ProbeAnswer('dns.onprem.pvt', 'NOERROR', True, ['10.0.10.4'])
    gate, _ = make_gate(agent)

    result = gate.verify('hub', CutoverPhase.FORWARDING_CONFIGURED)
    assert [c.name for c in result.failed_checks] == ['hub: forward onprem.pvt -> 10.0.10.4']


def test_client_resolver_waits_for_lease_renewal():
    agent = FakeAgent()
    agent.answers[('10.1.10.4', 'dns.azure.pvt')] = ProbeAnswer('dns.azure.pvt', 'NOERROR', True, ['10.1.10.4'])
    agent.answers[('10.0.10.4', 'dns.onprem.pvt')] = ProbeAnswer('dns.onprem.pvt', 'NOERROR', True, ['10.0.10.4'])
    agent.answers[('10.1.10.4', 'dns.onprem.pvt')] = ProbeAnswer('dns.onprem.pvt', 'NOERROR', False, ['10.0.10.4'])
    agent.resolvers = [['168.63.129.16'], ['168.63.129.16'], ['10.1.10.4']]
    gate, sleeps = make_gate(agent, FakeProvisioner('10.1.10.4'))

    result = gate.verify('hub', CutoverPhase.RESOLVER_CUTOVER)
    assert result.passed
    client = [c for c in result.checks if c.name == 'hub: client resolver'][0]
    assert client.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_vnet_binding_mismatch_fails():
    agent = FakeAgent()
    agent.resolvers = [['10.1.10.4']]
    gate, _ = make_gate(agent, FakeProvisioner('provider-default'), attempts=1)
    check = gate._check_vnet_binding(gate.registry.get('hub'))
    assert check.status == CheckStatus.FAIL
    assert check.observed == 'provider-default'


def test_end_to_end_checks_from_client():
    agent = FakeAgent()
    agent.answers[('client', 'dns.azure.pvt')] = ProbeAnswer('dns.azure.pvt', 'NOERROR', True, ['10.1.10.4'])
    agent.answers[('client', 'dns.onprem.pvt')] = ProbeAnswer('dns.onprem.pvt', 'NOERROR', False, ['10.0.10.4'])
    agent.answers[('client', 'www.microsoft.com')] = ProbeAnswer('www.microsoft.com', 'NOERROR', False, ['23.45.229.117'])
    gate, _ = make_gate(agent)

    checks = gate._check_end_to_end(gate.registry.get('hub'))
    assert [c.name for c in checks] == [
        'hub: client resolves dns.azure.pvt',
        'hub: client resolves dns.onprem.pvt',
        'hub: client resolves www.microsoft.com',
    ]
    assert all(c.status == CheckStatus.PASS for c in checks)


def test_expected_addresses_follow_cnames():
    gate, _ = make_gate(FakeAgent())
    assert gate.expected_addresses('www.azure.pvt') == ['10.1.10.10']
    assert gate.expected_addresses('missing.azure.pvt') == []
    assert gate.expected_addresses('www.example.com') == []


def test_verification_result_to_dict():
    agent = FakeAgent()
    agent.active = False
    gate, _ = make_gate(agent, attempts=1)
    data = gate.verify('onprem', CutoverPhase.PROVISIONED).to_dict()
    assert data['phase'] == 'provisioned'
    assert data['passed'] is False
    assert data['checks'][0]['status'] == 'FAIL'
    assert data['checks'][0]['observed'] == 'inactive'


def udp_response(name, address, authoritative=False):
    response = dns.message.make_response(dns.message.make_query(name, 'A'))
    response.answer.append(dns.rrset.from_text(name + '.', 300, 'IN', 'A', address))
    if authoritative:
        response.flags |= dns.flags.AA
    return response


def test_direct_probe_reads_flags_and_answers():
    probe = DirectDnsProbe(timeout=2.0)
    with mock.patch('dns.query.udp', return_value=udp_response('dns.azure.pvt', '10.1.10.4', True)) as udp:
        answer = probe.query('10.1.10.4', 'dns.azure.pvt')
    assert answer.rcode == 'NOERROR'
    assert answer.authoritative
    assert answer.addresses == ['10.1.10.4']
    assert udp.call_args[0][1] == '10.1.10.4'
    assert udp.call_args[1]['timeout'] == 2.0


def test_direct_probe_timeout():
    probe = DirectDnsProbe()
    with mock.patch('dns.query.udp', side_effect=dns.exception.Timeout()):
        with pytest.raises(ProbeError) as excinfo:
            probe.query('10.1.10.4', 'dns.azure.pvt')
    assert 'Timeout' in str(excinfo.value)


def test_gate_queries_servers_through_direct_probe():
    agent = FakeAgent()
    topology = build_topology(TWO_ZONES)
    gate = VerificationGate(topology.registry, topology.rules, agent, FakeProvisioner(),
                            RetryPolicy(attempts=1), sleep=lambda s: None, probe=DirectDnsProbe())

    with mock.patch('dns.query.udp', return_value=udp_response('dns.azure.pvt', '10.1.10.4', True)) as udp:
        result = gate.verify('hub', CutoverPhase.AUTHORITY_CONFIGURED)
    # The fake agent holds no answers, so only the direct probe can make this pass
    assert result.passed
    assert udp.call_count == 1


def test_probe_name_prefers_public_alias():
    topology = load_topology()
    gate = VerificationGate(topology.registry, topology.rules, FakeAgent(), FakeProvisioner())
    rules = {(r.from_zone, r.target_suffix): r for r in topology.rules.all_rules()}

    broad = rules[('onprem', 'blob.core.windows.net')]
    assert gate.probe_name_for(broad) == 'account.blob.core.windows.net'
    assert gate.expected_addresses('account.blob.core.windows.net') == ['10.2.10.5']

    narrow = rules[('hub', 'privatelink.blob.core.windows.net')]
    assert gate.probe_name_for(narrow) == 'account.privatelink.blob.core.windows.net'
