#!/usr/bin/env python3
"""
Verification Gate

Probes live DNS servers and client VMs after every migration step and decides
whether the step took effect. Each check is retried with bounded backoff
because DHCP renewal and service reloads take time to propagate; a check that
runs out of attempts reports FAIL with the last value it saw instead of
raising.
"""

import ipaddress
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

import dns.exception
import dns.flags
import dns.message
import dns.query
import dns.rcode
import dns.rdatatype

from dns_topology import (
    CutoverPhase, ForwardingRule, Zone, ZoneRegistry, ForwardingRuleSet,
    is_subdomain, normalize_suffix,
)

DEFAULT_PUBLIC_PROBE_NAME = 'www.microsoft.com'


class CheckStatus(Enum):
    """Outcome of a single verification check"""
    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"


@dataclass
class CheckResult:
    """One check with expected vs observed values"""
    name: str
    status: CheckStatus
    expected: str
    observed: Optional[str] = None
    attempts: int = 0
    message: Optional[str] = None


@dataclass
class VerificationResult:
    """All checks run for one zone at one phase"""
    zone: str
    phase: CutoverPhase
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.status != CheckStatus.FAIL for c in self.checks)

    @property
    def failed_checks(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.FAIL]

    def count(self, status: CheckStatus) -> int:
        return len([c for c in self.checks if c.status == status])

    def to_dict(self) -> dict:
        return {
            'zone': self.zone,
            'phase': self.phase.label,
            'passed': self.passed,
            'checks': [
                {
                    'name': c.name,
                    'status': c.status.value,
                    'expected': c.expected,
                    'observed': c.observed,
                    'attempts': c.attempts,
                    'message': c.message,
                }
                for c in self.checks
            ],
        }


@dataclass
class ProbeAnswer:
    """What a DNS server returned for one query"""
    name: str
    rcode: str = 'NOERROR'
    authoritative: bool = False
    answers: List[str] = field(default_factory=list)

    @property
    def addresses(self) -> List[str]:
        result = []
        for value in self.answers:
            try:
                ipaddress.ip_address(value)
                result.append(value)
            except ValueError:
                continue
        return result

    def describe(self) -> str:
        flag = 'aa' if self.authoritative else 'no-aa'
        values = ', '.join(self.answers) if self.answers else '<empty>'
        return f"{self.rcode} {flag} {values}"


class ProbeError(Exception):
    """A probe could not be run or got no response"""


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for verification checks"""
    attempts: int = 5
    initial_delay: float = 2.0
    factor: float = 2.0
    max_delay: float = 30.0

    def delays(self) -> List[float]:
        """Sleep before each retry (attempts - 1 entries)"""
        delays = []
        delay = self.initial_delay
        for _ in range(max(self.attempts - 1, 0)):
            delays.append(min(delay, self.max_delay))
            delay *= self.factor
        return delays


_FLAGS_RE = re.compile(r';; flags:\s*([a-z ]*);')
_STATUS_RE = re.compile(r'status:\s*([A-Z]+)')


def parse_dig_output(text: str, name: str) -> ProbeAnswer:
    """Parse `dig +noall +comments +answer` output into a ProbeAnswer"""
    answer = ProbeAnswer(name=normalize_suffix(name), rcode='SERVFAIL')
    if ';; connection timed out' in text or 'no servers could be reached' in text:
        raise ProbeError(f"dig timed out resolving {name}")

    status = _STATUS_RE.search(text)
    if status:
        answer.rcode = status.group(1)
    flags = _FLAGS_RE.search(text)
    if flags:
        answer.authoritative = 'aa' in flags.group(1).split()

    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith(';'):
            continue
        parts = line.split()
        # name ttl class type rdata
        if len(parts) >= 5 and parts[2].upper() == 'IN' and parts[3].upper() in ('A', 'AAAA', 'CNAME'):
            answer.answers.append(parts[4])
    return answer


class DirectDnsProbe:
    """Query DNS servers straight from the operator host with dnspython"""

    def __init__(self, timeout: float = 5.0, port: int = 53, logger: logging.Logger = None):
        self.timeout = timeout
        self.port = port
        self.logger = logger or logging.getLogger('dns_migration.probe')

    def query(self, server: str, name: str, rdtype: str = 'A') -> ProbeAnswer:
        """Send one recursive query and report flags, rcode and answer values"""
        request = dns.message.make_query(name, dns.rdatatype.from_text(rdtype))
        try:
            response = dns.query.udp(request, server, timeout=self.timeout, port=self.port)
        except dns.exception.Timeout:
            raise ProbeError(f"Timeout querying {server} for {name}")
        except (OSError, dns.exception.DNSException) as e:
            raise ProbeError(f"Query to {server} for {name} failed: {e}")

        answer = ProbeAnswer(
            name=normalize_suffix(name),
            rcode=dns.rcode.to_text(response.rcode()),
            authoritative=bool(response.flags & dns.flags.AA),
        )
        for rrset in response.answer:
            for rdata in rrset:
                answer.answers.append(rdata.to_text())
        self.logger.debug(f"{server} {name}: {answer.describe()}")
        return answer


class VerificationGate:
    """Runs per-phase checks for a zone through the DNS agent"""

    def __init__(self, registry: ZoneRegistry, rules: ForwardingRuleSet, agent, provisioner,
                 policy: RetryPolicy = None, public_probe_name: str = DEFAULT_PUBLIC_PROBE_NAME,
                 sleep: Callable[[float], None] = time.sleep, logger: logging.Logger = None,
                 probe: Optional[DirectDnsProbe] = None):
        self.registry = registry
        self.rules = rules
        self.agent = agent
        self.provisioner = provisioner
        self.policy = policy or RetryPolicy()
        self.public_probe_name = public_probe_name
        self.sleep = sleep
        self.logger = logger or logging.getLogger('dns_migration.gate')
        self.probe = probe

    def verify(self, zone_name: str, phase: CutoverPhase) -> VerificationResult:
        """Run every check a zone must pass to be considered at `phase`"""
        zone = self.registry.get(zone_name)
        phase = CutoverPhase(phase)
        result = VerificationResult(zone=zone.name, phase=phase)
        self.logger.info(f"Verifying {zone.name} at {phase.label}")

        if phase >= CutoverPhase.PROVISIONED:
            result.checks.append(self._check_service(zone))
        if phase >= CutoverPhase.AUTHORITY_CONFIGURED:
            result.checks.append(self._check_authority(zone))
        if phase >= CutoverPhase.FORWARDING_CONFIGURED:
            for rule in self.rules.rules_for(zone.name):
                result.checks.append(self._check_forwarding(zone, rule))
        if phase >= CutoverPhase.RESOLVER_CUTOVER:
            result.checks.append(self._check_vnet_binding(zone))
            result.checks.append(self._check_client_resolver(zone))
        if phase >= CutoverPhase.VERIFIED:
            result.checks.extend(self._check_end_to_end(zone))

        if result.passed:
            self.logger.info(f"{zone.name} passed {len(result.checks)} checks at {phase.label}")
        else:
            self.logger.warning(
                f"{zone.name} failed {len(result.failed_checks)}/{len(result.checks)} checks at {phase.label}"
            )
        return result

    def expected_addresses(self, name: str, depth: int = 0) -> List[str]:
        """Addresses the registry says a name should resolve to, following CNAMEs"""
        if depth > 8:
            return []
        zone = self.registry.authority_for(name)
        if zone is None:
            alias = self.registry.alias_target(name)
            return self.expected_addresses(alias, depth + 1) if alias else []
        value = zone.record_map().get(normalize_suffix(name))
        if value is None:
            return []
        try:
            ipaddress.ip_address(value)
            return [value]
        except ValueError:
            return self.expected_addresses(value, depth + 1)

    def probe_name_for(self, rule: ForwardingRule) -> Optional[str]:
        """A known name under a rule's suffix, closest zone first"""
        exact = self.registry.resolve(rule.target_suffix)
        if exact is not None and exact.probe_name():
            return exact.probe_name()
        # Names published directly under the suffix exercise the whole CNAME chain
        aliased = [
            z for z in self.registry
            if z.public_suffix and z.name != rule.from_zone
            and is_subdomain(z.public_suffix, rule.target_suffix) and z.public_name()
        ]
        if aliased:
            return min(aliased, key=lambda z: len(z.public_suffix)).public_name()
        candidates = [
            z for z in self.registry
            if z.authoritative and z.name != rule.from_zone
            and is_subdomain(z.suffix, rule.target_suffix) and z.probe_name()
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda z: len(z.suffix)).probe_name()

    def query(self, zone: Zone, server: str, name: str) -> ProbeAnswer:
        """Ask `server` directly when a direct probe is configured, else from the zone's DNS VM"""
        if self.probe is not None:
            return self.probe.query(server, name)
        return self.agent.query(zone, server, name)

    def _run_check(self, name: str, expected: str,
                   attempt: Callable[[], Tuple[bool, str]]) -> CheckResult:
        """Retry `attempt` per the policy; never raises"""
        delays = self.policy.delays()
        observed = None
        for number in range(1, self.policy.attempts + 1):
            try:
                ok, observed = attempt()
            except Exception as e:
                ok, observed = False, f"error: {e}"
                self.logger.debug(f"{name} attempt {number} raised: {e}")
            if ok:
                self.logger.debug(f"PASS: {name} ({observed})")
                return CheckResult(name, CheckStatus.PASS, expected, observed, number)
            if number <= len(delays):
                self.logger.debug(f"{name} attempt {number} saw {observed}; retrying in {delays[number - 1]}s")
                self.sleep(delays[number - 1])

        self.logger.warning(f"FAIL: {name}: expected {expected}, observed {observed}")
        return CheckResult(
            name, CheckStatus.FAIL, expected, observed, self.policy.attempts,
            message=f"Gave up after {self.policy.attempts} attempts",
        )

    def _check_service(self, zone: Zone) -> CheckResult:
        def attempt():
            active = self.agent.service_active(zone)
            return active, 'active' if active else 'inactive'
        return self._run_check(f"{zone.name}: dns service", 'active', attempt)

    def _check_authority(self, zone: Zone) -> CheckResult:
        name = zone.probe_name()
        check_name = f"{zone.name}: authority for {zone.suffix}"
        if not zone.authoritative or name is None:
            return CheckResult(check_name, CheckStatus.SKIP, 'n/a', message='Zone hosts no records')

        expected = self.expected_addresses(name)

        def attempt():
            answer = self.query(zone, zone.server_address, name)
            ok = answer.authoritative and bool(expected) and set(expected) <= set(answer.addresses)
            return ok, answer.describe()
        return self._run_check(check_name, f"aa {', '.join(expected)}", attempt)

    def _check_forwarding(self, zone: Zone, rule: ForwardingRule) -> CheckResult:
        check_name = f"{zone.name}: forward {rule.target_suffix} -> {rule.target_server}"
        name = self.probe_name_for(rule)
        if name is None:
            return CheckResult(check_name, CheckStatus.SKIP, 'n/a', message='No known record under suffix')

        def attempt():
            direct = self.query(zone, rule.target_server, name)
            answer = self.query(zone, zone.server_address, name)
            # A target behind a zone cut returns only the CNAME; the forwarder chases the rest
            ok = (
                answer.rcode == 'NOERROR'
                and bool(answer.addresses)
                and not answer.authoritative
                and bool(direct.answers)
                and set(direct.answers) <= set(answer.answers)
            )
            return ok, f"{name}: {answer.describe()} (direct: {direct.describe()})"
        return self._run_check(check_name, f"{name}: no-aa, same answer as {rule.target_server}", attempt)

    def _check_vnet_binding(self, zone: Zone) -> CheckResult:
        def attempt():
            bound = self.provisioner.get_vnet_resolver(zone.vnet_id)
            return bound == zone.server_address, bound
        return self._run_check(f"{zone.name}: vnet dns server", zone.server_address, attempt)

    def _check_client_resolver(self, zone: Zone) -> CheckResult:
        # VMs keep their DHCP lease, so the VNet setting alone proves nothing
        def attempt():
            servers = self.agent.resolver_addresses(zone)
            ok = bool(servers) and servers[0] == zone.server_address
            return ok, ', '.join(servers) if servers else '<none>'
        return self._run_check(f"{zone.name}: client resolver", zone.server_address, attempt)

    def _check_end_to_end(self, zone: Zone) -> List[CheckResult]:
        names = []
        own = zone.probe_name()
        if own:
            names.append(own)
        for rule in self.rules.rules_for(zone.name):
            probe = self.probe_name_for(rule)
            if probe and probe not in names:
                names.append(probe)

        checks = []
        for name in names:
            expected = self.expected_addresses(name)

            def attempt(name=name, expected=expected):
                answer = self.agent.resolve_from_client(zone, name)
                ok = bool(expected) and set(expected) <= set(answer.addresses)
                return ok, answer.describe()
            checks.append(self._run_check(f"{zone.name}: client resolves {name}", ', '.join(expected), attempt))

        if self.public_probe_name:
            def public_attempt():
                answer = self.agent.resolve_from_client(zone, self.public_probe_name)
                return bool(answer.addresses), answer.describe()
            checks.append(self._run_check(
                f"{zone.name}: client resolves {self.public_probe_name}", 'any address', public_attempt
            ))
        return checks
