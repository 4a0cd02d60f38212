#!/usr/bin/env python3
"""
BIND Configuration Renderer

Turns a declarative ServerConfig document (authoritative zones, conditional
forwarders, DNSSEC exemptions, default upstream) into the BIND 9 files a DNS
server VM loads. Rendering is kept separate from the migration logic so the
same document can be checked against a live server without caring about
BIND syntax.
"""

import ipaddress
import logging
from datetime import datetime
from typing import Dict, Optional

import dns.exception
import dns.zone

from dns_topology import ConfigurationError, ServerConfig, normalize_suffix

BIND_DIR = '/etc/bind'
ZONE_DIR = '/etc/bind/zones'
OPTIONS_PATH = f'{BIND_DIR}/named.conf.options'
LOCAL_PATH = f'{BIND_DIR}/named.conf.local'
STATE_PATH = f'{BIND_DIR}/dns-migration.json'

DEFAULT_TTL = 300

HEADER = '// Managed by dns-migration. Local edits are overwritten.'

# cloud-init payload for the DNS server VMs
DNS_SERVER_CLOUD_INIT = """#cloud-config
package_update: true
packages:
  - bind9
  - bind9-utils
  - dnsutils
runcmd:
  - mkdir -p /etc/bind/zones
  - chown -R bind:bind /etc/bind/zones
  - systemctl enable named
  - systemctl restart named
"""


def zone_file_path(suffix: str) -> str:
    return f"{ZONE_DIR}/db.{normalize_suffix(suffix)}"


def _is_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def next_serial(previous: int = 0, today: datetime = None) -> int:
    """YYYYMMDDnn serial after `previous`; starts at today's 01 when previous is older"""
    first = int((today or datetime.now()).strftime('%Y%m%d') + '01')
    return max(first, previous + 1)


def render_zone_file(suffix: str, records: Dict[str, str], serial: Optional[int] = None,
                     ttl: int = DEFAULT_TTL) -> str:
    """Render a master zone file for one suffix"""
    origin = normalize_suffix(suffix) + '.'
    serial = serial or next_serial()
    ns_label = 'dns' if 'dns' in records else None

    lines = [
        f"; {HEADER.lstrip('/ ')}",
        f"$ORIGIN {origin}",
        f"$TTL {ttl}",
        f"@ IN SOA {'dns' if ns_label else '@'}.{origin} hostmaster.{origin} (",
        f"    {serial} ; serial",
        "    3600 ; refresh",
        "    600 ; retry",
        "    604800 ; expire",
        f"    {ttl} ) ; minimum",
        f"@ IN NS {'dns' if ns_label else '@'}.{origin}",
    ]

    for label in sorted(records):
        value = records[label]
        name = '@' if label in ('', '@') else label
        if _is_address(value):
            rtype = 'AAAA' if ':' in value else 'A'
            lines.append(f"{name} IN {rtype} {value}")
        else:
            target = value if value.endswith('.') else value + '.'
            lines.append(f"{name} IN CNAME {target}")

    return "\n".join(lines) + "\n"


def check_zone_text(text: str, suffix: str):
    """Parse rendered zone text with dnspython; raise ConfigurationError if BIND would reject it"""
    try:
        dns.zone.from_text(text, origin=normalize_suffix(suffix) + '.', relativize=False)
    except (dns.exception.DNSException, ValueError) as e:
        raise ConfigurationError(f"Rendered zone for {suffix} is invalid: {e}")


def render_options(config: ServerConfig) -> str:
    """Render named.conf.options: recursion, default upstream, DNSSEC exemptions"""
    lines = [
        HEADER,
        'options {',
        '    directory "/var/cache/bind";',
        '    recursion yes;',
        '    allow-query { any; };',
        '    listen-on { any; };',
        '    listen-on-v6 { none; };',
        '    dnssec-validation auto;',
    ]
    if config.dnssec_exemptions:
        # Private suffixes are unsigned; validating them yields SERVFAIL
        exempt = ' '.join(f'"{s}";' for s in sorted(config.dnssec_exemptions))
        lines.append(f'    validate-except {{ {exempt} }};')
    if config.upstream:
        lines.append(f'    forwarders {{ {config.upstream}; }};')
        lines.append('    forward only;')
    lines.append('};')
    return "\n".join(lines) + "\n"


def render_local(config: ServerConfig) -> str:
    """Render named.conf.local: master zones then conditional forwarders"""
    lines = [HEADER]
    for suffix in sorted(config.authoritative_zones):
        lines.extend([
            f'zone "{suffix}" {{',
            '    type master;',
            f'    file "{zone_file_path(suffix)}";',
            '};',
        ])
    # Forwarders keep document order: narrow suffixes first
    for fwd in config.forwarders:
        lines.extend([
            f'zone "{fwd.suffix}" {{',
            '    type forward;',
            '    forward only;',
            f'    forwarders {{ {fwd.server}; }};',
            '};',
        ])
    return "\n".join(lines) + "\n"


def render_server_files(config: ServerConfig, serial: Optional[int] = None,
                        logger: logging.Logger = None) -> Dict[str, str]:
    """All files for one server, keyed by absolute path on the VM"""
    logger = logger or logging.getLogger('dns_migration.bind')
    files = {
        OPTIONS_PATH: render_options(config),
        LOCAL_PATH: render_local(config),
    }
    for suffix, records in config.authoritative_zones.items():
        text = render_zone_file(suffix, records, serial or config.serial or None)
        check_zone_text(text, suffix)
        files[zone_file_path(suffix)] = text
    logger.debug(f"Rendered {len(files)} BIND files for zone {config.zone}")
    return files
