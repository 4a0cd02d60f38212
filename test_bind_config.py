#!/usr/bin/env python3
"""
Tests for the BIND configuration renderer
"""

from datetime import datetime

import dns.rdatatype
import dns.zone
import pytest

from bind_config import (
    LOCAL_PATH, OPTIONS_PATH, check_zone_text, render_local, render_options,
    next_serial, render_server_files, render_zone_file, zone_file_path,
)
from dns_topology import ConfigurationError, Forwarder, ServerConfig


def test_zone_file_parses_with_dnspython():
    text = render_zone_file('azure.pvt', {'dns': '10.1.10.4', 'app': '10.1.10.10', 'web': 'app.azure.pvt'},
                            serial=2025010101)
    zone = dns.zone.from_text(text, origin='azure.pvt.', relativize=False)

    soa = zone.find_rdataset('azure.pvt.', dns.rdatatype.SOA)
    assert list(soa)[0].serial == 2025010101
    ns = zone.find_rdataset('azure.pvt.', dns.rdatatype.NS)
    assert list(ns)[0].target.to_text() == 'dns.azure.pvt.'

    a = zone.find_rdataset('app.azure.pvt.', dns.rdatatype.A)
    assert list(a)[0].address == '10.1.10.10'
    cname = zone.find_rdataset('web.azure.pvt.', dns.rdatatype.CNAME)
    assert list(cname)[0].target.to_text() == 'app.azure.pvt.'


def test_check_zone_text_rejects_zone_without_soa():
    with pytest.raises(ConfigurationError):
        check_zone_text("$ORIGIN x.pvt.\n@ IN NS dns.x.pvt.\ndns IN A 10.0.0.4\n", 'x.pvt')


def test_options_with_exemptions_and_upstream():
    config = ServerConfig(zone='hub', dnssec_exemptions=['onprem.pvt', 'spoke1.pvt'],
                          upstream='168.63.129.16')
    text = render_options(config)
    assert 'validate-except { "onprem.pvt"; "spoke1.pvt"; };' in text
    assert 'forwarders { 168.63.129.16; };' in text
    assert 'forward only;' in text


def test_options_without_exemptions():
    text = render_options(ServerConfig(zone='hub'))
    assert 'validate-except' not in text
    assert 'forwarders' not in text
    assert 'dnssec-validation auto;' in text


def test_local_keeps_forwarder_order():
    config = ServerConfig(
        zone='hub',
        authoritative_zones={'azure.pvt': {'dns': '10.1.10.4'}},
        forwarders=[
            Forwarder('privatelink.blob.core.windows.net', '168.63.129.16'),
            Forwarder('blob.core.windows.net', '8.8.8.8'),
        ],
    )
    text = render_local(config)
    assert f'file "{zone_file_path("azure.pvt")}";' in text
    assert text.index('zone "privatelink.blob.core.windows.net"') < text.index('zone "blob.core.windows.net"')
    assert text.count('type forward;') == 2
    assert 'forwarders { 8.8.8.8; };' in text


def test_render_server_files():
    config = ServerConfig(
        zone='onprem',
        authoritative_zones={'onprem.pvt': {'dns': '10.0.10.4', 'app': '10.0.10.10'}},
        forwarders=[Forwarder('azure.pvt', '10.1.10.4')],
        dnssec_exemptions=['azure.pvt'],
    )
    files = render_server_files(config, serial=2025010101)
    assert set(files) == {OPTIONS_PATH, LOCAL_PATH, '/etc/bind/zones/db.onprem.pvt'}
    assert '10.0.10.10' in files['/etc/bind/zones/db.onprem.pvt']


def test_next_serial():
    today = datetime(2025, 3, 14)
    assert next_serial(0, today) == 2025031401
    assert next_serial(2025031401, today) == 2025031402
    assert next_serial(2025031099, today) == 2025031401
    # A serial already ahead of the calendar keeps counting up
    assert next_serial(2025040107, today) == 2025040108


def test_zone_file_uses_config_serial():
    config = ServerConfig(zone='hub', authoritative_zones={'azure.pvt': {'dns': '10.1.10.4'}},
                          serial=2025031405)
    text = render_server_files(config)['/etc/bind/zones/db.azure.pvt']
    zone = dns.zone.from_text(text, origin='azure.pvt.', relativize=False)
    assert list(zone.find_rdataset('azure.pvt.', dns.rdatatype.SOA))[0].serial == 2025031405

    restored = ServerConfig.from_dict(config.to_dict())
    assert restored.serial == 2025031405
    assert restored == ServerConfig(zone='hub', authoritative_zones={'azure.pvt': {'dns': '10.1.10.4'}})
