#!/usr/bin/env python3
# conftest.py - VCF Bring-up Pytest Configuration and Fixtures
# Version 1.0 - October 2026
# Author - VCF Bring-up Team
# Shared fixtures for all test modules

import pytest
import os
import sys
import json
from contextlib import contextmanager
from unittest.mock import MagicMock, patch
from configparser import ConfigParser

# Add parent, Tools and Bringup directories to path for imports
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)
sys.path.insert(0, os.path.join(parent_dir, 'Tools'))
sys.path.insert(0, os.path.join(parent_dir, 'Bringup'))

import vcffunctions

HOSTS = ['sfo01-m01-esx01', 'sfo01-m01-esx02', 'sfo01-m01-esx03', 'sfo01-m01-esx04']
SUBDOMAIN = 'sfo.rainpole.io'
MGMT_PG = 'sfo01-m01-cl01-vds01-pg-mgmt'
UPLINKS = {
    'sfo01-m01-esx01': 'vmnic0:16',
    'sfo01-m01-esx02': 'vmnic0:18',
    'sfo01-m01-esx03': 'vmnic0:20, vmnic1:21',
    'sfo01-m01-esx04': 'vmnic0:22',
}

#==============================================================================
# FIXTURES - Module state
#==============================================================================

@pytest.fixture(autouse=True)
def isolated_vcffunctions(tmp_path):
    """Keep log output and config out of the real /home/holuser/vcf"""
    saved = {name: getattr(vcffunctions, name) for name in (
        'logfiles', 'console_output', 'config', 'configini', 'bringup_json', 'checkpoint_file',
        'vcenter_vm', 'vcuser', '_password', 'creds', 'standard_portgroup', 'stale_portgroup',
        'vswitch_name', 'vmk_device', 'vswitch_ports', 'rollback_setting', 'timeout_minutes',
        'poll_seconds', 'max_poll_seconds')}
    vcffunctions.logfiles = [str(tmp_path / 'logs' / 'vcfbringup.log')]
    vcffunctions.console_output = False
    vcffunctions.config = ConfigParser()
    vcffunctions._password = None
    vcffunctions.creds = str(tmp_path / 'creds.txt')
    yield
    for name, value in saved.items():
        setattr(vcffunctions, name, value)


@pytest.fixture
def bringup_record():
    """Bring-up JSON record for a four host management domain"""
    return {
        'dnsSpec': {'subdomain': SUBDOMAIN},
        'vcenterSpec': {'vcenterHostname': 'sfo-m01-vc01'},
        'pscSpecs': [{'adminUserSsoPassword': 'VMware1!VMware1!'}],
        'networkSpecs': [
            {'networkType': 'VSAN', 'portGroupKey': 'sfo01-m01-cl01-vds01-pg-vsan'},
            {'networkType': 'MANAGEMENT', 'portGroupKey': MGMT_PG},
        ],
        'hostSpecs': [
            {'hostname': h, 'credentials': {'username': 'root', 'password': f'pw-{h}'}}
            for h in HOSTS
        ],
    }


@pytest.fixture
def bringup_json(tmp_path, bringup_record):
    """Write the bring-up record to disk"""
    path = tmp_path / 'vcf-ems.json'
    path.write_text(json.dumps(bringup_record))
    return str(path)


@pytest.fixture
def config_ini(tmp_path, bringup_json):
    """config.ini with [BRINGUP] and [UPLINKS] for the four hosts"""
    config = ConfigParser()
    config.add_section('BRINGUP')
    config.set('BRINGUP', 'bringupjson', bringup_json)
    config.set('BRINGUP', 'checkpoint', str(tmp_path / 'state.json'))
    config.set('BRINGUP', 'timeoutMinutes', '5')
    config.add_section('UPLINKS')
    for host, value in UPLINKS.items():
        config.set('UPLINKS', host, value)

    path = tmp_path / 'config.ini'
    with open(path, 'w') as f:
        config.write(f)
    return str(path)


@pytest.fixture
def loaded_config(config_ini):
    """vcffunctions initialised from config_ini"""
    vcffunctions.init(config_ini, console=False)
    return vcffunctions.config


@pytest.fixture
def bringup_plan(loaded_config, bringup_record):
    return vcffunctions.build_bringup_plan(bringup_record)

#==============================================================================
# FIXTURES - Mock Objects
#==============================================================================

@pytest.fixture
def mock_vcf():
    """
    Mock vcffunctions module. session() is a real context manager that records
    every open and close in mock.calls_log, as do the collaborators.
    """
    mock = MagicMock()
    mock.calls_log = []

    mock.standard_portgroup = 'VM Network'
    mock.rollback_setting = 'config.vpxd.network.rollback'
    mock.timeout_minutes = 30
    mock.checkpoint_file = ''
    mock.write_output = MagicMock()

    @contextmanager
    def session(endpoint, credential):
        mock.calls_log.append(('open', endpoint.fqdn))
        try:
            yield MagicMock(name=f'session-{endpoint.fqdn}')
        finally:
            mock.calls_log.append(('close', endpoint.fqdn))

    mock.session = MagicMock(side_effect=session)

    def recorder(name, result=None):
        def _record(*args, **kwargs):
            mock.calls_log.append((name,) + tuple(a for a in args[1:] if isinstance(a, str)))
            return result
        return _record

    mock.migrate_port_group = MagicMock(side_effect=recorder('migrate_port_group', 1))
    mock.set_advanced_setting = MagicMock(side_effect=recorder('set_advanced_setting'))
    mock.reboot_vm_guest = MagicMock(side_effect=recorder('reboot_vm_guest'))
    mock.wait_for_reboot = MagicMock(side_effect=lambda *a, **k: mock.calls_log.append(('wait_for_reboot',)))
    mock.resolve_dvs_portgroup = MagicMock(return_value=('50 1a 2b 3c', 'dvportgroup-12'))
    mock.build_host_network_plan = MagicMock(side_effect=vcffunctions.build_host_network_plan)
    mock.apply_host_network = MagicMock(side_effect=recorder('apply_host_network'))

    return mock


def make_session(fqdn='sfo-m01-vc01.sfo.rainpole.io', role=vcffunctions.Role.MANAGEMENT_APPLIANCE):
    """Session around a MagicMock ServiceInstance"""
    return vcffunctions.Session(vcffunctions.Endpoint(fqdn, role), MagicMock())


def named_mock(name, **attrs):
    """MagicMock with a real .name attribute"""
    obj = MagicMock(**attrs)
    obj.name = name
    return obj


@pytest.fixture
def mock_session():
    return make_session()

#==============================================================================
# FIXTURES - Mock Network Operations
#==============================================================================

@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for command execution tests"""
    with patch('subprocess.run') as mock_run:
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout='Success',
            stderr=''
        )
        yield mock_run


@pytest.fixture
def mock_connect():
    """Patch pyVim SmartConnect/Disconnect"""
    with patch('vcffunctions.connect.SmartConnect') as smart_connect, \
            patch('vcffunctions.connect.Disconnect') as disconnect:
        smart_connect.return_value = MagicMock(name='si')
        yield smart_connect, disconnect

#==============================================================================
# MARKERS
#==============================================================================

def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "network: marks tests that require network access"
    )
