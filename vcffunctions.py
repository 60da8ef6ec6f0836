# vcffunctions.py - VCF Bring-up Core Functions Library
# Version 1.0 - October 2026
# Author - VCF Bring-up Team
# Sessions, port group moves, host network change sets and reboot waits
# shared by the Bringup/ modules

import os
import sys
import json
import socket
import datetime
import http.client
import subprocess
import threading
import time
import logging
import urllib3
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
from configparser import ConfigParser
from pyVim import connect
from pyVim.task import WaitForTask
from pyVmomi import vim, vmodl

# Default logging level is WARNING (other levels are DEBUG, INFO, ERROR and CRITICAL)
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)
# Bring-up appliances all carry self-signed certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

#==============================================================================
# STATIC VARIABLES
#==============================================================================

home = '/home/holuser'
vcfroot = f'{home}/vcf'
module_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'Bringup')

configname = 'config.ini'
configini = f'{vcfroot}/{configname}'
bringup_json = f'{vcfroot}/vcf-ems.json'
creds = f'{home}/creds.txt'

# Log file name
logfile = 'vcfbringup.log'
logdir = f'{vcfroot}/logs'
logfiles = [f'{logdir}/{logfile}']

socket.setdefaulttimeout(300)

start_time = datetime.datetime.now()
vcuser = 'administrator@vsphere.local'
esxuser = 'root'

# Network failover defaults (overridden from [BRINGUP] in config.ini)
standard_portgroup = 'VM Network'
stale_portgroup = 'Management Network'
vswitch_name = 'vSwitch0'
vmk_device = 'vmk0'
vswitch_ports = 128
vcenter_vm = ''
rollback_setting = 'config.vpxd.network.rollback'
checkpoint_file = f'{vcfroot}/singlevmnic-state.json'

# Reboot wait bounds
timeout_minutes = 30
poll_seconds = 10
max_poll_seconds = 60

# Config parser
config = ConfigParser()

# Lab password from creds.txt - access via get_password()
_password = None

# Console output flag (set to False when stdout is already captured to the log)
console_output = True

#==============================================================================
# EXCEPTIONS
#==============================================================================

class VcfBringupError(Exception):
    """Base class for every failure raised by the bring-up workflow"""


class ConfigError(VcfBringupError):
    """config.ini or the bring-up JSON is missing or inconsistent"""


class AuthError(VcfBringupError):
    """The endpoint answered but rejected the credentials"""


class UnreachableError(VcfBringupError):
    """The endpoint did not answer"""


class ObjectNotFoundError(VcfBringupError):
    """A named VM, host or port group is not in the inventory"""


class BindingNotFoundError(VcfBringupError):
    """No network adapter is bound to the expected port group"""


class ConfigSubmitError(VcfBringupError):
    """The endpoint accepted the session but rejected or failed the change"""


class ReconfigurationTimeoutError(VcfBringupError):
    """A state transition did not happen before the deadline"""


class OperationCancelledError(VcfBringupError):
    """The operator cancelled the workflow between steps"""

#==============================================================================
# DATA MODEL
#==============================================================================

class Role(Enum):
    MANAGEMENT_APPLIANCE = 'management-appliance'
    HOST = 'host'


@dataclass(frozen=True)
class Endpoint:
    fqdn: str
    role: Role

    @property
    def short_name(self) -> str:
        return self.fqdn.split('.')[0]


@dataclass(frozen=True)
class Credential:
    username: str
    password: str = field(repr=False)


@dataclass
class Session:
    """An authenticated ServiceInstance bound to one endpoint"""
    endpoint: Endpoint
    si: object
    closed: bool = False

    @property
    def content(self):
        return self.si.RetrieveContent()


@dataclass(frozen=True)
class UplinkAssignment:
    device: str
    port_key: str


@dataclass(frozen=True)
class HostTarget:
    endpoint: Endpoint
    credential: Credential
    uplinks: Tuple[UplinkAssignment, ...] = ()


@dataclass(frozen=True)
class HostNetworkPlan:
    """
    Everything needed to move one host from the standard switch to the
    distributed switch in a single UpdateNetworkConfig call.
    """
    host: str
    switch_uuid: str
    portgroup_key: str
    uplinks: Tuple[UplinkAssignment, ...]
    vswitch: str = 'vSwitch0'
    vmk_device: str = 'vmk0'
    stale_portgroup: str = 'Management Network'
    num_ports: int = 128

    def __post_init__(self):
        object.__setattr__(self, 'uplinks', tuple(self.uplinks))
        if not 1 <= len(self.uplinks) <= 2:
            raise ConfigError(f'{self.host}: expected one or two uplinks, got {len(self.uplinks)}')

    @property
    def port_keys(self) -> Tuple[str, ...]:
        return tuple(u.port_key for u in self.uplinks)


@dataclass(frozen=True)
class BringupPlan:
    vcenter: Endpoint
    vcenter_credential: Credential
    vcenter_vm: str
    dvs_portgroup: str
    hosts: Tuple[HostTarget, ...]

#==============================================================================
# INITIALIZATION
#==============================================================================

def init(configini_path=None, **kwargs):
    """
    Initialize the vcffunctions module

    Reads config.ini and applies the [BRINGUP] overrides to the module
    defaults. Safe to call more than once.

    :param configini_path: Alternate config.ini location
    :param kwargs: console - enable/disable console echo
    """
    global configini, bringup_json, logfiles, console_output
    global standard_portgroup, stale_portgroup, vswitch_name, vmk_device, vswitch_ports
    global vcenter_vm, vcuser, rollback_setting, checkpoint_file
    global timeout_minutes, poll_seconds, max_poll_seconds

    if configini_path:
        configini = configini_path
    console_output = kwargs.get('console', console_output)

    if os.path.isfile(configini):
        config.read(configini)
    else:
        write_output(f'WARNING: {configini} not found, using defaults')

    bringup_json = get_config_value('BRINGUP', 'bringupjson', bringup_json)
    logdir_option = get_config_value('BRINGUP', 'logdir')
    if logdir_option:
        logfiles = [os.path.join(logdir_option, logfile)]

    standard_portgroup = get_config_value('BRINGUP', 'standardPortGroup', standard_portgroup)
    stale_portgroup = get_config_value('BRINGUP', 'staleManagementPortGroup', stale_portgroup)
    vswitch_name = get_config_value('BRINGUP', 'vSwitch', vswitch_name)
    vmk_device = get_config_value('BRINGUP', 'vmkDevice', vmk_device)
    vcenter_vm = get_config_value('BRINGUP', 'vcenterVm', vcenter_vm)
    vcuser = get_config_value('BRINGUP', 'vcenterUser', vcuser)
    rollback_setting = get_config_value('BRINGUP', 'rollbackSetting', rollback_setting)
    if config.has_option('BRINGUP', 'checkpoint'):
        checkpoint_file = get_config_value('BRINGUP', 'checkpoint')

    vswitch_ports = get_config_int('BRINGUP', 'numPorts', vswitch_ports)
    timeout_minutes = get_config_int('BRINGUP', 'timeoutMinutes', timeout_minutes)
    poll_seconds = get_config_int('BRINGUP', 'pollSeconds', poll_seconds)
    max_poll_seconds = get_config_int('BRINGUP', 'maxPollSeconds', max_poll_seconds)

    write_output(f'vcffunctions initialized: config={configini}, bringup json={bringup_json}')

#==============================================================================
# CONFIG HELPER FUNCTIONS
#==============================================================================

def get_config_list(section: str, option: str, fallback: list = None) -> list:
    """
    Get a config option as a list, dropping commented and empty entries.

    Multiline values are split on newlines, single-line values on commas.

    Example:
        # [UPLINKS]
        # esx-01 = vmnic0:16
        #   #vmnic1:17

        get_config_list('UPLINKS', 'esx-01')
        # Returns: ['vmnic0:16']

    :param section: Config section name (e.g., 'BRINGUP', 'UPLINKS')
    :param option: Config option name
    :param fallback: Default value if option doesn't exist (default: empty list)
    :return: List of non-commented, non-empty values
    """
    if fallback is None:
        fallback = []

    if not config.has_option(section, option):
        return fallback

    raw_value = config.get(section, option)
    if not raw_value:
        return fallback

    if '\n' in raw_value:
        lines = raw_value.split('\n')
    else:
        lines = raw_value.split(',')

    result = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith('#') or stripped.startswith(';'):
            continue
        result.append(stripped)

    return result


def get_config_value(section: str, option: str, fallback: str = '') -> str:
    """
    Get a config option value; a value starting with '#' or ';' counts as unset.

    :param section: Config section name
    :param option: Config option name
    :param fallback: Default value if option doesn't exist or is commented
    :return: Config value or fallback
    """
    if not config.has_option(section, option):
        return fallback

    value = config.get(section, option).strip()
    if value.startswith('#') or value.startswith(';'):
        return fallback

    return value


def get_config_int(section: str, option: str, fallback: int = 0) -> int:
    """Integer variant of get_config_value"""
    value = get_config_value(section, option)
    if not value:
        return fallback
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f'[{section}] {option} must be an integer, got {value!r}')


def get_password() -> str:
    """
    Get the shared password from creds.txt, cached after the first read.

    :return: Password string, or empty string if not found
    """
    global _password
    if _password is None and os.path.isfile(creds):
        with open(creds, 'r') as f:
            _password = f.read().strip()
    return _password if _password else ''

#==============================================================================
# BRING-UP RECORD
#==============================================================================

def load_bringup_json(path=None) -> dict:
    """
    Read the JSON bring-up record

    :param path: JSON file, defaults to [BRINGUP] bringupjson
    :return: dict
    """
    path = path or bringup_json
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except OSError as e:
        raise ConfigError(f'Cannot read bring-up record {path}: {e}')
    except ValueError as e:
        raise ConfigError(f'Bring-up record {path} is not valid JSON: {e}')


def _first(value):
    """pscSpecs and friends are lists in the bring-up record, sometimes a bare object"""
    if isinstance(value, list):
        return value[0] if value else {}
    return value or {}


def _require(record: dict, *path):
    node = record
    for key in path:
        if not isinstance(node, dict) or key not in node or node[key] in (None, ''):
            raise ConfigError(f'Bring-up record is missing {".".join(path)}')
        node = node[key]
    return node


def parse_uplinks(host: str, entries: List[str]) -> Tuple[UplinkAssignment, ...]:
    """
    Turn 'device:portKey' entries into UplinkAssignments

    :param host: Host name, for error messages
    :param entries: e.g. ['vmnic0:16', 'vmnic1:17']
    :return: tuple of UplinkAssignment in the order given
    """
    uplinks = []
    for entry in entries:
        device, sep, port_key = entry.partition(':')
        if not sep or not device.strip() or not port_key.strip():
            raise ConfigError(f'{host}: uplink entry {entry!r} must look like vmnic0:16')
        uplinks.append(UplinkAssignment(device.strip(), port_key.strip()))

    if not 1 <= len(uplinks) <= 2:
        raise ConfigError(f'{host}: expected one or two uplinks in [UPLINKS], got {len(uplinks)}')

    devices = [u.device for u in uplinks]
    if len(set(devices)) != len(devices):
        raise ConfigError(f'{host}: the same vmnic is listed twice in [UPLINKS]')

    port_keys = [u.port_key for u in uplinks]
    if len(set(port_keys)) != len(port_keys):
        raise ConfigError(f'{host}: two uplinks share port key {port_keys[0]} in [UPLINKS]')

    return tuple(uplinks)


def get_uplink_map(hosts: List[Endpoint]) -> Dict[str, Tuple[UplinkAssignment, ...]]:
    """
    Read the [UPLINKS] section for every host.

    Each host is looked up by short name first, then by FQDN.

    :param hosts: host Endpoints
    :return: dict of fqdn -> tuple of UplinkAssignment
    """
    uplink_map = {}
    for host in hosts:
        entries = get_config_list('UPLINKS', host.short_name) or get_config_list('UPLINKS', host.fqdn)
        if not entries:
            raise ConfigError(f'No [UPLINKS] entry for host {host.fqdn}')
        uplink_map[host.fqdn] = parse_uplinks(host.fqdn, entries)

    validate_uplink_map(uplink_map)
    return uplink_map


def validate_uplink_map(uplink_map: Dict[str, Tuple[UplinkAssignment, ...]]):
    """
    Every host owns its own uplink port keys on the shared distributed switch;
    raise ConfigError if two hosts claim the same key.
    """
    owners = {}
    for host, uplinks in uplink_map.items():
        for uplink in uplinks:
            owner = owners.get(uplink.port_key)
            if owner and owner != host:
                raise ConfigError(f'Uplink port key {uplink.port_key} is assigned to both {owner} and {host}')
            owners[uplink.port_key] = host


def build_host_targets(record: dict) -> Tuple[HostTarget, ...]:
    """
    Resolve host endpoints and credentials from the bring-up record.
    Uplinks are left empty; build_bringup_plan() fills them from [UPLINKS].

    :param record: bring-up JSON as a dict
    :return: tuple of HostTarget in hostSpecs order
    """
    subdomain = _require(record, 'dnsSpec', 'subdomain')

    host_specs = record.get('hostSpecs') or []
    if not host_specs:
        raise ConfigError('Bring-up record has no hostSpecs')

    targets = []
    for index, spec in enumerate(host_specs):
        hostname = spec.get('hostname')
        creds_spec = spec.get('credentials') or {}
        if not hostname or not creds_spec.get('username') or not creds_spec.get('password'):
            raise ConfigError(f'hostSpecs[{index}] needs hostname and credentials.username/password')
        targets.append(HostTarget(
            Endpoint(f'{hostname}.{subdomain}', Role.HOST),
            Credential(creds_spec['username'], creds_spec['password'])
        ))
    return tuple(targets)


def build_bringup_plan(record: dict, uplink_map=None) -> BringupPlan:
    """
    Resolve endpoints, credentials and uplinks from the bring-up record

    :param record: bring-up JSON as a dict
    :param uplink_map: optional fqdn -> uplinks mapping; read from [UPLINKS] when omitted
    :return: BringupPlan
    """
    targets = build_host_targets(record)
    subdomain = _require(record, 'dnsSpec', 'subdomain')

    vcenter_hostname = _require(record, 'vcenterSpec', 'vcenterHostname')
    sso_password = _first(record.get('pscSpecs')).get('adminUserSsoPassword')
    if not sso_password:
        raise ConfigError('Bring-up record is missing pscSpecs.adminUserSsoPassword')

    network_specs = record.get('networkSpecs') or []
    management = [n for n in network_specs if str(n.get('networkType', '')).upper() == 'MANAGEMENT']
    network = (management or network_specs or [{}])[0]
    dvs_portgroup = network.get('portGroupKey')
    if not dvs_portgroup:
        raise ConfigError('Bring-up record is missing networkSpecs.portGroupKey')

    if uplink_map is None:
        uplink_map = get_uplink_map([t.endpoint for t in targets])
    else:
        validate_uplink_map(uplink_map)

    hosts = []
    for target in targets:
        uplinks = uplink_map.get(target.endpoint.fqdn)
        if not uplinks:
            raise ConfigError(f'No uplink assignment for host {target.endpoint.fqdn}')
        hosts.append(replace(target, uplinks=tuple(uplinks)))

    return BringupPlan(
        vcenter=Endpoint(f'{vcenter_hostname}.{subdomain}', Role.MANAGEMENT_APPLIANCE),
        vcenter_credential=Credential(vcuser, sso_password),
        vcenter_vm=vcenter_vm or vcenter_hostname,
        dvs_portgroup=dvs_portgroup,
        hosts=tuple(hosts),
    )

#==============================================================================
# OUTPUT AND LOGGING
#==============================================================================

def write_output(msg, **kwargs):
    """
    Append a timestamped line to the bring-up log and optionally the console

    :param msg: Message to write
    :param kwargs:
        logfile - specific logfile path
        console - override console output setting (True/False)
    """
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    formatted_msg = f'[{timestamp}] {msg}'

    lfile = kwargs.get('logfile', None)
    print_to_console = kwargs.get('console', console_output)

    for lf in ([lfile] if lfile else logfiles):
        try:
            os.makedirs(os.path.dirname(lf), exist_ok=True)
            with open(lf, 'a') as f:
                f.write(formatted_msg + '\n')
        except OSError as e:
            logger.warning(f'Error writing to {lf}: {e}')

    if print_to_console:
        print(formatted_msg)


def bringup_fail(reason):
    """
    Log the failure and exit non-zero

    :param reason: Failure reason
    """
    write_output(f'BRING-UP FAILED: {reason}')
    sys.exit(1)

#==============================================================================
# NETWORK TESTING
#==============================================================================

def test_ping(host, **kwargs):
    """
    Test if a host is reachable via ping

    :param host: Hostname or IP
    :return: True if reachable
    """
    count = kwargs.get('count', 1)
    timeout = kwargs.get('timeout', 5)

    try:
        result = subprocess.run(
            ['ping', '-c', str(count), '-W', str(timeout), host],
            capture_output=True,
            text=True,
            timeout=timeout + 5
        )
    except subprocess.TimeoutExpired:
        return False
    return result.returncode == 0


def test_tcp_port(host, port, **kwargs):
    """
    Test if a TCP port is open

    :param host: Hostname or IP
    :param port: Port number
    :return: True if port is open
    """
    timeout = kwargs.get('timeout', 5)

    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False

#==============================================================================
# CONNECTION MANAGER
#==============================================================================

def open_session(endpoint: Endpoint, credential: Credential, **kwargs) -> Session:
    """
    Connect to a vCenter or ESXi host

    :param endpoint: Endpoint to connect to
    :param credential: Credential for that endpoint
    :param kwargs: port - API port (default 443)
    :return: Session
    :raises AuthError: credentials rejected
    :raises UnreachableError: endpoint did not answer
    """
    port = kwargs.get('port', 443)

    try:
        si = connect.SmartConnect(
            host=endpoint.fqdn,
            user=credential.username,
            pwd=credential.password,
            port=port,
            disableSslCertValidation=True
        )
    except vim.fault.InvalidLogin as e:
        raise AuthError(f'{endpoint.fqdn}: login rejected for {credential.username}: {e.msg}') from e
    except (vim.fault.HostConnectFault, OSError) as e:
        raise UnreachableError(f'{endpoint.fqdn}: {e}') from e

    write_output(f'Connected to {endpoint.fqdn}')
    return Session(endpoint, si)


def close_session(session: Optional[Session]):
    """Disconnect a Session; closing twice or closing None is a no-op"""
    if session is None or session.closed:
        return
    session.closed = True
    try:
        connect.Disconnect(session.si)
        write_output(f'Disconnected from {session.endpoint.fqdn}')
    except Exception as e:
        # the far end may already be gone (appliance reboot, vmk0 move)
        write_output(f'Disconnect from {session.endpoint.fqdn} reported: {e}')


@contextmanager
def session(endpoint: Endpoint, credential: Credential, **kwargs):
    """
    Scoped session: always disconnected on exit, including on exceptions

    Usage:
        with vcf.session(plan.vcenter, plan.vcenter_credential) as s:
            vcf.set_advanced_setting(s, key, value)
    """
    s = open_session(endpoint, credential, **kwargs)
    try:
        yield s
    finally:
        close_session(s)

#==============================================================================
# INVENTORY
#==============================================================================

def get_all_objs(si_content, vimtype) -> list:
    """
    Return every managed object of the given types below the root folder

    :param si_content: ServiceInstance content
    :param vimtype: list of VIM types, e.g. [vim.VirtualMachine]
    :return: list of managed objects
    """
    container = si_content.viewManager.CreateContainerView(si_content.rootFolder, vimtype, True)
    try:
        return list(container.view)
    finally:
        container.Destroy()


def find_obj(session: Session, vimtype, name: str, kind: str):
    """
    Find one managed object by name; host names match on FQDN or short name

    :raises ObjectNotFoundError: nothing by that name
    """
    short = name.split('.')[0]
    for obj in get_all_objs(session.content, vimtype):
        if obj.name == name or (kind == 'host' and obj.name.split('.')[0] == short):
            return obj
    raise ObjectNotFoundError(f'{kind} {name} not found on {session.endpoint.fqdn}')


def get_vm(session: Session, name: str):
    return find_obj(session, [vim.VirtualMachine], name, 'VM')


def get_host_system(session: Session, name: str):
    return find_obj(session, [vim.HostSystem], name, 'host')


def find_network(session: Session, name: str):
    """
    Find a network by name; a distributed port group wins over a standard
    network carrying the same name.

    :raises ObjectNotFoundError: nothing by that name
    """
    matches = [n for n in get_all_objs(session.content, [vim.Network]) if n.name == name]
    if not matches:
        raise ObjectNotFoundError(f'port group {name} not found on {session.endpoint.fqdn}')
    distributed = [n for n in matches if isinstance(n, vim.dvs.DistributedVirtualPortgroup)]
    return (distributed or matches)[0]


def resolve_dvs_portgroup(session: Session, name: str) -> Tuple[str, str]:
    """
    Look up a distributed port group by name

    :return: (switch uuid, port group key)
    """
    portgroup = find_obj(session, [vim.dvs.DistributedVirtualPortgroup], name, 'distributed port group')
    return portgroup.config.distributedVirtualSwitch.uuid, portgroup.key

#==============================================================================
# PORT GROUP MIGRATOR
#==============================================================================

def get_network_adapters(vm_obj) -> list:
    """
    Return a list of network adapters for the VM
    :param vm_obj: the VM to use
    :return: list of VirtualEthernetCard devices
    """
    return [dev for dev in vm_obj.config.hardware.device
            if isinstance(dev, vim.vm.device.VirtualEthernetCard)]


def adapter_port_group(session: Session, vm_obj, adapter) -> Optional[str]:
    """
    Name of the port group an adapter is bound to, as observed live.

    Distributed backings only carry a port group key; the name comes from the
    VM's own network list, then from the inventory. The key is returned when
    neither knows it.
    """
    backing = adapter.backing
    if isinstance(backing, vim.vm.device.VirtualEthernetCard.NetworkBackingInfo):
        return backing.deviceName
    if isinstance(backing, vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo):
        key = backing.port.portgroupKey
        for network in vm_obj.network:
            if getattr(network, 'key', None) == key:
                return network.name
        for portgroup in get_all_objs(session.content, [vim.dvs.DistributedVirtualPortgroup]):
            if portgroup.key == key:
                return portgroup.name
        return key
    return None


def build_adapter_backing(network, name: str):
    """Backing for a standard port group (by name) or a distributed port group"""
    if isinstance(network, vim.dvs.DistributedVirtualPortgroup):
        port = vim.dvs.PortConnection(
            portgroupKey=network.key,
            switchUuid=network.config.distributedVirtualSwitch.uuid
        )
        return vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo(port=port)
    return vim.vm.device.VirtualEthernetCard.NetworkBackingInfo(deviceName=name)


def migrate_port_group(session: Session, vm_name: str, from_portgroup: str, to_portgroup: str) -> int:
    """
    Rebind every adapter of vm_name on from_portgroup to to_portgroup.

    Adapters on any other port group are left alone. No retry: a second call
    after success finds nothing on from_portgroup and raises.

    :return: number of adapters moved
    :raises BindingNotFoundError: no adapter is on from_portgroup
    :raises ObjectNotFoundError: VM or target port group missing
    :raises ConfigSubmitError: the reconfigure task failed
    """
    vm_obj = get_vm(session, vm_name)

    matches = [a for a in get_network_adapters(vm_obj)
               if adapter_port_group(session, vm_obj, a) == from_portgroup]
    if not matches:
        raise BindingNotFoundError(f'{vm_name}: no network adapter on {from_portgroup}')

    target = find_network(session, to_portgroup)

    device_change = []
    for adapter in matches:
        nicspec = vim.vm.device.VirtualDeviceSpec()
        nicspec.operation = vim.vm.device.VirtualDeviceSpec.Operation.edit
        nicspec.device = adapter
        nicspec.device.backing = build_adapter_backing(target, to_portgroup)
        device_change.append(nicspec)

    spec = vim.vm.ConfigSpec(deviceChange=device_change)
    write_output(f'{vm_name}: moving {len(matches)} adapter(s) from {from_portgroup} to {to_portgroup}')
    try:
        WaitForTask(vm_obj.ReconfigVM_Task(spec=spec))
    except vmodl.MethodFault as e:
        raise ConfigSubmitError(f'{vm_name}: reconfigure failed: {e.msg}') from e

    return len(matches)

#==============================================================================
# HOST NETWORK RECONFIGURATOR
#==============================================================================

def build_host_network_plan(host: str, switch_uuid: str, portgroup_key: str, uplinks, **kwargs) -> HostNetworkPlan:
    """HostNetworkPlan with the [BRINGUP] switch defaults filled in"""
    return HostNetworkPlan(
        host=host,
        switch_uuid=switch_uuid,
        portgroup_key=portgroup_key,
        uplinks=tuple(uplinks),
        vswitch=kwargs.get('vswitch', vswitch_name),
        vmk_device=kwargs.get('vmk_device', vmk_device),
        stale_portgroup=kwargs.get('stale_portgroup', stale_portgroup),
        num_ports=kwargs.get('num_ports', vswitch_ports),
    )


def build_vswitch_policy():
    """
    Standard switch policy left behind once its uplinks move away: all
    security exceptions rejected, offloads on, route on originating port.
    """
    security = vim.host.NetworkPolicy.SecurityPolicy(
        allowPromiscuous=False,
        macChanges=False,
        forgedTransmits=False
    )
    offload = vim.host.NetOffloadCapabilities(csumOffload=True, tcpSegmentation=True)
    failure = vim.host.NetworkPolicy.NicFailureCriteria(checkBeacon=False)
    teaming = vim.host.NetworkPolicy.NicTeamingPolicy(
        policy='loadbalance_srcid',
        notifySwitches=True,
        failureCriteria=failure
    )
    return vim.host.NetworkPolicy(security=security, nicTeaming=teaming, offloadPolicy=offload)


def build_network_config(plan: HostNetworkPlan):
    """
    Single change set for one host: edit the standard switch, remove the
    stale management port group, move vmk0 to the distributed port group,
    and bind the uplinks to their port keys in the order given.

    :param plan: HostNetworkPlan
    :return: vim.host.NetworkConfig
    """
    vswitch = vim.host.VirtualSwitch.Config(
        changeOperation='edit',
        name=plan.vswitch,
        spec=vim.host.VirtualSwitch.Specification(numPorts=plan.num_ports, policy=build_vswitch_policy())
    )

    portgroup = vim.host.PortGroup.Config(
        changeOperation='remove',
        spec=vim.host.PortGroup.Specification(
            name=plan.stale_portgroup,
            vlanId=-1,
            vswitchName='',
            policy=vim.host.NetworkPolicy()
        )
    )

    vnic = vim.host.VirtualNic.Config(
        changeOperation='edit',
        device=plan.vmk_device,
        portgroup='',
        spec=vim.host.VirtualNic.Specification(
            distributedVirtualPort=vim.dvs.PortConnection(
                switchUuid=plan.switch_uuid,
                portgroupKey=plan.portgroup_key
            )
        )
    )

    pnic_specs = [vim.dvs.HostMember.PnicSpec(pnicDevice=u.device, uplinkPortKey=u.port_key)
                  for u in plan.uplinks]
    proxy = vim.host.HostProxySwitch.Config(
        changeOperation='edit',
        uuid=plan.switch_uuid,
        spec=vim.host.HostProxySwitch.Specification(
            backing=vim.dvs.HostMember.PnicBacking(pnicSpec=pnic_specs)
        )
    )

    return vim.host.NetworkConfig(vswitch=[vswitch], portgroup=[portgroup], vnic=[vnic], proxySwitch=[proxy])


def apply_host_network(session: Session, host_name: str, plan: HostNetworkPlan):
    """
    Submit the plan's change set in "modify" mode; fields the change set does
    not name keep their current values. All or nothing per host.

    :raises ObjectNotFoundError: host not in the inventory
    :raises ConfigSubmitError: the host rejected the change set
    """
    host = get_host_system(session, host_name)
    network_config = build_network_config(plan)

    uplinks = ', '.join(f'{u.device}->{u.port_key}' for u in plan.uplinks)
    write_output(f'{host_name}: moving {plan.vmk_device} to {plan.portgroup_key}, uplinks {uplinks}')
    try:
        result = host.configManager.networkSystem.UpdateNetworkConfig(config=network_config, changeMode='modify')
    except vmodl.MethodFault as e:
        raise ConfigSubmitError(f'{host_name}: network change set rejected: {e.msg}') from e

    write_output(f'{host_name}: network change set applied')
    return result

#==============================================================================
# ADVANCED SETTINGS
#==============================================================================

def set_advanced_setting(session: Session, key: str, value: str):
    """
    Set a vCenter advanced setting (OptionManager)

    :raises ConfigSubmitError: vCenter rejected the update
    """
    option = vim.option.OptionValue(key=key, value=value)
    write_output(f'{session.endpoint.fqdn}: setting {key} = {value}')
    try:
        session.content.setting.UpdateOptions(changedValue=[option])
    except vmodl.MethodFault as e:
        raise ConfigSubmitError(f'{session.endpoint.fqdn}: cannot set {key}: {e.msg}') from e

#==============================================================================
# POLLING AND REBOOT WAITER
#==============================================================================

def poll_until(predicate: Callable[[], bool], description: str, timeout=None, interval=None,
               max_interval=None, cancel: Optional[threading.Event] = None, deadline=None) -> int:
    """
    Call predicate until it returns True, backing off exponentially.

    :param predicate: no-argument callable
    :param description: what is being waited for, for the log
    :param timeout: seconds (default timeout_minutes)
    :param interval: first wait in seconds (default poll_seconds)
    :param max_interval: cap on the wait (default max_poll_seconds)
    :param cancel: threading.Event; when set the wait ends
    :param deadline: absolute time.monotonic() deadline, overrides timeout
    :return: number of attempts made
    :raises ReconfigurationTimeoutError: deadline passed
    :raises OperationCancelledError: cancel was set
    """
    if deadline is None:
        deadline = time.monotonic() + (timeout if timeout is not None else timeout_minutes * 60)
    delay = interval if interval is not None else poll_seconds
    max_interval = max_interval if max_interval is not None else max_poll_seconds

    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise OperationCancelledError(f'Cancelled while waiting for {description}')

        attempt += 1
        if predicate():
            write_output(f'Done waiting for {description} after {attempt} check(s)')
            return attempt

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ReconfigurationTimeoutError(f'Timed out waiting for {description}')

        write_output(f'Waiting for {description} (check {attempt})')
        wait = max(0, min(delay, remaining))
        if cancel is not None:
            if cancel.wait(wait):
                raise OperationCancelledError(f'Cancelled while waiting for {description}')
        else:
            time.sleep(wait)
        delay = min(delay * 2, max_interval)


def reboot_vm_guest(session: Session, vm_name: str):
    """
    Ask VMware Tools in the guest to reboot

    :raises ConfigSubmitError: the reboot request was refused
    """
    vm_obj = get_vm(session, vm_name)
    write_output(f'Rebooting {vm_name} via {session.endpoint.fqdn}')
    try:
        vm_obj.RebootGuest()
    except vmodl.MethodFault as e:
        raise ConfigSubmitError(f'{vm_name}: reboot refused: {e.msg}') from e


def session_accepted(endpoint: Endpoint, credential: Credential) -> bool:
    """True once the management API hands out an authenticated session"""
    try:
        with session(endpoint, credential):
            return True
    except (AuthError, UnreachableError, vmodl.MethodFault, http.client.HTTPException) as e:
        # SSO and vpxd come up at different times
        write_output(f'{endpoint.fqdn} not ready yet: {e}')
        return False


def wait_for_reboot(endpoint: Endpoint, credential: Credential, timeout=None, interval=None,
                    max_interval=None, cancel: Optional[threading.Event] = None):
    """
    Block until the endpoint goes away, comes back, and accepts a session.

    All three phases share one deadline. The outage can be shorter than the
    backoff cap, so the first phase polls at a fixed interval.

    :raises ReconfigurationTimeoutError: not back before the deadline
    :raises OperationCancelledError: cancel was set
    """
    timeout = timeout if timeout is not None else timeout_minutes * 60
    interval = interval if interval is not None else poll_seconds
    deadline = time.monotonic() + timeout
    fqdn = endpoint.fqdn

    poll_until(lambda: not test_ping(fqdn), f'{fqdn} to stop responding',
               interval=interval, max_interval=interval, cancel=cancel, deadline=deadline)

    kwargs = dict(interval=interval, max_interval=max_interval, cancel=cancel, deadline=deadline)
    poll_until(lambda: test_ping(fqdn), f'{fqdn} to respond to ping', **kwargs)
    poll_until(lambda: session_accepted(endpoint, credential), f'{fqdn} to accept API sessions', **kwargs)

#==============================================================================
# BRINGUP MODULE SUPPORT
#==============================================================================

def run_module(module_name, **kwargs):
    """
    Execute a Bringup/ module

    :param module_name: Name of the module (without .py)
    :param kwargs: passed through to the module's main()
    :return: True if module succeeded, False if failed
    """
    import importlib.util

    module_path = os.path.join(module_dir, f'{module_name}.py')
    if not os.path.isfile(module_path):
        write_output(f'Bring-up module not found: {module_name}')
        return False

    write_output(f'Starting module: {module_name} from {module_path}')

    spec = importlib.util.spec_from_file_location(module_name, module_path)
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)

    if not hasattr(module, 'main'):
        write_output(f'Module {module_name} has no main()')
        return False

    result = module.main(vcf=sys.modules[__name__], **kwargs)
    if result is None:
        result = True

    if result:
        write_output(f'Completed module: {module_name}')
    else:
        write_output(f'Module {module_name} reported failure')
    return result
