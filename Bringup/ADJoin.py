#!/usr/bin/env python3
# ADJoin.py - VCF Bring-up Active Directory Join Module
# Version 1.0 - October 2026
# Author - VCF Bring-up Team
# Joins the management domain ESXi hosts to Active Directory

import os
import sys
import argparse
import logging

# Add the bring-up root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pyVim.task import WaitForTask
from pyVmomi import vim, vmodl
from vcffunctions import ConfigError, ConfigSubmitError, ObjectNotFoundError, VcfBringupError

# Default logging level
logging.basicConfig(level=logging.WARNING)

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

MODULE_NAME = 'ADJoin'
MODULE_DESCRIPTION = 'Join ESXi hosts to Active Directory'

#==============================================================================
# HELPER FUNCTIONS
#==============================================================================

def get_ad_store(host_system):
    """
    Return the host's Active Directory authentication store

    :param host_system: vim.HostSystem
    :return: vim.host.ActiveDirectoryAuthentication
    """
    for store in host_system.configManager.authenticationManager.supportedStore:
        if isinstance(store, vim.host.ActiveDirectoryAuthentication):
            return store
    raise ObjectNotFoundError(f'{host_system.name}: no Active Directory authentication store')


def join_host(vcf, session, host_name, domain, username, password, dry_run=False):
    """
    Join one host to the domain. Hosts already in the domain are left alone.

    :return: 'joined', 'already_joined' or 'would_join'
    :raises ConfigError: host is joined to a different domain
    :raises ConfigSubmitError: the join task failed
    """
    host_system = vcf.get_host_system(session, host_name)
    store = get_ad_store(host_system)

    joined = (store.info.joinedDomain or '') if store.info else ''
    if joined.lower() == domain.lower():
        vcf.write_output(f'{host_name}: already joined to {domain}')
        return 'already_joined'
    if joined:
        raise ConfigError(f'{host_name}: joined to {joined}, not {domain}; leave that domain first')

    if dry_run:
        vcf.write_output(f'{host_name}: would join {domain} as {username}')
        return 'would_join'

    vcf.write_output(f'{host_name}: joining {domain} as {username}')
    try:
        WaitForTask(store.JoinDomain_Task(domainName=domain, userName=username, password=password))
    except vmodl.MethodFault as e:
        raise ConfigSubmitError(f'{host_name}: join {domain} failed: {e.msg}') from e

    vcf.write_output(f'{host_name}: joined {domain}')
    return 'joined'

#==============================================================================
# MAIN FUNCTION
#==============================================================================

def main(vcf=None, standalone=False, dry_run=False, resume=False, cancel=None):
    """
    Main entry point for ADJoin module

    :param vcf: vcffunctions module (will be imported if None)
    :param standalone: Whether running in standalone test mode
    :param dry_run: Whether to skip actual changes
    :param resume: Unused; joining is idempotent
    :param cancel: threading.Event checked between hosts
    :return: True if every host is in the domain
    """
    if vcf is None:
        import vcffunctions as vcf
        if not standalone:
            vcf.init()

    vcf.write_output(f'Starting {MODULE_NAME}: {MODULE_DESCRIPTION}')

    domain = vcf.get_config_value('ADJOIN', 'domain')
    if not domain:
        vcf.write_output('No [ADJOIN] domain configured, skipping')
        return True

    username = vcf.get_config_value('ADJOIN', 'username')
    password = vcf.get_password()
    if not username or not password:
        vcf.write_output('FAIL: [ADJOIN] username and the credential file password are required')
        return False

    try:
        targets = vcf.build_host_targets(vcf.load_bringup_json(vcf.bringup_json))
    except ConfigError as e:
        vcf.write_output(f'FAIL: {e}')
        return False

    only = [h.lower() for h in vcf.get_config_list('ADJOIN', 'hosts')]
    hosts = [h for h in targets
             if not only or h.endpoint.fqdn.lower() in only or h.endpoint.short_name.lower() in only]

    results = {}
    for host in hosts:
        fqdn = host.endpoint.fqdn
        if cancel is not None and cancel.is_set():
            vcf.write_output(f'FAIL: cancelled before {fqdn}')
            return False
        try:
            with vcf.session(host.endpoint, host.credential) as s:
                results[fqdn] = join_host(vcf, s, fqdn, domain, username, password, dry_run=dry_run)
        except VcfBringupError as e:
            vcf.write_output(f'FAIL: {fqdn}: {e}')
            return False

    joined = sum(1 for r in results.values() if r == 'joined')
    vcf.write_output(f'{MODULE_NAME}: {joined} joined, {len(results) - joined} unchanged')
    return True


#==============================================================================
# STANDALONE EXECUTION
#==============================================================================

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description=MODULE_DESCRIPTION)
    parser.add_argument('--standalone', action='store_true',
                        help='Run in standalone test mode')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show what would be done without making changes')
    parser.add_argument('--config', default=None,
                        help='Alternate config.ini')

    args = parser.parse_args()

    import vcffunctions as vcf
    vcf.init(args.config)

    ok = main(vcf=vcf, standalone=args.standalone, dry_run=args.dry_run)
    sys.exit(0 if ok else 1)
