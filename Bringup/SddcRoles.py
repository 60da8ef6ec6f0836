#!/usr/bin/env python3
# SddcRoles.py - VCF Bring-up SDDC Manager Role Assignment Module
# Version 1.0 - October 2026
# Author - VCF Bring-up Team
# Grants SDDC Manager roles to directory users and groups

"""
SDDC Manager Role Assignment

Assignments are read from config.ini:

    [SDDC]
    sddcManager = sfo-vcf01.sfo.rainpole.io
    username = administrator@vsphere.local
    assignments = GROUP:gg-vcf-admins@sfo.rainpole.io:ADMIN
        GROUP:gg-vcf-operators@sfo.rainpole.io:OPERATOR
        USER:svc-vcf-viewer@sfo.rainpole.io:VIEWER

API flow:
  - POST /v1/tokens            -> accessToken
  - GET  /v1/roles             -> role name to id
  - GET  /v1/users             -> existing principals
  - POST /v1/users             -> add the missing ones
"""

import os
import sys
import json
import argparse
import logging
import requests
import urllib3

# Disable SSL warnings, SDDC Manager runs with its bring-up certificate
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

# Add the bring-up root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vcffunctions import AuthError, ConfigError, UnreachableError, VcfBringupError

# Default logging level
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

MODULE_NAME = 'SddcRoles'
MODULE_DESCRIPTION = 'Assign SDDC Manager roles'

SSL_VERIFY = False
REQUEST_TIMEOUT = 30  # seconds for API requests
PRINCIPAL_TYPES = ('USER', 'GROUP')

#==============================================================================
# API HELPERS
#==============================================================================

def get_access_token(fqdn: str, username: str, password: str, verify: bool = SSL_VERIFY) -> str:
    """
    Request an SDDC Manager API access token.

    :param fqdn: SDDC Manager FQDN
    :param username: SSO user, e.g. administrator@vsphere.local
    :param password: password
    :return: bearer token
    :raises AuthError: credentials rejected
    :raises UnreachableError: SDDC Manager did not answer
    """
    url = f'https://{fqdn}/v1/tokens'
    try:
        response = requests.post(url, json={'username': username, 'password': password},
                                 headers={'Accept': 'application/json'},
                                 verify=verify, timeout=REQUEST_TIMEOUT)
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise UnreachableError(f'{fqdn}: {e}') from e

    if response.status_code in (401, 403):
        raise AuthError(f'{fqdn}: token request rejected for {username} (HTTP {response.status_code})')
    response.raise_for_status()
    return response.json()['accessToken']


def _make_request(method: str, url: str, token: str, payload=None, verify: bool = SSL_VERIFY) -> dict:
    """
    Make an authenticated API request to SDDC Manager.

    :param method: HTTP method (GET or POST)
    :param url: Full URL endpoint
    :param token: bearer token
    :param payload: Optional request body
    :param verify: SSL verification flag
    :return: JSON response as dict
    :raises: requests.HTTPError on failure
    """
    headers = {
        'Content-Type': 'application/json',
        'Authorization': f'Bearer {token}',
        'Accept': 'application/json'
    }

    try:
        if method.upper() == 'GET':
            response = requests.get(url, headers=headers, verify=verify, timeout=REQUEST_TIMEOUT)
        elif method.upper() == 'POST':
            data = json.dumps(payload) if payload is not None else None
            response = requests.post(url, headers=headers, data=data, verify=verify, timeout=REQUEST_TIMEOUT)
        else:
            raise ValueError(f"Unsupported HTTP method: {method}")

        response.raise_for_status()
        return response.json() if response.text else {}

    except requests.exceptions.HTTPError as e:
        logger.error(f"HTTP Error: {e}")
        logger.debug(f"Response: {e.response.text if e.response is not None else 'N/A'}")
        if e.response is not None and e.response.status_code in (401, 403):
            raise AuthError(f'{url}: HTTP {e.response.status_code}') from e
        raise
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        logger.error(f"Connection Error: {e}")
        raise UnreachableError(f'{url}: {e}') from e

#==============================================================================
# ROLE OPERATIONS
#==============================================================================

def parse_assignment(entry: str) -> dict:
    """
    Parse 'TYPE:name@domain:ROLE'

    :return: dict with type, name, domain, role
    :raises ConfigError: malformed entry
    """
    parts = [p.strip() for p in entry.split(':')]
    if len(parts) != 3 or '@' not in parts[1]:
        raise ConfigError(f'Role assignment {entry!r} must look like GROUP:name@domain:ADMIN')

    principal_type = parts[0].upper()
    if principal_type not in PRINCIPAL_TYPES:
        raise ConfigError(f'Role assignment {entry!r}: type must be USER or GROUP')

    name, _, domain = parts[1].partition('@')
    return {'type': principal_type, 'name': name, 'domain': domain, 'role': parts[2].upper()}


def get_roles(fqdn: str, token: str) -> dict:
    """:return: dict of role name -> role id"""
    roles = _make_request('GET', f'https://{fqdn}/v1/roles', token)
    return {r['name'].upper(): r['id'] for r in roles.get('elements', [])}


def get_users(fqdn: str, token: str) -> list:
    """:return: list of existing SDDC Manager principals"""
    users = _make_request('GET', f'https://{fqdn}/v1/users', token)
    return users.get('elements', [])


def _principal_key(name, domain, principal_type):
    return (name.lower(), (domain or '').lower(), principal_type.upper())


def assign_roles(vcf, fqdn: str, token: str, assignments: list, dry_run: bool = False) -> int:
    """
    Add the principals that don't already hold their role

    :param vcf: vcffunctions module, for logging
    :param assignments: parsed assignments from parse_assignment()
    :return: number of principals added
    :raises ConfigError: a role name SDDC Manager doesn't know
    """
    roles = get_roles(fqdn, token)
    existing = {}
    for user in get_users(fqdn, token):
        key = _principal_key(user.get('name', ''), user.get('domain', ''), user.get('type', ''))
        existing[key] = (user.get('role') or {}).get('id')

    to_add = []
    for a in assignments:
        role_id = roles.get(a['role'])
        if role_id is None:
            raise ConfigError(f"Unknown SDDC Manager role {a['role']}; known: {', '.join(sorted(roles))}")

        principal = f"{a['name']}@{a['domain']}"
        key = _principal_key(a['name'], a['domain'], a['type'])
        if key in existing:
            if existing[key] == role_id:
                vcf.write_output(f'{principal}: already has {a["role"]}')
            else:
                vcf.write_output(f'WARNING: {principal} already holds another role, leaving it')
            continue

        vcf.write_output(f'{principal}: {"would assign" if dry_run else "assigning"} {a["role"]}')
        to_add.append({'name': a['name'], 'domain': a['domain'], 'type': a['type'], 'role': {'id': role_id}})

    if to_add and not dry_run:
        _make_request('POST', f'https://{fqdn}/v1/users', token, payload=to_add)

    return len(to_add)

#==============================================================================
# MAIN FUNCTION
#==============================================================================

def main(vcf=None, standalone=False, dry_run=False, resume=False, cancel=None):
    """
    Main entry point for SddcRoles module

    :param vcf: vcffunctions module (will be imported if None)
    :param standalone: Whether running in standalone test mode
    :param dry_run: Whether to skip actual changes
    :param resume: Unused; existing assignments are skipped anyway
    :param cancel: Unused; a single API call
    :return: True on success
    """
    if vcf is None:
        import vcffunctions as vcf
        if not standalone:
            vcf.init()

    vcf.write_output(f'Starting {MODULE_NAME}: {MODULE_DESCRIPTION}')

    fqdn = vcf.get_config_value('SDDC', 'sddcManager')
    entries = vcf.get_config_list('SDDC', 'assignments')
    if not fqdn or not entries:
        vcf.write_output('No [SDDC] sddcManager/assignments configured, skipping')
        return True

    username = vcf.get_config_value('SDDC', 'username', vcf.vcuser)

    try:
        assignments = [parse_assignment(e) for e in entries]
        token = get_access_token(fqdn, username, vcf.get_password())
        added = assign_roles(vcf, fqdn, token, assignments, dry_run=dry_run)
    except (VcfBringupError, requests.exceptions.RequestException) as e:
        vcf.write_output(f'FAIL: {MODULE_NAME}: {e}')
        return False

    vcf.write_output(f'{MODULE_NAME}: {added} principal(s) {"to add" if dry_run else "added"}')
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
    parser.add_argument('--debug', action='store_true', help='Enable debug output')

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    import vcffunctions as vcf
    vcf.init(args.config)

    ok = main(vcf=vcf, standalone=args.standalone, dry_run=args.dry_run)
    sys.exit(0 if ok else 1)
