#!/usr/bin/env python3
# bringup_state.py - VCF Bring-up Workflow State and Step Checkpoint
# Version 1.0 - October 2026
# Author - VCF Bring-up Team
# Tracks how far the single vmnic failover got so a rerun can resume

import os
import datetime
import json
import logging
from typing import List
from enum import Enum

logger = logging.getLogger(__name__)

#==============================================================================
# STATE TYPES
#==============================================================================

class WorkflowState(Enum):
    START = "start"
    VCENTER_ON_STANDARD_SWITCH = "vcenter-on-standard-switch"
    CONFIG_ROLLBACK_DISABLED = "config-rollback-disabled"
    APPLIANCE_REBOOTED = "appliance-rebooted"
    FIRST_HOST_MIGRATED = "first-host-migrated"
    APPLIANCE_ON_DISTRIBUTED_SWITCH = "appliance-on-distributed-switch"
    REMAINING_HOSTS_MIGRATED = "remaining-hosts-migrated"
    DONE = "done"
    FAILED = "failed"


# Happy path, in order
STATE_ORDER = [
    WorkflowState.START,
    WorkflowState.VCENTER_ON_STANDARD_SWITCH,
    WorkflowState.CONFIG_ROLLBACK_DISABLED,
    WorkflowState.APPLIANCE_REBOOTED,
    WorkflowState.FIRST_HOST_MIGRATED,
    WorkflowState.APPLIANCE_ON_DISTRIBUTED_SWITCH,
    WorkflowState.REMAINING_HOSTS_MIGRATED,
    WorkflowState.DONE,
]

#==============================================================================
# STEP CHECKPOINT CLASS
#==============================================================================

class StepCheckpoint:
    """
    JSON record of completed workflow states and migrated hosts.

    Written only after a step completes, so the recorded state is always one
    the system actually reached. A checkpoint for a different workflow or
    vCenter is ignored.
    """

    def __init__(self, path: str, workflow: str = 'SingleVmnic', vcenter: str = ''):
        self.path = path
        self.workflow = workflow
        self.vcenter = vcenter
        self.completed: List[str] = []
        self.hosts: List[str] = []
        self.failed = False
        self.failure_reason = ""
        self.updated = None
        self._load_state()

    @property
    def last_state(self) -> WorkflowState:
        """Furthest state reached on the happy path"""
        reached = [s for s in STATE_ORDER if s.value in self.completed]
        return reached[-1] if reached else WorkflowState.START

    def is_complete(self, state: WorkflowState) -> bool:
        return state.value in self.completed

    def host_done(self, fqdn: str) -> bool:
        return fqdn in self.hosts

    def record(self, state: WorkflowState):
        if state.value not in self.completed:
            self.completed.append(state.value)
        self.failed = False
        self.failure_reason = ""
        self._save_state()

    def record_host(self, fqdn: str):
        if fqdn not in self.hosts:
            self.hosts.append(fqdn)
        self._save_state()

    def set_failed(self, reason: str):
        self.failed = True
        self.failure_reason = reason
        self._save_state()

    def reset(self):
        self.completed = []
        self.hosts = []
        self.failed = False
        self.failure_reason = ""
        self._save_state()

    def _load_state(self):
        """Load state from JSON file if it exists and matches this workflow"""
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, 'r') as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f'Ignoring unreadable checkpoint {self.path}: {e}')
            return

        if state.get('workflow') != self.workflow or state.get('vcenter', '') != self.vcenter:
            return

        self.completed = list(state.get('completed', []))
        self.hosts = list(state.get('hosts', []))
        self.failed = state.get('failed', False)
        self.failure_reason = state.get('failure_reason', '')
        self.updated = state.get('updated')

    def _save_state(self):
        """Save current state to JSON file, replacing it atomically"""
        self.updated = datetime.datetime.now().isoformat()
        state = {
            'workflow': self.workflow,
            'vcenter': self.vcenter,
            'completed': self.completed,
            'hosts': self.hosts,
            'failed': self.failed,
            'failure_reason': self.failure_reason,
            'updated': self.updated,
        }

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f'{self.path}.tmp'
        with open(tmp_path, 'w') as f:
            json.dump(state, f, indent=2)
        os.replace(tmp_path, self.path)
