#!/usr/bin/env python3
# SingleVmnic.py - VCF Bring-up Single vmnic Network Failover Module
# Version 1.0 - October 2026
# Author - VCF Bring-up Team
# Moves the management domain from the standard switch to the distributed
# switch on hosts that only have one (or two) physical uplinks
#
# Order matters and every step is gated on the previous one:
#   1. vCenter VM -> "VM Network" on the first host (direct host session)
#   2. Disable vCenter network rollback
#   3. Reboot vCenter and wait for it to go down, come up and accept logins
#   4. First host: vSwitch0/vmk0/uplinks -> distributed switch
#   5. vCenter VM -> distributed management port group
#   6. Remaining hosts, one at a time
# A failure stops the run and leaves the hosts as they are. There is no
# rollback; rerun with --resume once the cause is fixed.

import os
import sys
import argparse
import logging
import signal
import threading

# Add the bring-up root and Tools directory to path
_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _root)
sys.path.insert(0, os.path.join(_root, 'Tools'))

from bringup_state import WorkflowState, StepCheckpoint
from vcffunctions import ConfigError, OperationCancelledError

# Default logging level
logging.basicConfig(
    level=logging.WARNING,
    format='[%(asctime)s] %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

MODULE_NAME = 'SingleVmnic'
MODULE_DESCRIPTION = 'Single vmnic network failover to the distributed switch'

# Placeholders used when planning without a vCenter session
DRY_RUN_SWITCH = ('<dvs-uuid>', '<dvs-portgroup-key>')

#==============================================================================
# ORCHESTRATOR
#==============================================================================

class SingleVmnicMigration:
    """
    Runs the six failover steps in order and stops at the first error.

    Every step opens its own session through vcf.session() so a session never
    outlives the step that needed it.
    """

    def __init__(self, vcf, plan, cancel=None, checkpoint=None, dry_run=False):
        self.vcf = vcf
        self.plan = plan
        self.cancel = cancel if cancel is not None else threading.Event()
        self.checkpoint = checkpoint
        self.dry_run = dry_run
        self.state = WorkflowState.START
        self.failed_step = None
        self.error = None

    @property
    def first_host(self):
        return self.plan.hosts[0]

    def steps(self):
        return [
            (WorkflowState.VCENTER_ON_STANDARD_SWITCH, 'Move vCenter to the standard switch',
             self.move_vcenter_to_standard_switch),
            (WorkflowState.CONFIG_ROLLBACK_DISABLED, 'Disable vCenter network rollback',
             self.disable_network_rollback),
            (WorkflowState.APPLIANCE_REBOOTED, 'Reboot vCenter',
             self.reboot_vcenter),
            (WorkflowState.FIRST_HOST_MIGRATED, 'Migrate first host to the distributed switch',
             self.migrate_first_host),
            (WorkflowState.APPLIANCE_ON_DISTRIBUTED_SWITCH, 'Move vCenter to the distributed switch',
             self.move_vcenter_to_distributed_switch),
            (WorkflowState.REMAINING_HOSTS_MIGRATED, 'Migrate remaining hosts to the distributed switch',
             self.migrate_remaining_hosts),
        ]

    def run(self) -> WorkflowState:
        """
        Execute the workflow

        :return: WorkflowState.DONE or WorkflowState.FAILED
        """
        vcf = self.vcf
        for number, (target, name, step) in enumerate(self.steps(), start=1):
            if self.checkpoint and self.checkpoint.is_complete(target):
                vcf.write_output(f'STEP {number}: {name} - already complete, skipping')
                self.state = target
                continue

            if self.cancel.is_set():
                return self._fail(name, OperationCancelledError(f'Cancelled before step {number}'))

            vcf.write_output(f'STEP {number}: {name}')
            try:
                if self.dry_run:
                    self.describe(target)
                else:
                    step()
            except Exception as e:
                return self._fail(name, e)

            self.state = target
            self._save_checkpoint('record', target)
            vcf.write_output(f'STEP {number}: {name} - complete')

        self.state = WorkflowState.DONE
        self._save_checkpoint('record', WorkflowState.DONE)
        vcf.write_output(f'{MODULE_NAME}: all {len(self.plan.hosts)} hosts on the distributed switch')
        return self.state

    def _fail(self, name, error):
        self.failed_step = name
        self.error = error
        self.state = WorkflowState.FAILED
        reason = f'{name} failed: {type(error).__name__}: {error}'
        self.vcf.write_output(f'FAIL: {reason}')
        self.vcf.write_output('Hosts are left as they are; inspect them before rerunning with --resume')
        self._save_checkpoint('set_failed', reason)
        return self.state

    def _save_checkpoint(self, method, *args):
        """A checkpoint that can't be written is dropped with a warning"""
        if not self.checkpoint or self.dry_run:
            return
        try:
            getattr(self.checkpoint, method)(*args)
        except OSError as e:
            self.vcf.write_output(f'WARNING: cannot write checkpoint {self.checkpoint.path}, '
                                  f'continuing without resume support: {e}')
            self.checkpoint = None

    #--------------------------------------------------------------------------
    # Steps
    #--------------------------------------------------------------------------

    def move_vcenter_to_standard_switch(self):
        # Straight to the host: vCenter is the VM being moved
        host = self.first_host
        with self.vcf.session(host.endpoint, host.credential) as s:
            self.vcf.migrate_port_group(s, self.plan.vcenter_vm, self.plan.dvs_portgroup,
                                        self.vcf.standard_portgroup)

    def disable_network_rollback(self):
        with self.vcf.session(self.plan.vcenter, self.plan.vcenter_credential) as s:
            self.vcf.set_advanced_setting(s, self.vcf.rollback_setting, 'false')

    def reboot_vcenter(self):
        host = self.first_host
        with self.vcf.session(host.endpoint, host.credential) as s:
            self.vcf.reboot_vm_guest(s, self.plan.vcenter_vm)
        self.vcf.wait_for_reboot(self.plan.vcenter, self.plan.vcenter_credential, cancel=self.cancel)

    def migrate_first_host(self):
        self.migrate_host(self.first_host)

    def move_vcenter_to_distributed_switch(self):
        with self.vcf.session(self.plan.vcenter, self.plan.vcenter_credential) as s:
            self.vcf.migrate_port_group(s, self.plan.vcenter_vm, self.vcf.standard_portgroup,
                                        self.plan.dvs_portgroup)

    def migrate_remaining_hosts(self):
        for host in self.plan.hosts[1:]:
            if self.cancel.is_set():
                raise OperationCancelledError(f'Cancelled before {host.endpoint.fqdn}')
            self.migrate_host(host)

    def migrate_host(self, host):
        fqdn = host.endpoint.fqdn
        if self.checkpoint and self.checkpoint.host_done(fqdn):
            self.vcf.write_output(f'{fqdn}: already migrated, skipping')
            return

        with self.vcf.session(self.plan.vcenter, self.plan.vcenter_credential) as s:
            switch_uuid, portgroup_key = self.vcf.resolve_dvs_portgroup(s, self.plan.dvs_portgroup)
            host_plan = self.vcf.build_host_network_plan(fqdn, switch_uuid, portgroup_key, host.uplinks)
            self.vcf.apply_host_network(s, fqdn, host_plan)

        self._save_checkpoint('record_host', fqdn)

    #--------------------------------------------------------------------------
    # Dry run
    #--------------------------------------------------------------------------

    def describe(self, target):
        """Log what a step would do; host plans are still built and validated"""
        vcf = self.vcf
        plan = self.plan
        if target == WorkflowState.VCENTER_ON_STANDARD_SWITCH:
            vcf.write_output(f'Would move {plan.vcenter_vm} from {plan.dvs_portgroup} to '
                             f'{vcf.standard_portgroup} via {self.first_host.endpoint.fqdn}')
        elif target == WorkflowState.CONFIG_ROLLBACK_DISABLED:
            vcf.write_output(f'Would set {vcf.rollback_setting} = false on {plan.vcenter.fqdn}')
        elif target == WorkflowState.APPLIANCE_REBOOTED:
            vcf.write_output(f'Would reboot {plan.vcenter_vm} and wait up to {vcf.timeout_minutes} minutes')
        elif target == WorkflowState.APPLIANCE_ON_DISTRIBUTED_SWITCH:
            vcf.write_output(f'Would move {plan.vcenter_vm} from {vcf.standard_portgroup} to {plan.dvs_portgroup}')
        else:
            hosts = [self.first_host] if target == WorkflowState.FIRST_HOST_MIGRATED else plan.hosts[1:]
            for host in hosts:
                host_plan = vcf.build_host_network_plan(host.endpoint.fqdn, *DRY_RUN_SWITCH, host.uplinks)
                uplinks = ', '.join(f'{u.device}->{u.port_key}' for u in host_plan.uplinks)
                vcf.write_output(f'Would move {host.endpoint.fqdn} {host_plan.vmk_device} to '
                                 f'{plan.dvs_portgroup}, uplinks {uplinks}')

#==============================================================================
# MAIN FUNCTION
#==============================================================================

def main(vcf=None, standalone=False, dry_run=False, resume=False, cancel=None):
    """
    Main entry point for SingleVmnic module

    :param vcf: vcffunctions module (will be imported if None)
    :param standalone: Whether running in standalone test mode
    :param dry_run: Log the plan without making changes
    :param resume: Skip steps recorded as complete in the checkpoint
    :param cancel: threading.Event checked between steps
    :return: True if every host was migrated
    """
    if vcf is None:
        import vcffunctions as vcf
        if not standalone:
            vcf.init()

    vcf.write_output(f'Starting {MODULE_NAME}: {MODULE_DESCRIPTION}')

    try:
        plan = vcf.build_bringup_plan(vcf.load_bringup_json(vcf.bringup_json))
    except ConfigError as e:
        vcf.write_output(f'FAIL: {e}')
        return False

    vcf.write_output(f'vCenter {plan.vcenter.fqdn} ({plan.vcenter_vm}), '
                     f'{len(plan.hosts)} hosts, management port group {plan.dvs_portgroup}')

    checkpoint = None
    if vcf.checkpoint_file and not dry_run:
        checkpoint = StepCheckpoint(vcf.checkpoint_file, MODULE_NAME, plan.vcenter.fqdn)
        if resume:
            vcf.write_output(f'Resuming after {checkpoint.last_state.value}')
        else:
            try:
                checkpoint.reset()
            except OSError as e:
                vcf.write_output(f'WARNING: cannot write checkpoint {vcf.checkpoint_file}, '
                                 f'continuing without resume support: {e}')
                checkpoint = None

    migration = SingleVmnicMigration(vcf, plan, cancel=cancel, checkpoint=checkpoint, dry_run=dry_run)
    state = migration.run()

    vcf.write_output(f'{MODULE_NAME} finished: {state.value}')
    return state == WorkflowState.DONE


#==============================================================================
# STANDALONE EXECUTION
#==============================================================================

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description=MODULE_DESCRIPTION)
    parser.add_argument('--standalone', action='store_true',
                        help='Run in standalone test mode')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show what would be done without making changes')
    parser.add_argument('--resume', action='store_true',
                        help='Skip steps already recorded in the checkpoint')
    parser.add_argument('--config', default=None,
                        help='Alternate config.ini')
    parser.add_argument('--debug', action='store_true', help='Enable debug output')

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    import vcffunctions as vcf
    vcf.init(args.config)

    cancel = threading.Event()

    def _cancel(signum, frame):
        vcf.write_output(f'Signal {signum} received, stopping before the next step')
        cancel.set()

    signal.signal(signal.SIGINT, _cancel)
    signal.signal(signal.SIGTERM, _cancel)

    if args.standalone:
        print(f'Running {MODULE_NAME} in standalone mode')
        print(f'Dry run: {args.dry_run}')
        print()

    ok = main(vcf=vcf, standalone=args.standalone, dry_run=args.dry_run, resume=args.resume, cancel=cancel)
    sys.exit(0 if ok else 1)
