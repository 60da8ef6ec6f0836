#!/usr/bin/env python3
# test_single_vmnic.py - VCF Bring-up SingleVmnic.py Unit Tests
# Version 1.0 - October 2026
# Author - VCF Bring-up Team

import pytest
import os
import sys
import json
import threading
from unittest.mock import patch

# Add parent, Tools and Bringup directories to path
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)
sys.path.insert(0, os.path.join(parent_dir, 'Tools'))
sys.path.insert(0, os.path.join(parent_dir, 'Bringup'))

import vcffunctions
import SingleVmnic
from SingleVmnic import SingleVmnicMigration
from bringup_state import STATE_ORDER, StepCheckpoint, WorkflowState
from vcffunctions import (
    BindingNotFoundError, ConfigSubmitError, ObjectNotFoundError, OperationCancelledError,
    ReconfigurationTimeoutError,
)
from conftest import HOSTS, MGMT_PG, SUBDOMAIN

VC = f'sfo-m01-vc01.{SUBDOMAIN}'
VC_VM = 'sfo-m01-vc01'
ESX = [f'{h}.{SUBDOMAIN}' for h in HOSTS]
ROLLBACK = ('set_advanced_setting', 'config.vpxd.network.rollback', 'false')


def happy_path_log():
    """Every session and remote call for a clean four host run, in order"""
    log = [
        ('open', ESX[0]), ('migrate_port_group', VC_VM, MGMT_PG, 'VM Network'), ('close', ESX[0]),
        ('open', VC), ROLLBACK, ('close', VC),
        ('open', ESX[0]), ('reboot_vm_guest', VC_VM), ('close', ESX[0]),
        ('wait_for_reboot',),
        ('open', VC), ('apply_host_network', ESX[0]), ('close', VC),
        ('open', VC), ('migrate_port_group', VC_VM, 'VM Network', MGMT_PG), ('close', VC),
    ]
    for fqdn in ESX[1:]:
        log += [('open', VC), ('apply_host_network', fqdn), ('close', VC)]
    return log


def fail_on(mock_vcf, name, nth, error):
    """Make the nth call to a collaborator raise"""
    collaborator = getattr(mock_vcf, name)
    original = collaborator.side_effect
    calls = []

    def _side_effect(*args, **kwargs):
        calls.append(args)
        if len(calls) == nth:
            mock_vcf.calls_log.append(('FAIL', name))
            raise error
        return original(*args, **kwargs)

    collaborator.side_effect = _side_effect


def sessions_balanced(log):
    opened = [e[1] for e in log if e[0] == 'open']
    closed = [e[1] for e in log if e[0] == 'close']
    return opened == closed


class TestStepOrder:
    """Test the workflow runs its steps in order"""

    def test_steps_follow_state_order(self, mock_vcf, bringup_plan):
        """Test the six steps map onto the happy path states"""
        migration = SingleVmnicMigration(mock_vcf, bringup_plan)
        assert [s[0] for s in migration.steps()] == STATE_ORDER[1:-1]

    def test_four_hosts_done(self, mock_vcf, bringup_plan):
        """Test a clean run reaches DONE with every call in order"""
        migration = SingleVmnicMigration(mock_vcf, bringup_plan)
        assert migration.run() == WorkflowState.DONE
        assert mock_vcf.calls_log == happy_path_log()
        assert migration.failed_step is None

    def test_reboot_waits_on_vcenter(self, mock_vcf, bringup_plan):
        """Test the reboot wait targets vCenter with the cancel token"""
        cancel = threading.Event()
        SingleVmnicMigration(mock_vcf, bringup_plan, cancel=cancel).run()
        args, kwargs = mock_vcf.wait_for_reboot.call_args
        assert args[0] == bringup_plan.vcenter
        assert kwargs['cancel'] is cancel

    def test_host_plans_use_resolved_switch(self, mock_vcf, bringup_plan):
        """Test each host plan carries the switch and its own uplinks"""
        SingleVmnicMigration(mock_vcf, bringup_plan).run()
        plans = [c.args[2] for c in mock_vcf.apply_host_network.call_args_list]
        assert [p.host for p in plans] == ESX
        assert all(p.switch_uuid == '50 1a 2b 3c' and p.portgroup_key == 'dvportgroup-12' for p in plans)
        assert plans[2].port_keys == ('20', '21')


class TestFailureHandling:
    """Test a failed step stops the run"""

    @pytest.mark.parametrize('step, name, nth, error', [
        (0, 'migrate_port_group', 1, BindingNotFoundError('no adapter')),
        (1, 'set_advanced_setting', 1, ConfigSubmitError('option rejected')),
        (2, 'reboot_vm_guest', 1, ConfigSubmitError('tools not running')),
        (2, 'wait_for_reboot', 1, ReconfigurationTimeoutError('never came back')),
        (3, 'apply_host_network', 1, ConfigSubmitError('change set rejected')),
        (4, 'migrate_port_group', 2, ObjectNotFoundError('port group missing')),
        (5, 'apply_host_network', 2, ConfigSubmitError('change set rejected')),
    ])
    def test_failure_stops_later_steps(self, mock_vcf, bringup_plan, step, name, nth, error):
        """Test nothing runs after the failing call except closing its session"""
        fail_on(mock_vcf, name, nth, error)
        migration = SingleVmnicMigration(mock_vcf, bringup_plan)

        assert migration.run() == WorkflowState.FAILED
        assert migration.failed_step == migration.steps()[step][1]
        assert migration.error is error

        log = mock_vcf.calls_log
        after = log[log.index(('FAIL', name)) + 1:]
        assert all(entry[0] == 'close' for entry in after)
        assert sessions_balanced(log)

    def test_second_host_failure(self, mock_vcf, bringup_plan):
        """Test a rejected change set on host 2 leaves hosts 3 and 4 untouched"""
        fail_on(mock_vcf, 'apply_host_network', 2, ConfigSubmitError('rejected'))
        migration = SingleVmnicMigration(mock_vcf, bringup_plan)

        assert migration.run() == WorkflowState.FAILED
        assert mock_vcf.apply_host_network.call_count == 2
        applied = [e[1] for e in mock_vcf.calls_log if e[0] == 'apply_host_network']
        assert applied == [ESX[0]]
        assert mock_vcf.calls_log[-1] == ('close', VC)

    def test_sessions_closed_with_real_connections(self, mock_connect, bringup_plan):
        """Test every SmartConnect is matched by a Disconnect when a step fails"""
        smart_connect, disconnect = mock_connect
        with patch.object(vcffunctions, 'migrate_port_group', return_value=1), \
                patch.object(vcffunctions, 'set_advanced_setting'), \
                patch.object(vcffunctions, 'reboot_vm_guest'), \
                patch.object(vcffunctions, 'wait_for_reboot'), \
                patch.object(vcffunctions, 'resolve_dvs_portgroup', return_value=('50 1a', 'dvportgroup-12')), \
                patch.object(vcffunctions, 'apply_host_network',
                             side_effect=[None, ConfigSubmitError('rejected')]):
            state = SingleVmnicMigration(vcffunctions, bringup_plan).run()

        assert state == WorkflowState.FAILED
        assert smart_connect.call_count == 6
        assert disconnect.call_count == smart_connect.call_count


class TestCancellation:
    """Test the cancel token"""

    def test_cancel_before_start(self, mock_vcf, bringup_plan):
        """Test a set token stops before any session is opened"""
        cancel = threading.Event()
        cancel.set()
        migration = SingleVmnicMigration(mock_vcf, bringup_plan, cancel=cancel)

        assert migration.run() == WorkflowState.FAILED
        assert isinstance(migration.error, OperationCancelledError)
        assert mock_vcf.calls_log == []

    def test_cancel_during_reboot_wait(self, mock_vcf, bringup_plan):
        """Test cancelling during step 3 stops before the first host"""
        cancel = threading.Event()
        mock_vcf.wait_for_reboot.side_effect = lambda *a, **k: cancel.set()
        migration = SingleVmnicMigration(mock_vcf, bringup_plan, cancel=cancel)

        assert migration.run() == WorkflowState.FAILED
        assert migration.failed_step == migration.steps()[3][1]
        mock_vcf.apply_host_network.assert_not_called()

    def test_cancel_between_hosts(self, mock_vcf, bringup_plan):
        """Test the remaining hosts loop checks the token"""
        cancel = threading.Event()
        calls = []

        def _apply(*args, **kwargs):
            calls.append(args[1])
            if len(calls) == 2:
                cancel.set()

        mock_vcf.apply_host_network.side_effect = _apply
        migration = SingleVmnicMigration(mock_vcf, bringup_plan, cancel=cancel)

        assert migration.run() == WorkflowState.FAILED
        assert isinstance(migration.error, OperationCancelledError)
        assert calls == ESX[:2]


class TestDryRun:
    """Test dry run mode"""

    def test_no_remote_calls(self, mock_vcf, bringup_plan):
        """Test a dry run plans every host without opening a session"""
        migration = SingleVmnicMigration(mock_vcf, bringup_plan, dry_run=True)

        assert migration.run() == WorkflowState.DONE
        mock_vcf.session.assert_not_called()
        assert mock_vcf.calls_log == []
        assert mock_vcf.build_host_network_plan.call_count == len(ESX)

    def test_main_dry_run(self, loaded_config, mock_connect):
        """Test main() in dry run never connects or writes a checkpoint"""
        smart_connect, _ = mock_connect
        assert SingleVmnic.main(vcf=vcffunctions, dry_run=True) is True
        smart_connect.assert_not_called()
        assert not os.path.exists(vcffunctions.checkpoint_file)


class TestCheckpoint:
    """Test checkpoint and resume"""

    @pytest.fixture
    def checkpoint_path(self, tmp_path):
        return str(tmp_path / 'state.json')

    def test_skips_completed_steps(self, mock_vcf, bringup_plan, checkpoint_path):
        """Test steps recorded as complete are not repeated"""
        checkpoint = StepCheckpoint(checkpoint_path, 'SingleVmnic', VC)
        for state in STATE_ORDER[1:4]:
            checkpoint.record(state)

        migration = SingleVmnicMigration(mock_vcf, bringup_plan, checkpoint=checkpoint)
        assert migration.run() == WorkflowState.DONE
        assert mock_vcf.calls_log == happy_path_log()[10:]

    def test_resume_after_host_failure(self, mock_vcf, bringup_plan, checkpoint_path):
        """Test a rerun picks up at the host that failed"""
        fail_on(mock_vcf, 'apply_host_network', 2, ConfigSubmitError('rejected'))
        first = StepCheckpoint(checkpoint_path, 'SingleVmnic', VC)
        assert SingleVmnicMigration(mock_vcf, bringup_plan, checkpoint=first).run() == WorkflowState.FAILED

        with open(checkpoint_path) as f:
            saved = json.load(f)
        assert saved['failed'] is True
        assert saved['hosts'] == [ESX[0]]
        assert WorkflowState.APPLIANCE_ON_DISTRIBUTED_SWITCH.value in saved['completed']

        mock_vcf.calls_log.clear()
        second = StepCheckpoint(checkpoint_path, 'SingleVmnic', VC)
        assert SingleVmnicMigration(mock_vcf, bringup_plan, checkpoint=second).run() == WorkflowState.DONE
        assert mock_vcf.calls_log == happy_path_log()[16:]
        assert second.is_complete(WorkflowState.DONE)
        assert second.failed is False

    def test_unwritable_checkpoint(self, mock_vcf, bringup_plan, checkpoint_path):
        """Test a failing checkpoint write warns once and the run carries on"""
        checkpoint = StepCheckpoint(checkpoint_path, 'SingleVmnic', VC)
        with patch.object(StepCheckpoint, '_save_state', side_effect=OSError('disk full')):
            migration = SingleVmnicMigration(mock_vcf, bringup_plan, checkpoint=checkpoint)
            assert migration.run() == WorkflowState.DONE

        assert mock_vcf.calls_log == happy_path_log()
        assert migration.checkpoint is None
        warnings = [c.args[0] for c in mock_vcf.write_output.call_args_list
                    if c.args[0].startswith('WARNING')]
        assert len(warnings) == 1
        assert 'disk full' in warnings[0]

    def test_unwritable_checkpoint_on_failure(self, mock_vcf, bringup_plan, checkpoint_path):
        """Test a step failure still ends in FAILED when the checkpoint can't be written"""
        fail_on(mock_vcf, 'set_advanced_setting', 1, ConfigSubmitError('rejected'))
        checkpoint = StepCheckpoint(checkpoint_path, 'SingleVmnic', VC)
        with patch.object(StepCheckpoint, '_save_state', side_effect=OSError('read-only file system')):
            migration = SingleVmnicMigration(mock_vcf, bringup_plan, checkpoint=checkpoint)
            assert migration.run() == WorkflowState.FAILED
        assert migration.failed_step == migration.steps()[1][1]

    def test_main_unwritable_checkpoint(self, mock_vcf, bringup_plan, checkpoint_path):
        """Test main() runs without a checkpoint when resetting it fails"""
        mock_vcf.build_bringup_plan.return_value = bringup_plan
        mock_vcf.checkpoint_file = checkpoint_path
        with patch.object(StepCheckpoint, '_save_state', side_effect=OSError('permission denied')):
            assert SingleVmnic.main(vcf=mock_vcf) is True
        assert mock_vcf.calls_log == happy_path_log()
        assert not os.path.exists(checkpoint_path)

    def test_main_resume(self, mock_vcf, bringup_plan, checkpoint_path):
        """Test main() resumes only when asked"""
        mock_vcf.build_bringup_plan.return_value = bringup_plan
        mock_vcf.checkpoint_file = checkpoint_path

        assert SingleVmnic.main(vcf=mock_vcf) is True
        assert len(mock_vcf.calls_log) == len(happy_path_log())

        mock_vcf.calls_log.clear()
        assert SingleVmnic.main(vcf=mock_vcf, resume=True) is True
        assert mock_vcf.calls_log == []

        assert SingleVmnic.main(vcf=mock_vcf) is True
        assert mock_vcf.calls_log == happy_path_log()


class TestMain:
    """Test main() configuration handling"""

    def test_missing_bringup_record(self, loaded_config, tmp_path):
        """Test an unreadable record fails the module"""
        vcffunctions.bringup_json = str(tmp_path / 'missing.json')
        assert SingleVmnic.main(vcf=vcffunctions) is False

    def test_failure_returns_false(self, mock_vcf, bringup_plan):
        """Test a failed run reports False"""
        mock_vcf.build_bringup_plan.return_value = bringup_plan
        fail_on(mock_vcf, 'set_advanced_setting', 1, ConfigSubmitError('rejected'))
        assert SingleVmnic.main(vcf=mock_vcf) is False
