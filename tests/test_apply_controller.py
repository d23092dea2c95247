#!/usr/bin/env python3
"""
Tests for ApplyController transactions.

The backend keeps its ruleset in memory and the watchdog spawner records
its parameters instead of starting a process, so every outcome can be
checked without touching a real firewall.
"""

import unittest
from unittest.mock import MagicMock, patch
import subprocess
import json
import tempfile
import shutil
import time
import threading
import os
from pathlib import Path

from meshadmin_ruleapply.apply.controller import ApplyController, ExitOutcome
from meshadmin_ruleapply.confirm.prompt import ConfirmationState
from meshadmin_ruleapply.config import get_default_config
from meshadmin_ruleapply.errors import (
    ApplyError, BackendUnavailable, DependencyMissing, FileAccessError, LockConflict,
    SnapshotError
)
from meshadmin_ruleapply.revert.actor import StopResult, WatchdogActor, WatchdogHandle


OLD_RULES = b"*filter\n:INPUT ACCEPT [0:0]\n-A INPUT -p tcp --dport 22 -j ACCEPT\nCOMMIT\n"
NEW_RULES = b"*filter\n:INPUT DROP [0:0]\nCOMMIT\n"


class FakeBackend:
    """In-memory stand-in for iptables-save/iptables-restore."""

    family = 'ipv4'
    target = 'iptables'
    restore_command = ['iptables-restore']

    def __init__(self):
        self.state = OLD_RULES
        self.missing = []
        self.available = True
        self.fail_save = False
        self.fail_apply = False
        self.fail_restore = False
        self.calls = []

    def resolve_commands(self):
        self.calls.append('resolve')
        if self.missing:
            raise DependencyMissing(f"Required command not found: {', '.join(self.missing)}")

    def save(self):
        self.calls.append('save')
        if self.fail_save:
            raise subprocess.CalledProcessError(1, ['iptables-save'])
        return self.state

    def is_available(self):
        return self.available

    def apply(self, path):
        self.calls.append('apply')
        if self.fail_apply:
            raise ApplyError("iptables-restore: line 2 failed")
        self.state = Path(path).read_bytes()

    def run_command(self, command):
        self.calls.append('command')
        self.state = NEW_RULES

    def restore(self, path):
        self.calls.append('restore')
        if self.fail_restore:
            raise ApplyError("iptables-restore: line 1 failed")
        self.state = Path(path).read_bytes()


class FakeSpawner:
    """Records the watchdog parameters and returns a scripted handle."""

    def __init__(self, stop_result=StopResult.STOPPED):
        self.params = None
        self.handle = MagicMock(spec=WatchdogHandle)
        self.handle.pid = 31337
        self.handle.create_time = 1700000000.0
        self.handle.stop.return_value = stop_result

    def __call__(self, params):
        self.params = params
        self.handle.deadline = params.deadline
        return self.handle


class TestApplyController(unittest.TestCase):
    """Test cases for ApplyController."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config = get_default_config()
        self.config['global']['log_file'] = os.path.join(self.temp_dir, 'ruleapply.log')
        self.config['lock']['lock_dir'] = os.path.join(self.temp_dir, 'locks')
        self.config['snapshot']['snapshot_location'] = os.path.join(self.temp_dir, 'snapshots')

        self.rules_file = os.path.join(self.temp_dir, 'iptables.up.rules')
        Path(self.rules_file).write_bytes(NEW_RULES)

        self.backend = FakeBackend()
        self.prompt = MagicMock()
        self.service = MagicMock()
        self.spawner = FakeSpawner()

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_controller(self):
        return ApplyController(self.config, backend=self.backend, prompt=self.prompt,
                               service=self.service, spawner=self.spawner)

    @property
    def lock_path(self):
        return Path(self.config['lock']['lock_dir']) / 'iptables.lock'

    def snapshots(self):
        location = Path(self.config['snapshot']['snapshot_location'])
        return list(location.iterdir()) if location.exists() else []

    def test_confirmed(self):
        """Scenario A: operator answers y, watchdog stopped, nothing left behind."""
        self.prompt.ask.return_value = ConfirmationState.CONFIRMED

        outcome = self.make_controller().run(self.rules_file, 5)

        self.assertEqual(outcome, ExitOutcome.CONFIRMED)
        self.assertEqual(outcome.exit_code, 0)
        self.assertEqual(self.backend.state, NEW_RULES)
        self.spawner.handle.stop.assert_called_once()
        self.prompt.ask.assert_called_once_with(5)
        self.assertFalse(self.lock_path.exists())
        self.assertEqual(self.snapshots(), [])
        self.service.pause.assert_called_once()
        self.service.resume.assert_called_once()

    def test_timed_out_then_watchdog_restores(self):
        """Scenario B: operator silent, controller exits 255, watchdog restores."""
        self.prompt.ask.return_value = ConfirmationState.TIMED_OUT

        outcome = self.make_controller().run(self.rules_file, 5)

        self.assertEqual(outcome, ExitOutcome.TIMED_OUT)
        self.assertEqual(outcome.exit_code, 255)
        self.spawner.handle.stop.assert_not_called()
        self.service.resume.assert_not_called()
        self.assertNotIn('restore', self.backend.calls)

        # The watchdog alone owns the rollback
        self.assertTrue(self.lock_path.exists())
        self.assertEqual(len(self.snapshots()), 1)

        params = self.spawner.params
        self.assertEqual(params.timeout, 5)
        self.assertEqual(params.lock_path, str(self.lock_path))
        self.assertEqual(params.snapshot_path, str(self.snapshots()[0]))

        actor = WatchdogActor(params, sleep=MagicMock())
        with patch('meshadmin_ruleapply.revert.actor.run_restore',
                   side_effect=lambda cmd, path: self.backend.restore(path)):
            self.assertTrue(actor.run())

        self.assertEqual(self.backend.state, OLD_RULES)
        self.assertFalse(self.lock_path.exists())
        self.assertEqual(self.snapshots(), [])

    def test_declined(self):
        """Scenario C: operator answers n, immediate restore, watchdog stopped."""
        self.prompt.ask.return_value = ConfirmationState.DECLINED

        outcome = self.make_controller().run(self.rules_file, 3)

        self.assertEqual(outcome, ExitOutcome.DECLINED)
        self.assertEqual(outcome.exit_code, 255)
        self.assertEqual(self.backend.state, OLD_RULES)
        self.assertEqual(self.backend.calls[-1], 'restore')
        self.spawner.handle.stop.assert_called_once()
        self.assertFalse(self.lock_path.exists())
        self.assertEqual(self.snapshots(), [])
        self.service.resume.assert_called_once()

    def test_declined_restores_the_exact_snapshot(self):
        """Test the decline path feeds back this transaction's snapshot."""
        self.prompt.ask.return_value = ConfirmationState.DECLINED
        restored = []
        original_restore = self.backend.restore

        def record(path):
            restored.append((path, Path(path).read_bytes()))
            original_restore(path)

        self.backend.restore = record

        self.make_controller().run(self.rules_file, 0)

        self.assertEqual(restored, [(self.spawner.params.snapshot_path, OLD_RULES)])

    def test_lock_preexists(self):
        """Scenario D: an existing lock aborts before any capture."""
        self.lock_path.parent.mkdir(parents=True)
        self.lock_path.write_text('{"pid": 1}')

        with self.assertRaises(LockConflict) as ctx:
            self.make_controller().run(self.rules_file, 5)

        self.assertEqual(ctx.exception.exit_code, 6)
        self.assertNotIn('save', self.backend.calls)
        self.assertEqual(self.snapshots(), [])
        self.assertIsNone(self.spawner.params)
        self.assertEqual(self.backend.state, OLD_RULES)

    def test_lock_taken_after_capture(self):
        """Test losing the lock race discards the snapshot and changes nothing."""
        controller = self.make_controller()
        real_capture = controller.snapshot_manager.capture

        def capture_then_race():
            snapshot = real_capture()
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            self.lock_path.write_text('{"pid": 1}')
            return snapshot

        controller.snapshot_manager.capture = capture_then_race

        with self.assertRaises(LockConflict):
            controller.run(self.rules_file, 5)

        self.assertEqual(self.snapshots(), [])
        self.assertNotIn('apply', self.backend.calls)

    def test_command_missing(self):
        """Scenario E: missing backend command exits 127 before snapshot or lock."""
        self.backend.missing = ['iptables-restore']

        with self.assertRaises(DependencyMissing) as ctx:
            self.make_controller().run(self.rules_file, 5)

        self.assertEqual(ctx.exception.exit_code, 127)
        self.assertNotIn('save', self.backend.calls)
        self.assertFalse(self.lock_path.exists())
        self.assertEqual(self.snapshots(), [])

    def test_unreadable_rules_file(self):
        with self.assertRaises(FileAccessError) as ctx:
            self.make_controller().run(os.path.join(self.temp_dir, 'missing.rules'), 5)

        self.assertEqual(ctx.exception.exit_code, 2)
        self.assertEqual(self.backend.calls, [])

    def test_backend_unavailable(self):
        self.backend.fail_save = True
        self.backend.available = False

        with self.assertRaises(BackendUnavailable):
            self.make_controller().run(self.rules_file, 5)

        self.assertFalse(self.lock_path.exists())
        self.assertNotIn('apply', self.backend.calls)

    def test_snapshot_failure(self):
        self.backend.fail_save = True

        with self.assertRaises(SnapshotError):
            self.make_controller().run(self.rules_file, 5)

        self.assertFalse(self.lock_path.exists())
        self.assertIsNone(self.spawner.params)

    def test_spawn_failure_leaves_nothing(self):
        """Test a watchdog that cannot start aborts before the change."""
        self.spawner = MagicMock(side_effect=ApplyError("Cannot start watchdog process"))

        with self.assertRaises(ApplyError):
            self.make_controller().run(self.rules_file, 5)

        self.assertNotIn('apply', self.backend.calls)
        self.assertFalse(self.lock_path.exists())
        self.assertEqual(self.snapshots(), [])

    def test_apply_failure_keeps_watchdog_armed(self):
        """Test a failed apply leaves the rollback to the watchdog."""
        self.backend.fail_apply = True

        with self.assertRaises(ApplyError) as ctx:
            self.make_controller().run(self.rules_file, 5)

        self.assertEqual(ctx.exception.exit_code, 5)
        self.assertIn('Manual intervention may be required', ctx.exception.message)
        self.spawner.handle.stop.assert_not_called()
        self.assertNotIn('restore', self.backend.calls)
        self.prompt.ask.assert_not_called()
        self.assertTrue(self.lock_path.exists())
        self.assertEqual(len(self.snapshots()), 1)

    def test_decline_restore_failure_keeps_watchdog(self):
        """Test a failed immediate restore leaves the watchdog as a second chance."""
        self.prompt.ask.return_value = ConfirmationState.DECLINED
        self.backend.fail_restore = True

        with self.assertRaises(ApplyError) as ctx:
            self.make_controller().run(self.rules_file, 5)

        self.assertIn('manual intervention', ctx.exception.message)
        self.spawner.handle.stop.assert_not_called()
        self.assertTrue(self.lock_path.exists())
        self.assertEqual(len(self.snapshots()), 1)
        self.service.resume.assert_not_called()

    def test_confirmation_loses_race(self):
        """Test a confirmation arriving after the watchdog fired reports the rollback."""
        self.prompt.ask.return_value = ConfirmationState.CONFIRMED
        self.spawner.handle.stop.return_value = StopResult.FIRED
        savefile = os.path.join(self.temp_dir, 'saved.rules')

        outcome = self.make_controller().run(self.rules_file, 5, savefile=savefile)

        self.assertEqual(outcome, ExitOutcome.ROLLED_BACK)
        self.assertEqual(outcome.exit_code, 255)
        # Cleanup belongs to the watchdog, including evidence of a failed rollback
        self.assertTrue(self.lock_path.exists())
        self.assertEqual(len(self.snapshots()), 1)
        self.assertFalse(os.path.exists(savefile))

    def test_watchdog_recorded_in_lock(self):
        """Test the lock carries the watchdog handle while the prompt is open."""
        seen = {}

        def ask(timeout):
            seen.update(json.loads(self.lock_path.read_text()))
            return ConfirmationState.CONFIRMED

        self.prompt.ask.side_effect = ask

        self.make_controller().run(self.rules_file, 5)

        self.assertEqual(seen['watchdog']['pid'], 31337)
        self.assertAlmostEqual(seen['watchdog']['deadline'], time.time() + 5, delta=5)

    def test_watchdog_armed_before_apply(self):
        """Test the rollback is in place before the risky change happens."""
        order = []
        self.spawner.handle.stop.side_effect = lambda: StopResult.STOPPED
        spawn = self.spawner

        def spawner(params):
            order.append('spawn')
            return spawn(params)

        original_apply = self.backend.apply

        def apply(path):
            order.append('apply')
            original_apply(path)

        self.backend.apply = apply
        self.service.pause.side_effect = lambda: order.append('pause')
        self.prompt.ask.return_value = ConfirmationState.CONFIRMED

        ApplyController(self.config, backend=self.backend, prompt=self.prompt,
                        service=self.service, spawner=spawner).run(self.rules_file, 5)

        self.assertEqual(order, ['spawn', 'pause', 'apply'])

    def test_savefile_written_on_confirm(self):
        self.prompt.ask.return_value = ConfirmationState.CONFIRMED
        savefile = os.path.join(self.temp_dir, 'saved.rules')

        self.make_controller().run(self.rules_file, 5, savefile=savefile)

        self.assertEqual(Path(savefile).read_bytes(), NEW_RULES)

    def test_command_mode(self):
        """Test running a command instead of a ruleset file."""
        self.prompt.ask.return_value = ConfirmationState.DECLINED

        outcome = self.make_controller().run(None, 5, command='ufw enable')

        self.assertEqual(outcome, ExitOutcome.DECLINED)
        self.assertIn('command', self.backend.calls)
        self.assertEqual(self.backend.state, OLD_RULES)

    def test_deadline_passing_during_apply_still_rolls_back(self):
        """Test a zero timeout with a slow service pause ends on the old ruleset."""
        self.prompt.ask.return_value = ConfirmationState.TIMED_OUT
        self.service.pause.side_effect = lambda: time.sleep(0.5)
        threads = []

        def spawner(params):
            # Runs the real actor in-process, already past its deadline
            actor = WatchdogActor(params, poll_interval=0.05)
            thread = threading.Thread(target=actor.run)
            thread.start()
            threads.append(thread)
            return self.spawner(params)

        with patch('meshadmin_ruleapply.revert.actor.run_restore',
                   side_effect=lambda cmd, path: self.backend.restore(path)):
            outcome = ApplyController(self.config, backend=self.backend, prompt=self.prompt,
                                      service=self.service, spawner=spawner).run(self.rules_file, 0)
            for thread in threads:
                thread.join(timeout=10)

        self.assertEqual(outcome, ExitOutcome.TIMED_OUT)
        self.assertEqual(self.backend.calls.index('apply') + 1, self.backend.calls.index('restore'))
        self.assertEqual(self.backend.state, OLD_RULES)
        self.assertFalse(self.lock_path.exists())
        self.assertEqual(self.snapshots(), [])

    def test_apply_marked_in_lock(self):
        """Test the lock records the end of the change step, even when it fails."""
        self.backend.fail_apply = True

        with self.assertRaises(ApplyError):
            self.make_controller().run(self.rules_file, 5)

        self.assertIn('applied', json.loads(self.lock_path.read_text()))

    def test_decline_reports_watchdog_restore(self):
        """Test a decline that races the watchdog logs both restores."""
        self.prompt.ask.return_value = ConfirmationState.DECLINED
        self.spawner.handle.stop.return_value = StopResult.FIRED

        with self.assertLogs('meshadmin_ruleapply.apply.controller', level='WARNING') as logs:
            outcome = self.make_controller().run(self.rules_file, 5)

        self.assertEqual(outcome, ExitOutcome.DECLINED)
        self.assertEqual(self.backend.state, OLD_RULES)
        self.assertTrue(any('watchdog also restored' in line for line in logs.output))

    def test_savefile_failure_keeps_confirmation(self):
        """Test a ruleset that cannot be saved does not undo the confirmation."""
        self.prompt.ask.return_value = ConfirmationState.CONFIRMED
        savefile = os.path.join(self.temp_dir, 'saved.rules')
        controller = self.make_controller()
        controller.backend.save = MagicMock(
            side_effect=[OLD_RULES, subprocess.CalledProcessError(1, ['iptables-save'])])

        outcome = controller.run(self.rules_file, 5, savefile=savefile)

        self.assertEqual(outcome, ExitOutcome.CONFIRMED)
        self.assertFalse(os.path.exists(savefile))
        self.assertFalse(self.lock_path.exists())

    def test_savefile_programming_error_propagates(self):
        self.prompt.ask.return_value = ConfirmationState.CONFIRMED
        controller = self.make_controller()
        controller.backend.save = MagicMock(side_effect=[OLD_RULES, None])

        with self.assertRaises(TypeError):
            controller.run(self.rules_file, 5, savefile=os.path.join(self.temp_dir, 'saved.rules'))

    def test_session_tracks_outcome(self):
        self.prompt.ask.return_value = ConfirmationState.CONFIRMED
        controller = self.make_controller()

        controller.run(self.rules_file, 7)

        self.assertEqual(controller.session.timeout, 7)
        self.assertEqual(controller.session.outcome, ExitOutcome.CONFIRMED)
        self.assertIs(controller.session.watchdog, self.spawner.handle)


if __name__ == '__main__':
    unittest.main()
