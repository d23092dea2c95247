#!/usr/bin/env python3
"""
Apply Controller - Runs one apply transaction from snapshot to resolution.

Order of operations: validate the ruleset, resolve backend commands, capture
a snapshot, take the lock, arm the watchdog, pause the dependent service,
apply, ask for confirmation and resolve. Every failure before the apply step
leaves no snapshot, no lock and no change behind. After the apply step the
watchdog is the backstop and the controller never restores on its own except
when the operator declines.
"""

import os
import time
import subprocess
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional, Callable

from ..backend.commands import RulesetBackend
from ..confirm.prompt import ConfirmationPrompt, ConfirmationState
from ..errors import ApplyError, FileAccessError, LockConflict
from ..lock.manager import Lock, LockManager
from ..revert.actor import WatchdogHandle, WatchdogParams, StopResult, spawn_watchdog
from ..service.pauser import DependentService
from ..snapshot.manager import Snapshot, SnapshotManager


class ExitOutcome(Enum):
    """Resolved outcome of a transaction and its process exit status."""

    CONFIRMED = ("confirmed", 0)
    DECLINED = ("declined", 255)
    TIMED_OUT = ("timed_out", 255)
    ROLLED_BACK = ("rolled_back", 255)

    def __init__(self, label: str, exit_code: int):
        self.label = label
        self.exit_code = exit_code


@dataclass
class TransactionSession:
    """State of one in-flight transaction."""

    timeout: int
    rules_path: Optional[str]
    snapshot: Optional[Snapshot] = None
    lock: Optional[Lock] = None
    watchdog: Optional[WatchdogHandle] = None
    outcome: Optional[ExitOutcome] = None


class ApplyController:
    """Orchestrates the apply-with-watchdog-rollback transaction."""

    def __init__(self, config: Dict[str, Any], family: str = 'ipv4',
                 backend: Optional[RulesetBackend] = None,
                 lock_manager: Optional[LockManager] = None,
                 snapshot_manager: Optional[SnapshotManager] = None,
                 prompt: Optional[ConfirmationPrompt] = None,
                 service: Optional[DependentService] = None,
                 spawner: Callable[[WatchdogParams], WatchdogHandle] = spawn_watchdog):
        """Initialize controller and its components from configuration."""
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.backend = backend or RulesetBackend(config.get('backend', {}), family)
        self.lock_manager = lock_manager or LockManager(config.get('lock', {}))
        self.snapshot_manager = snapshot_manager or SnapshotManager(
            config.get('snapshot', {}), self.backend
        )
        self.prompt = prompt or ConfirmationPrompt(config.get('confirmation', {}))
        self.service = service or DependentService(config.get('dependent_service', {}))
        self.spawner = spawner

        self.session: Optional[TransactionSession] = None

    def run(self, rules_path: Optional[str], timeout: int,
            command: Optional[str] = None, savefile: Optional[str] = None) -> ExitOutcome:
        """Apply a ruleset file (or run a command) and resolve the outcome."""
        session = TransactionSession(timeout=timeout, rules_path=rules_path)
        self.session = session

        if command is None:
            self._validate_rules_file(rules_path)

        self.backend.resolve_commands()

        target = self.backend.target
        self.lock_manager.check(target)

        session.snapshot = self.snapshot_manager.capture()

        try:
            session.lock = self.lock_manager.acquire(target, rules_path)
        except LockConflict:
            session.snapshot.discard()
            raise

        self._arm_watchdog(session)

        self.service.pause()

        try:
            if command is None:
                self.backend.apply(rules_path)
            else:
                self.backend.run_command(command)
        except ApplyError as e:
            raise ApplyError(
                f"{e.message}. Automatic cleanup has NOT been done; the watchdog will try "
                f"to restore the previous ruleset in about {timeout}s. "
                f"Manual intervention may be required"
            ) from e
        finally:
            # Releases a watchdog whose deadline passed during the change
            session.lock.mark_applied()

        state = self.prompt.ask(timeout)
        session.outcome = self._resolve(session, state, savefile)
        return session.outcome

    def _validate_rules_file(self, rules_path: Optional[str]) -> None:
        if not rules_path:
            raise FileAccessError("No ruleset file given")
        if not os.path.isfile(rules_path) or not os.access(rules_path, os.R_OK):
            raise FileAccessError(f"Cannot read ruleset file: {rules_path}")

    def _arm_watchdog(self, session: TransactionSession) -> None:
        """Spawn the watchdog and record its handle in the lock."""
        params = WatchdogParams(
            target=self.backend.target,
            timeout=session.timeout,
            deadline=time.time() + session.timeout,
            restore_command=self.backend.restore_command,
            snapshot_path=str(session.snapshot.path),
            lock_path=str(session.lock.path),
            log_file=self.config.get('global', {}).get('log_file'),
            log_level=self.config.get('global', {}).get('log_level', 'INFO')
        )

        try:
            session.watchdog = self.spawner(params)
        except ApplyError:
            # Nothing was changed yet
            session.lock.release()
            session.snapshot.discard()
            raise

        session.lock.attach_watchdog(session.watchdog.pid, session.watchdog.create_time,
                                     session.watchdog.deadline)

    def _resolve(self, session: TransactionSession, state: ConfirmationState,
                 savefile: Optional[str]) -> ExitOutcome:
        if state is ConfirmationState.TIMED_OUT:
            self.logger.warning("Timeout. Something happened (or did not). "
                                "The watchdog is reverting to the old ruleset")
            return ExitOutcome.TIMED_OUT

        if state is ConfirmationState.CONFIRMED:
            return self._confirm(session, savefile)

        return self._decline(session)

    def _confirm(self, session: TransactionSession, savefile: Optional[str]) -> ExitOutcome:
        result = session.watchdog.stop()
        if result is StopResult.FIRED:
            # The watchdog reached its deadline first and owns cleanup
            self.logger.error("Confirmation arrived too late: the watchdog already "
                              "restored the previous ruleset")
            return ExitOutcome.ROLLED_BACK

        session.snapshot.discard()
        if savefile:
            self._write_savefile(savefile)
        session.lock.release()
        self.service.resume()

        self.logger.info("New ruleset confirmed and kept")
        return ExitOutcome.CONFIRMED

    def _decline(self, session: TransactionSession) -> ExitOutcome:
        self.logger.info("Not confirmed, restoring the previous ruleset")
        try:
            self.snapshot_manager.restore(session.snapshot)
        except ApplyError as e:
            raise ApplyError(
                f"{e.message}. Restoring the previous ruleset failed; the watchdog is left "
                f"running and will retry at its deadline. Automatic cleanup has NOT been "
                f"done; manual intervention may be required"
            ) from e

        if session.watchdog.stop() is StopResult.FIRED:
            self.logger.warning("The watchdog also restored the previous ruleset before it "
                                "could be stopped")
        session.snapshot.discard()
        session.lock.release()
        self.service.resume()

        self.logger.info("Previous ruleset restored")
        return ExitOutcome.DECLINED

    def _write_savefile(self, savefile: str) -> None:
        """Save the confirmed ruleset to a file."""
        try:
            data = self.backend.save()
            path = Path(savefile)
            tmp_path = path.with_name(path.name + '.tmp')
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except (OSError, subprocess.CalledProcessError) as e:
            self.logger.error(f"Confirmed ruleset is active but could not be saved to {savefile}: {e}")
            return
        self.logger.info(f"Confirmed ruleset saved to {savefile}")
