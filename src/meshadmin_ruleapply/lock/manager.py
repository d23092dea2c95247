#!/usr/bin/env python3
"""
Lock Manager - Ensures at most one in-flight transaction per target.

A lock is a JSON marker file created with O_EXCL. It records who owns the
transaction and, once armed, which watchdog process guards it, so that a
later invocation can tell a live lock from one left behind by a crash.
"""

import os
import json
import time
import logging
from pathlib import Path
from typing import Dict, Any, Optional

import psutil

from ..errors import LockConflict


def process_alive(pid: Optional[int], create_time: Optional[float]) -> bool:
    """Check that a process exists and is the same one that was recorded."""
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        if create_time is not None and abs(proc.create_time() - create_time) > 1.0:
            return False  # pid was recycled
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


class Lock:
    """An acquired transaction lock."""

    def __init__(self, path: Path, metadata: Optional[Dict[str, Any]] = None):
        self.path = Path(path)
        self.metadata: Dict[str, Any] = metadata or {}
        self.logger = logging.getLogger(__name__)

    def update(self, **fields: Any) -> None:
        """Merge fields into the metadata and rewrite the lock file atomically."""
        self.metadata.update(fields)
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(self.metadata, f, indent=2)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)

    def attach_watchdog(self, pid: int, create_time: Optional[float], deadline: float) -> None:
        """Record the watchdog process handle in the lock file."""
        self.update(watchdog={
            'pid': pid,
            'create_time': create_time,
            'deadline': deadline
        })
        self.logger.debug(f"Watchdog {pid} recorded in lock {self.path}")

    def mark_applied(self) -> None:
        """Record that the change step has finished, successfully or not.

        The watchdog does not restore before this mark exists while the owner
        is still running, so a restore can never be overwritten by a late apply.
        """
        self.update(applied=time.time())

    def apply_finished(self) -> bool:
        """True once the change step is over or its owner is gone."""
        if 'applied' in self.metadata:
            return True
        return not process_alive(self.metadata.get('pid'), self.metadata.get('create_time'))

    def mark_rollback_failed(self, snapshot_path: str) -> None:
        """Pin the lock as evidence after a failed rollback."""
        self.update(rollback_failed={'at': time.time(), 'snapshot_path': snapshot_path})

    def release(self) -> bool:
        """Remove the lock marker. Returns False if it was already gone."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            self.logger.debug(f"Lock already released: {self.path}")
            return False
        self.logger.info(f"Lock released: {self.path}")
        return True

    def is_stale(self) -> bool:
        """A lock is stale when neither its owner nor its watchdog is running.

        A marker without a readable owner pid may still be in the middle of
        being written, and a failed rollback must stay for manual recovery, so
        neither is ever stale.
        """
        if not self.metadata.get('pid') or 'rollback_failed' in self.metadata:
            return False
        owner_alive = process_alive(self.metadata.get('pid'), self.metadata.get('create_time'))
        watchdog = self.metadata.get('watchdog') or {}
        watchdog_alive = process_alive(watchdog.get('pid'), watchdog.get('create_time'))
        return not owner_alive and not watchdog_alive

    @classmethod
    def read(cls, path: Path) -> 'Lock':
        """Load an existing lock marker."""
        try:
            with open(path, 'r') as f:
                metadata = json.load(f)
        except (OSError, ValueError):
            # Lock files from older tools may be empty markers
            metadata = {}
        if not isinstance(metadata, dict):
            metadata = {}
        return cls(path, metadata)


class LockManager:
    """Creates and checks transaction locks in the lock directory."""

    def __init__(self, config: Dict[str, Any]):
        """Initialize lock manager with configuration."""
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.lock_dir = Path(config.get('lock_dir', '/run/meshadmin-ruleapply'))
        self.reclaim_stale = config.get('reclaim_stale', False)

    def lock_path(self, target: str) -> Path:
        """Path of the lock marker for a target."""
        return self.lock_dir / f"{target}.lock"

    def check(self, target: str) -> None:
        """Raise LockConflict if a lock exists, without creating anything."""
        path = self.lock_path(target)
        if path.exists():
            existing = Lock.read(path)
            if self.reclaim_stale and existing.is_stale():
                return  # acquire() will reclaim it
            raise self._conflict(existing)

    def acquire(self, target: str, rules_path: Optional[str] = None) -> Lock:
        """Atomically create the lock for a target."""
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(target)

        metadata = {
            'target': target,
            'pid': os.getpid(),
            'create_time': psutil.Process().create_time(),
            'created': time.time(),
            'rules_path': rules_path
        }

        for attempt in range(2):
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                existing = Lock.read(path)
                if attempt == 0 and self.reclaim_stale and existing.is_stale():
                    self.logger.warning(f"Reclaiming stale lock {path}: {existing.metadata}")
                    existing.release()
                    continue
                raise self._conflict(existing)

            with os.fdopen(fd, 'w') as f:
                json.dump(metadata, f, indent=2)

            self.logger.info(f"Lock acquired: {path}")
            return Lock(path, metadata)

        raise self._conflict(Lock.read(path))

    def _conflict(self, existing: Lock) -> LockConflict:
        """Build the conflict error for an existing lock."""
        message = f"Another transaction is in progress (lock file {existing.path})"
        if existing.metadata.get('pid'):
            message += f", started by pid {existing.metadata['pid']}"
        failed = existing.metadata.get('rollback_failed')
        if failed:
            message += (f". Its automatic rollback FAILED; restore {failed.get('snapshot_path')} "
                        f"by hand, then remove the lock")
        elif existing.is_stale():
            message += ". The lock looks stale; remove it manually if no rollback is pending"
        return LockConflict(message)
