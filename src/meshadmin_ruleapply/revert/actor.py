#!/usr/bin/env python3
"""
Watchdog Actor - Detached process that restores the snapshot after a timeout.

The actor is started in its own session so it survives the terminal that
launched the transaction. It receives a WatchdogParams record as JSON on
stdin, sleeps until the recorded deadline and then restores the snapshot
unless it was stopped first. Once the deadline has passed the actor ignores
SIGTERM: a late stop request waits for the restore instead of cutting it off.
"""

import os
import sys
import json
import time
import select
import signal
import logging
import logging.handlers
import subprocess
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import List, Optional, Callable

import psutil

from ..backend.commands import run_restore
from ..errors import ApplyError
from ..lock.manager import Lock


ACTOR_MODULE = "meshadmin_ruleapply.revert.actor"
READY_LINE = "armed"


@dataclass
class WatchdogParams:
    """Everything the watchdog needs, fixed at spawn time."""

    target: str
    timeout: int
    deadline: float
    restore_command: List[str]
    snapshot_path: str
    lock_path: str
    log_file: Optional[str] = None
    log_level: str = 'INFO'

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, text: str) -> 'WatchdogParams':
        return cls(**json.loads(text))


class StopResult(Enum):
    """What happened when the controller tried to stop the watchdog."""

    STOPPED = "stopped"   # cancelled before its deadline; caller cleans up
    FIRED = "fired"       # deadline reached; watchdog restored and owns cleanup
    GONE = "gone"         # no such process


class WatchdogHandle:
    """Process handle used by the controller to cancel the watchdog."""

    def __init__(self, pid: int, create_time: Optional[float], deadline: float):
        self.pid = pid
        self.create_time = create_time
        self.deadline = deadline
        self.logger = logging.getLogger(__name__)

    def stop(self, wait_timeout: float = 10.0) -> StopResult:
        """Send the stop signal and report whether the watchdog had fired."""
        try:
            proc = psutil.Process(self.pid)
            if self.create_time is not None and abs(proc.create_time() - self.create_time) > 1.0:
                self.logger.warning(f"Watchdog pid {self.pid} was reused by another process")
                return StopResult.GONE
            proc.terminate()
        except psutil.NoSuchProcess:
            if time.time() >= self.deadline:
                self.logger.warning(f"Watchdog {self.pid} already exited after its deadline")
                return StopResult.FIRED
            self.logger.warning(f"Watchdog {self.pid} is not running")
            return StopResult.GONE

        try:
            returncode = proc.wait(timeout=wait_timeout)
        except psutil.TimeoutExpired:
            if time.time() < self.deadline:
                proc.kill()
                self.logger.warning(f"Watchdog {self.pid} did not stop, killed it")
                return StopResult.STOPPED
            self.logger.error(f"Watchdog {self.pid} is still restoring after {wait_timeout}s")
            return StopResult.FIRED

        # Exit status is only known for our own children
        if returncode is None:
            fired = time.time() >= self.deadline
        else:
            fired = returncode != -signal.SIGTERM

        if fired:
            self.logger.warning(f"Watchdog {self.pid} fired before it could be stopped "
                                f"(exit status {returncode})")
            return StopResult.FIRED

        self.logger.info(f"Watchdog {self.pid} stopped")
        return StopResult.STOPPED


def _wait_ready(proc: subprocess.Popen, ready_timeout: float) -> bool:
    """Wait for the readiness line the actor prints once it is set up."""
    readable, _, _ = select.select([proc.stdout], [], [], ready_timeout)
    if not readable:
        return False
    return proc.stdout.readline().decode(errors='replace').strip() == READY_LINE


def spawn_watchdog(params: WatchdogParams, ready_timeout: float = 10.0) -> WatchdogHandle:
    """Start the watchdog as a detached process and hand it its parameters.

    Raises ApplyError unless the child reports that it is armed.
    """
    # The child runs from / and must import this same copy of the package
    package_root = str(Path(__file__).resolve().parents[2])
    env = dict(os.environ)
    env['PYTHONPATH'] = os.pathsep.join(p for p in (package_root, env.get('PYTHONPATH')) if p)

    try:
        proc = subprocess.Popen(
            [sys.executable, '-m', ACTOR_MODULE],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            cwd='/',
            env=env,
            close_fds=True,
            start_new_session=True
        )
    except OSError as e:
        raise ApplyError(f"Cannot start watchdog process: {e}") from e

    try:
        try:
            proc.stdin.write(params.to_json().encode('utf-8'))
            proc.stdin.close()
            ready = _wait_ready(proc, ready_timeout)
        except OSError:
            ready = False
        if not ready:
            if proc.poll() is None:
                proc.kill()
            proc.wait()
            raise ApplyError(f"Watchdog process did not start (exit status {proc.returncode})")
    finally:
        proc.stdout.close()

    try:
        create_time = psutil.Process(proc.pid).create_time()
    except psutil.NoSuchProcess:
        create_time = None

    # The watchdog outlives this process; the handle tracks it through psutil
    proc.returncode = 0

    logging.getLogger(__name__).info(
        f"Watchdog armed (pid {proc.pid}, restores in {params.timeout}s)"
    )
    return WatchdogHandle(pid=proc.pid, create_time=create_time, deadline=params.deadline)


class WatchdogActor:
    """Sleeps until the deadline, then restores the snapshot once."""

    def __init__(self, params: WatchdogParams, on_fire: Optional[Callable[[], None]] = None,
                 sleep: Callable[[float], None] = time.sleep, poll_interval: float = 0.2):
        self.params = params
        self.on_fire = on_fire
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(__name__)

    def run(self) -> bool:
        """Wait out the deadline and restore. Returns True on a clean rollback."""
        remaining = self.params.deadline - time.time()
        if remaining > 0:
            self.logger.info(f"Watchdog for {self.params.target} waiting {remaining:.1f}s")
            self.sleep(remaining)

        lock_path = Path(self.params.lock_path)
        if not Lock.read(lock_path).apply_finished():
            self.logger.info("Deadline reached while the change is still being applied, "
                             "waiting for it to finish")
            while not Lock.read(lock_path).apply_finished():
                self.sleep(self.poll_interval)

        if self.on_fire:
            self.on_fire()

        self.logger.warning(f"Confirmation timeout expired, restoring {self.params.snapshot_path}")

        try:
            run_restore(self.params.restore_command, self.params.snapshot_path)
        except ApplyError as e:
            self.logger.critical(f"Rollback failed: {e}. Snapshot {self.params.snapshot_path} "
                                 f"and lock {self.params.lock_path} left for manual recovery")
            try:
                Lock.read(lock_path).mark_rollback_failed(self.params.snapshot_path)
            except OSError as mark_error:
                self.logger.error(f"Could not mark lock {lock_path}: {mark_error}")
            return False

        try:
            os.unlink(self.params.snapshot_path)
        except FileNotFoundError:
            pass
        Lock(lock_path).release()

        self.logger.info(f"Rollback of {self.params.target} completed")
        return True


def setup_logging(params: WatchdogParams) -> None:
    """Log to the configured file, or syslog when it cannot be opened."""
    handler: logging.Handler
    try:
        if not params.log_file:
            raise OSError("no log file configured")
        handler = logging.FileHandler(params.log_file)
    except OSError:
        try:
            handler = logging.handlers.SysLogHandler(address='/dev/log')
        except OSError:
            handler = logging.NullHandler()

    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(getattr(logging, params.log_level.upper(), logging.INFO))


def _commit_to_restore() -> None:
    signal.signal(signal.SIGTERM, signal.SIG_IGN)


def main() -> int:
    """Entry point of the detached watchdog process."""
    signal.signal(signal.SIGHUP, signal.SIG_IGN)

    params = WatchdogParams.from_json(sys.stdin.read())
    setup_logging(params)

    print(READY_LINE, flush=True)

    actor = WatchdogActor(params, on_fire=_commit_to_restore)
    return 0 if actor.run() else 1


if __name__ == "__main__":
    sys.exit(main())
