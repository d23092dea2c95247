"""
MeshAdminRuleApply - Apply firewall rulesets with timed confirmation.

A new ruleset is applied only after the current one has been saved and a
detached watchdog has been armed to restore it. If the operator does not
confirm that the host is still reachable before the timeout, the previous
ruleset comes back automatically.
"""

__version__ = "1.0.0"
__author__ = "MeshAdmin"
__email__ = "admin@meshadmin.com"

from .apply.controller import ApplyController, ExitOutcome
from .lock.manager import LockManager
from .snapshot.manager import SnapshotManager
from .revert.actor import WatchdogActor
from .confirm.prompt import ConfirmationPrompt

__all__ = [
    "ApplyController",
    "ExitOutcome",
    "LockManager",
    "SnapshotManager",
    "WatchdogActor",
    "ConfirmationPrompt"
]
