#!/usr/bin/env python3
"""
Error taxonomy - Typed failures raised by the apply transaction.

Each error carries the process exit code it maps to. Components raise these
errors; only the CLI turns them into exit statuses.
"""


class RuleApplyError(Exception):
    """Base class for all transaction failures."""

    exit_code = 1

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ArgumentError(RuleApplyError):
    """Invalid command line argument or configuration value."""

    exit_code = 1


class FileAccessError(RuleApplyError):
    """The new ruleset file cannot be read."""

    exit_code = 2


class BackendUnavailable(RuleApplyError):
    """Firewall support is missing from the running kernel."""

    exit_code = 3


class SnapshotError(RuleApplyError):
    """The backend failed to save the current ruleset for an unknown reason."""

    exit_code = 4


class ApplyError(RuleApplyError):
    """Applying or restoring a ruleset failed after the system was touched."""

    exit_code = 5


class LockConflict(RuleApplyError):
    """Another transaction already holds the lock for this target."""

    exit_code = 6


class DependencyMissing(RuleApplyError):
    """A required external command is not installed."""

    exit_code = 127


class ConfirmationTimeout(RuleApplyError):
    """No confirmation arrived before the deadline."""

    exit_code = 255
