#!/usr/bin/env python3
"""
Ruleset Backend - Wraps the external save/restore commands for one address family.
"""

import os
import shutil
import subprocess
import logging
from typing import Dict, List, Any, Optional

from ..errors import ApplyError, DependencyMissing, ArgumentError


FAMILIES = ('ipv4', 'ipv6')

# Kernel signals that the netfilter tables exist for a family
PROC_TABLE_NAMES = {
    'ipv4': '/proc/net/ip_tables_names',
    'ipv6': '/proc/net/ip6_tables_names'
}
KERNEL_MODULES = {
    'ipv4': ('ip_tables', 'iptable_', 'nf_tables'),
    'ipv6': ('ip6_tables', 'ip6table_', 'nf_tables')
}

logger = logging.getLogger(__name__)


def run_restore(restore_command: List[str], ruleset_path: str) -> None:
    """Feed a ruleset file to the restore command, raising ApplyError on failure."""
    try:
        with open(ruleset_path, 'rb') as f:
            subprocess.run(restore_command, stdin=f, capture_output=True, check=True)
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors='replace').strip() if e.stderr else ''
        raise ApplyError(
            f"{restore_command[0]} failed with exit status {e.returncode}: {stderr}"
        ) from e
    except OSError as e:
        raise ApplyError(f"Cannot run {restore_command[0]} on {ruleset_path}: {e}") from e


class RulesetBackend:
    """Save and load firewall state through iptables-save/iptables-restore."""

    def __init__(self, config: Dict[str, Any], family: str = 'ipv4'):
        """Initialize backend for an address family."""
        if family not in FAMILIES:
            raise ArgumentError(f"Unknown address family: {family}")

        self.config = config
        self.family = family
        self.logger = logging.getLogger(__name__)

        commands = config.get(family, {})
        defaults = {'ipv4': ('iptables-save', 'iptables-restore'),
                    'ipv6': ('ip6tables-save', 'ip6tables-restore')}[family]
        self.save_name = commands.get('save', defaults[0])
        self.restore_name = commands.get('restore', defaults[1])

        self.save_path: Optional[str] = None
        self.restore_path: Optional[str] = None

    @property
    def target(self) -> str:
        """Name of the state this backend protects, used to key the lock."""
        return 'iptables' if self.family == 'ipv4' else 'ip6tables'

    def resolve_commands(self) -> None:
        """Locate the save/restore commands on PATH."""
        missing = []
        resolved = {}
        for name in (self.save_name, self.restore_name):
            path = shutil.which(name)
            if path is None:
                missing.append(name)
            resolved[name] = path

        if missing:
            raise DependencyMissing(f"Required command not found: {', '.join(missing)}")

        self.save_path = resolved[self.save_name]
        self.restore_path = resolved[self.restore_name]
        self.logger.debug(f"Resolved backend commands: {self.save_path}, {self.restore_path}")

    @property
    def restore_command(self) -> List[str]:
        """Restore command line, usable by a separate process."""
        return [self.restore_path or self.restore_name]

    def save(self) -> bytes:
        """Return the serialized current ruleset.

        Raises subprocess.CalledProcessError or OSError; the snapshot manager
        decides how to classify the failure.
        """
        result = subprocess.run([self.save_path or self.save_name],
                                capture_output=True, check=True)
        return result.stdout

    def apply(self, ruleset_path: str) -> None:
        """Load a ruleset file."""
        self.logger.info(f"Applying ruleset {ruleset_path}")
        run_restore(self.restore_command, ruleset_path)

    def restore(self, snapshot_path: str) -> None:
        """Load a previously saved snapshot."""
        self.logger.info(f"Restoring ruleset from {snapshot_path}")
        run_restore(self.restore_command, snapshot_path)

    def run_command(self, command: str) -> None:
        """Run an arbitrary shell command as the risky change."""
        self.logger.info(f"Running command: {command}")
        try:
            subprocess.run(command, shell=True, check=True)
        except subprocess.CalledProcessError as e:
            raise ApplyError(f"Command failed with exit status {e.returncode}: {command}") from e
        except OSError as e:
            raise ApplyError(f"Cannot run command {command}: {e}") from e

    def is_available(self) -> bool:
        """Check whether the kernel provides the firewall feature at all."""
        if os.path.exists(PROC_TABLE_NAMES[self.family]):
            return True

        try:
            with open('/proc/modules', 'r') as f:
                modules = f.read()
        except OSError:
            # Without /proc we cannot tell; do not claim the feature is absent
            return True

        return any(line.startswith(prefix)
                   for line in modules.splitlines()
                   for prefix in KERNEL_MODULES[self.family])
