#!/usr/bin/env python3
"""
Dependent Service - Pauses a service that fights the ruleset change, such as fail2ban.

Everything here is best effort: a missing service manager or service is
never an error.
"""

import shutil
import logging
import subprocess
from typing import Dict, Any


class DependentService:
    """Stops a systemd unit for the transaction window and starts it again."""

    def __init__(self, config: Dict[str, Any]):
        """Initialize with the dependent_service configuration section."""
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.name = config.get('name', 'fail2ban')
        self.enabled = config.get('enabled', True) and bool(self.name)
        self.paused = False

    def _systemctl(self, *args: str) -> bool:
        systemctl = shutil.which('systemctl')
        if systemctl is None:
            return False
        try:
            result = subprocess.run([systemctl, *args, self.name],
                                    capture_output=True, text=True, check=False, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"systemctl {' '.join(args)} {self.name} failed: {e}")
            return False
        return result.returncode == 0

    def is_active(self) -> bool:
        return self._systemctl('is-active', '--quiet')

    def pause(self) -> bool:
        """Stop the service if it is running. Returns True if it was stopped."""
        if not self.enabled or not self.is_active():
            self.logger.debug(f"Dependent service {self.name} not running, nothing to pause")
            return False

        if self._systemctl('stop'):
            self.paused = True
            self.logger.info(f"Paused {self.name}")
        else:
            self.logger.warning(f"Could not stop {self.name}, continuing")
        return self.paused

    def resume(self) -> bool:
        """Start the service again if pause() stopped it."""
        if not self.paused:
            return False

        if self._systemctl('start'):
            self.paused = False
            self.logger.info(f"Resumed {self.name}")
            return True

        self.logger.warning(f"Could not restart {self.name}; start it manually")
        return False
