#!/usr/bin/env python3
"""
Snapshot Manager - Captures the current ruleset before it is replaced.
"""

import os
import logging
import subprocess
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Any

from ..errors import BackendUnavailable, SnapshotError


@dataclass
class Snapshot:
    """A saved ruleset owned by one transaction."""

    path: Path
    family: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def exists(self) -> bool:
        return self.path.exists()

    def discard(self) -> bool:
        """Delete the snapshot file. Returns False if it was already gone."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logging.getLogger(__name__).debug(f"Snapshot deleted: {self.path}")
        return True


class SnapshotManager:
    """Manages ruleset snapshots for transaction rollback."""

    def __init__(self, config: Dict[str, Any], backend):
        """Initialize snapshot manager with configuration."""
        self.config = config
        self.backend = backend
        self.logger = logging.getLogger(__name__)

        self.snapshot_location = Path(config.get('snapshot_location',
                                                 '/var/lib/meshadmin-ruleapply/snapshots'))

    def capture(self) -> Snapshot:
        """Save the current ruleset to a private file."""
        self.logger.info(f"Saving current {self.backend.family} ruleset")

        try:
            data = self.backend.save()
        except (subprocess.CalledProcessError, OSError) as e:
            if not self.backend.is_available():
                raise BackendUnavailable(
                    f"{self.backend.family} firewall support is lacking from the kernel"
                ) from e
            raise SnapshotError(f"Unknown error saving the current ruleset: {e}") from e

        try:
            self.snapshot_location.mkdir(parents=True, exist_ok=True, mode=0o700)
            # mkstemp creates the file 0600, owned by the invoking user
            fd, path = tempfile.mkstemp(prefix=f"{self.backend.target}-",
                                        suffix='.rules',
                                        dir=str(self.snapshot_location))
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
        except OSError as e:
            raise SnapshotError(f"Cannot store snapshot in {self.snapshot_location}: {e}") from e

        snapshot = Snapshot(path=Path(path), family=self.backend.family)
        self.logger.info(f"Snapshot created: {snapshot.path} ({len(data)} bytes)")
        return snapshot

    def restore(self, snapshot: Snapshot) -> None:
        """Load a snapshot back through the backend. Raises ApplyError."""
        self.backend.restore(str(snapshot.path))
        self.logger.info(f"Ruleset restored from snapshot {snapshot.path}")
