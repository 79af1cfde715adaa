"""
Retention policy enforcement for backups.

Evicts old backups from a destination based on two independent thresholds:
- cycle_quantity: keep at most this many backups (0 = unlimited)
- cycle_days: keep backups for at most this many days (0 = unlimited)

A backup is deleted if it violates either active threshold.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .manifest import BackupManifest


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Applies a retention window to destinations.
    """

    def __init__(self, cycle_quantity: Optional[int] = 0, cycle_days: Optional[int] = 0):
        """
        Initialize retention manager.

        Args:
            cycle_quantity: Maximum number of retained backups, 0/None disables
            cycle_days: Maximum age in days, 0/None disables
        """
        self.cycle_quantity = cycle_quantity or 0
        self.cycle_days = cycle_days or 0
        self.logs = []

    @property
    def active(self) -> bool:
        return self.cycle_quantity > 0 or self.cycle_days > 0

    def select_expired(self, manifests: Iterable[BackupManifest], now: Optional[datetime] = None) -> List[BackupManifest]:
        """
        Pick the manifests that fall outside the retention window.

        Args:
            manifests: Manifests available at one destination
            now: Reference time for the age threshold (default: now)

        Returns:
            Expired manifests, newest first
        """
        now = now or datetime.now()
        cutoff = now - timedelta(days=self.cycle_days) if self.cycle_days > 0 else None

        newest_first = sorted(manifests, key=lambda m: m.timestamp, reverse=True)
        expired = []
        for index, manifest in enumerate(newest_first):
            too_many = self.cycle_quantity > 0 and index >= self.cycle_quantity
            too_old = cutoff is not None and manifest.timestamp < cutoff
            if too_many or too_old:
                expired.append(manifest)

        return expired

    def enforce(self, destination, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Enforce the retention window at one destination.

        Args:
            destination: Destination to clean up
            now: Reference time for the age threshold (default: now)

        Returns:
            Dict with counts: {'backups_deleted': int, 'files_deleted': int}

        Raises:
            StorageError: If the destination cannot be listed
        """
        result = {'backups_deleted': 0, 'files_deleted': 0}

        if not self.active:
            self._log(f"Retention not configured, skipping {destination.display_name}")
            return result

        self._log(
            f"Enforcing retention policy for {destination.display_name} "
            f"(quantity: {self.cycle_quantity or 'unlimited'}, days: {self.cycle_days or 'unlimited'})"
        )

        for manifest in self.select_expired(destination.get_available_backups(), now):
            self._log(f"Deleting backup {manifest.marker} from {destination.display_name}")
            result['files_deleted'] += destination.delete_backup_files(manifest)
            result['backups_deleted'] += 1

        return result

    def _log(self, message: str):
        self.logs.append(message)
        logger.info(message)


def enforce_retention(destination, cycle_quantity: Optional[int], cycle_days: Optional[int],
                      now: Optional[datetime] = None) -> int:
    """
    Enforce a retention window at one destination.

    Returns:
        Number of backups deleted
    """
    manager = RetentionManager(cycle_quantity, cycle_days)
    return manager.enforce(destination, now)['backups_deleted']
