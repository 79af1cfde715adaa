"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Refuse to start if another backup is in progress
2. Capture the backup timestamp
3. Select the files to back up
4. Create the archive blob(s)
5. Write the manifest
6. Store blobs + manifest at every enabled destination
7. Enforce retention at every destination that received the backup
8. Cleanup temporary files, clear the in-progress guard and status message
"""

import logging
import os
import shutil
import threading
from datetime import datetime
from typing import List, Optional

from .archivers import Archiver, get_archive_size
from .destinations import Destination
from .manifest import BackupManifest, generate_filename_base
from .retention import RetentionManager
from .selection import FileManager
from .status import StatusMessage, status_message


logger = logging.getLogger(__name__)

# At most one backup per process
_backup_lock = threading.Lock()


def is_backup_in_progress() -> bool:
    return _backup_lock.locked()


class BackupRun:
    """Result of one backup run."""

    def __init__(self, status: str, started_at: Optional[datetime] = None):
        self.status = status  # running, success, failed, skipped
        self.started_at = started_at
        self.completed_at = None
        self.timestamp = None
        self.manifest = None
        self.file_count = 0
        self.size_bytes = 0
        self.stored_destinations = []
        self.failed_destinations = []
        self.backups_evicted = 0
        self.error_message = None
        self.logs = []

    def __repr__(self):
        return f'<BackupRun status={self.status} timestamp={self.timestamp}>'


class BackupExecutor:
    """
    Orchestrates one backup run.
    """

    def __init__(self, file_manager: FileManager, archiver: Archiver, destinations: List[Destination],
                 temp_dir: str, cycle_quantity: Optional[int] = 0, cycle_days: Optional[int] = 0,
                 status: Optional[StatusMessage] = None):
        """
        Initialize backup executor.

        Args:
            file_manager: Selects the files to back up (carries the rule set)
            archiver: Packages the selected files
            destinations: Destinations to replicate the backup to
            temp_dir: Working directory for the archive and manifest
            cycle_quantity: Maximum number of retained backups, 0 = unlimited
            cycle_days: Maximum backup age in days, 0 = unlimited
            status: User-visible status message holder
        """
        self.file_manager = file_manager
        self.archiver = archiver
        self.destinations = list(destinations)
        self.temp_dir = temp_dir
        self.cycle_quantity = cycle_quantity or 0
        self.cycle_days = cycle_days or 0
        self.status = status or status_message
        self.run_record = None
        self.blobs = []
        self.manifest_file = None
        self.logs = []

    def execute(self) -> BackupRun:
        """
        Execute the backup.

        Returns:
            BackupRun with execution results; status 'skipped' if another
            backup is already in progress
        """
        if not _backup_lock.acquire(blocking=False):
            logger.warning("A backup is already in progress, skipping this run")
            run = BackupRun(status='skipped', started_at=datetime.utcnow())
            run.completed_at = run.started_at
            run.error_message = 'Backup already in progress'
            return run

        self.run_record = BackupRun(status='running', started_at=datetime.utcnow())

        try:
            self.status.set('Creating backup...')
            self._log("Starting backup")

            self._execute_workflow()

            if self.run_record.stored_destinations:
                self.run_record.status = 'success'
                self._log("Backup completed successfully")
            else:
                self.run_record.status = 'failed'
                self.run_record.error_message = 'Backup was not stored in any destination'
                self._log("Backup failed: not stored in any destination")

        except Exception as e:
            self.run_record.status = 'failed'
            self.run_record.error_message = str(e)
            logger.exception("Backup failure")
            self._log(f"Backup failed: {e}")

        finally:
            self.run_record.completed_at = datetime.utcnow()
            self._cleanup()
            self.run_record.logs = list(self.logs)
            self.status.clear()
            _backup_lock.release()

        return self.run_record

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        os.makedirs(self.temp_dir, exist_ok=True)

        # Step 1: Capture timestamp
        timestamp = datetime.now().replace(microsecond=0)
        archive_filename_base = generate_filename_base(timestamp)
        self.run_record.timestamp = timestamp
        self._log(f"Backup timestamp: {timestamp.isoformat()}")

        # Step 2: Select files
        self._log(f"Selecting files under {self.file_manager.root}")
        files = self.file_manager.select()
        self.run_record.file_count = len(files)
        self._log(f"Selected {len(files)} files")

        # Step 3: Create archive
        self._log(f"Creating archive (format: {self.archiver.type_name})")
        self.blobs = self._create_archive(files, archive_filename_base)
        self.run_record.size_bytes = sum(get_archive_size(blob) for blob in self.blobs)
        self._log(
            f"Archive created: {', '.join(os.path.basename(b) for b in self.blobs)} "
            f"({self.run_record.size_bytes / 1024 / 1024:.2f} MB)"
        )

        # Step 4: Write manifest
        manifest = BackupManifest(timestamp=timestamp, archiver=self.archiver, file_manager=self.file_manager)
        self.manifest_file = manifest.write_to(self.temp_dir)
        self.run_record.manifest = manifest

        # Step 5: Replicate and enforce retention, one destination at a time
        for destination in self.destinations:
            self._replicate(destination)

    def _create_archive(self, files: List[str], archive_filename_base: str) -> List[str]:
        session = self.archiver.backup_start(self.temp_dir, archive_filename_base, self.file_manager.root)
        try:
            for path in files:
                session.add_file(path)
            return session.stop()
        except Exception:
            session.abort()
            raise

    def _replicate(self, destination: Destination):
        if not destination.enabled:
            self._log(f"Skipping disabled destination {destination.display_name}")
            return

        self._log(f"Storing backup in {destination.display_name}")
        try:
            stored = destination.store_backup_in_location(self.blobs, self.manifest_file)
        except Exception as e:
            logger.warning(f"Could not store backup in {destination.display_name}: {e}")
            self._log(f"Failed to store backup in {destination.display_name}: {e}")
            self.run_record.failed_destinations.append(destination.display_name)
            return

        if not stored:
            self._log(f"Skipped {destination.display_name} (disabled or not available)")
            self.run_record.failed_destinations.append(destination.display_name)
            return

        self.run_record.stored_destinations.append(destination.display_name)

        try:
            retention = RetentionManager(self.cycle_quantity, self.cycle_days)
            result = retention.enforce(destination)
            self.run_record.backups_evicted += result['backups_deleted']
            if result['backups_deleted']:
                self._log(f"Deleted {result['backups_deleted']} old backups from {destination.display_name}")
        except Exception as e:
            logger.warning(f"Retention failed for {destination.display_name}: {e}")
            self._log(f"Retention failed for {destination.display_name}: {e}")

    def _cleanup(self):
        """Remove this run's blobs and manifest from the temp directory."""
        for path in self.blobs + ([self.manifest_file] if self.manifest_file else []):
            try:
                if os.path.isdir(path):
                    shutil.rmtree(path)
                elif os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup {path}: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def run_backup(file_manager: FileManager, archiver: Archiver, destinations: List[Destination], temp_dir: str,
               cycle_quantity: Optional[int] = 0, cycle_days: Optional[int] = 0,
               status: Optional[StatusMessage] = None) -> BackupRun:
    """
    Run one backup.

    Returns:
        BackupRun with execution results
    """
    executor = BackupExecutor(file_manager, archiver, destinations, temp_dir, cycle_quantity, cycle_days, status)
    return executor.execute()


def execute_backup(settings, status: Optional[StatusMessage] = None) -> BackupRun:
    """
    Run one backup with a BackupSettings value.

    Args:
        settings: BackupSettings describing what, how and where to back up

    Returns:
        BackupRun with execution results
    """
    return run_backup(
        settings.file_manager,
        settings.archiver,
        settings.destinations,
        settings.backup_temp_dir,
        settings.cycle_quantity,
        settings.cycle_days,
        status
    )
