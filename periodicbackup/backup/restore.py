"""
Restore executor - puts a chosen backup back onto the backup root.

Workflow:
1. Hold the restart guard for the whole run
2. Validate the temp directory is writable
3. Prepare a fresh finalResult directory inside the temp directory
4. Retrieve the backup blobs from the manifest's destination
5. Unarchive the blobs into finalResult
6. Let the file manager write finalResult onto the backup root
7. Call the host's reload hook
8. Clear the status message

Nothing under the backup root is touched before step 6.
"""

import logging
import os
import shutil
import threading
from typing import Callable, Optional

from .archivers import ArchiverError
from .manifest import BackupManifest
from .selection import FileManager, SelectionError
from .status import RestartGuard, StatusMessage, restart_guard, status_message


logger = logging.getLogger(__name__)

FINAL_RESULT_DIR = 'finalResult'

# At most one restore per process
_restore_lock = threading.Lock()


class RestoreInProgressError(Exception):
    """Raised when a restore is requested while another one is running."""
    pass


class RestoreExecutor:
    """
    Restores one backup.
    """

    def __init__(self, manifest: BackupManifest, temp_dir: str, status: Optional[StatusMessage] = None,
                 guard: Optional[RestartGuard] = None, on_reload: Optional[Callable[[], None]] = None,
                 file_manager: Optional[FileManager] = None):
        """
        Initialize restore executor.

        Args:
            manifest: Manifest of the backup to restore, bound to a destination
            temp_dir: Working directory, distinct from the backup's temp directory
            status: User-visible status message holder
            guard: Restart readiness signal held during the restore
            on_reload: Host hook called once the files are restored
            file_manager: Overrides the file manager recorded in the manifest
        """
        self.manifest = manifest
        self.temp_dir = temp_dir
        self.status = status or status_message
        self.guard = guard or restart_guard
        self.on_reload = on_reload
        self.file_manager = file_manager or manifest.file_manager

    @property
    def final_result_dir(self) -> str:
        return os.path.join(self.temp_dir, FINAL_RESULT_DIR)

    def run(self) -> bool:
        """
        Run the restore.

        Returns:
            True if the restore sequence completed, False if it was aborted
            before touching the backup root
        """
        with self.guard.hold():
            try:
                self.status.set('Restoring backup...')
                return self._restore()
            finally:
                self.status.clear()

    def _restore(self) -> bool:
        if self.manifest.destination is None:
            logger.error("Cannot restore: the manifest is not bound to a destination")
            return False

        if self.file_manager is None:
            logger.error("Cannot restore: no file manager for this backup")
            return False

        if not self._prepare_temp_dir():
            return False

        logger.info(f"Restoring backup {self.manifest.marker} from {self.manifest.destination.display_name}")

        try:
            blobs = self.manifest.destination.retrieve_backup_from_location(self.manifest, self.temp_dir)
        except Exception as e:
            logger.warning(f"Could not retrieve backup {self.manifest.marker}: {e}")
            blobs = []

        try:
            extracted = self.manifest.archiver.unarchive_files(blobs, self.final_result_dir)
        except ArchiverError as e:
            logger.error(f"Could not unarchive backup {self.manifest.marker}: {e}")
            return False
        finally:
            self._remove_retrieved(blobs)
        logger.info(f"Extracted {extracted} of {len(blobs)} archives into {self.final_result_dir}")

        try:
            self.file_manager.restore_files(self.final_result_dir, protected_paths=[self.temp_dir])
        except (SelectionError, OSError, shutil.Error) as e:
            logger.error(f"Could not restore files onto {self.file_manager.root}: {e}")

        if self.on_reload is not None:
            logger.info("Reloading configuration")
            try:
                self.on_reload()
            except Exception:
                logger.exception("Reload after restore failed")

        logger.info(f"Restore of backup {self.manifest.marker} finished")
        return True

    def _remove_retrieved(self, blobs):
        """Remove retrieved blobs that unarchiving left behind (null archiver directories)."""
        temp_dir = os.path.abspath(self.temp_dir)
        for blob in blobs:
            if os.path.commonpath([os.path.abspath(blob), temp_dir]) != temp_dir:
                continue
            try:
                if os.path.isdir(blob):
                    shutil.rmtree(blob)
                elif os.path.exists(blob):
                    os.remove(blob)
            except OSError as e:
                logger.warning(f"Failed to cleanup {blob}: {e}")

    def _prepare_temp_dir(self) -> bool:
        try:
            os.makedirs(self.temp_dir, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create temp directory {self.temp_dir}: {e}")
            return False

        if not os.access(self.temp_dir, os.W_OK):
            logger.error(f"Temp directory {self.temp_dir} is not writable")
            return False

        try:
            if os.path.exists(self.final_result_dir):
                logger.info(f"Deleting old contents of {self.final_result_dir}")
                shutil.rmtree(self.final_result_dir)
            os.makedirs(self.final_result_dir)
        except OSError as e:
            logger.error(f"Cannot prepare {self.final_result_dir}: {e}")
            return False

        return True


def is_restore_in_progress() -> bool:
    return _restore_lock.locked()


def _acquire_restore_lock():
    if not _restore_lock.acquire(blocking=False):
        raise RestoreInProgressError("A restore is already in progress")


def run_restore(manifest: BackupManifest, temp_dir: str, status: Optional[StatusMessage] = None,
                guard: Optional[RestartGuard] = None, on_reload: Optional[Callable[[], None]] = None,
                file_manager: Optional[FileManager] = None) -> bool:
    """
    Run one restore on the calling thread.

    Raises:
        RestoreInProgressError: If another restore is running in this process
    """
    _acquire_restore_lock()
    try:
        return RestoreExecutor(manifest, temp_dir, status, guard, on_reload, file_manager).run()
    finally:
        _restore_lock.release()


def start_restore(manifest: BackupManifest, temp_dir: str, status: Optional[StatusMessage] = None,
                  guard: Optional[RestartGuard] = None, on_reload: Optional[Callable[[], None]] = None,
                  file_manager: Optional[FileManager] = None) -> threading.Thread:
    """
    Run one restore on its own thread.

    The restore lock is taken on the calling thread and released when the
    restore thread ends.

    Returns:
        The started thread

    Raises:
        RestoreInProgressError: If another restore is running in this process
    """
    _acquire_restore_lock()
    executor = RestoreExecutor(manifest, temp_dir, status, guard, on_reload, file_manager)

    def restore_in_background():
        try:
            executor.run()
        except Exception:
            logger.exception(f"Restore of backup {manifest.marker} failed")
        finally:
            _restore_lock.release()

    thread = threading.Thread(target=restore_in_background, name=f'restore-{manifest.marker}', daemon=True)
    try:
        thread.start()
    except RuntimeError:
        _restore_lock.release()
        raise
    return thread
