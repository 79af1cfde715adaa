"""
Unit tests for backup executor (periodicbackup/backup/executor.py).

Tests BackupExecutor for orchestrating complete backup workflows.
"""

import os
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from periodicbackup.backup import executor as executor_module
from periodicbackup.backup.archivers import ArchiverError, TarGzipArchiver, ZipArchiver
from periodicbackup.backup.destinations import StorageError
from periodicbackup.backup.executor import BackupExecutor, execute_backup, is_backup_in_progress, run_backup
from periodicbackup.backup.selection import FullBackup
from periodicbackup.settings import BackupSettings


def _mock_destination(name='Mock destination', store_result=True, store_error=None):
    destination = MagicMock()
    destination.enabled = True
    destination.display_name = name
    if store_error:
        destination.store_backup_in_location.side_effect = store_error
    else:
        destination.store_backup_in_location.return_value = store_result
    destination.get_available_backups.return_value = []
    return destination


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, backup_root, temp_dir, local_destination):
        executor = BackupExecutor(FullBackup(str(backup_root)), TarGzipArchiver(), [local_destination], str(temp_dir))

        assert executor.run_record is None
        assert executor.blobs == []
        assert executor.manifest_file is None
        assert executor.logs == []
        assert executor.cycle_quantity == 0
        assert executor.cycle_days == 0

    @freeze_time("2024-01-15 02:00:00")
    def test_successful_backup(self, backup_root, temp_dir, local_destination, status):
        """Test a backup lands at the destination with its manifest."""
        result = run_backup(
            FullBackup(str(backup_root)), TarGzipArchiver(), [local_destination], str(temp_dir), status=status
        )

        assert result.status == 'success'
        assert result.timestamp == datetime(2024, 1, 15, 2, 0, 0)
        assert result.file_count == 5
        assert result.size_bytes > 0
        assert result.stored_destinations == [local_destination.display_name]
        assert result.error_message is None
        assert result.completed_at is not None
        assert local_destination.list_files() == [
            'backup_2024_01_15_02_00_00.pbobj',
            'backup_2024_01_15_02_00_00.tar.gz'
        ]
        assert result.manifest.archiver == TarGzipArchiver()

    def test_temp_files_are_cleaned_up(self, backup_root, temp_dir, local_destination, status):
        run_backup(FullBackup(str(backup_root)), ZipArchiver(), [local_destination], str(temp_dir), status=status)

        assert os.listdir(str(temp_dir)) == []

    def test_status_message_during_run(self, backup_root, temp_dir, status):
        """Test the status message is shown while running and cleared after."""
        seen = []
        destination = _mock_destination()
        destination.store_backup_in_location.side_effect = lambda blobs, manifest: seen.append(status.get()) or True

        run_backup(FullBackup(str(backup_root)), TarGzipArchiver(), [destination], str(temp_dir), status=status)

        assert seen == ['Creating backup...']
        assert status.get() == ''

    def test_logs_are_recorded(self, backup_root, temp_dir, local_destination, status):
        result = run_backup(
            FullBackup(str(backup_root)), TarGzipArchiver(), [local_destination], str(temp_dir), status=status
        )

        assert any('Selected 5 files' in line for line in result.logs)
        assert all(line.startswith('[') for line in result.logs)


class TestDestinationIsolation:
    """Test one destination's failure does not affect the others."""

    def test_partial_destination_failure(self, backup_root, temp_dir, local_destination, status):
        failing = _mock_destination('Failing destination', store_error=StorageError('disk full'))

        result = run_backup(
            FullBackup(str(backup_root)), TarGzipArchiver(), [failing, local_destination], str(temp_dir),
            cycle_quantity=5, status=status
        )

        assert result.status == 'success'
        assert result.failed_destinations == ['Failing destination']
        assert result.stored_destinations == [local_destination.display_name]
        assert len(local_destination.get_available_backups()) == 1
        # Retention is not attempted where the backup never landed
        failing.get_available_backups.assert_not_called()
        failing.delete_backup_files.assert_not_called()

    def test_unexpected_destination_error_is_isolated(self, backup_root, temp_dir, local_destination, status):
        broken = _mock_destination('Broken destination', store_error=RuntimeError('bug'))

        result = run_backup(
            FullBackup(str(backup_root)), TarGzipArchiver(), [broken, local_destination], str(temp_dir),
            status=status
        )

        assert result.status == 'success'
        assert result.failed_destinations == ['Broken destination']

    def test_unavailable_destination_is_skipped(self, backup_root, temp_dir, status):
        unavailable = _mock_destination(store_result=False)

        result = run_backup(FullBackup(str(backup_root)), TarGzipArchiver(), [unavailable], str(temp_dir), status=status)

        assert result.status == 'failed'
        assert result.error_message == 'Backup was not stored in any destination'

    def test_disabled_destination_is_not_called(self, backup_root, temp_dir, local_destination, status):
        disabled = _mock_destination()
        disabled.enabled = False

        run_backup(
            FullBackup(str(backup_root)), TarGzipArchiver(), [disabled, local_destination], str(temp_dir),
            status=status
        )

        disabled.store_backup_in_location.assert_not_called()

    def test_retention_failure_does_not_fail_run(self, backup_root, temp_dir, status):
        destination = _mock_destination()
        destination.get_available_backups.side_effect = StorageError('cannot list')

        result = run_backup(
            FullBackup(str(backup_root)), TarGzipArchiver(), [destination], str(temp_dir),
            cycle_quantity=1, status=status
        )

        assert result.status == 'success'
        assert any('Retention failed' in line for line in result.logs)

    def test_retention_evicts_old_backups(self, backup_root, temp_dir, local_destination, status):
        manager = FullBackup(str(backup_root))

        with freeze_time("2024-01-15 02:00:00"):
            run_backup(manager, TarGzipArchiver(), [local_destination], str(temp_dir), status=status)
        with freeze_time("2024-01-16 02:00:00"):
            result = run_backup(
                manager, TarGzipArchiver(), [local_destination], str(temp_dir), cycle_quantity=1, status=status
            )

        assert result.backups_evicted == 1
        assert [m.timestamp for m in local_destination.get_available_backups()] == [datetime(2024, 1, 16, 2)]


class TestFatalErrors:
    """Test errors that abort the whole run."""

    def test_selection_failure_aborts(self, tmp_path, temp_dir, status):
        destination = _mock_destination()

        result = run_backup(
            FullBackup(str(tmp_path / 'missing-root')), TarGzipArchiver(), [destination], str(temp_dir),
            status=status
        )

        assert result.status == 'failed'
        assert 'Backup root is not a directory' in result.error_message
        destination.store_backup_in_location.assert_not_called()
        assert not is_backup_in_progress()
        assert status.get() == ''

    def test_archiver_failure_aborts(self, backup_root, temp_dir, status):
        archiver = MagicMock()
        archiver.type_name = 'mock'
        archiver.backup_start.side_effect = ArchiverError('cannot open')
        destination = _mock_destination()

        result = run_backup(FullBackup(str(backup_root)), archiver, [destination], str(temp_dir), status=status)

        assert result.status == 'failed'
        assert result.error_message == 'cannot open'
        destination.store_backup_in_location.assert_not_called()
        assert not is_backup_in_progress()

    def test_failed_stop_aborts_session(self, backup_root, temp_dir, status):
        session = MagicMock()
        session.stop.side_effect = ArchiverError('disk full')
        archiver = MagicMock()
        archiver.type_name = 'mock'
        archiver.backup_start.return_value = session

        result = run_backup(FullBackup(str(backup_root)), archiver, [_mock_destination()], str(temp_dir), status=status)

        assert result.status == 'failed'
        session.abort.assert_called_once()


class TestConcurrencyGuard:
    """Test at most one backup runs at a time."""

    def test_second_backup_is_skipped(self, backup_root, temp_dir, status):
        destination = _mock_destination()
        executor_module._backup_lock.acquire()
        try:
            assert is_backup_in_progress()
            result = run_backup(FullBackup(str(backup_root)), TarGzipArchiver(), [destination], str(temp_dir),
                                status=status)
        finally:
            executor_module._backup_lock.release()

        assert result.status == 'skipped'
        destination.store_backup_in_location.assert_not_called()

    def test_guard_held_during_run_and_released_after(self, backup_root, temp_dir, status):
        during = []
        destination = _mock_destination()
        destination.store_backup_in_location.side_effect = lambda blobs, manifest: during.append(
            is_backup_in_progress()) or True

        run_backup(FullBackup(str(backup_root)), TarGzipArchiver(), [destination], str(temp_dir), status=status)

        assert during == [True]
        assert not is_backup_in_progress()


class TestExecuteBackup:
    """Test execute_backup with a settings value."""

    def test_execute_backup_uses_backup_temp_dir(self, backup_root, tmp_path, local_destination, status):
        settings = BackupSettings(
            temp_dir=str(tmp_path / 'temp'),
            file_manager=FullBackup(str(backup_root)),
            archiver=TarGzipArchiver(),
            destinations=(local_destination,),
            cycle_quantity=3
        )

        result = execute_backup(settings, status=status)

        assert result.status == 'success'
        assert os.path.isdir(str(tmp_path / 'temp' / 'backup'))
        assert len(local_destination.get_available_backups()) == 1
