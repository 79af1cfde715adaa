"""
Backup module for periodicbackup.

This module handles the core backup functionality including:
- File selection (full, pattern, config only)
- Archiving (tar.gz, zip, null)
- Destinations (local directory and S3)
- Backup manifests
- Execution orchestration (backup and restore)
- Retention policy enforcement
"""

from .archivers import NullArchiver, TarGzipArchiver, ZipArchiver, create_archiver
from .destinations import LocalDirectory, S3Destination, create_destination
from .executor import BackupExecutor, BackupRun, run_backup
from .manifest import BackupManifest
from .restore import RestoreExecutor, RestoreInProgressError, run_restore, start_restore
from .retention import RetentionManager
from .selection import ConfigOnly, FullBackup, PatternBackup, SelectionRuleSet, create_file_manager

__all__ = [
    'BackupExecutor',
    'BackupRun',
    'run_backup',
    'RestoreExecutor',
    'RestoreInProgressError',
    'run_restore',
    'start_restore',
    'BackupManifest',
    'SelectionRuleSet',
    'FullBackup',
    'PatternBackup',
    'ConfigOnly',
    'create_file_manager',
    'TarGzipArchiver',
    'ZipArchiver',
    'NullArchiver',
    'create_archiver',
    'LocalDirectory',
    'S3Destination',
    'create_destination',
    'RetentionManager'
]
