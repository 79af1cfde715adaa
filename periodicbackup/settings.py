"""
Backup settings - the explicit configuration value handed to the executors.

The host materializes one BackupSettings from its Flask config; the executors
never read configuration on their own.
"""

import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .backup.archivers import Archiver, NullArchiver, TarGzipArchiver, ZipArchiver
from .backup.destinations import Destination, LocalDirectory, S3Destination
from .backup.selection import ConfigOnly, FileManager, FullBackup, PatternBackup


BACKUP_TEMP_SUBDIR = 'backup'
RESTORE_TEMP_SUBDIR = 'restore'


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return bool(value)


def _as_int(value: Any, name: str) -> int:
    if value is None or value == '':
        return 0
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if number < 0:
        raise ValueError(f"{name} must not be negative, got {number}")
    return number


@dataclass(frozen=True)
class BackupSettings:
    """
    What to back up, how to package it, where to send it and how long to keep it.
    """

    temp_dir: str
    file_manager: FileManager
    archiver: Archiver
    destinations: Tuple[Destination, ...] = ()
    cron: Optional[str] = None
    cycle_quantity: int = 0
    cycle_days: int = 0

    @property
    def backup_temp_dir(self) -> str:
        return os.path.join(self.temp_dir, BACKUP_TEMP_SUBDIR)

    @property
    def restore_temp_dir(self) -> str:
        return os.path.join(self.temp_dir, RESTORE_TEMP_SUBDIR)

    @property
    def enabled_destinations(self) -> Tuple[Destination, ...]:
        return tuple(d for d in self.destinations if d.enabled)

    @classmethod
    def from_config(cls, config: Mapping[str, Any],
                    credentials_resolver: Optional[Callable[[str], Dict[str, str]]] = None) -> 'BackupSettings':
        """
        Build settings from a Flask-style config mapping.

        Args:
            config: Mapping holding the BACKUP_*, ARCHIVE_*, ZIP_*, S3_*,
                LOCAL_BACKUP_* and CYCLE_* keys
            credentials_resolver: Resolves S3_CREDENTIALS_ID to boto3 kwargs

        Returns:
            BackupSettings instance

        Raises:
            ValueError: If a setting is missing or invalid
        """
        temp_dir = config.get('TEMP_DIR')
        if not temp_dir:
            raise ValueError("TEMP_DIR is not configured")

        return cls(
            temp_dir=temp_dir,
            file_manager=_file_manager_from_config(config),
            archiver=_archiver_from_config(config),
            destinations=_destinations_from_config(config, credentials_resolver),
            cron=(config.get('BACKUP_CRON') or '').strip() or None,
            cycle_quantity=_as_int(config.get('CYCLE_QUANTITY'), 'CYCLE_QUANTITY'),
            cycle_days=_as_int(config.get('CYCLE_DAYS'), 'CYCLE_DAYS')
        )


def _file_manager_from_config(config: Mapping[str, Any]) -> FileManager:
    root = config.get('BACKUP_ROOT')
    if not root:
        raise ValueError("BACKUP_ROOT is not configured")

    manager_type = (config.get('BACKUP_FILE_MANAGER') or FullBackup.type_name).strip().lower()
    follow_symlinks = _as_bool(config.get('BACKUP_FOLLOW_SYMLINKS'))

    if manager_type == FullBackup.type_name:
        return FullBackup(root, config.get('BACKUP_EXCLUDES'), follow_symlinks)
    elif manager_type == PatternBackup.type_name:
        return PatternBackup(root, config.get('BACKUP_INCLUDES'), config.get('BACKUP_EXCLUDES'), follow_symlinks)
    elif manager_type == ConfigOnly.type_name:
        return ConfigOnly(root)
    else:
        raise ValueError(f"Invalid BACKUP_FILE_MANAGER: {manager_type}")


def _archiver_from_config(config: Mapping[str, Any]) -> Archiver:
    archive_format = (config.get('ARCHIVE_FORMAT') or TarGzipArchiver.type_name).strip().lower()

    if archive_format == TarGzipArchiver.type_name:
        return TarGzipArchiver()
    elif archive_format == ZipArchiver.type_name:
        return ZipArchiver(
            multi_volume=_as_bool(config.get('ZIP_MULTI_VOLUME')),
            volume_size=_as_int(config.get('ZIP_VOLUME_SIZE'), 'ZIP_VOLUME_SIZE')
        )
    elif archive_format == NullArchiver.type_name:
        return NullArchiver()
    else:
        raise ValueError(f"Invalid ARCHIVE_FORMAT: {archive_format}")


def _destinations_from_config(config: Mapping[str, Any],
                              credentials_resolver: Optional[Callable[[str], Dict[str, str]]]
                              ) -> Tuple[Destination, ...]:
    destinations = []

    local_dir = config.get('LOCAL_BACKUP_DIR')
    if local_dir:
        destinations.append(
            LocalDirectory(local_dir, enabled=_as_bool(config.get('LOCAL_BACKUP_ENABLED'), default=True))
        )

    bucket = config.get('S3_BUCKET')
    if bucket:
        destinations.append(S3Destination(
            bucket=bucket,
            prefix=config.get('S3_PREFIX'),
            region=config.get('S3_REGION'),
            credentials_id=config.get('S3_CREDENTIALS_ID'),
            endpoint_url=config.get('S3_ENDPOINT_URL'),
            credentials_resolver=credentials_resolver
        ))

    return tuple(destinations)


def settings_for_app(app) -> BackupSettings:
    """Build the settings of a Flask app, using its CREDENTIALS_RESOLVER for S3."""
    return BackupSettings.from_config(app.config, app.config.get('CREDENTIALS_RESOLVER'))
