"""
Backup manifest - the metadata record describing one backup instance.

A manifest is stored as a small JSON document next to the archive blobs at
every destination that received the backup:

    backup_2024_01_15_02_00_00.pbobj
    backup_2024_01_15_02_00_00.tar.gz

The formatted timestamp is the marker used to correlate blobs to their
manifest when retrieving or deleting a backup.
"""

import json
import os
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional

from .archivers import Archiver, ArchiverError, create_archiver
from .selection import FileManager, SelectionError, create_file_manager


FILE_TIMESTAMP_PATTERN = '%Y_%m_%d_%H_%M_%S'
MANIFEST_EXTENSION = 'pbobj'
MANIFEST_VERSION = 1


class ManifestError(Exception):
    """Raised when a manifest cannot be read or written."""
    pass


def format_timestamp(timestamp: datetime) -> str:
    """Format a capture timestamp as the fixed-width filename marker."""
    return timestamp.strftime(FILE_TIMESTAMP_PATTERN)


def generate_filename_base(timestamp: datetime) -> str:
    """
    Generate the filename base shared by a backup's blobs and manifest.

    Format: backup_{YYYY_MM_DD_HH_MM_SS}

    Args:
        timestamp: Capture time of the backup

    Returns:
        Filename base (without extension)
    """
    return f"backup_{format_timestamp(timestamp)}"


@dataclass(frozen=True)
class BackupManifest:
    """
    Immutable metadata of one backup.

    ``destination`` is empty in the stored document; destinations bind
    themselves when they list their manifests.
    """

    timestamp: datetime
    archiver: Archiver
    file_manager: Optional[FileManager] = None
    destination: Any = None

    def __post_init__(self):
        # Second precision, whatever the caller passed in
        if self.timestamp.microsecond:
            object.__setattr__(self, 'timestamp', self.timestamp.replace(microsecond=0))

    @property
    def marker(self) -> str:
        return format_timestamp(self.timestamp)

    @property
    def filename(self) -> str:
        return f"{generate_filename_base(self.timestamp)}.{MANIFEST_EXTENSION}"

    def with_destination(self, destination) -> 'BackupManifest':
        return replace(self, destination=destination)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': MANIFEST_VERSION,
            'timestamp': self.timestamp.isoformat(),
            'archiver': self.archiver.to_descriptor(),
            'file_manager': self.file_manager.to_descriptor() if self.file_manager else None,
            'destination': None
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def write_to(self, directory: str) -> str:
        """
        Serialize the manifest into a directory.

        Args:
            directory: Directory to write the manifest file into

        Returns:
            Full path of the written manifest file

        Raises:
            ManifestError: If the file cannot be written
        """
        path = os.path.join(directory, self.filename)
        try:
            with open(path, 'w', encoding='utf-8') as f:
                f.write(self.to_json())
        except OSError as e:
            raise ManifestError(f"Failed to write manifest {path}: {e}")
        return path

    @classmethod
    def from_json(cls, content) -> 'BackupManifest':
        """
        Deserialize a manifest document.

        Args:
            content: JSON document as str or bytes

        Returns:
            BackupManifest without a bound destination

        Raises:
            ManifestError: If the document is not a valid manifest
        """
        if isinstance(content, bytes):
            content = content.decode('utf-8', errors='replace')

        try:
            data = json.loads(content)
        except ValueError as e:
            raise ManifestError(f"Manifest is not valid JSON: {e}")

        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a JSON object")

        version = data.get('version')
        if version != MANIFEST_VERSION:
            raise ManifestError(f"Unsupported manifest version: {version}")

        if not isinstance(data.get('archiver'), dict):
            raise ManifestError("Manifest archiver must be a JSON object")
        if data.get('file_manager') is not None and not isinstance(data['file_manager'], dict):
            raise ManifestError("Manifest file_manager must be a JSON object")

        try:
            timestamp = datetime.fromisoformat(data['timestamp'])
            archiver = create_archiver(data['archiver'])
            file_manager_descriptor = data.get('file_manager')
            file_manager = create_file_manager(file_manager_descriptor) if file_manager_descriptor else None
        except KeyError as e:
            raise ManifestError(f"Manifest is missing field: {e}")
        except (TypeError, ValueError, ArchiverError, SelectionError) as e:
            raise ManifestError(f"Invalid manifest: {e}")

        return cls(timestamp=timestamp, archiver=archiver, file_manager=file_manager)

    @classmethod
    def from_file(cls, path: str) -> 'BackupManifest':
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise ManifestError(f"Failed to read manifest {path}: {e}")
        return cls.from_json(content)
