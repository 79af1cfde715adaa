"""
Archivers package selected files into backup blobs and extract them again.

Supports:
- TarGzipArchiver: one gzip compressed tar (.tar.gz)
- ZipArchiver: one zip (.zip), or independent zip volumes of a maximum size
- NullArchiver: plain directory copy (.null), used for round-trip testing

Usage:
    session = archiver.backup_start(temp_dir, 'backup_2024_01_15_02_00_00', root)
    for path in selected_files:
        session.add_file(path)
    blobs = session.stop()
"""

import glob
import json
import logging
import os
import shutil
import tarfile
import zipfile
from typing import Any, Dict, Iterable, List, Optional


logger = logging.getLogger(__name__)


class ArchiverError(Exception):
    """Raised when an archive cannot be created or a session is misused."""
    pass


class ArchiveSession:
    """
    State of one in-progress archive.

    Created by Archiver.backup_start(); add_file() may be called any number
    of times until stop() finalizes the archive. A stopped session cannot be
    reused.
    """

    def __init__(self, root: str, destination: str):
        self.root = os.path.abspath(root)
        self.destination = destination
        self.files_added = 0
        self._stopped = False

    def add_file(self, path: str) -> bool:
        """
        Add one file under its path relative to the backup root.

        Args:
            path: File path, absolute or relative to the root

        Returns:
            True if the file was added, False if it was skipped

        Raises:
            ArchiverError: If the session was already stopped
        """
        self._check_open()

        full_path = path if os.path.isabs(path) else os.path.join(self.root, path)
        arcname = os.path.relpath(full_path, self.root).replace(os.sep, '/')

        try:
            self._add(full_path, arcname)
        except (OSError, tarfile.TarError, zipfile.BadZipFile, shutil.Error) as e:
            logger.warning(f"Could not add {full_path} to the archive: {e}")
            return False

        self.files_added += 1
        return True

    def stop(self) -> List[str]:
        """
        Finalize the archive.

        Returns:
            Ordered list of produced blob paths

        Raises:
            ArchiverError: If the session was already stopped or the archive
                cannot be finalized
        """
        self._check_open()
        self._stopped = True
        try:
            return self._finish()
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise ArchiverError(f"Failed to finalize archive {self.destination}: {e}")

    def abort(self):
        """Close the session and discard anything written so far."""
        if self._stopped:
            return
        self._stopped = True
        try:
            self._finish()
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            logger.warning(f"Error while closing aborted archive {self.destination}: {e}")
        for blob in self._outputs():
            _remove_path(blob)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _check_open(self):
        if self._stopped:
            raise ArchiverError(f"Archive session for {self.destination} is already stopped")

    def _add(self, full_path: str, arcname: str):
        raise NotImplementedError

    def _finish(self) -> List[str]:
        raise NotImplementedError

    def _outputs(self) -> List[str]:
        return [self.destination]


class _TarGzipSession(ArchiveSession):

    def __init__(self, root: str, destination: str):
        super().__init__(root, destination)
        try:
            # dereference: followed symlinks are stored as regular files
            self._tar = tarfile.open(destination, 'w:gz', dereference=True)
        except (OSError, tarfile.TarError) as e:
            raise ArchiverError(f"Cannot open archive {destination}: {e}")

    def _add(self, full_path: str, arcname: str):
        self._tar.add(full_path, arcname=arcname, recursive=False)

    def _finish(self) -> List[str]:
        self._tar.close()
        return [self.destination]


class _ZipSession(ArchiveSession):

    def __init__(self, root: str, destination: str, multi_volume: bool, volume_size: int):
        super().__init__(root, destination)
        self.multi_volume = multi_volume
        self.volume_size = volume_size
        self.volumes = []
        self._zip = None
        self._volume_bytes = 0
        self._volume_entries = 0
        self._open_volume()

    def _volume_path(self, number: int) -> str:
        if number == 1:
            return self.destination
        base = self.destination[:-len('.zip')]
        return f"{base}.part{number}.zip"

    def _open_volume(self):
        path = self._volume_path(len(self.volumes) + 1)
        try:
            self._zip = zipfile.ZipFile(path, 'w', zipfile.ZIP_DEFLATED, allowZip64=True)
        except OSError as e:
            raise ArchiverError(f"Cannot open archive {path}: {e}")
        self.volumes.append(path)
        self._volume_bytes = 0
        self._volume_entries = 0

    def _add(self, full_path: str, arcname: str):
        if self.multi_volume and self._volume_entries > 0:
            # Uncompressed size is an upper bound of what the entry will take
            if self._volume_bytes + os.path.getsize(full_path) > self.volume_size:
                self._zip.close()
                self._open_volume()

        self._zip.write(full_path, arcname)
        self._volume_bytes += self._zip.getinfo(arcname).compress_size
        self._volume_entries += 1

    def _finish(self) -> List[str]:
        self._zip.close()
        return list(self.volumes)

    def _outputs(self) -> List[str]:
        return list(self.volumes)


class _NullSession(ArchiveSession):

    def __init__(self, root: str, destination: str):
        super().__init__(root, destination)
        try:
            os.makedirs(destination, exist_ok=True)
        except OSError as e:
            raise ArchiverError(f"Cannot create directory {destination}: {e}")

    def _add(self, full_path: str, arcname: str):
        target = os.path.join(self.destination, *arcname.split('/'))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        shutil.copy2(full_path, target)

    def _finish(self) -> List[str]:
        # The whole directory is a single pseudo-blob
        return [self.destination]


class Archiver:
    """
    Base class for archivers.

    Archivers hold configuration only; all per-run state lives in the
    ArchiveSession returned by backup_start().
    """

    type_name = None
    extension = None
    delete_after_extract = True

    def backup_start(self, temp_dir: str, archive_filename_base: str, root: str) -> ArchiveSession:
        """
        Start a new archive inside the temp directory.

        Args:
            temp_dir: Directory the archive is created in
            archive_filename_base: Filename without extension
            root: Backup root; archived paths are relative to it

        Returns:
            New ArchiveSession

        Raises:
            ArchiverError: If the archive destination cannot be opened
        """
        destination = os.path.join(temp_dir, f"{archive_filename_base}.{self.extension}")
        for existing in self._colliding_outputs(destination):
            logger.info(f"Destination {existing} exists. Deleting...")
            _remove_path(existing)
        return self._open_session(root, destination)

    def unarchive_files(self, archives: Optional[Iterable[str]], target_dir: str) -> int:
        """
        Extract every archive blob into the target directory.

        A blob that fails to extract is logged and the remaining blobs are
        still processed. Extracted blobs are deleted afterwards (except for
        the Null archiver, which leaves its source untouched).

        Args:
            archives: Blob paths, may be None or empty
            target_dir: Directory to extract into

        Returns:
            Number of blobs extracted successfully
        """
        os.makedirs(target_dir, exist_ok=True)
        extracted = 0

        for archive in archives or []:
            logger.info(f"Extracting files from {archive} to {target_dir}")
            try:
                self._extract(archive, target_dir)
                extracted += 1
            except (OSError, tarfile.TarError, zipfile.BadZipFile, shutil.Error) as e:
                logger.warning(f"Could not extract from {archive}: {e}")

            if self.delete_after_extract:
                logger.info(f"Deleting {archive}")
                try:
                    os.remove(archive)
                except OSError as e:
                    logger.warning(f"Could not delete {archive}: {e}")

        return extracted

    def _colliding_outputs(self, destination: str) -> List[str]:
        return [destination] if os.path.lexists(destination) else []

    def _open_session(self, root: str, destination: str) -> ArchiveSession:
        raise NotImplementedError

    def _extract(self, archive: str, target_dir: str):
        raise NotImplementedError

    def to_descriptor(self) -> Dict[str, Any]:
        return {'type': self.type_name}

    @property
    def display_name(self) -> str:
        return type(self).__name__

    def __eq__(self, other):
        return type(self) is type(other) and self.to_descriptor() == other.to_descriptor()

    def __hash__(self):
        return hash(json.dumps(self.to_descriptor(), sort_keys=True))

    def __repr__(self):
        return f'<{type(self).__name__} {self.to_descriptor()}>'


class TarGzipArchiver(Archiver):
    """Packages files into a single gzip compressed tar archive."""

    type_name = 'tar.gz'
    extension = 'tar.gz'

    def _open_session(self, root: str, destination: str) -> ArchiveSession:
        return _TarGzipSession(root, destination)

    def _extract(self, archive: str, target_dir: str):
        with tarfile.open(archive, 'r:gz') as tar:
            if hasattr(tarfile, 'data_filter'):
                tar.extractall(target_dir, filter='data')
            else:
                tar.extractall(target_dir)


class ZipArchiver(Archiver):
    """
    Packages files into zip archives.

    With multi_volume enabled the backup is split into independent zip
    volumes whose compressed payload stays below volume_size bytes. A single
    file larger than a volume gets a volume of its own.
    """

    type_name = 'zip'
    extension = 'zip'

    def __init__(self, multi_volume: bool = False, volume_size: int = 0):
        if multi_volume and volume_size <= 0:
            raise ValueError("Multi-volume zip requires a positive volume size")
        self.multi_volume = multi_volume
        self.volume_size = volume_size if multi_volume else 0

    def _colliding_outputs(self, destination: str) -> List[str]:
        outputs = super()._colliding_outputs(destination)
        base = destination[:-len('.zip')]
        outputs.extend(sorted(glob.glob(glob.escape(base) + '.part*.zip')))
        return outputs

    def _open_session(self, root: str, destination: str) -> ArchiveSession:
        return _ZipSession(root, destination, self.multi_volume, self.volume_size)

    def _extract(self, archive: str, target_dir: str):
        with zipfile.ZipFile(archive, 'r') as zipf:
            zipf.extractall(target_dir)

    def to_descriptor(self) -> Dict[str, Any]:
        return {
            'type': self.type_name,
            'multi_volume': self.multi_volume,
            'volume_size': self.volume_size
        }


class NullArchiver(Archiver):
    """
    Copies files untouched into a directory named <base>.null.

    Used for byte-identical round-trip testing.
    """

    type_name = 'null'
    extension = 'null'
    delete_after_extract = False

    def _open_session(self, root: str, destination: str) -> ArchiveSession:
        return _NullSession(root, destination)

    def _extract(self, archive: str, target_dir: str):
        logger.info(f"Copying {archive} to {target_dir}")
        if os.path.isdir(archive):
            shutil.copytree(archive, target_dir, dirs_exist_ok=True)
        else:
            shutil.copy2(archive, os.path.join(target_dir, os.path.basename(archive)))


def _remove_path(path: str):
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Could not delete {path}: {e}")


def create_archiver(descriptor: Dict[str, Any]) -> Archiver:
    """
    Factory function to create an archiver from its descriptor.

    Args:
        descriptor: Dict with a 'type' key ('tar.gz', 'zip' or 'null');
            zip additionally takes 'multi_volume' and 'volume_size'

    Returns:
        Archiver instance

    Raises:
        ValueError: If the archiver type is invalid
    """
    archiver_type = descriptor.get('type')

    if archiver_type == TarGzipArchiver.type_name:
        return TarGzipArchiver()
    elif archiver_type == ZipArchiver.type_name:
        return ZipArchiver(
            multi_volume=bool(descriptor.get('multi_volume', False)),
            volume_size=int(descriptor.get('volume_size') or 0)
        )
    elif archiver_type == NullArchiver.type_name:
        return NullArchiver()
    else:
        raise ValueError(
            f"Invalid archiver type: {archiver_type}. "
            f"Valid options: {[TarGzipArchiver.type_name, ZipArchiver.type_name, NullArchiver.type_name]}"
        )


def get_archive_size(path: str) -> int:
    """
    Get the size of an archive blob in bytes.

    Directory blobs (Null archiver) are summed recursively.

    Raises:
        ArchiverError: If the blob doesn't exist or cannot be accessed
    """
    try:
        if os.path.isdir(path):
            total = 0
            for dirpath, _, filenames in os.walk(path):
                for name in filenames:
                    total += os.path.getsize(os.path.join(dirpath, name))
            return total
        return os.path.getsize(path)
    except FileNotFoundError:
        raise ArchiverError(f"Archive not found: {path}")
    except OSError as e:
        raise ArchiverError(f"Failed to get archive size: {e}")
