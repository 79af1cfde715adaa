"""
Destinations replicate backup blobs and manifests to a storage backend.

Supports:
- LocalDirectory: Copy into a local directory
- S3Destination: Upload to an S3 bucket (optionally under a key prefix)

Every destination stores the blobs and the manifest side by side, so the
list of available backups is derived from the destination's own storage:

    {prefix}/backup_2024_01_15_02_00_00.tar.gz
    {prefix}/backup_2024_01_15_02_00_00.pbobj
"""

import json
import logging
import os
import shutil
from typing import Any, Callable, Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .manifest import MANIFEST_EXTENSION, BackupManifest, ManifestError


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class Destination:
    """
    Base class for destinations.

    Destinations hold configuration only; any per-run state is local to
    the call.
    """

    type_name = None

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def store_backup_in_location(self, archives: Iterable[str], manifest_file: str) -> bool:
        """
        Store every blob and then the manifest at this destination.

        Args:
            archives: Blob paths (files or directories)
            manifest_file: Path of the serialized manifest

        Returns:
            True if the backup was stored, False if the destination was
            skipped because it is disabled or unavailable

        Raises:
            StorageError: If storing fails; whatever this call already wrote
                is removed again before raising
        """
        if not self.enabled or not self.is_available():
            logger.warning(f"Skipping {self.display_name} since it is disabled or it does not exist.")
            return False

        written = []
        try:
            for archive in archives:
                logger.info(f"{os.path.basename(archive)} copying to {self.display_name}")
                self._store(archive, written)
            # Manifest goes last: a listed manifest always has its blobs
            self._store(manifest_file, written)
        except StorageError:
            self._rollback(written)
            raise

        logger.info(f"Backup stored in {self.display_name}")
        return True

    def is_available(self) -> bool:
        raise NotImplementedError

    def get_available_backups(self) -> List[BackupManifest]:
        raise NotImplementedError

    def retrieve_backup_from_location(self, manifest: BackupManifest, temp_dir: str) -> List[str]:
        raise NotImplementedError

    def delete_backup_files(self, manifest: BackupManifest) -> int:
        raise NotImplementedError

    def _store(self, path: str, written: List[str]):
        raise NotImplementedError

    def _rollback(self, written: List[str]):
        raise NotImplementedError

    def to_descriptor(self) -> Dict[str, Any]:
        raise NotImplementedError

    @property
    def display_name(self) -> str:
        return type(self).__name__

    def __eq__(self, other):
        return type(self) is type(other) and self.to_descriptor() == other.to_descriptor()

    def __hash__(self):
        return hash(json.dumps(self.to_descriptor(), sort_keys=True))

    def __repr__(self):
        return f'<{type(self).__name__} {self.display_name} enabled={self.enabled}>'


def _is_manifest_name(name: str) -> bool:
    return name.endswith(f".{MANIFEST_EXTENSION}")


def _sorted_manifests(manifests: List[BackupManifest]) -> List[BackupManifest]:
    return sorted(manifests, key=lambda m: m.timestamp)


class LocalDirectory(Destination):
    """
    Stores backups in a local directory.

    The directory must already exist; a missing directory makes the
    destination unavailable rather than being created implicitly.
    """

    type_name = 'local'

    def __init__(self, path: str, enabled: bool = True):
        super().__init__(enabled)
        self.path = os.path.abspath(os.path.expanduser(path))

    @property
    def display_name(self) -> str:
        return f"Local directory: {self.path}"

    def is_available(self) -> bool:
        return os.path.isdir(self.path) and os.access(self.path, os.W_OK)

    def _store(self, path: str, written: List[str]):
        if not os.path.exists(path):
            raise StorageError(f"Source file not found: {path}")

        dest_path = os.path.join(self.path, os.path.basename(path))
        written.append(dest_path)

        try:
            if os.path.isdir(path):
                shutil.copytree(path, dest_path, dirs_exist_ok=True)
            else:
                shutil.copy2(path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except (OSError, shutil.Error) as e:
            raise StorageError(f"Failed to store locally: {e}")

    def _rollback(self, written: List[str]):
        for path in written:
            logger.info(f"Rolling back {path}")
            self._remove(path)

    def _remove(self, path: str) -> bool:
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            elif os.path.lexists(path):
                os.remove(path)
            return True
        except OSError as e:
            logger.warning(f"Could not delete {path}: {e}")
            return False

    def list_files(self) -> List[str]:
        """
        List the entry names in the backup directory.

        Raises:
            StorageError: If the directory cannot be listed
        """
        if not os.path.isdir(self.path):
            return []
        try:
            return sorted(os.listdir(self.path))
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def get_available_backups(self) -> List[BackupManifest]:
        manifests = []
        for name in self.list_files():
            full_path = os.path.join(self.path, name)
            if not _is_manifest_name(name) or not os.path.isfile(full_path):
                continue
            try:
                manifests.append(BackupManifest.from_file(full_path).with_destination(self))
            except ManifestError as e:
                logger.warning(f"Skipping unreadable manifest {full_path}: {e}")
        return _sorted_manifests(manifests)

    def retrieve_backup_from_location(self, manifest: BackupManifest, temp_dir: str) -> List[str]:
        retrieved = []
        for name in self.list_files():
            if manifest.marker not in name or _is_manifest_name(name):
                continue

            source = os.path.join(self.path, name)
            target = os.path.join(temp_dir, name)
            logger.info(f"Copying {source} to {target}")
            try:
                if os.path.isdir(source):
                    shutil.copytree(source, target, dirs_exist_ok=True)
                else:
                    shutil.copy2(source, target)
                retrieved.append(target)
            except (OSError, shutil.Error) as e:
                logger.warning(f"Could not retrieve {source}: {e}")

        return retrieved

    def delete_backup_files(self, manifest: BackupManifest) -> int:
        deleted = 0
        for name in self.list_files():
            if manifest.marker in name:
                path = os.path.join(self.path, name)
                logger.info(f"Deleting {path}")
                if self._remove(path):
                    deleted += 1
        return deleted

    def to_descriptor(self) -> Dict[str, Any]:
        return {'type': self.type_name, 'path': self.path, 'enabled': self.enabled}


class S3Destination(Destination):
    """
    Stores backups in an S3 bucket, under an optional key prefix.

    Credentials: when credentials_id is set, credentials_resolver(credentials_id)
    must return boto3 client keyword arguments (aws_access_key_id,
    aws_secret_access_key, optionally aws_session_token). Otherwise boto3's
    default credential chain is used.
    """

    type_name = 's3'

    def __init__(self, bucket: str, prefix: Optional[str] = None, region: Optional[str] = None,
                 credentials_id: Optional[str] = None, endpoint_url: Optional[str] = None,
                 enabled: bool = True,
                 credentials_resolver: Optional[Callable[[str], Dict[str, str]]] = None):
        super().__init__(enabled)
        self.bucket_name = bucket
        self.prefix = (prefix or '').strip('/')
        self.region = region or None
        self.credentials_id = credentials_id or None
        self.endpoint_url = endpoint_url or None
        self.credentials_resolver = credentials_resolver
        self._s3_client = None

    @property
    def display_name(self) -> str:
        if self.prefix:
            return f"S3 bucket: {self.bucket_name} > {self.prefix}"
        return f"S3 bucket: {self.bucket_name}"

    @property
    def s3_client(self):
        if self._s3_client is None:
            kwargs = {}
            if self.region:
                kwargs['region_name'] = self.region
            if self.endpoint_url:
                kwargs['endpoint_url'] = self.endpoint_url
            if self.credentials_id and self.credentials_resolver:
                kwargs.update(self.credentials_resolver(self.credentials_id))

            try:
                self._s3_client = boto3.client('s3', **kwargs)
            except (BotoCoreError, ValueError) as e:
                raise StorageError(f"Failed to initialize S3 client: {e}")
        return self._s3_client

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def _relative_key(self, key: str) -> Optional[str]:
        """Key relative to the prefix, or None if the key is outside of it."""
        if not self.prefix:
            return key
        if key.startswith(self.prefix + '/'):
            return key[len(self.prefix) + 1:]
        return None

    def is_available(self) -> bool:
        try:
            return self.test_connection()
        except StorageError as e:
            logger.warning(f"{self.display_name} is not available: {e}")
            return False

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def _store(self, path: str, written: List[str]):
        if not os.path.exists(path):
            raise StorageError(f"Local file not found: {path}")

        if os.path.isdir(path):
            base = os.path.basename(path.rstrip(os.sep))
            for dirpath, _, filenames in os.walk(path):
                for name in sorted(filenames):
                    local_path = os.path.join(dirpath, name)
                    relative = os.path.relpath(local_path, path).replace(os.sep, '/')
                    self.upload(local_path, self._key(f"{base}/{relative}"), written)
        else:
            self.upload(path, self._key(os.path.basename(path)), written)

    def upload(self, local_path: str, s3_key: str, written: Optional[List[str]] = None):
        """
        Upload one file to S3.

        Args:
            local_path: Path to local file
            s3_key: Target S3 object key
            written: Optional list the key is recorded in before uploading

        Raises:
            StorageError: If upload fails
        """
        if written is not None:
            written.append(s3_key)

        try:
            file_size = os.path.getsize(local_path)

            logger.info(f"Uploading {local_path} to {self.bucket_name} > {s3_key}")
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to upload to S3: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        """
        Upload file using simple put_object.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
        """
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload large file using multipart upload.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except (ClientError, BotoCoreError, OSError):
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Could not abort multipart upload of {s3_key}: {abort_error}")
            raise

    def _rollback(self, written: List[str]):
        for key in written:
            logger.info(f"Rolling back {self.bucket_name} > {key}")
            try:
                self.delete(key)
            except StorageError as e:
                logger.warning(str(e))

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Args:
            s3_key: S3 object key to delete

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=s3_key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self) -> List[Dict[str, Any]]:
        """
        List objects under this destination's prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            params = {'Bucket': self.bucket_name}
            if self.prefix:
                params['Prefix'] = self.prefix + '/'

            for page in paginator.paginate(**params):
                if 'Contents' in page:
                    for obj in page['Contents']:
                        objects.append({
                            'Key': obj['Key'],
                            'LastModified': obj['LastModified'],
                            'Size': obj['Size']
                        })

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def get_available_backups(self) -> List[BackupManifest]:
        manifests = []
        for obj in self.list_objects():
            relative = self._relative_key(obj['Key'])
            if relative is None or '/' in relative or not _is_manifest_name(relative):
                continue
            try:
                body = self.s3_client.get_object(Bucket=self.bucket_name, Key=obj['Key'])['Body'].read()
                manifests.append(BackupManifest.from_json(body).with_destination(self))
            except (ClientError, BotoCoreError, ManifestError) as e:
                logger.warning(f"Exception while getting available backups from S3 ({obj['Key']}): {e}")
        return _sorted_manifests(manifests)

    def _backup_keys(self, manifest: BackupManifest, include_manifest: bool) -> List[tuple]:
        """(key, relative_key) pairs whose top-level name carries the manifest's marker."""
        keys = []
        for obj in self.list_objects():
            relative = self._relative_key(obj['Key'])
            if relative is None:
                continue
            top = relative.split('/')[0]
            if manifest.marker not in top:
                continue
            if _is_manifest_name(top) and not include_manifest:
                continue
            keys.append((obj['Key'], relative))
        return keys

    def retrieve_backup_from_location(self, manifest: BackupManifest, temp_dir: str) -> List[str]:
        retrieved = []
        for key, relative in self._backup_keys(manifest, include_manifest=False):
            local_path = os.path.join(temp_dir, *relative.split('/'))
            logger.debug(f"Copying from {self.bucket_name} > {key} to {local_path}")
            try:
                os.makedirs(os.path.dirname(local_path), exist_ok=True)
                self.s3_client.download_file(self.bucket_name, key, local_path)
            except (ClientError, BotoCoreError, OSError) as e:
                logger.warning(f"Exception while retrieving the backup file from S3 ({key}): {e}")
                continue

            top_path = os.path.join(temp_dir, relative.split('/')[0])
            if top_path not in retrieved:
                retrieved.append(top_path)

        return retrieved

    def delete_backup_files(self, manifest: BackupManifest) -> int:
        deleted = 0
        for key, _ in self._backup_keys(manifest, include_manifest=True):
            logger.info(f"Deleting {self.bucket_name} > {key}")
            try:
                self.delete(key)
                deleted += 1
            except StorageError as e:
                logger.warning(str(e))
        return deleted

    def to_descriptor(self) -> Dict[str, Any]:
        return {
            'type': self.type_name,
            'bucket': self.bucket_name,
            'prefix': self.prefix,
            'region': self.region,
            'credentials_id': self.credentials_id,
            'endpoint_url': self.endpoint_url,
            'enabled': self.enabled
        }


def create_destination(descriptor: Dict[str, Any],
                       credentials_resolver: Optional[Callable[[str], Dict[str, str]]] = None) -> Destination:
    """
    Factory function to create a destination from its descriptor.

    Args:
        descriptor: Dict with a 'type' key ('local' or 's3') and the
            variant's settings
        credentials_resolver: Resolves an S3 credentials_id to boto3 kwargs

    Returns:
        LocalDirectory or S3Destination instance

    Raises:
        ValueError: If the destination type is invalid
    """
    destination_type = descriptor.get('type')
    enabled = bool(descriptor.get('enabled', True))

    if destination_type == LocalDirectory.type_name:
        return LocalDirectory(descriptor['path'], enabled=enabled)
    elif destination_type == S3Destination.type_name:
        return S3Destination(
            bucket=descriptor['bucket'],
            prefix=descriptor.get('prefix'),
            region=descriptor.get('region'),
            credentials_id=descriptor.get('credentials_id'),
            endpoint_url=descriptor.get('endpoint_url'),
            enabled=enabled,
            credentials_resolver=credentials_resolver
        )
    else:
        raise ValueError(f"Invalid destination type: {destination_type}")
