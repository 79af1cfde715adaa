"""
Unit tests for destinations (periodicbackup/backup/destinations.py).

Tests LocalDirectory and S3Destination for storing, listing, retrieving
and deleting backups.
"""

import os
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from periodicbackup.backup.archivers import NullArchiver, TarGzipArchiver
from periodicbackup.backup.destinations import (
    LocalDirectory,
    S3Destination,
    StorageError,
    create_destination
)
from periodicbackup.backup.manifest import BackupManifest
from periodicbackup.backup.selection import FullBackup


def _make_backup(backup_root, temp_dir, timestamp, archiver=None):
    """Create blobs + manifest for one backup in temp_dir."""
    archiver = archiver or TarGzipArchiver()
    manager = FullBackup(str(backup_root))
    manifest = BackupManifest(timestamp, archiver, manager)
    session = archiver.backup_start(str(temp_dir), f'backup_{manifest.marker}', str(backup_root))
    for path in manager.select():
        session.add_file(path)
    blobs = session.stop()
    return manifest, blobs, manifest.write_to(str(temp_dir))


class TestLocalDirectory:
    """Test LocalDirectory destination."""

    def test_store_and_list(self, backup_root, temp_dir, local_destination):
        manifest, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15, 2, 0, 0))

        assert local_destination.store_backup_in_location(blobs, manifest_file) is True

        assert set(local_destination.list_files()) == {
            'backup_2024_01_15_02_00_00.tar.gz',
            'backup_2024_01_15_02_00_00.pbobj'
        }
        available = local_destination.get_available_backups()
        assert available == [manifest.with_destination(local_destination)]
        assert available[0].destination is local_destination

    def test_backups_sorted_oldest_first(self, backup_root, temp_dir, local_destination):
        for ts in [datetime(2024, 1, 3), datetime(2024, 1, 1), datetime(2024, 1, 2)]:
            _, blobs, manifest_file = _make_backup(backup_root, temp_dir, ts)
            local_destination.store_backup_in_location(blobs, manifest_file)

        timestamps = [m.timestamp for m in local_destination.get_available_backups()]

        assert timestamps == [datetime(2024, 1, 1), datetime(2024, 1, 2), datetime(2024, 1, 3)]

    def test_corrupt_manifest_is_skipped(self, backup_root, temp_dir, local_destination):
        _, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15))
        local_destination.store_backup_in_location(blobs, manifest_file)
        with open(os.path.join(local_destination.path, 'backup_2024_01_16_00_00_00.pbobj'), 'w') as f:
            f.write('garbage')

        assert len(local_destination.get_available_backups()) == 1

    def test_manifest_with_malformed_descriptor_is_skipped(self, backup_root, temp_dir, local_destination):
        """Test valid JSON with a non-object archiver does not break the listing."""
        manifest, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15, 2, 0, 0))
        local_destination.store_backup_in_location(blobs, manifest_file)
        with open(os.path.join(local_destination.path, 'backup_2024_01_14_02_00_00.pbobj'), 'w') as f:
            f.write('{"version": 1, "timestamp": "2024-01-14T02:00:00", "archiver": "tar.gz"}')

        assert local_destination.get_available_backups() == [manifest.with_destination(local_destination)]

    def test_missing_directory_is_unavailable(self, backup_root, temp_dir, tmp_path):
        destination = LocalDirectory(str(tmp_path / 'does-not-exist'))
        _, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15))

        assert destination.is_available() is False
        assert destination.store_backup_in_location(blobs, manifest_file) is False
        assert not (tmp_path / 'does-not-exist').exists()

    def test_disabled_destination_is_skipped(self, backup_root, temp_dir, local_destination):
        local_destination.enabled = False
        _, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15))

        assert local_destination.store_backup_in_location(blobs, manifest_file) is False
        assert local_destination.list_files() == []

    def test_failed_store_rolls_back(self, backup_root, temp_dir, local_destination):
        """Test nothing of a failed backup stays at the destination."""
        _, blobs, _ = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15))

        with pytest.raises(StorageError):
            local_destination.store_backup_in_location(blobs, str(temp_dir / 'missing.pbobj'))

        assert local_destination.list_files() == []

    def test_retrieve(self, backup_root, temp_dir, local_destination, tmp_path):
        manifest, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15))
        local_destination.store_backup_in_location(blobs, manifest_file)
        restore_dir = tmp_path / 'restore'
        restore_dir.mkdir()

        retrieved = local_destination.retrieve_backup_from_location(manifest, str(restore_dir))

        assert retrieved == [str(restore_dir / 'backup_2024_01_15_00_00_00.tar.gz')]
        assert not (restore_dir / 'backup_2024_01_15_00_00_00.pbobj').exists()

    def test_retrieve_null_blob_directory(self, backup_root, temp_dir, local_destination, tmp_path):
        manifest, blobs, manifest_file = _make_backup(
            backup_root, temp_dir, datetime(2024, 1, 15), archiver=NullArchiver()
        )
        local_destination.store_backup_in_location(blobs, manifest_file)
        restore_dir = tmp_path / 'restore'
        restore_dir.mkdir()

        retrieved = local_destination.retrieve_backup_from_location(manifest, str(restore_dir))

        assert len(retrieved) == 1
        assert os.path.isfile(os.path.join(retrieved[0], 'jobs', 'myjob', 'config.xml'))

    def test_delete_backup_files(self, backup_root, temp_dir, local_destination):
        old, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 1))
        local_destination.store_backup_in_location(blobs, manifest_file)
        _, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 2))
        local_destination.store_backup_in_location(blobs, manifest_file)

        deleted = local_destination.delete_backup_files(old)

        assert deleted == 2
        assert all('2024_01_01' not in name for name in local_destination.list_files())
        assert len(local_destination.get_available_backups()) == 1


class TestS3Destination:
    """Test S3Destination against a mocked bucket."""

    def test_store_and_list(self, backup_root, temp_dir, s3_destination, mock_s3):
        manifest, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15, 2, 0, 0))

        assert s3_destination.store_backup_in_location(blobs, manifest_file) is True

        keys = {obj.key for obj in mock_s3.Bucket('test-bucket').objects.all()}
        assert keys == {
            'backups/backup_2024_01_15_02_00_00.tar.gz',
            'backups/backup_2024_01_15_02_00_00.pbobj'
        }
        available = s3_destination.get_available_backups()
        assert [m.timestamp for m in available] == [manifest.timestamp]
        assert available[0].destination is s3_destination

    def test_ignores_keys_outside_prefix(self, backup_root, temp_dir, s3_destination, mock_s3):
        manifest, _, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15))
        mock_s3.Bucket('test-bucket').upload_file(manifest_file, f'other/{manifest.filename}')
        mock_s3.Bucket('test-bucket').upload_file(manifest_file, f'backups/nested/{manifest.filename}')

        assert s3_destination.get_available_backups() == []

    def test_null_blob_directory_upload(self, backup_root, temp_dir, s3_destination, mock_s3, tmp_path):
        manifest, blobs, manifest_file = _make_backup(
            backup_root, temp_dir, datetime(2024, 1, 15), archiver=NullArchiver()
        )
        s3_destination.store_backup_in_location(blobs, manifest_file)
        restore_dir = tmp_path / 'restore'
        restore_dir.mkdir()

        keys = {obj.key for obj in mock_s3.Bucket('test-bucket').objects.all()}
        assert 'backups/backup_2024_01_15_00_00_00.null/jobs/myjob/config.xml' in keys

        retrieved = s3_destination.retrieve_backup_from_location(manifest, str(restore_dir))

        assert retrieved == [str(restore_dir / 'backup_2024_01_15_00_00_00.null')]
        assert (restore_dir / 'backup_2024_01_15_00_00_00.null' / 'config.xml').read_text() == '<hudson/>'

    def test_retrieve_and_delete(self, backup_root, temp_dir, s3_destination, mock_s3, tmp_path):
        manifest, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15))
        s3_destination.store_backup_in_location(blobs, manifest_file)
        restore_dir = tmp_path / 'restore'
        restore_dir.mkdir()

        retrieved = s3_destination.retrieve_backup_from_location(manifest, str(restore_dir))
        assert retrieved == [str(restore_dir / 'backup_2024_01_15_00_00_00.tar.gz')]

        assert s3_destination.delete_backup_files(manifest) == 2
        assert list(mock_s3.Bucket('test-bucket').objects.all()) == []

    def test_no_prefix(self, backup_root, temp_dir, mock_s3):
        destination = S3Destination(bucket='test-bucket', region='us-east-1')
        _, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15))

        destination.store_backup_in_location(blobs, manifest_file)

        assert len(destination.get_available_backups()) == 1
        assert destination.display_name == 'S3 bucket: test-bucket'

    def test_missing_bucket_is_unavailable(self, mock_s3):
        destination = S3Destination(bucket='missing-bucket', region='us-east-1')

        assert destination.is_available() is False
        with pytest.raises(StorageError, match='Bucket does not exist'):
            destination.test_connection()

    def test_failed_upload_rolls_back(self, backup_root, temp_dir, s3_destination, mock_s3):
        """Test uploaded blobs are removed when a later upload fails."""
        _, blobs, manifest_file = _make_backup(backup_root, temp_dir, datetime(2024, 1, 15))
        real_put = s3_destination.s3_client.put_object

        def failing_put(**kwargs):
            if kwargs['Key'].endswith('.pbobj'):
                raise ClientError({'Error': {'Code': '500', 'Message': 'boom'}}, 'PutObject')
            return real_put(**kwargs)

        with patch.object(s3_destination.s3_client, 'put_object', side_effect=failing_put):
            with pytest.raises(StorageError, match='S3 upload failed'):
                s3_destination.store_backup_in_location(blobs, manifest_file)

        assert list(mock_s3.Bucket('test-bucket').objects.all()) == []

    def test_multipart_upload_for_large_files(self, tmp_path):
        """Test files above the threshold use multipart upload."""
        large_file = tmp_path / 'large.tar.gz'
        large_file.write_bytes(b'x' * 1024)
        destination = S3Destination(bucket='test-bucket')
        mock_client = MagicMock()
        mock_client.create_multipart_upload.return_value = {'UploadId': 'upload-1'}
        mock_client.upload_part.return_value = {'ETag': '"etag"'}
        destination._s3_client = mock_client

        with patch('periodicbackup.backup.destinations.MULTIPART_THRESHOLD', 100), \
                patch('periodicbackup.backup.destinations.MULTIPART_CHUNK_SIZE', 512):
            destination.upload(str(large_file), 'large.tar.gz')

        assert mock_client.upload_part.call_count == 2
        mock_client.complete_multipart_upload.assert_called_once()
        mock_client.put_object.assert_not_called()

    def test_multipart_upload_aborts_on_failure(self, tmp_path):
        large_file = tmp_path / 'large.tar.gz'
        large_file.write_bytes(b'x' * 1024)
        destination = S3Destination(bucket='test-bucket')
        mock_client = MagicMock()
        mock_client.create_multipart_upload.return_value = {'UploadId': 'upload-1'}
        mock_client.upload_part.side_effect = ClientError(
            {'Error': {'Code': '500', 'Message': 'boom'}}, 'UploadPart'
        )
        destination._s3_client = mock_client

        with patch('periodicbackup.backup.destinations.MULTIPART_THRESHOLD', 100):
            with pytest.raises(StorageError):
                destination.upload(str(large_file), 'large.tar.gz')

        mock_client.abort_multipart_upload.assert_called_once_with(
            Bucket='test-bucket', Key='large.tar.gz', UploadId='upload-1'
        )

    def test_credentials_resolver(self):
        resolver = MagicMock(return_value={'aws_access_key_id': 'AK', 'aws_secret_access_key': 'SK'})
        destination = S3Destination(
            bucket='test-bucket', region='eu-west-1', credentials_id='prod-s3', credentials_resolver=resolver
        )

        with patch('periodicbackup.backup.destinations.boto3.client') as mock_client:
            destination.s3_client

        resolver.assert_called_once_with('prod-s3')
        mock_client.assert_called_once_with(
            's3', region_name='eu-west-1', aws_access_key_id='AK', aws_secret_access_key='SK'
        )


class TestCreateDestination:
    """Test create_destination factory."""

    def test_local(self, tmp_path):
        destination = create_destination({'type': 'local', 'path': str(tmp_path), 'enabled': False})

        assert isinstance(destination, LocalDirectory)
        assert destination.enabled is False

    def test_s3_descriptor_round_trip(self):
        destination = S3Destination(bucket='b', prefix='/nightly/', region='us-east-1', endpoint_url='http://minio')

        assert create_destination(destination.to_descriptor()) == destination
        assert destination.prefix == 'nightly'

    def test_invalid_type(self):
        with pytest.raises(ValueError, match='Invalid destination type'):
            create_destination({'type': 'ftp'})
