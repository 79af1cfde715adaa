"""
Shared pytest fixtures for periodicbackup tests.

This module provides fixtures for:
- Flask app and test client
- Backup root trees
- Destinations (local directory and mocked S3)
- Mock fixtures for the scheduler
"""

import os
import shutil
import tempfile
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from periodicbackup import create_app
from periodicbackup.backup.destinations import LocalDirectory, S3Destination
from periodicbackup.backup.status import StatusMessage


@pytest.fixture(scope='function')
def app(backup_root):
    """
    Create Flask app with test configuration.

    The scheduler is disabled; every directory lives in a fresh temp dir.
    """
    temp_dir = tempfile.mkdtemp()

    app = create_app('testing')

    app.config.update({
        'TESTING': True,
        'TEMP_DIR': os.path.join(temp_dir, 'temp'),
        'BACKUP_ROOT': str(backup_root),
        'LOCAL_BACKUP_DIR': os.path.join(temp_dir, 'backups'),
        'BACKUP_CRON': '0 2 * * *',
    })

    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)

    yield app

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def backup_root(tmp_path):
    """
    Create a home directory tree to back up.

    Creates:
    - config.xml
    - jobs/myjob/config.xml
    - jobs/myjob/nextBuildNumber
    - jobs/myjob/builds/1/build.xml
    - plugins/periodicbackup.jpl
    """
    root = tmp_path / 'home'
    (root / 'jobs' / 'myjob' / 'builds' / '1').mkdir(parents=True)
    (root / 'plugins').mkdir()

    (root / 'config.xml').write_text('<hudson/>')
    (root / 'jobs' / 'myjob' / 'config.xml').write_text('<project/>')
    (root / 'jobs' / 'myjob' / 'nextBuildNumber').write_text('2')
    (root / 'jobs' / 'myjob' / 'builds' / '1' / 'build.xml').write_text('<build/>')
    (root / 'plugins' / 'periodicbackup.jpl').write_bytes(b'\x00plugin\x01' * 64)

    return root


@pytest.fixture
def temp_dir(tmp_path):
    """Backup working directory."""
    path = tmp_path / 'temp'
    path.mkdir()
    return path


@pytest.fixture
def local_destination(tmp_path):
    """Enabled LocalDirectory destination backed by an existing directory."""
    path = tmp_path / 'local_backups'
    path.mkdir()
    return LocalDirectory(str(path))


@pytest.fixture
def status():
    """Status message holder isolated from the global one."""
    return StatusMessage()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches for real ones."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def s3_destination(mock_s3):
    """S3Destination on the mocked bucket, under the 'backups' prefix."""
    return S3Destination(bucket='test-bucket', prefix='backups', region='us-east-1')


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('periodicbackup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
