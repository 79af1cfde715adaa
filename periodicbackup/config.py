import os
import tempfile


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Base configuration"""

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(
        os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'data', 'logs'
    )

    # Temp directory, split into backup/ and restore/ subdirectories
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'

    # What to back up
    BACKUP_ROOT = os.environ.get('BACKUP_ROOT') or '/data/home'
    BACKUP_FILE_MANAGER = os.environ.get('BACKUP_FILE_MANAGER') or 'full'
    BACKUP_INCLUDES = os.environ.get('BACKUP_INCLUDES')
    BACKUP_EXCLUDES = os.environ.get('BACKUP_EXCLUDES')
    BACKUP_FOLLOW_SYMLINKS = _env_bool('BACKUP_FOLLOW_SYMLINKS')

    # How to package it
    ARCHIVE_FORMAT = os.environ.get('ARCHIVE_FORMAT') or 'tar.gz'
    ZIP_MULTI_VOLUME = _env_bool('ZIP_MULTI_VOLUME')
    ZIP_VOLUME_SIZE = int(os.environ.get('ZIP_VOLUME_SIZE') or 0)

    # Where to send it
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    LOCAL_BACKUP_ENABLED = _env_bool('LOCAL_BACKUP_ENABLED', 'true')
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_PREFIX = os.environ.get('S3_PREFIX')
    S3_REGION = os.environ.get('S3_REGION')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    S3_CREDENTIALS_ID = os.environ.get('S3_CREDENTIALS_ID')

    # How long to keep it (0 = unlimited)
    CYCLE_QUANTITY = int(os.environ.get('CYCLE_QUANTITY') or 0)
    CYCLE_DAYS = int(os.environ.get('CYCLE_DAYS') or 0)

    # Scheduler
    BACKUP_CRON = os.environ.get('BACKUP_CRON') or '0 2 * * *'
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'

    # Host hooks: credentials_id -> boto3 kwargs, and the post-restore reload
    CREDENTIALS_RESOLVER = None
    RELOAD_HOOK = None


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    BACKUP_ROOT = os.environ.get('BACKUP_ROOT') or os.path.join(DATA_DIR, 'home')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False

    DATA_DIR = os.path.join(tempfile.gettempdir(), 'periodicbackup-test')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    BACKUP_ROOT = os.path.join(DATA_DIR, 'home')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')
    S3_BUCKET = None
    BACKUP_CRON = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
