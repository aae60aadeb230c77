import os
import sys

from sqlalchemy.engine import URL


def parse_extensions(value):
    """
    Parse a device-type to file-extension mapping.

    Accepts 'type=ext' pairs separated by commas, e.g. 'fakedevice=bak,ios=cfg'.
    Keys are lower-cased because lookups use the lower-cased device type.

    Raises:
        ValueError: If a pair is malformed
    """
    extensions = {}

    for pair in (value or '').split(','):
        pair = pair.strip()
        if not pair:
            continue

        device_type, sep, extension = pair.partition('=')
        if not sep or not device_type.strip() or not extension.strip():
            raise ValueError(f"Invalid extension mapping: {pair!r} (expected type=ext)")

        extensions[device_type.strip().lower()] = extension.strip().lstrip('.')

    return extensions


def _database_uri():
    """Build the SQLAlchemy URI from DATABASE_URL or the DB_* variables."""
    if os.environ.get('DATABASE_URL'):
        return os.environ['DATABASE_URL']

    if os.environ.get('DB_HOST'):
        url = URL.create(
            drivername=os.environ.get('DB_DRIVER', 'mysql+pymysql'),
            username=os.environ.get('DB_USER'),
            password=os.environ.get('DB_PASSWORD'),
            host=os.environ['DB_HOST'],
            database=os.environ.get('DB_NAME'),
        )
        return url.render_as_string(hide_password=False)

    return 'sqlite:////data/autobk.db'


def _optional_int(name):
    value = os.environ.get(name)
    return int(value) if value else None


class Config:
    """Base configuration"""

    # Database
    SQLALCHEMY_DATABASE_URI = _database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}

    # Paths
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or '/data/backups'
    SCRIPTS_DIR = os.environ.get('SCRIPTS_DIR') or '/opt/autobk/scripts'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # External script fallback
    SCRIPT_INTERPRETER = os.environ.get('SCRIPT_INTERPRETER') or sys.executable
    SCRIPT_TIMEOUT = _optional_int('SCRIPT_TIMEOUT')  # None = wait forever

    # Device type -> file extension
    FILE_EXTENSIONS = parse_extensions(os.environ.get('AUTOBK_EXTENSIONS', 'fakedevice=bak'))

    # Backups
    BACKUP_RETENTION_DAYS = int(os.environ.get('BACKUP_RETENTION_DAYS', 365))  # 0 = never expire
    BACKUP_MAX_ATTEMPTS = int(os.environ.get('BACKUP_MAX_ATTEMPTS', 3))
    BACKUP_RETRY_MINUTES = int(os.environ.get('BACKUP_RETRY_MINUTES', 60))

    # Tick intervals (seconds)
    MAINTENANCE_INTERVAL = int(os.environ.get('MAINTENANCE_INTERVAL', 86400))
    SCHEDULING_INTERVAL = int(os.environ.get('SCHEDULING_INTERVAL', 300))
    AUTOBACKUPS_INTERVAL = int(os.environ.get('AUTOBACKUPS_INTERVAL', 900))

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "autobk.db")}'
    BACKUP_DIR = os.path.join(DATA_DIR, 'backups')
    SCRIPTS_DIR = os.path.join(BASE_DIR, 'scripts')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(DevelopmentConfig):
    """Test configuration (paths are overridden per test)"""
    TESTING = True
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    FILE_EXTENSIONS = {'fakedevice': 'bak'}
    BACKUP_RETENTION_DAYS = 30


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
