import os
import tempfile

from pgkeeper.backup.retention import RETENTION_UNITS


STORAGE_BACKENDS = ('s3', 'local')


class ConfigError(Exception):
    """Raised when required settings are missing or invalid."""
    pass


def _as_bool(value, default=False):
    if value is None or value == '':
        return default
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _as_int(value, default):
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        return None


class Config:
    """Base configuration"""

    DEBUG = False

    def __init__(self, environ=None):
        env = os.environ if environ is None else environ

        # Data source
        self.DATABASE_URL = env.get('DATABASE_URL')
        self.PG_DUMP_PATH = env.get('PG_DUMP_PATH') or 'pg_dump'
        self.DUMP_EXTRA_ARGS = env.get('DUMP_EXTRA_ARGS', '')

        # Remote folder
        self.FOLDER_ID = env.get('FOLDER_ID')
        self.STORAGE_BACKEND = (env.get('STORAGE_BACKEND') or 's3').lower()
        self.S3_BUCKET = env.get('S3_BUCKET')
        self.S3_REGION = env.get('S3_REGION') or 'us-east-1'
        self.S3_ENDPOINT_URL = env.get('S3_ENDPOINT_URL') or None
        self.AWS_ACCESS_KEY_ID = env.get('AWS_ACCESS_KEY_ID') or None
        self.AWS_SECRET_ACCESS_KEY = env.get('AWS_SECRET_ACCESS_KEY') or None
        self.LOCAL_STORAGE_DIR = env.get('LOCAL_STORAGE_DIR') or '/data/backups'
        self.LIST_PAGE_SIZE = _as_int(env.get('LIST_PAGE_SIZE'), default=100)

        # Artifact
        self.FILE_PREFIX = env.get('FILE_PREFIX', 'backup-')
        self.TEMP_DIR = env.get('TEMP_DIR') or tempfile.gettempdir()

        # Retention: empty means disabled
        self.RETENTION = (env.get('RETENTION') or 'disabled').strip().lower()

        # Run policy
        self.UPLOAD_FAILURE_FATAL = _as_bool(env.get('UPLOAD_FAILURE_FATAL'), default=True)

        # Scheduler
        self.BACKUP_CRON_SCHEDULE = env.get('BACKUP_CRON_SCHEDULE') or '0 5 * * *'
        self.RUN_ON_STARTUP = _as_bool(env.get('RUN_ON_STARTUP'))
        self.SINGLE_SHOT_MODE = _as_bool(env.get('SINGLE_SHOT_MODE'))
        self.SCHEDULER_TIMEZONE = 'UTC'

        # Logging
        self.LOG_DIR = env.get('LOG_DIR') or None

    def validate(self):
        """
        Check that every setting a run needs is present and valid.

        Raises:
            ConfigError: Listing every problem found
        """
        problems = []

        if not self.DATABASE_URL:
            problems.append('DATABASE_URL is required')
        if not self.FOLDER_ID:
            problems.append('FOLDER_ID is required')

        if self.STORAGE_BACKEND not in STORAGE_BACKENDS:
            problems.append(
                f"STORAGE_BACKEND must be one of {list(STORAGE_BACKENDS)}, got '{self.STORAGE_BACKEND}'"
            )
        elif self.STORAGE_BACKEND == 's3' and not self.S3_BUCKET:
            problems.append('S3_BUCKET is required for the s3 storage backend')

        if self.RETENTION != 'disabled' and self.RETENTION not in RETENTION_UNITS:
            problems.append(
                f"RETENTION must be 'disabled' or one of {list(RETENTION_UNITS)}, got '{self.RETENTION}'"
            )

        if self.LIST_PAGE_SIZE is None or self.LIST_PAGE_SIZE < 1:
            problems.append('LIST_PAGE_SIZE must be a positive integer')

        if problems:
            raise ConfigError('Invalid configuration: ' + '; '.join(problems))

        return self


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    def __init__(self, environ=None):
        super().__init__(environ)

        # Keep logs next to the checkout when nothing else is configured
        if not self.LOG_DIR:
            base_dir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
            self.LOG_DIR = os.path.join(base_dir, 'data', 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    TESTING = True


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def load_config(config_name=None, environ=None) -> Config:
    """
    Build the configuration object for a process.

    Args:
        config_name: Key into ``config``; defaults to PGKEEPER_ENV or 'production'
        environ: Mapping to read settings from (default: os.environ)

    Returns:
        Config instance (not yet validated)
    """
    env = os.environ if environ is None else environ

    if config_name is None:
        config_name = env.get('PGKEEPER_ENV', 'production')

    if config_name not in config:
        raise ConfigError(f"Unknown configuration name: {config_name}")

    return config[config_name](env)
