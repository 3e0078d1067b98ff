import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'

EXIT_OK = 0
EXIT_BACKUP_FAILED = 1
EXIT_CONFIG_ERROR = 2


def configure_logging(config):
    """Configure process logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if getattr(config, 'DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler, only when a log directory is configured
    if config.LOG_DIR:
        os.makedirs(config.LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(config.LOG_DIR, 'pgkeeper.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # AWS SDK debug output drowns the backup log
    for noisy in ('boto3', 'botocore', 's3transfer', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def main(config_name=None, environ=None) -> int:
    """
    Process entry point.

    Single-shot mode runs one backup and returns its exit code. Otherwise an
    optional startup run is followed by the cron schedule, which blocks.

    Returns:
        Process exit code
    """
    from pgkeeper.config import ConfigError, load_config
    from pgkeeper.backup.executor import create_orchestrator
    from pgkeeper.backup.storage import StorageError
    from pgkeeper.scheduler import init_scheduler, start_scheduler, stop_scheduler

    logger = logging.getLogger(__name__)

    try:
        config = load_config(config_name, environ).validate()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(str(e))
        return EXIT_CONFIG_ERROR

    configure_logging(config)

    try:
        orchestrator = create_orchestrator(config)
    except StorageError as e:
        logger.error(f"Failed to set up storage: {e}")
        return EXIT_BACKUP_FAILED

    if config.SINGLE_SHOT_MODE:
        logger.info("Single-shot mode: running one backup")
        result = orchestrator.run()
        return EXIT_OK if result.succeeded else EXIT_BACKUP_FAILED

    if config.RUN_ON_STARTUP:
        logger.info("Running backup on startup")
        orchestrator.run()

    try:
        init_scheduler(orchestrator, config)
    except ValueError as e:
        logger.error(f"Invalid BACKUP_CRON_SCHEDULE '{config.BACKUP_CRON_SCHEDULE}': {e}")
        return EXIT_CONFIG_ERROR

    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down")
        stop_scheduler()

    return EXIT_OK
