"""
Dump producer for PostgreSQL databases.

Runs pg_dump in tar format and gzip-compresses its output into a local
artifact, then checks that the artifact decompresses to at least one byte.
A dump can exit 0 and still write nothing, so the exit code alone is not
trusted.
"""

import gzip
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit

from .artifact import BackupArtifact, FilesystemError, get_artifact_size, remove_artifact


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

CAUSE_PROCESS = 'process'
CAUSE_EMPTY = 'empty'
CAUSE_EXISTS = 'exists'


class DumpError(Exception):
    """Raised when the dump cannot produce a usable artifact."""

    def __init__(self, message: str, cause: str = CAUSE_PROCESS, stderr: str = '', returncode: Optional[int] = None):
        super().__init__(message)
        self.cause = cause
        self.stderr = stderr
        self.returncode = returncode


def redact_url(url: str) -> str:
    """Hide the password part of a connection URL for logging."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return '<unparseable url>'

    if parts.password is None:
        return url

    netloc = parts.netloc.replace(f":{parts.password}@", ':****@', 1)
    return urlunsplit(parts._replace(netloc=netloc))


class DumpProducer:
    """
    Produces a compressed pg_dump artifact on local disk.
    """

    def __init__(self, database_url: str, pg_dump_path: str = 'pg_dump', extra_args: Optional[List[str]] = None):
        """
        Initialize dump producer.

        Args:
            database_url: Connection string passed to pg_dump --dbname
            pg_dump_path: pg_dump executable (name or path)
            extra_args: Additional pg_dump arguments
        """
        self.database_url = database_url
        self.pg_dump_path = pg_dump_path
        self.extra_args = list(extra_args or [])

    def build_command(self) -> List[str]:
        return [
            self.pg_dump_path,
            f"--dbname={self.database_url}",
            '--format=tar',
            *self.extra_args
        ]

    def produce(self, target_path: str) -> BackupArtifact:
        """
        Dump the database into a gzip-compressed file at target_path.

        Args:
            target_path: Where to write the artifact; must not exist yet

        Returns:
            BackupArtifact describing the file

        Raises:
            DumpError: If the dump fails, the artifact is empty, or
                target_path already exists
        """
        logger.info(f"Dumping {redact_url(self.database_url)} to {target_path}")

        try:
            raw = open(target_path, 'xb')
        except FileExistsError:
            raise DumpError(f"Backup file already exists: {target_path}", cause=CAUSE_EXISTS)
        except OSError as e:
            raise DumpError(f"Cannot create backup file {target_path}: {e}")

        try:
            with raw:
                self._run_dump(raw)
            self._verify_not_empty(target_path)
            size_bytes = get_artifact_size(target_path)
        except (DumpError, FilesystemError):
            self._discard(target_path)
            raise
        except Exception as e:
            self._discard(target_path)
            raise DumpError(f"Dump failed: {e}")

        artifact = BackupArtifact(
            filename=os.path.basename(target_path),
            local_path=target_path,
            size_bytes=size_bytes,
            created_at=datetime.now(timezone.utc)
        )

        logger.info(f"Backup file size: {size_bytes / 1024 / 1024:.2f} MB")
        logger.info(f"Backup file created at: {target_path}")
        return artifact

    def _run_dump(self, raw):
        """
        Stream pg_dump stdout through gzip into an open file.

        stderr is spooled to a temporary file so a chatty dump cannot block
        on a full pipe while stdout is being drained.
        """
        command = self.build_command()

        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=stderr_file)
            except OSError as e:
                raise DumpError(f"Failed to start {self.pg_dump_path}: {e}")

            try:
                with gzip.GzipFile(fileobj=raw, mode='wb') as compressed:
                    with process.stdout:
                        shutil.copyfileobj(process.stdout, compressed, CHUNK_SIZE)
            except BaseException:
                process.kill()
                process.wait()
                raise

            returncode = process.wait()

            stderr_file.seek(0)
            stderr = stderr_file.read().decode('utf-8', errors='replace').rstrip()

        if returncode != 0:
            raise DumpError(
                f"{os.path.basename(self.pg_dump_path)} exited with status {returncode}: {stderr}",
                cause=CAUSE_PROCESS,
                stderr=stderr,
                returncode=returncode
            )

        if stderr:
            logger.warning(stderr)

    @staticmethod
    def _verify_not_empty(target_path: str):
        try:
            with gzip.open(target_path, 'rb') as f:
                first_byte = f.read(1)
        except (OSError, EOFError) as e:
            raise DumpError(f"Backup file is unreadable: {e}", cause=CAUSE_EMPTY)

        if not first_byte:
            raise DumpError("Backup file is empty", cause=CAUSE_EMPTY)

    @staticmethod
    def _discard(target_path: str):
        try:
            remove_artifact(target_path)
        except FilesystemError as e:
            logger.warning(f"Failed to remove partial backup file: {e}")


def create_producer(config) -> DumpProducer:
    """
    Factory function to create the dump producer from configuration.

    Args:
        config: Config instance

    Returns:
        DumpProducer instance
    """
    return DumpProducer(
        database_url=config.DATABASE_URL,
        pg_dump_path=config.PG_DUMP_PATH,
        extra_args=shlex.split(config.DUMP_EXTRA_ARGS or '')
    )
