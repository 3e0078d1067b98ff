"""
Backup artifact helpers.

An artifact is the gzip-compressed pg_dump tar stream written to local disk
for the duration of one run:
- generate_artifact_filename: {prefix}{sanitized UTC timestamp}.tar.gz
- get_artifact_size: size on disk
- remove_artifact: delete the local copy once the upload has been attempted
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


ARTIFACT_EXTENSION = 'tar.gz'
ARTIFACT_MIME_TYPE = 'application/gzip'

# Filename suffixes that identify each mime type in a listing
MIME_EXTENSIONS = {
    'application/gzip': ('.gz',),
    'application/x-tar': ('.tar',),
}


class FilesystemError(Exception):
    """Raised when the local artifact cannot be inspected or removed."""
    pass


@dataclass
class BackupArtifact:
    """A compressed dump on local disk, owned by the current run."""

    filename: str
    local_path: str
    size_bytes: int
    created_at: datetime


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """
    Format a moment as an ISO-8601 UTC timestamp safe for filenames.

    The colons and the fractional-second period are replaced by dashes:
    2024-01-15T12:00:00.123456Z -> 2024-01-15T12-00-00-123456Z

    Args:
        moment: Time to format (default: now)

    Returns:
        Sanitized timestamp string
    """
    if moment is None:
        moment = datetime.now(timezone.utc)
    elif moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)

    iso = moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
    return iso.replace(':', '-').replace('.', '-')


def generate_artifact_filename(prefix: str, moment: Optional[datetime] = None) -> str:
    """
    Generate the artifact filename for a run.

    Format: {prefix}{YYYY-MM-DDTHH-MM-SS-ffffffZ}.tar.gz

    Args:
        prefix: Filename prefix from configuration
        moment: Time of the run (default: now)

    Returns:
        Filename (without path)
    """
    return f"{prefix or ''}{format_timestamp(moment)}.{ARTIFACT_EXTENSION}"


def matches_mime_type(name: str, mime_type: Optional[str]) -> bool:
    """Check whether an object name carries an extension for mime_type."""
    if not mime_type:
        return True
    extensions = MIME_EXTENSIONS.get(mime_type)
    if extensions is None:
        return False
    return name.endswith(extensions)


def get_artifact_size(artifact_path: str) -> int:
    """
    Get the size of an artifact file in bytes.

    Raises:
        FilesystemError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(artifact_path)
    except FileNotFoundError:
        raise FilesystemError(f"Artifact not found: {artifact_path}")
    except OSError as e:
        raise FilesystemError(f"Failed to get artifact size: {e}")


def remove_artifact(artifact_path: str) -> bool:
    """
    Remove a local artifact.

    Args:
        artifact_path: Path to the artifact

    Returns:
        True if a file was removed, False if there was nothing to remove

    Raises:
        FilesystemError: If the file exists but cannot be removed
    """
    try:
        os.remove(artifact_path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        raise FilesystemError(f"Failed to remove local artifact {artifact_path}: {e}")
