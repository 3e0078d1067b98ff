"""
Retention policy enforcement for backups.

Removes remote backups older than one retention unit (hour, day, week, month
or year). Pruning is housekeeping: it reports what happened and never raises,
so a failed cleanup cannot cost the backup itself.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from .artifact import ARTIFACT_MIME_TYPE
from .storage import DEFAULT_PAGE_SIZE, as_utc


logger = logging.getLogger(__name__)

RETENTION_DISABLED = 'disabled'
RETENTION_UNITS = ('hour', 'day', 'week', 'month', 'year')


def parse_retention(value: Optional[str]) -> Optional[str]:
    """
    Normalize a retention setting.

    Args:
        value: 'disabled', '' / None, or one of RETENTION_UNITS

    Returns:
        The unit, or None when retention is disabled

    Raises:
        ValueError: If value is not a known unit
    """
    if value is None:
        return None

    unit = value.strip().lower()
    if unit in ('', RETENTION_DISABLED):
        return None
    if unit not in RETENTION_UNITS:
        raise ValueError(
            f"Invalid retention: {value}. "
            f"Valid options: {[RETENTION_DISABLED] + list(RETENTION_UNITS)}"
        )
    return unit


def compute_cutoff(unit: str, now: Optional[datetime] = None) -> datetime:
    """
    Compute the pruning cutoff: now minus exactly one unit.

    Months and years use calendar arithmetic, so one month before March 31st
    is the last day of February.

    Args:
        unit: One of RETENTION_UNITS
        now: Reference time (default: current UTC time)

    Returns:
        Timezone-aware UTC cutoff
    """
    if unit not in RETENTION_UNITS:
        raise ValueError(f"Invalid retention unit: {unit}")

    now = datetime.now(timezone.utc) if now is None else as_utc(now)
    return now - relativedelta(**{f"{unit}s": 1})


@dataclass
class PruneResult:
    """Outcome of one pruning pass."""

    deleted: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0


class RetentionPruner:
    """
    Deletes remote backups created before a cutoff.

    Only the first listing page is consulted; a folder holding more than
    page_size stale backups is pruned over several runs.
    """

    def __init__(self, storage, mime_type: str = ARTIFACT_MIME_TYPE, page_size: int = DEFAULT_PAGE_SIZE):
        """
        Initialize retention pruner.

        Args:
            storage: Storage gateway (S3Storage, LocalStorage or compatible)
            mime_type: Type of objects eligible for pruning
            page_size: Listing page cap
        """
        self.storage = storage
        self.mime_type = mime_type
        self.page_size = page_size

    def prune_older_than(self, folder_id: str, cutoff: datetime) -> PruneResult:
        """
        Delete backups in folder_id created strictly before cutoff.

        Args:
            folder_id: Remote folder
            cutoff: Objects created at or after this time are kept

        Returns:
            PruneResult with counts; error is set when nothing could be pruned
        """
        result = PruneResult()
        cutoff = as_utc(cutoff)

        try:
            self.storage.verify_folder_access(folder_id)
        except Exception as e:
            result.error = str(e)
            self._log(result, f"No access to folder {folder_id}, skipping retention: {e}", logging.ERROR)
            return result

        try:
            objects = self.storage.list_objects(
                folder_id,
                mime_type=self.mime_type,
                created_before=cutoff,
                page_size=self.page_size
            )
        except Exception as e:
            result.error = str(e)
            self._log(result, f"Failed to list old backups: {e}", logging.ERROR)
            return result

        # Plain lists from other gateways carry no flag; a full filtered page is the best hint
        truncated = getattr(objects, 'truncated', None)
        if truncated is None:
            truncated = len(objects) >= self.page_size

        if truncated:
            self._log(
                result,
                f"Listing returned a full page ({self.page_size}); older backups may remain until the next run",
                logging.WARNING
            )

        if not objects:
            self._log(result, f"No backups older than {cutoff.isoformat()}")
            return result

        for obj in objects:
            try:
                # Objects at or after the cutoff are kept even if the gateway returned them
                if not obj.id or obj.created_time is None or as_utc(obj.created_time) >= cutoff:
                    result.skipped += 1
                    continue

                self.storage.delete_object(obj.id)
                result.deleted += 1
                self._log(result, f"Deleted old backup: {obj.id}")
            except Exception as e:
                result.failed += 1
                self._log(result, f"Failed to delete old backup {obj.id}: {e}", logging.WARNING)

        self._log(
            result,
            f"Retention complete. Deleted: {result.deleted}, "
            f"Failed: {result.failed}, Skipped: {result.skipped}"
        )
        return result

    def _log(self, result: PruneResult, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            result: PruneResult collecting the pass's log lines
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
