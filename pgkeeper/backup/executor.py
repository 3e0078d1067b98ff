"""
Backup orchestrator - runs the complete backup workflow.

Workflow:
1. Prune remote backups older than one retention unit (optional, advisory)
2. Dump the database into a compressed local artifact (fatal on failure)
3. Upload the artifact to the remote folder (fatal or advisory, see
   upload_failure_fatal)
4. Remove the local artifact, whatever happened to the upload
5. Report the run outcome as a RunResult

run() never raises; every failure ends up in the result and the log.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from .artifact import (
    ARTIFACT_MIME_TYPE,
    BackupArtifact,
    FilesystemError,
    generate_artifact_filename,
    remove_artifact,
)
from .dump import DumpError, create_producer
from .retention import RetentionPruner, compute_cutoff, parse_retention
from .storage import DEFAULT_PAGE_SIZE, StorageError, create_storage


logger = logging.getLogger(__name__)

STATUS_RUNNING = 'running'
STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'


class RunState(str, Enum):
    IDLE = 'idle'
    PRUNING = 'pruning'
    DUMPING = 'dumping'
    UPLOADING = 'uploading'
    CLEANING_UP = 'cleaning_up'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class RunResult:
    """Outcome of one backup run."""

    status: str = STATUS_RUNNING
    state: RunState = RunState.IDLE
    states: List[RunState] = field(default_factory=lambda: [RunState.IDLE])
    artifact: Optional[BackupArtifact] = None
    remote_id: Optional[str] = None
    pruned: int = 0
    errors: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS


class BackupOrchestrator:
    """
    Orchestrates one backup run against a single remote folder.
    """

    def __init__(
        self,
        storage,
        producer,
        folder_id: str,
        file_prefix: str = 'backup-',
        retention: Optional[str] = None,
        temp_dir: Optional[str] = None,
        upload_failure_fatal: bool = True,
        pruner: Optional[RetentionPruner] = None,
        page_size: int = DEFAULT_PAGE_SIZE
    ):
        """
        Initialize backup orchestrator.

        Args:
            storage: Storage gateway for the remote folder
            producer: DumpProducer (or compatible) writing the artifact
            folder_id: Remote folder receiving the backups
            file_prefix: Artifact filename prefix
            retention: 'disabled'/None or a retention unit (day, week, ...)
            temp_dir: Directory for the local artifact (default: system temp dir)
            upload_failure_fatal: Whether a failed upload fails the run
            pruner: RetentionPruner to use (default: one over storage)
            page_size: Listing page cap for the default pruner
        """
        self.storage = storage
        self.producer = producer
        self.folder_id = folder_id
        self.file_prefix = file_prefix
        self.retention = parse_retention(retention)
        self.temp_dir = temp_dir
        self.upload_failure_fatal = upload_failure_fatal
        self.pruner = pruner or RetentionPruner(storage, page_size=page_size)

        self.result = None
        self.artifact_path = None

    def run(self) -> RunResult:
        """
        Execute one backup run.

        Returns:
            RunResult with the final state, errors and log lines
        """
        self.result = RunResult(started_at=datetime.now(timezone.utc))
        self.artifact_path = None

        try:
            self._execute_workflow()
        except Exception as e:
            logger.exception("Unexpected error during backup run")
            self._fail(f"Something went wrong: {e}")
        finally:
            # Only reached with a path still set when the workflow blew up mid-way
            if self.artifact_path:
                self._remove_local_artifact()
            self.result.completed_at = datetime.now(timezone.utc)

        return self.result

    def _execute_workflow(self):
        """Execute the workflow steps in order."""
        if self.retention:
            self._prune()

        artifact = self._dump()
        if artifact is None:
            return

        upload_error = self._upload(artifact)

        self._transition(RunState.CLEANING_UP)
        self._remove_local_artifact()

        if upload_error and self.upload_failure_fatal:
            self._fail(f"Backup {artifact.filename} was not uploaded: {upload_error}")
            return

        self._transition(RunState.DONE)
        self.result.status = STATUS_SUCCESS
        self._log("All done!")

    def _prune(self):
        self._transition(RunState.PRUNING)

        cutoff = compute_cutoff(self.retention)
        self._log(f"Deleting old backups older than a {self.retention} (before {cutoff.isoformat()})")

        try:
            prune_result = self.pruner.prune_older_than(self.folder_id, cutoff)
        except Exception as e:
            logger.exception("Retention pass raised")
            self.result.errors.append(f"Retention skipped: {e}")
            self._log(f"Retention failed, proceeding with backup: {e}", logging.WARNING)
            return

        self.result.pruned = prune_result.deleted

        if prune_result.error:
            self.result.errors.append(f"Retention skipped: {prune_result.error}")
        elif prune_result.failed:
            self.result.errors.append(f"Retention failed to delete {prune_result.failed} backup(s)")

        self._log("Delete complete! Proceeding with backup.")

    def _dump(self) -> Optional[BackupArtifact]:
        """
        Produce the local artifact.

        Returns:
            BackupArtifact, or None when the dump failed (run is marked failed)
        """
        self._transition(RunState.DUMPING)

        filename = generate_artifact_filename(self.file_prefix)
        target_path = os.path.join(self.temp_dir or tempfile.gettempdir(), filename)

        self._log(f"Starting backup: {filename}")

        try:
            artifact = self.producer.produce(target_path)
        except DumpError as e:
            if e.stderr:
                self._log(e.stderr, logging.ERROR)
            self._fail(f"Backup dump failed ({e.cause}): {e}")
            return None

        self.artifact_path = artifact.local_path
        self.result.artifact = artifact
        self._log(f"Backup done ({artifact.size_bytes / 1024 / 1024:.2f} MB)! Uploading...")
        return artifact

    def _upload(self, artifact: BackupArtifact) -> Optional[str]:
        """
        Upload the artifact to the remote folder.

        Returns:
            None on success, otherwise the error message
        """
        self._transition(RunState.UPLOADING)

        try:
            self.storage.verify_folder_access(self.folder_id)

            with open(artifact.local_path, 'rb') as stream:
                remote_id = self.storage.upload_object(
                    self.folder_id,
                    artifact.filename,
                    ARTIFACT_MIME_TYPE,
                    stream
                )
        except (StorageError, OSError) as e:
            message = str(e)
            self.result.errors.append(f"Upload failed: {message}")
            self._log(f"Error uploading backup {artifact.filename}: {message}", logging.ERROR)
            return message

        self.result.remote_id = remote_id
        self._log(f"Backup {artifact.filename} uploaded successfully ({remote_id}).")
        return None

    def _remove_local_artifact(self):
        """Remove the local artifact; failures are logged, never raised."""
        path = self.artifact_path
        self.artifact_path = None

        try:
            if remove_artifact(path):
                self._log(f"Removed local backup file: {path}")
        except FilesystemError as e:
            self.result.errors.append(str(e))
            self._log(f"Warning: {e}", logging.WARNING)

    def _transition(self, state: RunState):
        self.result.state = state
        self.result.states.append(state)
        logger.debug(f"Backup run state: {state.value}")

    def _fail(self, message: str):
        self.result.errors.append(message)
        self.result.status = STATUS_FAILED
        self._transition(RunState.FAILED)
        self._log(message, logging.ERROR)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def create_orchestrator(config, storage=None, producer=None) -> BackupOrchestrator:
    """
    Build an orchestrator from configuration.

    Args:
        config: Validated Config instance
        storage: Optional storage gateway (default: create_storage(config))
        producer: Optional dump producer (default: create_producer(config))

    Returns:
        BackupOrchestrator instance
    """
    if storage is None:
        storage = create_storage(config)
    if producer is None:
        producer = create_producer(config)

    return BackupOrchestrator(
        storage=storage,
        producer=producer,
        folder_id=config.FOLDER_ID,
        file_prefix=config.FILE_PREFIX,
        retention=config.RETENTION,
        temp_dir=config.TEMP_DIR,
        upload_failure_fatal=config.UPLOAD_FAILURE_FATAL,
        page_size=config.LIST_PAGE_SIZE
    )


def execute_backup(config) -> RunResult:
    """
    Run one backup with the given configuration.

    Args:
        config: Validated Config instance

    Returns:
        RunResult of the run
    """
    orchestrator = create_orchestrator(config)
    return orchestrator.run()
