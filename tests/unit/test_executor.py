"""
Unit tests for the backup orchestrator (pgkeeper/backup/executor.py).

Tests BackupOrchestrator state transitions and failure containment.
"""

import os
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from pgkeeper.backup.artifact import FilesystemError
from pgkeeper.backup.dump import DumpError, DumpProducer
from pgkeeper.backup.executor import (
    BackupOrchestrator,
    RunState,
    create_orchestrator,
    execute_backup
)
from pgkeeper.backup.retention import PruneResult
from pgkeeper.backup.storage import AccessError, LocalStorage, RemoteObject, UploadError


def _leftover_files(directory):
    return sorted(os.listdir(directory))


class TestBackupOrchestrator:
    """Test BackupOrchestrator class."""

    def test_orchestrator_initialization(self, local_storage, fake_producer, temp_dir):
        orchestrator = BackupOrchestrator(
            local_storage, fake_producer, 'backups', retention='Week', temp_dir=str(temp_dir)
        )

        assert orchestrator.retention == 'week'
        assert orchestrator.upload_failure_fatal is True
        assert orchestrator.result is None
        assert orchestrator.pruner.storage is local_storage

    def test_orchestrator_rejects_unknown_retention(self, local_storage, fake_producer):
        with pytest.raises(ValueError):
            BackupOrchestrator(local_storage, fake_producer, 'backups', retention='fortnight')

    def test_successful_run(self, local_storage, make_pg_dump, temp_dir):
        """Test dump, upload and cleanup with a real producer and local folder."""
        producer = DumpProducer('postgresql://localhost/app', pg_dump_path=make_pg_dump(stdout='PGDMP'))
        orchestrator = BackupOrchestrator(local_storage, producer, 'backups', temp_dir=str(temp_dir))

        result = orchestrator.run()

        assert result.status == 'success'
        assert result.succeeded
        assert result.state == RunState.DONE
        assert result.states == [
            RunState.IDLE,
            RunState.DUMPING,
            RunState.UPLOADING,
            RunState.CLEANING_UP,
            RunState.DONE
        ]
        assert result.errors == []
        assert result.artifact.filename.startswith('backup-')
        assert result.artifact.filename.endswith('.tar.gz')
        assert result.remote_id == os.path.join('backups', result.artifact.filename)
        assert (local_storage.base_path / result.remote_id).exists()
        assert _leftover_files(temp_dir) == []
        assert result.started_at <= result.completed_at

    def test_artifact_written_to_temp_dir(self, local_storage, fake_producer, temp_dir):
        orchestrator = BackupOrchestrator(
            local_storage, fake_producer, 'backups', file_prefix='prod-', temp_dir=str(temp_dir)
        )

        orchestrator.run()

        target_path = fake_producer.produce.call_args[0][0]
        assert os.path.dirname(target_path) == str(temp_dir)
        assert os.path.basename(target_path).startswith('prod-')

    def test_dump_process_failure_skips_upload(self, fake_producer, temp_dir):
        """Test a failing dump ends the run without calling upload."""
        storage = MagicMock()
        fake_producer.produce.side_effect = DumpError(
            "pg_dump exited with status 1", cause='process', stderr='authentication failed', returncode=1
        )
        orchestrator = BackupOrchestrator(storage, fake_producer, 'backups', temp_dir=str(temp_dir))

        result = orchestrator.run()

        assert result.status == 'failed'
        assert result.states == [RunState.IDLE, RunState.DUMPING, RunState.FAILED]
        assert any('Backup dump failed (process)' in error for error in result.errors)
        assert any('authentication failed' in line for line in result.logs)
        storage.upload_object.assert_not_called()
        storage.verify_folder_access.assert_not_called()

    def test_empty_dump_fails_run(self, make_pg_dump, temp_dir):
        """Test a zero-exit dump with no output still fails the run."""
        storage = MagicMock()
        producer = DumpProducer('postgresql://localhost/app', pg_dump_path=make_pg_dump(stdout=''))
        orchestrator = BackupOrchestrator(storage, producer, 'backups', temp_dir=str(temp_dir))

        result = orchestrator.run()

        assert result.status == 'failed'
        assert any('(empty)' in error for error in result.errors)
        storage.upload_object.assert_not_called()
        assert _leftover_files(temp_dir) == []

    def test_upload_failure_removes_local_artifact(self, local_storage, make_pg_dump, temp_dir):
        """Test the artifact is gone even though the upload failed."""
        producer = DumpProducer('postgresql://localhost/app', pg_dump_path=make_pg_dump(stdout='PGDMP'))
        orchestrator = BackupOrchestrator(local_storage, producer, 'backups', temp_dir=str(temp_dir))

        with patch.object(LocalStorage, 'upload_object', side_effect=UploadError("disk full")):
            result = orchestrator.run()

        assert result.status == 'failed'
        assert result.states == [
            RunState.IDLE,
            RunState.DUMPING,
            RunState.UPLOADING,
            RunState.CLEANING_UP,
            RunState.FAILED
        ]
        assert 'Upload failed: disk full' in result.errors
        assert result.remote_id is None
        assert _leftover_files(temp_dir) == []

    def test_upload_failure_not_fatal_when_configured(self, fake_producer, temp_dir):
        storage = MagicMock()
        storage.upload_object.side_effect = UploadError("S3 upload failed (SlowDown)")
        orchestrator = BackupOrchestrator(
            storage, fake_producer, 'backups', temp_dir=str(temp_dir), upload_failure_fatal=False
        )

        result = orchestrator.run()

        assert result.status == 'success'
        assert result.state == RunState.DONE
        assert 'Upload failed: S3 upload failed (SlowDown)' in result.errors
        assert _leftover_files(temp_dir) == []

    def test_upload_verifies_folder_access_first(self, fake_producer, temp_dir):
        storage = MagicMock()
        storage.verify_folder_access.side_effect = AccessError("No access to folder: backups")
        orchestrator = BackupOrchestrator(storage, fake_producer, 'backups', temp_dir=str(temp_dir))

        result = orchestrator.run()

        assert result.status == 'failed'
        storage.upload_object.assert_not_called()
        assert _leftover_files(temp_dir) == []

    def test_upload_passes_stream_and_metadata(self, fake_producer, temp_dir):
        storage = MagicMock()
        uploaded = {}

        def _upload(folder_id, filename, mime_type, stream):
            uploaded.update(folder_id=folder_id, filename=filename, mime_type=mime_type, body=stream.read())
            return f"{folder_id}/{filename}"

        storage.upload_object.side_effect = _upload
        orchestrator = BackupOrchestrator(storage, fake_producer, 'backups', temp_dir=str(temp_dir))

        result = orchestrator.run()

        assert result.succeeded
        assert uploaded['folder_id'] == 'backups'
        assert uploaded['filename'] == result.artifact.filename
        assert uploaded['mime_type'] == 'application/gzip'
        assert uploaded['body'] == b'compressed dump'
        assert result.remote_id == f"backups/{result.artifact.filename}"

    def test_unexpected_error_still_removes_artifact(self, fake_producer, temp_dir):
        storage = MagicMock()
        storage.upload_object.side_effect = RuntimeError("socket closed")
        orchestrator = BackupOrchestrator(storage, fake_producer, 'backups', temp_dir=str(temp_dir))

        result = orchestrator.run()

        assert result.status == 'failed'
        assert result.state == RunState.FAILED
        assert any('socket closed' in error for error in result.errors)
        assert _leftover_files(temp_dir) == []

    @patch('pgkeeper.backup.executor.remove_artifact')
    def test_cleanup_failure_is_advisory(self, mock_remove, fake_producer, temp_dir):
        storage = MagicMock()
        mock_remove.side_effect = FilesystemError("Failed to remove local artifact: busy")
        orchestrator = BackupOrchestrator(storage, fake_producer, 'backups', temp_dir=str(temp_dir))

        result = orchestrator.run()

        assert result.status == 'success'
        assert "Failed to remove local artifact: busy" in result.errors
        mock_remove.assert_called_once()

    def test_retention_disabled_skips_pruning(self, fake_producer, temp_dir):
        storage = MagicMock()
        pruner = MagicMock()
        orchestrator = BackupOrchestrator(
            storage, fake_producer, 'backups', retention='disabled', temp_dir=str(temp_dir), pruner=pruner
        )

        result = orchestrator.run()

        pruner.prune_older_than.assert_not_called()
        assert RunState.PRUNING not in result.states

    @freeze_time("2024-01-15 12:00:00")
    def test_retention_prunes_before_dumping(self, fake_producer, temp_dir):
        storage = MagicMock()
        pruner = MagicMock()
        pruner.prune_older_than.return_value = PruneResult(deleted=3)
        orchestrator = BackupOrchestrator(
            storage, fake_producer, 'backups', retention='week', temp_dir=str(temp_dir), pruner=pruner
        )

        result = orchestrator.run()

        folder_id, cutoff = pruner.prune_older_than.call_args[0]
        assert folder_id == 'backups'
        assert cutoff.isoformat() == '2024-01-08T12:00:00+00:00'
        assert result.pruned == 3
        assert result.states[:3] == [RunState.IDLE, RunState.PRUNING, RunState.DUMPING]
        assert result.succeeded

    def test_pruning_error_does_not_abort_backup(self, fake_producer, temp_dir):
        storage = MagicMock()
        pruner = MagicMock()
        pruner.prune_older_than.return_value = PruneResult(error="No access to folder: backups")
        orchestrator = BackupOrchestrator(
            storage, fake_producer, 'backups', retention='day', temp_dir=str(temp_dir), pruner=pruner
        )

        result = orchestrator.run()

        assert result.succeeded
        assert 'Retention skipped: No access to folder: backups' in result.errors
        storage.upload_object.assert_called_once()

    def test_pruner_exception_does_not_abort_backup(self, fake_producer, temp_dir):
        storage = MagicMock()
        pruner = MagicMock()
        pruner.prune_older_than.side_effect = TypeError("can't compare offset-naive and offset-aware datetimes")
        orchestrator = BackupOrchestrator(
            storage, fake_producer, 'backups', retention='week', temp_dir=str(temp_dir), pruner=pruner
        )

        result = orchestrator.run()

        assert result.succeeded
        assert result.states[:3] == [RunState.IDLE, RunState.PRUNING, RunState.DUMPING]
        assert any(error.startswith('Retention skipped:') for error in result.errors)
        fake_producer.produce.assert_called_once()
        storage.upload_object.assert_called_once()

    def test_naive_remote_timestamps_do_not_abort_backup(self, fake_producer, temp_dir):
        storage = MagicMock()
        storage.list_objects.return_value = [RemoteObject(id='a.tar.gz', created_time=datetime(2020, 1, 1))]
        orchestrator = BackupOrchestrator(
            storage, fake_producer, 'backups', retention='week', temp_dir=str(temp_dir)
        )

        result = orchestrator.run()

        assert result.succeeded
        assert result.pruned == 1
        storage.delete_object.assert_called_once_with('a.tar.gz')
        fake_producer.produce.assert_called_once()

    def test_week_retention_end_to_end(self, local_storage, make_remote_backup, make_pg_dump, temp_dir):
        """Test a full run prunes the 10d and 8d backups, keeps the 3d one and uploads a new one."""
        make_remote_backup('backup-10d.tar.gz', days=10)
        make_remote_backup('backup-3d.tar.gz', days=3)
        make_remote_backup('backup-8d.tar.gz', days=8)
        producer = DumpProducer('postgresql://localhost/app', pg_dump_path=make_pg_dump(stdout='PGDMP'))
        orchestrator = BackupOrchestrator(
            local_storage, producer, 'backups', retention='week', temp_dir=str(temp_dir)
        )

        result = orchestrator.run()

        remaining = sorted(os.listdir(local_storage.base_path / 'backups'))
        assert result.succeeded
        assert result.pruned == 2
        assert remaining == sorted(['backup-3d.tar.gz', result.artifact.filename])

    def test_run_resets_between_runs(self, fake_producer, temp_dir):
        storage = MagicMock()
        storage.upload_object.side_effect = [UploadError("first fails"), 'backups/second']
        orchestrator = BackupOrchestrator(storage, fake_producer, 'backups', temp_dir=str(temp_dir))

        first = orchestrator.run()
        second = orchestrator.run()

        assert first.status == 'failed'
        assert second.status == 'success'
        assert second.errors == []
        assert first.artifact.filename != second.artifact.filename


class TestCreateOrchestrator:
    """Test building the orchestrator from configuration."""

    def test_create_orchestrator_from_config(self, test_config):
        orchestrator = create_orchestrator(test_config)

        assert isinstance(orchestrator.storage, LocalStorage)
        assert orchestrator.folder_id == 'backups'
        assert orchestrator.file_prefix == 'backup-'
        assert orchestrator.retention is None
        assert orchestrator.temp_dir == test_config.TEMP_DIR
        assert orchestrator.producer.database_url == test_config.DATABASE_URL
        assert orchestrator.pruner.page_size == 100

    def test_execute_backup(self, test_config, make_pg_dump):
        os.makedirs(os.path.join(test_config.LOCAL_STORAGE_DIR, 'backups'), exist_ok=True)
        test_config.PG_DUMP_PATH = make_pg_dump(stdout='PGDMP')

        result = execute_backup(test_config)

        assert result.succeeded
        assert os.listdir(test_config.TEMP_DIR) == []
