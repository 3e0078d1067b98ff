"""
Backup module for pgkeeper.

This module handles the core backup functionality including:
- Database dump into a compressed artifact
- Storage gateways (S3 and local directory)
- Retention pruning of old remote backups
- Run orchestration
"""

from .executor import BackupOrchestrator, RunResult, RunState, create_orchestrator, execute_backup
from .dump import DumpProducer, DumpError
from .artifact import BackupArtifact, FilesystemError, generate_artifact_filename
from .storage import S3Storage, LocalStorage, StorageError, create_storage
from .retention import RetentionPruner, compute_cutoff

__all__ = [
    'BackupOrchestrator',
    'RunResult',
    'RunState',
    'create_orchestrator',
    'execute_backup',
    'DumpProducer',
    'DumpError',
    'BackupArtifact',
    'FilesystemError',
    'generate_artifact_filename',
    'S3Storage',
    'LocalStorage',
    'StorageError',
    'create_storage',
    'RetentionPruner',
    'compute_cutoff'
]
