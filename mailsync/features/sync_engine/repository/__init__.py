"""
Persistence layer for the sync engine.
"""

from .chunk_repository import ChunkRepository, ChunkRepositoryError
from .dead_letter_repository import DeadLetterRepository, DeadLetterRepositoryError
from .mailbox_directory import SqlMailboxDirectory
from .protection_repository import ProtectionRepository, ProtectionRepositoryError
from .sync_job_repository import SyncJobRepository, SyncJobRepositoryError

__all__ = [
    "ChunkRepository",
    "ChunkRepositoryError",
    "DeadLetterRepository",
    "DeadLetterRepositoryError",
    "ProtectionRepository",
    "ProtectionRepositoryError",
    "SqlMailboxDirectory",
    "SyncJobRepository",
    "SyncJobRepositoryError",
]
