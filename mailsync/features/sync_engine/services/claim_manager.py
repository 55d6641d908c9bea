"""
Claim manager: exclusive acquisition of the next eligible chunk.
"""

from datetime import datetime

from mailsync.features.sync_engine.domain.config import get_scheduler_config
from mailsync.features.sync_engine.domain.models import ChunkJob
from mailsync.features.sync_engine.repository.chunk_repository import ChunkRepository
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ClaimManager:
    async def claim(self, worker_id: str) -> ChunkJob | None:
        """
        Claim one chunk for worker_id, or None when no work is available.

        Tenants at their parallel limit are skipped; the limit comes from the
        active SchedulerConfig plus per-tenant overrides.
        """
        config = get_scheduler_config()
        chunk = await ChunkRepository.claim_next(
            worker_id,
            config.parallel_limit,
            config.parallel_limit_overrides(),
        )
        if chunk is None:
            logger.debug("No work available", worker_id=worker_id)
        return chunk

    async def release(self, chunk_id: str, worker_id: str, retry_at: datetime | None = None) -> bool:
        """Give a claim back without consuming its attempt."""
        return await ChunkRepository.release_claim(chunk_id, worker_id, retry_at)

    async def save_checkpoint(self, chunk_id: str, worker_id: str, data: dict) -> bool:
        saved = await ChunkRepository.save_checkpoint(chunk_id, worker_id, data)
        if not saved:
            logger.warning("Checkpoint rejected, chunk no longer owned", chunk_id=chunk_id, worker_id=worker_id)
        return saved


claim_manager = ClaimManager()
