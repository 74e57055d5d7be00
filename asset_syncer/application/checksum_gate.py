import logging

from asset_syncer.domain.exceptions import SyncerException
from asset_syncer.domain.models import RepositoryRef
from asset_syncer.domain.ports import AssetStore

logger = logging.getLogger(__name__)


class ChecksumGate:
    """Decides whether a repository's index is unchanged since its last successful sync."""

    def __init__(self, store: AssetStore):
        self.store = store

    async def should_skip(self, repo: RepositoryRef, checksum: str) -> bool:
        # Any doubt means sync.
        try:
            stored = await self.store.get_repository_checksum(repo)
        except SyncerException as e:
            logger.warning(f"Could not read checksum of {repo.namespace}/{repo.name}: {e}")
            return False
        return stored is not None and stored == checksum
