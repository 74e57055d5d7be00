from datetime import datetime
from typing import Iterable, Optional, Protocol

from asset_syncer.domain.models import Chart, ChartFiles, IconAsset, RepositoryRef


class AssetStore(Protocol):
    """
    Persistence boundary for synced chart data.
    Each method is a single atomic write or read; no transaction spans two calls.
    """

    async def ensure_repository(self, repo: RepositoryRef) -> None: ...

    async def upsert_chart(self, repo: RepositoryRef, chart: Chart) -> None: ...

    async def upsert_file_bundle(self, files: ChartFiles) -> None: ...

    async def update_icon(self, repo: RepositoryRef, chart_id: str, icon_url: str, icon: IconAsset) -> None: ...

    async def icon_exists(self, repo: RepositoryRef, chart_id: str, icon_url: str) -> bool: ...

    async def files_exist(self, repo: RepositoryRef, files_id: str, digest: str) -> bool: ...

    async def delete_charts_not_in(self, repo: RepositoryRef, keep: Iterable[str]) -> int: ...

    async def delete_repository(self, repo: RepositoryRef) -> None: ...

    async def get_repository_checksum(self, repo: RepositoryRef) -> Optional[str]: ...

    async def commit_repository_checksum(
        self, repo: RepositoryRef, checksum: str, now: datetime
    ) -> None: ...


class ChartSource(Protocol):
    """Read side of a chart repository."""

    async def fetch_icon(self, session, repo: RepositoryRef, url: str) -> IconAsset: ...

    async def fetch_chart_tarball(self, session, repo: RepositoryRef, url: str) -> bytes: ...
