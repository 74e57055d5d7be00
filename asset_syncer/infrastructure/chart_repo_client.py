import aiohttp
import asyncio
import logging
from typing import Dict
from urllib.parse import urljoin

from asset_syncer.config import SyncerConfig
from asset_syncer.domain.exceptions import AssetNotFoundException, TransientFetchException
from asset_syncer.domain.models import IconAsset, RepositoryRef

logger = logging.getLogger(__name__)

SERVER_ERRORS = {500, 502, 503, 504}


class ChartRepositoryClient:
    """
    Client for a Helm chart repository served over HTTP.
    Makes exactly one attempt per call; retrying is up to the caller.
    """

    def __init__(self, config: SyncerConfig):
        self.timeout = aiohttp.ClientTimeout(total=config.request_timeout, connect=config.connect_timeout)
        self.user_agent = config.user_agent

    def _headers(self, repo: RepositoryRef) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if repo.auth_header:
            headers["Authorization"] = repo.auth_header
        return headers

    @staticmethod
    def resolve_url(repo: RepositoryRef, url: str) -> str:
        """Chart URLs in an index may be relative to the repository URL."""
        base = repo.url if repo.url.endswith("/") else repo.url + "/"
        return urljoin(base, url)

    async def _get(self, session: aiohttp.ClientSession, repo: RepositoryRef, url: str):
        target = self.resolve_url(repo, url)
        try:
            async with session.get(target, headers=self._headers(repo), timeout=self.timeout) as response:
                if response.status == 404:
                    raise AssetNotFoundException(target)
                if response.status in SERVER_ERRORS:
                    raise TransientFetchException(target, f"server error ({response.status})")
                response.raise_for_status()
                body = await response.read()
                return body, response.headers.get("Content-Type", "")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientFetchException(target, str(e) or type(e).__name__) from e

    async def fetch_index(self, session: aiohttp.ClientSession, repo: RepositoryRef) -> bytes:
        body, _ = await self._get(session, repo, "index.yaml")
        logger.info(f"Fetched index of {repo.name} ({len(body)} bytes).")
        return body

    async def fetch_icon(self, session: aiohttp.ClientSession, repo: RepositoryRef, url: str) -> IconAsset:
        body, content_type = await self._get(session, repo, url)
        return IconAsset(data=body, content_type=content_type)

    async def fetch_chart_tarball(self, session: aiohttp.ClientSession, repo: RepositoryRef, url: str) -> bytes:
        body, _ = await self._get(session, repo, url)
        return body
