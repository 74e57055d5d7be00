import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, NamedTuple, Optional, Tuple

import aiohttp

from asset_syncer.application.checksum_gate import ChecksumGate
from asset_syncer.application.fetcher import AncillaryFetcher
from asset_syncer.config import SyncerConfig
from asset_syncer.domain.exceptions import TransientFetchException
from asset_syncer.domain.models import AssetFailure, Chart, RepositoryRef, SyncResult
from asset_syncer.domain.ports import AssetStore

logger = logging.getLogger(__name__)


class _AssetJob(NamedTuple):
    kind: str
    chart_id: str
    version: Optional[str]
    call: Callable[[], Awaitable[bool]]


class RepositorySynchronizer:
    """
    Service responsible for bringing the store in line with a repository's current index.

    Syncing is performed in the following steps:
    1. Make sure the repository row exists.
    2. Upsert every chart of the index.
    3. Prune charts that are no longer in the index.
    4. Fetch icons, then files of the latest versions, then files of historic versions,
       each stage fanned out over a bounded pool and finished before the next one starts.
    5. Commit the index checksum.

    Chart data is imported first so listings are consistent even when asset fetching
    fails or is interrupted. Asset failures are reported in the result, never raised.
    Callers must not run two syncs of the same repository at once.
    """

    def __init__(self, store: AssetStore, fetcher: AncillaryFetcher, config: SyncerConfig):
        self.store = store
        self.fetcher = fetcher
        self.config = config
        self.gate = ChecksumGate(store)

    async def repo_already_processed(self, repo: RepositoryRef, checksum: str) -> bool:
        return await self.gate.should_skip(repo, checksum)

    async def delete(self, repo: RepositoryRef) -> None:
        logger.info(f"Deleting repository {repo.namespace}/{repo.name}.")
        await self.store.delete_repository(repo)

    async def sync(
        self,
        repo: RepositoryRef,
        charts: List[Chart],
        checksum: str,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> SyncResult:
        """
        Syncs `charts` into the store and commits `checksum` once done.

        Raises:
            StoreWriteException, IntegrityException: a repository or chart write, or pruning, failed.
            Nothing committed before the failure is rolled back.
        """
        result = SyncResult(repository=repo, checksum=checksum)
        logger.info(f"Syncing {len(charts)} charts of {repo.namespace}/{repo.name}.")

        await self.store.ensure_repository(repo)

        for chart in charts:
            await self.store.upsert_chart(repo, chart)
        result.charts_synced = len(charts)

        removed = await self.store.delete_charts_not_in(repo, [chart.id for chart in charts])
        if removed:
            logger.info(f"Removed {removed} charts no longer in the index of {repo.name}.")

        if session is None:
            async with aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=self.config.fetch_concurrency),
            ) as own_session:
                await self._sync_assets(own_session, repo, charts, result)
        else:
            await self._sync_assets(session, repo, charts, result)

        await self.store.commit_repository_checksum(repo, checksum, datetime.now(timezone.utc))

        logger.info(
            f"Synced {repo.namespace}/{repo.name}: {result.charts_synced} charts, "
            f"{result.assets_stored} assets stored, {len(result.failures)} failed."
        )
        return result

    async def _sync_assets(self, session, repo: RepositoryRef, charts: List[Chart], result: SyncResult) -> None:
        icons = [
            _AssetJob('icon', chart.id, None, self._bind_icon(session, repo, chart))
            for chart in charts if chart.icon
        ]
        latest = [
            _AssetJob('files', chart.id, chart.chart_versions[0].version,
                      self._bind_files(session, repo, chart, 0))
            for chart in charts if chart.chart_versions
        ]
        historic = [
            _AssetJob('files', chart.id, chart.chart_versions[i].version,
                      self._bind_files(session, repo, chart, i))
            for chart in charts for i in range(1, len(chart.chart_versions))
        ]

        for stage, jobs in (("icons", icons), ("latest versions", latest), ("historic versions", historic)):
            stored, failures = await self._run_stage(stage, jobs)
            result.assets_stored += stored
            result.failures.extend(failures)

    def _bind_icon(self, session, repo, chart):
        return lambda: self.fetcher.fetch_and_store_icon(session, repo, chart)

    def _bind_files(self, session, repo, chart, index):
        return lambda: self.fetcher.fetch_and_store_files(session, repo, chart, chart.chart_versions[index])

    async def _run_stage(self, stage: str, jobs: List[_AssetJob]) -> Tuple[int, List[AssetFailure]]:
        """Runs all jobs with at most `fetch_concurrency` attempts in flight and waits for every one of them."""
        if not jobs:
            return 0, []

        logger.info(f"Fetching {stage}: {len(jobs)} items.")
        semaphore = asyncio.Semaphore(self.config.fetch_concurrency)

        results = await asyncio.gather(*(self._with_retries(job, semaphore) for job in jobs), return_exceptions=True)

        stored = 0
        failures: List[AssetFailure] = []
        for job, outcome in zip(jobs, results):
            if isinstance(outcome, Exception):
                logger.error(f"Failed to store {job.kind} of {job.chart_id} {job.version or ''}: {outcome}")
                failures.append(AssetFailure(kind=job.kind, chart_id=job.chart_id, version=job.version, error=str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome:
                stored += 1
        return stored, failures

    async def _with_retries(self, job: _AssetJob, semaphore: asyncio.Semaphore) -> bool:
        # The slot is held per attempt, never while backing off.
        max_retries = self.config.max_retries
        for attempt in range(max_retries):
            try:
                async with semaphore:
                    return await job.call()
            except TransientFetchException as e:
                if attempt + 1 >= max_retries:
                    raise
                sleep_time = self.config.retry_backoff * ((2 ** attempt) + random.uniform(0, 1))
                logger.warning(
                    f"Fetching {job.kind} of {job.chart_id} failed (attempt {attempt + 1}/{max_retries}): {e}. "
                    f"Retrying in {sleep_time:.1f}s..."
                )
                await asyncio.sleep(sleep_time)
        raise TransientFetchException(job.chart_id, f"gave up after {max_retries} attempts")
