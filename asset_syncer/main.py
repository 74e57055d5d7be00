import argparse
import asyncio
import sys
import logging
from typing import List, Optional

import aiohttp
from pydantic import ValidationError

from asset_syncer.config import SyncerConfig
from asset_syncer.domain.exceptions import SyncerException
from asset_syncer.domain.models import RepositoryRef
from asset_syncer.infrastructure.acl import HelmIndexTranslator
from asset_syncer.infrastructure.chart_repo_client import ChartRepositoryClient
from asset_syncer.infrastructure.database import PostgresAssetStore
from asset_syncer.application.fetcher import AncillaryFetcher
from asset_syncer.application.sync_service import RepositorySynchronizer

logger = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="asset-syncer",
        description="Synchronize a Helm chart repository into the asset database.",
    )
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )
    parser.add_argument("--namespace", help="Repository namespace (defaults to SYNC_NAMESPACE)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Sync a chart repository")
    sync.add_argument("name", help="Repository name")
    sync.add_argument("url", help="Repository base URL")
    sync.add_argument("--auth-header", default=None, help="Authorization header for the repository")

    delete = subparsers.add_parser("delete", help="Delete a repository and its charts")
    delete.add_argument("name", help="Repository name")
    return parser


async def run_sync(config: SyncerConfig, repo: RepositoryRef) -> None:
    client = ChartRepositoryClient(config)
    store = PostgresAssetStore(db_url=config.database_url, pool_size=config.db_pool_size)
    synchronizer = RepositorySynchronizer(
        store=store,
        fetcher=AncillaryFetcher(source=client, store=store),
        config=config,
    )
    try:
        await store.init_tables()
        async with aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=config.fetch_concurrency),
        ) as session:
            raw_index = await client.fetch_index(session, repo)
            checksum = HelmIndexTranslator.checksum(raw_index)
            if await synchronizer.repo_already_processed(repo, checksum):
                logger.info(f"Skipping {repo.namespace}/{repo.name}: index unchanged.")
                return

            charts = HelmIndexTranslator.to_domain(repo, raw_index)
            result = await synchronizer.sync(repo, charts, checksum, session=session)
            for failure in result.failures:
                logger.warning(f"Not stored: {failure.kind} of {failure.chart_id} {failure.version or ''}")
    finally:
        await store.dispose()


async def run_delete(config: SyncerConfig, repo: RepositoryRef) -> None:
    store = PostgresAssetStore(db_url=config.database_url, pool_size=config.db_pool_size)
    synchronizer = RepositorySynchronizer(
        store=store,
        fetcher=AncillaryFetcher(source=ChartRepositoryClient(config), store=store),
        config=config,
    )
    try:
        await synchronizer.delete(repo)
    finally:
        await store.dispose()


def main(argv: Optional[List[str]] = None) -> None:
    args = _make_parser().parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    try:
        config = SyncerConfig.from_env()
    except (ValueError, ValidationError) as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    repo = RepositoryRef(
        namespace=args.namespace or config.namespace,
        name=args.name,
        url=getattr(args, "url", ""),
        auth_header=getattr(args, "auth_header", None),
    )

    try:
        if args.command == "sync":
            asyncio.run(run_sync(config, repo))
        else:
            asyncio.run(run_delete(config, repo))
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Exiting gracefully.")
    except SyncerException as e:
        logger.error(f"{args.command} of {repo.namespace}/{repo.name} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
