import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.dialects.postgresql import insert, JSONB
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy import (
    Table, Column, String, Integer, DateTime, LargeBinary, Text, MetaData,
    ForeignKeyConstraint, UniqueConstraint, Index, delete, select, update, text,
)

from asset_syncer.domain.exceptions import IntegrityException, StoreWriteException
from asset_syncer.domain.models import Chart, ChartFiles, IconAsset, RepositoryRef

logger = logging.getLogger(__name__)

# SQLAlchemy core Table definitions
metadata = MetaData()
repos_table = Table(
    'repos', metadata,
    Column('namespace', String, primary_key=True),
    Column('name', String, primary_key=True),
    Column('checksum', String, nullable=True),
    Column('last_update', DateTime(timezone=True), nullable=True),
)

charts_table = Table(
    'charts', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('repo_namespace', String, nullable=False),
    Column('repo_name', String, nullable=False),
    Column('chart_id', String, nullable=False),
    Column('info', JSONB, nullable=False),
    Column('raw_icon', LargeBinary, nullable=True),
    Column('icon_content_type', String, nullable=True),
    Column('icon_url', String, nullable=True),
    UniqueConstraint('repo_namespace', 'repo_name', 'chart_id', name='uq_charts_repo_chart'),
    ForeignKeyConstraint(
        ['repo_namespace', 'repo_name'], ['repos.namespace', 'repos.name'], ondelete='CASCADE'
    ),
)

files_table = Table(
    'files', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('repo_namespace', String, nullable=False),
    Column('repo_name', String, nullable=False),
    Column('chart_files_id', String, nullable=False),
    Column('digest', String, nullable=False, server_default=text("''")),
    Column('readme', Text, nullable=False, server_default=text("''")),
    Column('values', Text, nullable=False, server_default=text("''")),
    Column('values_schema', Text, nullable=False, server_default=text("''")),
    UniqueConstraint('repo_namespace', 'repo_name', 'chart_files_id', name='uq_files_repo_files'),
    ForeignKeyConstraint(
        ['repo_namespace', 'repo_name'], ['repos.namespace', 'repos.name'], ondelete='CASCADE'
    ),
)
Index('ix_files_digest', files_table.c.chart_files_id, files_table.c.digest)


class PostgresAssetStore:
    """
    Asset store backed by PostgreSQL.
    Every public method runs exactly one statement in its own transaction.
    """

    def __init__(self, db_url: str, pool_size: int = 10):
        self.engine = create_async_engine(db_url, echo=False, pool_size=pool_size)

    @asynccontextmanager
    async def _transaction(self, action: str):
        try:
            async with self.engine.begin() as conn:
                yield conn
        except IntegrityError as e:
            raise IntegrityException(f"{action} violates store integrity: {e.orig}") from e
        except (SQLAlchemyError, OSError) as e:
            raise StoreWriteException(f"{action} failed: {e}") from e

    @staticmethod
    def _repo_clause(table: Table, repo: RepositoryRef):
        return (table.c.repo_namespace == repo.namespace) & (table.c.repo_name == repo.name)

    async def init_tables(self) -> None:
        async with self._transaction("creating tables") as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def ensure_repository(self, repo: RepositoryRef) -> None:
        """Creates the repository row if missing; an existing checksum is left untouched."""
        stmt = insert(repos_table).values(namespace=repo.namespace, name=repo.name)
        stmt = stmt.on_conflict_do_nothing(index_elements=['namespace', 'name'])
        async with self._transaction(f"ensuring repository {repo.namespace}/{repo.name}") as conn:
            await conn.execute(stmt)

    async def upsert_chart(self, repo: RepositoryRef, chart: Chart) -> None:
        """
        Inserts the chart or fully replaces its metadata document.

        Raises:
            IntegrityException: the chart belongs to another repository, or the repository row is missing.
            StoreWriteException: any other database failure.
        """
        if (chart.repo.namespace, chart.repo.name) != (repo.namespace, repo.name):
            raise IntegrityException(
                f"Chart {chart.id} references repository {chart.repo.namespace}/{chart.repo.name}, "
                f"not {repo.namespace}/{repo.name}."
            )

        stmt = insert(charts_table).values(
            repo_namespace=repo.namespace,
            repo_name=repo.name,
            chart_id=chart.id,
            info=chart.document(),
        )
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['repo_namespace', 'repo_name', 'chart_id'],
            set_={'info': stmt.excluded.info},
            # Only update if the document actually changed.
            where=charts_table.c.info.is_distinct_from(stmt.excluded.info),
        )
        async with self._transaction(f"upserting chart {chart.id}") as conn:
            await conn.execute(upsert_stmt)

    async def upsert_file_bundle(self, files: ChartFiles) -> None:
        stmt = insert(files_table).values(
            repo_namespace=files.repo.namespace,
            repo_name=files.repo.name,
            chart_files_id=files.id,
            digest=files.digest,
            readme=files.readme,
            values=files.values,
            values_schema=files.values_schema,
        )
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['repo_namespace', 'repo_name', 'chart_files_id'],
            set_={
                'digest': stmt.excluded.digest,
                'readme': stmt.excluded.readme,
                'values': stmt.excluded['values'],
                'values_schema': stmt.excluded.values_schema,
            },
        )
        async with self._transaction(f"upserting files {files.id}") as conn:
            await conn.execute(upsert_stmt)

    async def update_icon(self, repo: RepositoryRef, chart_id: str, icon_url: str, icon: IconAsset) -> None:
        stmt = (
            update(charts_table)
            .where(self._repo_clause(charts_table, repo) & (charts_table.c.chart_id == chart_id))
            .values(raw_icon=icon.data, icon_content_type=icon.content_type, icon_url=icon_url)
        )
        async with self._transaction(f"updating icon of {chart_id}") as conn:
            result = await conn.execute(stmt)
        if result.rowcount == 0:
            raise IntegrityException(f"No chart {chart_id} in {repo.namespace}/{repo.name} to attach an icon to.")

    async def icon_exists(self, repo: RepositoryRef, chart_id: str, icon_url: str) -> bool:
        """True when the chart already carries an icon fetched from `icon_url`. Lookup errors count as absent."""
        stmt = (
            select(charts_table.c.chart_id)
            .where(
                self._repo_clause(charts_table, repo)
                & (charts_table.c.chart_id == chart_id)
                & (charts_table.c.icon_url == icon_url)
                & charts_table.c.raw_icon.is_not(None)
            )
            .limit(1)
        )
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                return result.scalar_one_or_none() is not None
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Could not look up icon of {chart_id}: {e}")
            return False

    async def files_exist(self, repo: RepositoryRef, files_id: str, digest: str) -> bool:
        """True when a file bundle with this ID and digest is stored. Lookup errors count as absent."""
        stmt = (
            select(files_table.c.chart_files_id)
            .where(
                self._repo_clause(files_table, repo)
                & (files_table.c.chart_files_id == files_id)
                & (files_table.c.digest == digest)
            )
            .limit(1)
        )
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                return result.scalar_one_or_none() is not None
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Could not look up files {files_id}: {e}")
            return False

    async def delete_charts_not_in(self, repo: RepositoryRef, keep: Iterable[str]) -> int:
        """Deletes this repository's charts whose ID is not in `keep`. An empty `keep` deletes them all."""
        keep_ids = sorted(set(keep))
        stmt = delete(charts_table).where(
            self._repo_clause(charts_table, repo) & charts_table.c.chart_id.not_in(keep_ids)
        )
        async with self._transaction(f"pruning charts of {repo.namespace}/{repo.name}") as conn:
            result = await conn.execute(stmt)
        return result.rowcount

    async def delete_repository(self, repo: RepositoryRef) -> None:
        """Deletes the repository row; its charts and file bundles go with it via ON DELETE CASCADE."""
        stmt = delete(repos_table).where(
            (repos_table.c.namespace == repo.namespace) & (repos_table.c.name == repo.name)
        )
        async with self._transaction(f"deleting repository {repo.namespace}/{repo.name}") as conn:
            await conn.execute(stmt)

    async def get_repository_checksum(self, repo: RepositoryRef) -> Optional[str]:
        stmt = select(repos_table.c.checksum).where(
            (repos_table.c.namespace == repo.namespace) & (repos_table.c.name == repo.name)
        )
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                return result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            raise StoreWriteException(f"reading checksum of {repo.namespace}/{repo.name} failed: {e}") from e

    async def commit_repository_checksum(self, repo: RepositoryRef, checksum: str, now: datetime) -> None:
        stmt = insert(repos_table).values(
            namespace=repo.namespace, name=repo.name, checksum=checksum, last_update=now,
        )
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['namespace', 'name'],
            set_={'checksum': stmt.excluded.checksum, 'last_update': stmt.excluded.last_update},
        )
        async with self._transaction(f"committing checksum of {repo.namespace}/{repo.name}") as conn:
            await conn.execute(upsert_stmt)
