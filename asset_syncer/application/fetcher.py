import asyncio
import hashlib
import io
import logging
import tarfile
from typing import Dict

from asset_syncer.domain.exceptions import IntegrityException
from asset_syncer.domain.models import Chart, ChartFiles, ChartVersion, RepositoryRef
from asset_syncer.domain.ports import AssetStore, ChartSource

logger = logging.getLogger(__name__)

README_FILE = "readme.md"
VALUES_FILE = "values.yaml"
SCHEMA_FILE = "values.schema.json"


def extract_chart_files(chart_name: str, tarball: bytes) -> Dict[str, str]:
    """
    Reads README.md, values.yaml and values.schema.json from the chart's top-level directory.
    Matching is case-insensitive; missing files come back as empty strings.
    """
    wanted = {f"{chart_name}/{name}".lower(): name for name in (README_FILE, VALUES_FILE, SCHEMA_FILE)}
    found = {name: "" for name in wanted.values()}
    try:
        with tarfile.open(fileobj=io.BytesIO(tarball), mode="r:gz") as archive:
            for member in archive:
                key = wanted.get(member.name.lower())
                if key is None or not member.isfile():
                    continue
                extracted = archive.extractfile(member)
                if extracted is not None:
                    found[key] = extracted.read().decode("utf-8", errors="replace")
    except (tarfile.TarError, EOFError, OSError) as e:
        raise IntegrityException(f"Tarball of {chart_name} is not a readable chart archive: {e}") from e
    return found


class AncillaryFetcher:
    """
    Fetches icons and per-version file bundles and writes them to the store.
    One attempt per call; the caller owns retries.
    """

    def __init__(self, source: ChartSource, store: AssetStore):
        self.source = source
        self.store = store

    async def fetch_and_store_icon(self, session, repo: RepositoryRef, chart: Chart) -> bool:
        """
        Returns False when the chart has no icon, or already has the icon from the same URL.
        An icon is only refetched when the chart's icon reference changes.
        """
        if not chart.icon:
            return False
        if await self.store.icon_exists(repo, chart.id, chart.icon):
            logger.debug(f"Icon of {chart.id} up to date, skipping.")
            return False
        icon = await self.source.fetch_icon(session, repo, chart.icon)
        # Let an in-flight write finish even if the run is being cancelled.
        await asyncio.shield(self.store.update_icon(repo, chart.id, chart.icon, icon))
        return True

    async def fetch_and_store_files(self, session, repo: RepositoryRef, chart: Chart, version: ChartVersion) -> bool:
        """
        Stores README, values and schema for one chart version.

        Returns:
            bool: False if a bundle with the same digest was already stored and nothing was fetched.

        Raises:
            IntegrityException: the version has no download URL, or the tarball digest does not match.
        """
        files_id = ChartFiles.make_id(chart.id, version.version)
        if version.digest and await self.store.files_exist(repo, files_id, version.digest):
            logger.debug(f"Files {files_id} up to date, skipping.")
            return False

        if not version.urls:
            raise IntegrityException(f"Chart version {files_id} has no download URL.")

        tarball = await self.source.fetch_chart_tarball(session, repo, version.urls[0])
        digest = hashlib.sha256(tarball).hexdigest()
        if version.digest and digest != version.digest:
            raise IntegrityException(f"Digest mismatch for {files_id}: expected {version.digest}, got {digest}.")

        contents = extract_chart_files(chart.name, tarball)
        files = ChartFiles(
            id=files_id,
            repo=repo,
            digest=version.digest or digest,
            readme=contents[README_FILE],
            values=contents[VALUES_FILE],
            values_schema=contents[SCHEMA_FILE],
        )
        await asyncio.shield(self.store.upsert_file_bundle(files))
        return True
