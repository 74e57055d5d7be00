import asyncio
import hashlib
import io
import tarfile
from typing import Dict, List, Optional, Set, Tuple

from asset_syncer.domain.exceptions import IntegrityException, StoreWriteException
from asset_syncer.domain.models import Chart, ChartFiles, ChartVersion, IconAsset, RepositoryRef


def make_chart_tarball(chart_name: str, files: Dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name=f"{chart_name}/{name}")
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_chart(
    repo: RepositoryRef, name: str, versions=("1.0.0",), icon: Optional[str] = None,
) -> Tuple[Chart, Dict[str, bytes]]:
    """Returns the chart and its version tarballs keyed by download URL."""
    tarballs = {}
    chart_versions = []
    for v in versions:
        url = f"charts/{name}-{v}.tgz"
        tarballs[url] = make_chart_tarball(name, {
            "README.md": f"# {name} {v}",
            "values.yaml": "replicaCount: 1\n",
        })
        chart_versions.append(ChartVersion(version=v, digest=sha256(tarballs[url]), urls=[url]))
    chart = Chart(id=f"{repo.name}/{name}", name=name, repo=repo, icon=icon, chart_versions=chart_versions)
    return chart, tarballs


class FakeAssetStore:
    """
    In-memory store with the same referential rules as the PostgreSQL store.
    `writes` records only operations that change stored state, like the guarded SQL statements.
    """

    def __init__(self) -> None:
        self.repos: Dict[tuple, dict] = {}
        self.charts: Dict[tuple, dict] = {}
        self.files: Dict[tuple, ChartFiles] = {}
        self.writes: List[str] = []
        self.fail_on: Set[str] = set()
        self.fail_checksum_read = False

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise StoreWriteException(f"{op} failed")

    def chart_ids(self, repo: RepositoryRef) -> Set[str]:
        return {key[2] for key in self.charts if key[:2] == (repo.namespace, repo.name)}

    def snapshot(self):
        return (
            {k: v["checksum"] for k, v in self.repos.items()},
            {k: (v["info"], v["icon"], v["icon_url"]) for k, v in self.charts.items()},
            dict(self.files),
        )

    async def ensure_repository(self, repo: RepositoryRef) -> None:
        self._maybe_fail("ensure_repository")
        key = (repo.namespace, repo.name)
        if key not in self.repos:
            self.writes.append("ensure_repository")
            self.repos[key] = {"checksum": None, "last_update": None}

    async def upsert_chart(self, repo: RepositoryRef, chart: Chart) -> None:
        self._maybe_fail("upsert_chart")
        if (repo.namespace, repo.name) not in self.repos:
            raise IntegrityException(f"repository {repo.name} does not exist")
        key = (repo.namespace, repo.name, chart.id)
        existing = self.charts.get(key)
        document = chart.document()
        if existing is None:
            self.charts[key] = {"info": document, "icon": None, "icon_url": None}
        elif existing["info"] != document:
            existing["info"] = document
        else:
            return
        self.writes.append("upsert_chart")

    async def upsert_file_bundle(self, files: ChartFiles) -> None:
        self._maybe_fail("upsert_file_bundle")
        if (files.repo.namespace, files.repo.name) not in self.repos:
            raise IntegrityException(f"repository {files.repo.name} does not exist")
        self.writes.append("upsert_file_bundle")
        self.files[(files.repo.namespace, files.repo.name, files.id)] = files

    async def update_icon(self, repo: RepositoryRef, chart_id: str, icon_url: str, icon: IconAsset) -> None:
        self._maybe_fail("update_icon")
        key = (repo.namespace, repo.name, chart_id)
        if key not in self.charts:
            raise IntegrityException(f"no chart {chart_id}")
        self.writes.append("update_icon")
        self.charts[key]["icon"] = icon
        self.charts[key]["icon_url"] = icon_url

    async def icon_exists(self, repo: RepositoryRef, chart_id: str, icon_url: str) -> bool:
        chart = self.charts.get((repo.namespace, repo.name, chart_id))
        return chart is not None and chart["icon"] is not None and chart["icon_url"] == icon_url

    async def files_exist(self, repo: RepositoryRef, files_id: str, digest: str) -> bool:
        files = self.files.get((repo.namespace, repo.name, files_id))
        return files is not None and files.digest == digest

    async def delete_charts_not_in(self, repo: RepositoryRef, keep) -> int:
        self._maybe_fail("delete_charts_not_in")
        keep = set(keep)
        stale = [k for k in self.charts if k[:2] == (repo.namespace, repo.name) and k[2] not in keep]
        for key in stale:
            del self.charts[key]
        if stale:
            self.writes.append("delete_charts_not_in")
        return len(stale)

    async def delete_repository(self, repo: RepositoryRef) -> None:
        scope = (repo.namespace, repo.name)
        self.repos.pop(scope, None)
        for table in (self.charts, self.files):
            for key in [k for k in table if k[:2] == scope]:
                del table[key]

    async def get_repository_checksum(self, repo: RepositoryRef) -> Optional[str]:
        if self.fail_checksum_read:
            raise StoreWriteException("checksum read failed")
        record = self.repos.get((repo.namespace, repo.name))
        return record["checksum"] if record else None

    async def commit_repository_checksum(self, repo: RepositoryRef, checksum: str, now) -> None:
        self._maybe_fail("commit_repository_checksum")
        self.writes.append("commit_repository_checksum")
        self.repos[(repo.namespace, repo.name)] = {"checksum": checksum, "last_update": now}


class FakeChartSource:
    """
    Serves icons and tarballs from dicts keyed by URL.
    A value that is an exception is raised; a list is consumed one item per call.
    """

    def __init__(self, icons=None, tarballs=None) -> None:
        self.icons = icons or {}
        self.tarballs = tarballs or {}
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _serve(self, table, url):
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            value = table[url]
            if isinstance(value, list):
                value = value.pop(0)
            if isinstance(value, Exception):
                raise value
            return value
        finally:
            self.in_flight -= 1

    async def fetch_icon(self, session, repo: RepositoryRef, url: str) -> IconAsset:
        return await self._serve(self.icons, url)

    async def fetch_chart_tarball(self, session, repo: RepositoryRef, url: str) -> bytes:
        return await self._serve(self.tarballs, url)
