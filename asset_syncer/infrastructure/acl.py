import hashlib
import logging
from typing import Any, Dict, List

import yaml
from packaging.version import InvalidVersion, Version
from pydantic import ValidationError

from asset_syncer.domain.exceptions import IntegrityException
from asset_syncer.domain.models import Chart, ChartVersion, Maintainer, RepositoryRef

logger = logging.getLogger(__name__)


class HelmIndexTranslator:
    """
    Anti-corruption layer that translates a raw Helm repository index.yaml into Chart instances.
    """

    @staticmethod
    def checksum(raw_index: bytes) -> str:
        """sha256 hex digest of the index as served; unchanged index means unchanged checksum."""
        return hashlib.sha256(raw_index).hexdigest()

    @staticmethod
    def to_domain(repo: RepositoryRef, raw_index: bytes) -> List[Chart]:
        """
        Parses index.yaml into one Chart per entry.

        Versions are sorted newest first by version number, whatever their order in the index,
        and chart-level metadata comes from the newest one.
        Versions without a name or version are skipped.

        Args:
            repo (RepositoryRef): The repository the index was fetched from.
            raw_index (bytes): The index document.

        Returns:
            List[Chart]: Charts in index order.

        Raises:
            IntegrityException: the document is not a valid index.
        """
        try:
            index = yaml.safe_load(raw_index)
        except yaml.YAMLError as e:
            raise IntegrityException(f"Index of {repo.name} is not valid YAML: {e}") from e

        if not isinstance(index, dict) or not isinstance(index.get('entries') or {}, dict):
            raise IntegrityException(f"Index of {repo.name} has no entries mapping.")

        charts = []
        for chart_name, raw_versions in (index.get('entries') or {}).items():
            versions = [v for v in (raw_versions or []) if HelmIndexTranslator._is_valid_version(chart_name, v)]
            if not versions:
                continue
            try:
                charts.append(HelmIndexTranslator._to_chart(repo, chart_name, versions))
            except ValidationError as e:
                raise IntegrityException(f"Chart {chart_name} in {repo.name} is malformed: {e}") from e
        return charts

    @staticmethod
    def _is_valid_version(chart_name: str, raw_version: Any) -> bool:
        if isinstance(raw_version, dict) and raw_version.get('name') and raw_version.get('version'):
            if not isinstance(raw_version['version'], str):
                logger.warning(
                    f"Version {raw_version['version']!r} of {chart_name} is not a string in the index; "
                    f"it should be quoted to keep its exact value."
                )
            return True
        logger.warning(f"Skipping entry of {chart_name} without name or version.")
        return False

    @staticmethod
    def _version_key(raw_version: Dict[str, Any]):
        try:
            return (1, Version(str(raw_version['version'])))
        except InvalidVersion:
            return (0, Version("0"))

    @staticmethod
    def sort_versions(versions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Newest first. Versions that do not parse go last, keeping their index order."""
        return sorted(versions, key=HelmIndexTranslator._version_key, reverse=True)

    @staticmethod
    def _to_chart(repo: RepositoryRef, chart_name: str, versions: List[Dict[str, Any]]) -> Chart:
        versions = HelmIndexTranslator.sort_versions(versions)
        latest = versions[0]
        return Chart(
            id=f"{repo.name}/{chart_name}",
            name=chart_name,
            repo=repo,
            description=latest.get('description'),
            home=latest.get('home'),
            keywords=latest.get('keywords') or [],
            maintainers=[Maintainer(**m) for m in latest.get('maintainers') or [] if isinstance(m, dict) and m.get('name')],
            sources=latest.get('sources') or [],
            icon=latest.get('icon'),
            chart_versions=[
                ChartVersion(
                    version=str(v['version']),
                    app_version=str(v['appVersion']) if v.get('appVersion') is not None else None,
                    created=v.get('created'),
                    digest=v.get('digest') or '',
                    urls=v.get('urls') or [],
                )
                for v in versions
            ],
        )
