from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict


class RepositoryRef(BaseModel):
    """
    Identity of a chart repository plus what is needed to reach it.
    """
    model_config = ConfigDict(frozen=True)

    namespace: str = Field(..., min_length=1, description="Namespace the repository belongs to")
    name: str = Field(..., min_length=1, description="Repository name, unique within its namespace")
    url: str = Field("", description="Base URL of the chart repository")
    auth_header: Optional[str] = Field(
        None, description="Value of the Authorization header sent to the repository"
    )


class Maintainer(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    email: Optional[str] = None
    url: Optional[str] = None


class ChartVersion(BaseModel):
    """A single published version of a chart as listed in the index."""
    model_config = ConfigDict(frozen=True)

    version: str
    app_version: Optional[str] = None
    created: Optional[datetime] = None
    digest: str = ""
    urls: List[str] = Field(default_factory=list)


class Chart(BaseModel):
    """
    Chart metadata document stored as the ChartRecord's info column.
    Versions are ordered newest first, so chart_versions[0] is the latest.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Chart ID, '<repoName>/<chartName>'")
    name: str
    repo: RepositoryRef
    description: Optional[str] = None
    home: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    maintainers: List[Maintainer] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)
    icon: Optional[str] = None
    chart_versions: List[ChartVersion] = Field(default_factory=list)

    def document(self) -> Dict[str, Any]:
        """JSON-serialisable document without credentials."""
        return self.model_dump(mode="json", exclude={"repo": {"auth_header"}})


class ChartFiles(BaseModel):
    """README, values and schema extracted from one chart version's tarball."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="'<chartID>-<version>'")
    repo: RepositoryRef
    digest: str = ""
    readme: str = ""
    values: str = ""
    values_schema: str = ""

    @staticmethod
    def make_id(chart_id: str, version: str) -> str:
        return f"{chart_id}-{version}"


class IconAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    content_type: str = ""


class AssetFailure(BaseModel):
    """An ancillary asset that could not be fetched or stored during a sync."""
    model_config = ConfigDict(frozen=True)

    kind: str = Field(..., description="'icon' or 'files'")
    chart_id: str
    version: Optional[str] = None
    error: str


class SyncResult(BaseModel):
    """Summary of one sync run."""

    repository: RepositoryRef
    checksum: str
    charts_synced: int = 0
    assets_stored: int = 0
    failures: List[AssetFailure] = Field(default_factory=list)
