import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field


class SyncerConfig(BaseModel):
    """
    Process-wide settings, built once at startup and passed to the components that need them.
    """
    model_config = ConfigDict(frozen=True)

    database_url: str = Field(..., min_length=1, description="SQLAlchemy async URL, e.g. postgresql+asyncpg://...")
    namespace: str = Field("default", min_length=1)
    fetch_concurrency: int = Field(10, ge=1, description="Upper bound on concurrent asset fetches")
    request_timeout: float = Field(60, gt=0)
    connect_timeout: float = Field(10, gt=0)
    max_retries: int = Field(3, ge=1, description="Attempts per asset, including the first")
    retry_backoff: float = Field(1.0, ge=0)
    db_pool_size: int = Field(10, ge=1)
    user_agent: str = "asset-syncer"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncerConfig":
        """
        Reads settings from the environment (after loading a .env file when reading os.environ).

        Raises:
            ValueError: DATABASE_URL is missing.
            pydantic.ValidationError: a value is out of range or not a number.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        db_url = environ.get("DATABASE_URL")
        if not db_url:
            raise ValueError("DATABASE_URL is not set in the environment.")

        env_fields = {
            "namespace": "SYNC_NAMESPACE",
            "fetch_concurrency": "FETCH_CONCURRENCY",
            "request_timeout": "REQUEST_TIMEOUT",
            "connect_timeout": "CONNECT_TIMEOUT",
            "max_retries": "MAX_RETRIES",
            "retry_backoff": "RETRY_BACKOFF",
            "db_pool_size": "DB_POOL_SIZE",
            "user_agent": "USER_AGENT",
        }
        values = {field: environ[var] for field, var in env_fields.items() if environ.get(var)}
        return cls(database_url=db_url, **values)
