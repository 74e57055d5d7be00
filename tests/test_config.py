import unittest

from pydantic import ValidationError

from asset_syncer.config import SyncerConfig


class TestSyncerConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        config = SyncerConfig.from_env({"DATABASE_URL": "postgresql+asyncpg://u:p@db/assets"})

        self.assertEqual(config.namespace, "default")
        self.assertEqual(config.fetch_concurrency, 10)
        self.assertEqual(config.max_retries, 3)

    def test_values_are_read_from_environment(self) -> None:
        config = SyncerConfig.from_env({
            "DATABASE_URL": "postgresql+asyncpg://u:p@db/assets",
            "SYNC_NAMESPACE": "kubeapps",
            "FETCH_CONCURRENCY": "4",
            "REQUEST_TIMEOUT": "2.5",
        })

        self.assertEqual(config.namespace, "kubeapps")
        self.assertEqual(config.fetch_concurrency, 4)
        self.assertEqual(config.request_timeout, 2.5)

    def test_missing_database_url_raises(self) -> None:
        with self.assertRaises(ValueError):
            SyncerConfig.from_env({})

    def test_invalid_values_raise(self) -> None:
        with self.assertRaises(ValidationError):
            SyncerConfig.from_env({"DATABASE_URL": "postgresql+asyncpg://u:p@db/assets", "FETCH_CONCURRENCY": "0"})

    def test_config_is_immutable(self) -> None:
        config = SyncerConfig(database_url="postgresql+asyncpg://u:p@db/assets")

        with self.assertRaises(ValidationError):
            config.fetch_concurrency = 20
