class SyncerException(Exception):
    """Base exception for all asset-syncer errors."""
    pass

class TransientFetchException(SyncerException):
    """Raised when fetching from the chart repository fails in a way that may succeed on retry."""
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to fetch {url}: {reason}")

class AssetNotFoundException(SyncerException):
    """Raised when the chart repository answers 404 for an asset."""
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Asset not found: {url}")

class StoreWriteException(SyncerException):
    """Raised when a database operation fails."""
    pass

class IntegrityException(SyncerException):
    """Raised when input or stored data is inconsistent (malformed index, orphan record, digest mismatch)."""
    pass
