# madlan_crawler/errors.py
"""Exception hierarchy shared by the storage, crawl and CLI layers."""


class CrawlerError(Exception):
    pass


class ConfigError(CrawlerError):
    """Invalid configuration; carries every violated rule."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("Configuration errors:\n" + "\n".join(f"  - {e}" for e in self.errors))


class StorageError(CrawlerError):
    pass


class StorageInitError(StorageError):
    pass


class IntegrityViolation(StorageError):
    """A unique / primary key constraint rejected the write."""


class FetchError(CrawlerError):
    """Transient page load failure (network, timeout, bad status)."""


class BlockedError(FetchError):
    """The site answered with an anti-bot interstitial or a 403."""


class ExtractionError(CrawlerError):
    """Required data could not be parsed from a fetched page."""


class PersistenceError(CrawlerError):
    """Writing a property unit failed and was rolled back."""


class CrawlStopped(CrawlerError):
    """A stop was requested before the fetch was dispatched."""
