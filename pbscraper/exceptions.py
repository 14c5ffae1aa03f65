"""Custom exceptions for the partsbooking scraper."""


class ScraperError(Exception):
    """Base exception for scraper-related errors."""
    pass


class UnsupportedBrandError(ScraperError):
    """Brand has no catalog on the target site; never retried."""
    pass


class RetryableError(ScraperError):
    """Transient failure; the task goes back to the retry queue."""
    pass


class NavigationError(RetryableError):
    """Failed to navigate to a page (no response, 429, 5xx, unexpected redirect)."""
    pass


class NoDataError(RetryableError):
    """The price_search API never returned a usable response within the wait window."""
    pass


class MalformedPayloadError(ScraperError):
    """price_search responses arrived but none could be parsed."""
    pass


class DownloadError(ScraperError):
    """Failed to download an image."""
    pass


class InfrastructureError(ScraperError):
    """Browser launch or proxy authentication failed; aborts the whole run."""
    pass
