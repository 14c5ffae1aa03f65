"""partsbooking competitor price scraper: capture, rank and persist price listings per (part, brand)."""

__version__ = "1.0.0"
