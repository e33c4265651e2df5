"""CMS Sync - two-way sync between a local SQLite store and a headless CMS."""

__version__ = "1.0.0"
__author__ = "CMS Sync Contributors"

from cms_sync.config import ContentMode, Settings

__all__ = ["ContentMode", "Settings", "__version__"]
