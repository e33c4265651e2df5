"""Utility modules for CMS Sync."""

from cms_sync.utils.logger import setup_logging
from cms_sync.utils.display import SyncStatusDisplay

__all__ = ["setup_logging", "SyncStatusDisplay"]
