"""Local store and remote client for CMS Sync."""

from cms_sync.connectors.store import LocalStore, Scope
from cms_sync.connectors.cms_client import ContentfulClient, create_cms_client

__all__ = ["LocalStore", "Scope", "ContentfulClient", "create_cms_client"]
