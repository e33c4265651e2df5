"""Core sync components for CMS Sync.

Submodules are imported directly (``from cms_sync.core.push import
PushEngine``); the connectors import ``cms_sync.core.records``, so nothing
is re-exported here.
"""
