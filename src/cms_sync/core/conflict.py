"""
Conflict Resolver - latest-wins reconciliation of local and remote copies.

Everything here is pure: no I/O, no store access. The push engine supplies
both snapshots and carries out the returned instruction.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from cms_sync.config import ConflictStrategy
from cms_sync.core.records import Record


class Verdict(str, Enum):
    """What the push engine should do after a rejected push."""

    RETRY_WITH_VERSION = "retry_with_version"
    USE_REMOTE = "use_remote"
    RECREATE = "recreate"
    DROP_LOCAL = "drop_local"


@dataclass(frozen=True)
class Resolution:
    """A verdict plus whatever the engine needs to act on it."""

    verdict: Verdict
    version: int | None = None
    remote: Record | None = None
    reason: str = ""


def should_overwrite_on_pull(local: Record | None, remote: Record) -> bool:
    """
    Decide whether a pulled record may replace the local copy.

    Dirty records belong to the push engine until they are pushed.
    """
    if local is None:
        return True
    if local.id != remote.id:
        raise ValueError(f"Record ids differ: {local.id!r} != {remote.id!r}")
    return not local.is_dirty


class ConflictResolver:
    """
    Decides which side of a version conflict wins.

    Latest-wins compares ``updated_at``; ties go to the server so that a
    conflict always terminates.

    Example:
        resolver = ConflictResolver()
        resolution = resolver.resolve(local_book, remote_book)
        if resolution.verdict is Verdict.RETRY_WITH_VERSION:
            ...
    """

    def __init__(self, strategy: ConflictStrategy = ConflictStrategy.LATEST_WINS) -> None:
        self.strategy = strategy

    def resolve(self, local: Record, remote: Record | None) -> Resolution:
        """
        Resolve a conflict between a dirty local record and the server copy.

        Args:
            local: The dirty local record
            remote: Fresh server copy, or None if it no longer exists remotely

        Returns:
            Resolution for the push engine
        """
        if remote is None:
            if local.is_deleted:
                return Resolution(Verdict.DROP_LOCAL, reason="deleted on both sides")
            return Resolution(Verdict.RECREATE, reason="vanished remotely")

        if local.id != remote.id:
            raise ValueError(f"Record ids differ: {local.id!r} != {remote.id!r}")

        if self.strategy == ConflictStrategy.LOCAL_WINS:
            return Resolution(
                Verdict.RETRY_WITH_VERSION,
                version=remote.contentful_version,
                reason="local wins by policy",
            )

        if local_is_newer(local, remote):
            return Resolution(
                Verdict.RETRY_WITH_VERSION,
                version=remote.contentful_version,
                reason="local is newer",
            )
        return Resolution(Verdict.USE_REMOTE, remote=remote, reason="remote is newer or equal")


def local_is_newer(local: Record, remote: Record) -> bool:
    """True only when the local edit is strictly later than the server copy."""
    if local.updated_at is None:
        return False
    if remote.updated_at is None:
        return True
    return local.updated_at > remote.updated_at
