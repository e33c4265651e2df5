"""
Content records and their remote representation.

Books and Assets are plain dataclasses. Each record type declares which of
its fields are user-editable ("syncable") and which are sync bookkeeping, and
knows how to read itself from a remote resource and how to render its fields
into the localized payload shape the management API expects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, ClassVar

logger = logging.getLogger(__name__)

# Bumped whenever the local schema changes; a cursor written under another
# version is discarded and the next pull starts from scratch.
SCHEMA_VERSION = 3

# Fields the dirty tracker ignores when deciding if a save was a user edit.
SYNC_CONTROL_FIELDS: frozenset[str] = frozenset(
    {"is_dirty", "contentful_version", "updated_at", "created_at", "locale", "remote_url"}
)


class MalformedPayloadError(ValueError):
    """Raised when a remote resource cannot be turned into a record."""

    def __init__(self, message: str, resource_id: str | None = None) -> None:
        super().__init__(message)
        self.resource_id = resource_id


# =============================================================================
# Value helpers
# =============================================================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp as returned by the API (``Z`` suffix allowed)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        raise ValueError(f"Not a timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_datetime(value: datetime | None) -> str | None:
    """Render a timestamp in the API's ISO-8601 form."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_url(url: str | None) -> str | None:
    """Asset URLs come back protocol-relative (``//images...``)."""
    if url and url.startswith("//"):
        return f"https:{url}"
    return url


def _localized(fields_data: dict[str, Any], name: str, locale: str) -> Any:
    """Pick the value for ``locale`` from a localized field, if present.

    Delivery/preview responses requested with ``locale=*`` and all management
    responses wrap values as ``{"en-US": value}``. Single-locale responses
    carry the bare value instead, which is passed through.
    """
    raw = fields_data.get(name)
    if isinstance(raw, dict) and locale in raw:
        return raw[locale]
    if isinstance(raw, dict) and "sys" not in raw and raw and _looks_localized(raw):
        # Localized, but not in the requested locale
        return None
    return raw


def _looks_localized(value: dict[str, Any]) -> bool:
    return all(isinstance(k, str) and "-" in k and len(k) <= 10 for k in value)


def _optional_int(value: Any, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    return int(value)


def _optional_str(value: Any, name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {value!r}")
    return value


def _link(kind: str, target_id: str) -> dict[str, Any]:
    return {"sys": {"type": "Link", "linkType": kind, "id": target_id}}


def _split_sys(resource: Any) -> tuple[dict[str, Any], dict[str, Any], str]:
    if not isinstance(resource, dict):
        raise MalformedPayloadError(f"Resource is not an object: {type(resource).__name__}")
    sys = resource.get("sys")
    if not isinstance(sys, dict) or not isinstance(sys.get("id"), str):
        raise MalformedPayloadError("Resource has no sys.id")
    fields_data = resource.get("fields") or {}
    if not isinstance(fields_data, dict):
        raise MalformedPayloadError("Resource fields is not an object", sys["id"])
    return sys, fields_data, sys["id"]


def remote_version(sys: dict[str, Any]) -> int:
    """Optimistic-lock version from a ``sys`` block.

    Management responses carry ``version``; delivery/preview responses only
    carry ``revision``.
    """
    version = sys.get("version", sys.get("revision", 0))
    if isinstance(version, bool) or not isinstance(version, int):
        return 0
    return version


# =============================================================================
# Records
# =============================================================================


@dataclass
class SyncCursor:
    """Last point successfully pulled from the remote change stream."""

    sync_token: str | None = None
    db_version: int = SCHEMA_VERSION

    @property
    def is_empty(self) -> bool:
        return not self.sync_token or self.db_version != SCHEMA_VERSION


@dataclass
class Record:
    """Fields shared by every synced record."""

    TABLE: ClassVar[str] = ""
    KIND: ClassVar[str] = ""

    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    locale: str | None = None
    is_dirty: bool = False
    contentful_version: int = 0
    is_deleted: bool = False

    @classmethod
    def column_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def syncable_fields(cls) -> list[str]:
        """Fields whose local change means the record needs pushing."""
        return [
            name
            for name in cls.column_names()
            if name != "id" and name not in SYNC_CONTROL_FIELDS
        ]

    def changed_fields(self, other: "Record | None") -> set[str]:
        """Syncable fields that differ between ``other`` (before) and ``self``."""
        if other is None:
            return set(self.syncable_fields())
        return {
            name
            for name in self.syncable_fields()
            if getattr(self, name) != getattr(other, name)
        }

    def copy(self, **changes: Any) -> Any:
        return replace(self, **changes)

    @property
    def is_new_remotely(self) -> bool:
        """Never acknowledged by the server."""
        return self.contentful_version == 0

    @property
    def display_title(self) -> str:
        return self.id


@dataclass
class Asset(Record):
    """Binary asset metadata (cover images)."""

    TABLE: ClassVar[str] = "assets"
    KIND: ClassVar[str] = "Asset"

    title: str | None = None
    description: str | None = None
    url_string: str | None = None
    file_name: str | None = None
    file_type: str | None = None
    size: int | None = None
    width: int | None = None
    height: int | None = None
    # Last file URL the server processed; url_string differing from it means
    # a new binary is waiting to be uploaded
    remote_url: str | None = None

    @property
    def display_title(self) -> str:
        return self.title or self.file_name or self.id

    @property
    def needs_upload(self) -> bool:
        return bool(self.url_string) and self.url_string != self.remote_url

    @classmethod
    def from_remote(cls, resource: Any, locale: str = "en-US") -> "Asset":
        """Build an Asset from a delivery, preview or management resource."""
        sys, data, asset_id = _split_sys(resource)
        try:
            file_info = _localized(data, "file", locale) or {}
            if not isinstance(file_info, dict):
                raise ValueError("file must be an object")
            details = file_info.get("details") or {}
            image = details.get("image") or {}
            url = normalize_url(_optional_str(file_info.get("url"), "url"))
            return cls(
                id=asset_id,
                created_at=parse_datetime(sys.get("createdAt")),
                updated_at=parse_datetime(sys.get("updatedAt")),
                locale=sys.get("locale") or locale,
                contentful_version=remote_version(sys),
                title=_optional_str(_localized(data, "title", locale), "title"),
                description=_optional_str(
                    _localized(data, "description", locale), "description"
                ),
                url_string=url,
                remote_url=url,
                file_name=_optional_str(file_info.get("fileName"), "fileName"),
                file_type=_optional_str(file_info.get("contentType"), "contentType"),
                size=_optional_int(details.get("size"), "size"),
                width=_optional_int(image.get("width"), "width"),
                height=_optional_int(image.get("height"), "height"),
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise MalformedPayloadError(f"Asset {asset_id}: {e}", asset_id) from e

    def to_fields(self, locale: str = "en-US") -> dict[str, Any]:
        """Metadata payload for an existing asset.

        The file block is only echoed back for the URL the server itself
        processed; new binaries go through the upload pipeline instead.
        """
        payload: dict[str, Any] = {
            "title": {locale: self.title or self.file_name or ""},
            "description": {locale: self.description or ""},
        }
        if self.remote_url and self.url_string == self.remote_url:
            file_block: dict[str, Any] = {"url": self.remote_url}
            if self.file_name:
                file_block["fileName"] = self.file_name
            if self.file_type:
                file_block["contentType"] = self.file_type
            payload["file"] = {locale: file_block}
        return payload

    def upload_fields(self, upload_id: str, locale: str = "en-US") -> dict[str, Any]:
        """Payload linking a fresh upload to this asset."""
        file_name = self.file_name or f"{self.id}.jpg"
        return {
            "title": {locale: self.title or file_name},
            "description": {locale: self.description or ""},
            "file": {
                locale: {
                    "contentType": self.file_type or "image/jpeg",
                    "fileName": file_name,
                    "uploadFrom": _link("Upload", upload_id),
                }
            },
        }


@dataclass
class Book(Record):
    """A book entry."""

    TABLE: ClassVar[str] = "books"
    KIND: ClassVar[str] = "Entry"

    title: str | None = None
    author: str | None = None
    isbn: int | None = None
    rating: int | None = None
    read_date_started: datetime | None = None
    read_date_finished: datetime | None = None
    review_description: dict[str, Any] | None = None
    cover_image_id: str | None = None

    @property
    def display_title(self) -> str:
        return self.title or self.id

    @classmethod
    def from_remote(cls, resource: Any, locale: str = "en-US") -> "Book":
        """Build a Book from a delivery, preview or management entry."""
        sys, data, book_id = _split_sys(resource)
        try:
            cover = _localized(data, "coverImage", locale)
            cover_id = None
            if cover is not None:
                if not isinstance(cover, dict) or not isinstance(cover.get("sys"), dict):
                    raise ValueError("coverImage must be a link")
                cover_id = cover["sys"].get("id")
            review = _localized(data, "reviewDescription", locale)
            if review is not None and not isinstance(review, dict):
                raise ValueError("reviewDescription must be a rich text document")
            return cls(
                id=book_id,
                created_at=parse_datetime(sys.get("createdAt")),
                updated_at=parse_datetime(sys.get("updatedAt")),
                locale=sys.get("locale") or locale,
                contentful_version=remote_version(sys),
                title=_optional_str(_localized(data, "title", locale), "title"),
                author=_optional_str(_localized(data, "author", locale), "author"),
                isbn=_optional_int(_localized(data, "isbn", locale), "isbn"),
                rating=_optional_int(_localized(data, "rating", locale), "rating"),
                read_date_started=parse_datetime(
                    _localized(data, "readDateStarted", locale)
                ),
                read_date_finished=parse_datetime(
                    _localized(data, "readDateFinished", locale)
                ),
                review_description=review,
                cover_image_id=cover_id,
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise MalformedPayloadError(f"Entry {book_id}: {e}", book_id) from e

    def to_fields(self, locale: str = "en-US") -> dict[str, Any]:
        """Localized entry fields for the management API; unset fields are omitted."""
        values: dict[str, Any] = {
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "rating": self.rating,
            "readDateStarted": format_datetime(self.read_date_started),
            "readDateFinished": format_datetime(self.read_date_finished),
            "reviewDescription": self.review_description,
            "coverImage": (
                _link("Asset", self.cover_image_id) if self.cover_image_id else None
            ),
        }
        return {name: {locale: value} for name, value in values.items() if value is not None}


RECORD_TYPES: tuple[type[Record], ...] = (Asset, Book)
