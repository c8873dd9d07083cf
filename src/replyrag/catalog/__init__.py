"""Read-only catalog and content item metadata sources."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, Sequence

from replyrag.errors import ValidationError
from replyrag.models import CatalogItem, ContentItem


class CatalogSource(Protocol):
    """Read access to catalog items and content item metadata."""

    def catalog_items(self) -> Sequence[CatalogItem]:
        """Return every catalog item."""

    def get_catalog_item(self, item_id: str) -> CatalogItem | None:
        """Return one catalog item by id."""

    def content_items(self) -> Sequence[ContentItem]:
        """Return every content item."""

    def get_content_item(self, content_item_id: str) -> ContentItem | None:
        """Return one content item by id."""


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid price value: {value!r}") from exc


def _strings(values: Any) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        return (values,) if values.strip() else ()
    return tuple(str(value) for value in values if str(value).strip())


def catalog_item_from_mapping(payload: Mapping[str, Any]) -> CatalogItem:
    item_id = str(payload.get("item_id") or payload.get("id") or "").strip()
    if not item_id:
        raise ValidationError("catalog item requires an id")
    return CatalogItem(
        item_id=item_id,
        name=str(payload.get("name") or ""),
        brand=payload.get("brand") or None,
        category=payload.get("category") or None,
        price=_optional_float(payload.get("price")),
        tags=_strings(payload.get("tags")),
        url=payload.get("url") or None,
    )


def content_item_from_mapping(payload: Mapping[str, Any]) -> ContentItem:
    content_item_id = str(payload.get("content_item_id") or payload.get("id") or "").strip()
    if not content_item_id:
        raise ValidationError("content item requires an id")
    return ContentItem(
        content_item_id=content_item_id,
        title=str(payload.get("title") or ""),
        brand_tags=_strings(payload.get("brand_tags")),
        category_tags=_strings(payload.get("category_tags")),
        price_min=_optional_float(payload.get("price_min")),
        price_max=_optional_float(payload.get("price_max")),
        tags=_strings(payload.get("tags")),
    )


class InMemoryCatalogSource:
    """Catalog snapshot held in memory."""

    def __init__(
        self,
        catalog_items: Iterable[CatalogItem] = (),
        content_items: Iterable[ContentItem] = (),
    ) -> None:
        self._lock = threading.Lock()
        self._catalog: dict[str, CatalogItem] = {}
        self._content: dict[str, ContentItem] = {}
        self._replace(catalog_items, content_items)

    def _replace(self, catalog_items: Iterable[CatalogItem], content_items: Iterable[ContentItem]) -> None:
        catalog = {item.item_id: item for item in catalog_items}
        content = {item.content_item_id: item for item in content_items}
        with self._lock:
            self._catalog = catalog
            self._content = content

    def catalog_items(self) -> Sequence[CatalogItem]:
        with self._lock:
            return sorted(self._catalog.values(), key=lambda item: item.item_id)

    def get_catalog_item(self, item_id: str) -> CatalogItem | None:
        with self._lock:
            return self._catalog.get(item_id)

    def content_items(self) -> Sequence[ContentItem]:
        with self._lock:
            return sorted(self._content.values(), key=lambda item: item.content_item_id)

    def get_content_item(self, content_item_id: str) -> ContentItem | None:
        with self._lock:
            return self._content.get(content_item_id)


class JsonCatalogSource(InMemoryCatalogSource):
    """Catalog export file: ``{"catalog_items": [...], "content_items": [...]}``."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        super().__init__()
        self.reload()

    def reload(self) -> None:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Cannot read catalog export {self._path}: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Catalog export {self._path} must be a JSON object")
        self._replace(
            [catalog_item_from_mapping(item) for item in payload.get("catalog_items", [])],
            [content_item_from_mapping(item) for item in payload.get("content_items", [])],
        )


__all__ = [
    "CatalogSource",
    "InMemoryCatalogSource",
    "JsonCatalogSource",
    "catalog_item_from_mapping",
    "content_item_from_mapping",
]
