from __future__ import annotations

from typing import Callable, Iterable
from urllib.parse import quote

from foilshop.catalog import Catalog, ContentFile
from foilshop.metadata import ContentKind, derive_base_title_id

PATH_SEGMENT_SAFE = "!$&'()*+,;=:@[]~"

SECTIONS = [
    ("new", "New"),
    ("recommended", "Recommended"),
    ("updates", "Updates"),
    ("dlc", "DLC"),
    ("all", "All"),
]

SECTION_KINDS = {
    "base": ContentKind.BASE,
    "games": ContentKind.BASE,
    "update": ContentKind.UPDATE,
    "updates": ContentKind.UPDATE,
    "dlc": ContentKind.DLC,
}
ALL_SECTIONS = {"all", "new", "recommended"}

APP_TYPES = {
    ContentKind.BASE: "BASE",
    ContentKind.UNKNOWN: "BASE",
    ContentKind.UPDATE: "UPDATE",
    ContentKind.DLC: "DLC",
}

# 1x1 transparent PNG served when no icon or banner is known.
PLACEHOLDER_PNG = bytes(
    [
        0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A, 0x00, 0x00, 0x00, 0x0D, 0x49, 0x48, 0x44,
        0x52, 0x00, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00, 0x01, 0x08, 0x04, 0x00, 0x00, 0x00, 0xB5,
        0x1C, 0x0C, 0x02, 0x00, 0x00, 0x00, 0x0B, 0x49, 0x44, 0x41, 0x54, 0x78, 0xDA, 0x63, 0xFC,
        0xFF, 0x1F, 0x00, 0x03, 0x03, 0x02, 0x00, 0xEE, 0xD9, 0xDA, 0x2A, 0x00, 0x00, 0x00, 0x00,
        0x49, 0x45, 0x4E, 0x44, 0xAE, 0x42, 0x60, 0x82,
    ]
)


def encode_download_path(relative_path: str) -> str:
    return "/".join(quote(segment, safe=PATH_SEGMENT_SAFE) for segment in relative_path.split("/"))


def entry_to_api(item: ContentFile) -> dict:
    return {
        "id": item.relative_path,
        "name": item.name,
        "title_id": item.title_id,
        "titleid": item.title_id,
        "titleId": item.title_id,
        "version": item.version,
        "ver": item.version,
        "kind": item.kind.value,
        "type": item.kind.value,
        "size": item.size,
        "url": f"/download/{encode_download_path(item.relative_path)}",
    }


def map_to_entries(files: Iterable[ContentFile]) -> list[dict]:
    return [entry_to_api(item) for item in files]


def map_shop_files(entries: list[dict]) -> list[dict]:
    keys = ("id", "url", "size", "name", "title_id", "titleid", "titleId", "version", "ver", "kind", "type")
    return [{key: entry[key] for key in keys} for entry in entries]


def catalog_sections() -> list[dict]:
    return [{"id": section_id, "label": label} for section_id, label in SECTIONS]


def build_catalog_response(entries: list[dict]) -> dict:
    return {
        "total": len(entries),
        "success": "ok",
        "files": map_shop_files(entries),
        "directories": [],
        "entries": entries,
        "sections": catalog_sections(),
    }


def shop_game_url(file_id: int, filename: str) -> str:
    return f"/api/get_game/{file_id}#{filename}"


def shop_icon_url(title_id: str) -> str:
    return f"/api/shop/icon/{title_id}.png"


def build_shop_root_files(files: Iterable[ContentFile]) -> list[dict]:
    return [
        {"url": shop_game_url(index, item.name), "size": item.size}
        for index, item in enumerate(files, start=1)
    ]


def to_shop_section_item(file_id: int, item: ContentFile) -> dict:
    base_title_id = derive_base_title_id(item.kind, item.title_id)
    icon_url = shop_icon_url(base_title_id) if base_title_id else ""
    return {
        "name": item.name,
        "title_name": item.name,
        "title_id": base_title_id,
        "app_id": item.title_id or item.name,
        "app_version": str(item.version if item.version is not None else 0),
        "app_type": APP_TYPES[item.kind],
        "category": "",
        "icon_url": icon_url,
        "iconUrl": icon_url,
        "url": shop_game_url(file_id, item.name),
        "size": item.size,
        "file_id": file_id,
        "filename": item.name,
        "download_count": 0,
    }


def _version_number(item: dict) -> int:
    try:
        return int(item["app_version"])
    except (TypeError, ValueError):
        return 0


def _collect_latest_by_key(
    indexed: list[tuple[int, ContentFile]],
    kind: ContentKind,
    key_fn: Callable[[dict], str],
) -> list[dict]:
    latest: dict[str, dict] = {}
    for file_id, item in indexed:
        if item.kind != kind:
            continue
        candidate = to_shop_section_item(file_id, item)
        key = key_fn(candidate)
        current = latest.get(key)
        if current is None or _version_number(candidate) > _version_number(current):
            latest[key] = candidate
    return sorted(latest.values(), key=lambda entry: (-_version_number(entry), entry["file_id"]))


def build_shop_sections_payload(files: Iterable[ContentFile], limit: int) -> dict:
    """Group the catalog into the shop's New/Recommended/Updates/DLC/All sections.

    Updates keep only the newest version per base title and DLC only the
    newest version per DLC id. ``file_id`` is the 1-based catalog position.
    """

    indexed = list(enumerate(files, start=1))

    base_items = sorted(
        (
            to_shop_section_item(file_id, item)
            for file_id, item in indexed
            if item.kind in (ContentKind.BASE, ContentKind.UNKNOWN)
        ),
        key=lambda entry: entry["file_id"],
        reverse=True,
    )
    update_items = _collect_latest_by_key(
        indexed,
        ContentKind.UPDATE,
        lambda entry: entry["title_id"] or entry["app_id"],
    )
    dlc_items = _collect_latest_by_key(indexed, ContentKind.DLC, lambda entry: entry["app_id"])

    all_items = sorted(base_items + update_items + dlc_items, key=lambda entry: entry["name"].lower())

    new_items = base_items[:limit] or all_items[:limit]
    recommended_items = list(new_items) if new_items else all_items[:limit]

    return {
        "sections": [
            {"id": "new", "title": "New", "items": new_items},
            {"id": "recommended", "title": "Recommended", "items": recommended_items},
            {"id": "updates", "title": "Updates", "items": update_items[:limit]},
            {"id": "dlc", "title": "DLC", "items": dlc_items[:limit]},
            {
                "id": "all",
                "title": "All",
                "items": all_items,
                "total": len(all_items),
                "truncated": False,
            },
        ]
    }


def section_files(catalog: Catalog, section: str) -> list[ContentFile]:
    if section in ALL_SECTIONS:
        return list(catalog.files())
    kind = SECTION_KINDS.get(section)
    if kind is None:
        return []
    return catalog.files_by_kind(kind)
