from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Iterable

from foilshop.metadata import ContentKind


@dataclass(frozen=True)
class ContentFile:
    relative_path: str
    name: str
    size: int
    title_id: str | None
    version: int | None
    kind: ContentKind

    def sort_key(self) -> tuple:
        # None sorts before any concrete value, matching Option ordering.
        return (
            self.title_id is not None,
            self.title_id or "",
            self.version is not None,
            self.version or 0,
            self.name,
        )

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        return payload


@dataclass(frozen=True)
class TitleVersions:
    title_id: str
    files: list[ContentFile]

    def to_dict(self) -> dict:
        return {
            "title_id": self.title_id,
            "files": [item.to_dict() for item in self.files],
        }


class Catalog:
    """Sorted, read-only index of content files with lookup by title id.

    Instances are never mutated after construction; a rescan builds a new
    catalog and swaps it in through :class:`CatalogHolder`.
    """

    def __init__(self, files: Iterable[ContentFile] = ()) -> None:
        ordered = sorted(files, key=ContentFile.sort_key)

        titles: dict[str, list[int]] = {}
        for index, item in enumerate(ordered):
            if item.title_id is not None:
                titles.setdefault(item.title_id, []).append(index)

        self._files: tuple[ContentFile, ...] = tuple(ordered)
        self._titles: dict[str, tuple[int, ...]] = {
            title_id: tuple(indices) for title_id, indices in titles.items()
        }

    @classmethod
    def from_files(cls, files: Iterable[ContentFile]) -> "Catalog":
        return cls(files)

    def __len__(self) -> int:
        return len(self._files)

    def files(self) -> tuple[ContentFile, ...]:
        return self._files

    def title_ids(self) -> list[str]:
        return sorted(self._titles)

    def files_by_kind(self, kind: ContentKind) -> list[ContentFile]:
        return [item for item in self._files if item.kind == kind]

    def search(self, query: str) -> list[ContentFile]:
        needle = query.lower()
        return [
            item
            for item in self._files
            if needle in item.name.lower()
            or (item.title_id is not None and needle in item.title_id.lower())
        ]

    def versions(self, title_id: str) -> TitleVersions | None:
        """Return every file sharing ``title_id`` in catalog order."""

        key = title_id.upper()
        indices = self._titles.get(key)
        if indices is None:
            return None
        return TitleVersions(title_id=key, files=[self._files[index] for index in indices])

    def get_by_position(self, position: int) -> ContentFile | None:
        """Look up a file by its 1-based position in catalog order."""

        if position < 1 or position > len(self._files):
            return None
        return self._files[position - 1]


@dataclass
class CatalogState:
    catalog: Catalog
    generation: int = 0
    refreshed_at: str | None = None
    stale: bool = False
    last_error: str | None = None


class CatalogHolder:
    """Single-writer guard around the current catalog.

    Readers take the lock only long enough to grab a reference; the writer
    holds it only for the swap. Catalogs are immutable, so a reference taken
    under the lock stays consistent after release.
    """

    def __init__(self, catalog: Catalog | None = None) -> None:
        self._lock = threading.Lock()
        self._state = CatalogState(catalog=catalog if catalog is not None else Catalog())

    def snapshot(self) -> Catalog:
        with self._lock:
            return self._state.catalog

    def replace(self, catalog: Catalog) -> Catalog:
        with self._lock:
            previous = self._state.catalog
            self._state = CatalogState(
                catalog=catalog,
                generation=self._state.generation + 1,
                refreshed_at=datetime.now(timezone.utc).isoformat(),
            )
        return previous

    def mark_stale(self, error: str) -> None:
        with self._lock:
            self._state.stale = True
            self._state.last_error = error

    def status(self) -> dict:
        with self._lock:
            state = self._state
            return {
                "files": len(state.catalog),
                "generation": state.generation,
                "refreshed_at": state.refreshed_at,
                "stale": state.stale,
                "last_error": state.last_error,
            }
