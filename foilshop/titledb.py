from __future__ import annotations

import json
import logging
import tempfile
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path

from foilshop.config import TitleDbConfig
from foilshop.metadata import is_valid_title_id

logger = logging.getLogger(__name__)

BLAWAR_RAW_URL = "https://raw.githubusercontent.com/blawar/titledb/master/{region}.{language}.json"
ESHOP_IMAGE_HOST = "https://img-eshop.cdn.nintendo.net"
USER_AGENT = "foilshop/1.0 (TitleDB metadata fetcher)"
FETCH_TIMEOUT_SECONDS = 60


class TitleDbError(Exception):
    """Raised when a metadata source cannot be fetched or parsed."""


@dataclass
class TitleInfo:
    icon_url: str | None = None
    banner_url: str | None = None
    name: str | None = None

    def merge(self, other: "TitleInfo") -> None:
        if self.icon_url is None and other.icon_url is not None:
            self.icon_url = other.icon_url
        if self.banner_url is None and other.banner_url is not None:
            self.banner_url = other.banner_url
        if self.name is None and other.name is not None:
            self.name = other.name


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def parse_titles_payload(payload: object) -> list[tuple[str, TitleInfo]]:
    """Parse a TitleDB region file: an object of entries keyed by nsuId."""

    if not isinstance(payload, dict):
        raise TitleDbError("invalid format: expected a JSON object")

    entries: list[tuple[str, TitleInfo]] = []
    for entry in payload.values():
        if not isinstance(entry, dict):
            raise TitleDbError("invalid format: expected object entries")

        raw_id = entry.get("id")
        if not isinstance(raw_id, str):
            continue
        title_id = raw_id.upper()
        if not is_valid_title_id(title_id):
            continue

        icon_url = _optional_str(entry.get("iconUrl")) or _optional_str(entry.get("icon_url"))
        if icon_url and not icon_url.startswith("http"):
            icon_url = f"{ESHOP_IMAGE_HOST}{icon_url}"
        banner_url = _optional_str(entry.get("bannerUrl")) or _optional_str(entry.get("banner_url"))

        entries.append(
            (
                title_id,
                TitleInfo(icon_url=icon_url, banner_url=banner_url, name=_optional_str(entry.get("name"))),
            )
        )
    return entries


def merge_sources(results: list[list[tuple[str, TitleInfo]]]) -> dict[str, TitleInfo]:
    merged: dict[str, TitleInfo] = {}
    for entries in results:
        for title_id, info in entries:
            merged.setdefault(title_id, TitleInfo()).merge(info)
    return merged


def _fetch_json(url: str) -> object:
    request = urllib.request.Request(
        url,
        headers={"Accept": "application/json", "User-Agent": USER_AGENT},
    )
    try:
        with urllib.request.urlopen(request, timeout=FETCH_TIMEOUT_SECONDS) as response:
            return json.load(response)
    except urllib.error.URLError as exc:
        raise TitleDbError(f"unable to reach {url}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise TitleDbError(f"invalid JSON returned from {url}") from exc


def load_cache(path: Path) -> dict[str, TitleInfo]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise TitleDbError(f"invalid cache format in {path}")

    entries: dict[str, TitleInfo] = {}
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("id"), str):
            continue
        entries[item["id"].upper()] = TitleInfo(
            icon_url=_optional_str(item.get("icon_url")),
            banner_url=_optional_str(item.get("banner_url")),
            name=_optional_str(item.get("name")),
        )
    return entries


def save_cache(path: Path, entries: dict[str, TitleInfo]) -> None:
    payload = [
        {
            "id": title_id,
            "icon_url": info.icon_url,
            "banner_url": info.banner_url,
            "name": info.name,
        }
        for title_id, info in sorted(entries.items())
    ]
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        json.dump(payload, handle, indent=2)
        handle.flush()
        temp_path = Path(handle.name)
    temp_path.replace(path)


class TitleDb:
    """Icon/banner/name lookups keyed by uppercase title id.

    Refresh fetches every source without holding the lock and only takes it
    to swap the merged map in.
    """

    def __init__(self, config: TitleDbConfig, data_dir: Path, *, fetch=_fetch_json) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, TitleInfo] = {}
        self._last_refresh: float | None = None
        self._fetch = fetch
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.config = config
        self.data_dir = Path(data_dir)

    @property
    def cache_path(self) -> Path:
        return self.data_dir / "titledb" / f"{self.config.region}.{self.config.language}.json"

    def source_urls(self) -> list[tuple[str, str]]:
        urls = [
            ("blawar_raw", BLAWAR_RAW_URL.format(region=self.config.region, language=self.config.language)),
        ]
        if self.config.url_override:
            urls.append(("url_override", self.config.url_override))
        return urls

    def lookup(self, title_id: str) -> TitleInfo | None:
        with self._lock:
            return self._entries.get(title_id.upper())

    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def last_refresh(self) -> float | None:
        with self._lock:
            return self._last_refresh

    def _swap(self, entries: dict[str, TitleInfo]) -> None:
        with self._lock:
            self._entries = entries
            self._last_refresh = time.time()

    def load_cached(self) -> bool:
        path = self.cache_path
        if not path.exists():
            return False
        try:
            entries = load_cache(path)
        except (OSError, json.JSONDecodeError, TitleDbError) as exc:
            logger.warning("titledb cache load failed path=%s: %s", path, exc)
            return False
        self._swap(entries)
        logger.info("titledb loaded from cache entries=%d path=%s", len(entries), path)
        return True

    def refresh(self) -> int:
        """Fetch all sources, merge them and swap the result in.

        Falls back to the on-disk cache when every source comes back empty.
        Returns the number of entries now held.
        """

        if not self.config.enabled:
            logger.debug("titledb refresh skipped (disabled)")
            return self.entry_count()

        logger.info("titledb refresh starting region=%s language=%s", self.config.region, self.config.language)
        results: list[list[tuple[str, TitleInfo]]] = []
        for source_name, url in self.source_urls():
            try:
                entries = parse_titles_payload(self._fetch(url))
            except TitleDbError as exc:
                logger.warning("titledb source fetch failed source=%s: %s", source_name, exc)
                continue
            logger.info("titledb source fetched source=%s entries=%d", source_name, len(entries))
            results.append(entries)

        merged = merge_sources(results)
        if not merged:
            logger.info("titledb network fetch returned no data, trying cache")
            self.load_cached()
            return self.entry_count()

        self._swap(merged)
        logger.info("titledb loaded from network entries=%d", len(merged))
        try:
            save_cache(self.cache_path, merged)
        except OSError as exc:
            logger.warning("titledb cache save failed path=%s: %s", self.cache_path, exc)
        return len(merged)

    def _run(self) -> None:
        self.load_cached()
        while True:
            try:
                self.refresh()
            except Exception:  # noqa: BLE001 - keep the refresh loop alive
                logger.exception("titledb refresh crashed")
            if self._stop_event.wait(self.config.refresh_interval_seconds):
                return

    def start(self) -> None:
        if not self.config.enabled or (self._thread is not None and self._thread.is_alive()):
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="foilshop-titledb", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
