from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path, PurePath

from foilshop.catalog import Catalog, CatalogHolder, ContentFile
from foilshop.metadata import classify_title_id, parse_content_metadata

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".nsp", ".nsz", ".xci", ".xcz"}


class ScanError(Exception):
    """Raised when a library walk cannot produce a complete snapshot."""


class MissingRootError(ScanError):
    def __init__(self, root: Path) -> None:
        super().__init__(f"library root does not exist: {root}")
        self.root = root


class ScanMetadataError(ScanError):
    def __init__(self, path: Path, source: OSError) -> None:
        super().__init__(f"failed to read metadata for {path}: {source}")
        self.path = path
        self.source = source


def is_supported_content(path: str | PurePath) -> bool:
    return PurePath(path).suffix.lower() in SUPPORTED_EXTENSIONS


def build_content_file(relative_path: PurePath, size: int) -> ContentFile:
    rel = relative_path.as_posix()
    name = relative_path.name or rel
    parsed = parse_content_metadata(name, rel)
    return ContentFile(
        relative_path=rel,
        name=name,
        size=size,
        title_id=parsed.title_id,
        version=parsed.version,
        kind=classify_title_id(parsed.title_id),
    )


def has_utf8_name(relative_path: PurePath) -> bool:
    try:
        relative_path.as_posix().encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def scan_library(root: Path) -> list[ContentFile]:
    """Walk ``root`` and return a record for every supported content file.

    Symlinks are not followed and unreadable directories are skipped, as are
    files whose path is not valid UTF-8. A file whose metadata cannot be read
    aborts the whole scan so a partial snapshot never replaces a complete one.
    """

    started_at = time.monotonic()
    root = Path(root)
    if not root.is_dir():
        raise MissingRootError(root)

    files: list[ContentFile] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if not is_supported_content(path):
                continue
            try:
                stat_result = path.lstat()
            except OSError as exc:
                raise ScanMetadataError(path, exc) from exc

            if path.is_symlink() or not path.is_file():
                continue

            relative_path = path.relative_to(root)
            if not has_utf8_name(relative_path):
                logger.warning("skipping file with non-UTF-8 name path=%r", relative_path.as_posix())
                continue
            files.append(build_content_file(relative_path, stat_result.st_size))

    with_title_id = sum(1 for item in files if item.title_id is not None)
    logger.info(
        "library scan finished root=%s files=%d with_title_id=%d elapsed_ms=%d",
        root,
        len(files),
        with_title_id,
        int((time.monotonic() - started_at) * 1000),
    )
    return files


class LibraryScanner:
    """Periodically rescans the library and swaps the result into a holder."""

    def __init__(self, root: Path, holder: CatalogHolder, *, interval_seconds: int = 30) -> None:
        self.root = Path(root)
        self.holder = holder
        self.interval_seconds = max(1, int(interval_seconds))
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def refresh_once(self) -> bool:
        """Run one scan and swap the catalog; return whether the swap happened.

        The walk and index build happen before the holder lock is taken.
        """

        try:
            files = scan_library(self.root)
            catalog = Catalog.from_files(files)
        except ScanError as exc:
            stale_files = len(self.holder.snapshot())
            logger.error("catalog refresh failed, keeping stale catalog files=%d: %s", stale_files, exc)
            self.holder.mark_stale(str(exc))
            return False
        except Exception as exc:  # noqa: BLE001 - one bad tick must not stop the loop
            logger.exception("catalog refresh crashed")
            self.holder.mark_stale(f"unexpected error: {exc}")
            return False

        self.holder.replace(catalog)
        logger.info("catalog refreshed files=%d", len(catalog))
        return True

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.refresh_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="foilshop-scanner", daemon=True)
        self._thread.start()
        logger.info("background scanner started interval_seconds=%d", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
