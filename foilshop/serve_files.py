from __future__ import annotations

import logging
import mimetypes
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_MEDIA_TYPE = "application/octet-stream"

_PATH_SEPARATORS = re.compile(r"[\\/]")
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
_DIGITS = re.compile(r"[0-9]+")


class FileServeError(Exception):
    status_code = 500
    message = "internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidPathError(FileServeError):
    status_code = 400
    message = "invalid path"


class ContentNotFoundError(FileServeError):
    status_code = 404
    message = "file not found"


class InvalidRangeError(FileServeError):
    status_code = 416
    message = "range not satisfiable"


class ContentReadError(FileServeError):
    status_code = 500
    message = "i/o error"


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start + 1

    def content_range(self, file_size: int) -> str:
        return f"bytes {self.start}-{self.end}/{file_size}"


@dataclass
class RangeResponse:
    status_code: int
    headers: dict[str, str]
    body: Iterator[bytes] = field(default_factory=lambda: iter(()))
    media_type: str | None = None


def sanitize_relative_path(requested_path: str) -> str:
    """Reduce a requested path to a relative path that stays under the root.

    Parent references, drive prefixes and NUL bytes are rejected outright;
    ``.`` and empty segments are dropped. Backslashes count as separators and a
    leading ``X:`` as a drive prefix on every platform, so a file whose name
    contains either can only be fetched by catalog position.
    """

    parts: list[str] = []
    for component in _PATH_SEPARATORS.split(requested_path.lstrip("/")):
        if component in ("", "."):
            continue
        if component == ".." or "\x00" in component or _DRIVE_PREFIX.match(component):
            raise InvalidPathError()
        parts.append(component)

    if not parts:
        raise InvalidPathError()
    return "/".join(parts)


def parse_range_header(value: str, file_size: int) -> ByteRange:
    """Parse a single ``bytes=`` range against ``file_size``.

    Supports ``N-M``, ``N-`` and ``-N``. Multi-range requests are rejected.
    """

    if file_size == 0 or not value.startswith("bytes="):
        raise InvalidRangeError()

    raw = value[len("bytes="):]
    if "," in raw or "-" not in raw:
        raise InvalidRangeError()

    raw_start, raw_end = raw.split("-", 1)

    if not raw_start:
        if not _DIGITS.fullmatch(raw_end):
            raise InvalidRangeError()
        suffix = int(raw_end)
        if suffix == 0:
            raise InvalidRangeError()
        return ByteRange(start=max(0, file_size - suffix), end=file_size - 1)

    if not _DIGITS.fullmatch(raw_start):
        raise InvalidRangeError()
    start = int(raw_start)

    if raw_end:
        if not _DIGITS.fullmatch(raw_end):
            raise InvalidRangeError()
        end = int(raw_end)
    else:
        end = file_size - 1

    if start >= file_size or end >= file_size or start > end:
        raise InvalidRangeError()
    return ByteRange(start=start, end=end)


def guess_media_type(path: str | Path) -> str:
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed or DEFAULT_MEDIA_TYPE


def iter_file_chunks(
    handle: BinaryIO,
    length: int,
    *,
    label: str,
    chunk_size: int = CHUNK_SIZE,
) -> Iterator[bytes]:
    """Yield exactly ``length`` bytes from the current position of ``handle``.

    The handle is closed on every exit path, including when the consumer
    stops iterating early. A short read raises instead of ending quietly.
    """

    remaining = length
    try:
        while remaining > 0:
            chunk = handle.read(min(chunk_size, remaining))
            if not chunk:
                raise OSError(f"unexpected end of file, {remaining} bytes short")
            remaining -= len(chunk)
            yield chunk
    except OSError as exc:
        logger.error("download aborted path=%s sent=%d of %d: %s", label, length - remaining, length, exc)
        raise
    finally:
        handle.close()
        if remaining > 0:
            logger.debug("download stream closed early path=%s remaining=%d", label, remaining)


def stream_with_range_support(
    root: str | Path,
    relative_path: str,
    range_header: str | None = None,
    *,
    include_body: bool = True,
) -> RangeResponse:
    """Open ``root/relative_path`` and describe a full, partial or 416 response.

    ``relative_path`` must already have gone through
    :func:`sanitize_relative_path`. With ``include_body=False`` (HEAD) the
    status and headers are resolved without opening the file.
    """

    path = Path(root) / relative_path
    try:
        file_stat = path.stat()
    except OSError as exc:
        logger.warning("download target not found or inaccessible path=%s: %s", relative_path, exc)
        raise ContentNotFoundError() from exc

    if not stat.S_ISREG(file_stat.st_mode):
        raise ContentNotFoundError()

    file_size = file_stat.st_size
    byte_range: ByteRange | None = None
    if range_header is not None:
        try:
            byte_range = parse_range_header(range_header, file_size)
        except InvalidRangeError:
            logger.warning(
                "invalid byte range requested path=%s range=%r file_size=%d",
                relative_path,
                range_header,
                file_size,
            )
            return RangeResponse(
                status_code=416,
                headers={"Content-Range": f"bytes */{file_size}"},
            )

    media_type = guess_media_type(path)
    headers = {"Accept-Ranges": "bytes", "Content-Type": media_type}
    if byte_range is None:
        headers["Content-Length"] = str(file_size)
    else:
        headers["Content-Length"] = str(len(byte_range))
        headers["Content-Range"] = byte_range.content_range(file_size)
    status_code = 200 if byte_range is None else 206

    if not include_body:
        return RangeResponse(status_code=status_code, headers=headers, media_type=media_type)

    try:
        handle = path.open("rb")
    except OSError as exc:
        raise ContentReadError(str(exc)) from exc

    if byte_range is None:
        logger.debug("serving full download path=%s file_size=%d", relative_path, file_size)
        return RangeResponse(
            status_code=200,
            headers=headers,
            body=iter_file_chunks(handle, file_size, label=relative_path),
            media_type=media_type,
        )

    try:
        handle.seek(byte_range.start)
    except OSError as exc:
        handle.close()
        raise ContentReadError(str(exc)) from exc

    logger.debug(
        "serving ranged download path=%s start=%d end=%d file_size=%d",
        relative_path,
        byte_range.start,
        byte_range.end,
        file_size,
    )
    return RangeResponse(
        status_code=206,
        headers=headers,
        body=iter_file_chunks(handle, len(byte_range), label=relative_path),
        media_type=media_type,
    )
