from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

TITLE_ID_LENGTH = 16
MAX_VERSION = 0xFFFFFFFF

TITLE_ID_PATTERN = re.compile(r"(?P<title>[0-9a-f]{16})", re.IGNORECASE)
BRACKET_VERSION_PATTERN = re.compile(r"\[v(?P<version>[0-9]+)\]", re.IGNORECASE)
BARE_VERSION_PATTERN = re.compile(r"(?:^|[^\w])v(?P<version>[0-9]+)", re.IGNORECASE)


class ContentKind(str, Enum):
    """Content category derived from the trailing digits of a title id."""

    BASE = "base"
    UPDATE = "update"
    DLC = "dlc"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ParsedFilename:
    title_id: str | None
    version: int | None


def _match_title_id(text: str) -> str | None:
    match = TITLE_ID_PATTERN.search(text)
    if match is None:
        return None
    return match.group("title").upper()


def _match_version(text: str) -> int | None:
    for pattern in (BRACKET_VERSION_PATTERN, BARE_VERSION_PATTERN):
        match = pattern.search(text)
        if match is None:
            continue
        version = int(match.group("version"))
        # Versions outside the 32-bit range are treated as unparseable.
        if version > MAX_VERSION:
            return None
        return version
    return None


def parse_filename_metadata(name: str) -> ParsedFilename:
    """Extract the first 16-hex title id and the version token from ``name``.

    ``[vN]`` wins over a bare ``vN`` token when both are present.
    """

    return ParsedFilename(title_id=_match_title_id(name), version=_match_version(name))


def parse_content_metadata(name: str, relative_path: str) -> ParsedFilename:
    """Parse the filename first and fall back to the full relative path per field."""

    from_name = parse_filename_metadata(name)
    from_path = parse_filename_metadata(relative_path)
    return ParsedFilename(
        title_id=from_name.title_id if from_name.title_id is not None else from_path.title_id,
        version=from_name.version if from_name.version is not None else from_path.version,
    )


def classify_title_id(title_id: str | None) -> ContentKind:
    if title_id is None:
        return ContentKind.UNKNOWN

    normalized = title_id.upper()
    if normalized.endswith("000"):
        return ContentKind.BASE
    if normalized.endswith("800"):
        return ContentKind.UPDATE
    return ContentKind.DLC


def is_valid_title_id(value: str | None) -> bool:
    if not value or len(value) != TITLE_ID_LENGTH:
        return False
    return all(char in "0123456789abcdefABCDEF" for char in value)


def derive_base_title_id(kind: ContentKind, title_id: str | None) -> str | None:
    """Map an update or DLC title id back to the id of its base game.

    Updates share the base id with ``800`` swapped for ``000``. DLC ids sit one
    step above the base in the upper 13 hex digits.
    """

    if not is_valid_title_id(title_id):
        return None

    normalized = title_id.upper()
    if kind in (ContentKind.BASE, ContentKind.UNKNOWN):
        return normalized
    if kind == ContentKind.UPDATE:
        return f"{normalized[:-3]}000"

    high_value = int(normalized[:13], 16)
    if high_value == 0:
        return None
    return f"{high_value - 1:013X}000"
