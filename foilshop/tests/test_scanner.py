import os
import shutil
from pathlib import PurePath

import pytest

import foilshop.scanner as scanner_module
from foilshop.catalog import Catalog, CatalogHolder
from foilshop.metadata import ContentKind
from foilshop.scanner import (
    LibraryScanner,
    MissingRootError,
    has_utf8_name,
    is_supported_content,
    scan_library,
)


def write_file(root, relative_path, content=b"data"):
    path = root / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def test_is_supported_content_is_case_insensitive():
    assert is_supported_content("Game.NSP")
    assert is_supported_content("dir/game.xcz")
    assert not is_supported_content("game.zip")
    assert not is_supported_content("README")


def test_scan_library_builds_records_for_supported_files(tmp_path):
    write_file(tmp_path, "Game [0100ABCD12345000][v0].nsp", b"12345")
    write_file(tmp_path, "DLC/Pack [0100ABCD12346001][v65536].nsz")
    write_file(tmp_path, "notes.txt")
    write_file(tmp_path, "cover.jpg")

    files = {item.relative_path: item for item in scan_library(tmp_path)}

    assert sorted(files) == [
        "DLC/Pack [0100ABCD12346001][v65536].nsz",
        "Game [0100ABCD12345000][v0].nsp",
    ]
    base = files["Game [0100ABCD12345000][v0].nsp"]
    assert base.size == 5
    assert base.kind == ContentKind.BASE
    dlc = files["DLC/Pack [0100ABCD12346001][v65536].nsz"]
    assert dlc.name == "Pack [0100ABCD12346001][v65536].nsz"
    assert dlc.version == 65536
    assert dlc.kind == ContentKind.DLC


def test_scan_library_uses_parent_directory_title_id(tmp_path):
    write_file(tmp_path, "0100ABCD12345800/update.xci")

    (item,) = scan_library(tmp_path)

    assert item.title_id == "0100ABCD12345800"
    assert item.kind == ContentKind.UPDATE
    assert item.name == "update.xci"


def test_scan_library_skips_symlinks(tmp_path):
    target = write_file(tmp_path, "real.nsp")
    link = tmp_path / "link.nsp"
    try:
        link.symlink_to(target)
    except OSError:
        pytest.skip("symlinks not supported")

    files = scan_library(tmp_path)

    assert [item.relative_path for item in files] == ["real.nsp"]


def test_scan_library_missing_root_raises(tmp_path):
    with pytest.raises(MissingRootError):
        scan_library(tmp_path / "missing")


def test_failed_rescan_keeps_previous_catalog(tmp_path):
    library = tmp_path / "library"
    write_file(library, "Game [0100ABCD12345000].nsp")
    holder = CatalogHolder()
    scanner = LibraryScanner(library, holder, interval_seconds=1)

    assert scanner.refresh_once() is True
    good = holder.snapshot()
    assert len(good) == 1

    shutil.rmtree(library)

    assert scanner.refresh_once() is False
    assert holder.snapshot() is good
    assert [item.name for item in holder.snapshot().files()] == ["Game [0100ABCD12345000].nsp"]
    assert holder.status()["stale"] is True

    write_file(library, "Other [0100BBBB00000000].xci")

    assert scanner.refresh_once() is True
    assert [item.name for item in holder.snapshot().files()] == ["Other [0100BBBB00000000].xci"]
    assert holder.status()["stale"] is False


def test_unexpected_crash_in_refresh_is_contained(tmp_path, monkeypatch):
    write_file(tmp_path, "Game [0100ABCD12345000].nsp")
    previous = Catalog()
    holder = CatalogHolder(previous)
    scanner = LibraryScanner(tmp_path, holder)

    def explode(root):
        raise RuntimeError("boom")

    monkeypatch.setattr(scanner_module, "scan_library", explode)

    assert scanner.refresh_once() is False
    assert holder.snapshot() is previous
    assert "boom" in holder.status()["last_error"]


def test_scanner_interval_is_clamped_and_thread_stops(tmp_path):
    scanner = LibraryScanner(tmp_path, CatalogHolder(), interval_seconds=0)

    assert scanner.interval_seconds == 1

    scanner.start()
    assert scanner.running
    scanner.stop()
    assert not scanner.running


def test_scan_library_skips_non_utf8_names(tmp_path):
    write_file(tmp_path, "Game [0100ABCD12345000].nsp")
    name = os.fsdecode(b"caf\xe9 [0100ABCD12346001].nsp")
    if has_utf8_name(PurePath(name)):
        pytest.skip("filesystem encoding decodes the name")
    try:
        write_file(tmp_path, name)
    except OSError:
        pytest.skip("filesystem rejects non-UTF-8 names")

    files = scan_library(tmp_path)

    assert [item.name for item in files] == ["Game [0100ABCD12345000].nsp"]


def test_has_utf8_name():
    assert has_utf8_name(PurePath("dir/café.nsp"))
    assert not has_utf8_name(PurePath("caf\udce9.nsp"))
