import json

import pytest

from foilshop.config import TitleDbConfig
from foilshop.titledb import (
    ESHOP_IMAGE_HOST,
    TitleDb,
    TitleDbError,
    TitleInfo,
    load_cache,
    merge_sources,
    parse_titles_payload,
    save_cache,
)

PAYLOAD = {
    "70010000000001": {
        "id": "0100abcd12345000",
        "iconUrl": "https://cdn.example/icon.jpg",
        "bannerUrl": "https://cdn.example/banner.jpg",
        "name": "Demo Game",
    },
    "70010000000002": {"id": "0100ABCD12346001", "icon_url": "/i/dlc.jpg"},
    "70010000000003": {"id": "not-a-title-id", "name": "Broken"},
    "70010000000004": {"name": "No id"},
}


def test_parse_titles_payload_normalizes_ids_and_icon_paths():
    entries = dict(parse_titles_payload(PAYLOAD))

    assert sorted(entries) == ["0100ABCD12345000", "0100ABCD12346001"]
    assert entries["0100ABCD12345000"].name == "Demo Game"
    assert entries["0100ABCD12346001"].icon_url == f"{ESHOP_IMAGE_HOST}/i/dlc.jpg"


def test_parse_titles_payload_rejects_non_object():
    with pytest.raises(TitleDbError):
        parse_titles_payload([1, 2, 3])


def test_merge_sources_first_non_empty_field_wins():
    merged = merge_sources(
        [
            [("0100ABCD12345000", TitleInfo(icon_url="first", name=None))],
            [("0100ABCD12345000", TitleInfo(icon_url="second", name="Named", banner_url="banner"))],
        ]
    )

    info = merged["0100ABCD12345000"]
    assert info.icon_url == "first"
    assert info.name == "Named"
    assert info.banner_url == "banner"


def test_cache_round_trip_is_written_atomically(tmp_path):
    path = tmp_path / "titledb" / "US.en.json"

    save_cache(path, {"0100ABCD12345000": TitleInfo(icon_url="https://x/icon.jpg")})

    assert load_cache(path)["0100ABCD12345000"].icon_url == "https://x/icon.jpg"
    assert [item.name for item in path.parent.iterdir()] == ["US.en.json"]


def test_refresh_merges_sources_and_writes_cache(tmp_path):
    requested = []

    def fake_fetch(url):
        requested.append(url)
        if "override" in url:
            raise TitleDbError("unreachable")
        return PAYLOAD

    config = TitleDbConfig(url_override="https://override.example/titles.json")
    titledb = TitleDb(config, tmp_path, fetch=fake_fetch)

    count = titledb.refresh()

    assert count == 2
    assert len(requested) == 2
    assert "US.en.json" in requested[0]
    assert titledb.lookup("0100abcd12345000").banner_url == "https://cdn.example/banner.jpg"
    assert titledb.lookup("0100FFFF00000000") is None
    assert titledb.cache_path.exists()
    assert titledb.last_refresh() is not None


def test_refresh_falls_back_to_cache_when_network_is_empty(tmp_path):
    config = TitleDbConfig()
    cache_path = tmp_path / "titledb" / "US.en.json"
    cache_path.parent.mkdir(parents=True)
    cache_path.write_text(
        json.dumps([{"id": "0100ABCD12345000", "icon_url": "https://cached/icon.jpg"}]),
        encoding="utf-8",
    )

    def failing_fetch(url):
        raise TitleDbError("offline")

    titledb = TitleDb(config, tmp_path, fetch=failing_fetch)

    assert titledb.refresh() == 1
    assert titledb.lookup("0100ABCD12345000").icon_url == "https://cached/icon.jpg"


def test_disabled_titledb_does_not_fetch(tmp_path):
    def unexpected_fetch(url):
        raise AssertionError("fetch should not be called")

    titledb = TitleDb(TitleDbConfig(enabled=False), tmp_path, fetch=unexpected_fetch)

    assert titledb.refresh() == 0
    titledb.start()
    titledb.stop()
