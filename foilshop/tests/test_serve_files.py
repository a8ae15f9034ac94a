import io

import pytest

from foilshop.serve_files import (
    ByteRange,
    ContentNotFoundError,
    InvalidPathError,
    InvalidRangeError,
    guess_media_type,
    iter_file_chunks,
    parse_range_header,
    sanitize_relative_path,
    stream_with_range_support,
)


@pytest.fixture
def library(tmp_path):
    (tmp_path / "ten.nsp").write_bytes(b"0123456789")
    return tmp_path


def read_body(response):
    return b"".join(response.body)


@pytest.mark.parametrize("requested", ["../etc/passwd", "/../../x", "", "/", "a/../b", "C:/windows", "a\\..\\b", "bad\x00name"])
def test_sanitize_rejects_traversal_and_empty_paths(requested):
    with pytest.raises(InvalidPathError):
        sanitize_relative_path(requested)


def test_sanitize_normalizes_valid_paths():
    assert sanitize_relative_path("a/b/c.nsp") == "a/b/c.nsp"
    assert sanitize_relative_path("/a/./b//c.nsp") == "a/b/c.nsp"
    assert sanitize_relative_path("a\\b.nsp") == "a/b.nsp"


def test_parse_range_forms():
    assert parse_range_header("bytes=1-3", 10) == ByteRange(1, 3)
    assert parse_range_header("bytes=5-", 10) == ByteRange(5, 9)
    assert parse_range_header("bytes=-3", 10) == ByteRange(7, 9)
    assert parse_range_header("bytes=-30", 10) == ByteRange(0, 9)


@pytest.mark.parametrize(
    ("header", "size"),
    [
        ("bytes=0-0", 0),
        ("items=0-1", 10),
        ("bytes=0-1,3-4", 10),
        ("bytes=a-3", 10),
        ("bytes=1-b", 10),
        ("bytes=-0", 10),
        ("bytes=10-", 10),
        ("bytes=2-10", 10),
        ("bytes=5-2", 10),
        ("bytes=5", 10),
    ],
)
def test_parse_range_rejects_unsatisfiable(header, size):
    with pytest.raises(InvalidRangeError):
        parse_range_header(header, size)


def test_byte_range_length_and_content_range():
    byte_range = ByteRange(1, 3)

    assert len(byte_range) == 3
    assert byte_range.content_range(10) == "bytes 1-3/10"


def test_stream_partial_range(library):
    response = stream_with_range_support(library, "ten.nsp", "bytes=1-3")

    assert response.status_code == 206
    assert read_body(response) == b"123"
    assert response.headers["Content-Range"] == "bytes 1-3/10"
    assert response.headers["Content-Length"] == "3"
    assert response.headers["Accept-Ranges"] == "bytes"


def test_stream_full_file_without_range(library):
    response = stream_with_range_support(library, "ten.nsp")

    assert response.status_code == 200
    assert read_body(response) == b"0123456789"
    assert response.headers["Content-Length"] == "10"
    assert "Content-Range" not in response.headers
    assert response.media_type == "application/octet-stream"


def test_stream_suffix_and_open_ended_ranges(library):
    assert read_body(stream_with_range_support(library, "ten.nsp", "bytes=-3")) == b"789"
    assert read_body(stream_with_range_support(library, "ten.nsp", "bytes=5-")) == b"56789"


def test_stream_unsatisfiable_range_returns_416(library):
    response = stream_with_range_support(library, "ten.nsp", "bytes=20-30")

    assert response.status_code == 416
    assert response.headers == {"Content-Range": "bytes */10"}
    assert read_body(response) == b""


def test_stream_any_range_on_empty_file_is_416(tmp_path):
    (tmp_path / "empty.nsp").write_bytes(b"")

    response = stream_with_range_support(tmp_path, "empty.nsp", "bytes=0-")

    assert response.status_code == 416
    assert response.headers["Content-Range"] == "bytes */0"


def test_stream_missing_file_and_directory_are_not_found(library):
    (library / "folder").mkdir()

    with pytest.raises(ContentNotFoundError):
        stream_with_range_support(library, "missing.nsp")
    with pytest.raises(ContentNotFoundError):
        stream_with_range_support(library, "folder")


def test_stream_reads_large_files_in_chunks(tmp_path):
    payload = bytes(range(256)) * 1024
    (tmp_path / "big.xci").write_bytes(payload)

    response = stream_with_range_support(tmp_path, "big.xci", "bytes=100-")
    chunks = list(response.body)

    assert len(chunks) > 1
    assert b"".join(chunks) == payload[100:]


class TrackingHandle(io.BytesIO):
    closed_calls = 0

    def close(self):
        TrackingHandle.closed_calls += 1
        super().close()


def test_iter_file_chunks_closes_handle_on_early_stop():
    TrackingHandle.closed_calls = 0
    handle = TrackingHandle(b"a" * 100)

    chunks = iter_file_chunks(handle, 100, label="test", chunk_size=10)
    assert next(chunks) == b"a" * 10
    chunks.close()

    assert TrackingHandle.closed_calls == 1


def test_iter_file_chunks_raises_on_short_read():
    handle = io.BytesIO(b"abc")

    with pytest.raises(OSError):
        list(iter_file_chunks(handle, 10, label="short"))
    assert handle.closed


def test_guess_media_type_falls_back_to_binary():
    assert guess_media_type("game.nsp") == "application/octet-stream"
    assert guess_media_type("notes.txt") == "text/plain"


@pytest.mark.parametrize("header", ["bytes=١-٣", "bytes=-٣", "bytes=１-"])
def test_parse_range_rejects_non_ascii_digits(header):
    with pytest.raises(InvalidRangeError):
        parse_range_header(header, 10)


def test_stream_without_body_resolves_headers_only(library):
    full = stream_with_range_support(library, "ten.nsp", include_body=False)
    assert full.status_code == 200
    assert full.headers["Content-Length"] == "10"
    assert read_body(full) == b""

    partial = stream_with_range_support(library, "ten.nsp", "bytes=2-5", include_body=False)
    assert partial.status_code == 206
    assert partial.headers["Content-Range"] == "bytes 2-5/10"
    assert partial.headers["Content-Length"] == "4"
