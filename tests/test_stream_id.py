"""stream id 導出のテスト."""

import hashlib

from web_stream_relay.stream_id import (
    STREAM_ID_LENGTH,
    derive_stream_id,
    stream_id_from_name,
    stream_name,
)


def test_derive_is_deterministic():
    url = "https://example.com/live"
    assert derive_stream_id(url) == derive_stream_id(url)


def test_derive_matches_sha256_prefix():
    """再起動をまたいで安定（乱数シードに依存しない）."""
    url = "https://example.com/live"
    expected = hashlib.sha256(url.encode("utf-8")).hexdigest()[:STREAM_ID_LENGTH]
    assert derive_stream_id(url) == expected


def test_derive_uses_path_safe_characters():
    for url in [
        "https://example.com/live",
        "https://example.com/視聴?id=1&q=a b",
        "",
    ]:
        stream_id = derive_stream_id(url)
        assert len(stream_id) == STREAM_ID_LENGTH
        assert all(c in "0123456789abcdef" for c in stream_id)


def test_different_urls_yield_different_ids():
    assert derive_stream_id("https://example.com/a") != derive_stream_id(
        "https://example.com/b"
    )


def test_stream_name_roundtrip():
    stream_id = derive_stream_id("https://example.com/live")
    name = stream_name(stream_id)
    assert name == f"stream_{stream_id}"
    assert stream_id_from_name(name) == stream_id


def test_foreign_stream_names_ignored():
    assert stream_id_from_name("camera1") is None
    assert stream_id_from_name("stream_") is None
    assert stream_id_from_name("stream_123") is None
    assert stream_id_from_name("stream_ZZZZZZZZZZZZZZZZ") is None
