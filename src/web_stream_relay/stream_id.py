"""URL → stream id の導出."""

import hashlib

STREAM_NAME_PREFIX = "stream_"

# SHA-256 の先頭 16 hex 文字 (64 bit)
STREAM_ID_LENGTH = 16

_HEX_DIGITS = frozenset("0123456789abcdef")


def derive_stream_id(url: str) -> str:
    """URL から決定的な stream id を導出する.

    プロセス再起動をまたいでも同じ値になる（乱数シードを使わない）。
    RTSP パスにそのまま使うため小文字 hex のみで構成する。

    Args:
        url: 対象ページの URL

    Returns:
        16 文字の hex 文字列
    """
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
    return digest[:STREAM_ID_LENGTH]


def stream_name(stream_id: str) -> str:
    """リレー上のストリーム名 (= RTSP パス)."""
    return f"{STREAM_NAME_PREFIX}{stream_id}"


def stream_id_from_name(name: str) -> str | None:
    """リレー上のストリーム名から stream id を取り出す.

    このサービスが作ったものでない名前には None を返す。
    """
    if not name.startswith(STREAM_NAME_PREFIX):
        return None
    stream_id = name[len(STREAM_NAME_PREFIX):]
    if len(stream_id) != STREAM_ID_LENGTH or not set(stream_id) <= _HEX_DIGITS:
        return None
    return stream_id
