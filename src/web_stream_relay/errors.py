"""エラー分類.

リクエストに返すエラーはすべて ``category`` を持ち、
API 層はこれをそのままレスポンスに載せる。
"""


class MissingParameterError(ValueError):
    """リクエストパラメータが欠落・不正."""

    category = "missing-parameter"


class CreationFailedError(RuntimeError):
    """ストリーム作成に失敗した（リソースは解放済み）."""

    category = "creation-failed"


class StreamIdCollisionError(CreationFailedError):
    """別 URL が同じ stream id に写像された."""

    def __init__(self, stream_id: str, existing_url: str, url: str):
        super().__init__(
            f"Stream id {stream_id} is already used by {existing_url!r} "
            f"(requested {url!r})"
        )
        self.stream_id = stream_id
        self.existing_url = existing_url
        self.url = url


class CreationTimeoutError(CreationFailedError):
    """Readiness handshake のどちらかの信号が期限内に届かなかった.

    Attributes:
        stream_id: 対象ストリーム
        side: 応答しなかった側 ("capture" または "relay")
        timeout: 待機した秒数
    """

    category = "creation-timeout"

    def __init__(self, stream_id: str, side: str, timeout: float):
        super().__init__(
            f"Stream {stream_id}: {side} not ready within {timeout:.1f}s"
        )
        self.stream_id = stream_id
        self.side = side
        self.timeout = timeout


class ConfigError(RuntimeError):
    """起動時の設定エラー（致命的）."""
