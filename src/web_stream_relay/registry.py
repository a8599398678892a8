"""ストリームレジストリ.

stream id → 予約 (作成中) または StreamContext の対応表。
予約は作成側が最初の await より前に同期的に置くため、
ほぼ同時に届いた同一 URL のリクエストは必ず同じエントリを見る。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from web_stream_relay.context import StreamContext, StreamState
from web_stream_relay.errors import CreationFailedError

logger = logging.getLogger(__name__)


def _consume_exception(future: asyncio.Future) -> None:
    # 待機者がいなくても "exception was never retrieved" を出さない
    if not future.cancelled():
        future.exception()


@dataclass
class Reservation:
    """作成中ストリームのプレースホルダ.

    ``future`` は作成結果の共有ハンドルで、勝者・敗者を問わず
    全呼び出し元がこれを待つ。
    """

    stream_id: str
    url: str
    future: asyncio.Future = field(repr=False)
    context: StreamContext | None = None


Entry = Reservation | StreamContext


class StreamRegistry:
    """作成中・稼働中ストリームの管理表."""

    def __init__(self):
        self._entries: dict[str, Entry] = {}

    def get(self, stream_id: str) -> Entry | None:
        return self._entries.get(stream_id)

    def active(self, stream_id: str) -> StreamContext | None:
        """稼働中 (ACTIVE) のコンテキストのみ返す. 予約は返さない."""
        entry = self._entries.get(stream_id)
        if isinstance(entry, StreamContext) and entry.state is StreamState.ACTIVE:
            return entry
        return None

    def reserve(self, stream_id: str, url: str) -> bool:
        """エントリがなければ予約を置く.

        await を含まないので、単一スレッドのイベントループ上ではアトミック。

        Returns:
            この呼び出しが予約を獲得したら True
        """
        if stream_id in self._entries:
            return False
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._entries[stream_id] = Reservation(stream_id, url, future)
        logger.debug("Reserved stream %s", stream_id)
        return True

    def attach(self, stream_id: str, context: StreamContext) -> None:
        """作成中のコンテキストを予約に紐付ける (shutdown から辿れるように)."""
        self._reservation(stream_id).context = context

    def commit(self, stream_id: str, context: StreamContext) -> None:
        """予約を完成したコンテキストで置き換え、待機者に通知する.

        Raises:
            KeyError: 予約が存在しない、または別のコンテキストに紐付いた予約の場合
        """
        reservation = self._reservation(stream_id)
        if reservation.context is not None and reservation.context is not context:
            raise KeyError(f"Reservation for stream {stream_id} belongs to another context")
        self._entries[stream_id] = context
        if not reservation.future.done():
            reservation.future.set_result(context)
        logger.debug("Committed stream %s", stream_id)

    def abandon(self, stream_id: str, error: BaseException) -> None:
        """予約を取り下げ、待機者全員に error を通知する. 予約がなければ何もしない."""
        entry = self._entries.get(stream_id)
        if not isinstance(entry, Reservation):
            return
        del self._entries[stream_id]
        if not entry.future.done():
            entry.future.set_exception(error)
        logger.debug("Abandoned reservation %s: %s", stream_id, error)

    def remove(self, stream_id: str, owner: StreamContext | None = None) -> bool:
        """エントリを削除する. 存在しなければ何もしない (冪等).

        owner を指定した場合は、エントリがそのコンテキスト自身のときだけ削除する。
        古いコンテキストの後始末が、同じ id で作り直された新しいコンテキストを
        消さないようにするため。

        Returns:
            実際に削除したら True
        """
        entry = self._entries.get(stream_id)
        if entry is None:
            return False
        if owner is not None and entry is not owner:
            return False
        if isinstance(entry, Reservation):
            self.abandon(
                stream_id, CreationFailedError(f"Stream {stream_id} was removed")
            )
            return True
        del self._entries[stream_id]
        logger.debug("Removed stream %s", stream_id)
        return True

    async def wait(self, stream_id: str) -> StreamContext:
        """エントリの作成完了を待ってコンテキストを返す.

        Raises:
            KeyError: エントリが存在しない場合
            CreationFailedError: 作成に失敗した場合 (abandon で渡された例外)
        """
        entry = self._entries.get(stream_id)
        if entry is None:
            raise KeyError(f"Stream {stream_id} not found")
        if isinstance(entry, StreamContext):
            return entry
        # 1 つの待機者のキャンセルが共有ハンドルに波及しないように
        return await asyncio.shield(entry.future)

    def snapshot(self) -> list[tuple[str, Entry]]:
        return list(self._entries.items())

    def _reservation(self, stream_id: str) -> Reservation:
        entry = self._entries.get(stream_id)
        if not isinstance(entry, Reservation):
            raise KeyError(f"No reservation for stream {stream_id}")
        return entry

    def __contains__(self, stream_id: str) -> bool:
        return stream_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
