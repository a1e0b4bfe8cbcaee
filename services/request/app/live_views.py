"""
Request Service — ライブビュー (Live View Publisher)

クライアント / 企業ごとのリクエスト一覧を購読者へプッシュする。

  subscribe_by_client          : クライアントの全リクエスト
  subscribe_by_company_pending : 企業宛ての保留中リクエスト

購読した時点で現在のスナップショットを1回届け、以降は対象のクライアント /
企業に関するイベントを受けるたびに一覧を取り直して丸ごと届ける（差分ではない）。
1つのビューの再取得は直列化するので、最後に届くのは常に最新の状態になる。

購読は Subscription を返す。unsubscribe() 以降は何も届かない。
"""

import asyncio
import inspect
import itertools
import logging
from typing import Awaitable, Callable

from . import queries
from .feed import InMemoryChangeFeed
from .models import Request
from .store import DocumentStore

logger = logging.getLogger(__name__)

OnChange = Callable[[list[Request]], Awaitable[None] | None]


class Subscription:
    def __init__(self, view: "_View", publisher: "LiveViewPublisher") -> None:
        self._view = view
        self._publisher = publisher

    @property
    def active(self) -> bool:
        return self._view.active

    def unsubscribe(self) -> None:
        self._publisher._remove(self._view)


class _View:
    def __init__(
        self,
        key: tuple[str, str],
        load: Callable[[], Awaitable[list[Request]]],
        on_change: OnChange,
    ) -> None:
        self.key = key
        self.load = load
        self.on_change = on_change
        self.active = True
        self.lock = asyncio.Lock()

    def matches(self, data: dict) -> bool:
        field, value = self.key
        return data.get(field) == value

    async def refresh(self) -> None:
        async with self.lock:
            if not self.active:
                return
            snapshot = await self.load()
            if not self.active:
                return
            try:
                result = self.on_change(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Live view callback failed for %s=%s", *self.key)


class LiveViewPublisher:
    def __init__(self, store: DocumentStore, feed: InMemoryChangeFeed) -> None:
        self.store = store
        self._views: dict[int, _View] = {}
        self._ids = itertools.count()
        self._unlisten = feed.listen(self._on_event)

    async def subscribe_by_client(
        self, client_id: str, on_change: OnChange
    ) -> Subscription:
        return await self._subscribe(
            ("client_id", client_id),
            lambda: queries.list_by_client(self.store, client_id),
            on_change,
        )

    async def subscribe_by_company_pending(
        self, company_id: str, on_change: OnChange
    ) -> Subscription:
        return await self._subscribe(
            ("company_id", company_id),
            lambda: queries.list_pending_by_company(self.store, company_id),
            on_change,
        )

    async def _subscribe(self, key, load, on_change) -> Subscription:
        view = _View(key, load, on_change)
        self._views[next(self._ids)] = view
        try:
            await view.refresh()
        except Exception:
            self._remove(view)
            raise
        return Subscription(view, self)

    def _remove(self, view: _View) -> None:
        view.active = False
        for view_id, v in list(self._views.items()):
            if v is view:
                del self._views[view_id]

    async def _on_event(self, event_type: str, data: dict) -> None:
        targets = [v for v in self._views.values() if v.matches(data)]
        results = await asyncio.gather(
            *(v.refresh() for v in targets), return_exceptions=True
        )
        for view, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.error(
                    "Live view refresh failed for %s=%s after %s",
                    *view.key,
                    event_type,
                    exc_info=result,
                )

    @property
    def view_count(self) -> int:
        return len(self._views)

    def close(self) -> None:
        self._unlisten()
        for view in list(self._views.values()):
            self._remove(view)
