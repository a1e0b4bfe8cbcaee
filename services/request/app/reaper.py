"""
Request Service — 期限切れリクエストのリーパー

保留期間（既定 24 時間）を過ぎた pending リクエストを削除する。
クライアントが一覧を開いたとき（機会的）と、一定間隔のバックグラウンドループ
（定期的）の両方から呼ばれる。状態を持たず、連続で実行しても安全。

削除は1件ずつ別トランザクションで行い、その中で pending を再確認する。
その間に承認・却下・キャンセルされたものはスキップする。
"""

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from . import config, queries
from .commands import remove_pending
from .errors import NotCancelable, RequestNotFound
from .events import RequestExpired
from .feed import InMemoryChangeFeed
from .models import Request
from .store import DocumentStore, run_transaction

logger = logging.getLogger(__name__)


def _cutoff(retention_hours: float, now: datetime | None) -> datetime:
    if retention_hours < 0:
        raise ValueError("retention_hours must not be negative")
    now = now or datetime.now(timezone.utc)
    return now - timedelta(hours=retention_hours)


async def _reap(
    store: DocumentStore,
    feed: InMemoryChangeFeed,
    candidates: Iterable[Request],
    cutoff: datetime,
) -> int:
    removed = 0
    for request in candidates:
        if not (request.is_pending and request.requested_at < cutoff):
            continue
        try:
            await run_transaction(
                store,
                lambda tx, rid=request.id: remove_pending(tx, rid),
                config.TRANSACTION_MAX_ATTEMPTS,
            )
        except (RequestNotFound, NotCancelable) as e:
            logger.debug("Skipping request %s: %s", request.id, e)
            continue

        removed += 1
        await feed.publish_event(
            RequestExpired(
                request_id=request.id,
                client_id=request.client_id,
                company_id=request.company_id,
                requested_at=request.requested_at,
                timestamp=datetime.now(timezone.utc),
            )
        )
    return removed


async def sweep_stale_requests(
    store: DocumentStore,
    feed: InMemoryChangeFeed,
    client_id: str,
    retention_hours: float = 24,
    now: datetime | None = None,
) -> int:
    """クライアントの期限切れ pending リクエストを削除し、削除件数を返す。"""
    cutoff = _cutoff(retention_hours, now)
    requests = await queries.list_by_client(store, client_id)
    removed = await _reap(store, feed, requests, cutoff)
    if removed:
        logger.info("Swept %d stale request(s) for client %s", removed, client_id)
    return removed


async def sweep_all_stale_requests(
    store: DocumentStore,
    feed: InMemoryChangeFeed,
    retention_hours: float = 24,
    now: datetime | None = None,
) -> int:
    """全クライアントを対象に期限切れ pending リクエストを削除する。"""
    cutoff = _cutoff(retention_hours, now)
    removed = await _reap(store, feed, await queries.list_pending(store), cutoff)
    if removed:
        logger.info("Swept %d stale request(s)", removed)
    return removed


async def run_reaper(
    store: DocumentStore,
    feed: InMemoryChangeFeed,
    interval_seconds: float,
    retention_hours: float,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで interval_seconds ごとに掃除する。"""
    logger.info(
        "Reaper started (every %ss, retention %sh)", interval_seconds, retention_hours
    )
    while not shutdown_event.is_set():
        try:
            await sweep_all_stale_requests(store, feed, retention_hours)
        except Exception:
            logger.exception("Stale request sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
