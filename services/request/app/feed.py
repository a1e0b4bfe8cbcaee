"""
Request Service — 変更フィード (Change Feed)

リクエストの変更イベントを購読者へ届ける仕組み。

  InMemoryChangeFeed : 同一プロセス内でそのまま配信する
  RedisChangeFeed    : Redis Pub/Sub で発行し、バックグラウンドの購読ループが
                       受信したイベントをローカルのリスナーへ配信する

Redis Pub/Sub は fire-and-forget なので、購読ループが止まっている間の
イベントは失われる。ライブビューは受信のたびにスナップショットを取り直すため、
次のイベントで最新状態に収束する。
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis

from .events import RequestEvent

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], Awaitable[None] | None]


class InMemoryChangeFeed:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def listen(self, listener: Listener) -> Callable[[], None]:
        """リスナーを登録し、登録解除用の関数を返す。"""
        self._listeners.append(listener)

        def unlisten() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unlisten

    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        await self._dispatch(event_type, data)

    async def publish_event(self, event: RequestEvent) -> None:
        await self.publish(type(event).__name__, event.model_dump(mode="json"))

    async def _dispatch(self, event_type: str, data: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event_type, data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Change listener failed for %s", event_type)


class RedisChangeFeed(InMemoryChangeFeed):
    def __init__(self, redis: aioredis.Redis, channel: str = "request_events") -> None:
        super().__init__()
        self.redis = redis
        self.channel = channel

    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        await self.redis.publish(
            self.channel,
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        チャネルを購読し、受信したイベントをローカルのリスナーへ配信する。
        shutdown_event がセットされるまでループする。
        """
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info("Subscribed to %s channel", self.channel)

        try:
            while not shutdown_event.is_set():
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message and message["type"] == "message":
                    try:
                        event = json.loads(message["data"])
                    except (TypeError, ValueError):
                        logger.exception("Malformed change event")
                        continue
                    await self._dispatch(event.get("event_type"), event.get("data", {}))
                else:
                    await asyncio.sleep(0.1)
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
