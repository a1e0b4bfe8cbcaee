"""
Request Service — FastAPI エントリーポイント

商品リクエストのライフサイクルと在庫の整合を担うサービス。
Command (POST) と Query (GET) のエンドポイントを分離し、
ライブビューは WebSocket で配信する。

┌──────────┐  POST /commands/...  ┌─────────────────┐   requests / products
│ Client / │ ───────────────────▶ │ Request Service │ ─────── PostgreSQL
│ Company  │ ◀── WS /live/... ─── │                 │ ─────── Redis Pub/Sub
└──────────┘                      └─────────────────┘      (request_events)

呼び出し元の ID (client_id / company_id) はそのまま信頼する。認可は外部の責任。
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import (
    FastAPI,
    HTTPException,
    Request as HttpRequest,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, config, queries, reaper
from .errors import (
    InsufficientStock,
    ProductNotFound,
    RequestNotFound,
    RequestNotPending,
    RequestServiceError,
    TransactionFailed,
)
from .feed import InMemoryChangeFeed, RedisChangeFeed
from .live_views import LiveViewPublisher
from .models import Decision, RequestState
from .sql_store import SqlDocumentStore, create_schema
from .store import DocumentStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def bind_backends(app: FastAPI, store: DocumentStore, feed: InMemoryChangeFeed) -> None:
    """ストア・フィード・ライブビューを app.state に結び付ける。"""
    app.state.store = store
    app.state.feed = feed
    app.state.live_views = LiveViewPublisher(store, feed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    起動時:
      1. (未設定なら) PostgreSQL と Redis に接続し、スキーマを作成する
      2. Redis の購読ループとリーパーをバックグラウンドタスクとして開始する
    """
    engine = redis_conn = None
    shutdown_event = asyncio.Event()
    tasks = []

    if getattr(app.state, "store", None) is None:
        engine = create_async_engine(config.DATABASE_URL, echo=False)
        await create_schema(engine)
        session_factory = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        redis_conn = aioredis.from_url(config.REDIS_URL, decode_responses=True)
        feed = RedisChangeFeed(redis_conn, config.REQUEST_EVENTS_CHANNEL)
        bind_backends(app, SqlDocumentStore(session_factory), feed)
        tasks.append(asyncio.create_task(feed.run(shutdown_event)))

    tasks.append(
        asyncio.create_task(
            reaper.run_reaper(
                app.state.store,
                app.state.feed,
                config.SWEEP_INTERVAL_SECONDS,
                config.RETENTION_HOURS,
                shutdown_event,
            )
        )
    )
    yield

    shutdown_event.set()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    app.state.live_views.close()
    if redis_conn is not None:
        await redis_conn.aclose()
    if engine is not None:
        await engine.dispose()


app = FastAPI(title="Request Service", lifespan=lifespan)


# ── Error Handling ───────────────────────────────

_STATUS = {
    RequestNotFound: 404,
    ProductNotFound: 404,
    InsufficientStock: 409,
    RequestNotPending: 409,
    TransactionFailed: 503,
}


@app.exception_handler(RequestServiceError)
async def handle_domain_error(_request: HttpRequest, exc: RequestServiceError):
    status = next(
        (code for cls, code in _STATUS.items() if isinstance(exc, cls)), 400
    )
    body = {"code": exc.code, "detail": str(exc)}
    if isinstance(exc, InsufficientStock):
        body.update(available=exc.available, requested=exc.requested)
    return JSONResponse(status_code=status, content=body)


# ── Request Models ───────────────────────────────


class CreateRequestBody(BaseModel):
    client_id: str
    company_id: str
    product_id: str
    product_name: str
    unit_price: float = Field(ge=0)
    quantity: int = Field(gt=0)


class RespondBody(BaseModel):
    decision: Decision


def _dump(requests) -> list[dict]:
    return [r.model_dump(mode="json") for r in requests]


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/requests", status_code=201)
async def cmd_create_request(req: CreateRequestBody):
    """リクエスト作成コマンド（クライアント）"""
    request = await commands.create_request(
        app.state.store, app.state.feed,
        req.client_id, req.company_id,
        req.product_id, req.product_name,
        req.unit_price, req.quantity,
    )
    return request.model_dump(mode="json")


@app.post("/commands/requests/{request_id}/respond")
async def cmd_respond(request_id: str, req: RespondBody):
    """応答コマンド（企業が承認 / 却下）"""
    request = await commands.respond_to_request(
        app.state.store, app.state.feed, request_id, req.decision
    )
    return request.model_dump(mode="json")


@app.post("/commands/requests/{request_id}/cancel")
async def cmd_cancel(request_id: str):
    """キャンセルコマンド（クライアント、保留中のみ）"""
    request = await commands.cancel_pending_request(
        app.state.store, app.state.feed, request_id
    )
    return request.model_dump(mode="json")


@app.post("/commands/clients/{client_id}/sweep")
async def cmd_sweep(client_id: str, retention_hours: float = config.RETENTION_HOURS):
    """期限切れの保留中リクエストを削除する（クライアントが一覧を開いたとき）"""
    if retention_hours < 0:
        raise HTTPException(422, "retention_hours must not be negative")
    removed = await reaper.sweep_stale_requests(
        app.state.store, app.state.feed, client_id, retention_hours
    )
    return {"removed": removed}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/clients/{client_id}/requests")
async def query_client_requests(client_id: str, state: RequestState | None = None):
    """クライアントのリクエスト一覧（新しい順）"""
    requests = await queries.list_by_client(app.state.store, client_id)
    if state is not None:
        requests = queries.filter_by_state(requests, state)
    return _dump(requests)


@app.get("/queries/clients/{client_id}/requests/counts")
async def query_client_request_counts(client_id: str):
    """状態ごとの件数"""
    requests = await queries.list_by_client(app.state.store, client_id)
    return queries.count_by_state(requests)


@app.get("/queries/companies/{company_id}/requests/pending")
async def query_company_pending(company_id: str):
    """企業宛ての保留中リクエスト（新しい順）"""
    return _dump(await queries.list_pending_by_company(app.state.store, company_id))


@app.get("/queries/products/{product_id}")
async def query_get_product(product_id: str):
    product = await queries.get_product(app.state.store, product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    return product.model_dump(mode="json")


# ── Live Views (WebSocket) ───────────────────────


async def _stream(websocket: WebSocket, subscribe) -> None:
    """
    購読したスナップショットを JSON 配列として送り続ける。
    クライアントからの受信は切断の検知にだけ使う。
    """
    await websocket.accept()
    snapshots: asyncio.Queue = asyncio.Queue()
    try:
        subscription = await subscribe(snapshots.put)
    except Exception:
        logger.exception("Live view subscription failed")
        await websocket.close(code=1011)
        return

    async def pump() -> None:
        while True:
            snapshot = await snapshots.get()
            await websocket.send_json(_dump(snapshot))

    sender = asyncio.create_task(pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        subscription.unsubscribe()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)


@app.websocket("/live/clients/{client_id}/requests")
async def live_client_requests(websocket: WebSocket, client_id: str):
    await _stream(
        websocket,
        lambda cb: app.state.live_views.subscribe_by_client(client_id, cb),
    )


@app.websocket("/live/companies/{company_id}/requests")
async def live_company_requests(websocket: WebSocket, company_id: str):
    await _stream(
        websocket,
        lambda cb: app.state.live_views.subscribe_by_company_pending(company_id, cb),
    )


@app.get("/health")
async def health():
    return {"status": "ok", "service": "request-service"}
