"""
Request Service — コマンドハンドラ (Write 側)

リクエストの作成・応答（承認/却下）・キャンセルを処理する。

在庫が減るのは承認時だけ。作成時には在庫を確保しないので、
保留中のリクエストを削除（キャンセル / リーパー）しても在庫を戻す必要はない。

各コマンドはコミット後に ChangeFeed へイベントを発行する。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from . import config
from .errors import (
    InsufficientStock,
    NotCancelable,
    ProductNotFound,
    RequestNotFound,
    RequestNotPending,
)
from .events import (
    RequestApproved,
    RequestCancelled,
    RequestCreated,
    RequestRejected,
)
from .feed import InMemoryChangeFeed
from .models import Decision, Product, Request, RequestState
from .store import PRODUCTS, REQUESTS, DocumentStore, Transaction, run_transaction

logger = logging.getLogger(__name__)


async def create_request(
    store: DocumentStore,
    feed: InMemoryChangeFeed,
    client_id: str,
    company_id: str,
    product_id: str,
    product_name: str,
    unit_price: float,
    quantity: int,
) -> Request:
    """
    リクエスト作成コマンド

    state=pending, requested_at=現在時刻 で保存する。在庫には触れない。
    数量の業務上の上限チェックは呼び出し側（フォーム層）の責任。
    """
    now = datetime.now(timezone.utc)
    request = Request(
        id=str(uuid4()),
        client_id=client_id,
        company_id=company_id,
        product_id=product_id,
        product_name=product_name,
        unit_price=unit_price,
        quantity=quantity,
        state=RequestState.PENDING,
        requested_at=now,
        responded_at=None,
    )
    await store.insert(REQUESTS, request.id, request.to_document())
    logger.info(
        "Request %s created: client=%s product=%s qty=%d",
        request.id, client_id, product_id, quantity,
    )

    await feed.publish_event(
        RequestCreated(
            request_id=request.id,
            client_id=client_id,
            company_id=company_id,
            product_id=product_id,
            quantity=quantity,
            timestamp=now,
        )
    )
    return request


async def reconcile(
    tx: Transaction,
    request_id: str,
    decision: Decision,
    now: datetime,
) -> tuple[Request, Product | None]:
    """
    リクエストに応答する（トランザクション本体）

    事前条件:
      - リクエストが存在し、pending である
      - 承認の場合、商品が存在し quantity >= request.quantity
    事後条件:
      - リクエストは終端状態になり responded_at=now
      - 承認の場合、商品の quantity がちょうど request.quantity だけ減る
    事前条件を満たさなければ例外を送出し、何も書き込まない。

    在庫の判定(比較)は、同じトランザクション内で読んだ値で書き込みより前に行う。
    """
    doc = await tx.get(REQUESTS, request_id)
    if doc is None:
        raise RequestNotFound(request_id)
    request = Request.from_document(doc)
    if not request.is_pending:
        raise RequestNotPending(request_id, request.state)

    decision = Decision(decision)
    product = None
    if decision == Decision.APPROVED:
        product_doc = await tx.get(PRODUCTS, request.product_id)
        if product_doc is None:
            raise ProductNotFound(request.product_id)
        product = Product.model_validate(product_doc)

        available = product.quantity
        requested = request.quantity
        if available < requested:
            raise InsufficientStock(available, requested)

        product = product.model_copy(
            update={"quantity": available - requested, "updated_at": now}
        )
        await tx.update(
            PRODUCTS,
            product.id,
            {"quantity": product.quantity, "updated_at": now},
        )

    await tx.update(
        REQUESTS, request_id, {"state": decision.value, "responded_at": now}
    )
    resolved = request.model_copy(
        update={"state": decision.value, "responded_at": now}
    )
    return resolved, product


async def respond_to_request(
    store: DocumentStore,
    feed: InMemoryChangeFeed,
    request_id: str,
    decision: Decision,
    max_attempts: int | None = None,
) -> Request:
    """
    応答コマンド（企業が承認 / 却下する）

    reconcile をトランザクションとして実行する。競合時のリトライは
    run_transaction が行い、使い切ったら TransactionFailed になる。
    """
    now = datetime.now(timezone.utc)
    request, product = await run_transaction(
        store,
        lambda tx: reconcile(tx, request_id, decision, now),
        max_attempts or config.TRANSACTION_MAX_ATTEMPTS,
    )

    if product is not None:
        logger.info(
            "Request %s approved: product=%s qty=%d remaining=%d",
            request_id, product.id, request.quantity, product.quantity,
        )
        event = RequestApproved(
            request_id=request.id,
            client_id=request.client_id,
            company_id=request.company_id,
            product_id=product.id,
            quantity=request.quantity,
            remaining_stock=product.quantity,
            timestamp=now,
        )
    else:
        logger.info("Request %s rejected", request_id)
        event = RequestRejected(
            request_id=request.id,
            client_id=request.client_id,
            company_id=request.company_id,
            timestamp=now,
        )
    await feed.publish_event(event)
    return request


async def remove_pending(tx: Transaction, request_id: str) -> Request:
    """
    保留中のリクエストを削除する（キャンセル / リーパー共通）

    pending かどうかは同じトランザクション内で確認する。
    在庫は変更しない（保留中のリクエストは在庫を減らしていない）。
    """
    doc = await tx.get(REQUESTS, request_id)
    if doc is None:
        raise RequestNotFound(request_id)
    request = Request.from_document(doc)
    if not request.can_cancel:
        raise NotCancelable(request_id, request.state)
    await tx.delete(REQUESTS, request_id)
    return request


async def cancel_pending_request(
    store: DocumentStore,
    feed: InMemoryChangeFeed,
    request_id: str,
) -> Request:
    """キャンセルコマンド（クライアントが保留中のリクエストを取り消す）"""
    request = await run_transaction(
        store,
        lambda tx: remove_pending(tx, request_id),
        config.TRANSACTION_MAX_ATTEMPTS,
    )
    logger.info("Request %s cancelled by client %s", request_id, request.client_id)

    await feed.publish_event(
        RequestCancelled(
            request_id=request.id,
            client_id=request.client_id,
            company_id=request.company_id,
            timestamp=datetime.now(timezone.utc),
        )
    )
    return request
