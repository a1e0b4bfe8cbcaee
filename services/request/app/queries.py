"""
Request Service — クエリハンドラ (Read 側)

一覧はすべて新しい順（requested_at の降順、同時刻は id の降順）で返す。
"""

from collections.abc import Iterable

from .models import Product, Request, RequestState
from .store import PRODUCTS, REQUESTS, DocumentStore


def newest_first(requests: Iterable[Request]) -> list[Request]:
    return sorted(requests, key=lambda r: (r.requested_at, r.id), reverse=True)


async def get_request(store: DocumentStore, request_id: str) -> Request | None:
    doc = await store.get(REQUESTS, request_id)
    return Request.from_document(doc) if doc else None


async def get_product(store: DocumentStore, product_id: str) -> Product | None:
    doc = await store.get(PRODUCTS, product_id)
    return Product.model_validate(doc) if doc else None


async def list_by_client(store: DocumentStore, client_id: str) -> list[Request]:
    """クライアントの全リクエスト（状態を問わない）。"""
    docs = await store.find(REQUESTS, client_id=client_id)
    return newest_first(Request.from_document(d) for d in docs)


async def list_pending_by_company(
    store: DocumentStore, company_id: str
) -> list[Request]:
    """企業宛ての保留中リクエストのみ。"""
    docs = await store.find(
        REQUESTS, company_id=company_id, state=RequestState.PENDING.value
    )
    return newest_first(Request.from_document(d) for d in docs)


async def list_pending(store: DocumentStore) -> list[Request]:
    docs = await store.find(REQUESTS, state=RequestState.PENDING.value)
    return newest_first(Request.from_document(d) for d in docs)


def filter_by_state(
    requests: Iterable[Request], state: RequestState | str
) -> list[Request]:
    state = RequestState(state)
    return [r for r in requests if r.state == state]


def count_by_state(requests: Iterable[Request]) -> dict[str, int]:
    """状態ごとの件数（バッジ表示用）。件数0の状態も含める。"""
    counts = {s.value: 0 for s in RequestState}
    for r in requests:
        counts[RequestState(r.state).value] += 1
    return counts
