"""テスト共通のフィクスチャ。インメモリのストアとフィードを使う。"""

from datetime import datetime, timedelta, timezone

import pytest

from app.feed import InMemoryChangeFeed
from app.memory_store import MemoryDocumentStore
from app.store import PRODUCTS, REQUESTS


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def events(feed):
    """フィードに発行されたイベントを (event_type, data) の列として記録する。"""
    received = []
    feed.listen(lambda event_type, data: received.append((event_type, data)))
    return received


@pytest.fixture
def add_product(store):
    def _add(product_id="prod-1", quantity=10, company_id="company-1"):
        store.put(
            PRODUCTS,
            {
                "id": product_id,
                "company_id": company_id,
                "name": "Pan integral",
                "quantity": quantity,
                "updated_at": None,
            },
        )
        return product_id

    return _add


@pytest.fixture
def add_request(store):
    """任意の時刻・状態のリクエストを直接投入する。"""

    def _add(
        request_id,
        client_id="client-1",
        company_id="company-1",
        product_id="prod-1",
        quantity=1,
        state="pending",
        hours_ago=0,
    ):
        requested_at = datetime.now(timezone.utc) - timedelta(hours=hours_ago)
        store.put(
            REQUESTS,
            {
                "id": request_id,
                "client_id": client_id,
                "company_id": company_id,
                "product_id": product_id,
                "product_name": "Pan integral",
                "unit_price": 1500.0,
                "quantity": quantity,
                "state": state,
                "requested_at": requested_at,
                "responded_at": None if state == "pending" else requested_at,
            },
        )
        return request_id

    return _add
