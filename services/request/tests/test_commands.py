"""リクエストの作成・応答・キャンセルのテスト。"""

import pytest

from app import commands, queries
from app.errors import (
    InsufficientStock,
    NotCancelable,
    ProductNotFound,
    RequestNotFound,
    RequestNotPending,
)
from app.models import Decision, RequestState


async def _create(store, feed, quantity, product_id="prod-1", client_id="client-1"):
    return await commands.create_request(
        store, feed,
        client_id=client_id,
        company_id="company-1",
        product_id=product_id,
        product_name="Pan integral",
        unit_price=1500.0,
        quantity=quantity,
    )


async def _stock(store, product_id="prod-1"):
    return (await queries.get_product(store, product_id)).quantity


class TestCreateRequest:
    @pytest.mark.asyncio
    async def test_creates_pending_request_without_touching_stock(
        self, store, feed, add_product
    ):
        add_product(quantity=10)

        request = await _create(store, feed, 4)

        assert request.state == RequestState.PENDING
        assert request.responded_at is None
        assert request.requested_at.tzinfo is not None
        assert await queries.get_request(store, request.id) == request
        assert await _stock(store) == 10

    @pytest.mark.asyncio
    async def test_publishes_created_event(self, store, feed, events, add_product):
        add_product()

        request = await _create(store, feed, 2)

        assert events[0][0] == "RequestCreated"
        assert events[0][1]["request_id"] == request.id
        assert events[0][1]["client_id"] == "client-1"
        assert events[0][1]["company_id"] == "company-1"


class TestRespondToRequest:
    @pytest.mark.asyncio
    async def test_approval_decrements_stock(self, store, feed, add_product):
        """10 個の在庫に 4 個のリクエストを承認すると 6 個になる。"""
        add_product(quantity=10)
        request = await _create(store, feed, 4)

        approved = await commands.respond_to_request(
            store, feed, request.id, Decision.APPROVED
        )

        assert approved.state == RequestState.APPROVED
        assert approved.responded_at is not None
        stored = await queries.get_request(store, request.id)
        assert stored.state == RequestState.APPROVED
        assert stored.responded_at == approved.responded_at
        assert await _stock(store) == 6

    @pytest.mark.asyncio
    async def test_approval_can_take_exactly_the_remaining_stock(
        self, store, feed, add_product
    ):
        add_product(quantity=5)
        request = await _create(store, feed, 5)

        await commands.respond_to_request(store, feed, request.id, Decision.APPROVED)

        assert await _stock(store) == 0

    @pytest.mark.asyncio
    async def test_insufficient_stock_changes_nothing(self, store, feed, add_product):
        """在庫 3 に対して 5 個の承認は失敗し、リクエストも在庫もそのまま。"""
        add_product(quantity=3)
        request = await _create(store, feed, 5)
        commits_before = store.commits

        with pytest.raises(InsufficientStock) as exc_info:
            await commands.respond_to_request(
                store, feed, request.id, Decision.APPROVED
            )

        assert exc_info.value.available == 3
        assert exc_info.value.requested == 5
        assert str(exc_info.value) == "Insufficient stock: 3 available, 5 requested"
        assert await queries.get_request(store, request.id) == request
        assert await _stock(store) == 3
        assert store.commits == commits_before

    @pytest.mark.asyncio
    async def test_rejection_never_touches_stock(self, store, feed, add_product):
        add_product(quantity=1)
        request = await _create(store, feed, 50)

        rejected = await commands.respond_to_request(
            store, feed, request.id, Decision.REJECTED
        )

        assert rejected.state == RequestState.REJECTED
        assert rejected.responded_at is not None
        assert await _stock(store) == 1

    @pytest.mark.asyncio
    async def test_rejection_does_not_need_the_product(self, store, feed):
        request = await _create(store, feed, 2, product_id="gone")

        rejected = await commands.respond_to_request(
            store, feed, request.id, "rejected"
        )

        assert rejected.state == RequestState.REJECTED

    @pytest.mark.asyncio
    async def test_missing_request(self, store, feed):
        with pytest.raises(RequestNotFound):
            await commands.respond_to_request(store, feed, "nope", Decision.APPROVED)

    @pytest.mark.asyncio
    async def test_missing_product_leaves_request_pending(self, store, feed):
        request = await _create(store, feed, 2, product_id="deleted-product")

        with pytest.raises(ProductNotFound) as exc_info:
            await commands.respond_to_request(
                store, feed, request.id, Decision.APPROVED
            )

        assert exc_info.value.product_id == "deleted-product"
        assert (await queries.get_request(store, request.id)).is_pending

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first", [Decision.APPROVED, Decision.REJECTED])
    async def test_resolved_request_is_immutable(
        self, store, feed, add_product, first
    ):
        add_product(quantity=10)
        request = await _create(store, feed, 3)
        resolved = await commands.respond_to_request(store, feed, request.id, first)
        stock = await _stock(store)

        for decision in Decision:
            with pytest.raises(RequestNotPending):
                await commands.respond_to_request(store, feed, request.id, decision)
        with pytest.raises(NotCancelable):
            await commands.cancel_pending_request(store, feed, request.id)

        assert await queries.get_request(store, request.id) == resolved
        assert await _stock(store) == stock

    @pytest.mark.asyncio
    async def test_publishes_approved_event_with_remaining_stock(
        self, store, feed, events, add_product
    ):
        add_product(quantity=10)
        request = await _create(store, feed, 4)

        await commands.respond_to_request(store, feed, request.id, Decision.APPROVED)

        event_type, data = events[-1]
        assert event_type == "RequestApproved"
        assert data["remaining_stock"] == 6
        assert data["quantity"] == 4

    @pytest.mark.asyncio
    async def test_failed_approval_publishes_nothing(
        self, store, feed, events, add_product
    ):
        add_product(quantity=1)
        request = await _create(store, feed, 2)
        events.clear()

        with pytest.raises(InsufficientStock):
            await commands.respond_to_request(
                store, feed, request.id, Decision.APPROVED
            )

        assert events == []


class TestCancelPendingRequest:
    @pytest.mark.asyncio
    async def test_cancel_removes_request_without_touching_stock(
        self, store, feed, add_product
    ):
        add_product(quantity=10)
        request = await _create(store, feed, 4)

        cancelled = await commands.cancel_pending_request(store, feed, request.id)

        assert cancelled.id == request.id
        assert await queries.list_by_client(store, "client-1") == []
        assert await queries.list_pending_by_company(store, "company-1") == []
        assert await _stock(store) == 10

    @pytest.mark.asyncio
    async def test_cancel_missing_request(self, store, feed):
        with pytest.raises(RequestNotFound):
            await commands.cancel_pending_request(store, feed, "nope")

    @pytest.mark.asyncio
    async def test_cancel_twice(self, store, feed, add_product):
        add_product()
        request = await _create(store, feed, 1)
        await commands.cancel_pending_request(store, feed, request.id)

        with pytest.raises(RequestNotFound):
            await commands.cancel_pending_request(store, feed, request.id)

    @pytest.mark.asyncio
    async def test_publishes_cancelled_event(self, store, feed, events, add_product):
        add_product()
        request = await _create(store, feed, 1)

        await commands.cancel_pending_request(store, feed, request.id)

        assert events[-1][0] == "RequestCancelled"
        assert events[-1][1]["request_id"] == request.id
