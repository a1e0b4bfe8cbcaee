"""
Request Service — ドキュメントストアのインターフェース

このサービスの永続化はすべてこの最小インターフェースに対して書かれている:
  - 2つのコレクション "requests" と "products" への CRUD
  - トランザクション内の read-modify-write

実装は SqlDocumentStore (PostgreSQL) と MemoryDocumentStore (テスト用) の2つ。
"""

import logging
from contextlib import AbstractAsyncContextManager
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from .errors import TransactionConflict, TransactionFailed

logger = logging.getLogger(__name__)

REQUESTS = "requests"
PRODUCTS = "products"

T = TypeVar("T")


class Transaction(Protocol):
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    async def update(
        self, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> None: ...

    async def delete(self, collection: str, doc_id: str) -> None: ...


class DocumentStore(Protocol):
    async def insert(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> None: ...

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    async def find(self, collection: str, **equals: Any) -> list[dict[str, Any]]: ...

    def transaction(self) -> AbstractAsyncContextManager[Transaction]: ...


async def run_transaction(
    store: DocumentStore,
    fn: Callable[[Transaction], Awaitable[T]],
    max_attempts: int = 5,
) -> T:
    """
    fn をトランザクション内で実行する。

    競合(TransactionConflict)のときだけ最初からやり直す。
    ドメイン例外はロールバックしてそのまま呼び出し元へ伝播する。
    """
    for attempt in range(1, max_attempts + 1):
        try:
            async with store.transaction() as tx:
                result = await fn(tx)
            return result
        except TransactionConflict as e:
            logger.warning(
                "Transaction conflict (attempt %d/%d): %s", attempt, max_attempts, e
            )
    raise TransactionFailed(max_attempts)
