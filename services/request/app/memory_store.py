"""
Request Service — インメモリ・ドキュメントストア

本物のデータベースなしでトランザクションの性質をテストするためのフェイク。
楽観的並行制御: トランザクション中に読んだドキュメントのバージョンを覚えておき、
コミット時に1つでも変わっていれば TransactionConflict を送出する。
書き込みはコミットまでバッファされ、失敗時は何も反映されない。
"""

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any

from .errors import TransactionConflict

_Key = tuple[str, str]


class MemoryTransaction:
    def __init__(self, store: "MemoryDocumentStore") -> None:
        self._store = store
        self.reads: dict[_Key, int] = {}
        self.writes: dict[_Key, dict[str, Any] | None] = {}

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        key = (collection, doc_id)
        # 他のトランザクションに実行を譲る（競合を再現できるように）
        await asyncio.sleep(0)
        if key in self.writes:
            pending = self.writes[key]
            if pending is None:
                return None
            base = self._store._docs[collection].get(doc_id, {})
            return {**copy.deepcopy(base), **pending}
        self.reads.setdefault(key, self._store._version(key))
        doc = self._store._docs[collection].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def update(
        self, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> None:
        key = (collection, doc_id)
        merged = dict(self.writes.get(key) or {})
        merged.update(fields)
        self.writes[key] = merged

    async def delete(self, collection: str, doc_id: str) -> None:
        self.writes[(collection, doc_id)] = None


class MemoryDocumentStore:
    def __init__(self) -> None:
        self._docs: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._versions: dict[_Key, int] = defaultdict(int)
        self._lock = asyncio.Lock()
        self.commits = 0

    def _version(self, key: _Key) -> int:
        return self._versions.get(key, 0)

    def put(self, collection: str, doc: dict[str, Any]) -> None:
        """テスト用の初期データ投入（同期）。"""
        key = (collection, doc["id"])
        self._docs[collection][doc["id"]] = copy.deepcopy(doc)
        self._versions[key] += 1

    async def insert(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        async with self._lock:
            if doc_id in self._docs[collection]:
                raise ValueError(f"Document already exists: {collection}/{doc_id}")
            self._docs[collection][doc_id] = {**copy.deepcopy(data), "id": doc_id}
            self._versions[(collection, doc_id)] += 1

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._docs[collection].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(doc)
            for doc in self._docs[collection].values()
            if all(doc.get(field) == value for field, value in equals.items())
        ]

    @asynccontextmanager
    async def transaction(self):
        tx = MemoryTransaction(self)
        yield tx
        await self._commit(tx)

    async def _commit(self, tx: MemoryTransaction) -> None:
        async with self._lock:
            for key, seen in tx.reads.items():
                if self._version(key) != seen:
                    raise TransactionConflict(f"{key[0]}/{key[1]} changed")
            for (collection, doc_id), fields in tx.writes.items():
                docs = self._docs[collection]
                if fields is None:
                    docs.pop(doc_id, None)
                elif doc_id in docs:
                    docs[doc_id].update(copy.deepcopy(fields))
                else:
                    continue
                self._versions[(collection, doc_id)] += 1
            self.commits += 1
