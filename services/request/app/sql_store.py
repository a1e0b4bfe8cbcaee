"""
Request Service — PostgreSQL ドキュメントストア

コレクションごとにテーブルを1つ持つ（requests / products）。
トランザクション内の読み取りは SELECT ... FOR UPDATE で行ロックを取るので、
同じ商品への承認が同時に走っても後続は先行のコミット済み減算を見てから判定する。
シリアライズ失敗 / デッドロックは TransactionConflict に変換してリトライさせる。
"""

from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import TransactionConflict
from .store import PRODUCTS, REQUESTS

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id          TEXT PRIMARY KEY,
        company_id  TEXT,
        name        TEXT,
        quantity    INTEGER NOT NULL CHECK (quantity >= 0),
        updated_at  TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS requests (
        id            TEXT PRIMARY KEY,
        client_id     TEXT NOT NULL,
        company_id    TEXT NOT NULL,
        product_id    TEXT NOT NULL,
        product_name  TEXT NOT NULL,
        unit_price    DOUBLE PRECISION NOT NULL,
        quantity      INTEGER NOT NULL CHECK (quantity > 0),
        state         TEXT NOT NULL DEFAULT 'pending',
        requested_at  TIMESTAMPTZ NOT NULL,
        responded_at  TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_requests_client ON requests (client_id)",
    "CREATE INDEX IF NOT EXISTS ix_requests_company_state ON requests (company_id, state)",
]

_COLUMNS = {
    PRODUCTS: ("id", "company_id", "name", "quantity", "updated_at"),
    REQUESTS: (
        "id",
        "client_id",
        "company_id",
        "product_id",
        "product_name",
        "unit_price",
        "quantity",
        "state",
        "requested_at",
        "responded_at",
    ),
}

# serialization_failure, deadlock_detected
_CONFLICT_SQLSTATES = {"40001", "40P01"}


def _columns(collection: str, fields: dict[str, Any]) -> list[str]:
    """コレクション名と列名はホワイトリストで検証する（SQL に埋め込むため）。"""
    allowed = _COLUMNS.get(collection)
    if allowed is None:
        raise ValueError(f"Unknown collection: {collection}")
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown fields for {collection}: {sorted(unknown)}")
    return [c for c in allowed if c in fields]


def _is_conflict(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in _CONFLICT_SQLSTATES


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for ddl in SCHEMA:
            await conn.execute(text(ddl))


class SqlTransaction:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        _columns(collection, {})
        result = await self.session.execute(
            text(f"SELECT * FROM {collection} WHERE id = :id FOR UPDATE"),
            {"id": doc_id},
        )
        row = result.mappings().fetchone()
        return dict(row) if row else None

    async def update(
        self, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> None:
        cols = _columns(collection, fields)
        assignments = ", ".join(f"{c} = :{c}" for c in cols)
        await self.session.execute(
            text(f"UPDATE {collection} SET {assignments} WHERE id = :doc_id"),
            {**fields, "doc_id": doc_id},
        )

    async def delete(self, collection: str, doc_id: str) -> None:
        _columns(collection, {})
        await self.session.execute(
            text(f"DELETE FROM {collection} WHERE id = :id"),
            {"id": doc_id},
        )


class SqlDocumentStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def insert(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        fields = {**data, "id": doc_id}
        cols = _columns(collection, fields)
        async with self.session_factory() as session:
            await session.execute(
                text(f"""
                    INSERT INTO {collection} ({", ".join(cols)})
                    VALUES ({", ".join(f":{c}" for c in cols)})
                """),
                fields,
            )
            await session.commit()

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        _columns(collection, {})
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"SELECT * FROM {collection} WHERE id = :id"),
                {"id": doc_id},
            )
            row = result.mappings().fetchone()
            return dict(row) if row else None

    async def find(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        cols = _columns(collection, equals)
        where = " AND ".join(f"{c} = :{c}" for c in cols) or "TRUE"
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"SELECT * FROM {collection} WHERE {where}"),
                equals,
            )
            return [dict(row) for row in result.mappings().fetchall()]

    @asynccontextmanager
    async def transaction(self):
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    yield SqlTransaction(session)
            except DBAPIError as e:
                if _is_conflict(e):
                    raise TransactionConflict(str(e.orig)) from e
                raise
