from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from .codec import decode_value, dumps, encode_value
from .config import Settings, settings
from .errors import StoreError, TransientStoreError
from .store import InMemoryStore, store

logger = logging.getLogger(__name__)

T = TypeVar("T")

Write = tuple[str, str, "dict[str, Any] | None"]


def split_path(path: str) -> tuple[str, str]:
    parent, _, doc_id = path.rpartition("/")
    if not parent or not doc_id:
        raise StoreError(f"invalid document path: {path!r}")
    return parent, doc_id


def _matches(data: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(key in data and data[key] == value for key, value in filters.items())


class WriteBatch:
    """Writes staged in memory and applied all-or-nothing on commit."""

    def __init__(self, db: DocumentStore) -> None:
        self.db = db
        self.writes: list[Write] = []

    def set(self, path: str, data: dict[str, Any]) -> None:
        split_path(path)
        self.writes.append(("set", path, copy.deepcopy(data)))

    def delete(self, path: str) -> None:
        split_path(path)
        self.writes.append(("delete", path, None))

    def __len__(self) -> int:
        return len(self.writes)

    async def commit(self) -> None:
        if self.writes:
            await self.db.commit_writes(list(self.writes))


class Transaction:
    def __init__(self) -> None:
        self._staged: dict[str, dict[str, Any] | None] = {}

    async def _read(self, path: str) -> dict[str, Any] | None:
        raise NotImplementedError

    async def get(self, path: str) -> dict[str, Any] | None:
        if path in self._staged:
            return copy.deepcopy(self._staged[path])
        return await self._read(path)

    def set(self, path: str, data: dict[str, Any]) -> None:
        split_path(path)
        self._staged[path] = copy.deepcopy(data)

    def delete(self, path: str) -> None:
        split_path(path)
        self._staged[path] = None

    @property
    def writes(self) -> list[Write]:
        return [("delete", path, None) if data is None else ("set", path, data) for path, data in self._staged.items()]


class DocumentStore:
    async def get(self, path: str) -> dict[str, Any] | None:
        raise NotImplementedError

    async def set(self, path: str, data: dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete(self, path: str) -> None:
        raise NotImplementedError

    async def query(self, collection: str, filters: dict[str, Any] | None = None) -> list[tuple[str, dict[str, Any]]]:
        raise NotImplementedError

    async def commit_writes(self, writes: list[Write]) -> None:
        raise NotImplementedError

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        raise NotImplementedError

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def close(self) -> None:
        return None


class InMemoryTransaction(Transaction):
    def __init__(self, documents: dict[str, dict[str, Any]]) -> None:
        super().__init__()
        self._documents = documents

    async def _read(self, path: str) -> dict[str, Any] | None:
        data = self._documents.get(path)
        return copy.deepcopy(data) if data is not None else None


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, backing: InMemoryStore | None = None) -> None:
        self.backing = backing if backing is not None else store
        self._lock = asyncio.Lock()

    def _apply(self, documents: dict[str, dict[str, Any]], op: str, path: str, data: dict[str, Any] | None) -> None:
        if op == "set" and data is not None:
            documents[path] = decode_value(encode_value(data))
        elif op == "delete":
            documents.pop(path, None)
        else:
            raise StoreError(f"unknown write operation {op!r}")

    def _commit_locked(self, writes: list[Write]) -> None:
        staged = dict(self.backing.documents)
        for op, path, data in writes:
            self._apply(staged, op, path, data)
        self.backing.documents = staged

    async def get(self, path: str) -> dict[str, Any] | None:
        data = self.backing.documents.get(path)
        return copy.deepcopy(data) if data is not None else None

    async def set(self, path: str, data: dict[str, Any]) -> None:
        split_path(path)
        async with self._lock:
            self._commit_locked([("set", path, data)])

    async def delete(self, path: str) -> None:
        async with self._lock:
            self._commit_locked([("delete", path, None)])

    async def query(self, collection: str, filters: dict[str, Any] | None = None) -> list[tuple[str, dict[str, Any]]]:
        rows: list[tuple[str, dict[str, Any]]] = []
        for path in self.backing.paths_under(collection):
            data = self.backing.documents[path]
            if filters and not _matches(data, filters):
                continue
            rows.append((split_path(path)[1], copy.deepcopy(data)))
        return rows

    async def commit_writes(self, writes: list[Write]) -> None:
        async with self._lock:
            self._commit_locked(writes)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self._lock:
            tx = InMemoryTransaction(self.backing.documents)
            result = await fn(tx)
            self._commit_locked(tx.writes)
            return result


class PostgresTransaction(Transaction):
    def __init__(self, conn: AsyncConnection) -> None:
        super().__init__()
        self.conn = conn

    async def _read(self, path: str) -> dict[str, Any] | None:
        result = await self.conn.execute(
            text("select data from documents where path = :path for update"), {"path": path}
        )
        row = result.first()
        return decode_value(row._mapping["data"]) if row is not None else None


class PostgresDocumentStore(DocumentStore):
    def __init__(self, database_url: str) -> None:
        self.engine: AsyncEngine = create_async_engine(database_url, pool_pre_ping=True)
        self._schema_ready = False

    async def _ensure_schema(self, conn: AsyncConnection) -> None:
        if self._schema_ready:
            return
        await conn.execute(
            text(
                """
                create table if not exists documents (
                  path text primary key,
                  parent text not null,
                  doc_id text not null,
                  data jsonb not null,
                  updated_at timestamptz not null default now()
                )
                """
            )
        )
        await conn.execute(text("create index if not exists idx_documents_parent on documents(parent)"))
        self._schema_ready = True

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[AsyncConnection]:
        try:
            async with self.engine.begin() as conn:
                await self._ensure_schema(conn)
                yield conn
        except (OperationalError, InterfaceError) as exc:
            raise TransientStoreError(f"postgres unavailable: {exc.__class__.__name__}") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise TransientStoreError(f"postgres connection lost: {exc.__class__.__name__}") from exc
            raise StoreError(f"postgres error: {exc.__class__.__name__}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"postgres error: {exc.__class__.__name__}") from exc

    @staticmethod
    async def _apply(conn: AsyncConnection, op: str, path: str, data: dict[str, Any] | None) -> None:
        if op == "delete":
            await conn.execute(text("delete from documents where path = :path"), {"path": path})
            return
        parent, doc_id = split_path(path)
        await conn.execute(
            text(
                """
                insert into documents (path, parent, doc_id, data, updated_at)
                values (:path, :parent, :doc_id, cast(:data as jsonb), now())
                on conflict (path) do update set data = excluded.data, updated_at = now()
                """
            ),
            {"path": path, "parent": parent, "doc_id": doc_id, "data": dumps(data)},
        )

    async def get(self, path: str) -> dict[str, Any] | None:
        async with self._connect() as conn:
            result = await conn.execute(text("select data from documents where path = :path"), {"path": path})
            row = result.first()
        return decode_value(row._mapping["data"]) if row is not None else None

    async def set(self, path: str, data: dict[str, Any]) -> None:
        async with self._connect() as conn:
            await self._apply(conn, "set", path, data)

    async def delete(self, path: str) -> None:
        async with self._connect() as conn:
            await self._apply(conn, "delete", path, None)

    async def query(self, collection: str, filters: dict[str, Any] | None = None) -> list[tuple[str, dict[str, Any]]]:
        async with self._connect() as conn:
            result = await conn.execute(
                text(
                    """
                    select doc_id, data from documents
                    where parent = :parent and data @> cast(:filters as jsonb)
                    order by doc_id
                    """
                ),
                {"parent": collection, "filters": dumps(filters or {})},
            )
            rows = result.fetchall()
        return [(row._mapping["doc_id"], decode_value(row._mapping["data"])) for row in rows]

    async def commit_writes(self, writes: list[Write]) -> None:
        async with self._connect() as conn:
            for op, path, data in writes:
                await self._apply(conn, op, path, data)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self._connect() as conn:
            tx = PostgresTransaction(conn)
            result = await fn(tx)
            for op, path, data in tx.writes:
                await self._apply(conn, op, path, data)
            return result

    async def close(self) -> None:
        await self.engine.dispose()


def get_document_store(config: Settings | None = None) -> DocumentStore:
    config = config or settings
    if config.storage_backend == "postgres":
        logger.info("using postgres document store")
        return PostgresDocumentStore(config.database_url)
    return InMemoryDocumentStore()
