from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..auth import AuthProvider, validate_user_access
from ..errors import NotFoundError, ValidationError
from ..persistence import DocumentStore, Transaction
from ..retry import PERSISTENCE_RETRY, RetryPolicy, with_retry
from ..schemas import row_fields
from ..store import InMemoryStore
from ..versioning import create_version, get_version_by_number, snapshot_fields, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def coerce_payload(model: type[BaseModel], payload: BaseModel | dict[str, Any]) -> BaseModel:
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_unset=True)
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(str(exc)) from exc


def record_from_doc(doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"id": doc_id, **data}


class RecordStore:
    """Owner-scoped collection under ``users/{owner_id}/<collection>``."""

    collection = ""
    kind = "record"

    def __init__(
        self,
        db: DocumentStore,
        auth: AuthProvider,
        retry: RetryPolicy = PERSISTENCE_RETRY,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.auth = auth
        self.retry = retry
        self.clock = clock

    def collection_path(self, owner_id: str, collection: str | None = None) -> str:
        return f"users/{owner_id}/{collection or self.collection}"

    def document_path(self, owner_id: str, record_id: str, collection: str | None = None) -> str:
        if not record_id or "/" in record_id:
            raise ValidationError(f"invalid {self.kind} id: {record_id!r}")
        return f"{self.collection_path(owner_id, collection)}/{record_id}"

    def _guard(self, owner_id: str) -> None:
        validate_user_access(self.auth, owner_id)

    async def _call(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(operation, self.retry, name=f"{self.collection}.{name}")

    async def _get_raw(self, owner_id: str, record_id: str, collection: str | None = None) -> dict[str, Any] | None:
        path = self.document_path(owner_id, record_id, collection)
        data = await self._call("get", lambda: self.db.get(path))
        return record_from_doc(record_id, data) if data is not None else None

    async def _query_raw(
        self,
        owner_id: str,
        filters: dict[str, Any] | None = None,
        collection: str | None = None,
    ) -> list[dict[str, Any]]:
        collection = self.collection_path(owner_id, collection)
        rows = await self._call("query", lambda: self.db.query(collection, filters))
        return [record_from_doc(doc_id, data) for doc_id, data in rows]

    async def get(self, owner_id: str, record_id: str) -> dict[str, Any] | None:
        self._guard(owner_id)
        return await self._get_raw(owner_id, record_id)

    async def list(self, owner_id: str, **filters: Any) -> list[dict[str, Any]]:
        self._guard(owner_id)
        equality = {key: value for key, value in filters.items() if value is not None}
        return await self._query_raw(owner_id, equality or None)

    async def _patch(self, owner_id: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Sets bookkeeping fields that are not part of the version snapshot."""
        path = self.document_path(owner_id, record_id)

        async def apply(tx: Transaction) -> dict[str, Any]:
            current = await tx.get(path)
            if current is None:
                raise NotFoundError(self.kind, record_id)
            current.update(fields)
            current["updated_at"] = self.clock()
            tx.set(path, current)
            return current

        document = await self._call("patch", lambda: self.db.run_transaction(apply))
        return record_from_doc(record_id, document)

    async def delete(self, owner_id: str, record_id: str) -> None:
        self._guard(owner_id)
        path = self.document_path(owner_id, record_id)

        async def apply(tx: Transaction) -> None:
            if await tx.get(path) is None:
                raise NotFoundError(self.kind, record_id)
            tx.delete(path)

        await self._call("delete", lambda: self.db.run_transaction(apply))
        logger.info("deleted %s %s", self.kind, record_id)


class VersionedRecordStore(RecordStore):
    """Records whose every change appends a full snapshot to ``versions``."""

    versioned_fields: tuple[str, ...] = ()
    create_model: type[BaseModel] = BaseModel
    update_model: type[BaseModel] = BaseModel

    def fields_from(self, model: type[BaseModel], payload: BaseModel | dict[str, Any], partial: bool = False) -> dict[str, Any]:
        return row_fields(coerce_payload(model, payload), exclude={"editNote"}, exclude_unset=partial)

    def new_document(self, owner_id: str, fields: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
        now = now or self.clock()
        first = create_version(0, snapshot_fields(fields, self.versioned_fields), now=now)
        return {
            **fields,
            "user_id": owner_id,
            "versions": [first],
            "current_version": first["version"],
            "created_at": now,
            "updated_at": now,
        }

    def next_document(
        self,
        current: dict[str, Any],
        changes: dict[str, Any],
        edit_note: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        merged = {name: changes[name] if name in changes else current.get(name) for name in self.versioned_fields}
        version = create_version(current["current_version"], merged, edit_note, now)
        document = {key: value for key, value in current.items() if key != "id"}
        document.update(changes)
        document["versions"] = [*current["versions"], version]
        document["current_version"] = version["version"]
        document["updated_at"] = now
        return document

    async def create(self, owner_id: str, payload: BaseModel | dict[str, Any], record_id: str | None = None) -> dict[str, Any]:
        self._guard(owner_id)
        fields = self.fields_from(self.create_model, payload)
        record_id = record_id or InMemoryStore.make_id()
        path = self.document_path(owner_id, record_id)
        document = self.new_document(owner_id, fields)
        await self._call("create", lambda: self.db.set(path, document))
        logger.info("created %s %s", self.kind, record_id)
        return record_from_doc(record_id, document)

    async def _update_fields(
        self,
        owner_id: str,
        record_id: str,
        changes: dict[str, Any],
        edit_note: str | None = None,
    ) -> dict[str, Any]:
        path = self.document_path(owner_id, record_id)

        async def apply(tx: Transaction) -> dict[str, Any]:
            current = await tx.get(path)
            if current is None:
                raise NotFoundError(self.kind, record_id)
            document = self.next_document(current, changes, edit_note, self.clock())
            tx.set(path, document)
            return document

        document = await self._call("update", lambda: self.db.run_transaction(apply))
        logger.info("%s %s now at version %d", self.kind, record_id, document["current_version"])
        return record_from_doc(record_id, document)

    async def update(
        self,
        owner_id: str,
        record_id: str,
        changes: BaseModel | dict[str, Any],
        edit_note: str | None = None,
    ) -> dict[str, Any]:
        self._guard(owner_id)
        payload = coerce_payload(self.update_model, changes)
        if edit_note is None:
            edit_note = getattr(payload, "editNote", None)
        fields = self.fields_from(self.update_model, payload, partial=True)
        return await self._update_fields(owner_id, record_id, fields, edit_note)

    async def history(self, owner_id: str, record_id: str) -> list[dict[str, Any]]:
        record = await self.get(owner_id, record_id)
        if record is None:
            raise NotFoundError(self.kind, record_id)
        return sorted(record["versions"], key=lambda item: item["version"], reverse=True)

    async def restore_version(self, owner_id: str, record_id: str, version_number: int) -> dict[str, Any]:
        self._guard(owner_id)
        record = await self._get_raw(owner_id, record_id)
        if record is None:
            raise NotFoundError(self.kind, record_id)
        target = get_version_by_number(record["versions"], version_number)
        if target is None:
            raise NotFoundError(f"{self.kind} version", f"{record_id}#{version_number}")
        restored = snapshot_fields(target, self.versioned_fields)
        return await self._update_fields(
            owner_id, record_id, restored, f"Restaurado desde versión {version_number}"
        )
