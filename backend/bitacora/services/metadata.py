from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from pydantic import BaseModel

from ..errors import ValidationError
from ..persistence import Transaction
from ..schemas import (
    MilestoneType,
    PeriodMetadataUpsert,
    TransactionMetadataCreate,
    TransactionMetadataUpdate,
)
from .records import VersionedRecordStore, coerce_payload, record_from_doc

logger = logging.getLogger(__name__)


class TransactionMetadataStore(VersionedRecordStore):
    """Why a transaction happened. Keyed by the financial transaction id."""

    collection = "metadata/transactionMeta"
    kind = "transaction metadata"
    versioned_fields = (
        "reason",
        "decision_context",
        "milestone",
        "milestone_note",
        "photo_url",
        "photo_caption",
    )
    create_model = TransactionMetadataCreate
    update_model = TransactionMetadataUpdate

    async def create_for_transaction(
        self,
        owner_id: str,
        transaction_id: str,
        payload: TransactionMetadataCreate | dict[str, Any],
    ) -> dict[str, Any]:
        self._guard(owner_id)
        fields = {**self.fields_from(self.create_model, payload), "transaction_id": transaction_id}
        path = self.document_path(owner_id, transaction_id)
        document = self.new_document(owner_id, fields)

        async def apply(tx: Transaction) -> None:
            if await tx.get(path) is not None:
                raise ValidationError(f"transaction {transaction_id} already has metadata")
            tx.set(path, document)

        await self._call("create", lambda: self.db.run_transaction(apply))
        logger.info("created %s for transaction %s", self.kind, transaction_id)
        return record_from_doc(transaction_id, document)

    async def create(
        self,
        owner_id: str,
        payload: BaseModel | dict[str, Any],
        record_id: str | None = None,
    ) -> dict[str, Any]:
        if not record_id:
            raise ValidationError("transaction metadata needs the financial transaction id")
        return await self.create_for_transaction(owner_id, record_id, payload)

    async def get_for_transaction(self, owner_id: str, transaction_id: str) -> dict[str, Any] | None:
        rows = await self.list(owner_id, transaction_id=transaction_id)
        return rows[0] if rows else None

    async def list_metadata(
        self,
        owner_id: str,
        milestone: MilestoneType | str | None = None,
        has_photo: bool | None = None,
    ) -> list[dict[str, Any]]:
        rows = await self.list(owner_id, milestone=MilestoneType(milestone).value if milestone else None)
        if has_photo is not None:
            rows = [row for row in rows if bool(row.get("photo_url")) == has_photo]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows

    async def milestone_stats(self, owner_id: str) -> dict[str, int]:
        rows = await self.list(owner_id)
        counts = Counter(row["milestone"] for row in rows if row.get("milestone"))
        return {milestone.value: counts.get(milestone.value, 0) for milestone in MilestoneType}


def period_key(owner_id: str, year: int, month: int | None = None) -> str:
    if month is None:
        return f"{owner_id}:{year}"
    return f"{owner_id}:{year}-{month:02d}"


class PeriodMetadataStore(VersionedRecordStore):
    """Economic and personal context for a year or a single month."""

    collection = "metadata/periodMeta"
    kind = "period metadata"
    versioned_fields = ("economic_context", "personal_context", "financial_notes")
    create_model = PeriodMetadataUpsert
    update_model = PeriodMetadataUpsert

    @staticmethod
    def _validate_period(year: int, month: int | None) -> None:
        if not 1900 <= year <= 2200:
            raise ValidationError(f"year out of range: {year}")
        if month is not None and not 1 <= month <= 12:
            raise ValidationError(f"month out of range: {month}")

    async def save(
        self,
        owner_id: str,
        year: int,
        month: int | None,
        payload: PeriodMetadataUpsert | dict[str, Any],
        edit_note: str | None = None,
    ) -> dict[str, Any]:
        self._guard(owner_id)
        self._validate_period(year, month)
        upsert = coerce_payload(PeriodMetadataUpsert, payload)
        edit_note = edit_note if edit_note is not None else upsert.editNote
        changes = self.fields_from(PeriodMetadataUpsert, upsert, partial=True)
        record_id = period_key(owner_id, year, month)
        path = self.document_path(owner_id, record_id)

        async def apply(tx: Transaction) -> dict[str, Any]:
            current = await tx.get(path)
            now = self.clock()
            if current is None:
                fields = {name: changes.get(name) for name in self.versioned_fields}
                document = self.new_document(owner_id, {**fields, "year": year, "month": month}, now)
            else:
                document = self.next_document(current, changes, edit_note, now)
            tx.set(path, document)
            return document

        document = await self._call("save", lambda: self.db.run_transaction(apply))
        logger.info("%s %s at version %d", self.kind, record_id, document["current_version"])
        return record_from_doc(record_id, document)

    async def get_period(self, owner_id: str, year: int, month: int | None = None) -> dict[str, Any] | None:
        return await self.get(owner_id, period_key(owner_id, year, month))

    async def list_periods(self, owner_id: str, year: int | None = None) -> list[dict[str, Any]]:
        rows = await self.list(owner_id, year=year)
        rows.sort(key=lambda row: (row["year"], row.get("month") or 0), reverse=True)
        return rows
