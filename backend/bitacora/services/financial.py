from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import NotFoundError, ValidationError
from ..persistence import Transaction
from ..schemas import (
    FinancialSnapshotCreate,
    FinancialTransactionCreate,
    FinancialTransactionUpdate,
    SnapshotType,
    instrument_adapter,
    row_fields,
)
from ..store import InMemoryStore
from .portfolio import calculate_portfolio
from .prices import PriceProvider
from .records import RecordStore, coerce_payload, record_from_doc

logger = logging.getLogger(__name__)

SNAPSHOTS = "financial/snapshots"
INSTRUMENTS = "financial/instruments"


def _aware(moment: datetime | None) -> datetime | None:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _in_range(moment: datetime, start: datetime | None, end: datetime | None) -> bool:
    start, end = _aware(start), _aware(end)
    if start is not None and moment < start:
        return False
    if end is not None and moment > end:
        return False
    return True


class FinancialStore(RecordStore):
    """Hard facts: transactions, portfolio snapshots and instrument references."""

    collection = "financial/transactions"
    kind = "financial transaction"

    def new_transaction_document(
        self,
        owner_id: str,
        fields: dict[str, Any],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or self.clock()
        return {**fields, "user_id": owner_id, "created_at": now, "updated_at": now}

    async def create_transaction(
        self,
        owner_id: str,
        payload: FinancialTransactionCreate | dict[str, Any],
        record_id: str | None = None,
    ) -> dict[str, Any]:
        self._guard(owner_id)
        fields = row_fields(coerce_payload(FinancialTransactionCreate, payload))
        fields.setdefault("currency", "COP")
        fields.setdefault("fees", 0)
        record_id = record_id or InMemoryStore.make_id()
        path = self.document_path(owner_id, record_id)
        document = self.new_transaction_document(owner_id, fields)
        await self._call("create", lambda: self.db.set(path, document))
        logger.info("created %s %s (%s %s)", self.kind, record_id, fields["type"], fields["ticker"])
        return record_from_doc(record_id, document)

    async def list_transactions(
        self,
        owner_id: str,
        ticker: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = await self.list(owner_id, ticker=ticker.strip().upper() if ticker else None)
        rows = [row for row in rows if _in_range(row["date"], start_date, end_date)]
        rows.sort(key=lambda row: row["date"], reverse=True)
        return rows[:limit] if limit is not None else rows

    async def update_transaction(
        self,
        owner_id: str,
        record_id: str,
        changes: FinancialTransactionUpdate | dict[str, Any],
    ) -> dict[str, Any]:
        self._guard(owner_id)
        fields = row_fields(coerce_payload(FinancialTransactionUpdate, changes), exclude_unset=True)
        path = self.document_path(owner_id, record_id)

        async def apply(tx: Transaction) -> dict[str, Any]:
            current = await tx.get(path)
            if current is None:
                raise NotFoundError(self.kind, record_id)
            merged = {**current, **fields, "updated_at": self.clock()}
            try:
                FinancialTransactionCreate.model_validate(
                    {
                        "date": merged["date"],
                        "type": merged["type"],
                        "ticker": merged["ticker"],
                        "units": merged["units"],
                        "pricePerUnit": merged["price_per_unit"],
                        "totalAmount": merged["total_amount"],
                        "currency": merged.get("currency", "COP"),
                        "exchangeRate": merged.get("exchange_rate"),
                        "fees": merged.get("fees") or 0,
                    }
                )
            except PydanticValidationError as exc:
                raise ValidationError(str(exc)) from exc
            tx.set(path, merged)
            return merged

        document = await self._call("update", lambda: self.db.run_transaction(apply))
        return record_from_doc(record_id, document)

    async def create_snapshot(
        self,
        owner_id: str,
        payload: FinancialSnapshotCreate | dict[str, Any],
    ) -> dict[str, Any]:
        self._guard(owner_id)
        snapshot = coerce_payload(FinancialSnapshotCreate, payload)
        holdings = [
            {
                "ticker": item.ticker,
                "name": item.name or item.ticker,
                "units": item.units,
                "average_cost": item.averageCost,
                "current_price": item.currentPrice,
                "current_value": item.units * item.currentPrice,
            }
            for item in snapshot.holdings
        ]
        return await self._save_snapshot(owner_id, snapshot.type.value, holdings)

    async def _save_snapshot(self, owner_id: str, snapshot_type: str, holdings: list[dict[str, Any]]) -> dict[str, Any]:
        total_value = sum(item["current_value"] for item in holdings)
        total_invested = sum(item["units"] * item["average_cost"] for item in holdings)
        total_return = total_value - total_invested
        document = {
            "user_id": owner_id,
            "date": self.clock(),
            "type": snapshot_type,
            "total_value": total_value,
            "total_invested": total_invested,
            "total_return": total_return,
            "total_return_percentage": (total_return / total_invested) * 100 if total_invested > 0 else 0.0,
            "holdings": holdings,
        }
        record_id = InMemoryStore.make_id()
        path = self.document_path(owner_id, record_id, SNAPSHOTS)
        await self._call("create_snapshot", lambda: self.db.set(path, document))
        logger.info("stored %s snapshot %s", snapshot_type, record_id)
        return record_from_doc(record_id, document)

    async def list_snapshots(
        self,
        owner_id: str,
        snapshot_type: SnapshotType | str | None = None,
        year: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._guard(owner_id)
        filters = {"type": SnapshotType(snapshot_type).value} if snapshot_type else None
        rows = await self._query_raw(owner_id, filters, SNAPSHOTS)
        if year is not None:
            rows = [row for row in rows if row["date"].year == year]
        rows.sort(key=lambda row: row["date"], reverse=True)
        return rows[:limit] if limit is not None else rows

    async def save_instrument(self, owner_id: str, instrument: BaseModel | dict[str, Any]) -> dict[str, Any]:
        self._guard(owner_id)
        if isinstance(instrument, BaseModel):
            instrument = instrument.model_dump()
        try:
            parsed = instrument_adapter.validate_python(instrument)
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc
        fields = row_fields(parsed)
        fields["ticker"] = fields["ticker"].strip().upper()
        if fields.get("price_updated_at") is None:
            fields["price_updated_at"] = self.clock()
        path = self.document_path(owner_id, fields["ticker"], INSTRUMENTS)
        document = {**fields, "user_id": owner_id}
        await self._call("save_instrument", lambda: self.db.set(path, document))
        return record_from_doc(fields["ticker"], document)

    async def get_instrument(self, owner_id: str, ticker: str) -> dict[str, Any] | None:
        self._guard(owner_id)
        return await self._get_raw(owner_id, ticker.strip().upper(), INSTRUMENTS)

    async def list_instruments(self, owner_id: str, kind: str | None = None) -> list[dict[str, Any]]:
        self._guard(owner_id)
        rows = await self._query_raw(owner_id, {"kind": kind} if kind else None, INSTRUMENTS)
        return sorted(rows, key=lambda row: row["ticker"])

    async def update_instrument_price(self, owner_id: str, ticker: str, price: float) -> dict[str, Any]:
        self._guard(owner_id)
        if price < 0:
            raise ValidationError("price must be zero or positive")
        ticker = ticker.strip().upper()
        path = self.document_path(owner_id, ticker, INSTRUMENTS)

        async def apply(tx: Transaction) -> dict[str, Any]:
            current = await tx.get(path)
            if current is None:
                raise NotFoundError("instrument", ticker)
            current.update({"current_price": price, "price_updated_at": self.clock()})
            tx.set(path, current)
            return current

        document = await self._call("update_instrument_price", lambda: self.db.run_transaction(apply))
        return record_from_doc(ticker, document)

    async def calculate_portfolio(self, owner_id: str, prices: PriceProvider | None = None) -> dict[str, Any]:
        transactions = await self.list_transactions(owner_id)
        instruments = {row["ticker"]: row for row in await self.list_instruments(owner_id)}
        live_prices: dict[str, float] = {}
        if prices is not None and transactions:
            tickers = sorted({row["ticker"] for row in transactions})
            try:
                live_prices = await prices.get_prices(tickers)
            except Exception:
                # fall back to stored instrument prices
                logger.exception("price provider failed, using stored instrument prices")
        return calculate_portfolio(transactions, instruments, live_prices)

    async def generate_monthly_snapshot(self, owner_id: str, prices: PriceProvider | None = None) -> dict[str, Any]:
        portfolio = await self.calculate_portfolio(owner_id, prices)
        holdings = [
            {
                "ticker": item["ticker"],
                "name": item["name"],
                "units": item["units"],
                "average_cost": item["average_cost"],
                "current_price": item["current_price"],
                "current_value": item["current_value"],
            }
            for item in portfolio["holdings"]
        ]
        return await self._save_snapshot(owner_id, SnapshotType.monthly.value, holdings)
