from datetime import date, datetime, timezone

import pytest

from bitacora.errors import StoreError
from bitacora.persistence import InMemoryDocumentStore
from bitacora.retry import NO_RETRY
from bitacora.schemas import LegacyTransaction
from bitacora.services.financial import FinancialStore
from bitacora.services.metadata import TransactionMetadataStore
from bitacora.services.migration import MigrationService, map_legacy_milestone, map_legacy_type, split_legacy

from conftest import OWNER


def _legacy(ticker: str = "ICOLCAP", **extra) -> dict:
    return {
        "userId": OWNER,
        "etfTicker": ticker,
        "etfName": "iShares COLCAP",
        "type": "buy",
        "units": 10,
        "pricePerUnit": 12.5,
        "totalAmount": 125,
        "commission": 2,
        "date": datetime(2024, 6, 1, tzinfo=timezone.utc),
        **extra,
    }


async def _seed(db, rows: dict[str, dict]) -> None:
    for legacy_id, data in rows.items():
        await db.set(f"transactions/{legacy_id}", data)


def test_legacy_mappings() -> None:
    assert map_legacy_type("split") == "transfer"
    assert map_legacy_type("SELL") == "sell"
    assert map_legacy_type("mystery") == "buy"
    assert map_legacy_milestone("special_moment") == "special"
    assert map_legacy_milestone("birthday") == "birthday"
    assert map_legacy_milestone("graduation") == "special"
    assert map_legacy_milestone(None) is None


def test_split_legacy_only_creates_metadata_when_needed() -> None:
    plain = LegacyTransaction.model_validate({**_legacy(), "id": "a"})
    financial, metadata = split_legacy(plain)
    assert metadata is None
    assert financial["fees"] == 2
    assert financial["metadata_id"] is None

    noted = LegacyTransaction.model_validate({**_legacy(note="para la u", milestone="special_moment"), "id": "b"})
    financial, metadata = split_legacy(noted)
    assert financial["metadata_id"] == "b"
    assert metadata["reason"] == "para la u"
    assert metadata["milestone"] == "special"

    dated = LegacyTransaction.model_validate({**_legacy(), "id": "c", "date": date(2024, 1, 2)})
    assert dated.date == datetime(2024, 1, 2, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_migrate_is_idempotent(db, migration, financial, transaction_metadata) -> None:
    await _seed(
        db,
        {
            "legacy-1": _legacy(),
            "legacy-2": _legacy("VOO", note="regalo de la abuela", milestone="gift", photo="https://img/abuela.jpg"),
            "other": {**_legacy(), "userId": "someone-else"},
        },
    )

    first = await migration.migrate(OWNER)
    assert first.success
    assert first.migratedCount == 2
    assert first.createdFinancialCount == 2
    assert first.createdMetadataCount == 1
    assert first.durationMs >= 0

    metadata = await transaction_metadata.get(OWNER, "legacy-2")
    assert metadata["current_version"] == 1
    assert metadata["photo_url"] == "https://img/abuela.jpg"
    assert (await financial.get(OWNER, "legacy-2"))["metadata_id"] == "legacy-2"

    second = await migration.migrate(OWNER)
    assert second.success
    assert second.migratedCount == 0
    assert second.skippedCount == 2
    assert len(await financial.list(OWNER)) == 2

    status = await migration.get_status(OWNER)
    assert status.isMigrated
    assert status.version == "1.0.0"
    assert status.legacyCount == 2
    assert status.financialCount == 2
    assert status.metadataCount == 1


@pytest.mark.asyncio
async def test_migrate_without_legacy_rows(migration) -> None:
    result = await migration.migrate(OWNER)
    assert result.success
    assert result.warnings == ["No hay transacciones para migrar"]
    assert not (await migration.get_status(OWNER)).isMigrated


@pytest.mark.asyncio
async def test_invalid_legacy_record_is_reported(db, migration) -> None:
    await _seed(db, {"good": _legacy(), "bad": {**_legacy(), "units": "many"}})
    result = await migration.migrate(OWNER)
    assert not result.success
    assert result.migratedCount == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Error migrando transacción bad")


@pytest.mark.asyncio
async def test_failed_commit_leaves_store_untouched(backing, auth, clock) -> None:
    class FailingStatusStore(InMemoryDocumentStore):
        def _apply(self, documents, op, path, data):
            if path.endswith("/migration/status"):
                raise StoreError("disk full")
            super()._apply(documents, op, path, data)

    db = FailingStatusStore(backing)
    financial = FinancialStore(db, auth, retry=NO_RETRY, clock=clock)
    metadata = TransactionMetadataStore(db, auth, retry=NO_RETRY, clock=clock)
    service = MigrationService(db, auth, financial, metadata, retry=NO_RETRY, clock=clock)
    await _seed(db, {"legacy-1": _legacy(note="primera"), "legacy-2": _legacy("VOO")})
    before = dict(backing.documents)

    result = await service.migrate(OWNER)

    assert not result.success
    assert result.migratedCount == 0
    assert result.errors[-1].startswith("Error general de migración")
    assert backing.documents == before
    assert await financial.list(OWNER) == []


@pytest.mark.asyncio
async def test_verify_reports_missing_records(db, migration, financial) -> None:
    await _seed(db, {"legacy-1": _legacy(), "legacy-2": _legacy("VOO")})
    await migration.migrate(OWNER)
    assert (await migration.verify(OWNER)).isValid

    await financial.delete(OWNER, "legacy-2")
    verification = await migration.verify(OWNER)
    assert not verification.isValid
    assert verification.issues == [
        "Discrepancia en conteo: 2 originales vs 1 financieras",
        "Transacción legacy-2 no tiene registro financiero",
    ]


@pytest.mark.asyncio
async def test_export_legacy(db, migration) -> None:
    await _seed(db, {"legacy-1": _legacy()})
    exported = await migration.export_legacy(OWNER)
    assert exported["userId"] == OWNER
    assert [row["id"] for row in exported["transactions"]] == ["legacy-1"]


@pytest.mark.asyncio
async def test_unexpected_driver_error_becomes_a_result(backing, auth, clock) -> None:
    class ExplodingCommitStore(InMemoryDocumentStore):
        async def commit_writes(self, writes):
            raise RuntimeError("driver exploded")

    db = ExplodingCommitStore(backing)
    financial = FinancialStore(db, auth, retry=NO_RETRY, clock=clock)
    metadata = TransactionMetadataStore(db, auth, retry=NO_RETRY, clock=clock)
    service = MigrationService(db, auth, financial, metadata, retry=NO_RETRY, clock=clock)
    await _seed(db, {"legacy-1": _legacy()})

    result = await service.migrate(OWNER)

    assert not result.success
    assert result.migratedCount == 0
    assert result.createdFinancialCount == 0
    assert result.errors == ["Error general de migración: driver exploded"]
    assert await financial.list(OWNER) == []
