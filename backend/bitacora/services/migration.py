"""One-way migration of the flat legacy ``transactions`` collection into the layered model.

Each legacy record becomes a financial transaction under the same id, plus a
version-1 transaction metadata record when it carried a note, milestone or
photo. All writes of a run, including the migration status, go through one
batch, so a failed commit leaves the store untouched. Re-running skips ids
already present in the financial layer.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..auth import AuthProvider, validate_user_access
from ..persistence import DocumentStore
from ..retry import PERSISTENCE_RETRY, RetryPolicy, with_retry
from ..schemas import LegacyTransaction, MigrationResult, MigrationStatusResponse, MigrationVerification, MilestoneType
from ..versioning import utcnow
from .financial import FinancialStore
from .metadata import TransactionMetadataStore
from .records import Clock

logger = logging.getLogger(__name__)

MIGRATION_VERSION = "1.0.0"
LEGACY_COLLECTION = "transactions"

LEGACY_TYPES = {
    "buy": "buy",
    "sell": "sell",
    "dividend": "dividend",
    "transfer": "transfer",
    "split": "transfer",
}
LEGACY_MILESTONES = {"special_moment": "special"}
MILESTONE_VALUES = {item.value for item in MilestoneType}


def map_legacy_type(raw: str | None) -> str:
    return LEGACY_TYPES.get((raw or "").strip().lower(), "buy")


def map_legacy_milestone(raw: str | None) -> str | None:
    if not raw:
        return None
    value = LEGACY_MILESTONES.get(raw.strip(), raw.strip())
    return value if value in MILESTONE_VALUES else "special"


def split_legacy(record: LegacyTransaction) -> tuple[dict[str, Any], dict[str, Any] | None]:
    has_metadata = bool(record.note or record.milestone or record.photo)
    financial = {
        "date": record.date,
        "type": map_legacy_type(record.type),
        "ticker": record.etfTicker.strip().upper(),
        "units": record.units,
        "price_per_unit": record.pricePerUnit,
        "total_amount": record.totalAmount,
        "currency": "COP",
        "exchange_rate": None,
        "fees": record.commission or 0,
        "metadata_id": record.id if has_metadata else None,
    }
    if not has_metadata:
        return financial, None
    metadata = {
        "transaction_id": record.id,
        "reason": record.note or None,
        "decision_context": None,
        "milestone": map_legacy_milestone(record.milestone),
        "milestone_note": None,
        "photo_url": record.photo or None,
        "photo_caption": None,
    }
    return financial, metadata


class MigrationService:
    def __init__(
        self,
        db: DocumentStore,
        auth: AuthProvider,
        financial: FinancialStore,
        metadata: TransactionMetadataStore,
        retry: RetryPolicy = PERSISTENCE_RETRY,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.auth = auth
        self.financial = financial
        self.metadata = metadata
        self.retry = retry
        self.clock = clock

    @staticmethod
    def status_path(owner_id: str) -> str:
        return f"users/{owner_id}/migration/status"

    async def _legacy_rows(self, owner_id: str) -> list[tuple[str, dict[str, Any]]]:
        return await with_retry(
            lambda: self.db.query(LEGACY_COLLECTION, {"userId": owner_id}),
            self.retry,
            name="migration.legacy_query",
        )

    async def _financial_ids(self, owner_id: str) -> set[str]:
        return {row["id"] for row in await self.financial.list(owner_id)}

    async def migrate(self, owner_id: str) -> MigrationResult:
        started = time.monotonic()
        started_at = self.clock()
        result = MigrationResult(success=False)
        try:
            validate_user_access(self.auth, owner_id)
            legacy_rows = await self._legacy_rows(owner_id)
            if not legacy_rows:
                result.warnings.append("No hay transacciones para migrar")
                result.success = True
                return result

            existing_ids = await self._financial_ids(owner_id)
            processed: set[str] = set()
            batch = self.db.batch()
            now = self.clock()
            for legacy_id, data in legacy_rows:
                if legacy_id in processed:
                    logger.warning("legacy id %s appears twice, keeping the first record", legacy_id)
                    result.skippedCount += 1
                    continue
                processed.add(legacy_id)
                if legacy_id in existing_ids:
                    result.skippedCount += 1
                    continue
                try:
                    record = LegacyTransaction.model_validate({**data, "id": legacy_id})
                    financial_fields, metadata_fields = split_legacy(record)
                except (PydanticValidationError, ValueError, TypeError) as exc:
                    logger.warning("skipping legacy transaction %s: %s", legacy_id, exc)
                    result.errors.append(f"Error migrando transacción {legacy_id}: {exc}")
                    continue
                batch.set(
                    self.financial.document_path(owner_id, legacy_id),
                    self.financial.new_transaction_document(owner_id, financial_fields, now),
                )
                result.createdFinancialCount += 1
                if metadata_fields is not None:
                    batch.set(
                        self.metadata.document_path(owner_id, legacy_id),
                        self.metadata.new_document(owner_id, metadata_fields, now),
                    )
                    result.createdMetadataCount += 1
                result.migratedCount += 1

            stats = {
                "legacy_count": len(legacy_rows),
                "migrated_count": result.migratedCount,
                "financial_created": result.createdFinancialCount,
                "metadata_created": result.createdMetadataCount,
                "skipped_count": result.skippedCount,
                "error_count": len(result.errors),
            }
            batch.set(
                self.status_path(owner_id),
                {
                    "version": MIGRATION_VERSION,
                    "started_at": started_at,
                    "completed_at": self.clock(),
                    "stats": stats,
                },
            )
            try:
                await with_retry(batch.commit, self.retry, name="migration.commit")
            except Exception:
                result.migratedCount = 0
                result.createdFinancialCount = 0
                result.createdMetadataCount = 0
                raise
            result.success = not result.errors
            logger.info(
                "migrated %d legacy transactions for %s (%d skipped, %d errors)",
                result.migratedCount,
                owner_id,
                result.skippedCount,
                len(result.errors),
            )
        except Exception as exc:
            logger.exception("migration for %s failed", owner_id)
            result.success = False
            result.errors.append(f"Error general de migración: {exc}")
        finally:
            result.durationMs = int((time.monotonic() - started) * 1000)
        return result

    async def verify(self, owner_id: str) -> MigrationVerification:
        try:
            validate_user_access(self.auth, owner_id)
            legacy_ids = {legacy_id for legacy_id, _ in await self._legacy_rows(owner_id)}
            financial_ids = await self._financial_ids(owner_id)
        except Exception as exc:
            logger.exception("migration check for %s failed", owner_id)
            return MigrationVerification(isValid=False, issues=[f"Error verificando migración: {exc}"])
        issues: list[str] = []
        missing = sorted(legacy_ids - financial_ids)
        if len(financial_ids) < len(legacy_ids):
            issues.append(f"Discrepancia en conteo: {len(legacy_ids)} originales vs {len(financial_ids)} financieras")
        issues.extend(f"Transacción {legacy_id} no tiene registro financiero" for legacy_id in missing)
        return MigrationVerification(isValid=not issues, issues=issues)

    async def get_status(self, owner_id: str) -> MigrationStatusResponse:
        validate_user_access(self.auth, owner_id)
        status = await with_retry(lambda: self.db.get(self.status_path(owner_id)), self.retry, name="migration.status")
        legacy_rows = await self._legacy_rows(owner_id)
        financial_ids = await self._financial_ids(owner_id)
        metadata_rows = await self.metadata.list(owner_id)
        return MigrationStatusResponse(
            isMigrated=status is not None,
            version=status.get("version") if status else None,
            lastMigrationDate=status.get("completed_at") if status else None,
            legacyCount=len(legacy_rows),
            financialCount=len(financial_ids),
            metadataCount=len(metadata_rows),
            stats=status.get("stats", {}) if status else {},
        )

    async def export_legacy(self, owner_id: str) -> dict[str, Any]:
        validate_user_access(self.auth, owner_id)
        legacy_rows = await self._legacy_rows(owner_id)
        return {
            "exportDate": self.clock(),
            "userId": owner_id,
            "transactions": [{**data, "id": legacy_id} for legacy_id, data in legacy_rows],
        }
