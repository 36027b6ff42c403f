from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from ..codec import CHECKSUM_ALGORITHM, dumps, layer_checksum, loads
from ..errors import ChecksumMismatchError
from ..schemas import ChildInfo, ExportFormat, ExportOptions, ExportResult, ItemCounts, YearRange
from ..versioning import collapse_to_latest, utcnow
from .archive import build_zip, collect_media_urls
from .emotional import ChapterStore, YearlyNarrativeStore, calculate_age
from .financial import FinancialStore
from .html_report import render_html
from .metadata import PeriodMetadataStore, TransactionMetadataStore
from .portfolio import empty_portfolio
from .prices import PriceProvider
from .records import Clock

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"
LAYERS = ("financial", "metadata", "emotional")
MEDIA_TYPES = {
    ExportFormat.json: "application/json",
    ExportFormat.html: "text/html; charset=utf-8",
    ExportFormat.zip: "application/zip",
}


@dataclass
class ExportArtifact:
    content: bytes
    media_type: str
    filename: str
    result: ExportResult
    data: dict[str, Any]


@dataclass
class BundleVerification:
    data: dict[str, Any] | None
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    mismatched_layers: list[str] = field(default_factory=list)


def safe_name(name: str) -> str:
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^A-Za-z0-9]+", "_", ascii_name).strip("_") or "Bitacora"


def export_filename(child_name: str, export_format: ExportFormat, day: date) -> str:
    stamp = day.isoformat()
    if export_format == ExportFormat.json:
        return f"El_Tesoro_de_{safe_name(child_name)}_{stamp}.json"
    return f"Bitacora_{safe_name(child_name)}_{stamp}.{export_format.value}"


def year_bounds(year_range: YearRange) -> tuple[datetime, datetime]:
    start = datetime(year_range.start, 1, 1, tzinfo=timezone.utc)
    end = datetime(year_range.end, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)
    return start, end


def compute_checksums(data: dict[str, Any]) -> dict[str, str]:
    return {layer: layer_checksum(data[layer]) for layer in LAYERS if data.get(layer) is not None}


def verify_checksums(data: dict[str, Any]) -> list[ChecksumMismatchError]:
    stored = data.get("checksums") or {}
    mismatches: list[ChecksumMismatchError] = []
    for layer in [*LAYERS, *sorted(set(stored) - set(LAYERS))]:
        content = data.get(layer)
        if content is None:
            # an excluded layer carries no checksum; a dropped one still does
            if layer in stored:
                mismatches.append(ChecksumMismatchError(layer))
            continue
        if stored.get(layer) != layer_checksum(content):
            mismatches.append(ChecksumMismatchError(layer))
    return mismatches


def _collapse(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{**row, "versions": collapse_to_latest(row.get("versions", []))} for row in rows]


def parse_and_verify(text: str | bytes) -> BundleVerification:
    try:
        data = loads(text)
    except ValueError as exc:
        return BundleVerification(data=None, is_valid=False, errors=[f"JSON inválido: {exc}"])
    if not isinstance(data, dict):
        return BundleVerification(data=None, is_valid=False, errors=["El archivo no contiene una exportación"])

    errors: list[str] = []
    if not data.get("exportVersion"):
        errors.append("Falta versión de exportación")
    if not data.get("childInfo"):
        errors.append("Falta información del niño")
    if not any(data.get(layer) for layer in LAYERS):
        errors.append("No hay datos para importar")
    if not isinstance(data.get("checksums"), dict):
        errors.append("Faltan checksums")
    if errors:
        return BundleVerification(data=None, is_valid=False, errors=errors)

    mismatches = verify_checksums(data)
    for mismatch in mismatches:
        logger.warning("bundle layer %s failed checksum verification", mismatch.layer)
    return BundleVerification(
        data=data,
        is_valid=not mismatches,
        errors=[str(mismatch) for mismatch in mismatches],
        mismatched_layers=[mismatch.layer for mismatch in mismatches],
    )


class ExportService:
    def __init__(
        self,
        financial: FinancialStore,
        transaction_metadata: TransactionMetadataStore,
        period_metadata: PeriodMetadataStore,
        chapters: ChapterStore,
        narratives: YearlyNarrativeStore,
        prices: PriceProvider | None = None,
        app_version: str = "1.0.0",
        clock: Clock = utcnow,
    ) -> None:
        self.financial = financial
        self.transaction_metadata = transaction_metadata
        self.period_metadata = period_metadata
        self.chapters = chapters
        self.narratives = narratives
        self.prices = prices
        self.app_version = app_version
        self.clock = clock

    async def _financial_layer(self, owner_id: str, options: ExportOptions, layer: dict[str, Any]) -> None:
        start = end = None
        if options.yearRange is not None:
            start, end = year_bounds(options.yearRange)
        transactions = await self.financial.list_transactions(owner_id, start_date=start, end_date=end)
        snapshots = await self.financial.list_snapshots(owner_id)
        instruments = await self.financial.list_instruments(owner_id)
        summary = await self.financial.calculate_portfolio(owner_id, self.prices)
        layer.update(transactions=transactions, snapshots=snapshots, instruments=instruments, summary=summary)

    async def _metadata_layer(self, owner_id: str, options: ExportOptions, layer: dict[str, Any]) -> None:
        transaction_metadata = await self.transaction_metadata.list_metadata(owner_id)
        period_metadata = await self.period_metadata.list_periods(owner_id)
        if options.yearRange is not None:
            period_metadata = [
                row for row in period_metadata if options.yearRange.start <= row["year"] <= options.yearRange.end
            ]
        if not options.preserveVersionHistory:
            transaction_metadata = _collapse(transaction_metadata)
            period_metadata = _collapse(period_metadata)
        layer["transactionMetadata"] = transaction_metadata
        layer["periodMetadata"] = period_metadata

    async def _emotional_layer(
        self,
        owner_id: str,
        child: ChildInfo,
        options: ExportOptions,
        now: datetime,
        layer: dict[str, Any],
        warnings: list[str],
    ) -> None:
        chapters = await self.chapters.list(owner_id, child_birth_date=child.birthDate, include_content=True, now=now)
        narratives = await self.narratives.list_narratives(owner_id)
        locked_count = 0
        if not options.includeLockedChapters:
            locked_count = sum(1 for chapter in chapters if chapter["is_locked"])
            chapters = [chapter for chapter in chapters if not chapter["is_locked"]]
        if options.yearRange is not None:
            years = set(range(options.yearRange.start, options.yearRange.end + 1))
            narratives = [row for row in narratives if row["year"] in years]
            chapters = [
                chapter
                for chapter in chapters
                if not chapter.get("linked_years") or years.intersection(chapter["linked_years"])
            ]
        if not options.preserveVersionHistory:
            chapters = _collapse(chapters)
            narratives = _collapse(narratives)
        layer["chapters"] = chapters
        layer["yearlyNarratives"] = narratives
        if locked_count:
            warnings.append(f"{locked_count} capitulos bloqueados no fueron incluidos")

    async def export_snapshot(
        self,
        owner_id: str,
        child: ChildInfo,
        options: ExportOptions | None = None,
    ) -> tuple[dict[str, Any], ExportResult]:
        options = options or ExportOptions()
        now = self.clock()
        errors: list[str] = []
        warnings: list[str] = []

        financial = metadata = emotional = None
        if options.includeFinancial:
            financial = {
                "exportDate": now,
                "userId": owner_id,
                "transactions": [],
                "snapshots": [],
                "instruments": [],
                "summary": empty_portfolio(),
            }
            try:
                await self._financial_layer(owner_id, options, financial)
            except Exception as exc:
                logger.exception("financial layer export failed")
                errors.append(f"Error exportando datos financieros: {exc}")
        if options.includeMetadata:
            metadata = {"exportDate": now, "userId": owner_id, "transactionMetadata": [], "periodMetadata": []}
            try:
                await self._metadata_layer(owner_id, options, metadata)
            except Exception as exc:
                logger.exception("metadata layer export failed")
                errors.append(f"Error exportando metadatos: {exc}")
        if options.includeEmotional:
            emotional = {
                "exportDate": now,
                "userId": owner_id,
                "chapters": [],
                "yearlyNarratives": [],
                "includeLockedContent": options.includeLockedChapters,
            }
            try:
                await self._emotional_layer(owner_id, child, options, now, emotional, warnings)
            except Exception as exc:
                logger.exception("emotional layer export failed")
                errors.append(f"Error exportando contenido emocional: {exc}")

        data: dict[str, Any] = {
            "exportDate": now,
            "exportVersion": EXPORT_VERSION,
            "appVersion": self.app_version,
            "checksumAlgorithm": CHECKSUM_ALGORITHM,
            "childInfo": {
                "name": child.name,
                "birthDate": child.birthDate,
                "ageAtExport": calculate_age(child.birthDate, now.date()),
            },
            "financial": financial,
            "metadata": metadata,
            "emotional": emotional,
        }
        data["checksums"] = compute_checksums(data)

        media_urls = collect_media_urls(data) if options.includeMedia else []
        result = ExportResult(
            success=not errors,
            format=options.format,
            filename=export_filename(child.name, options.format, now.date()),
            sizeBytes=len(dumps(data, pretty=True).encode("utf-8")),
            itemCounts=ItemCounts(
                transactions=len(financial["transactions"]) if financial else 0,
                snapshots=len(financial["snapshots"]) if financial else 0,
                transactionMetadata=len(metadata["transactionMetadata"]) if metadata else 0,
                periodMetadata=len(metadata["periodMetadata"]) if metadata else 0,
                chapters=len(emotional["chapters"]) if emotional else 0,
                narratives=len(emotional["yearlyNarratives"]) if emotional else 0,
                mediaFiles=len(media_urls),
            ),
            errors=errors or None,
            warnings=warnings or None,
        )
        logger.info(
            "export for %s assembled: %s (%d errors, %d warnings)",
            owner_id,
            result.itemCounts.model_dump(),
            len(errors),
            len(warnings),
        )
        return data, result

    async def export(self, owner_id: str, child: ChildInfo, options: ExportOptions | None = None) -> ExportArtifact:
        options = options or ExportOptions()
        data, result = await self.export_snapshot(owner_id, child, options)
        if options.format == ExportFormat.html:
            content = render_html(data).encode("utf-8")
        elif options.format == ExportFormat.zip:
            content = build_zip(data, include_media=options.includeMedia)
        else:
            content = dumps(data, pretty=True).encode("utf-8")
        result = result.model_copy(update={"sizeBytes": len(content)})
        return ExportArtifact(
            content=content,
            media_type=MEDIA_TYPES[options.format],
            filename=result.filename,
            result=result,
            data=data,
        )
