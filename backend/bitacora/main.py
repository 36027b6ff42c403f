import logging
from datetime import date, datetime
from typing import Any

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, Response, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth import StaticAuthProvider, TokenRegistry
from .config import Settings, configure_logging, settings
from .errors import AccessDeniedError, NotAuthenticatedError, NotFoundError, TransientStoreError
from .persistence import get_document_store
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    BundleVerificationResponse,
    ChapterCreate,
    ChapterReorder,
    ChapterResponse,
    ChapterType,
    ChapterUpdate,
    ChildInfo,
    ExportRequest,
    FinancialSnapshotCreate,
    FinancialSnapshotResponse,
    FinancialTransactionCreate,
    FinancialTransactionResponse,
    FinancialTransactionUpdate,
    HealthResponse,
    InstrumentPriceUpdate,
    InstrumentReference,
    MigrationResult,
    MigrationStatusResponse,
    MigrationVerification,
    MilestoneType,
    PeriodMetadataResponse,
    PeriodMetadataUpsert,
    PortfolioResponse,
    SnapshotType,
    TransactionMetadataCreate,
    TransactionMetadataResponse,
    TransactionMetadataUpdate,
    UnlockStatus,
    VersionResponse,
    YearlyNarrativeResponse,
    YearlyNarrativeUpsert,
    response_from_row,
    to_camel,
    version_response,
)
from .services.archive import read_bundle
from .services.container import Services, build_services
from .services.exporter import parse_and_verify

logger = logging.getLogger(__name__)

configure_logging(settings.log_level)

app = FastAPI(
    title="Bitácora Patrimonial API",
    version=settings.app_version,
    description="Layered financial, metadata and narrative records with versioning and export.",
)
app.state.settings = settings
app.state.db = get_document_store(settings)
app.state.tokens = TokenRegistry(settings.token_hashes())


def build_error_response(
    details: list[ApiErrorDetail],
    message: str = "Invalid request payload",
    code: str = "VALIDATION_ERROR",
    status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
) -> JSONResponse:
    payload = ApiErrorResponse(error=ApiErrorPayload(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


@app.exception_handler(NotFoundError)
async def not_found_exception_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return build_error_response([], str(exc), "NOT_FOUND", status.HTTP_404_NOT_FOUND)


@app.exception_handler(AccessDeniedError)
async def access_denied_exception_handler(request: Request, exc: AccessDeniedError) -> JSONResponse:
    return build_error_response([], str(exc), exc.code, status.HTTP_403_FORBIDDEN)


@app.exception_handler(NotAuthenticatedError)
async def not_authenticated_exception_handler(request: Request, exc: NotAuthenticatedError) -> JSONResponse:
    return build_error_response([], str(exc), exc.code, status.HTTP_401_UNAUTHORIZED)


@app.exception_handler(TransientStoreError)
async def unavailable_exception_handler(request: Request, exc: TransientStoreError) -> JSONResponse:
    logger.error("store unavailable: %s", exc)
    return build_error_response([], str(exc), exc.code, status.HTTP_503_SERVICE_UNAVAILABLE)


def _token_from_header(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip()


def get_services(request: Request, authorization: str | None = Header(default=None)) -> Services:
    registry: TokenRegistry = request.app.state.tokens
    user = registry.authenticate(_token_from_header(authorization))
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return build_services(request.app.state.db, StaticAuthProvider(user.id), request.app.state.settings)


def _require(row: dict[str, Any] | None, kind: str, record_id: str) -> dict[str, Any]:
    if row is None:
        raise NotFoundError(kind, record_id)
    return row


def _download(content: bytes, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/api/v1/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    config: Settings = request.app.state.settings
    return HealthResponse(status="ok", version=config.app_version, storage=config.storage_backend)


@app.post(
    "/api/v1/users/{owner_id}/financial/transactions",
    response_model=FinancialTransactionResponse,
    status_code=201,
)
async def create_financial_transaction(
    owner_id: str,
    payload: FinancialTransactionCreate,
    services: Services = Depends(get_services),
) -> FinancialTransactionResponse:
    row = await services.financial.create_transaction(owner_id, payload)
    return response_from_row(FinancialTransactionResponse, row)


@app.get("/api/v1/users/{owner_id}/financial/transactions", response_model=list[FinancialTransactionResponse])
async def list_financial_transactions(
    owner_id: str,
    ticker: str | None = None,
    startDate: datetime | None = None,
    endDate: datetime | None = None,
    limit: int | None = None,
    services: Services = Depends(get_services),
) -> list[FinancialTransactionResponse]:
    rows = await services.financial.list_transactions(owner_id, ticker, startDate, endDate, limit)
    return [response_from_row(FinancialTransactionResponse, row) for row in rows]


@app.get(
    "/api/v1/users/{owner_id}/financial/transactions/{transaction_id}",
    response_model=FinancialTransactionResponse,
)
async def get_financial_transaction(
    owner_id: str,
    transaction_id: str,
    services: Services = Depends(get_services),
) -> FinancialTransactionResponse:
    row = _require(await services.financial.get(owner_id, transaction_id), "financial transaction", transaction_id)
    return response_from_row(FinancialTransactionResponse, row)


@app.patch(
    "/api/v1/users/{owner_id}/financial/transactions/{transaction_id}",
    response_model=FinancialTransactionResponse,
)
async def update_financial_transaction(
    owner_id: str,
    transaction_id: str,
    payload: FinancialTransactionUpdate,
    services: Services = Depends(get_services),
) -> FinancialTransactionResponse:
    row = await services.financial.update_transaction(owner_id, transaction_id, payload)
    return response_from_row(FinancialTransactionResponse, row)


@app.delete("/api/v1/users/{owner_id}/financial/transactions/{transaction_id}", status_code=204)
async def delete_financial_transaction(
    owner_id: str,
    transaction_id: str,
    services: Services = Depends(get_services),
) -> Response:
    await services.financial.delete(owner_id, transaction_id)
    return Response(status_code=204)


@app.get("/api/v1/users/{owner_id}/financial/portfolio", response_model=PortfolioResponse)
async def get_portfolio(owner_id: str, services: Services = Depends(get_services)) -> PortfolioResponse:
    summary = await services.financial.calculate_portfolio(owner_id, services.prices)
    holdings = [{to_camel(key): value for key, value in holding.items()} for holding in summary["holdings"]]
    return response_from_row(PortfolioResponse, {**summary, "holdings": holdings})


@app.post(
    "/api/v1/users/{owner_id}/financial/snapshots",
    response_model=FinancialSnapshotResponse,
    status_code=201,
)
async def create_snapshot(
    owner_id: str,
    payload: FinancialSnapshotCreate,
    services: Services = Depends(get_services),
) -> FinancialSnapshotResponse:
    row = await services.financial.create_snapshot(owner_id, payload)
    return response_from_row(FinancialSnapshotResponse, row)


@app.post(
    "/api/v1/users/{owner_id}/financial/snapshots/monthly",
    response_model=FinancialSnapshotResponse,
    status_code=201,
)
async def create_monthly_snapshot(owner_id: str, services: Services = Depends(get_services)) -> FinancialSnapshotResponse:
    row = await services.financial.generate_monthly_snapshot(owner_id, services.prices)
    return response_from_row(FinancialSnapshotResponse, row)


@app.get("/api/v1/users/{owner_id}/financial/snapshots", response_model=list[FinancialSnapshotResponse])
async def list_snapshots(
    owner_id: str,
    type: SnapshotType | None = None,
    year: int | None = None,
    limit: int | None = None,
    services: Services = Depends(get_services),
) -> list[FinancialSnapshotResponse]:
    rows = await services.financial.list_snapshots(owner_id, type, year, limit)
    return [response_from_row(FinancialSnapshotResponse, row) for row in rows]


@app.put("/api/v1/users/{owner_id}/financial/instruments")
async def save_instrument(
    owner_id: str,
    payload: InstrumentReference,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    row = await services.financial.save_instrument(owner_id, payload)
    return _instrument_body(row)


@app.get("/api/v1/users/{owner_id}/financial/instruments")
async def list_instruments(
    owner_id: str,
    kind: str | None = None,
    services: Services = Depends(get_services),
) -> list[dict[str, Any]]:
    rows = await services.financial.list_instruments(owner_id, kind)
    return [_instrument_body(row) for row in rows]


@app.put("/api/v1/users/{owner_id}/financial/instruments/{ticker}/price")
async def update_instrument_price(
    owner_id: str,
    ticker: str,
    payload: InstrumentPriceUpdate,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    row = await services.financial.update_instrument_price(owner_id, ticker, payload.currentPrice)
    return _instrument_body(row)


def _instrument_body(row: dict[str, Any]) -> dict[str, Any]:
    return {to_camel(key): value for key, value in row.items() if key not in ("user_id", "id")}


@app.post(
    "/api/v1/users/{owner_id}/metadata/transactions/{transaction_id}",
    response_model=TransactionMetadataResponse,
    status_code=201,
)
async def create_transaction_metadata(
    owner_id: str,
    transaction_id: str,
    payload: TransactionMetadataCreate,
    services: Services = Depends(get_services),
) -> TransactionMetadataResponse:
    row = await services.transaction_metadata.create_for_transaction(owner_id, transaction_id, payload)
    return response_from_row(TransactionMetadataResponse, row)


@app.get("/api/v1/users/{owner_id}/metadata/transactions", response_model=list[TransactionMetadataResponse])
async def list_transaction_metadata(
    owner_id: str,
    milestone: MilestoneType | None = None,
    hasPhoto: bool | None = None,
    services: Services = Depends(get_services),
) -> list[TransactionMetadataResponse]:
    rows = await services.transaction_metadata.list_metadata(owner_id, milestone, hasPhoto)
    return [response_from_row(TransactionMetadataResponse, row) for row in rows]


@app.get("/api/v1/users/{owner_id}/metadata/milestones")
async def milestone_stats(owner_id: str, services: Services = Depends(get_services)) -> dict[str, int]:
    return await services.transaction_metadata.milestone_stats(owner_id)


@app.get(
    "/api/v1/users/{owner_id}/metadata/transactions/{transaction_id}",
    response_model=TransactionMetadataResponse,
)
async def get_transaction_metadata(
    owner_id: str,
    transaction_id: str,
    services: Services = Depends(get_services),
) -> TransactionMetadataResponse:
    row = _require(
        await services.transaction_metadata.get(owner_id, transaction_id), "transaction metadata", transaction_id
    )
    return response_from_row(TransactionMetadataResponse, row)


@app.patch(
    "/api/v1/users/{owner_id}/metadata/transactions/{transaction_id}",
    response_model=TransactionMetadataResponse,
)
async def update_transaction_metadata(
    owner_id: str,
    transaction_id: str,
    payload: TransactionMetadataUpdate,
    services: Services = Depends(get_services),
) -> TransactionMetadataResponse:
    row = await services.transaction_metadata.update(owner_id, transaction_id, payload)
    return response_from_row(TransactionMetadataResponse, row)


@app.delete("/api/v1/users/{owner_id}/metadata/transactions/{transaction_id}", status_code=204)
async def delete_transaction_metadata(
    owner_id: str,
    transaction_id: str,
    services: Services = Depends(get_services),
) -> Response:
    await services.transaction_metadata.delete(owner_id, transaction_id)
    return Response(status_code=204)


@app.get(
    "/api/v1/users/{owner_id}/metadata/transactions/{transaction_id}/versions",
    response_model=list[VersionResponse],
)
async def transaction_metadata_history(
    owner_id: str,
    transaction_id: str,
    services: Services = Depends(get_services),
) -> list[VersionResponse]:
    versions = await services.transaction_metadata.history(owner_id, transaction_id)
    return [version_response(entry) for entry in versions]


@app.post(
    "/api/v1/users/{owner_id}/metadata/transactions/{transaction_id}/versions/{version}/restore",
    response_model=TransactionMetadataResponse,
)
async def restore_transaction_metadata(
    owner_id: str,
    transaction_id: str,
    version: int,
    services: Services = Depends(get_services),
) -> TransactionMetadataResponse:
    row = await services.transaction_metadata.restore_version(owner_id, transaction_id, version)
    return response_from_row(TransactionMetadataResponse, row)


@app.put("/api/v1/users/{owner_id}/metadata/periods/{year}", response_model=PeriodMetadataResponse)
async def save_period_metadata(
    owner_id: str,
    year: int,
    payload: PeriodMetadataUpsert,
    month: int | None = None,
    services: Services = Depends(get_services),
) -> PeriodMetadataResponse:
    row = await services.period_metadata.save(owner_id, year, month, payload)
    return response_from_row(PeriodMetadataResponse, row)


@app.get("/api/v1/users/{owner_id}/metadata/periods", response_model=list[PeriodMetadataResponse])
async def list_period_metadata(
    owner_id: str,
    year: int | None = None,
    services: Services = Depends(get_services),
) -> list[PeriodMetadataResponse]:
    rows = await services.period_metadata.list_periods(owner_id, year)
    return [response_from_row(PeriodMetadataResponse, row) for row in rows]


@app.get("/api/v1/users/{owner_id}/metadata/periods/{year}", response_model=PeriodMetadataResponse)
async def get_period_metadata(
    owner_id: str,
    year: int,
    month: int | None = None,
    services: Services = Depends(get_services),
) -> PeriodMetadataResponse:
    key = f"{year}-{month:02d}" if month else str(year)
    row = _require(await services.period_metadata.get_period(owner_id, year, month), "period metadata", key)
    return response_from_row(PeriodMetadataResponse, row)


@app.post("/api/v1/users/{owner_id}/chapters", response_model=ChapterResponse, status_code=201)
async def create_chapter(
    owner_id: str,
    payload: ChapterCreate,
    services: Services = Depends(get_services),
) -> ChapterResponse:
    row = await services.chapters.create(owner_id, payload)
    return response_from_row(ChapterResponse, services.chapters.present(row, None, include_content=True))


@app.get("/api/v1/users/{owner_id}/chapters", response_model=list[ChapterResponse])
async def list_chapters(
    owner_id: str,
    type: ChapterType | None = None,
    childBirthDate: date | None = None,
    onlyUnlocked: bool = False,
    services: Services = Depends(get_services),
) -> list[ChapterResponse]:
    rows = await services.chapters.list(
        owner_id, chapter_type=type, child_birth_date=childBirthDate, only_unlocked=onlyUnlocked
    )
    return [response_from_row(ChapterResponse, row) for row in rows]


@app.get("/api/v1/users/{owner_id}/chapters/upcoming")
async def upcoming_chapters(
    owner_id: str,
    childBirthDate: date,
    withinYears: int = 2,
    services: Services = Depends(get_services),
) -> list[dict[str, Any]]:
    upcoming = await services.chapters.upcoming_unlocks(owner_id, childBirthDate, withinYears)
    return [
        {
            "chapter": response_from_row(ChapterResponse, chapter).model_dump(mode="json"),
            "status": unlock.model_dump(mode="json"),
        }
        for chapter, unlock in upcoming
    ]


@app.put("/api/v1/users/{owner_id}/chapters/order", status_code=204)
async def reorder_chapters(
    owner_id: str,
    payload: ChapterReorder,
    services: Services = Depends(get_services),
) -> Response:
    await services.chapters.reorder(owner_id, payload.chapterIds)
    return Response(status_code=204)


@app.get("/api/v1/users/{owner_id}/chapters/{chapter_id}", response_model=ChapterResponse)
async def get_chapter(
    owner_id: str,
    chapter_id: str,
    childBirthDate: date | None = None,
    services: Services = Depends(get_services),
) -> ChapterResponse:
    row = _require(
        await services.chapters.get(owner_id, chapter_id, child_birth_date=childBirthDate), "chapter", chapter_id
    )
    return response_from_row(ChapterResponse, row)


@app.patch("/api/v1/users/{owner_id}/chapters/{chapter_id}", response_model=ChapterResponse)
async def update_chapter(
    owner_id: str,
    chapter_id: str,
    payload: ChapterUpdate,
    services: Services = Depends(get_services),
) -> ChapterResponse:
    row = await services.chapters.update(owner_id, chapter_id, payload)
    return response_from_row(ChapterResponse, services.chapters.present(row, None, include_content=True))


@app.delete("/api/v1/users/{owner_id}/chapters/{chapter_id}", status_code=204)
async def delete_chapter(owner_id: str, chapter_id: str, services: Services = Depends(get_services)) -> Response:
    await services.chapters.delete(owner_id, chapter_id)
    return Response(status_code=204)


@app.get("/api/v1/users/{owner_id}/chapters/{chapter_id}/unlock-status", response_model=UnlockStatus)
async def chapter_unlock_status(
    owner_id: str,
    chapter_id: str,
    childBirthDate: date | None = None,
    services: Services = Depends(get_services),
) -> UnlockStatus:
    return await services.chapters.unlock_status(owner_id, chapter_id, childBirthDate)


@app.post("/api/v1/users/{owner_id}/chapters/{chapter_id}/publish", response_model=ChapterResponse)
async def publish_chapter(owner_id: str, chapter_id: str, services: Services = Depends(get_services)) -> ChapterResponse:
    row = await services.chapters.publish(owner_id, chapter_id)
    return response_from_row(ChapterResponse, services.chapters.present(row, None, include_content=True))


@app.put("/api/v1/users/{owner_id}/narratives/{year}", response_model=YearlyNarrativeResponse)
async def save_narrative(
    owner_id: str,
    year: int,
    payload: YearlyNarrativeUpsert,
    services: Services = Depends(get_services),
) -> YearlyNarrativeResponse:
    row = await services.narratives.save(owner_id, year, payload)
    return response_from_row(YearlyNarrativeResponse, row)


@app.get("/api/v1/users/{owner_id}/narratives", response_model=list[YearlyNarrativeResponse])
async def list_narratives(owner_id: str, services: Services = Depends(get_services)) -> list[YearlyNarrativeResponse]:
    rows = await services.narratives.list_narratives(owner_id)
    return [response_from_row(YearlyNarrativeResponse, row) for row in rows]


@app.get("/api/v1/users/{owner_id}/narratives/{year}", response_model=YearlyNarrativeResponse)
async def get_narrative(owner_id: str, year: int, services: Services = Depends(get_services)) -> YearlyNarrativeResponse:
    row = _require(await services.narratives.get_year(owner_id, year), "yearly narrative", str(year))
    return response_from_row(YearlyNarrativeResponse, row)


@app.delete("/api/v1/users/{owner_id}/narratives/{year}", status_code=204)
async def delete_narrative(owner_id: str, year: int, services: Services = Depends(get_services)) -> Response:
    await services.narratives.delete_year(owner_id, year)
    return Response(status_code=204)


@app.post("/api/v1/users/{owner_id}/migration", response_model=MigrationResult)
async def run_migration(owner_id: str, services: Services = Depends(get_services)) -> MigrationResult:
    return await services.migration.migrate(owner_id)


@app.get("/api/v1/users/{owner_id}/migration", response_model=MigrationStatusResponse)
async def migration_status(owner_id: str, services: Services = Depends(get_services)) -> MigrationStatusResponse:
    return await services.migration.get_status(owner_id)


@app.get("/api/v1/users/{owner_id}/migration/verify", response_model=MigrationVerification)
async def verify_migration(owner_id: str, services: Services = Depends(get_services)) -> MigrationVerification:
    return await services.migration.verify(owner_id)


@app.post("/api/v1/users/{owner_id}/export")
async def export_bundle(
    owner_id: str,
    payload: ExportRequest,
    services: Services = Depends(get_services),
) -> Response:
    child = ChildInfo(name=payload.childName, birthDate=payload.childBirthDate)
    artifact = await services.exporter.export(owner_id, child, payload.options)
    response = _download(artifact.content, artifact.media_type, artifact.filename)
    response.headers["X-Export-Success"] = "true" if artifact.result.success else "false"
    return response


@app.post("/api/v1/export/verify", response_model=BundleVerificationResponse)
async def verify_bundle(
    file: UploadFile = File(...),
    services: Services = Depends(get_services),
) -> BundleVerificationResponse:
    content = await file.read()
    try:
        text = read_bundle(content)
    except ValueError as exc:
        return BundleVerificationResponse(isValid=False, errors=[f"Archivo inválido: {exc}"])
    verification = parse_and_verify(text)
    data = verification.data or {}
    child = data.get("childInfo") or {}
    return BundleVerificationResponse(
        isValid=verification.is_valid,
        errors=verification.errors,
        mismatchedLayers=verification.mismatched_layers,
        exportVersion=data.get("exportVersion"),
        exportDate=data.get("exportDate"),
        childName=child.get("name"),
    )
