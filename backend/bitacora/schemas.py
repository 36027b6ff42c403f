import re
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class TransactionType(str, Enum):
    buy = "buy"
    sell = "sell"
    dividend = "dividend"
    transfer = "transfer"
    split = "split"


class Currency(str, Enum):
    COP = "COP"
    USD = "USD"


class SnapshotType(str, Enum):
    monthly = "monthly"
    yearly = "yearly"
    manual = "manual"


class EtfCategory(str, Enum):
    equity_co = "equity_co"
    equity_intl = "equity_intl"
    bonds = "bonds"
    mixed = "mixed"
    commodities = "commodities"
    dividend = "dividend"


class PlantType(str, Enum):
    oak = "oak"
    bamboo = "bamboo"
    fruit = "fruit"
    flower = "flower"
    cactus = "cactus"


class MilestoneType(str, Enum):
    first_investment = "first_investment"
    birthday = "birthday"
    christmas = "christmas"
    achievement = "achievement"
    family_moment = "family_moment"
    monthly = "monthly"
    bonus = "bonus"
    gift = "gift"
    special = "special"


class ChapterType(str, Enum):
    letter = "letter"
    yearly_reflection = "yearly_reflection"
    milestone_story = "milestone_story"
    lesson_learned = "lesson_learned"
    family_story = "family_story"
    financial_education = "financial_education"
    future_message = "future_message"
    memory = "memory"
    wish = "wish"


class ExportFormat(str, Enum):
    json = "json"
    html = "html"
    zip = "zip"


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def row_fields(payload: BaseModel, exclude: set[str] | None = None, exclude_unset: bool = False) -> dict[str, Any]:
    data = payload.model_dump(mode="python", exclude_unset=exclude_unset, exclude=exclude)
    return {to_snake(key): (value.value if isinstance(value, Enum) else value) for key, value in data.items()}


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    status: str
    version: str
    storage: str


class VersionResponse(BaseModel):
    version: int
    date: datetime
    editNote: Optional[str] = None
    fields: dict[str, Any] = Field(default_factory=dict)


class VersionedResponse(BaseModel):
    id: str
    currentVersion: int
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    versions: list[VersionResponse] = Field(default_factory=list)


class FinancialTransactionCreate(BaseModel):
    date: datetime
    type: TransactionType
    ticker: str = Field(min_length=1, max_length=20)
    units: float = Field(ge=0)
    pricePerUnit: float = Field(ge=0)
    totalAmount: float = Field(ge=0)
    currency: Currency = Currency.COP
    exchangeRate: Optional[float] = Field(default=None, gt=0)
    fees: float = Field(default=0, ge=0)
    metadataId: Optional[str] = None

    @field_validator("ticker")
    @classmethod
    def validate_ticker(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("date")
    @classmethod
    def validate_date(cls, value: datetime) -> datetime:
        return _aware(value)

    @model_validator(mode="after")
    def validate_units(self) -> "FinancialTransactionCreate":
        if self.type in (TransactionType.buy, TransactionType.sell) and self.units <= 0:
            raise ValueError("units must be positive for buy and sell transactions")
        if self.currency == Currency.USD and self.exchangeRate is None:
            raise ValueError("exchangeRate is required for USD transactions")
        return self


class FinancialTransactionUpdate(BaseModel):
    date: Optional[datetime] = None
    type: Optional[TransactionType] = None
    ticker: Optional[str] = Field(default=None, min_length=1, max_length=20)
    units: Optional[float] = Field(default=None, ge=0)
    pricePerUnit: Optional[float] = Field(default=None, ge=0)
    totalAmount: Optional[float] = Field(default=None, ge=0)
    currency: Optional[Currency] = None
    exchangeRate: Optional[float] = Field(default=None, gt=0)
    fees: Optional[float] = Field(default=None, ge=0)
    metadataId: Optional[str] = None

    @field_validator("ticker")
    @classmethod
    def validate_ticker(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().upper() if value is not None else None


class FinancialTransactionResponse(BaseModel):
    id: str
    date: datetime
    type: TransactionType
    ticker: str
    units: float
    pricePerUnit: float
    totalAmount: float
    currency: Currency
    exchangeRate: Optional[float] = None
    fees: float = 0
    metadataId: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class HoldingSnapshot(BaseModel):
    ticker: str
    name: Optional[str] = None
    units: float = Field(ge=0)
    averageCost: float = Field(default=0, ge=0)
    currentPrice: float = Field(default=0, ge=0)


class FinancialSnapshotCreate(BaseModel):
    type: SnapshotType = SnapshotType.manual
    holdings: list[HoldingSnapshot] = Field(default_factory=list)


class FinancialSnapshotResponse(BaseModel):
    id: str
    date: datetime
    type: SnapshotType
    totalValue: float
    totalInvested: float
    totalReturn: float
    totalReturnPercentage: float
    holdings: list[dict[str, Any]] = Field(default_factory=list)


class EtfReference(BaseModel):
    kind: Literal["etf"] = "etf"
    ticker: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category: EtfCategory
    currency: Currency = Currency.COP
    exchange: Optional[str] = None
    plantType: PlantType
    currentPrice: float = Field(default=0, ge=0)
    priceUpdatedAt: Optional[datetime] = None


class StockReference(BaseModel):
    kind: Literal["stock"] = "stock"
    ticker: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=200)
    currency: Currency = Currency.COP
    exchange: Optional[str] = None
    sector: Optional[str] = None
    currentPrice: float = Field(default=0, ge=0)
    priceUpdatedAt: Optional[datetime] = None


InstrumentReference = Annotated[Union[EtfReference, StockReference], Field(discriminator="kind")]
instrument_adapter: TypeAdapter = TypeAdapter(InstrumentReference)


class InstrumentPriceUpdate(BaseModel):
    currentPrice: float = Field(ge=0)


class PortfolioHolding(BaseModel):
    ticker: str
    name: str
    units: float
    averageCost: float
    totalInvested: float
    currentPrice: float
    currentValue: float
    returnPercentage: float


class PortfolioResponse(BaseModel):
    totalInvested: float
    currentValue: float
    totalReturn: float
    totalReturnPercentage: float
    holdings: list[PortfolioHolding] = Field(default_factory=list)
    transactionCount: int
    firstTransactionDate: Optional[datetime] = None
    lastTransactionDate: Optional[datetime] = None


class TransactionMetadataCreate(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=5000)
    decisionContext: Optional[str] = Field(default=None, max_length=5000)
    milestone: Optional[MilestoneType] = None
    milestoneNote: Optional[str] = Field(default=None, max_length=2000)
    photoUrl: Optional[str] = None
    photoCaption: Optional[str] = Field(default=None, max_length=500)


class TransactionMetadataUpdate(TransactionMetadataCreate):
    editNote: Optional[str] = Field(default=None, max_length=500)


class TransactionMetadataResponse(VersionedResponse):
    transactionId: str
    reason: Optional[str] = None
    decisionContext: Optional[str] = None
    milestone: Optional[MilestoneType] = None
    milestoneNote: Optional[str] = None
    photoUrl: Optional[str] = None
    photoCaption: Optional[str] = None


class PeriodMetadataUpsert(BaseModel):
    economicContext: Optional[str] = Field(default=None, max_length=5000)
    personalContext: Optional[str] = Field(default=None, max_length=5000)
    financialNotes: Optional[str] = Field(default=None, max_length=5000)
    editNote: Optional[str] = Field(default=None, max_length=500)


class PeriodMetadataResponse(VersionedResponse):
    year: int
    month: Optional[int] = None
    economicContext: Optional[str] = None
    personalContext: Optional[str] = None
    financialNotes: Optional[str] = None


class ChapterCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    type: ChapterType
    content: str = ""
    excerpt: Optional[str] = Field(default=None, max_length=500)
    mediaUrls: list[str] = Field(default_factory=list)
    mediaCaptions: dict[str, str] = Field(default_factory=dict)
    unlockAge: Optional[int] = Field(default=None, ge=0, le=120)
    unlockDate: Optional[datetime] = None
    lockedTeaser: Optional[str] = Field(default=None, max_length=500)
    linkedTransactionIds: list[str] = Field(default_factory=list)
    linkedYears: list[int] = Field(default_factory=list)
    linkedChapterIds: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value

    @field_validator("unlockDate")
    @classmethod
    def validate_unlock_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value) if value is not None else None


class ChapterUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    type: Optional[ChapterType] = None
    content: Optional[str] = None
    excerpt: Optional[str] = Field(default=None, max_length=500)
    mediaUrls: Optional[list[str]] = None
    mediaCaptions: Optional[dict[str, str]] = None
    unlockAge: Optional[int] = Field(default=None, ge=0, le=120)
    unlockDate: Optional[datetime] = None
    lockedTeaser: Optional[str] = Field(default=None, max_length=500)
    linkedTransactionIds: Optional[list[str]] = None
    linkedYears: Optional[list[int]] = None
    linkedChapterIds: Optional[list[str]] = None
    tags: Optional[list[str]] = None
    editNote: Optional[str] = Field(default=None, max_length=500)

    @field_validator("unlockDate")
    @classmethod
    def validate_unlock_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value) if value is not None else None


class ChapterResponse(VersionedResponse):
    title: str
    type: ChapterType
    content: str = ""
    excerpt: Optional[str] = None
    mediaUrls: list[str] = Field(default_factory=list)
    mediaCaptions: dict[str, str] = Field(default_factory=dict)
    unlockAge: Optional[int] = None
    unlockDate: Optional[datetime] = None
    lockedTeaser: Optional[str] = None
    isLocked: bool = False
    linkedTransactionIds: list[str] = Field(default_factory=list)
    linkedYears: list[int] = Field(default_factory=list)
    linkedChapterIds: list[str] = Field(default_factory=list)
    sortOrder: int = 0
    tags: list[str] = Field(default_factory=list)
    publishedAt: Optional[datetime] = None


class ChapterReorder(BaseModel):
    chapterIds: list[str] = Field(min_length=1)


class UnlockStatus(BaseModel):
    isLocked: bool
    unlockAge: Optional[int] = None
    unlockDate: Optional[datetime] = None
    currentAge: Optional[int] = None
    yearsUntilUnlock: Optional[int] = None
    daysUntilUnlock: Optional[int] = None


class YearlyNarrativeUpsert(BaseModel):
    summary: Optional[str] = Field(default=None, max_length=20000)
    highlights: Optional[list[str]] = None
    lessonsLearned: Optional[list[str]] = None
    whatWeDecided: Optional[str] = None
    whatWeLearned: Optional[str] = None
    challengesFaced: Optional[str] = None
    gratitude: Optional[str] = None
    childAgeAtYear: Optional[int] = Field(default=None, ge=0, le=120)
    familyContext: Optional[str] = None
    yearPhotos: Optional[list[str]] = None
    photoCaptions: Optional[list[str]] = None
    specialLetter: Optional[str] = None
    editNote: Optional[str] = Field(default=None, max_length=500)


class YearlyNarrativeResponse(VersionedResponse):
    year: int
    summary: Optional[str] = None
    highlights: list[str] = Field(default_factory=list)
    lessonsLearned: list[str] = Field(default_factory=list)
    whatWeDecided: Optional[str] = None
    whatWeLearned: Optional[str] = None
    challengesFaced: Optional[str] = None
    gratitude: Optional[str] = None
    childAgeAtYear: Optional[int] = None
    familyContext: Optional[str] = None
    yearPhotos: list[str] = Field(default_factory=list)
    photoCaptions: list[str] = Field(default_factory=list)
    specialLetter: Optional[str] = None
    aiEducationalContent: Optional[str] = None
    aiEducationalGeneratedAt: Optional[datetime] = None


class LegacyTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    userId: str = Field(min_length=1)
    etfTicker: str = Field(min_length=1)
    etfName: Optional[str] = None
    type: str = "buy"
    units: float
    pricePerUnit: float
    totalAmount: float
    commission: Optional[float] = None
    date: datetime
    note: Optional[str] = None
    milestone: Optional[str] = None
    photo: Optional[str] = None

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, value: Any) -> Any:
        if isinstance(value, date) and not isinstance(value, datetime):
            return datetime.combine(value, time.min, tzinfo=timezone.utc)
        return value

    @field_validator("date")
    @classmethod
    def validate_aware(cls, value: datetime) -> datetime:
        return _aware(value)


class MigrationResult(BaseModel):
    success: bool
    migratedCount: int = 0
    createdFinancialCount: int = 0
    createdMetadataCount: int = 0
    skippedCount: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    durationMs: int = 0


class MigrationVerification(BaseModel):
    isValid: bool
    issues: list[str] = Field(default_factory=list)


class MigrationStatusResponse(BaseModel):
    isMigrated: bool
    version: Optional[str] = None
    lastMigrationDate: Optional[datetime] = None
    legacyCount: int = 0
    financialCount: int = 0
    metadataCount: int = 0
    stats: dict[str, Any] = Field(default_factory=dict)


class ChildInfo(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    birthDate: date
    ageAtExport: int = Field(default=0, ge=0)


class YearRange(BaseModel):
    start: int = Field(ge=1900, le=2200)
    end: int = Field(ge=1900, le=2200)

    @model_validator(mode="after")
    def validate_order(self) -> "YearRange":
        if self.start > self.end:
            raise ValueError("yearRange.start must not be after yearRange.end")
        return self


class ExportOptions(BaseModel):
    format: ExportFormat = ExportFormat.json
    includeFinancial: bool = True
    includeMetadata: bool = True
    includeEmotional: bool = True
    includeMedia: bool = False
    includeLockedChapters: bool = False
    preserveVersionHistory: bool = False
    yearRange: Optional[YearRange] = None


class ExportRequest(BaseModel):
    childName: str = Field(min_length=1, max_length=200)
    childBirthDate: date
    options: ExportOptions = Field(default_factory=ExportOptions)


class ItemCounts(BaseModel):
    transactions: int = 0
    snapshots: int = 0
    transactionMetadata: int = 0
    periodMetadata: int = 0
    chapters: int = 0
    narratives: int = 0
    mediaFiles: int = 0


class ExportResult(BaseModel):
    success: bool
    format: ExportFormat
    filename: str
    sizeBytes: int = 0
    itemCounts: ItemCounts = Field(default_factory=ItemCounts)
    errors: Optional[list[str]] = None
    warnings: Optional[list[str]] = None


class BundleVerificationResponse(BaseModel):
    isValid: bool
    errors: list[str] = Field(default_factory=list)
    mismatchedLayers: list[str] = Field(default_factory=list)
    exportVersion: Optional[str] = None
    exportDate: Optional[datetime] = None
    childName: Optional[str] = None


def version_response(entry: dict[str, Any]) -> VersionResponse:
    fields = {to_camel(key): value for key, value in entry.items() if key not in ("version", "date", "edit_note")}
    return VersionResponse(
        version=entry["version"],
        date=entry["date"],
        editNote=entry.get("edit_note"),
        fields=fields,
    )


def response_from_row(model: type[BaseModel], row: dict[str, Any]) -> Any:
    data = {to_camel(key): value for key, value in row.items() if key not in ("versions", "user_id")}
    if "versions" in row and issubclass(model, VersionedResponse):
        data["versions"] = [version_response(entry) for entry in row["versions"]]
    return model.model_validate(data)
