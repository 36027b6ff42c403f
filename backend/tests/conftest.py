from datetime import datetime, timedelta, timezone

import pytest

from bitacora.auth import StaticAuthProvider
from bitacora.persistence import InMemoryDocumentStore
from bitacora.retry import NO_RETRY
from bitacora.services.emotional import ChapterStore, YearlyNarrativeStore
from bitacora.services.exporter import ExportService
from bitacora.services.financial import FinancialStore
from bitacora.services.metadata import PeriodMetadataStore, TransactionMetadataStore
from bitacora.services.migration import MigrationService
from bitacora.store import InMemoryStore

OWNER = "owner-1"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def backing() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def db(backing: InMemoryStore) -> InMemoryDocumentStore:
    return InMemoryDocumentStore(backing)


@pytest.fixture
def auth() -> StaticAuthProvider:
    return StaticAuthProvider(OWNER)


@pytest.fixture
def financial(db, auth, clock) -> FinancialStore:
    return FinancialStore(db, auth, retry=NO_RETRY, clock=clock)


@pytest.fixture
def transaction_metadata(db, auth, clock) -> TransactionMetadataStore:
    return TransactionMetadataStore(db, auth, retry=NO_RETRY, clock=clock)


@pytest.fixture
def period_metadata(db, auth, clock) -> PeriodMetadataStore:
    return PeriodMetadataStore(db, auth, retry=NO_RETRY, clock=clock)


@pytest.fixture
def chapters(db, auth, clock) -> ChapterStore:
    return ChapterStore(db, auth, retry=NO_RETRY, clock=clock)


@pytest.fixture
def narratives(db, auth, clock) -> YearlyNarrativeStore:
    return YearlyNarrativeStore(db, auth, retry=NO_RETRY, clock=clock)


@pytest.fixture
def migration(db, auth, financial, transaction_metadata, clock) -> MigrationService:
    return MigrationService(db, auth, financial, transaction_metadata, retry=NO_RETRY, clock=clock)


@pytest.fixture
def exporter(financial, transaction_metadata, period_metadata, chapters, narratives, clock) -> ExportService:
    return ExportService(financial, transaction_metadata, period_metadata, chapters, narratives, clock=clock)
