from dataclasses import dataclass

from ..auth import AuthProvider
from ..config import Settings, settings
from ..persistence import DocumentStore
from .emotional import ChapterStore, YearlyNarrativeStore
from .exporter import ExportService
from .financial import FinancialStore
from .metadata import PeriodMetadataStore, TransactionMetadataStore
from .migration import MigrationService
from .prices import PriceProvider, get_price_provider


@dataclass
class Services:
    financial: FinancialStore
    transaction_metadata: TransactionMetadataStore
    period_metadata: PeriodMetadataStore
    chapters: ChapterStore
    narratives: YearlyNarrativeStore
    migration: MigrationService
    exporter: ExportService
    prices: PriceProvider | None = None


def build_services(db: DocumentStore, auth: AuthProvider, config: Settings | None = None) -> Services:
    """Wires every store for one caller; built per request or per command."""
    config = config or settings
    financial = FinancialStore(db, auth)
    transaction_metadata = TransactionMetadataStore(db, auth)
    period_metadata = PeriodMetadataStore(db, auth)
    chapters = ChapterStore(db, auth)
    narratives = YearlyNarrativeStore(db, auth)
    prices = get_price_provider(config)
    return Services(
        financial=financial,
        transaction_metadata=transaction_metadata,
        period_metadata=period_metadata,
        chapters=chapters,
        narratives=narratives,
        migration=MigrationService(db, auth, financial, transaction_metadata),
        exporter=ExportService(
            financial,
            transaction_metadata,
            period_metadata,
            chapters,
            narratives,
            prices=prices,
            app_version=config.app_version,
        ),
        prices=prices,
    )
