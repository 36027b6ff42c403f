"""Command line entry point: ``bitacora migrate|verify-migration|export|verify-bundle|hash-token``."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from pathlib import Path

from .auth import StaticAuthProvider, hash_token, new_api_token
from .config import Settings, configure_logging, settings
from .persistence import DocumentStore, get_document_store
from .schemas import ChildInfo, ExportFormat, ExportOptions, YearRange
from .services.archive import read_bundle
from .services.container import build_services
from .services.exporter import parse_and_verify

logger = logging.getLogger(__name__)


def _print_json(value: dict) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, default=str))


async def cmd_migrate(args: argparse.Namespace, db: DocumentStore, config: Settings) -> int:
    services = build_services(db, StaticAuthProvider(args.user), config)
    result = await services.migration.migrate(args.user)
    if args.json:
        _print_json(result.model_dump(mode="json"))
    else:
        mark = "✓" if result.success else "✗"
        print(f"{mark} Migradas: {result.migratedCount} (omitidas: {result.skippedCount})")
        print(f"  Financieras: {result.createdFinancialCount}  Metadatos: {result.createdMetadataCount}")
        for warning in result.warnings:
            print(f"  ⚠ {warning}")
        for error in result.errors:
            print(f"  ✗ {error}")
    return 0 if result.success else 1


async def cmd_verify_migration(args: argparse.Namespace, db: DocumentStore, config: Settings) -> int:
    services = build_services(db, StaticAuthProvider(args.user), config)
    verification = await services.migration.verify(args.user)
    if args.json:
        _print_json(verification.model_dump(mode="json"))
    elif verification.isValid:
        print("✓ Migración verificada")
    else:
        print(f"✗ {len(verification.issues)} problema(s):")
        for issue in verification.issues:
            print(f"  - {issue}")
    return 0 if verification.isValid else 1


async def cmd_export(args: argparse.Namespace, db: DocumentStore, config: Settings) -> int:
    services = build_services(db, StaticAuthProvider(args.user), config)
    options = ExportOptions(
        format=ExportFormat(args.format),
        includeFinancial=not args.no_financial,
        includeMetadata=not args.no_metadata,
        includeEmotional=not args.no_emotional,
        includeMedia=args.include_media,
        includeLockedChapters=args.include_locked,
        preserveVersionHistory=args.preserve_history,
        yearRange=YearRange(start=args.from_year, end=args.to_year) if args.from_year and args.to_year else None,
    )
    child = ChildInfo(name=args.child_name, birthDate=args.birth_date)
    artifact = await services.exporter.export(args.user, child, options)
    out_dir = Path(args.out or config.export_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    target = out_dir / artifact.filename
    target.write_bytes(artifact.content)
    logger.info("wrote %s export to %s", options.format.value, target)
    result = artifact.result
    if args.json:
        _print_json({**result.model_dump(mode="json"), "path": str(target)})
    else:
        print(f"✓ Exportado: {target} ({result.sizeBytes} bytes)")
        counts = result.itemCounts
        print(
            f"  Transacciones: {counts.transactions}  Metadatos: {counts.transactionMetadata}"
            f"  Capítulos: {counts.chapters}  Narrativas: {counts.narratives}"
        )
        for warning in result.warnings or []:
            print(f"  ⚠ {warning}")
        for error in result.errors or []:
            print(f"  ✗ {error}")
    return 0 if result.success else 1


def cmd_verify_bundle(args: argparse.Namespace) -> int:
    raw = Path(args.file).read_bytes()
    try:
        text = read_bundle(raw)
    except ValueError as exc:
        print(f"✗ Archivo inválido: {exc}")
        return 1
    verification = parse_and_verify(text)
    if args.json:
        _print_json(
            {
                "isValid": verification.is_valid,
                "errors": verification.errors,
                "mismatchedLayers": verification.mismatched_layers,
            }
        )
    elif verification.is_valid:
        child = (verification.data or {}).get("childInfo") or {}
        print(f"✓ Exportación válida ({child.get('name', '?')})")
    else:
        for error in verification.errors:
            print(f"✗ {error}")
    return 0 if verification.is_valid else 1


def cmd_hash_token(args: argparse.Namespace) -> int:
    token = args.token or new_api_token()
    if not args.token:
        print(f"token: {token}")
    print(f"API_TOKENS entry: {args.user}:{hash_token(token)}")
    return 0


async def _run_with_store(args: argparse.Namespace, config: Settings) -> int:
    db = get_document_store(config)
    try:
        if args.command == "migrate":
            return await cmd_migrate(args, db, config)
        if args.command == "verify-migration":
            return await cmd_verify_migration(args, db, config)
        return await cmd_export(args, db, config)
    finally:
        await db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bitacora", description="Bitácora Patrimonial maintenance commands")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_migrate = subparsers.add_parser("migrate", help="Migrate legacy transactions into the layered model")
    p_migrate.add_argument("--user", "-u", required=True, help="Owner id")
    p_migrate.add_argument("--json", "-j", action="store_true")

    p_verify = subparsers.add_parser("verify-migration", help="Check every legacy record was migrated")
    p_verify.add_argument("--user", "-u", required=True, help="Owner id")
    p_verify.add_argument("--json", "-j", action="store_true")

    p_export = subparsers.add_parser("export", help="Write an export bundle to disk")
    p_export.add_argument("--user", "-u", required=True, help="Owner id")
    p_export.add_argument("--child-name", required=True)
    p_export.add_argument("--birth-date", required=True, type=date.fromisoformat, help="YYYY-MM-DD")
    p_export.add_argument("--format", "-f", choices=[item.value for item in ExportFormat], default="json")
    p_export.add_argument("--out", "-o", help="Output directory (default EXPORT_DIR)")
    p_export.add_argument("--no-financial", action="store_true")
    p_export.add_argument("--no-metadata", action="store_true")
    p_export.add_argument("--no-emotional", action="store_true")
    p_export.add_argument("--include-media", action="store_true")
    p_export.add_argument("--include-locked", action="store_true", help="Include locked chapters")
    p_export.add_argument("--preserve-history", action="store_true", help="Keep every version")
    p_export.add_argument("--from-year", type=int)
    p_export.add_argument("--to-year", type=int)
    p_export.add_argument("--json", "-j", action="store_true")

    p_bundle = subparsers.add_parser("verify-bundle", help="Verify the checksums of an export file")
    p_bundle.add_argument("file", help="JSON or ZIP export")
    p_bundle.add_argument("--json", "-j", action="store_true")

    p_token = subparsers.add_parser("hash-token", help="Produce an API_TOKENS entry")
    p_token.add_argument("--user", "-u", required=True, help="Owner id")
    p_token.add_argument("--token", help="Existing token (a new one is generated otherwise)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = settings
    configure_logging(args.log_level or config.log_level)
    if args.command == "verify-bundle":
        return cmd_verify_bundle(args)
    if args.command == "hash-token":
        return cmd_hash_token(args)
    if args.command == "export" and bool(args.from_year) != bool(args.to_year):
        print("✗ --from-year y --to-year van juntos")
        return 2
    return asyncio.run(_run_with_store(args, config))


if __name__ == "__main__":
    sys.exit(main())
