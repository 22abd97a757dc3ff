"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from ..blob_client import BlobClient
from ..categorization import seed_system_categories
from ..config import Config, create_default_config, load_config
from ..llm import ProviderRegistry, build_engine
from ..mapping import ColumnMappingEngine, MappingContext, preview_rows, read_spreadsheet
from ..schemas import ActivityType, ImportJobPayload, ImportType, ItemOutcome, ItemStatus
from ..services import BatchOrchestrator
from ..services.batch_orchestrator import file_name_for, summarize_batch
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-import",
        description="Normalize receipts, invoices and bank statements with AI extraction",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-config", help="Write a default config file")
    subparsers.add_parser("seed-categories", help="Insert the system categories")
    subparsers.add_parser("providers", help="List the configured LLM provider chain")

    # import command
    import_parser = subparsers.add_parser("import", help="Create and run an import batch")
    import_parser.add_argument(
        "files",
        nargs="+",
        help="Local paths or http(s)/file URLs of the files to import",
    )
    import_parser.add_argument(
        "--user",
        type=str,
        required=True,
        help="User the batch belongs to",
    )
    import_parser.add_argument(
        "--type",
        dest="import_type",
        choices=[t.value for t in ImportType],
        default=ImportType.MIXED.value,
        help="What the files contain (default: mixed)",
    )
    import_parser.add_argument(
        "--source-format",
        choices=["bank_account", "credit_card"],
        help="Statement type for spreadsheets",
    )

    # process-item command
    item_parser = subparsers.add_parser(
        "process-item", help="Process one job payload (JSON file or '-' for stdin)"
    )
    item_parser.add_argument("payload", type=str, help="Path to the job payload JSON")

    # status command
    status_parser = subparsers.add_parser("status", help="Show batch status or store statistics")
    status_parser.add_argument("--batch", type=int, help="Batch ID")
    status_parser.add_argument(
        "--activity",
        action="store_true",
        help="Include the batch activity log",
    )

    # cancel command
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a batch")
    cancel_parser.add_argument("batch", type=int, help="Batch ID")

    # detect-mapping command
    mapping_parser = subparsers.add_parser(
        "detect-mapping", help="Detect the column mapping of a local spreadsheet"
    )
    mapping_parser.add_argument("file", type=Path, help="CSV or Excel file")
    mapping_parser.add_argument(
        "--source-format",
        choices=["bank_account", "credit_card"],
        help="Statement type",
    )
    mapping_parser.add_argument(
        "--currency",
        type=str,
        help="Currency when the file has none (default: from config)",
    )

    return parser


def _to_url(location: str) -> str:
    if "://" in location:
        return location
    return Path(location).resolve().as_uri()


def build_orchestrator(config: Config, registry: ProviderRegistry) -> BatchOrchestrator:
    blob_client = BlobClient(
        timeout=config.blob.timeout_seconds,
        max_retries=config.blob.max_retries,
        backoff_factor=config.blob.backoff_factor,
    )
    return BatchOrchestrator(StateStore(config.state_db_path), build_engine(registry), blob_client, config)


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ {config_path} already exists")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_seed_categories(config: Config) -> int:
    """Insert missing system categories."""
    store = StateStore(config.state_db_path)
    inserted = seed_system_categories(store)
    print(f"✓ Seeded {inserted} new system categor{'y' if inserted == 1 else 'ies'}")
    return 0


def cmd_providers(config: Config) -> int:
    """List eligible providers in fallback order."""
    with ProviderRegistry.from_config(config.providers) as registry:
        if not len(registry):
            print("⚠️  No LLM providers configured")
            return 1
        print("\n🤖 Provider chain")
        for position, provider in enumerate(registry, start=1):
            print(f"  {position}. {provider.name} ({provider.model})")
    return 0


def cmd_import(
    config: Config,
    files: list[str],
    user_id: str,
    import_type: str,
    source_format: str | None,
) -> int:
    """Create a batch from the given files and run it."""
    with ProviderRegistry.from_config(config.providers) as registry:
        orchestrator = build_orchestrator(config, registry)
        try:
            entries = [(file_name_for(location), _to_url(location)) for location in files]
            batch_id, payloads = orchestrator.create_batch(
                user_id, ImportType(import_type), entries, source_format=source_format
            )
            print(f"📦 Batch {batch_id}: {len(payloads)} file(s)")

            summary = orchestrator.run_batch(batch_id)
            for item in orchestrator.store.list_batch_items(batch_id):
                if item.outcome == ItemOutcome.DUPLICATE_DETECTED:
                    print(f"  ⏭️  {item.file_name}: duplicate")
                elif item.status == ItemStatus.COMPLETED:
                    print(f"  ✓ {item.file_name}")
                else:
                    print(f"  ❌ {item.file_name}: [{item.error_code}] {item.error_message}")
        finally:
            orchestrator.blob_client.close()

    print(
        f"\n{summary.status.value}: {summary.successful} successful, "
        f"{summary.failed} failed, {summary.duplicate} duplicate"
    )
    return 0 if summary.failed == 0 else 1


def cmd_process_item(config: Config, payload_path: str) -> int:
    """Run the per-item job entry point and print the JobResult JSON."""
    try:
        if payload_path == "-":
            data = json.load(sys.stdin)
        else:
            with open(payload_path) as f:
                data = json.load(f)
        payload = ImportJobPayload.from_dict(data)
    except (OSError, ValueError, KeyError) as e:
        print(f"❌ Invalid job payload: {e}")
        return 1

    with ProviderRegistry.from_config(config.providers) as registry:
        orchestrator = build_orchestrator(config, registry)
        try:
            result = orchestrator.process_item(payload)
        finally:
            orchestrator.blob_client.close()

    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


def cmd_status(config: Config, batch_id: int | None, activity: bool) -> int:
    """Show batch or store status."""
    store = StateStore(config.state_db_path)

    if batch_id is None:
        stats = store.get_stats()
        print("\n📊 Store Status")
        print("=" * 40)
        for key, value in stats.items():
            print(f"  {key.replace('_', ' ').capitalize() + ':':<24}{value}")
        print()
        return 0

    batch = store.get_batch(batch_id)
    if batch is None:
        print(f"❌ Batch {batch_id} not found")
        return 1

    summary = summarize_batch(store, batch_id)
    print(f"\n📦 Batch {batch_id} ({batch.import_type})")
    print("=" * 40)
    print(f"  Status:       {summary.status.value}")
    print(f"  Total:        {summary.total}")
    print(f"  Queued:       {summary.queued}")
    print(f"  Processing:   {summary.processing}")
    print(f"  Successful:   {summary.successful}")
    print(f"  Failed:       {summary.failed}")
    print(f"  Duplicate:    {summary.duplicate}")

    if activity:
        print("\n📝 Activity")
        for entry in store.get_activity_log(batch_id):
            print(f"  {entry.created_at}  {entry.activity_type:<22} {entry.message}")
    print()
    return 0


def cmd_cancel(config: Config, batch_id: int) -> int:
    """Cancel a batch."""
    store = StateStore(config.state_db_path)
    if store.get_batch(batch_id) is None:
        print(f"❌ Batch {batch_id} not found")
        return 1
    if not store.cancel_batch(batch_id):
        print(f"⚠️  Batch {batch_id} was already cancelled")
        return 0
    store.log_activity(batch_id, ActivityType.BATCH_CANCELLED.value, "Cancellation requested")
    print(f"✓ Batch {batch_id} cancelled")
    return 0


def cmd_detect_mapping(
    config: Config, file_path: Path, source_format: str | None, currency: str | None
) -> int:
    """Detect and print the MappingConfig for a local spreadsheet."""
    try:
        rows = read_spreadsheet(file_path.read_bytes(), file_path.name)
    except OSError as e:
        print(f"❌ Could not read {file_path}: {e}")
        return 1
    if not rows:
        print(f"❌ {file_path} is empty")
        return 1

    with ProviderRegistry.from_config(config.providers) as registry:
        mapper = ColumnMappingEngine(build_engine(registry))
        mapping = mapper.detect_mapping(
            preview_rows(rows),
            MappingContext(
                statement_type=source_format,
                data_rows=rows,
                default_currency=currency or config.defaults.currency,
            ),
        )

    if mapping is None:
        print("❌ Could not detect a column mapping")
        return 1
    print(json.dumps(mapping.to_dict(), indent=2))
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "seed-categories":
        return cmd_seed_categories(config)
    elif parsed.command == "providers":
        return cmd_providers(config)
    elif parsed.command == "import":
        return cmd_import(config, parsed.files, parsed.user, parsed.import_type, parsed.source_format)
    elif parsed.command == "process-item":
        return cmd_process_item(config, parsed.payload)
    elif parsed.command == "status":
        return cmd_status(config, parsed.batch, parsed.activity)
    elif parsed.command == "cancel":
        return cmd_cancel(config, parsed.batch)
    elif parsed.command == "detect-mapping":
        return cmd_detect_mapping(config, parsed.file, parsed.source_format, parsed.currency)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
