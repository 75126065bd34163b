#!/usr/bin/env python3
"""
Ledger Migration Script for Glucose Ensemble
Renumbers prediction sequences chronologically and/or exports the ledger to CSV.

Usage:
    python scripts/migrate_data.py renumber [--dry-run]
    python scripts/migrate_data.py export --output predictions.csv [--tz America/Chicago]
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "backend" / "src"))

from config import Settings, get_settings
from database.cosmos_client import CosmosDBManager
from database.repositories import PredictionRepository
from services.csv_export_service import group_cycles
from services.ledger_service import PredictionLedger

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def open_ledger(settings: Settings) -> PredictionLedger:
    manager = CosmosDBManager(settings)
    return PredictionLedger.from_settings(PredictionRepository(manager, settings.patient_id), settings)


async def renumber(ledger: PredictionLedger, dry_run: bool = False) -> int:
    """Renumber cycles 1..N by timestamp. Returns the number of cycles."""
    if dry_run:
        cycles = group_cycles(await ledger.records())
        out_of_order = sum(
            1 for number, cycle in enumerate(cycles, start=1)
            if any(r.sequenceCount != number for r in cycle)
        )
        logger.info(f"[DRY RUN] {len(cycles)} cycles, {out_of_order} would be renumbered")
        return len(cycles)
    return await ledger.renumber_sequences()


async def export(ledger: PredictionLedger, output: Path, timezone_name: str) -> int:
    """Write the ledger CSV to `output`. Returns the number of data rows."""
    content = await ledger.export_csv(timezone_name)
    output.write_bytes(content.encode("utf-8"))
    rows = max(content.count("\r\n") - 1, 0)
    logger.info(f"Exported {rows} cycles to {output}")
    return rows


def main():
    parser = argparse.ArgumentParser(description="Maintain the prediction ledger in CosmosDB")
    subparsers = parser.add_subparsers(dest="command", required=True)

    renumber_parser = subparsers.add_parser("renumber", help="Renumber sequences chronologically")
    renumber_parser.add_argument("--dry-run", action="store_true", help="Report without writing")

    export_parser = subparsers.add_parser("export", help="Export the ledger to CSV")
    export_parser.add_argument("--output", type=Path, required=True, help="CSV file to write")
    export_parser.add_argument("--tz", default=None, help="IANA timezone (default: EXPORT_TIMEZONE)")

    args = parser.parse_args()

    settings = get_settings()
    if not settings.cosmos_enabled:
        logger.error("COSMOS_ENDPOINT and COSMOS_KEY required")
        sys.exit(1)

    ledger = open_ledger(settings)
    if args.command == "renumber":
        asyncio.run(renumber(ledger, dry_run=args.dry_run))
    else:
        asyncio.run(export(ledger, args.output, args.tz or settings.export_timezone))
    logger.info("Migration complete!")


if __name__ == "__main__":
    main()
