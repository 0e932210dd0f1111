#!/usr/bin/env python3
"""
Console runner for catalog imports.
Analyses a file, shows how it was parsed and mapped, and optionally imports it.
"""

import argparse
import sys
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from catalog_import.core.config import settings
from catalog_import.core.exceptions import CatalogImportError
from catalog_import.core.logging_config import configure_logging
from catalog_import.db.persistence import ImportPersistence, InMemoryPersistence
from catalog_import.domain.imports.models import SessionStatus
from catalog_import.domain.mapping.target_schema import EntityType
from catalog_import.domain.parsing.types import RawBuffer
from catalog_import.pipeline import ImportPipeline


class ImportConsole:
    """Prints a session's analysis and processing results."""

    def __init__(self, pipeline: ImportPipeline, console: Optional[Console] = None):
        self.pipeline = pipeline
        self.console = console or Console()

    def print_parse_result(self, session_id: str) -> None:
        result = self.pipeline.get_parse_result(session_id)
        if result is None:
            return

        table = Table(title="Parse Result")
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="white")
        table.add_row("Strategy", result.strategy_name)
        table.add_row("Confidence", f"{result.confidence:.2f}")
        table.add_row("Rows", str(result.row_count))
        table.add_row("Delimiter", repr(result.metadata.delimiter))
        table.add_row("Headers", "yes" if result.metadata.has_headers else "no")
        table.add_row("Encoding", result.metadata.encoding)
        table.add_row("Quality", f"{result.metadata.quality_score:.1f}")
        self.console.print(table)

        for issue in result.metadata.issues:
            self.console.print(f"  [yellow]•[/yellow] {issue}")

    def print_mappings(self, session_id: str) -> None:
        session = self.pipeline.persistence.get_session(session_id)
        if session is None:
            return

        table = Table(title=f"Field Mappings (confidence {session.mapping_confidence:.2f})")
        table.add_column("Source", style="cyan")
        table.add_column("Target", style="green")
        table.add_column("Confidence", justify="right")
        table.add_column("Strategy", style="dim")
        for mapping in session.field_mappings:
            table.add_row(
                mapping.source_field,
                mapping.target_field,
                f"{mapping.confidence:.0f}",
                mapping.strategy.value,
            )
        self.console.print(table)

    def print_workflow_status(self, session_id: str) -> None:
        status = self.pipeline.get_workflow_status(session_id)
        lines = [
            f"State: [bold]{status['state']}[/bold]",
            f"Next action: {status['nextAction']}",
        ]
        if status.get("instruction"):
            lines.append(f"[yellow]{status['instruction']}[/yellow]")
        if status.get("error"):
            lines.append(f"[red]{status['error']}[/red]")
        border = "red" if status["state"] == SessionStatus.FAILED.value else "blue"
        self.console.print(Panel("\n".join(lines), title="Workflow", border_style=border))

    def print_processing_status(self, session_id: str) -> None:
        status = self.pipeline.get_processing_status(session_id)
        if status is None:
            return

        table = Table(title="Import Results")
        table.add_column("Batch", justify="right")
        table.add_column("Rows")
        table.add_column("Status")
        table.add_column("OK", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        for batch in status["batches"]:
            table.add_row(
                str(batch["batchNumber"]),
                f"{batch['startIndex']}-{batch['endIndex']}",
                batch["status"],
                str(batch["successCount"]),
                str(batch["failureCount"]),
            )
        self.console.print(table)
        self.console.print(
            f"Processed {status['processedRecords']}/{status['totalRecords']} "
            f"([green]{status['successfulRecords']} ok[/green], "
            f"[red]{status['failedRecords']} failed[/red])"
        )


def build_persistence(database_url: Optional[str]) -> ImportPersistence:
    if not database_url:
        return InMemoryPersistence()

    from catalog_import.db.session import create_import_engine
    from catalog_import.db.sql_persistence import SqlPersistence

    return SqlPersistence(create_import_engine(database_url))


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Catalog Import Console - analyse and import catalog CSV files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s products.csv                           # Analyse only (in-memory store)
  %(prog)s brands.csv --entity-type brand        # Analyse a brand file
  %(prog)s products.csv --auto-approve --database-url sqlite:///catalog.db
        """
    )

    parser.add_argument('file', help='CSV file to import')
    parser.add_argument(
        '--entity-type',
        choices=[entity.value for entity in EntityType],
        default='product',
        help='Catalog entity the file contains (default: product)'
    )
    parser.add_argument(
        '--auto-approve',
        action='store_true',
        help='Approve the import as soon as the preview is ready'
    )
    parser.add_argument(
        '--database-url',
        default=None,
        help='Store the import in this database instead of memory'
    )
    parser.add_argument('--log-level', default=settings.log_level, help='Log level (default: %(default)s)')

    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    console = Console()

    try:
        buffer = RawBuffer.from_path(args.file)
    except OSError as exc:
        console.print(f"[red]❌ Cannot read {args.file}: {exc}[/red]")
        return 1

    pipeline = ImportPipeline(persistence=build_persistence(args.database_url))
    view = ImportConsole(pipeline, console)

    with pipeline:
        try:
            session = pipeline.analyze_upload(buffer, entity_type=args.entity_type)
            pipeline.wait_for_pending()
            session_id = session.session_id

            view.print_parse_result(session_id)
            view.print_mappings(session_id)

            if args.auto_approve:
                state = pipeline.persistence.require_session(session_id).status
                if state in (SessionStatus.PREVIEW_READY, SessionStatus.AWAITING_APPROVAL):
                    future = pipeline.approve(session_id)
                    if future is not None:
                        future.result()
                    pipeline.wait_for_pending()
                    view.print_processing_status(session_id)
        except CatalogImportError as exc:
            console.print(f"[red]❌ Import failed ({exc.code}): {exc}[/red]")
            return 1

        view.print_workflow_status(session_id)

    final = pipeline.persistence.require_session(session_id).status
    return 0 if final not in (SessionStatus.FAILED, SessionStatus.CANCELLED) else 1


if __name__ == "__main__":
    sys.exit(main())
