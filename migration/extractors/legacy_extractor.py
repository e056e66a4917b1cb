"""
Legacy table extraction.

Each table is streamed through a server-side cursor straight into its own
JSON file, so memory use is bounded by the fetch size. After all tables
are written, export metadata (record counts, checksums, database version)
and a file manifest are generated next to them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.database import LegacyDatabaseClient
from core.exceptions import MigrationPhase
from core.retry import with_auto_retry, with_batch_retry, with_parallel_retry
from migration.artifacts import (
    ARTIFACT_SCHEMA_VERSION,
    JsonArrayWriter,
    sha256_file,
    write_json,
)

logger = logging.getLogger(__name__)

EXPORT_METADATA_FILE = "export-metadata.json"
MANIFEST_FILE = "manifest.json"


@dataclass(frozen=True)
class TableQuery:
    table: str
    sql: str
    optional: bool = False

    @property
    def filename(self) -> str:
        return f"{self.table}.json"


TABLE_QUERIES: List[TableQuery] = [
    TableQuery(
        "users",
        "SELECT id, email, username, super_user, created_at, updated_at "
        "FROM users ORDER BY id"
    ),
    TableQuery(
        "recipes",
        "SELECT id, name, user_id, description, servings, prep_time, prep_time_descriptor, "
        "cook_time, cook_time_descriptor, original_url, created_at, updated_at "
        "FROM recipes ORDER BY id"
    ),
    TableQuery(
        "ingredients",
        "SELECT id, recipe_id, order_number, ingredient, created_at, updated_at "
        "FROM ingredients ORDER BY recipe_id, order_number, id"
    ),
    TableQuery(
        "instructions",
        "SELECT id, recipe_id, step_number, step, created_at, updated_at "
        "FROM instructions ORDER BY recipe_id, step_number, id"
    ),
    TableQuery(
        "tags",
        "SELECT id, name, created_at, updated_at FROM tags ORDER BY id"
    ),
    TableQuery(
        "recipe_tags",
        "SELECT id, recipe_id, tag_id, created_at, updated_at "
        "FROM recipe_tags ORDER BY recipe_id, tag_id"
    ),
    TableQuery(
        "active_storage_attachments",
        "SELECT id, name, record_type, record_id, blob_id, created_at "
        "FROM active_storage_attachments WHERE record_type = 'Recipe' ORDER BY record_id, name",
        optional=True
    ),
    TableQuery(
        "active_storage_blobs",
        "SELECT id, key, filename, content_type, byte_size, checksum, created_at "
        "FROM active_storage_blobs ORDER BY id",
        optional=True
    ),
]


@dataclass
class ExtractionResult:
    output_dir: Path
    record_counts: Dict[str, int] = field(default_factory=dict)
    source_counts: Dict[str, int] = field(default_factory=dict)
    checksums: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    database_version: str = "unknown"

    @property
    def total_records(self) -> int:
        return sum(self.record_counts.values())


class LegacyExtractor:
    """
    Export the legacy tables to ``output_dir``.

    Args:
        client: read-only database client (already connected through the tunnel)
        output_dir: directory the table files are written to
        batch_size: rows per cursor fetch
        queries: tables to export, in order
        on_table_complete: called with (table, count) after each table,
            used to checkpoint progress
        concurrency: source row counts run this many queries at once
    """

    def __init__(
        self,
        client: LegacyDatabaseClient,
        output_dir: Path,
        batch_size: int = 1000,
        queries: Optional[List[TableQuery]] = None,
        on_table_complete: Optional[Callable[[str, int], Any]] = None,
        concurrency: int = 4
    ):
        self.client = client
        self.output_dir = Path(output_dir)
        self.batch_size = batch_size
        self.queries = queries if queries is not None else TABLE_QUERIES
        self.on_table_complete = on_table_complete
        self.concurrency = concurrency

    async def extract_table(self, query: TableQuery) -> int:
        path = self.output_dir / query.filename
        with JsonArrayWriter(path) as writer:
            async def on_row(row: Dict[str, Any]) -> None:
                writer.write(row)

            await self.client.stream_query(query.sql, on_row, batch_size=self.batch_size)
        logger.info(f"Extracted {writer.count} rows from {query.table}")
        return writer.count

    async def _extract_required(self, query: TableQuery) -> int:
        def on_retry(error, attempt_number: int) -> None:
            logger.warning(f"Export of {query.table} failed (attempt {attempt_number}), retrying: {error.message}")

        return await with_auto_retry(
            lambda: self.extract_table(query),
            MigrationPhase.EXTRACT,
            metadata={"table": query.table},
            on_retry=on_retry
        )

    def _table_done(self, result: ExtractionResult, table: str, count: int) -> None:
        result.record_counts[table] = count
        if self.on_table_complete is not None:
            self.on_table_complete(table, count)

    async def count_sources(self, result: ExtractionResult) -> None:
        """Count each table's source rows concurrently and flag mismatched exports."""
        outcomes = await with_parallel_retry(
            self.queries,
            lambda query: self.client.count_query(query.sql),
            MigrationPhase.EXTRACT,
            concurrency=self.concurrency,
            metadata_for=lambda query: {"table": query.table}
        )
        for outcome in outcomes:
            table = outcome.item.table
            if not outcome.success:
                result.warnings.append(f"Could not count source rows of {table}: {outcome.error.message}")
                continue
            result.source_counts[table] = outcome.result
            exported = result.record_counts.get(table)
            if exported is not None and exported != outcome.result:
                result.warnings.append(
                    f"Table {table}: exported {exported} rows but the source now has {outcome.result}"
                )

    async def extract(self, completed: Optional[Dict[str, int]] = None) -> ExtractionResult:
        """
        Export every table not already listed in ``completed``.

        ``completed`` maps table name to record count for tables finished by
        a previous, interrupted run into the same directory.
        """
        result = ExtractionResult(output_dir=self.output_dir)
        completed = dict(completed or {})

        pending: List[TableQuery] = []
        for query in self.queries:
            if query.table in completed and (self.output_dir / query.filename).exists():
                logger.info(f"Skipping {query.table}: already extracted ({completed[query.table]} rows)")
                result.record_counts[query.table] = completed[query.table]
            else:
                pending.append(query)

        for query in pending:
            if not query.optional:
                self._table_done(result, query.table, await self._extract_required(query))

        optional = [q for q in pending if q.optional]
        for outcome in await with_batch_retry(
            optional,
            self.extract_table,
            MigrationPhase.EXTRACT,
            metadata_for=lambda query: {"table": query.table}
        ):
            query = outcome.item
            count = outcome.result or 0
            if not outcome.success:
                message = f"Optional table {query.table} could not be extracted: {outcome.error.message}"
                logger.warning(message)
                result.warnings.append(message)
                write_json(self.output_dir / query.filename, [])
            self._table_done(result, query.table, count)

        await self.count_sources(result)
        result.database_version = await self.client.get_version()
        files = [q.filename for q in self.queries]
        result.checksums = generate_checksums(self.output_dir, files)
        write_export_metadata(self.output_dir, result)
        write_manifest(self.output_dir, files, result.checksums)
        return result


def generate_checksums(output_dir: Path, files: Iterable[str]) -> Dict[str, str]:
    checksums = {}
    for name in files:
        path = Path(output_dir) / name
        if path.exists():
            checksums[name] = sha256_file(path)
    return checksums


def write_export_metadata(output_dir: Path, result: ExtractionResult) -> Path:
    return write_json(
        Path(output_dir) / EXPORT_METADATA_FILE,
        {
            "schemaVersion": ARTIFACT_SCHEMA_VERSION,
            "exportTimestamp": datetime.utcnow().isoformat() + "Z",
            "legacyDatabaseVersion": result.database_version,
            "recordCounts": result.record_counts,
            "sourceCounts": result.source_counts,
            "totalRecords": result.total_records,
            "checksums": result.checksums,
            "outputDirectory": str(output_dir),
            "warnings": result.warnings,
            "phase": MigrationPhase.EXTRACT.value,
        }
    )


def write_manifest(output_dir: Path, files: Iterable[str], checksums: Dict[str, str]) -> Path:
    output_dir = Path(output_dir)
    entries = []
    for name in files:
        path = output_dir / name
        if not path.exists():
            continue
        entries.append({
            "name": name,
            "size": path.stat().st_size,
            "checksum": checksums.get(name, "UNKNOWN"),
            "path": str(path),
        })
    return write_json(
        output_dir / MANIFEST_FILE,
        {
            "generatedAt": datetime.utcnow().isoformat() + "Z",
            "files": entries,
            "totalFiles": len(entries),
        }
    )
