"""
The migration phases: extract, transform, validate, import and verify.

Each phase reads the artifacts of its predecessor from disk, writes its own
into a fresh timestamped directory and returns a PhaseResult. Failures are
classified and checkpointed through the RecoveryStore by the phase that
owns them, then re-raised for the runner.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import Field, ValidationError

from core.config import MigrationSettings
from core.database import DatabaseConfig, LegacyDatabaseClient, create_database_client
from core.exceptions import ArtifactError, ErrorCategory, MigrationError, MigrationPhase
from core.logging import PhaseLogger
from core.recovery import RecoveryErrorInfo, RecoveryProgress, RecoveryState, RecoveryStore
from core.tunnel import SSHTunnel, TunnelConfig, create_ssh_tunnel
from migration.artifacts import (
    IMPORTED_DIR,
    RAW_DIR,
    TRANSFORMED_DIR,
    VALIDATED_DIR,
    VERIFIED_DIR,
    create_stage_dir,
    find_latest_dir,
    read_json,
    read_json_list,
    resolve_input_dir,
    write_json,
    write_text,
)
from migration.extractors.legacy_extractor import LegacyExtractor
from migration.loaders.batch_importer import BatchImporter, ImporterConfig
from migration.loaders.dry_run import build_dry_run_report
from migration.loaders.idempotency import IdempotencyChecker
from migration.loaders.import_report import build_import_report, render_import_report
from migration.loaders.progress import ProgressTracker
from migration.positions import normalize_recipe_positions
from migration.transformers.recipe_transformer import build_lookups, transform_recipes
from migration.transformers.user_transformer import transform_users, write_user_mapping_csv
from migration.validators.duplicate_detector import (
    DuplicateDetector,
    DuplicateDetectorConfig,
    build_duplicate_report,
)
from migration.validators.recipe_validator import RecipeValidator, summarize_results
from migration.verifiers.post_migration import PostMigrationVerifier, render_verification_report
from schemas.recipe import (
    ArtifactModel,
    DuplicateReport,
    ImportResult,
    Severity,
    TransformedRecipe,
    ValidationIssue,
    ValidationResult,
    ValidationStats,
    ValidationStatus,
)
from schemas.verification import CheckStatus

logger = logging.getLogger(__name__)

TunnelFactory = Callable[..., Awaitable[SSHTunnel]]
DatabaseFactory = Callable[..., Awaitable[LegacyDatabaseClient]]

IMPORT_REPORT_FILE = "import-report.json"
IMPORT_REPORT_MARKDOWN = "import-report.md"
DRY_RUN_REPORT_FILE = "dry-run-report.json"


class PhaseResult(ArtifactModel):
    phase: MigrationPhase
    success: bool
    output_dir: Optional[str] = None
    duration: float = 0  # milliseconds
    stats: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class PhaseContext:
    """Everything a phase needs, passed explicitly."""

    settings: MigrationSettings
    recovery: RecoveryStore
    plog: PhaseLogger
    input_dir: Optional[Path] = None
    timestamp: Optional[str] = None

    @property
    def output_dir(self) -> Path:
        return self.settings.output_dir


@dataclass
class _Progress:
    progress: RecoveryProgress = field(default_factory=RecoveryProgress)
    checkpoint: Dict[str, Any] = field(default_factory=dict)


@asynccontextmanager
async def _recoverable(ctx: PhaseContext, phase: MigrationPhase, state: _Progress):
    """
    Checkpoint and re-raise any failure inside the block, classified.

    Cancellation (Ctrl-C, SIGTERM) is checkpointed as well and propagates
    unchanged.
    """
    try:
        yield
    except asyncio.CancelledError:
        ctx.plog.warn(f"{phase.value} interrupted", {"checkpoint": state.checkpoint})
        if ctx.settings.MIGRATION_SAVE_STATE_ON_ERROR:
            try:
                ctx.recovery.save_state(
                    RecoveryState(
                        phase=phase,
                        progress=state.progress,
                        checkpoint=state.checkpoint,
                        metadata={"interrupted": True}
                    )
                )
            except MigrationError as e:
                logger.error(f"Could not checkpoint interrupted {phase.value} phase: {e}")
        raise
    except Exception as e:
        ctx.recovery.handle_error(
            e,
            phase,
            progress=state.progress,
            checkpoint=state.checkpoint,
            stop_on_error=True,
            save_state_on_error=ctx.settings.MIGRATION_SAVE_STATE_ON_ERROR
        )


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 1)


# ============================================================================
# Extract
# ============================================================================

async def run_extract(
    ctx: PhaseContext,
    tunnel_factory: TunnelFactory = create_ssh_tunnel,
    database_factory: DatabaseFactory = create_database_client
) -> PhaseResult:
    """
    Export legacy tables through the SSH tunnel into ``raw/<timestamp>/``.

    A previous interrupted extraction is resumed into its own directory,
    skipping the tables it had already finished.
    """
    phase = MigrationPhase.EXTRACT
    settings = ctx.settings
    started = time.monotonic()
    state = _Progress()

    async with _recoverable(ctx, phase, state):
        settings.require_extraction()

        completed: Dict[str, int] = {}
        output_dir = None
        previous = ctx.recovery.latest_state(phase)
        if previous and previous.checkpoint.get("outputDir") and Path(previous.checkpoint["outputDir"]).is_dir():
            output_dir = Path(previous.checkpoint["outputDir"])
            completed = dict(previous.checkpoint.get("completedTables") or {})
            ctx.plog.info("Resuming extraction", {"outputDir": str(output_dir), "completedTables": completed})
        if output_dir is None:
            output_dir = create_stage_dir(ctx.output_dir, RAW_DIR, ctx.timestamp)

        state.checkpoint = {"outputDir": str(output_dir), "completedTables": completed}

        def on_table_complete(table: str, count: int) -> None:
            completed[table] = count
            state.progress.processed_records += count
            state.progress.succeeded_records += count
            ctx.plog.info(f"Extracted {table}", {"table": table, "records": count})

        tunnel_config = TunnelConfig(
            ssh_host=settings.SSH_HOST,
            ssh_port=settings.SSH_PORT,
            username=settings.SSH_USERNAME,
            private_key_path=settings.SSH_PRIVATE_KEY_PATH,
            remote_host=settings.LEGACY_DB_HOST,
            remote_port=settings.LEGACY_DB_PORT,
            local_port=settings.SSH_LOCAL_PORT,
            known_hosts=settings.SSH_KNOWN_HOSTS,
            ready_timeout=settings.SSH_READY_TIMEOUT
        )

        ctx.plog.info("Opening SSH tunnel", {"host": settings.SSH_HOST, "localPort": settings.SSH_LOCAL_PORT})
        tunnel = await tunnel_factory(tunnel_config)
        try:
            client = await database_factory(
                DatabaseConfig(
                    host=tunnel_config.local_host,
                    port=tunnel.local_port,
                    database=settings.LEGACY_DB_NAME,
                    user=settings.LEGACY_DB_USER,
                    password=settings.LEGACY_DB_PASSWORD,
                    pool_size=settings.LEGACY_DB_POOL_SIZE
                )
            )
            try:
                extractor = LegacyExtractor(
                    client,
                    output_dir,
                    on_table_complete=on_table_complete,
                    concurrency=settings.LEGACY_DB_POOL_SIZE
                )
                result = await extractor.extract(completed=completed)
            finally:
                await client.close()
        finally:
            await tunnel.close()

    for warning in result.warnings:
        ctx.plog.warn(warning)
    ctx.plog.info("Extraction complete", {"recordCounts": result.record_counts})

    return PhaseResult(
        phase=phase,
        success=True,
        output_dir=str(output_dir),
        duration=_elapsed_ms(started),
        stats={
            "recordCounts": result.record_counts,
            "totalRecords": result.total_records,
            "databaseVersion": result.database_version,
            "warnings": result.warnings,
        }
    )


# ============================================================================
# Transform
# ============================================================================

async def run_transform(ctx: PhaseContext) -> PhaseResult:
    """Transform raw tables into ``transformed/<timestamp>/``."""
    phase = MigrationPhase.TRANSFORM
    started = time.monotonic()
    state = _Progress()

    async with _recoverable(ctx, phase, state):
        input_dir = resolve_input_dir(ctx.output_dir, RAW_DIR, ctx.input_dir, phase)
        state.checkpoint = {"inputDir": str(input_dir)}
        ctx.plog.info("Loading raw data", {"inputDir": str(input_dir)})

        def load(name: str, optional: bool = False) -> List[Dict[str, Any]]:
            return read_json_list(input_dir / f"{name}.json", phase, optional=optional)

        users = load("users")
        recipes = load("recipes")
        state.progress.total_records = len(users) + len(recipes)

        user_result = transform_users(users)
        for error in user_result.errors:
            ctx.plog.warn(f"User {error.record_id} not transformed", error.to_artifact())

        lookups = build_lookups(
            load("ingredients"),
            load("instructions"),
            load("tags"),
            load("recipe_tags"),
            load("active_storage_attachments", optional=True),
            load("active_storage_blobs", optional=True)
        )
        recipe_result = transform_recipes(recipes, lookups, user_result.uuid_by_legacy_id())
        for error in recipe_result.errors:
            ctx.plog.warn(f"Recipe {error.record_id} not transformed", error.to_artifact())

        state.progress.processed_records = state.progress.total_records
        state.progress.succeeded_records = user_result.stats.successful + recipe_result.stats.successful
        state.progress.failed_records = user_result.stats.failed + recipe_result.stats.failed

        output_dir = create_stage_dir(ctx.output_dir, TRANSFORMED_DIR, ctx.timestamp)
        write_json(output_dir / "users-normalized.json", [u.to_artifact() for u in user_result.users])
        write_json(output_dir / "user-mapping.json", [m.to_artifact() for m in user_result.mapping])
        write_user_mapping_csv(output_dir / "user-mapping.csv", user_result.mapping)
        write_json(output_dir / "recipes-normalized.json", [r.to_artifact() for r in recipe_result.recipes])
        write_json(
            output_dir / "unparseable-items.json",
            [item.to_artifact() for item in recipe_result.unparseable_items]
        )
        write_json(
            output_dir / "transformation-report.json",
            {
                "inputDir": str(input_dir),
                "users": {
                    "stats": user_result.stats.to_artifact(),
                    "errors": [e.to_artifact() for e in user_result.errors],
                },
                "recipes": {
                    "stats": recipe_result.stats.to_artifact(),
                    "errors": [e.to_artifact() for e in recipe_result.errors],
                },
                "unparseableItems": len(recipe_result.unparseable_items),
            }
        )

    ctx.plog.info("Transformation complete", recipe_result.stats.to_artifact())
    return PhaseResult(
        phase=phase,
        success=True,
        output_dir=str(output_dir),
        duration=_elapsed_ms(started),
        stats={
            "users": user_result.stats.to_artifact(),
            "recipes": recipe_result.stats.to_artifact(),
        }
    )


# ============================================================================
# Validate
# ============================================================================

def apply_duplicate_strategy(
    strategy: str,
    report: DuplicateReport,
    results_by_id: Dict[str, ValidationResult]
) -> int:
    """
    With ``keep-first``, fail every recipe that is a high-confidence
    duplicate of an earlier one.

    Only high-confidence links count: a recipe that joined a group through a
    fuzzy title match alone is reported but never failed.

    Returns the number of records newly failed.
    """
    if strategy != "keep-first":
        return 0

    failed = 0
    for group in report.duplicate_groups:
        by_id = {recipe.id: recipe for recipe in group.recipes}
        for cluster in group.high_confidence_clusters:
            keeper = by_id[cluster[0]]
            for duplicate_id in cluster[1:]:
                result = results_by_id.get(duplicate_id)
                if result is None:
                    continue
                if result.status != ValidationStatus.FAIL:
                    failed += 1
                result.errors.append(
                    ValidationIssue(
                        field="duplicate",
                        message=f"Duplicate of recipe {keeper.legacy_id} ({group.match_reason})",
                        severity=Severity.CRITICAL
                    )
                )
    return failed


def format_validation_summary(stats: ValidationStats, duplicates: DuplicateReport, strategy: str) -> str:
    lines = [
        "Recipe Validation Summary",
        "=" * 40,
        f"Total recipes:      {stats.total}",
        f"PASS:               {stats.passed}",
        f"WARN:               {stats.warned}",
        f"FAIL:               {stats.failed}",
        f"Critical errors:    {stats.critical_errors}",
        f"Warnings:           {stats.warning_count}",
        "",
        "Duplicates",
        "-" * 40,
        f"Strategy:           {strategy}",
        f"Groups:             {duplicates.total_duplicates}",
        f"High confidence:    {duplicates.high_confidence_count}",
        f"Medium confidence:  {duplicates.medium_confidence_count}",
        f"Low confidence:     {duplicates.low_confidence_count}",
        f"Affected recipes:   {duplicates.affected_recipes}",
    ]
    if stats.total:
        lines += ["", f"Pass rate: {100 * (stats.passed + stats.warned) / stats.total:.1f}%"]
    return "\n".join(lines) + "\n"


async def run_validate(ctx: PhaseContext) -> PhaseResult:
    """Validate transformed recipes into ``validated/<timestamp>/``."""
    phase = MigrationPhase.VALIDATE
    settings = ctx.settings
    started = time.monotonic()
    state = _Progress()

    async with _recoverable(ctx, phase, state):
        input_dir = resolve_input_dir(ctx.output_dir, TRANSFORMED_DIR, ctx.input_dir, phase)
        state.checkpoint = {"inputDir": str(input_dir)}
        records = read_json_list(input_dir / "recipes-normalized.json", phase)
        users = read_json_list(input_dir / "users-normalized.json", phase, optional=True)
        state.progress.total_records = len(records)
        ctx.plog.info("Validating recipes", {"inputDir": str(input_dir), "recipes": len(records)})

        parsed: List[TransformedRecipe] = []
        prepared: List[Dict[str, Any]] = []
        for record in records:
            try:
                recipe = normalize_recipe_positions(TransformedRecipe.parse_obj(record))
            except (ValidationError, TypeError):
                prepared.append(record)
                continue
            parsed.append(recipe)
            prepared.append(recipe.to_artifact())

        validator = RecipeValidator()
        batch = validator.validate_batch(prepared)

        detector = DuplicateDetector(
            DuplicateDetectorConfig(
                enable_fuzzy_title_match=settings.MIGRATION_FUZZY_MATCHING,
                fuzzy_threshold=settings.MIGRATION_FUZZY_THRESHOLD,
                ingredient_match_count=settings.MIGRATION_INGREDIENT_MATCH_COUNT
            )
        )
        duplicates = build_duplicate_report(detector.detect(parsed))
        results_by_id = {r.recipe_id: r for r in batch.results if r.recipe_id}
        strategy = settings.MIGRATION_DUPLICATE_STRATEGY
        newly_failed = apply_duplicate_strategy(strategy, duplicates, results_by_id)
        stats = summarize_results(batch.results)

        state.progress.processed_records = stats.total
        state.progress.succeeded_records = stats.passed + stats.warned
        state.progress.failed_records = stats.failed

        buckets: Dict[str, List[Dict[str, Any]]] = {"PASS": [], "WARN": [], "FAIL": []}
        for record, result in zip(prepared, batch.results):
            if result.status == ValidationStatus.FAIL:
                buckets["FAIL"].append({**record, "validationErrors": [e.to_artifact() for e in result.errors]})
            else:
                buckets[result.status.value].append(record)

        output_dir = create_stage_dir(ctx.output_dir, VALIDATED_DIR, ctx.timestamp)
        write_json(output_dir / "recipes-pass.json", buckets["PASS"])
        write_json(output_dir / "recipes-warn.json", buckets["WARN"])
        write_json(output_dir / "recipes-fail.json", buckets["FAIL"])
        write_json(output_dir / "users-normalized.json", users)
        write_json(output_dir / "duplicates-report.json", duplicates.to_artifact())
        write_json(
            output_dir / "validation-report.json",
            {
                "inputDir": str(input_dir),
                "duplicateStrategy": strategy,
                "duplicatesFailed": newly_failed,
                "stats": stats.to_artifact(),
                "results": [r.to_artifact() for r in batch.results],
            }
        )
        write_text(output_dir / "validation-summary.txt", format_validation_summary(stats, duplicates, strategy))

    ctx.plog.info("Validation complete", stats.to_artifact())
    return PhaseResult(
        phase=phase,
        success=True,
        output_dir=str(output_dir),
        duration=_elapsed_ms(started),
        stats={
            **stats.to_artifact(),
            "duplicateGroups": duplicates.total_duplicates,
            "duplicatesFailed": newly_failed,
        }
    )


# ============================================================================
# Import
# ============================================================================

def importer_config(settings: MigrationSettings) -> ImporterConfig:
    return ImporterConfig(
        api_base_url=settings.TARGET_API_URL or "",
        auth_token=settings.MIGRATION_AUTH_TOKEN,
        batch_size=settings.MIGRATION_BATCH_SIZE,
        dry_run=settings.MIGRATION_DRY_RUN,
        stop_on_error=settings.MIGRATION_STOP_ON_ERROR,
        delay_between_batches=settings.MIGRATION_DELAY_BETWEEN_BATCHES / 1000,
        max_retries=settings.MIGRATION_MAX_RETRIES,
        retry_backoff=settings.MIGRATION_RETRY_BACKOFF_MS / 1000
    )


async def run_import(ctx: PhaseContext, http_client: Optional[httpx.AsyncClient] = None) -> PhaseResult:
    """
    Import validated users, then PASS and WARN recipes.

    Already imported records (per the id mappings under ``imported/``) are
    skipped, which is what makes a re-run resume where the last one stopped.
    A run that leaves records failed still writes its reports and returns an
    unsuccessful result, with a recovery state naming the failed records.
    """
    phase = MigrationPhase.IMPORT
    settings = ctx.settings
    started = time.monotonic()
    state = _Progress()

    async with _recoverable(ctx, phase, state):
        settings.require_import()
        input_dir = resolve_input_dir(ctx.output_dir, VALIDATED_DIR, ctx.input_dir, phase)
        state.checkpoint = {"inputDir": str(input_dir), "nextBatchIndex": 0}

        users = read_json_list(input_dir / "users-normalized.json", phase, optional=True)
        recipes = (
            read_json_list(input_dir / "recipes-pass.json", phase)
            + read_json_list(input_dir / "recipes-warn.json", phase, optional=True)
        )
        state.progress.total_records = len(users) + len(recipes)

        config = importer_config(settings)
        idempotency = IdempotencyChecker(ctx.output_dir / IMPORTED_DIR)
        idempotency.load()
        progress = ProgressTracker(state.progress.total_records)
        ctx.plog.info(
            "Starting import",
            {"inputDir": str(input_dir), "users": len(users), "recipes": len(recipes), "config": config.safe_dict()}
        )

        def on_batch_complete(entity: str):
            def record(batch) -> None:
                state.checkpoint.update({"entity": entity, "nextBatchIndex": batch.batch_number})
                state.progress.processed_records += len(batch.results)
                state.progress.succeeded_records += batch.success_count
                state.progress.failed_records += batch.failure_count
                if not config.dry_run:
                    idempotency.save()
                ctx.plog.info(
                    f"{entity} batch {batch.batch_number}/{batch.total_batches}",
                    {"succeeded": batch.success_count, "failed": batch.failure_count, "progress": progress.snapshot()}
                )
            return record

        results: Dict[str, List[ImportResult]] = {"users": [], "recipes": []}
        async with BatchImporter(config, http_client, idempotency, progress) as importer:
            results["users"] = await importer.import_users(users, on_batch_complete("users"))
            if config.stop_on_error and importer.has_failures:
                ctx.plog.warn("User import failed with stop on error set; recipes not imported")
            else:
                results["recipes"] = await importer.import_recipes(recipes, on_batch_complete("recipes"))

        output_dir = create_stage_dir(ctx.output_dir, IMPORTED_DIR, ctx.timestamp)
        report = build_import_report(
            str(input_dir), config.safe_dict(), importer.stats, results, importer.skipped, idempotency.stats()
        )
        write_json(output_dir / IMPORT_REPORT_FILE, report)
        write_text(output_dir / IMPORT_REPORT_MARKDOWN, render_import_report(report))
        if config.dry_run:
            write_json(output_dir / DRY_RUN_REPORT_FILE, build_dry_run_report(importer.dry_run_entries))

    stats = importer.stats
    if stats.failure_count and settings.MIGRATION_SAVE_STATE_ON_ERROR:
        ctx.recovery.save_state(
            RecoveryState(
                phase=phase,
                error=RecoveryErrorInfo(
                    message=f"{stats.failure_count} record(s) failed to import",
                    category=ErrorCategory.IMPORT_ERROR.value
                ),
                progress=state.progress,
                checkpoint={
                    **state.checkpoint,
                    "failedLegacyIds": {
                        entity: [r.legacy_id for r in entity_results if not r.success]
                        for entity, entity_results in results.items()
                    },
                },
                metadata={"reportDir": str(output_dir)}
            )
        )

    ctx.plog.info("Import complete", {**stats.to_artifact(), "progress": progress.snapshot()})
    return PhaseResult(
        phase=phase,
        success=stats.failure_count == 0,
        output_dir=str(output_dir),
        duration=_elapsed_ms(started),
        stats=stats.to_artifact(),
        error=f"{stats.failure_count} record(s) failed to import" if stats.failure_count else None
    )


# ============================================================================
# Verify
# ============================================================================

def load_legacy_counts(output_dir: Path) -> Dict[str, int]:
    """``recordCounts`` of the latest raw export, or empty when there is none."""
    raw_dir = find_latest_dir(output_dir / RAW_DIR)
    if raw_dir is None or not (raw_dir / "export-metadata.json").exists():
        return {}
    metadata = read_json(raw_dir / "export-metadata.json", MigrationPhase.VERIFY)
    return dict(metadata.get("recordCounts") or {})


async def run_verify(ctx: PhaseContext) -> PhaseResult:
    """
    Check the import against the validated data it was given.

    Writes ``verification-report.json`` and ``verification-report.md`` into
    ``verified/<timestamp>/``. The phase fails when the verification status
    is ``fail``; warnings alone leave it successful.
    """
    phase = MigrationPhase.VERIFY
    settings = ctx.settings
    started = time.monotonic()
    state = _Progress()

    async with _recoverable(ctx, phase, state):
        input_dir = resolve_input_dir(ctx.output_dir, VALIDATED_DIR, ctx.input_dir, phase)
        state.checkpoint = {"inputDir": str(input_dir)}

        mappings = IdempotencyChecker(ctx.output_dir / IMPORTED_DIR)
        if not (mappings.recipe_mapping_path.exists() or mappings.user_mapping_path.exists()):
            raise ArtifactError(
                f"No import mappings found under {mappings.mapping_dir}",
                phase=phase,
                metadata={"mapping_dir": str(mappings.mapping_dir)}
            )
        mappings.load()

        users = read_json_list(input_dir / "users-normalized.json", phase, optional=True)
        recipes = (
            read_json_list(input_dir / "recipes-pass.json", phase)
            + read_json_list(input_dir / "recipes-warn.json", phase, optional=True)
        )
        state.progress.total_records = len(users) + len(recipes)

        verifier = PostMigrationVerifier(settings.MIGRATION_SPOT_CHECK_COUNT)
        report = verifier.verify(
            users, recipes, mappings, legacy_counts=load_legacy_counts(ctx.output_dir), validated_dir=str(input_dir)
        )

        output_dir = create_stage_dir(ctx.output_dir, VERIFIED_DIR, ctx.timestamp)
        write_json(output_dir / "verification-report.json", report.to_artifact())
        write_text(output_dir / "verification-report.md", render_verification_report(report))

    summary = report.summary
    ctx.plog.info("Verification complete", summary.to_artifact())
    failed = summary.overall_status == CheckStatus.FAIL
    return PhaseResult(
        phase=phase,
        success=not failed,
        output_dir=str(output_dir),
        duration=_elapsed_ms(started),
        stats={
            "status": summary.overall_status,
            "totalChecks": summary.total_checks,
            "passedChecks": summary.passed_checks,
            "failedChecks": summary.failed_checks,
            "warningChecks": summary.warning_checks,
        },
        error="; ".join(summary.critical_issues[:3]) if failed else None
    )
