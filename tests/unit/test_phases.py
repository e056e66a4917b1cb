"""
Unit tests for the transform, validate and import phases, the runner and the CLI
"""

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from core.exceptions import ArtifactError, ConfigurationError, MigrationPhase, ParseError
from core.logging import PhaseLogger
from core.recovery import RecoveryState, RecoveryStore
from migration import cli
from migration.artifacts import write_json
from migration.loaders.idempotency import IdempotencyChecker
from migration.phases import PhaseContext, run_import, run_transform, run_validate, run_verify
from migration.runner import COMMAND_PHASES, SUMMARY_FILE, MigrationRunner
from schemas.recipe import NIL_UUID

TIMESTAMP = "2024-01-15-10-30-00"
API = "https://target.example.com"


def read(path):
    return json.loads(path.read_text(encoding="utf-8"))


def write_stage(output_dir, stage, files, timestamp="2024-01-01-00-00-00"):
    stage_dir = output_dir / stage / timestamp
    for name, data in files.items():
        write_json(stage_dir / name, data)
    return stage_dir


def write_raw(output_dir, tables):
    return write_stage(output_dir, "raw", {f"{name}.json": rows for name, rows in tables.items()})


def run_phase(phase_fn, settings, recovery_store, *args, input_dir=None):
    async def runner():
        with PhaseLogger(phase_fn.__name__, settings.output_dir, timestamp=TIMESTAMP) as plog:
            ctx = PhaseContext(
                settings=settings,
                recovery=recovery_store,
                plog=plog,
                input_dir=input_dir,
                timestamp=TIMESTAMP
            )
            return await phase_fn(ctx, *args)
    return runner()


class TargetAPI:
    def __init__(self, status=200):
        self.status = status
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        if self.status != 200:
            return httpx.Response(self.status, text="down")
        records = json.loads(request.content)["records"]
        return httpx.Response(
            200,
            json={"results": [{"legacyId": r["legacyId"], "success": True, "id": r["id"]} for r in records]}
        )

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


class TestRunTransform:
    """Test the transform phase"""

    @pytest.mark.asyncio
    async def test_writes_transformed_artifacts(self, settings, recovery_store, raw_tables):
        write_raw(settings.output_dir, raw_tables)

        result = await run_phase(run_transform, settings, recovery_store)

        out = settings.output_dir / "transformed" / TIMESTAMP
        assert result.success
        assert result.output_dir == str(out)
        recipes = read(out / "recipes-normalized.json")
        assert [r["title"] for r in recipes] == ["Pancakes", "Orphan Soup"]
        assert recipes[1]["authorId"] == NIL_UUID
        assert len(read(out / "users-normalized.json")) == 2
        assert (out / "user-mapping.csv").exists()
        report = read(out / "transformation-report.json")
        assert report["users"]["stats"]["failed"] == 1
        assert report["unparseableItems"] >= 1
        assert result.stats["recipes"]["successful"] == 2

    @pytest.mark.asyncio
    async def test_missing_raw_data(self, settings, recovery_store):
        """Test a missing input directory fails with a checkpoint saved"""
        with pytest.raises(ArtifactError):
            await run_phase(run_transform, settings, recovery_store)

        assert recovery_store.latest_state(MigrationPhase.TRANSFORM) is not None

    @pytest.mark.asyncio
    async def test_missing_optional_tables(self, settings, recovery_store, raw_tables):
        del raw_tables["active_storage_attachments"]
        del raw_tables["active_storage_blobs"]
        write_raw(settings.output_dir, raw_tables)

        result = await run_phase(run_transform, settings, recovery_store)

        assert result.success

    @pytest.mark.asyncio
    async def test_explicit_input_dir(self, settings, recovery_store, raw_tables, tmp_path):
        input_dir = tmp_path / "exports"
        for name, rows in raw_tables.items():
            write_json(input_dir / f"{name}.json", rows)

        result = await run_phase(run_transform, settings, recovery_store, input_dir=input_dir)

        assert result.success


class TestRunValidate:
    """Test the validate phase"""

    @pytest.fixture
    def transformed(self, settings, recipe_factory, user_factory):
        recipes = [
            recipe_factory(1, title="Chocolate Chip Cookies"),
            recipe_factory(2, title="chocolate chip cookies"),
            recipe_factory(3, title="Banana Bread", tags=[]),
            recipe_factory(4, title="Beef Stew", authorId=NIL_UUID),
            {"id": "broken", "legacyId": 9},
        ]
        return write_stage(
            settings.output_dir,
            "transformed",
            {"recipes-normalized.json": recipes, "users-normalized.json": [user_factory(1)]}
        )

    @pytest.mark.asyncio
    async def test_buckets_and_reports(self, settings, recovery_store, transformed):
        result = await run_phase(run_validate, settings, recovery_store)

        out = settings.output_dir / "validated" / TIMESTAMP
        assert [r["legacyId"] for r in read(out / "recipes-pass.json")] == [1, 2]
        assert [r["legacyId"] for r in read(out / "recipes-warn.json")] == [3]
        failed = read(out / "recipes-fail.json")
        assert [r["legacyId"] for r in failed] == [4, 9]
        assert failed[0]["validationErrors"][0]["field"] == "authorId"
        assert read(out / "users-normalized.json")[0]["legacyId"] == 1
        assert read(out / "duplicates-report.json")["highConfidenceCount"] == 1
        assert "Recipe Validation Summary" in (out / "validation-summary.txt").read_text()
        assert result.stats["failed"] == 2
        assert result.stats["duplicateGroups"] == 1

    @pytest.mark.asyncio
    async def test_keep_first_fails_later_duplicates(self, make_settings, transformed):
        settings = make_settings(MIGRATION_DUPLICATE_STRATEGY="keep-first")
        result = await run_phase(run_validate, settings, RecoveryStore(settings.output_dir))

        out = settings.output_dir / "validated" / TIMESTAMP
        assert [r["legacyId"] for r in read(out / "recipes-pass.json")] == [1]
        failed = read(out / "recipes-fail.json")
        duplicate = next(r for r in failed if r["legacyId"] == 2)
        assert duplicate["validationErrors"][-1]["field"] == "duplicate"
        assert result.stats["duplicatesFailed"] == 1

    @pytest.mark.asyncio
    async def test_keep_first_spares_fuzzy_members(self, make_settings, recipe_factory, user_factory):
        """Test a recipe grouped only by a fuzzy title match is not failed"""
        settings = make_settings(MIGRATION_DUPLICATE_STRATEGY="keep-first")
        write_stage(
            settings.output_dir,
            "transformed",
            {
                "recipes-normalized.json": [
                    recipe_factory(1, title="Chocolate Chip Cookies"),
                    recipe_factory(2, title="Chocolate Chip Cookie"),
                    recipe_factory(3, title="chocolate chip cookies"),
                ],
                "users-normalized.json": [user_factory(1)],
            }
        )

        result = await run_phase(run_validate, settings, RecoveryStore(settings.output_dir))

        out = settings.output_dir / "validated" / TIMESTAMP
        assert [r["legacyId"] for r in read(out / "recipes-pass.json")] == [1, 2]
        assert [r["legacyId"] for r in read(out / "recipes-fail.json")] == [3]
        assert result.stats["duplicatesFailed"] == 1

    @pytest.mark.asyncio
    async def test_invalid_json_input(self, settings, recovery_store):
        stage_dir = settings.output_dir / "transformed" / "2024-01-01-00-00-00"
        stage_dir.mkdir(parents=True)
        (stage_dir / "recipes-normalized.json").write_text("[{")

        with pytest.raises(ParseError):
            await run_phase(run_validate, settings, recovery_store)


class TestRunImport:
    """Test the import phase"""

    @pytest.fixture
    def validated(self, settings, recipe_factory, user_factory):
        return write_stage(
            settings.output_dir,
            "validated",
            {
                "users-normalized.json": [user_factory(1), user_factory(2)],
                "recipes-pass.json": [recipe_factory(1), recipe_factory(2)],
                "recipes-warn.json": [recipe_factory(3, tags=[])],
                "recipes-fail.json": [recipe_factory(4, title="")],
            }
        )

    @pytest.fixture
    def import_settings(self, make_settings):
        return make_settings(TARGET_API_URL=API, MIGRATION_BATCH_SIZE=2, MIGRATION_DELAY_BETWEEN_BATCHES=0,
                             MIGRATION_AUTH_TOKEN="secret-token")

    @pytest.mark.asyncio
    async def test_imports_users_then_recipes(self, import_settings, validated):
        api = TargetAPI()

        result = await run_phase(run_import, import_settings, RecoveryStore(import_settings.output_dir), api.client())

        assert result.success
        assert api.calls == 3
        assert result.stats["successCount"] == 5
        report = read(import_settings.output_dir / "imported" / TIMESTAMP / "import-report.json")
        assert len(report["successes"]) == 5
        assert report["mappings"]["recipes"]["imported"] == 3
        assert "secret-token" not in json.dumps(report)

    @pytest.mark.asyncio
    async def test_rerun_skips_imported_records(self, import_settings, validated):
        """Test a second run sends nothing already recorded as imported"""
        store = RecoveryStore(import_settings.output_dir)
        api = TargetAPI()
        await run_phase(run_import, import_settings, store, api.client())

        result = await run_phase(run_import, import_settings, store, api.client())

        assert api.calls == 3
        assert result.success
        assert result.stats["skippedCount"] == 5

    @pytest.mark.asyncio
    async def test_failures_make_phase_unsuccessful(self, make_settings, validated):
        settings = make_settings(TARGET_API_URL=API, MIGRATION_MAX_RETRIES=0, MIGRATION_DELAY_BETWEEN_BATCHES=0)
        api = TargetAPI(status=500)

        result = await run_phase(run_import, settings, RecoveryStore(settings.output_dir), api.client())

        assert not result.success
        assert result.error == "5 record(s) failed to import"

    @pytest.mark.asyncio
    async def test_dry_run_needs_no_api(self, make_settings, validated):
        settings = make_settings(MIGRATION_DRY_RUN=True, MIGRATION_DELAY_BETWEEN_BATCHES=0)
        api = TargetAPI()

        result = await run_phase(run_import, settings, RecoveryStore(settings.output_dir), api.client())

        assert result.success
        assert api.calls == 0
        assert not (settings.output_dir / "imported" / "recipe-id-mapping.json").exists()
        report = read(settings.output_dir / "imported" / TIMESTAMP / "dry-run-report.json")
        assert report["summary"]["recipes"]["wouldImport"] == 3
        assert report["summary"]["users"]["withWarnings"] == 2
        assert [e["legacyId"] for e in report["recipes"]] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_dry_run_reports_already_imported(self, make_settings, validated):
        """Test dry run flags records a live run would skip"""
        settings = make_settings(MIGRATION_DRY_RUN=True, MIGRATION_DELAY_BETWEEN_BATCHES=0)
        checker = IdempotencyChecker(settings.output_dir / "imported")
        checker.mark_recipe_imported(2, "new-2", "Chocolate Chip Cookies")
        checker.save()

        await run_phase(run_import, settings, RecoveryStore(settings.output_dir), TargetAPI().client())

        report = read(settings.output_dir / "imported" / TIMESTAMP / "dry-run-report.json")
        entry = next(e for e in report["recipes"] if e["legacyId"] == 2)
        assert entry["alreadyImported"] is True
        assert entry["wouldImport"] is False
        assert report["summary"]["recipes"]["wouldImport"] == 2

    @pytest.mark.asyncio
    async def test_writes_markdown_report(self, make_settings, validated):
        settings = make_settings(TARGET_API_URL=API, MIGRATION_MAX_RETRIES=0, MIGRATION_DELAY_BETWEEN_BATCHES=0)

        await run_phase(run_import, settings, RecoveryStore(settings.output_dir), TargetAPI(status=500).client())

        markdown = (settings.output_dir / "imported" / TIMESTAMP / "import-report.md").read_text(encoding="utf-8")
        assert markdown.startswith("# Import Report")
        assert "## Failed Users" in markdown
        assert "## Failed Recipes" in markdown
        assert "No records failed." not in markdown

    @pytest.mark.asyncio
    async def test_failed_records_save_recovery_state(self, make_settings, validated):
        """Test a run that leaves records failed checkpoints them"""
        settings = make_settings(TARGET_API_URL=API, MIGRATION_MAX_RETRIES=0, MIGRATION_DELAY_BETWEEN_BATCHES=0)
        store = RecoveryStore(settings.output_dir)

        result = await run_phase(run_import, settings, store, TargetAPI(status=500).client())

        assert not result.success
        assert store.list_states(MigrationPhase.IMPORT)
        state = store.latest_state(MigrationPhase.IMPORT)
        assert state.checkpoint["inputDir"] == str(validated)
        assert state.checkpoint["failedLegacyIds"] == {"users": [1, 2], "recipes": [1, 2, 3]}
        assert state.error.message == "5 record(s) failed to import"
        assert state.progress.failed_records == 5

    @pytest.mark.asyncio
    async def test_clean_run_saves_no_recovery_state(self, import_settings, validated):
        store = RecoveryStore(import_settings.output_dir)

        await run_phase(run_import, import_settings, store, TargetAPI().client())

        assert store.list_states(MigrationPhase.IMPORT) == []

    @pytest.mark.asyncio
    async def test_cancelled_import_saves_checkpoint(self, import_settings, validated):
        """Test cancelling mid-batch checkpoints the import and propagates"""
        store = RecoveryStore(import_settings.output_dir)
        request_sent = asyncio.Event()

        async def hang(request):
            request_sent.set()
            await asyncio.sleep(3600)

        client = httpx.AsyncClient(transport=httpx.MockTransport(hang))
        task = asyncio.ensure_future(run_phase(run_import, import_settings, store, client))
        await request_sent.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        state = store.latest_state(MigrationPhase.IMPORT)
        assert state is not None
        assert state.metadata["interrupted"] is True
        assert state.checkpoint["inputDir"] == str(validated)
        assert state.progress.total_records == 5

    @pytest.mark.asyncio
    async def test_requires_api_url(self, settings, recovery_store, validated):
        with pytest.raises(ConfigurationError, match="TARGET_API_URL"):
            await run_phase(run_import, settings, recovery_store, TargetAPI().client())


class TestRunVerify:
    """Test post-migration verification"""

    @pytest.fixture
    def verify_settings(self, make_settings, recipe_factory, user_factory):
        settings = make_settings(TARGET_API_URL=API, MIGRATION_DELAY_BETWEEN_BATCHES=0)
        author_id = user_factory(1)["id"]
        write_stage(
            settings.output_dir,
            "validated",
            {
                "users-normalized.json": [user_factory(1), user_factory(2)],
                "recipes-pass.json": [recipe_factory(1, authorId=author_id), recipe_factory(2, authorId=author_id)],
                "recipes-warn.json": [recipe_factory(3, authorId=author_id, tags=[])],
            }
        )
        return settings

    def mark_imported(self, settings, user_ids, recipe_ids, user_factory):
        checker = IdempotencyChecker(settings.output_dir / "imported")
        for legacy_id in user_ids:
            checker.mark_user_imported(legacy_id, user_factory(legacy_id)["id"], f"user{legacy_id}@example.com")
        for legacy_id in recipe_ids:
            checker.mark_recipe_imported(legacy_id, f"new-{legacy_id}", "Chocolate Chip Cookies")
        checker.save()

    @pytest.mark.asyncio
    async def test_passes_after_import(self, verify_settings):
        store = RecoveryStore(verify_settings.output_dir)
        await run_phase(run_import, verify_settings, store, TargetAPI().client())

        result = await run_phase(run_verify, verify_settings, store)

        assert result.success
        assert result.stats["status"] == "pass"
        assert result.stats["failedChecks"] == 0
        report = read(verify_settings.output_dir / "verified" / TIMESTAMP / "verification-report.json")
        assert [c["importedCount"] for c in report["recordCounts"]] == [2, 3]
        assert len(report["spotChecks"]) == 3
        markdown = (verify_settings.output_dir / "verified" / TIMESTAMP / "verification-report.md").read_text(
            encoding="utf-8"
        )
        assert "**Overall Status:** PASS" in markdown

    @pytest.mark.asyncio
    async def test_missing_records_fail(self, verify_settings, user_factory):
        self.mark_imported(verify_settings, [1, 2], [1, 2], user_factory)

        result = await run_phase(run_verify, verify_settings, RecoveryStore(verify_settings.output_dir))

        assert not result.success
        assert "recipes count mismatch: 2/3 imported" in result.error
        report = read(verify_settings.output_dir / "verified" / TIMESTAMP / "verification-report.json")
        assert report["recordCounts"][1]["missingLegacyIds"] == [3]

    @pytest.mark.asyncio
    async def test_recipes_without_imported_author_fail(self, verify_settings, user_factory):
        self.mark_imported(verify_settings, [2], [1, 2, 3], user_factory)

        result = await run_phase(run_verify, verify_settings, RecoveryStore(verify_settings.output_dir))

        assert not result.success
        assert "Author is not an imported user" in result.error
        report = read(verify_settings.output_dir / "verified" / TIMESTAMP / "verification-report.json")
        assert [i["legacyId"] for i in report["ownershipIssues"]] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_uses_legacy_export_counts(self, verify_settings, user_factory):
        write_stage(verify_settings.output_dir, "raw", {"export-metadata.json": {"recordCounts": {"recipes": 4}}})
        self.mark_imported(verify_settings, [1, 2], [1, 2, 3], user_factory)

        await run_phase(run_verify, verify_settings, RecoveryStore(verify_settings.output_dir))

        report = read(verify_settings.output_dir / "verified" / TIMESTAMP / "verification-report.json")
        assert report["recordCounts"][1]["legacyCount"] == 4
        assert report["recordCounts"][0]["legacyCount"] is None

    @pytest.mark.asyncio
    async def test_requires_import_mappings(self, verify_settings):
        store = RecoveryStore(verify_settings.output_dir)

        with pytest.raises(ArtifactError, match="No import mappings"):
            await run_phase(run_verify, verify_settings, store)

        assert store.latest_state(MigrationPhase.VERIFY) is not None


class TestMigrationRunner:
    """Test phase sequencing"""

    @pytest.mark.asyncio
    async def test_runs_phases_in_order(self, settings, recovery_store, raw_tables):
        write_raw(settings.output_dir, raw_tables)
        recovery_store.save_state(RecoveryState(phase=MigrationPhase.TRANSFORM))
        runner = MigrationRunner(settings, recovery_store)

        summary = await runner.run([MigrationPhase.VALIDATE, MigrationPhase.TRANSFORM])

        assert [p["phase"] for p in summary["phases"]] == ["transform", "validate"]
        assert summary["overallSuccess"] is True
        assert read(settings.output_dir / SUMMARY_FILE)["requestedPhases"] == ["transform", "validate"]
        assert recovery_store.list_states(MigrationPhase.TRANSFORM) == []
        assert list((settings.output_dir / "logs").glob("transform-*.log"))

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, settings, recovery_store):
        runner = MigrationRunner(settings, recovery_store)

        summary = await runner.run([MigrationPhase.TRANSFORM, MigrationPhase.VALIDATE])

        assert len(summary["phases"]) == 1
        assert summary["phases"][0]["success"] is False
        assert "No raw data directory" in summary["phases"][0]["error"]
        assert summary["overallSuccess"] is False
        assert recovery_store.latest_state(MigrationPhase.TRANSFORM) is not None


class TestCLI:
    """Test the migrate command"""

    @pytest.fixture
    def config_file(self, settings, tmp_path):
        path = tmp_path / "migration.json"
        path.write_text(json.dumps({"migration": {"outputDir": str(settings.output_dir)}}))
        return path

    def migrate(self, *argv, tmp_path):
        with patch("migration.cli.setup_logging"):
            return cli.main([*argv, "--env-file", str(tmp_path / "absent.env")])

    def test_success_exit_code(self, settings, raw_tables, config_file, tmp_path):
        write_raw(settings.output_dir, raw_tables)

        assert self.migrate("transform", "--config", str(config_file), tmp_path=tmp_path) == 0

    def test_failure_exit_code(self, config_file, tmp_path):
        assert self.migrate("validate", "--config", str(config_file), tmp_path=tmp_path) == 1

    def test_input_dir_option(self, raw_tables, config_file, tmp_path):
        input_dir = write_raw(tmp_path / "elsewhere", raw_tables)

        code = self.migrate(
            "transform", "--config", str(config_file), "--input-dir", str(input_dir), tmp_path=tmp_path
        )

        assert code == 0

    def test_invalid_config_exit_code(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"migration": {"batchSize": 0}}))

        assert self.migrate("transform", "--config", str(path), tmp_path=tmp_path) == 1

    def test_unknown_command(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            self.migrate("load", tmp_path=tmp_path)

        assert exc_info.value.code == 2

    def test_parser_defaults(self):
        args = cli.build_parser().parse_args(["all", "--dry-run"])

        assert args.command == "all"
        assert args.dry_run is True
        assert args.input_dir is None

    def test_verify_command(self):
        args = cli.build_parser().parse_args(["verify"])

        assert args.command == "verify"
        assert COMMAND_PHASES["verify"] == [MigrationPhase.VERIFY]
        assert MigrationPhase.VERIFY not in COMMAND_PHASES["all"]
