"""
Unit tests for the batch importer and import idempotency
"""

import json

import httpx
import pytest

from core.exceptions import ImportRequestError, NetworkError, ParseError
from migration.loaders.batch_importer import (
    RECIPES_ENDPOINT,
    USERS_ENDPOINT,
    BatchImporter,
    ImporterConfig,
    chunk,
    classify_import_error,
)
from migration.loaders.dry_run import ALREADY_IMPORTED, build_dry_run_report, check_recipe, check_user, mark_already_imported
from migration.loaders.idempotency import IdempotencyChecker
from migration.loaders.import_report import build_import_report, render_import_report
from migration.loaders.progress import ProgressTracker, format_duration
from schemas.recipe import BatchImportResult, ImportErrorType, ImportResult, ImportStats

API = "https://target.example.com"


class FakeTargetAPI:
    """Records requests and answers like the target migration API"""

    def __init__(self, status=200, fail_batches=(), reject_ids=(), error=None):
        self.status = status
        self.fail_batches = set(fail_batches)
        self.reject_ids = set(reject_ids)
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((request, body))
        if self.error is not None:
            raise self.error(request)

        batch_number = len({tuple(r["legacyId"] for r in b["records"]) for _, b in self.requests})
        if batch_number in self.fail_batches:
            return httpx.Response(500, text="upstream exploded")
        if self.status != 200:
            return httpx.Response(self.status, text="nope")

        results = []
        for record in body["records"]:
            if record["legacyId"] in self.reject_ids:
                results.append({"legacyId": record["legacyId"], "success": False, "error": "title taken"})
            else:
                results.append({"legacyId": record["legacyId"], "success": True, "id": f"new-{record['legacyId']}"})
        return httpx.Response(200, json={"results": results})

    @property
    def call_count(self):
        return len(self.requests)


def make_importer(api, idempotency=None, **overrides):
    options = {"api_base_url": API, "auth_token": "secret-token", "batch_size": 2,
               "delay_between_batches": 0, "max_retries": 2, "retry_backoff": 0}
    options.update(overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    return BatchImporter(ImporterConfig(**options), client=client, idempotency=idempotency)


class TestIdempotencyChecker:
    """Test persisted import mappings"""

    def test_save_and_load(self, tmp_path):
        checker = IdempotencyChecker(tmp_path)
        checker.mark_recipe_imported(10, "new-10", "Pancakes")
        checker.mark_user_imported(1, "new-1", "ada@example.com")
        checker.save()

        reloaded = IdempotencyChecker(tmp_path)
        reloaded.load()

        assert reloaded.is_recipe_imported(10)
        assert reloaded.is_user_imported(1)
        assert not reloaded.is_recipe_imported(11)
        assert reloaded.recipe_uuid(10) == "new-10"
        assert reloaded.user_uuid(2) is None
        assert reloaded.stats()["recipes"] == {"total": 1, "imported": 1, "pending": 0}
        assert "newUuid" in (tmp_path / "recipe-id-mapping.json").read_text()

    def test_missing_files_load_empty(self, tmp_path):
        checker = IdempotencyChecker(tmp_path / "nothing")
        checker.load()

        assert checker.recipes == {}
        assert checker.users == {}

    def test_corrupt_mapping_raises(self, tmp_path):
        (tmp_path / "recipe-id-mapping.json").write_text("[{\"legacyId\": ")

        with pytest.raises(ParseError, match="Corrupt import mapping"):
            IdempotencyChecker(tmp_path).load()


class TestClassifyImportError:
    """Test per-record error types"""

    def test_status_codes(self):
        assert classify_import_error(ImportRequestError("x", metadata={"statusCode": 503})) == ImportErrorType.SERVER
        assert classify_import_error(ImportRequestError("x", metadata={"statusCode": 422})) == ImportErrorType.VALIDATION

    def test_network(self):
        assert classify_import_error(NetworkError("x")) == ImportErrorType.NETWORK
        assert classify_import_error(httpx.ConnectError("refused")) == ImportErrorType.NETWORK

    def test_unknown(self):
        assert classify_import_error(RuntimeError("?")) == ImportErrorType.UNKNOWN

    def test_chunk(self):
        assert chunk([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert chunk([], 3) == []


class TestBatchImporter:
    """Test batched HTTP import"""

    @pytest.mark.asyncio
    async def test_imports_in_batches(self, recipe_factory, tmp_path):
        """Test records are sent in batches and recorded as imported"""
        api = FakeTargetAPI()
        checker = IdempotencyChecker(tmp_path)
        recipes = [recipe_factory(n) for n in range(1, 6)]

        async with make_importer(api, idempotency=checker) as importer:
            results = await importer.import_recipes(recipes)

        assert api.call_count == 3
        request, body = api.requests[0]
        assert str(request.url) == f"{API}{RECIPES_ENDPOINT}"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert [r["legacyId"] for r in body["records"]] == [1, 2]
        assert all(r.success for r in results)
        assert results[0].new_id == "new-1"
        assert importer.stats.success_count == 5
        assert importer.stats.failure_count == 0
        assert len(importer.batch_durations) == 3
        assert checker.is_recipe_imported(5)
        assert not importer.has_failures

    @pytest.mark.asyncio
    async def test_per_record_rejection(self, user_factory):
        api = FakeTargetAPI(reject_ids={2})
        importer = make_importer(api)

        results = await importer.import_users([user_factory(1), user_factory(2)])

        assert str(api.requests[0][0].url).endswith(USERS_ENDPOINT)
        assert [r.success for r in results] == [True, False]
        assert results[1].error == "title taken"
        assert results[1].error_type == ImportErrorType.VALIDATION
        assert importer.stats.errors_by_type == {"validation": 1}

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, recipe_factory):
        api = FakeTargetAPI(status=400)
        importer = make_importer(api)

        results = await importer.import_recipes([recipe_factory(1)])

        assert api.call_count == 1
        assert results[0].error_type == ImportErrorType.VALIDATION
        assert results[0].retry_count == 0
        assert "400" in results[0].error

    @pytest.mark.asyncio
    async def test_server_error_retried_then_failed(self, recipe_factory, no_sleep):
        """Test a 5xx batch is retried and then reported against every record"""
        api = FakeTargetAPI(status=503)
        importer = make_importer(api)

        results = await importer.import_recipes([recipe_factory(1), recipe_factory(2)])

        assert api.call_count == 3
        assert all(r.error_type == ImportErrorType.SERVER for r in results)
        assert all(r.retry_count == 2 for r in results)
        assert importer.stats.errors_by_type == {"server": 2}

    @pytest.mark.asyncio
    async def test_transport_error_is_network(self, recipe_factory, no_sleep):
        api = FakeTargetAPI(error=lambda request: httpx.ConnectError("connection refused", request=request))
        importer = make_importer(api)

        results = await importer.import_recipes([recipe_factory(1)])

        assert api.call_count == 3
        assert results[0].error_type == ImportErrorType.NETWORK

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_stop_import(self, recipe_factory, no_sleep):
        api = FakeTargetAPI(fail_batches={1})
        importer = make_importer(api, max_retries=0)

        results = await importer.import_recipes([recipe_factory(n) for n in range(1, 5)])

        assert [r.success for r in results] == [False, False, True, True]

    @pytest.mark.asyncio
    async def test_stop_on_error(self, recipe_factory):
        api = FakeTargetAPI(status=422)
        importer = make_importer(api, stop_on_error=True)

        results = await importer.import_recipes([recipe_factory(n) for n in range(1, 6)])

        assert api.call_count == 1
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_skips_already_imported(self, recipe_factory, tmp_path):
        """Test a re-run only sends records not yet marked imported"""
        checker = IdempotencyChecker(tmp_path)
        checker.mark_recipe_imported(1, "new-1", "Chocolate Chip Cookies")
        api = FakeTargetAPI()
        importer = make_importer(api, idempotency=checker)

        await importer.import_recipes([recipe_factory(1), recipe_factory(2)])

        assert api.call_count == 1
        assert [r["legacyId"] for r in api.requests[0][1]["records"]] == [2]
        assert importer.stats.skipped_count == 1
        assert importer.skipped == [{"type": "recipes", "legacyId": 1}]

    @pytest.mark.asyncio
    async def test_dry_run_sends_nothing(self, recipe_factory):
        """Test dry run validates payloads locally"""
        api = FakeTargetAPI()
        importer = make_importer(api, dry_run=True)

        results = await importer.import_recipes([recipe_factory(1), {"legacyId": 9, "title": "No author"}])

        assert api.call_count == 0
        assert results[0].success
        assert not results[1].success
        assert results[1].error_type == ImportErrorType.VALIDATION

    @pytest.mark.asyncio
    async def test_batch_callback_and_start_batch(self, recipe_factory):
        api = FakeTargetAPI()
        importer = make_importer(api)
        seen = []

        async def on_batch(batch):
            seen.append((batch.batch_number, batch.total_batches, batch.success_count))

        await importer.import_recipes([recipe_factory(n) for n in range(1, 6)], on_batch, start_batch=1)

        assert seen == [(2, 3, 2), (3, 3, 1)]

    @pytest.mark.asyncio
    async def test_unexpected_response_body(self, recipe_factory):
        importer = make_importer(lambda request: httpx.Response(200, json={"ok": True}))

        results = await importer.import_recipes([recipe_factory(1)])

        assert not results[0].success
        assert results[0].error_type == ImportErrorType.UNKNOWN

    def test_safe_dict_hides_token(self):
        config = ImporterConfig(api_base_url=API, auth_token="secret-token")

        assert "secret-token" not in json.dumps(config.safe_dict())


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def make_batch(succeeded, failed=0):
    results = [ImportResult(success=True, legacy_id=n) for n in range(succeeded)]
    results += [ImportResult(success=False, legacy_id=100 + n, error="boom") for n in range(failed)]
    return BatchImportResult(
        batch_number=1, total_batches=1, results=results, success_count=succeeded, failure_count=failed, duration=5
    )


class TestProgressTracker:
    """Test import progress, rate and ETA"""

    def test_rate_and_eta(self):
        clock = FakeClock()
        tracker = ProgressTracker(100, clock=clock)
        clock.now += 10

        tracker.record_batch(make_batch(18, failed=2))

        assert tracker.percentage == 20
        assert tracker.records_per_second == 2.0
        assert tracker.eta_seconds == 40.0
        assert tracker.success_rate == 90
        assert tracker.summary_line() == "20/100 (20%), 2.0 records/s, ETA 40s"

    def test_skipped_records_count_towards_completion_only(self):
        clock = FakeClock()
        tracker = ProgressTracker(10, clock=clock)
        clock.now += 4

        tracker.record_skipped(6)
        tracker.record_batch(make_batch(2))

        assert tracker.completed_records == 8
        assert tracker.records_per_second == 0.5
        assert tracker.eta_seconds == 4.0
        assert tracker.snapshot() == {
            "completed": 8, "total": 10, "percent": 80, "recordsPerSecond": 0.5, "etaSeconds": 4.0
        }

    def test_eta_unknown_before_first_batch(self):
        tracker = ProgressTracker(10, clock=FakeClock())

        assert tracker.eta_seconds is None
        assert tracker.percentage == 0
        assert "ETA calculating" in tracker.summary_line()

    def test_empty_import(self):
        tracker = ProgressTracker(0, clock=FakeClock())

        assert tracker.percentage == 0
        assert tracker.records_per_second == 0.0

    def test_format_duration(self):
        assert format_duration(None) == "calculating"
        assert format_duration(42.9) == "42s"
        assert format_duration(185) == "3m 5s"
        assert format_duration(7320) == "2h 2m"

    @pytest.mark.asyncio
    async def test_importer_feeds_tracker(self, recipe_factory, tmp_path):
        checker = IdempotencyChecker(tmp_path)
        checker.mark_recipe_imported(1, "new-1", "Chocolate Chip Cookies")
        tracker = ProgressTracker(5)
        importer = make_importer(FakeTargetAPI(), idempotency=checker)
        importer.progress = tracker

        await importer.import_recipes([recipe_factory(n) for n in range(1, 6)])

        assert tracker.skipped_records == 1
        assert tracker.processed_records == 4
        assert tracker.percentage == 100


class TestDryRunChecks:
    """Test the local checks behind dry-run-report.json"""

    def test_valid_recipe(self, recipe_factory):
        entry = check_recipe(recipe_factory(1))

        assert entry.valid
        assert entry.would_import
        assert entry.label == "Chocolate Chip Cookies"
        assert entry.errors == []

    def test_invalid_recipe(self, recipe_factory):
        entry = check_recipe(recipe_factory(2, title=""))

        assert not entry.valid
        assert not entry.would_import
        assert any(e.startswith("title:") for e in entry.errors)

    def test_user_warnings(self, user_factory):
        entry = check_user(user_factory(1))

        assert entry.valid
        assert entry.warnings == ["No profile image", "Name is derived from the email address"]

    def test_invalid_user(self, user_factory):
        entry = check_user(user_factory(1, email="not-an-email", id="123"))

        assert not entry.valid
        assert entry.errors == ["email: Invalid email format", "id: User id is not a valid UUID"]

    def test_user_missing_fields(self):
        entry = check_user({"legacyId": 5})

        assert not entry.valid
        assert entry.legacy_id == 5
        assert entry.errors

    def test_already_imported(self, recipe_factory):
        entry = mark_already_imported(check_recipe(recipe_factory(1)))

        assert entry.valid
        assert not entry.would_import
        assert ALREADY_IMPORTED in entry.warnings

    def test_report_summary(self, recipe_factory, user_factory):
        report = build_dry_run_report({
            "users": [check_user(user_factory(1))],
            "recipes": [check_recipe(recipe_factory(1)), check_recipe(recipe_factory(2, title=""))],
        })

        counts = report["summary"]["recipes"]
        assert (counts["total"], counts["valid"], counts["invalid"], counts["wouldImport"]) == (2, 1, 1, 1)
        assert report["summary"]["users"]["withWarnings"] == 1
        assert report["recipes"][1]["wouldImport"] is False

    @pytest.mark.asyncio
    async def test_importer_collects_entries(self, recipe_factory, user_factory):
        importer = make_importer(FakeTargetAPI(), dry_run=True)

        await importer.import_users([user_factory(1)])
        await importer.import_recipes([recipe_factory(1)])

        assert [e.legacy_id for e in importer.dry_run_entries["users"]] == [1]
        assert [e.legacy_id for e in importer.dry_run_entries["recipes"]] == [1]


class TestImportReport:
    """Test the JSON and Markdown import reports"""

    def make_report(self, failures=()):
        results = {
            "users": [ImportResult(success=True, legacy_id=1, new_id="u-1")],
            "recipes": [ImportResult(success=True, legacy_id=10, new_id="r-10", retry_count=1)]
            + [
                ImportResult(success=False, legacy_id=legacy_id, error="title taken",
                             error_type=ImportErrorType.VALIDATION)
                for legacy_id in failures
            ],
        }
        stats = ImportStats(total_records=2 + len(failures), success_count=2, failure_count=len(failures),
                            duration=2000, average_batch_duration=400,
                            errors_by_type={"validation": len(failures)} if failures else {})
        config = ImporterConfig(api_base_url=API, auth_token="secret-token").safe_dict()
        skipped = [{"type": "recipes", "legacyId": 7}]
        return build_import_report("validated/x", config, stats, results, skipped, {"recipes": {"imported": 1}})

    def test_entity_summaries(self):
        report = self.make_report(failures=[11, 12])

        assert report["recipes"]["total"] == 3
        assert report["recipes"]["failed"] == 2
        assert report["recipes"]["skipped"] == 1
        assert report["recipes"]["withRetries"] == 1
        assert report["recipes"]["successRate"] == 33.3
        assert report["recipes"]["errorsByType"] == {"validation": 2}
        assert report["users"]["successRate"] == 100.0
        assert report["performance"]["recordsPerSecond"] == 2.0
        assert len(report["failures"]) == 2
        assert "secret-token" not in json.dumps(report)

    def test_markdown_lists_failures(self):
        markdown = render_import_report(self.make_report(failures=[11]))

        assert markdown.startswith("# Import Report")
        assert "| Recipes | 2 | 1 | 1 | 1 | 50.0% |" in markdown
        assert "## Errors by Type" in markdown
        assert "## Failed Recipes" in markdown
        assert "- Legacy ID: 11" in markdown
        assert "## Failed Users" not in markdown

    def test_markdown_without_failures(self):
        markdown = render_import_report(self.make_report())

        assert "No records failed." in markdown
        assert "## Errors by Type" not in markdown
