"""
Batch importer for the target HTTP API.

Records are sent in fixed-size batches as ``{"records": [...]}``. The API
answers with one result per record. Request-level failures are retried;
a batch whose request finally fails marks every record in it as failed and,
unless ``stop_on_error`` is set, the importer moves on to the next batch.

In dry run nothing is sent: each record is checked locally and kept as a
DryRunEntry for the dry-run report.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from core.exceptions import (
    ImportRequestError,
    MigrationError,
    MigrationPhase,
    NetworkError,
    ParseError,
    categorize,
)
from core.retry import RetryOptions, with_retry
from migration.loaders.dry_run import check_recipe, check_user, mark_already_imported
from migration.loaders.idempotency import IdempotencyChecker
from migration.loaders.progress import ProgressTracker
from schemas.recipe import (
    BatchImportResult,
    DryRunEntry,
    ImportErrorType,
    ImportResult,
    ImportStats,
)

logger = logging.getLogger(__name__)

USERS_ENDPOINT = "/api/migration/users/batch"
RECIPES_ENDPOINT = "/api/migration/recipes/batch"


@dataclass
class ImporterConfig:
    api_base_url: str = ""
    auth_token: Optional[str] = None
    batch_size: int = 50
    dry_run: bool = False
    stop_on_error: bool = False
    delay_between_batches: float = 0.1  # seconds
    max_retries: int = 3
    retry_backoff: float = 1.0  # seconds
    timeout: float = 30.0

    def safe_dict(self) -> Dict[str, Any]:
        """Config for reports; the token is never written out."""
        return {
            "apiBaseUrl": self.api_base_url,
            "batchSize": self.batch_size,
            "dryRun": self.dry_run,
            "stopOnError": self.stop_on_error,
            "delayBetweenBatches": self.delay_between_batches,
            "maxRetries": self.max_retries,
            "retryBackoff": self.retry_backoff,
        }


@dataclass
class _EntityKind:
    name: str
    endpoint: str
    check: Callable[[Dict[str, Any]], DryRunEntry]
    is_imported: Callable[[int], bool]
    mark_imported: Callable[[Dict[str, Any], str], None]


def classify_import_error(error: BaseException) -> ImportErrorType:
    """Map a request failure to the errorType reported per record."""
    if isinstance(error, MigrationError):
        status = error.metadata.get("statusCode")
        if isinstance(status, int):
            if status >= 500:
                return ImportErrorType.SERVER
            if 400 <= status < 500:
                return ImportErrorType.VALIDATION
        if isinstance(error, NetworkError):
            return ImportErrorType.NETWORK
        original = error.original_exception
        if isinstance(original, httpx.TransportError):
            return ImportErrorType.NETWORK
        return ImportErrorType.UNKNOWN
    if isinstance(error, httpx.TransportError):
        return ImportErrorType.NETWORK
    return ImportErrorType.UNKNOWN


def chunk(records: Sequence[Any], size: int) -> List[List[Any]]:
    return [list(records[i:i + size]) for i in range(0, len(records), size)]


class BatchImporter:
    """
    Push transformed users and recipes to the target API.

    Args:
        config: importer settings
        client: an ``httpx.AsyncClient``; tests inject one built on
            ``httpx.MockTransport``. When omitted a client is created on
            first use and closed by ``close()``.
        idempotency: optional checker used to skip and record imports
        progress: optional tracker updated after every batch
    """

    def __init__(
        self,
        config: ImporterConfig,
        client: Optional[httpx.AsyncClient] = None,
        idempotency: Optional[IdempotencyChecker] = None,
        progress: Optional[ProgressTracker] = None
    ):
        self.config = config
        self.idempotency = idempotency
        self.progress = progress
        self._client = client
        self._owns_client = client is None
        self.stats = ImportStats()
        self.batch_durations: List[float] = []
        self.skipped: List[Dict[str, Any]] = []
        self.dry_run_entries: Dict[str, List[DryRunEntry]] = {"users": [], "recipes": []}

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BatchImporter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _post_batch(self, endpoint: str, records: List[Dict[str, Any]], batch_number: int) -> List[Dict[str, Any]]:
        """POST one batch once; raises a MigrationError on any failure."""
        client = self._get_client()
        headers = {}
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"
        metadata = {"batchNumber": batch_number, "endpoint": endpoint}

        try:
            response = await client.post(
                f"{self.config.api_base_url}{endpoint}",
                json={"records": records},
                headers=headers
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"network error calling {endpoint}: {e}",
                phase=MigrationPhase.IMPORT,
                metadata=metadata,
                original_exception=e
            )

        if response.status_code >= 400:
            status = response.status_code
            raise ImportRequestError(
                f"API request failed: {status} {response.reason_phrase}",
                phase=MigrationPhase.IMPORT,
                retryable=status >= 500,
                metadata={**metadata, "statusCode": status, "body": response.text[:500]}
            )

        try:
            payload = response.json()
            results = payload["results"]
            if not isinstance(results, list):
                raise TypeError("results is not a list")
        except (ValueError, KeyError, TypeError) as e:
            raise ParseError(
                f"Unexpected import response from {endpoint}",
                phase=MigrationPhase.IMPORT,
                metadata=metadata,
                original_exception=e
            )
        return results

    async def _send_with_retry(self, endpoint: str, records: List[Dict[str, Any]], batch_number: int):
        attempts = {"count": 0}

        def on_retry(error, attempt_number):
            attempts["count"] = attempt_number
            logger.warning(
                f"Batch {batch_number} attempt {attempt_number} failed, retrying: {error}"
            )

        options = RetryOptions(
            max_retries=self.config.max_retries,
            initial_delay=self.config.retry_backoff,
            on_retry=on_retry,
            should_retry=lambda e: categorize(e, MigrationPhase.IMPORT).retryable
        )
        results = await with_retry(lambda: self._post_batch(endpoint, records, batch_number), options)
        return results, attempts["count"]

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _already_imported(self, kind: str, legacy_id: Any) -> bool:
        if self.idempotency is None:
            return False
        if kind == "users":
            return self.idempotency.is_user_imported(legacy_id)
        return self.idempotency.is_recipe_imported(legacy_id)

    def _dry_run_batch(self, kind: _EntityKind, records: List[Dict[str, Any]]) -> List[ImportResult]:
        """Check each record locally and note what a live run would do with it."""
        results = []
        for record in records:
            entry = kind.check(record)
            if self._already_imported(kind.name, entry.legacy_id):
                mark_already_imported(entry)
            self.dry_run_entries[kind.name].append(entry)

            if not entry.valid:
                results.append(
                    ImportResult(
                        success=False,
                        legacy_id=entry.legacy_id,
                        error=f"Payload validation failed: {len(entry.errors)} error(s)",
                        error_type=ImportErrorType.VALIDATION
                    )
                )
                continue
            results.append(ImportResult(success=True, legacy_id=entry.legacy_id, new_id=record.get("id")))
        return results

    async def _import_batch(
        self,
        kind: _EntityKind,
        records: List[Dict[str, Any]],
        batch_number: int
    ) -> List[ImportResult]:
        if self.config.dry_run:
            return self._dry_run_batch(kind, records)

        try:
            raw_results, retries = await self._send_with_retry(kind.endpoint, records, batch_number)
        except Exception as e:
            error = categorize(e, MigrationPhase.IMPORT, {"batchNumber": batch_number})
            error_type = classify_import_error(error)
            logger.error(f"{kind.name} batch {batch_number} failed: {error}")
            return [
                ImportResult(
                    success=False,
                    legacy_id=record.get("legacyId", -1),
                    error=error.message,
                    error_type=error_type,
                    retry_count=self.config.max_retries if error.retryable else 0
                )
                for record in records
            ]

        by_legacy_id = {r.get("legacyId"): r for r in raw_results if isinstance(r, dict)}
        results = []
        for record in records:
            legacy_id = record.get("legacyId", -1)
            outcome = by_legacy_id.get(legacy_id)
            if outcome is None:
                results.append(
                    ImportResult(
                        success=False,
                        legacy_id=legacy_id,
                        error="No result returned for record",
                        error_type=ImportErrorType.UNKNOWN,
                        retry_count=retries
                    )
                )
            elif outcome.get("success"):
                new_id = outcome.get("id") or record.get("id")
                kind.mark_imported(record, new_id)
                results.append(
                    ImportResult(success=True, legacy_id=legacy_id, new_id=new_id, retry_count=retries)
                )
            else:
                results.append(
                    ImportResult(
                        success=False,
                        legacy_id=legacy_id,
                        error=outcome.get("error") or "Rejected by target API",
                        error_type=ImportErrorType.VALIDATION,
                        retry_count=retries
                    )
                )
        return results

    async def _import_all(
        self,
        kind: _EntityKind,
        records: Sequence[Dict[str, Any]],
        on_batch_complete: Optional[Callable[[BatchImportResult], Any]] = None,
        start_batch: int = 0
    ) -> List[ImportResult]:
        pending = []
        for record in records:
            if kind.is_imported(record.get("legacyId")):
                self.stats.skipped_count += 1
                self.skipped.append({"type": kind.name, "legacyId": record.get("legacyId")})
            else:
                pending.append(record)
        if self.progress is not None:
            self.progress.record_skipped(len(records) - len(pending))

        batches = chunk(pending, self.config.batch_size)
        total = len(batches)
        logger.info(
            f"Importing {len(pending)} {kind.name} in {total} batches of {self.config.batch_size}"
            f"{' (dry run)' if self.config.dry_run else ''}"
        )

        all_results: List[ImportResult] = []
        for index in range(start_batch, total):
            batch_number = index + 1
            started = time.monotonic()
            results = await self._import_batch(kind, batches[index], batch_number)
            duration = (time.monotonic() - started) * 1000

            batch_result = BatchImportResult(
                batch_number=batch_number,
                total_batches=total,
                results=results,
                success_count=sum(1 for r in results if r.success),
                failure_count=sum(1 for r in results if not r.success),
                duration=duration
            )
            self._record(batch_result)
            all_results.extend(results)
            logger.info(
                f"{kind.name} batch {batch_number}/{total}: {batch_result.success_count} succeeded, "
                f"{batch_result.failure_count} failed ({duration:.0f}ms)"
            )
            if self.progress is not None:
                self.progress.record_batch(batch_result)
                logger.info(f"Progress: {self.progress.summary_line()}")

            if on_batch_complete is not None:
                outcome = on_batch_complete(batch_result)
                if asyncio.iscoroutine(outcome):
                    await outcome

            if self.config.stop_on_error and batch_result.failure_count:
                logger.warning(f"Stopping {kind.name} import after batch {batch_number} (stop on error)")
                break

            if index < total - 1 and self.config.delay_between_batches > 0:
                await asyncio.sleep(self.config.delay_between_batches)

        return all_results

    def _record(self, batch: BatchImportResult) -> None:
        self.stats.total_records += len(batch.results)
        self.stats.success_count += batch.success_count
        self.stats.failure_count += batch.failure_count
        self.stats.duration += batch.duration
        self.batch_durations.append(batch.duration)
        self.stats.average_batch_duration = sum(self.batch_durations) / len(self.batch_durations)
        for result in batch.results:
            if not result.success:
                key = result.error_type or ImportErrorType.UNKNOWN.value
                self.stats.errors_by_type[key] = self.stats.errors_by_type.get(key, 0) + 1

    @property
    def has_failures(self) -> bool:
        return self.stats.failure_count > 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _skip_check(self, kind: str) -> Callable[[int], bool]:
        if self.idempotency is None or self.config.dry_run:
            return lambda legacy_id: False
        if kind == "users":
            return self.idempotency.is_user_imported
        return self.idempotency.is_recipe_imported

    def _marker(self, kind: str) -> Callable[[Dict[str, Any], str], None]:
        if self.idempotency is None:
            return lambda record, new_id: None
        if kind == "users":
            return lambda record, new_id: self.idempotency.mark_user_imported(
                record.get("legacyId"), new_id, record.get("email", "")
            )
        return lambda record, new_id: self.idempotency.mark_recipe_imported(
            record.get("legacyId"), new_id, record.get("title", "")
        )

    async def import_users(
        self,
        users: Sequence[Dict[str, Any]],
        on_batch_complete: Optional[Callable[[BatchImportResult], Any]] = None,
        start_batch: int = 0
    ) -> List[ImportResult]:
        kind = _EntityKind("users", USERS_ENDPOINT, check_user, self._skip_check("users"), self._marker("users"))
        return await self._import_all(kind, users, on_batch_complete, start_batch)

    async def import_recipes(
        self,
        recipes: Sequence[Dict[str, Any]],
        on_batch_complete: Optional[Callable[[BatchImportResult], Any]] = None,
        start_batch: int = 0
    ) -> List[ImportResult]:
        kind = _EntityKind(
            "recipes", RECIPES_ENDPOINT, check_recipe, self._skip_check("recipes"), self._marker("recipes")
        )
        return await self._import_all(kind, recipes, on_batch_complete, start_batch)
