# ============================================================================
# File: tests/integration/test_migration_pipeline.py
# ============================================================================

import json
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from core.database import LegacyDatabaseClient
from core.exceptions import MigrationPhase
from migration.runner import SUMMARY_FILE, MigrationRunner


def read(path):
    return json.loads(path.read_text(encoding="utf-8"))


def latest(output_dir, stage):
    return max((output_dir / stage).iterdir(), key=lambda p: p.name)


@pytest.mark.asyncio
async def test_streaming_large_table(make_engine):
    """
    Streaming Test:
    1. 250,000 legacy rows read with a fetch size of 1000
    2. Rows arrive one at a time in ascending id order
    3. No cursor, transaction or connection is left open
    """

    rows = [{"id": i, "name": f"recipe {i}"} for i in range(1, 250_001)]
    engine = make_engine({"recipes": rows})
    client = LegacyDatabaseClient(engine)

    state = {"last_id": 0, "count": 0}

    async def on_row(row):
        assert row["id"] == state["last_id"] + 1
        state["last_id"] = row["id"]
        state["count"] += 1

    count = await client.stream_query("SELECT id, name FROM recipes ORDER BY id", on_row, batch_size=1000)

    assert count == 250_000
    assert state["count"] == 250_000
    assert state["last_id"] == 250_000
    assert set(engine.fetch_sizes) == {1000}
    assert len(engine.fetch_sizes) in (250, 251)
    assert engine.open_cursors == set()
    assert engine.open_transactions == 0
    assert engine.open_connections == 0


@pytest.mark.asyncio
async def test_full_pipeline(make_settings, make_engine, raw_tables):
    """
    End-to-End Test:
    1. Extract legacy tables through a (fake) tunnel
    2. Transform, validate and import into a mock target API
    3. Only records that pass or warn are imported
    4. A migration summary covers every phase
    5. Verification finds every importable record imported
    """

    settings = make_settings(
        SSH_HOST="bastion.example.com",
        SSH_USERNAME="deploy",
        SSH_PRIVATE_KEY_PATH="/keys/id_ed25519",
        LEGACY_DB_HOST="legacy-db.internal",
        LEGACY_DB_NAME="recipes",
        LEGACY_DB_USER="reader",
        LEGACY_DB_PASSWORD="secret",
        TARGET_API_URL="https://target.example.com",
        MIGRATION_DELAY_BETWEEN_BATCHES=0
    )
    engine = make_engine(raw_tables)
    tunnel = Mock(local_port=5433, close=AsyncMock())
    sent = {"users": [], "recipes": []}

    def target_api(request):
        records = json.loads(request.content)["records"]
        entity = "users" if request.url.path.endswith("users/batch") else "recipes"
        sent[entity].extend(r["legacyId"] for r in records)
        return httpx.Response(
            200,
            json={"results": [{"legacyId": r["legacyId"], "success": True, "id": r["id"]} for r in records]}
        )

    async def database_factory(config):
        return LegacyDatabaseClient(engine)

    runner = MigrationRunner(
        settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(target_api)),
        tunnel_factory=AsyncMock(return_value=tunnel),
        database_factory=database_factory
    )

    # -------------------------------------------------------
    # STEP 1: Run every phase
    # -------------------------------------------------------
    summary = await runner.run(MigrationPhase.ordered())

    assert summary["overallSuccess"] is True
    assert [p["phase"] for p in summary["phases"]] == ["extract", "transform", "validate", "import"]
    assert read(settings.output_dir / SUMMARY_FILE)["overallSuccess"] is True

    # -------------------------------------------------------
    # STEP 2: Artifacts of each stage
    # -------------------------------------------------------
    raw_dir = latest(settings.output_dir, "raw")
    assert read(raw_dir / "export-metadata.json")["recordCounts"]["recipes"] == 2

    validated_dir = latest(settings.output_dir, "validated")
    failed = read(validated_dir / "recipes-fail.json")
    assert [r["legacyId"] for r in failed] == [11]

    # -------------------------------------------------------
    # STEP 3: Only importable records reached the API
    # -------------------------------------------------------
    assert sent["users"] == [1, 2]
    assert sent["recipes"] == [10]
    tunnel.close.assert_awaited_once()
    assert engine.open_transactions == 0

    # -------------------------------------------------------
    # STEP 4: No recovery state left behind
    # -------------------------------------------------------
    assert runner.recovery.list_states() == []

    # -------------------------------------------------------
    # STEP 5: Verification runs on request against the import
    # -------------------------------------------------------
    summary = await runner.run([MigrationPhase.VERIFY])

    assert [p["phase"] for p in summary["phases"]] == ["verify"]
    assert summary["overallSuccess"] is True
    report = read(latest(settings.output_dir, "verified") / "verification-report.json")
    assert [c["importedCount"] for c in report["recordCounts"]] == [2, 1]
    assert report["recordCounts"][1]["legacyCount"] == 2
    assert report["ownershipIssues"] == []
