"""
Pytest configuration and fixtures
"""

import re
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from core.config import load_settings
from core.recovery import RecoveryStore

AUTHOR_ID = "5f0c7a3e-1b2d-4c8e-9f10-112233445566"


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def make_settings(tmp_path):
    """Build MigrationSettings isolated from the real environment and .env file"""

    def factory(**overrides):
        values = {"MIGRATION_OUTPUT_DIR": str(tmp_path / "migration-data")}
        values.update(overrides)
        return load_settings(env_file=None, **values)

    return factory


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def recovery_store(settings):
    return RecoveryStore(settings.output_dir)


@pytest.fixture
def no_sleep():
    """Make retry backoff and inter-batch delays instantaneous"""
    with patch("core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


# ============================================================================
# Fake SQLAlchemy engine
# ============================================================================

class FakeResult:
    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, scalar: Any = None):
        self._rows = rows or []
        self._scalar = scalar

    def mappings(self):
        return self

    def all(self):
        return list(self._rows)

    def scalar(self):
        return self._scalar


class FakeConnection:
    """
    Mimics an AsyncConnection for DECLARE/FETCH/CLOSE cursor streaming.

    The engine's ``tables`` maps a table name to its rows; the first table
    named in a DECLARE statement is the one the cursor reads.
    """

    _DECLARE = re.compile(r"DECLARE (\w+) NO SCROLL CURSOR FOR .*?\bFROM (\w+)", re.DOTALL)
    _FETCH = re.compile(r"FETCH (\d+) FROM (\w+)")
    _SELECT_FROM = re.compile(r"\bFROM (\w+)")

    def __init__(self, engine: "FakeEngine"):
        self.engine = engine
        self.cursors: Dict[str, List[Dict[str, Any]]] = {}
        self.offsets: Dict[str, int] = {}
        self.in_transaction = False

    async def execute(self, statement, params=None):
        sql = str(statement)
        self.engine.statements.append(sql)

        if self.engine.fail_on and self.engine.fail_on in sql:
            raise OperationalError(sql, params, Exception("connection reset by peer"))

        declare = self._DECLARE.search(sql)
        if declare:
            cursor, table = declare.groups()
            self.cursors[cursor] = self.engine.tables.get(table, [])
            self.offsets[cursor] = 0
            self.engine.open_cursors.add(cursor)
            return FakeResult()

        fetch = self._FETCH.search(sql)
        if fetch:
            size, cursor = int(fetch.group(1)), fetch.group(2)
            self.engine.fetch_sizes.append(size)
            start = self.offsets[cursor]
            rows = self.cursors[cursor][start:start + size]
            self.offsets[cursor] = start + len(rows)
            return FakeResult(rows)

        if sql.startswith("CLOSE "):
            self.engine.open_cursors.discard(sql.split()[1])
            return FakeResult()

        if sql == "SELECT 1":
            return FakeResult(scalar=1 if self.engine.reachable else None)
        if "version()" in sql:
            return FakeResult([{"version": "PostgreSQL 14.9"}])
        if "COUNT(*)" in sql:
            table = self._SELECT_FROM.search(sql).group(1)
            return FakeResult([{"count": len(self.engine.tables.get(table, []))}])
        return FakeResult()

    async def commit(self):
        self.engine.commits += 1

    @asynccontextmanager
    async def begin(self):
        self.in_transaction = True
        self.engine.open_transactions += 1
        try:
            yield self
        finally:
            self.in_transaction = False
            self.engine.open_transactions -= 1


class FakeEngine:
    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None, reachable: bool = True):
        self.tables = tables or {}
        self.reachable = reachable
        self.fail_on: Optional[str] = None
        self.statements: List[str] = []
        self.fetch_sizes: List[int] = []
        self.open_cursors = set()
        self.open_transactions = 0
        self.open_connections = 0
        self.commits = 0
        self.disposed = False

    @asynccontextmanager
    async def connect(self):
        self.open_connections += 1
        try:
            yield FakeConnection(self)
        finally:
            self.open_connections -= 1

    async def dispose(self):
        self.disposed = True


@pytest.fixture
def make_engine():
    return FakeEngine


# ============================================================================
# Records
# ============================================================================

def make_recipe(legacy_id: int = 1, title: str = "Chocolate Chip Cookies", **overrides) -> Dict[str, Any]:
    """A transformed recipe artifact that passes validation without warnings"""
    recipe = {
        "id": f"00000000-0000-4000-8000-{legacy_id:012d}",
        "title": title,
        "description": "Chewy cookies with plenty of chocolate.",
        "ingredients": [
            {"id": f"ing-{legacy_id}-0", "name": "flour", "amount": 2, "unit": "cup", "position": 0,
             "parseSuccess": True, "originalText": "2 cups flour"},
            {"id": f"ing-{legacy_id}-1", "name": "sugar", "amount": 1, "unit": "cup", "position": 1,
             "parseSuccess": True, "originalText": "1 cup sugar"},
            {"id": f"ing-{legacy_id}-2", "name": "butter", "amount": 0.5, "unit": "cup", "position": 2,
             "parseSuccess": True, "originalText": "1/2 cup butter"},
        ],
        "instructions": [
            {"id": f"ins-{legacy_id}-0", "step": 1, "content": "Cream the butter and sugar together.",
             "position": 0},
            {"id": f"ins-{legacy_id}-1", "step": 2, "content": "Fold in the flour and bake for 12 minutes.",
             "position": 1},
        ],
        "prepTime": 15,
        "cookTime": 12,
        "servings": 24,
        "tags": ["dessert"],
        "imageUrl": "https://cdn.example.com/cookies.jpg",
        "sourceUrl": "https://example.com/cookies",
        "authorId": AUTHOR_ID,
        "legacyId": legacy_id,
    }
    recipe.update(overrides)
    return recipe


def make_user(legacy_id: int = 1, **overrides) -> Dict[str, Any]:
    user = {
        "id": f"10000000-0000-4000-8000-{legacy_id:012d}",
        "name": f"user{legacy_id}",
        "email": f"user{legacy_id}@example.com",
        "role": "user",
        "legacyId": legacy_id,
    }
    user.update(overrides)
    return user


@pytest.fixture
def raw_tables():
    """Legacy table exports as written by the extract phase"""
    return {
        "users": [
            {"id": 1, "email": "ada@example.com", "username": "ada", "super_user": "t"},
            {"id": 2, "email": "bob@example.com", "username": "", "super_user": False},
            {"id": 3, "email": None, "username": "ghost", "super_user": False},
        ],
        "recipes": [
            {"id": 10, "name": "Pancakes", "user_id": 1, "description": "Fluffy.", "servings": 4,
             "prep_time": 10, "prep_time_descriptor": "minutes", "cook_time": 0.5,
             "cook_time_descriptor": "hours", "original_url": "https://example.com/pancakes"},
            {"id": 11, "name": "Orphan Soup", "user_id": 99, "servings": 2},
        ],
        "ingredients": [
            {"id": 101, "recipe_id": 10, "order_number": 2, "ingredient": "2 eggs"},
            {"id": 100, "recipe_id": 10, "order_number": 1, "ingredient": "1½ cups flour"},
            {"id": 102, "recipe_id": 10, "order_number": 3, "ingredient": "1 1/4 cups milk, warmed"},
            {"id": 110, "recipe_id": 11, "order_number": 1, "ingredient": "1 onion"},
        ],
        "instructions": [
            {"id": 201, "recipe_id": 10, "step_number": 2, "step": "<p>Cook on a hot griddle until golden.</p>"},
            {"id": 200, "recipe_id": 10, "step_number": 1, "step": "Whisk everything <b>together</b> well."},
            {"id": 202, "recipe_id": 10, "step_number": 3, "step": "<p>&nbsp;</p>"},
            {"id": 210, "recipe_id": 11, "step_number": 1, "step": "Simmer the onion for an hour."},
        ],
        "tags": [{"id": 1, "name": "breakfast"}],
        "recipe_tags": [{"id": 1, "recipe_id": 10, "tag_id": 1}],
        "active_storage_attachments": [
            {"id": 1, "name": "image", "record_type": "Recipe", "record_id": 10, "blob_id": 5},
        ],
        "active_storage_blobs": [
            {"id": 5, "key": "abc123", "filename": "pancakes.jpg", "content_type": "image/jpeg", "byte_size": 1024},
        ],
    }


@pytest.fixture
def recipe_factory():
    return make_recipe


@pytest.fixture
def user_factory():
    return make_user
