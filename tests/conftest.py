"""
Shared pytest fixtures for omnistore tests.

This module provides:
- Settings tuned for fast tests (short timeouts, no retry delay)
- A SQLite ``users`` database in a temporary directory
- Credential factories for the built-in engines

Usage:
    Fixtures are auto-discovered by pytest:

    def test_browse(sqlite_credential, engine):
        engine.browse_rows(sqlite_credential, "users")
"""

import sqlite3
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Ensure omnistore is importable without an install
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from omnistore.core.adapters.registry import Engine, create_default_engine
from omnistore.core.logging import clear_context
from omnistore.core.models import Credential
from omnistore.core.settings import OmnistoreSettings


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark everything that is not already an integration test as a unit test."""
    for item in items:
        if "integration" not in item.keywords:
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def _isolate_log_context() -> Iterator[None]:
    yield
    clear_context()


@pytest.fixture
def settings() -> OmnistoreSettings:
    return OmnistoreSettings(
        connect_timeout=2.0,
        query_timeout=5.0,
        read_retry_attempts=1,
        read_retry_delay=0.0,
        log_level="WARNING",
    )


@pytest.fixture
def engine(settings: OmnistoreSettings) -> Iterator[Engine]:
    with create_default_engine(settings) as eng:
        yield eng


# =============================================================================
# SQLite fixtures
# =============================================================================


@pytest.fixture
def users_db(tmp_path: Path) -> Path:
    """``users(id int, name text)`` holding a single row ``(1, 'x')``."""
    path = tmp_path / "users.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE users (id INT, name TEXT)")
    conn.execute("INSERT INTO users VALUES (1, 'x')")
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def shop_db(tmp_path: Path) -> Path:
    """Keyed tables with a foreign key and a dozen products."""
    path = tmp_path / "shop.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE categories (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL UNIQUE
        );
        CREATE TABLE products (
            id INTEGER PRIMARY KEY,
            sku TEXT NOT NULL UNIQUE,
            name TEXT,
            price REAL,
            category_id INTEGER REFERENCES categories(id)
        );
        CREATE TABLE tags (label TEXT, colour TEXT);
        CREATE VIEW cheap_products AS SELECT * FROM products WHERE price < 5;
        """
    )
    conn.executemany("INSERT INTO categories VALUES (?, ?)", [(1, "fruit"), (2, "tools")])
    conn.executemany(
        "INSERT INTO products VALUES (?, ?, ?, ?, ?)",
        [
            (i, f"SKU-{i:03d}", f"product {i}", float(i), 1 if i <= 6 else 2)
            for i in range(12, 0, -1)
        ],
    )
    conn.executemany("INSERT INTO tags VALUES (?, ?)", [("a", "red"), ("a", "red"), ("b", "blue")])
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def sqlite_credential(users_db: Path) -> Credential:
    return Credential("sqlite", database=str(users_db))


@pytest.fixture
def shop_credential(shop_db: Path) -> Credential:
    return Credential("sqlite", database=str(shop_db))
