"""Tests for the startup migrator against a mocked engine."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from maitre.storage.migrator import checksum, discover_migrations, migration_version, run_migrations


def _write(directory, name, sql):
    path = directory / name
    path.write_text(sql, encoding="utf-8")
    return path


def _engine(applied: dict[str, str]):
    conn = MagicMock()
    executed: list[str] = []

    async def execute(statement, params=None):
        sql = str(statement)
        executed.append(sql)
        if sql.startswith("SELECT version, checksum"):
            return list(applied.items())
        return MagicMock()

    conn.execute = AsyncMock(side_effect=execute)

    @asynccontextmanager
    async def begin():
        yield conn

    engine = MagicMock()
    engine.begin = begin
    return engine, executed


def test_discover_orders_by_prefix(tmp_path):
    _write(tmp_path, "002_indexes.sql", "SELECT 2;")
    _write(tmp_path, "001_checkpoints.sql", "SELECT 1;")
    (tmp_path / "notes.txt").write_text("ignored")
    names = [p.name for p in discover_migrations(tmp_path)]
    assert names == ["001_checkpoints.sql", "002_indexes.sql"]


def test_discover_missing_directory(tmp_path):
    assert discover_migrations(tmp_path / "absent") == []


def test_version_is_numeric_prefix(tmp_path):
    assert migration_version(tmp_path / "001_checkpoints.sql") == "001"


@pytest.mark.asyncio
async def test_applies_only_pending(tmp_path):
    first = "CREATE TABLE a ();"
    _write(tmp_path, "001_a.sql", first)
    _write(tmp_path, "002_b.sql", "CREATE TABLE b ();")
    engine, executed = _engine({"001": checksum(first)})

    applied = await run_migrations(engine, tmp_path)

    assert applied == ["002_b"]
    assert "CREATE TABLE b ();" in executed
    assert first not in executed


@pytest.mark.asyncio
async def test_changed_migration_is_reported_not_rerun(tmp_path, caplog):
    _write(tmp_path, "001_a.sql", "CREATE TABLE a (id int);")
    engine, executed = _engine({"001": checksum("CREATE TABLE a ();")})

    with caplog.at_level("WARNING", logger="maitre.storage.migrator"):
        applied = await run_migrations(engine, tmp_path)

    assert applied == []
    assert "CREATE TABLE a (id int);" not in executed
    assert "changed after it was applied" in caplog.text


@pytest.mark.asyncio
async def test_no_files_touches_nothing(tmp_path):
    engine = MagicMock()
    assert await run_migrations(engine, tmp_path) == []
    engine.begin.assert_not_called()


@pytest.mark.asyncio
async def test_missing_directory_warns(tmp_path, caplog):
    engine = MagicMock()
    with caplog.at_level("WARNING", logger="maitre.storage.migrator"):
        assert await run_migrations(engine, tmp_path / "absent") == []
    assert "not found" in caplog.text
    engine.begin.assert_not_called()
