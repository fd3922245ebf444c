import os
import typing as t
import uuid
from pathlib import Path

import asyncpg
import psycopg
import pytest
from psycopg import sql
from psycopg.conninfo import make_conninfo
from psycopg_pool import ConnectionPool

from pgcast import runtime
from pgcast.diagnostics import Diagnostics
from pgcast.generator.model import CodeGeneratorResult, CodegenSettings
from pgcast.model import SourceFile
from pgcast.pipeline import Pipeline
from pgcast.sql.catalog import PsycopgCatalogClient
from pgcast.string_case import snake2camel
from tests.fake import load_module

_URL: t.Final[t.Optional[str]] = os.environ.get("PGCAST_TEST_DATABASE_URL")
_EXAMPLE: t.Final[Path] = Path(__file__).parent.parent.parent / "examples" / "users"

pytestmark = [
    pytest.mark.live,
    pytest.mark.skipif(_URL is None, reason="PGCAST_TEST_DATABASE_URL is not set"),
]


def test_live_generate(result: CodeGeneratorResult, monkeypatch: pytest.MonkeyPatch) -> None:
    assert [file.path.name for file in result.files] == ["__init__.py", "orders.py", "users.py"]

    users = load_module(result.files[2].content, "live_users", monkeypatch)
    assert t.get_type_hints(users.GetUserRow) == {"id": int, "name": str, "email": t.Optional[str]}
    assert hasattr(users, "ListCustomersRow")


def test_live_sync_querier(result: CodeGeneratorResult, conninfo: str, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_module(result.files[2].content, "live_sync_users", monkeypatch)

    with psycopg.connect(conninfo, autocommit=True) as conn:
        querier = module.SyncQuerier(conn)

        user_id = querier.create_user(module.CreateUserParams(name="alice", email="alice@example.com", mood=None))

        assert querier.get_user(module.GetUserParams(id=user_id)) == module.GetUserRow(
            id=user_id,
            name="alice",
            email="alice@example.com",
        )
        assert [row.name for row in querier.search_users(module.SearchUsersParams(pattern="lic"))] == ["alice"]
        assert querier.get_address(module.GetUserParams(id=user_id)) is None

        with pytest.raises(runtime.NotFoundError):
            querier.get_user(module.GetUserParams(id=-1))


async def test_live_async_querier(
    result: CodeGeneratorResult,
    schema: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert _URL is not None
    module = load_module(result.files[2].content, "live_async_users", monkeypatch)
    mood = getattr(module, f"{snake2camel(schema)}Mood")
    address_type = getattr(module, f"{snake2camel(schema)}Address")

    conn = await asyncpg.connect(_URL, server_settings={"search_path": schema})
    try:
        querier = module.AsyncQuerier(conn)

        user_id = await querier.create_user(module.CreateUserParams(name="bob", email=None, mood=mood.HAPPY))
        address = address_type(street="Main st", zip=12345, mood=mood.SAD)

        assert await querier.set_address(module.SetAddressParams(address=address, id=user_id)) == 1
        assert await querier.get_address(module.GetUserParams(id=user_id)) == address
        assert mood.HAPPY in [row async for row in querier.list_moods()]

        with pytest.raises(runtime.NotFoundError):
            await querier.get_user(module.GetUserParams(id=-1))

    finally:
        await conn.close()


@pytest.fixture(scope="module")
def schema() -> t.Iterator[str]:
    assert _URL is not None
    name = f"pgcast_test_{uuid.uuid4().hex[:8]}"

    with psycopg.connect(_URL, autocommit=True) as conn:
        conn.execute(sql.SQL("create schema {}").format(sql.Identifier(name)))
        conn.execute(sql.SQL("set search_path to {}").format(sql.Identifier(name)))
        conn.execute(t.cast("t.Any", (_EXAMPLE / "schema.sql").read_text()))

    try:
        yield name

    finally:
        with psycopg.connect(_URL, autocommit=True) as conn:
            conn.execute(sql.SQL("drop schema {} cascade").format(sql.Identifier(name)))


@pytest.fixture(scope="module")
def conninfo(schema: str) -> str:
    assert _URL is not None
    return make_conninfo(_URL, options=f"-c search_path={schema}")


@pytest.fixture(scope="module")
def result(conninfo: str) -> CodeGeneratorResult:
    queries = _EXAMPLE / "queries"
    sources = [SourceFile.load(queries, path) for path in sorted(queries.rglob("*.sql"))]
    diagnostics = Diagnostics()

    with ConnectionPool(conninfo, min_size=1, max_size=2, kwargs={"autocommit": True}) as pool:
        result = Pipeline(PsycopgCatalogClient(pool)).generate(
            sources=sources,
            output=Path("generated"),
            settings=CodegenSettings(),
            diagnostics=diagnostics,
        )

    assert list(diagnostics) == []
    assert result is not None

    return result
