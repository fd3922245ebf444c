import typing as t
from pathlib import Path

import pytest
from click.testing import CliRunner, Result

from pgcast import cli as cli_module
from pgcast.cli import cli
from pgcast.diagnostics import ConnectionLostError
from pgcast.sql.catalog import StatementDescription
from tests.fake import INT4, LTREE, TEXT, USERS, FakeCatalogClient, column, describe, load_module

_USERS_SQL: t.Final[str] = """
--! get_user : one
select id, name from users where id = :id;

--! count_users : one
select count(*)::int4 as total from users;
"""

_STATEMENTS: t.Final[t.Mapping[str, StatementDescription]] = {
    "select id, name from users where id = $1": describe(
        [INT4],
        [column("id", INT4, USERS, 1), column("name", TEXT, USERS, 2)],
    ),
    "select count(*)::int4 as total from users": describe([], [column("total", INT4)]),
}


def test_generate_writes_modules(queries: Path, tmp_path: Path) -> None:
    output = tmp_path / "generated"

    result = invoke(queries, "generate", "-o", str(output))

    assert result.exit_code == 0, result.output
    assert sorted(path.relative_to(output).as_posix() for path in output.rglob("*.py")) == [
        "__init__.py",
        "shop/__init__.py",
        "shop/users.py",
    ]
    content = (output / "shop" / "users.py").read_text()
    assert content.startswith("# Code generated by pgcast. DO NOT EDIT.\n# source: users.sql\n")
    assert "class AsyncQuerier:" in content
    assert "class SyncQuerier:" in content


def test_generate_without_sync(queries: Path, tmp_path: Path) -> None:
    output = tmp_path / "generated"

    result = invoke(queries, "generate", "-o", str(output), "--no-sync")

    assert result.exit_code == 0, result.output
    content = (output / "shop" / "users.py").read_text()
    assert "class AsyncQuerier:" in content
    assert "class SyncQuerier:" not in content


def test_generate_dry_run(queries: Path, tmp_path: Path) -> None:
    output = tmp_path / "generated"

    result = invoke(queries, "generate", "-o", str(output), "--dry-run")

    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == [
        str(output / "__init__.py"),
        str(output / "shop" / "__init__.py"),
        str(output / "shop" / "users.py"),
    ]
    assert not output.exists()


def test_generate_nothing(queries: Path) -> None:
    result = invoke(queries, "generate", "--no-async", "--no-sync")

    assert result.exit_code == 2
    assert "nothing to generate" in result.output


def test_generate_reports_all_errors(queries: Path, statements: dict[str, object], tmp_path: Path) -> None:
    (queries / "shop" / "broken.sql").write_text("--! bad : all\nselect 1;\n")
    (queries / "shop" / "trees.sql").write_text("--! get_tree : one\nselect path from trees;\n")
    statements["select path from trees"] = describe([], [column("path", LTREE)])
    output = tmp_path / "generated"

    result = invoke(queries, "generate", "-o", str(output))

    assert result.exit_code == 1
    assert "syntax error: unknown cardinality `all`" in result.output
    assert f"--> {queries / 'shop' / 'broken.sql'}:1:11" in result.output
    assert "unsupported type: type public.ltree has no python mapping" in result.output
    assert "found 2 error(s)" in result.output
    assert not output.exists()


def test_generate_with_type_override(
    queries: Path,
    statements: dict[str, object],
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (queries / "shop" / "trees.sql").write_text("--! get_tree : one\nselect path from trees;\n")
    statements["select path from trees"] = describe([], [column("path", LTREE)])
    output = tmp_path / "generated"

    result = invoke(queries, "generate", "-o", str(output), options=["--type", "ltree=str"])

    assert result.exit_code == 0, result.output
    module = load_module((output / "shop" / "trees.py").read_text(), "generated_trees", monkeypatch)
    assert t.get_type_hints(module.AsyncQuerier.get_tree)["return"] == t.Optional[str]


@pytest.mark.parametrize("value", ["ltree", "ltree=", "ltree=decimal:"])
def test_invalid_type_override(queries: Path, value: str) -> None:
    result = invoke(queries, "show", options=["--type", value])

    assert result.exit_code == 2
    assert "invalid" in result.output


def test_connection_lost_aborts(queries: Path, statements: dict[str, object]) -> None:
    statements["select id, name from users where id = $1"] = ConnectionLostError(
        "connection to the database was lost",
    )

    result = invoke(queries, "generate", "--dry-run")

    assert result.exit_code == 1
    assert "connection error: connection to the database was lost" in result.output


def test_show(queries: Path) -> None:
    result = invoke(queries, "show")

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "* shop.users (" + str(queries / "shop" / "users.sql") + ")"

    get_user, count_users = [line for line in lines if line.startswith("    * ")]
    assert get_user.startswith("    * get_user(params: ")
    assert get_user.endswith("GetUserRow")
    assert count_users.startswith("    * count_users() -> ")
    assert count_users.endswith("]")
    assert "Optional[" in count_users


def test_url_is_required(queries: Path) -> None:
    result = CliRunner().invoke(cli, [str(queries), "show"], env={"PGCAST_DATABASE_URL": None})

    assert result.exit_code == 2
    assert "--url" in result.output


def invoke(queries: Path, *args: str, options: t.Sequence[str] = ()) -> Result:
    # group options go before the queries argument
    return CliRunner().invoke(
        cli,
        [*options, str(queries), *args],
        env={"PGCAST_DATABASE_URL": "postgresql://localhost/test"},
    )


class FakePool:
    def __init__(self, *args: object, **kwargs: object) -> None:
        self.opened = False

    def __enter__(self) -> "FakePool":
        self.opened = True
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.opened = False


@pytest.fixture
def statements() -> dict[str, t.Union[StatementDescription, Exception]]:
    return dict(_STATEMENTS)


@pytest.fixture(autouse=True)
def fake_database(
    monkeypatch: pytest.MonkeyPatch,
    statements: dict[str, t.Union[StatementDescription, Exception]],
) -> None:
    monkeypatch.setattr(cli_module, "ConnectionPool", FakePool)
    monkeypatch.setattr(cli_module, "PsycopgCatalogClient", lambda pool: FakeCatalogClient(statements))


@pytest.fixture
def queries(tmp_path: Path) -> Path:
    root = tmp_path / "queries"
    (root / "shop").mkdir(parents=True)
    (root / "shop" / "users.sql").write_text(_USERS_SQL)

    return root
