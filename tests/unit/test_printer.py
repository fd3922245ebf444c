import io

from astlab.types import TypeAnnotator

from pgcast.diagnostics import Diagnostics
from pgcast.pipeline import Pipeline
from pgcast.printer import Printer
from tests.fake import INT4, INT8, TEXT, USERS, FakeCatalogClient, column, describe, source


def test_printer_prints_signatures() -> None:
    client = FakeCatalogClient(
        {
            "select id, name from users where id = $1": describe(
                [INT4],
                [column("id", INT4, USERS, 1), column("name", TEXT, USERS, 2)],
            ),
            "select count(*) from users": describe([], [column("count", INT8)]),
            "update users set name = $1 where id = $2": describe([TEXT, INT4]),
        },
    )
    diagnostics = Diagnostics()
    resolution = Pipeline(client).resolve(
        [
            source(
                "--! get_user : one\nselect id, name from users where id = :id;\n"
                "--! count_users : one\nselect count(*) from users;\n"
                "--! rename : execute\nupdate users set name = :name where id = :id;\n",
            ),
        ],
        diagnostics,
    )
    dest = io.StringIO()

    Printer(dest, TypeAnnotator(), resolution.registry).print_module(resolution.modules[0])

    assert not diagnostics.has_errors
    lines = dest.getvalue().splitlines()
    assert lines[0] == "* users (users.sql)"
    assert lines[-1] == ""

    # signatures are indented once, fields twice and their types thrice
    signatures = [line.strip() for line in lines if line.startswith("    * ")]
    assert [signature.split("(", 1)[0] for signature in signatures] == ["* get_user", "* count_users", "* rename"]

    get_user, count_users, rename = signatures
    assert "params: " in get_user
    assert "GetUserParams" in get_user
    assert get_user.endswith("GetUserRow")
    assert count_users.startswith("* count_users() -> ")
    assert "Optional[" in count_users
    assert "int" in count_users
    assert "params: " in rename
    assert rename.endswith("int")

    assert [line.strip() for line in lines if line.startswith("        ") and line.strip().endswith(":")] == [
        "params:",
        "columns:",
        "params:",
    ]
    assert [line.strip().split(":")[0] for line in lines if line.startswith("            ")] == [
        "id",
        "id",
        "name",
        "name",
        "id",
    ]
