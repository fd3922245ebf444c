import pytest

from pgcast.sql.nullability import NullabilityPolicy
from tests.fake import INT4, ORDERS, TEXT, USERS, FakeCatalogClient, column


@pytest.mark.parametrize(
    ("statement", "expected"),
    [
        pytest.param("select id from users", False, id="plain select"),
        pytest.param("select u.id from users u join orders o on o.user_id = u.id", False, id="inner join"),
        pytest.param("select u.id from users u left join orders o on o.user_id = u.id", True, id="left join"),
        pytest.param("select u.id from users u FULL OUTER JOIN orders o using (id)", True, id="full outer join"),
        pytest.param("select mood, count(*) from users group by rollup (mood)", True, id="rollup"),
        pytest.param("select 'left join' as label, id from users", False, id="keyword in literal"),
        pytest.param('select id as "left" from users', False, id="keyword in quoted identifier"),
        pytest.param("select id /* left join */ from users", False, id="keyword in comment"),
        pytest.param("select id from users where name = 'unterminated", True, id="unscannable"),
    ],
)
def test_is_attenuated(statement: str, expected: bool) -> None:
    assert NullabilityPolicy(FakeCatalogClient()).is_attenuated(statement) is expected


def test_infer_uses_table_constraints() -> None:
    client = FakeCatalogClient()
    policy = NullabilityPolicy(client)

    nullable = policy.infer(
        "select id, name, email, length(name) as size from users",
        [
            column("id", INT4, USERS, 1),
            column("name", TEXT, USERS, 2),
            column("email", TEXT, USERS, 3),
            column("size", INT4),
        ],
    )

    assert nullable == [False, False, True, True]
    assert client.fetched_not_null == [(USERS, 1), (USERS, 2), (USERS, 3)]


def test_infer_outer_join_makes_every_column_nullable() -> None:
    client = FakeCatalogClient(not_null={(USERS, 1), (ORDERS, 1)})

    nullable = NullabilityPolicy(client).infer(
        "select u.id, o.id as order_id from users u left join orders o on o.user_id = u.id",
        [column("id", INT4, USERS, 1), column("order_id", INT4, ORDERS, 1)],
    )

    assert nullable == [True, True]
    assert client.fetched_not_null == []


def test_is_nullable_caches_catalog_lookups() -> None:
    client = FakeCatalogClient()
    policy = NullabilityPolicy(client)

    for _ in range(3):
        assert not policy.is_nullable(column("id", INT4, USERS, 1), attenuated=False)

    assert client.fetched_not_null == [(USERS, 1)]


@pytest.mark.parametrize(
    "description",
    [
        pytest.param(column("id", INT4, 0, 1), id="no table"),
        pytest.param(column("id", INT4, USERS, 0), id="no column number"),
        pytest.param(column("ctid", INT4, USERS, -1), id="system column"),
    ],
)
def test_is_nullable_without_origin(description: object) -> None:
    client = FakeCatalogClient()

    assert NullabilityPolicy(client).is_nullable(description, attenuated=False)  # type: ignore[arg-type]
    assert client.fetched_not_null == []
