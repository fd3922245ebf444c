import pytest
from astlab.types import NamedTypeInfo, predef

from pgcast.diagnostics import CatalogConsistencyError, ResolutionError
from pgcast.sql.types import (
    ArrayType,
    CompositeType,
    EnumType,
    FieldInfo,
    ScalarType,
    ScalarTypeMap,
    TypeRef,
    TypeRegistry,
    parse_py_type,
)
from pgcast.string_case import camel2snake, snake2camel, to_identifier
from tests.fake import INT4, MOOD, TEXT


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        pytest.param("str", NamedTypeInfo.build("builtins", "str")),
        pytest.param("builtins:int", NamedTypeInfo.build("builtins", "int")),
        pytest.param("decimal:Decimal", NamedTypeInfo.build("decimal", "Decimal")),
        pytest.param("my.pkg.types:Point", NamedTypeInfo.build("my.pkg.types", "Point")),
    ],
)
def test_parse_py_type(value: str, expected: NamedTypeInfo) -> None:
    assert parse_py_type(value) == expected


@pytest.mark.parametrize("value", ["", "decimal:", ":Decimal"])
def test_parse_py_type_invalid(value: str) -> None:
    with pytest.raises(ValueError, match="invalid python type"):
        parse_py_type(value)


def test_scalar_type_map_default() -> None:
    scalars = ScalarTypeMap.default()

    assert scalars.get("pg_catalog", "int4") == predef().int
    assert scalars.get("pg_catalog", "timestamptz") == NamedTypeInfo.build("datetime", "datetime")
    assert scalars.get("ext", "citext") == predef().str
    assert scalars.get("public", "int4") is None
    assert scalars.get("public", "ltree") is None


def test_scalar_type_map_extend_prefers_qualified_names() -> None:
    scalars = ScalarTypeMap.default().extend(
        {
            "ltree": predef().str,
            "public.ltree": NamedTypeInfo.build("my.types", "Path"),
        },
    )

    assert scalars.get("public", "ltree") == NamedTypeInfo.build("my.types", "Path")
    assert scalars.get("other", "ltree") == predef().str


@pytest.mark.parametrize(
    ("value", "camel", "snake", "ident"),
    [
        pytest.param("get_user", "GetUser", "get_user", "get_user"),
        pytest.param("GetUserRow", "GetUserRow", "get_user_row", "GetUserRow"),
        pytest.param("in progress", "InProgress", "in_progress", "in_progress"),
        pytest.param("2fa", "2fa", "2fa", "v_2fa"),
        pytest.param("class", "Class", "class", "class_"),
    ],
)
def test_string_case(value: str, camel: str, snake: str, ident: str) -> None:
    assert snake2camel(value) == camel
    assert camel2snake(value) == snake
    assert to_identifier(value) == ident


def test_registry_register_requires_dependencies() -> None:
    registry = TypeRegistry()

    with pytest.raises(CatalogConsistencyError, match="unregistered type"):
        registry.register(
            ArrayType(oid=1007, schema="pg_catalog", name="_int4", element=TypeRef(oid=INT4, nullable=True)),
        )


def test_registry_register_is_idempotent_and_rejects_redefinition() -> None:
    registry = TypeRegistry()
    mood = EnumType(oid=MOOD, schema="public", name="mood", labels=("sad", "happy"))

    registry.register(mood)
    registry.register(mood)

    with pytest.raises(CatalogConsistencyError, match="changed its definition"):
        registry.register(EnumType(oid=MOOD, schema="public", name="mood", labels=("sad",)))

    assert list(registry.types) == [MOOD]
    assert registry.name_of(MOOD) == "Mood"


def test_registry_get_unknown_type() -> None:
    with pytest.raises(CatalogConsistencyError):
        TypeRegistry().get(INT4)


def test_registry_names_named_types() -> None:
    registry = TypeRegistry()
    registry.register(ScalarType(oid=TEXT, schema="pg_catalog", name="text", py=predef().str))
    registry.register(EnumType(oid=1, schema="public", name="order_status", labels=()))
    registry.register(EnumType(oid=2, schema="billing", name="order_status", labels=()))
    registry.register(
        CompositeType(
            oid=3,
            schema="public",
            name="async_querier",
            fields=(FieldInfo(name="x", type_=TypeRef(oid=TEXT, nullable=True)),),
        ),
    )

    assert registry.name_of(1) == "OrderStatus"
    assert registry.name_of(2) == "BillingOrderStatus"
    assert registry.name_of(3) == "PublicAsyncQuerier"

    with pytest.raises(CatalogConsistencyError):
        registry.name_of(TEXT)


def test_registry_intern_shape() -> None:
    registry = TypeRegistry()
    id_name = (
        FieldInfo(name="id", type_=TypeRef(oid=INT4, nullable=False)),
        FieldInfo(name="name", type_=TypeRef(oid=TEXT, nullable=False)),
    )
    name_id = tuple(reversed(id_name))
    nullable_name = (id_name[0], FieldInfo(name="name", type_=TypeRef(oid=TEXT, nullable=True)))

    assert registry.intern_shape("row", id_name, "ListUsersRow") == "ListUsersRow"
    assert registry.intern_shape("row", id_name, "ListCustomersRow") == "ListUsersRow"
    assert registry.intern_shape("row", name_id, "ListUsersRow") == "ListUsersRow2"
    assert registry.intern_shape("row", nullable_name, "ListUsersRow") == "ListUsersRow3"
    assert list(registry.shapes.values()) == ["ListUsersRow", "ListUsersRow2", "ListUsersRow3"]


def test_registry_intern_shape_keeps_params_and_rows_apart() -> None:
    registry = TypeRegistry()
    id_name = (
        FieldInfo(name="id", type_=TypeRef(oid=INT4, nullable=False)),
        FieldInfo(name="name", type_=TypeRef(oid=TEXT, nullable=False)),
    )

    assert registry.intern_shape("params", id_name, "InsertUserParams") == "InsertUserParams"
    assert registry.intern_shape("row", id_name, "GetUserRow") == "GetUserRow"
    assert registry.intern_shape("params", id_name, "RenameUserParams") == "InsertUserParams"
    assert dict(registry.shapes) == {("params", id_name): "InsertUserParams", ("row", id_name): "GetUserRow"}


def test_registry_declare_shape() -> None:
    registry = TypeRegistry()
    user = (
        FieldInfo(name="id", type_=TypeRef(oid=INT4, nullable=False)),
        FieldInfo(name="email", type_=TypeRef(oid=TEXT, nullable=True)),
    )
    other = (FieldInfo(name="id", type_=TypeRef(oid=INT4, nullable=False)),)

    assert registry.declare_shape("row", user, "User") == "User"
    assert registry.declare_shape("row", user, "User") == "User"
    assert registry.intern_shape("row", user, "GetUserRow") == "User"

    with pytest.raises(ResolutionError, match="type `User` is already used for different fields"):
        registry.declare_shape("row", other, "User")

    assert registry.intern_shape("row", other, "GetIdRow") == "GetIdRow"

    with pytest.raises(ResolutionError, match="type name `GetIdRow` is already taken"):
        registry.declare_shape("params", other, "GetIdRow")


def test_scalar_type_map_network_types() -> None:
    scalars = ScalarTypeMap.default()

    inet = scalars.get("pg_catalog", "inet")
    cidr = scalars.get("pg_catalog", "cidr")

    assert isinstance(inet, NamedTypeInfo)
    assert inet.qualname == predef().union.qualname
    assert set(inet.type_params) == {
        NamedTypeInfo.build("ipaddress", "IPv4Address"),
        NamedTypeInfo.build("ipaddress", "IPv6Address"),
        NamedTypeInfo.build("ipaddress", "IPv4Interface"),
        NamedTypeInfo.build("ipaddress", "IPv6Interface"),
    }
    assert isinstance(cidr, NamedTypeInfo)
    assert cidr.qualname == predef().union.qualname
    assert set(cidr.type_params) == {
        NamedTypeInfo.build("ipaddress", "IPv4Network"),
        NamedTypeInfo.build("ipaddress", "IPv6Network"),
    }
