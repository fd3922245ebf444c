from __future__ import annotations

import typing as t
from dataclasses import dataclass, replace

from astlab.types import NamedTypeInfo, TypeInfo, predef

from pgcast.diagnostics import CatalogConsistencyError, ResolutionError
from pgcast.string_case import snake2camel

TypeId = int

ShapeRole = t.Literal["params", "row"]


def parse_py_type(value: str) -> TypeInfo:
    """Parse `module:qualname` (e.g. `decimal:Decimal`) or a builtin name (e.g. `str`)."""

    module, sep, name = value.rpartition(":")
    if not name or (sep and not module) or not all(part.isidentifier() for part in name.split(".")):
        msg = "invalid python type, expected `module:qualname`"
        raise ValueError(msg, value)

    return NamedTypeInfo.build(module if sep else "builtins", name)


def union_type(*options: TypeInfo) -> TypeInfo:
    return replace(predef().union, type_params=options)


@dataclass(frozen=True, kw_only=True)
class TypeRef:
    oid: TypeId
    nullable: bool


@dataclass(frozen=True, kw_only=True)
class FieldInfo:
    name: str
    type_: TypeRef


Shape = tuple[FieldInfo, ...]


@dataclass(frozen=True, kw_only=True)
class ScalarType:
    oid: TypeId
    schema: str
    name: str
    py: TypeInfo
    kind: t.Literal["scalar"] = "scalar"


@dataclass(frozen=True, kw_only=True)
class EnumType:
    oid: TypeId
    schema: str
    name: str
    labels: t.Sequence[str]
    kind: t.Literal["enum"] = "enum"


@dataclass(frozen=True, kw_only=True)
class DomainType:
    oid: TypeId
    schema: str
    name: str
    base: TypeRef
    kind: t.Literal["domain"] = "domain"


@dataclass(frozen=True, kw_only=True)
class CompositeType:
    oid: TypeId
    schema: str
    name: str
    fields: t.Sequence[FieldInfo]
    kind: t.Literal["composite"] = "composite"


@dataclass(frozen=True, kw_only=True)
class ArrayType:
    oid: TypeId
    schema: str
    name: str
    element: TypeRef
    kind: t.Literal["array"] = "array"


@dataclass(frozen=True, kw_only=True)
class RangeType:
    oid: TypeId
    schema: str
    name: str
    element: TypeRef
    kind: t.Literal["range"] = "range"


PgType = t.Union[ScalarType, EnumType, DomainType, CompositeType, ArrayType, RangeType]

# kinds that are emitted as named python definitions
NAMED_KINDS: t.Final[frozenset[str]] = frozenset({"enum", "domain", "composite"})


def iter_dependencies(type_: PgType) -> t.Iterator[TypeRef]:
    if type_.kind == "scalar" or type_.kind == "enum":
        return

    elif type_.kind == "domain":
        yield type_.base

    elif type_.kind == "composite":
        for field in type_.fields:
            yield field.type_

    elif type_.kind == "array" or type_.kind == "range":
        yield type_.element

    else:
        t.assert_never(type_.kind)


_BUILTIN_SCALARS: t.Final[t.Sequence[tuple[t.Sequence[str], TypeInfo]]] = (
    (["bool"], predef().bool),
    (["int2", "int4", "int8", "oid", "xid", "cid"], predef().int),
    (["float4", "float8"], predef().float),
    (["numeric"], NamedTypeInfo.build("decimal", "Decimal")),
    (["text", "varchar", "bpchar", "char", "name", "xml", "money", "macaddr", "macaddr8"], predef().str),
    (["bytea"], NamedTypeInfo.build("builtins", "bytes")),
    (["date"], NamedTypeInfo.build("datetime", "date")),
    (["time", "timetz"], NamedTypeInfo.build("datetime", "time")),
    (["timestamp", "timestamptz"], NamedTypeInfo.build("datetime", "datetime")),
    (["interval"], NamedTypeInfo.build("datetime", "timedelta")),
    (["uuid"], NamedTypeInfo.build("uuid", "UUID")),
    (["json", "jsonb"], predef().any),
    # drivers load a host address without a prefix as an address, otherwise as an interface
    (
        ["inet"],
        union_type(
            NamedTypeInfo.build("ipaddress", "IPv4Address"),
            NamedTypeInfo.build("ipaddress", "IPv6Address"),
            NamedTypeInfo.build("ipaddress", "IPv4Interface"),
            NamedTypeInfo.build("ipaddress", "IPv6Interface"),
        ),
    ),
    (
        ["cidr"],
        union_type(NamedTypeInfo.build("ipaddress", "IPv4Network"), NamedTypeInfo.build("ipaddress", "IPv6Network")),
    ),
    (["void"], predef().none_type),
)


class ScalarTypeMap:
    """
    Mapping of PostgreSQL base types to python types.

    Keys are qualified (`schema.name`) or bare type names. Lookup tries the qualified name first, so user defined
    entries can override a bare entry for a specific schema.
    """

    def __init__(self, entries: t.Mapping[str, TypeInfo]) -> None:
        self.__entries = dict(entries)

    @classmethod
    def default(cls) -> ScalarTypeMap:
        entries = {f"pg_catalog.{name}": py_type for names, py_type in _BUILTIN_SCALARS for name in names}
        # extension types live in whatever schema the extension was installed to
        entries["citext"] = predef().str

        return cls(entries)

    def extend(self, entries: t.Mapping[str, TypeInfo]) -> ScalarTypeMap:
        return ScalarTypeMap({**self.__entries, **entries})

    def get(self, schema: str, name: str) -> t.Optional[TypeInfo]:
        py_type = self.__entries.get(f"{schema}.{name}")
        return py_type if py_type is not None else self.__entries.get(name)


class TypeRegistry:
    """
    Canonical registry of one run: catalog types by OID, python names of named types and of structural shapes.

    All dictionaries preserve insertion order, which is the (deterministic) resolution order.
    """

    RESERVED_NAMES: t.ClassVar[frozenset[str]] = frozenset({"AsyncQuerier", "SyncQuerier"})

    def __init__(self) -> None:
        self.__types = dict[TypeId, PgType]()
        self.__names = dict[TypeId, str]()
        self.__shapes = dict[tuple[ShapeRole, Shape], str]()
        self.__declared = dict[str, Shape]()
        self.__taken = set[str](self.RESERVED_NAMES)

    def __contains__(self, oid: object) -> bool:
        return oid in self.__types

    @property
    def types(self) -> t.Mapping[TypeId, PgType]:
        return self.__types

    @property
    def shapes(self) -> t.Mapping[tuple[ShapeRole, Shape], str]:
        return self.__shapes

    def get(self, oid: TypeId) -> PgType:
        try:
            return self.__types[oid]

        except KeyError as err:
            msg = f"type {oid} is not registered"
            raise CatalogConsistencyError(msg) from err

    def register(self, type_: PgType) -> None:
        registered = self.__types.get(type_.oid)
        if registered is not None:
            if registered != type_:
                msg = f"type {type_.schema}.{type_.name} ({type_.oid}) changed its definition during the run"
                raise CatalogConsistencyError(msg)

            return

        for dependency in iter_dependencies(type_):
            if dependency.oid not in self.__types:
                msg = f"type {type_.schema}.{type_.name} ({type_.oid}) references unregistered type {dependency.oid}"
                raise CatalogConsistencyError(msg)

        self.__types[type_.oid] = type_

        if type_.kind in NAMED_KINDS:
            self.__names[type_.oid] = self.__mint_type_name(type_)

    def name_of(self, oid: TypeId) -> str:
        try:
            return self.__names[oid]

        except KeyError as err:
            msg = f"type {oid} has no generated name"
            raise CatalogConsistencyError(msg) from err

    def intern_shape(self, role: ShapeRole, shape: Shape, name: str) -> str:
        """
        Return the canonical name of the shape in the given role, minting `name` (or a free variant of it) on first
        sight.

        Params and rows are interned apart, a row that looks like params of another query gets a row name.
        """

        existing = self.__shapes.get((role, shape))
        if existing is not None:
            return existing

        minted = self.__shapes[(role, shape)] = self.__mint(name)
        return minted

    def declare_shape(self, role: ShapeRole, shape: Shape, name: str) -> str:
        """Bind a user chosen `name` to the shape, the same name can't denote another shape during the run."""

        declared = self.__declared.get(name)
        if declared is not None:
            if declared != shape:
                msg = f"type `{name}` is already used for different fields"
                raise ResolutionError(msg)

            return name

        if name in self.__taken:
            msg = f"type name `{name}` is already taken"
            raise ResolutionError(msg)

        self.__taken.add(name)
        self.__declared[name] = shape
        self.__shapes.setdefault((role, shape), name)

        return name

    def __mint_type_name(self, type_: PgType) -> str:
        name = snake2camel(type_.name)
        if type_.schema not in {"public", "pg_catalog"} or name in self.__taken:
            name = snake2camel(type_.schema) + name

        return self.__mint(name)

    def __mint(self, name: str) -> str:
        candidate = name
        suffix = 2
        while candidate in self.__taken:
            candidate = f"{name}{suffix}"
            suffix += 1

        self.__taken.add(candidate)
        return candidate
