from __future__ import annotations

import abc
import logging
import typing as t
from contextlib import contextmanager
from dataclasses import dataclass, field

import psycopg
from psycopg import pq
from psycopg_pool import ConnectionPool, PoolTimeout
from typing_extensions import override

from pgcast.diagnostics import CatalogConsistencyError, ConnectionLostError, StatementRejectedError

if t.TYPE_CHECKING:
    from pgcast.sql.types import TypeId

_LOGGER = logging.getLogger(__name__)

CatalogKind = t.Literal["base", "enum", "domain", "composite", "array", "range", "pseudo", "multirange"]


@dataclass(frozen=True, kw_only=True)
class ColumnDescription:
    name: str
    type_oid: TypeId
    # origin of the column as reported by the server, 0 when the column is computed
    table_oid: int = 0
    column_number: int = 0


@dataclass(frozen=True, kw_only=True)
class StatementDescription:
    params: t.Sequence[TypeId]
    columns: t.Sequence[ColumnDescription]


@dataclass(frozen=True, kw_only=True)
class TypeDefinition:
    oid: TypeId
    schema: str
    name: str
    kind: CatalogKind
    # array element, domain base type or range subtype
    element: t.Optional[TypeId] = None
    labels: t.Sequence[str] = field(default_factory=tuple)
    fields: t.Sequence[tuple[str, TypeId]] = field(default_factory=tuple)


class CatalogClient(metaclass=abc.ABCMeta):
    """Read-only access to a live database: statement description and catalog lookups."""

    @abc.abstractmethod
    def describe(self, statement: str) -> StatementDescription:
        """
        Prepare and describe the statement, without executing it.

        Must be safe to call from several threads at once. Raises :class:`StatementRejectedError` when the database
        rejects the statement and :class:`ConnectionLostError` when the database can not be reached.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def fetch_type(self, oid: TypeId) -> TypeDefinition:
        """Raises :class:`CatalogConsistencyError` when there is no such type in the catalog."""
        raise NotImplementedError

    @abc.abstractmethod
    def fetch_not_null(self, table_oid: int, column_number: int) -> bool:
        raise NotImplementedError


_TYPTYPE_KINDS: t.Final[t.Mapping[str, CatalogKind]] = {
    "b": "base",
    "c": "composite",
    "d": "domain",
    "e": "enum",
    "p": "pseudo",
    "r": "range",
    "m": "multirange",
}

_SELECT_TYPE: t.Final[str] = """
select t.typname, n.nspname, t.typtype, t.typcategory, t.typelem, t.typbasetype, t.typrelid
from pg_catalog.pg_type t
join pg_catalog.pg_namespace n on n.oid = t.typnamespace
where t.oid = %s::oid
"""

_SELECT_ENUM_LABELS: t.Final[str] = """
select e.enumlabel
from pg_catalog.pg_enum e
where e.enumtypid = %s::oid
order by e.enumsortorder
"""

_SELECT_COMPOSITE_FIELDS: t.Final[str] = """
select a.attname, a.atttypid
from pg_catalog.pg_attribute a
where a.attrelid = %s::oid and a.attnum > 0 and not a.attisdropped
order by a.attnum
"""

_SELECT_RANGE_SUBTYPE: t.Final[str] = """
select r.rngsubtype
from pg_catalog.pg_range r
where r.rngtypid = %s::oid
"""

_SELECT_NOT_NULL: t.Final[str] = """
select a.attnotnull and c.relkind in ('r', 'p')
from pg_catalog.pg_attribute a
join pg_catalog.pg_class c on c.oid = a.attrelid
where a.attrelid = %s::oid and a.attnum = %s::int2 and not a.attisdropped
"""


class PsycopgCatalogClient(CatalogClient):
    """
    Catalog client on top of a psycopg connection pool.

    Statements are described with libpq `PQprepare` / `PQdescribePrepared` on the unnamed prepared statement, which is
    replaced by the next prepare on the same connection, so no server side state is left behind.
    """

    def __init__(self, pool: ConnectionPool[psycopg.Connection[t.Any]]) -> None:
        self.__pool = pool

    @override
    def describe(self, statement: str) -> StatementDescription:
        with self.__connect() as conn:
            pgconn = conn.pgconn

            prepared = pgconn.prepare(b"", statement.encode(conn.info.encoding))
            self.__check_result(pgconn, prepared)

            described = pgconn.describe_prepared(b"")
            self.__check_result(pgconn, described)

            return StatementDescription(
                params=tuple(described.param_type(i) for i in range(described.nparams)),
                columns=tuple(
                    ColumnDescription(
                        name=(described.fname(i) or b"").decode(conn.info.encoding),
                        type_oid=described.ftype(i),
                        table_oid=described.ftable(i),
                        column_number=described.ftablecol(i),
                    )
                    for i in range(described.nfields)
                ),
            )

    @override
    def fetch_type(self, oid: TypeId) -> TypeDefinition:
        _LOGGER.debug("fetching type %s", oid)

        with self.__connect() as conn:
            row = conn.execute(_SELECT_TYPE, (oid,)).fetchone()
            if row is None:
                msg = f"type {oid} was not found in the catalog"
                raise CatalogConsistencyError(msg)

            name, schema, typtype, typcategory, typelem, typbasetype, typrelid = row

            kind = _TYPTYPE_KINDS.get(typtype)
            if kind is None:
                msg = f"type {schema}.{name} ({oid}) has unknown typtype {typtype!r}"
                raise CatalogConsistencyError(msg)

            if kind == "base" and typcategory == "A" and typelem:
                return TypeDefinition(oid=oid, schema=schema, name=name, kind="array", element=typelem)

            elif kind == "enum":
                labels = conn.execute(_SELECT_ENUM_LABELS, (oid,)).fetchall()
                return TypeDefinition(
                    oid=oid,
                    schema=schema,
                    name=name,
                    kind=kind,
                    labels=tuple(label for (label,) in labels),
                )

            elif kind == "domain":
                return TypeDefinition(oid=oid, schema=schema, name=name, kind=kind, element=typbasetype)

            elif kind == "composite":
                fields = conn.execute(_SELECT_COMPOSITE_FIELDS, (typrelid,)).fetchall()
                return TypeDefinition(
                    oid=oid,
                    schema=schema,
                    name=name,
                    kind=kind,
                    fields=tuple((field_name, field_type) for field_name, field_type in fields),
                )

            elif kind == "range":
                subtype = conn.execute(_SELECT_RANGE_SUBTYPE, (oid,)).fetchone()
                if subtype is None:
                    msg = f"range type {schema}.{name} ({oid}) has no subtype"
                    raise CatalogConsistencyError(msg)

                return TypeDefinition(oid=oid, schema=schema, name=name, kind=kind, element=subtype[0])

            return TypeDefinition(oid=oid, schema=schema, name=name, kind=kind)

    @override
    def fetch_not_null(self, table_oid: int, column_number: int) -> bool:
        with self.__connect() as conn:
            row = conn.execute(_SELECT_NOT_NULL, (table_oid, column_number)).fetchone()
            return bool(row is not None and row[0])

    @contextmanager
    def __connect(self) -> t.Iterator[psycopg.Connection[t.Any]]:
        try:
            with self.__pool.connection() as conn:
                yield conn

        except PoolTimeout as err:
            msg = "can't get a database connection from the pool"
            raise ConnectionLostError(msg) from err

        except psycopg.OperationalError as err:
            msg = "connection to the database was lost"
            raise ConnectionLostError(msg) from err

    def __check_result(self, pgconn: pq.abc.PGconn, result: pq.abc.PGresult) -> None:
        if result.status == pq.ExecStatus.COMMAND_OK:
            return

        if pgconn.status == pq.ConnStatus.BAD:
            msg = "connection to the database was lost"
            raise ConnectionLostError(msg)

        message = self.__error_field(result, pq.DiagnosticField.MESSAGE_PRIMARY)
        raise StatementRejectedError(
            message if message is not None else result.error_message.decode(errors="replace").strip(),
            sqlstate=self.__error_field(result, pq.DiagnosticField.SQLSTATE),
            detail=self.__error_field(result, pq.DiagnosticField.MESSAGE_DETAIL),
            hint=self.__error_field(result, pq.DiagnosticField.MESSAGE_HINT),
        )

    def __error_field(self, result: pq.abc.PGresult, code: pq.DiagnosticField) -> t.Optional[str]:
        value = result.error_field(code)
        return value.decode(errors="replace") if value is not None else None
