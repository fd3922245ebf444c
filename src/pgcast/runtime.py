"""
Support code for the modules generated by `pgcast`.

Generated `AsyncQuerier` classes run on top of `asyncpg` (a connection or a pool), `SyncQuerier` classes on top of a
`psycopg` connection. The helpers here implement the cardinality contract of the queries: `one` fails with
:class:`NotFoundError` on no rows and with :class:`TooManyRowsError` on more than one row, `maybe-one` fails only on
more than one row, `many` yields every row and `execute` returns the number of affected rows.
"""

from __future__ import annotations

__all__ = [
    "AsyncExecutor",
    "NotFoundError",
    "QueryError",
    "Range",
    "SyncCursor",
    "SyncExecutor",
    "TooManyRowsError",
    "decode_array",
    "decode_enum",
    "decode_optional",
    "decode_range",
    "encode_async",
    "encode_sync",
    "execute",
    "execute_async",
    "fetch_many",
    "fetch_many_async",
    "fetch_maybe_one",
    "fetch_maybe_one_async",
    "fetch_one",
    "fetch_one_async",
    "parse_row_count",
    "register_sync_types",
]

import dataclasses
import enum
import typing as t

import asyncpg
from psycopg import sql
from psycopg.types.composite import CompositeInfo, register_composite
from psycopg.types.enum import EnumInfo, register_enum
from psycopg.types.range import Range as PsycopgRange
from psycopg.types.range import RangeInfo, register_range

T = t.TypeVar("T")
V = t.TypeVar("V")
E = t.TypeVar("E", bound=enum.Enum)


class QueryError(Exception):
    def __init__(self, query: str, message: str) -> None:
        super().__init__(f"query {query}: {message}")
        self.query = query


class NotFoundError(QueryError):
    def __init__(self, query: str) -> None:
        super().__init__(query, "no rows returned, expected exactly one")


class TooManyRowsError(QueryError):
    def __init__(self, query: str) -> None:
        super().__init__(query, "more than one row returned")


class AsyncExecutor(t.Protocol):
    """Anything with asyncpg `execute` & `fetch` methods, e.g. `asyncpg.Connection` or `asyncpg.Pool`."""

    async def execute(self, query: str, *args: object) -> str: ...

    async def fetch(self, query: str, *args: object) -> list[t.Any]: ...


class SyncCursor(t.Protocol):
    @property
    def rowcount(self) -> int: ...

    def execute(self, query: str, params: t.Sequence[object]) -> object: ...

    def fetchone(self) -> t.Optional[t.Any]: ...

    def __iter__(self) -> t.Iterator[t.Any]: ...

    def __enter__(self) -> SyncCursor: ...

    def __exit__(self, *exc_info: object) -> t.Optional[bool]: ...


class SyncExecutor(t.Protocol):
    """Anything with psycopg `cursor` method, e.g. `psycopg.Connection`."""

    def cursor(self) -> SyncCursor: ...


@dataclasses.dataclass(frozen=True)
class Range(t.Generic[T]):
    """PostgreSQL range value, `None` bound is infinite."""

    lower: t.Optional[T] = None
    upper: t.Optional[T] = None
    lower_inc: bool = True
    upper_inc: bool = False
    empty: bool = False

    @classmethod
    def build_empty(cls) -> Range[T]:
        return cls(lower_inc=False, empty=True)


def parse_row_count(status: str) -> int:
    """Extract the number of affected rows from a command status tag, e.g. `INSERT 0 5` -> 5."""

    _, _, count = status.rpartition(" ")
    return int(count) if count.isdigit() else 0


async def execute_async(conn: AsyncExecutor, name: str, query: str, args: t.Sequence[object]) -> int:
    return parse_row_count(await conn.execute(query, *args))


async def fetch_one_async(conn: AsyncExecutor, name: str, query: str, args: t.Sequence[object]) -> t.Any:
    rows = await conn.fetch(query, *args)
    if not rows:
        raise NotFoundError(name)

    if len(rows) > 1:
        raise TooManyRowsError(name)

    return rows[0]


async def fetch_maybe_one_async(
    conn: AsyncExecutor,
    name: str,
    query: str,
    args: t.Sequence[object],
) -> t.Optional[t.Any]:
    rows = await conn.fetch(query, *args)
    if len(rows) > 1:
        raise TooManyRowsError(name)

    return rows[0] if rows else None


async def fetch_many_async(
    conn: AsyncExecutor,
    name: str,
    query: str,
    args: t.Sequence[object],
) -> t.AsyncIterator[t.Any]:
    for row in await conn.fetch(query, *args):
        yield row


def execute(conn: SyncExecutor, name: str, query: str, args: t.Sequence[object]) -> int:
    with conn.cursor() as cur:
        cur.execute(query, args)
        return max(cur.rowcount, 0)


def fetch_one(conn: SyncExecutor, name: str, query: str, args: t.Sequence[object]) -> t.Any:
    with conn.cursor() as cur:
        cur.execute(query, args)

        row = cur.fetchone()
        if row is None:
            raise NotFoundError(name)

        if cur.fetchone() is not None:
            raise TooManyRowsError(name)

        return row


def fetch_maybe_one(conn: SyncExecutor, name: str, query: str, args: t.Sequence[object]) -> t.Optional[t.Any]:
    with conn.cursor() as cur:
        cur.execute(query, args)

        row = cur.fetchone()
        if row is not None and cur.fetchone() is not None:
            raise TooManyRowsError(name)

        return row


def fetch_many(conn: SyncExecutor, name: str, query: str, args: t.Sequence[object]) -> t.Iterator[t.Any]:
    with conn.cursor() as cur:
        cur.execute(query, args)
        yield from cur


def decode_optional(value: t.Optional[V], decoder: t.Callable[[V], T]) -> t.Optional[T]:
    return decoder(value) if value is not None else None


def decode_enum(enum_type: type[E], value: object) -> E:
    """
    Load an enum member by its label.

    asyncpg returns the label. psycopg returns a member of the enum class it created on registration, the members of
    that class are named after the labels. Members of another generated class of the same enum hold the label as value.
    """

    if isinstance(value, enum_type):
        return value

    if isinstance(value, enum.Enum):
        return enum_type(value.value if isinstance(value.value, str) else value.name)

    return enum_type(value)


def decode_array(value: t.Any, decoder: t.Callable[[t.Any], T]) -> t.Any:
    """Convert each non null element of a (possibly multidimensional) array."""

    if value is None:
        return None

    return [
        decode_array(item, decoder) if isinstance(item, list) else decoder(item) if item is not None else None
        for item in value
    ]


def decode_range(value: t.Any, decoder: t.Optional[t.Callable[[t.Any], T]] = None) -> t.Optional[Range[t.Any]]:
    """Convert `asyncpg.Range` or `psycopg.types.range.Range` to :class:`Range`."""

    if value is None:
        return None

    if value.isempty:
        return Range.build_empty()

    return Range(
        lower=decode_optional(value.lower, decoder) if decoder is not None else value.lower,
        upper=decode_optional(value.upper, decoder) if decoder is not None else value.upper,
        lower_inc=value.lower_inc,
        upper_inc=value.upper_inc,
    )


def encode_async(value: object) -> object:
    """Convert a parameter value to the form asyncpg can send."""

    return _encode(value, _to_asyncpg_range)


def encode_sync(value: object) -> object:
    """Convert a parameter value to the form psycopg can send."""

    return _encode(value, _to_psycopg_range)


def _encode(value: object, encode_range: t.Callable[[Range[object], t.Callable[[object], object]], object]) -> object:
    def encode(item: object) -> object:
        return _encode(item, encode_range)

    if value is None:
        return None

    if isinstance(value, enum.Enum):
        return value.value

    if isinstance(value, Range):
        return encode_range(value, encode)

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return tuple(encode(getattr(value, field.name)) for field in dataclasses.fields(value))

    if isinstance(value, (list, tuple)):
        return [encode(item) for item in value]

    return value


def _to_asyncpg_range(value: Range[object], encode: t.Callable[[object], object]) -> object:
    if value.empty:
        return asyncpg.Range(empty=True)

    return asyncpg.Range(
        encode(value.lower),
        encode(value.upper),
        lower_inc=value.lower_inc,
        upper_inc=value.upper_inc,
    )


def _to_psycopg_range(value: Range[object], encode: t.Callable[[object], object]) -> object:
    if value.empty:
        return PsycopgRange(empty=True)

    bounds = ("[" if value.lower_inc else "(") + ("]" if value.upper_inc else ")")
    return PsycopgRange(encode(value.lower), encode(value.upper), bounds=bounds)


def register_sync_types(
    conn: SyncExecutor,
    *,
    enums: t.Sequence[tuple[str, str]] = (),
    composites: t.Sequence[tuple[str, str]] = (),
    ranges: t.Sequence[tuple[str, str]] = (),
) -> None:
    """Register user defined types on a psycopg connection, so that their values are loaded as python values."""

    context = t.cast("t.Any", conn)

    for schema, name in enums:
        enum_info = EnumInfo.fetch(context, sql.Identifier(schema, name))
        if enum_info is None:
            msg = f"enum type {schema}.{name} was not found"
            raise LookupError(msg)

        # no python class: one connection may be shared by modules with distinct classes of the same enum
        register_enum(enum_info, context)

    for schema, name in composites:
        composite_info = CompositeInfo.fetch(context, sql.Identifier(schema, name))
        if composite_info is None:
            msg = f"composite type {schema}.{name} was not found"
            raise LookupError(msg)

        register_composite(composite_info, context)

    for schema, name in ranges:
        range_info = RangeInfo.fetch(context, sql.Identifier(schema, name))
        if range_info is None:
            msg = f"range type {schema}.{name} was not found"
            raise LookupError(msg)

        register_range(range_info, context)
