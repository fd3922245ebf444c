from __future__ import annotations

import logging
import typing as t
from concurrent.futures import Future, ThreadPoolExecutor

from pgcast.diagnostics import CatalogConsistencyError, StatementRejectedError, UnsupportedTypeError
from pgcast.sql.types import (
    ArrayType,
    CompositeType,
    DomainType,
    EnumType,
    FieldInfo,
    PgType,
    RangeType,
    ScalarType,
    ScalarTypeMap,
    TypeId,
    TypeRef,
    TypeRegistry,
)
from pgcast.traverse import CycleError, traverse_dfs_post_order_map

if t.TYPE_CHECKING:
    from pgcast.model import ModuleInfo
    from pgcast.sql.catalog import CatalogClient, StatementDescription, TypeDefinition

_LOGGER = logging.getLogger(__name__)

DescribeOutcome = t.Union["StatementDescription", StatementRejectedError]


class CatalogInspector:
    """
    Asks the database about statements and types.

    Statements are described concurrently, but types are only loaded into the registry from the calling thread, so
    the registry always has a single writer.
    """

    def __init__(self, client: CatalogClient, scalars: ScalarTypeMap, concurrency: int = 4) -> None:
        if concurrency < 1:
            msg = "concurrency must be positive"
            raise ValueError(msg, concurrency)

        self.__client = client
        self.__scalars = scalars
        self.__concurrency = concurrency

    @property
    def client(self) -> CatalogClient:
        return self.__client

    def describe_all(self, modules: t.Sequence[ModuleInfo]) -> t.Sequence[t.Sequence[DescribeOutcome]]:
        """
        Describe every query of every module, the result is aligned with `modules` and their queries.

        A rejected statement is returned in place of its description, fatal errors (e.g. a lost connection) cancel
        the pending work and propagate.
        """

        with ThreadPoolExecutor(max_workers=self.__concurrency, thread_name_prefix="pgcast-describe") as executor:
            futures = [
                [executor.submit(self.__client.describe, query.statement) for query in module.queries]
                for module in modules
            ]

            try:
                return [
                    [
                        self.__collect(module, query_idx, future)
                        for query_idx, future in enumerate(module_futures)
                    ]
                    for module, module_futures in zip(modules, futures)
                ]

            except BaseException:
                executor.shutdown(wait=True, cancel_futures=True)
                raise

    def load_type(self, oid: TypeId, registry: TypeRegistry) -> PgType:
        """Fetch the type with all of its dependencies (unless already registered) and register them in order."""

        if oid in registry:
            return registry.get(oid)

        try:
            for definition in traverse_dfs_post_order_map(
                nodes=[oid],
                transform=self.__client.fetch_type,
                descendants=self.__iter_definition_dependencies,
                predicate=lambda node: node not in registry,
            ):
                registry.register(self.__build_type(definition))

        except CycleError as err:
            msg = f"type {oid} references itself: {err}"
            raise CatalogConsistencyError(msg) from err

        return registry.get(oid)

    def __collect(self, module: ModuleInfo, query_idx: int, future: Future[StatementDescription]) -> DescribeOutcome:
        query = module.queries[query_idx]

        try:
            description = future.result()

        except StatementRejectedError as err:
            _LOGGER.debug("statement of query %s in %s was rejected: %s", query.name, module.source.path, err)
            return err.at(module.source.path, query.body_span)

        _LOGGER.debug("described query %s in %s: %s", query.name, module.source.path, description)
        return description

    def __iter_definition_dependencies(self, definition: TypeDefinition) -> t.Iterable[TypeId]:
        if definition.element is not None:
            yield definition.element

        for _, field_type in definition.fields:
            yield field_type

    def __build_type(self, definition: TypeDefinition) -> PgType:
        _LOGGER.debug(
            "registering type %s.%s (%s) as %s",
            definition.schema,
            definition.name,
            definition.oid,
            definition.kind,
        )

        if definition.kind == "enum":
            return EnumType(
                oid=definition.oid,
                schema=definition.schema,
                name=definition.name,
                labels=tuple(definition.labels),
            )

        elif definition.kind == "composite":
            return CompositeType(
                oid=definition.oid,
                schema=definition.schema,
                name=definition.name,
                fields=tuple(
                    # composite attributes can't be declared `NOT NULL`
                    FieldInfo(name=name, type_=TypeRef(oid=type_oid, nullable=True))
                    for name, type_oid in definition.fields
                ),
            )

        elif definition.kind == "domain":
            return DomainType(
                oid=definition.oid,
                schema=definition.schema,
                name=definition.name,
                base=TypeRef(oid=self.__require_element(definition), nullable=False),
            )

        elif definition.kind == "array":
            return ArrayType(
                oid=definition.oid,
                schema=definition.schema,
                name=definition.name,
                element=TypeRef(oid=self.__require_element(definition), nullable=True),
            )

        elif definition.kind == "range":
            return RangeType(
                oid=definition.oid,
                schema=definition.schema,
                name=definition.name,
                element=TypeRef(oid=self.__require_element(definition), nullable=True),
            )

        elif definition.kind == "base" or definition.kind == "pseudo" or definition.kind == "multirange":
            py_type = self.__scalars.get(definition.schema, definition.name)
            if py_type is None:
                msg = (
                    f"type {definition.schema}.{definition.name} has no python mapping, "
                    f"add one with `--type {definition.name}=module:qualname`"
                )
                raise UnsupportedTypeError(msg)

            return ScalarType(oid=definition.oid, schema=definition.schema, name=definition.name, py=py_type)

        else:
            t.assert_never(definition.kind)

    def __require_element(self, definition: TypeDefinition) -> TypeId:
        if definition.element is None:
            msg = f"{definition.kind} type {definition.schema}.{definition.name} ({definition.oid}) has no element type"
            raise CatalogConsistencyError(msg)

        return definition.element
