from __future__ import annotations

import keyword
import logging
import typing as t
from dataclasses import dataclass, replace

from pgcast.diagnostics import FatalError, PgcastError, ResolutionError, StatementRejectedError
from pgcast.model import ModuleInfo, QueryInfo, ResolvedModule, ResolvedQuery, ShapeAnnotation
from pgcast.sql.types import FieldInfo, Shape, TypeRef, TypeRegistry
from pgcast.string_case import snake2camel

if t.TYPE_CHECKING:
    from pgcast.sql.catalog import StatementDescription
    from pgcast.sql.inspector import CatalogInspector, DescribeOutcome
    from pgcast.sql.nullability import NullabilityPolicy

_LOGGER = logging.getLogger(__name__)

_ANONYMOUS_COLUMN: t.Final[str] = "?column?"


@dataclass(frozen=True)
class Resolution:
    registry: TypeRegistry
    modules: t.Sequence[ResolvedModule]
    errors: t.Sequence[PgcastError]


class TypeResolver:
    """
    Builds the canonical type registry of a run and the resolved signature of every query.

    Modules and their queries are processed in the given order, so the registry content (including minted names) only
    depends on the input. Errors of a query are collected and the query is skipped, fatal errors propagate.
    """

    def __init__(self, inspector: CatalogInspector, nullability: NullabilityPolicy) -> None:
        self.__inspector = inspector
        self.__nullability = nullability

    def resolve(
        self,
        modules: t.Sequence[ModuleInfo],
        descriptions: t.Sequence[t.Sequence[DescribeOutcome]],
        registry: t.Optional[TypeRegistry] = None,
    ) -> Resolution:
        registry = registry if registry is not None else TypeRegistry()
        resolved_modules = list[ResolvedModule]()
        errors = list[PgcastError]()

        for module, module_descriptions in zip(modules, descriptions):
            queries = list[ResolvedQuery]()

            for query, description in zip(module.queries, module_descriptions):
                if isinstance(description, StatementRejectedError):
                    errors.append(description)
                    continue

                try:
                    queries.append(self.__resolve_query(query, description, registry))

                except FatalError:
                    raise

                except PgcastError as err:
                    errors.append(err.at(module.source.path, query.span))

            resolved_modules.append(ResolvedModule(source=module.source, queries=tuple(queries)))
            _LOGGER.info("resolved %d of %d queries in %s", len(queries), len(module.queries), module.source.path)

        return Resolution(registry=registry, modules=tuple(resolved_modules), errors=tuple(errors))

    def __resolve_query(
        self,
        info: QueryInfo,
        description: StatementDescription,
        registry: TypeRegistry,
    ) -> ResolvedQuery:
        if len(description.params) != len(info.params):
            msg = (
                f"query `{info.name}` declares {len(info.params)} parameter(s), "
                f"but the database reports {len(description.params)}"
            )
            raise ResolutionError(msg)

        for oid in description.params:
            self.__inspector.load_type(oid, registry)

        params = tuple(
            FieldInfo(name=param.ident, type_=TypeRef(oid=oid, nullable=param.nullable))
            for param, oid in zip(info.params, description.params)
        )

        columns: tuple[FieldInfo, ...] = ()
        if info.cardinality != "execute":
            if not description.columns:
                msg = f"query `{info.name}` returns no columns, use `execute` cardinality"
                raise ResolutionError(msg)

            if len(description.columns) > 1:
                self.__check_column_names(info, [column.name for column in description.columns])

            for column in description.columns:
                self.__inspector.load_type(column.type_oid, registry)

            nullable = self.__nullability.infer(info.statement, description.columns)
            columns = tuple(
                FieldInfo(name=column.name, type_=TypeRef(oid=column.type_oid, nullable=is_nullable))
                for column, is_nullable in zip(description.columns, nullable)
            )

        if info.row_annotation is not None:
            columns = self.__apply_row_markers(info, info.row_annotation, columns)

        if info.params_annotation is not None:
            self.__check_inner_markers(info, info.params_annotation, params, registry)

        if info.row_annotation is not None:
            self.__check_inner_markers(info, info.row_annotation, columns, registry)

        return ResolvedQuery(
            info=info,
            params=params,
            columns=columns,
            params_type=self.__name_params(info, params, registry),
            row_type=self.__name_row(info, columns, registry),
        )

    def __name_params(self, info: QueryInfo, params: Shape, registry: TypeRegistry) -> t.Optional[str]:
        name = info.params_annotation.name if info.params_annotation is not None else None

        if not params:
            if name is not None:
                msg = f"query `{info.name}` has no parameters, type `{name}` can't be used"
                raise ResolutionError(msg)

            return None

        if name is not None:
            return registry.declare_shape("params", params, name)

        return registry.intern_shape("params", params, f"{snake2camel(info.name)}Params")

    def __name_row(self, info: QueryInfo, columns: Shape, registry: TypeRegistry) -> t.Optional[str]:
        name = info.row_annotation.name if info.row_annotation is not None else None

        if name is not None:
            if not columns:
                msg = f"query `{info.name}` returns no rows, type `{name}` can't be used"
                raise ResolutionError(msg)

            if len(columns) == 1:
                # a named row is generated even for a single column
                self.__check_column_names(info, [columns[0].name])

            return registry.declare_shape("row", columns, name)

        if len(columns) <= 1:
            return None

        return registry.intern_shape("row", columns, f"{snake2camel(info.name)}Row")

    def __apply_row_markers(self, info: QueryInfo, annotation: ShapeAnnotation, columns: Shape) -> Shape:
        names = {column.name for column in columns}
        unknown = sorted(marker.name for marker in annotation.fields if marker.name not in names)
        if unknown:
            msg = f"query `{info.name}` returns no columns named {', '.join(f'`{name}`' for name in unknown)}"
            raise ResolutionError(msg)

        # markers can only make a column nullable
        nullable = {marker.name for marker in annotation.fields if marker.nullable}
        return tuple(
            replace(column, type_=replace(column.type_, nullable=True)) if column.name in nullable else column
            for column in columns
        )

    def __check_inner_markers(
        self,
        info: QueryInfo,
        annotation: ShapeAnnotation,
        fields: Shape,
        registry: TypeRegistry,
    ) -> None:
        for field in fields:
            marker = annotation.find(field.name)
            if marker is not None and marker.inner_nullable and registry.get(field.type_.oid).kind != "array":
                msg = f"`{field.name}[?]` of query `{info.name}` marks array elements, but the field is not an array"
                raise ResolutionError(msg)

    def __check_column_names(self, info: QueryInfo, names: t.Sequence[str]) -> None:
        seen = set[str]()

        for i, name in enumerate(names, start=1):
            if name == _ANONYMOUS_COLUMN:
                msg = f"column {i} of query `{info.name}` has no name, add an alias (`... as name`)"
                raise ResolutionError(msg)

            if not name.isidentifier() or keyword.iskeyword(name) or name.startswith("_"):
                msg = f"column `{name}` of query `{info.name}` is not a valid python identifier, add an alias"
                raise ResolutionError(msg)

            if name in seen:
                msg = f"column `{name}` of query `{info.name}` is returned more than once, add an alias"
                raise ResolutionError(msg)

            seen.add(name)
