from __future__ import annotations

import io
import typing as t
from dataclasses import replace

from astlab.types import NamedTypeInfo, TypeAnnotator, TypeInfo, predef

from pgcast.generator.mapper import PyTypeMapper

if t.TYPE_CHECKING:
    from pgcast.model import ResolvedModule, ResolvedQuery
    from pgcast.sql.types import FieldInfo, TypeRegistry


class Printer:
    """Human readable listing of resolved modules and their query signatures."""

    def __init__(self, dest: t.IO[str], annotator: TypeAnnotator, registry: TypeRegistry) -> None:
        self.__dest = dest
        self.__annotator = annotator
        self.__registry = registry

    def print_module(self, module: ResolvedModule) -> None:
        self.__write_line(f"* {module.source.module} ({module.source.path})")

        name = module.source.module
        mapper = PyTypeMapper(self.__registry, lambda oid: NamedTypeInfo.build(name, self.__registry.name_of(oid)))

        for query in module.queries:
            self.__write_query(name, mapper, query)

        self.__write_new_line()

    def __write_query(self, module: str, mapper: PyTypeMapper, query: ResolvedQuery) -> None:
        with io.StringIO() as ss:
            ss.write(f"* {query.info.name}(")
            if query.params_type is not None:
                ss.write(f"params: {self.__annotator.annotate(NamedTypeInfo.build(module, query.params_type))}")
            ss.write(f") -> {self.__annotator.annotate(self.__returns(module, mapper, query))}")

            self.__write_line(ss.getvalue(), 1)

        self.__write_fields(mapper, "params", query.params, 2)
        if query.row_type is not None:
            self.__write_fields(mapper, "columns", query.columns, 2)

    def __write_fields(self, mapper: PyTypeMapper, title: str, fields: t.Sequence[FieldInfo], indent: int) -> None:
        if not fields:
            return

        self.__write_line(f"{title}:", indent)
        for field in fields:
            self.__write_line(f"{field.name}: {self.__annotator.annotate(mapper.map(field.type_))}", indent + 1)

    def __returns(self, module: str, mapper: PyTypeMapper, query: ResolvedQuery) -> TypeInfo:
        cardinality = query.info.cardinality
        if cardinality == "execute":
            return predef().int

        row = (
            NamedTypeInfo.build(module, query.row_type)
            if query.row_type is not None
            else mapper.map(query.columns[0].type_)
        )

        if cardinality == "one":
            return row

        elif cardinality == "maybe-one":
            return replace(predef().optional, type_params=(row,))

        elif cardinality == "many":
            return replace(predef().iterator, type_params=(row,))

        else:
            t.assert_never(cardinality)

    def __write_line(self, line: str, indent: int = 0) -> None:
        self.__write_indent(indent)
        self.__dest.write(line)
        self.__write_new_line()

    def __write_indent(self, indent: int) -> None:
        self.__dest.write(" " * 4 * indent)

    def __write_new_line(self) -> None:
        self.__dest.write("\n")
