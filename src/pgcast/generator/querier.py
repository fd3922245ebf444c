from __future__ import annotations

import typing as t
from functools import cached_property
from pathlib import Path

from astlab import package
from astlab.types import NamedTypeInfo, TypeInfo, predef
from typing_extensions import override

from pgcast.generator.abc import SQLCodeGenerator
from pgcast.generator.mapper import PyTypeMapper
from pgcast.generator.model import CodeGeneratorResult, CodegenSettings, SQLCodeGeneratorContext
from pgcast.model import ResolvedModule
from pgcast.sql.types import NAMED_KINDS, TypeId, iter_dependencies
from pgcast.string_case import camel2snake, to_identifier

if t.TYPE_CHECKING:
    from astlab.abc import Expr
    from astlab.abc import TypeRef as ASTTypeRef
    from astlab.builder import ClassScopeASTBuilder, ModuleASTBuilder, PackageASTBuilder, ScopeASTBuilder

    from pgcast.model import Cardinality, ResolvedQuery
    from pgcast.sql.types import CompositeType, DomainType, EnumType, FieldInfo, PgType, TypeRef, TypeRegistry

_HEADER: t.Final[str] = "# Code generated by pgcast. DO NOT EDIT."
_RUNTIME_FUNCS: t.Final[t.Mapping[Cardinality, str]] = {
    "execute": "execute",
    "one": "fetch_one",
    "maybe-one": "fetch_maybe_one",
    "many": "fetch_many",
}


class QuerierCodeGenerator(SQLCodeGenerator):
    """
    Generates one python module per `.sql` file.

    A module contains python definitions of all enums, domains and composites its queries reference, frozen
    dataclasses for parameters and rows, decoders and the `AsyncQuerier` (asyncpg) / `SyncQuerier` (psycopg)
    accessor classes. The output only depends on the context, so it is byte identical between runs.
    """

    @override
    def generate(self, context: SQLCodeGeneratorContext) -> CodeGeneratorResult:
        sources = {Path(*module.source.module.split(".")).with_suffix(".py"): module for module in context.modules}

        with package(to_identifier(context.output.name, "generated")) as pkg:
            self.__build_package(
                pkg=pkg,
                context=context,
                modules=[(module.source.module.split("."), module) for module in context.modules],
            )

        files = list[CodeGeneratorResult.File]()
        for module, content in pkg.render():
            # rendered paths start with the root package directory, which is the output directory itself
            path = Path(*Path(module.file).parts[1:])
            source = sources.get(path)

            header = [_HEADER] if source is None else [_HEADER, f"# source: {source.source.path.name}"]
            body = f"\n{content}" if content.strip() else ""

            files.append(
                CodeGeneratorResult.File(path=context.output.joinpath(path), content="\n".join(header) + "\n" + body),
            )

        return CodeGeneratorResult(files=sorted(files, key=lambda file: file.path))

    def __build_package(
        self,
        pkg: PackageASTBuilder,
        context: SQLCodeGeneratorContext,
        modules: t.Sequence[tuple[t.Sequence[str], ResolvedModule]],
    ) -> None:
        with pkg.init():
            pass

        nested = dict[str, list[tuple[t.Sequence[str], ResolvedModule]]]()

        for parts, module in modules:
            if len(parts) == 1:
                with pkg.module(parts[0]) as mod:
                    _ModuleBuilder(context.registry, module, context.settings).build(mod)

            else:
                nested.setdefault(parts[0], []).append((parts[1:], module))

        for name, items in nested.items():
            with pkg.sub(name) as sub:
                self.__build_package(sub, context, items)


class _ModuleBuilder:
    def __init__(self, registry: TypeRegistry, module: ResolvedModule, settings: CodegenSettings) -> None:
        self.__registry = registry
        self.__module = module
        self.__settings = settings
        self.__named = dict[TypeId, TypeInfo]()
        self.__shapes = dict[str, TypeInfo]()
        self.__mapper = PyTypeMapper(registry, self.__named.__getitem__)
        self.__conversions = dict[TypeId, bool]()
        self.__constants = set[str]()

    def build(self, mod: ModuleASTBuilder) -> None:
        types = self.__mapper.walk(self.__collect_oids())
        named = [type_ for type_ in types if type_.kind in NAMED_KINDS]

        self.__build_named_types(mod, named)
        self.__build_shapes(mod)
        self.__build_decoders(mod, named)
        statements = self.__build_statements(mod)

        if self.__settings.gen_async:
            self.__build_async_querier(mod, statements)

        if self.__settings.gen_sync:
            self.__build_sync_querier(mod, statements, types)

    def __collect_oids(self) -> t.Sequence[TypeId]:
        oids = dict[TypeId, None]()
        for query in self.__module.queries:
            for field in (*query.params, *query.columns):
                oids.setdefault(field.type_.oid, None)

        return list(oids)

    def __build_named_types(self, mod: ModuleASTBuilder, types: t.Sequence[PgType]) -> None:
        for type_ in types:
            if type_.kind == "enum":
                self.__build_enum(mod, type_)

            elif type_.kind == "domain":
                self.__build_domain(mod, type_)

            elif type_.kind == "composite":
                self.__build_composite(mod, type_)

            else:
                msg = "unexpected named type"
                raise TypeError(msg, type_)

    def __build_enum(self, mod: ModuleASTBuilder, type_: EnumType) -> None:
        name = self.__registry.name_of(type_.oid)

        with (
            mod.class_def(name)
            .inherits(self.__enum)
            .docstring(f"PostgreSQL enum `{type_.schema}.{type_.name}`.") as enum_def
        ):
            members = _unique_names(to_identifier(label).upper() for label in type_.labels)
            for member, label in zip(members, type_.labels):
                enum_def.assign_stmt(target=member, value=enum_def.const(label))

        self.__named[type_.oid] = enum_def.info

    def __build_domain(self, mod: ModuleASTBuilder, type_: DomainType) -> None:
        # values of a domain are values of its base type, the alias only names them
        mod.assign_stmt(
            target=self.__registry.name_of(type_.oid),
            value=mod.type_ref(self.__mapper.map_type(type_.base.oid)),
        )

    def __build_composite(self, mod: ModuleASTBuilder, type_: CompositeType) -> None:
        name = self.__registry.name_of(type_.oid)

        with (
            mod.class_def(name)
            .dataclass(frozen=True)
            .docstring(f"PostgreSQL composite type `{type_.schema}.{type_.name}`.") as class_def
        ):
            for attr, field in zip(_field_names(type_.fields), type_.fields):
                class_def.field_def(attr, self.__mapper.map(field.type_))

        self.__named[type_.oid] = class_def.info

    def __build_shapes(self, mod: ModuleASTBuilder) -> None:
        for query in self.__module.queries:
            for type_name, fields in ((query.params_type, query.params), (query.row_type, query.columns)):
                if type_name is None or type_name in self.__shapes:
                    continue

                with mod.class_def(type_name).dataclass(frozen=True) as class_def:
                    for attr, field in zip(_field_names(fields), fields):
                        class_def.field_def(attr, self.__mapper.map(field.type_))

                self.__shapes[type_name] = class_def.info

    def __build_decoders(self, mod: ModuleASTBuilder, types: t.Sequence[PgType]) -> None:
        for type_ in types:
            if not self.__needs_conversion(type_.oid):
                continue

            returns = self.__mapper.map_type(type_.oid)

            with (
                mod.func_def(_decoder_name(self.__registry.name_of(type_.oid)))
                .arg("value", predef().any)
                .returns(returns)
            ):
                if type_.kind == "enum":
                    mod.return_stmt(
                        mod.call(self.__runtime("decode_enum")).arg(mod.type_ref(returns)).arg(mod.attr("value"))
                    )

                elif type_.kind == "domain":
                    mod.return_stmt(self.__decode(mod, type_.base, mod.attr("value")))

                elif type_.kind == "composite":
                    mod.return_stmt(self.__build_constructor(mod, returns, "value", type_.fields))

        built = set[str]()
        for query in self.__module.queries:
            if query.row_type is None or query.row_type in built:
                continue

            built.add(query.row_type)
            row_info = self.__shapes[query.row_type]

            with mod.func_def(_decoder_name(query.row_type)).arg("row", predef().any).returns(row_info):
                mod.return_stmt(self.__build_constructor(mod, row_info, "row", query.columns))

    def __build_constructor(
        self,
        scope: ScopeASTBuilder,
        info: TypeInfo,
        source: str,
        fields: t.Sequence[FieldInfo],
    ) -> Expr:
        return scope.call(
            func=info,
            kwargs={
                attr: self.__decode(scope, field.type_, scope.attr(source).index(scope.const(i)))
                for i, (attr, field) in enumerate(zip(_field_names(fields), fields))
            },
        )

    def __build_statements(self, mod: ModuleASTBuilder) -> t.Mapping[str, tuple[str, str]]:
        statements = dict[str, tuple[str, str]]()

        for query in self.__module.queries:
            base = self.__constant(camel2snake(query.info.name).upper())
            async_name = f"_{base}_SQL"
            sync_name = f"_{base}_SYNC_SQL"

            if self.__settings.gen_async:
                mod.assign_stmt(target=async_name, value=mod.const(query.info.statement))

            if self.__settings.gen_sync:
                mod.assign_stmt(target=sync_name, value=mod.const(query.info.sync_statement))

            statements[query.info.name] = (async_name, sync_name)

        return statements

    def __build_async_querier(self, mod: ModuleASTBuilder, statements: t.Mapping[str, tuple[str, str]]) -> None:
        with mod.class_def("AsyncQuerier").docstring("Queries over an asyncpg connection or pool.") as querier:
            with querier.init_self_attrs_def({"conn": self.__runtime("AsyncExecutor")}):
                pass

            for query in self.__module.queries:
                self.__build_method(querier, query, statements[query.info.name][0], is_async=True)

    def __build_sync_querier(
        self,
        mod: ModuleASTBuilder,
        statements: t.Mapping[str, tuple[str, str]],
        types: t.Sequence[PgType],
    ) -> None:
        enums = [type_ for type_ in types if type_.kind == "enum"]
        composites = [type_ for type_ in types if type_.kind == "composite"]
        ranges = [type_ for type_ in types if type_.kind == "range" and type_.schema != "pg_catalog"]

        with mod.class_def("SyncQuerier").docstring("Queries over a psycopg connection.") as querier:
            with querier.init_def().arg("conn", self.__runtime("SyncExecutor")) as init_def:
                init_def.assign_stmt(target=init_def.self_attr("conn"), value=init_def.attr("conn"))

                if enums or composites or ranges:
                    # psycopg loads unknown types as text, so user defined types are registered on the connection
                    init_def.stmt(
                        init_def.call(self.__runtime("register_sync_types"))
                        .arg(init_def.attr("conn"))
                        .kwarg("enums", self.__build_type_list(init_def, enums))
                        .kwarg("composites", self.__build_type_list(init_def, composites))
                        .kwarg("ranges", self.__build_type_list(init_def, ranges))
                    )

            for query in self.__module.queries:
                self.__build_method(querier, query, statements[query.info.name][1], is_async=False)

    def __build_type_list(self, scope: ScopeASTBuilder, types: t.Sequence[PgType]) -> Expr:
        return scope.list_expr(
            [scope.tuple_expr(scope.const(type_.schema), scope.const(type_.name)) for type_ in types],
        )

    def __build_method(
        self,
        querier: ClassScopeASTBuilder,
        query: ResolvedQuery,
        statement: str,
        *,
        is_async: bool,
    ) -> None:
        info = query.info
        cardinality = info.cardinality
        suffix = "_async" if is_async else ""

        method_def = querier.method_def(info.name)
        if query.params_type is not None:
            method_def = method_def.arg("params", self.__shapes[query.params_type])

        returns = self.__build_returns(querier, query, is_async=is_async)

        with method_def.returns(returns).async_(is_async=is_async) as method:
            call = (
                method.call(self.__runtime(f"{_RUNTIME_FUNCS[cardinality]}{suffix}"))
                .arg(method.self_attr("conn"))
                .arg(method.const(info.name))
                .arg(method.attr(statement))
                .arg(method.tuple_expr(*self.__build_args(method, query, is_async=is_async)))
            )

            if cardinality == "execute":
                method.return_stmt(call.await_() if is_async else call)

            elif cardinality == "one":
                method.assign_stmt(target="row", value=call.await_() if is_async else call)
                method.return_stmt(self.__build_row_decode(method, query))

            elif cardinality == "maybe-one":
                method.assign_stmt(target="row", value=call.await_() if is_async else call)
                method.return_stmt(
                    method.ternary_not_none_expr(self.__build_row_decode(method, query), method.attr("row")),
                )

            elif cardinality == "many":
                loop = method.for_stmt("row", call)
                with (loop.async_() if is_async else loop).body():
                    method.yield_stmt(self.__build_row_decode(method, query))

            else:
                t.assert_never(cardinality)

    def __build_returns(self, scope: ScopeASTBuilder, query: ResolvedQuery, *, is_async: bool) -> ASTTypeRef:
        cardinality = query.info.cardinality
        if cardinality == "execute":
            return predef().int

        row = self.__shapes[query.row_type] if query.row_type is not None else self.__mapper.map(query.columns[0].type_)

        if cardinality == "one":
            return row

        elif cardinality == "maybe-one":
            return scope.optional_type(row)

        elif cardinality == "many":
            return scope.iterator_type(row, is_async=is_async)

        else:
            t.assert_never(cardinality)

    def __build_row_decode(self, scope: ScopeASTBuilder, query: ResolvedQuery) -> Expr:
        if query.row_type is not None:
            return scope.attr(_decoder_name(query.row_type)).call().arg(scope.attr("row"))

        return self.__decode(scope, query.columns[0].type_, scope.attr("row").index(scope.const(0)))

    def __build_args(self, scope: ScopeASTBuilder, query: ResolvedQuery, *, is_async: bool) -> t.Sequence[Expr]:
        attrs = dict(zip((param.index for param in query.info.params), _field_names(query.params)))
        refs = {param.index: field.type_ for param, field in zip(query.info.params, query.params)}
        indices = [param.index for param in query.info.params] if is_async else list(query.info.placeholder_order)
        encode = self.__runtime("encode_async" if is_async else "encode_sync")

        return [
            scope.call(encode).arg(scope.attr("params", attrs[index]))
            if self.__needs_conversion(refs[index].oid)
            else scope.attr("params", attrs[index])
            for index in indices
        ]

    def __decode(self, scope: ScopeASTBuilder, ref: TypeRef, value: Expr) -> Expr:
        """Expression, that converts a driver `value` of the referenced type."""

        if not self.__needs_conversion(ref.oid):
            return value

        type_ = self.__registry.get(ref.oid)

        if type_.kind == "array" or type_.kind == "range":
            call = scope.call(self.__runtime(f"decode_{type_.kind}")).arg(value)
            decoder = self.__decoder(scope, type_.element.oid)
            return call.arg(decoder) if decoder is not None else call

        decoder = scope.attr(_decoder_name(self.__registry.name_of(ref.oid)))
        if ref.nullable:
            return scope.call(self.__runtime("decode_optional")).arg(value).arg(decoder)

        return decoder.call().arg(value)

    def __decoder(self, scope: ScopeASTBuilder, oid: TypeId) -> t.Optional[Expr]:
        """Expression of a callable, that converts a non null driver value of the type."""

        if not self.__needs_conversion(oid):
            return None

        type_ = self.__registry.get(oid)

        if type_.kind == "array" or type_.kind == "range":
            func = scope.attr(self.__runtime(f"decode_{type_.kind}"))
            element = self.__decoder(scope, type_.element.oid)
            return scope.call(self.__partial).arg(func).kwarg("decoder", element) if element is not None else func

        return scope.attr(_decoder_name(self.__registry.name_of(oid)))

    def __needs_conversion(self, oid: TypeId) -> bool:
        needs = self.__conversions.get(oid)
        if needs is None:
            type_ = self.__registry.get(oid)
            needs = self.__conversions[oid] = type_.kind in {"enum", "composite", "range"} or any(
                self.__needs_conversion(dep.oid) for dep in iter_dependencies(type_)
            )

        return needs

    def __constant(self, base: str) -> str:
        name = to_identifier(base, "Q").upper()
        candidate = name
        suffix = 2
        while candidate in self.__constants:
            candidate = f"{name}_{suffix}"
            suffix += 1

        self.__constants.add(candidate)
        return candidate

    def __runtime(self, name: str) -> NamedTypeInfo:
        return NamedTypeInfo.build("pgcast.runtime", name)

    @cached_property
    def __enum(self) -> NamedTypeInfo:
        return NamedTypeInfo.build("enum", "Enum")

    @cached_property
    def __partial(self) -> NamedTypeInfo:
        return NamedTypeInfo.build("functools", "partial")


def _decoder_name(type_name: str) -> str:
    return f"_decode_{camel2snake(type_name)}"


def _field_names(fields: t.Sequence[FieldInfo]) -> t.Sequence[str]:
    return _unique_names(to_identifier(field.name, "f") for field in fields)


def _unique_names(names: t.Iterable[str]) -> t.Sequence[str]:
    result = list[str]()
    seen = set[str]()

    for name in names:
        candidate = name
        suffix = 2
        while candidate in seen:
            candidate = f"{name}_{suffix}"
            suffix += 1

        seen.add(candidate)
        result.append(candidate)

    return result
