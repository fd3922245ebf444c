from __future__ import annotations

import typing as t
from dataclasses import replace
from functools import cached_property

from astlab.types import NamedTypeInfo, TypeInfo, predef

from pgcast.sql.types import iter_dependencies
from pgcast.traverse import traverse_dfs_post_order

if t.TYPE_CHECKING:
    from pgcast.sql.types import PgType, TypeId, TypeRef, TypeRegistry


class PyTypeMapper:
    """
    Maps registered types to python type infos.

    Enums and composites map to the type info `named` returns for them, so the same mapping serves a module under
    construction (class definitions) and a listing (plain names). Domains are transparent and map to their base type.
    """

    def __init__(self, registry: TypeRegistry, named: t.Callable[[TypeId], TypeInfo]) -> None:
        self.__registry = registry
        self.__named = named

    def map(self, ref: TypeRef) -> TypeInfo:
        info = self.map_type(ref.oid)
        return replace(predef().optional, type_params=(info,)) if ref.nullable else info

    def map_type(self, oid: TypeId) -> TypeInfo:
        type_ = self.__registry.get(oid)

        if type_.kind == "scalar":
            return type_.py

        elif type_.kind == "enum" or type_.kind == "composite":
            return self.__named(oid)

        elif type_.kind == "domain":
            return self.map_type(type_.base.oid)

        elif type_.kind == "array":
            return replace(predef().list, type_params=(self.map(type_.element),))

        elif type_.kind == "range":
            return replace(self.__range, type_params=(self.map_type(type_.element.oid),))

        else:
            t.assert_never(type_.kind)

    def walk(self, oids: t.Sequence[TypeId]) -> t.Sequence[PgType]:
        """All types reachable from `oids`, each one after its dependencies."""

        return [
            self.__registry.get(oid)
            for oid in traverse_dfs_post_order(
                nodes=oids,
                descendants=lambda oid: [dep.oid for dep in iter_dependencies(self.__registry.get(oid))],
            )
        ]

    @cached_property
    def __range(self) -> NamedTypeInfo:
        return NamedTypeInfo.build("pgcast.runtime", "Range")
