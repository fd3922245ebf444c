from __future__ import annotations

__all__ = [
    "CARDINALITIES",
    "Cardinality",
    "FieldMarker",
    "ModuleInfo",
    "ParamInfo",
    "QueryInfo",
    "ResolvedModule",
    "ResolvedQuery",
    "ShapeAnnotation",
    "SourceFile",
    "Span",
]

import typing as t
from dataclasses import dataclass
from pathlib import Path

from pgcast.string_case import to_identifier

if t.TYPE_CHECKING:
    from pgcast.sql.types import FieldInfo

Cardinality = t.Literal["execute", "one", "maybe-one", "many"]
CARDINALITIES: t.Final[t.Sequence[Cardinality]] = t.get_args(Cardinality)


@dataclass(frozen=True)
class Span:
    start: int
    end: int
    line: int
    column: int


@dataclass(frozen=True)
class SourceFile:
    path: Path
    module: str
    text: str

    @classmethod
    def load(cls, root: Path, path: Path) -> SourceFile:
        """Read the file and derive a dotted module name from its path relative to `root`."""

        relative = path.relative_to(root).with_suffix("")
        return cls(
            path=path,
            module=".".join(to_identifier(part, "m") for part in relative.parts),
            text=path.read_text(),
        )


@dataclass(frozen=True)
class ParamInfo:
    index: int
    name: t.Optional[str]
    nullable: bool
    span: Span

    @property
    def ident(self) -> str:
        return self.name if self.name is not None else f"arg{self.index}"


@dataclass(frozen=True)
class FieldMarker:
    """Nullability marker of a field: `name?` (nullable value) or `name[?]` (nullable array elements)."""

    name: str
    nullable: bool
    inner_nullable: bool
    span: Span


@dataclass(frozen=True)
class ShapeAnnotation:
    """
    Annotation of the params or the row type of a query.

    `name` is set when the query refers to a type by name (`--! get_user UserId : User : one`), fields hold the
    markers given inline (`--! get_user (id?) : one`) or by the `--: User(email?)` declaration of that name.
    """

    name: t.Optional[str]
    fields: t.Sequence[FieldMarker]
    span: Span

    def find(self, name: str) -> t.Optional[FieldMarker]:
        return next((field for field in self.fields if field.name == name), None)


@dataclass(frozen=True)
class QueryInfo:
    name: str
    cardinality: Cardinality
    statement: str
    sync_statement: str
    # parameter index of each `%s` placeholder of the sync statement
    placeholder_order: t.Sequence[int]
    params: t.Sequence[ParamInfo]
    span: Span
    body_span: Span
    params_annotation: t.Optional[ShapeAnnotation] = None
    row_annotation: t.Optional[ShapeAnnotation] = None


@dataclass(frozen=True)
class ModuleInfo:
    source: SourceFile
    queries: t.Sequence[QueryInfo]


@dataclass(frozen=True)
class ResolvedQuery:
    info: QueryInfo
    params: t.Sequence[FieldInfo]
    columns: t.Sequence[FieldInfo]
    params_type: t.Optional[str]
    row_type: t.Optional[str]


@dataclass(frozen=True)
class ResolvedModule:
    source: SourceFile
    queries: t.Sequence[ResolvedQuery]
