from __future__ import annotations

import typing as t
from dataclasses import dataclass

if t.TYPE_CHECKING:
    from pathlib import Path

    from pgcast.model import ResolvedModule
    from pgcast.sql.types import TypeRegistry


@dataclass(frozen=True, kw_only=True)
class CodegenSettings:
    gen_async: bool = True
    gen_sync: bool = True


@dataclass(frozen=True)
class SQLCodeGeneratorContext:
    registry: TypeRegistry
    modules: t.Sequence[ResolvedModule]
    output: Path
    settings: CodegenSettings = CodegenSettings()


@dataclass(frozen=True)
class CodeGeneratorResult:
    @dataclass(frozen=True)
    class File:
        path: Path
        content: str

    files: t.Sequence[File]
