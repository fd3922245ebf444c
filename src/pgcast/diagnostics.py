from __future__ import annotations

__all__ = [
    "AnnotationSyntaxError",
    "CatalogConsistencyError",
    "ConnectionLostError",
    "DatabaseError",
    "Diagnostics",
    "FatalError",
    "PgcastError",
    "ResolutionError",
    "StatementRejectedError",
    "UnsupportedTypeError",
]

import io
import typing as t

from typing_extensions import Self

if t.TYPE_CHECKING:
    from pathlib import Path

    from pgcast.model import Span


class PgcastError(Exception):
    """Base of all errors reported by `pgcast`, optionally attributed to a source location."""

    title: t.ClassVar[str] = "error"

    def __init__(
        self,
        message: str,
        *,
        path: t.Optional[Path] = None,
        span: t.Optional[Span] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.span = span

    def at(self, path: Path, span: t.Optional[Span]) -> Self:
        if self.path is None:
            self.path = path

        if self.span is None:
            self.span = span

        return self


class FatalError(PgcastError):
    """An error that makes the rest of the run meaningless."""


class AnnotationSyntaxError(PgcastError):
    title = "syntax error"


class DatabaseError(PgcastError):
    title = "database error"


class StatementRejectedError(DatabaseError):
    title = "statement rejected"

    def __init__(
        self,
        message: str,
        *,
        sqlstate: t.Optional[str] = None,
        detail: t.Optional[str] = None,
        hint: t.Optional[str] = None,
        path: t.Optional[Path] = None,
        span: t.Optional[Span] = None,
    ) -> None:
        super().__init__(message, path=path, span=span)
        self.sqlstate = sqlstate
        self.detail = detail
        self.hint = hint


class ConnectionLostError(DatabaseError, FatalError):
    title = "connection error"


class CatalogConsistencyError(FatalError):
    title = "catalog consistency error"


class UnsupportedTypeError(PgcastError):
    title = "unsupported type"


class ResolutionError(PgcastError):
    title = "resolution error"


class Diagnostics:
    """Collects independent errors of a run, so that all of them can be reported at once."""

    def __init__(self) -> None:
        self.__errors = list[PgcastError]()

    def __len__(self) -> int:
        return len(self.__errors)

    def __iter__(self) -> t.Iterator[PgcastError]:
        return iter(self.__errors)

    @property
    def has_errors(self) -> bool:
        return bool(self.__errors)

    def add(self, error: PgcastError) -> None:
        self.__errors.append(error)

    def extend(self, errors: t.Iterable[PgcastError]) -> None:
        self.__errors.extend(errors)

    def report(self, dest: t.IO[str], sources: t.Mapping[Path, str]) -> None:
        for error in self.__errors:
            dest.write(render_error(error, sources.get(error.path) if error.path is not None else None))
            dest.write("\n")

        if self.__errors:
            dest.write(f"found {len(self.__errors)} error(s)\n")


def render_error(error: PgcastError, text: t.Optional[str] = None) -> str:
    with io.StringIO() as ss:
        ss.write(f"{error.title}: {error.message}\n")

        if error.path is not None:
            location = str(error.path)
            if error.span is not None:
                location += f":{error.span.line}:{error.span.column}"

            ss.write(f"  --> {location}\n")

        if text is not None and error.span is not None:
            ss.write(_render_snippet(text, error.span))

        if isinstance(error, StatementRejectedError):
            if error.detail:
                ss.write(f"  detail: {error.detail}\n")
            if error.hint:
                ss.write(f"  hint: {error.hint}\n")

        cause = error.__cause__
        while cause is not None:
            ss.write(f"  caused by: {cause}\n")
            cause = cause.__cause__

        return ss.getvalue()


def _render_snippet(text: str, span: Span) -> str:
    line_start = text.rfind("\n", 0, span.start) + 1
    line_end = text.find("\n", span.start)
    if line_end == -1:
        line_end = len(text)

    line = text[line_start:line_end].rstrip("\r")
    width = max(1, min(span.end, line_end) - span.start)
    number = str(span.line)
    gutter = " " * len(number)

    return (
        f"  {gutter} |\n"
        f"  {number} | {line}\n"
        f"  {gutter} | {' ' * (span.column - 1)}{'^' * width}\n"
    )
