from __future__ import annotations

import bisect
import keyword
import re
import typing as t
from dataclasses import dataclass

from sqlglot import Dialect
from sqlglot.errors import TokenError
from sqlglot.tokens import Token, TokenType

from pgcast.diagnostics import AnnotationSyntaxError
from pgcast.model import (
    CARDINALITIES,
    Cardinality,
    FieldMarker,
    ModuleInfo,
    ParamInfo,
    QueryInfo,
    ShapeAnnotation,
    SourceFile,
    Span,
)

_DIRECTIVE_PREFIX: t.Final[str] = "--!"
_DECLARATION_PREFIX: t.Final[str] = "--:"
# a directive or a declaration always starts a new line
_ANNOTATION_LINE = re.compile(r"^[ \t]*(?=--[!:])", re.MULTILINE)
_DECLARATION = re.compile(r"--:\s*(?P<name>[^\s(]*)\s*(?:\((?P<fields>[^()]*)\))?\s*")
_HEAD = re.compile(r"\s*(?P<name>[^\s(]*)\s*(?P<shape>\S.*?)?\s*", re.DOTALL)
_SHAPE = re.compile(r"\((?P<fields>[^()]*)\)|(?P<name>[^\s()]+)")
_IDENT = re.compile(r"[A-Za-z][A-Za-z0-9_]*")
_MARKER = re.compile(r"\s*(?P<name>[A-Za-z][A-Za-z0-9_]*)(?P<nullable>\?)?(?P<inner>\[\?\])?\s*")
_PLACEHOLDER = re.compile(r"\$[0-9]+|:[A-Za-z][A-Za-z0-9_]*")
_PLACEHOLDER_PREFIXES: t.Final[frozenset[TokenType]] = frozenset({TokenType.PARAMETER, TokenType.COLON})


@dataclass(frozen=True)
class ParseResult:
    module: t.Optional[ModuleInfo]
    errors: t.Sequence[AnnotationSyntaxError]


@dataclass(frozen=True)
class _Directive:
    name: str
    cardinality: Cardinality
    params: t.Optional[ShapeAnnotation]
    row: t.Optional[ShapeAnnotation]
    span: Span


@dataclass(frozen=True)
class _Placeholder:
    start: int
    end: int
    text: str


class _LineIndex:
    def __init__(self, text: str) -> None:
        self.__line_starts = [0, *(i + 1 for i, char in enumerate(text) if char == "\n")]

    def span(self, start: int, end: int) -> Span:
        line = bisect.bisect_right(self.__line_starts, start)
        return Span(start=start, end=end, line=line, column=start - self.__line_starts[line - 1] + 1)


class AnnotationParser:
    """
    Extracts annotated queries from a `.sql` file.

    Each query is introduced by a directive line, followed by a statement terminated with `;`::

        --! get_user : one
        select id, name, email from users where id = :user_id;

        --! set_email (email?) : execute
        update users set email = :email where id = :user_id;

    A directive may name its params and row types and mark nullable fields. Markers of a named type are declared
    once with `--:` and apply to every query, that refers to the name::

        --: User(email?)

        --! find_user UserLookup : User : maybe-one
        select id, name, email from users where name = :name;

    Statements are not parsed, they are only tokenized to find the statement end and the placeholders.
    """

    def __init__(self, dialect: str = "postgres") -> None:
        self.__dialect = Dialect.get_or_raise(dialect)

    def parse(self, source: SourceFile) -> ParseResult:
        state = _ParseState(source, self.__dialect)
        state.run()

        errors = sorted(state.errors, key=lambda error: error.span.start if error.span is not None else 0)

        return ParseResult(
            module=ModuleInfo(source=source, queries=tuple(state.queries)) if not errors else None,
            errors=tuple(errors),
        )


class _ParseState:
    def __init__(self, source: SourceFile, dialect: Dialect) -> None:
        self.__source = source
        self.__text = source.text
        self.__dialect = dialect
        self.__lines = _LineIndex(source.text)
        self.__names = dict[str, Span]()
        self.__declarations = dict[str, ShapeAnnotation]()
        self.queries = list[QueryInfo]()
        self.errors = list[AnnotationSyntaxError]()

    def run(self) -> None:
        starts = [match.end() for match in _ANNOTATION_LINE.finditer(self.__text)]
        ends = [*starts[1:], len(self.__text)]

        self.__try(self.__expect_blank, 0, starts[0] if starts else len(self.__text))

        # types can be referenced before their declaration
        for start in starts:
            if self.__text.startswith(_DECLARATION_PREFIX, start):
                self.__try(self.__parse_declaration, start, self.__line_end(start))

        for start, end in zip(starts, ends):
            line_end = self.__line_end(start)

            if self.__text.startswith(_DECLARATION_PREFIX, start):
                self.__try(self.__expect_blank, line_end, end)

            else:
                self.__try(self.__parse_query, start, line_end, end)

    def __try(self, func: t.Callable[..., None], *args: int) -> None:
        try:
            func(*args)

        except AnnotationSyntaxError as err:
            self.errors.append(err)

    def __parse_query(self, start: int, line_end: int, end: int) -> None:
        directive = self.__parse_directive(start, line_end)
        self.queries.append(self.__parse_statement(directive, min(line_end + 1, end), end))

    def __line_end(self, pos: int) -> int:
        end = self.__text.find("\n", pos)
        return end if end != -1 else len(self.__text)

    def __expect_blank(self, start: int, end: int) -> None:
        """Only whitespace and comments are allowed outside of annotations and statements."""

        try:
            tokens = self.__dialect.tokenize(self.__text[start:end])

        except TokenError as err:
            raise self.__stray_text(start, end) from err

        if tokens:
            raise self.__stray_text(start + tokens[0].start, end)

    def __stray_text(self, start: int, end: int) -> AnnotationSyntaxError:
        offset = len(self.__text[start:end]) - len(self.__text[start:end].lstrip())
        return self.__error(
            f"expected a query directive `{_DIRECTIVE_PREFIX} name : cardinality`",
            start + offset,
            self.__line_end(start + offset),
        )

    def __parse_declaration(self, start: int, end: int) -> None:
        line = self.__text[start:end].rstrip()
        match = _DECLARATION.fullmatch(line)
        if match is None:
            raise self.__error("malformed type declaration, expected `--: Name(field?, ...)`", start, start + len(line))

        name = match.group("name")
        name_span = self.__span(start + match.start("name"), start + match.end("name"))
        self.__check_type_name(name, name_span)

        declared = self.__declarations.get(name)
        if declared is not None:
            msg = f"duplicate type declaration `{name}`, first declared at line {declared.span.line}"
            raise self.__error_at(msg, name_span)

        fields = match.group("fields")
        self.__declarations[name] = ShapeAnnotation(
            name=name,
            fields=self.__parse_markers(fields, start + match.start("fields")) if fields is not None else (),
            span=name_span,
        )

    def __parse_directive(self, start: int, end: int) -> _Directive:
        line = self.__text[start:end].rstrip()
        segments = _split_segments(line, len(_DIRECTIVE_PREFIX))
        if len(segments) not in {2, 3}:
            raise self.__error(
                f"malformed query directive, expected `{_DIRECTIVE_PREFIX} name [params] [: row] : cardinality`",
                start,
                start + len(line),
            )

        head = _HEAD.fullmatch(line, *segments[0])
        assert head is not None

        name = head.group("name")
        name_span = self.__span(start + head.start("name"), start + head.end("name"))

        if _IDENT.fullmatch(name) is None or keyword.iskeyword(name):
            msg = f"invalid query name `{name}`, expected an identifier"
            raise self.__error_at(msg, name_span)

        first = self.__names.get(name)
        if first is not None:
            msg = f"duplicate query name `{name}`, first defined at line {first.line}"
            raise self.__error_at(msg, name_span)

        self.__names[name] = name_span

        cardinality_start, cardinality_end = segments[-1]
        cardinality = line[cardinality_start:cardinality_end].strip()
        if cardinality not in CARDINALITIES:
            offset = cardinality_start + line[cardinality_start:cardinality_end].index(cardinality)
            raise self.__error(
                f"unknown cardinality `{cardinality}`, expected one of: {', '.join(CARDINALITIES)}",
                start + offset,
                start + offset + len(cardinality),
            )

        params = (
            self.__parse_shape(line, start, head.start("shape"), head.end("shape"))
            if head.group("shape") is not None
            else None
        )

        row = None
        if len(segments) == 3:
            row_start, row_end = segments[1]
            row_text = line[row_start:row_end]
            if not row_text.strip():
                msg = "missing row type annotation, expected `(column?, ...)` or a type name"
                raise self.__error(msg, start + row_start, start + row_end)

            offset = row_start + len(row_text) - len(row_text.lstrip())
            row = self.__parse_shape(line, start, offset, row_start + len(row_text.rstrip()))

        return _Directive(
            name=name,
            cardinality=t.cast("Cardinality", cardinality),
            params=params,
            row=row,
            span=self.__span(start, start + len(line)),
        )

    def __parse_shape(self, line: str, line_start: int, start: int, end: int) -> ShapeAnnotation:
        span = self.__span(line_start + start, line_start + end)

        match = _SHAPE.fullmatch(line, start, end)
        if match is None:
            msg = f"malformed type annotation `{line[start:end]}`, expected `(field?, ...)` or a type name"
            raise self.__error_at(msg, span)

        name = match.group("name")
        if name is None:
            return ShapeAnnotation(
                name=None,
                fields=self.__parse_markers(match.group("fields"), line_start + match.start("fields")),
                span=span,
            )

        self.__check_type_name(name, span)

        declared = self.__declarations.get(name)
        return ShapeAnnotation(name=name, fields=declared.fields if declared is not None else (), span=span)

    def __parse_markers(self, text: str, start: int) -> t.Sequence[FieldMarker]:
        items = text.split(",")
        # trailing comma
        if len(items) > 1 and not items[-1].strip():
            items.pop()

        markers = dict[str, FieldMarker]()
        offset = start

        for item in items:
            span = self.__span(offset, offset + len(item))
            offset += len(item) + 1

            if not item.strip() and len(items) == 1:
                break

            match = _MARKER.fullmatch(item)
            if match is None:
                msg = f"invalid field marker `{item.strip()}`, expected `name`, `name?` or `name[?]`"
                raise self.__error_at(msg, span)

            name = match.group("name")
            if name in markers:
                msg = f"duplicate field marker `{name}`"
                raise self.__error_at(msg, span)

            markers[name] = FieldMarker(
                name=name,
                nullable=match.group("nullable") is not None,
                inner_nullable=match.group("inner") is not None,
                span=span,
            )

        return tuple(markers.values())

    def __check_type_name(self, name: str, span: Span) -> None:
        if _IDENT.fullmatch(name) is None or keyword.iskeyword(name):
            msg = f"invalid type name `{name}`, expected an identifier"
            raise self.__error_at(msg, span)

    def __parse_statement(self, directive: _Directive, start: int, end: int) -> QueryInfo:
        try:
            tokens = self.__dialect.tokenize(self.__text[start:end])

        except TokenError as err:
            offset = len(self.__text[start:end]) - len(self.__text[start:end].lstrip())
            raise self.__error(
                f"can not tokenize the statement of query `{directive.name}`",
                start + offset,
                self.__line_end(start + offset),
            ) from err

        delimiter = next((i for i, token in enumerate(tokens) if token.token_type == TokenType.SEMICOLON), None)
        if delimiter is None:
            msg = f"missing `;` at the end of query `{directive.name}`"
            raise self.__error_at(msg, directive.span)

        code = tokens[:delimiter]
        if not code:
            msg = f"query `{directive.name}` has an empty statement"
            raise self.__error_at(msg, directive.span)

        rest = tokens[delimiter + 1 :]
        if rest:
            raise self.__stray_text(start + rest[0].start, end)

        return self.__build_query(
            directive=directive,
            placeholders=list(self.__iter_placeholders(code, start)),
            body_start=start + code[0].start,
            body_end=start + code[-1].end + 1,
        )

    def __iter_placeholders(self, tokens: t.Sequence[Token], base: int) -> t.Iterator[_Placeholder]:
        """Find `$1` & `:name` placeholders, the tokenizer splits them into a prefix and an adjacent token."""

        text = self.__text
        i = 0

        while i < len(tokens):
            token = tokens[i]
            start = base + token.start
            following = tokens[i + 1] if i + 1 < len(tokens) else None

            if (
                token.token_type in _PLACEHOLDER_PREFIXES
                and following is not None
                and following.start == token.end + 1
                and _PLACEHOLDER.fullmatch(text, start, base + following.end + 1) is not None
            ):
                end = base + following.end + 1
                yield _Placeholder(start=start, end=end, text=text[start:end])
                i += 2
                continue

            end = base + token.end + 1
            if _PLACEHOLDER.fullmatch(text, start, end) is not None:
                yield _Placeholder(start=start, end=end, text=text[start:end])

            i += 1

    def __build_query(
        self,
        directive: _Directive,
        placeholders: t.Sequence[_Placeholder],
        body_start: int,
        body_end: int,
    ) -> QueryInfo:
        positionals = [placeholder for placeholder in placeholders if placeholder.text.startswith("$")]
        binds = [placeholder for placeholder in placeholders if placeholder.text.startswith(":")]

        if positionals and binds:
            msg = f"query `{directive.name}` mixes positional (`$1`) and named (`:name`) parameters"
            raise self.__error(msg, binds[0].start, binds[0].end)

        markers = directive.params.fields if directive.params is not None else ()
        nullable = {marker.name for marker in markers if marker.nullable}
        params = dict[int, ParamInfo]()
        indices = list[int]()

        if binds:
            numbers = dict[str, int]()
            for placeholder in binds:
                name = placeholder.text[1:]
                index = numbers.setdefault(name, len(numbers) + 1)
                indices.append(index)
                if index not in params:
                    params[index] = ParamInfo(
                        index=index,
                        name=name,
                        nullable=name in nullable,
                        span=self.__span(placeholder.start, placeholder.end),
                    )

        else:
            first_seen = dict[int, _Placeholder]()
            for placeholder in positionals:
                index = int(placeholder.text[1:])
                indices.append(index)
                first_seen.setdefault(index, placeholder)

            for index in range(1, max(first_seen, default=0) + 1):
                first = first_seen.get(index)
                params[index] = ParamInfo(
                    index=index,
                    name=None,
                    nullable=f"arg{index}" in nullable,
                    span=self.__span(first.start, first.end) if first is not None else directive.span,
                )

        unknown = sorted({marker.name for marker in markers} - {param.ident for param in params.values()})
        if unknown:
            assert directive.params is not None
            msg = f"query `{directive.name}` has no parameters named {', '.join(f'`{name}`' for name in unknown)}"
            raise self.__error_at(msg, directive.params.span)

        statement = list[str]()
        sync_statement = list[str]()
        pos = body_start
        for placeholder, index in zip(placeholders, indices):
            chunk = self.__text[pos : placeholder.start]
            statement.append(f"{chunk}${index}")
            sync_statement.append(f"{chunk.replace('%', '%%')}%s")
            pos = placeholder.end

        tail = self.__text[pos:body_end]
        statement.append(tail)
        sync_statement.append(tail.replace("%", "%%"))

        return QueryInfo(
            name=directive.name,
            cardinality=directive.cardinality,
            statement="".join(statement),
            sync_statement="".join(sync_statement),
            placeholder_order=tuple(indices),
            params=tuple(params[index] for index in sorted(params)),
            span=directive.span,
            body_span=self.__span(body_start, body_end),
            params_annotation=directive.params,
            row_annotation=directive.row,
        )

    def __span(self, start: int, end: int) -> Span:
        return self.__lines.span(start, end)

    def __error(self, message: str, start: int, end: int) -> AnnotationSyntaxError:
        return self.__error_at(message, self.__span(start, end))

    def __error_at(self, message: str, span: Span) -> AnnotationSyntaxError:
        return AnnotationSyntaxError(message, path=self.__source.path, span=span)


def _split_segments(line: str, start: int) -> t.Sequence[tuple[int, int]]:
    """Split the directive at each `:` outside of parentheses, return `(start, end)` of every segment."""

    segments = list[tuple[int, int]]()
    depth = 0
    begin = start

    for i in range(start, len(line)):
        char = line[i]
        if char == "(":
            depth += 1

        elif char == ")":
            depth = max(depth - 1, 0)

        elif char == ":" and depth == 0:
            segments.append((begin, i))
            begin = i + 1

    segments.append((begin, len(line)))
    return segments
