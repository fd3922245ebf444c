import logging
import sys
import typing as t
from functools import cached_property
from pathlib import Path

import click
import psycopg
from astlab.types import TypeAnnotator, TypeInfo
from psycopg_pool import ConnectionPool

from pgcast.diagnostics import Diagnostics, FatalError
from pgcast.generator.model import CodegenSettings
from pgcast.model import SourceFile
from pgcast.pipeline import InspectorSettings, Pipeline
from pgcast.printer import Printer
from pgcast.sql.catalog import PsycopgCatalogClient
from pgcast.sql.types import ScalarTypeMap, parse_py_type

T = t.TypeVar("T")

_LOG_LEVELS: t.Final[t.Sequence[str]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class CLIContext:
    def __init__(
        self,
        base: click.Context,
        source: Path,
        url: str,
        concurrency: int,
        types: t.Sequence[tuple[str, TypeInfo]],
    ) -> None:
        self.base = base
        self.source: t.Final[Path] = source
        self.url: t.Final[str] = url
        self.concurrency: t.Final[int] = concurrency
        self.types: t.Final[t.Sequence[tuple[str, TypeInfo]]] = types

    @cached_property
    def root(self) -> Path:
        return self.source if self.source.is_dir() else self.source.parent

    @cached_property
    def sources(self) -> t.Sequence[SourceFile]:
        paths = sorted(self.source.rglob("*.sql")) if self.source.is_dir() else [self.source]
        return [SourceFile.load(self.root, path) for path in paths]

    @cached_property
    def pool(self) -> ConnectionPool[psycopg.Connection[t.Any]]:
        return self.with_resource(
            ConnectionPool(
                self.url,
                min_size=1,
                max_size=self.concurrency,
                kwargs={"autocommit": True},
                open=False,
                name="pgcast",
            ),
        )

    @cached_property
    def pipeline(self) -> Pipeline:
        return Pipeline(
            client=PsycopgCatalogClient(self.pool),
            settings=InspectorSettings(
                concurrency=self.concurrency,
                scalars=ScalarTypeMap.default().extend(dict(self.types)),
            ),
        )

    def fail(self, diagnostics: Diagnostics) -> t.NoReturn:
        diagnostics.report(
            dest=sys.stderr,
            sources={source.path: source.text for source in self.sources},
        )
        self.base.exit(1)

    def with_resource(self, cm: t.ContextManager[T]) -> T:
        return self.base.with_resource(cm)


def parse_type_override(
    _: click.Context,
    __: click.Parameter,
    values: t.Sequence[str],
) -> t.Sequence[tuple[str, TypeInfo]]:
    result = list[tuple[str, TypeInfo]]()

    for value in values:
        name, sep, py_type = value.partition("=")
        if not sep or not name or not py_type:
            msg = f"invalid type mapping {value!r}, expected `NAME=module:qualname`"
            raise click.BadParameter(msg)

        try:
            result.append((name, parse_py_type(py_type)))

        except ValueError as err:
            msg = f"invalid python type in {value!r}, expected `module:qualname`"
            raise click.BadParameter(msg) from err

    return result


@click.group()
@click.pass_context
@click.argument(
    "queries",
    type=click.Path(exists=True, resolve_path=True, path_type=Path),
)
@click.option(
    "--url",
    type=str,
    envvar="PGCAST_DATABASE_URL",
    required=True,
    help="libpq connection string of the database to introspect queries with.",
)
@click.option(
    "-c",
    "--concurrency",
    type=click.IntRange(min=1),
    default=4,
    show_default=True,
)
@click.option(
    "-t",
    "--type",
    "types",
    multiple=True,
    callback=parse_type_override,
    help="Map a PostgreSQL type to a python type, e.g. `ltree=str` or `public.money=decimal:Decimal`.",
)
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(
    context: click.Context,
    queries: Path,
    url: str,
    concurrency: int,
    types: t.Sequence[tuple[str, TypeInfo]],
    log_level: str,
) -> None:
    logging.basicConfig(level=logging.getLevelName(log_level.upper()))

    context.obj = CLIContext(
        base=context,
        source=queries,
        url=url,
        concurrency=concurrency,
        types=types,
    )


OPT_OUTPUT = click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False, writable=True, resolve_path=True, path_type=Path),
    default=None,
)


@cli.command()
@click.pass_obj
@OPT_OUTPUT
@click.option(
    "--async/--no-async",
    "gen_async",
    default=True,
    show_default=True,
    help="Generate `AsyncQuerier` (asyncpg).",
)
@click.option(
    "--sync/--no-sync",
    "gen_sync",
    default=True,
    show_default=True,
    help="Generate `SyncQuerier` (psycopg).",
)
@click.option(
    "--dry-run",
    type=bool,
    is_flag=True,
    default=False,
)
def generate(
    context: CLIContext,
    output: t.Optional[Path],
    gen_async: bool,
    gen_sync: bool,
    dry_run: bool,
) -> None:
    """Generate typed query modules for the SQL files."""

    if not gen_async and not gen_sync:
        msg = "nothing to generate, enable at least one of `--async` and `--sync`"
        raise click.UsageError(msg)

    diagnostics = Diagnostics()

    try:
        result = context.pipeline.generate(
            sources=context.sources,
            output=output if output is not None else context.root,
            settings=CodegenSettings(gen_async=gen_async, gen_sync=gen_sync),
            diagnostics=diagnostics,
        )

    except FatalError as err:
        diagnostics.add(err)
        result = None

    if result is None or diagnostics.has_errors:
        context.fail(diagnostics)

    for file in result.files:
        if dry_run:
            click.echo(file.path)
            continue

        file.path.parent.mkdir(parents=True, exist_ok=True)
        with file.path.open("w") as fd:
            fd.write(file.content)


@cli.command()
@click.pass_obj
def show(context: CLIContext) -> None:
    """Show resolved signatures of the queries."""

    diagnostics = Diagnostics()

    try:
        resolution = context.pipeline.resolve(context.sources, diagnostics)

    except FatalError as err:
        diagnostics.add(err)
        context.fail(diagnostics)

    printer = Printer(
        dest=sys.stdout,
        annotator=TypeAnnotator(),
        registry=resolution.registry,
    )

    for module in resolution.modules:
        printer.print_module(module)

    if diagnostics.has_errors:
        context.fail(diagnostics)


if __name__ == "__main__":
    cli()
