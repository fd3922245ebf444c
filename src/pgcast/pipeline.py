from __future__ import annotations

import logging
import typing as t
from dataclasses import dataclass, field

from pgcast.generator.model import CodegenSettings, SQLCodeGeneratorContext
from pgcast.generator.querier import QuerierCodeGenerator
from pgcast.model import ModuleInfo, SourceFile
from pgcast.sql.inspector import CatalogInspector
from pgcast.sql.nullability import NullabilityPolicy
from pgcast.sql.parser import AnnotationParser
from pgcast.sql.resolver import Resolution, TypeResolver
from pgcast.sql.types import ScalarTypeMap

if t.TYPE_CHECKING:
    from pathlib import Path

    from pgcast.diagnostics import Diagnostics
    from pgcast.generator.abc import SQLCodeGenerator
    from pgcast.generator.model import CodeGeneratorResult
    from pgcast.sql.catalog import CatalogClient

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class InspectorSettings:
    concurrency: int = 4
    scalars: ScalarTypeMap = field(default_factory=ScalarTypeMap.default)


class Pipeline:
    """
    One run of `pgcast`: parse files, describe queries, resolve types and generate code.

    Independent errors are collected into the given diagnostics, fatal errors (see
    :class:`pgcast.diagnostics.FatalError`) propagate and abort the run.
    """

    def __init__(
        self,
        client: CatalogClient,
        settings: t.Optional[InspectorSettings] = None,
        generator: t.Optional[SQLCodeGenerator] = None,
    ) -> None:
        settings = settings if settings is not None else InspectorSettings()

        self.__parser = AnnotationParser()
        self.__inspector = CatalogInspector(client, settings.scalars, settings.concurrency)
        self.__resolver = TypeResolver(self.__inspector, NullabilityPolicy(client))
        self.__generator = generator if generator is not None else QuerierCodeGenerator()

    def parse(self, sources: t.Sequence[SourceFile], diagnostics: Diagnostics) -> t.Sequence[ModuleInfo]:
        modules = list[ModuleInfo]()

        for source in sources:
            result = self.__parser.parse(source)
            diagnostics.extend(result.errors)

            if result.module is not None:
                _LOGGER.info("parsed %d queries from %s", len(result.module.queries), source.path)
                modules.append(result.module)

        return modules

    def resolve(self, sources: t.Sequence[SourceFile], diagnostics: Diagnostics) -> Resolution:
        modules = self.parse(sources, diagnostics)

        _LOGGER.info("describing %d queries", sum(len(module.queries) for module in modules))
        descriptions = self.__inspector.describe_all(modules)

        resolution = self.__resolver.resolve(modules, descriptions)
        diagnostics.extend(resolution.errors)

        return resolution

    def generate(
        self,
        sources: t.Sequence[SourceFile],
        output: Path,
        settings: CodegenSettings,
        diagnostics: Diagnostics,
    ) -> t.Optional[CodeGeneratorResult]:
        """Generate modules, unless there were errors."""

        resolution = self.resolve(sources, diagnostics)
        if diagnostics.has_errors:
            return None

        result = self.__generator.generate(
            SQLCodeGeneratorContext(
                registry=resolution.registry,
                modules=resolution.modules,
                output=output,
                settings=settings,
            ),
        )
        _LOGGER.info("generated %d files", len(result.files))

        return result
