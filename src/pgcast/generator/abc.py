import abc

from pgcast.generator.model import CodeGeneratorResult, SQLCodeGeneratorContext


class SQLCodeGenerator(metaclass=abc.ABCMeta):
    """Interface for SQL code generators used by `pgcast`."""

    @abc.abstractmethod
    def generate(self, context: SQLCodeGeneratorContext) -> CodeGeneratorResult:
        raise NotImplementedError
