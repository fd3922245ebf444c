"""
Column nullability inference.

PostgreSQL does not report whether a result column may be `NULL`. The policy below only marks a column as non-null
when it can be proven from the catalog:

1. the server reports the column as a direct reference to a table attribute (table OID and attribute number are set;
   computed expressions, aggregates and function results have no origin);
2. that attribute is declared `NOT NULL` on a plain or partitioned table (views and foreign tables don't count);
3. the statement contains none of the keywords that can introduce `NULL` for a non-null attribute: outer joins
   (`LEFT`, `RIGHT`, `FULL`, `OUTER`) and grouping sets (`ROLLUP`, `CUBE`, `GROUPING`).

Every other case is nullable.
"""

from __future__ import annotations

import logging
import typing as t

from sqlglot import Dialect
from sqlglot.errors import TokenError
from sqlglot.tokens import TokenType

if t.TYPE_CHECKING:
    from pgcast.sql.catalog import CatalogClient, ColumnDescription

_LOGGER = logging.getLogger(__name__)


class NullabilityPolicy:
    ATTENUATING_KEYWORDS: t.ClassVar[frozenset[str]] = frozenset(
        {"left", "right", "full", "outer", "rollup", "cube", "grouping"},
    )

    # string literals and quoted identifiers never hold keywords
    LITERAL_TOKENS: t.ClassVar[frozenset[TokenType]] = frozenset(
        {
            TokenType.STRING,
            TokenType.IDENTIFIER,
            TokenType.BIT_STRING,
            TokenType.HEX_STRING,
            TokenType.BYTE_STRING,
            TokenType.NATIONAL_STRING,
            TokenType.HEREDOC_STRING,
            TokenType.RAW_STRING,
            TokenType.UNICODE_STRING,
        },
    )

    def __init__(self, client: CatalogClient, dialect: str = "postgres") -> None:
        self.__client = client
        self.__dialect = Dialect.get_or_raise(dialect)
        self.__not_null = dict[tuple[int, int], bool]()

    def is_attenuated(self, statement: str) -> bool:
        """Check if the statement may turn a non-null table column into a nullable result column."""

        try:
            tokens = self.__dialect.tokenize(statement)

        except TokenError:
            _LOGGER.debug("statement can not be tokenized, columns are nullable", exc_info=True)
            return True

        return any(
            word in self.ATTENUATING_KEYWORDS
            for token in tokens
            if token.token_type not in self.LITERAL_TOKENS
            # multi word keywords (e.g. `GROUPING SETS`) are single tokens
            for word in token.text.lower().split()
        )

    def is_nullable(self, column: ColumnDescription, *, attenuated: bool) -> bool:
        if attenuated or column.table_oid == 0 or column.column_number <= 0:
            return True

        key = (column.table_oid, column.column_number)
        not_null = self.__not_null.get(key)
        if not_null is None:
            not_null = self.__not_null[key] = self.__client.fetch_not_null(column.table_oid, column.column_number)
            _LOGGER.debug("column %s of table %s not null: %s", column.column_number, column.table_oid, not_null)

        return not not_null

    def infer(self, statement: str, columns: t.Sequence[ColumnDescription]) -> t.Sequence[bool]:
        attenuated = self.is_attenuated(statement)
        return [self.is_nullable(column, attenuated=attenuated) for column in columns]
