import keyword
import re

_WORD_SPLIT = re.compile(r"[^0-9A-Za-z]+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def snake2camel(value: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in _WORD_SPLIT.split(value) if part)


def camel2snake(value: str) -> str:
    return "_".join(part.lower() for part in _WORD_SPLIT.split(_CAMEL_BOUNDARY.sub("_", value)) if part)


def to_identifier(value: str, prefix: str = "v") -> str:
    """Turn an arbitrary label into a python identifier, e.g. `in progress` -> `in_progress`."""

    ident = "_".join(part for part in _WORD_SPLIT.split(value) if part)
    if not ident:
        return prefix

    if ident[0].isdigit():
        ident = f"{prefix}_{ident}"

    if keyword.iskeyword(ident):
        ident = f"{ident}_"

    return ident
