"""Field-name case conversion used to map client sort keys onto columns."""

from __future__ import annotations

import re
from enum import Enum

_WORD_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|[\s_\-]+")


class FieldCase(str, Enum):
    SNAKE = "snake"
    CAMEL = "camel"
    PASCAL = "pascal"


def _words(name: str) -> list[str]:
    return [word for word in _WORD_BOUNDARY.split(name.strip()) if word]


def to_snake(name: str) -> str:
    return "_".join(word.lower() for word in _words(name))


def to_camel(name: str) -> str:
    words = _words(name)
    if not words:
        return ""
    return words[0].lower() + "".join(word[:1].upper() + word[1:].lower() for word in words[1:])


def to_pascal(name: str) -> str:
    return "".join(word[:1].upper() + word[1:].lower() for word in _words(name))


def convert_case(name: str, case: FieldCase | str) -> str:
    case = FieldCase(case)
    if case is FieldCase.SNAKE:
        return to_snake(name)
    if case is FieldCase.CAMEL:
        return to_camel(name)
    return to_pascal(name)


__all__ = ["FieldCase", "convert_case", "to_camel", "to_pascal", "to_snake"]
