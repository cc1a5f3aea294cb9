"""Command grammar and validator for the restricted query language.

Grammar (whitespace allowed between argument tokens only)::

    command     := PREFIX "." collection "." operation "(" arguments ")"
    collection  := [A-Za-z_][A-Za-z0-9_]*
    operation   := [A-Za-z_][A-Za-z0-9_]*
    arguments   := literal | <empty>             ; empty means {}
    literal     := object | array | string | number | "true" | "false" | "null"
    object      := "{" [ member { "," member } [ "," ] ] "}"
    member      := key ":" literal
    key         := string | [$A-Za-z_][$A-Za-z0-9_.]*
    array       := "[" [ literal { "," literal } [ "," ] ] "]"
    string      := JSON string | single-quoted string

Checks run in a fixed order: root prefix, keyword denylist, command shape,
operation allow-list, argument literal. Keys and strings in the parsed
literal go through the denylist again, since escapes only resolve there.
Arguments are only ever parsed as inert data; nothing in a command is
evaluated.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable

from .config import AppConfig
from .errors import (
    ArgumentParseError,
    DisallowedOperationError,
    InvalidCommandFormatError,
    UnsupportedOperationError,
)
from .models import Operation, OperationDescriptor

_WORD = re.compile(r"\$?[A-Za-z_][A-Za-z0-9_]*")

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<dstring>"(?:[^"\\\n]|\\.)*")
    |(?P<sstring>'(?:[^'\\\n]|\\.)*')
    |(?P<number>-?(?:0|[1-9][0-9]*)(?:\.[0-9]+)?(?:[eE][+-]?[0-9]+)?)
    |(?P<ident>\$?[A-Za-z_][A-Za-z0-9_$.]*)
    |(?P<punct>[{}\[\]:,])
    """,
    re.VERBOSE,
)

_LITERAL_WORDS = frozenset({"true", "false", "null"})


class CommandParser:
    """Turns command strings into ``OperationDescriptor`` values."""

    def __init__(self, config: AppConfig | None = None) -> None:
        config = config or AppConfig()
        self._prefix = config.root_prefix
        self._allowed = config.allowed()
        self._denied = {word.lower(): word for word in config.denied_keywords}
        self._max_depth = config.max_argument_depth
        self._shape = re.compile(
            re.escape(self._prefix)
            + r"\.(?P<collection>[A-Za-z_][A-Za-z0-9_]*)"
            + r"\.(?P<operation>[A-Za-z_][A-Za-z0-9_]*)"
            + r"\((?P<arguments>.*)\)"
        )

    def parse(self, command: str) -> OperationDescriptor:
        """Validate ``command`` and return its descriptor."""

        if not isinstance(command, str):
            raise InvalidCommandFormatError("Command must be a string")
        text = command.strip()
        if not text.startswith(self._prefix + "."):
            raise InvalidCommandFormatError(f"Command must start with '{self._prefix}.'")
        denied = self.denied_token(text)
        if denied is not None:
            raise DisallowedOperationError(denied)
        match = self._shape.fullmatch(text)
        if match is None:
            raise InvalidCommandFormatError(
                f"Invalid command format; expected {self._prefix}.<collection>.<operation>(<arguments>)"
            )
        name = match.group("operation")
        try:
            operation = Operation(name)
        except ValueError:
            raise UnsupportedOperationError(name) from None
        if operation not in self._allowed:
            raise UnsupportedOperationError(name)
        arguments = parse_arguments(match.group("arguments"), max_depth=self._max_depth)
        denied = self._denied_in_data(arguments)
        if denied is not None:
            raise DisallowedOperationError(denied)
        return OperationDescriptor(
            collection=match.group("collection"),
            operation=operation,
            arguments=arguments,
        )

    def denied_token(self, text: str) -> str | None:
        """Return the first denylisted keyword mentioned in ``text``."""

        for word in _WORD.findall(text):
            hit = self._denied.get(word.lower())
            if hit is not None:
                return hit
        return None

    def _denied_in_data(self, value: Any) -> str | None:
        # Escapes such as \u0065 only resolve once the literal is parsed.
        if isinstance(value, dict):
            for key, item in value.items():
                hit = self.denied_token(key) or self._denied_in_data(item)
                if hit is not None:
                    return hit
        elif isinstance(value, list):
            for item in value:
                hit = self._denied_in_data(item)
                if hit is not None:
                    return hit
        elif isinstance(value, str):
            return self.denied_token(value)
        return None


def parse_arguments(text: str, *, max_depth: int = 32) -> Any:
    """Parse relaxed JSON argument text into Python data."""

    if not text.strip():
        return {}
    tokens = list(_tokenize(text))
    pieces: list[str] = []
    depth = 0
    for index, (kind, value) in enumerate(tokens):
        if kind == "punct":
            if value in "{[":
                depth += 1
                if depth > max_depth:
                    raise ArgumentParseError(f"Arguments nested deeper than {max_depth} levels")
            elif value in "}]":
                depth -= 1
            elif (
                value == ","
                and _next_value(tokens, index) in ("}", "]")
                and index > 0
                and tokens[index - 1][1] not in ("{", "[", ",")
            ):
                continue
            pieces.append(value)
        elif kind == "dstring":
            pieces.append(value)
        elif kind == "sstring":
            pieces.append(_requote(value))
        elif kind == "number":
            pieces.append(value)
        elif kind == "ident":
            if _next_value(tokens, index) == ":":
                pieces.append(json.dumps(value))
            elif value in _LITERAL_WORDS:
                pieces.append(value)
            else:
                raise ArgumentParseError(f"Unexpected identifier '{value}' in arguments")
    try:
        return json.loads("".join(pieces))
    except json.JSONDecodeError as exc:
        raise ArgumentParseError(f"Could not parse arguments: {exc.msg}") from exc


def _tokenize(text: str) -> Iterable[tuple[str, str]]:
    position = 0
    while position < len(text):
        match = _TOKEN.match(text, position)
        if match is None:
            raise ArgumentParseError(f"Unexpected character {text[position]!r} at position {position}")
        position = match.end()
        kind = match.lastgroup or ""
        if kind != "ws":
            yield kind, match.group()


def _next_value(tokens: list[tuple[str, str]], index: int) -> str | None:
    if index + 1 < len(tokens):
        return tokens[index + 1][1]
    return None


def _requote(token: str) -> str:
    """Convert a single-quoted string token into a JSON string token."""

    body = token[1:-1]
    out: list[str] = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            nxt = body[index + 1]
            out.append("'" if nxt == "'" else char + nxt)
            index += 2
            continue
        out.append('\\"' if char == '"' else char)
        index += 1
    return '"' + "".join(out) + '"'


__all__ = ["CommandParser", "parse_arguments"]
