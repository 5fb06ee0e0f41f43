"""
Payload -> typed value.

``extract`` is a pure function of the payload and the rule; failures are
raised as ExtractionError subclasses and the caller drops the message.
"""

import functools
import json
from typing import TYPE_CHECKING, Any

from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError
from jsonpath_ng.ext import parse as parse_jsonpath

from .errors import ConfigError, MalformedPayload, PathNotFound
from .values import TypedValue, ValueType, convert

if TYPE_CHECKING:
    from .registry import TopicRule


@functools.lru_cache(maxsize=None)
def compile_path(expression: str):
    try:
        return parse_jsonpath(expression)
    except (JsonPathLexerError, JsonPathParserError) as e:
        raise ConfigError(f"Invalid JSON path {expression!r}: {e}") from e


def decode_text(payload: bytes) -> str:
    return payload.decode("utf-8", errors="ignore")


def resolve(document: Any, expression: str) -> Any:
    try:
        matches = compile_path(expression).find(document)
    except (TypeError, KeyError, IndexError, AttributeError) as e:
        # document is valid JSON but not shaped like the path expects
        raise PathNotFound(f"Path {expression} does not fit payload: {e}") from e
    if not matches:
        raise PathNotFound(f"Path {expression} not found")
    value = matches[0].value
    if value is None:
        raise PathNotFound(f"Path {expression} resolved to null")
    return value


def extract(payload: bytes, rule: "TopicRule") -> TypedValue:
    if not rule.jsonpath:
        value = convert(decode_text(payload), rule.value_type)
    else:
        try:
            document = json.loads(payload)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedPayload(f"Invalid JSON: {e}") from e
        value = convert(resolve(document, rule.jsonpath), rule.value_type)

    if rule.scale is not None and value.type is ValueType.DOUBLE:
        value = TypedValue(ValueType.DOUBLE, value.value * rule.scale)
    return value
