"""Incremental parser for top-level fields of a streamed JSON object.

The LLM answers with a single JSON object. Rather than waiting for the whole
response, the parser tracks string, escape and nesting state character by
character and reports each top-level field as soon as its value closes, so
sections can be streamed to the client while generation continues.
"""

import enum
import hashlib
import json
import logging
import re
from typing import Any, Iterable, NamedTuple, Optional

from studygen.services.sections import REQUIRED_SECTIONS, missing_required

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


class ParsedField(NamedTuple):
    name: str
    value: Any


class _State(enum.Enum):
    BEFORE_OBJECT = "before_object"
    EXPECT_KEY = "expect_key"
    IN_KEY = "in_key"
    EXPECT_COLON = "expect_colon"
    EXPECT_VALUE = "expect_value"
    IN_STRING_VALUE = "in_string_value"
    IN_CONTAINER_VALUE = "in_container_value"
    IN_SCALAR_VALUE = "in_scalar_value"
    AFTER_VALUE = "after_value"
    DONE = "done"


class StreamingSectionParser:
    """State machine emitting (name, value) pairs as top-level values close."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Forget everything, e.g. before retrying against another provider."""
        self._state = _State.BEFORE_OBJECT
        self._raw: list[str] = []
        self._key: list[str] = []
        self._value: list[str] = []
        self._current_key: Optional[str] = None
        self._depth = 0
        self._in_string = False
        self._escape = False
        self.fields: dict[str, Any] = {}

    @property
    def raw_text(self) -> str:
        return "".join(self._raw)

    @property
    def finished(self) -> bool:
        return self._state == _State.DONE

    def is_complete(self) -> bool:
        """All required sections have been parsed with the right types."""
        return not missing_required(self.fields)

    def feed(self, chunk: str) -> list[ParsedField]:
        """Consume a chunk of text and return fields completed within it."""
        self._raw.append(chunk)
        completed: list[ParsedField] = []
        for char in chunk:
            field = self._step(char)
            if field is not None:
                completed.append(field)
        return completed

    def _step(self, char: str) -> Optional[ParsedField]:
        state = self._state

        if state == _State.BEFORE_OBJECT:
            if char == "{":
                self._state = _State.EXPECT_KEY
            return None

        if state == _State.EXPECT_KEY:
            if char == '"':
                self._key = []
                self._escape = False
                self._state = _State.IN_KEY
            elif char == "}":
                self._state = _State.DONE
            return None

        if state == _State.IN_KEY:
            if self._escape:
                self._key.append(char)
                self._escape = False
            elif char == "\\":
                self._key.append(char)
                self._escape = True
            elif char == '"':
                self._current_key = json.loads('"' + "".join(self._key) + '"')
                self._state = _State.EXPECT_COLON
            else:
                self._key.append(char)
            return None

        if state == _State.EXPECT_COLON:
            if char == ":":
                self._state = _State.EXPECT_VALUE
            return None

        if state == _State.EXPECT_VALUE:
            if char.isspace():
                return None
            self._value = [char]
            if char == '"':
                self._escape = False
                self._state = _State.IN_STRING_VALUE
            elif char in "{[":
                self._depth = 1
                self._in_string = False
                self._escape = False
                self._state = _State.IN_CONTAINER_VALUE
            else:
                self._state = _State.IN_SCALAR_VALUE
            return None

        if state == _State.IN_STRING_VALUE:
            self._value.append(char)
            if self._escape:
                self._escape = False
            elif char == "\\":
                self._escape = True
            elif char == '"':
                self._state = _State.AFTER_VALUE
                return self._complete_value()
            return None

        if state == _State.IN_CONTAINER_VALUE:
            self._value.append(char)
            if self._in_string:
                if self._escape:
                    self._escape = False
                elif char == "\\":
                    self._escape = True
                elif char == '"':
                    self._in_string = False
            elif char == '"':
                self._in_string = True
            elif char in "{[":
                self._depth += 1
            elif char in "}]":
                self._depth -= 1
                if self._depth == 0:
                    self._state = _State.AFTER_VALUE
                    return self._complete_value()
            return None

        if state == _State.IN_SCALAR_VALUE:
            if char in ",}" or char.isspace():
                field = self._complete_value()
                if char == ",":
                    self._state = _State.EXPECT_KEY
                elif char == "}":
                    self._state = _State.DONE
                else:
                    self._state = _State.AFTER_VALUE
                return field
            self._value.append(char)
            return None

        if state == _State.AFTER_VALUE:
            if char == ",":
                self._state = _State.EXPECT_KEY
            elif char == "}":
                self._state = _State.DONE
            return None

        return None

    def _complete_value(self) -> Optional[ParsedField]:
        text = "".join(self._value)
        self._value = []
        key = self._current_key
        self._current_key = None
        if key is None:
            return None
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Could not decode streamed field '{key}'")
            return None
        self.fields[key] = value
        return ParsedField(key, value)


def parse_complete(
    raw_text: str, required: Iterable[str] = tuple(REQUIRED_SECTIONS)
) -> Optional[dict[str, Any]]:
    """
    Best-effort parse of a whole response when incremental parsing fell short.

    Strips markdown fences, takes the outermost ``{...}`` span and checks that
    the ``required`` sections are present with the right types. Returns None
    when the text is unusable.
    """
    text = _FENCE.sub("", raw_text).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        logger.warning(f"No JSON object in response (sha256={_digest(raw_text)})")
        return None

    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError as e:
        logger.warning(f"Fallback parse failed at pos {e.pos} (sha256={_digest(raw_text)})")
        return None

    if not isinstance(data, dict):
        return None

    missing = missing_required(data, required)
    if missing:
        logger.warning(f"Fallback parse missing sections {missing} (sha256={_digest(raw_text)})")
        return None
    return data


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
