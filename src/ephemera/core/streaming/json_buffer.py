from __future__ import annotations

import json
import logging
from typing import Any


class JsonBuffer:
    """Balanced-brace accumulator for a JSON object arriving in pieces.

    Depth is tracked outside string literals only, honouring backslash escapes,
    so braces inside values never complete the object early. Anything before
    the first ``{`` is ignored; anything after the closing brace is handed back
    by ``append``.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._chunks: list[str] = []
        self._depth = 0
        self._in_string = False
        self._escape = False
        self._started = False
        self._complete = False
        self.logger = logger or logging.getLogger("ephemera.streaming")

    @property
    def is_complete(self) -> bool:
        return self._complete

    @property
    def content(self) -> str:
        return "".join(self._chunks)

    def append(self, text: str) -> str:
        if self._complete:
            return text

        start = 0
        if not self._started:
            start = text.find("{")
            if start < 0:
                return ""
            self._started = True

        for index in range(start, len(text)):
            ch = text[index]
            if self._escape:
                self._escape = False
                continue
            if self._in_string:
                if ch == "\\":
                    self._escape = True
                elif ch == '"':
                    self._in_string = False
                continue
            if ch == '"':
                self._in_string = True
            elif ch == "{":
                self._depth += 1
            elif ch == "}":
                self._depth -= 1
                if self._depth == 0:
                    self._complete = True
                    self._chunks.append(text[start : index + 1])
                    return text[index + 1 :]

        self._chunks.append(text[start:])
        return ""

    def parse(self) -> Any | None:
        if not self._complete:
            return None
        try:
            return json.loads(self.content)
        except json.JSONDecodeError as exc:
            self.logger.error(
                "json_buffer_parse_failed",
                extra={"extra_fields": {"buffer_len": len(self.content), "error": str(exc)}},
            )
            return None
