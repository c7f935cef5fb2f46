from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any

from ephemera.core.orchestration.callbacks import StreamCallbacks

from .json_buffer import JsonBuffer
from .json_extraction import FENCE_OPEN_RE, MARKER_RE, ClassifiedResponse, extract_balanced_json, extract_json_from_response

FENCE = "```"
STRUCTURED_REPORT_MESSAGE = "Generating structured report..."


class StreamState(str, Enum):
    UNDETERMINED = "undetermined"
    WITHHOLDING = "withholding"
    JSON_ACCUMULATING = "json_accumulating"
    PROSE = "prose"


class ResponseHandler:
    """Decides online whether the model's final turn is a JSON report or prose.

    Prose goes straight to ``on_text_chunk``. Text that opens with ``{`` or a
    code fence is withheld until it either reveals a ``"type"`` key (switch to
    JSON accumulation), closes without one, or outgrows ``max_withhold_chars``;
    in the last two cases it is released as prose. Once a report object
    closes, classification starts over: whatever follows is forwarded as prose,
    and anything beyond whitespace or a closing fence demotes the report.
    ``finalize`` runs a one-shot rescan for JSON that streaming did not catch.
    """

    def __init__(
        self,
        callbacks: StreamCallbacks,
        max_withhold_chars: int = 4000,
        logger: logging.Logger | None = None,
    ) -> None:
        self.callbacks = callbacks
        self.max_withhold_chars = max_withhold_chars
        self.logger = logger or logging.getLogger("ephemera.streaming")
        self.state = StreamState.UNDETERMINED
        self._raw: list[str] = []
        self._raw_len = 0
        self._scan_from = 0
        self._prose: list[str] = []
        self._pending = ""
        self._buffer = JsonBuffer(logger=self.logger)
        self._preamble: str | None = None
        self._report: ClassifiedResponse | None = None
        self._result: ClassifiedResponse | None = None

    def handle_chunk(self, text: str) -> None:
        if not text or self._result is not None:
            return
        self._raw.append(text)
        self._raw_len += len(text)
        if self.state is StreamState.JSON_ACCUMULATING:
            text = self._feed_json(text)
            if not text:
                return
        self._pending += text
        self._drain()

    def finalize(self) -> ClassifiedResponse:
        if self._result is not None:
            return self._result

        raw = "".join(self._raw)
        if self.state is StreamState.JSON_ACCUMULATING:
            self.logger.warning(
                "structured_output_incomplete",
                extra={"extra_fields": {"buffer_len": len(self._buffer.content)}},
            )
        elif self._pending:
            self._emit_prose(self._pending)
            self._pending = ""
            self.state = StreamState.PROSE

        if self._report is not None:
            self._result = self._report
            return self._result

        late = extract_json_from_response(raw[self._scan_from :])
        if late.is_json:
            self._announce(json.loads(late.response))
            self._result = late
        else:
            self._result = ClassifiedResponse(is_json=False, response=raw)
        return self._result

    def _drain(self) -> None:
        while self._pending and self.state is not StreamState.JSON_ACCUMULATING:
            if self.state is not StreamState.WITHHOLDING:
                opener = self._find_opener(self._pending)
                if opener is None:
                    # A trailing ` or `` may be the start of a fence.
                    release = self._pending.rstrip("`")
                    self._emit_prose(release)
                    self._pending = self._pending[len(release) :]
                    if self._prose:
                        self.state = StreamState.PROSE
                    return
                self._emit_prose(self._pending[:opener])
                self._pending = self._pending[opener:]
                self.state = StreamState.WITHHOLDING

            closed_at = self._closed_length(self._pending)
            segment = self._pending[:closed_at] if closed_at is not None else self._pending
            json_start = self._json_start(segment)
            if json_start is not None:
                self._enter_json(json_start)
                continue
            if closed_at is not None:
                self._emit_prose(segment)
                self._pending = self._pending[closed_at:]
                self.state = StreamState.PROSE
                continue
            if len(self._pending) > self.max_withhold_chars:
                self._emit_prose(self._pending)
                self._pending = ""
                self.state = StreamState.PROSE
            return

    @staticmethod
    def _find_opener(text: str) -> int | None:
        positions = [pos for pos in (text.find("{"), text.find(FENCE)) if pos >= 0]
        return min(positions) if positions else None

    @staticmethod
    def _closed_length(withheld: str) -> int | None:
        if withheld.startswith(FENCE):
            end = withheld.find(FENCE, len(FENCE))
            return end + len(FENCE) if end >= 0 else None
        balanced = extract_balanced_json(withheld, 0)
        return len(balanced) if balanced is not None else None

    @staticmethod
    def _json_start(segment: str) -> int | None:
        body_start = 0
        if segment.startswith(FENCE):
            opener = FENCE_OPEN_RE.match(segment)
            body_start = opener.end() if opener else len(FENCE)
        brace = segment.find("{", body_start)
        if brace < 0:
            return None
        marker = MARKER_RE.search(segment, brace)
        return brace if marker is not None else None

    def _enter_json(self, start: int) -> None:
        self.state = StreamState.JSON_ACCUMULATING
        self._preamble = "".join(self._prose).strip() or None
        self._report = None
        json_text = self._pending[start:]
        self.logger.info("json_response_detected", extra={"extra_fields": {"preamble_len": len(self._preamble or "")}})
        self.callbacks.on_thinking(STRUCTURED_REPORT_MESSAGE)
        self._pending = self._feed_json(json_text)

    def _feed_json(self, text: str) -> str:
        """Feed the open object; returns the text that follows its closing brace."""
        leftover = self._buffer.append(text)
        consumed = text[: len(text) - len(leftover)]
        if consumed:
            self.callbacks.on_text_chunk(consumed)
        if not self._buffer.is_complete:
            return ""

        content = self._buffer.content
        parsed = self._buffer.parse()
        if parsed is not None:
            self._announce(parsed)
            self._report = ClassifiedResponse(is_json=True, response=content, preamble=self._preamble)
        self._buffer = JsonBuffer(logger=self.logger)
        self._prose = []
        self._scan_from = self._raw_len - len(leftover)
        self.state = StreamState.UNDETERMINED
        return leftover

    def _announce(self, parsed: Any) -> None:
        if isinstance(parsed, dict):
            self.logger.info("structured_output_parsed", extra={"extra_fields": {"type": parsed.get("type")}})
            self.callbacks.on_structured_output(parsed)

    def _emit_prose(self, text: str) -> None:
        if not text:
            return
        if self._report is not None and text.strip().strip("`").strip():
            self.logger.info("structured_output_superseded", extra={"extra_fields": {"trailing_len": len(text)}})
            self._report = None
        self._prose.append(text)
        self.callbacks.on_text_chunk(text)
