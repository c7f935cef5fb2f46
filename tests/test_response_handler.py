from __future__ import annotations

import json

from ephemera.core.observability.trace import RecordingCallbacks
from ephemera.core.streaming.json_buffer import JsonBuffer
from ephemera.core.streaming.json_extraction import extract_balanced_json, extract_json_from_response
from ephemera.core.streaming.response_handler import ResponseHandler, StreamState

REPORT = '{"type": "investigation_complete", "summary": "pod {api} crashed", "services": ["api"]}'


def _feed(handler: ResponseHandler, *chunks: str) -> None:
    for chunk in chunks:
        handler.handle_chunk(chunk)


def test_prose_streams_through_immediately() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)

    handler.handle_chunk("The build ")
    assert callbacks.text == "The build "
    handler.handle_chunk("failed on step 3.")

    result = handler.finalize()
    assert handler.state is StreamState.PROSE
    assert result.is_json is False
    assert result.response == "The build failed on step 3."
    assert callbacks.text == "The build failed on step 3."
    assert callbacks.of("StructuredOutput") == []


def test_typed_json_is_detected_while_streaming() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)

    handler.handle_chunk(REPORT[:40])
    assert handler.state is StreamState.JSON_ACCUMULATING
    handler.handle_chunk(REPORT[40:])
    assert handler.state is StreamState.UNDETERMINED
    assert callbacks.text == REPORT
    assert callbacks.of("Thinking") == [{"message": "Generating structured report..."}]
    assert callbacks.of("StructuredOutput") == [{"data": json.loads(REPORT)}]

    result = handler.finalize()
    assert result.is_json is True
    assert result.response == REPORT
    assert result.preamble is None


def test_single_chunk_report_and_plain_message() -> None:
    report = ResponseHandler(RecordingCallbacks())
    report.handle_chunk('{"type": "investigation_complete", "summary": "done"}')
    classified = report.finalize()
    assert classified.is_json is True
    assert json.loads(classified.response) == {"type": "investigation_complete", "summary": "done"}

    chat = ResponseHandler(RecordingCallbacks())
    chat.handle_chunk("Just a regular chat message")
    classified = chat.finalize()
    assert classified.is_json is False
    assert classified.response == "Just a regular chat message"


def test_value_split_across_chunks() -> None:
    handler = ResponseHandler(RecordingCallbacks())
    _feed(handler, '{"type": "invest', 'igation_complete"}')

    classified = handler.finalize()
    assert classified.is_json is True
    assert json.loads(classified.response) == {"type": "investigation_complete"}


def test_marker_split_across_chunks() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)

    handler.handle_chunk('{"ty')
    assert callbacks.text == ""
    assert handler.state is StreamState.WITHHOLDING
    handler.handle_chunk('pe": "report", "ok": true}')

    result = handler.finalize()
    assert result.is_json is True
    assert json.loads(result.response) == {"type": "report", "ok": True}


def test_prose_before_json_becomes_the_preamble() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)

    _feed(handler, "Here is what I found:\n", REPORT)

    result = handler.finalize()
    assert result.is_json is True
    assert result.preamble == "Here is what I found:"
    assert callbacks.text.startswith("Here is what I found:\n")


def test_prose_after_a_completed_object_still_reaches_the_host() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)
    plan = '{"type": "plan", "steps": []}'
    later = " Now checking the pods, the deployment is down."

    _feed(handler, plan, later)

    assert callbacks.text == plan + later
    result = handler.finalize()
    assert result.is_json is False
    assert result.response == plan + later
    assert callbacks.of("StructuredOutput") == [{"data": {"type": "plan", "steps": []}}]


def test_text_trailing_the_closing_brace_in_the_same_chunk_is_forwarded() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)

    _feed(handler, '{"type": "plan", "steps": [', '1]} then more text')

    assert callbacks.text == '{"type": "plan", "steps": [1]} then more text'
    assert handler.finalize().is_json is False


def test_whitespace_after_a_report_keeps_it() -> None:
    handler = ResponseHandler(RecordingCallbacks())

    _feed(handler, REPORT, "\n\n")

    result = handler.finalize()
    assert result.is_json is True
    assert result.response == REPORT


def test_later_report_replaces_an_earlier_one() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)

    _feed(handler, '{"type": "plan", "steps": []}', "Checked the pods.\n", REPORT)

    result = handler.finalize()
    assert result.is_json is True
    assert result.response == REPORT
    assert result.preamble == "Checked the pods."
    assert len(callbacks.of("StructuredOutput")) == 2


def test_fenced_json_is_unwrapped() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)

    _feed(handler, "``", "`json\n", REPORT, "\n```")

    result = handler.finalize()
    assert result.is_json is True
    assert result.response == REPORT


def test_untyped_braces_are_released_as_prose_in_order() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)

    _feed(handler, "Set {replicas: ", "2} and redeploy.")

    result = handler.finalize()
    assert result.is_json is False
    assert callbacks.text == "Set {replicas: 2} and redeploy."
    assert result.response == "Set {replicas: 2} and redeploy."


def test_withholding_is_bounded() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks, max_withhold_chars=50)

    handler.handle_chunk("{" + "x" * 60)

    assert handler.state is StreamState.PROSE
    assert callbacks.text == "{" + "x" * 60


def test_late_detection_catches_json_streamed_as_prose() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks, max_withhold_chars=10)

    _feed(handler, '{"summary": "disk full on node-3", ', '"type": "investigation_complete"}')
    assert handler.state is StreamState.PROSE

    result = handler.finalize()
    assert result.is_json is True
    assert json.loads(result.response)["type"] == "investigation_complete"
    assert callbacks.of("StructuredOutput") == [{"data": json.loads(result.response)}]


def test_unterminated_withheld_text_is_flushed_on_finalize() -> None:
    callbacks = RecordingCallbacks()
    handler = ResponseHandler(callbacks)

    handler.handle_chunk("Result: {partial")
    assert callbacks.text == "Result: "

    result = handler.finalize()
    assert result.is_json is False
    assert callbacks.text == "Result: {partial"
    assert handler.finalize() is result


def test_extract_balanced_json_edge_cases() -> None:
    assert extract_balanced_json("abc", 0) is None
    assert extract_balanced_json("{incomplete", 0) is None
    assert extract_balanced_json('{"a": "}"} tail', 0) == '{"a": "}"}'
    assert extract_balanced_json('{"a": "\\"}"}', 0) == '{"a": "\\"}"}'
    assert extract_balanced_json('x {"n": {"m": 1}}', 2) == '{"n": {"m": 1}}'


def test_extract_json_from_response() -> None:
    fenced = extract_json_from_response("Report below\n```json\n" + REPORT + "\n```")
    assert fenced.is_json is True
    assert fenced.response == REPORT
    assert fenced.preamble == "Report below"

    assert extract_json_from_response("no json here").is_json is False
    assert extract_json_from_response('{"type": "broken"').is_json is False
    assert extract_json_from_response('{"name": "x"}').is_json is False


def test_json_buffer_returns_trailing_text() -> None:
    buffer = JsonBuffer()

    assert buffer.append('noise {"a": "{') == ""
    assert buffer.is_complete is False
    assert buffer.append('"} trailing') == " trailing"
    assert buffer.is_complete is True
    assert buffer.parse() == {"a": "{"}
    assert buffer.append("more") == "more"
