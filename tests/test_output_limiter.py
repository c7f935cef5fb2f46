from __future__ import annotations

import json

from ephemera.core.tools.output_limiter import OutputLimiter


def test_short_output_is_untouched() -> None:
    assert OutputLimiter.truncate("ok", 10) == "ok"


def test_plain_text_gets_a_marker() -> None:
    result = OutputLimiter.truncate("a" * 2000, 500)

    assert len(result) <= 500
    assert result.startswith("a" * 100)
    assert "[Truncated: showing 300 of 2000 chars" in result


def test_json_object_stays_parseable() -> None:
    payload = {"status": "CrashLoopBackOff", "logs": "line\n" * 1000, "events": list(range(50))}

    result = OutputLimiter.truncate(json.dumps(payload), 2000)

    assert len(result) <= 2000
    parsed = json.loads(result)
    assert parsed["status"] == "CrashLoopBackOff"
    # The largest field is shrunk first; the rest survive intact once it fits.
    assert parsed["events"] == list(range(50))
    assert "[Truncated:" in parsed["logs"]


def test_long_json_lists_keep_head_and_tail() -> None:
    payload = {"pods": [f"preview-api-{i:04d}" for i in range(300)], "namespace": "pr-42"}

    parsed = json.loads(OutputLimiter.truncate(json.dumps(payload), 500))

    assert parsed["pods"] == ["preview-api-0000", "preview-api-0001", "preview-api-0002", "preview-api-0298", "preview-api-0299"]
    assert parsed["namespace"] == "pr-42"


def test_log_output_keeps_head_and_tail() -> None:
    content = "\n".join(f"line {i}" for i in range(400))

    result = OutputLimiter.truncate_log_output(content, head_lines=5, tail_lines=5)

    assert result.startswith("line 0\n")
    assert result.endswith("line 399")
    assert "[Truncated: 390 lines omitted of 400 total]" in result


def test_truncate_json_safely_shrinks_long_lists() -> None:
    data = [{"name": f"pod-{i}", "status": "Running"} for i in range(200)]

    result = json.loads(OutputLimiter.truncate_json_safely(json.dumps(data), 1000))

    assert result[0]["name"] == "pod-0"
    assert result[3] == {"_truncated": "195 items omitted"}
    assert result[-1]["name"] == "pod-199"
