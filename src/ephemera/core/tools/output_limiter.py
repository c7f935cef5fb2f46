from __future__ import annotations

import json
from typing import Any

DEFAULT_MAX_CHARS = 30000
MARKER_RESERVE = 200


def _marker(kept: int, total: int) -> str:
    return f"\n[Truncated: showing {kept} of {total} chars, use tighter filters to get specific data]"


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _looks_like_json(content: str) -> bool:
    stripped = content.lstrip()
    return stripped.startswith("{") or stripped.startswith("[")


class OutputLimiter:
    """Keeps tool output inside the model's context budget.

    JSON objects are shrunk field by field (largest first) so the result stays
    parseable; anything else is cut and suffixed with a truncation marker.
    """

    @staticmethod
    def truncate(content: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
        if len(content) <= max_chars:
            return content

        if _looks_like_json(content):
            try:
                parsed = json.loads(content)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                return OutputLimiter._truncate_json_object(parsed, max_chars)

        marker = _marker(max(0, max_chars - MARKER_RESERVE), len(content))
        kept = max(0, max_chars - len(marker))
        return content[:kept] + marker

    @staticmethod
    def _truncate_json_object(obj: dict[str, Any], max_chars: int) -> str:
        sizes = sorted(((key, len(_dumps(value))) for key, value in obj.items()), key=lambda item: item[1], reverse=True)
        result = dict(obj)
        serialized = _dumps(result)

        for key, _size in sizes:
            if len(serialized) <= max_chars:
                break
            value = result[key]
            if isinstance(value, str) and len(value) > 200:
                overage = len(serialized) - max_chars
                target = max(100, len(value) - overage - MARKER_RESERVE)
                result[key] = value[:target] + _marker(target, len(value))
                serialized = _dumps(result)
            elif isinstance(value, list) and len(value) > 5:
                result[key] = value[:3] + value[-2:]
                serialized = _dumps(result)

        if len(serialized) > max_chars:
            marker = _marker(max(0, max_chars - MARKER_RESERVE), len(serialized))
            return serialized[: max(0, max_chars - len(marker))] + marker
        return serialized

    @staticmethod
    def truncate_log_output(
        content: str,
        max_chars: int = DEFAULT_MAX_CHARS,
        head_lines: int = 50,
        tail_lines: int = 100,
    ) -> str:
        lines = content.split("\n")
        if len(lines) <= head_lines + tail_lines:
            return OutputLimiter.truncate(content, max_chars)

        omitted = len(lines) - head_lines - tail_lines
        marker = f"\n... [Truncated: {omitted} lines omitted of {len(lines)} total] ...\n"
        result = "\n".join(lines[:head_lines]) + marker + "\n".join(lines[-tail_lines:])
        return OutputLimiter.truncate(result, max_chars)

    @staticmethod
    def truncate_json_safely(json_string: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
        if len(json_string) <= max_chars:
            return json_string
        try:
            parsed = json.loads(json_string)
        except json.JSONDecodeError:
            return OutputLimiter.truncate(json_string, max_chars)
        if not isinstance(parsed, (dict, list)):
            return OutputLimiter.truncate(json_string, max_chars)

        serialized = _dumps(OutputLimiter._walk(parsed, max_chars))
        if len(serialized) > max_chars:
            return OutputLimiter.truncate(serialized, max_chars)
        return serialized

    @staticmethod
    def _walk(value: Any, budget: int) -> Any:
        if isinstance(value, str):
            if len(value) > 1000:
                return value[:500] + _marker(500, len(value))
            return value
        if isinstance(value, list):
            if len(value) > 5 and len(_dumps(value)) > budget:
                head = [OutputLimiter._walk(item, budget) for item in value[:3]]
                tail = [OutputLimiter._walk(item, budget) for item in value[-2:]]
                return head + [{"_truncated": f"{len(value) - 5} items omitted"}] + tail
            return [OutputLimiter._walk(item, budget) for item in value]
        if isinstance(value, dict):
            return {key: OutputLimiter._walk(item, budget) for key, item in value.items()}
        return value
