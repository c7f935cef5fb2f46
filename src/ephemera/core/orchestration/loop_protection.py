from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any


def canonical_args(args: dict[str, Any]) -> str:
    return json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class ToolCallRecord:
    tool: str
    args: dict[str, Any]
    canonical: str
    iteration: int
    timestamp: float


@dataclass
class LoopDetector:
    """Per-run memory of tool invocations used to stop repeated identical calls."""

    max_iterations: int = 20
    max_tool_calls: int = 50
    max_repeated_calls: int = 1
    lookback_iterations: int = 5
    history: list[ToolCallRecord] = field(default_factory=list)

    def record_call(self, tool: str, args: dict[str, Any], iteration: int) -> None:
        self.history.append(
            ToolCallRecord(
                tool=tool,
                args=dict(args),
                canonical=canonical_args(args),
                iteration=iteration,
                timestamp=time.time(),
            )
        )

    def count_repeated_calls(self, tool: str, args: dict[str, Any], current_iteration: int) -> int:
        key = canonical_args(args)
        file_path = args.get("file_path") if tool == "get_file" else None
        count = 0
        for record in self.history:
            if current_iteration - record.iteration > self.lookback_iterations:
                continue
            if record.tool != tool:
                continue
            # get_file is a repeat whenever the same path comes back, whatever else changed.
            if record.canonical == key or (file_path and record.args.get("file_path") == file_path):
                count += 1
        return count

    def is_loop(self, tool: str, args: dict[str, Any], current_iteration: int) -> bool:
        return self.count_repeated_calls(tool, args, current_iteration) >= self.max_repeated_calls

    def get_loop_hint(self, tool: str, args: dict[str, Any]) -> str:
        if tool == "get_file":
            return (
                f"You already read {args.get('file_path') or 'this file'}. "
                "Use the content from the previous result instead of re-fetching."
            )
        if tool == "get_k8s_resources" and not args.get("name"):
            return (
                "You keep searching for resources with the same criteria. "
                "If resources don't exist, check deployment status instead."
            )
        if tool == "get_pod_logs":
            return (
                "Repeatedly fetching logs suggests the pattern isn't found. "
                "Try a different search term or check a different service."
            )
        return "Consider trying a different tool or different arguments."

    def reset(self) -> None:
        self.history.clear()
