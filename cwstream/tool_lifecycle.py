"""Lifecycle of tool calls and the content block events they produce."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from . import jsonlog as log
from .stream_types import (
    SSEEvent,
    ToolCall,
    ToolCallError,
    ToolCallResult,
    ToolExecution,
    ToolStatus,
)


def _now() -> datetime:
    return datetime.now().astimezone()


def _millis(delta: timedelta) -> int:
    return delta // timedelta(milliseconds=1)


def _parse_arguments(text: str) -> dict[str, Any]:
    data = json.loads(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("tool arguments must be a JSON object")
    return data


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _stop_event(index: int) -> SSEEvent:
    return SSEEvent(
        "content_block_stop", {"type": "content_block_stop", "index": index}
    )


class ToolLifecycleManager:
    """Tracks active and finished tool calls and their content block indices.

    Index 0 is left for the text block, so tools are numbered from 1.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._active: dict[str, ToolExecution] = {}
        self._completed: dict[str, ToolExecution] = {}
        self._block_indices: dict[str, int] = {}
        self._next_block_index = 1
        self._text_intro_generated = False

    def _assign_block_index(self, tool_id: str) -> int:
        if tool_id not in self._block_indices:
            self._block_indices[tool_id] = self._next_block_index
            self._next_block_index += 1
        return self._block_indices[tool_id]

    @staticmethod
    def _arguments_of(call: ToolCall) -> dict[str, Any]:
        try:
            return _parse_arguments(call.function.arguments)
        except ValueError as exc:
            log.warn(
                "failed to parse tool call arguments",
                tool_id=call.id,
                tool_name=call.function.name,
                error=str(exc),
            )
            return {}

    @staticmethod
    def _text_introduction() -> list[SSEEvent]:
        return [
            SSEEvent(
                "content_block_delta",
                {
                    "type": "content_block_delta",
                    "index": 0,
                    "delta": {"type": "text_delta", "text": ""},
                },
            )
        ]

    def handle_tool_call_request(self, tool_calls: Iterable[ToolCall]) -> list[SSEEvent]:
        """Register new tool calls and return their block start events.

        A call whose id is already active only has its arguments updated, and
        only when the new arguments are not empty.
        """
        calls = list(tool_calls)
        events: list[SSEEvent] = []
        if not self._text_intro_generated and calls:
            events.extend(self._text_introduction())
            self._text_intro_generated = True

        for call in calls:
            existing = self._active.get(call.id)
            if existing is not None:
                log.debug(
                    "tool already exists, updating arguments",
                    tool_id=call.id,
                    tool_name=call.function.name,
                    existing_status=str(existing.status),
                )
                arguments = self._arguments_of(call)
                if arguments:
                    existing.arguments = arguments
                continue

            arguments = self._arguments_of(call)
            execution = ToolExecution(
                id=call.id,
                name=call.function.name,
                start_time=_now(),
                status=ToolStatus.PENDING,
                arguments=arguments,
                block_index=self._assign_block_index(call.id),
            )
            self._active[call.id] = execution
            log.debug(
                "starting tool call",
                tool_id=call.id,
                tool_name=call.function.name,
                block_index=execution.block_index,
            )

            events.append(
                SSEEvent(
                    "content_block_start",
                    {
                        "type": "content_block_start",
                        "index": execution.block_index,
                        "content_block": {
                            "type": "tool_use",
                            "id": call.id,
                            "name": call.function.name,
                            "input": arguments,
                        },
                    },
                )
            )
            if arguments:
                events.append(
                    SSEEvent(
                        "content_block_delta",
                        {
                            "type": "content_block_delta",
                            "index": execution.block_index,
                            "delta": {
                                "type": "input_json_delta",
                                "partial_json": _dump(arguments),
                            },
                        },
                    )
                )
            execution.status = ToolStatus.RUNNING
        return events

    def handle_tool_call_result(self, result: ToolCallResult) -> list[SSEEvent]:
        """Complete an active tool and return its block stop event."""
        execution = self._active.get(result.tool_call_id)
        if execution is None:
            log.warn("result for unknown tool call", tool_call_id=result.tool_call_id)
            return []
        execution.end_time = _now()
        execution.result = result.result
        execution.status = ToolStatus.COMPLETED
        self._completed[result.tool_call_id] = self._active.pop(result.tool_call_id)
        return [_stop_event(execution.block_index)]

    def handle_tool_call_error(self, error: ToolCallError) -> list[SSEEvent]:
        """Fail an active tool and return an error event and its block stop event."""
        execution = self._active.get(error.tool_call_id)
        if execution is None:
            log.warn("error for unknown tool call", tool_call_id=error.tool_call_id)
            return []
        now = _now()
        execution.end_time = now
        execution.error = error.error
        execution.status = ToolStatus.ERROR
        log.warn(
            "tool call failed",
            tool_id=error.tool_call_id,
            tool_name=execution.name,
            error=error.error,
            execution_time=_millis(now - execution.start_time),
        )
        events = [
            SSEEvent(
                "error",
                {
                    "type": "error",
                    "error": {
                        "type": "tool_error",
                        "message": error.error,
                        "tool_call_id": error.tool_call_id,
                    },
                },
            ),
            _stop_event(execution.block_index),
        ]
        self._completed[error.tool_call_id] = self._active.pop(error.tool_call_id)
        return events

    def get_tool(self, tool_id: str) -> ToolExecution | None:
        return self._active.get(tool_id) or self._completed.get(tool_id)

    @property
    def active_tools(self) -> dict[str, ToolExecution]:
        return dict(self._active)

    @property
    def completed_tools(self) -> dict[str, ToolExecution]:
        return dict(self._completed)

    def block_index(self, tool_id: str) -> int:
        """The tool's content block index, or -1 if it was never registered."""
        return self._block_indices.get(tool_id, -1)

    def summary(self) -> dict[str, Any]:
        active = len(self._active)
        completed = len(self._completed)
        errors = sum(1 for t in self._completed.values() if t.status is ToolStatus.ERROR)
        total_time = sum(
            _millis(t.end_time - t.start_time)
            for t in self._completed.values()
            if t.end_time is not None
        )
        denominator = completed + active
        success_rate = (
            (completed - errors) / denominator if denominator else float("nan")
        )
        return {
            "active_tools": active,
            "completed_tools": completed,
            "error_tools": errors,
            "total_execution_time": total_time,
            "success_rate": success_rate,
        }

    def update_arguments(self, tool_id: str, arguments: dict[str, Any]) -> None:
        execution = self._active.get(tool_id) or self._completed.get(tool_id)
        if execution is None:
            log.warn("no tool found to update arguments", tool_id=tool_id)
            return
        execution.arguments = arguments

    def update_arguments_from_json(self, tool_id: str, json_args: str) -> None:
        try:
            arguments = _parse_arguments(json_args)
        except ValueError as exc:
            log.warn(
                "failed to parse tool arguments JSON",
                tool_id=tool_id,
                json=json_args,
                error=str(exc),
            )
            return
        self.update_arguments(tool_id, arguments)