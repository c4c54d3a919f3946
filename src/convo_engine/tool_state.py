"""Approval and execution lifecycle of tool parts.

Auto is the initial state and needs no decision. Pending waits for the user,
who moves it to Approved or Denied. Execution is tracked separately through
``Tool.output``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace

from loguru import logger

from convo_engine.errors import InvalidTransitionError
from convo_engine.models import (
    APPROVED,
    PENDING,
    ApprovalState,
    Approved,
    Auto,
    Denied,
    Message,
    Part,
    Pending,
    Tool,
)


def state_name(state: ApprovalState) -> str:
    if isinstance(state, Pending):
        return "pending"
    if isinstance(state, Approved):
        return "approved"
    if isinstance(state, Denied):
        return "denied"
    return "auto"


def _transition(tool: Tool, allowed_from: type, target: ApprovalState) -> Tool:
    if not isinstance(tool.approval_state, allowed_from):
        raise InvalidTransitionError(tool.tool_call_id, state_name(tool.approval_state), state_name(target))
    logger.debug(f"Tool {tool.tool_name} ({tool.tool_call_id}): {state_name(tool.approval_state)} -> {state_name(target)}")
    return replace(tool, approval_state=target)


def request_approval(tool: Tool) -> Tool:
    return _transition(tool, Auto, PENDING)


def approve(tool: Tool) -> Tool:
    return _transition(tool, Pending, APPROVED)


def deny(tool: Tool, reason: str = "") -> Tool:
    return _transition(tool, Pending, Denied(reason=reason))


def attach_output(tool: Tool, output: list[Part] | tuple[Part, ...]) -> Tool:
    """Record the execution result. Approval is not re-checked here."""
    return replace(tool, output=tuple(output))


def can_execute(tool: Tool) -> bool:
    return not tool.is_executed and isinstance(tool.approval_state, (Auto, Approved))


def is_blocked(tool: Tool) -> bool:
    return isinstance(tool.approval_state, (Pending, Denied))


def pending_tools(message: Message) -> list[Tool]:
    return [t for t in message.tools() if t.is_pending]


def update_tool(message: Message, tool_call_id: str, fn: Callable[[Tool], Tool]) -> Message:
    """Return ``message`` with the tool part identified by ``tool_call_id`` replaced by ``fn(part)``."""
    found = False
    parts: list[Part] = []
    for part in message.parts:
        if isinstance(part, Tool) and part.tool_call_id == tool_call_id:
            part = fn(part)
            found = True
        parts.append(part)
    if not found:
        raise KeyError(f"Tool call not found in message {message.id}: {tool_call_id}")
    return replace(message, parts=tuple(parts))
