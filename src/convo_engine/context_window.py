from __future__ import annotations

from loguru import logger

from convo_engine.models import Message, MessageRole


def select(history: list[Message], target_size: int) -> list[Message]:
    """Return the shortest suffix of ``history`` holding at least ``target_size``
    messages that does not start in the middle of a tool invocation.

    A window starting on an executed tool is widened back to the message that
    issued the call; a window starting on an unexecuted call is widened back to
    the user message that prompted it.
    """
    if target_size <= 0 or len(history) <= target_size:
        return history

    start = len(history) - target_size
    visited: set[int] = set()
    needs_adjustment = True

    while needs_adjustment and start > 0:
        needs_adjustment = False

        if start in visited:
            logger.warning(f"Context window adjustment revisited index {start}, stopping")
            break
        visited.add(start)

        tools = history[start].tools()

        if any(t.is_executed for t in tools):
            for i in range(start - 1, -1, -1):
                if any(not t.is_executed for t in history[i].tools()):
                    start = i
                    needs_adjustment = True
                    break

        if any(not t.is_executed for t in tools):
            for i in range(start - 1, -1, -1):
                if history[i].role == MessageRole.USER:
                    start = i
                    needs_adjustment = True
                    break

    return history[start:]


limit_context = select
