"""
Engine exceptions.

Merge and migration run on the read/write path of user history, so only
protocol violations surface as exceptions there. Everything else degrades
and logs.
"""


class ConvoEngineError(Exception):
    """Base exception for all engine errors."""

    pass


class ContractViolation(ConvoEngineError):
    """Raised when a streamed chunk breaks the delta/message contract."""

    def __init__(self, chunk_id: str, reason: str):
        self.chunk_id = chunk_id
        self.reason = reason
        super().__init__(f"Chunk {chunk_id!r} violates the stream contract: {reason}")


class UnknownPartTypeError(ConvoEngineError):
    """Raised when a persisted part carries a type tag the model cannot decode."""

    def __init__(self, type_tag: object):
        self.type_tag = type_tag
        super().__init__(f"Unknown message part type: {type_tag!r}")


class InvalidTransitionError(ConvoEngineError):
    """Raised when a tool approval transition is not allowed from the current state."""

    def __init__(self, tool_call_id: str, current: str, target: str):
        self.tool_call_id = tool_call_id
        self.current = current
        self.target = target
        super().__init__(f"Tool call {tool_call_id!r} cannot move from {current} to {target}")
