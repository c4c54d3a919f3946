from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Tool(Protocol):
    """A function the model may call during generation.

    ``input_schema`` is the JSON schema sent to the vendor. Calls to a tool
    with ``needs_approval`` are held in the Pending state until the user
    approves or denies them.
    """

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    @property
    def needs_approval(self) -> bool: ...

    async def execute(self, tool_input: dict[str, Any]) -> str:
        """Run the call with the parsed arguments and return its text result."""
        ...
