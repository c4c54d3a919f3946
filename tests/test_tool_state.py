import unittest

from convo_engine.errors import InvalidTransitionError
from convo_engine.models import APPROVED, AUTO, PENDING, Denied, Message, MessageRole, Text, Tool
from convo_engine.tool_state import (
    approve,
    attach_output,
    can_execute,
    deny,
    is_blocked,
    pending_tools,
    request_approval,
    state_name,
    update_tool,
)


def _tool(state=AUTO, output=()) -> Tool:
    return Tool("t1", "delete_file", '{"path": "a"}', output=output, approval_state=state)


class TransitionTests(unittest.TestCase):
    def test_auto_to_pending_to_approved(self) -> None:
        tool = request_approval(_tool())
        self.assertTrue(tool.is_pending)
        self.assertTrue(is_blocked(tool))
        self.assertFalse(can_execute(tool))

        tool = approve(tool)
        self.assertEqual(APPROVED, tool.approval_state)
        self.assertTrue(can_execute(tool))

    def test_pending_to_denied_keeps_reason(self) -> None:
        tool = deny(request_approval(_tool()), "not now")
        self.assertEqual(Denied("not now"), tool.approval_state)
        self.assertTrue(is_blocked(tool))
        self.assertFalse(can_execute(tool))

    def test_illegal_transitions_raise(self) -> None:
        with self.assertRaises(InvalidTransitionError):
            approve(_tool())
        with self.assertRaises(InvalidTransitionError):
            deny(_tool(APPROVED))
        with self.assertRaises(InvalidTransitionError) as ctx:
            request_approval(_tool(PENDING))
        self.assertEqual("pending", ctx.exception.current)
        self.assertEqual("pending", ctx.exception.target)

    def test_transitions_do_not_mutate(self) -> None:
        original = _tool()
        request_approval(original)
        self.assertEqual(AUTO, original.approval_state)

    def test_state_names(self) -> None:
        self.assertEqual("auto", state_name(AUTO))
        self.assertEqual("denied", state_name(Denied()))


class ExecutionTests(unittest.TestCase):
    def test_attach_output_marks_executed(self) -> None:
        tool = attach_output(_tool(), [Text("deleted")])
        self.assertTrue(tool.is_executed)
        self.assertFalse(can_execute(tool))
        self.assertEqual(AUTO, tool.approval_state)

    def test_pending_tools_and_update(self) -> None:
        message = Message(
            role=MessageRole.ASSISTANT,
            parts=(Text("ok"), _tool(PENDING), Tool("t2", "read", "{}")),
        )
        self.assertEqual(["t1"], [t.tool_call_id for t in pending_tools(message)])

        updated = update_tool(message, "t1", approve)
        self.assertEqual(APPROVED, updated.parts[1].approval_state)
        self.assertEqual([], pending_tools(updated))
        self.assertEqual(PENDING, message.parts[1].approval_state)

    def test_update_unknown_tool_raises(self) -> None:
        with self.assertRaises(KeyError):
            update_tool(Message.assistant("x"), "missing", approve)


if __name__ == "__main__":
    unittest.main()
