import json
import unittest
from datetime import UTC, datetime

from convo_engine.errors import UnknownPartTypeError
from convo_engine.models import (
    APPROVED,
    PENDING,
    Denied,
    Document,
    Image,
    Message,
    MessageRole,
    Reasoning,
    Text,
    TokenUsage,
    Tool,
    ToolCall,
    UrlCitation,
    is_empty_input_message,
    is_empty_ui_message,
    message_from_dict,
    message_to_dict,
    messages_from_json,
    messages_to_json,
    part_from_dict,
    part_to_dict,
    truncate,
)


class ToolPartTests(unittest.TestCase):
    def test_input_as_json_blank_and_invalid(self) -> None:
        self.assertEqual({}, Tool("t1", "search", "").input_as_json())
        self.assertEqual({}, Tool("t1", "search", "{not json").input_as_json())
        self.assertEqual({"q": "x"}, Tool("t1", "search", '{"q": "x"}').input_as_json())

    def test_output_list_is_stored_as_tuple(self) -> None:
        tool = Tool("t1", "search", "{}", output=[Text("done")])
        self.assertEqual((Text("done"),), tool.output)
        self.assertTrue(tool.is_executed)

    def test_merge_keeps_approval_state(self) -> None:
        tool = Tool("t1", "sea", '{"q"', approval_state=PENDING)
        merged = tool.merge(Tool("t1", "rch", ': "x"}'))
        self.assertEqual("search", merged.tool_name)
        self.assertEqual('{"q": "x"}', merged.input)
        self.assertEqual(PENDING, merged.approval_state)


class MessageHelperTests(unittest.TestCase):
    def test_text_joins_only_text_parts(self) -> None:
        message = Message(
            role=MessageRole.ASSISTANT,
            parts=(Text("a"), Tool("t1", "x", ""), Text("b")),
        )
        self.assertEqual("a\nb", message.text())
        self.assertEqual("[ASSISTANT]: a\nb", message.summary_as_text())

    def test_role_is_coerced_from_string(self) -> None:
        self.assertEqual(MessageRole.USER, Message(role="user").role)

    def test_is_valid_to_upload(self) -> None:
        self.assertFalse(Message(role=MessageRole.USER, parts=(Text("  "),)).is_valid_to_upload())
        self.assertTrue(Message(role=MessageRole.USER, parts=(Image("data:image/png;base64,AA"),)).is_valid_to_upload())
        self.assertTrue(Message(role=MessageRole.ASSISTANT, parts=(Tool("t1", "x", ""),)).is_valid_to_upload())

    def test_has_base64_part(self) -> None:
        self.assertTrue(Message(role=MessageRole.USER, parts=(Image("data:image/png;base64,AA"),)).has_base64_part())
        self.assertFalse(Message(role=MessageRole.USER, parts=(Image("https://x/y.png"),)).has_base64_part())

    def test_empty_message_checks(self) -> None:
        reasoning_only = [Reasoning("thinking")]
        self.assertTrue(is_empty_input_message(reasoning_only))
        self.assertFalse(is_empty_ui_message(reasoning_only))
        self.assertTrue(is_empty_ui_message([Text(" ")]))

    def test_truncate(self) -> None:
        messages = [Message.user("a"), Message.assistant("b"), Message.user("c")]
        self.assertEqual(messages[1:], truncate(messages, 1))
        self.assertEqual(messages, truncate(messages, 5))
        self.assertEqual(messages, truncate(messages, -1))


class CodecTests(unittest.TestCase):
    def test_tool_part_uses_camel_case_keys(self) -> None:
        data = part_to_dict(Tool("t1", "search", "{}", output=(Text("r"),), approval_state=Denied("no")))
        self.assertEqual("tool", data["type"])
        self.assertEqual("t1", data["toolCallId"])
        self.assertEqual("search", data["toolName"])
        self.assertEqual({"type": "denied", "reason": "no"}, data["approvalState"])
        self.assertEqual([{"type": "text", "text": "r", "metadata": None}], data["output"])

    def test_decode_approval_states(self) -> None:
        approved = part_from_dict({"type": "tool", "toolCallId": "a", "approvalState": {"type": "approved"}})
        self.assertEqual(APPROVED, approved.approval_state)
        legacy = part_from_dict({"type": "tool_call", "toolCallId": "b", "toolName": "x", "arguments": "{}"})
        self.assertIsInstance(legacy, ToolCall)

    def test_unknown_part_type_raises(self) -> None:
        with self.assertRaises(UnknownPartTypeError):
            part_from_dict({"type": "hologram"})

    def test_document_defaults(self) -> None:
        part = part_from_dict({"type": "document", "url": "file://a", "fileName": "a.txt"})
        self.assertEqual(Document("file://a", "a.txt", "text/*"), part)

    def test_message_dict_shape(self) -> None:
        created = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
        message = Message(
            role=MessageRole.ASSISTANT,
            parts=(Text("hi"),),
            annotations=(UrlCitation("Doc", "https://example.com"),),
            created_at=created,
            model_id="m1",
            usage=TokenUsage(1, 2, 0, 3),
        )
        data = message_to_dict(message)
        self.assertEqual("assistant", data["role"])
        self.assertEqual("m1", data["modelId"])
        self.assertEqual({"promptTokens": 1, "completionTokens": 2, "cachedTokens": 0, "totalTokens": 3}, data["usage"])
        self.assertEqual([{"type": "url_citation", "title": "Doc", "url": "https://example.com"}], data["annotations"])
        self.assertEqual(message, message_from_dict(data))

    def test_role_decoding_is_case_insensitive(self) -> None:
        message = message_from_dict({"role": "ASSISTANT", "parts": []})
        self.assertEqual(MessageRole.ASSISTANT, message.role)

    def test_naive_timestamps_become_aware(self) -> None:
        message = message_from_dict({"role": "user", "parts": [], "createdAt": "2024-01-02T03:04:05"})
        self.assertIsNotNone(message.created_at.tzinfo)

    def test_messages_json_round_trip(self) -> None:
        messages = [Message.user("héllo"), Message.assistant("ok")]
        text = messages_to_json(messages)
        self.assertIn("héllo", text)
        self.assertEqual(messages, messages_from_json(text))

    def test_messages_from_json_requires_array(self) -> None:
        with self.assertRaises(ValueError):
            messages_from_json(json.dumps({"role": "user"}))


if __name__ == "__main__":
    unittest.main()
