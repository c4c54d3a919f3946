import json
import unittest

from convo_engine.migration import PART_TYPE_MAPPING, migrate_messages_json, migrate_parts


class PartTypeMappingTests(unittest.TestCase):
    def test_all_spellings_map_to_short_tag(self) -> None:
        self.assertEqual("text", PART_TYPE_MAPPING["Text"])
        self.assertEqual("tool_call", PART_TYPE_MAPPING["UIMessagePart.ToolCall"])
        self.assertEqual("tool_result", PART_TYPE_MAPPING["me.rerere.ai.ui.UIMessagePart.ToolResult"])

    def test_unchanged_parts_return_same_object(self) -> None:
        parts = [{"type": "text", "text": "a"}, {"type": "custom"}]
        self.assertIs(parts, migrate_parts(parts))

    def test_nested_tool_output_is_migrated(self) -> None:
        parts = [
            {
                "type": "me.rerere.ai.ui.UIMessagePart.Tool",
                "output": [{"type": "UIMessagePart.Text", "text": "r"}],
            }
        ]
        migrated = migrate_parts(parts)
        self.assertEqual("tool", migrated[0]["type"])
        self.assertEqual("text", migrated[0]["output"][0]["type"])
        self.assertEqual("me.rerere.ai.ui.UIMessagePart.Tool", parts[0]["type"])


class MigrateMessagesJsonTests(unittest.TestCase):
    def test_rewrites_legacy_tags(self) -> None:
        raw = json.dumps([{"role": "user", "parts": [{"type": "UIMessagePart.Text", "text": "héllo"}]}])
        migrated = json.loads(migrate_messages_json(raw))
        self.assertEqual([{"role": "user", "parts": [{"type": "text", "text": "héllo"}]}], migrated)

    def test_non_ascii_is_kept_literal(self) -> None:
        raw = json.dumps([{"role": "user", "parts": [{"type": "Text", "text": "héllo"}]}])
        self.assertIn("héllo", migrate_messages_json(raw))

    def test_unchanged_input_is_returned_verbatim(self) -> None:
        raw = '[ {"role": "user", "parts": [{"type": "text", "text": "a"}]} ]'
        self.assertIs(raw, migrate_messages_json(raw))

    def test_malformed_json_passes_through(self) -> None:
        raw = '[{"role": "user", "parts": ['
        self.assertEqual(raw, migrate_messages_json(raw))

    def test_non_array_passes_through(self) -> None:
        raw = '{"role": "user"}'
        self.assertEqual(raw, migrate_messages_json(raw))

    def test_idempotent(self) -> None:
        raw = json.dumps([
            {"role": "assistant", "parts": [{"type": "me.rerere.ai.ui.UIMessagePart.Reasoning", "reasoning": "r"}]}
        ])
        once = migrate_messages_json(raw)
        self.assertEqual(once, migrate_messages_json(once))


if __name__ == "__main__":
    unittest.main()
