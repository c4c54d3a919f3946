import unittest
from datetime import UTC, datetime, timedelta

from convo_engine.models import Message, MessageRole, Reasoning, Text
from convo_engine.transformers import (
    ThinkTagTransformer,
    TimeReminderTransformer,
    TransformerContext,
    apply_time_reminder,
    build_time_reminder,
    format_gap,
)

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=UTC)


def _user(text: str, at: datetime) -> Message:
    return Message.user(text, created_at=at)


class FormatGapTests(unittest.TestCase):
    def test_tiers(self) -> None:
        self.assertEqual("59 min", format_gap(59 * 60 + 59))
        self.assertEqual("2 h", format_gap(2 * 3600 + 10))
        self.assertEqual("3 d", format_gap(3 * 86400 + 5))


class TimeReminderTests(unittest.TestCase):
    def test_no_reminder_within_an_hour(self) -> None:
        messages = [_user("a", T0), _user("b", T0 + timedelta(seconds=3600))]
        self.assertEqual(messages, apply_time_reminder(messages))

    def test_reminder_inserted_before_message_after_gap(self) -> None:
        later = T0 + timedelta(hours=2)
        messages = [_user("a", T0), _user("b", later)]

        result = apply_time_reminder(messages)

        self.assertEqual(3, len(result))
        reminder = result[1]
        self.assertEqual(MessageRole.USER, reminder.role)
        self.assertEqual(later, reminder.created_at)
        self.assertTrue(reminder.text().startswith("<time_reminder>Current time: "))
        self.assertIn("(2 h since last message)</time_reminder>", reminder.text())
        self.assertIs(messages[1], result[2])

    def test_multiple_gaps(self) -> None:
        messages = [
            _user("a", T0),
            _user("b", T0 + timedelta(days=2)),
            _user("c", T0 + timedelta(days=2, minutes=10)),
            _user("d", T0 + timedelta(days=2, hours=5)),
        ]
        result = apply_time_reminder(messages)
        reminders = [m.text() for m in result if m.text().startswith("<time_reminder>")]
        self.assertEqual(2, len(reminders))
        self.assertIn("(2 d since last message)", reminders[0])
        self.assertIn("(4 h since last message)", reminders[1])
        self.assertEqual(4, len(messages))

    def test_reminder_content_uses_local_time(self) -> None:
        reminder = build_time_reminder(7200, T0)
        local = T0.astimezone()
        self.assertIn(local.strftime("%A, %Y-%m-%d %H:%M"), reminder.text())

    def test_transformer_respects_toggle(self) -> None:
        messages = [_user("a", T0), _user("b", T0 + timedelta(days=1))]
        transformer = TimeReminderTransformer()
        self.assertEqual(messages, transformer.transform(TransformerContext(enable_time_reminder=False), messages))
        self.assertEqual(3, len(transformer.transform(TransformerContext(), messages)))


class ThinkTagTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = T0 + timedelta(minutes=1)
        self.transformer = ThinkTagTransformer(clock=lambda: self.now)
        self.ctx = TransformerContext()

    def _assistant(self, text: str) -> Message:
        return Message(role=MessageRole.ASSISTANT, parts=(Text(text),), created_at=T0)

    def test_closed_tag_becomes_finished_reasoning(self) -> None:
        [message] = self.transformer.visual_transform(self.ctx, [self._assistant("<think>plan</think>Answer")])
        reasoning, text = message.parts
        self.assertEqual(Reasoning("plan", created_at=T0, finished_at=self.now), reasoning)
        self.assertEqual(Text("Answer"), text)

    def test_open_tag_stays_unfinished_while_streaming(self) -> None:
        [message] = self.transformer.visual_transform(self.ctx, [self._assistant("<think>still going")])
        self.assertEqual("still going", message.parts[0].reasoning)
        self.assertIsNone(message.parts[0].finished_at)
        self.assertEqual(Text(""), message.parts[1])

    def test_open_tag_is_finished_on_generation_finish(self) -> None:
        [message] = self.transformer.on_generation_finish(self.ctx, [self._assistant("<think>cut off")])
        self.assertEqual(self.now, message.parts[0].finished_at)

    def test_user_and_plain_messages_untouched(self) -> None:
        user = Message.user("<think>not mine</think>")
        plain = self._assistant("no tags")
        result = self.transformer.visual_transform(self.ctx, [user, plain])
        self.assertIs(user, result[0])
        self.assertIs(plain, result[1])


if __name__ == "__main__":
    unittest.main()
