"""Tests for MessageAssembler fragment ordering and tool call updates."""

import unittest

from clawchat.client.assembler import MessageAssembler, find_tool_call
from clawchat.models import ContentPart, ContentPartType, Role, ToolStatus


def _shape(message):
    """Reduce a message to (type, text-or-name, status) tuples for comparison."""
    shape = []
    for part in message.parts:
        if part.is_tool_call:
            shape.append((part.type.value, part.name, part.status.value if part.status else None))
        else:
            shape.append((part.type.value, part.text, None))
    return shape


class TestTrailingSegments(unittest.TestCase):
    """Text and thinking fragments extend only the segment after the last tool call."""

    def setUp(self):
        self.assembler = MessageAssembler(clock=lambda: 1000.0)

    def test_message_created_lazily_with_run_id(self):
        self.assertEqual(self.assembler.messages, [])
        self.assembler.apply_text("run-1", "Hel")
        self.assembler.apply_text("run-1", "lo")

        message = self.assembler.find("run-1")
        self.assertIsNotNone(message)
        self.assertEqual(message.role, Role.ASSISTANT.value)
        self.assertEqual(_shape(message), [("text", "Hello", None)])
        self.assertEqual(message.timestamp, 1_000_000)

    def test_empty_delta_creates_nothing(self):
        self.assembler.apply_text("run-1", "")
        self.assembler.apply_thinking("run-1", "")
        self.assertIsNone(self.assembler.find("run-1"))

    def test_text_after_tool_call_starts_new_segment(self):
        self.assembler.apply_text("run-1", "Let me check. ")
        self.assembler.tool_start("run-1", "weather", "c1")
        self.assembler.apply_text("run-1", "It is ")
        self.assembler.apply_text("run-1", "sunny.")

        self.assertEqual(_shape(self.assembler.find("run-1")), [
            ("text", "Let me check. ", None),
            ("tool_call", "weather", "running"),
            ("text", "It is sunny.", None),
        ])

    def test_thinking_tool_thinking_text_order(self):
        a = self.assembler
        a.apply_thinking("run-1", "plan ")
        a.apply_thinking("run-1", "first")
        a.tool_start("run-1", "search", "c1")
        a.apply_thinking("run-1", "now answer")
        a.apply_text("run-1", "Done")
        a.tool_result("run-1", "search", "c1", "3 hits")
        a.apply_text("run-1", ".")

        self.assertEqual(_shape(a.find("run-1")), [
            ("thinking", "plan first", None),
            ("tool_call", "search", "success"),
            ("thinking", "now answer", None),
            ("text", "Done.", None),
        ])

    def test_same_stream_is_deterministic(self):
        def feed(assembler):
            assembler.apply_thinking("r", "a")
            assembler.tool_start("r", "t", "c1")
            assembler.apply_text("r", "b")
            assembler.tool_result("r", "t", "c1", "ok")
            assembler.apply_thinking("r", "c")
            assembler.apply_text("r", "d")
            return [p.to_dict() for p in assembler.find("r").parts]

        first = feed(MessageAssembler(clock=lambda: 1.0))
        second = feed(MessageAssembler(clock=lambda: 1.0))
        self.assertEqual(first, second)


class TestToolCalls(unittest.TestCase):
    """Tool call parts move running -> success|error exactly once."""

    def setUp(self):
        self.assembler = MessageAssembler(clock=lambda: 1000.0)

    def test_result_resolves_in_place(self):
        self.assembler.tool_start("run-1", "weather", "c1", arguments='{"city": "Paris"}')
        part = self.assembler.tool_result("run-1", "weather", "c1", "72F")

        message = self.assembler.find("run-1")
        self.assertEqual(len(message.parts), 1)
        self.assertIs(part, message.parts[0])
        self.assertEqual(part.status, ToolStatus.SUCCESS)
        self.assertEqual(part.result, "72F")
        self.assertEqual(part.arguments, '{"city": "Paris"}')

    def test_error_result(self):
        self.assembler.tool_start("run-1", "exec", "c1")
        part = self.assembler.tool_result("run-1", "exec", "c1", "boom", is_error=True)
        self.assertEqual(part.status, ToolStatus.ERROR)

    def test_second_result_is_ignored(self):
        self.assembler.tool_start("run-1", "exec", "c1")
        self.assembler.tool_result("run-1", "exec", "c1", "first")
        version = self.assembler.version

        self.assertIsNone(self.assembler.tool_result("run-1", "exec", "c1", "second", is_error=True))
        part = self.assembler.find("run-1").parts[0]
        self.assertEqual(part.status, ToolStatus.SUCCESS)
        self.assertEqual(part.result, "first")
        self.assertEqual(self.assembler.version, version)

    def test_duplicate_start_is_ignored(self):
        self.assertIsNotNone(self.assembler.tool_start("run-1", "exec", "c1"))
        self.assertIsNone(self.assembler.tool_start("run-1", "exec", "c1"))
        self.assertEqual(len(self.assembler.find("run-1").tool_calls), 1)

    def test_result_without_id_matches_newest_unresolved_by_name(self):
        self.assembler.tool_start("run-1", "read")
        self.assembler.tool_start("run-1", "read")
        self.assembler.tool_result("run-1", "read", result="second")
        self.assembler.tool_result("run-1", "read", result="first")

        calls = self.assembler.find("run-1").tool_calls
        self.assertEqual([c.result for c in calls], ["first", "second"])

    def test_name_match_skips_call_finished_without_payload(self):
        self.assembler.tool_start("run-1", "read", "id-a")
        self.assembler.tool_start("run-1", "read", "id-b")
        self.assembler.tool_result("run-1", "read", "id-b", None)
        part = self.assembler.tool_result("run-1", "read", result="file body")

        calls = self.assembler.find("run-1").tool_calls
        self.assertIs(part, calls[0])
        self.assertEqual(
            [(c.tool_call_id, c.status, c.result) for c in calls],
            [("id-a", ToolStatus.SUCCESS, "file body"), ("id-b", ToolStatus.SUCCESS, None)],
        )

    def test_unmatched_result_never_appends(self):
        self.assembler.apply_text("run-1", "hi")
        self.assertIsNone(self.assembler.tool_result("run-1", "ghost", "c9", "x"))
        self.assertIsNone(self.assembler.tool_result("run-2", "ghost", "c9", "x"))
        self.assertEqual(len(self.assembler.find("run-1").parts), 1)
        self.assertIsNone(self.assembler.find("run-2"))


class TestSnapshots(unittest.TestCase):
    """Cumulative snapshots only contribute their unseen suffix."""

    def setUp(self):
        self.assembler = MessageAssembler(clock=lambda: 1000.0)

    def test_snapshot_after_deltas_appends_suffix(self):
        self.assembler.apply_text("run-1", "It is ")
        self.assembler.apply_message_snapshot("run-1", {
            "role": "assistant",
            "content": [{"type": "text", "text": "It is 72F."}],
        })
        self.assertEqual(self.assembler.find("run-1").text, "It is 72F.")

    def test_identical_snapshot_is_noop(self):
        self.assembler.apply_text("run-1", "Same")
        version = self.assembler.version
        self.assembler.apply_text_snapshot("run-1", "Same")
        self.assertEqual(self.assembler.version, version)

    def test_diverging_snapshot_is_skipped(self):
        self.assembler.apply_text("run-1", "Hello")
        self.assembler.apply_text_snapshot("run-1", "Goodbye")
        self.assertEqual(self.assembler.find("run-1").text, "Hello")

    def test_empty_snapshot_creates_no_message(self):
        self.assembler.apply_message_snapshot("run-1", {"role": "assistant", "content": []})
        self.assertIsNone(self.assembler.find("run-1"))

    def test_reasoning_field_becomes_thinking(self):
        self.assembler.apply_message_snapshot("run-1", {
            "role": "assistant",
            "content": "Answer",
            "reasoning": "Because",
        })
        self.assertEqual(_shape(self.assembler.find("run-1")), [
            ("thinking", "Because", None),
            ("text", "Answer", None),
        ])

    def test_user_snapshot_ignored(self):
        self.assembler.apply_message_snapshot("run-1", {"role": "user", "content": "hi"})
        self.assertIsNone(self.assembler.find("run-1"))


class TestTranscriptMutations(unittest.TestCase):

    def setUp(self):
        self.assembler = MessageAssembler(clock=lambda: 42.5)

    def test_optimistic_user_message(self):
        message = self.assembler.add_user_message("ping")
        self.assertTrue(message.id.startswith("local-"))
        self.assertEqual(message.timestamp, 42_500)
        self.assertEqual(self.assembler.optimistic_messages(), [message])

    def test_error_message(self):
        message = self.assembler.append_error("boom")
        self.assertEqual(message.role, Role.SYSTEM.value)
        self.assertTrue(message.is_error)
        self.assertEqual(message.text, "boom")

    def test_discard_only_empty_message(self):
        self.assembler.tool_start("run-1", "x")
        self.assertFalse(self.assembler.discard("run-1"))

        self.assembler.apply_message_snapshot("run-2", {"content": []})
        self.assertFalse(self.assembler.discard("run-2"))

    def test_complete_sets_durations(self):
        self.assembler.apply_text("run-1", "hi")
        message = self.assembler.complete("run-1", stop_reason="stop", run_duration=2.5, thinking_duration=0.5)
        self.assertEqual(message.stop_reason, "stop")
        self.assertEqual(message.run_duration, 2.5)
        self.assertEqual(message.thinking_duration, 0.5)
        self.assertIsNone(self.assembler.complete("unknown"))

    def test_version_increments(self):
        v0 = self.assembler.version
        self.assembler.apply_text("run-1", "a")
        self.assertGreater(self.assembler.version, v0)


class TestFindToolCall(unittest.TestCase):

    def test_id_match_wins_over_name(self):
        parts = [
            ContentPart(type=ContentPartType.TOOL_CALL, name="a", tool_call_id="c1"),
            ContentPart(type=ContentPartType.TOOL_CALL, name="b", tool_call_id="c2"),
        ]
        self.assertIs(find_tool_call(parts, "b", "c1"), parts[0])

    def test_name_fallback_skips_resolved(self):
        parts = [
            ContentPart(type=ContentPartType.TOOL_CALL, name="a"),
            ContentPart(type=ContentPartType.TOOL_CALL, name="a", result="done"),
        ]
        self.assertIs(find_tool_call(parts, "a"), parts[0])

    def test_name_fallback_skips_finished_status(self):
        parts = [
            ContentPart(type=ContentPartType.TOOL_CALL, name="a", status=ToolStatus.RUNNING),
            ContentPart(type=ContentPartType.TOOL_CALL, name="a", status=ToolStatus.SUCCESS),
        ]
        self.assertIs(find_tool_call(parts, "a"), parts[0])

    def test_no_match(self):
        self.assertIsNone(find_tool_call([], "a", "c1"))


if __name__ == "__main__":
    unittest.main()
