from __future__ import annotations

import json
import unittest

from usbide.protocol.parser import MALFORMED_NOTICE_THRESHOLD, ProtocolStreamParser, format_action
from usbide.protocol.records import DisplayEvent, DisplayKind, RawLine


class _Feed:
    def __init__(self, parser: ProtocolStreamParser) -> None:
        self.parser = parser
        self.seq = 0

    def line(self, text: str, stream: str = "stdout") -> list[DisplayEvent]:
        self.seq += 1
        return self.parser.feed(RawLine(stream=stream, text=text, seq=self.seq))

    def rec(self, obj: dict) -> list[DisplayEvent]:
        return self.line(json.dumps(obj))


def _delta(d: str) -> dict:
    return {"type": "response.output_text.delta", "delta": d}


class ProtocolParserTests(unittest.TestCase):
    def setUp(self) -> None:
        self.parser = ProtocolStreamParser()
        self.feed = _Feed(self.parser)

    def test_deltas_merge_into_one_assistant_event(self) -> None:
        out: list[DisplayEvent] = []
        for d in ["Hel", "lo ", "world"]:
            out.extend(self.feed.rec(_delta(d)))
        self.assertEqual(out, [])
        out.extend(self.feed.rec({"type": "response.completed"}))
        self.assertEqual(len(out), 1)
        self.assertEqual(out[0].kind, DisplayKind.ASSISTANT)
        self.assertEqual(out[0].text, "Hello world")
        self.assertEqual(self.parser.flush(), [])

    def test_output_text_record_with_text_field_is_a_delta(self) -> None:
        self.feed.rec({"type": "response.output_text", "text": "abc"})
        out = self.feed.rec({"type": "response.output_text.done"})
        self.assertEqual([e.text for e in out], ["abc"])

    def test_done_with_text_and_no_open_buffer_emits_text(self) -> None:
        out = self.feed.rec({"type": "response.output_text.done", "text": "complete answer"})
        self.assertEqual([(e.kind, e.text) for e in out], [(DisplayKind.ASSISTANT, "complete answer")])

    def test_flush_emits_unterminated_buffer(self) -> None:
        self.feed.rec(_delta("partial "))
        self.feed.rec(_delta("answer"))
        out = self.parser.flush()
        self.assertEqual([(e.kind, e.text) for e in out], [(DisplayKind.ASSISTANT, "partial answer")])
        self.assertEqual(self.parser.flush(), [])

    def test_same_action_twice_yields_one_event(self) -> None:
        action = {"type": "tool_call", "name": "shell", "arguments": {"cmd": "ls -la"}}
        out = self.feed.rec(action) + self.feed.rec(action)
        self.assertEqual(len(out), 1)
        self.assertEqual(out[0].kind, DisplayKind.ACTION)
        self.assertEqual(out[0].text, 'shell: {"cmd":"ls -la"}')

    def test_distinct_actions_yield_two_events(self) -> None:
        out = self.feed.rec({"type": "tool_call", "name": "shell", "arguments": "ls"})
        out += self.feed.rec({"type": "tool_call", "name": "shell", "arguments": "pwd"})
        self.assertEqual([e.text for e in out], ["shell: ls", "shell: pwd"])

    def test_repeat_allowed_after_turn_boundary(self) -> None:
        action = {"type": "tool_call", "name": "shell", "arguments": "make test"}
        out = self.feed.rec(action)
        out += self.feed.rec({"type": "turn.completed"})
        out += self.feed.rec({"type": "turn.started"})
        out += self.feed.rec(action)
        self.assertEqual([e.text for e in out], ["shell: make test", "shell: make test"])

    def test_action_repeat_after_another_action_is_shown(self) -> None:
        def cmd(c: str) -> dict:
            return {"type": "item.completed", "item": {"type": "command_execution", "command": c, "status": "completed"}}

        out = self.feed.rec(cmd("pytest")) + self.feed.rec(cmd("sed -i x a.py")) + self.feed.rec(cmd("pytest"))
        self.assertEqual([e.text for e in out], ["Command: pytest", "Command: sed -i x a.py", "Command: pytest"])

    def test_assistant_dedup_window_is_bounded(self) -> None:
        def msg(t: str) -> dict:
            return {"type": "event_msg", "payload": {"type": "agent_message", "message": t}}

        out = self.feed.rec(msg("a")) + self.feed.rec(msg("b")) + self.feed.rec(msg("a"))
        self.assertEqual([e.text for e in out], ["a", "b"])
        for t in ("c", "d", "e"):
            out += self.feed.rec(msg(t))
        out += self.feed.rec(msg("a"))
        self.assertEqual([e.text for e in out], ["a", "b", "c", "d", "e", "a"])

    def test_malformed_lines_are_skipped(self) -> None:
        out = self.feed.line("this is not json")
        out += self.feed.line("{broken")
        out += self.feed.line("")
        out += self.feed.line("   ")
        self.assertEqual(out, [])
        self.feed.rec(_delta("still "))
        self.feed.rec(_delta("alive"))
        out = self.parser.flush()
        self.assertEqual([e.text for e in out], ["still alive"])
        self.assertEqual(self.parser.state.malformed_total, 2)
        self.assertIn("this is not json", self.parser.text_tail)

    def test_json_scalars_and_unknown_records_are_ignored(self) -> None:
        self.assertEqual(self.feed.line("42"), [])
        self.assertEqual(self.feed.line('"text"'), [])
        self.assertEqual(self.feed.rec({"type": "thread.started", "thread_id": "t1"}), [])
        self.assertEqual(self.feed.rec({"no_type": True}), [])

    def test_malformed_notice_after_threshold_and_rearm(self) -> None:
        notices: list[DisplayEvent] = []
        for i in range(MALFORMED_NOTICE_THRESHOLD * 2):
            notices.extend(self.feed.line(f"garbage {i}"))
        self.assertEqual(len(notices), 1)
        self.assertEqual(notices[0].kind, DisplayKind.NOTICE)

        self.feed.rec({"type": "thread.started"})
        for i in range(MALFORMED_NOTICE_THRESHOLD - 1):
            notices.extend(self.feed.line(f"more garbage {i}"))
        self.assertEqual(len(notices), 1)
        notices.extend(self.feed.line("one more"))
        self.assertEqual(len(notices), 2)

    def test_stderr_chatter_does_not_count_as_malformed(self) -> None:
        out: list[DisplayEvent] = []
        for i in range(MALFORMED_NOTICE_THRESHOLD + 5):
            out.extend(self.feed.line(f"2026-01-01 INFO trace {i}", stream="stderr"))
        self.assertEqual(out, [])
        self.assertEqual(self.parser.state.malformed_total, 0)

    def test_known_cli_stderr_line_becomes_notice(self) -> None:
        out = self.feed.line("error: unexpected argument '--ask-for-approval' found", stream="stderr")
        self.assertEqual(len(out), 1)
        self.assertEqual(out[0].kind, DisplayKind.NOTICE)
        self.assertIn("--ask-for-approval", out[0].text)

    def test_error_record_carries_status_and_guidance(self) -> None:
        out = self.feed.rec({"type": "error", "message": "unexpected status 401 Unauthorized"})
        self.assertEqual(len(out), 1)
        self.assertEqual(out[0].kind, DisplayKind.ERROR)
        self.assertEqual(out[0].status, 401)
        self.assertIn("login", out[0].text)
        self.assertEqual(self.parser.last_error.transport_status, 401)

    def test_error_record_numeric_status_field(self) -> None:
        out = self.feed.rec({"type": "error", "message": "slow down", "status_code": 429})
        self.assertEqual(out[0].status, 429)

    def test_turn_failed_error_message(self) -> None:
        out = self.feed.rec({"type": "turn.failed", "error": {"message": "stream disconnected: last status: 503"}})
        self.assertEqual(out[0].kind, DisplayKind.ERROR)
        self.assertEqual(out[0].status, 503)
        self.assertTrue(out[0].text.startswith("Turn failed"))

    def test_error_without_status(self) -> None:
        out = self.feed.rec({"type": "error", "message": "model overloaded"})
        self.assertIsNone(out[0].status)
        self.assertIn("model overloaded", out[0].text)

    def test_error_flushes_open_buffer_first(self) -> None:
        self.feed.rec(_delta("half an "))
        self.feed.rec(_delta("answer"))
        out = self.feed.rec({"type": "error", "message": "unexpected status 500"})
        self.assertEqual([e.kind for e in out], [DisplayKind.ASSISTANT, DisplayKind.ERROR])
        self.assertEqual(out[0].text, "half an answer")

    def test_action_after_deltas_keeps_order(self) -> None:
        self.feed.rec(_delta("Let me look."))
        out = self.feed.rec({"type": "tool_call", "name": "shell", "arguments": "ls"})
        self.assertEqual([e.kind for e in out], [DisplayKind.ASSISTANT, DisplayKind.ACTION])

    def test_user_and_assistant_event_msgs(self) -> None:
        out = self.feed.rec({"type": "event_msg", "payload": {"type": "user_message", "message": "fix it"}})
        out += self.feed.rec({"type": "event_msg", "payload": {"type": "agent_message", "message": "Done."}})
        self.assertEqual([(e.kind, e.text) for e in out], [(DisplayKind.USER, "fix it"), (DisplayKind.ASSISTANT, "Done.")])

    def test_response_item_messages(self) -> None:
        rec = {
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": "first"}, {"type": "reasoning", "text": "hidden"}, {"type": "output_text", "text": "second"}],
            },
        }
        out = self.feed.rec(rec)
        self.assertEqual([e.text for e in out], ["first", "second"])

    def test_codex_items(self) -> None:
        out = self.feed.rec({"type": "item.completed", "item": {"id": "i0", "type": "agent_message", "text": "Working on it"}})
        out += self.feed.rec({"type": "item.started", "item": {"id": "i1", "type": "command_execution", "command": "pytest", "status": "in_progress"}})
        out += self.feed.rec({"type": "item.completed", "item": {"id": "i1", "type": "command_execution", "command": "pytest", "status": "failed"}})
        out += self.feed.rec(
            {"type": "item.completed", "item": {"id": "i2", "type": "file_change", "changes": [{"path": "src/app.py", "kind": "update"}], "status": "completed"}}
        )
        self.assertEqual(
            [(e.kind, e.text) for e in out],
            [
                (DisplayKind.ASSISTANT, "Working on it"),
                (DisplayKind.ACTION, "Command: pytest (failed)"),
                (DisplayKind.ACTION, "File change: update src/app.py"),
            ],
        )

    def test_tool_calls_array(self) -> None:
        rec = {"type": "response.tool_calls", "tool_calls": [{"name": "read", "args": {"path": "a"}}, {"name": "read", "args": {"path": "b"}}]}
        out = self.feed.rec(rec)
        self.assertEqual([e.text for e in out], ['read: {"path":"a"}', 'read: {"path":"b"}'])

    def test_echoed_prompt_not_shown_twice(self) -> None:
        first = self.parser.echo_user("refactor   the parser")
        out = self.feed.rec({"type": "event_msg", "payload": {"type": "user_message", "message": "refactor the parser"}})
        self.assertEqual(len(first), 1)
        self.assertEqual(out, [])

    def test_assistant_repeat_from_two_record_shapes_is_suppressed(self) -> None:
        out = self.feed.rec({"type": "event_msg", "payload": {"type": "agent_message", "message": "All tests pass."}})
        out += self.feed.rec({"type": "item.completed", "item": {"type": "agent_message", "text": "All tests pass."}})
        self.assertEqual(len(out), 1)

    def test_plain_mode_turns_lines_into_notices(self) -> None:
        parser = ProtocolStreamParser(structured=False)
        feed = _Feed(parser)
        out = feed.line("Logged in using ChatGPT")
        out += feed.line("some other line")
        out += feed.line("")
        self.assertEqual([(e.kind, e.text) for e in out], [(DisplayKind.NOTICE, "Logged in with ChatGPT."), (DisplayKind.NOTICE, "some other line")])
        self.assertEqual(parser.text_tail, ["Logged in using ChatGPT", "some other line"])

    def test_state_is_per_parser(self) -> None:
        self.feed.rec(_delta("leftover"))
        other = ProtocolStreamParser()
        self.assertEqual(other.flush(), [])
        self.assertIsNone(other.last_error)

    def test_format_action_description_only(self) -> None:
        action = format_action({"type": "action", "description": "Opening browser"})
        self.assertIsNotNone(action)
        self.assertEqual(action.render(), "Opening browser")
        self.assertIsNone(format_action({"type": "message", "text": "hi"}))


if __name__ == "__main__":
    unittest.main()
