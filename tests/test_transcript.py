"""Tests for marl.transcript: messages and the single-system-message transcript."""

import pytest

from marl.transcript import Message, Transcript


def _count_system(transcript):
    return sum(1 for m in transcript if m.role == "system")


class TestMessage:
    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError, match="unknown message role"):
            Message("narrator", "hi")

    def test_immutable(self):
        msg = Message("user", "hi")
        with pytest.raises(AttributeError):
            msg.content = "changed"

    def test_tool_calls_stored_as_tuple(self):
        msg = Message("assistant", "", tool_calls=[{"id": "1"}])
        assert msg.tool_calls == ({"id": "1"},)

    def test_to_api_includes_tool_fields(self):
        call = {"id": "c1", "type": "function", "function": {"name": "x", "arguments": "{}"}}
        assistant = Message("assistant", "", tool_calls=[call], usage={"input_tokens": 1})
        tool = Message("tool", "ok", tool_call_id="c1", name="x")
        assert assistant.to_api() == {"role": "assistant", "content": "", "tool_calls": [call]}
        assert tool.to_api() == {
            "role": "tool",
            "content": "ok",
            "tool_call_id": "c1",
            "name": "x",
        }

    def test_dict_round_trip_keeps_usage(self):
        msg = Message("assistant", "hi", usage={"input_tokens": 3, "output_tokens": 4})
        assert Message.from_dict(msg.to_dict()) == msg


class TestTranscript:
    def test_seeded_with_system(self):
        t = Transcript(system="be brief")
        assert [m.role for m in t] == ["system"]
        assert t.system.content == "be brief"

    def test_no_system(self):
        t = Transcript()
        assert len(t) == 0
        assert t.system is None

    def test_append_preserves_order(self):
        t = Transcript()
        for i in range(5):
            t.append(Message("user", str(i)))
        assert [m.content for m in t.all()] == ["0", "1", "2", "3", "4"]

    def test_second_system_dropped(self):
        t = Transcript(system="first")
        assert t.append(Message("system", "second")) is False
        assert _count_system(t) == 1
        assert t.system.content == "first"

    def test_system_after_other_messages_dropped(self):
        t = Transcript(system="first")
        t.append(Message("user", "hi"))
        t.append(Message("system", "again"))
        assert _count_system(t) == 1
        assert len(t) == 2

    def test_all_returns_copy(self):
        t = Transcript()
        t.append(Message("user", "hi"))
        t.all().clear()
        assert len(t) == 1

    def test_reset_leaves_single_system(self):
        t = Transcript(system="old")
        t.append(Message("user", "hi"))
        t.reset(system="new")
        assert [(m.role, m.content) for m in t] == [("system", "new")]

    def test_reset_without_system(self):
        t = Transcript(system="old")
        t.reset()
        assert len(t) == 0

    def test_mixed_operations_never_exceed_one_system(self):
        t = Transcript()
        ops = [
            lambda: t.append(Message("system", "a")),
            lambda: t.append(Message("user", "u")),
            lambda: t.reset(system="b"),
            lambda: t.append(Message("system", "c")),
            lambda: t.reset(),
            lambda: t.append(Message("system", "d")),
            lambda: t.append(Message("system", "e")),
        ]
        for op in ops:
            op()
            assert _count_system(t) <= 1
        assert t.system.content == "d"

    def test_last_assistant_text(self):
        t = Transcript()
        t.append(Message("assistant", "first"))
        t.append(Message("tool", "result", tool_call_id="1"))
        t.append(Message("assistant", ""))
        assert t.last_assistant_text() == "first"
