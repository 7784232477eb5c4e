"""Tests for marl.tools: parameter contracts and each tool's behavior."""

import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from marl.errors import AgentError
from marl.session import Session
from marl.skills import SkillResolver
from marl.tools import (
    EditFile,
    Introspect,
    LoadSkill,
    RunShell,
    SubAgent,
    ToolContext,
    ToolRegistry,
    WebSearch,
    build_registry,
    handle_tool_call,
    result_text,
    run_shell,
)


@pytest.fixture
def ctx(tmp_path):
    session = Session.create(model="gemini-2.0-flash", provider="gemini", persist=False)
    return ToolContext(
        base_dir=str(tmp_path),
        resolver=SkillResolver(str(tmp_path), global_dir=tmp_path / "global"),
        current_session=lambda: session,
        verbose=False,
        namespace={"answer": 42},
    )


# =========================================================================
# EditFile
# =========================================================================


class TestEditFile:
    def test_replaces_text(self, ctx, tmp_path):
        f = tmp_path / "test.txt"
        f.write_text("Hello world\nThis is a test\nGoodbye world")
        result = EditFile(ctx)({"path": str(f), "old": "This is a test", "new": "This is modified"})
        assert result == "ok"
        assert f.read_text() == "Hello world\nThis is modified\nGoodbye world"

    def test_relative_path_resolved_against_base_dir(self, ctx, tmp_path):
        (tmp_path / "rel.txt").write_text("abc")
        assert EditFile(ctx)({"path": "rel.txt", "old": "b", "new": "B"}) == "ok"
        assert (tmp_path / "rel.txt").read_text() == "aBc"

    def test_multiline_whitespace(self, ctx, tmp_path):
        f = tmp_path / "test.txt"
        f.write_text("Start\n  indented\n  content\nEnd")
        EditFile(ctx)(
            {"path": str(f), "old": "  indented\n  content", "new": "  new indented\n  new content"}
        )
        assert f.read_text() == "Start\n  new indented\n  new content\nEnd"

    def test_first_occurrence_only(self, ctx, tmp_path):
        f = tmp_path / "test.txt"
        f.write_text("x x x")
        EditFile(ctx)({"path": str(f), "old": "x", "new": "y"})
        assert f.read_text() == "y x x"

    def test_old_not_found(self, ctx, tmp_path):
        f = tmp_path / "test.txt"
        f.write_text("Hello world")
        result = EditFile(ctx)({"path": str(f), "old": "nonexistent text", "new": "r"})
        assert isinstance(result, dict)
        assert "not found" in result["error"]
        assert f.read_text() == "Hello world"

    @pytest.mark.parametrize("missing", ["path", "old", "new"])
    def test_missing_parameter_named(self, ctx, tmp_path, missing):
        args = {"path": str(tmp_path / "f.txt"), "old": "a", "new": "b"}
        del args[missing]
        result = EditFile(ctx)(args)
        assert "Missing required parameter" in result["error"]
        assert missing in result["error"]

    def test_several_missing_parameters(self, ctx):
        result = EditFile(ctx)({"path": "x"})
        assert result["error"] == "Missing required parameters: old, new"

    def test_create_flag(self, ctx, tmp_path):
        f = tmp_path / "sub" / "new_file.txt"
        result = EditFile(ctx)({"path": str(f), "old": "", "new": "initial", "create": True})
        assert result == "ok"
        assert f.read_text() == "initial"

    def test_create_then_edit(self, ctx, tmp_path):
        f = tmp_path / "edit_after_create.txt"
        tool = EditFile(ctx)
        tool({"path": str(f), "old": "", "new": "original", "create": True})
        assert tool({"path": str(f), "old": "original", "new": "modified"}) == "ok"
        assert f.read_text() == "modified"

    def test_empty_old_on_non_empty_file(self, ctx, tmp_path):
        f = tmp_path / "f.txt"
        f.write_text("content")
        assert "error" in EditFile(ctx)({"path": str(f), "old": "", "new": "x"})

    def test_missing_file_without_create(self, ctx, tmp_path):
        result = EditFile(ctx)({"path": str(tmp_path / "nope.txt"), "old": "a", "new": "b"})
        assert "file not found" in result["error"]


# =========================================================================
# RunShell
# =========================================================================


class TestRunShell:
    def test_returns_output(self, ctx):
        assert RunShell(ctx)({"command": "echo hi"}).strip() == "hi"

    def test_combines_stderr(self, ctx):
        out = RunShell(ctx)({"command": "echo out; echo err 1>&2"})
        assert "out" in out and "err" in out

    def test_nonzero_exit_still_returns_output(self, ctx):
        out = RunShell(ctx)({"command": "echo partial; exit 3"})
        assert "Exit code: 3" in out
        assert "partial" in out

    def test_runs_in_base_dir(self, ctx, tmp_path):
        (tmp_path / "here.txt").write_text("")
        assert "here.txt" in RunShell(ctx)({"command": "ls"})

    @pytest.mark.parametrize("command", [None, "", "   "])
    def test_blank_command_is_missing(self, ctx, command):
        result = RunShell(ctx)({"command": command})
        assert result == {"error": "Missing required parameter: command"}

    def test_timeout(self, tmp_path):
        out = run_shell("sleep 5", str(tmp_path), timeout=1)
        assert "timed out after 1s" in out

    def test_spawn_failure_is_structured_error(self, ctx):
        with patch("marl.tools.subprocess.Popen", side_effect=OSError("no shell")):
            result = RunShell(ctx)({"command": "echo hi"})
        assert "failed to start shell command" in result["error"]

    def test_long_output_shown_truncated(self, tmp_path):
        ctx = ToolContext(base_dir=str(tmp_path), verbose=True)
        with patch("marl.fmt.tool_output") as shown:
            out = RunShell(ctx)({"command": "seq 1 100"})
        assert out.splitlines()[-1] == "100"
        assert len(out.splitlines()) == 100
        shown.assert_called_once_with(out)


# =========================================================================
# LoadSkill
# =========================================================================


class TestLoadSkill:
    def test_renders_body(self, ctx, tmp_path):
        d = tmp_path / ".marl" / "skills" / "greet"
        d.mkdir(parents=True)
        (d / "SKILL.md").write_text("---\nname: greet\n---\n\nHello $1!")
        assert LoadSkill(ctx)({"name": "greet", "arguments": "Ada"}) == "Hello Ada!"

    def test_unknown_skill_error_names_it(self, ctx):
        result = LoadSkill(ctx)({"name": "ghost"})
        assert "ghost" in result["error"]

    def test_missing_name(self, ctx):
        assert "name" in LoadSkill(ctx)({})["error"]


# =========================================================================
# Introspect
# =========================================================================


class TestIntrospect:
    def test_expression(self, ctx):
        assert Introspect(ctx)({"code": "answer + 1"}) == "43"

    def test_statement(self, ctx):
        tool = Introspect(ctx)
        assert tool({"code": "x = 5"}) == "None"
        assert tool({"code": "x * 2"}) == "10"

    def test_fault_named(self, ctx):
        result = Introspect(ctx)({"code": "undefined_name"})
        assert result["error"].startswith("NameError - ")

    def test_zero_division(self, ctx):
        assert Introspect(ctx)({"code": "1/0"})["error"].startswith("ZeroDivisionError - ")

    def test_missing_code(self, ctx):
        assert Introspect(ctx)({})["error"] == "Missing required parameter: code"


# =========================================================================
# WebSearch
# =========================================================================


class TestWebSearch:
    def test_delegates_with_session_model(self, ctx):
        with patch("marl.llm.web_search", return_value="results") as search:
            assert WebSearch(ctx)({"query": "python"}) == "results"
        assert search.call_args.kwargs["provider"] == "gemini"
        assert search.call_args.kwargs["model"] == "gemini-2.0-flash"

    def test_failure_is_structured(self, ctx):
        with patch("marl.llm.web_search", side_effect=AgentError("web search failed: boom")):
            assert WebSearch(ctx)({"query": "q"}) == {"error": "web search failed: boom"}


# =========================================================================
# SubAgent
# =========================================================================


class TestSubAgent:
    def test_runs_independent_session(self, ctx):
        seen = {}

        def fake_loop(session, registry, task, **kwargs):
            seen["session"] = session
            seen["tools"] = registry.names()
            seen["stream"] = kwargs["stream"]
            return "4"

        with patch("marl.agent.run_agent_loop", side_effect=fake_loop):
            assert SubAgent(ctx)({"task": "2+2?"}) == "4"
        assert seen["session"].persist is False
        assert seen["session"] is not ctx.current_session()
        assert sorted(seen["tools"]) == ["edit_file", "run_shell", "web_search"]
        assert seen["stream"] is False

    def test_use_prompt_drops_first_line(self, ctx, tmp_path):
        prompts = tmp_path / ".marl" / "prompts"
        prompts.mkdir(parents=True)
        (prompts / "math_helper.txt").write_text(
            "Description: Math helper prompt\nYou are a math expert."
        )
        seen = {}

        def fake_loop(session, registry, task, **kwargs):
            seen["system"] = session.transcript.system.content
            return "6"

        with patch("marl.agent.run_agent_loop", side_effect=fake_loop):
            SubAgent(ctx)({"task": "3+3?", "use_prompt": "math_helper"})
        assert seen["system"] == "You are a math expert."

    def test_parent_transcript_untouched(self, ctx):
        parent = ctx.current_session()
        before = len(parent.transcript)
        with patch("marl.agent.run_agent_loop", return_value="done"):
            SubAgent(ctx)({"task": "anything"})
        assert len(parent.transcript) == before


# =========================================================================
# Registry and dispatch
# =========================================================================


class TestRegistry:
    def test_default_tools(self, ctx):
        names = build_registry(ctx).names()
        assert sorted(names) == ["edit_file", "load_skill", "run_shell", "sub_agent", "web_search"]

    def test_introspect_is_opt_in(self, ctx):
        assert "introspect" in build_registry(ctx, introspect=True).names()

    def test_no_resolver_no_load_skill(self, tmp_path):
        assert "load_skill" not in build_registry(ToolContext(base_dir=str(tmp_path))).names()

    def test_schema_shape(self, ctx):
        schema = EditFile(ctx).schema()
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "edit_file"
        assert schema["function"]["parameters"]["required"] == ["path", "old", "new"]

    def test_unknown_tool(self, ctx):
        assert ToolRegistry([]).invoke("nope", {}) == {"error": "unknown tool: nope"}

    def test_non_dict_arguments(self, ctx):
        assert "error" in EditFile(ctx)(["not", "a", "dict"])

    def test_unexpected_exception_caught(self, ctx, tmp_path):
        f = tmp_path / "f.txt"
        f.write_text("abc")
        with patch("pathlib.Path.write_text", side_effect=PermissionError("denied")):
            result = EditFile(ctx)({"path": str(f), "old": "a", "new": "b"})
        assert result == {"error": "PermissionError - denied"}


class TestHandleToolCall:
    def _call(self, name, args, call_id="c1"):
        raw = args if isinstance(args, str) else json.dumps(args)
        return {"id": call_id, "type": "function", "function": {"name": name, "arguments": raw}}

    def test_success_message(self, ctx):
        msg = handle_tool_call(self._call("run_shell", {"command": "echo hi"}), build_registry(ctx), False)
        assert msg["role"] == "tool"
        assert msg["tool_call_id"] == "c1"
        assert msg["name"] == "run_shell"
        assert msg["content"].strip() == "hi"

    def test_error_serialized_as_json(self, ctx):
        msg = handle_tool_call(self._call("edit_file", {}), build_registry(ctx), False)
        assert json.loads(msg["content"])["error"].startswith("Missing required parameters")

    def test_invalid_json_arguments(self, ctx):
        msg = handle_tool_call(self._call("run_shell", "{oops"), build_registry(ctx), False)
        assert "invalid JSON" in json.loads(msg["content"])["error"]

    def test_result_text(self):
        assert result_text("plain") == "plain"
        assert result_text({"error": "x"}) == '{"error": "x"}'
        assert result_text(SimpleNamespace()).startswith("namespace(")
