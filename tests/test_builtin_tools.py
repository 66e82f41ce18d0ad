"""Unit tests for tiller/builtin_tools.py -- bash, read_file, write_file, ls.

Filesystem tests use the pytest tmp_path fixture for workspace isolation.
Commands use sys.executable -c for cross-platform compatibility.
"""

import asyncio
import os
import sys

import pytest

from tiller.builtin_tools import (
    _MAX_FILE_SIZE,
    _MAX_OUTPUT_CHARS,
    _TRUNCATED_NOTICE,
    bash_tool,
    create_builtin_tools,
    ls_tool,
    read_file_tool,
    write_file_tool,
)
from tiller.tools import ToolOutput


def _text(output: ToolOutput) -> str:
    return output.content[0].text


def _py(code: str) -> str:
    return f'{sys.executable} -c "{code}"'


# ---------------------------------------------------------------------------
# bash_tool
# ---------------------------------------------------------------------------


class TestBashTool:
    @pytest.mark.asyncio
    async def test_success(self, tmp_path):
        output = await bash_tool(_py("print('hello from bash tool')"), workspace_dir=str(tmp_path))

        assert "hello from bash tool" in _text(output)
        assert output.details == {"exit_code": 0, "truncated": False}

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, tmp_path):
        await bash_tool(_py("open('made.txt', 'w').write('x')"), workspace_dir=str(tmp_path))

        assert (tmp_path / "made.txt").read_text() == "x"

    @pytest.mark.asyncio
    async def test_no_output(self, tmp_path):
        output = await bash_tool(_py("pass"), workspace_dir=str(tmp_path))
        assert _text(output) == "(no output)"

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_with_output(self, tmp_path):
        with pytest.raises(RuntimeError) as exc_info:
            await bash_tool(
                _py("import sys; print('partial'); sys.exit(3)"), workspace_dir=str(tmp_path)
            )

        message = str(exc_info.value)
        assert "partial" in message
        assert "Exit code: 3" in message

    @pytest.mark.asyncio
    async def test_stderr_merged(self, tmp_path):
        output = await bash_tool(
            _py("import sys; sys.stderr.write('warned\\n')"), workspace_dir=str(tmp_path)
        )
        assert "warned" in _text(output)

    @pytest.mark.asyncio
    async def test_timeout_raises(self, tmp_path):
        with pytest.raises(RuntimeError, match="timed out after 1s"):
            await bash_tool(_py("import time; time.sleep(30)"), timeout=1, workspace_dir=str(tmp_path))

    @pytest.mark.asyncio
    async def test_output_truncated(self, tmp_path):
        output = await bash_tool(
            _py("[print('y' * 999) for _ in range(150)]"),
            workspace_dir=str(tmp_path),
        )

        text = _text(output)
        assert "output truncated" in text
        assert len(text) <= _MAX_OUTPUT_CHARS + 100
        assert output.details["truncated"] is True

    @pytest.mark.asyncio
    async def test_single_huge_line_is_truncated(self, tmp_path):
        output = await bash_tool(
            _py("import sys; sys.stdout.write('a' * 200000 + chr(10))"),
            workspace_dir=str(tmp_path),
        )

        text = _text(output)
        assert text.startswith("a" * 1000)
        assert text.endswith("output truncated at 100KB]")
        assert text.split("\n", 1)[0] == "a" * _MAX_OUTPUT_CHARS
        assert output.details == {"exit_code": 0, "truncated": True}

    @pytest.mark.asyncio
    async def test_updates_stop_at_output_cap(self, tmp_path):
        updates: list[ToolOutput] = []

        output = await bash_tool(
            _py("[print(i) for i in range(200000)]"),
            workspace_dir=str(tmp_path),
            on_update=updates.append,
        )

        texts = [u.content[0].text for u in updates]
        assert texts[-1] == _TRUNCATED_NOTICE
        assert texts.count(_TRUNCATED_NOTICE) == 1
        assert sum(len(t) for t in texts[:-1]) == _MAX_OUTPUT_CHARS
        assert len(updates) < 30000
        assert output.details["truncated"] is True

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell and signals")
    async def test_process_killed_when_update_callback_fails(self, tmp_path):
        def broken_listener(update):
            raise RuntimeError("listener broke")

        with pytest.raises(RuntimeError, match="listener broke"):
            await bash_tool(
                f"echo $$ > pid; {_py('import time; print(1, flush=True); time.sleep(30)')}",
                timeout=20,
                workspace_dir=str(tmp_path),
                on_update=broken_listener,
            )

        pid = int((tmp_path / "pid").read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_streams_lines_through_on_update(self, tmp_path):
        updates: list[ToolOutput] = []

        await bash_tool(
            _py("print('one'); print('two')"),
            workspace_dir=str(tmp_path),
            on_update=updates.append,
        )

        assert [u.content[0].text.strip() for u in updates] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self, tmp_path):
        marker = tmp_path / "finished.txt"
        task = asyncio.create_task(
            bash_tool(
                _py("import time; time.sleep(2); open('finished.txt', 'w').write('x')"),
                workspace_dir=str(tmp_path),
            )
        )
        await asyncio.sleep(0.3)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(2.5)
        assert not marker.exists()


# ---------------------------------------------------------------------------
# read_file_tool / write_file_tool
# ---------------------------------------------------------------------------


class TestReadFileTool:
    @pytest.mark.asyncio
    async def test_reads_file(self, tmp_path):
        (tmp_path / "notes.txt").write_text("line one\nline two\n")

        output = await read_file_tool("notes.txt", workspace_dir=str(tmp_path))

        assert _text(output) == "line one\nline two\n"
        assert output.details["path"] == str((tmp_path / "notes.txt").resolve())

    @pytest.mark.asyncio
    async def test_offset_and_limit(self, tmp_path):
        (tmp_path / "lines.txt").write_text("".join(f"line {i}\n" for i in range(10)))

        output = await read_file_tool("lines.txt", offset=2, limit=3, workspace_dir=str(tmp_path))

        assert _text(output) == "line 2\nline 3\nline 4\n"

    @pytest.mark.asyncio
    async def test_empty_file(self, tmp_path):
        (tmp_path / "empty.txt").write_text("")

        output = await read_file_tool("empty.txt", workspace_dir=str(tmp_path))

        assert _text(output) == "(empty file)"

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await read_file_tool("nope.txt", workspace_dir=str(tmp_path))

    @pytest.mark.asyncio
    async def test_directory_is_not_a_file(self, tmp_path):
        (tmp_path / "sub").mkdir()
        with pytest.raises(IsADirectoryError):
            await read_file_tool("sub", workspace_dir=str(tmp_path))

    @pytest.mark.asyncio
    async def test_too_large(self, tmp_path):
        (tmp_path / "big.bin").write_bytes(b"x" * (_MAX_FILE_SIZE + 1))

        with pytest.raises(ValueError, match="File too large"):
            await read_file_tool("big.bin", workspace_dir=str(tmp_path))

    @pytest.mark.asyncio
    async def test_path_escape_rejected(self, tmp_path):
        workspace = tmp_path / "ws"
        workspace.mkdir()
        (tmp_path / "secret.txt").write_text("secret")

        with pytest.raises(ValueError, match="outside workspace"):
            await read_file_tool("../secret.txt", workspace_dir=str(workspace))

    @pytest.mark.asyncio
    async def test_absolute_path_inside_workspace(self, tmp_path):
        target = tmp_path / "abs.txt"
        target.write_text("ok")

        output = await read_file_tool(str(target), workspace_dir=str(tmp_path))

        assert _text(output) == "ok"


class TestWriteFileTool:
    @pytest.mark.asyncio
    async def test_writes_and_creates_parents(self, tmp_path):
        output = await write_file_tool("a/b/c.txt", "hello", workspace_dir=str(tmp_path))

        assert (tmp_path / "a" / "b" / "c.txt").read_text() == "hello"
        assert _text(output).startswith("File written successfully")
        assert output.details["size"] == 5

    @pytest.mark.asyncio
    async def test_absolute_escape_rejected(self, tmp_path):
        workspace = tmp_path / "ws"
        workspace.mkdir()

        with pytest.raises(ValueError):
            await write_file_tool(str(tmp_path / "out.txt"), "x", workspace_dir=str(workspace))
        assert not (tmp_path / "out.txt").exists()


# ---------------------------------------------------------------------------
# ls_tool
# ---------------------------------------------------------------------------


class TestLsTool:
    @pytest.mark.asyncio
    async def test_lists_sorted_with_dir_suffix(self, tmp_path):
        (tmp_path / "b.txt").write_text("")
        (tmp_path / "a.txt").write_text("")
        (tmp_path / "src").mkdir()

        output = await ls_tool(workspace_dir=str(tmp_path))

        assert _text(output).splitlines() == ["a.txt", "b.txt", "src/"]
        assert output.details["count"] == 3

    @pytest.mark.asyncio
    async def test_empty_directory(self, tmp_path):
        output = await ls_tool(workspace_dir=str(tmp_path))
        assert _text(output) == "(empty directory)"

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await ls_tool("ghost", workspace_dir=str(tmp_path))

    @pytest.mark.asyncio
    async def test_file_is_not_a_directory(self, tmp_path):
        (tmp_path / "f.txt").write_text("")
        with pytest.raises(NotADirectoryError):
            await ls_tool("f.txt", workspace_dir=str(tmp_path))


# ---------------------------------------------------------------------------
# create_builtin_tools
# ---------------------------------------------------------------------------


class TestCreateBuiltinTools:
    def test_tool_names_and_schemas(self, tmp_path):
        tools = create_builtin_tools(str(tmp_path))

        assert [t.name for t in tools] == ["bash", "read_file", "write_file", "ls"]
        assert all(t.description for t in tools)
        assert tools[0].parameters["required"] == ["command"]

    @pytest.mark.asyncio
    async def test_bound_tools_execute_in_workspace(self, tmp_path):
        tools = {t.name: t for t in create_builtin_tools(str(tmp_path))}

        await tools["write_file"].execute("c1", {"path": "x.txt", "content": "data"}, None, lambda _: None)
        output = await tools["read_file"].execute("c2", {"path": "x.txt"}, None, lambda _: None)

        assert _text(output) == "data"

    @pytest.mark.asyncio
    async def test_bash_tool_receives_update_callback(self, tmp_path):
        tools = {t.name: t for t in create_builtin_tools(str(tmp_path))}
        updates = []

        await tools["bash"].execute("c1", {"command": _py("print('hi')")}, None, updates.append)

        assert updates
