"""Built-in tools: bash, read_file, write_file, ls.

All four are confined to a workspace directory.  Failures are raised as
exceptions; the tool execution engine turns them into error results the
model can read.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from pathlib import Path
from typing import Any

from tiller.tools import AgentTool, FunctionTool, ToolOutput, UpdateCallback

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_LS_ENTRIES = 500
_READ_CHUNK = 64 * 1024

_TRUNCATED_NOTICE = "\n... [output truncated at 100KB]"


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Validate that a path is under workspace_dir.

    Raises ValueError if path escapes workspace.
    """
    workspace = Path(workspace_dir).resolve()
    target = (workspace / path_str).resolve() if not Path(path_str).is_absolute() else Path(path_str).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash_tool(
    command: str,
    timeout: int = 30,
    *,
    workspace_dir: str,
    on_update: UpdateCallback | None = None,
) -> ToolOutput:
    """Execute a shell command in the workspace directory.

    stdout and stderr are merged and reported through on_update one line
    at a time (lines longer than 64KB in pieces).  Updates stop at the
    100KB output cap with a single truncation notice.  A non-zero exit
    status or a timeout raises RuntimeError carrying the collected output.
    The process is killed whenever the call exits before it finishes,
    including on cancellation (abort).
    """
    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))

    workspace = Path(workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=str(workspace),
    )

    chunks: list[str] = []
    size = 0
    truncated = False

    def _collect(piece: str) -> None:
        nonlocal size, truncated
        if truncated:
            return
        room = _MAX_OUTPUT_CHARS - size
        if len(piece) > room:
            piece = piece[:room]
            truncated = True
        if piece:
            chunks.append(piece)
            size += len(piece)
            if on_update is not None:
                on_update(ToolOutput.text(piece))
        if truncated and on_update is not None:
            on_update(ToolOutput.text(_TRUNCATED_NOTICE))

    async def _pump() -> None:
        assert proc.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            raw = await proc.stdout.read(_READ_CHUNK)
            if not raw:
                break
            pending += decoder.decode(raw)
            *lines, pending = pending.split("\n")
            for line in lines:
                _collect(line + "\n")
            # A line longer than one read is reported in pieces.
            if len(pending) >= _READ_CHUNK:
                _collect(pending)
                pending = ""
        _collect(pending + decoder.decode(b"", final=True))
        await proc.wait()

    try:
        await asyncio.wait_for(_pump(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        raise RuntimeError(
            f"Command timed out after {effective_timeout}s.\n"
            f"Command: {command}\n{''.join(chunks)}"
        ) from None
    except asyncio.CancelledError:
        logger.info("bash command killed on abort: %s", command[:200])
        raise
    finally:
        await _kill(proc)

    output = "".join(chunks)
    if truncated:
        output += _TRUNCATED_NOTICE

    if proc.returncode != 0:
        raise RuntimeError(f"{output}\nExit code: {proc.returncode}".lstrip("\n"))

    return ToolOutput.text(
        output if output else "(no output)",
        details={"exit_code": proc.returncode, "truncated": truncated},
    )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        proc.kill()
        await proc.wait()


async def read_file_tool(
    path: str,
    offset: int = 0,
    limit: int = 0,
    *,
    workspace_dir: str,
) -> ToolOutput:
    """Read a file from the workspace directory.

    Args:
        path: File path (relative to workspace or absolute within workspace)
        offset: Line offset to start reading from (0-indexed)
        limit: Number of lines to read (0 = all)
    """
    target = _validate_path(path, workspace_dir)

    if not target.exists():
        raise FileNotFoundError(f"File not found: {path}")

    if not target.is_file():
        raise IsADirectoryError(f"Not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        raise ValueError(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes)."
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")

    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)

    return ToolOutput.text(content if content else "(empty file)", details={"path": str(target)})


async def write_file_tool(
    path: str,
    content: str,
    *,
    workspace_dir: str,
) -> ToolOutput:
    """Write content to a file in the workspace directory, creating parents."""
    target = _validate_path(path, workspace_dir)

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")

    return ToolOutput.text(
        f"File written successfully: {target}\nSize: {len(content):,} bytes",
        details={"path": str(target), "size": len(content)},
    )


async def ls_tool(path: str = ".", *, workspace_dir: str) -> ToolOutput:
    """List a workspace directory. Directories carry a trailing slash."""
    target = _validate_path(path, workspace_dir)

    if not target.exists():
        raise FileNotFoundError(f"Directory not found: {path}")
    if not target.is_dir():
        raise NotADirectoryError(f"Not a directory: {path}")

    entries = sorted(
        (f"{p.name}/" if p.is_dir() else p.name)
        for p in await asyncio.to_thread(lambda: list(target.iterdir()))
    )
    shown = entries[:_MAX_LS_ENTRIES]
    text = "\n".join(shown) if shown else "(empty directory)"
    if len(entries) > len(shown):
        text += f"\n... [{len(entries) - len(shown)} more entries]"
    return ToolOutput.text(text, details={"path": str(target), "count": len(entries)})


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Execute a shell command in the workspace directory",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": 300,
        },
    },
    "required": ["command"],
}

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read a file from the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "offset": {
            "type": "integer",
            "description": "Line offset to start reading from (0-indexed)",
            "default": 0,
            "minimum": 0,
        },
        "limit": {
            "type": "integer",
            "description": "Number of lines to read (0 = all)",
            "default": 0,
            "minimum": 0,
        },
    },
    "required": ["path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Write content to a file in the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "content": {"type": "string", "description": "Content to write to the file"},
    },
    "required": ["path", "content"],
}

_LS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "List the entries of a directory in the workspace",
    "properties": {
        "path": {
            "type": "string",
            "description": "Directory path (relative or absolute within workspace)",
            "default": ".",
        },
    },
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def create_builtin_tools(workspace_dir: str) -> list[AgentTool]:
    """Build the built-in tools bound to workspace_dir."""

    async def _bash(command: str, timeout: int = 30, on_update: UpdateCallback | None = None) -> ToolOutput:
        return await bash_tool(command, timeout, workspace_dir=workspace_dir, on_update=on_update)

    async def _read_file(path: str, offset: int = 0, limit: int = 0) -> ToolOutput:
        return await read_file_tool(path, offset, limit, workspace_dir=workspace_dir)

    async def _write_file(path: str, content: str) -> ToolOutput:
        return await write_file_tool(path, content, workspace_dir=workspace_dir)

    async def _ls(path: str = ".") -> ToolOutput:
        return await ls_tool(path, workspace_dir=workspace_dir)

    return [
        FunctionTool("bash", _bash, parameters=_BASH_SCHEMA, label="Bash"),
        FunctionTool("read_file", _read_file, parameters=_READ_FILE_SCHEMA, label="Read file"),
        FunctionTool("write_file", _write_file, parameters=_WRITE_FILE_SCHEMA, label="Write file"),
        FunctionTool("ls", _ls, parameters=_LS_SCHEMA, label="List directory"),
    ]
