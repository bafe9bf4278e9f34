"""Sandboxed file tools exposed to the reasoning service.

Every path an agent supplies is relative to a fixed root. Paths are checked
lexically before the filesystem is touched: absolute paths and any ``..``
segment are rejected outright, so a rejected call never reads, creates or
modifies anything.

Every call returns a structured result::

    {"success": True, "content": "...", "size": 12}
    {"success": False, "error": "Path traversal (..) is not allowed"}

``execute()`` never raises.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any

import aiofiles
import structlog

from issue_pipeline.exceptions import SandboxViolation

log = structlog.get_logger(__name__)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

_DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")


@dataclass
class ToolDefinition:
    """Definition of a tool available to the agent."""

    name: str
    description: str
    parameters: dict[str, str]
    required: tuple[str, ...] = ()

    def to_json_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {name: {"type": "string", "description": desc} for name, desc in self.parameters.items()},
            "required": list(self.required),
        }


FILE_TOOLS: dict[str, ToolDefinition] = {
    "read_file": ToolDefinition(
        name="read_file",
        description="Read the contents of a file in the repository.",
        parameters={"path": "Path to the file, relative to the repository root"},
        required=("path",),
    ),
    "write_file": ToolDefinition(
        name="write_file",
        description="Create or overwrite a file. Parent directories are created automatically.",
        parameters={
            "path": "Path to the file, relative to the repository root",
            "content": "Full content to write",
        },
        required=("path", "content"),
    ),
    "list_directory": ToolDefinition(
        name="list_directory",
        description="List the files and directories inside a directory.",
        parameters={"path": "Directory path relative to the repository root (default: '.')"},
    ),
    "file_exists": ToolDefinition(
        name="file_exists",
        description="Check whether a file or directory exists.",
        parameters={"path": "Path relative to the repository root"},
        required=("path",),
    ),
}


class ToolSandbox:
    """File read/write/list/exists operations rooted at a base directory.

    Example:
        sandbox = ToolSandbox("/srv/checkout")
        result = await sandbox.execute("read_file", {"path": "src/app.py"})
        if result["success"]:
            print(result["content"])
    """

    TOOLS = FILE_TOOLS

    def __init__(self, root: str | Path, max_file_size: int = DEFAULT_MAX_FILE_SIZE):
        """Initialize the sandbox.

        Args:
            root: Base directory; every tool path is relative to it
            max_file_size: Largest file ``read_file`` will return, in bytes
        """
        self.root = Path(root).resolve()
        self.max_file_size = max_file_size

    def definitions(self) -> list[ToolDefinition]:
        return list(self.TOOLS.values())

    def _validate_path(self, path: Any) -> Path:
        """Map an agent-supplied path onto the root, or raise SandboxViolation.

        The lexical checks run before anything touches the filesystem. The
        final containment check catches escapes through symlinks inside the
        root.
        """
        if not isinstance(path, str) or not path.strip():
            raise SandboxViolation("Path is required", path=str(path))

        if (
            PurePosixPath(path).is_absolute()
            or PureWindowsPath(path).is_absolute()
            or path.startswith(("/", "\\"))
            or _DRIVE_PATTERN.match(path)
        ):
            raise SandboxViolation("Absolute paths are not allowed", path=path)

        if ".." in re.split(r"[\\/]", path):
            raise SandboxViolation("Path traversal (..) is not allowed", path=path)

        resolved = (self.root / path).resolve()
        if not resolved.is_relative_to(self.root):
            raise SandboxViolation("Path resolves outside the sandbox root", path=path)
        return resolved

    async def execute(self, tool_name: str, params: dict[str, Any] | None) -> dict[str, Any]:
        """Execute a tool and return its structured result.

        Args:
            tool_name: Name of the tool to execute
            params: Arguments for the tool

        Returns:
            ``{"success": bool, ...payload}`` or ``{"success": False, "error": str}``
        """
        if tool_name not in self.TOOLS:
            return {"success": False, "error": f"Unknown tool: {tool_name}"}

        params = params if isinstance(params, dict) else {}
        log.info("executing_tool", tool=tool_name, path=params.get("path"))

        try:
            if tool_name == "read_file":
                return await self._read_file(params.get("path"))
            elif tool_name == "write_file":
                return await self._write_file(params.get("path"), params.get("content"))
            elif tool_name == "list_directory":
                return await self._list_directory(params.get("path") or ".")
            elif tool_name == "file_exists":
                return await self._file_exists(params.get("path"))
            else:
                return {"success": False, "error": f"Unknown tool: {tool_name}"}
        except SandboxViolation as e:
            log.warning("sandbox_violation", tool=tool_name, path=e.path, error=e.message)
            return {"success": False, "error": e.message}
        except Exception as e:
            log.error("tool_unexpected_error", tool=tool_name, error=str(e))
            return {"success": False, "error": f"Tool execution failed: {e}"}

    async def _read_file(self, path: Any) -> dict[str, Any]:
        resolved = self._validate_path(path)

        if not resolved.exists():
            return {"success": False, "error": f"File '{path}' does not exist"}
        if resolved.is_dir():
            return {"success": False, "error": f"'{path}' is a directory"}

        size = resolved.stat().st_size
        if size > self.max_file_size:
            return {
                "success": False,
                "error": f"File too large: {size} bytes (limit {self.max_file_size})",
            }

        async with aiofiles.open(resolved, encoding="utf-8", errors="replace") as f:
            content = await f.read()
        return {"success": True, "content": content, "size": size}

    async def _write_file(self, path: Any, content: Any) -> dict[str, Any]:
        resolved = self._validate_path(path)
        if content is None:
            return {"success": False, "error": "'content' parameter is required"}
        if not isinstance(content, str):
            content = str(content)
        if resolved.is_dir():
            return {"success": False, "error": f"'{path}' is a directory"}

        resolved.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(resolved, "w", encoding="utf-8") as f:
            await f.write(content)

        relative = str(resolved.relative_to(self.root))
        return {"success": True, "path": relative, "bytes_written": len(content.encode("utf-8"))}

    async def _list_directory(self, path: str) -> dict[str, Any]:
        # "." is the root itself and passes the lexical checks
        resolved = self._validate_path(path)

        if not resolved.exists():
            return {"success": False, "error": f"Directory '{path}' does not exist"}
        if not resolved.is_dir():
            return {"success": False, "error": f"'{path}' is not a directory"}

        entries = [
            {"name": entry.name, "type": "directory" if entry.is_dir() else "file"}
            for entry in sorted(resolved.iterdir(), key=lambda p: p.name)
        ]
        return {"success": True, "path": path, "entries": entries}

    async def _file_exists(self, path: Any) -> dict[str, Any]:
        resolved = self._validate_path(path)
        if not resolved.exists():
            return {"success": True, "exists": False, "type": None}
        return {
            "success": True,
            "exists": True,
            "type": "directory" if resolved.is_dir() else "file",
        }
