"""Tests for issue_pipeline/agents/sandbox.py."""

from pathlib import Path

import pytest

from issue_pipeline.agents.sandbox import ToolSandbox


@pytest.fixture
def sandbox(tmp_path: Path) -> ToolSandbox:
    root = tmp_path / "repo"
    root.mkdir()
    (root / "src").mkdir()
    (root / "src" / "app.py").write_text("print('hello')\n")
    (root / "README.md").write_text("# Demo\n")
    return ToolSandbox(root)


class TestToolDefinitions:
    """Tests for the advertised tool set."""

    def test_definitions_list_four_file_tools(self, sandbox: ToolSandbox):
        """The sandbox offers read, write, list and exists."""
        names = [tool.name for tool in sandbox.definitions()]
        assert names == ["read_file", "write_file", "list_directory", "file_exists"]

    def test_json_schema_marks_required_parameters(self, sandbox: ToolSandbox):
        """write_file requires both path and content."""
        schema = sandbox.TOOLS["write_file"].to_json_schema()
        assert schema["type"] == "object"
        assert set(schema["properties"]) == {"path", "content"}
        assert schema["required"] == ["path", "content"]


class TestReadFile:
    """Tests for read_file."""

    @pytest.mark.asyncio
    async def test_reads_existing_file(self, sandbox: ToolSandbox):
        result = await sandbox.execute("read_file", {"path": "src/app.py"})
        assert result["success"] is True
        assert result["content"] == "print('hello')\n"
        assert result["size"] == len("print('hello')\n")

    @pytest.mark.asyncio
    async def test_missing_file(self, sandbox: ToolSandbox):
        result = await sandbox.execute("read_file", {"path": "nope.txt"})
        assert result["success"] is False
        assert "does not exist" in result["error"]

    @pytest.mark.asyncio
    async def test_directory_is_not_a_file(self, sandbox: ToolSandbox):
        result = await sandbox.execute("read_file", {"path": "src"})
        assert result["success"] is False
        assert "directory" in result["error"]

    @pytest.mark.asyncio
    async def test_file_over_size_limit(self, tmp_path: Path):
        """Files larger than the limit are refused."""
        (tmp_path / "big.txt").write_text("x" * 100)
        sandbox = ToolSandbox(tmp_path, max_file_size=10)

        result = await sandbox.execute("read_file", {"path": "big.txt"})

        assert result["success"] is False
        assert "too large" in result["error"]


class TestWriteFile:
    """Tests for write_file."""

    @pytest.mark.asyncio
    async def test_creates_parent_directories(self, sandbox: ToolSandbox):
        result = await sandbox.execute("write_file", {"path": "new/dir/file.txt", "content": "data"})

        assert result["success"] is True
        assert result["path"] == "new/dir/file.txt"
        assert result["bytes_written"] == 4
        assert (sandbox.root / "new" / "dir" / "file.txt").read_text() == "data"

    @pytest.mark.asyncio
    async def test_overwrites_existing_file(self, sandbox: ToolSandbox):
        await sandbox.execute("write_file", {"path": "README.md", "content": "# New\n"})
        await sandbox.execute("write_file", {"path": "README.md", "content": "# Newer\n"})

        assert (sandbox.root / "README.md").read_text() == "# Newer\n"

    @pytest.mark.asyncio
    async def test_missing_content(self, sandbox: ToolSandbox):
        result = await sandbox.execute("write_file", {"path": "a.txt"})
        assert result["success"] is False
        assert "content" in result["error"]
        assert not (sandbox.root / "a.txt").exists()


class TestListAndExists:
    """Tests for list_directory and file_exists."""

    @pytest.mark.asyncio
    async def test_list_root_by_default(self, sandbox: ToolSandbox):
        result = await sandbox.execute("list_directory", {})
        assert result["success"] is True
        assert result["entries"] == [
            {"name": "README.md", "type": "file"},
            {"name": "src", "type": "directory"},
        ]

    @pytest.mark.asyncio
    async def test_list_missing_directory(self, sandbox: ToolSandbox):
        result = await sandbox.execute("list_directory", {"path": "missing"})
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_file_exists(self, sandbox: ToolSandbox):
        assert await sandbox.execute("file_exists", {"path": "src/app.py"}) == {
            "success": True,
            "exists": True,
            "type": "file",
        }
        assert (await sandbox.execute("file_exists", {"path": "ghost.py"}))["exists"] is False


class TestContainment:
    """Paths that leave the root are rejected before touching the filesystem."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "path",
        ["../outside.txt", "src/../../outside.txt", "..\\outside.txt", "src/..", ".."],
    )
    async def test_traversal_rejected(self, sandbox: ToolSandbox, path: str):
        result = await sandbox.execute("write_file", {"path": path, "content": "pwned"})

        assert result["success"] is False
        assert "traversal" in result["error"]
        assert not (sandbox.root.parent / "outside.txt").exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/etc/passwd", "\\windows\\system32", "C:\\Windows\\win.ini", "C:/temp/x"])
    async def test_absolute_paths_rejected(self, sandbox: ToolSandbox, path: str):
        result = await sandbox.execute("read_file", {"path": path})

        assert result["success"] is False
        assert "Absolute paths" in result["error"]

    @pytest.mark.asyncio
    async def test_symlink_escape_rejected(self, sandbox: ToolSandbox, tmp_path: Path):
        """A symlink inside the root that points outside is not followed."""
        outside = tmp_path / "secret.txt"
        outside.write_text("secret")
        (sandbox.root / "link.txt").symlink_to(outside)

        result = await sandbox.execute("read_file", {"path": "link.txt"})

        assert result["success"] is False
        assert "outside the sandbox" in result["error"]

    @pytest.mark.asyncio
    async def test_rejected_write_creates_nothing(self, sandbox: ToolSandbox):
        before = sorted(p.name for p in sandbox.root.parent.iterdir())

        await sandbox.execute("write_file", {"path": "../evil/dir/file.txt", "content": "x"})

        assert sorted(p.name for p in sandbox.root.parent.iterdir()) == before

    @pytest.mark.asyncio
    async def test_empty_path_rejected(self, sandbox: ToolSandbox):
        result = await sandbox.execute("read_file", {"path": ""})
        assert result == {"success": False, "error": "Path is required"}


class TestExecute:
    """Tests for dispatch edge cases."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, sandbox: ToolSandbox):
        result = await sandbox.execute("delete_everything", {"path": "."})
        assert result == {"success": False, "error": "Unknown tool: delete_everything"}

    @pytest.mark.asyncio
    async def test_non_dict_params(self, sandbox: ToolSandbox):
        """Garbage arguments produce a structured error, never an exception."""
        result = await sandbox.execute("read_file", None)
        assert result["success"] is False
