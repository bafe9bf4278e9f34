"""Tests for the markdown knowledge store."""

from pathlib import Path

import pytest

from issue_pipeline.exceptions import WorkflowError
from issue_pipeline.providers.knowledge import MAX_EXCERPT_LENGTH, MarkdownKnowledgeStore


@pytest.fixture
def store(tmp_path: Path) -> MarkdownKnowledgeStore:
    directory = tmp_path / "kb"
    directory.mkdir()
    (directory / "Login.md").write_text(
        "# Login\n\nPasswords with a quote character broke the login query.\n\nUnrelated paragraph about caching.\n"
    )
    (directory / "Deploys.md").write_text("# Deploys\n\nStaging deploys run from the fix branch.\n")
    return MarkdownKnowledgeStore(directory)


class TestSearch:
    """Tests for paragraph ranking."""

    @pytest.mark.asyncio
    async def test_best_paragraph_first(self, store):
        snippets = await store.search("login fails when password has a quote")

        assert snippets[0].page == "Login"
        assert snippets[0].excerpt.startswith("Passwords with a quote")
        assert all("caching" not in s.excerpt for s in snippets)

    @pytest.mark.asyncio
    async def test_limit(self, store):
        assert len(await store.search("login staging deploys quote", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_no_terms(self, store):
        assert await store.search("a b") == []
        assert await store.search("login", limit=0) == []

    @pytest.mark.asyncio
    async def test_excerpt_capped(self, store):
        await store.update("Long", "keyword " * 200)

        snippets = await store.search("keyword")

        assert len(snippets[0].excerpt) == MAX_EXCERPT_LENGTH


class TestWrite:
    """Tests for appending and updating pages."""

    @pytest.mark.asyncio
    async def test_append_creates_page_with_heading(self, store):
        await store.append("Issue-History", "## #42: Login fails\n\nEscaping fixed.")
        await store.append("Issue-History", "## #43: Crash\n\nNull check.")

        content = (store.directory / "Issue-History.md").read_text()
        assert content == "# Issue-History\n\n## #42: Login fails\n\nEscaping fixed.\n\n## #43: Crash\n\nNull check.\n"

    @pytest.mark.asyncio
    async def test_update_replaces(self, store):
        await store.update("Deploys", "# Deploys\n\nNew text.\n")

        assert (store.directory / "Deploys.md").read_text() == "# Deploys\n\nNew text.\n"
        assert not list(store.directory.glob("*.tmp"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page", ["../escape", ".hidden", "a/b", ""])
    async def test_invalid_page_names(self, store, page):
        with pytest.raises(WorkflowError):
            await store.update(page, "x")


class TestSummarize:
    """Tests for the page index."""

    @pytest.mark.asyncio
    async def test_lists_pages_with_headings(self, store):
        summary = await store.summarize()

        assert summary.splitlines() == ["Knowledge base: 2 page(s)", "- Deploys: Deploys", "- Login: Login"]

    @pytest.mark.asyncio
    async def test_empty(self, tmp_path):
        assert await MarkdownKnowledgeStore(tmp_path / "empty").summarize() == "The knowledge base is empty."
