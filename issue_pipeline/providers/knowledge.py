"""Knowledge store backed by a directory of markdown pages.

Each page is one ``{name}.md`` file. Search is plain term-frequency ranking
over paragraphs, which is enough to surface related past issues to agents.
"""

import re
from pathlib import Path

import aiofiles
import structlog

from issue_pipeline.exceptions import WorkflowError
from issue_pipeline.models.domain import KnowledgeSnippet
from issue_pipeline.providers.base import KnowledgeStore

log = structlog.get_logger(__name__)

_TOKEN_PATTERN = re.compile(r"[a-z0-9_]{3,}")
_PAGE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

MAX_EXCERPT_LENGTH = 600


def _tokenize(text: str) -> list[str]:
    return _TOKEN_PATTERN.findall(text.lower())


class MarkdownKnowledgeStore(KnowledgeStore):
    """Markdown pages in one directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _page_path(self, page: str) -> Path:
        if not _PAGE_NAME_PATTERN.match(page) or ".." in page:
            raise WorkflowError(f"Invalid knowledge page name: {page!r}")
        return self.directory / f"{page.removesuffix('.md')}.md"

    async def _read(self, path: Path) -> str:
        async with aiofiles.open(path, encoding="utf-8") as f:
            return await f.read()

    def pages(self) -> list[str]:
        return sorted(path.stem for path in self.directory.glob("*.md"))

    async def summarize(self) -> str:
        pages = self.pages()
        if not pages:
            return "The knowledge base is empty."

        lines = [f"Knowledge base: {len(pages)} page(s)"]
        for page in pages:
            content = await self._read(self._page_path(page))
            heading = next((line.lstrip("# ").strip() for line in content.splitlines() if line.strip()), "")
            lines.append(f"- {page}: {heading[:80]}" if heading else f"- {page}")
        return "\n".join(lines)

    async def search(self, query: str, limit: int = 3) -> list[KnowledgeSnippet]:
        """Rank paragraphs by how often the query terms occur in them."""
        terms = set(_tokenize(query))
        if not terms or limit <= 0:
            return []

        snippets: list[KnowledgeSnippet] = []
        for page in self.pages():
            content = await self._read(self._page_path(page))
            for paragraph in re.split(r"\n\s*\n", content):
                tokens = _tokenize(paragraph)
                if not tokens:
                    continue
                hits = sum(1 for token in tokens if token in terms)
                if hits == 0:
                    continue
                # Distinct matched terms dominate, raw frequency breaks ties
                matched = len(terms.intersection(tokens))
                score = matched + hits / (len(tokens) + 1)
                snippets.append(
                    KnowledgeSnippet(page=page, excerpt=paragraph.strip()[:MAX_EXCERPT_LENGTH], score=round(score, 4))
                )

        snippets.sort(key=lambda s: s.score, reverse=True)
        log.debug("knowledge_search", query=query[:80], hits=len(snippets))
        return snippets[:limit]

    async def append(self, page: str, content: str) -> None:
        path = self._page_path(page)
        existing = await self._read(path) if path.exists() else f"# {page}\n"
        separator = "" if existing.endswith("\n\n") else ("\n" if existing.endswith("\n") else "\n\n")
        await self.update(page, f"{existing}{separator}{content.rstrip()}\n")

    async def update(self, page: str, content: str) -> None:
        path = self._page_path(page)
        tmp_path = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(content)
        tmp_path.replace(path)
        log.info("knowledge_page_updated", page=page, size=len(content))
