"""
Knowledge Retriever

Business-rule snippets injected into prompts ahead of SQL generation.

Retrievers:
- NullKnowledgeRetriever: nothing configured, always empty
- ScenarioKnowledgeRetriever: keyword-scored entries from a local JSON file
- RemoteKnowledgeRetriever: HTTP knowledge retrieval service

Every retriever renders its results with format_as_context(), which starts
with KNOWLEDGE_CONTEXT_HEADER. Prompt builders look for that header to
present the text as business rules instead of free-form notes.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

import httpx
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

KNOWLEDGE_CONTEXT_HEADER = "=== Relevant Scenario Knowledge ==="
RETRIEVAL_PATH = "/Api/Knowledge/KnowledgeRetrievaler"

_QUERY_SEPARATORS = re.compile(r"[ ，。,.?？!！]+")


class KnowledgeItem(BaseModel):
    """A single retrieved knowledge snippet."""

    content: str = Field(..., description="Snippet text")
    score: float = Field(default=0.0, description="Relevance score, higher is better")
    title: str = Field(default="", description="Snippet title")
    source: str = Field(default="", description="Originating file or knowledge base")
    keywords: list[str] = Field(default_factory=list, description="Trigger keywords")


class RetrieverError(Exception):
    """Raised when knowledge cannot be loaded."""

    pass


class KnowledgeRetriever(ABC):
    """Interface used by the agent executor."""

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def search(self, query: str, max_results: int = 5) -> list[KnowledgeItem]:
        """Return up to max_results items, best first. Never raises for transport errors."""
        pass  # pragma: no cover - abstract method

    def format_as_context(self, items: list[KnowledgeItem]) -> str:
        """Render items as a prompt block starting with KNOWLEDGE_CONTEXT_HEADER."""
        if not items:
            return ""
        lines = [KNOWLEDGE_CONTEXT_HEADER, ""]
        for index, item in enumerate(items, start=1):
            lines.extend(self._format_item(index, item))
            lines.append("")
        return "\n".join(lines).rstrip()

    def _format_item(self, index: int, item: KnowledgeItem) -> list[str]:
        lines = [f"{index}. {item.content}"]
        if item.title:
            lines.append(f"   Source: {item.title}")
        if item.source:
            lines.append(f"   File: {item.source}")
        return lines


class NullKnowledgeRetriever(KnowledgeRetriever):
    """Retriever used when no knowledge source is configured."""

    @property
    def is_configured(self) -> bool:
        return False

    async def search(self, query: str, max_results: int = 5) -> list[KnowledgeItem]:
        return []


# ============================================================================
# Local scenario knowledge
# ============================================================================


class ScenarioKnowledge(BaseModel):
    """Entry of the scenario knowledge file."""

    id: str = ""
    title: str
    content: str
    keywords: list[str] = Field(default_factory=list)


def score_scenario(entry: ScenarioKnowledge, query: str) -> float:
    """
    Keyword relevance of an entry for a query.

    Title containing the whole query scores 10 and each query word found in
    the title 5. Content scores 5 and 2 the same way. Each keyword found in
    the query scores 8, and each keyword/word containment (either direction) 6.
    """
    query_lower = query.lower()
    words = [word for word in _QUERY_SEPARATORS.split(query_lower) if word]

    score = 0.0
    title = entry.title.lower()
    if query_lower in title:
        score += 10
    score += 5 * sum(1 for word in words if word in title)

    content = entry.content.lower()
    if query_lower in content:
        score += 5
    score += 2 * sum(1 for word in words if word in content)

    for keyword in entry.keywords:
        keyword = keyword.lower()
        if not keyword:
            continue
        if keyword in query_lower:
            score += 8
        score += 6 * sum(1 for word in words if keyword in word or word in keyword)

    return score


class ScenarioKnowledgeRetriever(KnowledgeRetriever):
    """
    Keyword search over a read-only list of scenario entries.

    Usage:
        retriever = ScenarioKnowledgeRetriever.from_file("scenario_knowledge.json")
        items = await retriever.search("monthly revenue by region")
        context = retriever.format_as_context(items)
    """

    def __init__(self, entries: list[ScenarioKnowledge]):
        self.entries = list(entries)
        logger.info(f"Scenario knowledge loaded with {len(self.entries)} entries")

    @classmethod
    def from_file(cls, path: str | Path) -> "ScenarioKnowledgeRetriever":
        """
        Load entries from a JSON array file. A missing file yields no entries.

        Raises:
            RetrieverError: If the file is not a valid entry list
        """
        file_path = Path(path)
        if not file_path.exists():
            logger.warning(f"Scenario knowledge file not found: {file_path}")
            return cls([])
        try:
            raw = json.loads(file_path.read_text(encoding="utf-8"))
            entries = [ScenarioKnowledge.model_validate(item) for item in raw]
        except (json.JSONDecodeError, ValidationError, TypeError) as exc:
            raise RetrieverError(f"Invalid scenario knowledge file {file_path}: {exc}") from exc
        return cls(entries)

    @property
    def is_configured(self) -> bool:
        return bool(self.entries)

    async def search(self, query: str, max_results: int = 5) -> list[KnowledgeItem]:
        if not query.strip():
            return []
        scored = [(score_scenario(entry, query), entry) for entry in self.entries]
        ranked = sorted((pair for pair in scored if pair[0] > 0), key=lambda pair: -pair[0])
        return [
            KnowledgeItem(
                content=entry.content,
                score=score,
                title=entry.title,
                source=entry.id,
                keywords=entry.keywords,
            )
            for score, entry in ranked[:max_results]
        ]

    def _format_item(self, index: int, item: KnowledgeItem) -> list[str]:
        lines = [f"{index}. {item.title}", f"   Content: {item.content}"]
        if item.keywords:
            lines.append(f"   Keywords: {', '.join(item.keywords)}")
        return lines


# ============================================================================
# Remote retrieval service
# ============================================================================


class RemoteKnowledgeRetriever(KnowledgeRetriever):
    """
    Client for the HTTP knowledge retrieval service.

    POSTs {query, knowledge_db_ids, file_ids, top_k, score_threshold} to
    {api_url}/Api/Knowledge/KnowledgeRetrievaler and reads data items from a
    {code, message, data} envelope. Failures are logged and yield no items.
    """

    def __init__(
        self,
        api_url: str | None,
        knowledge_db_ids: list[str],
        top_k: int = 10,
        score_threshold: float = 0.0,
        timeout: int = 30,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_url = (api_url or "").rstrip("/")
        self.knowledge_db_ids = list(knowledge_db_ids)
        self.top_k = top_k
        self.score_threshold = score_threshold
        self.client = client or httpx.AsyncClient(timeout=float(timeout))

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url) and len(self.knowledge_db_ids) > 0

    async def search(self, query: str, max_results: int = 5) -> list[KnowledgeItem]:
        if not self.is_configured or not query.strip():
            return []

        payload = {
            "query": query,
            "knowledge_db_ids": self.knowledge_db_ids,
            "file_ids": [],
            "top_k": self.top_k,
            "score_threshold": self.score_threshold,
        }
        try:
            response = await self.client.post(f"{self.api_url}{RETRIEVAL_PATH}", json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Knowledge retrieval failed: {exc}", extra={"api_url": self.api_url})
            return []

        if body.get("code") != 200:
            logger.warning(
                f"Knowledge retrieval returned code {body.get('code')}: {body.get('message')}",
                extra={"api_url": self.api_url},
            )
            return []

        items = [
            KnowledgeItem(
                content=entry.get("content", ""),
                score=float(entry.get("score") or 0.0),
                title=entry.get("title", ""),
                source=entry.get("file_name", ""),
            )
            for entry in body.get("data") or []
            if entry.get("content")
        ]
        logger.info(f"Retrieved {len(items)} knowledge items", extra={"query": query[:100]})
        return items[:max_results]

    async def aclose(self) -> None:
        await self.client.aclose()
