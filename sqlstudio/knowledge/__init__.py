"""Knowledge retrieval for prompt context."""

from sqlstudio.knowledge.retriever import (
    KNOWLEDGE_CONTEXT_HEADER,
    KnowledgeItem,
    KnowledgeRetriever,
    NullKnowledgeRetriever,
    RemoteKnowledgeRetriever,
    RetrieverError,
    ScenarioKnowledge,
    ScenarioKnowledgeRetriever,
)

__all__ = [
    "KNOWLEDGE_CONTEXT_HEADER",
    "KnowledgeItem",
    "KnowledgeRetriever",
    "NullKnowledgeRetriever",
    "RemoteKnowledgeRetriever",
    "RetrieverError",
    "ScenarioKnowledge",
    "ScenarioKnowledgeRetriever",
]
