"""Service layer wiring providers, knowledge and connections to the agents."""

from sqlstudio.services.agent_service import SqlAgentService, build_knowledge_retriever

__all__ = ["SqlAgentService", "build_knowledge_retriever"]
