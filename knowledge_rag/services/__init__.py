"""Services package - retrieval orchestration"""

from .rag_orchestrator import RetrievalOrchestrator, build_system_prompt

__all__ = ["RetrievalOrchestrator", "build_system_prompt"]
