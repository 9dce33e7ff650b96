"""Hybrid (vector + lexical) candidate retrieval."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..graph.versions import VersionView
from ..indexer.embeddings import EmbeddingProvider
from ..indexer.models import Chunk
from ..store.base import IndexStore

logger = logging.getLogger(__name__)


@dataclass
class RetrievalCandidate:
    """A retrieved chunk with its fused and component scores.

    `relevance` recombines the normalized component scores into [0, 1].
    """

    chunk: Chunk
    score: float
    vector_score: float = 0.0
    lexical_score: float = 0.0
    relevance: float = 0.0


def message_text(message: Dict[str, Any]) -> str:
    """Text of a chat message whose content is a string or a list of parts."""
    content = message.get("content", "")
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type", "text") == "text":
            parts.append(part.get("text", ""))
    return "\n".join(parts)


def latest_user_turn(messages: List[Dict[str, Any]]) -> str:
    """Content of the most recent user message.

    Raises:
        ValueError: No message carries any text
    """
    for message in reversed(messages):
        if message.get("role", "user") == "user":
            text = message_text(message).strip()
            if text:
                return text
    raise ValueError("Conversation has no user message with text")


class HybridRetriever:
    """Embeds the query text and runs one hybrid store query over a version view."""

    def __init__(
        self,
        store: IndexStore,
        embeddings: EmbeddingProvider,
        k: int = 20,
        vector_weight: float = 0.5,
    ):
        """Initialize retriever.

        Args:
            store: Index store
            embeddings: Provider used for chunks at index time
            k: Default number of candidates
            vector_weight: Share of the vector component in `relevance`
        """
        self.store = store
        self.embeddings = embeddings
        self.k = k
        self.vector_weight = vector_weight

    async def search(self, query_text: str, view: VersionView, k: Optional[int] = None) -> List[RetrievalCandidate]:
        """Top-k chunks for a query, scoped to the view's file versions.

        Args:
            query_text: Latest user turn
            view: File versions visible to the request
            k: Number of candidates (defaults to the configured k)

        Returns:
            Candidates in store order (best fused score first)
        """
        k = k or self.k
        vector = await self.embeddings.embed(query_text)
        if vector is None:
            logger.warning("Query embedding failed, running lexical-only retrieval")

        hits = await self.store.hybrid_query(query_text, vector, view.to_filter(), k)
        candidates = [
            RetrievalCandidate(
                chunk=hit.chunk,
                score=hit.score,
                vector_score=hit.vector_score,
                lexical_score=hit.lexical_score,
            )
            for hit in hits
            if view.is_visible(hit.chunk.file_version_id)
        ]
        self._assign_relevance(candidates, vector_weight=self.vector_weight if vector is not None else 0.0)

        logger.info(f"Retrieved {len(candidates)} candidates for query ({len(query_text)} chars)")
        return candidates

    @staticmethod
    def _assign_relevance(candidates: List[RetrievalCandidate], vector_weight: float) -> None:
        if not candidates:
            return
        max_vector = max(c.vector_score for c in candidates)
        max_lexical = max(c.lexical_score for c in candidates)
        max_fused = max(c.score for c in candidates)

        # A component that scored nothing leaves all weight to the other one
        if max_vector <= 0:
            vector_weight = 0.0
        elif max_lexical <= 0:
            vector_weight = 1.0

        for candidate in candidates:
            vector_norm = candidate.vector_score / max_vector if max_vector > 0 else 0.0
            lexical_norm = candidate.lexical_score / max_lexical if max_lexical > 0 else 0.0
            if max_vector > 0 or max_lexical > 0:
                candidate.relevance = vector_weight * vector_norm + (1 - vector_weight) * lexical_norm
            else:
                candidate.relevance = candidate.score / max_fused if max_fused > 0 else 0.0
