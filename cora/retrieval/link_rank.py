"""Re-rank retrieval candidates with personalized PageRank over the reference graph."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence

import networkx as nx

from ..graph.reference_graph import ReferenceGraph
from ..graph.versions import VersionView
from ..indexer.models import Chunk
from ..store.base import IndexStore
from .hybrid_retriever import RetrievalCandidate

logger = logging.getLogger(__name__)


@dataclass
class RankedChunk:
    """A chunk with its combined rank score."""

    chunk: Chunk
    score: float
    relevance: float = 0.0
    pagerank: float = 0.0
    is_candidate: bool = True


def personalized_pagerank(
    graph: nx.DiGraph,
    seeds: Dict[str, float],
    damping: float = 0.85,
    restart_floor: float = 0.05,
    max_iter: int = 100,
    tol: float = 1e-6,
) -> Dict[str, float]:
    """PageRank with restart mass concentrated on the seeds.

    Restart probability is proportional to each seed's weight, plus a uniform
    `restart_floor` share spread over all nodes so every node keeps some
    mass of its own.

    Args:
        graph: Weighted directed graph
        seeds: Seed node -> non-negative weight
        damping: Probability of following an edge
        restart_floor: Restart mass spread uniformly
        max_iter: Iteration cap
        tol: Convergence tolerance

    Returns:
        Node -> PageRank score (sums to 1)
    """
    nodes = list(graph.nodes)
    if not nodes:
        return {}

    weights = {node: max(seeds.get(node, 0.0), 0.0) for node in nodes}
    total = sum(weights.values())
    if total <= 0:
        # Seeds without signal restart uniformly over the seeds themselves
        seeded = [node for node in nodes if node in seeds] or nodes
        weights = {node: (1.0 if node in seeded else 0.0) for node in nodes}
        total = float(len(seeded))

    personalization = {
        node: (1 - restart_floor) * weights[node] / total + restart_floor / len(nodes) for node in nodes
    }

    try:
        return nx.pagerank(
            graph,
            alpha=damping,
            personalization=personalization,
            max_iter=max_iter,
            tol=tol,
            weight="weight",
        )
    except nx.PowerIterationFailedConvergence:
        logger.warning(f"PageRank did not converge in {max_iter} iterations, using restart distribution")
        return personalization


def _normalized(values: Dict[str, float]) -> Dict[str, float]:
    top = max(values.values(), default=0.0)
    if top <= 0:
        return {key: 0.0 for key in values}
    return {key: value / top for key, value in values.items()}


def sort_ranked(ranked: List[RankedChunk]) -> List[RankedChunk]:
    """Score descending, then file path and line start for determinism."""
    return sorted(ranked, key=lambda r: (-r.score, r.chunk.file_path, r.chunk.line_start, r.chunk.id))


def rank_without_graph(candidates: Sequence[RetrievalCandidate]) -> List[RankedChunk]:
    """Ranking from retrieval relevance alone, used when expansion is unavailable."""
    relevance = _normalized({c.chunk.id: c.relevance for c in candidates})
    return sort_ranked(
        [RankedChunk(chunk=c.chunk, score=relevance[c.chunk.id], relevance=c.relevance) for c in candidates]
    )


def combine_scores(
    graph: nx.DiGraph,
    candidates: Sequence[RetrievalCandidate],
    neighbors: Dict[str, Chunk],
    pagerank: Dict[str, float],
    retrieval_weight: float = 0.7,
    inclusion_threshold: float = 0.1,
) -> List[RankedChunk]:
    """Merge normalized relevance and PageRank into one ordered list.

    Chunks reached only through expansion are kept when their combined
    score reaches `inclusion_threshold`.
    """
    relevance = _normalized({c.chunk.id: c.relevance for c in candidates})
    rank = _normalized({node: pagerank.get(node, 0.0) for node in graph.nodes})

    ranked = []
    for candidate in candidates:
        chunk_id = candidate.chunk.id
        score = retrieval_weight * relevance[chunk_id] + (1 - retrieval_weight) * rank.get(chunk_id, 0.0)
        ranked.append(
            RankedChunk(
                chunk=candidate.chunk,
                score=score,
                relevance=candidate.relevance,
                pagerank=pagerank.get(chunk_id, 0.0),
            )
        )

    dropped = 0
    for chunk_id, chunk in neighbors.items():
        if chunk_id in relevance:
            continue
        score = (1 - retrieval_weight) * rank.get(chunk_id, 0.0)
        if score < inclusion_threshold:
            dropped += 1
            continue
        ranked.append(
            RankedChunk(chunk=chunk, score=score, pagerank=pagerank.get(chunk_id, 0.0), is_candidate=False)
        )

    if dropped:
        logger.debug(f"Dropped {dropped} expansion chunks below inclusion threshold {inclusion_threshold}")
    return sort_ranked(ranked)


class LinkRankExpander:
    """Expands candidates with their reference-graph neighbors and re-ranks them."""

    def __init__(
        self,
        store: IndexStore,
        graph_builder: ReferenceGraph,
        damping: float = 0.85,
        max_iter: int = 100,
        tol: float = 1e-6,
        restart_floor: float = 0.05,
        retrieval_weight: float = 0.7,
        inclusion_threshold: float = 0.1,
    ):
        """Initialize expander.

        Args:
            store: Index store (fetches neighbor chunks)
            graph_builder: Reference graph builder
            damping: PageRank damping factor
            max_iter: PageRank iteration cap
            tol: PageRank convergence tolerance
            restart_floor: Uniform restart mass over all subgraph nodes
            retrieval_weight: Weight of retrieval relevance in the combined score
            inclusion_threshold: Minimum combined score of expansion-only chunks
        """
        self.store = store
        self.graph_builder = graph_builder
        self.damping = damping
        self.max_iter = max_iter
        self.tol = tol
        self.restart_floor = restart_floor
        self.retrieval_weight = retrieval_weight
        self.inclusion_threshold = inclusion_threshold

    async def expand(self, candidates: Sequence[RetrievalCandidate], view: VersionView) -> List[RankedChunk]:
        """Expand and re-rank candidates.

        Args:
            candidates: Retrieval candidates
            view: File versions visible to the request

        Returns:
            Ranked chunks, best first
        """
        if not candidates:
            return []

        candidate_ids = [c.chunk.id for c in candidates]
        graph = await self.graph_builder.build(candidate_ids, view)

        neighbor_ids = sorted(set(graph.nodes) - set(candidate_ids))
        neighbors = {
            chunk.id: chunk
            for chunk in await self.store.get_chunks(neighbor_ids)
            if view.is_visible(chunk.file_version_id)
        }
        # Nodes whose chunk is gone or invisible do not take part in ranking
        graph.remove_nodes_from([n for n in neighbor_ids if n not in neighbors])

        pagerank = personalized_pagerank(
            graph,
            {c.chunk.id: c.relevance for c in candidates},
            damping=self.damping,
            restart_floor=self.restart_floor,
            max_iter=self.max_iter,
            tol=self.tol,
        )
        ranked = combine_scores(
            graph,
            candidates,
            neighbors,
            pagerank,
            retrieval_weight=self.retrieval_weight,
            inclusion_threshold=self.inclusion_threshold,
        )
        logger.info(
            f"Link-rank: {len(candidates)} candidates, {len(neighbors)} neighbors, {len(ranked)} ranked chunks"
        )
        return ranked
