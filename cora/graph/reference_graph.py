"""Chunk-level reference graph derived from resolved references."""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import networkx as nx

from ..indexer.models import ContentEntityDefinition, ContentEntityReference, ReferenceType
from ..store.base import IndexStore
from .resolver import ReferenceResolver
from .versions import VersionView

logger = logging.getLogger(__name__)

EDGE_WEIGHTS = {
    ReferenceType.CALL: 1.0,
    ReferenceType.LINK: 1.0,
    ReferenceType.IMPORT: 0.5,
    ReferenceType.REEXPORT: 0.5,
    ReferenceType.MENTION: 0.5,
}


class ReferenceGraph:
    """Builds the one-hop neighborhood of a chunk set as a weighted digraph.

    An edge A -> B exists when a reference owned by chunk A resolves (top
    candidate) to a definition owned by chunk B. Repeated references add up.
    """

    def __init__(self, store: IndexStore, resolver: ReferenceResolver, max_neighbors: int = 25):
        """Initialize graph builder.

        Args:
            store: Index store
            resolver: Reference resolver
            max_neighbors: Inbound references followed per definition
        """
        self.store = store
        self.resolver = resolver
        self.max_neighbors = max_neighbors

    async def build(self, chunk_ids: Sequence[str], view: VersionView) -> nx.DiGraph:
        """Build the graph over `chunk_ids` plus their direct neighbors in both directions.

        Args:
            chunk_ids: Seed chunks
            view: File versions visible to the request

        Returns:
            Directed graph with a `weight` attribute on every edge
        """
        graph = nx.DiGraph()
        graph.add_nodes_from(chunk_ids)
        seeds = set(chunk_ids)
        cache: Dict[Tuple, Optional[ContentEntityDefinition]] = {}

        # Outbound: what the seeds reference
        references = await self.store.get_references_for_chunks(list(chunk_ids))
        for ref in sorted(references, key=lambda r: r.id):
            if not view.is_visible(ref.file_version_id):
                continue
            target = await self._top_candidate(ref, view, cache)
            if target is not None and target.chunk_id:
                self._add_edge(graph, ref.chunk_id, target.chunk_id, ref.reference_type)

        # Inbound: who references what the seeds define
        definitions = await self.store.get_definitions_for_chunks(list(chunk_ids))
        for definition in sorted(definitions, key=lambda d: d.id):
            if not view.is_visible(definition.file_version_id):
                continue
            users = await self.store.get_references_by_identifier(definition.identifier, view.to_filter())
            users = [r for r in users if r.chunk_id and r.chunk_id not in seeds and view.is_visible(r.file_version_id)]
            for ref in sorted(users, key=lambda r: r.id)[: self.max_neighbors]:
                target = await self._top_candidate(ref, view, cache)
                if target is not None and target.id == definition.id:
                    self._add_edge(graph, ref.chunk_id, definition.chunk_id, ref.reference_type)

        logger.debug(
            f"Reference graph: {graph.number_of_nodes()} nodes, {graph.number_of_edges()} edges "
            f"from {len(seeds)} seeds"
        )
        return graph

    async def _top_candidate(
        self,
        ref: ContentEntityReference,
        view: VersionView,
        cache: Dict[Tuple, Optional[ContentEntityDefinition]],
    ) -> Optional[ContentEntityDefinition]:
        key = (ref.identifier_used, ref.import_path, ref.repo_id, ref.file_path)
        if key not in cache:
            candidates = await self.resolver.resolve_reference(ref, view, limit=1)
            cache[key] = candidates[0] if candidates else None
        return cache[key]

    @staticmethod
    def _add_edge(graph: nx.DiGraph, source: Optional[str], target: str, reference_type: ReferenceType) -> None:
        if not source or source == target:
            return
        weight = EDGE_WEIGHTS.get(reference_type, 0.5)
        if graph.has_edge(source, target):
            graph[source][target]["weight"] += weight
        else:
            graph.add_edge(source, target, weight=weight)


def edge_list(graph: nx.DiGraph) -> List[Tuple[str, str, float]]:
    """Sorted (source, target, weight) triples, for logging and tests."""
    return sorted((u, v, data["weight"]) for u, v, data in graph.edges(data=True))
