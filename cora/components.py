"""Composition root: wires the engine's components from a config dict."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .graph.reference_graph import ReferenceGraph
from .graph.resolver import ReferenceResolver
from .indexer.chunk_builder import ChunkBuilder
from .indexer.commentary import OllamaCommentary
from .indexer.embeddings import EmbeddingProvider, OllamaEmbeddings
from .indexer.grammars import LanguageRegistry
from .indexer.parser import GrammarParser
from .indexer.reference_extractor import ReferenceExtractor
from .indexer.reindex import ReindexCoordinator
from .retrieval.boost import BoostResolver
from .retrieval.budget import BudgetAssembler
from .retrieval.hybrid_retriever import HybridRetriever
from .retrieval.link_rank import LinkRankExpander
from .retrieval.query_engine import QueryEngine
from .store.base import IndexStore
from .store.qdrant_store import QdrantIndexStore

logger = logging.getLogger(__name__)


@dataclass
class Components:
    store: IndexStore
    embeddings: EmbeddingProvider
    reindexer: ReindexCoordinator
    query_engine: QueryEngine

    async def close(self) -> None:
        await self.embeddings.close()


def build_components(
    config: Dict[str, Any],
    store: Optional[IndexStore] = None,
    embeddings: Optional[EmbeddingProvider] = None,
) -> Components:
    """Build all components from `get_env_config()` output.

    Args:
        config: Configuration dictionary
        store: Store to use instead of Qdrant
        embeddings: Embedding provider to use instead of Ollama

    Returns:
        Wired components
    """
    if store is None:
        store = QdrantIndexStore(
            host=config["qdrant_host"],
            port=config["qdrant_port"],
            collection_prefix=config["collection_prefix"],
            vector_size=config["vector_size"],
        )
    if embeddings is None:
        embeddings = OllamaEmbeddings(
            host=config["ollama_host"],
            model=config["embedding_model"],
            cache_dir=config["cache_path"],
            batch_size=config["batch_size"],
            max_concurrent=config["max_concurrent"],
        )

    commentary = None
    if config["enable_commentary"]:
        commentary = OllamaCommentary(host=config["ollama_host"], model=config["commentary_model"])
        logger.info(f"Commentary enabled with model: {config['commentary_model']}")

    registry = LanguageRegistry()
    parser = GrammarParser(registry)
    chunk_builder = ChunkBuilder(
        registry,
        parser,
        min_chunk_size=config["min_chunk_size"],
        max_chunk_size=config["max_chunk_size"],
        window_lines=config["window_lines"],
    )
    reindexer = ReindexCoordinator(
        store,
        registry,
        chunk_builder,
        ReferenceExtractor(registry),
        embeddings,
        commentary=commentary,
        max_concurrent_files=config["max_concurrent_files"],
        max_retries=config["store_max_retries"],
        retry_delay=config["store_retry_delay"],
    )

    resolver = ReferenceResolver(store)
    expander = LinkRankExpander(
        store,
        ReferenceGraph(store, resolver, max_neighbors=config["max_neighbors"]),
        damping=config["pagerank_damping"],
        max_iter=config["pagerank_max_iter"],
        tol=config["pagerank_tol"],
        restart_floor=config["restart_floor"],
        retrieval_weight=config["retrieval_weight"],
        inclusion_threshold=config["inclusion_threshold"],
    )
    query_engine = QueryEngine(
        store,
        HybridRetriever(store, embeddings, k=config["retrieval_k"], vector_weight=config["vector_weight"]),
        expander,
        BoostResolver(store, resolver),
        BudgetAssembler(max_elided_chunks=config["max_elided_chunks"]),
        timeout=config["query_timeout"],
    )
    return Components(store=store, embeddings=embeddings, reindexer=reindexer, query_engine=query_engine)
