"""Qdrant implementation of the index store.

Chunks live in one collection with a named dense vector and a named sparse
lexical vector. Definitions, references, file versions, commit associations
and repositories live in payload-only collections with keyword indexes.
"""

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models
from qdrant_client.http.models import Distance, PointStruct, VectorParams

from ..indexer.models import (
    Chunk,
    CommitFileVersion,
    ContentEntityDefinition,
    ContentEntityReference,
    FileVersion,
    ReferenceType,
    Repository,
)
from .base import IndexStore, QueryFilter, ScoredChunk, StoreUnavailableError
from .lexical import sparse_vector

logger = logging.getLogger(__name__)

DENSE_VECTOR = "dense"
LEXICAL_VECTOR = "lexical"
SCROLL_PAGE = 256


def hex_to_uuid(hex_str: str) -> str:
    """Convert a hexadecimal string to a UUID format.

    Args:
        hex_str: Hexadecimal string (16 or 32 characters)

    Returns:
        UUID string
    """
    # Pad to 32 characters if needed
    hex_str = hex_str.ljust(32, "0")
    # Insert hyphens to make it a valid UUID format
    return f"{hex_str[0:8]}-{hex_str[8:12]}-{hex_str[12:16]}-{hex_str[16:20]}-{hex_str[20:32]}"


def _match(key: str, value: Any) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


def _match_any(key: str, values: Sequence[str]) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchAny(any=list(values)))


class QdrantIndexStore(IndexStore):
    """Index store backed by Qdrant."""

    # Keyword payload indexes per collection suffix
    PAYLOAD_INDEXES = {
        "chunks": ["repo_id", "file_version_id", "file_path"],
        "definitions": ["identifier", "repo_id", "file_version_id", "chunk_id"],
        "references": ["identifier_used", "repo_id", "file_version_id", "chunk_id"],
        "file_versions": ["repo_id", "file_path"],
        "commits": ["repo_id", "commit_hash"],
        "repositories": [],
    }

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6333,
        collection_prefix: str = "cora",
        vector_size: int = 768,  # Default for nomic-embed-text
        client: Optional[AsyncQdrantClient] = None,
    ):
        """Initialize Qdrant client.

        Args:
            host: Qdrant server host
            port: Qdrant server port
            collection_prefix: Prefix of every collection name
            vector_size: Dimension of embedding vectors
            client: Pre-built client (tests, embedded mode)
        """
        self.client = client or AsyncQdrantClient(host=host, port=port)
        self.collection_prefix = collection_prefix
        self.vector_size = vector_size

    def _collection(self, suffix: str) -> str:
        return f"{self.collection_prefix}_{suffix}"

    async def initialize(self) -> None:
        """Create missing collections and payload indexes."""
        try:
            collections = (await self.client.get_collections()).collections
            existing = {col.name for col in collections}

            for suffix, fields in self.PAYLOAD_INDEXES.items():
                name = self._collection(suffix)
                if name in existing:
                    logger.info(f"Collection {name} already exists")
                    continue

                logger.info(f"Creating collection: {name}")
                if suffix == "chunks":
                    await self.client.create_collection(
                        collection_name=name,
                        vectors_config={
                            DENSE_VECTOR: VectorParams(size=self.vector_size, distance=Distance.COSINE)
                        },
                        sparse_vectors_config={
                            LEXICAL_VECTOR: models.SparseVectorParams(modifier=models.Modifier.IDF)
                        },
                    )
                else:
                    await self.client.create_collection(collection_name=name, vectors_config={})

                for field_name in fields:
                    await self.client.create_payload_index(
                        collection_name=name,
                        field_name=field_name,
                        field_schema=models.PayloadSchemaType.KEYWORD,
                    )
        except Exception as e:
            logger.error(f"Error ensuring collections: {e}")
            raise StoreUnavailableError(f"Cannot initialize collections: {e}") from e

    # Low-level helpers

    async def _upsert(self, suffix: str, points: List[PointStruct]) -> None:
        if not points:
            return
        try:
            await self.client.upsert(collection_name=self._collection(suffix), points=points)
            logger.debug(f"Upserted {len(points)} points to {self._collection(suffix)}")
        except Exception as e:
            logger.error(f"Error upserting to {self._collection(suffix)}: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def _scroll(self, suffix: str, scroll_filter: Optional[models.Filter]) -> List[Dict[str, Any]]:
        payloads = []
        offset = None
        try:
            while True:
                points, offset = await self.client.scroll(
                    collection_name=self._collection(suffix),
                    scroll_filter=scroll_filter,
                    limit=SCROLL_PAGE,
                    offset=offset,
                    with_payload=True,
                    with_vectors=False,
                )
                payloads.extend(point.payload for point in points)
                if offset is None:
                    break
        except Exception as e:
            logger.error(f"Error scrolling {self._collection(suffix)}: {e}")
            raise StoreUnavailableError(str(e)) from e
        return payloads

    async def _delete(self, suffix: str, selector_filter: models.Filter) -> None:
        try:
            await self.client.delete(
                collection_name=self._collection(suffix),
                points_selector=models.FilterSelector(filter=selector_filter),
            )
        except Exception as e:
            logger.error(f"Error deleting from {self._collection(suffix)}: {e}")
            raise StoreUnavailableError(str(e)) from e

    def _scope_filter(self, filters: QueryFilter, extra: Optional[List[models.FieldCondition]] = None) -> models.Filter:
        must = list(extra or [])
        if filters.repo_ids is not None:
            must.append(_match_any("repo_id", filters.repo_ids))
        if filters.file_version_ids is not None:
            must.append(_match_any("file_version_id", filters.file_version_ids))
        return models.Filter(must=must)

    @staticmethod
    def _owned_by(file_version_id: str) -> models.Filter:
        return models.Filter(must=[_match("file_version_id", file_version_id)])

    # Repositories

    async def upsert_repository(self, repository: Repository) -> None:
        await self._upsert(
            "repositories",
            [PointStruct(id=hex_to_uuid(repository.repo_id), vector={}, payload=asdict(repository))],
        )

    async def get_repository(self, repo_id: str) -> Optional[Repository]:
        payloads = await self._scroll("repositories", models.Filter(must=[_match("repo_id", repo_id)]))
        return Repository(**payloads[0]) if payloads else None

    async def list_repositories(self) -> List[Repository]:
        return [Repository(**payload) for payload in await self._scroll("repositories", None)]

    # File versions

    async def upsert_file_version(self, file_version: FileVersion) -> None:
        await self._upsert(
            "file_versions",
            [PointStruct(id=hex_to_uuid(file_version.id), vector={}, payload=asdict(file_version))],
        )

    async def list_file_versions(self, repo_id: str, file_path: Optional[str] = None) -> List[FileVersion]:
        must = [_match("repo_id", repo_id)]
        if file_path is not None:
            must.append(_match("file_path", file_path))
        payloads = await self._scroll("file_versions", models.Filter(must=must))
        return [FileVersion(**payload) for payload in payloads]

    async def upsert_commit_file_versions(self, rows: Sequence[CommitFileVersion]) -> None:
        await self._upsert(
            "commits",
            [PointStruct(id=hex_to_uuid(row.id), vector={}, payload=asdict(row)) for row in rows],
        )

    async def list_commit_file_versions(
        self, repo_id: str, commit_hash: Optional[str] = None
    ) -> List[CommitFileVersion]:
        must = [_match("repo_id", repo_id)]
        if commit_hash is not None:
            must.append(_match("commit_hash", commit_hash))
        payloads = await self._scroll("commits", models.Filter(must=must))
        return [CommitFileVersion(**payload) for payload in payloads]

    # Chunks

    def _chunk_point(self, chunk: Chunk) -> PointStruct:
        payload = asdict(chunk)
        payload.pop("vector")

        vectors: Dict[str, Any] = {}
        if chunk.vector is not None:
            vectors[DENSE_VECTOR] = chunk.vector
        lexical_text = " ".join([chunk.file_path, " ".join(chunk.symbols), chunk.embedding_text()])
        indices, values = sparse_vector(lexical_text)
        if indices:
            vectors[LEXICAL_VECTOR] = models.SparseVector(indices=indices, values=values)

        return PointStruct(id=hex_to_uuid(chunk.id), vector=vectors, payload=payload)

    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> None:
        await self._upsert("chunks", [self._chunk_point(chunk) for chunk in chunks])

    async def delete_chunks_for_file_version(self, file_version: FileVersion) -> None:
        await self._delete("chunks", self._owned_by(file_version.id))
        logger.info(f"Deleted chunks for {file_version.file_path} (version {file_version.id})")

    async def get_chunks(self, chunk_ids: Sequence[str]) -> List[Chunk]:
        if not chunk_ids:
            return []
        try:
            points = await self.client.retrieve(
                collection_name=self._collection("chunks"),
                ids=[hex_to_uuid(i) for i in chunk_ids],
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            logger.error(f"Error retrieving chunks: {e}")
            raise StoreUnavailableError(str(e)) from e

        by_id = {point.payload["id"]: Chunk(**point.payload) for point in points}
        return [by_id[i] for i in chunk_ids if i in by_id]

    async def get_chunks_for_file_version(self, file_version_id: str) -> List[Chunk]:
        payloads = await self._scroll("chunks", models.Filter(must=[_match("file_version_id", file_version_id)]))
        return sorted((Chunk(**payload) for payload in payloads), key=lambda c: c.line_start)

    async def hybrid_query(
        self, text: str, vector: Optional[List[float]], filters: QueryFilter, k: int
    ) -> List[ScoredChunk]:
        """Fused dense + sparse query, with both component scores for each hit.

        The fused ranking comes from Qdrant's reciprocal rank fusion; the
        component queries run in the same batch to expose raw scores.
        """
        query_filter = self._scope_filter(filters)
        indices, values = sparse_vector(text)
        sparse_query = models.SparseVector(indices=indices, values=values) if indices else None

        prefetch = []
        requests = []
        if vector is not None:
            prefetch.append(models.Prefetch(query=vector, using=DENSE_VECTOR, limit=k * 2, filter=query_filter))
            requests.append(
                models.QueryRequest(query=vector, using=DENSE_VECTOR, filter=query_filter, limit=k * 2)
            )
        if sparse_query is not None:
            prefetch.append(
                models.Prefetch(query=sparse_query, using=LEXICAL_VECTOR, limit=k * 2, filter=query_filter)
            )
            requests.append(
                models.QueryRequest(query=sparse_query, using=LEXICAL_VECTOR, filter=query_filter, limit=k * 2)
            )

        if not requests:
            logger.warning("Hybrid query has neither a vector nor lexical tokens")
            return []

        requests.insert(
            0,
            models.QueryRequest(
                prefetch=prefetch,
                query=models.FusionQuery(fusion=models.Fusion.RRF),
                filter=query_filter,
                limit=k,
                with_payload=True,
            ),
        )

        try:
            responses = await self.client.query_batch_points(
                collection_name=self._collection("chunks"), requests=requests
            )
        except Exception as e:
            logger.error(f"Error running hybrid query: {e}")
            raise StoreUnavailableError(str(e)) from e

        fused = responses[0].points
        component_scores = [{point.id: point.score for point in response.points} for response in responses[1:]]
        dense_scores = component_scores[0] if vector is not None else {}
        lexical_scores = component_scores[-1] if sparse_query is not None else {}

        results = [
            ScoredChunk(
                chunk=Chunk(**point.payload),
                score=point.score,
                vector_score=dense_scores.get(point.id, 0.0),
                lexical_score=lexical_scores.get(point.id, 0.0),
            )
            for point in fused
        ]
        logger.info(f"Hybrid query returned {len(results)} chunks")
        return results

    # Definitions and references

    async def upsert_definitions(self, definitions: Sequence[ContentEntityDefinition]) -> None:
        await self._upsert(
            "definitions",
            [PointStruct(id=hex_to_uuid(d.id), vector={}, payload=asdict(d)) for d in definitions],
        )

    async def upsert_references(self, references: Sequence[ContentEntityReference]) -> None:
        points = []
        for ref in references:
            payload = asdict(ref)
            payload["reference_type"] = ref.reference_type.value
            points.append(PointStruct(id=hex_to_uuid(ref.id), vector={}, payload=payload))
        await self._upsert("references", points)

    async def delete_entities_for_file_version(self, file_version_id: str) -> None:
        selector = self._owned_by(file_version_id)
        await self._delete("definitions", selector)
        await self._delete("references", selector)

    @staticmethod
    def _reference(payload: Dict[str, Any]) -> ContentEntityReference:
        payload = dict(payload)
        payload["reference_type"] = ReferenceType(payload["reference_type"])
        return ContentEntityReference(**payload)

    async def get_definitions_by_identifier(
        self, identifier: str, filters: QueryFilter
    ) -> List[ContentEntityDefinition]:
        payloads = await self._scroll("definitions", self._scope_filter(filters, [_match("identifier", identifier)]))
        return [ContentEntityDefinition(**payload) for payload in payloads]

    async def get_references_by_identifier(
        self, identifier: str, filters: QueryFilter
    ) -> List[ContentEntityReference]:
        payloads = await self._scroll(
            "references", self._scope_filter(filters, [_match("identifier_used", identifier)])
        )
        return [self._reference(payload) for payload in payloads]

    async def get_definitions_for_chunks(self, chunk_ids: Sequence[str]) -> List[ContentEntityDefinition]:
        if not chunk_ids:
            return []
        payloads = await self._scroll("definitions", models.Filter(must=[_match_any("chunk_id", chunk_ids)]))
        return [ContentEntityDefinition(**payload) for payload in payloads]

    async def get_references_for_chunks(self, chunk_ids: Sequence[str]) -> List[ContentEntityReference]:
        if not chunk_ids:
            return []
        payloads = await self._scroll("references", models.Filter(must=[_match_any("chunk_id", chunk_ids)]))
        return [self._reference(payload) for payload in payloads]

    # Operations

    async def health_check(self) -> bool:
        """Check if Qdrant is healthy and accessible.

        Returns:
            True if healthy, False otherwise
        """
        try:
            await self.client.get_collections()
            return True
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """Point counts per collection."""
        stats = {}
        try:
            for suffix in self.PAYLOAD_INDEXES:
                result = await self.client.count(collection_name=self._collection(suffix), exact=True)
                stats[suffix] = result.count
        except Exception as e:
            logger.error(f"Error getting collection stats: {e}")
            raise StoreUnavailableError(str(e)) from e
        return stats
