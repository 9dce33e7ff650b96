"""Index store interface: the semantic operations the engine needs from its store.

The engine depends only on these operations, never on a query language. Each
call is an `await` point; everything else in the engine is in-memory work.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..indexer.models import (
    Chunk,
    CommitFileVersion,
    ContentEntityDefinition,
    ContentEntityReference,
    FileVersion,
    Repository,
)


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot be reached or rejects a request."""


@dataclass
class QueryFilter:
    """Scope of a store read. `None` means unrestricted."""

    repo_ids: Optional[List[str]] = None
    file_version_ids: Optional[List[str]] = None


@dataclass
class ScoredChunk:
    """A hybrid query hit with the fused score and both component scores."""

    chunk: Chunk
    score: float
    vector_score: float = 0.0
    lexical_score: float = 0.0


class IndexStore(ABC):
    """Persistence boundary for repositories, versions, chunks and entities."""

    # Repositories

    @abstractmethod
    async def upsert_repository(self, repository: Repository) -> None:
        pass

    @abstractmethod
    async def get_repository(self, repo_id: str) -> Optional[Repository]:
        pass

    @abstractmethod
    async def list_repositories(self) -> List[Repository]:
        pass

    # File versions

    @abstractmethod
    async def upsert_file_version(self, file_version: FileVersion) -> None:
        pass

    @abstractmethod
    async def list_file_versions(self, repo_id: str, file_path: Optional[str] = None) -> List[FileVersion]:
        """All generations of a repository's files, optionally of one path."""
        pass

    @abstractmethod
    async def upsert_commit_file_versions(self, rows: Sequence[CommitFileVersion]) -> None:
        pass

    @abstractmethod
    async def list_commit_file_versions(
        self, repo_id: str, commit_hash: Optional[str] = None
    ) -> List[CommitFileVersion]:
        pass

    # Chunks

    @abstractmethod
    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> None:
        pass

    async def upsert_chunk(self, chunk: Chunk) -> None:
        await self.upsert_chunks([chunk])

    @abstractmethod
    async def delete_chunks_for_file_version(self, file_version: FileVersion) -> None:
        """Delete every chunk of a file version."""
        pass

    @abstractmethod
    async def get_chunks(self, chunk_ids: Sequence[str]) -> List[Chunk]:
        pass

    @abstractmethod
    async def get_chunks_for_file_version(self, file_version_id: str) -> List[Chunk]:
        """Chunks of one file version in line order."""
        pass

    @abstractmethod
    async def hybrid_query(
        self, text: str, vector: Optional[List[float]], filters: QueryFilter, k: int
    ) -> List[ScoredChunk]:
        """Combined vector and lexical search, best first.

        Args:
            text: Query text for the lexical component
            vector: Query embedding, or None for a lexical-only query
            filters: Repositories and file versions in scope
            k: Maximum number of hits
        """
        pass

    # Definitions and references

    @abstractmethod
    async def upsert_definitions(self, definitions: Sequence[ContentEntityDefinition]) -> None:
        pass

    @abstractmethod
    async def upsert_references(self, references: Sequence[ContentEntityReference]) -> None:
        pass

    @abstractmethod
    async def delete_entities_for_file_version(self, file_version_id: str) -> None:
        """Delete every definition and reference of a file version."""
        pass

    @abstractmethod
    async def get_definitions_by_identifier(
        self, identifier: str, filters: QueryFilter
    ) -> List[ContentEntityDefinition]:
        pass

    @abstractmethod
    async def get_references_by_identifier(
        self, identifier: str, filters: QueryFilter
    ) -> List[ContentEntityReference]:
        pass

    @abstractmethod
    async def get_definitions_for_chunks(self, chunk_ids: Sequence[str]) -> List[ContentEntityDefinition]:
        pass

    @abstractmethod
    async def get_references_for_chunks(self, chunk_ids: Sequence[str]) -> List[ContentEntityReference]:
        pass

    # Operations

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        pass
