"""Shared fixtures: an in-memory index store and a deterministic embedding provider."""

import asyncio
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

from cora.indexer.chunk_builder import ChunkBuilder
from cora.indexer.embeddings import EmbeddingProvider
from cora.indexer.grammars import LanguageRegistry
from cora.indexer.models import (
    Chunk,
    CommitFileVersion,
    ContentEntityDefinition,
    ContentEntityReference,
    FileVersion,
    Repository,
)
from cora.indexer.parser import GrammarParser
from cora.indexer.reference_extractor import ReferenceExtractor
from cora.indexer.reindex import ReindexCoordinator
from cora.store.base import IndexStore, QueryFilter, ScoredChunk, StoreUnavailableError
from cora.store.lexical import tokenize


def _in_scope(repo_id: str, file_version_id: str, filters: QueryFilter) -> bool:
    if filters.repo_ids is not None and repo_id not in filters.repo_ids:
        return False
    if filters.file_version_ids is not None and file_version_id not in filters.file_version_ids:
        return False
    return True


class InMemoryIndexStore(IndexStore):
    """Dictionary-backed store.

    Operations named in `failing` always raise StoreUnavailableError; operations
    in `fail_times` fail that many times before succeeding.
    """

    def __init__(self):
        self.repositories: Dict[str, Repository] = {}
        self.file_versions: Dict[str, FileVersion] = {}
        self.commit_rows: Dict[str, CommitFileVersion] = {}
        self.chunks: Dict[str, Chunk] = {}
        self.definitions: Dict[str, ContentEntityDefinition] = {}
        self.references: Dict[str, ContentEntityReference] = {}
        self.failing: set = set()
        self.fail_times: Dict[str, int] = {}
        self.calls: List[str] = []

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.failing:
            raise StoreUnavailableError(f"{operation} unavailable")
        if self.fail_times.get(operation, 0) > 0:
            self.fail_times[operation] -= 1
            raise StoreUnavailableError(f"{operation} temporarily unavailable")

    async def upsert_repository(self, repository: Repository) -> None:
        self._check("upsert_repository")
        self.repositories[repository.repo_id] = repository

    async def get_repository(self, repo_id: str) -> Optional[Repository]:
        self._check("get_repository")
        return self.repositories.get(repo_id)

    async def list_repositories(self) -> List[Repository]:
        return list(self.repositories.values())

    async def upsert_file_version(self, file_version: FileVersion) -> None:
        self._check("upsert_file_version")
        self.file_versions[file_version.id] = file_version

    async def list_file_versions(self, repo_id: str, file_path: Optional[str] = None) -> List[FileVersion]:
        self._check("list_file_versions")
        return [
            fv
            for fv in self.file_versions.values()
            if fv.repo_id == repo_id and (file_path is None or fv.file_path == file_path)
        ]

    async def upsert_commit_file_versions(self, rows: Sequence[CommitFileVersion]) -> None:
        self._check("upsert_commit_file_versions")
        for row in rows:
            self.commit_rows[row.id] = row

    async def list_commit_file_versions(
        self, repo_id: str, commit_hash: Optional[str] = None
    ) -> List[CommitFileVersion]:
        return [
            row
            for row in self.commit_rows.values()
            if row.repo_id == repo_id and (commit_hash is None or row.commit_hash == commit_hash)
        ]

    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> None:
        self._check("upsert_chunks")
        # Yield so concurrent writers interleave
        await asyncio.sleep(0)
        for chunk in chunks:
            self.chunks[chunk.id] = chunk

    async def delete_chunks_for_file_version(self, file_version: FileVersion) -> None:
        self._check("delete_chunks_for_file_version")
        for chunk_id in [c.id for c in self.chunks.values() if c.file_version_id == file_version.id]:
            del self.chunks[chunk_id]

    async def get_chunks(self, chunk_ids: Sequence[str]) -> List[Chunk]:
        self._check("get_chunks")
        return [self.chunks[chunk_id] for chunk_id in chunk_ids if chunk_id in self.chunks]

    async def get_chunks_for_file_version(self, file_version_id: str) -> List[Chunk]:
        self._check("get_chunks_for_file_version")
        chunks = [c for c in self.chunks.values() if c.file_version_id == file_version_id]
        return sorted(chunks, key=lambda c: c.line_start)

    async def hybrid_query(
        self, text: str, vector: Optional[List[float]], filters: QueryFilter, k: int
    ) -> List[ScoredChunk]:
        self._check("hybrid_query")
        query_tokens = set(tokenize(text))
        hits = []
        for chunk in self.chunks.values():
            if not _in_scope(chunk.repo_id, chunk.file_version_id, filters):
                continue
            chunk_tokens = set(
                tokenize(" ".join([chunk.file_path, " ".join(chunk.symbols), chunk.embedding_text()]))
            )
            lexical = float(len(query_tokens & chunk_tokens))
            dense = _cosine(vector, chunk.vector) if vector is not None and chunk.vector is not None else 0.0
            if lexical <= 0 and dense <= 0:
                continue
            hits.append(ScoredChunk(chunk=chunk, score=lexical + dense, vector_score=dense, lexical_score=lexical))
        hits.sort(key=lambda h: (-h.score, h.chunk.id))
        return hits[:k]

    async def upsert_definitions(self, definitions: Sequence[ContentEntityDefinition]) -> None:
        self._check("upsert_definitions")
        for definition in definitions:
            self.definitions[definition.id] = definition

    async def upsert_references(self, references: Sequence[ContentEntityReference]) -> None:
        self._check("upsert_references")
        for reference in references:
            self.references[reference.id] = reference

    async def delete_entities_for_file_version(self, file_version_id: str) -> None:
        self._check("delete_entities_for_file_version")
        for records in (self.definitions, self.references):
            for record_id in [r.id for r in records.values() if r.file_version_id == file_version_id]:
                del records[record_id]

    async def get_definitions_by_identifier(
        self, identifier: str, filters: QueryFilter
    ) -> List[ContentEntityDefinition]:
        self._check("get_definitions_by_identifier")
        return [
            d
            for d in self.definitions.values()
            if d.identifier == identifier and _in_scope(d.repo_id, d.file_version_id, filters)
        ]

    async def get_references_by_identifier(
        self, identifier: str, filters: QueryFilter
    ) -> List[ContentEntityReference]:
        self._check("get_references_by_identifier")
        return [
            r
            for r in self.references.values()
            if r.identifier_used == identifier and _in_scope(r.repo_id, r.file_version_id, filters)
        ]

    async def get_definitions_for_chunks(self, chunk_ids: Sequence[str]) -> List[ContentEntityDefinition]:
        self._check("get_definitions_for_chunks")
        wanted = set(chunk_ids)
        return [d for d in self.definitions.values() if d.chunk_id in wanted]

    async def get_references_for_chunks(self, chunk_ids: Sequence[str]) -> List[ContentEntityReference]:
        self._check("get_references_for_chunks")
        wanted = set(chunk_ids)
        return [r for r in self.references.values() if r.chunk_id in wanted]

    async def health_check(self) -> bool:
        return "health_check" not in self.failing

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "repositories": len(self.repositories),
            "file_versions": len(self.file_versions),
            "chunks": len(self.chunks),
            "definitions": len(self.definitions),
            "references": len(self.references),
        }


def _cosine(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class KeywordEmbeddings(EmbeddingProvider):
    """Bag-of-keywords vectors over a fixed vocabulary. Texts containing `fail_marker` yield None."""

    VOCABULARY = ["auth", "token", "parse", "config", "render", "user", "install", "helper"]

    def __init__(self, fail_marker: Optional[str] = None):
        self.fail_marker = fail_marker
        self.requests: List[str] = []

    async def generate_embeddings(self, texts: List[str], use_cache: bool = True) -> List[Optional[List[float]]]:
        self.requests.extend(texts)
        vectors = []
        for text in texts:
            if self.fail_marker and self.fail_marker in text:
                vectors.append(None)
                continue
            tokens = set(tokenize(text))
            vectors.append([1.0 if word in tokens else 0.0 for word in self.VOCABULARY])
        return vectors


@pytest.fixture
def registry() -> LanguageRegistry:
    return LanguageRegistry()


@pytest.fixture
def grammar_parser(registry) -> GrammarParser:
    return GrammarParser(registry)


@pytest.fixture
def chunk_builder(registry, grammar_parser) -> ChunkBuilder:
    return ChunkBuilder(registry, grammar_parser, min_chunk_size=200, max_chunk_size=800, window_lines=20)


@pytest.fixture
def store() -> InMemoryIndexStore:
    return InMemoryIndexStore()


@pytest.fixture
def embeddings() -> KeywordEmbeddings:
    return KeywordEmbeddings()


@pytest.fixture
def reindexer(store, registry, chunk_builder, embeddings) -> ReindexCoordinator:
    return ReindexCoordinator(
        store,
        registry,
        chunk_builder,
        ReferenceExtractor(registry),
        embeddings,
        max_concurrent_files=2,
        max_retries=2,
        retry_delay=0.0,
    )


def write_files(root: Path, files: Dict[str, str]) -> None:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def make_version(
    file_path: str,
    repo_id: str = "repo",
    generation: int = 1,
    content: str = "",
    created_at: float = 0.0,
    deleted: bool = False,
    language: Optional[str] = None,
) -> FileVersion:
    digest = f"hash-{file_path}-{generation}-{content}"
    return FileVersion(
        id=FileVersion.make_id(repo_id, file_path, digest, generation),
        repo_id=repo_id,
        project_dir="",
        file_path=file_path,
        content_hash=digest,
        generation=generation,
        language=language,
        deleted=deleted,
        created_at=created_at,
    )


def make_chunk(file_version: FileVersion, line_start: int, line_end: int, content: Optional[str] = None) -> Chunk:
    if content is None:
        content = "".join(f"line {n}\n" for n in range(line_start, line_end + 1))
    return Chunk(
        id=Chunk.make_id(file_version.id, line_start, content),
        repo_id=file_version.repo_id,
        file_version_id=file_version.id,
        file_path=file_version.file_path,
        content=content,
        line_start=line_start,
        line_end=line_end,
        language=file_version.language or "text",
        declaration_type="function",
    )


def make_definition(identifier: str, chunk: Chunk, entity_type: str = "function", line: Optional[int] = None):
    line = chunk.line_start if line is None else line
    return ContentEntityDefinition(
        id=f"def:{chunk.file_version_id}:{identifier}:{line}",
        identifier=identifier,
        entity_type=entity_type,
        line_start=line,
        line_end=chunk.line_end,
        repo_id=chunk.repo_id,
        file_version_id=chunk.file_version_id,
        file_path=chunk.file_path,
        chunk_id=chunk.id,
    )


def make_reference(identifier: str, chunk: Chunk, reference_type, import_path: Optional[str] = None, line=None):
    line = chunk.line_start if line is None else line
    return ContentEntityReference(
        id=f"ref:{chunk.file_version_id}:{identifier}:{line}:{reference_type.value}",
        identifier_used=identifier,
        reference_type=reference_type,
        repo_id=chunk.repo_id,
        file_version_id=chunk.file_version_id,
        file_path=chunk.file_path,
        line=line,
        chunk_id=chunk.id,
        import_path=import_path,
    )


SAMPLE_FILES = {
    "README.md": (
        "# Cora Sample\n\n"
        "Start with `login` in [auth](src/auth.py).\n\n"
        "## Getting Started\n\n"
        "Install the package and call `login()` with a user token.\n"
    ),
    "src/auth.py": (
        "from .token import parse_token\n\n\n"
        "def login(user, token):\n"
        '    """Authenticate a user with a token."""\n'
        "    claims = parse_token(token)\n"
        '    return claims["user"] == user\n\n\n'
        "def logout(user):\n"
        "    return True\n"
    ),
    "src/token.py": (
        "def parse_token(token):\n"
        '    header, payload = token.split(".")\n'
        '    return {"user": payload}\n'
    ),
}


@pytest.fixture
async def sample_repo(tmp_path, reindexer):
    """A checkout with prose and code, fully indexed. Returns the repository record."""
    write_files(tmp_path, SAMPLE_FILES)
    repository = await reindexer.register_repository("https://example.com/acme/sample.git", str(tmp_path))
    await reindexer.full_scan(repository.repo_id)
    return repository
