"""Incremental re-indexing of changed files.

Each file path is written by at most one task at a time. A new FileVersion is
created only when the content hash changes; its chunks, definitions and
references are written before the FileVersion record itself, so the previous
version stays the visible one until the new version is complete.

A forced rescan rewrites the visible version in place only when re-derivation
yields exactly the stored record ids. Otherwise it writes a new generation
with the same content hash.
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from gitignore_parser import parse_gitignore

from ..graph.versions import current_versions
from ..store.base import IndexStore, StoreUnavailableError
from .chunk_builder import ChunkBuildResult, ChunkBuilder
from .commentary import OllamaCommentary
from .embeddings import EmbeddingProvider
from .grammars import LanguageRegistry
from .models import CommitFileVersion, FileVersion, Repository, content_hash, repository_id
from .reference_extractor import ExtractionResult, ReferenceExtractor

logger = logging.getLogger(__name__)

MANIFEST_FILES = (
    "package.json",
    "pyproject.toml",
    "setup.py",
    "go.mod",
    "Cargo.toml",
    "pom.xml",
    "composer.json",
)

DEFAULT_EXCLUDES = {
    "node_modules",
    ".git",
    "__pycache__",
    ".pytest_cache",
    "venv",
    ".venv",
    "dist",
    "build",
    ".next",
    ".nuxt",
    "vendor",
}


@dataclass
class ReindexResult:
    """Outcome for one path: indexed, unchanged, deleted, skipped or failed."""

    file_path: str
    status: str
    file_version_id: Optional[str] = None
    chunks: int = 0
    error: Optional[str] = None


@dataclass
class _PathLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def detect_project_dir(checkout_path: str, file_path: str) -> str:
    """Nearest ancestor directory of a file holding a project manifest.

    Args:
        checkout_path: Repository checkout root
        file_path: File path relative to the checkout

    Returns:
        Directory relative to the checkout ("" for the repository root)
    """
    root = Path(checkout_path)
    directory = Path(file_path).parent
    while True:
        if any((root / directory / manifest).is_file() for manifest in MANIFEST_FILES):
            return "" if str(directory) == "." else directory.as_posix()
        if str(directory) in (".", ""):
            return ""
        directory = directory.parent


def relative_to_checkout(checkout_path: str, path: str) -> Optional[str]:
    """Checkout-relative posix path for an absolute or relative notification path.

    Returns:
        The relative path, or None when the path resolves outside the checkout
    """
    root = Path(checkout_path).resolve()
    candidate = Path(path) if os.path.isabs(path) else root / path
    try:
        return candidate.resolve().relative_to(root).as_posix()
    except ValueError:
        return None


class ReindexCoordinator:
    """Keeps the index consistent with a repository checkout."""

    def __init__(
        self,
        store: IndexStore,
        registry: LanguageRegistry,
        chunk_builder: ChunkBuilder,
        extractor: ReferenceExtractor,
        embeddings: EmbeddingProvider,
        commentary: Optional[OllamaCommentary] = None,
        max_concurrent_files: int = 4,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """Initialize coordinator.

        Args:
            store: Index store
            registry: Language registry
            chunk_builder: Chunk builder
            extractor: Reference extractor
            embeddings: Embedding provider
            commentary: Optional commentary generator
            max_concurrent_files: Files re-indexed in parallel
            max_retries: Store write attempts per step
            retry_delay: Base delay for exponential backoff (seconds)
        """
        self.store = store
        self.registry = registry
        self.chunk_builder = chunk_builder
        self.extractor = extractor
        self.embeddings = embeddings
        self.commentary = commentary
        self.max_concurrent_files = max_concurrent_files
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._locks: Dict[Tuple[str, str], _PathLock] = {}

    @asynccontextmanager
    async def _path_lock(self, repo_id: str, file_path: str) -> AsyncIterator[None]:
        """Serialize work on one path; the lock is dropped once nobody holds or awaits it."""
        key = (repo_id, file_path)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _PathLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    async def _with_retry(self, description: str, operation: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run a store operation, retrying with exponential backoff."""
        for attempt in range(self.max_retries):
            try:
                return await operation(*args)
            except StoreUnavailableError as e:
                if attempt == self.max_retries - 1:
                    logger.error(f"{description} failed after {self.max_retries} attempts: {e}")
                    raise
                wait_time = self.retry_delay * 2**attempt
                logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{self.max_retries}), retrying in {wait_time}s: {e}"
                )
                await asyncio.sleep(wait_time)

    # Repositories

    async def register_repository(
        self, origin_uri: str, checkout_path: Optional[str] = None, repo_id: Optional[str] = None
    ) -> Repository:
        """Create or update a repository record."""
        repo_id = repo_id or repository_id(origin_uri)
        existing = await self.store.get_repository(repo_id)
        repository = Repository(
            repo_id=repo_id,
            origin_uri=origin_uri,
            checkout_path=checkout_path or (existing.checkout_path if existing else None),
            current_commit=existing.current_commit if existing else None,
        )
        await self._with_retry(f"Registering {origin_uri}", self.store.upsert_repository, repository)
        logger.info(f"Registered repository {repo_id} ({origin_uri})")
        return repository

    async def _get_repository(self, repo_id: str) -> Repository:
        repository = await self.store.get_repository(repo_id)
        if repository is None:
            raise ValueError(f"Unknown repository: {repo_id}")
        if not repository.checkout_path:
            raise ValueError(f"Repository {repo_id} has no checkout path")
        return repository

    # Change notifications

    async def notify_changed(self, repo_id: str, file_paths: Sequence[str]) -> List[ReindexResult]:
        """Re-extract changed paths; no paths means a full rescan.

        Args:
            repo_id: Repository identifier
            file_paths: Paths relative to the checkout

        Returns:
            One result per processed path
        """
        if not file_paths:
            return await self.full_scan(repo_id, force=False)

        repository = await self._get_repository(repo_id)
        logger.info(f"Change notification for {repo_id}: {len(file_paths)} paths")
        paths, rejected = self._normalize(repository, file_paths)
        return rejected + await self._reindex_many(repository, paths, force=False)

    async def rescan(self, repo_id: str, file_paths: Optional[Sequence[str]] = None) -> List[ReindexResult]:
        """Forced pass that bypasses content-hash change detection."""
        if not file_paths:
            return await self.full_scan(repo_id, force=True)
        repository = await self._get_repository(repo_id)
        paths, rejected = self._normalize(repository, file_paths)
        return rejected + await self._reindex_many(repository, paths, force=True)

    @staticmethod
    def _normalize(repository: Repository, file_paths: Sequence[str]) -> Tuple[List[str], List[ReindexResult]]:
        """Checkout-relative paths, and skipped results for paths outside the checkout."""
        paths: List[str] = []
        rejected: List[ReindexResult] = []
        for path in file_paths:
            relative = relative_to_checkout(repository.checkout_path, path)
            if relative is None:
                logger.warning(f"Ignoring {path}: outside the checkout of {repository.repo_id}")
                rejected.append(ReindexResult(file_path=path, status="skipped", error="outside checkout"))
            else:
                paths.append(relative)
        return list(dict.fromkeys(paths)), rejected

    async def full_scan(self, repo_id: str, force: bool = False) -> List[ReindexResult]:
        """Index every file of the checkout and tombstone indexed paths that vanished."""
        repository = await self._get_repository(repo_id)
        present = self.list_checkout_files(repository.checkout_path)

        versions = await self.store.list_file_versions(repo_id)
        indexed = {path for path, version in current_versions(versions).items() if not version.deleted}
        vanished = sorted(indexed - set(present))

        logger.info(
            f"Full scan of {repo_id}: {len(present)} files present, {len(vanished)} removed since last scan"
        )
        return await self._reindex_many(repository, present + vanished, force=force)

    async def _reindex_many(self, repository: Repository, file_paths: List[str], force: bool) -> List[ReindexResult]:
        semaphore = asyncio.Semaphore(self.max_concurrent_files)

        async def run(file_path: str) -> ReindexResult:
            async with semaphore:
                return await self.reindex_file(repository, file_path, force=force)

        results = await asyncio.gather(*(run(path) for path in file_paths))

        counts: Dict[str, int] = {}
        for result in results:
            counts[result.status] = counts.get(result.status, 0) + 1
        logger.info(f"Reindex of {len(file_paths)} paths in {repository.repo_id}: {counts}")
        return list(results)

    def list_checkout_files(self, checkout_path: str, exclude_patterns: Optional[List[str]] = None) -> List[str]:
        """Supported files of a checkout, honoring .gitignore and default excludes.

        Returns:
            Paths relative to the checkout, sorted
        """
        root = Path(checkout_path).resolve()

        gitignore_matcher = None
        gitignore_path = root / ".gitignore"
        if gitignore_path.exists():
            try:
                gitignore_matcher = parse_gitignore(gitignore_path)
                logger.info(f"Loaded .gitignore from {gitignore_path}")
            except (OSError, ValueError) as e:
                logger.warning(f"Error parsing .gitignore: {e}")

        files = []
        for file_path in root.rglob("*"):
            if not file_path.is_file():
                continue
            relative = file_path.relative_to(root)
            if any(excluded in relative.parts for excluded in DEFAULT_EXCLUDES):
                continue
            if not self.registry.is_supported_file(str(file_path)):
                continue
            if gitignore_matcher and gitignore_matcher(str(file_path)):
                continue
            if exclude_patterns and any(file_path.match(pattern) for pattern in exclude_patterns):
                continue
            files.append(relative.as_posix())
        return sorted(files)

    # Single file

    async def reindex_file(self, repository: Repository, file_path: str, force: bool = False) -> ReindexResult:
        """Bring one path's index entries up to date with the checkout.

        Failures are reported in the result and never abort the surrounding pass.

        Args:
            repository: Repository record with a checkout path
            file_path: Path relative to the checkout
            force: Re-derive even when the content hash is unchanged

        Returns:
            Reindex result
        """
        async with self._path_lock(repository.repo_id, file_path):
            try:
                return await self._reindex_locked(repository, file_path, force)
            except StoreUnavailableError as e:
                return ReindexResult(file_path=file_path, status="failed", error=str(e))
            except OSError as e:
                logger.error(f"Cannot read {file_path}: {e}")
                return ReindexResult(file_path=file_path, status="failed", error=str(e))
            except Exception as e:
                logger.exception(f"Unexpected error while indexing {file_path}")
                return ReindexResult(file_path=file_path, status="failed", error=f"{type(e).__name__}: {e}")

    def _new_version(self, repository: Repository, file_path: str, digest: str, generation: int) -> FileVersion:
        return FileVersion(
            id=FileVersion.make_id(repository.repo_id, file_path, digest, generation),
            repo_id=repository.repo_id,
            project_dir=detect_project_dir(repository.checkout_path, file_path),
            file_path=file_path,
            content_hash=digest,
            generation=generation,
            language=self.registry.detect_language(file_path),
        )

    def _derive(self, file_version: FileVersion, text: str) -> Tuple[ChunkBuildResult, ExtractionResult]:
        build = self.chunk_builder.build(file_version, text)
        return build, self.extractor.extract(file_version, build.chunks, build.tree, text)

    async def _matches_stored(
        self, file_version: FileVersion, build: ChunkBuildResult, extraction: ExtractionResult
    ) -> bool:
        """Whether re-derived records carry exactly the ids already stored for a version."""
        stored = await self.store.get_chunks_for_file_version(file_version.id)
        stored_ids = [chunk.id for chunk in stored]
        if set(stored_ids) != {chunk.id for chunk in build.chunks}:
            return False
        definitions = await self.store.get_definitions_for_chunks(stored_ids)
        references = await self.store.get_references_for_chunks(stored_ids)
        return {record.id for record in definitions + references} == {
            record.id for record in extraction.definitions + extraction.references
        }

    async def _discard(self, file_version: FileVersion) -> None:
        """Remove records written for a version whose FileVersion record never landed."""
        try:
            await self.store.delete_chunks_for_file_version(file_version)
            await self.store.delete_entities_for_file_version(file_version.id)
        except StoreUnavailableError as e:
            logger.warning(f"Orphaned records of {file_version.file_path} (version {file_version.id}) remain: {e}")

    async def _reindex_locked(self, repository: Repository, file_path: str, force: bool) -> ReindexResult:
        repo_id = repository.repo_id
        absolute = Path(repository.checkout_path) / file_path

        versions = await self.store.list_file_versions(repo_id, file_path)
        current = max(versions, key=lambda v: v.generation) if versions else None
        next_generation = current.generation + 1 if current else 1

        if not absolute.is_file():
            if current is None or current.deleted:
                return ReindexResult(file_path=file_path, status="skipped")
            tombstone = FileVersion(
                id=FileVersion.make_id(repo_id, file_path, "", next_generation),
                repo_id=repo_id,
                project_dir=current.project_dir,
                file_path=file_path,
                content_hash="",
                generation=next_generation,
                language=current.language,
                deleted=True,
            )
            await self._with_retry(f"Tombstoning {file_path}", self.store.upsert_file_version, tombstone)
            logger.info(f"Recorded deletion of {file_path}")
            return ReindexResult(file_path=file_path, status="deleted", file_version_id=tombstone.id)

        if not self.registry.is_supported_file(file_path):
            return ReindexResult(file_path=file_path, status="skipped")

        data = absolute.read_bytes()
        if b"\x00" in data[:8192]:
            logger.debug(f"Skipping binary file {file_path}")
            return ReindexResult(file_path=file_path, status="skipped")

        digest = content_hash(data)
        reuse = current is not None and not current.deleted and current.content_hash == digest
        if reuse and not force:
            return ReindexResult(file_path=file_path, status="unchanged", file_version_id=current.id)

        text = data.decode("utf-8", errors="replace")
        file_version = current if reuse else self._new_version(repository, file_path, digest, next_generation)
        build, extraction = self._derive(file_version, text)

        if reuse and not await self._with_retry(
            f"Reading stored records of {file_path}", self._matches_stored, current, build, extraction
        ):
            # The visible version is never rewritten in place with a different record set
            logger.info(
                f"Re-derived records of {file_path} differ from generation {current.generation}, "
                f"writing generation {next_generation}"
            )
            file_version = self._new_version(repository, file_path, digest, next_generation)
            build, extraction = self._derive(file_version, text)
            reuse = False

        if self.commentary is not None:
            await self.commentary.annotate(build.chunks)

        vectors = await self.embeddings.generate_embeddings([chunk.embedding_text() for chunk in build.chunks])
        for chunk, vector in zip(build.chunks, vectors):
            chunk.vector = vector
        missing = sum(1 for vector in vectors if vector is None)
        if missing:
            logger.warning(f"{missing}/{len(build.chunks)} chunks of {file_path} stored without vectors")

        try:
            await self._with_retry(f"Writing chunks of {file_path}", self.store.upsert_chunks, build.chunks)
            await self._with_retry(
                f"Writing definitions of {file_path}", self.store.upsert_definitions, extraction.definitions
            )
            await self._with_retry(
                f"Writing references of {file_path}", self.store.upsert_references, extraction.references
            )
            # The version record goes last: until it lands, the previous version stays current
            await self._with_retry(f"Writing version of {file_path}", self.store.upsert_file_version, file_version)
        except StoreUnavailableError:
            if not reuse:
                await self._discard(file_version)
            raise

        logger.info(
            f"Indexed {file_path} (generation {file_version.generation}): {len(build.chunks)} chunks, "
            f"{len(extraction.definitions)} definitions, {len(extraction.references)} references"
        )
        return ReindexResult(
            file_path=file_path, status="indexed", file_version_id=file_version.id, chunks=len(build.chunks)
        )

    # Commits

    async def record_commit(self, repo_id: str, commit_hash: str, timestamp: Optional[float] = None) -> int:
        """Associate every current file version with a commit and move the commit pointer.

        Tombstones are associated too, so a path deleted before the commit
        stays hidden when queries pin that commit.

        Returns:
            Number of associations written
        """
        repository = await self.store.get_repository(repo_id)
        if repository is None:
            raise ValueError(f"Unknown repository: {repo_id}")

        timestamp = time.time() if timestamp is None else timestamp
        versions = await self.store.list_file_versions(repo_id)
        rows = [
            CommitFileVersion(
                commit_hash=commit_hash,
                timestamp=timestamp,
                file_version_id=version.id,
                repo_id=repo_id,
                file_path=path,
            )
            for path, version in sorted(current_versions(versions).items())
        ]
        await self._with_retry(f"Recording commit {commit_hash}", self.store.upsert_commit_file_versions, rows)

        repository.current_commit = commit_hash
        await self._with_retry(f"Moving {repo_id} to {commit_hash}", self.store.upsert_repository, repository)
        logger.info(f"Recorded commit {commit_hash} for {repo_id} with {len(rows)} file versions")
        return len(rows)
