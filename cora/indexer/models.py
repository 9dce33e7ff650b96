"""Data models for indexed repositories, file versions, chunks and references."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import blake3


def repository_id(origin_uri: str) -> str:
    """Derive a stable repository identifier from its origin URI."""
    normalized = origin_uri.strip().rstrip("/")
    if normalized.endswith(".git"):
        normalized = normalized[:-4]
    return blake3.blake3(normalized.encode()).hexdigest()[:16]


def content_hash(data: bytes) -> str:
    """Blake3 hash of a file's raw bytes."""
    return blake3.blake3(data).hexdigest()


def split_lines(text: str) -> List[str]:
    """Split text into lines on newline characters only, keeping line endings.

    Line numbers must agree with tree-sitter rows, which count only "\\n".
    """
    lines = [line + "\n" for line in text.split("\n")]
    lines[-1] = lines[-1][:-1]
    if not lines[-1]:
        lines.pop()
    return lines


class ReferenceType(str, Enum):
    """Syntactic context of an identifier usage."""

    CALL = "call"
    IMPORT = "import"
    LINK = "link"
    REEXPORT = "reexport"
    MENTION = "mention"


@dataclass
class Repository:
    """A source repository known to the index."""

    repo_id: str
    origin_uri: str
    checkout_path: Optional[str] = None
    current_commit: Optional[str] = None


@dataclass
class FileVersion:
    """One immutable content snapshot of one file path.

    Versions of the same path form generations: the highest generation is the
    current one. A deleted file is recorded as a tombstone generation.
    """

    id: str
    repo_id: str
    project_dir: str
    file_path: str
    content_hash: str
    generation: int
    language: Optional[str] = None
    deleted: bool = False
    created_at: float = field(default_factory=time.time)

    @staticmethod
    def make_id(repo_id: str, file_path: str, content_hash: str, generation: int) -> str:
        key = f"{repo_id}:{file_path}:{content_hash}:{generation}"
        return blake3.blake3(key.encode()).hexdigest()[:32]


@dataclass
class CommitFileVersion:
    """Association of a FileVersion with a commit at which it was visible."""

    commit_hash: str
    timestamp: float
    file_version_id: str
    repo_id: str
    file_path: str

    @property
    def id(self) -> str:
        key = f"{self.repo_id}:{self.commit_hash}:{self.file_path}"
        return blake3.blake3(key.encode()).hexdigest()[:32]


@dataclass
class ContentItem:
    """A declaration, heading section or top-level key group with a line span."""

    line_start: int  # 1-based, inclusive
    line_end: int
    item_type: str
    name: Optional[str] = None


@dataclass
class Chunk:
    """A contiguous, size-bounded excerpt of one file version."""

    id: str
    repo_id: str
    file_version_id: str
    file_path: str
    content: str
    line_start: int
    line_end: int
    language: str
    declaration_type: str
    project_dir: str = ""
    commentary: Optional[str] = None
    symbols: List[str] = field(default_factory=list)
    reference_symbols: List[str] = field(default_factory=list)
    reference_chunks: List[str] = field(default_factory=list)
    vector: Optional[List[float]] = None

    @staticmethod
    def make_id(file_version_id: str, line_start: int, content: str) -> str:
        # Include file version and line number for uniqueness
        hash_input = f"{file_version_id}:{line_start}:{content}"
        return blake3.blake3(hash_input.encode()).hexdigest()[:32]

    def embedding_text(self) -> str:
        """Text embedded for this chunk: content plus commentary when present."""
        if self.commentary:
            return f"{self.content}\n\n{self.commentary}"
        return self.content


@dataclass
class ContentEntityDefinition:
    """Authoritative record that an identifier is defined in one file version."""

    id: str
    identifier: str
    entity_type: str
    line_start: int
    line_end: int
    repo_id: str
    file_version_id: str
    file_path: str
    chunk_id: Optional[str] = None


@dataclass
class ContentEntityReference:
    """A usage of an identifier. Holds only the referencing side's facts."""

    id: str
    identifier_used: str
    reference_type: ReferenceType
    repo_id: str
    file_version_id: str
    file_path: str
    line: int
    chunk_id: Optional[str] = None
    import_path: Optional[str] = None
    alias: Optional[str] = None


def entity_id(file_version_id: str, kind: str, identifier: str, line: int, ordinal: int = 0) -> str:
    """Deterministic id for a definition or reference record."""
    key = f"{file_version_id}:{kind}:{identifier}:{line}:{ordinal}"
    return blake3.blake3(key.encode()).hexdigest()[:32]
