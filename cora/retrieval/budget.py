"""Select, render and group the final chunk set under a character budget."""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..indexer.models import Chunk, split_lines
from .boost import BoostedUnit
from .link_rank import RankedChunk

logger = logging.getLogger(__name__)

FULL = "full"
SIGNATURE = "signature"
ELIDED = "elided"


def elided_marker(line_start: int, line_end: int) -> str:
    return f"[... lines {line_start}-{line_end} elided ...]"


@dataclass
class RenderedSection:
    """A contiguous line range of one file, rendered fully or elided."""

    line_start: int
    line_end: int
    mode: str
    content: str
    commentary: Optional[str] = None
    chunk_ids: List[str] = field(default_factory=list)


@dataclass
class RenderedFile:
    file_path: str
    file_version_id: str
    language: str
    sections: List[RenderedSection] = field(default_factory=list)


@dataclass
class RenderedRepository:
    repo_id: str
    files: List[RenderedFile] = field(default_factory=list)


@dataclass
class QueryResponse:
    """Grouped result of a query plus what was used to build it."""

    repositories: List[RenderedRepository] = field(default_factory=list)
    files_used: List[Dict[str, str]] = field(default_factory=list)
    chunks_used: List[str] = field(default_factory=list)
    total_chars: int = 0
    partial: bool = False
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Entry:
    chunk: Chunk
    must_render_fully: bool = False
    signature_line: Optional[int] = None


@dataclass
class _Selection:
    chunk: Chunk
    mode: str
    content: str


def _full_text(chunk: Chunk) -> str:
    return chunk.content


def _signature_text(chunk: Chunk, line: int) -> str:
    lines = split_lines(chunk.content)
    offset = min(max(line - chunk.line_start, 0), max(len(lines) - 1, 0))
    signature = lines[offset] if lines else ""
    if not signature.endswith("\n"):
        signature += "\n"
    return signature + elided_marker(line + 1, chunk.line_end) if line < chunk.line_end else signature


def _rendered_size(chunk: Chunk, content: str) -> int:
    return len(content) + (len(chunk.commentary) if chunk.commentary else 0)


class BudgetAssembler:
    """Decides inclusion and full/elided rendering per chunk, then groups the output."""

    def __init__(self, max_elided_chunks: int = 50):
        """Initialize assembler.

        Args:
            max_elided_chunks: Tail cut after this many elided entries
        """
        self.max_elided_chunks = max_elided_chunks

    def order(self, boosts: Sequence[BoostedUnit], ranked: Sequence[RankedChunk]) -> List[_Entry]:
        """Boosted units first in directive order, then ranked chunks; first slot wins."""
        entries = []
        seen = set()
        for unit in boosts:
            for chunk in unit.chunks:
                if chunk.id in seen:
                    continue
                seen.add(chunk.id)
                entries.append(
                    _Entry(chunk=chunk, must_render_fully=unit.must_render_fully, signature_line=unit.signature_line)
                )
        for item in ranked:
            if item.chunk.id not in seen:
                seen.add(item.chunk.id)
                entries.append(_Entry(chunk=item.chunk))
        return entries

    def assemble(
        self,
        boosts: Sequence[BoostedUnit],
        ranked: Sequence[RankedChunk],
        approx_length: int,
        deadline: Optional[float] = None,
    ) -> QueryResponse:
        """Allocate the budget and build the response.

        Args:
            boosts: Boosted units
            ranked: Ranked chunks, best first
            approx_length: Approximate character budget
            deadline: `time.monotonic()` value after which allocation stops

        Returns:
            Query response
        """
        selections: List[_Selection] = []
        used = 0
        eliding = False
        overflowed = False
        elided_count = 0
        partial = False

        entries = self.order(boosts, ranked)
        for position, entry in enumerate(entries):
            if deadline is not None and time.monotonic() > deadline:
                logger.warning(f"Deadline reached after {position}/{len(entries)} chunks, returning partial result")
                partial = True
                break

            chunk = entry.chunk
            if entry.signature_line is not None:
                content, mode = _signature_text(chunk, entry.signature_line), SIGNATURE
            else:
                content, mode = _full_text(chunk), FULL
            size = _rendered_size(chunk, content)
            fits = used + size <= approx_length

            if entry.must_render_fully and (fits or not overflowed):
                # One must-render chunk may overflow the budget
                overflowed = overflowed or not fits
                selections.append(_Selection(chunk, mode, content))
                used += size
                continue

            if not eliding and fits:
                selections.append(_Selection(chunk, mode, content))
                used += size
                continue

            eliding = True
            marker = elided_marker(chunk.line_start, chunk.line_end)
            if elided_count >= self.max_elided_chunks or used + len(marker) > approx_length:
                logger.debug(f"Tail cut drops {len(entries) - position} chunks")
                break
            selections.append(_Selection(chunk, ELIDED, marker))
            used += len(marker)
            elided_count += 1

        response = self._group(selections)
        response.total_chars = used
        response.partial = partial
        logger.info(
            f"Assembled {len(selections)} chunks ({elided_count} elided) in {len(response.files_used)} files, "
            f"{used}/{approx_length} chars"
        )
        return response

    def _group(self, selections: List[_Selection]) -> QueryResponse:
        """Group by repository then file; sections in line order, adjacent same-mode chunks merged."""
        response = QueryResponse(chunks_used=[s.chunk.id for s in selections])

        by_file: Dict[tuple, List[_Selection]] = {}
        for selection in selections:
            key = (selection.chunk.repo_id, selection.chunk.file_version_id)
            by_file.setdefault(key, []).append(selection)

        repositories: Dict[str, RenderedRepository] = {}
        for (repo_id, file_version_id), items in by_file.items():
            first = items[0].chunk
            rendered = RenderedFile(file_path=first.file_path, file_version_id=file_version_id, language=first.language)
            for selection in sorted(items, key=lambda s: s.chunk.line_start):
                self._append_section(rendered, selection)

            if repo_id not in repositories:
                repositories[repo_id] = RenderedRepository(repo_id=repo_id)
                response.repositories.append(repositories[repo_id])
            repositories[repo_id].files.append(rendered)
            response.files_used.append(
                {"repo_id": repo_id, "file_path": first.file_path, "file_version_id": file_version_id}
            )
        return response

    @staticmethod
    def _append_section(rendered: RenderedFile, selection: _Selection) -> None:
        chunk = selection.chunk
        previous = rendered.sections[-1] if rendered.sections else None
        if (
            previous is not None
            and previous.mode == selection.mode
            and selection.mode != SIGNATURE
            and previous.line_end + 1 == chunk.line_start
        ):
            if selection.mode == FULL:
                previous.content += selection.content
                if chunk.commentary:
                    previous.commentary = f"{previous.commentary}\n{chunk.commentary}" if previous.commentary else chunk.commentary
            else:
                previous.content = elided_marker(previous.line_start, chunk.line_end)
            previous.line_end = chunk.line_end
            previous.chunk_ids.append(chunk.id)
            return

        rendered.sections.append(
            RenderedSection(
                line_start=chunk.line_start,
                line_end=chunk.line_end,
                mode=selection.mode,
                content=selection.content,
                commentary=chunk.commentary if selection.mode != ELIDED else None,
                chunk_ids=[chunk.id],
            )
        )
