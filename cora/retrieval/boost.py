"""Caller-supplied must-include directives for files and declarations."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..graph.resolver import ReferenceResolver, ResolutionConstraints
from ..graph.versions import VersionView
from ..indexer.models import Chunk
from ..indexer.reference_extractor import heading_slug
from ..store.base import IndexStore

logger = logging.getLogger(__name__)


@dataclass
class DeclarationDirective:
    """Force-include a declaration.

    Attributes:
        path: "file/path#Identifier" or a bare identifier
        repo_id: Repository to look in (any repository in scope when None)
        include_implementation: Render the whole defining chunk when True,
            only the declaration's first line when False
    """

    path: str
    repo_id: Optional[str] = None
    include_implementation: bool = True

    def split(self) -> Tuple[Optional[str], str]:
        """(file path or None, identifier)."""
        if "#" in self.path:
            file_path, identifier = self.path.rsplit("#", 1)
            if file_path.startswith("./"):
                file_path = file_path[2:]
            return file_path or None, identifier
        return None, self.path


@dataclass
class BoostDirectives:
    files: List[str] = field(default_factory=list)
    declarations: List[DeclarationDirective] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BoostDirectives":
        if not data:
            return cls()
        declarations = []
        for entry in data.get("declarations") or []:
            declarations.append(
                DeclarationDirective(
                    path=entry["path"],
                    repo_id=entry.get("repo_id"),
                    include_implementation=entry.get("include_implementation", True),
                )
            )
        return cls(files=list(data.get("files") or []), declarations=declarations)

    def __bool__(self) -> bool:
        return bool(self.files or self.declarations)


@dataclass
class BoostedUnit:
    """Chunks forced into the result, allocated before ranked chunks.

    Attributes:
        chunks: Chunks in file order
        directive: Directive that produced the unit
        must_render_fully: Never elide these chunks
        signature_line: Render only this line of the (single) chunk
    """

    chunks: List[Chunk]
    directive: str
    must_render_fully: bool = False
    signature_line: Optional[int] = None


class BoostResolver:
    """Turns boost directives into boosted units."""

    def __init__(self, store: IndexStore, resolver: ReferenceResolver):
        self.store = store
        self.resolver = resolver

    async def resolve(self, directives: BoostDirectives, view: VersionView) -> List[BoostedUnit]:
        """Resolve directives in order. Unknown files and declarations are skipped.

        Args:
            directives: Boost directives
            view: File versions visible to the request

        Returns:
            Boosted units in directive order (files first, then declarations)
        """
        units = []
        for file_directive in directives.files:
            unit = await self._resolve_file(file_directive, view)
            if unit is not None:
                units.append(unit)

        for declaration in directives.declarations:
            unit = await self._resolve_declaration(declaration, view)
            if unit is not None:
                units.append(unit)

        logger.info(f"Resolved {len(units)} of {len(directives.files) + len(directives.declarations)} boost directives")
        return units

    async def _resolve_file(self, directive: str, view: VersionView) -> Optional[BoostedUnit]:
        repo_ids = list(view.repo_ids)
        file_path = directive
        prefix, separator, rest = directive.partition(":")
        if separator and prefix in view.repo_ids:
            repo_ids, file_path = [prefix], rest
        if file_path.startswith("./"):
            file_path = file_path[2:]

        for repo_id in repo_ids:
            version = view.version_of(repo_id, file_path)
            if version is None:
                continue
            chunks = await self.store.get_chunks_for_file_version(version.id)
            if not chunks:
                logger.warning(f"Boosted file {directive} has no chunks")
                return None
            return BoostedUnit(chunks=chunks, directive=directive)

        logger.warning(f"Ignoring boost for unknown file: {directive}")
        return None

    async def _resolve_declaration(self, directive: DeclarationDirective, view: VersionView) -> Optional[BoostedUnit]:
        file_path, identifier = directive.split()
        constraints = ResolutionConstraints(view=view, repo_id=directive.repo_id, file_path=file_path)
        candidates = await self.resolver.resolve(identifier, constraints)
        if not candidates and heading_slug(identifier) != identifier:
            # Document sections are indexed by their anchor slug
            candidates = await self.resolver.resolve(heading_slug(identifier), constraints)
        if directive.repo_id is not None:
            candidates = [d for d in candidates if d.repo_id == directive.repo_id]
        if file_path is not None:
            candidates = [d for d in candidates if d.file_path == file_path]

        definition = next((d for d in candidates if d.chunk_id), None)
        if definition is None:
            logger.warning(f"Ignoring boost for unknown declaration: {directive.path}")
            return None

        chunks = await self.store.get_chunks([definition.chunk_id])
        if not chunks:
            logger.warning(f"Defining chunk of {directive.path} is missing from the store")
            return None

        if directive.include_implementation:
            return BoostedUnit(chunks=chunks, directive=directive.path, must_render_fully=True)
        return BoostedUnit(chunks=chunks, directive=directive.path, signature_line=definition.line_start)
