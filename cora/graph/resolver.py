"""Query-time resolution of identifier usages to candidate definitions."""

import logging
import posixpath
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ..indexer.models import ContentEntityDefinition, ContentEntityReference, ReferenceType
from ..store.base import IndexStore
from .versions import VersionView

logger = logging.getLogger(__name__)

PYTHON_RELATIVE = re.compile(r"^(\.+)([\w.]*)$")
STRIPPED_EXTENSIONS = {
    ".py", ".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".go", ".rs", ".java",
    ".c", ".h", ".cc", ".cpp", ".hpp", ".cs", ".php", ".md", ".markdown", ".mdx",
}
PACKAGE_ENTRY_STEMS = ("index", "__init__", "mod")
RUST_PATH_ROOTS = ("crate/", "self/", "super/")


@dataclass
class ResolutionConstraints:
    """Context of one resolution request.

    Attributes:
        view: File versions visible to the request
        repo_id: Repository of the referencing file
        file_path: Path of the referencing file
        entity_type: Only accept definitions of this kind
        import_path: Module path hint carried by the reference
        limit: Maximum number of candidates
    """

    view: VersionView
    repo_id: Optional[str] = None
    file_path: Optional[str] = None
    entity_type: Optional[str] = None
    import_path: Optional[str] = None
    limit: Optional[int] = None


def module_path_stems(import_path: str, from_file_path: Optional[str] = None) -> List[str]:
    """Candidate repository path stems (no extension) for an import path.

    "./utils" from "src/a.ts" -> src/utils, src/utils/index, ...
    "..models" from "pkg/sub/a.py" -> pkg/models, ...
    "pkg.models" -> pkg/models, ...
    """
    base_dir = posixpath.dirname(from_file_path) if from_file_path else ""
    relative = PYTHON_RELATIVE.match(import_path)

    if import_path.startswith("./") or import_path.startswith("../") or import_path in (".", ".."):
        stem = posixpath.normpath(posixpath.join(base_dir, import_path))
    elif relative:
        levels = len(relative.group(1)) - 1
        directory = base_dir
        for _ in range(levels):
            directory = posixpath.dirname(directory)
        remainder = relative.group(2).replace(".", "/")
        stem = posixpath.join(directory, remainder) if remainder else directory
    elif "/" in import_path:
        stem = import_path
    else:
        stem = re.sub(r"::|\\|\.", "/", import_path)

    for root in RUST_PATH_ROOTS:
        if stem.startswith(root):
            stem = stem[len(root):]

    name, extension = posixpath.splitext(stem)
    if extension in STRIPPED_EXTENSIONS:
        stem = name
    stem = stem.strip("/")
    if stem in ("", "."):
        return []

    return [stem] + [f"{stem}/{entry}" for entry in PACKAGE_ENTRY_STEMS]


def matches_module(file_path: str, stems: Sequence[str]) -> bool:
    """True when a file is (or sits directly in) one of the module stems."""
    file_stem = posixpath.splitext(file_path)[0]
    directory = posixpath.dirname(file_path)
    for stem in stems:
        if file_stem == stem or file_stem.endswith(f"/{stem}"):
            return True
        if directory == stem or directory.endswith(f"/{stem}"):
            return True
    return False


def path_proximity(definition: ContentEntityDefinition, repo_id: Optional[str], file_path: Optional[str]) -> int:
    """0 same file, 1 same directory, 2 same repository, 3 another repository."""
    if repo_id is not None and definition.repo_id != repo_id:
        return 3
    if file_path is None:
        return 2
    if definition.file_path == file_path:
        return 0
    if posixpath.dirname(definition.file_path) == posixpath.dirname(file_path):
        return 1
    return 2


class ReferenceResolver:
    """Resolves identifier usages against the definitions visible in a version view."""

    def __init__(self, store: IndexStore):
        self.store = store

    async def resolve(self, identifier_used: str, constraints: ResolutionConstraints) -> List[ContentEntityDefinition]:
        """Ordered candidate definitions for an identifier.

        Args:
            identifier_used: Identifier as written at the usage site
            constraints: Resolution context

        Returns:
            Candidates, best first. Empty when nothing matches.
        """
        view = constraints.view
        definitions = await self.store.get_definitions_by_identifier(identifier_used, view.to_filter())

        # Only the version of each path visible to this request survives
        candidates = [
            d
            for d in definitions
            if view.is_visible(d.file_version_id)
            and (constraints.entity_type is None or d.entity_type == constraints.entity_type)
        ]
        if not candidates:
            return []

        if constraints.import_path:
            hinted = await self._apply_hint(identifier_used, candidates, constraints)
            if hinted:
                candidates = hinted
            else:
                logger.debug(f"Import hint {constraints.import_path} matched nothing for {identifier_used}")

        ordered = sorted(candidates, key=lambda d: self._sort_key(d, constraints))
        if constraints.limit is not None:
            ordered = ordered[: constraints.limit]
        return ordered

    async def resolve_reference(
        self, reference: ContentEntityReference, view: VersionView, limit: Optional[int] = None
    ) -> List[ContentEntityDefinition]:
        """Resolve a stored reference record from its own provenance."""
        return await self.resolve(
            reference.identifier_used,
            ResolutionConstraints(
                view=view,
                repo_id=reference.repo_id,
                file_path=reference.file_path,
                import_path=reference.import_path,
                limit=limit,
            ),
        )

    async def _apply_hint(
        self,
        identifier_used: str,
        candidates: List[ContentEntityDefinition],
        constraints: ResolutionConstraints,
    ) -> List[ContentEntityDefinition]:
        stems = module_path_stems(constraints.import_path, constraints.file_path)
        direct = [d for d in candidates if matches_module(d.file_path, stems)]
        if direct:
            return direct

        # One hop: the hinted module imports or re-exports the identifier from elsewhere
        view = constraints.view
        hops: List[ContentEntityReference] = []
        for name in (identifier_used, "*"):
            refs = await self.store.get_references_by_identifier(name, view.to_filter())
            hops.extend(
                r
                for r in refs
                if r.reference_type in (ReferenceType.IMPORT, ReferenceType.REEXPORT)
                and r.import_path
                and view.is_visible(r.file_version_id)
                and matches_module(r.file_path, stems)
            )

        matched = []
        for hop in sorted(hops, key=lambda r: r.id):
            hop_stems = module_path_stems(hop.import_path, hop.file_path)
            matched.extend(d for d in candidates if matches_module(d.file_path, hop_stems) and d not in matched)
        return matched

    def _sort_key(self, definition: ContentEntityDefinition, constraints: ResolutionConstraints) -> Tuple:
        version = constraints.view.by_id(definition.file_version_id)
        created_at = version.created_at if version else 0.0
        return (
            path_proximity(definition, constraints.repo_id, constraints.file_path),
            -created_at,
            definition.id,
        )
