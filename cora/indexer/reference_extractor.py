"""Extract definition and reference records from one file version.

Extraction is purely local: it reads the file's own syntax tree (or text for
prose and key/value formats) and never looks at other files. Resolving a
reference to its definition happens at query time in `cora.graph.resolver`.
"""

import bisect
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Tuple

from .grammars import KEYVALUE_FORMAT, MARKDOWN_FORMAT, LanguageConfig, LanguageRegistry
from .heuristics import FENCE, split_key_value, split_markdown
from .models import (
    Chunk,
    ContentEntityDefinition,
    ContentEntityReference,
    FileVersion,
    ReferenceType,
    entity_id,
    split_lines,
)
from .parser import SyntaxTree, extract_node_name, node_line_end, node_line_start, node_text, walk
from .relationship_extractors import ExtractorRegistry, RelationshipExtractor, module_basename

logger = logging.getLogger(__name__)

MARKDOWN_LINK = re.compile(r"(?<!!)\[[^\]]*\]\(\s*<?([^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
INLINE_CODE = re.compile(r"`([A-Za-z_][A-Za-z0-9_.:]*)(?:\(\))?`")
EXTERNAL_LINK = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")

RECEIVER_TYPES = {
    "attribute": "object",
    "member_expression": "object",
    "selector_expression": "operand",
}


def heading_slug(title: str) -> str:
    """Anchor slug of a Markdown heading ("Getting Started!" -> "getting-started")."""
    slug = re.sub(r"[^\w\- ]", "", title.strip().lower())
    return re.sub(r"\s+", "-", slug)


@dataclass
class ExtractionResult:
    """Definitions and references of one file version."""

    definitions: List[ContentEntityDefinition] = field(default_factory=list)
    references: List[ContentEntityReference] = field(default_factory=list)


class _RecordFactory:
    """Builds records with deterministic ids for one file version."""

    def __init__(self, file_version: FileVersion, chunks: List[Chunk]):
        self.file_version = file_version
        self.chunks = sorted(chunks, key=lambda c: c.line_start)
        self._starts = [c.line_start for c in self.chunks]
        self._ordinals: Dict[Tuple[str, str, int], int] = defaultdict(int)
        self.result = ExtractionResult()

    def chunk_for_line(self, line: int) -> Optional[Chunk]:
        position = bisect.bisect_right(self._starts, line) - 1
        if position < 0:
            return None
        chunk = self.chunks[position]
        return chunk if chunk.line_start <= line <= chunk.line_end else None

    def _next_id(self, kind: str, identifier: str, line: int) -> str:
        key = (kind, identifier, line)
        ordinal = self._ordinals[key]
        self._ordinals[key] += 1
        return entity_id(self.file_version.id, kind, identifier, line, ordinal)

    def definition(self, identifier: str, entity_type: str, line_start: int, line_end: int) -> None:
        chunk = self.chunk_for_line(line_start)
        self.result.definitions.append(
            ContentEntityDefinition(
                id=self._next_id("def", identifier, line_start),
                identifier=identifier,
                entity_type=entity_type,
                line_start=line_start,
                line_end=line_end,
                repo_id=self.file_version.repo_id,
                file_version_id=self.file_version.id,
                file_path=self.file_version.file_path,
                chunk_id=chunk.id if chunk else None,
            )
        )

    def reference(
        self,
        identifier: str,
        reference_type: ReferenceType,
        line: int,
        import_path: Optional[str] = None,
        alias: Optional[str] = None,
    ) -> None:
        if not identifier:
            return
        chunk = self.chunk_for_line(line)
        self.result.references.append(
            ContentEntityReference(
                id=self._next_id(f"ref:{reference_type.value}", identifier, line),
                identifier_used=identifier,
                reference_type=reference_type,
                repo_id=self.file_version.repo_id,
                file_version_id=self.file_version.id,
                file_path=self.file_version.file_path,
                line=line,
                chunk_id=chunk.id if chunk else None,
                import_path=import_path,
                alias=alias,
            )
        )


class ReferenceExtractor:
    """Produces definition and reference records scoped to a file version."""

    def __init__(self, registry: LanguageRegistry):
        self.registry = registry

    def extract(
        self,
        file_version: FileVersion,
        chunks: List[Chunk],
        tree: Optional[SyntaxTree],
        text: str,
    ) -> ExtractionResult:
        """Extract records from one file version and annotate its chunks.

        Args:
            file_version: Version being indexed
            chunks: Chunks built for the version (annotated in place with
                `reference_symbols` and `reference_chunks`)
            tree: Syntax tree when the grammar parse succeeded
            text: Full file text

        Returns:
            Extraction result
        """
        factory = _RecordFactory(file_version, chunks)
        language = file_version.language or self.registry.detect_language(file_version.file_path)
        lang_config = self.registry.get_language_config(language) if language else None

        if tree is not None:
            self._extract_from_tree(factory, tree)
        elif lang_config is not None and lang_config.format == MARKDOWN_FORMAT:
            self._extract_markdown(factory, text)
        elif lang_config is not None and lang_config.format == KEYVALUE_FORMAT:
            self._extract_key_value(factory, text)

        self._annotate_chunks(factory)

        result = factory.result
        logger.debug(
            f"Extracted {len(result.definitions)} definitions and {len(result.references)} "
            f"references from {file_version.file_path}"
        )
        return result

    # Grammar-backed extraction

    def _extract_from_tree(self, factory: _RecordFactory, tree: SyntaxTree) -> None:
        lang_config = tree.language

        for node in walk(tree.root):
            if not lang_config.is_declaration(node.type):
                continue
            if lang_config.is_top_level_only(node.type) and not self._is_near_top_level(node, lang_config):
                continue
            name = extract_node_name(node, lang_config)
            if name:
                factory.definition(
                    name, lang_config.get_entity_type(node.type), node_line_start(node), node_line_end(node)
                )

        extractor = ExtractorRegistry.get_extractor(lang_config.name)
        if extractor is None:
            logger.debug(f"No reference extractor for {lang_config.name}")
            return

        name_aliases, module_aliases = self._extract_imports(factory, tree, extractor)
        self._extract_calls(factory, tree, extractor, name_aliases, module_aliases)

        class_types = set(extractor.get_class_node_types())
        for node in walk(tree.root):
            if node.type not in class_types:
                continue
            info = extractor.extract_inheritance_info(node)
            for base in info["extends"] + info["implements"]:
                factory.reference(base, ReferenceType.MENTION, node_line_start(node))

    def _is_near_top_level(self, node: Any, lang_config: LanguageConfig) -> bool:
        """True when only wrappers and container bodies separate a node from the root."""
        parent = node.parent
        while parent is not None and parent.parent is not None:
            in_container_body = parent.parent.type in lang_config.container_types
            if parent.type in lang_config.wrapper_types or parent.type in lang_config.container_types:
                parent = parent.parent
            elif in_container_body:
                parent = parent.parent
            else:
                return False
        return True

    def _extract_imports(
        self, factory: _RecordFactory, tree: SyntaxTree, extractor: RelationshipExtractor
    ) -> Tuple[Dict[str, Tuple[str, str]], Dict[str, str]]:
        """Record import and re-export references.

        Returns:
            (local name -> (original name, module)) for imported names, and
            (local name -> module) for whole-module imports
        """
        import_types = set(extractor.get_import_node_types())
        reexport_types = set(extractor.get_reexport_node_types())
        name_aliases: Dict[str, Tuple[str, str]] = {}
        module_aliases: Dict[str, str] = {}

        for node in walk(tree.root):
            line = node_line_start(node)
            if node.type in import_types:
                for info in extractor.extract_import_info(node):
                    module = info["module"]
                    if info["names"]:
                        for name, alias in info["names"]:
                            factory.reference(name, ReferenceType.IMPORT, line, import_path=module, alias=alias)
                            name_aliases[alias or name] = (name, module)
                    else:
                        basename = module_basename(module)
                        alias = info.get("alias")
                        factory.reference(basename, ReferenceType.IMPORT, line, import_path=module, alias=alias)
                        if basename:
                            module_aliases[alias or basename] = module

            elif node.type in reexport_types:
                info = extractor.extract_reexport_info(node)
                if info is None:
                    continue
                for name, alias in info["names"]:
                    factory.reference(name, ReferenceType.REEXPORT, line, import_path=info["module"], alias=alias)

        return name_aliases, module_aliases

    def _extract_calls(
        self,
        factory: _RecordFactory,
        tree: SyntaxTree,
        extractor: RelationshipExtractor,
        name_aliases: Dict[str, Tuple[str, str]],
        module_aliases: Dict[str, str],
    ) -> None:
        call_types = set(extractor.get_call_node_types())
        for node in walk(tree.root):
            if node.type not in call_types:
                continue
            name = extractor.extract_call_target_name(node)
            if not name:
                continue

            line = node_line_start(node)
            if name in name_aliases:
                original, module = name_aliases[name]
                factory.reference(
                    original,
                    ReferenceType.CALL,
                    line,
                    import_path=module,
                    alias=name if name != original else None,
                )
                continue

            receiver = self._receiver_name(node)
            factory.reference(name, ReferenceType.CALL, line, import_path=module_aliases.get(receiver))

    def _receiver_name(self, call_node: Any) -> Optional[str]:
        """Name of the object a method is called on (`utils` in `utils.helper()`)."""
        func_node = call_node.child_by_field_name("function")
        if func_node is None or func_node.type not in RECEIVER_TYPES:
            return None
        receiver = func_node.child_by_field_name(RECEIVER_TYPES[func_node.type])
        if receiver is None or receiver.type not in ("identifier", "package_identifier"):
            return None
        return node_text(receiver)

    # Heuristic formats

    def _extract_markdown(self, factory: _RecordFactory, text: str) -> None:
        lines = split_lines(text)
        file_path = factory.file_version.file_path

        # The document itself is a link target
        factory.definition(PurePosixPath(file_path).stem, "document", 1, len(lines))
        for item in split_markdown(lines):
            factory.definition(heading_slug(item.name), item.item_type, item.line_start, item.line_end)

        in_fence = False
        for line_number, line in enumerate(lines, 1):
            if FENCE.match(line):
                in_fence = not in_fence
                continue
            if in_fence:
                continue

            for match in MARKDOWN_LINK.finditer(line):
                target = match.group(1)
                if EXTERNAL_LINK.match(target):
                    continue
                path, _, anchor = target.partition("#")
                # Links are relative to the document unless rooted at the repository
                if path.startswith("/"):
                    path = path.lstrip("/")
                elif path and not path.startswith("."):
                    path = f"./{path}"
                if anchor:
                    factory.reference(anchor, ReferenceType.LINK, line_number, import_path=path or None)
                elif path:
                    factory.reference(PurePosixPath(path).stem, ReferenceType.LINK, line_number, import_path=path)

            for match in INLINE_CODE.finditer(line):
                factory.reference(module_basename(match.group(1)), ReferenceType.MENTION, line_number)

    def _extract_key_value(self, factory: _RecordFactory, text: str) -> None:
        lines = split_lines(text)
        for item in split_key_value(lines):
            factory.definition(item.name, item.item_type, item.line_start, item.line_end)

    def _annotate_chunks(self, factory: _RecordFactory) -> None:
        """Fill raw reference tokens and same-file dependencies on each chunk."""
        defining_chunks: Dict[str, List[str]] = defaultdict(list)
        for definition in factory.result.definitions:
            if definition.chunk_id and definition.chunk_id not in defining_chunks[definition.identifier]:
                defining_chunks[definition.identifier].append(definition.chunk_id)

        by_chunk: Dict[str, List[ContentEntityReference]] = defaultdict(list)
        for ref in factory.result.references:
            if ref.chunk_id:
                by_chunk[ref.chunk_id].append(ref)

        for chunk in factory.chunks:
            symbols: List[str] = []
            dependencies: List[str] = []
            for ref in by_chunk.get(chunk.id, []):
                if ref.identifier_used not in symbols:
                    symbols.append(ref.identifier_used)
                # Imports name things defined elsewhere
                if ref.reference_type in (ReferenceType.IMPORT, ReferenceType.REEXPORT):
                    continue
                for chunk_id in defining_chunks.get(ref.identifier_used, []):
                    if chunk_id != chunk.id and chunk_id not in dependencies:
                        dependencies.append(chunk_id)
            chunk.reference_symbols = symbols
            chunk.reference_chunks = dependencies
