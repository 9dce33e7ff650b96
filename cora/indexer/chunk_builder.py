"""Chunk a file version into semantically coherent, size-bounded chunks."""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .grammars import LanguageConfig, LanguageRegistry, TEXT_FORMAT
from .heuristics import split_heuristic, split_windows
from .models import Chunk, ContentItem, FileVersion, split_lines
from .parser import (
    GrammarParseError,
    GrammarParser,
    SyntaxTree,
    extract_node_name,
    node_line_end,
    node_line_start,
)

logger = logging.getLogger(__name__)


@dataclass
class _Group:
    line_start: int
    line_end: int
    size: int
    items: List[ContentItem] = field(default_factory=list)


@dataclass
class ChunkBuildResult:
    """Chunks of one file version, plus the syntax tree when the grammar parse succeeded."""

    chunks: List[Chunk]
    tree: Optional[SyntaxTree] = None
    strategy: str = "grammar"


class ChunkBuilder:
    """Build chunks from grammar declarations or heuristic content items."""

    def __init__(
        self,
        registry: LanguageRegistry,
        parser: GrammarParser,
        min_chunk_size: int = 512,
        max_chunk_size: int = 2048,
        window_lines: int = 50,
    ):
        """Initialize chunk builder.

        Args:
            registry: Language registry
            parser: Grammar parser adapter
            min_chunk_size: Items below this many characters are merged with neighbors
            max_chunk_size: Soft maximum chunk size in characters
            window_lines: Window length for the fixed-window fallback
        """
        self.registry = registry
        self.parser = parser
        self.max_chunk_size = max_chunk_size
        self.window_lines = window_lines

        # Two items below the minimum must always fit together under the maximum
        if min_chunk_size * 2 > max_chunk_size:
            logger.warning(
                f"min_chunk_size {min_chunk_size} exceeds half of max_chunk_size "
                f"{max_chunk_size}, clamping to {max_chunk_size // 2}"
            )
            min_chunk_size = max_chunk_size // 2
        self.min_chunk_size = min_chunk_size

    def build(self, file_version: FileVersion, text: str) -> ChunkBuildResult:
        """Produce the ordered chunks of a file version.

        Args:
            file_version: Version the chunks belong to
            text: Full file text

        Returns:
            Chunk build result
        """
        lines = split_lines(text)
        if not lines:
            return ChunkBuildResult(chunks=[], strategy="empty")

        language = file_version.language or self.registry.detect_language(file_version.file_path)
        lang_config = self.registry.get_language_config(language) if language else None

        tree = None
        strategy = "grammar"
        items: List[ContentItem] = []

        if lang_config is not None and lang_config.has_grammar:
            try:
                tree = self.parser.parse(text, lang_config.name)
                items = self._grammar_items(tree.root, lang_config)
                if not items:
                    logger.debug(f"No declarations in {file_version.file_path}, using line windows")
                    items = split_windows(lines, self.window_lines)
                    strategy = "windows"
            except GrammarParseError as e:
                logger.warning(
                    f"Parse failed for {file_version.file_path} ({e}), falling back to heuristic chunking"
                )
                items = split_windows(lines, self.window_lines)
                strategy = "windows"
        else:
            format = lang_config.format if lang_config else TEXT_FORMAT
            items = split_heuristic(lines, format, self.window_lines)
            strategy = format

        groups = self._merge(self._layout(items, lines))
        chunks = [
            self._make_chunk(file_version, group, lines, language or "text") for group in groups
        ]

        logger.debug(
            f"Built {len(chunks)} chunks from {file_version.file_path} ({strategy}, {len(items)} items)"
        )
        return ChunkBuildResult(chunks=chunks, tree=tree, strategy=strategy)

    def _grammar_items(self, node: Any, lang_config: LanguageConfig) -> List[ContentItem]:
        """Collect top-level declarations, descending into containers and wrappers."""
        items = []
        for child in node.named_children:
            target = child
            wrapped_field = lang_config.wrapper_types.get(child.type)
            if wrapped_field:
                inner = child.child_by_field_name(wrapped_field)
                if inner is not None:
                    target = inner

            body_field = lang_config.container_types.get(target.type)
            if body_field:
                body = target.child_by_field_name(body_field)
                if body is not None:
                    items.extend(self._grammar_items(body, lang_config))
                    continue

            if lang_config.is_declaration(target.type):
                items.append(
                    ContentItem(
                        line_start=node_line_start(child),
                        line_end=node_line_end(child),
                        item_type=lang_config.get_entity_type(target.type),
                        name=extract_node_name(target, lang_config),
                    )
                )
        return items

    def _layout(self, items: List[ContentItem], lines: List[str]) -> List[_Group]:
        """Extend item spans so that they tile the whole file.

        Material before an item belongs to that item, trailing material to the
        last item. Items sharing a line are fused.
        """
        prefix = [0]
        for line in lines:
            prefix.append(prefix[-1] + len(line))

        segments: List[_Group] = []
        previous_end = 0
        for item in sorted(items, key=lambda i: (i.line_start, i.line_end)):
            item_end = min(item.line_end, len(lines))
            if segments and item.line_start <= previous_end:
                segments[-1].line_end = max(segments[-1].line_end, item_end)
                segments[-1].items.append(item)
            else:
                segments.append(_Group(line_start=previous_end + 1, line_end=item_end, size=0, items=[item]))
            previous_end = segments[-1].line_end

        if segments:
            segments[-1].line_end = len(lines)

        for segment in segments:
            segment.size = prefix[segment.line_end] - prefix[segment.line_start - 1]
        return segments

    def _merge(self, segments: List[_Group]) -> List[_Group]:
        """Merge consecutive small segments; oversized segments stay whole."""
        groups: List[_Group] = []
        for segment in segments:
            if groups:
                current = groups[-1]
                if (
                    current.size < self.min_chunk_size
                    and segment.size < self.min_chunk_size
                    and current.size + segment.size <= self.max_chunk_size
                ):
                    current.line_end = segment.line_end
                    current.size += segment.size
                    current.items.extend(segment.items)
                    continue

            if segment.size > self.max_chunk_size:
                logger.debug(
                    f"Keeping oversized item of {segment.size} chars at lines "
                    f"{segment.line_start}-{segment.line_end} whole"
                )
            groups.append(segment)
        return groups

    def _make_chunk(self, file_version: FileVersion, group: _Group, lines: List[str], language: str) -> Chunk:
        content = "".join(lines[group.line_start - 1 : group.line_end])
        item_types = {item.item_type for item in group.items}
        declaration_type = item_types.pop() if len(item_types) == 1 else "mixed"

        return Chunk(
            id=Chunk.make_id(file_version.id, group.line_start, content),
            repo_id=file_version.repo_id,
            file_version_id=file_version.id,
            file_path=file_version.file_path,
            project_dir=file_version.project_dir,
            content=content,
            line_start=group.line_start,
            line_end=group.line_end,
            language=language,
            declaration_type=declaration_type,
            symbols=[item.name for item in group.items if item.name],
        )
