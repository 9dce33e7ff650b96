"""Heuristic content-item splitters for files without a usable grammar.

Every splitter takes the file's lines and returns content items with 1-based
line spans, so the chunk builder can apply one set of merge and size rules to
declarations, heading sections and key groups alike.
"""

import logging
import re
from typing import List

from .grammars import KEYVALUE_FORMAT, MARKDOWN_FORMAT
from .models import ContentItem

logger = logging.getLogger(__name__)

ATX_HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
FENCE = re.compile(r"^\s*(```|~~~)")
SECTION_HEADER = re.compile(r"^\[\[?\s*([^\]]+?)\s*\]\]?\s*$")
TOP_LEVEL_KEY = re.compile(r"""^(?:"([^"]+)"|'([^']+)'|([A-Za-z0-9_.\-]+))\s*[:=]""")


def split_markdown(lines: List[str]) -> List[ContentItem]:
    """Split Markdown by ATX heading boundaries, ignoring fenced code blocks."""
    headings = []
    in_fence = False
    for idx, line in enumerate(lines, 1):
        if FENCE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = ATX_HEADING.match(line)
        if match:
            headings.append((idx, match.group(2).strip()))

    items = []
    for position, (line_start, title) in enumerate(headings):
        if position + 1 < len(headings):
            line_end = headings[position + 1][0] - 1
        else:
            line_end = len(lines)
        items.append(ContentItem(line_start=line_start, line_end=line_end, item_type="section", name=title))
    return items


def split_key_value(lines: List[str]) -> List[ContentItem]:
    """Split key/value files into top-level groups.

    When the file has `[section]` headers (TOML, INI), each section is a group.
    Otherwise each unindented key starts a group (YAML, properties).
    """
    sections = []
    keys = []
    for idx, line in enumerate(lines, 1):
        if not line.strip() or line[0] in " \t#;-!":
            continue
        section = SECTION_HEADER.match(line.rstrip("\r\n"))
        if section:
            sections.append((idx, section.group(1)))
            continue
        key = TOP_LEVEL_KEY.match(line)
        if key:
            keys.append((idx, next(g for g in key.groups() if g)))

    starts = sections if sections else keys
    item_type = "section" if sections else "key"

    items = []
    for position, (line_start, name) in enumerate(starts):
        if position + 1 < len(starts):
            line_end = starts[position + 1][0] - 1
        else:
            line_end = len(lines)
        items.append(ContentItem(line_start=line_start, line_end=line_end, item_type=item_type, name=name))
    return items


def split_windows(lines: List[str], window_lines: int) -> List[ContentItem]:
    """Fixed-size line windows, the last one possibly shorter."""
    window_lines = max(1, window_lines)
    items = []
    for line_start in range(1, len(lines) + 1, window_lines):
        line_end = min(line_start + window_lines - 1, len(lines))
        items.append(ContentItem(line_start=line_start, line_end=line_end, item_type="window"))
    return items


def split_heuristic(lines: List[str], format: str, window_lines: int) -> List[ContentItem]:
    """Dispatch to the splitter for a format family, falling back to line windows."""
    items: List[ContentItem] = []
    if format == MARKDOWN_FORMAT:
        items = split_markdown(lines)
    elif format == KEYVALUE_FORMAT:
        items = split_key_value(lines)

    if not items:
        logger.debug(f"No {format} structure found, using {window_lines}-line windows")
        items = split_windows(lines, window_lines)
    return items
