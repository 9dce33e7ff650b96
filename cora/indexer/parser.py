"""Tree-sitter parser adapter producing syntax trees with byte and line spans."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import tree_sitter_c as tsc
import tree_sitter_c_sharp as tscsharp
import tree_sitter_cpp as tscpp
import tree_sitter_go as tsgo
import tree_sitter_java as tsjava
import tree_sitter_javascript as tsjavascript
import tree_sitter_php as tsphp
import tree_sitter_python as tspython
import tree_sitter_rust as tsrust
import tree_sitter_typescript as tstypescript
from tree_sitter import Language, Parser

from .grammars import LanguageConfig, LanguageRegistry

logger = logging.getLogger(__name__)


class GrammarParseError(Exception):
    """Raised when a file cannot be parsed with its language grammar."""


@dataclass
class SyntaxTree:
    """A parsed file: tree-sitter root node plus the bytes it was parsed from."""

    root: Any
    source: bytes
    language: LanguageConfig


def node_line_start(node: Any) -> int:
    """1-based first line of a node."""
    return node.start_point[0] + 1


def node_line_end(node: Any) -> int:
    """1-based last line of a node (a node ending at column 0 ends on the previous line)."""
    row, column = node.end_point[0], node.end_point[1]
    end = row + 1 if column > 0 else row
    return max(end, node_line_start(node))


def node_text(node: Any) -> str:
    return node.text.decode("utf-8", errors="replace")


def walk(node: Any) -> Iterator[Any]:
    """Pre-order traversal of a tree-sitter node."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def child_by_path(node: Any, path: str) -> Optional[Any]:
    """Follow a dotted path of field names, falling back to child node types.

    "declarator.declarator" follows two `declarator` fields;
    "variable_declarator.name" finds the first `variable_declarator` child and
    then its `name` field.
    """
    current = node
    for segment in path.split("."):
        child = current.child_by_field_name(segment)
        if child is None:
            child = next((c for c in current.named_children if c.type == segment), None)
        if child is None:
            return None
        current = child
    return current


def extract_node_name(node: Any, lang_config: LanguageConfig) -> Optional[str]:
    """Extract the declared name of a declaration node.

    Args:
        node: Tree-sitter node
        lang_config: Language configuration

    Returns:
        Name string or None
    """
    name_field = lang_config.get_name_field(node.type)
    if not name_field:
        return None

    name_node = child_by_path(node, name_field)
    if name_node is None:
        return None

    # Declarators can still wrap the identifier (pointer or function declarators)
    while name_node.type not in ("identifier", "type_identifier", "field_identifier", "name") and (
        name_node.child_by_field_name("declarator") is not None
    ):
        name_node = name_node.child_by_field_name("declarator")

    return node_text(name_node)


class GrammarParser:
    """Wraps one tree-sitter parser per grammar-backed language."""

    # Language module mapping
    LANGUAGE_MODULES = {
        "python": tspython,
        "javascript": tsjavascript,
        "typescript": tstypescript,
        "tsx": tstypescript,
        "php": tsphp,
        "go": tsgo,
        "rust": tsrust,
        "java": tsjava,
        "cpp": tscpp,
        "c": tsc,
        "c_sharp": tscsharp,
    }

    # Modules that use non-standard language function names
    LANGUAGE_FUNCTION_OVERRIDES = {
        "typescript": "language_typescript",
        "tsx": "language_tsx",
        "php": "language_php",
    }

    def __init__(self, registry: LanguageRegistry):
        """Initialize parsers for every grammar language in the registry.

        Args:
            registry: Language registry
        """
        self.registry = registry
        self.parsers: Dict[str, Parser] = {}
        self._init_languages()

    def _init_languages(self) -> None:
        """Initialize tree-sitter languages."""
        for lang_name in self.registry.get_grammar_languages():
            lang_config = self.registry.get_language_config(lang_name)
            ts_lang_name = lang_config.tree_sitter_language

            try:
                module = self.LANGUAGE_MODULES.get(ts_lang_name)
                if not module:
                    logger.warning(f"No module found for language: {ts_lang_name}")
                    continue

                lang_func_name = self.LANGUAGE_FUNCTION_OVERRIDES.get(ts_lang_name, "language")
                lang_func = getattr(module, lang_func_name, None)
                if not lang_func:
                    logger.warning(f"Module {ts_lang_name} has no function '{lang_func_name}'")
                    continue

                parser = Parser()
                parser.language = Language(lang_func())
                self.parsers[lang_name] = parser

                logger.debug(f"Initialized parser for {lang_name}")

            except Exception as e:
                logger.error(f"Error initializing language {lang_name}: {e}")

    def parse(self, text: str, language: str) -> SyntaxTree:
        """Parse file text with the grammar for `language`.

        Raises:
            GrammarParseError: No grammar is available or the tree contains errors
        """
        parser = self.parsers.get(language)
        if parser is None:
            raise GrammarParseError(f"No grammar available for {language}")

        source = text.encode("utf-8")
        try:
            tree = parser.parse(source)
        except Exception as e:
            raise GrammarParseError(f"Parser failed for {language}: {e}") from e

        if tree.root_node.has_error:
            raise GrammarParseError(f"Syntax errors in {language} source")

        return SyntaxTree(
            root=tree.root_node,
            source=source,
            language=self.registry.get_language_config(language),
        )
