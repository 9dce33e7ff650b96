"""Language grammar configuration and detection for tree-sitter and heuristic formats."""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

CODE_FORMAT = "code"
MARKDOWN_FORMAT = "markdown"
KEYVALUE_FORMAT = "keyvalue"
TEXT_FORMAT = "text"


class LanguageConfig:
    """Configuration for a language or document format."""

    def __init__(
        self,
        name: str,
        extensions: List[str],
        format: str,
        tree_sitter_language: Optional[str] = None,
        declarations: Optional[Dict[str, Dict]] = None,
        wrapper_types: Optional[Dict[str, str]] = None,
        container_types: Optional[Dict[str, str]] = None,
        filenames: Optional[List[str]] = None,
    ):
        """Initialize language configuration.

        Args:
            name: Language name (python, markdown, etc.)
            extensions: List of file extensions
            format: Format family: code, markdown, keyvalue or text
            tree_sitter_language: Tree-sitter language identifier (code only)
            declarations: AST node types that declare a named entity, with
                their name field path and normalized entity type
            wrapper_types: Node types that wrap a declaration, mapped to the
                field holding the wrapped declaration
            container_types: Node types whose body holds near-top-level
                declarations, mapped to the body field
            filenames: Exact file names handled by this entry
        """
        self.name = name
        self.extensions = extensions
        self.format = format
        self.tree_sitter_language = tree_sitter_language
        self.declarations = declarations or {}
        self.wrapper_types = wrapper_types or {}
        self.container_types = container_types or {}
        self.filenames = filenames or []

    @property
    def has_grammar(self) -> bool:
        return self.format == CODE_FORMAT and self.tree_sitter_language is not None

    def is_declaration(self, node_type: str) -> bool:
        """Check if a node type declares a named entity."""
        return node_type in self.declarations

    def is_top_level_only(self, node_type: str) -> bool:
        return bool(self.declarations.get(node_type, {}).get("top_level_only", False))

    def get_name_field(self, node_type: str) -> Optional[str]:
        """Get the field path that contains the identifier for this node type."""
        if node_type in self.declarations:
            return self.declarations[node_type].get("name_field")
        return None

    def get_entity_type(self, node_type: str) -> str:
        """Normalized entity type (function, class, ...) for a declaration node type."""
        if node_type in self.declarations:
            return self.declarations[node_type].get("entity_type", node_type)
        return node_type


class LanguageRegistry:
    """Registry of language configurations."""

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize language registry.

        Args:
            config_path: Path to languages.json config file
        """
        if config_path is None:
            config_path = Path(__file__).parent / "languages.json"

        self.config_path = config_path
        self.languages: Dict[str, LanguageConfig] = {}
        self.extension_map: Dict[str, str] = {}
        self.filename_map: Dict[str, str] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load language configurations from JSON file."""
        try:
            with open(self.config_path, "r") as f:
                config_data = json.load(f)

            for lang_name, lang_config in config_data.items():
                language = LanguageConfig(
                    name=lang_name,
                    extensions=lang_config["extensions"],
                    format=lang_config.get("format", CODE_FORMAT),
                    tree_sitter_language=lang_config.get("tree_sitter_language"),
                    declarations=lang_config.get("declarations"),
                    wrapper_types=lang_config.get("wrapper_types"),
                    container_types=lang_config.get("container_types"),
                    filenames=lang_config.get("filenames"),
                )
                self.languages[lang_name] = language

                # Build extension and filename to language mappings
                for ext in language.extensions:
                    self.extension_map[ext] = lang_name
                for filename in language.filenames:
                    self.filename_map[filename] = lang_name

            logger.info(f"Loaded {len(self.languages)} language configurations")

        except Exception as e:
            logger.error(f"Error loading language config from {self.config_path}: {e}")
            raise

    def detect_language(self, file_path: str) -> Optional[str]:
        """Detect language or format from file name and extension.

        Args:
            file_path: Path to the file

        Returns:
            Language name or None if not recognized
        """
        path = Path(file_path)
        if path.name in self.filename_map:
            return self.filename_map[path.name]

        extension = path.suffix.lower()
        if extension in self.extension_map:
            return self.extension_map[extension]

        logger.debug(f"Unknown file extension: {extension}")
        return None

    def get_language_config(self, language: str) -> Optional[LanguageConfig]:
        """Get configuration for a specific language."""
        return self.languages.get(language)

    def get_grammar_languages(self) -> List[str]:
        """Languages backed by a tree-sitter grammar."""
        return [name for name, config in self.languages.items() if config.has_grammar]

    def is_supported_file(self, file_path: str) -> bool:
        """Check if a file can be chunked, by grammar or heuristic."""
        return self.detect_language(file_path) is not None
