"""Language-specific reference extractors using strategy pattern.

Each language has its own extractor class that knows which AST nodes are
calls, imports, re-exports and class headers, and how to read the referenced
names out of them. Import information is returned as dictionaries:

    {"module": "pkg.mod", "names": [("name", "alias" or None)]}

An empty `names` list means the module itself is imported.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from .parser import node_text, walk

logger = logging.getLogger(__name__)

ImportInfo = Dict[str, Any]


def _last_segment(text: str) -> str:
    parts = [p for p in re.split(r"::|[./\\]", text) if p]
    return parts[-1] if parts else ""


def _split_alias(text: str, keyword: str = " as ") -> Tuple[str, Optional[str]]:
    if keyword in text:
        name, alias = text.split(keyword, 1)
        return name.strip(), alias.strip()
    return text.strip(), None


class RelationshipExtractor(ABC):
    """Base class for language-specific reference extraction."""

    def __init__(self, language: str):
        self.language = language

    @abstractmethod
    def get_call_node_types(self) -> List[str]:
        """Return AST node types that represent function/method calls."""
        pass

    @abstractmethod
    def get_import_node_types(self) -> List[str]:
        """Return AST node types that represent imports/includes."""
        pass

    @abstractmethod
    def extract_call_target_name(self, call_node: Any) -> Optional[str]:
        """Extract the function/method name being called."""
        pass

    @abstractmethod
    def extract_import_info(self, import_node: Any) -> List[ImportInfo]:
        """Extract the modules and names brought in by an import node."""
        pass

    def get_class_node_types(self) -> List[str]:
        """Node types whose headers name base classes or interfaces."""
        return []

    def extract_inheritance_info(self, class_node: Any) -> Dict[str, List[str]]:
        """Extract base classes and interfaces from a class node."""
        return {"extends": [], "implements": []}

    def get_reexport_node_types(self) -> List[str]:
        return []

    def extract_reexport_info(self, node: Any) -> Optional[ImportInfo]:
        """Extract names re-exported from another module, if the node is a re-export."""
        return None


class PythonExtractor(RelationshipExtractor):
    """Python-specific reference extraction."""

    def __init__(self):
        super().__init__("python")

    def get_call_node_types(self) -> List[str]:
        return ["call"]

    def get_import_node_types(self) -> List[str]:
        return ["import_statement", "import_from_statement"]

    def get_class_node_types(self) -> List[str]:
        return ["class_definition"]

    def extract_call_target_name(self, call_node: Any) -> Optional[str]:
        """Extract function/method name from Python call node."""
        func_node = call_node.child_by_field_name("function")
        if func_node is None:
            return None
        if func_node.type == "identifier":
            return node_text(func_node)
        if func_node.type == "attribute":
            attr_node = func_node.child_by_field_name("attribute")
            if attr_node is not None:
                return node_text(attr_node)
        return None

    def _name_and_alias(self, node: Any) -> Tuple[str, Optional[str]]:
        if node.type == "aliased_import":
            name_node = node.child_by_field_name("name")
            alias_node = node.child_by_field_name("alias")
            return (
                node_text(name_node) if name_node is not None else "",
                node_text(alias_node) if alias_node is not None else None,
            )
        return node_text(node), None

    def extract_import_info(self, import_node: Any) -> List[ImportInfo]:
        """Extract import information from Python import node."""
        imports = []
        if import_node.type == "import_statement":
            # import module [as alias]
            for name_node in import_node.children_by_field_name("name"):
                module_name, alias = self._name_and_alias(name_node)
                imports.append(
                    {"module": module_name, "names": [], "alias": alias}
                )

        elif import_node.type == "import_from_statement":
            # from module import name [as alias]
            module_node = import_node.child_by_field_name("module_name")
            if module_node is None:
                return imports
            module_name = node_text(module_node)
            names = []
            for name_node in import_node.children_by_field_name("name"):
                name, alias = self._name_and_alias(name_node)
                if name:
                    names.append((name, alias))
            imports.append(
                {"module": module_name, "names": names}
            )
        return imports

    def extract_inheritance_info(self, class_node: Any) -> Dict[str, List[str]]:
        """Extract base classes from Python class node."""
        info = {"extends": [], "implements": []}
        bases_node = class_node.child_by_field_name("superclasses")
        if bases_node is not None:
            for child in bases_node.named_children:
                if child.type == "identifier":
                    info["extends"].append(node_text(child))
                elif child.type == "attribute":
                    attr = child.child_by_field_name("attribute")
                    if attr is not None:
                        info["extends"].append(node_text(attr))
        return info


class JavaScriptExtractor(RelationshipExtractor):
    """JavaScript-specific reference extraction."""

    def __init__(self):
        super().__init__("javascript")

    def get_call_node_types(self) -> List[str]:
        return ["call_expression", "new_expression"]

    def get_import_node_types(self) -> List[str]:
        return ["import_statement"]

    def get_reexport_node_types(self) -> List[str]:
        return ["export_statement"]

    def get_class_node_types(self) -> List[str]:
        return ["class_declaration", "class"]

    def extract_call_target_name(self, call_node: Any) -> Optional[str]:
        """Extract function/method name from JavaScript call node."""
        field = "constructor" if call_node.type == "new_expression" else "function"
        func_node = call_node.child_by_field_name(field)
        if func_node is None:
            return None
        if func_node.type == "identifier":
            return node_text(func_node)
        if func_node.type == "member_expression":
            prop_node = func_node.child_by_field_name("property")
            if prop_node is not None:
                return node_text(prop_node)
        return None

    def _module_of(self, node: Any) -> Optional[str]:
        source_node = node.child_by_field_name("source")
        if source_node is None:
            return None
        return node_text(source_node).strip("\"'`")

    def _specifiers(self, node: Any, specifier_type: str) -> List[Tuple[str, Optional[str]]]:
        names = []
        for spec in walk(node):
            if spec.type != specifier_type:
                continue
            name_node = spec.child_by_field_name("name")
            alias_node = spec.child_by_field_name("alias")
            if name_node is not None:
                names.append((node_text(name_node), node_text(alias_node) if alias_node is not None else None))
        return names

    def extract_import_info(self, import_node: Any) -> List[ImportInfo]:
        """Extract import information from JavaScript import node."""
        # import ... from "module"
        module_name = self._module_of(import_node)
        if not module_name:
            return []

        names = []
        clause = next((c for c in import_node.named_children if c.type == "import_clause"), None)
        if clause is not None:
            for child in clause.named_children:
                if child.type == "identifier":
                    # default import binds a local name
                    names.append((node_text(child), None))
            names.extend(self._specifiers(clause, "import_specifier"))

        return [{"module": module_name, "names": names}]

    def extract_reexport_info(self, node: Any) -> Optional[ImportInfo]:
        """export { a, b as c } from "module" / export * from "module"."""
        module_name = self._module_of(node)
        if not module_name:
            return None
        names = self._specifiers(node, "export_specifier")
        if not names:
            names = [("*", None)]
        return {"module": module_name, "names": names}

    def extract_inheritance_info(self, class_node: Any) -> Dict[str, List[str]]:
        """Extract base classes and interfaces from a class node."""
        info = {"extends": [], "implements": []}
        heritage = next((c for c in class_node.children if c.type == "class_heritage"), None)
        if heritage is None:
            return info

        for child in heritage.children:
            if child.type == "implements_clause":
                for sub in walk(child):
                    if sub.type == "type_identifier":
                        info["implements"].append(node_text(sub))
            elif child.type == "extends_clause":
                for sub in walk(child):
                    if sub.type in ("identifier", "type_identifier"):
                        info["extends"].append(node_text(sub))
                        break
            elif child.type == "identifier":
                info["extends"].append(node_text(child))
            elif child.type == "member_expression":
                prop = child.child_by_field_name("property")
                if prop is not None:
                    info["extends"].append(node_text(prop))
        return info


class TypeScriptExtractor(JavaScriptExtractor):
    """TypeScript-specific reference extraction (extends JavaScript)."""

    def __init__(self, language: str = "typescript"):
        super().__init__()
        self.language = language

    def get_class_node_types(self) -> List[str]:
        return ["class_declaration", "abstract_class_declaration", "class"]


class PHPExtractor(RelationshipExtractor):
    """PHP-specific reference extraction."""

    def __init__(self):
        super().__init__("php")

    def get_call_node_types(self) -> List[str]:
        return [
            "function_call_expression",
            "member_call_expression",
            "scoped_call_expression",
            "object_creation_expression",
        ]

    def get_import_node_types(self) -> List[str]:
        return ["namespace_use_declaration"]

    def get_class_node_types(self) -> List[str]:
        return ["class_declaration"]

    def extract_call_target_name(self, call_node: Any) -> Optional[str]:
        """Extract function/method name from PHP call node."""
        # $object->method() and Class::method()
        if call_node.type in ("member_call_expression", "scoped_call_expression"):
            name_node = call_node.child_by_field_name("name")
            return node_text(name_node) if name_node is not None else None

        if call_node.type == "object_creation_expression":
            for child in call_node.named_children:
                if child.type in ("name", "qualified_name"):
                    return _last_segment(node_text(child))
            return None

        function_node = call_node.child_by_field_name("function")
        if function_node is None:
            return None
        # Namespaced functions keep only the function name
        return _last_segment(node_text(function_node))

    def extract_import_info(self, import_node: Any) -> List[ImportInfo]:
        """Extract import information from PHP `use` declarations."""
        text = node_text(import_node).strip().rstrip(";")
        text = re.sub(r"^use\s+(function\s+|const\s+)?", "", text)
        imports = []
        for clause in text.split(","):
            qualified, alias = _split_alias(clause.strip().lstrip("\\"))
            if not qualified:
                continue
            module, _, name = qualified.rpartition("\\")
            imports.append({"module": module or qualified, "names": [(name, alias)]})
        return imports

    def extract_inheritance_info(self, class_node: Any) -> Dict[str, List[str]]:
        """Extract base classes and interfaces from PHP class node."""
        info = {"extends": [], "implements": []}
        for child in class_node.children:
            if child.type == "base_clause":
                key = "extends"
            elif child.type == "class_interface_clause":
                key = "implements"
            else:
                continue
            for sub in child.named_children:
                if sub.type in ("name", "qualified_name"):
                    info[key].append(_last_segment(node_text(sub)))
        return info


class GoExtractor(RelationshipExtractor):
    """Go-specific reference extraction."""

    def __init__(self):
        super().__init__("go")

    def get_call_node_types(self) -> List[str]:
        return ["call_expression"]

    def get_import_node_types(self) -> List[str]:
        return ["import_declaration"]

    def extract_call_target_name(self, call_node: Any) -> Optional[str]:
        """Extract function name from Go call node."""
        func_node = call_node.child_by_field_name("function")
        if func_node is None:
            return None
        if func_node.type == "identifier":
            return node_text(func_node)
        if func_node.type == "selector_expression":
            field_node = func_node.child_by_field_name("field")
            if field_node is not None:
                return node_text(field_node)
        return None

    def extract_import_info(self, import_node: Any) -> List[ImportInfo]:
        """Extract import information from Go import node."""
        # import "package" or import ( "package1" alias "package2" )
        imports = []
        for spec in walk(import_node):
            if spec.type != "import_spec":
                continue
            path_node = spec.child_by_field_name("path")
            if path_node is None:
                continue
            module_name = node_text(path_node).strip('"`')
            name_node = spec.child_by_field_name("name")
            imports.append(
                {
                    "module": module_name,
                    "names": [],
                    "alias": node_text(name_node) if name_node is not None else None,
                }
            )
        return imports


class RustExtractor(RelationshipExtractor):
    """Rust-specific reference extraction."""

    def __init__(self):
        super().__init__("rust")

    def get_call_node_types(self) -> List[str]:
        return ["call_expression"]

    def get_import_node_types(self) -> List[str]:
        return ["use_declaration"]

    def get_class_node_types(self) -> List[str]:
        return ["impl_item"]

    def extract_call_target_name(self, call_node: Any) -> Optional[str]:
        """Extract function name from Rust call node."""
        func_node = call_node.child_by_field_name("function")
        if func_node is None:
            return None
        if func_node.type == "identifier":
            return node_text(func_node)
        if func_node.type == "field_expression":
            field_node = func_node.child_by_field_name("field")
            return node_text(field_node) if field_node is not None else None
        if func_node.type == "scoped_identifier":
            name_node = func_node.child_by_field_name("name")
            return node_text(name_node) if name_node is not None else None
        return None

    def extract_import_info(self, import_node: Any) -> List[ImportInfo]:
        """Extract import information from Rust use node."""
        # use std::collections::{HashMap, HashSet as Set};
        text = node_text(import_node).strip().rstrip(";")
        text = re.sub(r"^(pub(\([^)]*\))?\s+)?use\s+", "", text).strip()

        if "{" in text:
            module, _, rest = text.partition("{")
            module = module.rstrip(":").strip()
            names = []
            for part in rest.rstrip("}").split(","):
                part = part.strip()
                if part and part != "self":
                    name, alias = _split_alias(part)
                    names.append((_last_segment(name), alias))
            return [{"module": module, "names": names}]

        path, alias = _split_alias(text)
        module, _, name = path.rpartition("::")
        if name == "*":
            names = []
        else:
            names = [(name, alias)]
        return [{"module": module or path, "names": names}]

    def extract_inheritance_info(self, class_node: Any) -> Dict[str, List[str]]:
        """Extract the implemented trait from an `impl Trait for Type` block."""
        info = {"extends": [], "implements": []}
        trait_node = class_node.child_by_field_name("trait")
        if trait_node is not None:
            info["implements"].append(_last_segment(node_text(trait_node)))
        return info


class JavaExtractor(RelationshipExtractor):
    """Java-specific reference extraction."""

    def __init__(self):
        super().__init__("java")

    def get_call_node_types(self) -> List[str]:
        return ["method_invocation", "object_creation_expression"]

    def get_import_node_types(self) -> List[str]:
        return ["import_declaration"]

    def get_class_node_types(self) -> List[str]:
        return ["class_declaration", "interface_declaration", "record_declaration"]

    def extract_call_target_name(self, call_node: Any) -> Optional[str]:
        """Extract method name from Java call node."""
        if call_node.type == "object_creation_expression":
            type_node = call_node.child_by_field_name("type")
            return _last_segment(node_text(type_node)) if type_node is not None else None
        name_node = call_node.child_by_field_name("name")
        return node_text(name_node) if name_node is not None else None

    def extract_import_info(self, import_node: Any) -> List[ImportInfo]:
        """Extract import information from Java import node."""
        text = node_text(import_node).strip().rstrip(";")
        text = re.sub(r"^import\s+(static\s+)?", "", text).strip()
        module, _, name = text.rpartition(".")
        names = [] if name == "*" else [(name, None)]
        return [{"module": module or text, "names": names}]

    def extract_inheritance_info(self, class_node: Any) -> Dict[str, List[str]]:
        """Extract base classes and interfaces from Java class node."""
        info = {"extends": [], "implements": []}
        # class ClassName extends BaseClass implements Interface
        superclass_node = class_node.child_by_field_name("superclass")
        if superclass_node is not None:
            for child in walk(superclass_node):
                if child.type == "type_identifier":
                    info["extends"].append(node_text(child))

        interfaces_node = class_node.child_by_field_name("interfaces")
        if interfaces_node is not None:
            for child in walk(interfaces_node):
                if child.type == "type_identifier":
                    info["implements"].append(node_text(child))
        return info


class CppExtractor(RelationshipExtractor):
    """C++-specific reference extraction."""

    def __init__(self):
        super().__init__("cpp")

    def get_call_node_types(self) -> List[str]:
        return ["call_expression"]

    def get_import_node_types(self) -> List[str]:
        return ["preproc_include"]

    def get_class_node_types(self) -> List[str]:
        return ["class_specifier", "struct_specifier"]

    def extract_call_target_name(self, call_node: Any) -> Optional[str]:
        """Extract function name from C++ call node."""
        func_node = call_node.child_by_field_name("function")
        if func_node is None:
            return None
        if func_node.type == "identifier":
            return node_text(func_node)
        if func_node.type == "field_expression":
            field_node = func_node.child_by_field_name("field")
            return node_text(field_node) if field_node is not None else None
        if func_node.type == "qualified_identifier":
            return _last_segment(node_text(func_node))
        return None

    def extract_import_info(self, import_node: Any) -> List[ImportInfo]:
        """Extract include information from C++ include node."""
        # #include <header> or #include "header"
        path_node = import_node.child_by_field_name("path")
        if path_node is None:
            return []
        raw = node_text(path_node)
        module_name = raw.strip('<>"')
        return [{"module": module_name, "names": []}]

    def extract_inheritance_info(self, class_node: Any) -> Dict[str, List[str]]:
        """Extract base classes from C++ class node."""
        info = {"extends": [], "implements": []}
        # class ClassName : public BaseClass
        base_clause = next((c for c in class_node.children if c.type == "base_class_clause"), None)
        if base_clause is not None:
            for child in walk(base_clause):
                if child.type == "type_identifier":
                    info["extends"].append(node_text(child))
        return info


class CExtractor(CppExtractor):
    """C-specific reference extraction (similar to C++)."""

    def __init__(self):
        super().__init__()
        self.language = "c"

    def get_class_node_types(self) -> List[str]:
        # C has no inheritance
        return []


class CSharpExtractor(RelationshipExtractor):
    """C#-specific reference extraction."""

    def __init__(self):
        super().__init__("c_sharp")

    def get_call_node_types(self) -> List[str]:
        return ["invocation_expression", "object_creation_expression"]

    def get_import_node_types(self) -> List[str]:
        return ["using_directive"]

    def get_class_node_types(self) -> List[str]:
        return ["class_declaration", "struct_declaration", "record_declaration", "interface_declaration"]

    def extract_call_target_name(self, call_node: Any) -> Optional[str]:
        """Extract method name from C# call node."""
        if call_node.type == "object_creation_expression":
            type_node = call_node.child_by_field_name("type")
            return _last_segment(node_text(type_node)) if type_node is not None else None

        func_node = call_node.child_by_field_name("function")
        if func_node is None:
            return None
        if func_node.type == "identifier":
            return node_text(func_node)
        if func_node.type == "member_access_expression":
            name_node = func_node.child_by_field_name("name")
            return node_text(name_node) if name_node is not None else None
        return None

    def extract_import_info(self, import_node: Any) -> List[ImportInfo]:
        """Extract using information from C# using node."""
        # using System.Collections; / using Alias = Some.Namespace;
        text = node_text(import_node).strip().rstrip(";")
        text = re.sub(r"^(global\s+)?using\s+(static\s+)?", "", text).strip()
        alias = None
        if "=" in text:
            alias, text = (part.strip() for part in text.split("=", 1))
        return [{"module": text, "names": [], "alias": alias}]

    def extract_inheritance_info(self, class_node: Any) -> Dict[str, List[str]]:
        """Extract base classes and interfaces from C# class node."""
        info = {"extends": [], "implements": []}
        # class ClassName : BaseClass, IInterface
        base_list = next((c for c in class_node.children if c.type == "base_list"), None)
        if base_list is None:
            return info

        for child in base_list.named_children:
            if child.type not in ("identifier", "qualified_name", "generic_name"):
                continue
            base = _last_segment(node_text(child).split("<")[0])
            # Convention: if name starts with 'I', it's an interface
            if base.startswith("I") and len(base) > 1 and base[1].isupper():
                info["implements"].append(base)
            else:
                info["extends"].append(base)
        return info


class ExtractorRegistry:
    """Registry for language-specific reference extractors."""

    _extractors: Dict[str, RelationshipExtractor] = {
        "python": PythonExtractor(),
        "javascript": JavaScriptExtractor(),
        "typescript": TypeScriptExtractor(),
        "tsx": TypeScriptExtractor("tsx"),
        "php": PHPExtractor(),
        "go": GoExtractor(),
        "rust": RustExtractor(),
        "java": JavaExtractor(),
        "cpp": CppExtractor(),
        "c": CExtractor(),
        "c_sharp": CSharpExtractor(),
    }

    @classmethod
    def get_extractor(cls, language: str) -> Optional[RelationshipExtractor]:
        """Get the reference extractor for a language.

        Args:
            language: Programming language name

        Returns:
            RelationshipExtractor instance or None if not supported
        """
        return cls._extractors.get(language)


def module_basename(module: str) -> str:
    """Last path segment of a module specifier ("./utils" -> "utils", "a::b" -> "b")."""
    return _last_segment(module)
