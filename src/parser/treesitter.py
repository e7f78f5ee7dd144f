"""
Tree-sitter grammar loading and syntax checks.

Grammars come from the per-language wheels (tree-sitter-javascript,
tree-sitter-typescript, tree-sitter-python, tree-sitter-java) and are loaded
lazily, once per process.
"""

from __future__ import annotations

import importlib
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import tree_sitter

from src.core.models import Dialect

# grammar name -> (module, language function)
GRAMMARS: Dict[str, Tuple[str, str]] = {
    "javascript": ("tree_sitter_javascript", "language"),
    "typescript": ("tree_sitter_typescript", "language_typescript"),
    "tsx": ("tree_sitter_typescript", "language_tsx"),
    "python": ("tree_sitter_python", "language"),
    "java": ("tree_sitter_java", "language"),
}

GRAMMAR_FOR_DIALECT: Dict[Dialect, str] = {
    Dialect.JAVASCRIPT: "javascript",
    Dialect.REACT_JS: "javascript",
    Dialect.JQUERY: "javascript",
    Dialect.ANGULARJS: "javascript",
    Dialect.TYPESCRIPT: "typescript",
    Dialect.ANGULAR: "typescript",
    Dialect.REACT_TS: "tsx",
    Dialect.PYTHON2: "python",
    Dialect.PYTHON3: "python",
    Dialect.JAVA: "java",
    # Vue SFCs are parsed through their <script> block, see script_region()
    Dialect.VUE: "javascript",
}

_languages: Dict[str, Any] = {}

_SCRIPT_RE = re.compile(rb"<script\b([^>]*)>(.*?)</script\s*>", re.DOTALL | re.IGNORECASE)
_LANG_TS_RE = re.compile(rb"""lang\s*=\s*["']ts["']""", re.IGNORECASE)


@dataclass
class ParseOutcome:
    tree: Any
    root: Any
    grammar: str
    error_count: int
    total_nodes: int

    @property
    def is_valid(self) -> bool:
        return self.error_count == 0


def get_language(grammar: str) -> Any:
    """Load (and cache) a tree-sitter Language; ValueError when not installed."""
    if grammar in _languages:
        return _languages[grammar]
    spec = GRAMMARS.get(grammar)
    if spec is None:
        raise ValueError(f"No grammar registered for {grammar}")
    module_name, func_name = spec
    try:
        mod = importlib.import_module(module_name)
        lang = tree_sitter.Language(getattr(mod, func_name)())
    except (ImportError, AttributeError) as err:
        raise ValueError(f"Grammar not available: {grammar}") from err
    _languages[grammar] = lang
    return lang


def grammar_for(dialect: Dialect) -> Optional[str]:
    return GRAMMAR_FOR_DIALECT.get(dialect)


def has_parser(dialect: Dialect) -> bool:
    grammar = grammar_for(dialect)
    if grammar is None:
        return False
    try:
        get_language(grammar)
    except ValueError:
        return False
    return True


def parse(source: bytes, grammar: str) -> ParseOutcome:
    parser = tree_sitter.Parser()
    parser.language = get_language(grammar)
    tree = parser.parse(source)

    error_count = 0
    total_nodes = 0
    stack = [tree.root_node]
    while stack:
        node = stack.pop()
        total_nodes += 1
        if node.type == "ERROR" or node.is_missing:
            error_count += 1
        stack.extend(node.children)

    return ParseOutcome(
        tree=tree,
        root=tree.root_node,
        grammar=grammar,
        error_count=error_count,
        total_nodes=total_nodes,
    )


def script_region(source: bytes) -> Tuple[int, bytes, str]:
    """
    Locate the first <script> block of a Vue SFC.

    Returns (byte_offset, script_bytes, grammar). An SFC without a script
    block yields an empty region.
    """
    m = _SCRIPT_RE.search(source)
    if not m:
        return 0, b"", "javascript"
    grammar = "typescript" if _LANG_TS_RE.search(m.group(1)) else "javascript"
    return m.start(2), m.group(2), grammar


def check_syntax(code: str, dialect: Dialect) -> Optional[ParseOutcome]:
    """Parse *code* as *dialect*; None when no parser is available for it."""
    if not has_parser(dialect):
        return None
    data = code.encode("utf-8")
    grammar = grammar_for(dialect)
    if dialect is Dialect.VUE:
        _, data, grammar = script_region(data)
    return parse(data, grammar)
