"""
Semantic code chunking over tree-sitter syntax trees.

One rule set per grammar (ECMAScript family, Python, Java) lives in the
``RULES`` dispatch table. The walk is depth-first pre-order over the tree;
every node whose type maps to a chunk kind becomes a chunk, so a class chunk
contains its method chunks. ``source[start_byte:end_byte]`` is always the
chunk's code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Set

from src.core.models import (
    Chunk,
    Comment,
    Dependency,
    Dialect,
    Parameter,
    compute_chunk_id,
)
from src.log import get_logger
from src.parser import treesitter

logger = get_logger(__name__)

MIN_CHUNK_CHARS = 10
MAX_COMPLEXITY = 10

_REQUIRE_RE = re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]\s*\)""")
_PY_DYNAMIC_RE = re.compile(r"""(?:importlib\.import_module|__import__)\(\s*['"]([^'"]+)['"]""")


@dataclass
class ChunkConfig:
    min_chars: int = MIN_CHUNK_CHARS
    max_complexity: int = MAX_COMPLEXITY


@dataclass
class ExtractionResult:
    chunks: List[Chunk] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    syntax_errors: int = 0


def _text(node: Any) -> str:
    return node.text.decode("utf-8", errors="replace") if node is not None and node.text else ""


def _line(node: Any) -> int:
    return node.start_point[0] + 1


def _children_of_type(node: Any, types: Set[str] | FrozenSet[str]) -> Iterator[Any]:
    for child in node.children:
        if child.type in types:
            yield child


def _descendants(node: Any) -> Iterator[Any]:
    """Pre-order descendants, excluding *node* itself."""
    stack = list(reversed(node.children))
    while stack:
        cur = stack.pop()
        yield cur
        stack.extend(reversed(cur.children))


def _strip_quotes(s: str) -> str:
    return s.strip().strip("'\"`")


class LanguageRules:
    """Node-type tables plus the per-grammar hooks the extractor calls."""

    chunk_types: Dict[str, str] = {}
    control_flow: FrozenSet[str] = frozenset()
    loops: FrozenSet[str] = frozenset()
    short_circuit: FrozenSet[str] = frozenset()
    comment_types: FrozenSet[str] = frozenset({"comment"})
    default_visibility = "public"

    def kind_for(self, node: Any) -> Optional[str]:
        return self.chunk_types.get(node.type)

    def name_for(self, node: Any, kind: str) -> Optional[str]:
        name = node.child_by_field_name("name")
        return _text(name) or None

    def parameters(self, node: Any) -> List[Parameter]:
        return []

    def is_async(self, node: Any) -> bool:
        return False

    def is_static(self, node: Any) -> bool:
        return False

    def visibility(self, node: Any, name: Optional[str]) -> str:
        return self.default_visibility

    def dependencies(self, node: Any, code: str) -> List[Dependency]:
        return []


# ── ECMAScript: javascript / typescript / tsx ──

class EcmaRules(LanguageRules):
    chunk_types = {
        "function_declaration": "function",
        "function_expression": "function",
        "function": "function",
        "generator_function_declaration": "generator",
        "generator_function": "generator",
        "arrow_function": "arrow-function",
        "method_definition": "method",
        "class_declaration": "class",
        "abstract_class_declaration": "class",
        "class": "class",
        "interface_declaration": "interface",
        "lexical_declaration": "variable",
        "variable_declaration": "variable",
        "field_definition": "variable",
        "public_field_definition": "variable",
        "import_statement": "import",
        "export_statement": "export",
        "try_statement": "try-catch",
        "if_statement": "conditional",
        "for_statement": "loop",
        "for_in_statement": "loop",
        "while_statement": "loop",
        "do_statement": "loop",
        "switch_statement": "switch",
        "class_static_block": "block",
    }
    control_flow = frozenset({
        "if_statement", "for_statement", "for_in_statement", "while_statement", "do_statement",
        "switch_statement", "try_statement", "catch_clause", "ternary_expression",
    })
    loops = frozenset({"for_statement", "for_in_statement", "while_statement", "do_statement"})
    short_circuit = frozenset({"&&", "||", "??"})

    _FUNCTION_VALUES = frozenset({"arrow_function", "function_expression", "function", "generator_function"})
    _FOR_PARENTS = frozenset({"for_statement", "for_in_statement"})

    def kind_for(self, node: Any) -> Optional[str]:
        kind = self.chunk_types.get(node.type)
        if kind is None:
            return None
        if kind == "function" and self.is_async(node):
            return "async-function"
        if kind == "variable" and node.type in ("lexical_declaration", "variable_declaration"):
            parent = node.parent
            if parent is not None and parent.type in self._FOR_PARENTS:
                return None
            declarators = [c for c in node.named_children if c.type == "variable_declarator"]
            # `const f = () => ...` is represented by the function chunk alone
            if declarators and all(
                (d.child_by_field_name("value") is not None
                 and d.child_by_field_name("value").type in self._FUNCTION_VALUES)
                for d in declarators
            ):
                return None
        return kind

    def name_for(self, node: Any, kind: str) -> Optional[str]:
        if node.type in ("lexical_declaration", "variable_declaration"):
            for d in node.named_children:
                if d.type == "variable_declarator":
                    return _text(d.child_by_field_name("name")) or None
            return None
        if node.type == "field_definition":
            return _text(node.child_by_field_name("property")) or None
        if node.type in ("export_statement", "import_statement"):
            return None
        name = node.child_by_field_name("name")
        if name is not None:
            return _text(name) or None
        if node.type in self._FUNCTION_VALUES:
            parent = node.parent
            if parent is None:
                return None
            if parent.type == "variable_declarator":
                return _text(parent.child_by_field_name("name")) or None
            if parent.type == "assignment_expression":
                return _text(parent.child_by_field_name("left")) or None
            if parent.type == "pair":
                return _strip_quotes(_text(parent.child_by_field_name("key"))) or None
        return None

    def parameters(self, node: Any) -> List[Parameter]:
        params = node.child_by_field_name("parameters")
        if params is None:
            single = node.child_by_field_name("parameter")
            return [Parameter(name=_text(single), position=0)] if single is not None else []
        out: List[Parameter] = []
        for p in params.named_children:
            if p.type == "comment":
                continue
            out.append(self._parameter(p, len(out)))
        return out

    def _parameter(self, p: Any, position: int) -> Parameter:
        type_tag = None
        has_default = False
        is_rest = False
        target = p
        if p.type in ("required_parameter", "optional_parameter"):
            t = p.child_by_field_name("type")
            type_tag = _text(t).lstrip(":").strip() or None if t is not None else None
            has_default = p.child_by_field_name("value") is not None
            target = p.child_by_field_name("pattern") or p
        if target.type == "assignment_pattern":
            has_default = True
            target = target.child_by_field_name("left") or target
        if target.type == "rest_pattern":
            is_rest = True
            inner = [c for c in target.named_children]
            target = inner[0] if inner else target
        name = _text(target)
        if name.startswith("..."):
            is_rest = True
            name = name[3:]
        return Parameter(name=name, type_tag=type_tag, position=position, has_default=has_default, is_rest=is_rest)

    def is_async(self, node: Any) -> bool:
        return any(c.type == "async" for c in node.children)

    def is_static(self, node: Any) -> bool:
        return any(c.type == "static" for c in node.children)

    def visibility(self, node: Any, name: Optional[str]) -> str:
        for c in node.children:
            if c.type == "accessibility_modifier":
                return _text(c)
        name_node = node.child_by_field_name("name") or node.child_by_field_name("property")
        if name_node is not None and name_node.type == "private_property_identifier":
            return "private"
        return "public"

    def dependencies(self, node: Any, code: str) -> List[Dependency]:
        deps: List[Dependency] = []
        candidates = [node] + list(_descendants(node))
        for n in candidates:
            if n.type == "import_statement":
                src = n.child_by_field_name("source")
                if src is not None:
                    deps.append(Dependency(kind="import", source=_strip_quotes(_text(src)), line=_line(n)))
            elif n.type == "call_expression":
                fn = n.child_by_field_name("function")
                if fn is not None and fn.type == "import":
                    args = n.child_by_field_name("arguments")
                    first = args.named_children[0] if args is not None and args.named_children else None
                    if first is not None and first.type in ("string", "template_string"):
                        deps.append(Dependency(kind="dynamic-import", source=_strip_quotes(_text(first)), line=_line(n)))
        base_line = _line(node)
        for m in _REQUIRE_RE.finditer(code):
            deps.append(Dependency(kind="require", source=m.group(1), line=base_line + code.count("\n", 0, m.start())))
        return deps


# ── Python ──

class PythonRules(LanguageRules):
    chunk_types = {
        "function_definition": "function",
        "class_definition": "class",
        "import_statement": "import",
        "import_from_statement": "import",
        "future_import_statement": "import",
        "expression_statement": "variable",
        "try_statement": "try-catch",
        "if_statement": "conditional",
        "for_statement": "loop",
        "while_statement": "loop",
        "match_statement": "switch",
        "with_statement": "block",
        "lambda": "arrow-function",
    }
    control_flow = frozenset({
        "if_statement", "elif_clause", "for_statement", "while_statement", "try_statement",
        "except_clause", "conditional_expression", "match_statement",
    })
    loops = frozenset({"for_statement", "while_statement"})
    short_circuit = frozenset({"and", "or"})

    _FUNCTION_TYPES = frozenset({"function_definition", "lambda"})

    @staticmethod
    def _owner_class(node: Any) -> Optional[Any]:
        parent = node.parent
        if parent is not None and parent.type == "decorated_definition":
            parent = parent.parent
        if parent is not None and parent.type == "block" and parent.parent is not None \
                and parent.parent.type == "class_definition":
            return parent.parent
        return None

    def _has_own_yield(self, node: Any) -> bool:
        body = node.child_by_field_name("body")
        if body is None:
            return False
        stack = list(body.children)
        while stack:
            cur = stack.pop()
            if cur.type == "yield":
                return True
            if cur.type in self._FUNCTION_TYPES or cur.type == "class_definition":
                continue
            stack.extend(cur.children)
        return False

    def kind_for(self, node: Any) -> Optional[str]:
        kind = self.chunk_types.get(node.type)
        if kind is None:
            return None
        if node.type == "function_definition":
            if self._owner_class(node) is not None:
                return "method"
            if self._has_own_yield(node):
                return "generator"
            if self.is_async(node):
                return "async-function"
            return "function"
        if node.type == "expression_statement":
            first = node.named_children[0] if node.named_children else None
            if first is None or first.type not in ("assignment", "augmented_assignment"):
                return None
            parent = node.parent
            at_module = parent is not None and parent.type == "module"
            in_class = self._owner_class(node) is not None
            return kind if (at_module or in_class) else None
        return kind

    def name_for(self, node: Any, kind: str) -> Optional[str]:
        if node.type == "expression_statement":
            first = node.named_children[0] if node.named_children else None
            return _text(first.child_by_field_name("left")) or None if first is not None else None
        if node.type in ("import_statement", "import_from_statement", "future_import_statement"):
            return None
        return super().name_for(node, kind)

    def parameters(self, node: Any) -> List[Parameter]:
        params = node.child_by_field_name("parameters")
        if params is None:
            return []
        out: List[Parameter] = []
        for p in params.named_children:
            if p.type in ("keyword_separator", "positional_separator", "comment"):
                continue
            out.append(self._parameter(p, len(out)))
        return out

    def _parameter(self, p: Any, position: int) -> Parameter:
        if p.type == "identifier":
            return Parameter(name=_text(p), position=position)
        if p.type in ("default_parameter", "typed_default_parameter"):
            t = p.child_by_field_name("type")
            return Parameter(
                name=_text(p.child_by_field_name("name")),
                type_tag=_text(t) or None if t is not None else None,
                position=position,
                has_default=True,
            )
        if p.type == "typed_parameter":
            t = p.child_by_field_name("type")
            inner = next((c for c in p.named_children if c is not t), None)
            is_rest = inner is not None and inner.type in ("list_splat_pattern", "dictionary_splat_pattern")
            name = _text(inner).lstrip("*") if inner is not None else ""
            return Parameter(name=name, type_tag=_text(t) or None, position=position, is_rest=is_rest)
        if p.type in ("list_splat_pattern", "dictionary_splat_pattern"):
            return Parameter(name=_text(p).lstrip("*"), position=position, is_rest=True)
        return Parameter(name=_text(p), position=position)

    def is_async(self, node: Any) -> bool:
        return any(c.type == "async" for c in node.children)

    def is_static(self, node: Any) -> bool:
        parent = node.parent
        if parent is None or parent.type != "decorated_definition":
            return False
        return any(
            d.type == "decorator" and ("staticmethod" in _text(d) or "classmethod" in _text(d))
            for d in parent.children
        )

    def visibility(self, node: Any, name: Optional[str]) -> str:
        if not name or (name.startswith("__") and name.endswith("__")):
            return "public"
        if name.startswith("__"):
            return "private"
        if name.startswith("_"):
            return "protected"
        return "public"

    def dependencies(self, node: Any, code: str) -> List[Dependency]:
        deps: List[Dependency] = []
        for n in [node] + list(_descendants(node)):
            if n.type == "import_statement":
                for child in n.children_by_field_name("name"):
                    target = child.child_by_field_name("name") if child.type == "aliased_import" else child
                    deps.append(Dependency(kind="import", source=_text(target), line=_line(n)))
            elif n.type == "import_from_statement":
                mod = n.child_by_field_name("module_name")
                if mod is not None:
                    deps.append(Dependency(kind="import", source=_text(mod), line=_line(n)))
            elif n.type == "future_import_statement":
                deps.append(Dependency(kind="import", source="__future__", line=_line(n)))
        base_line = _line(node)
        for m in _PY_DYNAMIC_RE.finditer(code):
            deps.append(Dependency(kind="dynamic-import", source=m.group(1), line=base_line + code.count("\n", 0, m.start())))
        return deps


# ── Java ──

class JavaRules(LanguageRules):
    chunk_types = {
        "method_declaration": "method",
        "constructor_declaration": "method",
        "class_declaration": "class",
        "enum_declaration": "class",
        "record_declaration": "class",
        "interface_declaration": "interface",
        "field_declaration": "variable",
        "import_declaration": "import",
        "try_statement": "try-catch",
        "try_with_resources_statement": "try-catch",
        "if_statement": "conditional",
        "for_statement": "loop",
        "enhanced_for_statement": "loop",
        "while_statement": "loop",
        "do_statement": "loop",
        "switch_expression": "switch",
        "switch_statement": "switch",
        "lambda_expression": "arrow-function",
        "static_initializer": "block",
    }
    control_flow = frozenset({
        "if_statement", "for_statement", "enhanced_for_statement", "while_statement", "do_statement",
        "switch_expression", "switch_statement", "try_statement", "try_with_resources_statement",
        "catch_clause", "ternary_expression",
    })
    loops = frozenset({"for_statement", "enhanced_for_statement", "while_statement", "do_statement"})
    short_circuit = frozenset({"&&", "||"})
    comment_types = frozenset({"line_comment", "block_comment", "comment"})
    default_visibility = "package"

    @staticmethod
    def _modifiers(node: Any) -> List[str]:
        for c in node.children:
            if c.type == "modifiers":
                return _text(c).split()
        return []

    def name_for(self, node: Any, kind: str) -> Optional[str]:
        if node.type == "field_declaration":
            decl = node.child_by_field_name("declarator")
            return _text(decl.child_by_field_name("name")) or None if decl is not None else None
        if node.type == "import_declaration":
            return None
        return super().name_for(node, kind)

    def parameters(self, node: Any) -> List[Parameter]:
        params = node.child_by_field_name("parameters")
        if params is None:
            return []
        if params.type == "identifier":
            return [Parameter(name=_text(params), position=0)]
        out: List[Parameter] = []
        for p in params.named_children:
            if p.type == "formal_parameter":
                t = p.child_by_field_name("type")
                out.append(Parameter(
                    name=_text(p.child_by_field_name("name")),
                    type_tag=_text(t) or None if t is not None else None,
                    position=len(out),
                ))
            elif p.type == "spread_parameter":
                decl = next((c for c in p.named_children if c.type == "variable_declarator"), None)
                type_node = next((c for c in p.named_children if c.type not in ("variable_declarator", "modifiers")), None)
                name = _text(decl.child_by_field_name("name")) if decl is not None else _text(p)
                out.append(Parameter(
                    name=name,
                    type_tag=_text(type_node) or None if type_node is not None else None,
                    position=len(out),
                    is_rest=True,
                ))
            elif p.type == "identifier":
                out.append(Parameter(name=_text(p), position=len(out)))
        return out

    def is_static(self, node: Any) -> bool:
        return "static" in self._modifiers(node) or node.type == "static_initializer"

    def visibility(self, node: Any, name: Optional[str]) -> str:
        mods = self._modifiers(node)
        for v in ("public", "private", "protected"):
            if v in mods:
                return v
        return self.default_visibility

    def dependencies(self, node: Any, code: str) -> List[Dependency]:
        deps: List[Dependency] = []
        for n in [node] + list(_descendants(node)):
            if n.type == "import_declaration":
                src = _text(n).replace("import", "", 1).replace("static ", "", 1).rstrip(";").strip()
                deps.append(Dependency(kind="import", source=src, line=_line(n)))
        return deps


RULES: Dict[str, LanguageRules] = {
    "javascript": EcmaRules(),
    "typescript": EcmaRules(),
    "tsx": EcmaRules(),
    "python": PythonRules(),
    "java": JavaRules(),
}


# ── metrics ──

def complexity(node: Any, rules: LanguageRules, cap: int = MAX_COMPLEXITY) -> int:
    """1 + control-flow descendants + short-circuit operators + nested loops, clamped."""
    score = 1
    stack = [(c, 0) for c in node.children]
    while stack:
        cur, loop_depth = stack.pop()
        t = cur.type
        if t in rules.control_flow:
            score += 1
        if t in rules.short_circuit:
            score += 1
        depth = loop_depth
        if t in rules.loops:
            if loop_depth > 0:
                score += 1
            depth = loop_depth + 1
        stack.extend((c, depth) for c in cur.children)
    return min(score, cap)


def _comments(node: Any, rules: LanguageRules) -> List[Comment]:
    out: List[Comment] = []
    for n in _descendants(node):
        if n.type in rules.comment_types:
            text = _text(n).strip()
            out.append(Comment(kind="block" if text.startswith("/*") else "line", text=text, line=_line(n)))
    return out


def build_tags(kind: str, dialect: str, score: int, is_async: bool, is_static: bool, visibility: str) -> List[str]:
    tags = [kind, dialect, f"complexity-{score}"]
    if is_async:
        tags.append("async")
    if is_static:
        tags.append("static")
    if visibility and visibility != "public":
        tags.append(visibility)
    return tags


# ── extraction ──

def source_encoding(data: bytes) -> str:
    """utf-8 when the whole file decodes, else latin-1, which maps every byte."""
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return "latin-1"
    return "utf-8"


def supports(dialect: Dialect) -> bool:
    return treesitter.grammar_for(dialect) in RULES


def extract(
    source: bytes,
    dialect: Dialect,
    *,
    session_id: str = "",
    file_id: str = "",
    logical_path: str = "",
    config: Optional[ChunkConfig] = None,
) -> ExtractionResult:
    """
    Extract chunks from one file. Unsupported dialects yield no chunks and a
    single warning; this function does not raise for bad input.
    """
    cfg = config or ChunkConfig()
    result = ExtractionResult()
    encoding = source_encoding(source)

    grammar = treesitter.grammar_for(dialect)
    rules = RULES.get(grammar or "")
    if rules is None:
        result.warnings.append(f"No chunker for dialect '{dialect.value}' ({logical_path or 'input'})")
        return result

    offset, region = 0, source
    if dialect is Dialect.VUE:
        offset, region, grammar = treesitter.script_region(source)
        if not region.strip():
            result.warnings.append(f"Vue file has no <script> block: {logical_path or 'input'}")
            return result
    line_offset = source.count(b"\n", 0, offset)

    try:
        parsed = treesitter.parse(region, grammar)
    except ValueError as e:
        result.warnings.append(f"Parser unavailable for {logical_path or 'input'}: {e}")
        return result

    result.syntax_errors = parsed.error_count
    if parsed.error_count:
        result.warnings.append(f"{parsed.error_count} syntax error node(s) in {logical_path or 'input'}")

    seen: Set[str] = set()
    stack = [parsed.root]
    while stack:
        node = stack.pop()
        stack.extend(reversed(node.children))

        kind = rules.kind_for(node)
        if kind is None:
            continue
        start_byte = node.start_byte + offset
        end_byte = node.end_byte + offset
        code = source[start_byte:end_byte].decode(encoding)
        if len("".join(code.split())) < cfg.min_chars:
            continue

        start_line = node.start_point[0] + 1 + line_offset
        end_line = node.end_point[0] + 1 + line_offset
        name = rules.name_for(node, kind) or f"{kind}-line-{start_line}"
        chunk_id = compute_chunk_id(session_id, logical_path, start_line, end_line, name)
        if chunk_id in seen:
            logger.debug("duplicate chunk region skipped: %s %s:%d", name, logical_path, start_line)
            continue
        seen.add(chunk_id)

        score = complexity(node, rules, cfg.max_complexity)
        is_async = rules.is_async(node)
        is_static = rules.is_static(node)
        visibility = rules.visibility(node, rules.name_for(node, kind))
        deps = rules.dependencies(node, code)
        for d in deps:
            d.line += line_offset

        result.chunks.append(Chunk(
            chunk_id=chunk_id,
            session_id=session_id,
            file_id=file_id,
            logical_path=logical_path,
            kind=kind,
            name=name,
            start_line=start_line,
            end_line=end_line,
            start_byte=start_byte,
            end_byte=end_byte,
            code=code,
            dialect=dialect.value,
            complexity=score,
            is_async=is_async,
            is_static=is_static,
            visibility=visibility,
            parameters=rules.parameters(node) if kind in _FUNCTION_KINDS else [],
            dependencies=deps,
            comments=[Comment(c.kind, c.text, c.line + line_offset) for c in _comments(node, rules)],
            tags=build_tags(kind, dialect.value, score, is_async, is_static, visibility),
        ))

    return result


_FUNCTION_KINDS = frozenset({"function", "method", "arrow-function", "async-function", "generator"})
