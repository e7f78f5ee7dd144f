"""
Chunk extraction over tree-sitter: kinds, names, spans, metadata and ids.
"""

from conftest import SAMPLE_JS, SAMPLE_PY
from src.chunking.chunker import ChunkConfig, extract, source_encoding, supports
from src.core.models import Dialect


def _by_name(chunks):
    return {c.name: c for c in chunks}


def _js():
    return extract(SAMPLE_JS, Dialect.JAVASCRIPT, session_id="s1", file_id="f1", logical_path="src/users.js")


def _py():
    return extract(SAMPLE_PY, Dialect.PYTHON3, session_id="s1", file_id="f2", logical_path="tools/loader.py")


# ── JavaScript ──

class TestJavaScript:
    def test_kinds_found(self):
        kinds = {c.kind for c in _js().chunks}
        assert {"import", "export", "function", "conditional", "arrow-function",
                "class", "method", "loop", "try-catch"} <= kinds

    def test_named_declarations(self):
        chunks = _by_name(_js().chunks)
        assert chunks["fetchUsers"].kind == "function"
        assert [p.name for p in chunks["fetchUsers"].parameters] == ["url"]
        assert chunks["UserService"].kind == "class"
        assert chunks["constructor"].kind == "method"

    def test_anonymous_regions_get_line_names(self):
        names = {c.name for c in _js().chunks}
        assert "import-line-1" in names
        assert "export-line-3" in names

    def test_async_method_and_complexity(self):
        load = _by_name(_js().chunks)["load"]
        assert load.kind == "method"
        assert load.is_async
        assert "async" in load.tags
        # for + try + catch on top of the base score
        assert load.complexity == 4
        assert load.start_line == 15

    def test_import_dependency(self):
        imp = _by_name(_js().chunks)["import-line-1"]
        assert [(d.kind, d.source) for d in imp.dependencies] == [("import", "axios")]

    def test_class_contains_method_chunks(self):
        chunks = _by_name(_js().chunks)
        cls, method = chunks["UserService"], chunks["load"]
        assert cls.start_byte <= method.start_byte and method.end_byte <= cls.end_byte

    def test_for_loop_declarations_are_not_variables(self):
        assert not [c for c in _js().chunks if c.kind == "variable"]


# ── Python ──

class TestPython:
    def test_methods_belong_to_class(self):
        chunks = _by_name(_py().chunks)
        assert chunks["list_sources"].kind == "function"
        assert chunks["Loader"].kind == "class"
        assert chunks["__init__"].kind == "method"
        assert chunks["fetch"].kind == "method"
        assert chunks["fetch"].is_async

    def test_static_and_visibility(self):
        chunks = _by_name(_py().chunks)
        hidden = chunks["_hidden"]
        assert hidden.is_static
        assert hidden.visibility == "protected"
        assert chunks["__init__"].visibility == "public"
        assert "static" in hidden.tags and "protected" in hidden.tags

    def test_short_regions_dropped(self):
        # "import os" is under the minimum size once whitespace is removed
        imports = [c for c in _py().chunks if c.kind == "import"]
        assert len(imports) == 1
        assert [d.source for d in imports[0].dependencies] == ["typing"]

    def test_complexity_counts_boolean_operators(self):
        # for + if + and
        assert _by_name(_py().chunks)["list_sources"].complexity == 4

    def test_generator_and_async_function(self):
        src = b"def numbers(n):\n    for i in range(n):\n        yield i\n\n\nasync def main(url):\n    return await get(url)\n"
        chunks = _by_name(extract(src, Dialect.PYTHON3, session_id="s1", logical_path="g.py").chunks)
        assert chunks["numbers"].kind == "generator"
        assert chunks["main"].kind == "async-function"

    def test_complexity_is_capped(self):
        branches = "".join(f"    if x == {i}:\n        return {i}\n" for i in range(20))
        src = f"def pick(x):\n{branches}    return -1\n".encode()
        pick = _by_name(extract(src, Dialect.PYTHON3, logical_path="p.py").chunks)["pick"]
        assert pick.complexity == 10
        capped = extract(src, Dialect.PYTHON3, logical_path="p.py", config=ChunkConfig(max_complexity=5))
        assert _by_name(capped.chunks)["pick"].complexity == 5


# ── invariants ──

class TestInvariants:
    def test_code_is_exact_byte_span(self):
        for source, result in ((SAMPLE_JS, _js()), (SAMPLE_PY, _py())):
            assert result.chunks
            for c in result.chunks:
                assert source[c.start_byte:c.end_byte].decode("utf-8") == c.code
                assert c.start_line <= c.end_line

    def test_ids_deterministic_and_unique(self):
        first, second = _js(), _js()
        ids = [c.chunk_id for c in first.chunks]
        assert ids == [c.chunk_id for c in second.chunks]
        assert len(set(ids)) == len(ids)

    def test_ids_depend_on_session(self):
        other = extract(SAMPLE_JS, Dialect.JAVASCRIPT, session_id="s2", file_id="f1", logical_path="src/users.js")
        assert not {c.chunk_id for c in other.chunks} & {c.chunk_id for c in _js().chunks}

    def test_chunk_metadata_copied(self):
        c = _js().chunks[0]
        assert (c.session_id, c.file_id, c.logical_path, c.dialect) == ("s1", "f1", "src/users.js", "javascript")
        assert c.status == "pending-embedding"


# ── unsupported input ──

class TestUnsupported:
    def test_unsupported_dialect_warns(self):
        result = extract(b"import Foundation\nlet x = 1\n", Dialect.SWIFT, logical_path="a.swift")
        assert result.chunks == []
        assert len(result.warnings) == 1
        assert not supports(Dialect.SWIFT)
        assert supports(Dialect.TYPESCRIPT)

    def test_syntax_errors_counted_not_raised(self):
        result = extract(b"function broken( {\n  return 1;\n", Dialect.JAVASCRIPT, logical_path="b.js")
        assert result.syntax_errors > 0
        assert any("syntax error" in w for w in result.warnings)

    def test_vue_script_block_offsets(self):
        src = (
            b"<template>\n  <div>{{ msg }}</div>\n</template>\n"
            b"<script>\nexport default {\n  data() {\n    return { msg: 'hello there' };\n  }\n};\n</script>\n"
        )
        result = extract(src, Dialect.VUE, logical_path="App.vue")
        assert result.chunks
        for c in result.chunks:
            assert src[c.start_byte:c.end_byte].decode() == c.code
        assert min(c.start_line for c in result.chunks) == 5


# ── non-UTF-8 input ──

LATIN1_JS = b"function greet(name) {\n  return 'caf\xe9 ' + name;\n}\n"


class TestEncoding:
    def test_source_encoding(self):
        assert source_encoding(SAMPLE_JS) == "utf-8"
        assert source_encoding(LATIN1_JS) == "latin-1"

    def test_latin1_span_is_lossless(self):
        result = extract(LATIN1_JS, Dialect.JAVASCRIPT, logical_path="b.js")
        greet = _by_name(result.chunks)["greet"]
        assert "café" in greet.code
        assert LATIN1_JS[greet.start_byte:greet.end_byte].decode("latin-1") == greet.code
