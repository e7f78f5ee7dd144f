"""
File composition: outermost-span selection, grouping and byte splicing.
"""

import pytest

from conftest import make_chunk
from src.pipelines.compose import encode_fragment, group_by_file, outermost, splice, span_matches

SOURCE = b"class A {\n  run() { go(); }\n}\nfunction b() {}\n"


def _chunk(name, start, end, **kw):
    return make_chunk(name=name, start_byte=start, code=SOURCE[start:end].decode(), **kw)


# ── selection ──

class TestOutermost:
    def test_nested_method_dropped(self):
        cls = _chunk("A", 0, 29)
        method = _chunk("run", 12, 27, start_line=2, kind="method")
        fn = _chunk("b", 30, 45, start_line=4)
        assert [c.name for c in outermost([method, fn, cls])] == ["A", "b"]

    def test_partial_overlap_keeps_earlier(self):
        first = _chunk("first", 0, 20)
        second = _chunk("second", 10, 40, start_line=2)
        assert [c.name for c in outermost([second, first])] == ["first"]

    def test_files_are_independent(self):
        a = _chunk("A", 0, 29)
        other = _chunk("A", 0, 30, file_id="f2", logical_path="src/other.js")
        assert len(outermost([a, other])) == 2


def test_group_by_file_orders_by_path_then_offset():
    late = _chunk("b", 30, 45, start_line=4)
    early = _chunk("A", 0, 29)
    other = _chunk("x", 0, 5, file_id="f0", logical_path="lib/x.js")
    groups = group_by_file([late, other, early])
    assert list(groups) == ["f0", "f1"]
    assert [c.name for c in groups["f1"]] == ["A", "b"]


# ── splicing ──

class TestSplice:
    def test_replaces_spans_and_keeps_the_rest(self):
        out = splice(SOURCE, [(30, 45, b"function b(): void {}"), (0, 9, b"class A implements I {")])
        assert out == b"class A implements I {\n  run() { go(); }\n}\nfunction b(): void {}\n"

    def test_no_replacements_is_identity(self):
        assert splice(SOURCE, []) == SOURCE

    @pytest.mark.parametrize("spans", [
        [(0, 10, b"x"), (5, 12, b"y")],
        [(10, 5, b"x")],
        [(0, len(SOURCE) + 1, b"x")],
    ])
    def test_invalid_spans(self, spans):
        with pytest.raises(ValueError):
            splice(SOURCE, spans)


def test_span_matches():
    chunk = _chunk("b", 30, 45, start_line=4)
    assert span_matches(SOURCE, chunk)
    assert not span_matches(SOURCE.replace(b"function b", b"function c"), chunk)


def test_span_matches_latin1_source():
    source = b"function b() { return 'caf\xe9'; }\n"
    chunk = make_chunk(name="b", start_byte=0, code=source[:-1].decode("latin-1"))
    chunk.end_byte = len(source) - 1
    assert span_matches(source, chunk)


def test_encode_fragment_keeps_file_encoding():
    assert encode_fragment("café", "latin-1") == b"caf\xe9"
    # characters latin-1 cannot hold fall back to utf-8
    assert encode_fragment("✓", "latin-1") == "✓".encode("utf-8")
