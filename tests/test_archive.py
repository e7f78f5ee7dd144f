"""
Archive expander: single files, ZIP walking, filters, caps and traversal.
"""

import io
import zipfile

import pytest

from src.core.errors import ErrorCode, ExpansionError, QuotaError
from src.ingest.archive import ExpansionCaps, expand, is_archive, is_denied, normalize_path


def _zip(entries):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def caps():
    return ExpansionCaps(
        max_files=10,
        max_total_bytes=10_000,
        max_file_bytes=1_000,
        extension_allowlist=[".js", ".ts", ".py"],
        path_denylist=["node_modules", ".git", "dist"],
        archive_extensions=[".zip", ".jar"],
    )


# ── path handling ──

class TestPaths:
    def test_normalize_strips_dot_segments_and_backslashes(self):
        assert normalize_path("./src\\app.js") == "src/app.js"
        assert normalize_path("a//b/./c.py") == "a/b/c.py"

    @pytest.mark.parametrize("name", ["../evil.js", "src/../../x.js", "/etc/passwd", "C:\\win\\x.js"])
    def test_traversal_rejected(self, name):
        with pytest.raises(ExpansionError) as exc:
            normalize_path(name)
        assert exc.value.code == ErrorCode.PATH_TRAVERSAL

    def test_denylist_matches_any_segment_case_insensitive(self):
        assert is_denied("web/Node_Modules/react/index.js", ["node_modules"])
        assert not is_denied("src/modules/index.js", ["node_modules"])

    def test_is_archive_by_extension_or_mime(self, caps):
        assert is_archive("bundle.JAR", caps)
        assert is_archive("upload.bin", caps, mime="application/zip")
        assert not is_archive("app.js", caps, mime="text/javascript")


# ── single file ──

class TestSingleFile:
    def test_single_file_kept_under_base_name(self, caps):
        result = expand(b"const a = 1;", "some/dir/app.js", caps)
        assert [e.logical_path for e in result.entries] == ["app.js"]
        assert result.entries[0].size_bytes == 12

    def test_unsupported_extension_skipped_with_warning(self, caps):
        result = expand(b"binary", "logo.png", caps)
        assert result.entries == []
        assert result.skipped == ["logo.png"]
        assert result.warnings

    def test_oversize_single_file_skipped(self, caps):
        result = expand(b"x" * 2_000, "big.js", caps)
        assert result.entries == []
        assert "big.js" in result.warnings[0]


# ── zip ──

class TestZip:
    def test_entries_sorted_and_filtered(self, caps):
        blob = _zip([
            ("src/z.js", "z"),
            ("src/a.ts", "a"),
            ("node_modules/lib/index.js", "lib"),
            ("README.md", "readme"),
            ("src/", ""),
        ])
        result = expand(blob, "project.zip", caps)
        assert [e.logical_path for e in result.entries] == ["src/a.ts", "src/z.js"]
        assert result.skipped == ["README.md"]
        assert result.total_bytes == 2

    def test_oversize_entry_skipped_not_fatal(self, caps):
        blob = _zip([("src/big.js", "x" * 2_000), ("src/ok.js", "ok")])
        result = expand(blob, "project.zip", caps)
        assert [e.logical_path for e in result.entries] == ["src/ok.js"]
        assert "src/big.js" in result.skipped

    def test_traversal_fails_whole_archive(self, caps):
        blob = _zip([("src/ok.js", "ok"), ("../../escape.js", "bad")])
        with pytest.raises(ExpansionError) as exc:
            expand(blob, "project.zip", caps)
        assert exc.value.code == ErrorCode.PATH_TRAVERSAL

    def test_total_size_cap(self, caps):
        caps.max_total_bytes = 1_500
        blob = _zip([(f"src/f{i}.js", "x" * 900) for i in range(2)])
        with pytest.raises(ExpansionError) as exc:
            expand(blob, "project.zip", caps)
        assert exc.value.code == ErrorCode.ARCHIVE_TOO_LARGE

    def test_file_count_cap(self, caps):
        caps.max_files = 2
        blob = _zip([(f"src/f{i}.js", "x") for i in range(3)])
        with pytest.raises(QuotaError) as exc:
            expand(blob, "project.zip", caps)
        assert exc.value.code == ErrorCode.TOO_MANY_FILES

    def test_corrupt_archive(self, caps):
        with pytest.raises(ExpansionError) as exc:
            expand(b"PK\x03\x04 not really a zip", "broken.zip", caps)
        assert exc.value.code == ErrorCode.ARCHIVE_CORRUPT

    def test_duplicate_entry_keeps_last(self, caps):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("src/a.js", "first")
            zf.writestr("./src/a.js", "second")
        result = expand(buf.getvalue(), "project.zip", caps)
        assert [e.data for e in result.entries] == [b"second"]
        assert any("Duplicate" in w for w in result.warnings)

    def test_empty_allowlist_accepts_everything(self, caps):
        caps.extension_allowlist = []
        result = expand(_zip([("notes.txt", "hi")]), "p.zip", caps)
        assert [e.logical_path for e in result.entries] == ["notes.txt"]
