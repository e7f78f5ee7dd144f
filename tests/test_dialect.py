"""
Dialect detection: family + syntax scoring and the closed dialect vocabulary.
"""

import pytest

from conftest import SAMPLE_JS, SAMPLE_PY
from src.core.models import Dialect, migrated_path
from src.parser.dialect import detect, matches_dialect, parse_target, supported_dialects


# ── detection ──

class TestDetect:
    def test_node_javascript(self):
        result = detect("src/api.js", SAMPLE_JS)
        assert result.dialect is Dialect.JAVASCRIPT
        assert result.syntax == "javascript"
        assert 0.0 < result.confidence <= 1.0
        assert result.extension == ".js"

    def test_python3(self):
        result = detect("tools/loader.py", SAMPLE_PY)
        assert result.dialect is Dialect.PYTHON3
        assert result.family == "python"

    def test_python2_markers(self):
        result = detect("legacy.py", b"import os\n\ndef main():\n    print 'hello'\n")
        assert result.dialect is Dialect.PYTHON2

    def test_react_component(self):
        src = (
            "import React, { useState } from 'react';\n"
            "export default function Counter() {\n"
            "  const [n, setN] = useState(0);\n"
            "  return (<Button className=\"c\" onClick={() => setN(n + 1)}>{n}</Button>);\n"
            "}\n"
        )
        result = detect("Counter.jsx", src)
        assert result.family == "react"
        assert result.dialect is Dialect.REACT_JS

    def test_angular_component(self):
        src = (
            "import { Component, OnInit } from '@angular/core';\n"
            "@Component({ selector: 'app-root' })\n"
            "export class AppComponent implements OnInit {\n"
            "  title: string = 'app';\n"
            "  ngOnInit(): void {}\n"
            "}\n"
        )
        assert detect("app.component.ts", src).dialect is Dialect.ANGULAR

    def test_unknown_without_evidence(self):
        result = detect("notes.xyz", b"hello world")
        assert (result.family, result.syntax, result.confidence) == ("unknown", "unknown", 0.0)
        assert result.dialect is Dialect.UNKNOWN

    def test_extension_only_fallback(self):
        result = detect("empty.ts", b"")
        assert result.dialect is Dialect.TYPESCRIPT

    def test_detection_is_pure(self):
        assert detect("src/api.js", SAMPLE_JS) == detect("src/api.js", SAMPLE_JS.decode())


# ── vocabulary ──

class TestVocabulary:
    @pytest.mark.parametrize("value,expected", [
        ("typescript", Dialect.TYPESCRIPT),
        ("TypeScript", Dialect.TYPESCRIPT),
        ("tsx", Dialect.REACT_TS),
        ("python", Dialect.PYTHON3),
        ("C#", Dialect.CSHARP),
    ])
    def test_parse_target(self, value, expected):
        assert parse_target(value) is expected

    @pytest.mark.parametrize("value", ["", "cobol", "unknown", None])
    def test_parse_target_rejects(self, value):
        assert parse_target(value) is None

    def test_supported_dialects_excludes_unknown(self):
        values = {d["value"] for d in supported_dialects()}
        assert "unknown" not in values
        assert {"typescript", "python3", "java"} <= values

    def test_matches_dialect_groups(self):
        result = detect("src/api.js", SAMPLE_JS)
        assert matches_dialect(result, Dialect.JAVASCRIPT)
        assert matches_dialect(result, Dialect.JQUERY)
        assert not matches_dialect(result, Dialect.PYTHON3)

    def test_migrated_path_uses_target_extension(self):
        assert migrated_path("src/api.js", Dialect.TYPESCRIPT) == "src/api.ts"
        assert migrated_path("src/App.jsx", Dialect.REACT_TS) == "src/App.tsx"
        assert migrated_path("Makefile", Dialect.UNKNOWN) == "Makefile"
