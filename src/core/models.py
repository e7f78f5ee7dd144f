"""
Pipeline data model shared by the index and transform flows.

Identity is by content-derived or random string ids (session_id, file_id,
chunk_id, job_id); no object holds a back-pointer to its owner.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional


# ── Dialects ──

class Dialect(str, Enum):
    """Closed vocabulary for source detection and migration targets."""

    TYPESCRIPT = "typescript"
    JAVASCRIPT = "javascript"
    REACT_JS = "react-js"
    REACT_TS = "react-ts"
    VUE = "vue"
    ANGULAR = "angular"
    ANGULARJS = "angularjs"
    JQUERY = "jquery"
    PYTHON2 = "python2"
    PYTHON3 = "python3"
    JAVA = "java"
    KOTLIN = "kotlin"
    SWIFT = "swift"
    OBJC = "objc"
    CSHARP = "csharp"
    UNKNOWN = "unknown"

    @classmethod
    def targets(cls) -> List["Dialect"]:
        return [d for d in cls if d is not cls.UNKNOWN]

    @classmethod
    def parse(cls, value: str) -> Optional["Dialect"]:
        """Accept the tag, the display name or a few common aliases."""
        if not value:
            return None
        v = value.strip().lower()
        for d in cls:
            if v == d.value or v == DIALECT_DISPLAY[d].lower():
                return d
        return _DIALECT_ALIASES.get(v)


DIALECT_DISPLAY: Dict[Dialect, str] = {
    Dialect.TYPESCRIPT: "TypeScript",
    Dialect.JAVASCRIPT: "JavaScript",
    Dialect.REACT_JS: "React-JS (JSX)",
    Dialect.REACT_TS: "React-TS (TSX)",
    Dialect.VUE: "Vue SFC",
    Dialect.ANGULAR: "Angular",
    Dialect.ANGULARJS: "AngularJS",
    Dialect.JQUERY: "jQuery",
    Dialect.PYTHON2: "Python 2",
    Dialect.PYTHON3: "Python 3",
    Dialect.JAVA: "Java",
    Dialect.KOTLIN: "Kotlin",
    Dialect.SWIFT: "Swift",
    Dialect.OBJC: "Objective-C",
    Dialect.CSHARP: "C#",
    Dialect.UNKNOWN: "Unknown",
}

_DIALECT_ALIASES: Dict[str, Dialect] = {
    "ts": Dialect.TYPESCRIPT,
    "js": Dialect.JAVASCRIPT,
    "jsx": Dialect.REACT_JS,
    "tsx": Dialect.REACT_TS,
    "react": Dialect.REACT_JS,
    "vue.js": Dialect.VUE,
    "python": Dialect.PYTHON3,
    "py": Dialect.PYTHON3,
    "objective-c": Dialect.OBJC,
    "c#": Dialect.CSHARP,
    "cs": Dialect.CSHARP,
    "kt": Dialect.KOTLIN,
}

# file extension used when a migrated file is written in the target dialect
TARGET_EXTENSION: Dict[Dialect, str] = {
    Dialect.TYPESCRIPT: ".ts",
    Dialect.JAVASCRIPT: ".js",
    Dialect.REACT_JS: ".jsx",
    Dialect.REACT_TS: ".tsx",
    Dialect.VUE: ".vue",
    Dialect.ANGULAR: ".ts",
    Dialect.ANGULARJS: ".js",
    Dialect.JQUERY: ".js",
    Dialect.PYTHON2: ".py",
    Dialect.PYTHON3: ".py",
    Dialect.JAVA: ".java",
    Dialect.KOTLIN: ".kt",
    Dialect.SWIFT: ".swift",
    Dialect.OBJC: ".m",
    Dialect.CSHARP: ".cs",
}


def migrated_path(logical_path: str, target: Dialect) -> str:
    ext = TARGET_EXTENSION.get(target)
    if not ext:
        return logical_path
    return str(PurePosixPath(logical_path).with_suffix(ext))


@dataclass
class DetectionResult:
    family: str
    syntax: str
    confidence: float
    dialect: Dialect = Dialect.UNKNOWN
    display_name: str = "Unknown"
    tag: str = ""
    extension: str = ""
    family_confidence: float = 0.0
    syntax_confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["dialect"] = self.dialect.value
        return d


# ── Upload ──

@dataclass
class FileEntry:
    """One expanded upload entry, in deterministic logical_path order."""

    logical_path: str
    data: bytes
    size_bytes: int


@dataclass
class ExpansionResult:
    entries: List[FileEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(e.size_bytes for e in self.entries)


# ── Chunks ──

class ChunkKind(str, Enum):
    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    INTERFACE = "interface"
    VARIABLE = "variable"
    IMPORT = "import"
    EXPORT = "export"
    ARROW_FUNCTION = "arrow-function"
    ASYNC_FUNCTION = "async-function"
    GENERATOR = "generator"
    TRY_CATCH = "try-catch"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    SWITCH = "switch"
    BLOCK = "block"


class ChunkStatus(str, Enum):
    PENDING_EMBEDDING = "pending-embedding"
    EMBEDDED = "embedded"
    EMBED_FAILED = "embed-failed"


@dataclass
class Parameter:
    name: str
    type_tag: Optional[str] = None
    position: int = 0
    has_default: bool = False
    is_rest: bool = False


@dataclass
class Dependency:
    kind: str  # import | require | dynamic-import
    source: str
    line: int


@dataclass
class Comment:
    kind: str  # line | block
    text: str
    line: int


def compute_chunk_id(session_id: str, logical_path: str, start_line: int, end_line: int, name: str) -> str:
    """Deterministic id: the same region re-indexed maps to the same chunk."""
    raw = "\x1f".join([session_id, logical_path, str(start_line), str(end_line), name])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class Chunk:
    chunk_id: str
    session_id: str
    file_id: str
    logical_path: str
    kind: str
    name: str
    start_line: int
    end_line: int
    start_byte: int
    end_byte: int
    code: str
    dialect: str
    complexity: int = 1
    is_async: bool = False
    is_static: bool = False
    visibility: str = "public"
    parameters: List[Parameter] = field(default_factory=list)
    dependencies: List[Dependency] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = None
    embedded_at: Optional[float] = None
    status: str = ChunkStatus.PENDING_EMBEDDING.value

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def signature(self) -> str:
        """Short one-line description used for neighbor context."""
        params = ", ".join(p.name for p in self.parameters)
        return f"{self.kind} {self.name}({params})" if self.parameters else f"{self.kind} {self.name}"

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        d = asdict(self)
        if not include_embedding:
            d.pop("embedding", None)
        d["has_embedding"] = self.has_embedding
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Chunk":
        data = dict(d)
        data.pop("has_embedding", None)
        data["parameters"] = [p if isinstance(p, Parameter) else Parameter(**p) for p in data.get("parameters") or []]
        data["dependencies"] = [x if isinstance(x, Dependency) else Dependency(**x) for x in data.get("dependencies") or []]
        data["comments"] = [c if isinstance(c, Comment) else Comment(**c) for c in data.get("comments") or []]
        return cls(**data)


@dataclass
class ChunkFilter:
    """Metadata filter applied before similarity ranking."""

    kinds: Optional[List[str]] = None
    dialect: Optional[str] = None
    min_complexity: Optional[int] = None
    max_complexity: Optional[int] = None
    is_async: Optional[bool] = None
    logical_path: Optional[str] = None

    def matches(self, chunk: Chunk) -> bool:
        if self.kinds and chunk.kind not in self.kinds:
            return False
        if self.dialect and chunk.dialect != self.dialect:
            return False
        if self.min_complexity is not None and chunk.complexity < self.min_complexity:
            return False
        if self.max_complexity is not None and chunk.complexity > self.max_complexity:
            return False
        if self.is_async is not None and chunk.is_async != self.is_async:
            return False
        if self.logical_path and chunk.logical_path != self.logical_path:
            return False
        return True


@dataclass
class ScoredChunk:
    chunk: Chunk
    similarity: float


# ── Embedding ──

@dataclass
class EmbeddingResult:
    chunk_id: str
    vector: Optional[List[float]] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.vector is not None


# ── Migration request ──

@dataclass
class MigrationOptions:
    preserve_data: bool = True
    generate_types: bool = False
    add_validation: bool = False
    include_dependencies: bool = True
    include_related_files: bool = True
    similarity_threshold: float = 0.7
    top_k: int = 10
    kinds: Optional[List[str]] = None
    source_dialect: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "MigrationOptions":
        if not d:
            return cls()
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class MigrationRequest:
    session_id: str
    user_id: str
    command: str
    target_dialect: str
    options: MigrationOptions = field(default_factory=MigrationOptions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "command": self.command,
            "target_dialect": self.target_dialect,
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MigrationRequest":
        return cls(
            session_id=d["session_id"],
            user_id=d["user_id"],
            command=d.get("command", ""),
            target_dialect=d.get("target_dialect", ""),
            options=MigrationOptions.from_dict(d.get("options")),
        )

    def fingerprint(self) -> str:
        """Stable hash used for enqueue dedupe."""
        blob = json.dumps(
            {
                "command": " ".join(self.command.split()).lower(),
                "target": self.target_dialect,
                "options": self.options.to_dict(),
            },
            sort_keys=True,
        )
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:32]
