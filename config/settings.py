"""
Unified configuration module
- Config file: config/migrate_config.json (tunable pipeline parameters)
- Local override: config/migrate_config.local.json (private local values)
- Environment variables override sensitive items (API keys, URLs)
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

load_dotenv()

# config/migrate_config.json + config/migrate_config.local.json (local override)
_CONFIG_PATH = Path(__file__).parent / "migrate_config.json"
_LOCAL_CONFIG_PATH = Path(__file__).parent / "migrate_config.local.json"


def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


_RAW_CONFIG: Dict[str, Any] = _load_json(_CONFIG_PATH)
if _LOCAL_CONFIG_PATH.exists():
    _RAW_CONFIG = _deep_merge(_RAW_CONFIG, _load_json(_LOCAL_CONFIG_PATH))


def _section(name: str) -> Dict[str, Any]:
    return (_RAW_CONFIG.get(name) or {})


_DEFAULT_EXTENSIONS = [
    ".js", ".ts", ".jsx", ".tsx", ".mjs", ".cjs", ".vue", ".json", ".html", ".css",
    ".xml", ".txt", ".md", ".sql", ".yaml", ".yml", ".py", ".java", ".c", ".cpp",
    ".cs", ".php", ".rb", ".go", ".rs", ".swift", ".kt", ".m", ".scala", ".dart",
    ".lua", ".sh",
]

_DEFAULT_DENYLIST = [
    "node_modules", ".git", "__MACOSX", ".DS_Store", "dist", "build", "coverage",
    ".nyc_output", "logs", "tmp", "temp",
]

_DEFAULT_DANGEROUS = [
    r"rm\s+-rf",
    r"del\s+/s",
    r"\bformat\s+[a-z]:",
    r"\bmkfs\b",
    r"\bshutdown\b",
    r"\breboot\b",
    r"\bdrop\s+database\b",
]


@dataclass
class UploadSettings:
    """Upload caps and filters"""
    max_files: int = 5000
    max_total_bytes: int = 500 * 1024 * 1024
    max_file_bytes: int = 50 * 1024 * 1024
    extension_allowlist: List[str] = field(default_factory=lambda: list(_DEFAULT_EXTENSIONS))
    path_denylist: List[str] = field(default_factory=lambda: list(_DEFAULT_DENYLIST))
    archive_extensions: List[str] = field(default_factory=lambda: [".zip", ".jar", ".war", ".ear"])


@dataclass
class EmbeddingSettings:
    """Embedding endpoint and pacing"""
    provider: str = os.getenv("EMBEDDING_PROVIDER", "gemini")
    model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-004")
    dimension: int = 768
    batch_size: int = 10
    batch_delay_ms: int = 1000
    call_timeout_seconds: float = 30.0
    retries: int = 3
    base_delay_ms: int = 1000
    max_jitter_ms: int = 250
    max_text_chars: int = 8000
    include_metadata: bool = True
    neighbor_context: int = 2
    query_cache_size: int = 256


@dataclass
class SearchSettings:
    """Chunk store backend and retrieval defaults"""
    backend: str = os.getenv("CHUNK_STORE_BACKEND", "sql")  # sql | milvus
    similarity_threshold: float = 0.7
    top_k: int = 10
    candidate_limit: int = 20
    milvus_uri: str = os.getenv("MILVUS_URI", "http://localhost:19530")
    milvus_collection: str = os.getenv("MILVUS_COLLECTION", "code_chunks")


@dataclass
class IndexSettings:
    """Index flow"""
    embed_success_threshold: float = 0.7


@dataclass
class TransformSettings:
    """Transform flow and chunk rewriting"""
    provider: str = ""
    model: str = ""
    concurrency: int = 1
    call_timeout_seconds: float = 60.0
    job_timeout_seconds: float = 300.0
    max_output_tokens: int = 4096
    temperature: float = 0.2
    command_min_chars: int = 10
    command_max_chars: int = 500
    dangerous_patterns: List[str] = field(default_factory=lambda: list(_DEFAULT_DANGEROUS))


@dataclass
class TasksSettings:
    """Job queue (Redis) and worker pool"""
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    key_prefix: str = os.getenv("QUEUE_KEY_PREFIX", "migrate")
    max_attempts: int = 3
    base_backoff_ms: int = 2000
    keep_completed: int = 10
    keep_failed: int = 5
    dedupe_window_seconds: int = 60
    workers: int = 1
    poll_interval_seconds: float = 1.0
    state_ttl_seconds: int = 7 * 24 * 3600
    queue_max_len: int = 10000
    index_job_timeout_seconds: float = 0.0  # 0 = unbounded


@dataclass
class RoleQuota:
    max_active_sessions: int
    max_files_per_session: int
    max_file_bytes: int


_DEFAULT_QUOTAS = {
    "basic": {"max_active_sessions": 5, "max_files_per_session": 500, "max_file_bytes": 10 * 1024 * 1024},
    "premium": {"max_active_sessions": 50, "max_files_per_session": 5000, "max_file_bytes": 50 * 1024 * 1024},
    "admin": {"max_active_sessions": 1000, "max_files_per_session": 5000, "max_file_bytes": 100 * 1024 * 1024},
}


@dataclass
class SessionSettings:
    """Session expiry and per-role quotas"""
    ttl_ms: int = 7 * 24 * 3600 * 1000
    quotas: Dict[str, RoleQuota] = field(
        default_factory=lambda: {k: RoleQuota(**v) for k, v in _DEFAULT_QUOTAS.items()}
    )
    sweep_interval_seconds: int = 600

    def quota_for(self, role: str) -> RoleQuota:
        return self.quotas.get(role) or self.quotas["basic"]


@dataclass
class ApiSettings:
    """API service"""
    host: str = os.getenv("API_HOST", "127.0.0.1")
    port: int = int(os.getenv("API_PORT", "9999"))
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class AuthSettings:
    """Token lifetime and first admin account (keep secrets in .local.json)"""
    secret_key: str = "change-me-in-local"
    token_expire_hours: float = 24.0
    admin_username: str = "admin"
    admin_default_password: str = "admin123"


# LLM env var mapping (legacy names)
_LLM_ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
}

# Provider defaults when config leaves base_url / model empty
_LLM_DEFAULTS = {
    "openai": {"base_url": "https://api.openai.com/v1", "default_model": "gpt-4o"},
    "deepseek": {"base_url": "https://api.deepseek.com/v1", "default_model": "deepseek-chat"},
    "gemini": {"base_url": "https://generativelanguage.googleapis.com/v1beta/openai", "default_model": "gemini-1.5-flash"},
    "claude": {"base_url": "https://api.anthropic.com", "default_model": "claude-sonnet-4-20250514"},
}


def _llm_provider_raw(name: str) -> Dict[str, Any]:
    return (_section("llm").get("providers") or {}).get(name) or {}


class LLMSettings:
    """
    LLM providers: llm.providers in config/migrate_config.json supports openai / deepseek / gemini / claude.
    Env vars override api_key: OPENAI_API_KEY, DEEPSEEK_API_KEY, GEMINI_API_KEY, ANTHROPIC_API_KEY,
    or MIGRATE_LLM__{PROVIDER}__API_KEY.
    """

    def __init__(self):
        cfg = _section("llm")
        self.default: str = os.getenv("DEFAULT_LLM") or cfg.get("default") or "gemini"
        self.dry_run: bool = (
            os.getenv("LLM_DRY_RUN", "").lower() == "true" or cfg.get("dry_run") is True
        )
        self.timeout_seconds: int = int(cfg.get("timeout_seconds", 120))
        self.max_retries: int = int(cfg.get("max_retries", 2))
        self.retry_backoff: float = float(cfg.get("retry_backoff", 1.5))
        self.max_concurrent_per_provider: int = int(cfg.get("max_concurrent_per_provider", 5))

    def provider_names(self) -> List[str]:
        names = set(_LLM_DEFAULTS) | set((_section("llm").get("providers") or {}).keys())
        return sorted(names)

    def get_provider(self, name: str) -> Dict[str, Any]:
        """
        Return provider config by name:
        - api_key / base_url
        - default_model + models (alias map)
        - params (extra request params)
        Env vars take precedence for api_key.
        """
        raw = _llm_provider_raw(name)
        defaults = _LLM_DEFAULTS.get(name) or {}

        normalized = name.upper().replace("-", "_")
        api_key = os.getenv(f"MIGRATE_LLM__{normalized}__API_KEY")
        if not api_key:
            legacy_key = _LLM_ENV_KEYS.get(name)
            if not legacy_key and "-" in name:
                legacy_key = _LLM_ENV_KEYS.get(name.split("-")[0])
            api_key = (os.getenv(legacy_key) if legacy_key else None)
        api_key = api_key or raw.get("api_key") or ""
        models = raw.get("models") or {}
        if isinstance(models, list):
            models = {m: m for m in models}
        return {
            "api_key": api_key,
            "base_url": raw.get("base_url") or defaults.get("base_url") or "",
            "default_model": raw.get("default_model") or defaults.get("default_model") or "",
            "models": models,
            "params": raw.get("params") or {},
        }

    def is_available(self, name: str) -> bool:
        p = self.get_provider(name)
        return bool((p.get("api_key") or "").strip())


@dataclass
class PathSettings:
    base: Path = field(default_factory=lambda: Path(__file__).parent.parent)

    @property
    def data(self) -> Path:
        return Path(os.getenv("MIGRATE_DATA_DIR") or (self.base / "data"))

    @property
    def uploads(self) -> Path:
        return self.data / "uploads"

    @property
    def logs(self) -> Path:
        return self.data / "logs"

    def ensure_dirs(self):
        for p in [self.data, self.uploads, self.logs]:
            p.mkdir(parents=True, exist_ok=True)


def _build_quotas(raw: Dict[str, Any]) -> Dict[str, RoleQuota]:
    merged = _deep_merge(_DEFAULT_QUOTAS, raw or {})
    return {
        role: RoleQuota(
            max_active_sessions=int(q.get("max_active_sessions", 5)),
            max_files_per_session=int(q.get("max_files_per_session", 500)),
            max_file_bytes=int(q.get("max_file_bytes", 10 * 1024 * 1024)),
        )
        for role, q in merged.items()
    }


class Settings:
    def __init__(self):
        self.env = os.getenv("MIGRATE_ENV", "dev")

        u = _section("upload")
        self.upload = UploadSettings(
            max_files=int(u.get("max_files", 5000)),
            max_total_bytes=int(u.get("max_total_bytes", 500 * 1024 * 1024)),
            max_file_bytes=int(u.get("max_file_bytes", 50 * 1024 * 1024)),
            extension_allowlist=[e.lower() for e in (u.get("extension_allowlist") or _DEFAULT_EXTENSIONS)],
            path_denylist=list(u.get("path_denylist") or _DEFAULT_DENYLIST),
            archive_extensions=[e.lower() for e in (u.get("archive_extensions") or [".zip", ".jar", ".war", ".ear"])],
        )

        e = _section("embedding")
        self.embedding = EmbeddingSettings(
            provider=str(e.get("provider", os.getenv("EMBEDDING_PROVIDER", "gemini"))),
            model=str(e.get("model", os.getenv("EMBEDDING_MODEL", "text-embedding-004"))),
            dimension=int(e.get("dimension", 768)),
            batch_size=max(1, int(e.get("batch_size", 10))),
            batch_delay_ms=int(e.get("batch_delay_ms", 1000)),
            call_timeout_seconds=float(e.get("call_timeout_seconds", 30)),
            retries=max(1, int(e.get("retries", 3))),
            base_delay_ms=int(e.get("base_delay_ms", 1000)),
            max_jitter_ms=int(e.get("max_jitter_ms", 250)),
            max_text_chars=int(e.get("max_text_chars", 8000)),
            include_metadata=bool(e.get("include_metadata", True)),
            neighbor_context=int(e.get("neighbor_context", 2)),
            query_cache_size=int(e.get("query_cache_size", 256)),
        )

        s = _section("search")
        self.search = SearchSettings(
            backend=str(s.get("backend", os.getenv("CHUNK_STORE_BACKEND", "sql"))),
            similarity_threshold=float(s.get("similarity_threshold", 0.7)),
            top_k=int(s.get("top_k", 10)),
            candidate_limit=int(s.get("candidate_limit", 20)),
            milvus_uri=str(s.get("milvus_uri", os.getenv("MILVUS_URI", "http://localhost:19530"))),
            milvus_collection=str(s.get("milvus_collection", os.getenv("MILVUS_COLLECTION", "code_chunks"))),
        )

        ix = _section("index")
        self.index = IndexSettings(
            embed_success_threshold=float(ix.get("embed_success_threshold", 0.7)),
        )

        t = _section("transform")
        self.transform = TransformSettings(
            provider=str(t.get("provider", "")),
            model=str(t.get("model", "")),
            concurrency=max(1, int(t.get("concurrency", 1))),
            call_timeout_seconds=float(t.get("call_timeout_seconds", 60)),
            job_timeout_seconds=float(t.get("job_timeout_seconds", 300)),
            max_output_tokens=int(t.get("max_output_tokens", 4096)),
            temperature=float(t.get("temperature", 0.2)),
            command_min_chars=int(t.get("command_min_chars", 10)),
            command_max_chars=int(t.get("command_max_chars", 500)),
            dangerous_patterns=list(t.get("dangerous_patterns") or _DEFAULT_DANGEROUS),
        )

        q = _section("tasks")
        self.tasks = TasksSettings(
            redis_url=str(q.get("redis_url", os.getenv("REDIS_URL", "redis://localhost:6379/0"))),
            key_prefix=str(q.get("key_prefix", os.getenv("QUEUE_KEY_PREFIX", "migrate"))),
            max_attempts=max(1, int(q.get("max_attempts", 3))),
            base_backoff_ms=int(q.get("base_backoff_ms", 2000)),
            keep_completed=int(q.get("keep_completed", 10)),
            keep_failed=int(q.get("keep_failed", 5)),
            dedupe_window_seconds=int(q.get("dedupe_window_seconds", 60)),
            workers=max(1, int(q.get("workers", 1))),
            poll_interval_seconds=float(q.get("poll_interval_seconds", 1.0)),
            state_ttl_seconds=int(q.get("state_ttl_seconds", 7 * 24 * 3600)),
            queue_max_len=int(q.get("queue_max_len", 10000)),
            index_job_timeout_seconds=float(q.get("index_job_timeout_seconds", 0)),
        )

        ss = _section("sessions")
        self.sessions = SessionSettings(
            ttl_ms=int(ss.get("ttl_ms", 7 * 24 * 3600 * 1000)),
            quotas=_build_quotas(ss.get("quotas") or {}),
            sweep_interval_seconds=int(ss.get("sweep_interval_seconds", 600)),
        )

        a = _section("api")
        self.api = ApiSettings(
            host=str(a.get("host", os.getenv("API_HOST", "127.0.0.1"))),
            port=int(a.get("port", os.getenv("API_PORT", "9999"))),
            cors_origins=list(a.get("cors_origins") or ["*"]),
        )

        au = _section("auth")
        self.auth = AuthSettings(
            secret_key=str(os.getenv("MIGRATE_SECRET_KEY") or au.get("secret_key", "change-me-in-local")),
            token_expire_hours=float(au.get("token_expire_hours", 24)),
            admin_username=str(au.get("admin_username", "admin")),
            admin_default_password=str(au.get("admin_default_password", "admin123")),
        )

        self.llm = LLMSettings()
        self.path = PathSettings()

    @property
    def is_prod(self) -> bool:
        return self.env == "prod"

    def print_info(self):
        print(f"""
========================================
  Code Migration Pipeline
========================================
  Env: {self.env}
  Redis: {self.tasks.redis_url}
  Chunk store: {self.search.backend}
  Embedding: {self.embedding.provider}/{self.embedding.model} (D={self.embedding.dimension})
  LLM default: {self.llm.default} (dry_run={self.llm.dry_run})
========================================
        """)


# Global singleton
settings = Settings()
