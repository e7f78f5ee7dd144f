"""
Migration planning: command enhancement for retrieval, candidate ranking and
the structured plan (analysis, strategy, dependencies, risks, order).
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config.settings import settings
from src.core.models import DIALECT_DISPLAY, Chunk, Dialect, MigrationOptions, ScoredChunk
from src.generation.ecosystem import architecture_warnings, package_mappings
from src.llm import BaseChatClient, get_manager
from src.log import get_logger
from src.utils.prompt_manager import PromptManager

logger = get_logger(__name__)

_pm = PromptManager()

TECH_PATTERNS: Dict[str, List[str]] = {
    "prisma": ["prisma", "orm", "database", "schema"],
    "react": ["react", "component", "jsx", "hooks"],
    "vue": ["vue", "component", "template"],
    "angular": ["angular", "component", "service"],
    "express": ["express", "api", "server", "route"],
    "mongodb": ["mongodb", "mongo", "collection", "document"],
    "postgresql": ["postgresql", "postgres", "sql", "table"],
    "typescript": ["typescript", "ts", "type", "interface"],
    "jest": ["jest", "test", "testing", "spec"],
    "webpack": ["webpack", "bundle", "build"],
    "docker": ["docker", "container", "image"],
    "aws": ["aws", "amazon", "cloud", "lambda"],
    "firebase": ["firebase", "firestore", "auth"],
}

MIGRATION_KEYWORDS = [
    "migrate", "convert", "transform", "refactor", "update", "upgrade",
    "database", "api", "framework", "library", "dependency", "import",
    "export", "function", "class", "component", "service", "model",
]

MIGRATION_PATTERNS: Dict[str, List[str]] = {
    "database": [
        "Convert raw SQL queries to ORM methods",
        "Update connection configurations",
        "Migrate data models and schemas",
    ],
    "api": [
        "Update endpoint definitions",
        "Modify request/response handling",
        "Update middleware configurations",
    ],
    "component": [
        "Convert class components to functional components",
        "Update lifecycle methods to hooks",
        "Update state management",
    ],
    "test": [
        "Update test framework syntax",
        "Modify assertion methods",
        "Update mocking patterns",
    ],
}

PLAN_SECTIONS = (
    "analysis",
    "strategy",
    "codeTransformations",
    "dependencies",
    "configuration",
    "testing",
    "risks",
    "implementationOrder",
)

_DEFAULT_SECTIONS = {
    "analysis": "Analyze the codebase to identify {target} migration requirements.",
    "strategy": "Develop a step-by-step approach for migrating to {target}.",
    "codeTransformations": "Transform existing code to use {target} patterns.",
    "dependencies": "Add required {target} dependencies.",
    "configuration": "Update configuration files for {target}.",
    "testing": "Update tests to work with {target}.",
    "risks": "Identify potential risks and mitigation strategies.",
    "implementationOrder": "Define the order of implementation steps.",
}

_CORE_KINDS = frozenset({"class", "function", "method", "interface"})
_WORD_RE = re.compile(r"\s+")
_JSON_RE = re.compile(r"\{[\s\S]*\}")


# ── retrieval helpers ──

def extract_technology_keywords(command: str) -> List[str]:
    lower = command.lower()
    keywords: List[str] = []
    for tech, patterns in TECH_PATTERNS.items():
        if any(p in lower for p in patterns):
            for word in [tech, *patterns]:
                if word not in keywords:
                    keywords.append(word)
    return keywords


def enhance_command(command: str) -> str:
    """Natural command plus technology and migration keywords, used as the search query."""
    lower = command.lower()
    extra = extract_technology_keywords(command) + [k for k in MIGRATION_KEYWORDS if k in lower]
    return " ".join([command.strip(), *extra])


def migration_relevance(chunk: Chunk) -> float:
    relevance = 0.0
    if chunk.kind in _CORE_KINDS:
        relevance += 0.3
    if chunk.complexity > 2:
        relevance += 0.2
    if chunk.is_async:
        relevance += 0.1
    return min(relevance, 1.0)


def rank_candidates(scored: Iterable[ScoredChunk], command: str, limit: int) -> List[Tuple[ScoredChunk, float]]:
    """Similarity boosted by command keyword hits, core kinds and complexity."""
    words = [w for w in _WORD_RE.split(command.lower()) if len(w) > 3]
    ranked: List[Tuple[ScoredChunk, float]] = []
    for sc in scored:
        text = f"{sc.chunk.name} {sc.chunk.code}".lower()
        score = sc.similarity + 0.1 * sum(1 for w in words if w in text)
        if sc.chunk.kind in _CORE_KINDS or sc.chunk.kind == "interface":
            score += 0.05
        if sc.chunk.complexity > 2:
            score += 0.03
        ranked.append((sc, round(score, 6)))
    ranked.sort(key=lambda item: (-item[1], item[0].chunk.chunk_id))
    return ranked[:limit]


def migration_patterns(command: str) -> List[str]:
    lower = command.lower()
    out: List[str] = []
    for key, items in MIGRATION_PATTERNS.items():
        if key in lower:
            out.extend(items)
    return out or [
        "Follow best practices for the target technology",
        "Maintain existing functionality",
        "Ensure type safety where applicable",
    ]


# ── plan parsing ──

def _extract_section(text: str, name: str) -> Optional[str]:
    m = re.search(rf"{name}\s*:?\s*([\s\S]*?)(?=\n\s*[A-Z][A-Z &]+:|\Z)", text)
    if not m:
        return None
    body = m.group(1).strip()
    return body or None


def parse_plan(text: str) -> Dict[str, Any]:
    """JSON object when the model returned one, otherwise uppercase section headers."""
    m = _JSON_RE.search(text or "")
    if m:
        try:
            data = json.loads(m.group(0))
            if isinstance(data, dict):
                return data
        except ValueError:
            logger.debug("plan response is not valid JSON, falling back to sections")
    plan: Dict[str, Any] = {}
    headers = {
        "analysis": "ANALYSIS",
        "strategy": "STRATEGY",
        "codeTransformations": "CODE TRANSFORMATIONS",
        "dependencies": "DEPENDENCIES",
        "configuration": "CONFIGURATION",
        "testing": "TESTING",
        "risks": "RISKS",
        "implementationOrder": "IMPLEMENTATION ORDER",
    }
    for key, header in headers.items():
        body = _extract_section(text or "", header)
        if body:
            plan[key] = body
    return plan


def default_section(section: str, target_display: str) -> str:
    return _DEFAULT_SECTIONS.get(section, "Section content to be determined.").format(target=target_display)


def _as_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value or "")


def assess_risk_level(plan: Dict[str, Any]) -> str:
    score = 0
    transformations = plan.get("codeTransformations")
    if isinstance(transformations, (list, tuple)) and len(transformations) > 10:
        score += 2
    if "database" in _as_text(plan.get("dependencies")).lower():
        score += 3
    if "breaking" in _as_text(plan.get("risks")).lower():
        score += 2
    if score >= 5:
        return "High"
    if score >= 3:
        return "Medium"
    return "Low"


def plan_summary(plan: Dict[str, Any], max_chars: int = 1200) -> str:
    parts = []
    for key in ("strategy", "codeTransformations", "implementationOrder"):
        text = _as_text(plan.get(key)).strip()
        if text:
            parts.append(f"{key}: {text}")
    summary = "\n".join(parts)
    return summary[:max_chars]


# ── planner ──

class MigrationPlanner:
    """Asks the completion endpoint for a plan and completes it from static defaults."""

    def __init__(self, client: Optional[BaseChatClient] = None):
        self._client = client

    @property
    def client(self) -> BaseChatClient:
        if self._client is None:
            self._client = get_manager().get_client(settings.transform.provider or None)
        return self._client

    def build_prompt(
        self,
        command: str,
        target: Dialect,
        candidates: List[Tuple[Chunk, float]],
        options: MigrationOptions,
    ) -> str:
        lines = []
        for i, (chunk, relevance) in enumerate(candidates, 1):
            preview = " ".join(chunk.code[:200].split())
            lines.append(
                f"{i}. {chunk.name} ({chunk.kind}) file={chunk.logical_path} "
                f"dialect={chunk.dialect} complexity={chunk.complexity} relevance={relevance:.2f}\n"
                f"   preview: {preview}"
            )
        return _pm.render(
            "migration_plan.txt",
            command=command,
            target_display=DIALECT_DISPLAY.get(target, target.value),
            options_json=json.dumps(options.to_dict(), ensure_ascii=False),
            patterns_block="\n".join(f"- {p}" for p in migration_patterns(command)),
            chunks_block="\n".join(lines) or "(no matching chunks)",
        )

    def generate(
        self,
        command: str,
        target: Dialect,
        chunks: List[Chunk],
        options: MigrationOptions,
        source: Optional[Dialect] = None,
    ) -> Dict[str, Any]:
        candidates = [(c, migration_relevance(c)) for c in chunks]
        prompt = self.build_prompt(command, target, candidates, options)
        resp = self.client.chat(
            [{"role": "user", "content": prompt}],
            timeout_seconds=settings.transform.call_timeout_seconds,
            max_tokens=settings.transform.max_output_tokens,
            temperature=settings.transform.temperature,
        )
        plan = parse_plan(resp.get("final_text") or "")
        return self.complete(plan, command, target, chunks, source, model=resp.get("model"))

    def complete(
        self,
        plan: Dict[str, Any],
        command: str,
        target: Dialect,
        chunks: List[Chunk],
        source: Optional[Dialect] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fill missing sections, attach ecosystem mappings, metadata and risk level."""
        target_display = DIALECT_DISPLAY.get(target, target.value)
        out = dict(plan)
        for section in PLAN_SECTIONS:
            if not out.get(section):
                out[section] = default_section(section, target_display)

        mappings: List[Dict[str, str]] = []
        warnings: List[str] = []
        sources = {Dialect.parse(c.dialect) for c in chunks} if source is None else {source}
        for src in sorted((s for s in sources if s), key=lambda d: d.value):
            deps = [d.source for c in chunks if Dialect.parse(c.dialect) == src for d in c.dependencies]
            mappings.extend(package_mappings(deps, src, target))
            warnings.extend(w for w in architecture_warnings(src, target) if w not in warnings)
        if mappings:
            deps_section = out["dependencies"]
            items = list(deps_section) if isinstance(deps_section, (list, tuple)) else [_as_text(deps_section)]
            items.extend(f"Replace {m['package']} with {m['equivalent']}" for m in mappings)
            out["dependencies"] = items
        out["packageMappings"] = mappings
        out["warnings"] = warnings

        out["metadata"] = {
            **(out.get("metadata") or {}),
            "command": command,
            "targetDialect": target.value,
            "chunksAnalyzed": len(chunks),
            "generatedAt": datetime.now().isoformat(),
            "model": model,
        }
        out["riskLevel"] = assess_risk_level(out)
        return out
