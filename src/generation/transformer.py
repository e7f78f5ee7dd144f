"""
Chunk transformer: one completion call per chunk, parsed into code plus notes
and checked with lightweight validation signals.

Output that is empty or does not parse in the target dialect gets a single
retry with the strict prompt; after that the chunk fails and the caller keeps
the original bytes. A declared name missing from the output is a semantic
mismatch: the code is kept and a warning is recorded.
"""

from __future__ import annotations

import re
import textwrap
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from config.settings import settings
from src.core.errors import ErrorCode, ItemError, ProviderError, TransformError
from src.core.models import DIALECT_DISPLAY, Chunk, Dialect, MigrationOptions
from src.generation.plan import plan_summary
from src.generation.recipes import Recipe, identify_recipe
from src.llm import BaseChatClient, get_manager
from src.log import get_logger
from src.observability import metrics
from src.parser.treesitter import check_syntax

logger = get_logger(__name__)

MAX_CONTEXT_CHUNKS = 10

FENCE_TAG: Dict[Dialect, str] = {
    Dialect.TYPESCRIPT: "typescript",
    Dialect.JAVASCRIPT: "javascript",
    Dialect.REACT_JS: "jsx",
    Dialect.REACT_TS: "tsx",
    Dialect.VUE: "vue",
    Dialect.ANGULAR: "typescript",
    Dialect.ANGULARJS: "javascript",
    Dialect.JQUERY: "javascript",
    Dialect.PYTHON2: "python",
    Dialect.PYTHON3: "python",
    Dialect.JAVA: "java",
    Dialect.KOTLIN: "kotlin",
    Dialect.SWIFT: "swift",
    Dialect.OBJC: "objectivec",
    Dialect.CSHARP: "csharp",
}

_FENCE_RE = re.compile(r"```[\w+\-.#]*\n(.*?)```", re.DOTALL)
_RATIONALE_RE = re.compile(r"^\s*Rationale:\s*(.*)$", re.MULTILINE | re.IGNORECASE)
_RISKS_RE = re.compile(r"^\s*Risks:\s*(.*)$", re.MULTILINE | re.IGNORECASE)
_RENAMES_RE = re.compile(r"^\s*Renames:\s*(.*)$", re.MULTILINE | re.IGNORECASE)

# targets where a method or function fragment only parses inside a class body
_CLASS_BODY_TARGETS = frozenset({Dialect.JAVA, Dialect.CSHARP})
_MEMBER_KINDS = frozenset({"method", "function", "async-function", "generator", "variable"})


def fence_tag(dialect: Optional[Dialect]) -> str:
    return FENCE_TAG.get(dialect, "") if dialect else ""


# ── response parsing ──

@dataclass
class ParsedAnswer:
    code: str
    rationale: str = ""
    risks: List[str] = field(default_factory=list)
    renames: Dict[str, str] = field(default_factory=dict)


def _split_list(value: str) -> List[str]:
    value = value.strip()
    if not value or value.lower() in ("none", "n/a", "-"):
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def parse_answer(text: str) -> ParsedAnswer:
    """First fenced block is the code; without a fence, everything before Rationale:."""
    text = text or ""
    m = _FENCE_RE.search(text)
    if m:
        code = m.group(1)
    else:
        cut = _RATIONALE_RE.search(text)
        code = text[: cut.start()] if cut else text
    code = code.rstrip()

    rationale = _RATIONALE_RE.search(text)
    risks = _RISKS_RE.search(text)
    renames_m = _RENAMES_RE.search(text)
    renames: Dict[str, str] = {}
    for pair in _split_list(renames_m.group(1) if renames_m else ""):
        if "->" in pair:
            old, new = (p.strip().strip("`") for p in pair.split("->", 1))
            if old and new:
                renames[old] = new
    return ParsedAnswer(
        code=code,
        rationale=rationale.group(1).strip() if rationale else "",
        risks=_split_list(risks.group(1) if risks else ""),
        renames=renames,
    )


# ── validation signals ──

def _syntax_probe(code: str, kind: str, target: Dialect) -> str:
    if target in (Dialect.PYTHON2, Dialect.PYTHON3):
        return textwrap.dedent(code)
    if target in _CLASS_BODY_TARGETS and kind in _MEMBER_KINDS:
        return "class MigrationProbe {\n" + code + "\n}"
    if kind == "method" and target in (Dialect.TYPESCRIPT, Dialect.ANGULAR, Dialect.JAVASCRIPT, Dialect.REACT_TS, Dialect.REACT_JS):
        return "class MigrationProbe {\n" + code + "\n}"
    return code


def has_generated_name(chunk: Chunk) -> bool:
    return chunk.name == f"{chunk.kind}-line-{chunk.start_line}"


def validate_output(code: str, chunk: Chunk, target: Dialect, renames: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Returns {"nonEmpty", "syntaxValid", "syntaxErrors", "namesRetained", "renamed"}.

    syntaxValid is None when no parser exists for the target; namesRetained is
    None when the chunk has no declared name.
    """
    renames = renames or {}
    non_empty = bool(code.strip())
    syntax_valid: Optional[bool] = None
    syntax_errors = 0
    if non_empty:
        outcome = check_syntax(_syntax_probe(code, chunk.kind, target), target)
        if outcome is not None:
            syntax_valid = outcome.is_valid
            syntax_errors = outcome.error_count

    names_retained: Optional[bool] = None
    renamed = None
    if non_empty and not has_generated_name(chunk):
        if chunk.name in code:
            names_retained = True
        elif chunk.name in renames and renames[chunk.name] in code:
            names_retained = True
            renamed = renames[chunk.name]
        else:
            names_retained = False
    return {
        "nonEmpty": non_empty,
        "syntaxValid": syntax_valid,
        "syntaxErrors": syntax_errors,
        "namesRetained": names_retained,
        "renamed": renamed,
    }


def _output_problem(validation: Dict[str, Any], target: Dialect) -> Optional[str]:
    if not validation["nonEmpty"]:
        return "the code block was empty"
    if validation["syntaxValid"] is False:
        return (
            f"the code does not parse as {DIALECT_DISPLAY.get(target, target.value)} "
            f"({validation['syntaxErrors']} syntax error(s))"
        )
    return None


# ── outcome ──

@dataclass
class TransformOutcome:
    chunk_id: str
    logical_path: str
    ok: bool
    migrated_code: str
    validation: Dict[str, Any] = field(default_factory=dict)
    notes: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[ItemError] = None
    attempts: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunkId": self.chunk_id,
            "logicalPath": self.logical_path,
            "ok": self.ok,
            "migratedCode": self.migrated_code,
            "validation": self.validation,
            "notes": self.notes,
            "warnings": list(self.warnings),
            "error": self.error.to_dict() if self.error else None,
            "attempts": self.attempts,
            "durationMs": self.duration_ms,
        }


# ── transformer ──

class Transformer:
    def __init__(self, client: Optional[BaseChatClient] = None):
        self._client = client
        from src.utils.prompt_manager import PromptManager

        self._pm = PromptManager()

    @property
    def client(self) -> BaseChatClient:
        if self._client is None:
            self._client = get_manager().get_client(settings.transform.provider or None)
        return self._client

    def _options_block(self, options: MigrationOptions) -> str:
        def yn(v: bool) -> str:
            return "yes" if v else "no"

        return "\n".join([
            f"- preserve data structures: {yn(options.preserve_data)}",
            f"- generate types: {yn(options.generate_types)}",
            f"- add input validation: {yn(options.add_validation)}",
            f"- carry dependencies over: {yn(options.include_dependencies)}",
        ])

    def _context_block(self, context: Iterable[Chunk]) -> str:
        lines = []
        for c in list(context)[:MAX_CONTEXT_CHUNKS]:
            preview = c.code if len(c.code) <= 400 else c.code[:400] + " ..."
            lines.append(f"// {c.logical_path}:{c.start_line} {c.signature()}\n{preview}")
        return "\n\n".join(lines) or "(none)"

    @staticmethod
    def _recipe_block(recipe: Optional[Recipe]) -> str:
        if recipe is None:
            return ""
        return f"\nSPECIALIZED INSTRUCTIONS ({recipe.name}):\n{recipe.instructions}\n"

    def build_messages(
        self,
        chunk: Chunk,
        context: List[Chunk],
        target: Dialect,
        options: MigrationOptions,
        command: str,
        plan: Optional[Dict[str, Any]] = None,
        recipe: Optional[Recipe] = None,
        problem: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        source = Dialect.parse(chunk.dialect) or Dialect.UNKNOWN
        common = {
            "kind": chunk.kind,
            "name": chunk.name,
            "source_display": DIALECT_DISPLAY.get(source, chunk.dialect),
            "target_display": DIALECT_DISPLAY.get(target, target.value),
            "command": command,
            "recipe_block": self._recipe_block(recipe),
            "logical_path": chunk.logical_path,
            "start_line": chunk.start_line,
            "end_line": chunk.end_line,
            "source_fence": fence_tag(source),
            "code": chunk.code,
        }
        if problem:
            user = self._pm.render("transform_chunk_strict.txt", problem=problem, **common)
        else:
            user = self._pm.render(
                "transform_chunk.txt",
                options_block=self._options_block(options),
                plan_summary=plan_summary(plan or {}) or "(none)",
                context_block=self._context_block(context),
                **common,
            )
        system = self._pm.render("transform_system.txt", target_fence=fence_tag(target))
        return [{"role": "system", "content": system}, {"role": "user", "content": user}]

    def _complete(self, messages: List[Dict[str, str]]) -> str:
        resp = self.client.chat(
            messages,
            model=settings.transform.model or None,
            timeout_seconds=settings.transform.call_timeout_seconds,
            max_tokens=settings.transform.max_output_tokens,
            temperature=settings.transform.temperature,
        )
        return resp.get("final_text") or ""

    def transform(
        self,
        chunk: Chunk,
        context: List[Chunk],
        target: Dialect,
        options: Optional[MigrationOptions] = None,
        command: str = "",
        plan: Optional[Dict[str, Any]] = None,
    ) -> TransformOutcome:
        """Never raises for model or output failures; they land on outcome.error."""
        options = options or MigrationOptions()
        started = time.time()
        source = Dialect.parse(chunk.dialect) or Dialect.UNKNOWN
        recipe = identify_recipe(chunk.code, source, target)
        scope = f"chunk:{chunk.chunk_id}"
        outcome = TransformOutcome(chunk_id=chunk.chunk_id, logical_path=chunk.logical_path, ok=False, migrated_code="")
        outcome.notes["recipe"] = recipe.key if recipe else None

        problem: Optional[str] = None
        answer: Optional[ParsedAnswer] = None
        validation: Dict[str, Any] = {}
        for attempt in (1, 2):
            outcome.attempts = attempt
            messages = self.build_messages(chunk, context, target, options, command, plan, recipe, problem)
            try:
                text = self._complete(messages)
            except ProviderError as e:
                outcome.error = ItemError(scope=scope, code=e.code.value, message=e.message)
                logger.warning("[transform] %s %s failed: %s", chunk.logical_path, chunk.name, e.code.value)
                break
            answer = parse_answer(text)
            validation = validate_output(answer.code, chunk, target, answer.renames)
            problem = _output_problem(validation, target)
            if problem is None:
                break
            logger.info("[transform] %s %s attempt %d unusable: %s", chunk.logical_path, chunk.name, attempt, problem)

        outcome.validation = validation
        if answer is not None:
            outcome.notes.update({"rationale": answer.rationale, "risks": answer.risks, "renames": answer.renames})

        if outcome.error is None and problem is not None:
            err = TransformError(ErrorCode.INVALID_OUTPUT, f"Model output unusable after retry: {problem}")
            outcome.error = ItemError(scope=scope, code=err.code.value, message=err.message)
        if outcome.error is None and answer is not None:
            outcome.ok = True
            outcome.migrated_code = answer.code
            if validation.get("namesRetained") is False:
                outcome.warnings.append(
                    f"{ErrorCode.SEMANTIC_MISMATCH.value}: '{chunk.name}' does not appear in the migrated "
                    f"{chunk.kind} and no rename was declared"
                )

        outcome.duration_ms = int((time.time() - started) * 1000)
        result = "ok" if outcome.ok and not outcome.warnings else ("warning" if outcome.ok else "failed")
        metrics.chunks_transformed_total.labels(target=target.value, outcome=result).inc()
        return outcome


# ── record-level summary ──

def _rate(values: List[Optional[bool]]) -> Optional[float]:
    known = [v for v in values if v is not None]
    if not known:
        return None
    return round(sum(1 for v in known if v) / len(known), 4)


def summarize_validation(outcomes: Iterable[TransformOutcome]) -> Dict[str, Any]:
    """Aggregate per-chunk signals into the record's validation block."""
    items = list(outcomes)
    attempted = len(items)
    succeeded = sum(1 for o in items if o.ok)
    syntax_rate = _rate([o.validation.get("syntaxValid") for o in items if o.ok])
    names_rate = _rate([o.validation.get("namesRetained") for o in items if o.ok])
    success_rate = round(succeeded / attempted, 4) if attempted else 1.0

    issues: List[str] = []
    if success_rate < 1.0:
        issues.append(f"{attempted - succeeded} chunk(s) kept their original code after a failed migration")
    if syntax_rate is not None and syntax_rate < 0.9:
        issues.append("Some migrated chunks have syntax issues")
    if names_rate is not None and names_rate < 0.8:
        issues.append("Some declared names were not preserved")

    recommendations: List[str] = []
    if success_rate < 0.8:
        recommendations.append("Narrow the migration command or retry the failed chunks")
    if names_rate is not None and names_rate < 1.0:
        recommendations.append("Check call sites of renamed declarations")
    recommendations.extend([
        "Review all migrated files before deployment",
        "Run comprehensive tests to ensure functionality",
    ])
    return {
        "chunksValidated": attempted,
        "chunksSucceeded": succeeded,
        "successRate": success_rate,
        "syntaxValidRate": syntax_rate,
        "namesRetainedRate": names_rate,
        "issues": issues,
        "recommendations": recommendations,
    }
