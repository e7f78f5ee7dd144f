"""
Two-level dialect detection: framework family (level 1) + syntax (level 2).

Scoring follows a static ranked table. A family only scores when at least one
of its content patterns matches; its score is
``(0.3 if the extension is expected) + 0.7 * matched/total`` weighted by the
family priority. Syntax scores are ``0.4 for the extension + 0.6 *
matched/total``. The best score wins; equal scores fall to the higher
priority, then to table order, so no two families ever tie. Detection is pure
and never raises.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from src.core.models import DIALECT_DISPLAY, DetectionResult, Dialect

_SAMPLE_CHARS = 200_000

FAMILY_THRESHOLD = 0.3
SYNTAX_THRESHOLD = 0.3


@dataclass(frozen=True)
class Rule:
    name: str
    extensions: Tuple[str, ...]
    patterns: Tuple[Pattern[str], ...]
    priority: int = 0


def _rule(name: str, extensions: Sequence[str], patterns: Sequence[str], priority: int = 0, flags: int = 0) -> Rule:
    return Rule(name, tuple(extensions), tuple(re.compile(p, flags) for p in patterns), priority)


# ── Level 1: framework families, strongest first ──

FAMILY_RULES: List[Rule] = sorted([
    _rule("vue", [".vue"], [
        r"<template>", r"<script>", r"<style\s+scoped>", r"import\s+.*from\s+['\"]vue['\"]",
        r"v-model=", r"v-if=", r"v-for=", r"@click=", r"setup\s*\(\s*\)\s*{", r"ref\s*\(",
        r"computed\s*\(", r"onMounted\s*\(",
    ], 95),
    _rule("react", [".jsx", ".tsx"], [
        r"import\s+React\s+from\s+['\"]react['\"]", r"import\s+.*from\s+['\"]react['\"]",
        r"useState\s*\(", r"useEffect\s*\(", r"React\.Component", r"className=", r"onClick=",
        r"onChange=", r"<[A-Z]\w+[^>]*>",
    ], 90),
    _rule("wordpress", [".php"], [
        r"wp_", r"get_header\(\)|get_footer\(\)|get_sidebar\(\)", r"the_content\(\)|the_title\(\)|the_excerpt\(\)",
        r"add_action\s*\(|add_filter\s*\(", r"wp-config\.php|wp-content|wp-includes", r"WP_Query|wp_query",
        r"\$wpdb",
    ], 90),
    _rule("rails", [".rb"], [
        r"class\s+\w+\s*<\s*ApplicationController", r"class\s+\w+\s*<\s*ActiveRecord::Base",
        r"class\s+\w+\s*<\s*ApplicationRecord", r"Rails\.application",
        r"config/routes\.rb|config/application\.rb", r"ActiveRecord::|ActionController::|ActionView::",
        r"has_many|belongs_to|has_one", r"before_action|after_action", r"render\s+(json|xml|html)",
        r"redirect_to", r"params\[", r"flash\[",
    ], 90),
    _rule("springboot", [".java"], [
        r"@SpringBootApplication", r"@RestController|@Controller", r"@Service|@Repository|@Component",
        r"@Autowired|@Inject", r"@RequestMapping|@GetMapping|@PostMapping|@PutMapping|@DeleteMapping",
        r"spring-boot-starter", r"SpringApplication\.run", r"@EnableAutoConfiguration", r"@ComponentScan",
        r"application\.properties|application\.yml",
    ], 90),
    _rule("graphql", [".js", ".ts", ".graphql", ".gql", ".py", ".java", ".cs", ".rb", ".go"], [
        r"type\s+\w+\s*{", r"query\s+\w*\s*{|mutation\s+\w*\s*{", r"from ['\"]graphql['\"]",
        r"@Resolver|@Query|@Mutation|@Subscription", r"apollo-server|graphql-yoga",
        r"buildSchema|makeExecutableSchema", r"gql`|graphql`", r"useQuery|useMutation|useSubscription",
        r"GraphQLSchema|GraphQLObjectType", r"input\s+\w+\s*{|interface\s+\w+\s*{",
    ], 90),
    _rule("mysql", [".sql", ".js", ".py", ".java", ".php", ".rb", ".go", ".cs"], [
        r"CREATE TABLE.*ENGINE\s*=\s*InnoDB", r"AUTO_INCREMENT", r"VARCHAR\(\d+\)", r"mysql://|jdbc:mysql",
        r"ENGINE=MyISAM|ENGINE=InnoDB", r"mysql\.createConnection", r"SHOW TABLES|DESCRIBE", r"CHARSET=utf8",
    ], 90, re.IGNORECASE),
    _rule("postgresql", [".sql", ".js", ".py", ".java", ".php", ".rb", ".go", ".cs"], [
        r"CREATE TABLE.*SERIAL", r"SERIAL PRIMARY KEY", r"JSONB", r"ARRAY\[.*\]",
        r"postgresql://|jdbc:postgresql", r"RETURNING \*", r"ILIKE|SIMILAR TO", r"CREATE EXTENSION",
        r"SELECT.*FROM pg_",
    ], 90, re.IGNORECASE),
    _rule("mongodb", [".js", ".py", ".java", ".cs", ".rb", ".go", ".json"], [
        r"db\.\w+\.find\(", r"db\.\w+\.insert\(", r"db\.\w+\.update\(", r"db\.\w+\.aggregate\(",
        r"ObjectId\(", r"mongodb://|mongodb\+srv://", r"mongoose\.", r"MongoClient", r"\$set|\$push|\$pull",
        r"collection\.",
    ], 90, re.IGNORECASE),
    _rule("angular", [".ts"], [
        r"@Component\s*\(", r"@Injectable\s*\(", r"@Directive\s*\(", r"@NgModule\s*\(",
        r"import.*from\s+['\"]@angular/core['\"]", r"ngOnInit\s*\(", r"ngOnDestroy\s*\(", r"\*ngFor\s*=",
        r"\*ngIf\s*=", r"export\s+class\s+\w+Component",
    ], 85),
    _rule("laravel", [".php"], [
        r"use\s+Illuminate\\", r"Artisan::|Route::|Schema::",
        r"class\s+\w+\s+extends\s+(Controller|Model|Middleware)", r"@extends\s*\(|@section\s*\(|@yield\s*\(",
        r"composer\.json|artisan", r"App\\|config/",
    ], 85),
    _rule("nestjs", [".ts"], [
        r"@Controller\s*\(|@Injectable\s*\(|@Module\s*\(", r"import\s*{[^}]*}\s*from\s*['\"]@nestjs",
        r"@Get\s*\(|@Post\s*\(|@Put\s*\(|@Delete\s*\(", r"NestFactory\.create", r"nest\s+new|nest\s+generate",
    ], 85),
    _rule("django", [".py"], [
        r"from\s+django", r"import\s+django", r"django\.conf|django\.urls", r"class\s+\w+\(models\.Model\)",
        r"class\s+\w+\(forms\.Form\)", r"class\s+\w+\(View\)", r"HttpResponse|JsonResponse", r"render\s*\(",
        r"redirect\s*\(", r"settings\.py|urls\.py|models\.py", r"@login_required|@csrf_exempt",
    ], 85),
    _rule("spring", [".java"], [
        r"@Controller|@RestController", r"@Service|@Repository|@Component", r"@Autowired|@Qualifier",
        r"@RequestMapping|@ResponseBody", r"ApplicationContext|BeanFactory", r"org\.springframework",
        r"@Configuration|@Bean", r"@Transactional", r"DispatcherServlet",
    ], 85),
    _rule("gin", [".go"], [
        r"gin\.Default\(\)|gin\.New\(\)", r"router\.GET|router\.POST|router\.PUT|router\.DELETE", r"gin\.Context",
        r"c\.JSON\(|c\.String\(|c\.HTML\(", r"gin\.H\{", r"github\.com/gin-gonic/gin", r"router\.Use\(",
        r"gin\.Recovery\(\)|gin\.Logger\(\)",
    ], 85),
    _rule("sqlite", [".sql", ".db", ".sqlite", ".js", ".py", ".java", ".cs"], [
        r"sqlite3\.", r"PRAGMA", r"sqlite://|jdbc:sqlite", r"AUTOINCREMENT", r"sqlite3\.connect",
        r"INTEGER PRIMARY KEY", r"\.execute\(.*CREATE TABLE",
    ], 85, re.IGNORECASE),
    _rule("redis", [".js", ".py", ".java", ".cs", ".rb", ".go"], [
        r"redis\.", r"HSET|HGET|HMSET", r"LPUSH|RPUSH|LPOP", r"SADD|SMEMBERS",
        r"redis://|redis\.createClient", r"ZADD|ZRANGE",
    ], 85),
    _rule("angularjs", [".js", ".html"], [
        r"ng-app|ng-controller|ng-model|ng-repeat|ng-if|ng-show|ng-hide|ng-click", r"angular\.module\s*\(",
        r"\.controller\s*\(", r"\.service\s*\(", r"\.directive\s*\(", r"\$scope\s*[=:]", r"\$http\s*\.",
        r"(?i:angular\.js|angular\.min\.js)",
    ], 80),
    _rule("express", [".js"], [
        r"require\s*\(['\"]express['\"]\)", r"app\.get\s*\(|app\.post\s*\(|app\.put\s*\(|app\.delete\s*\(",
        r"res\.json\s*\(|res\.send\s*\(|res\.render\s*\(", r"app\.listen\s*\(", r"express\(\)",
        r"(?i:middleware)",
    ], 80),
    _rule("flask", [".py"], [
        r"from\s+flask", r"import\s+flask", r"Flask\s*\(__name__\)", r"@app\.route", r"request\.form|request\.json",
        r"render_template\s*\(", r"jsonify\s*\(", r"redirect\s*\(", r"url_for\s*\(", r"session\[",
    ], 80),
    _rule("echo", [".go"], [
        r"echo\.New\(\)", r"e\.GET|e\.POST|e\.PUT|e\.DELETE", r"echo\.Context", r"c\.JSON\(|c\.String\(|c\.HTML\(",
        r"github\.com/labstack/echo", r"e\.Use\(", r"middleware\.",
    ], 80),
    _rule("fiber", [".go"], [
        r"fiber\.New\(\)", r"app\.Get|app\.Post|app\.Put|app\.Delete", r"fiber\.Ctx", r"c\.JSON\(|c\.SendString\(",
        r"github\.com/gofiber/fiber", r"app\.Use\(", r"fiber\.Map\{",
    ], 80),
    _rule("rest", [".js", ".ts", ".py", ".java", ".cs", ".rb", ".go", ".php"], [
        r"app\.(get|post|put|delete|patch)\(", r"@RestController|@RequestMapping", r"@(Get|Post|Put|Delete|Patch)Mapping",
        r"from rest_framework", r"\[Http(Get|Post|Put|Delete)\]", r"/api/|/v1/|/v2/", r"ResponseEntity<",
        r"@api_view", r"router\.(get|post|put|delete|patch)\(", r"express\.Router\(\)",
    ], 80),
    _rule("nodejs", [".js"], [
        r"require\s*\(['\"][\w\-/]+['\"]\)", r"module\.exports\s*=", r"process\.env", r"__dirname|__filename",
        r"npm\s+install|package\.json", r"const\s+\w+\s*=\s*require",
    ], 75),
    _rule("jquery", [".js"], [
        r"\$\(document\)\.ready", r"\$\(['\"][^'\"]*['\"]\)", r"\$\(this\)",
        r"\.ready\s*\(|\.ajax\s*\(|\.fadeIn\s*\(|\.slideUp\s*\(", r"(?i:jquery\.js|jquery\.min\.js|cdn\.jquery)",
    ], 70),
], key=lambda r: -r.priority)


# ── Level 2: syntax ──

SYNTAX_RULES: List[Rule] = [
    _rule("typescript", [".ts", ".tsx"], [
        r"interface\s+\w+", r"type\s+\w+\s*=", r":\s*string|:\s*number|:\s*boolean", r"as\s+\w+", r"<[^>]*>",
        r"enum\s+\w+",
    ]),
    _rule("javascript", [".js", ".jsx", ".mjs", ".cjs"], [
        r"var\s+\w+|let\s+\w+|const\s+\w+", r"function\s+\w+", r"=>\s*{", r"require\s*\(", r"module\.exports",
    ]),
    _rule("jsx", [".jsx"], [r"<[A-Z]\w+", r"className=", r"onClick=", r"return\s*\("]),
    _rule("tsx", [".tsx"], [r"<[A-Z]\w+", r"className=", r"onClick=", r"interface\s+\w+", r":\s*React\."]),
    _rule("php", [".php"], [
        r"<\?php", r"\$\w+\s*=", r"echo\s+|print\s+", r"function\s+\w+\s*\(", r"class\s+\w+", r"->",
        r"\$_GET|\$_POST|\$_SESSION",
    ]),
    _rule("ruby", [".rb"], [
        r"def\s+\w+", r"class\s+\w+", r"module\s+\w+", r"(?m:end$)", r"@\w+", r"puts\s+|print\s+",
        r"require\s+['\"][^'\"]+['\"]",
    ]),
    _rule("python", [".py"], [
        r"def\s+\w+\s*\(", r"class\s+\w+", r"import\s+\w+", r"from\s+\w+\s+import", r"print\s*\(",
        r"if\s+__name__\s*==\s*['\"]__main__['\"]",
    ]),
    _rule("java", [".java"], [
        r"public\s+class\s+\w+", r"public\s+static\s+void\s+main", r"import\s+java\.", r"System\.out\.println",
        r"public\s+\w+\s+\w+\s*\(", r"private\s+\w+\s+\w+", r"package\s+[\w.]+",
    ]),
    _rule("go", [".go"], [
        r"package\s+\w+", r"func\s+\w+\s*\(", r"import\s+\(", r"fmt\.Print", r"var\s+\w+\s+\w+",
        r"type\s+\w+\s+struct", r"go\s+\w+\(",
    ]),
]

EXTENSION_LANGUAGE: Dict[str, str] = {
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".php": "php",
    ".rb": "ruby",
    ".py": "python",
    ".java": "java",
    ".go": "go",
    ".cs": "csharp",
    ".swift": "swift",
    ".kt": "kotlin",
    ".m": "objc",
    ".vue": "vue",
    ".html": "html",
    ".htm": "html",
}

_SYNTAX_FALLBACK = {".tsx": "tsx", ".jsx": "jsx", ".ts": "typescript", ".js": "javascript", ".vue": "vue"}

TAGS = {
    "tsx": "TypeScript/TSX",
    "jsx": "JavaScript/JSX",
    "typescript": "TypeScript",
    "javascript": "JavaScript",
    "vue": "Vue SFC",
}

# lexical markers that only Python 2 accepts
_PY2_MARKERS = [
    re.compile(r"^\s*print\s+[^\s(=]", re.MULTILINE),
    re.compile(r"except\s+[\w.]+\s*,\s*\w+\s*:"),
    re.compile(r"\bxrange\s*\("),
    re.compile(r"\braw_input\s*\("),
    re.compile(r"\.iteritems\s*\("),
    re.compile(r"\bunicode\s*\("),
    re.compile(r"^\s*exec\s+['\"]", re.MULTILINE),
    re.compile(r"<>"),
]

_FRAMEWORK_DIALECT = {
    "vue": Dialect.VUE,
    "angular": Dialect.ANGULAR,
    "angularjs": Dialect.ANGULARJS,
    "jquery": Dialect.JQUERY,
}

_LANGUAGE_DIALECT = {
    "typescript": Dialect.TYPESCRIPT,
    "javascript": Dialect.JAVASCRIPT,
    "jsx": Dialect.REACT_JS,
    "tsx": Dialect.REACT_TS,
    "java": Dialect.JAVA,
    "kotlin": Dialect.KOTLIN,
    "swift": Dialect.SWIFT,
    "objc": Dialect.OBJC,
    "csharp": Dialect.CSHARP,
    "vue": Dialect.VUE,
}

# dialects that read the same source; used to accept a user-selected source dialect
DIALECT_GROUPS: List[frozenset] = [
    frozenset({Dialect.JAVASCRIPT, Dialect.JQUERY, Dialect.ANGULARJS, Dialect.REACT_JS}),
    frozenset({Dialect.TYPESCRIPT, Dialect.ANGULAR, Dialect.REACT_TS}),
    frozenset({Dialect.PYTHON2, Dialect.PYTHON3}),
]


def extension_of(path: str) -> str:
    return PurePosixPath(path.replace("\\", "/")).suffix.lower()


def _score(rule: Rule, content: str, extension: str, ext_weight: float, content_weight: float) -> Tuple[float, int]:
    matched = sum(1 for p in rule.patterns if p.search(content))
    score = ext_weight if extension in rule.extensions else 0.0
    if matched:
        score += (matched / len(rule.patterns)) * content_weight
    return score, matched


def detect_family(content: str, extension: str) -> Tuple[str, float]:
    best_name, best_score, best_priority = "", 0.0, -1
    for rule in FAMILY_RULES:
        score, matched = _score(rule, content, extension, 0.3, 0.7)
        if not matched:
            continue
        score *= rule.priority / 100
        if score > best_score or (score == best_score and rule.priority > best_priority):
            best_name, best_score, best_priority = rule.name, score, rule.priority

    if best_score < FAMILY_THRESHOLD:
        base = EXTENSION_LANGUAGE.get(extension)
        if base:
            return base, 0.8
        return "unknown", 0.0
    return best_name, round(best_score, 4)


def detect_syntax(content: str, extension: str) -> Tuple[str, float]:
    best_name, best_score = "", 0.0
    for rule in SYNTAX_RULES:
        score, _ = _score(rule, content, extension, 0.4, 0.6)
        if score > best_score:
            best_name, best_score = rule.name, score

    if best_score < SYNTAX_THRESHOLD:
        fallback = _SYNTAX_FALLBACK.get(extension)
        if fallback:
            return fallback, 0.9
        return "unknown", 0.0
    return best_name, round(best_score, 4)


def _is_python2(content: str) -> bool:
    return any(p.search(content) for p in _PY2_MARKERS)


def resolve_dialect(family: str, syntax: str, extension: str, content: str) -> Dialect:
    """Map a (family, syntax) pair onto the closed dialect vocabulary."""
    if family == "react":
        if syntax in ("tsx", "typescript") or extension == ".tsx":
            return Dialect.REACT_TS
        return Dialect.REACT_JS
    if family in _FRAMEWORK_DIALECT:
        return _FRAMEWORK_DIALECT[family]
    if syntax == "python" or family == "python":
        return Dialect.PYTHON2 if _is_python2(content) else Dialect.PYTHON3
    if syntax in _LANGUAGE_DIALECT:
        return _LANGUAGE_DIALECT[syntax]
    return _LANGUAGE_DIALECT.get(family, Dialect.UNKNOWN)


def _display_name(family: str, syntax: str, dialect: Dialect) -> str:
    if dialect is not Dialect.UNKNOWN:
        return DIALECT_DISPLAY[dialect]
    if family and family != "unknown":
        return family
    if syntax and syntax != "unknown":
        return syntax
    return "Unknown"


def detect(path: str, sample: bytes | str) -> DetectionResult:
    """Classify one file. Unknown extension with no evidence -> unknown/unknown/0."""
    extension = extension_of(path)
    if isinstance(sample, bytes):
        content = sample[: _SAMPLE_CHARS * 4].decode("utf-8", errors="replace")
    else:
        content = sample or ""
    content = content[:_SAMPLE_CHARS]

    family, family_conf = detect_family(content, extension)
    syntax, syntax_conf = detect_syntax(content, extension)
    if family == "unknown" and syntax == "unknown":
        return DetectionResult(family="unknown", syntax="unknown", confidence=0.0, extension=extension)

    dialect = resolve_dialect(family, syntax, extension, content)
    confidences = [c for c in (family_conf, syntax_conf) if c > 0]
    confidence = round(sum(confidences) / len(confidences), 4) if confidences else 0.0
    return DetectionResult(
        family=family,
        syntax=syntax,
        confidence=min(1.0, confidence),
        dialect=dialect,
        display_name=_display_name(family, syntax, dialect),
        tag=TAGS.get(syntax) or extension.lstrip(".").upper(),
        extension=extension,
        family_confidence=family_conf,
        syntax_confidence=syntax_conf,
    )


def matches_dialect(result: DetectionResult, expected: Dialect) -> bool:
    """True when a detection is compatible with a user-selected source dialect."""
    if result.dialect is Dialect.UNKNOWN or result.dialect is expected:
        return True
    if result.family == expected.value or result.syntax == expected.value:
        return True
    return any(result.dialect in g and expected in g for g in DIALECT_GROUPS)


def supported_dialects() -> List[Dict[str, str]]:
    return [{"value": d.value, "label": DIALECT_DISPLAY[d]} for d in Dialect.targets()]


def parse_target(value: Optional[str]) -> Optional[Dialect]:
    d = Dialect.parse(value or "")
    return None if d is Dialect.UNKNOWN else d
