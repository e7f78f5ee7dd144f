"""
Package and framework equivalents between language ecosystems.

Used by the planner to turn the dependencies found in the selected chunks
into concrete replacement suggestions for the plan's dependency section.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from src.core.models import Dialect

_ECOSYSTEM = {
    Dialect.JAVASCRIPT: "node",
    Dialect.TYPESCRIPT: "node",
    Dialect.REACT_JS: "node",
    Dialect.REACT_TS: "node",
    Dialect.VUE: "node",
    Dialect.ANGULAR: "node",
    Dialect.ANGULARJS: "node",
    Dialect.JQUERY: "node",
    Dialect.PYTHON2: "python",
    Dialect.PYTHON3: "python",
    Dialect.JAVA: "jvm",
    Dialect.KOTLIN: "jvm",
    Dialect.SWIFT: "apple",
    Dialect.OBJC: "apple",
    Dialect.CSHARP: "dotnet",
}

# (from, to) -> package -> (equivalent, note)
_PACKAGES: Dict[Tuple[str, str], Dict[str, Tuple[str, str]]] = {
    ("node", "python"): {
        "express": ("FastAPI / Flask", "Routes become decorated handlers; middleware maps to dependencies or hooks"),
        "axios": ("requests / httpx", "Use a session object for connection reuse"),
        "lodash": ("builtins / itertools", "Most helpers have comprehension or stdlib equivalents"),
        "moment": ("datetime / pendulum", "Timezone-aware datetime replaces moment objects"),
        "bcrypt": ("bcrypt", "Same algorithm, same hash format"),
        "jsonwebtoken": ("PyJWT", "jwt.encode / jwt.decode"),
        "mongoose": ("pymongo / beanie", "Schemas become pydantic models"),
        "dotenv": ("python-dotenv", "load_dotenv() at startup"),
        "jest": ("pytest", "describe/it blocks become test functions or classes"),
        "multer": ("python-multipart", "UploadFile parameters in the framework"),
    },
    ("node", "jvm"): {
        "express": ("Spring Boot Web", "Routes become @RestController methods"),
        "axios": ("java.net.http.HttpClient / OkHttp", "Blocking or CompletableFuture based"),
        "lodash": ("java.util.stream", "Collection helpers map to streams"),
        "moment": ("java.time", "Instant / ZonedDateTime"),
        "jsonwebtoken": ("jjwt", "Jwts.builder / Jwts.parser"),
        "jest": ("JUnit 5", "describe/it blocks become @Test methods"),
        "mongoose": ("Spring Data MongoDB", "Schemas become @Document classes"),
    },
    ("node", "dotnet"): {
        "express": ("ASP.NET Core minimal APIs", "app.MapGet / MapPost"),
        "axios": ("HttpClient", "Inject through IHttpClientFactory"),
        "moment": ("System.DateTimeOffset / NodaTime", ""),
        "jest": ("xUnit", ""),
    },
    ("python", "node"): {
        "flask": ("Express.js", "Blueprints become routers"),
        "django": ("NestJS / Express.js", "Apps become modules"),
        "fastapi": ("Express.js / NestJS", "Pydantic models become DTOs or zod schemas"),
        "requests": ("axios / fetch", ""),
        "pytest": ("jest / vitest", ""),
        "sqlalchemy": ("TypeORM / Prisma", ""),
        "datetime": ("date-fns / Temporal", ""),
    },
    ("python", "jvm"): {
        "flask": ("Spring Boot Web", ""),
        "django": ("Spring Boot", ""),
        "requests": ("java.net.http.HttpClient", ""),
        "pytest": ("JUnit 5", ""),
        "sqlalchemy": ("Hibernate / Spring Data JPA", ""),
        "json": ("Jackson", ""),
    },
    ("jvm", "node"): {
        "org.springframework": ("NestJS", "Controllers and services keep the same split"),
        "junit": ("jest", ""),
        "com.fasterxml.jackson": ("JSON.parse / class-transformer", ""),
    },
    ("jvm", "python"): {
        "org.springframework": ("FastAPI", ""),
        "junit": ("pytest", ""),
        "com.fasterxml.jackson": ("pydantic", ""),
    },
}


def ecosystem_of(dialect: Dialect) -> Optional[str]:
    return _ECOSYSTEM.get(dialect)


def _package_root(source: str) -> str:
    """'lodash/fp' -> 'lodash', '@nestjs/core/x' -> '@nestjs/core'."""
    s = source.strip()
    if s.startswith("@"):
        return "/".join(s.split("/")[:2])
    if "/" in s:
        return s.split("/")[0]
    return s


def package_mappings(
    dependencies: Iterable[str],
    source: Dialect,
    target: Dialect,
) -> List[Dict[str, str]]:
    """Replacement suggestions for the given dependency sources (local paths skipped)."""
    src_eco, dst_eco = ecosystem_of(source), ecosystem_of(target)
    if not src_eco or not dst_eco or src_eco == dst_eco:
        return []
    table = _PACKAGES.get((src_eco, dst_eco)) or {}
    out: List[Dict[str, str]] = []
    seen = set()
    for dep in dependencies:
        if not dep or dep.startswith("."):
            continue
        root = _package_root(dep)
        match = table.get(root)
        if match is None:
            match = next((v for k, v in table.items() if root.startswith(k)), None)
        if match is None or root in seen:
            continue
        seen.add(root)
        equivalent, note = match
        out.append({"package": root, "equivalent": equivalent, "notes": note})
    return out


def architecture_warnings(source: Dialect, target: Dialect) -> List[str]:
    src_eco, dst_eco = ecosystem_of(source), ecosystem_of(target)
    if not src_eco or not dst_eco or src_eco == dst_eco:
        return []
    warnings = [f"Cross-ecosystem migration ({src_eco} -> {dst_eco}): build tooling and package manifests must be rewritten"]
    if src_eco == "node":
        warnings.append("Event-loop based code may need explicit concurrency in the target runtime")
    return warnings
