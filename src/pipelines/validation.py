"""
Migration request validation, shared by the HTTP surface (before enqueue) and
the transform flow's validating stage.
"""

from __future__ import annotations

import re
from typing import Optional

from config.settings import settings
from src.core.errors import ValidationError
from src.core.models import ChunkKind, Dialect, MigrationRequest
from src.parser.dialect import parse_target

_KINDS = frozenset(k.value for k in ChunkKind)


def dangerous_pattern(command: str) -> Optional[str]:
    """The first configured pattern found in *command*, or None."""
    for pattern in settings.transform.dangerous_patterns:
        if re.search(pattern, command, re.IGNORECASE):
            return pattern
    return None


def validate_request(request: MigrationRequest) -> Dialect:
    """Check command, target and options; returns the parsed target dialect."""
    command = (request.command or "").strip()
    lo, hi = settings.transform.command_min_chars, settings.transform.command_max_chars
    if not lo <= len(command) <= hi:
        raise ValidationError.invalid_field("command", f"must be {lo} to {hi} characters")
    pattern = dangerous_pattern(command)
    if pattern:
        raise ValidationError.dangerous_command(pattern)

    target = parse_target(request.target_dialect)
    if target is None:
        raise ValidationError.invalid_dialect(request.target_dialect)

    opts = request.options
    if not 0.0 <= opts.similarity_threshold <= 1.0:
        raise ValidationError.invalid_field("options.similarity_threshold", "must be within [0, 1]")
    if not 1 <= opts.top_k <= 100:
        raise ValidationError.invalid_field("options.top_k", "must be within [1, 100]")
    if opts.kinds:
        unknown = [k for k in opts.kinds if k not in _KINDS]
        if unknown:
            raise ValidationError.invalid_field("options.kinds", f"unknown chunk kind(s): {', '.join(unknown)}")
    if opts.source_dialect and parse_target(opts.source_dialect) is None:
        raise ValidationError.invalid_dialect(opts.source_dialect)
    return target
