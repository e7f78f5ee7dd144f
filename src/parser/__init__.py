"""Parser module: dialect detection and tree-sitter grammars"""

from src.parser.dialect import detect, matches_dialect, parse_target, supported_dialects
from src.parser.treesitter import check_syntax, has_parser

__all__ = [
    "detect",
    "matches_dialect",
    "parse_target",
    "supported_dialects",
    "check_syntax",
    "has_parser",
]
