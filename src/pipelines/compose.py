"""
File composition: original bytes with migrated chunk spans spliced in, in
byte order. Chunks may nest (a class holds its methods), so a selection keeps
only the outermost chunk of any nested group.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Dict, Iterable, List, Sequence, Tuple

from src.chunking.chunker import source_encoding
from src.core.models import Chunk


def outermost(chunks: Iterable[Chunk]) -> List[Chunk]:
    """Drop chunks whose span lies inside another chunk of the same file."""
    by_file: Dict[str, List[Chunk]] = OrderedDict()
    for c in chunks:
        by_file.setdefault(c.file_id, []).append(c)

    kept: List[Chunk] = []
    for file_chunks in by_file.values():
        ordered = sorted(file_chunks, key=lambda c: (c.start_byte, -c.end_byte, c.chunk_id))
        end = -1
        for c in ordered:
            if c.end_byte <= end:
                continue
            if c.start_byte < end:
                # partial overlap cannot be spliced cleanly; keep the earlier span
                continue
            kept.append(c)
            end = c.end_byte
    return kept


def group_by_file(chunks: Sequence[Chunk]) -> "OrderedDict[str, List[Chunk]]":
    """file_id -> chunks in byte order; files ordered by logical path."""
    groups: "OrderedDict[str, List[Chunk]]" = OrderedDict()
    for c in sorted(chunks, key=lambda c: (c.logical_path, c.start_byte)):
        groups.setdefault(c.file_id, []).append(c)
    return groups


def splice(original: bytes, replacements: Sequence[Tuple[int, int, bytes]]) -> bytes:
    """
    Replace each (start, end) byte span with its new bytes. Spans must be
    disjoint; everything outside them is copied unchanged.
    """
    out = bytearray()
    cursor = 0
    for start, end, data in sorted(replacements, key=lambda r: r[0]):
        if start < cursor or end < start or end > len(original):
            raise ValueError(f"replacement span {start}-{end} is invalid at offset {cursor}")
        out += original[cursor:start]
        out += data
        cursor = end
    out += original[cursor:]
    return bytes(out)


def encode_fragment(text: str, encoding: str) -> bytes:
    try:
        return text.encode(encoding)
    except UnicodeEncodeError:
        return text.encode("utf-8")


def span_matches(original: bytes, chunk: Chunk) -> bool:
    try:
        expected = chunk.code.encode(source_encoding(original))
    except UnicodeEncodeError:
        return False
    return original[chunk.start_byte:chunk.end_byte] == expected
