#!/usr/bin/env python3
"""
Sweep expired sessions: hard-delete their files, chunks, embeddings, jobs
and history. The API process does this periodically; run this for a one-off.

Usage:
    python scripts/19_sweep_sessions.py
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from src.db.engine import init_db
from src.log import get_logger
from src.sessions.registry import get_session_registry

logger = get_logger(__name__)


def main():
    init_db()
    removed = get_session_registry().sweep_expired()
    logger.info("removed %d expired session(s)", removed)


if __name__ == "__main__":
    main()
