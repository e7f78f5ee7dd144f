#!/usr/bin/env python
"""Step 1: initialize the environment (dirs, tables, Redis, embedding endpoint)."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config.settings import settings
from src.core.errors import MigrationError
from src.log import get_logger

logger = get_logger(__name__)


def main():
    settings.path.ensure_dirs()

    logger.info("=" * 60)
    logger.info("Code migration pipeline - environment check")
    logger.info("=" * 60)
    settings.print_info()

    # 1. Database
    logger.info("[1/4] Creating database tables...")
    from src.db.engine import init_db
    init_db()

    # 2. Redis
    logger.info("[2/4] Checking Redis at %s ...", settings.tasks.redis_url)
    from src.tasks.redis_queue import get_job_queue
    try:
        get_job_queue().ping()
        logger.info("Redis reachable")
    except MigrationError as e:
        logger.error("Redis unavailable: %s", e)
        logger.error("Start Redis or set REDIS_URL / tasks.redis_url")
        return

    # 3. Chunk store backend
    logger.info("[3/4] Chunk store backend: %s", settings.search.backend)
    from src.indexing.chunk_store import get_chunk_store
    get_chunk_store()

    # 4. Embedding endpoint
    logger.info("[4/4] Embedding %s/%s ...", settings.embedding.provider, settings.embedding.model)
    from src.indexing.embedder import get_embedding_client
    try:
        vec = get_embedding_client().embed_query("function add(a, b) { return a + b; }")
    except MigrationError as e:
        logger.error("Embedding call failed: %s", e)
        return
    if len(vec) != settings.embedding.dimension:
        logger.warning("Embedding dimension is %d, expected %d", len(vec), settings.embedding.dimension)
    else:
        logger.info("Embedding ok (dimension=%d)", len(vec))

    logger.info("=" * 60)
    logger.info("Environment ready")
    logger.info("=" * 60)


if __name__ == "__main__":
    main()
