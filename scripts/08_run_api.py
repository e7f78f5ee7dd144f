#!/usr/bin/env python3
"""
Start the migration pipeline API (worker pool and session sweeper run in-process).

Usage:
  python scripts/08_run_api.py
  python scripts/08_run_api.py --port 8001 --host 0.0.0.0
  python scripts/08_run_api.py --reload
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    from config.settings import settings
    parser = argparse.ArgumentParser(description="Run the code migration pipeline API")
    parser.add_argument("--host", default=settings.api.host, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.api.port, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Enable reload (dev)")
    args = parser.parse_args()

    import uvicorn

    if args.reload:
        uvicorn.run("src.api.server:app", host=args.host, port=args.port, reload=True)
        return
    from src.api.server import app
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
