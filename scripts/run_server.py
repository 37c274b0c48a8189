#!/usr/bin/env python3
"""Run the upload dispatcher API gateway (HTTP + dispatcher worker) with uvicorn."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
for p in (PROJECT_ROOT, SRC_DIR):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Upload dispatcher server")
    p.add_argument("--host", default=os.getenv("API_HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.getenv("API_PORT", "5151")))
    p.add_argument(
        "--store-url",
        default=None,
        help="Override STORE_URL (mem://collection/id, redis://..., sqlite:///tasks.db)",
    )
    p.add_argument("--localfile", default=None, help="Override STORE_LOCALFILE for mem://")
    p.add_argument("--paused", action="store_true", help="Start the dispatcher paused")
    p.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "info").lower())
    return p.parse_args()


def main() -> int:
    args = _parse_args()

    from upload_dispatcher.common.config import get_settings

    s = get_settings()
    if args.store_url:
        s.store_url = args.store_url
    if args.localfile:
        s.store_localfile = args.localfile
    if args.paused:
        s.dispatcher_start_paused = True
    s.log_level = args.log_level.upper()

    import uvicorn

    from apps.api_gateway.main import app

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
