#!/usr/bin/env python3
"""Enqueue local files for upload through a running dispatcher (POST /tasks)."""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

import requests


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Enqueue files into upload dispatcher")
    p.add_argument("files", nargs="+", help="Local files to upload")
    p.add_argument("--base-url", default=os.getenv("DISPATCHER_BASE_URL", "http://127.0.0.1:5151"))
    p.add_argument("--api-key", default=os.getenv("DISPATCHER_API_KEY"))
    p.add_argument("--description", default="")
    p.add_argument(
        "--parent",
        action="append",
        default=[],
        help="Destination folder id (repeatable)",
    )
    p.add_argument("--mime-type", default="")
    p.add_argument("--timeout-sec", type=float, default=10.0)
    return p.parse_args()


def main() -> int:
    args = _parse_args()
    headers = {"Content-Type": "application/json"}
    if args.api_key:
        headers["X-API-Key"] = args.api_key

    url = args.base_url.rstrip("/") + "/tasks"
    failed = 0
    for raw in args.files:
        path = Path(raw).expanduser().resolve()
        if not path.is_file():
            print(f"skip {raw}: not a file")
            failed += 1
            continue
        body = {
            "filename": str(path),
            "description": args.description,
            "parents": args.parent,
            "mimeType": args.mime_type,
        }
        try:
            resp = requests.post(url, json=body, headers=headers, timeout=args.timeout_sec)
        except requests.RequestException as e:
            print(f"error {path}: {e}")
            failed += 1
            continue
        if resp.status_code != 201:
            print(f"error {path}: HTTP {resp.status_code} {resp.text[:200]}")
            failed += 1
            continue
        print(json.dumps(resp.json(), ensure_ascii=False))
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
