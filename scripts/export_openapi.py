from __future__ import annotations

import json
from pathlib import Path

from apps.api_gateway.main import create_app
from upload_dispatcher.queue.memory import MemoryTaskQueue
from upload_dispatcher.services.dispatcher import Dispatcher
from upload_dispatcher.services.runtime import Runtime
from upload_dispatcher.uploader.mock import MockUploader


def main() -> int:
    path = Path("openapi/openapi.json")
    path.parent.mkdir(parents=True, exist_ok=True)

    queue = MemoryTaskQueue()
    runtime = Runtime(queue=queue, dispatcher=Dispatcher(queue, MockUploader()), worker_enabled=False)
    spec = create_app(runtime).openapi()
    path.write_text(json.dumps(spec, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"Wrote {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
