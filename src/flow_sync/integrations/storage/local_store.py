from __future__ import annotations

import json
from pathlib import Path, PurePosixPath
from typing import Any

from starlette.concurrency import run_in_threadpool


def _safe_join(root: Path, *segments: str) -> Path:
    parts: list[str] = []
    for segment in segments:
        parts.extend(p for p in PurePosixPath(segment).parts if p not in {"/", ""})
    if not parts or any(p in {"..", "."} for p in parts):
        raise ValueError("invalid storage key")
    return root.joinpath(*parts)


class JsonFileDurableStore:
    """Fallback store.

    Pinned layout: ${STORE_FALLBACK_DIR}/{namespace}/{key}.json
    """

    def __init__(self, *, root_dir: str) -> None:
        self._root = Path(root_dir)

    def resolve_path(self, namespace: str, key: str) -> Path:
        return _safe_join(self._root, namespace, f"{key}.json")

    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        path = self.resolve_path(namespace, key)

        def _read() -> Any:
            if not path.exists():
                return default
            return json.loads(path.read_text(encoding="utf-8"))

        value = await run_in_threadpool(_read)
        return default if value is None else value

    async def set(self, namespace: str, key: str, value: Any) -> None:
        path = self.resolve_path(namespace, key)
        payload = json.dumps(value, ensure_ascii=False)
        tmp_path = path.with_name(path.name + ".tmp")

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            tmp_path.replace(path)

        await run_in_threadpool(_write)

    async def remove(self, namespace: str, key: str) -> None:
        path = self.resolve_path(namespace, key)
        if not path.exists():
            return
        await run_in_threadpool(path.unlink)
