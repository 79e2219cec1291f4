from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote


def normalize_database_url_for_async(database_url: str) -> str:
    """
    将本地存储的 DATABASE_URL 规范化为「运行时可用的异步 driver」。

    约定：
    - SQLite：sqlite+aiosqlite://...
    - 其它 URL 原样返回（调用方自行保证 driver 可用）
    """
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    return url


def sqlite_file_path(database_url: str) -> Path | None:
    """Return the on-disk path of a file-backed SQLite URL, else None."""
    url = (database_url or "").strip()
    for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
        if url.startswith(prefix):
            raw = unquote(url[len(prefix) :].split("?", 1)[0])
            if not raw or raw == ":memory:":
                return None
            return Path(raw)
    return None


def ensure_sqlite_parent_dir(database_url: str) -> None:
    # SQLite 不会自动创建父目录；首次启动时兜底创建
    path = sqlite_file_path(database_url)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
