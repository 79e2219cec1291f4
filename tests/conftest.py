from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from flow_sync.db import dispose_engines
from flow_sync.integrations.storage import FallbackDurableStore, build_durable_store


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_engines_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # aiosqlite worker threads must be shut down while the per-test loop is alive.
    _ = anyio_backend
    yield
    await dispose_engines()


@pytest.fixture
def store(tmp_path: Path) -> FallbackDurableStore:
    return build_durable_store(
        database_url=f"sqlite:///{tmp_path / 'flow-sync.db'}",
        fallback_dir=tmp_path / "fallback",
    )
