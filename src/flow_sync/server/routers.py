from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from flow_sync.schemas_sync import ContentPatch
from flow_sync.server.repository import InMemoryItemRepository, ItemKind

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


def get_repository(request: Request) -> InMemoryItemRepository:
    return request.app.state.repository


def _not_found(kind: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{kind} not found")


async def _create(
    repo: InMemoryItemRepository, kind: ItemKind, payload: dict[str, Any]
) -> dict[str, Any]:
    item = await repo.create(kind, payload)
    logger.info("created %s id=%s", kind, item["id"])
    return item


async def _update(
    repo: InMemoryItemRepository, kind: ItemKind, item_id: str, payload: dict[str, Any]
) -> dict[str, Any]:
    item = await repo.update(kind, item_id, payload)
    if item is None:
        raise _not_found(kind)
    return item


async def _delete(repo: InMemoryItemRepository, kind: ItemKind, item_id: str) -> dict[str, Any]:
    if not await repo.delete(kind, item_id):
        raise _not_found(kind)
    return {"ok": True}


@router.get("/notes")
async def list_notes(repo: InMemoryItemRepository = Depends(get_repository)) -> list[dict[str, Any]]:
    return await repo.list_items("note")


@router.post("/notes", status_code=status.HTTP_201_CREATED)
async def create_note(
    payload: dict[str, Any] = Body(...),
    repo: InMemoryItemRepository = Depends(get_repository),
) -> dict[str, Any]:
    return await _create(repo, "note", payload)


@router.put("/notes/{note_id}")
async def update_note(
    note_id: str,
    payload: dict[str, Any] = Body(...),
    repo: InMemoryItemRepository = Depends(get_repository),
) -> dict[str, Any]:
    return await _update(repo, "note", note_id, payload)


@router.delete("/notes/{note_id}")
async def delete_note(
    note_id: str, repo: InMemoryItemRepository = Depends(get_repository)
) -> dict[str, Any]:
    return await _delete(repo, "note", note_id)


@router.get("/tasks")
async def list_tasks(repo: InMemoryItemRepository = Depends(get_repository)) -> list[dict[str, Any]]:
    return await repo.list_items("task")


@router.post("/tasks", status_code=status.HTTP_201_CREATED)
async def create_task(
    payload: dict[str, Any] = Body(...),
    repo: InMemoryItemRepository = Depends(get_repository),
) -> dict[str, Any]:
    return await _create(repo, "task", payload)


@router.put("/tasks/{task_id}")
async def update_task(
    task_id: str,
    payload: dict[str, Any] = Body(...),
    repo: InMemoryItemRepository = Depends(get_repository),
) -> dict[str, Any]:
    return await _update(repo, "task", task_id, payload)


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str, repo: InMemoryItemRepository = Depends(get_repository)
) -> dict[str, Any]:
    return await _delete(repo, "task", task_id)


@router.patch("/items/{item_id}")
async def patch_item(
    item_id: str,
    patch: ContentPatch,
    repo: InMemoryItemRepository = Depends(get_repository),
) -> dict[str, Any]:
    item, applied = await repo.patch_content(
        item_id,
        content=patch.content,
        direction=patch.direction,
        expected_version=patch.expected_version,
    )
    if item is None:
        raise _not_found("item")
    if not applied:
        logger.info(
            "version conflict id=%s expected=%s server=%s",
            item_id,
            patch.expected_version,
            item["version"],
        )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "version conflict",
                "details": {"serverVersion": item["version"], "serverItem": item},
            },
        )
    return item
